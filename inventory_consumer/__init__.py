"""Replicate resource change events from Kafka to Kessel Inventory: parsing, consume loop, retries and metrics."""

__version__ = "0.1.0"