"""Kafka message records and parsers for their headers and JSON bodies."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field


class ParseError(ValueError):
    """Raised when a message cannot be parsed."""


@dataclass(frozen=True)
class Header:
    """A single Kafka message header."""

    key: str
    value: bytes = b""


@dataclass(frozen=True)
class TopicPartition:
    """Topic, partition and offset of a message."""

    topic: str | None = None
    partition: int = 0
    offset: int = 0


@dataclass
class Message:
    """A Kafka message as seen by the consumer."""

    value: bytes = b""
    key: bytes = b""
    headers: list = field(default_factory=list)
    topic_partition: TopicPartition = field(default_factory=TopicPartition)


def _decode(value):
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return bytes(value).decode("utf-8", errors="replace")


def parse_headers(msg, required_headers):
    """Return the required headers of a message, ignoring any others.

    Every required header must be present and 'operation' must have a value.
    """
    required = list(required_headers)
    headers = {}
    for header in msg.headers:
        if header.key in required:
            headers[header.key] = _decode(header.value)
    if sorted(headers) != sorted(required) or not headers.get("operation"):
        raise ParseError(
            "required headers are missing which would result in message "
            f"processing failures: {headers}"
        )
    return headers


def _request_payload(msg, label):
    try:
        envelope = json.loads(msg)
    except ValueError as exc:
        raise ParseError(f"error unmarshaling msgPayload: {exc}") from exc
    if not isinstance(envelope, Mapping):
        raise ParseError("error unmarshaling msgPayload: message must be a JSON object")
    schema = envelope.get("schema")
    if schema is not None and not isinstance(schema, Mapping):
        raise ParseError("error unmarshaling msgPayload: schema must be a JSON object")
    payload = envelope.get("payload")
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ParseError(f"error unmarshaling {label} payload: payload must be a JSON object")
    return dict(payload)


def parse_create_or_update_message(msg):
    """Return the create or update request carried in a message body."""
    return _request_payload(msg, "request")


def parse_delete_message(msg):
    """Return the delete request carried in a message body."""
    return _request_payload(msg, "tuple")