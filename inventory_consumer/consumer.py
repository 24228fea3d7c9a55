"""Consume inventory change events from Kafka and replicate them to the inventory service."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from .metrics import MetricsCollector, StatsData, incr
from .parsers import (
    Message,
    parse_create_or_update_message,
    parse_delete_message,
    parse_headers,
)
from .retry import RetryOptions
from .transforms import transform_host_to_report_resource_request

# Offsets are committed in batches whenever a processed offset is a multiple of this.
COMMIT_MODULO = 10

REQUIRED_HEADERS = ("operation",)

_POLL_TIMEOUT = 0.1

_SPECIAL_OFFSETS = {
    -2: "beginning",
    -1: "end",
    -1000: "stored",
    -1001: "unset",
}


class Operation(str, Enum):
    """Operations named by the 'operation' header of an event."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    MIGRATION = "migration"


class ConsumerClosed(Exception):
    """The consumer stopped and was closed before all messages were processed."""


class MaxRetriesReached(Exception):
    """An operation kept failing until its retry limit was used up."""


@dataclass(frozen=True)
class KafkaError:
    """An error event reported by the Kafka client."""

    code: str
    message: str = ""
    fatal: bool = False

    def __str__(self):
        return self.message


@dataclass(frozen=True)
class Stats:
    """A statistics event carrying the client's statistics as JSON text."""

    raw: str


@dataclass(frozen=True)
class AssignedPartitions:
    """Rebalance event: partitions were assigned to this consumer."""

    partitions: list = field(default_factory=list)


@dataclass(frozen=True)
class RevokedPartitions:
    """Rebalance event: partitions were taken away from this consumer."""

    partitions: list = field(default_factory=list)


class KafkaConsumer(Protocol):
    """The Kafka consumer operations the inventory consumer relies on."""

    def commit_offsets(self, offsets: list) -> list: ...

    def subscribe_topics(self, topics: list, rebalance_cb: Callable) -> None: ...

    def poll(self, timeout: float) -> Any: ...

    def is_closed(self) -> bool: ...

    def close(self) -> None: ...

    def assignment_lost(self) -> bool: ...


class ClientProvider(Protocol):
    """The inventory service operations used to replicate resources."""

    def create_or_update_resource(self, request: dict) -> Any: ...

    def delete_resource(self, request: dict) -> Any: ...

    def is_enabled(self) -> bool: ...


def check_if_commit(partition):
    """True when the offset of this partition closes a commit batch."""
    return partition.offset % COMMIT_MODULO == 0


def _offset_text(offset):
    return _SPECIAL_OFFSETS.get(offset, str(offset))


def format_offsets(offsets):
    """Shorthand '[partition:offset]' list of committed offsets."""
    return ",".join(f"[{tp.partition}:{_offset_text(tp.offset)}]" for tp in offsets)


def _text(value):
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


class InventoryConsumer:
    """Reads change events, replicates them to inventory and commits offsets in batches."""

    def __init__(self, consumer, client, topics, retry_options=None, logger=None,
                 metrics=None, sleep=time.sleep):
        self.consumer = consumer
        self.client = client
        self.topics = list(topics)
        self.retry_options = retry_options if retry_options is not None else RetryOptions()
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.metrics = metrics if metrics is not None else MetricsCollector(self.topics)
        self.offset_storage = []
        self._sleep = sleep
        self._stop = threading.Event()

    def stop(self):
        """Ask a running consume loop to finish and close the consumer."""
        self._stop.set()

    def consume(self):
        """Run the consume loop until stopped or until a message cannot be processed.

        Returns normally after stop(); raises ConsumerClosed when the loop ended
        because of a failure, so that the caller may restart from the last commit.
        """
        try:
            self.consumer.subscribe_topics(list(self.topics), self.rebalance_callback)
        except Exception as exc:
            incr(self.metrics.consumer_errors, "SubscribeTopics", exc)
            self.logger.error("failed to subscribe to topic: %s", exc)
            raise
        self.logger.info("subscribed to topics: %s", ", ".join(self.topics))

        self.logger.info("Consumer ready: waiting for messages...")
        failed = False
        while not self._stop.is_set():
            event = self.consumer.poll(_POLL_TIMEOUT)
            if event is None:
                continue
            if not self._handle_event(event):
                failed = True
                break

        try:
            self.shutdown()
        except Exception as exc:
            raise RuntimeError(f"error in consumer shutdown: {exc}") from exc
        if failed:
            raise ConsumerClosed("consumer closed")

    def _handle_event(self, event):
        """Handle one polled event; False means the loop must stop."""
        if isinstance(event, Message):
            return self._handle_message(event)
        if isinstance(event, KafkaError):
            incr(self.metrics.kafka_error_events, "kafka", None,
                 code=event.code, error=str(event))
            if event.fatal:
                return False
            self.logger.error("recoverable consumer error: %s: %s -- will retry", event.code, event)
            return True
        if isinstance(event, Stats):
            try:
                stats = StatsData.from_dict(json.loads(event.raw))
            except (ValueError, TypeError) as exc:
                incr(self.metrics.msg_process_failures, "StatsCollection", exc)
                self.logger.error("error unmarshalling stats: %s", exc)
                return True
            self.metrics.collect(stats)
            return True
        self.logger.info("event type ignored %s", event)
        return True

    def _handle_message(self, msg):
        tp = msg.topic_partition
        try:
            headers = parse_headers(msg, REQUIRED_HEADERS)
        except ValueError as exc:
            incr(self.metrics.msg_process_failures, "ParseHeaders", "missing headers")
            self.logger.error("failed to parse message headers: %s", exc)
            return False
        operation = headers["operation"]

        try:
            self.process_message(operation, msg)
        except Exception:
            self.logger.error("error processing message: topic=%s partition=%d offset=%s",
                              tp.topic, tp.partition, _offset_text(tp.offset))
            return False

        self.offset_storage.append(tp)
        if check_if_commit(tp):
            try:
                self.commit_stored_offsets()
            except Exception as exc:
                incr(self.metrics.consumer_errors, "CommitStoredOffsets", exc)
                self.logger.error("failed to commit offsets: %s", exc)
                return True
        incr(self.metrics.msgs_processed, operation, None)
        self.logger.info("consumed event from topic %s, partition %d at offset %s",
                         tp.topic, tp.partition, _offset_text(tp.offset))
        self.logger.debug("consumed event data: key = %-10s value = %s",
                          _text(msg.key), _text(msg.value))
        return True

    def process_message(self, operation, msg):
        """Replicate one event to inventory; returns the service response, if any.

        Messages with an unknown operation are counted and dropped.
        """
        try:
            op = Operation(operation)
        except ValueError:
            incr(self.metrics.msg_process_failures, "unknown-operation-type", None)
            self.logger.error(
                "unknown operation type, message cannot be processed and will be dropped: "
                "offset=%s operation=%s msg=%s",
                _offset_text(msg.topic_partition.offset), operation, _text(msg.value))
            return None

        self.logger.info("processing message: operation=%s", op.value)
        self.logger.debug("processed message=%s", _text(msg.value))

        if op is Operation.MIGRATION:
            parse, parse_step, send = (transform_host_to_report_resource_request,
                                       "TransformHostToReportResourceRequest",
                                       self.client.create_or_update_resource)
        elif op is Operation.DELETED:
            parse, parse_step, send = (parse_delete_message, "ParseDeleteMessage",
                                       self.client.delete_resource)
        else:
            parse, parse_step, send = (parse_create_or_update_message,
                                       "ParseCreateOrUpdateMessage",
                                       self.client.create_or_update_resource)

        try:
            request = parse(msg.value)
        except ValueError as exc:
            incr(self.metrics.msg_process_failures, parse_step, exc)
            self.logger.error("failed to parse message: %s", exc)
            raise

        if not self.client.is_enabled():
            return None
        try:
            response = self.retry(lambda: send(request))
        except MaxRetriesReached as exc:
            incr(self.metrics.msg_process_failures, "CreateResource", exc)
            self.logger.error("failed to create resource: %s", exc)
            raise
        self.logger.debug("response: %s", response)
        return response

    def commit_stored_offsets(self):
        """Commit every offset processed since the last commit and clear the store."""
        committed = self.consumer.commit_offsets(list(self.offset_storage))
        self.logger.info("offsets committed ([partition:offset]): %s",
                         format_offsets(committed or []))
        self.offset_storage = []

    def shutdown(self):
        """Commit pending offsets and close the consumer.

        Returns True if the consumer was closed now, False if it was already closed.
        """
        if self.consumer.is_closed():
            return False
        self.logger.info("shutting down consumer...")
        if self.offset_storage:
            try:
                self.commit_stored_offsets()
            except Exception as exc:
                self.logger.error("failed to commit offsets before shutting down: %s", exc)
        try:
            self.consumer.close()
        except Exception as exc:
            self.logger.error("Error closing kafka consumer: %s", exc)
            raise
        return True

    def retry(self, operation):
        """Call operation until it succeeds, backing off between failed attempts."""
        limit = self.retry_options.operation_max_retries
        attempts = 0
        last_error = None
        while limit == -1 or attempts < limit:
            try:
                return operation()
            except Exception as exc:
                last_error = exc
                incr(self.metrics.msg_process_failures, "Retry", exc)
                self.logger.error("request failed: %s", exc)
                attempts += 1
                if limit == -1 or attempts < limit:
                    delay = self.retry_options.backoff(attempts)
                    self.logger.error("retrying in %ss", delay)
                    self._sleep(delay)
        self.logger.error("Error processing request (max attempts reached: %d): %s",
                          attempts, last_error)
        raise MaxRetriesReached("max retries reached") from last_error

    def rebalance_callback(self, consumer, event):
        """Log rebalances and commit stored offsets before partitions are revoked."""
        if isinstance(event, AssignedPartitions):
            self.logger.warning("consumer rebalance event type: %d new partition(s) assigned: %s",
                                len(event.partitions), event.partitions)
        elif isinstance(event, RevokedPartitions):
            self.logger.warning("consumer rebalance event: %d partition(s) revoked: %s",
                                len(event.partitions), event.partitions)
            if self.consumer.assignment_lost():
                self.logger.warning("Assignment lost involuntarily, commit may fail")
            try:
                self.commit_stored_offsets()
            except Exception as exc:
                self.logger.error("failed to commit offsets: %s", exc)
                raise
        else:
            self.logger.error("Unexpected event type: %s", event)


def run(options, consumer_factory, client, logger):
    """Consume with restarts: each failure recreates the Kafka consumer after a backoff.

    consumer_factory builds a fresh Kafka consumer so that consumption resumes
    from the last committed offset.
    """
    retry_options = options.retry_options
    limit = retry_options.consumer_max_retries
    retries = 0
    while limit == -1 or retries < limit:
        inventory = InventoryConsumer(consumer_factory(), client, options.topics,
                                      retry_options=retry_options, logger=logger)
        try:
            inventory.consume()
        except ConsumerClosed:
            logger.error("consumer unable to process current message -- restarting consumer")
            retries += 1
            if limit == -1 or retries < limit:
                delay = retry_options.backoff(retries)
                logger.error("retrying in %ss", delay)
                time.sleep(delay)
            continue
        except Exception as exc:
            logger.error("consumer unable to process messages: %s", exc)
            raise
        return