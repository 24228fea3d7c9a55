"""Consumer metrics: statistics scraping, app counters and a /metrics endpoint."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

STATS_PREFIX = "consumer_stats_"
PREFIX = "consumer_"

_log = logging.getLogger(__name__)


def _int(data, key):
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {key!r} must be an integer, got {value!r}")
    return value


def _str(data, key):
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string, got {value!r}")
    return value


def _mapping(data, what):
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"{what} must be a JSON object")
    return data


@dataclass(frozen=True)
class PartitionData:
    """Per-partition statistics."""

    fetchq_cnt: int = 0
    fetchq_size: int = 0
    fetch_state: str = ""
    lo_offset: int = 0
    hi_offset: int = 0
    ls_offset: int = 0
    consumer_lag: int = 0
    consumer_lag_stored: int = 0

    @classmethod
    def _from_dict(cls, data):
        data = _mapping(data, "partition stats")
        return cls(
            fetchq_cnt=_int(data, "fetchq_cnt"),
            fetchq_size=_int(data, "fetchq_size"),
            fetch_state=_str(data, "fetch_state"),
            lo_offset=_int(data, "lo_offset"),
            hi_offset=_int(data, "hi_offset"),
            ls_offset=_int(data, "ls_offset"),
            consumer_lag=_int(data, "consumer_lag"),
            consumer_lag_stored=_int(data, "consumer_lag_stored"),
        )


@dataclass(frozen=True)
class TopicData:
    """Per-topic statistics with their partitions keyed by partition id."""

    topic: str = ""
    partitions: dict = field(default_factory=dict)

    @classmethod
    def _from_dict(cls, data):
        data = _mapping(data, "topic stats")
        partitions = _mapping(data.get("partitions"), "partitions")
        return cls(
            topic=_str(data, "topic"),
            partitions={key: PartitionData._from_dict(value) for key, value in partitions.items()},
        )


@dataclass(frozen=True)
class CGRPData:
    """Consumer group statistics."""

    state: str = ""
    state_age: int = 0
    rebalance_age: int = 0
    rebalance_cnt: int = 0
    rebalance_reason: str = ""
    assignment_size: int = 0

    @classmethod
    def _from_dict(cls, data):
        data = _mapping(data, "cgrp stats")
        return cls(
            state=_str(data, "state"),
            state_age=_int(data, "stageage"),
            rebalance_age=_int(data, "rebalance_age"),
            rebalance_cnt=_int(data, "rebalance_cnt"),
            rebalance_reason=_str(data, "rebalance_reason"),
            assignment_size=_int(data, "assignment_size"),
        )


@dataclass(frozen=True)
class StatsData:
    """The parts of a client statistics message that are monitored."""

    name: str = ""
    client_id: str = ""
    replyq: int = 0
    topics: dict = field(default_factory=dict)
    cgrp: CGRPData = field(default_factory=CGRPData)

    @classmethod
    def from_dict(cls, data):
        """Build stats from a decoded statistics JSON object."""
        data = _mapping(data, "stats")
        topics = _mapping(data.get("topics"), "topics")
        return cls(
            name=_str(data, "name"),
            client_id=_str(data, "client_id"),
            replyq=_int(data, "replyq"),
            topics={key: TopicData._from_dict(value) for key, value in topics.items()},
            cgrp=CGRPData._from_dict(data.get("cgrp")),
        )

    def label_set(self, key, topic):
        """Attributes for a stats metric; topic and partition only when key is set."""
        labels = {"name": self.name, "client_id": self.client_id}
        if key:
            labels["topic"] = topic
            labels["partition"] = key
        return labels


def _attribute_key(attributes):
    return tuple(sorted((str(k), str(v)) for k, v in (attributes or {}).items()))


class _Instrument:
    kind = "untyped"

    def __init__(self, name):
        self.name = name
        self._values = {}
        self._lock = threading.Lock()

    def _samples(self):
        with self._lock:
            return sorted(self._values.items())


class Counter(_Instrument):
    """A monotonically increasing sum per attribute set."""

    kind = "counter"

    def add(self, value, attributes=None):
        """Add a non-negative amount to the sum for these attributes."""
        if value < 0:
            raise ValueError("counter increments must be non-negative")
        key = _attribute_key(attributes)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value

    def value(self, attributes=None):
        """Current sum for these attributes, 0 if never added to."""
        with self._lock:
            return self._values.get(_attribute_key(attributes), 0)


class Gauge(_Instrument):
    """The last recorded value per attribute set."""

    kind = "gauge"

    def record(self, value, attributes=None):
        """Record the current value for these attributes."""
        with self._lock:
            self._values[_attribute_key(attributes)] = value

    def value(self, attributes=None):
        """Last value recorded for these attributes, or None."""
        with self._lock:
            return self._values.get(_attribute_key(attributes))


def _escape(text):
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(key):
    if not key:
        return ""
    return "{" + ",".join(f'{name}="{_escape(value)}"' for name, value in key) + "}"


class MetricsCollector:
    """Metrics from client statistics plus the consumer's own counters."""

    def __init__(self, topics):
        self.subscribed_topics = list(topics)

        self.replyq = Gauge(STATS_PREFIX + "replyq")

        self.fetchq_cnt = Gauge(STATS_PREFIX + "fetchq_cnt")
        self.fetchq_size = Gauge(STATS_PREFIX + "fetchq_size")
        self.fetch_state = Gauge(STATS_PREFIX + "fetchq_state")
        self.lo_offset = Gauge(STATS_PREFIX + "lo_offset")
        self.hi_offset = Gauge(STATS_PREFIX + "hi_offset")
        self.ls_offset = Gauge(STATS_PREFIX + "ls_offset")
        self.consumer_lag = Gauge(STATS_PREFIX + "consumer_lag")
        self.consumer_lag_stored = Gauge(STATS_PREFIX + "consumer_lag_stored")

        self.state = Gauge(STATS_PREFIX + "state")
        self.state_age = Gauge(STATS_PREFIX + "stateage")
        self.rebalance_age = Gauge(STATS_PREFIX + "rebalance_age")
        self.rebalance_cnt = Counter(STATS_PREFIX + "rebalance_cnt")
        self.assignment_size = Gauge(STATS_PREFIX + "assignment_size")

        self.msgs_processed = Counter(PREFIX + "msgs_processed")
        self.msg_process_failures = Counter(PREFIX + "msg_process_failures")
        self.consumer_errors = Counter(PREFIX + "consumer_errors")
        self.kafka_error_events = Counter(PREFIX + "kafka_error_events")

        self._instruments = [
            self.replyq,
            self.fetchq_cnt, self.fetchq_size, self.fetch_state,
            self.lo_offset, self.hi_offset, self.ls_offset,
            self.consumer_lag, self.consumer_lag_stored,
            self.state, self.state_age, self.rebalance_age,
            self.rebalance_cnt, self.assignment_size,
            self.msgs_processed, self.msg_process_failures,
            self.consumer_errors, self.kafka_error_events,
        ]

    def collect(self, stats):
        """Record the metrics carried by one statistics message."""
        base = stats.label_set("", "")
        self.replyq.record(stats.replyq, base)

        for topic in self.subscribed_topics:
            topic_data = stats.topics.get(topic)
            if topic_data is None:
                continue
            for key, partition in topic_data.partitions.items():
                if key == "-1":
                    continue
                labels = stats.label_set(key, topic)
                self.fetchq_cnt.record(partition.fetchq_cnt, labels)
                self.fetchq_size.record(partition.fetchq_size, labels)
                self.fetch_state.record(
                    0 if partition.fetch_state == "active" else 1,
                    {**base, "fetch_state": partition.fetch_state},
                )
                self.lo_offset.record(partition.lo_offset, labels)
                self.hi_offset.record(partition.hi_offset, labels)
                self.ls_offset.record(partition.ls_offset, labels)
                self.consumer_lag.record(partition.consumer_lag, labels)
                self.consumer_lag_stored.record(partition.consumer_lag_stored, labels)

        cgrp = stats.cgrp
        self.state.record(0 if cgrp.state == "up" else 1, {**base, "state": cgrp.state})
        self.state_age.record(cgrp.state_age, base)
        self.rebalance_age.record(
            cgrp.rebalance_age, {**base, "last_rebalance_reason": cgrp.rebalance_reason}
        )
        self.rebalance_cnt.add(cgrp.rebalance_cnt, base)
        self.assignment_size.record(cgrp.assignment_size, base)

    def render(self):
        """All metrics in the Prometheus text exposition format."""
        lines = []
        for instrument in self._instruments:
            name = instrument.name + ("_total" if isinstance(instrument, Counter) else "")
            lines.append(f"# TYPE {name} {instrument.kind}")
            lines.extend(f"{name}{_format_labels(key)} {value}" for key, value in instrument._samples())
        return "\n".join(lines) + "\n"


def incr(counter, operation, err_reason, **kwargs):
    """Add one to a counter, labelled by operation, reason and extra attributes."""
    attributes = {"operation": operation}
    if err_reason is not None:
        attributes["reason"] = str(err_reason)
    attributes.update(kwargs)
    counter.add(1, attributes)


class _MetricsServer(ThreadingHTTPServer):
    allow_reuse_address = False
    daemon_threads = True


def _handler_for(collector):
    class _MetricsHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path.split("?", 1)[0] != "/metrics":
                self.send_error(404)
                return
            body = collector.render().encode()
            self.send_response(200)
            self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            _log.debug("%s - %s", self.address_string(), format % args)

    return _MetricsHandler


def serve_metrics(collector, port=9000):
    """Serve the collector's metrics at /metrics until the process ends."""
    try:
        with _MetricsServer(("", port), _handler_for(collector)) as server:
            server.serve_forever()
    except OSError as exc:
        print(f"error serving metrics: {exc}")