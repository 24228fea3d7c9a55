"""Kafka consumer settings."""

from __future__ import annotations

from dataclasses import dataclass, field

from .auth import AuthOptions
from .common import FlagKind, _bind_flag, _flag_prefix
from .retry import RetryOptions


@dataclass
class ConsumerOptions:
    """Settings for the Kafka consumer group."""

    bootstrap_servers: list = field(default_factory=list, metadata={"key": "bootstrap-servers"})
    consumer_group_id: str = field(default="kic", metadata={"key": "consumer-group-id"})
    topics: list = field(default_factory=list, metadata={"key": "topics"})
    session_timeout: str = field(default="45000", metadata={"key": "session-timeout"})
    heartbeat_interval: str = field(default="3000", metadata={"key": "heartbeat-interval"})
    max_poll_interval: str = field(default="300000", metadata={"key": "max-poll-interval"})
    enable_auto_commit: str = field(default="false", metadata={"key": "enable-auto-commit"})
    auto_offset_reset: str = field(default="earliest", metadata={"key": "auto-offset-reset"})
    statistics_interval: str = field(default="60000", metadata={"key": "statistics-interval-ms"})
    debug: str = field(default="", metadata={"key": "debug"})
    retry_options: RetryOptions = field(default_factory=RetryOptions, metadata={"key": "retry-options"})
    auth_options: AuthOptions = field(default_factory=AuthOptions, metadata={"key": "auth"})

    def add_flags(self, parser, prefix):
        """Register command-line flags, including the auth and retry ones."""
        prefix = _flag_prefix(prefix)
        _bind_flag(parser, prefix + "bootstrap-servers", self, "bootstrap_servers", FlagKind.SLICE,
                   "sets the bootstrap server address and port for Kafka")
        _bind_flag(parser, prefix + "consumer-group-id", self, "consumer_group_id", FlagKind.STRING,
                   "sets the Kafka consumer group name (default: inventory-consumer)")
        _bind_flag(parser, prefix + "topics", self, "topics", FlagKind.ARRAY,
                   "Kafka topic to monitor for events")
        _bind_flag(parser, prefix + "session-timeout", self, "session_timeout", FlagKind.STRING,
                   "time a consumer can live without sending heartbeat (default: 45000ms)")
        _bind_flag(parser, prefix + "heartbeat-interval", self, "heartbeat_interval", FlagKind.STRING,
                   "interval between heartbeats sent to Kafka (default: 3000ms, must be lower then session-timeout)")
        _bind_flag(parser, prefix + "max-poll-interval", self, "max_poll_interval", FlagKind.STRING,
                   "length of time consumer can go without polling before considered dead (default: 300000ms)")
        _bind_flag(parser, prefix + "enable-auto-commit", self, "enable_auto_commit", FlagKind.STRING,
                   "enables auto commit on consumer when messages are consumed (default: false)")
        _bind_flag(parser, prefix + "auto-offset-reset", self, "auto_offset_reset", FlagKind.STRING,
                   "action to take when there is no initial offset in offset store (default: earliest)")
        _bind_flag(parser, prefix + "statistics-interval-ms", self, "statistics_interval", FlagKind.STRING,
                   "librdkafka statistics emit interval (default: 30000ms)")
        _bind_flag(parser, prefix + "debug", self, "debug", FlagKind.STRING,
                   'a comma-separated list of debug contexts to enable (default: "")')

        self.auth_options.add_flags(parser, prefix + "auth")
        self.retry_options.add_flags(parser, prefix + "retry-options")

    def validate(self):
        """Raise ValueError listing every missing required setting."""
        problems = []
        if not self.bootstrap_servers:
            problems.append("bootstrap servers can not be empty")
        if not self.topics:
            problems.append("topic value can not be empty")
        if problems:
            raise ValueError("; ".join(problems))

    def complete(self):
        """Return the options ready for use; nothing needs deriving."""
        return self