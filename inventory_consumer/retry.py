"""Retry and backoff settings for the consumer."""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from .common import FlagKind, _bind_flag, _flag_prefix


@dataclass
class RetryOptions:
    """Retry limits and backoff parameters; -1 means retry forever."""

    consumer_max_retries: int = field(default=2, metadata={"key": "consumer-max-retries"})
    operation_max_retries: int = field(default=3, metadata={"key": "operation-max-retries"})
    backoff_factor: int = field(default=5, metadata={"key": "backoff-factor"})
    max_backoff_seconds: int = field(default=30, metadata={"key": "max-backoff-seconds"})

    def add_flags(self, parser, prefix):
        """Register command-line flags that write into these options."""
        prefix = _flag_prefix(prefix)
        _bind_flag(parser, prefix + "consumer-max-retries", self, "consumer_max_retries", FlagKind.INT,
                   "sets the max number of retries to process a message before killing consumer (default: 2)")
        _bind_flag(parser, prefix + "operation-max-retries", self, "operation_max_retries", FlagKind.INT,
                   "sets the max number of retries to execute a request before failing out (default: 3)")
        _bind_flag(parser, prefix + "backoff-factor", self, "backoff_factor", FlagKind.INT,
                   "value used to calculate backoff between requests/restarts (default: 5)")
        _bind_flag(parser, prefix + "max-backoff-seconds", self, "max_backoff_seconds", FlagKind.INT,
                   "maximum amount of time between retries for the consumer in seconds (default: 30)")

    def backoff(self, attempts):
        """Seconds to wait after the given number of failed attempts."""
        millis = min(self.backoff_factor * attempts * 300, self.max_backoff_seconds * 1000)
        return millis / 1000


@dataclass(frozen=True)
class RetryConfig:
    """Retry configuration; option fields are readable directly."""

    options: RetryOptions
    completed: bool = False

    def __getattr__(self, name):
        if name.startswith("__"):
            raise AttributeError(name)
        try:
            options = self.__dict__["options"]
        except KeyError:
            raise AttributeError(name) from None
        return getattr(options, name)

    def complete(self):
        """Return the completed form of this configuration."""
        return replace(self, completed=True)