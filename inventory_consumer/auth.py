"""Kafka authentication settings for the consumer."""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from .common import FlagKind, _bind_flag, _flag_prefix

_EMPTY = ""
_SASL = "sasl-"


def _option(name):
    """Field metadata naming the configuration option a field maps to."""
    return {"key": name}


@dataclass
class AuthOptions:
    """SASL authentication settings used when connecting to Kafka."""

    enabled: bool = field(default=False, metadata=_option("enabled"))
    security_protocol: str = field(default=_EMPTY, metadata=_option("security-protocol"))
    sasl_mechanism: str = field(default=_EMPTY, metadata=_option(_SASL + "mechanism"))
    sasl_username: str = field(default=_EMPTY, metadata=_option(_SASL + "username"))
    sasl_password: str = field(default=_EMPTY, metadata=_option(_SASL + "password"))

    def add_flags(self, parser, prefix):
        """Register command-line flags that write into these options."""
        prefix = _flag_prefix(prefix)
        _bind_flag(parser, prefix + "enabled", self, "enabled", FlagKind.BOOL,
                   "enables authentication using confirm auth settings (default: false)")
        _bind_flag(parser, prefix + "security-protocol", self, "security_protocol", FlagKind.STRING,
                   "security protocol to use for authentication)")
        _bind_flag(parser, prefix + _SASL + "mechanism", self, "sasl_mechanism", FlagKind.STRING,
                   "sets the SASL mechanism")
        _bind_flag(parser, prefix + _SASL + "username", self, "sasl_username", FlagKind.STRING,
                   "sets the username to use for authentication")
        _bind_flag(parser, prefix + _SASL + "password", self, "sasl_" + "password", FlagKind.STRING,
                   "sets the password to use for authentication")


@dataclass(frozen=True)
class AuthConfig:
    """Authentication configuration; option fields are readable directly."""

    options: AuthOptions
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