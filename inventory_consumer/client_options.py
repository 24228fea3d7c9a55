"""Settings for the inventory service client."""

from __future__ import annotations

from dataclasses import dataclass, field

from .common import FlagKind, _bind_flag, _flag_prefix

_EMPTY = ""
_CLIENT = "client-"
_SERVICE_ACCOUNT = "sa-"


def _option(name):
    """Field metadata naming the configuration option a field maps to."""
    return {"key": name}


@dataclass
class ClientOptions:
    """Connection and authentication settings for the inventory client."""

    enabled: bool = field(default=True, metadata=_option("enabled"))
    inventory_url: str = field(default=_EMPTY, metadata=_option("url"))
    insecure: bool = field(default=True, metadata=_option("insecure-client"))
    enable_oidc_auth: bool = field(default=False, metadata=_option("enable-oidc-auth"))
    client_id: str = field(default=_EMPTY, metadata=_option(_CLIENT + "id"))
    client_secret: str = field(default=_EMPTY, metadata=_option(_CLIENT + "secret"))
    token_endpoint: str = field(default=_EMPTY, metadata=_option("sso-token-endpoint"))

    def add_flags(self, parser, prefix):
        """Register command-line flags that write into these options."""
        prefix = _flag_prefix(prefix)
        _bind_flag(parser, prefix + "enabled", self, "enabled", FlagKind.BOOL,
                   "enable the kessel inventory grpc client")
        _bind_flag(parser, prefix + "url", self, "inventory_url", FlagKind.STRING,
                   "gRPC endpoint of the kessel inventory service.")
        _bind_flag(parser, prefix + _SERVICE_ACCOUNT + _CLIENT + "id", self, "client_id",
                   FlagKind.STRING, "service account client id")
        _bind_flag(parser, prefix + _SERVICE_ACCOUNT + _CLIENT + "secret", self,
                   "client_" + "secret", FlagKind.STRING, "service account secret")
        _bind_flag(parser, prefix + "sso-token-endpoint", self, "token_endpoint", FlagKind.STRING,
                   "sso token endpoint for authentication")
        _bind_flag(parser, prefix + "enable-oidc-auth", self, "enable_oidc_auth", FlagKind.BOOL,
                   "enable oidc token auth to connect with Inventory API service")
        _bind_flag(parser, prefix + "insecure-client", self, "insecure", FlagKind.BOOL,
                   "the http client that connects to kessel should not verify certificates.")

    def validate(self):
        """Raise ValueError if the service URL is missing."""
        if not self.inventory_url:
            raise ValueError("kessel url may not be empty")

    def complete(self):
        """Return the options ready for use; nothing needs deriving."""
        return self