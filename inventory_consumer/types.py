"""Records carried by host change events."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, fields


def _text(data, key):
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string, got {type(value).__name__}")
    return value


def _load_object(raw, what):
    data = json.loads(raw)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"{what} must be a JSON object")
    return data


def _strings_from(cls, data, what):
    if data is None:
        return cls()
    if not isinstance(data, Mapping):
        raise ValueError(f"{what} must be a JSON object")
    return cls(**{f.name: _text(data, f.metadata["key"]) for f in fields(cls)})


@dataclass(frozen=True)
class HostPayload:
    """The row of a host as emitted in a change event; every value is text."""

    id: str = field(default="", metadata={"key": "id"})
    account: str = field(default="", metadata={"key": "account"})
    hostname: str = field(default="", metadata={"key": "hostname"})
    created_on: str = field(default="", metadata={"key": "created_on"})
    modified_on: str = field(default="", metadata={"key": "modified_on"})
    tags: str = field(default="", metadata={"key": "tags"})
    canonical_facts: str = field(default="", metadata={"key": "canonical_facts"})
    system_profile: str = field(default="", metadata={"key": "system_profile_facts"})
    ansible_host: str = field(default="", metadata={"key": "ansible_host"})
    reporter: str = field(default="", metadata={"key": "reporter"})
    organization_id: str = field(default="", metadata={"key": "organization_id"})
    deleted: str = field(default="", metadata={"key": "__deleted"})

    @classmethod
    def from_dict(cls, data):
        """Build a payload from decoded JSON; missing or null fields are empty."""
        return _strings_from(cls, data, "host payload")


@dataclass(frozen=True)
class HostMessage:
    """A host change event: its schema and its payload."""

    schema: dict = field(default_factory=dict)
    payload: HostPayload = field(default_factory=HostPayload)

    @classmethod
    def from_json(cls, raw):
        """Decode a change event from JSON text or bytes."""
        data = _load_object(raw, "host message")
        schema = data.get("schema")
        if schema is None:
            schema = {}
        elif not isinstance(schema, Mapping):
            raise ValueError("host message schema must be a JSON object")
        return cls(schema=dict(schema), payload=HostPayload.from_dict(data.get("payload")))


@dataclass(frozen=True)
class CanonicalFacts:
    """Identifying facts stored as JSON text inside a host payload."""

    bios_uuid: str = field(default="", metadata={"key": "bios_uuid"})
    insights_id: str = field(default="", metadata={"key": "insights_id"})
    subscription_manager_id: str = field(default="", metadata={"key": "subscription_manager_id"})

    @classmethod
    def from_json(cls, raw):
        """Decode canonical facts from JSON text or bytes."""
        return _strings_from(cls, _load_object(raw, "canonical facts"), "canonical facts")