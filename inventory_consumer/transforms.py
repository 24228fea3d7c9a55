"""Turn host change events into inventory report requests."""

from __future__ import annotations

import uuid

from .types import CanonicalFacts, HostMessage


class TransformError(ValueError):
    """Raised when a host event cannot be turned into a request."""


def transform_host_to_report_resource_request(msg):
    """Build a report-resource request, as a dict, from a host change event."""
    try:
        host = HostMessage.from_json(msg)
    except ValueError as exc:
        raise TransformError(f"error unmarshaling Debezium message: {exc}") from exc

    payload = host.payload
    if payload.canonical_facts:
        try:
            CanonicalFacts.from_json(payload.canonical_facts)
        except ValueError as exc:
            raise TransformError(f"error unmarshaling canonical_facts: {exc}") from exc

    return {
        "type": "host",
        "reporter_type": "hbi",
        "reporter_instance_id": payload.id,
        "representations": {
            "metadata": {
                "local_resource_id": payload.id,
                "api_href": "https://apiHref.com/",
                "console_href": "https://www.console.com/",
                "reporter_version": "1.0",
            },
            "common": {"workspace_id": payload.organization_id},
            "reporter": {
                "satellite_id": str(uuid.uuid4()),
                "sub_manager_id": str(uuid.uuid4()),
                "insights_inventory_id": str(uuid.uuid4()),
                "ansible_host": payload.ansible_host,
            },
        },
    }