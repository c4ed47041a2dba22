"""Webhook wire payloads.

Every delivery uses the same envelope so receivers can integrate once:

    {
        "event_id": "...",
        "event_type": "invoice.created",
        "event_timestamp": "2026-01-01T00:00:00+00:00",
        "data": {...},
        "metadata": {...}
    }
"""

import json
import uuid
from datetime import UTC, datetime
from typing import Any

from src.webhooks.models import Event

# Event type used for operator reachability probes
TEST_EVENT_TYPE = "webhook.test"


def build_wire_payload(event: Event) -> dict[str, Any]:
    """Build the delivery envelope for an event.

    Args:
        event: Persisted event.

    Returns:
        JSON-serializable envelope.
    """
    return {
        "event_id": event.id,
        "event_type": event.event_type,
        "event_timestamp": event.timestamp.isoformat(),
        "data": event.data,
        "metadata": event.metadata or {},
    }


def build_test_payload(subscription_id: str) -> dict[str, Any]:
    """Build the envelope sent by a subscription test probe.

    Args:
        subscription_id: Subscription being probed.

    Returns:
        JSON-serializable envelope.
    """
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": TEST_EVENT_TYPE,
        "event_timestamp": datetime.now(UTC).isoformat(),
        "data": {
            "message": "This is a test webhook event",
            "subscription_id": subscription_id,
        },
        "metadata": {},
    }


def serialize_payload(payload: dict[str, Any]) -> str:
    """Serialize an envelope to the exact body that is signed and sent.

    Args:
        payload: Envelope.

    Returns:
        Compact JSON string.
    """
    return json.dumps(payload, separators=(",", ":"), default=str)
