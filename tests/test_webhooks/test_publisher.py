"""Tests for the event publisher."""

import json

import pytest

from src.webhooks.errors import NotFoundError, ValidationError
from src.webhooks.models import (
    DeliveryStatus,
    RateLimits,
    SignatureAlgorithm,
    SubscriptionCreate,
)
from src.webhooks.publisher import EventPublisher
from src.webhooks.registry import SubscriptionRegistry
from src.webhooks.security import verify, verify_envelope
from src.webhooks.storage import WebhookStorage

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def storage(tmp_path):
    """Create initialized storage with a temp database."""
    store = WebhookStorage(db_path=tmp_path / "webhooks.db")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def registry(storage):
    """Create registry with an event catalog."""
    registry = SubscriptionRegistry(storage)
    await registry.register_event_type("invoice.created")
    await registry.register_event_type("invoice.voided", enabled=False)
    return registry


@pytest.fixture
def publisher(storage, registry):
    """Create publisher."""
    return EventPublisher(storage, registry)


async def subscribe(registry, tenant_id: str = "tenant-a", **overrides):
    values = {
        "tenant_id": tenant_id,
        "name": "Hook",
        "endpoint_url": "https://example.com/hook",
        "event_types": ["invoice.created"],
    }
    values.update(overrides)
    return await registry.create(SubscriptionCreate(**values))


# ============================================================================
# Publish Tests
# ============================================================================


class TestPublish:
    """Tests for EventPublisher.publish."""

    @pytest.mark.asyncio
    async def test_one_pending_delivery_per_subscription(self, publisher, registry, storage):
        first = await subscribe(registry)
        second = await subscribe(registry)

        event = await publisher.publish("tenant-a", "invoice.created", {"amount": 100})

        assert event is not None
        assert event.subscriptions_matched == 2
        assert event.deliveries_pending == 2

        deliveries = await storage.list_deliveries("tenant-a", event_id=event.id)
        assert {d.subscription_id for d in deliveries} == {first.id, second.id}
        for delivery in deliveries:
            assert delivery.status == DeliveryStatus.PENDING
            assert delivery.attempt_number == 1
            assert delivery.retry_count == 0
            assert delivery.next_retry_at is not None

    @pytest.mark.asyncio
    async def test_wire_body_and_signature(self, publisher, registry, storage):
        subscription = await subscribe(
            registry,
            signature_algorithm=SignatureAlgorithm.SHA512,
            signature_header="X-Acme-Signature",
            custom_headers={"X-Tenant": "acme"},
        )

        event = await publisher.publish(
            "tenant-a",
            "invoice.created",
            {"amount": 100},
            metadata={"source": "billing"},
            source_entity_type="invoice",
            source_entity_id="inv_1",
        )

        (delivery,) = await storage.list_deliveries("tenant-a")
        body = json.loads(delivery.request.body)
        assert body == {
            "event_id": event.id,
            "event_type": "invoice.created",
            "event_timestamp": event.timestamp.isoformat(),
            "data": {"amount": 100},
            "metadata": {"source": "billing"},
        }
        assert delivery.request.url == "https://example.com/hook"
        assert delivery.request.headers["Content-Type"] == "application/json"
        assert delivery.request.headers["X-Acme-Signature"] == delivery.request.signature
        assert delivery.request.headers["X-Tenant"] == "acme"
        assert verify(
            delivery.request.body,
            delivery.request.signature,
            subscription.secret_key,
            SignatureAlgorithm.SHA512,
        )
        assert verify_envelope(
            delivery.request.body,
            delivery.request.signature,
            subscription.secret_key,
            SignatureAlgorithm.SHA512,
        ).valid

    @pytest.mark.asyncio
    async def test_event_persisted(self, publisher, registry):
        await subscribe(registry)

        event = await publisher.publish(
            "tenant-a", "invoice.created", {"amount": 1}, source_entity_type="invoice", source_entity_id="inv_9"
        )

        stored = await publisher.get_event(event.id, "tenant-a")
        assert stored.version == "1.0"
        assert stored.data == {"amount": 1}
        assert stored.source_entity_id == "inv_9"
        assert stored.deliveries_pending == 1

    @pytest.mark.asyncio
    async def test_no_matching_subscriptions(self, publisher, storage):
        event = await publisher.publish("tenant-a", "invoice.created", {})

        assert event.subscriptions_matched == 0
        assert event.deliveries_pending == 0
        assert await storage.list_deliveries("tenant-a") == []

    @pytest.mark.asyncio
    async def test_disabled_event_type_dropped(self, publisher, registry, storage):
        await subscribe(registry)

        assert await publisher.publish("tenant-a", "invoice.voided", {}) is None
        assert await publisher.list_events("tenant-a") == []

    @pytest.mark.asyncio
    async def test_unknown_event_type_allowed(self, publisher):
        event = await publisher.publish("tenant-a", "order.shipped", {"id": 1})

        assert event is not None
        assert event.event_type == "order.shipped"

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, publisher, registry, storage):
        await subscribe(registry, "tenant-b")

        event = await publisher.publish("tenant-a", "invoice.created", {})

        assert event.subscriptions_matched == 0
        assert await storage.list_deliveries("tenant-b") == []

    @pytest.mark.asyncio
    async def test_updates_event_type_stats(self, publisher, registry):
        await publisher.publish("tenant-a", "invoice.created", {})
        await publisher.publish("tenant-b", "invoice.created", {})

        event_type = await registry.get_event_type("invoice.created")
        assert event_type.total_events_published == 2
        assert event_type.last_published_at is not None

    @pytest.mark.asyncio
    async def test_requires_tenant(self, publisher):
        with pytest.raises(ValidationError):
            await publisher.publish("", "invoice.created", {})


class TestFilters:
    """Tests for filter evaluation during publish."""

    @pytest.mark.asyncio
    async def test_filtered_subscription_skipped(self, publisher, registry, storage):
        big = await subscribe(registry, event_filters={"amount": {"$gte": 100}})
        everything = await subscribe(registry)

        event = await publisher.publish("tenant-a", "invoice.created", {"amount": 50})

        deliveries = await storage.list_deliveries("tenant-a", event_id=event.id)
        assert [d.subscription_id for d in deliveries] == [everything.id]
        assert event.subscriptions_matched == 2
        assert event.deliveries_pending == 1

        event = await publisher.publish("tenant-a", "invoice.created", {"amount": 150})
        deliveries = await storage.list_deliveries("tenant-a", event_id=event.id)
        assert {d.subscription_id for d in deliveries} == {big.id, everything.id}


class TestRateLimits:
    """Tests for per-subscription rate limits."""

    @pytest.mark.asyncio
    async def test_sixth_event_in_a_minute_dropped(self, publisher, registry, storage):
        limited = await subscribe(registry, rate_limits=RateLimits(per_minute=5))
        unlimited = await subscribe(registry)

        for _ in range(5):
            await publisher.publish("tenant-a", "invoice.created", {})
        event = await publisher.publish("tenant-a", "invoice.created", {})

        deliveries = await storage.list_deliveries("tenant-a", event_id=event.id)
        assert [d.subscription_id for d in deliveries] == [unlimited.id]
        assert len(await storage.list_deliveries("tenant-a", subscription_id=limited.id)) == 5
        assert len(await storage.list_deliveries("tenant-a", subscription_id=unlimited.id)) == 6

    @pytest.mark.asyncio
    async def test_hourly_limit(self, publisher, registry, storage):
        limited = await subscribe(registry, rate_limits=RateLimits(per_hour=2))

        for _ in range(3):
            await publisher.publish("tenant-a", "invoice.created", {})

        assert len(await storage.list_deliveries("tenant-a", subscription_id=limited.id)) == 2


class TestQueries:
    """Tests for event queries."""

    @pytest.mark.asyncio
    async def test_get_event_other_tenant(self, publisher):
        event = await publisher.publish("tenant-a", "invoice.created", {})
        with pytest.raises(NotFoundError):
            await publisher.get_event(event.id, "tenant-b")

    @pytest.mark.asyncio
    async def test_list_events_by_type(self, publisher):
        await publisher.publish("tenant-a", "invoice.created", {})
        other = await publisher.publish("tenant-a", "order.shipped", {})

        listed = await publisher.list_events("tenant-a", event_type="order.shipped")
        assert [e.id for e in listed] == [other.id]
