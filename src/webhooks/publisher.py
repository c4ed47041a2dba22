"""Event publisher.

Records a business event once, fans it out to the tenant's matching
subscriptions and enqueues one PENDING delivery per subscription that
passes its filter and rate limits. Publishing never waits for delivery;
the dispatcher picks the queued deliveries up on its next cycle.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from src.webhooks.errors import NotFoundError, ValidationError
from src.webhooks.events import build_wire_payload, serialize_payload
from src.webhooks.filters import matches_filters
from src.webhooks.models import Delivery, DeliveryRequest, DeliveryStatus, Event, Subscription
from src.webhooks.registry import SubscriptionRegistry
from src.webhooks.security import build_signed_headers
from src.webhooks.storage import WebhookStorage

logger = structlog.get_logger(__name__)

_RATE_WINDOWS = (
    ("per_minute", timedelta(minutes=1)),
    ("per_hour", timedelta(hours=1)),
    ("per_day", timedelta(days=1)),
)


class EventPublisher:
    """Publishes events and enqueues their deliveries."""

    def __init__(self, storage: WebhookStorage, registry: SubscriptionRegistry) -> None:
        self._storage = storage
        self._registry = registry
        self._logger = logger.bind(component="event_publisher")

    async def publish(
        self,
        tenant_id: str,
        event_type: str,
        data: Any,
        metadata: dict[str, Any] | None = None,
        source_entity_type: str | None = None,
        source_entity_id: str | None = None,
    ) -> Event | None:
        """Publish an event for a tenant.

        Args:
            tenant_id: Tenant the event belongs to.
            event_type: Catalog name of the event type.
            data: Opaque event payload.
            metadata: Optional metadata forwarded to receivers.
            source_entity_type: Optional type of the entity that emitted it.
            source_entity_id: Optional id of that entity.

        Returns:
            The stored event, or None if the event type is disabled.

        Raises:
            ValidationError: If tenant_id or event_type is empty.
        """
        if not tenant_id:
            raise ValidationError("tenant_id is required", field="tenant_id")
        if not event_type:
            raise ValidationError("event_type is required", field="event_type")

        catalog_entry = await self._registry.get_event_type(event_type)
        if catalog_entry is None:
            self._logger.warning("unknown_event_type", event_type=event_type, tenant_id=tenant_id)
        elif not catalog_entry.is_enabled:
            self._logger.debug("event_type_disabled", event_type=event_type)
            return None

        now = datetime.now(UTC)
        event = Event(
            tenant_id=tenant_id,
            event_type=event_type,
            timestamp=now,
            data=data,
            metadata=metadata,
            source_entity_type=source_entity_type,
            source_entity_id=source_entity_id,
            created_at=now,
        )

        candidates = await self._registry.matching(tenant_id, event_type)
        body = serialize_payload(build_wire_payload(event))

        deliveries: list[Delivery] = []
        for subscription in candidates:
            if not matches_filters(data, subscription.event_filters):
                self._logger.debug(
                    "event_filtered",
                    event_id=event.id,
                    subscription_id=subscription.id,
                )
                continue

            if await self._rate_limited(subscription, now):
                continue

            deliveries.append(self._build_delivery(event, subscription, body, now))

        event.subscriptions_matched = len(candidates)
        event.deliveries_pending = len(deliveries)

        await self._storage.record_publication(event, deliveries, now=now)

        self._logger.info(
            "event_published",
            event_id=event.id,
            event_type=event_type,
            tenant_id=tenant_id,
            subscriptions_matched=len(candidates),
            deliveries_created=len(deliveries),
        )
        return event

    async def _rate_limited(self, subscription: Subscription, now: datetime) -> bool:
        """Check every configured window; the first exhausted one drops the event."""
        limits = subscription.rate_limits
        for attr, window in _RATE_WINDOWS:
            limit = getattr(limits, attr)
            if limit is None:
                continue
            count = await self._storage.count_deliveries_since(subscription.id, now - window)
            if count >= limit:
                self._logger.warning(
                    "rate_limit_exceeded",
                    subscription_id=subscription.id,
                    window=attr,
                    limit=limit,
                    count=count,
                )
                return True
        return False

    def _build_delivery(
        self,
        event: Event,
        subscription: Subscription,
        body: str,
        now: datetime,
    ) -> Delivery:
        headers, signature = build_signed_headers(
            body,
            subscription.secret_key,
            algorithm=subscription.signature_algorithm,
            header_name=subscription.signature_header,
            custom_headers=subscription.custom_headers,
        )
        return Delivery(
            tenant_id=event.tenant_id,
            subscription_id=subscription.id,
            event_id=event.id,
            attempt_number=1,
            status=DeliveryStatus.PENDING,
            request=DeliveryRequest(
                url=subscription.endpoint_url,
                headers=headers,
                body=body,
                signature=signature,
            ),
            retry_count=0,
            next_retry_at=now,
            created_at=now,
        )

    async def get_event(self, event_id: str, tenant_id: str) -> Event:
        """Get a published event.

        Raises:
            NotFoundError: If the event does not exist for the tenant.
        """
        event = await self._storage.get_event(event_id, tenant_id)
        if event is None:
            raise NotFoundError("event", event_id)
        return event

    async def list_events(
        self,
        tenant_id: str,
        *,
        event_type: str | None = None,
        source_entity_type: str | None = None,
        source_entity_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Event]:
        """List a tenant's events, newest first."""
        return await self._storage.list_events(
            tenant_id,
            event_type=event_type,
            source_entity_type=source_entity_type,
            source_entity_id=source_entity_id,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )
