"""Webhook subscription registry.

Owns the subscription lifecycle (create, update, soft delete, secret
rotation, suspension), the event-type catalog, and the matching query the
publisher uses to fan events out.

Every read and write is scoped to a tenant; nothing here ever returns a
row that belongs to another tenant.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import structlog

from src.config import Settings, settings
from src.webhooks.errors import NotFoundError, TransientDeliveryError, ValidationError
from src.webhooks.events import build_test_payload, serialize_payload
from src.webhooks.filters import parse_filters
from src.webhooks.models import (
    EventType,
    HealthStatus,
    ProbeResult,
    RateLimits,
    Subscription,
    SubscriptionCreate,
    SubscriptionUpdate,
)
from src.webhooks.security import build_signed_headers, generate_secret
from src.webhooks.storage import WebhookStorage
from src.webhooks.transport import post_webhook

logger = structlog.get_logger(__name__)

# Fields an update may explicitly set to None.
_CLEARABLE_FIELDS = frozenset({"description", "event_filters", "rate_limits"})


class SubscriptionRegistry:
    """Manages webhook subscriptions and the event-type catalog."""

    def __init__(self, storage: WebhookStorage, config: Settings | None = None) -> None:
        """Initialize the registry.

        Args:
            storage: Initialized webhook storage.
            config: Settings (uses global if not provided).
        """
        self._storage = storage
        self._config = config or settings
        self._logger = logger.bind(component="subscription_registry")

    # ------------------------------------------------------------------
    # Event-type catalog
    # ------------------------------------------------------------------

    async def register_event_type(
        self, name: str, *, description: str = "", enabled: bool = True
    ) -> EventType:
        """Add an event type to the catalog, or update an existing one."""
        if not name:
            raise ValidationError("Event type name is required", field="name")

        await self._storage.upsert_event_type(
            EventType(name=name, description=description, is_enabled=enabled)
        )
        self._logger.info("event_type_registered", event_type=name, enabled=enabled)

        event_type = await self._storage.get_event_type(name)
        if event_type is None:
            raise NotFoundError("event type", name)
        return event_type

    async def set_event_type_enabled(self, name: str, enabled: bool) -> None:
        if not await self._storage.set_event_type_enabled(name, enabled):
            raise NotFoundError("event type", name)
        self._logger.info("event_type_toggled", event_type=name, enabled=enabled)

    async def get_event_type(self, name: str) -> EventType | None:
        return await self._storage.get_event_type(name)

    async def list_event_types(self) -> list[EventType]:
        return await self._storage.list_event_types()

    async def _validate_event_types(self, event_types: Iterable[str]) -> None:
        requested = list(event_types)
        valid = await self._storage.get_enabled_event_types(requested)
        invalid = [name for name in requested if name not in valid]
        if invalid:
            raise ValidationError(
                f"Invalid or disabled event types: {', '.join(invalid)}",
                field="event_types",
                details={"invalid_event_types": invalid},
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(self, data: SubscriptionCreate) -> Subscription:
        """Create a subscription with a freshly generated secret.

        Args:
            data: Validated creation input.

        Returns:
            Created subscription.

        Raises:
            ValidationError: If an event type is unknown or disabled, or
                the filter is malformed.
        """
        await self._validate_event_types(data.event_types)
        parse_filters(data.event_filters)

        subscription = Subscription(
            **data.model_dump(),
            secret_key=generate_secret(),
            is_active=True,
            health_status=HealthStatus.HEALTHY,
        )
        await self._storage.insert_subscription(subscription)

        self._logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            event_count=len(subscription.event_types),
        )
        return subscription

    async def get(self, subscription_id: str, tenant_id: str) -> Subscription:
        """Get a live subscription.

        Raises:
            NotFoundError: If absent, owned by another tenant, or soft-deleted.
        """
        subscription = await self._storage.get_subscription(subscription_id, tenant_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    async def list_all(
        self,
        tenant_id: str,
        *,
        is_active: bool | None = None,
        health_status: HealthStatus | None = None,
        event_type: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Subscription]:
        """List a tenant's live subscriptions, newest first."""
        return await self._storage.list_subscriptions(
            tenant_id,
            is_active=is_active,
            health_status=health_status,
            event_type=event_type,
            limit=limit,
            offset=offset,
        )

    async def update(
        self, subscription_id: str, tenant_id: str, patch: SubscriptionUpdate
    ) -> Subscription:
        """Apply a partial update.

        Only fields explicitly set on `patch` are changed.

        Raises:
            NotFoundError: If absent or soft-deleted.
            ValidationError: If replacement event types are invalid.
        """
        subscription = await self.get(subscription_id, tenant_id)
        changes = patch.model_dump(exclude_unset=True)

        if changes.get("event_types") is not None:
            await self._validate_event_types(changes["event_types"])
        if "event_filters" in changes:
            parse_filters(changes["event_filters"])

        values: dict[str, Any] = {}
        for key in changes:
            value = getattr(patch, key)
            if value is None and key not in _CLEARABLE_FIELDS:
                continue
            values[key] = value
        if "rate_limits" in values and values["rate_limits"] is None:
            values["rate_limits"] = RateLimits()

        updated = subscription.model_copy(update={**values, "updated_at": datetime.now(UTC)})
        if not await self._storage.update_subscription(updated):
            raise NotFoundError("subscription", subscription_id)

        self._logger.info(
            "subscription_updated",
            subscription_id=subscription_id,
            fields=sorted(values),
        )
        return updated

    async def delete(self, subscription_id: str, tenant_id: str) -> None:
        """Soft-delete a subscription. It never matches again.

        Raises:
            NotFoundError: If absent or already deleted.
        """
        if not await self._storage.soft_delete_subscription(
            subscription_id, tenant_id, datetime.now(UTC)
        ):
            raise NotFoundError("subscription", subscription_id)
        self._logger.info("subscription_deleted", subscription_id=subscription_id)

    async def regenerate_secret(self, subscription_id: str, tenant_id: str) -> str:
        """Replace the signing secret.

        Deliveries signed before the rotation keep their stored signature.

        Returns:
            The new secret.
        """
        secret = generate_secret()
        if not await self._storage.replace_secret(
            subscription_id, tenant_id, secret, datetime.now(UTC)
        ):
            raise NotFoundError("subscription", subscription_id)
        self._logger.info("subscription_secret_regenerated", subscription_id=subscription_id)
        return secret

    async def suspend(self, subscription_id: str, tenant_id: str, reason: str) -> Subscription:
        """Put a subscription in SUSPENDED; it stops matching new events."""
        if not await self._storage.set_health_status(
            subscription_id, tenant_id, HealthStatus.SUSPENDED, reason, datetime.now(UTC)
        ):
            raise NotFoundError("subscription", subscription_id)
        self._logger.warning("subscription_suspended", subscription_id=subscription_id, reason=reason)
        return await self.get(subscription_id, tenant_id)

    async def resume(self, subscription_id: str, tenant_id: str) -> Subscription:
        """Lift a suspension; health restarts from HEALTHY."""
        if not await self._storage.set_health_status(
            subscription_id, tenant_id, HealthStatus.HEALTHY, None, datetime.now(UTC)
        ):
            raise NotFoundError("subscription", subscription_id)
        self._logger.info("subscription_resumed", subscription_id=subscription_id)
        return await self.get(subscription_id, tenant_id)

    # ------------------------------------------------------------------
    # Matching and delivery bookkeeping
    # ------------------------------------------------------------------

    async def matching(self, tenant_id: str, event_type: str) -> list[Subscription]:
        """Subscriptions of `tenant_id` that should receive `event_type`.

        Only active, non-deleted, non-suspended subscriptions are returned,
        oldest first.
        """
        return await self._storage.find_matching_subscriptions(tenant_id, event_type)

    async def record_outcome(self, subscription_id: str, *, success: bool) -> None:
        """Update counters and health after a delivery attempt.

        Health follows consecutive failures: DEGRADED from
        HEALTH_DEGRADED_AFTER, FAILING from HEALTH_FAILING_AFTER, and back
        to HEALTHY on the next success. SUSPENDED is never set or cleared here.
        """
        await self._storage.record_delivery_outcome(
            subscription_id,
            success=success,
            now=datetime.now(UTC),
            degraded_after=self._config.HEALTH_DEGRADED_AFTER,
            failing_after=self._config.HEALTH_FAILING_AFTER,
        )

    async def test(self, subscription_id: str, tenant_id: str) -> ProbeResult:
        """Send one signed probe to the subscription's endpoint.

        No delivery row is created; the result is returned directly.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        subscription = await self.get(subscription_id, tenant_id)

        body = serialize_payload(build_test_payload(subscription.id))
        headers, _ = build_signed_headers(
            body,
            subscription.secret_key,
            algorithm=subscription.signature_algorithm,
            header_name=subscription.signature_header,
            custom_headers=subscription.custom_headers,
        )

        try:
            response = await post_webhook(
                subscription.endpoint_url,
                body,
                headers,
                timeout_seconds=subscription.timeout_seconds,
                body_limit=self._config.RESPONSE_BODY_LIMIT,
            )
        except TransientDeliveryError as e:
            self._logger.info(
                "subscription_test_failed",
                subscription_id=subscription_id,
                error_code=e.code,
            )
            return ProbeResult(
                success=False,
                response_time_ms=e.response_time_ms or 0,
                error=e.message,
            )

        self._logger.info(
            "subscription_tested",
            subscription_id=subscription_id,
            status_code=response.status_code,
        )
        return ProbeResult(
            success=response.is_success,
            status_code=response.status_code,
            response_time_ms=response.time_ms,
            error=None if response.is_success else response.error_message,
        )
