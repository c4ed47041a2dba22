"""Webhook delivery dispatcher with retry logic.

Runs a recurring cycle that claims due deliveries from storage, sends
them with bounded concurrency and moves each one through its retry state
machine:

    PENDING -> SENDING -> SUCCEEDED | FAILED
    FAILED  -> SENDING -> SUCCEEDED | FAILED | ABANDONED

Every non-2xx response, timeout and network failure is retried the same
way until the subscription's max_attempts is used up.
"""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from src.config import Settings, settings
from src.webhooks.delivery_log import DeliveryLog
from src.webhooks.errors import InvalidStateError, NotFoundError, TransientDeliveryError
from src.webhooks.models import (
    Delivery,
    DeliveryError,
    DeliveryLogEntry,
    DeliveryResponse,
    DeliveryStatus,
    LogLevel,
    RetryPolicy,
)
from src.webhooks.registry import SubscriptionRegistry
from src.webhooks.storage import WebhookStorage
from src.webhooks.transport import post_webhook

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30

# (pending, succeeded, failed) adjustments applied to the event aggregates
_SUCCEEDED_DELTA = (-1, 1, 0)
_ABANDONED_DELTA = (-1, 0, 1)


def compute_retry_delay(policy: RetryPolicy, retry_count: int) -> float:
    """Seconds to wait before the next attempt.

    Args:
        policy: Subscription retry policy.
        retry_count: Failures so far, including the one just recorded.

    Returns:
        min(initial_delay * multiplier ** (retry_count - 1), max_delay)
    """
    return policy.delay_for(retry_count)


class DeliveryDispatcher:
    """Claims due deliveries and sends them to subscriber endpoints.

    Features:
    - Persistent retry schedule with exponential backoff
    - Bounded concurrency per cycle
    - Lease-based claiming, safe with several dispatcher processes
    - Audit trail in the delivery log
    """

    def __init__(
        self,
        storage: WebhookStorage,
        registry: SubscriptionRegistry,
        delivery_log: DeliveryLog | None = None,
        *,
        config: Settings | None = None,
        batch_size: int | None = None,
        concurrency: int | None = None,
        interval_seconds: float | None = None,
        lease_seconds: int | None = None,
        instance_id: str | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            storage: Initialized webhook storage.
            registry: Registry used to record subscription outcomes.
            delivery_log: Audit log (created on storage if not provided).
            config: Settings (uses global if not provided).
            batch_size: Max deliveries claimed per cycle.
            concurrency: Max concurrent delivery requests.
            interval_seconds: Pause between cycles when running in the background.
            lease_seconds: How long a claim is held before it can be reclaimed.
            instance_id: Lease owner name for this dispatcher.
        """
        config = config or settings
        self._storage = storage
        self._registry = registry
        self._delivery_log = delivery_log or DeliveryLog(storage)
        self._batch_size = batch_size or config.DISPATCH_BATCH_SIZE
        self._concurrency = concurrency or config.DISPATCH_CONCURRENCY
        self._interval = interval_seconds if interval_seconds is not None else config.DISPATCH_INTERVAL_SECONDS
        self._lease_seconds = lease_seconds or config.DELIVERY_LEASE_SECONDS
        self._body_limit = config.RESPONSE_BODY_LIMIT
        self._instance_id = instance_id or f"dispatcher-{uuid.uuid4().hex[:12]}"

        self._semaphore = asyncio.Semaphore(self._concurrency)
        self._processing = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._logger = logger.bind(component="delivery_dispatcher", instance_id=self._instance_id)

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background dispatch loop."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self._logger.info("dispatcher_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        """Stop scheduling new cycles and wait for the current one to finish.

        Requests already in flight are allowed to complete.
        """
        self._stop_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._logger.info("dispatcher_stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception as e:
                self._logger.error("dispatch_cycle_failed", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    async def run_cycle(self) -> int:
        """Claim and send one batch of due deliveries.

        A cycle that starts while another is still running returns
        immediately.

        Returns:
            Number of deliveries attempted.
        """
        if self._processing:
            self._logger.debug("dispatch_cycle_skipped")
            return 0

        self._processing = True
        try:
            now = datetime.now(UTC)
            deliveries = await self._storage.claim_due_deliveries(
                now=now,
                limit=self._batch_size,
                owner=self._instance_id,
                lease_expires_at=now + timedelta(seconds=self._lease_seconds),
            )
            if not deliveries:
                return 0

            self._logger.info("dispatch_cycle_started", claimed=len(deliveries))

            results = await asyncio.gather(
                *(self._deliver(delivery) for delivery in deliveries),
                return_exceptions=True,
            )
            for delivery, result in zip(deliveries, results):
                if isinstance(result, BaseException):
                    # The lease expires and another cycle picks it up again.
                    self._logger.error(
                        "delivery_processing_error",
                        delivery_id=delivery.id,
                        error=str(result),
                    )

            return len(deliveries)
        finally:
            self._processing = False

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, delivery: Delivery) -> None:
        """Make a single attempt for a claimed delivery and persist the outcome."""
        async with self._semaphore:
            subscription = await self._storage.get_subscription(
                delivery.subscription_id, include_deleted=True
            )
            policy = subscription.retry_policy if subscription else RetryPolicy()
            timeout = subscription.timeout_seconds if subscription else DEFAULT_TIMEOUT_SECONDS

            await self._log(
                delivery,
                LogLevel.INFO,
                "Starting webhook delivery",
                {"attempt_number": delivery.attempt_number, "url": delivery.request.url},
            )

            try:
                response = await post_webhook(
                    delivery.request.url,
                    delivery.request.body,
                    delivery.request.headers,
                    timeout_seconds=timeout,
                    body_limit=self._body_limit,
                )
                response.raise_for_delivery()
            except TransientDeliveryError as e:
                await self._handle_failure(delivery, policy, e)
                return

            now = datetime.now(UTC)
            delivery.status = DeliveryStatus.SUCCEEDED
            delivery.response = DeliveryResponse(
                status_code=response.status_code,
                headers=response.headers,
                body=response.body,
                time_ms=response.time_ms,
            )
            delivery.error = None
            delivery.next_retry_at = None
            delivery.completed_at = now

            if not await self._finish(delivery, _SUCCEEDED_DELTA):
                return

            await self._registry.record_outcome(delivery.subscription_id, success=True)
            self._logger.info(
                "delivery_success",
                delivery_id=delivery.id,
                subscription_id=delivery.subscription_id,
                status_code=response.status_code,
            )
            await self._log(
                delivery,
                LogLevel.INFO,
                "Webhook delivered successfully",
                {"status_code": response.status_code, "response_time_ms": response.time_ms},
            )

    async def _handle_failure(
        self,
        delivery: Delivery,
        policy: RetryPolicy,
        error: TransientDeliveryError,
    ) -> None:
        now = datetime.now(UTC)
        retry_count = delivery.retry_count + 1

        delivery.retry_count = retry_count
        delivery.error = DeliveryError(message=error.message, code=error.code)
        delivery.response = None
        if error.status_code is not None or error.response_time_ms is not None:
            delivery.response = DeliveryResponse(
                status_code=error.status_code,
                headers=error.response_headers,
                body=error.response_body,
                time_ms=error.response_time_ms,
            )

        abandoned = retry_count >= policy.max_attempts
        if abandoned:
            delivery.status = DeliveryStatus.ABANDONED
            delivery.next_retry_at = None
            delivery.completed_at = now
        else:
            delay = compute_retry_delay(policy, retry_count)
            delivery.status = DeliveryStatus.FAILED
            delivery.next_retry_at = now + timedelta(seconds=delay)
            delivery.completed_at = None

        if not await self._finish(delivery, _ABANDONED_DELTA if abandoned else None):
            return

        await self._registry.record_outcome(delivery.subscription_id, success=False)

        log_data = {
            "error_code": error.code,
            "error_message": error.message,
            "status_code": error.status_code,
            "retry_count": retry_count,
        }
        if abandoned:
            self._logger.error(
                "delivery_abandoned",
                delivery_id=delivery.id,
                subscription_id=delivery.subscription_id,
                attempts=retry_count,
                error_code=error.code,
            )
            await self._log(
                delivery,
                LogLevel.ERROR,
                "Webhook delivery abandoned after max retries",
                log_data,
            )
        else:
            self._logger.warning(
                "delivery_attempt_failed",
                delivery_id=delivery.id,
                subscription_id=delivery.subscription_id,
                retry_count=retry_count,
                error_code=error.code,
                next_retry_at=delivery.next_retry_at.isoformat(),
            )
            await self._log(
                delivery,
                LogLevel.WARN,
                "Webhook delivery failed, will retry",
                {**log_data, "next_retry_at": delivery.next_retry_at.isoformat()},
            )

    async def _finish(self, delivery: Delivery, event_delta: tuple[int, int, int] | None) -> bool:
        finished = await self._storage.finish_attempt(
            delivery, owner=self._instance_id, event_delta=event_delta
        )
        if not finished:
            self._logger.warning("delivery_lease_lost", delivery_id=delivery.id)
        return finished

    async def _log(
        self,
        delivery: Delivery,
        level: LogLevel,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        await self._delivery_log.append(delivery.tenant_id, delivery.id, level, message, data)

    # ------------------------------------------------------------------
    # Operator actions and queries
    # ------------------------------------------------------------------

    async def retry_delivery(self, delivery_id: str, tenant_id: str) -> Delivery:
        """Put a FAILED or ABANDONED delivery back in the queue.

        It becomes due immediately. An ABANDONED delivery starts over with
        a fresh retry budget.

        Raises:
            NotFoundError: If the delivery does not exist for the tenant.
            InvalidStateError: If the delivery is not FAILED or ABANDONED.
        """
        result = await self._storage.requeue_delivery(
            delivery_id, tenant_id, now=datetime.now(UTC)
        )
        if result is None:
            existing = await self._storage.get_delivery(delivery_id, tenant_id)
            if existing is None:
                raise NotFoundError("delivery", delivery_id)
            raise InvalidStateError(
                f"Delivery {delivery_id} is {existing.status.value} and cannot be retried",
                details={"delivery_id": delivery_id, "status": existing.status.value},
            )

        delivery, previous = result
        self._logger.info(
            "delivery_requeued",
            delivery_id=delivery_id,
            previous_status=previous.value,
        )
        await self._log(
            delivery,
            LogLevel.INFO,
            "Webhook delivery manually retried",
            {"previous_status": previous.value},
        )
        return delivery

    async def get_delivery(self, delivery_id: str, tenant_id: str) -> Delivery:
        """Get a delivery.

        Raises:
            NotFoundError: If the delivery does not exist for the tenant.
        """
        delivery = await self._storage.get_delivery(delivery_id, tenant_id)
        if delivery is None:
            raise NotFoundError("delivery", delivery_id)
        return delivery

    async def list_deliveries(
        self,
        tenant_id: str,
        *,
        subscription_id: str | None = None,
        event_id: str | None = None,
        status: DeliveryStatus | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Delivery]:
        """List a tenant's deliveries, newest first."""
        return await self._storage.list_deliveries(
            tenant_id,
            subscription_id=subscription_id,
            event_id=event_id,
            status=status,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )

    async def list_delivery_logs(self, delivery_id: str, tenant_id: str) -> list[DeliveryLogEntry]:
        """Audit trail of one delivery, oldest first."""
        return await self._delivery_log.list_entries(delivery_id, tenant_id)
