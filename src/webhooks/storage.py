"""SQLite-based storage for webhook subscriptions, events and deliveries.

This module is the durable store behind the registry, publisher and
dispatcher. Retry schedules live in the deliveries table so they survive
process restarts.

All access goes through one connection guarded by an asyncio lock, and
multi-statement writes run inside explicit ``BEGIN IMMEDIATE`` transactions.
Due deliveries are claimed with a single ``UPDATE ... RETURNING`` that also
stamps a lease, so several dispatcher processes may share one database
without sending the same attempt twice.
"""

import asyncio
import json
import sqlite3
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.config import settings
from src.webhooks.errors import DeliveryLogError
from src.webhooks.models import (
    Delivery,
    DeliveryError,
    DeliveryLogEntry,
    DeliveryRequest,
    DeliveryResponse,
    DeliveryStatus,
    Event,
    EventType,
    HealthStatus,
    LogLevel,
    RateLimits,
    RetryPolicy,
    Subscription,
)

logger = structlog.get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS webhook_event_types (
        name TEXT PRIMARY KEY,
        description TEXT NOT NULL DEFAULT '',
        is_enabled INTEGER NOT NULL DEFAULT 1,
        total_events_published INTEGER NOT NULL DEFAULT 0,
        last_published_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_subscriptions (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        endpoint_url TEXT NOT NULL,
        event_types TEXT NOT NULL,
        event_filters TEXT,
        secret_key TEXT NOT NULL,
        signature_algorithm TEXT NOT NULL,
        signature_header TEXT NOT NULL,
        max_retry_attempts INTEGER NOT NULL,
        initial_retry_delay_seconds INTEGER NOT NULL,
        retry_backoff_multiplier REAL NOT NULL,
        max_retry_delay_seconds INTEGER NOT NULL,
        max_events_per_minute INTEGER,
        max_events_per_hour INTEGER,
        max_events_per_day INTEGER,
        timeout_seconds INTEGER NOT NULL,
        custom_headers TEXT NOT NULL,
        total_events_sent INTEGER NOT NULL DEFAULT 0,
        total_events_failed INTEGER NOT NULL DEFAULT 0,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        last_successful_delivery_at TEXT,
        last_failed_delivery_at TEXT,
        health_status TEXT NOT NULL DEFAULT 'HEALTHY',
        suspended_reason TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        event_version TEXT NOT NULL,
        event_timestamp TEXT NOT NULL,
        event_data TEXT NOT NULL,
        event_metadata TEXT,
        source_entity_type TEXT,
        source_entity_id TEXT,
        total_subscriptions_matched INTEGER NOT NULL DEFAULT 0,
        total_deliveries_pending INTEGER NOT NULL DEFAULT 0,
        total_deliveries_succeeded INTEGER NOT NULL DEFAULT 0,
        total_deliveries_failed INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_deliveries (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        subscription_id TEXT NOT NULL REFERENCES webhook_subscriptions(id),
        event_id TEXT NOT NULL REFERENCES webhook_events(id),
        attempt_number INTEGER NOT NULL,
        status TEXT NOT NULL,
        request_url TEXT NOT NULL,
        request_headers TEXT NOT NULL,
        request_body TEXT NOT NULL,
        request_signature TEXT NOT NULL,
        response_status_code INTEGER,
        response_headers TEXT,
        response_body TEXT,
        response_time_ms INTEGER,
        error_message TEXT,
        error_code TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        next_retry_at TEXT,
        sent_at TEXT,
        completed_at TEXT,
        created_at TEXT NOT NULL,
        lease_owner TEXT,
        lease_expires_at TEXT,
        UNIQUE (event_id, subscription_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_delivery_logs (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        delivery_id TEXT NOT NULL,
        log_level TEXT NOT NULL,
        log_message TEXT NOT NULL,
        log_data TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_subscriptions_tenant
    ON webhook_subscriptions(tenant_id, deleted_at, is_active)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_events_tenant_timestamp
    ON webhook_events(tenant_id, event_timestamp)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_deliveries_due
    ON webhook_deliveries(status, next_retry_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_deliveries_rate_window
    ON webhook_deliveries(subscription_id, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_delivery_logs_delivery
    ON webhook_delivery_logs(delivery_id, created_at)
    """,
)


def _ts(value: datetime | None) -> str | None:
    """Format a datetime so that string order equals time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


_Params = Iterable[Any] | Mapping[str, Any]


def _bind(params: _Params) -> tuple[Any, ...] | Mapping[str, Any]:
    return params if isinstance(params, Mapping) else tuple(params)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


def _is_locked(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc)


# busy_timeout covers short waits; this covers contention between dispatcher
# processes that outlasts it.
_retry_on_locked = retry(
    retry=retry_if_exception(_is_locked),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    reraise=True,
)


class WebhookStorage:
    """SQLite-backed persistence for the webhook pipeline.

    Example:
        storage = WebhookStorage("./data/webhooks.db")
        await storage.initialize()
        ...
        await storage.close()
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        """Initialize the storage.

        Args:
            db_path: Path to SQLite database.
                Defaults to WEBHOOK_DB_PATH env var or ./data/webhooks.db
        """
        self.db_path = Path(db_path or settings.WEBHOOK_DB_PATH)
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._logger = logger.bind(component="webhook_storage")

    async def initialize(self) -> None:
        """Open the connection and create tables."""
        if self._connection is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._connection.row_factory = aiosqlite.Row

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")
        await self._connection.execute("PRAGMA foreign_keys=ON")
        for statement in _SCHEMA:
            await self._connection.execute(statement)

        self._logger.info("storage_initialized", db_path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    def _db(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("WebhookStorage.initialize() has not been called")
        return self._connection

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        db = self._db()
        async with self._lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    async def _fetchall(self, query: str, params: _Params = ()) -> list[aiosqlite.Row]:
        async with self._lock:
            async with self._db().execute(query, _bind(params)) as cursor:
                return list(await cursor.fetchall())

    async def _fetchone(self, query: str, params: _Params = ()) -> aiosqlite.Row | None:
        async with self._lock:
            async with self._db().execute(query, _bind(params)) as cursor:
                return await cursor.fetchone()

    async def _execute(self, query: str, params: _Params = ()) -> int:
        async with self._lock:
            cursor = await self._db().execute(query, _bind(params))
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Event types
    # ------------------------------------------------------------------

    async def upsert_event_type(self, event_type: EventType) -> None:
        """Insert or update an event type's description and enabled flag."""
        await self._execute(
            """
            INSERT INTO webhook_event_types (name, description, is_enabled)
            VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                description = excluded.description,
                is_enabled = excluded.is_enabled
            """,
            (event_type.name, event_type.description, int(event_type.is_enabled)),
        )

    async def get_event_type(self, name: str) -> EventType | None:
        row = await self._fetchone("SELECT * FROM webhook_event_types WHERE name = ?", (name,))
        return self._row_to_event_type(row) if row else None

    async def list_event_types(self) -> list[EventType]:
        rows = await self._fetchall("SELECT * FROM webhook_event_types ORDER BY name")
        return [self._row_to_event_type(row) for row in rows]

    async def set_event_type_enabled(self, name: str, enabled: bool) -> bool:
        count = await self._execute(
            "UPDATE webhook_event_types SET is_enabled = ? WHERE name = ?",
            (int(enabled), name),
        )
        return count > 0

    async def get_enabled_event_types(self, names: Iterable[str]) -> set[str]:
        """Return the subset of names that exist and are enabled."""
        names = list(names)
        if not names:
            return set()
        placeholders = ", ".join("?" for _ in names)
        rows = await self._fetchall(
            f"SELECT name FROM webhook_event_types WHERE is_enabled = 1 AND name IN ({placeholders})",
            names,
        )
        return {row["name"] for row in rows}

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def insert_subscription(self, subscription: Subscription) -> None:
        await self._execute(
            """
            INSERT INTO webhook_subscriptions (
                id, tenant_id, name, description, endpoint_url, event_types,
                event_filters, secret_key, signature_algorithm, signature_header,
                max_retry_attempts, initial_retry_delay_seconds,
                retry_backoff_multiplier, max_retry_delay_seconds,
                max_events_per_minute, max_events_per_hour, max_events_per_day,
                timeout_seconds, custom_headers, total_events_sent,
                total_events_failed, consecutive_failures,
                last_successful_delivery_at, last_failed_delivery_at,
                health_status, suspended_reason, is_active, created_at,
                updated_at, deleted_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                      ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                subscription.id,
                subscription.tenant_id,
                subscription.name,
                subscription.description,
                subscription.endpoint_url,
                _dumps(subscription.event_types),
                _dumps(subscription.event_filters) if subscription.event_filters is not None else None,
                subscription.secret_key,
                subscription.signature_algorithm.value,
                subscription.signature_header,
                subscription.retry_policy.max_attempts,
                subscription.retry_policy.initial_delay_seconds,
                subscription.retry_policy.backoff_multiplier,
                subscription.retry_policy.max_delay_seconds,
                subscription.rate_limits.per_minute,
                subscription.rate_limits.per_hour,
                subscription.rate_limits.per_day,
                subscription.timeout_seconds,
                _dumps(subscription.custom_headers),
                subscription.total_sent,
                subscription.total_failed,
                subscription.consecutive_failures,
                _ts(subscription.last_success_at),
                _ts(subscription.last_failure_at),
                subscription.health_status.value,
                subscription.suspended_reason,
                int(subscription.is_active),
                _ts(subscription.created_at),
                _ts(subscription.updated_at),
                _ts(subscription.deleted_at),
            ),
        )

    async def get_subscription(
        self,
        subscription_id: str,
        tenant_id: str | None = None,
        *,
        include_deleted: bool = False,
    ) -> Subscription | None:
        """Get a subscription, optionally scoped to a tenant.

        Args:
            subscription_id: Subscription identifier.
            tenant_id: Owning tenant (None only for internal lookups).
            include_deleted: Also return soft-deleted rows.

        Returns:
            Subscription or None if not found.
        """
        conditions = ["id = ?"]
        params: list[Any] = [subscription_id]
        if tenant_id is not None:
            conditions.append("tenant_id = ?")
            params.append(tenant_id)
        if not include_deleted:
            conditions.append("deleted_at IS NULL")

        row = await self._fetchone(
            f"SELECT * FROM webhook_subscriptions WHERE {' AND '.join(conditions)}",
            params,
        )
        return self._row_to_subscription(row) if row else None

    async def list_subscriptions(
        self,
        tenant_id: str,
        *,
        is_active: bool | None = None,
        health_status: HealthStatus | None = None,
        event_type: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Subscription]:
        conditions = ["tenant_id = ?", "deleted_at IS NULL"]
        params: list[Any] = [tenant_id]

        if is_active is not None:
            conditions.append("is_active = ?")
            params.append(int(is_active))
        if health_status is not None:
            conditions.append("health_status = ?")
            params.append(HealthStatus(health_status).value)
        if event_type is not None:
            conditions.append("EXISTS (SELECT 1 FROM json_each(event_types) WHERE value = ?)")
            params.append(event_type)

        params.extend([limit, offset])
        rows = await self._fetchall(
            f"""
            SELECT * FROM webhook_subscriptions
            WHERE {' AND '.join(conditions)}
            ORDER BY created_at DESC
            LIMIT ? OFFSET ?
            """,
            params,
        )
        return [self._row_to_subscription(row) for row in rows]

    async def update_subscription(self, subscription: Subscription) -> bool:
        """Persist the mutable configuration of a live subscription.

        Counters, health and the secret are left alone; they have their own
        targeted updates.

        Returns:
            False if the subscription no longer exists or was soft-deleted.
        """
        count = await self._execute(
            """
            UPDATE webhook_subscriptions SET
                name = ?, description = ?, endpoint_url = ?, event_types = ?,
                event_filters = ?, max_retry_attempts = ?,
                initial_retry_delay_seconds = ?, retry_backoff_multiplier = ?,
                max_retry_delay_seconds = ?, max_events_per_minute = ?,
                max_events_per_hour = ?, max_events_per_day = ?,
                timeout_seconds = ?, custom_headers = ?, is_active = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ? AND deleted_at IS NULL
            """,
            (
                subscription.name,
                subscription.description,
                subscription.endpoint_url,
                _dumps(subscription.event_types),
                _dumps(subscription.event_filters) if subscription.event_filters is not None else None,
                subscription.retry_policy.max_attempts,
                subscription.retry_policy.initial_delay_seconds,
                subscription.retry_policy.backoff_multiplier,
                subscription.retry_policy.max_delay_seconds,
                subscription.rate_limits.per_minute,
                subscription.rate_limits.per_hour,
                subscription.rate_limits.per_day,
                subscription.timeout_seconds,
                _dumps(subscription.custom_headers),
                int(subscription.is_active),
                _ts(subscription.updated_at),
                subscription.id,
                subscription.tenant_id,
            ),
        )
        return count > 0

    async def set_health_status(
        self,
        subscription_id: str,
        tenant_id: str,
        status: HealthStatus,
        reason: str | None,
        now: datetime,
    ) -> bool:
        """Set health and suspension reason without touching counters."""
        count = await self._execute(
            """
            UPDATE webhook_subscriptions
            SET health_status = ?, suspended_reason = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ? AND deleted_at IS NULL
            """,
            (status.value, reason, _ts(now), subscription_id, tenant_id),
        )
        return count > 0

    async def soft_delete_subscription(self, subscription_id: str, tenant_id: str, now: datetime) -> bool:
        count = await self._execute(
            """
            UPDATE webhook_subscriptions SET deleted_at = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ? AND deleted_at IS NULL
            """,
            (_ts(now), _ts(now), subscription_id, tenant_id),
        )
        return count > 0

    async def replace_secret(
        self, subscription_id: str, tenant_id: str, secret: str, now: datetime
    ) -> bool:
        count = await self._execute(
            """
            UPDATE webhook_subscriptions SET secret_key = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ? AND deleted_at IS NULL
            """,
            (secret, _ts(now), subscription_id, tenant_id),
        )
        return count > 0

    async def find_matching_subscriptions(self, tenant_id: str, event_type: str) -> list[Subscription]:
        """Active, live, non-suspended subscriptions of a tenant for an event type."""
        rows = await self._fetchall(
            """
            SELECT * FROM webhook_subscriptions
            WHERE tenant_id = ?
              AND is_active = 1
              AND deleted_at IS NULL
              AND health_status != 'SUSPENDED'
              AND EXISTS (SELECT 1 FROM json_each(event_types) WHERE value = ?)
            ORDER BY created_at ASC
            """,
            (tenant_id, event_type),
        )
        return [self._row_to_subscription(row) for row in rows]

    async def record_delivery_outcome(
        self,
        subscription_id: str,
        *,
        success: bool,
        now: datetime,
        degraded_after: int,
        failing_after: int,
    ) -> None:
        """Update a subscription's counters and health after an attempt.

        A SUSPENDED subscription keeps its status; only an operator lifts it.
        """
        if success:
            await self._execute(
                """
                UPDATE webhook_subscriptions SET
                    total_events_sent = total_events_sent + 1,
                    consecutive_failures = 0,
                    last_successful_delivery_at = ?,
                    health_status = CASE
                        WHEN health_status = 'SUSPENDED' THEN health_status
                        ELSE 'HEALTHY'
                    END
                WHERE id = ?
                """,
                (_ts(now), subscription_id),
            )
            return

        await self._execute(
            """
            UPDATE webhook_subscriptions SET
                total_events_failed = total_events_failed + 1,
                consecutive_failures = consecutive_failures + 1,
                last_failed_delivery_at = ?,
                health_status = CASE
                    WHEN health_status = 'SUSPENDED' THEN health_status
                    WHEN consecutive_failures + 1 >= ? THEN 'FAILING'
                    WHEN consecutive_failures + 1 >= ? THEN 'DEGRADED'
                    ELSE 'HEALTHY'
                END
            WHERE id = ?
            """,
            (_ts(now), failing_after, degraded_after, subscription_id),
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @_retry_on_locked
    async def record_publication(
        self,
        event: Event,
        deliveries: list[Delivery],
        *,
        now: datetime,
    ) -> None:
        """Write an event, its deliveries and event-type statistics atomically."""
        async with self._transaction() as db:
            await db.execute(
                """
                INSERT INTO webhook_events (
                    id, tenant_id, event_type, event_version, event_timestamp,
                    event_data, event_metadata, source_entity_type,
                    source_entity_id, total_subscriptions_matched,
                    total_deliveries_pending, total_deliveries_succeeded,
                    total_deliveries_failed, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.tenant_id,
                    event.event_type,
                    event.version,
                    _ts(event.timestamp),
                    _dumps(event.data),
                    _dumps(event.metadata) if event.metadata is not None else None,
                    event.source_entity_type,
                    event.source_entity_id,
                    event.subscriptions_matched,
                    event.deliveries_pending,
                    event.deliveries_succeeded,
                    event.deliveries_failed,
                    _ts(event.created_at),
                ),
            )

            for delivery in deliveries:
                await db.execute(
                    """
                    INSERT INTO webhook_deliveries (
                        id, tenant_id, subscription_id, event_id, attempt_number,
                        status, request_url, request_headers, request_body,
                        request_signature, retry_count, next_retry_at, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        delivery.id,
                        delivery.tenant_id,
                        delivery.subscription_id,
                        delivery.event_id,
                        delivery.attempt_number,
                        delivery.status.value,
                        delivery.request.url,
                        _dumps(delivery.request.headers),
                        delivery.request.body,
                        delivery.request.signature,
                        delivery.retry_count,
                        _ts(delivery.next_retry_at),
                        _ts(delivery.created_at),
                    ),
                )

            await db.execute(
                """
                UPDATE webhook_event_types SET
                    total_events_published = total_events_published + 1,
                    last_published_at = ?
                WHERE name = ?
                """,
                (_ts(now), event.event_type),
            )

    async def get_event(self, event_id: str, tenant_id: str) -> Event | None:
        row = await self._fetchone(
            "SELECT * FROM webhook_events WHERE id = ? AND tenant_id = ?",
            (event_id, tenant_id),
        )
        return self._row_to_event(row) if row else None

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
        conditions = ["tenant_id = ?"]
        params: list[Any] = [tenant_id]

        if event_type:
            conditions.append("event_type = ?")
            params.append(event_type)
        if source_entity_type:
            conditions.append("source_entity_type = ?")
            params.append(source_entity_type)
        if source_entity_id:
            conditions.append("source_entity_id = ?")
            params.append(source_entity_id)
        if since:
            conditions.append("event_timestamp >= ?")
            params.append(_ts(since))
        if until:
            conditions.append("event_timestamp <= ?")
            params.append(_ts(until))

        params.extend([limit, offset])
        rows = await self._fetchall(
            f"""
            SELECT * FROM webhook_events
            WHERE {' AND '.join(conditions)}
            ORDER BY event_timestamp DESC
            LIMIT ? OFFSET ?
            """,
            params,
        )
        return [self._row_to_event(row) for row in rows]

    # ------------------------------------------------------------------
    # Deliveries
    # ------------------------------------------------------------------

    async def count_deliveries_since(self, subscription_id: str, since: datetime) -> int:
        row = await self._fetchone(
            """
            SELECT COUNT(*) AS count FROM webhook_deliveries
            WHERE subscription_id = ? AND created_at >= ?
            """,
            (subscription_id, _ts(since)),
        )
        return int(row["count"]) if row else 0

    @_retry_on_locked
    async def claim_due_deliveries(
        self,
        *,
        now: datetime,
        limit: int,
        owner: str,
        lease_expires_at: datetime,
    ) -> list[Delivery]:
        """Atomically move due deliveries to SENDING and lease them to `owner`.

        Due means PENDING/FAILED with next_retry_at <= now, or SENDING with an
        expired lease (the previous owner died mid-attempt). Only deliveries of
        active, non-deleted subscriptions are claimed.

        Returns:
            Claimed deliveries, oldest first.
        """
        rows = await self._fetchall(
            """
            UPDATE webhook_deliveries SET
                status = 'SENDING',
                sent_at = :now,
                attempt_number = retry_count + 1,
                lease_owner = :owner,
                lease_expires_at = :lease
            WHERE id IN (
                SELECT d.id FROM webhook_deliveries d
                JOIN webhook_subscriptions s ON s.id = d.subscription_id
                WHERE s.is_active = 1
                  AND s.deleted_at IS NULL
                  AND (
                    (d.status IN ('PENDING', 'FAILED') AND d.next_retry_at <= :now)
                    OR (d.status = 'SENDING' AND d.lease_expires_at <= :now)
                  )
                ORDER BY d.created_at ASC
                LIMIT :limit
            )
            RETURNING *
            """,
            {"now": _ts(now), "owner": owner, "lease": _ts(lease_expires_at), "limit": limit},
        )
        deliveries = [self._row_to_delivery(row) for row in rows]
        deliveries.sort(key=lambda d: d.created_at)
        return deliveries

    @_retry_on_locked
    async def finish_attempt(
        self,
        delivery: Delivery,
        *,
        owner: str,
        event_delta: tuple[int, int, int] | None = None,
    ) -> bool:
        """Persist the outcome of an attempt and release the lease.

        Args:
            delivery: Delivery carrying its new state.
            owner: Lease owner that made the attempt.
            event_delta: (pending, succeeded, failed) adjustments for the
                event aggregates when the delivery became terminal.

        Returns:
            False if the lease was lost to another dispatcher meanwhile.
        """
        response = delivery.response or DeliveryResponse()
        async with self._transaction() as db:
            cursor = await db.execute(
                """
                UPDATE webhook_deliveries SET
                    status = ?, response_status_code = ?, response_headers = ?,
                    response_body = ?, response_time_ms = ?, error_message = ?,
                    error_code = ?, retry_count = ?, next_retry_at = ?,
                    completed_at = ?, lease_owner = NULL, lease_expires_at = NULL
                WHERE id = ? AND status = 'SENDING' AND lease_owner = ?
                """,
                (
                    delivery.status.value,
                    response.status_code,
                    _dumps(response.headers) if response.headers is not None else None,
                    response.body,
                    response.time_ms,
                    delivery.error.message if delivery.error else None,
                    delivery.error.code if delivery.error else None,
                    delivery.retry_count,
                    _ts(delivery.next_retry_at),
                    _ts(delivery.completed_at),
                    delivery.id,
                    owner,
                ),
            )
            if cursor.rowcount == 0:
                return False

            if event_delta is not None:
                await self._apply_event_delta(db, delivery.event_id, event_delta)
        return True

    @_retry_on_locked
    async def requeue_delivery(
        self, delivery_id: str, tenant_id: str, *, now: datetime
    ) -> tuple[Delivery, DeliveryStatus] | None:
        """Force a FAILED or ABANDONED delivery back to PENDING.

        An ABANDONED delivery gets a fresh retry budget and is counted as
        pending again on its event.

        Returns:
            (requeued delivery, previous status), or None if the delivery is
            missing or not in a retryable state.
        """
        async with self._transaction() as db:
            async with db.execute(
                "SELECT * FROM webhook_deliveries WHERE id = ? AND tenant_id = ?",
                (delivery_id, tenant_id),
            ) as cursor:
                row = await cursor.fetchone()

            if row is None or row["status"] not in (
                DeliveryStatus.FAILED.value,
                DeliveryStatus.ABANDONED.value,
            ):
                return None

            previous = DeliveryStatus(row["status"])
            retry_count = 0 if previous is DeliveryStatus.ABANDONED else row["retry_count"]

            async with db.execute(
                """
                UPDATE webhook_deliveries SET
                    status = 'PENDING', next_retry_at = ?, retry_count = ?,
                    error_message = NULL, error_code = NULL, completed_at = NULL
                WHERE id = ?
                RETURNING *
                """,
                (_ts(now), retry_count, delivery_id),
            ) as cursor:
                updated = await cursor.fetchone()

            if previous is DeliveryStatus.ABANDONED:
                await self._apply_event_delta(db, row["event_id"], (1, 0, -1))

        return self._row_to_delivery(updated), previous

    async def get_delivery(self, delivery_id: str, tenant_id: str) -> Delivery | None:
        row = await self._fetchone(
            "SELECT * FROM webhook_deliveries WHERE id = ? AND tenant_id = ?",
            (delivery_id, tenant_id),
        )
        return self._row_to_delivery(row) if row else None

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
        conditions = ["tenant_id = ?"]
        params: list[Any] = [tenant_id]

        if subscription_id:
            conditions.append("subscription_id = ?")
            params.append(subscription_id)
        if event_id:
            conditions.append("event_id = ?")
            params.append(event_id)
        if status:
            conditions.append("status = ?")
            params.append(DeliveryStatus(status).value)
        if since:
            conditions.append("created_at >= ?")
            params.append(_ts(since))
        if until:
            conditions.append("created_at <= ?")
            params.append(_ts(until))

        params.extend([limit, offset])
        rows = await self._fetchall(
            f"""
            SELECT * FROM webhook_deliveries
            WHERE {' AND '.join(conditions)}
            ORDER BY created_at DESC
            LIMIT ? OFFSET ?
            """,
            params,
        )
        return [self._row_to_delivery(row) for row in rows]

    async def _apply_event_delta(
        self, db: aiosqlite.Connection, event_id: str, delta: tuple[int, int, int]
    ) -> None:
        pending, succeeded, failed = delta
        await db.execute(
            """
            UPDATE webhook_events SET
                total_deliveries_pending = MAX(total_deliveries_pending + ?, 0),
                total_deliveries_succeeded = MAX(total_deliveries_succeeded + ?, 0),
                total_deliveries_failed = MAX(total_deliveries_failed + ?, 0)
            WHERE id = ?
            """,
            (pending, succeeded, failed, event_id),
        )

    # ------------------------------------------------------------------
    # Delivery log
    # ------------------------------------------------------------------

    async def insert_log_entry(self, entry: DeliveryLogEntry) -> None:
        """Append a delivery log entry.

        Raises:
            DeliveryLogError: If the row cannot be written.
        """
        try:
            await self._execute(
                """
                INSERT INTO webhook_delivery_logs (
                    id, tenant_id, delivery_id, log_level, log_message, log_data, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.tenant_id,
                    entry.delivery_id,
                    entry.level.value,
                    entry.message,
                    _dumps(entry.data) if entry.data is not None else None,
                    _ts(entry.created_at),
                ),
            )
        except (sqlite3.Error, RuntimeError, TypeError, ValueError) as e:
            raise DeliveryLogError(
                f"Failed to write delivery log entry: {e}",
                details={"delivery_id": entry.delivery_id},
            ) from e

    async def list_log_entries(self, delivery_id: str, tenant_id: str) -> list[DeliveryLogEntry]:
        rows = await self._fetchall(
            """
            SELECT * FROM webhook_delivery_logs
            WHERE delivery_id = ? AND tenant_id = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (delivery_id, tenant_id),
        )
        return [
            DeliveryLogEntry(
                id=row["id"],
                tenant_id=row["tenant_id"],
                delivery_id=row["delivery_id"],
                level=LogLevel(row["log_level"]),
                message=row["log_message"],
                data=_loads(row["log_data"]),
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_event_type(self, row: aiosqlite.Row) -> EventType:
        return EventType(
            name=row["name"],
            description=row["description"],
            is_enabled=bool(row["is_enabled"]),
            total_events_published=row["total_events_published"],
            last_published_at=_parse_ts(row["last_published_at"]),
        )

    def _row_to_subscription(self, row: aiosqlite.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            description=row["description"],
            endpoint_url=row["endpoint_url"],
            event_types=_loads(row["event_types"]),
            event_filters=_loads(row["event_filters"]),
            secret_key=row["secret_key"],
            signature_algorithm=row["signature_algorithm"],
            signature_header=row["signature_header"],
            retry_policy=RetryPolicy(
                max_attempts=row["max_retry_attempts"],
                initial_delay_seconds=row["initial_retry_delay_seconds"],
                backoff_multiplier=row["retry_backoff_multiplier"],
                max_delay_seconds=row["max_retry_delay_seconds"],
            ),
            rate_limits=RateLimits(
                per_minute=row["max_events_per_minute"],
                per_hour=row["max_events_per_hour"],
                per_day=row["max_events_per_day"],
            ),
            timeout_seconds=row["timeout_seconds"],
            custom_headers=_loads(row["custom_headers"]) or {},
            total_sent=row["total_events_sent"],
            total_failed=row["total_events_failed"],
            consecutive_failures=row["consecutive_failures"],
            last_success_at=_parse_ts(row["last_successful_delivery_at"]),
            last_failure_at=_parse_ts(row["last_failed_delivery_at"]),
            health_status=row["health_status"],
            suspended_reason=row["suspended_reason"],
            is_active=bool(row["is_active"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            deleted_at=_parse_ts(row["deleted_at"]),
        )

    def _row_to_event(self, row: aiosqlite.Row) -> Event:
        return Event(
            id=row["id"],
            tenant_id=row["tenant_id"],
            event_type=row["event_type"],
            version=row["event_version"],
            timestamp=_parse_ts(row["event_timestamp"]),
            data=_loads(row["event_data"]),
            metadata=_loads(row["event_metadata"]),
            source_entity_type=row["source_entity_type"],
            source_entity_id=row["source_entity_id"],
            subscriptions_matched=row["total_subscriptions_matched"],
            deliveries_pending=row["total_deliveries_pending"],
            deliveries_succeeded=row["total_deliveries_succeeded"],
            deliveries_failed=row["total_deliveries_failed"],
            created_at=_parse_ts(row["created_at"]),
        )

    def _row_to_delivery(self, row: aiosqlite.Row) -> Delivery:
        response = None
        if row["response_status_code"] is not None or row["response_time_ms"] is not None:
            response = DeliveryResponse(
                status_code=row["response_status_code"],
                headers=_loads(row["response_headers"]),
                body=row["response_body"],
                time_ms=row["response_time_ms"],
            )
        error = None
        if row["error_code"] is not None:
            error = DeliveryError(message=row["error_message"] or "", code=row["error_code"])

        return Delivery(
            id=row["id"],
            tenant_id=row["tenant_id"],
            subscription_id=row["subscription_id"],
            event_id=row["event_id"],
            attempt_number=row["attempt_number"],
            status=DeliveryStatus(row["status"]),
            request=DeliveryRequest(
                url=row["request_url"],
                headers=_loads(row["request_headers"]) or {},
                body=row["request_body"],
                signature=row["request_signature"],
            ),
            response=response,
            error=error,
            retry_count=row["retry_count"],
            next_retry_at=_parse_ts(row["next_retry_at"]),
            sent_at=_parse_ts(row["sent_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            created_at=_parse_ts(row["created_at"]),
            lease_owner=row["lease_owner"],
            lease_expires_at=_parse_ts(row["lease_expires_at"]),
        )
