"""Append-only audit log of delivery attempts."""

from typing import Any

import structlog

from src.webhooks.errors import DeliveryLogError
from src.webhooks.models import DeliveryLogEntry, LogLevel
from src.webhooks.storage import WebhookStorage

logger = structlog.get_logger(__name__)


class DeliveryLog:
    """Writes delivery log entries without ever failing the caller.

    A failed write is reported through structlog and dropped, so it can
    never roll back the state transition it describes.
    """

    def __init__(self, storage: WebhookStorage) -> None:
        self._storage = storage
        self._logger = logger.bind(component="delivery_log")

    async def append(
        self,
        tenant_id: str,
        delivery_id: str,
        level: LogLevel,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> DeliveryLogEntry | None:
        """Append an entry.

        Returns:
            The stored entry, or None if it could not be written.
        """
        entry = DeliveryLogEntry(
            tenant_id=tenant_id,
            delivery_id=delivery_id,
            level=level,
            message=message,
            data=data,
        )
        try:
            await self._storage.insert_log_entry(entry)
        except DeliveryLogError as e:
            self._logger.error(
                "delivery_log_write_failed",
                delivery_id=delivery_id,
                level=level.value,
                error=str(e),
            )
            return None
        return entry

    async def list_entries(self, delivery_id: str, tenant_id: str) -> list[DeliveryLogEntry]:
        """Entries for one delivery, oldest first."""
        return await self._storage.list_log_entries(delivery_id, tenant_id)
