"""Wiring for the webhook delivery core.

Builds storage, registry, publisher, dispatcher and delivery log around
one database so host applications only deal with a single object.
"""

from dataclasses import dataclass
from pathlib import Path

import structlog

from src.config import Settings, settings
from src.webhooks.delivery_log import DeliveryLog
from src.webhooks.dispatcher import DeliveryDispatcher
from src.webhooks.publisher import EventPublisher
from src.webhooks.registry import SubscriptionRegistry
from src.webhooks.storage import WebhookStorage

logger = structlog.get_logger(__name__)


@dataclass
class WebhookService:
    """The assembled webhook components."""

    storage: WebhookStorage
    registry: SubscriptionRegistry
    publisher: EventPublisher
    dispatcher: DeliveryDispatcher
    delivery_log: DeliveryLog

    @classmethod
    async def create(
        cls,
        db_path: Path | str | None = None,
        *,
        config: Settings | None = None,
    ) -> "WebhookService":
        """Open storage and build all components.

        Args:
            db_path: SQLite database path (defaults to WEBHOOK_DB_PATH).
            config: Settings (uses global if not provided).

        Returns:
            Ready-to-use service. The dispatcher is not started.
        """
        config = config or settings
        storage = WebhookStorage(db_path or config.WEBHOOK_DB_PATH)
        await storage.initialize()

        registry = SubscriptionRegistry(storage, config)
        delivery_log = DeliveryLog(storage)
        return cls(
            storage=storage,
            registry=registry,
            publisher=EventPublisher(storage, registry),
            dispatcher=DeliveryDispatcher(storage, registry, delivery_log, config=config),
            delivery_log=delivery_log,
        )

    async def close(self) -> None:
        """Stop the dispatcher and close storage."""
        await self.dispatcher.stop()
        await self.storage.close()
        logger.info("webhook_service_closed")


# Global service instance
_service: WebhookService | None = None


async def get_webhook_service() -> WebhookService:
    """Get the global webhook service.

    Returns:
        Singleton WebhookService.
    """
    global _service
    if _service is None:
        _service = await WebhookService.create()
    return _service


def set_webhook_service(service: WebhookService | None) -> None:
    """Set the global webhook service.

    Useful for testing.

    Args:
        service: WebhookService instance, or None to reset.
    """
    global _service
    _service = service
