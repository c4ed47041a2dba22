"""Multi-tenant webhook delivery core.

This module provides:
- SubscriptionRegistry: Subscription lifecycle and event-type catalog
- EventPublisher: Event recording and fan-out into queued deliveries
- DeliveryDispatcher: Recurring delivery with persistent retry schedule
- DeliveryLog: Append-only audit trail of delivery attempts
- HMAC signing and receiver-side verification helpers
"""

from src.webhooks.delivery_log import DeliveryLog
from src.webhooks.dispatcher import DeliveryDispatcher, compute_retry_delay
from src.webhooks.errors import (
    DeliveryLogError,
    InvalidStateError,
    NotFoundError,
    TransientDeliveryError,
    ValidationError,
    WebhookError,
)
from src.webhooks.models import (
    Delivery,
    DeliveryStatus,
    Event,
    EventType,
    HealthStatus,
    ProbeResult,
    RateLimits,
    RetryPolicy,
    SignatureAlgorithm,
    Subscription,
    SubscriptionCreate,
    SubscriptionUpdate,
    VerificationResult,
)
from src.webhooks.publisher import EventPublisher
from src.webhooks.registry import SubscriptionRegistry
from src.webhooks.security import (
    extract_signature,
    generate_secret,
    secure_compare,
    sign,
    validate_freshness,
    verify,
    verify_envelope,
)
from src.webhooks.service import WebhookService, get_webhook_service, set_webhook_service
from src.webhooks.storage import WebhookStorage

__all__ = [
    # Components
    "DeliveryDispatcher",
    "DeliveryLog",
    "EventPublisher",
    "SubscriptionRegistry",
    "WebhookService",
    "WebhookStorage",
    "get_webhook_service",
    "set_webhook_service",
    "compute_retry_delay",
    # Models
    "Delivery",
    "DeliveryStatus",
    "Event",
    "EventType",
    "HealthStatus",
    "ProbeResult",
    "RateLimits",
    "RetryPolicy",
    "SignatureAlgorithm",
    "Subscription",
    "SubscriptionCreate",
    "SubscriptionUpdate",
    "VerificationResult",
    # Errors
    "DeliveryLogError",
    "InvalidStateError",
    "NotFoundError",
    "TransientDeliveryError",
    "ValidationError",
    "WebhookError",
    # Security
    "extract_signature",
    "generate_secret",
    "secure_compare",
    "sign",
    "validate_freshness",
    "verify",
    "verify_envelope",
]
