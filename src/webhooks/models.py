"""Webhook data models.

Records persisted by the storage layer (subscriptions, event types, events,
deliveries, delivery log entries) and the inputs accepted by the registry.
"""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, HttpUrl, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError


_HTTP_URL = TypeAdapter(HttpUrl)

# RFC 9110 token characters for names; visible ASCII plus space and tab for values
_HEADER_NAME = re.compile(r"[!#$%&'*+.^_`|~0-9A-Za-z-]+")
_HEADER_VALUE = re.compile(r"[\t\x20-\x7e]*")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SignatureAlgorithm(str, Enum):
    """Supported HMAC digest algorithms."""

    SHA256 = "sha256"
    SHA512 = "sha512"


class HealthStatus(str, Enum):
    """Health of a subscription's endpoint."""

    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    FAILING = "FAILING"
    SUSPENDED = "SUSPENDED"


class DeliveryStatus(str, Enum):
    """Status of a webhook delivery.

    PENDING -> SENDING -> SUCCEEDED | FAILED
    FAILED -> SENDING -> SUCCEEDED | FAILED | ABANDONED
    """

    PENDING = "PENDING"
    SENDING = "SENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"


TERMINAL_STATUSES = (DeliveryStatus.SUCCEEDED, DeliveryStatus.ABANDONED)


class LogLevel(str, Enum):
    """Severity of a delivery log entry."""

    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class RetryPolicy(BaseModel):
    """Retry schedule for failed deliveries."""

    max_attempts: int = Field(default=5, ge=1, le=20, description="Attempts before abandoning")
    initial_delay_seconds: int = Field(default=60, ge=0, description="Delay after first failure")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Growth factor per retry")
    max_delay_seconds: int = Field(default=3600, ge=0, description="Upper bound on any delay")

    def delay_for(self, retry_count: int) -> float:
        """Delay before the next attempt after `retry_count` failures.

        The first failure waits initial_delay_seconds, each further failure
        multiplies it, capped at max_delay_seconds.

        Args:
            retry_count: Failures so far, including the one just recorded.

        Returns:
            Delay in seconds.
        """
        exponent = max(retry_count - 1, 0)
        return float(
            min(
                self.initial_delay_seconds * self.backoff_multiplier**exponent,
                self.max_delay_seconds,
            )
        )


class RateLimits(BaseModel):
    """Per-subscription delivery caps over trailing windows. None is unbounded."""

    per_minute: int | None = Field(default=None, ge=1)
    per_hour: int | None = Field(default=None, ge=1)
    per_day: int | None = Field(default=None, ge=1)


class Subscription(BaseModel):
    """A tenant-owned registration of a webhook endpoint."""

    id: str = Field(default_factory=lambda: f"sub_{uuid.uuid4().hex}")
    tenant_id: str
    name: str = ""
    description: str | None = None
    endpoint_url: str
    event_types: list[str] = Field(default_factory=list)
    event_filters: dict[str, Any] | None = None
    secret_key: str
    signature_algorithm: SignatureAlgorithm = SignatureAlgorithm.SHA256
    signature_header: str = "X-Webhook-Signature"
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    rate_limits: RateLimits = Field(default_factory=RateLimits)
    timeout_seconds: int = 30
    custom_headers: dict[str, str] = Field(default_factory=dict)

    # Statistics
    total_sent: int = 0
    total_failed: int = 0
    consecutive_failures: int = 0
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    health_status: HealthStatus = HealthStatus.HEALTHY
    suspended_reason: str | None = None

    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    deleted_at: datetime | None = None


class _SubscriptionFields(BaseModel):
    """Validation shared by create and update inputs."""

    @field_validator("endpoint_url", check_fields=False)
    @classmethod
    def _validate_url(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            _HTTP_URL.validate_python(value)
        except PydanticValidationError as e:
            raise ValueError(f"invalid endpoint URL: {value}") from e
        return value

    @field_validator("event_types", check_fields=False)
    @classmethod
    def _validate_event_types(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return value
        if not value:
            raise ValueError("at least one event type is required")
        return list(dict.fromkeys(value))

    @field_validator("custom_headers", check_fields=False)
    @classmethod
    def _validate_custom_headers(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        if value is None:
            return value
        for name, header_value in value.items():
            if not _HEADER_NAME.fullmatch(name):
                raise ValueError(f"invalid header name: {name!r}")
            if not _HEADER_VALUE.fullmatch(header_value):
                raise ValueError(f"header {name} must be printable ASCII")
        return value


class SubscriptionCreate(_SubscriptionFields):
    """Input for creating a subscription."""

    tenant_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    endpoint_url: str
    event_types: list[str]
    event_filters: dict[str, Any] | None = None
    signature_algorithm: SignatureAlgorithm = SignatureAlgorithm.SHA256
    signature_header: str = Field(default="X-Webhook-Signature", min_length=1)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    rate_limits: RateLimits = Field(default_factory=RateLimits)
    timeout_seconds: int = Field(default=30, ge=1, le=120)
    custom_headers: dict[str, str] = Field(default_factory=dict)


class SubscriptionUpdate(_SubscriptionFields):
    """Partial update of a subscription. Unset fields are left unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    endpoint_url: str | None = None
    is_active: bool | None = None
    event_types: list[str] | None = None
    event_filters: dict[str, Any] | None = None
    retry_policy: RetryPolicy | None = None
    rate_limits: RateLimits | None = None
    timeout_seconds: int | None = Field(default=None, ge=1, le=120)
    custom_headers: dict[str, str] | None = None


class EventType(BaseModel):
    """Catalog entry for a publishable event type."""

    name: str
    description: str = ""
    is_enabled: bool = True
    total_events_published: int = 0
    last_published_at: datetime | None = None


class Event(BaseModel):
    """Immutable record of a published business event."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    event_type: str
    version: str = "1.0"
    timestamp: datetime = Field(default_factory=_utcnow)
    data: Any = Field(default_factory=dict)
    metadata: dict[str, Any] | None = None
    source_entity_type: str | None = None
    source_entity_id: str | None = None

    # Aggregates
    subscriptions_matched: int = 0
    deliveries_pending: int = 0
    deliveries_succeeded: int = 0
    deliveries_failed: int = 0

    created_at: datetime = Field(default_factory=_utcnow)


class DeliveryRequest(BaseModel):
    """Signed request as it goes on the wire."""

    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: str
    signature: str


class DeliveryResponse(BaseModel):
    """Captured endpoint response."""

    status_code: int | None = None
    headers: dict[str, str] | None = None
    body: str | None = None
    time_ms: int | None = None


class DeliveryError(BaseModel):
    """Failure recorded for the latest attempt."""

    message: str
    code: str


class Delivery(BaseModel):
    """One attempt-tracked unit of work for an (event, subscription) pair."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    subscription_id: str
    event_id: str
    attempt_number: int = 1
    status: DeliveryStatus = DeliveryStatus.PENDING
    request: DeliveryRequest
    response: DeliveryResponse | None = None
    error: DeliveryError | None = None
    retry_count: int = 0
    next_retry_at: datetime | None = Field(default_factory=_utcnow)
    sent_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    # Claim lease
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the delivery has reached SUCCEEDED or ABANDONED."""
        return self.status in TERMINAL_STATUSES


class DeliveryLogEntry(BaseModel):
    """Append-only audit record written by the dispatcher."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    delivery_id: str
    level: LogLevel
    message: str
    data: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class ProbeResult(BaseModel):
    """Outcome of a synchronous endpoint probe."""

    success: bool
    status_code: int | None = None
    response_time_ms: int
    error: str | None = None


class VerificationResult(BaseModel):
    """Outcome of verifying a received webhook."""

    valid: bool
    reason: str | None = None

    @model_validator(mode="after")
    def _reason_only_when_invalid(self) -> VerificationResult:
        if self.valid and self.reason is not None:
            raise ValueError("a valid result carries no reason")
        return self
