"""Webhook security utilities.

Provides HMAC signature generation and verification for webhook payloads
to ensure authenticity and prevent tampering, plus the freshness check that
consumers use to reject replayed payloads.

The signature is the hex HMAC of the exact body bytes that go on the wire,
so consumers must verify against the raw request body rather than a
re-serialized copy.
"""

import base64
import hashlib
import hmac
import json
import secrets
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import structlog

from src.config import settings
from src.webhooks.models import SignatureAlgorithm, VerificationResult

logger = structlog.get_logger(__name__)

# Default signature header name
SIGNATURE_HEADER = "X-Webhook-Signature"

# Tolerated clock skew for timestamps that lie in the future
CLOCK_SKEW_SECONDS = 30

# Payload field carrying the event time
TIMESTAMP_FIELD = "event_timestamp"

INVALID_SIGNATURE = "Invalid signature"
INVALID_JSON = "Invalid JSON payload"
INVALID_TIMESTAMP = "Webhook timestamp is invalid or too old"

_DIGESTS = {
    SignatureAlgorithm.SHA256: hashlib.sha256,
    SignatureAlgorithm.SHA512: hashlib.sha512,
}


def _to_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def generate_secret() -> str:
    """Generate a high-entropy signing secret (32 random bytes, base64)."""
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def sign(
    payload: str | bytes,
    secret: str,
    algorithm: SignatureAlgorithm | str = SignatureAlgorithm.SHA256,
) -> str:
    """Compute the HMAC signature of a payload.

    Args:
        payload: Exact body that is (or was) sent.
        secret: Subscription secret key.
        algorithm: sha256 or sha512.

    Returns:
        Hex digest.

    Raises:
        ValueError: If the algorithm is not supported.
    """
    try:
        digest = _DIGESTS[SignatureAlgorithm(algorithm)]
    except ValueError as e:
        raise ValueError(f"Unsupported signature algorithm: {algorithm}") from e

    return hmac.new(_to_bytes(secret), _to_bytes(payload), digest).hexdigest()


def secure_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time.

    Strings of different length are rejected up front; equal-length strings
    are compared without short-circuiting on content.
    """
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def verify(
    payload: str | bytes,
    signature: str,
    secret: str,
    algorithm: SignatureAlgorithm | str = SignatureAlgorithm.SHA256,
) -> bool:
    """Verify the HMAC signature of a payload.

    Args:
        payload: Body as received.
        signature: Claimed hex signature.
        secret: Subscription secret key.
        algorithm: sha256 or sha512.

    Returns:
        True if the signature matches.
    """
    expected = sign(payload, secret, algorithm)
    is_valid = secure_compare(signature, expected)

    if not is_valid:
        logger.debug("webhook_signature_invalid", algorithm=str(algorithm))

    return is_valid


def _parse_timestamp(timestamp: str | int | float | datetime) -> datetime | None:
    if isinstance(timestamp, datetime):
        parsed = timestamp
    elif isinstance(timestamp, bool):
        return None
    elif isinstance(timestamp, int | float):
        try:
            return datetime.fromtimestamp(timestamp, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(timestamp, str):
        try:
            parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def validate_freshness(
    timestamp: str | int | float | datetime,
    max_age_seconds: int | None = None,
    *,
    now: datetime | None = None,
) -> bool:
    """Check that a payload timestamp is recent enough to accept.

    Args:
        timestamp: ISO-8601 string, Unix seconds or datetime.
        max_age_seconds: Maximum accepted age (SIGNATURE_MAX_AGE_SECONDS if not provided).
        now: Reference time (defaults to current UTC time).

    Returns:
        False if the timestamp is unparsable, older than max_age_seconds,
        or more than CLOCK_SKEW_SECONDS in the future.
    """
    if max_age_seconds is None:
        max_age_seconds = settings.SIGNATURE_MAX_AGE_SECONDS

    parsed = _parse_timestamp(timestamp)
    if parsed is None:
        return False

    age = ((now or datetime.now(UTC)) - parsed).total_seconds()

    if age > max_age_seconds:
        logger.debug("webhook_timestamp_expired", age_seconds=age, max_age=max_age_seconds)
        return False

    if age < -CLOCK_SKEW_SECONDS:
        logger.debug("webhook_timestamp_in_future", skew_seconds=-age)
        return False

    return True


def verify_envelope(
    payload: str | bytes,
    signature: str,
    secret: str,
    algorithm: SignatureAlgorithm | str = SignatureAlgorithm.SHA256,
    max_age_seconds: int | None = None,
) -> VerificationResult:
    """Verify a received webhook: signature, JSON shape and freshness.

    Payloads without an event_timestamp field skip the freshness check.

    Args:
        payload: Raw body as received.
        signature: Value of the signature header.
        secret: Subscription secret key.
        algorithm: sha256 or sha512.
        max_age_seconds: Freshness window (SIGNATURE_MAX_AGE_SECONDS if not provided).

    Returns:
        VerificationResult with a reason when invalid.
    """
    if not verify(payload, signature, secret, algorithm):
        return VerificationResult(valid=False, reason=INVALID_SIGNATURE)

    try:
        parsed: Any = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return VerificationResult(valid=False, reason=INVALID_JSON)

    if isinstance(parsed, dict) and parsed.get(TIMESTAMP_FIELD) is not None:
        if not validate_freshness(parsed[TIMESTAMP_FIELD], max_age_seconds):
            return VerificationResult(valid=False, reason=INVALID_TIMESTAMP)

    return VerificationResult(valid=True)


def extract_signature(
    headers: Mapping[str, str | Sequence[str]],
    header_name: str = SIGNATURE_HEADER,
) -> str | None:
    """Find the signature header in a request, case-insensitively.

    Args:
        headers: Request headers.
        header_name: Signature header name.

    Returns:
        Header value (first value for repeated headers), or None.
    """
    wanted = header_name.lower()
    for name, value in headers.items():
        if name.lower() != wanted:
            continue
        if isinstance(value, str):
            return value
        return value[0] if value else None
    return None


def build_signed_headers(
    body: str,
    secret: str,
    *,
    algorithm: SignatureAlgorithm | str = SignatureAlgorithm.SHA256,
    header_name: str = SIGNATURE_HEADER,
    custom_headers: Mapping[str, str] | None = None,
) -> tuple[dict[str, str], str]:
    """Create HTTP headers with signature for webhook delivery.

    Args:
        body: Serialized body that will be sent.
        secret: Subscription secret key.
        algorithm: sha256 or sha512.
        header_name: Signature header name.
        custom_headers: Subscription-configured extra headers.

    Returns:
        Tuple of (headers, signature).
    """
    signature = sign(body, secret, algorithm)
    headers = {
        "Content-Type": "application/json",
        header_name: signature,
        **(custom_headers or {}),
    }
    return headers, signature
