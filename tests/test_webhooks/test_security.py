"""Tests for webhook security module."""

import base64
import hashlib
import hmac
import json
from datetime import UTC, datetime, timedelta

import pytest

from src.config import settings
from src.webhooks.models import SignatureAlgorithm
from src.webhooks.security import (
    INVALID_JSON,
    INVALID_SIGNATURE,
    INVALID_TIMESTAMP,
    SIGNATURE_HEADER,
    build_signed_headers,
    extract_signature,
    generate_secret,
    secure_compare,
    sign,
    validate_freshness,
    verify,
    verify_envelope,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def sample_body():
    """Sample serialized webhook body."""
    return json.dumps(
        {
            "event_id": "evt_123",
            "event_type": "invoice.created",
            "event_timestamp": datetime.now(UTC).isoformat(),
            "data": {"amount": 150},
            "metadata": {},
        },
        separators=(",", ":"),
    )


@pytest.fixture
def sample_secret():
    """Sample webhook secret."""
    return "whsec_test_secret_key"


# ============================================================================
# sign / verify Tests
# ============================================================================


class TestSign:
    """Tests for sign function."""

    def test_sign_sha256_matches_hmac(self, sample_body, sample_secret):
        """Test sha256 signature is the hex HMAC of the body."""
        expected = hmac.new(
            sample_secret.encode(), sample_body.encode(), hashlib.sha256
        ).hexdigest()

        assert sign(sample_body, sample_secret) == expected
        assert len(sign(sample_body, sample_secret)) == 64

    def test_sign_sha512(self, sample_body, sample_secret):
        """Test sha512 signatures are 128 hex chars."""
        signature = sign(sample_body, sample_secret, SignatureAlgorithm.SHA512)
        assert len(signature) == 128

    def test_sign_accepts_algorithm_string(self, sample_body, sample_secret):
        """Test algorithm given as plain string."""
        assert sign(sample_body, sample_secret, "sha512") == sign(
            sample_body, sample_secret, SignatureAlgorithm.SHA512
        )

    def test_sign_bytes_and_str_agree(self, sample_body, sample_secret):
        """Test bytes and text of the same body sign identically."""
        assert sign(sample_body.encode(), sample_secret) == sign(sample_body, sample_secret)

    def test_sign_deterministic(self, sample_body, sample_secret):
        """Test that same input produces same signature."""
        assert sign(sample_body, sample_secret) == sign(sample_body, sample_secret)

    def test_sign_different_secrets(self, sample_body):
        """Test that different secrets produce different signatures."""
        assert sign(sample_body, "secret1") != sign(sample_body, "secret2")

    def test_sign_unsupported_algorithm(self, sample_body, sample_secret):
        """Test unsupported algorithm raises ValueError."""
        with pytest.raises(ValueError, match="Unsupported signature algorithm"):
            sign(sample_body, sample_secret, "md5")


class TestVerify:
    """Tests for verify function."""

    @pytest.mark.parametrize("algorithm", [SignatureAlgorithm.SHA256, SignatureAlgorithm.SHA512])
    def test_verify_own_signature(self, sample_body, sample_secret, algorithm):
        """Test verifying a signature produced by sign."""
        signature = sign(sample_body, sample_secret, algorithm)
        assert verify(sample_body, signature, sample_secret, algorithm) is True

    def test_verify_modified_body(self, sample_body, sample_secret):
        """Test a single changed byte invalidates the signature."""
        signature = sign(sample_body, sample_secret)
        tampered = sample_body.replace("150", "151")

        assert verify(tampered, signature, sample_secret) is False

    def test_verify_wrong_secret(self, sample_body, sample_secret):
        """Test verification fails with the wrong secret."""
        signature = sign(sample_body, sample_secret)
        assert verify(sample_body, signature, "other_secret") is False

    def test_verify_wrong_length(self, sample_body, sample_secret):
        """Test a truncated signature is rejected."""
        signature = sign(sample_body, sample_secret)
        assert verify(sample_body, signature[:-2], sample_secret) is False

    def test_verify_algorithm_mismatch(self, sample_body, sample_secret):
        """Test a sha256 signature does not verify as sha512."""
        signature = sign(sample_body, sample_secret, SignatureAlgorithm.SHA256)
        assert verify(sample_body, signature, sample_secret, SignatureAlgorithm.SHA512) is False


class TestSecureCompare:
    """Tests for secure_compare function."""

    def test_equal_strings(self):
        assert secure_compare("abc123", "abc123") is True

    def test_different_strings(self):
        assert secure_compare("abc123", "abc124") is False

    def test_different_lengths(self):
        assert secure_compare("abc", "abcd") is False


class TestGenerateSecret:
    """Tests for generate_secret function."""

    def test_secret_is_32_random_bytes(self):
        """Test secret decodes to 32 bytes."""
        assert len(base64.b64decode(generate_secret())) == 32

    def test_secrets_unique(self):
        """Test secrets do not repeat."""
        assert len({generate_secret() for _ in range(20)}) == 20


# ============================================================================
# Freshness Tests
# ============================================================================


class TestValidateFreshness:
    """Tests for validate_freshness function."""

    def test_recent_event_accepted(self):
        """Test an event 20 seconds old is fresh."""
        timestamp = datetime.now(UTC) - timedelta(seconds=20)
        assert validate_freshness(timestamp.isoformat(), 300) is True

    def test_old_event_rejected(self):
        """Test an event 600 seconds old is stale with a 300 second window."""
        timestamp = datetime.now(UTC) - timedelta(seconds=600)
        assert validate_freshness(timestamp.isoformat(), 300) is False

    def test_small_future_skew_accepted(self):
        """Test timestamps slightly in the future are tolerated."""
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        assert validate_freshness(now + timedelta(seconds=10), 300, now=now) is True

    def test_far_future_rejected(self):
        """Test timestamps beyond the skew tolerance are rejected."""
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        assert validate_freshness(now + timedelta(seconds=120), 300, now=now) is False

    def test_zulu_suffix(self):
        """Test ISO strings ending in Z are parsed."""
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        assert validate_freshness("2026-01-01T11:59:00Z", 300, now=now) is True

    def test_unix_seconds(self):
        """Test numeric Unix timestamps are accepted."""
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        assert validate_freshness(now.timestamp() - 30, 300, now=now) is True

    def test_naive_datetime_treated_as_utc(self):
        """Test naive datetimes are interpreted as UTC."""
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        assert validate_freshness(datetime(2026, 1, 1, 11, 58, 0), 300, now=now) is True

    @pytest.mark.parametrize("value", ["not-a-date", "", True, None])
    def test_unparsable_rejected(self, value):
        """Test unparsable timestamps are rejected."""
        assert validate_freshness(value, 300) is False

    def test_default_window_from_settings(self, monkeypatch):
        """Test the window defaults to SIGNATURE_MAX_AGE_SECONDS."""
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        timestamp = now - timedelta(seconds=120)

        monkeypatch.setattr(settings, "SIGNATURE_MAX_AGE_SECONDS", 60)
        assert validate_freshness(timestamp, now=now) is False

        monkeypatch.setattr(settings, "SIGNATURE_MAX_AGE_SECONDS", 300)
        assert validate_freshness(timestamp, now=now) is True


# ============================================================================
# verify_envelope Tests
# ============================================================================


class TestVerifyEnvelope:
    """Tests for verify_envelope function."""

    def test_valid_envelope(self, sample_body, sample_secret):
        """Test a freshly signed envelope verifies."""
        result = verify_envelope(sample_body, sign(sample_body, sample_secret), sample_secret)

        assert result.valid is True
        assert result.reason is None

    def test_bad_signature(self, sample_body, sample_secret):
        """Test an invalid signature is reported first."""
        result = verify_envelope(sample_body, "0" * 64, sample_secret)

        assert result.valid is False
        assert result.reason == INVALID_SIGNATURE

    def test_invalid_json(self, sample_secret):
        """Test a correctly signed non-JSON body."""
        body = "not json"
        result = verify_envelope(body, sign(body, sample_secret), sample_secret)

        assert result.valid is False
        assert result.reason == INVALID_JSON

    def test_stale_timestamp(self, sample_secret):
        """Test an old event_timestamp is rejected."""
        old = (datetime.now(UTC) - timedelta(seconds=600)).isoformat()
        body = json.dumps({"event_id": "evt_1", "event_timestamp": old})
        result = verify_envelope(body, sign(body, sample_secret), sample_secret, max_age_seconds=300)

        assert result.valid is False
        assert result.reason == INVALID_TIMESTAMP

    def test_stale_by_configured_window(self, sample_secret, monkeypatch):
        """Test the default freshness window follows settings."""
        monkeypatch.setattr(settings, "SIGNATURE_MAX_AGE_SECONDS", 60)
        recent = (datetime.now(UTC) - timedelta(seconds=120)).isoformat()
        body = json.dumps({"event_id": "evt_1", "event_timestamp": recent})

        result = verify_envelope(body, sign(body, sample_secret), sample_secret)

        assert result.valid is False
        assert result.reason == INVALID_TIMESTAMP

    def test_missing_timestamp_skips_freshness(self, sample_secret):
        """Test payloads without event_timestamp are not age-checked."""
        body = json.dumps({"event_id": "evt_1", "data": {}})
        result = verify_envelope(body, sign(body, sample_secret), sample_secret)

        assert result.valid is True

    def test_sha512_envelope(self, sample_body, sample_secret):
        """Test verification with sha512."""
        signature = sign(sample_body, sample_secret, SignatureAlgorithm.SHA512)
        result = verify_envelope(
            sample_body, signature, sample_secret, SignatureAlgorithm.SHA512
        )
        assert result.valid is True


# ============================================================================
# Header Tests
# ============================================================================


class TestExtractSignature:
    """Tests for extract_signature function."""

    def test_case_insensitive(self):
        headers = {"x-webhook-signature": "abc"}
        assert extract_signature(headers) == "abc"

    def test_custom_header_name(self):
        headers = {"X-Acme-Sig": "abc", SIGNATURE_HEADER: "other"}
        assert extract_signature(headers, "x-acme-sig") == "abc"

    def test_list_value_returns_first(self):
        headers = {SIGNATURE_HEADER: ["first", "second"]}
        assert extract_signature(headers) == "first"

    def test_missing(self):
        assert extract_signature({"Content-Type": "application/json"}) is None


class TestBuildSignedHeaders:
    """Tests for build_signed_headers function."""

    def test_headers_contain_signature(self, sample_body, sample_secret):
        """Test content type, signature and custom headers are present."""
        headers, signature = build_signed_headers(
            sample_body,
            sample_secret,
            header_name="X-Sig",
            custom_headers={"X-Tenant": "acme"},
        )

        assert headers["Content-Type"] == "application/json"
        assert headers["X-Sig"] == signature
        assert headers["X-Tenant"] == "acme"
        assert verify(sample_body, signature, sample_secret)

    def test_default_header_name(self, sample_body, sample_secret):
        headers, signature = build_signed_headers(sample_body, sample_secret)
        assert headers[SIGNATURE_HEADER] == signature
