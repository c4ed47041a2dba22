"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults.
"""

import os
from dataclasses import dataclass


def _get_int_env(name: str, default: int) -> int:
    """Get an integer value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set or not an integer.

    Returns:
        Integer value from environment.
    """
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        WEBHOOK_DB_PATH: SQLite database holding subscriptions and deliveries.
        DISPATCH_INTERVAL_SECONDS: Pause between dispatch cycles.
        DISPATCH_BATCH_SIZE: Max deliveries claimed per cycle.
        DISPATCH_CONCURRENCY: Max concurrent outbound requests per cycle.
        DELIVERY_LEASE_SECONDS: How long a claimed delivery stays owned by
            one dispatcher before another instance may reclaim it.
        RESPONSE_BODY_LIMIT: Max characters of response body persisted.
        SIGNATURE_MAX_AGE_SECONDS: Default freshness window for verification.
        HEALTH_DEGRADED_AFTER: Consecutive failures before DEGRADED.
        HEALTH_FAILING_AFTER: Consecutive failures before FAILING.
        LOG_LEVEL: Logging level.
        LOG_FORMAT: "console" or "json".
    """

    # Storage
    WEBHOOK_DB_PATH: str = "./data/webhooks.db"

    # Dispatcher
    DISPATCH_INTERVAL_SECONDS: int = 30
    DISPATCH_BATCH_SIZE: int = 50
    DISPATCH_CONCURRENCY: int = 10
    DELIVERY_LEASE_SECONDS: int = 300
    RESPONSE_BODY_LIMIT: int = 10240

    # Verification
    SIGNATURE_MAX_AGE_SECONDS: int = 300

    # Subscription health
    HEALTH_DEGRADED_AFTER: int = 3
    HEALTH_FAILING_AFTER: int = 10

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        return cls(
            WEBHOOK_DB_PATH=os.getenv("WEBHOOK_DB_PATH", "./data/webhooks.db"),
            DISPATCH_INTERVAL_SECONDS=_get_int_env("DISPATCH_INTERVAL_SECONDS", 30),
            DISPATCH_BATCH_SIZE=_get_int_env("DISPATCH_BATCH_SIZE", 50),
            DISPATCH_CONCURRENCY=_get_int_env("DISPATCH_CONCURRENCY", 10),
            DELIVERY_LEASE_SECONDS=_get_int_env("DELIVERY_LEASE_SECONDS", 300),
            RESPONSE_BODY_LIMIT=_get_int_env("RESPONSE_BODY_LIMIT", 10240),
            SIGNATURE_MAX_AGE_SECONDS=_get_int_env("SIGNATURE_MAX_AGE_SECONDS", 300),
            HEALTH_DEGRADED_AFTER=_get_int_env("HEALTH_DEGRADED_AFTER", 3),
            HEALTH_FAILING_AFTER=_get_int_env("HEALTH_FAILING_AFTER", 10),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            LOG_FORMAT=os.getenv("LOG_FORMAT", "console"),
        )


# Global settings instance
settings = Settings.from_env()
