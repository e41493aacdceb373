"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults.
"""

import os
from dataclasses import dataclass


def _get_bool_env(name: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set.

    Returns:
        Boolean value from environment.
    """
    value = os.getenv(name, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


def _get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value)


@dataclass
class Settings:
    """Outbound delivery settings loaded from environment variables.

    Attributes:
        DATABASE_PATH: SQLite file holding the email queue and webhook registry.
        EMAIL_BACKEND: "smtp" to send through an SMTP server, "http" to post
            messages to a mail relay API through the HTTP transport.
        SMTP_HOST: SMTP server host.
        SMTP_PORT: SMTP server port.
        SMTP_USER: SMTP username (optional).
        SMTP_PASS: SMTP password (optional).
        SMTP_USE_TLS: Upgrade the SMTP connection with STARTTLS.
        EMAIL_FROM: Sender address for outgoing mail.
        EMAIL_RELAY_URL: Mail relay endpoint used by the "http" backend.
        EMAIL_RELAY_API_KEY: Bearer token for the mail relay.
        EMAIL_POLL_INTERVAL_SECONDS: Period between email dispatcher ticks.
        EMAIL_BATCH_SIZE: Maximum messages claimed per tick.
        EMAIL_MAX_ATTEMPTS: Send attempts before a message is marked failed.
        EMAIL_CLAIM_LEASE_SECONDS: How long a claimed message stays invisible
            to other workers before it becomes eligible again.
        EMAIL_SEND_CONCURRENCY: Parallel sends within one tick.
        EMAIL_SEND_TIMEOUT_SECONDS: Timeout for a single send attempt.
        WEBHOOK_TIMEOUT_SECONDS: Timeout for a single webhook delivery.
        WEBHOOK_MAX_CONCURRENT: In-flight deliveries per fan-out call.
        WEBHOOK_USER_AGENT: User-Agent header sent with webhook deliveries.
        RESPONSE_EXCERPT_BYTES: Bytes of response body kept per delivery.
        FRONTEND_URL: Base URL used for links in notification emails.
        LOG_LEVEL: Logging level.
        LOG_FORMAT: "json" or "console".
    """

    # Persistence
    DATABASE_PATH: str = "./data/outbound.db"

    # Email transport
    EMAIL_BACKEND: str = "smtp"
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USER: str | None = None
    SMTP_PASS: str | None = None
    SMTP_USE_TLS: bool = False
    EMAIL_FROM: str = "noreply@insighthub.io"
    EMAIL_RELAY_URL: str | None = None
    EMAIL_RELAY_API_KEY: str | None = None

    # Email dispatcher
    EMAIL_POLL_INTERVAL_SECONDS: float = 60.0
    EMAIL_BATCH_SIZE: int = 100
    EMAIL_MAX_ATTEMPTS: int = 3
    EMAIL_CLAIM_LEASE_SECONDS: int = 600
    EMAIL_SEND_CONCURRENCY: int = 10
    EMAIL_SEND_TIMEOUT_SECONDS: float = 30.0

    # Webhooks
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_MAX_CONCURRENT: int = 10
    WEBHOOK_USER_AGENT: str = "InsightHub-Webhook/1.0"
    RESPONSE_EXCERPT_BYTES: int = 500

    # Templates
    FRONTEND_URL: str = "http://localhost:3000"

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
            DATABASE_PATH=os.getenv("DATABASE_PATH", "./data/outbound.db"),
            EMAIL_BACKEND=os.getenv("EMAIL_BACKEND", "smtp").lower(),
            SMTP_HOST=os.getenv("SMTP_HOST", "localhost"),
            SMTP_PORT=_get_int_env("SMTP_PORT", 587),
            SMTP_USER=os.getenv("SMTP_USER"),
            SMTP_PASS=os.getenv("SMTP_PASS"),
            SMTP_USE_TLS=_get_bool_env("SMTP_USE_TLS", default=False),
            EMAIL_FROM=os.getenv("EMAIL_FROM", "noreply@insighthub.io"),
            EMAIL_RELAY_URL=os.getenv("EMAIL_RELAY_URL"),
            EMAIL_RELAY_API_KEY=os.getenv("EMAIL_RELAY_API_KEY"),
            EMAIL_POLL_INTERVAL_SECONDS=_get_float_env("EMAIL_POLL_INTERVAL_SECONDS", 60.0),
            EMAIL_BATCH_SIZE=_get_int_env("EMAIL_BATCH_SIZE", 100),
            EMAIL_MAX_ATTEMPTS=_get_int_env("EMAIL_MAX_ATTEMPTS", 3),
            EMAIL_CLAIM_LEASE_SECONDS=_get_int_env("EMAIL_CLAIM_LEASE_SECONDS", 600),
            EMAIL_SEND_CONCURRENCY=_get_int_env("EMAIL_SEND_CONCURRENCY", 10),
            EMAIL_SEND_TIMEOUT_SECONDS=_get_float_env("EMAIL_SEND_TIMEOUT_SECONDS", 30.0),
            WEBHOOK_TIMEOUT_SECONDS=_get_float_env("WEBHOOK_TIMEOUT_SECONDS", 10.0),
            WEBHOOK_MAX_CONCURRENT=_get_int_env("WEBHOOK_MAX_CONCURRENT", 10),
            WEBHOOK_USER_AGENT=os.getenv("WEBHOOK_USER_AGENT", "InsightHub-Webhook/1.0"),
            RESPONSE_EXCERPT_BYTES=_get_int_env("RESPONSE_EXCERPT_BYTES", 500),
            FRONTEND_URL=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            LOG_FORMAT=os.getenv("LOG_FORMAT", "console").lower(),
        )
