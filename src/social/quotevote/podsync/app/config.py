"""
Settings and shared resource keys for the Pod sync service.

`Settings` is read from the environment once at startup. Names match fields
case-insensitively; a few fields also accept the names used by existing deployments
(`PORT`, `DATABASE_URL`, `REDIS_URL`, `TELEGRAF_HOST`, `TELEGRAF_PORT`).

The token encryption key is kept as a plain string here. It is parsed by the token
cipher when first needed, so the service starts without a key and reports it as not
ready until one is configured.

Shared resources created at startup are stored on the aiohttp application under the
typed `AppKey`s at the bottom of this module.
"""

from typing import Final, Optional
import logging
from pydantic import (
    AliasChoices,
    Field,
    PostgresDsn,
    RedisDsn,
    field_validator,
)
from pydantic_settings import BaseSettings
from aiohttp import web, ClientSession
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)
from redis import asyncio as redis

from social.quotevote.podsync.app.metrics import MetricsClient
from social.quotevote.podsync.model.connection import ConnectionStore


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Environment-backed configuration. Defaults suit a local docker-compose setup."""

    debug: bool = False
    """DEBUG: log outbound requests and include error details in 500 responses."""

    http_port: int = Field(alias="port", default=4000)
    """PORT: listening port of the web server."""

    sentry_dsn: Optional[str] = None
    """SENTRY_DSN: exceptions are reported to Sentry when set."""

    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """REDIS_DSN or REDIS_URL: holds pending authorizations until the callback."""

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/quotevote",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """PG_DSN or DATABASE_URL: stores Solid connections."""

    # Solid client settings
    solid_token_encryption_key: Optional[str] = None
    """
    64 hexadecimal characters (32 bytes) used for AES-256-GCM token encryption.
    Validated by the token cipher on first use so a bad key fails the first operation
    that needs it. Set with SOLID_TOKEN_ENCRYPTION_KEY environment variable.
    """

    solid_client_id: str = "quotevote-backend"
    """OAuth client identifier. Set with SOLID_CLIENT_ID."""

    solid_redirect_uri_base: str = "http://localhost:4000"
    """Base URL for the OAuth callback. Set with SOLID_REDIRECT_URI_BASE."""

    solid_activity_ledger_enabled: bool = False
    """Feature flag for the activity ledger. Set with SOLID_ACTIVITY_LEDGER_ENABLED."""

    solid_scope: str = "openid profile offline_access"
    """Scope requested during authorization. Set with SOLID_SCOPE."""

    solid_http_timeout: float = 10.0
    """Timeout in seconds for every outbound HTTP call. Set with SOLID_HTTP_TIMEOUT."""

    solid_token_refresh_margin: int = 300  # 5 minutes
    """
    Access tokens expiring within this many seconds are refreshed before use.
    Set with SOLID_TOKEN_REFRESH_MARGIN.
    """

    solid_default_expires_in: int = 3600
    """Token lifetime assumed when a provider omits expires_in."""

    solid_state_ttl: int = 600
    """
    Lifetime in seconds of a pending authorization (state and PKCE verifier).
    Set with SOLID_STATE_TTL.
    """

    # Metrics
    metrics_backend: str = "none"
    """Metrics backend, one of 'telegraf' or 'none'. Set with METRICS_BACKEND."""

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    statsd_prefix: str = "podsync"

    @field_validator("solid_redirect_uri_base", mode="after")
    @classmethod
    def strip_redirect_uri_base(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def redirect_uri(self) -> str:
        """Callback URL registered with Solid identity providers."""
        return f"{self.solid_redirect_uri_base}/auth/solid/callback"


# Shared resources stored on the aiohttp application
SettingsAppKey: Final = web.AppKey("settings", Settings)
DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
SessionAppKey: Final = web.AppKey("http_session", ClientSession)
RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
ConnectionStoreAppKey: Final = web.AppKey("connection_store", ConnectionStore)
