"""
Configuration Module for the Edge API

Settings are loaded from environment variables with Pydantic and handed to every
component explicitly. Shared resources (HTTP client session, Redis client, session
store, metrics client, health gauge) live on the aiohttp application and are looked
up through the typed AppKeys defined at the bottom of this module.

Key configuration areas include:
- Public URLs of the API and of the site it serves
- The single identity allowed to hold an owner session and its PDS
- OAuth client names and scopes for the owner and guest clients
- Session lifetimes and the session cookie domain
- Redis, Sentry and StatsD connections
"""

import asyncio
from typing import Annotated, Final, List, Optional
import logging
from aiohttp import web
from aiohttp import ClientSession
from pydantic import (
    AliasChoices,
    Field,
    field_validator,
    RedisDsn,
)
from pydantic_settings import BaseSettings, NoDecode
from redis import asyncio as redis

from dev.stevedylan.edge.app.metrics import MetricsClient
from dev.stevedylan.edge.model.health import HealthGauge
from dev.stevedylan.edge.store.session import SessionStore


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the edge API.

    Every value can be overridden with the upper-cased environment variable of the
    same name, e.g. ``ALLOWED_DID`` or ``CLIENT_URL``.
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging and outbound request tracing.
    Set with DEBUG=true environment variable.
    """

    http_port: int = Field(alias="port", default=8787)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    api_url: str = "https://api.stevedylan.dev"
    """
    Public base URL of this API. The OAuth client IDs and redirect URIs are derived
    from it. Set with API_URL environment variable.
    """

    client_url: str = "https://stevedylan.dev"
    """
    Public base URL of the site. Login results are redirected here.
    Set with CLIENT_URL environment variable.
    """

    pds_url: str = "https://polybius.social"
    """
    PDS hosting the owner's repository. Owner logins and owner writes go here.
    Set with PDS_URL environment variable.
    """

    allowed_did: str = "did:plc:ia2zdnhjaokf5lazhxrmj6eu"
    """
    The only DID allowed to hold an owner session.
    Set with ALLOWED_DID environment variable.
    """

    publication_uri: str = (
        "at://did:plc:ia2zdnhjaokf5lazhxrmj6eu/site.standard.publication/3mbykzswhqc2x"
    )
    """
    AT URI of the publication that posted documents belong to.
    Set with PUBLICATION_URI environment variable.
    """

    cookie_domain: str = ".stevedylan.dev"
    """
    Domain attribute of the session cookie, ignored when CLIENT_URL is local.
    Set with COOKIE_DOMAIN environment variable.
    """

    allowed_origins: Annotated[List[str], NoDecode] = [
        "https://stevedylan.dev",
        "http://localhost:4321",
        "http://localhost:3000",
    ]
    """
    Comma-separated list of origins allowed to make credentialed CORS requests.
    Set with ALLOWED_ORIGINS environment variable.
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution.
    Set with PLC_HOSTNAME environment variable.
    """

    handle_resolver_url: str = "https://public.api.bsky.app"
    """
    Base URL of the directory service used to resolve guest handles.
    Set with HANDLE_RESOLVER_URL environment variable.
    """

    http_timeout: float = 10.0
    """
    Timeout in seconds for each outbound HTTP request.
    Set with HTTP_TIMEOUT environment variable.
    """

    session_ttl: int = 60 * 60 * 24 * 14
    """Lifetime in seconds of sessions and of the session cookie (14 days)."""

    auth_state_ttl: int = 600
    """Lifetime in seconds of an in-flight login (10 minutes)."""

    client_name: str = "Steve Dylan's Blog"
    """Name shown by authorization servers for the owner client."""

    guest_client_name: str = "Steve Dylan's Blog (Guest)"
    """Name shown by authorization servers for the guest client."""

    owner_scope: str = "atproto transition:generic"
    """OAuth scope requested for owner sessions."""

    guest_scope: str = "atproto repo:site.standard.document.comment?action=create"
    """OAuth scope requested for guest sessions, limited to creating comments."""

    redis_dsn: RedisDsn = Field(
        "redis://localhost:6379/0?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string for session storage.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_backend: str = "telegraf"
    """
    Metrics backend, ``telegraf`` or ``none``.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    health_threshold: int = 100
    """Number of recent unexpected failures tolerated before readiness fails."""

    health_tick_interval: int = 30
    """Seconds between health gauge decay ticks."""

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def decode_allowed_origins(cls, v) -> List[str]:
        """
        Accept either a list of origins or a comma-separated string.

        Trailing slashes are removed so values compare equal to the Origin header.
        """
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, (list, tuple)):
            return [str(item).strip().rstrip("/") for item in v if str(item).strip()]
        raise ValueError("allowed_origins must be a list or a comma-separated string")

    @field_validator("api_url", "client_url", "pds_url", "handle_resolver_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client"""

SessionStoreAppKey: Final = web.AppKey("session_store", SessionStore)
"""AppKey for the Redis-backed session store"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that monitors service health"""
