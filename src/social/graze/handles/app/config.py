"""
Configuration Module

This module defines the configuration system for the atproto-handle service, using Pydantic for
settings validation and dependency injection through AppKeys.

The Settings class is loaded from environment variables, with defaults suitable for local
development. Only the admin credential (API_KEY) is required. All application components access
settings and shared resources through typed AppKeys.

Key configuration areas include:
- Admin credential and the public claim allow-list
- Binding storage (JSON file or PostgreSQL)
- OAuth state and session TTL stores (memory or Redis)
- Identity resolution and outbound HTTP
- Monitoring and observability
"""

import asyncio
from typing import Annotated, Final, List, Literal, Optional

from aiohttp import ClientSession, web
from pydantic import AliasChoices, Field, PostgresDsn, RedisDsn, field_validator
from pydantic_settings import BaseSettings, NoDecode
from redis import asyncio as redis

from social.graze.handles.app.metrics import MetricsClient
from social.graze.handles.claims.registry import ClaimRegistry
from social.graze.handles.shredder.flow import ShredderFlow
from social.graze.handles.store.ttl import TTLStore


class Settings(BaseSettings):
    """
    Application settings for the atproto-handle service.

    Environment variables map onto fields by name, with aliases where a second name is common.
    For example, the Redis connection string can be set with either REDIS_DSN or REDIS_URL.
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging.
    Set with DEBUG=true environment variable.
    """

    api_key: str
    """
    Admin credential for privileged operations (required, no default).
    Presented as `Authorization: Bearer <API_KEY>`.
    Set with API_KEY environment variable.
    """

    public_domains: Annotated[List[str], NoDecode] = list()
    """
    Wildcard domain patterns open for public self-service claims, e.g. `*.example.com`.
    Set with PUBLIC_DOMAINS environment variable as comma-separated values.
    """

    http_port: int = Field(alias="port", default=3000)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    public_url: Optional[str] = None
    """
    Externally reachable base URL, e.g. https://handles.example.com.
    When unset the OAuth client identifies itself with a loopback client id.
    Set with PUBLIC_URL environment variable.
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution.
    Set with PLC_HOSTNAME environment variable.
    """

    profile_url: str = "https://bsky.app/profile/{did}"
    """
    Where a claimed domain redirects to. `{did}` is replaced with the bound DID.
    Set with PROFILE_URL environment variable.
    """

    http_timeout: float = 10.0
    """
    Total timeout in seconds for outbound identity resolution and OAuth requests.
    Set with HTTP_TIMEOUT environment variable.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    # Binding storage
    storage_backend: Literal["json", "database"] = "json"
    """
    Where domain bindings are persisted.
    Set with STORAGE_BACKEND environment variable.
    """

    db_path: str = "./data/db.json"
    """
    JSON file holding bindings when STORAGE_BACKEND=json.
    Set with DB_PATH environment variable.
    """

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/handles",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """
    PostgreSQL connection string used when STORAGE_BACKEND=database.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    # OAuth state and session stores
    ttl_store_backend: Literal["memory", "redis"] = "memory"
    """
    Backend for the OAuth state and session stores.
    Set with TTL_STORE_BACKEND environment variable.
    """

    state_ttl: int = 3600
    """
    Lifetime in seconds of OAuth state between authorize and callback.
    Set with STATE_TTL environment variable.
    Default: 3600 (1 hour)
    """

    session_ttl: int = 3600
    """
    Lifetime in seconds of post-login OAuth sessions.
    Set with SESSION_TTL environment variable.
    Default: 3600 (1 hour)
    """

    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string used when TTL_STORE_BACKEND=redis.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    # Monitoring and observability settings
    metrics_backend: Literal["telegraf", "none"] = "none"
    """
    Metrics backend. Set with METRICS_BACKEND environment variable.
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

    @field_validator("public_domains", mode="before")
    @classmethod
    def decode_public_domains(cls, v) -> List[str]:
        """
        Accept either a list of patterns or a comma-separated string.

        Raises:
            ValueError: If the input is neither a list nor a string
        """
        if isinstance(v, list):
            return [str(pattern).strip() for pattern in v if str(pattern).strip()]
        elif isinstance(v, str):
            return [pattern.strip() for pattern in v.split(",") if pattern.strip()]
        raise ValueError("public_domains must be a list or a comma-separated string")

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        if len(v.strip()) == 0:
            raise ValueError("API_KEY is not set")
        return v

    @property
    def base_url(self) -> str:
        """Base URL used to build OAuth client and redirect URLs."""
        if self.public_url:
            return self.public_url.rstrip("/")
        return f"http://127.0.0.1:{self.http_port}"


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client (TTL_STORE_BACKEND=redis only)"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

StateStoreAppKey: Final = web.AppKey("state_store", TTLStore)
"""AppKey for the OAuth state TTL store"""

SessionStoreAppKey: Final = web.AppKey("session_store", TTLStore)
"""AppKey for the OAuth session TTL store"""

ClaimRegistryAppKey: Final = web.AppKey("claim_registry", ClaimRegistry)
"""AppKey for the domain claim registry"""

ShredderFlowAppKey: Final = web.AppKey("shredder_flow", ShredderFlow)
"""AppKey for the shredder login coordinator"""

SweepTasksAppKey: Final = web.AppKey("sweep_tasks", List[asyncio.Task[None]])
"""AppKey for the background tasks that sweep the TTL stores"""
