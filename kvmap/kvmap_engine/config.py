"""
Configuration management for the kvmap engine.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages
    - Invalid values raise ConfigurationError from validate()

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Document all new settings in the class docstring
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit, urlunsplit

from .errors import ConfigurationError
from .expiry.listener import DEFAULT_CHANNEL_PATTERN, DEFAULT_NOTIFY_KEYSPACE_EVENTS, ListenerMode
from .expiry.manager import DEFAULT_GRACE_SECONDS
from .mapping.flattener import DEFAULT_MAX_DEPTH

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported store backends."""

    REDIS = "redis"
    MEMORY = "memory"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class RedisConfig:
    """Redis store configuration.

    REDIS_URL takes precedence over the individual host settings.

    Attributes:
        url: Connection URL (redis://, rediss://, unix://)
        host: Server host
        port: Server port
        db: Database number
        username: ACL username
        password: Password
        socket_timeout: Socket timeout in seconds
        ssl: Use TLS
    """

    url: str | None = None
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    username: str | None = None
    password: str | None = None
    socket_timeout: float = 5.0
    ssl: bool = False

    @classmethod
    def from_env(cls) -> RedisConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv("REDIS_URL") or None,
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6379")),
            db=int(os.getenv("REDIS_DB", "0")),
            username=os.getenv("REDIS_USERNAME") or None,
            password=os.getenv("REDIS_PASSWORD") or None,
            socket_timeout=float(os.getenv("REDIS_SOCKET_TIMEOUT", "5.0")),
            ssl=_env_bool("REDIS_SSL", "false"),
        )

    @property
    def safe_url(self) -> str:
        """Connection target with credentials removed."""
        if not self.url:
            scheme = "rediss" if self.ssl else "redis"
            return f"{scheme}://{self.host}:{self.port}/{self.db}"
        parts = urlsplit(self.url)
        netloc = parts.netloc.rsplit("@", 1)[-1]
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


@dataclass(frozen=True)
class ExpirationConfig:
    """Expiration listener and phantom configuration.

    Attributes:
        listener_mode: When the expiration listener starts
        phantom_grace_seconds: Extra lifetime of phantom copies
        notify_keyspace_events: Value set on servers that have none
        channel_pattern: Pattern of expired-key notification channels
    """

    listener_mode: ListenerMode = ListenerMode.ON_DEMAND
    phantom_grace_seconds: int = DEFAULT_GRACE_SECONDS
    notify_keyspace_events: str = DEFAULT_NOTIFY_KEYSPACE_EVENTS
    channel_pattern: str = DEFAULT_CHANNEL_PATTERN

    @classmethod
    def from_env(cls) -> ExpirationConfig:
        """Load configuration from environment variables."""
        mode_str = os.getenv("KVMAP_EXPIRATION_LISTENER", "on_demand").lower()
        try:
            mode = ListenerMode(mode_str)
        except ValueError:
            raise ConfigurationError(
                f"Invalid KVMAP_EXPIRATION_LISTENER '{mode_str}'. "
                "Must be one of: never, on_startup, on_demand"
            )
        return cls(
            listener_mode=mode,
            phantom_grace_seconds=int(
                os.getenv("KVMAP_PHANTOM_GRACE_SECONDS", str(DEFAULT_GRACE_SECONDS))
            ),
            notify_keyspace_events=os.getenv(
                "KVMAP_NOTIFY_KEYSPACE_EVENTS", DEFAULT_NOTIFY_KEYSPACE_EVENTS
            ),
            channel_pattern=os.getenv("KVMAP_EXPIRED_CHANNEL_PATTERN", DEFAULT_CHANNEL_PATTERN),
        )


@dataclass(frozen=True)
class MappingConfig:
    """Object mapping configuration.

    Attributes:
        max_depth: Maximum nesting depth of flattened objects
    """

    max_depth: int = DEFAULT_MAX_DEPTH

    @classmethod
    def from_env(cls) -> MappingConfig:
        """Load configuration from environment variables."""
        return cls(max_depth=int(os.getenv("KVMAP_MAX_DEPTH", str(DEFAULT_MAX_DEPTH))))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class EngineConfig:
    """Complete engine configuration.

    Attributes:
        store_backend: Which store backend to use
        redis: Redis configuration (if store_backend is REDIS)
        expiration: Expiration listener and phantom settings
        mapping: Object mapping settings
        observability: Logging settings
    """

    store_backend: StoreBackend = StoreBackend.REDIS
    redis: RedisConfig = field(default_factory=RedisConfig)
    expiration: ExpirationConfig = field(default_factory=ExpirationConfig)
    mapping: MappingConfig = field(default_factory=MappingConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Raises:
            ConfigurationError: If configuration is missing or invalid
        """
        backend_str = os.getenv("KVMAP_STORE_BACKEND", "redis").lower()
        try:
            store_backend = StoreBackend(backend_str)
        except ValueError:
            raise ConfigurationError(
                f"Invalid KVMAP_STORE_BACKEND '{backend_str}'. Must be one of: redis, memory"
            )

        try:
            config = cls(
                store_backend=store_backend,
                redis=RedisConfig.from_env(),
                expiration=ExpirationConfig.from_env(),
                mapping=MappingConfig.from_env(),
                observability=ObservabilityConfig.from_env(),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if self.store_backend == StoreBackend.REDIS:
            if not self.redis.url and not self.redis.host:
                raise ConfigurationError("REDIS_URL or REDIS_HOST is required when KVMAP_STORE_BACKEND=redis")
            if not 0 < self.redis.port < 65536:
                raise ConfigurationError(f"REDIS_PORT out of range: {self.redis.port}")

        if self.expiration.phantom_grace_seconds < 0:
            raise ConfigurationError("KVMAP_PHANTOM_GRACE_SECONDS must not be negative")
        if not self.expiration.channel_pattern:
            raise ConfigurationError("KVMAP_EXPIRED_CHANNEL_PATTERN cannot be empty")
        if self.mapping.max_depth < 1:
            raise ConfigurationError("KVMAP_MAX_DEPTH must be at least 1")
        if self.observability.log_format not in ("json", "text"):
            raise ConfigurationError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if self.store_backend == StoreBackend.MEMORY:
            logger.warning("Using in-memory store: data is lost on exit")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "store_backend": self.store_backend.value,
                "redis": self.redis.safe_url
                if self.store_backend == StoreBackend.REDIS
                else None,
                "listener_mode": self.expiration.listener_mode.value,
                "phantom_grace_seconds": self.expiration.phantom_grace_seconds,
                "max_depth": self.mapping.max_depth,
                "log_level": self.observability.log_level,
            },
        )
