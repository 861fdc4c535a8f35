"""
Engine lifecycle: builds every component from configuration.

The MappingEngine owns the store connection, the type registry, the
adapter and the expiration listener, and starts/stops them in order:

    start: store.connect() -> listener.start() (ON_STARTUP only)
    stop:  listener.stop()  -> store.close()

Invariants:
    - All components share one registry and one store
    - No listener exists in NEVER mode
    - stop() is safe to call more than once

Example:
    >>> async with MappingEngine(EngineConfig.from_env()) as engine:
    ...     engine.registry.configure(entity(Person, keyspace="persons"))
    ...     await engine.adapter.save(Person(firstname="rand"))
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import json_log_formatter

from .adapter import HashMappingAdapter
from .config import EngineConfig
from .expiry.listener import KeyExpirationListener, ListenerMode
from .expiry.manager import ExpirationCallback
from .mapping.registry import TypeRegistry
from .store.base import KeyValueStore, create_store

logger = logging.getLogger(__name__)


def setup_logging(config: EngineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


class MappingEngine:
    """Wires store, registry, adapter and expiration listener.

    Attributes:
        config: Engine configuration
        store: Key-value store backend
        registry: Entity type registry
        adapter: CRUD surface
        listener: Expiration listener (None in NEVER mode)
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[KeyValueStore] = None,
        registry: Optional[TypeRegistry] = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Engine configuration (loaded from env if not provided)
            store: Store backend (built from config if not provided)
            registry: Type registry (a fresh one if not provided)
        """
        self.config = config or EngineConfig.from_env()
        self.store = store or create_store(self.config)
        self.registry = registry or TypeRegistry(max_depth=self.config.mapping.max_depth)
        self.adapter = HashMappingAdapter(
            self.registry,
            self.store,
            grace_seconds=self.config.expiration.phantom_grace_seconds,
        )

        self.listener: Optional[KeyExpirationListener] = None
        if self.config.expiration.listener_mode != ListenerMode.NEVER:
            self.listener = KeyExpirationListener(
                self.store,
                self.adapter.expiration,
                mode=self.config.expiration.listener_mode,
                pattern=self.config.expiration.channel_pattern,
                notify_keyspace_events=self.config.expiration.notify_keyspace_events,
            )
            self.adapter.expiration.attach_listener(self.listener)

        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def on_expired(self, callback: ExpirationCallback) -> ExpirationCallback:
        """Register an expiration callback (usable as a decorator)."""
        self.adapter.expiration.register_callback(callback)
        return callback

    async def start(self) -> None:
        """Connect the store and start the listener in ON_STARTUP mode."""
        if self._running:
            logger.warning("Engine already running")
            return

        logger.info("Starting kvmap engine")
        await self.store.connect()
        try:
            if self.listener is not None and self.listener.mode == ListenerMode.ON_STARTUP:
                await self.listener.start()
        except Exception as e:
            logger.error(f"Engine startup failed: {e}", exc_info=True)
            await self.store.close()
            raise
        self._running = True
        logger.info("kvmap engine started")

    async def stop(self) -> None:
        """Stop the listener and close the store."""
        if self.listener is not None:
            await self.listener.stop()
        if not self._running:
            return
        await self.store.close()
        self._running = False
        logger.info("kvmap engine stopped")

    async def __aenter__(self) -> MappingEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "listener": self.listener.stats if self.listener else None,
            "expiration": self.adapter.expiration.stats,
            "entities": [e.keyspace for e in self.registry.entities()],
        }
