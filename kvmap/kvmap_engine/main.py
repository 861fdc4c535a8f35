"""
kvmap expiration daemon - main entry point.

Runs the expiration listener as a standalone process: it subscribes to
expired-key notifications and cleans index entries and keyspace sets of
expired entities. Entity types must be importable so the registry can
resolve their keyspaces; list their modules in KVMAP_ENTITY_MODULES
(comma-separated). Modules declare types with @hash_entity or call
get_registry().configure(...) at import time.

Usage:
    python -m kvmap.kvmap_engine.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The listener always starts, whatever KVMAP_EXPIRATION_LISTENER says
    - Graceful shutdown on SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import dataclasses
import importlib
import logging
import os
import signal
import sys

from .config import EngineConfig
from .engine import MappingEngine, setup_logging
from .errors import ConfigurationError
from .expiry.listener import ListenerMode
from .expiry.manager import KeyExpiredEvent
from .mapping.registry import get_registry
from .mapping.types import declared_entity

logger = logging.getLogger(__name__)


def load_entity_modules(names: str) -> int:
    """Import entity modules and register their declared types.

    Returns:
        Number of entity types registered
    """
    registry = get_registry()
    count = 0
    for name in filter(None, (n.strip() for n in names.split(","))):
        module = importlib.import_module(name)
        for value in vars(module).values():
            if isinstance(value, type) and declared_entity(value) is not None:
                registry.register(value)
                count += 1
    return count


class Daemon:
    """Expiration daemon wrapping a MappingEngine."""

    def __init__(self, config: EngineConfig) -> None:
        if config.expiration.listener_mode != ListenerMode.ON_STARTUP:
            config = dataclasses.replace(
                config,
                expiration=dataclasses.replace(
                    config.expiration, listener_mode=ListenerMode.ON_STARTUP
                ),
            )
        self.engine = MappingEngine(config, registry=get_registry())
        self.engine.on_expired(self._log_event)
        self._shutdown_event = asyncio.Event()

    @staticmethod
    def _log_event(event: KeyExpiredEvent) -> None:
        logger.info("Expired", extra={"key": event.key, "keyspace": event.keyspace})

    async def run(self) -> None:
        self.engine.config.log_config()
        await self.engine.start()
        logger.info("Expiration daemon running")
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        await self.engine.stop()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = EngineConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    try:
        registered = load_entity_modules(os.getenv("KVMAP_ENTITY_MODULES", ""))
    except (ImportError, ConfigurationError) as e:
        logger.error(f"Cannot load entity modules: {e}")
        sys.exit(1)
    logger.info(f"Registered {registered} entity types")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    daemon = Daemon(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        daemon.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(daemon.run())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(daemon.stop())
        loop.close()


if __name__ == "__main__":
    main()
