"""
Key expiration listener.

Subscribes to the store's expired-key notifications
(`__keyevent@*__:expired`) and hands every expired key to the
ExpirationManager.

Lifecycle:
    STOPPED -> STARTING -> RUNNING -> STOPPED

Invariants:
    - One background task consumes one pattern subscription sequentially
    - start() is idempotent; concurrent starts share one lock
    - notify-keyspace-events is set only when the server has none;
      an explicit server setting is never overridden
    - A server refusing CONFIG is a warning, not a failure
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Optional

from ..store.base import KeyValueStore, StoreError, Subscription
from .manager import ExpirationManager

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_PATTERN = "__keyevent@*__:expired"
DEFAULT_NOTIFY_KEYSPACE_EVENTS = "Ex"
NOTIFY_PARAMETER = "notify-keyspace-events"


class ListenerMode(Enum):
    """When the expiration listener starts."""

    NEVER = "never"
    ON_STARTUP = "on_startup"
    ON_DEMAND = "on_demand"  # first save with a positive TTL


class ListenerState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


class KeyExpirationListener:
    """Background consumer of expired-key notifications.

    Example:
        >>> listener = KeyExpirationListener(store, manager)
        >>> await listener.start()
        >>> ...
        >>> await listener.stop()
    """

    def __init__(
        self,
        store: KeyValueStore,
        manager: ExpirationManager,
        mode: ListenerMode = ListenerMode.ON_DEMAND,
        pattern: str = DEFAULT_CHANNEL_PATTERN,
        notify_keyspace_events: str = DEFAULT_NOTIFY_KEYSPACE_EVENTS,
    ) -> None:
        """Initialize the listener.

        Args:
            store: Store to subscribe to
            manager: Receives every expired key
            mode: Start policy
            pattern: Channel pattern of expired notifications
            notify_keyspace_events: Value written when the server has none
        """
        self.store = store
        self.manager = manager
        self.mode = mode
        self.pattern = pattern
        self.notify_keyspace_events = notify_keyspace_events

        self._state = ListenerState.STOPPED
        self._lock = asyncio.Lock()
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self._received = 0
        self._errors = 0

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ListenerState.RUNNING

    async def start(self) -> None:
        """Subscribe and start the consumer task (idempotent)."""
        async with self._lock:
            if self._state != ListenerState.STOPPED:
                return
            self._state = ListenerState.STARTING
            logger.info("Starting expiration listener", extra={"pattern": self.pattern})
            try:
                await self._configure_notifications()
                self._subscription = await self.store.psubscribe(self.pattern)
            except Exception:
                self._state = ListenerState.STOPPED
                raise
            self._task = asyncio.create_task(self._run(self._subscription))
            self._state = ListenerState.RUNNING

    async def start_on_demand(self) -> None:
        """Start when running in ON_DEMAND mode and not yet started."""
        if self.mode == ListenerMode.ON_DEMAND and self._state == ListenerState.STOPPED:
            await self.start()

    async def stop(self) -> None:
        """Cancel the consumer task and close the subscription (idempotent)."""
        async with self._lock:
            task, self._task = self._task, None
            subscription, self._subscription = self._subscription, None
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            if subscription is not None:
                await subscription.close()
            if self._state != ListenerState.STOPPED:
                logger.info("Expiration listener stopped")
            self._state = ListenerState.STOPPED

    async def _configure_notifications(self) -> None:
        try:
            current = await self.store.config_get(NOTIFY_PARAMETER)
            value = current.get(NOTIFY_PARAMETER, "")
            if value:
                logger.debug(f"Keeping {NOTIFY_PARAMETER}={value!r}")
                return
            await self.store.config_set(NOTIFY_PARAMETER, self.notify_keyspace_events)
            logger.info(f"Set {NOTIFY_PARAMETER}={self.notify_keyspace_events!r}")
        except StoreError as e:
            logger.warning(
                f"Cannot configure {NOTIFY_PARAMETER}; expiration events need it enabled "
                f"on the server: {e}"
            )

    async def _run(self, subscription: Subscription) -> None:
        try:
            async for message in subscription.listen():
                self._received += 1
                try:
                    await self.manager.on_expired(message.key)
                except Exception as e:
                    self._errors += 1
                    logger.error(
                        f"Failed to handle expired key: {e}",
                        exc_info=True,
                        extra={"key": message.key},
                    )
        except asyncio.CancelledError:
            logger.debug("Expiration listener cancelled")
        except Exception as e:
            logger.error(f"Expiration listener error: {e}", exc_info=True)
            await self._release(subscription)

    async def _release(self, subscription: Subscription) -> None:
        """Drop a failed subscription so the next start subscribes afresh."""
        if self._subscription is subscription:
            self._subscription = None
            self._task = None
            self._state = ListenerState.STOPPED
        try:
            await subscription.close()
        except StoreError as e:
            logger.warning(f"Error closing failed subscription: {e}")

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "mode": self.mode.value,
            "received": self._received,
            "errors": self._errors,
        }
