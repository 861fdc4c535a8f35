"""
Expiration handling for kvmap.

TTL application, phantom copies and the listener that turns expired-key
notifications into KeyExpiredEvent callbacks.
"""

from .listener import KeyExpirationListener, ListenerMode, ListenerState
from .manager import ExpirationManager, KeyExpiredEvent, phantom_key

__all__ = [
    "ExpirationManager",
    "KeyExpiredEvent",
    "KeyExpirationListener",
    "ListenerMode",
    "ListenerState",
    "phantom_key",
]
