"""
In-process publish/subscribe used to broadcast session and wallet changes.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List

__all__ = [
    "AUTH_CHANGED",
    "EventBus",
    "WALLET_ACCOUNTS_CHANGED",
    "WALLET_CHAIN_CHANGED",
    "WALLET_CONNECTED",
    "WALLET_DISCONNECTED",
]

logger = logging.getLogger(__name__)

AUTH_CHANGED = "auth:changed"
WALLET_CONNECTED = "wallet:connected"
WALLET_DISCONNECTED = "wallet:disconnected"
WALLET_ACCOUNTS_CHANGED = "wallet:accountsChanged"
WALLET_CHAIN_CHANGED = "wallet:chainChanged"

Callback = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class EventBus:
    """
    Listener registry keyed by event name.

    Handlers may be registered and removed from any thread; the refresh timer
    emits from its own worker thread.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callback]] = {}
        self._lock = threading.Lock()

    def on(self, event: str, callback: Callback) -> Unsubscribe:
        with self._lock:
            callbacks = self._listeners.setdefault(event, [])
            if callback not in callbacks:
                callbacks.append(callback)
        return lambda: self.off(event, callback)

    def once(self, event: str, callback: Callback) -> Unsubscribe:
        def _wrapper(payload: Any) -> None:
            unsubscribe()
            callback(payload)

        unsubscribe = self.on(event, _wrapper)
        return unsubscribe

    def off(self, event: str, callback: Callback) -> None:
        with self._lock:
            callbacks = self._listeners.get(event)
            if not callbacks:
                return
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                del self._listeners[event]

    def emit(self, event: str, payload: Any = None) -> None:
        with self._lock:
            callbacks = list(self._listeners.get(event, ()))
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:  # noqa: BLE001
                logger.exception("Error in event handler for %s", event)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners.get(event, ()))

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()
