from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any


logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], Any]


class LifecycleEvent(str, Enum):
    BEFORE_FETCH = "before-fetch"
    AFTER_CLONE = "after-clone"
    AFTER_INSTALL = "after-install"
    AFTER_FETCH = "after-fetch"
    ON_ERROR = "on-error"
    ON_SKIP = "on-skip"


class EventBus:
    """Fixed set of lifecycle events; listeners run in registration order."""

    def __init__(self) -> None:
        self._listeners: dict[LifecycleEvent, list[Listener]] = {event: [] for event in LifecycleEvent}

    def subscribe(self, event: LifecycleEvent, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def unsubscribe(self, event: LifecycleEvent, listener: Listener) -> bool:
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            return False
        return True

    def listeners(self, event: LifecycleEvent) -> list[Listener]:
        return list(self._listeners[event])

    async def emit(self, event: LifecycleEvent, payload: dict[str, Any] | None = None) -> int:
        """Call every listener for ``event`` and return how many completed without error."""
        payload = payload or {}
        delivered = 0
        for listener in self.listeners(event):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener %r for %s failed", listener, event.value)
                continue
            delivered += 1
        return delivered
