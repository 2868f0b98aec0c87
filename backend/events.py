# events.py — In-process event bus
# Controllers emit "<collection>-<action>" events (orgs-created, elements-deleted, ...)
# with the public data of the affected records.

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("mbee.events")


class EventBus:
    """Minimal async-aware emitter; listeners may be plain functions or coroutines."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)

    def on(self, event: str, listener: Callable) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Optional[Callable] = None) -> None:
        if listener is None:
            self._listeners.pop(event, None)
        elif listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    def listeners(self, event: str) -> List[Callable]:
        return list(self._listeners.get(event, []))

    async def emit(self, event: str, *args: Any) -> int:
        """Call every listener for the event; returns how many were called."""
        called = 0
        for listener in self.listeners(event):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("Listener for event [%s] failed: %s", event, e)
            called += 1
        logger.debug("Emitted [%s] to %d listener(s)", event, called)
        return called


bus = EventBus()
