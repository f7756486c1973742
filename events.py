"""In-process event hooks for things the UI layer may want to display."""

import inspect
import logging
from collections import defaultdict
from typing import Callable, Dict, List


logger = logging.getLogger(__name__)

REMINDER_DISPATCHED = "reminder_dispatched"
STREAK_UPDATED = "streak_updated"


class EventBus:
    """Subscribers are sync or async callables taking the event payload.

    A failing subscriber is logged and does not affect the emitter or the
    other subscribers.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = defaultdict(list)

    def subscribe(self, event: str, handler: Callable) -> None:
        self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: Callable) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def emit(self, event: str, payload) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler for '{event}' failed: {e}", exc_info=True)
