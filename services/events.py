# services/events.py
"""
Typed publish/subscribe surface.

Subscribers register for an event class; publishing an event calls every
handler registered for its class or any of its base classes, synchronously
and in registration order. Subscribing to `Event` receives everything.
"""

import asyncio
import dataclasses
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class Event:
    """Base class for everything published on an EventBus."""
    server_id: Optional[int] = None

    def with_server_id(self, server_id: int):
        """Return a copy stamped with the owning server's id."""
        return dataclasses.replace(self, server_id=server_id)


E = TypeVar('E', bound=Event)
Handler = Callable[[Any], Any]


class EventBus:
    """In-process event fan-out keyed by event class."""

    def __init__(self, name: str = "events"):
        self.name = name
        self._subscribers: dict[type, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> None:
        """Register a handler for event_type and its subclasses."""
        if handler not in self._subscribers[event_type]:
            self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: type, handler: Handler) -> bool:
        """Remove a handler. Returns False if it was not registered."""
        handlers = self._subscribers.get(event_type)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def subscriber_count(self, event_type: type) -> int:
        return len(self._subscribers.get(event_type, []))

    def clear(self) -> None:
        """Drop every subscriber."""
        self._subscribers.clear()

    def publish(self, event: Event) -> None:
        """
        Deliver event to every matching handler.

        Handler exceptions are logged and never reach the publisher. A handler
        returning a coroutine has it scheduled as a task so the current turn is
        never blocked.
        """
        for event_type in type(event).__mro__:
            for handler in list(self._subscribers.get(event_type, ())):
                try:
                    result = handler(event)
                    if asyncio.iscoroutine(result):
                        self._schedule(result)
                except Exception as e:
                    logger.error(
                        f"[{self.name}] Handler {getattr(handler, '__qualname__', handler)} "
                        f"failed for {type(event).__name__}: {e}",
                        exc_info=True
                    )

    def _schedule(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{self.name}] Async handler failed: {task.exception()}")
