"""
In-memory event sink with subscriber fan-out
"""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

EventHandler = Callable[["Event"], Any]


@dataclass
class Event:
    """Notification emitted by the execution core"""

    name: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.utcnow)


class InMemoryEventSink:
    """
    Fire-and-forget event sink

    Features:
    - Exact-name and wildcard ("execution.*", "*") subscriptions
    - Sync handlers run inline, coroutine handlers are scheduled on the running loop
    - Handler errors are logged and never reach the emitter
    - Bounded history of emitted events
    """

    def __init__(self, history_size: int = 1000):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._pending: set = set()

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event_name, []).append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        event = Event(name=event_name, payload=dict(payload))
        self._history.append(event)

        for handler in self._matching_handlers(event_name):
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    self._schedule(event, outcome)
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    event_name=event_name,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e)
                )

    def events(self, event_name: Optional[str] = None) -> List[Event]:
        if event_name is None:
            return list(self._history)
        return [event for event in self._history if event.name == event_name]

    def names(self) -> List[str]:
        return [event.name for event in self._history]

    def clear(self) -> None:
        self._history.clear()

    def _matching_handlers(self, event_name: str) -> List[EventHandler]:
        handlers = list(self._handlers.get(event_name, []))
        for pattern, subscribed in self._handlers.items():
            if pattern == event_name:
                continue
            if pattern == "*" or (pattern.endswith(".*") and event_name.startswith(pattern[:-1])):
                handlers.extend(subscribed)
        return handlers

    def _schedule(self, event: Event, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("event_handler_dropped", event_name=event.name, reason="no_running_loop")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(self._run_async(event, awaitable))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _run_async(event: Event, awaitable: Any) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.error("event_handler_failed", event_name=event.name, error=str(e))
