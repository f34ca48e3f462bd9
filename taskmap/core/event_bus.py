"""
In-process event bus for TaskMap.

The sync engine reports tree changes, persistence outcomes and notices
here; the session and any renderer listen without importing the engine.
Delivery is traced with structlog.

Copyright (c) 2025 TaskMap
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class EventType(Enum):
    """Events emitted by the engine."""

    TREE_CHANGED = "tree.changed"
    TREE_LOADED = "tree.loaded"

    PERSIST_SUCCEEDED = "persist.succeeded"
    PERSIST_FAILED = "persist.failed"
    CREATE_ROLLED_BACK = "persist.rolled_back"

    NOTICE = "notice"
    DATA_ERROR = "data.error"


@dataclass
class Event:
    """A single message on the bus."""
    type: EventType
    payload: Dict[str, Any]
    source: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventBus:
    """
    Fan-out of events to subscribed handlers.

    Handlers may be plain callables or coroutine functions. A failing
    handler is logged and counted; it never stops delivery to the others.
    Code without an awaitable context uses ``emit``, which schedules
    delivery on the running loop; ``drain`` waits for those deliveries.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[Callable]] = defaultdict(list)
        self._published: Dict[EventType, int] = defaultdict(int)
        self._failures: Dict[EventType, int] = defaultdict(int)
        self._in_flight: Set[asyncio.Task] = set()

    def subscribe(self, event_type: EventType, handler: Callable) -> None:
        self._subscribers[event_type].append(handler)
        logger.debug(
            "bus_subscribe",
            event_type=event_type.value,
            handler=_handler_name(handler),
            subscribers=len(self._subscribers[event_type]),
        )

    def unsubscribe(self, event_type: EventType, handler: Callable) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            logger.debug("bus_unsubscribe", event_type=event_type.value, handler=_handler_name(handler))

    async def publish(self, event: Event) -> None:
        """Deliver ``event`` to every current subscriber and wait for them."""
        self._published[event.type] += 1
        handlers = list(self._subscribers.get(event.type, []))
        logger.debug(
            "bus_publish",
            event_type=event.type.value,
            source=event.source,
            handlers=len(handlers),
            keys=sorted(event.payload),
        )
        if not handlers:
            return

        outcomes = await asyncio.gather(
            *[self._call(handler, event) for handler in handlers],
            return_exceptions=True,
        )
        for handler, outcome in zip(handlers, outcomes):
            if isinstance(outcome, Exception):
                self._failures[event.type] += 1
                logger.error(
                    "bus_handler_failed",
                    event_type=event.type.value,
                    handler=_handler_name(handler),
                    error=str(outcome),
                )

    def emit(self, event: Event) -> Optional[asyncio.Task]:
        """
        Schedule delivery from synchronous code.

        Returns the delivery task, or None when no loop is running; the
        event is logged and dropped in that case.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("bus_event_dropped", event_type=event.type.value, source=event.source)
            return None
        task = loop.create_task(self.publish(event))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def drain(self) -> None:
        """Wait until every scheduled delivery has completed."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    @staticmethod
    async def _call(handler: Callable, event: Event) -> Any:
        result = handler(event)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_event_types": len(self._subscribers),
            "total_subscribers": sum(len(h) for h in self._subscribers.values()),
            "event_counts": {k.value: v for k, v in self._published.items()},
            "error_counts": {k.value: v for k, v in self._failures.items()},
        }


_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the process-wide event bus."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the process-wide bus. Used by tests."""
    global _event_bus
    _event_bus = None
