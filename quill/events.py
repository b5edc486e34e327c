"""In-process event bus for engine observers (UI, accounting, logs).

All engine events flow through a single ordered queue and are consumed by
one dispatcher task. For each event, handlers run one after another in
registration order, so observers see text deltas, tool lifecycle and
state changes in exactly the order the engine produced them. A broken
handler is logged and skipped; it never crashes the bus or the engine.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Handler type: async function taking an Event
EventHandler = Callable[["Event"], Awaitable[None]]

# Registering for this type receives every event
ALL_EVENTS = "*"


class EventType(StrEnum):
    STATE_CHANGE = "state_change"
    TEXT_DELTA = "text_delta"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_START = "tool_start"
    TOOL_RETRY = "tool_retry"
    TOOL_RESULT = "tool_result"
    PERMISSION_REQUEST = "permission_request"
    USAGE = "usage"
    COMPACTION = "compaction"
    MESSAGE_COMPLETE = "message_complete"
    ERROR = "error"
    TURN_COMPLETE = "turn_complete"


@dataclass
class Event:
    """A typed event flowing through the bus."""

    type: EventType
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Ordered event delivery to observers.

    emit() enqueues and returns at once; a single dispatcher task hands
    each event to its type handlers and then to ALL_EVENTS handlers.
    """

    def __init__(self, max_queue: int = 1000):
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

    def on(self, event_type: EventType | str, handler: EventHandler) -> None:
        """Subscribe handler to event_type, or to everything with ALL_EVENTS."""
        self._subscribers[str(event_type)].append(handler)
        logger.debug("Subscribed %s to '%s'", handler.__qualname__, event_type)

    def off(self, event_type: EventType | str, handler: EventHandler) -> None:
        subscribers = self._subscribers.get(str(event_type))
        if subscribers and handler in subscribers:
            subscribers.remove(handler)

    async def emit(self, event: Event) -> None:
        """Queue an event. A full queue drops it with a warning."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full (%d), dropped %s", self._queue.maxsize, event.type)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="quill-event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the dispatcher, then deliver whatever is still queued."""
        if self._task is None:
            return
        self._running = False
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._deliver(event)
            self._queue.task_done()
        logger.info("Event bus stopped")

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def max_queue(self) -> int:
        return self._queue.maxsize

    async def _run(self) -> None:
        while self._running:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Event dispatcher error on %s", event.type)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: Event) -> None:
        subscribers = [
            *self._subscribers.get(str(event.type), ()),
            *self._subscribers.get(ALL_EVENTS, ()),
        ]
        for handler in subscribers:
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Handler %s failed on %s", handler.__qualname__, event.type)
