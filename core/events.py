"""
Event Bus — bounded queue from the processing pipeline to the broadcaster.

Publishers never wait: ``publish`` drops (and logs) the event when the queue
is full. A single broadcaster task drains the queue and fans each event out
to every subscriber; a failing subscriber is logged and does not stop the
others.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from models.schemas import ConversationEvent, EventKind, utcnow

logger = structlog.get_logger()

Subscriber = Callable[[ConversationEvent], Awaitable[None]]


class EventBus:
    def __init__(self, maxsize: int = 1000, clock: Callable[[], datetime] = utcnow):
        self._queue: asyncio.Queue[ConversationEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscribers: list[Subscriber] = []
        self._task: Optional[asyncio.Task] = None
        self._clock = clock
        self.published = 0
        self.dropped = 0
        self.delivered = 0

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def publish(
        self,
        kind: EventKind,
        conversation_id: Optional[str] = None,
        payload: dict[str, Any] = None,
    ) -> bool:
        event = ConversationEvent(
            kind=kind,
            conversation_id=conversation_id,
            payload=payload or {},
            timestamp=self._clock(),
        )
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("event_dropped", kind=kind.value, conversation_id=conversation_id,
                           queue_size=self._queue.qsize())
            return False
        self.published += 1
        return True

    async def _dispatch(self, event: ConversationEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber(event)
            except Exception as e:
                logger.error("event_subscriber_failed", kind=event.kind.value, error=str(e))
        self.delivered += 1

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been dispatched."""
        await self._queue.join()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="event-broadcaster")
            logger.info("event_bus_started", subscribers=len(self._subscribers))

    async def stop(self) -> None:
        if self._task is None:
            return
        # Flush what is already queued before cancelling.
        while not self._queue.empty():
            await self._dispatch(self._queue.get_nowait())
            self._queue.task_done()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("event_bus_stopped", published=self.published, dropped=self.dropped)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def stats(self) -> dict[str, Any]:
        return {
            "published": self.published,
            "delivered": self.delivered,
            "dropped": self.dropped,
            "pending": self.pending,
            "subscribers": len(self._subscribers),
        }
