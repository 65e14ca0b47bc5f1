"""
Maintenance Scheduler — periodic background sweeps over the registry.

- Inactivity sweep: evicts conversations idle for longer than the timeout,
  giving their unprocessed messages one last best-effort attempt first.
- Heartbeat sweep: for conversations that opted into liveness pings, counts
  missed heartbeats, asks observers to reconnect and force-closes after too
  many misses.

Sweeps never hold the registry lock while calling collaborators and skip
conversations whose turn lock is currently held.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from config.settings import ConversationConfig
from context.registry import ConversationRegistry
from core.events import EventBus
from core.processor import MessageProcessor
from models.schemas import Conversation, ConversationStatus, EventKind, InboundMessage, utcnow

logger = structlog.get_logger()


class MaintenanceScheduler:
    def __init__(
        self,
        registry: ConversationRegistry,
        processor: MessageProcessor,
        bus: EventBus,
        config: ConversationConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.processor = processor
        self.bus = bus
        self.config = config
        self._clock = clock
        self._tasks: list[asyncio.Task] = []
        self.evicted = 0
        self.force_closed = 0

    @property
    def inactivity_timeout(self) -> timedelta:
        return timedelta(minutes=self.config.inactivity_timeout_minutes)

    @property
    def heartbeat_interval(self) -> timedelta:
        return timedelta(seconds=self.config.heartbeat_interval_seconds)

    # ── Close ─────────────────────────────────────────────────

    async def close(self, conversation: Conversation, reason: str) -> None:
        """Mark closed, remove from the registry and announce it."""
        conversation.status = ConversationStatus.CLOSED
        conversation.touch(self._clock())
        await self.registry.delete(conversation.conversation_id)
        self.bus.publish(EventKind.CONVERSATION_CLOSED, conversation.conversation_id, {
            "reason": reason,
            "conversation": conversation.model_dump(mode="json"),
        })
        logger.info("conversation_closed", conversation_id=conversation.conversation_id, reason=reason)

    # ── Inactivity sweep ──────────────────────────────────────

    def is_expired(self, conversation: Conversation, now: datetime) -> bool:
        return now - conversation.last_update_time > self.inactivity_timeout

    async def sweep_inactive(self) -> list[str]:
        now = self._clock()
        evicted: list[str] = []
        for conv in await self.registry.all():
            cid = conv.conversation_id
            if not self.is_expired(conv, now):
                continue
            if self.registry.is_busy(cid):
                logger.info("sweep_skipped_busy", conversation_id=cid)
                continue

            async with self.registry.lock_for(cid):
                if not self.registry.is_live(conv):
                    continue
                await self._flush_unprocessed(conv)
                await self.close(conv, "inactivity")
            evicted.append(cid)

        self.evicted += len(evicted)
        if evicted:
            logger.info("inactivity_sweep_completed", evicted=len(evicted))
        return evicted

    async def _flush_unprocessed(self, conversation: Conversation) -> None:
        for entry in conversation.unprocessed_messages():
            message = InboundMessage.from_entry(entry, conversation.user_address)
            try:
                await self.processor.process(message, conversation)
            except Exception as e:
                logger.warning(
                    "final_attempt_failed",
                    conversation_id=conversation.conversation_id,
                    message_id=entry.id,
                    attempt=entry.attempts,
                    error=str(e),
                )

    # ── Heartbeat sweep ───────────────────────────────────────

    def record_heartbeat(self, conversation: Conversation) -> None:
        conversation.last_heartbeat = self._clock()
        conversation.metadata.heartbeat_enabled = True
        conversation.metadata.reconnect_attempts = 0

    async def sweep_heartbeats(self) -> dict[str, list[str]]:
        now = self._clock()
        reconnect: list[str] = []
        closed: list[str] = []
        for conv in await self.registry.all():
            if not conv.metadata.heartbeat_enabled:
                continue
            if now - conv.last_heartbeat <= self.heartbeat_interval:
                continue

            cid = conv.conversation_id
            conv.metadata.reconnect_attempts += 1
            attempts = conv.metadata.reconnect_attempts
            logger.warning("heartbeat_missed", conversation_id=cid, reconnect_attempts=attempts)

            if attempts > self.config.max_reconnect_attempts:
                if self.registry.is_busy(cid):
                    logger.info("sweep_skipped_busy", conversation_id=cid)
                    continue
                async with self.registry.lock_for(cid):
                    if not self.registry.is_live(conv):
                        continue
                    await self.close(conv, "heartbeat_timeout")
                self.force_closed += 1
                closed.append(cid)
            else:
                self.bus.publish(EventKind.RECONNECT_NEEDED, cid, {
                    "reconnect_attempts": attempts,
                    "last_heartbeat": conv.last_heartbeat.isoformat(),
                })
                reconnect.append(cid)
        return {"reconnect": reconnect, "closed": closed}

    # ── Lifecycle ─────────────────────────────────────────────

    async def _loop(self, name: str, interval: float, sweep: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await sweep()
            except Exception as e:
                logger.error("sweep_failed", sweep=name, error=str(e))

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._loop(
                "inactivity", self.config.cleanup_interval_minutes * 60, self.sweep_inactive,
            ), name="inactivity-sweep"),
            asyncio.create_task(self._loop(
                "heartbeat", self.config.heartbeat_interval_seconds, self.sweep_heartbeats,
            ), name="heartbeat-sweep"),
        ]
        logger.info("maintenance_scheduler_started",
                    cleanup_interval_minutes=self.config.cleanup_interval_minutes,
                    heartbeat_interval_seconds=self.config.heartbeat_interval_seconds)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("maintenance_scheduler_stopped", evicted=self.evicted, force_closed=self.force_closed)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def stats(self) -> dict[str, Any]:
        return {"running": self.running, "evicted": self.evicted, "force_closed": self.force_closed}
