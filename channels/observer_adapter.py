"""
Observer Hub — WebSocket push channel for live dashboards.

Provides:
- Observer registration with an initial snapshot of live conversations
- Event fan-out from the event bus to every connected observer
- Ping/pong heartbeat with forced disconnect after repeated missed pongs
- Dropping of observers whose socket fails on send
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from config.settings import ObserverConfig
from models.schemas import ConversationEvent

logger = structlog.get_logger()


class ObserverConnection:
    """Tracks a single observer WebSocket."""

    def __init__(self, observer_id: str, ws: Any):
        self.observer_id = observer_id
        self.ws = ws
        self.connected_at = datetime.now(timezone.utc)
        self.last_pong = time.monotonic()
        self.missed_pongs: int = 0
        self.awaiting_pong: bool = False
        self.events_sent: int = 0


class ObserverHub:
    def __init__(self, config: ObserverConfig):
        self.config = config
        self._connections: dict[str, ObserverConnection] = {}
        self._ping_task: Optional[asyncio.Task] = None

    # ── Connection management ─────────────────────────────────

    async def register(self, ws: Any, snapshot: list[dict[str, Any]] = None) -> str:
        """Register an accepted socket and send it the current conversations."""
        observer_id = str(uuid.uuid4())
        conn = ObserverConnection(observer_id, ws)
        self._connections[observer_id] = conn
        logger.info("observer_registered", observer_id=observer_id, observers=len(self._connections))

        await self._send(conn, {
            "type": "conversations",
            "data": snapshot or [],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        return observer_id

    async def unregister(self, observer_id: str) -> None:
        if self._connections.pop(observer_id, None) is not None:
            logger.info("observer_unregistered", observer_id=observer_id, observers=len(self._connections))

    def is_connected(self, observer_id: str) -> bool:
        return observer_id in self._connections

    @property
    def observer_count(self) -> int:
        return len(self._connections)

    # ── Send ──────────────────────────────────────────────────

    async def _send(self, conn: ObserverConnection, payload: dict[str, Any]) -> bool:
        try:
            await conn.ws.send_text(json.dumps(payload, default=str))
        except Exception as e:
            logger.warning("observer_send_failed", observer_id=conn.observer_id, error=str(e))
            await self.unregister(conn.observer_id)
            return False
        conn.events_sent += 1
        return True

    async def broadcast(self, event: ConversationEvent) -> int:
        """Event bus subscriber: push one event to every observer."""
        payload = event.to_wire()
        delivered = 0
        for conn in list(self._connections.values()):
            if await self._send(conn, payload):
                delivered += 1
        return delivered

    # ── Client events ─────────────────────────────────────────

    async def handle_client_event(self, observer_id: str, event: dict[str, Any]) -> None:
        conn = self._connections.get(observer_id)
        if conn is None:
            return
        if event.get("type") == "pong":
            self.record_pong(observer_id)
        else:
            logger.debug("observer_event_ignored", observer_id=observer_id, type=event.get("type"))

    def record_pong(self, observer_id: str) -> None:
        conn = self._connections.get(observer_id)
        if conn is None:
            return
        conn.last_pong = time.monotonic()
        conn.missed_pongs = 0
        conn.awaiting_pong = False

    # ── Heartbeat ─────────────────────────────────────────────

    async def ping_all(self) -> list[str]:
        """
        One heartbeat round. A pong outstanding from the previous round counts
        as a miss; observers at the miss limit are closed and dropped.
        """
        dropped: list[str] = []
        for conn in list(self._connections.values()):
            if conn.awaiting_pong:
                conn.missed_pongs += 1
            if conn.missed_pongs >= self.config.max_missed_pongs:
                logger.warning("observer_heartbeat_lost", observer_id=conn.observer_id,
                               missed_pongs=conn.missed_pongs)
                try:
                    await conn.ws.close(code=1001)
                except Exception as e:
                    logger.debug("observer_close_failed", observer_id=conn.observer_id, error=str(e))
                await self.unregister(conn.observer_id)
                dropped.append(conn.observer_id)
                continue

            conn.awaiting_pong = True
            await self._send(conn, {"type": "ping", "timestamp": datetime.now(timezone.utc).isoformat()})
        return dropped

    async def _ping_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.ping_interval_seconds)
            try:
                await self.ping_all()
            except Exception as e:
                logger.error("observer_ping_failed", error=str(e))

    def start(self) -> None:
        if self._ping_task is None or self._ping_task.done():
            self._ping_task = asyncio.create_task(self._ping_loop(), name="observer-ping")

    async def stop(self) -> None:
        if self._ping_task is not None:
            self._ping_task.cancel()
            try:
                await self._ping_task
            except asyncio.CancelledError:
                pass
            self._ping_task = None
        for conn in list(self._connections.values()):
            try:
                await conn.ws.close()
            except Exception as e:
                logger.debug("observer_close_failed", observer_id=conn.observer_id, error=str(e))
        self._connections.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "observers": len(self._connections),
            "events_sent": sum(c.events_sent for c in self._connections.values()),
        }
