"""
Channel Transport — abstract outbound/inbound capability of a messaging channel.

Provides:
- TransportMetrics: per-channel send/fail/latency tracking
- ChannelTransport: abstract base wrapping every call with metrics and logging
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  TRANSPORT METRICS
# ══════════════════════════════════════════════════════════════

class TransportMetrics:
    """Tracks per-channel send, failure, media and latency metrics."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.voice_sent: int = 0
        self.messages_failed: int = 0
        self.media_fetched: int = 0
        self.marked_read: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0, voice: bool = False):
        self.messages_sent += 1
        if voice:
            self.voice_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "voice_sent": self.voice_sent,
            "failed": self.messages_failed,
            "media_fetched": self.media_fetched,
            "marked_read": self.marked_read,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL TRANSPORT — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelTransport(abc.ABC):
    """
    Base class for channel transports.

    Subclasses implement the ``_do_*`` hooks. The public methods record
    metrics and re-raise failures unchanged so the caller's retry policy
    can decide what to do with them.
    """

    channel_name: str = "channel"

    def __init__(self):
        self.metrics = TransportMetrics(self.channel_name)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send_text(self, address: str, text: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _do_send_voice(self, address: str, audio: bytes) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _do_fetch_media(self, media_id: str) -> bytes:
        ...

    @abc.abstractmethod
    async def _do_mark_read(self, message_id: str) -> None:
        ...

    # ── Public API ────────────────────────────────────────────

    async def send_text(self, address: str, text: str) -> dict[str, Any]:
        start = time.monotonic()
        try:
            result = await self._do_send_text(address, text)
        except Exception as e:
            self.metrics.record_failure(str(e))
            raise
        self.metrics.record_send((time.monotonic() - start) * 1000)
        return result

    async def send_voice(self, address: str, audio: bytes) -> dict[str, Any]:
        start = time.monotonic()
        try:
            result = await self._do_send_voice(address, audio)
        except Exception as e:
            self.metrics.record_failure(str(e))
            raise
        self.metrics.record_send((time.monotonic() - start) * 1000, voice=True)
        return result

    async def fetch_media(self, media_id: str) -> bytes:
        data = await self._do_fetch_media(media_id)
        self.metrics.media_fetched += 1
        return data

    async def mark_read(self, message_id: str) -> None:
        await self._do_mark_read(message_id)
        self.metrics.marked_read += 1

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.channel_name, "metrics": self.metrics.to_dict()}

    async def shutdown(self) -> None:
        pass
