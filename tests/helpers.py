"""Test doubles and payload builders shared across the suite."""
from datetime import datetime, timedelta, timezone
from typing import Any

from channels.whatsapp_adapter import WhatsAppTransport
from config.settings import WhatsAppConfig
from models.schemas import InboundMessage


T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock; call it to read the current time."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes)
        return self.now


class FakeTransport(WhatsAppTransport):
    """WhatsApp transport that records traffic instead of calling the Graph API."""

    def __init__(self, config: WhatsAppConfig = None):
        super().__init__(config or WhatsAppConfig(verify_token="verify-me"))
        self.texts: list[tuple[str, str]] = []
        self.voices: list[tuple[str, bytes]] = []
        self.read: list[str] = []
        self.media_requests: list[str] = []
        self.media: bytes = b"OggS-voice-note"
        self.text_error: Exception = None
        self.voice_error: Exception = None
        self.media_error: Exception = None
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return f"wamid.out{self._counter}"

    async def _do_send_text(self, address: str, text: str) -> dict[str, Any]:
        if self.text_error:
            raise self.text_error
        self.texts.append((address, text))
        return {"status": "sent", "channel_message_id": self._next_id()}

    async def _do_send_voice(self, address: str, audio: bytes) -> dict[str, Any]:
        if self.voice_error:
            raise self.voice_error
        self.voices.append((address, audio))
        return {"status": "sent", "channel_message_id": self._next_id()}

    async def _do_fetch_media(self, media_id: str) -> bytes:
        self.media_requests.append(media_id)
        if self.media_error:
            raise self.media_error
        return self.media

    async def _do_mark_read(self, message_id: str) -> None:
        self.read.append(message_id)

    @property
    def sent_texts(self) -> list[str]:
        return [t for _, t in self.texts]


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ── Builders ──────────────────────────────────────────

def text_msg(msg_id: str, sender: str, body: str, ts: str = "1714564800") -> dict[str, Any]:
    return {"from": sender, "id": msg_id, "timestamp": ts, "type": "text", "text": {"body": body}}


def audio_msg(msg_id: str, sender: str, media_id: str = "media-1") -> dict[str, Any]:
    return {
        "from": sender, "id": msg_id, "timestamp": "1714564800", "type": "audio",
        "audio": {"id": media_id, "mime_type": "audio/ogg; codecs=opus"},
    }


def make_payload(*messages: dict[str, Any], name: str = "Ana") -> dict[str, Any]:
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA-1",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"display_phone_number": "15550001111", "phone_number_id": "PNID-1"},
                    "contacts": [{"profile": {"name": name}, "wa_id": "573001112233"}],
                    "messages": list(messages),
                },
            }],
        }],
    }


def inbound(msg_id: str, text: str, sender: str = "573001112233", **kw) -> InboundMessage:
    return InboundMessage(id=msg_id, sender=sender, type=kw.pop("type", "text"), text=text, **kw)


