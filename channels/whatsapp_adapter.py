"""
WhatsApp Channel Transport — WhatsApp Business Cloud API integration.

Provides:
- Phone number normalization
- Webhook verification (hub.verify_token challenge)
- Payload signature verification (X-Hub-Signature-256)
- Outbound: free-form text and voice notes (media upload + audio message)
- Media download for inbound audio
- Read receipts
- Mock mode when no access token is configured
"""
from __future__ import annotations

import hashlib
import hmac
import re
import uuid
import structlog
from typing import Any, Optional

import httpx

from config.settings import WhatsAppConfig
from channels.base import ChannelTransport
from core.errors import DeliveryError, MediaFetchError, from_http_error

logger = structlog.get_logger()


class WhatsAppTransport(ChannelTransport):
    """
    WhatsApp Business Cloud API transport.

    Every failure is raised as a typed transient error; 4xx responses other
    than 429 are marked non-retryable.
    """

    channel_name = "whatsapp"

    def __init__(self, config: WhatsAppConfig):
        super().__init__()
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_mock(self) -> bool:
        return not (self.config.access_token and self.config.phone_number_id)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self.config.base_url}/{self.config.api_version}",
                headers={"Authorization": f"Bearer {self.config.access_token}"},
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=5.0),
            )
        return self._client

    # ── Phone normalization ───────────────────────────────────

    @staticmethod
    def normalize_phone(phone: str) -> str:
        """Normalize phone to digits only, stripping +, spaces, dashes."""
        return re.sub(r"[^\d]", "", phone)

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self.config.verify_token and token == self.config.verify_token:
            return challenge
        return None

    def verify_signature(self, body: bytes, signature: str) -> bool:
        """Check X-Hub-Signature-256. Always passes when no app secret is configured."""
        if not self.config.app_secret:
            return True
        if not signature.startswith("sha256="):
            return False
        expected = hmac.new(
            self.config.app_secret.encode(), body, hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature[len("sha256="):])

    # ── Send ──────────────────────────────────────────────────

    async def _post_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(f"/{self.config.phone_number_id}/messages", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise from_http_error(e, DeliveryError, "WhatsApp send failed") from e
        data = response.json()
        msg_id = (data.get("messages") or [{}])[0].get("id", "")
        return {"status": "sent", "channel_message_id": msg_id}

    async def _do_send_text(self, address: str, text: str) -> dict[str, Any]:
        phone = self.normalize_phone(address)
        if self.is_mock:
            msg_id = f"wamid.{uuid.uuid4().hex[:20]}"
            logger.info("whatsapp_text_sent", to=phone, msg_id=msg_id, mock=True)
            return {"status": "mock_sent", "channel_message_id": msg_id}

        result = await self._post_message({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        })
        logger.info("whatsapp_text_sent", to=phone, msg_id=result["channel_message_id"])
        return result

    async def _upload_audio(self, audio: bytes) -> str:
        client = await self._get_client()
        try:
            response = await client.post(
                f"/{self.config.phone_number_id}/media",
                data={"messaging_product": "whatsapp", "type": "audio/ogg"},
                files={"file": ("reply.ogg", audio, "audio/ogg")},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise from_http_error(e, DeliveryError, "WhatsApp media upload failed") from e
        media_id = response.json().get("id", "")
        if not media_id:
            raise DeliveryError("WhatsApp media upload returned no id")
        return media_id

    async def _do_send_voice(self, address: str, audio: bytes) -> dict[str, Any]:
        phone = self.normalize_phone(address)
        if self.is_mock:
            msg_id = f"wamid.{uuid.uuid4().hex[:20]}"
            logger.info("whatsapp_voice_sent", to=phone, msg_id=msg_id, bytes=len(audio), mock=True)
            return {"status": "mock_sent", "channel_message_id": msg_id}

        media_id = await self._upload_audio(audio)
        result = await self._post_message({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
            "type": "audio",
            "audio": {"id": media_id},
        })
        logger.info("whatsapp_voice_sent", to=phone, msg_id=result["channel_message_id"])
        return result

    # ── Media ─────────────────────────────────────────────────

    async def _do_fetch_media(self, media_id: str) -> bytes:
        if not media_id:
            raise MediaFetchError("Message carries no media id", retryable=False)
        if self.is_mock:
            logger.warning("whatsapp_media_mock", media_id=media_id)
            return b""

        client = await self._get_client()
        try:
            meta = await client.get(f"/{media_id}")
            meta.raise_for_status()
            url = meta.json().get("url", "")
            if not url:
                raise MediaFetchError(f"No download URL for media {media_id}")
            blob = await client.get(url)
            blob.raise_for_status()
        except httpx.HTTPError as e:
            raise from_http_error(e, MediaFetchError, f"Media {media_id} download failed") from e
        return blob.content

    # ── Read receipts ─────────────────────────────────────────

    async def _do_mark_read(self, message_id: str) -> None:
        if self.is_mock:
            logger.debug("whatsapp_mark_read", message_id=message_id, mock=True)
            return
        await self._post_message({
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
        })

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        base = await super().health_check()
        return {**base, "mock": self.is_mock}

    async def shutdown(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
