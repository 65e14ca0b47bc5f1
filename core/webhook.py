"""
Webhook Ingestion — turns one WhatsApp Cloud API delivery into processed turns.

The envelope is validated up front and rejected as a whole when malformed.
Each message inside it is then validated, attached to its conversation and
processed independently: one bad message is counted and reported without
affecting its siblings.
"""
from __future__ import annotations

import functools
import structlog
from datetime import datetime
from typing import Any, Callable

from context.registry import ConversationRegistry
from core.errors import InvalidPayloadError, UnsupportedMessageType, ValidationError
from core.events import EventBus
from core.processor import MessageProcessor
from core.retry import RetryCoordinator
from models.schemas import Conversation, EventKind, InboundMessage, MessageType, utcnow

logger = structlog.get_logger()

WHATSAPP_OBJECT = "whatsapp_business_account"
SUPPORTED_TYPES = {MessageType.TEXT.value, MessageType.AUDIO.value, MessageType.DOCUMENT.value, "system"}


def validate_payload(payload: Any) -> list[dict[str, Any]]:
    """Check the envelope shape and return its entries. Raises InvalidPayloadError."""
    if not isinstance(payload, dict):
        raise InvalidPayloadError("Payload must be a JSON object")
    if payload.get("object") != WHATSAPP_OBJECT:
        raise InvalidPayloadError(f"Unrecognized object: {payload.get('object')!r}")
    entries = payload.get("entry")
    if not isinstance(entries, list):
        raise InvalidPayloadError("'entry' must be a list")
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("changes", []), list):
            raise InvalidPayloadError("Each entry must be an object with a 'changes' list")
        for change in entry.get("changes", []):
            if not isinstance(change, dict) or not isinstance(change.get("value", {}), dict):
                raise InvalidPayloadError("Each change must be an object with a 'value' object")
            messages = change.get("value", {}).get("messages")
            if messages is not None and not isinstance(messages, list):
                raise InvalidPayloadError("'messages' must be a list")
    return entries


def validate_message(raw: Any, value: dict[str, Any]) -> InboundMessage:
    """Structural checks for one message. Raises ValidationError or UnsupportedMessageType."""
    if not isinstance(raw, dict):
        raise ValidationError("Message must be an object")
    for field in ("id", "from", "type"):
        if not raw.get(field):
            raise ValidationError(f"Message is missing '{field}'")

    msg_type = raw["type"]
    if not isinstance(msg_type, str):
        raise ValidationError("Message 'type' must be a string")
    if msg_type not in SUPPORTED_TYPES:
        raise UnsupportedMessageType(msg_type)

    try:
        message = InboundMessage.from_webhook(raw, value)
    except (TypeError, ValueError, AttributeError) as e:
        # pydantic's ValidationError is a ValueError
        raise ValidationError(f"Malformed {msg_type} message: {e}") from e
    if message.is_reset_event:
        return message

    if msg_type == MessageType.TEXT.value and not message.text.strip():
        raise ValidationError("Text message has an empty body")
    if msg_type in (MessageType.AUDIO.value, MessageType.DOCUMENT.value) and not message.media_id:
        raise ValidationError(f"{msg_type.capitalize()} message has no media id")
    return message


class WebhookIngestor:
    def __init__(
        self,
        registry: ConversationRegistry,
        processor: MessageProcessor,
        retry: RetryCoordinator,
        bus: EventBus,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.processor = processor
        self.retry = retry
        self.bus = bus
        self._clock = clock

    async def ingest(self, payload: Any) -> dict[str, Any]:
        entries = validate_payload(payload)

        processed = 0
        errors = 0
        details: list[dict[str, Any]] = []

        for entry in entries:
            for change in entry.get("changes", []):
                value = change.get("value") or {}
                for raw in value.get("messages") or []:
                    detail = await self._ingest_one(raw, value)
                    details.append(detail)
                    if detail["status"] in ("processed", "duplicate"):
                        processed += 1
                    else:
                        errors += 1

        self.bus.publish(EventKind.WEBHOOK_SUMMARY, payload={
            "processed": processed,
            "errors": errors,
            "total": len(details),
        })
        logger.info("webhook_ingested", processed=processed, errors=errors, total=len(details))
        return {"processed": processed, "errors": errors, "details": details}

    async def _ingest_one(self, raw: Any, value: dict[str, Any]) -> dict[str, Any]:
        raw_id = raw.get("id", "") if isinstance(raw, dict) else ""
        try:
            message = validate_message(raw, value)
        except (ValidationError, UnsupportedMessageType) as e:
            logger.warning("message_rejected", message_id=raw_id, error=str(e))
            return {"message_id": raw_id, "status": "invalid", "error": str(e)}

        ctx = {"conversation_id": message.sender, "message_id": message.id}
        try:
            ok = await self._process(message)
        except Exception as e:
            logger.error("message_failed", error=str(e), error_type=type(e).__name__, **ctx)
            return {**_detail(message), "status": "failed", "error": str(e)}

        if ok is None:
            return {**_detail(message), "status": "duplicate"}
        if message.type == MessageType.TEXT.value:
            await self._mark_read(message)
        if not ok:
            return {**_detail(message), "status": "failed", "error": "processing returned failure"}
        return {**_detail(message), "status": "processed"}

    async def _process(self, message: InboundMessage):
        """Returns True/False from the processor, or None for an already-processed duplicate."""
        while True:
            conversation, created = await self.registry.get_or_create(message.sender, message.sender)
            cid = conversation.conversation_id
            ctx = {"conversation_id": cid, "message_id": message.id}

            if created:
                self.bus.publish(EventKind.NEW_CONVERSATION, cid, conversation.model_dump(mode="json"))

            async with self.registry.lock_for(cid):
                # Closed while we waited for the turn lock; start over on a fresh record.
                if not self.registry.is_live(conversation):
                    logger.info("conversation_closed_while_waiting", **ctx)
                    continue
                return await self._run_turn(message, conversation, created, ctx)

    async def _run_turn(
        self, message: InboundMessage, conversation: Conversation, created: bool, ctx: dict[str, Any],
    ):
        cid = conversation.conversation_id
        if created:
            try:
                await self.processor.send_welcome(conversation, message.profile_name)
            except Exception as e:
                logger.error("welcome_failed", error=str(e), **ctx)

        existing = conversation.find_message(message.id)
        if existing is not None and existing.processed:
            logger.info("duplicate_message_skipped", attempts=existing.attempts, **ctx)
            return None

        if existing is None:
            entry = message.to_entry()
            conversation.add_message(entry, self._clock())
            self.bus.publish(EventKind.NEW_MESSAGE, cid, {"message": entry.model_dump(mode="json")})
        else:
            logger.info("redelivered_message_retried", attempts=existing.attempts, **ctx)

        try:
            return await self.retry.run(
                functools.partial(self.processor.process, message, conversation), **ctx,
            )
        finally:
            self.bus.publish(EventKind.CONVERSATION_UPDATE, cid, conversation.model_dump(mode="json"))

    async def _mark_read(self, message: InboundMessage) -> None:
        try:
            await self.processor.transport.mark_read(message.id)
        except Exception as e:
            logger.warning("mark_read_failed", message_id=message.id, error=str(e))


def _detail(message: InboundMessage) -> dict[str, Any]:
    return {"message_id": message.id, "conversation_id": message.sender, "type": message.type}
