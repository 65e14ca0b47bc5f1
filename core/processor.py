"""
Message Processor — the per-message dispatch of the conversation pipeline.

Handles:
- Attempt bookkeeping on the message entry
- Chat reset (channel delete/reset events and reset phrases)
- Document requests (trigger phrases) gated on a known category
- Text: welcome-only first turn, sticky classification, assistant reply
- Audio: media fetch, transcription, echo, classification, assistant reply
- Voice replies gated on a confirmation phrase and a cooldown, with text fallback
- Apologies to the user, at most one per message

Every collaborator call runs under a per-call deadline; a timeout is
raised as the matching transient error so the retry coordinator can act.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

from backend.assistant import AssistantBackend
from backend.drafting import DraftingService
from channels.base import ChannelTransport
from config.settings import ConversationConfig
from core.classifier import classify
from core.documents import fill_case_details, format_document
from core.errors import (
    AssistantError,
    ClassificationError,
    ConverseError,
    DeliveryError,
    DraftingError,
    MediaFetchError,
    SynthesisError,
    TranscriptionError,
    UnsupportedMessageType,
)
from models.schemas import (
    Category,
    ClassificationResult,
    Conversation,
    InboundMessage,
    MessageDirection,
    MessageEntry,
    MessageStatus,
    MessageType,
    ProcessingRecord,
    TranscriptionRecord,
    utcnow,
)
from voice.speech import SpeechService

logger = structlog.get_logger()

T = TypeVar("T")


# ──────────────────────────────────────────────────────────────
#  User-facing copy
# ──────────────────────────────────────────────────────────────

WELCOME_MESSAGE = (
    "¡Hola {name}! 👋\n\n"
    "Soy JULI 🤖, tu asistente legal virtual. Estoy aquí para brindarte orientación en:\n\n"
    "📱 Servicios públicos domiciliarios\n"
    "📞 Telecomunicaciones\n"
    "✈️ Transporte aéreo\n\n"
    "Por favor, describe detalladamente tu situación y con gusto te ayudaré. "
    "Puedes escribir tu mensaje o enviar una nota de voz 🎤"
)
TEXT_APOLOGY = "Lo siento, hubo un error procesando tu mensaje. Por favor, intenta nuevamente."
AUDIO_APOLOGY = "Lo siento, no pude procesar tu mensaje de voz. ¿Podrías intentarlo de nuevo o escribirme tu consulta?"
DOCUMENT_APOLOGY = "Lo siento, hubo un error procesando tu solicitud. Por favor, intenta nuevamente."
AUDIO_RECEIVED_NOTICE = "🎧 Recibí tu nota de voz, la estoy procesando..."
TRANSCRIPTION_ECHO = "📝 Entendí: \"{text}\""
RESET_NOTICE = "🔄 Hemos reiniciado la conversación. Cuéntame, ¿en qué te puedo ayudar?"
DOCUMENT_NEEDS_CASE = "Para generar el documento, primero necesito que me cuentes tu caso."
DOCUMENT_IN_PROGRESS = "Estoy procesando tu solicitud para generar el documento legal..."


class MessageProcessor:
    def __init__(
        self,
        transport: ChannelTransport,
        speech: SpeechService,
        assistant: AssistantBackend,
        drafting: DraftingService,
        config: ConversationConfig,
        clock: Callable[[], datetime] = utcnow,
        classifier: Callable[[str], ClassificationResult] = classify,
    ):
        self.transport = transport
        self.speech = speech
        self.assistant = assistant
        self.drafting = drafting
        self.config = config
        self._clock = clock
        self._classify = classifier
        self._triggers = [t.lower() for t in config.document_triggers]
        self._reset_phrases = {p.strip().lower() for p in config.reset_phrases}

    # ── Entry point ───────────────────────────────────────────

    async def process(self, message: InboundMessage, conversation: Conversation) -> bool:
        """
        Process one inbound message against its conversation.

        Returns False when the text or document path failed and the user was
        apologized to; raises for the audio path and for unsupported types.
        """
        now = self._clock()
        entry = conversation.find_message(message.id)
        if entry is None:
            entry = message.to_entry()
            conversation.add_message(entry, now)

        entry.attempts += 1
        entry.last_attempt = now
        conversation.touch(now)
        ctx = {
            "conversation_id": conversation.conversation_id,
            "message_id": message.id,
            "attempt": entry.attempts,
        }

        try:
            ok = await self._dispatch(message, conversation, entry, ctx)
        except Exception as e:
            self._record_failure(conversation, entry, str(e) or type(e).__name__)
            logger.error("message_processing_failed", error=str(e),
                         error_type=type(e).__name__, **ctx)
            raise

        if ok:
            self._record_success(conversation, entry)
            logger.info("message_processed", type=message.type, **ctx)
        else:
            self._record_failure(conversation, entry, entry.error or "processing failed")
        return ok

    async def _dispatch(
        self,
        message: InboundMessage,
        conversation: Conversation,
        entry: MessageEntry,
        ctx: dict[str, Any],
    ) -> bool:
        if message.is_reset_event or self.is_reset_phrase(message):
            await self.chat_reset(conversation, message.id, ctx)
            return True

        if message.type == MessageType.TEXT.value and self.is_document_request(message.text):
            return await self._handle_document_request(conversation, entry, ctx)

        if message.type == MessageType.TEXT.value:
            return await self._handle_text(message, conversation, entry, ctx)
        if message.type == MessageType.AUDIO.value:
            return await self._handle_audio(message, conversation, entry, ctx)
        if message.type == MessageType.DOCUMENT.value:
            logger.info("document_message_received", filename=message.filename,
                        media_id=message.media_id, **ctx)
            return True
        raise UnsupportedMessageType(message.type)

    # ── Detection ─────────────────────────────────────────────

    def is_reset_phrase(self, message: InboundMessage) -> bool:
        return (
            message.type == MessageType.TEXT.value
            and message.text.strip().lower() in self._reset_phrases
        )

    def is_document_request(self, text: str) -> bool:
        lowered = (text or "").lower()
        return any(trigger in lowered for trigger in self._triggers)

    def should_speak(self, conversation: Conversation, content: str) -> bool:
        """Voice only for the confirmation phrase, at most once per cooldown."""
        phrase = self.config.tts_trigger_phrase.lower()
        if not phrase or phrase not in content.lower():
            return False
        last = conversation.metadata.last_tts_time
        if last is None:
            return True
        elapsed = (self._clock() - last).total_seconds()
        return elapsed >= self.config.tts_cooldown_seconds

    # ── Text ──────────────────────────────────────────────────

    async def _handle_text(
        self,
        message: InboundMessage,
        conversation: Conversation,
        entry: MessageEntry,
        ctx: dict[str, Any],
    ) -> bool:
        if conversation.inbound_count() <= 1:
            logger.info("welcome_turn_only", **ctx)
            return True

        try:
            category = self._categorize(conversation, message.id)
            if category == Category.UNKNOWN:
                logger.info("category_unknown", **ctx)
                return True
            reply = await self._call(
                self.assistant.respond(message.text, category, conversation.conversation_id),
                AssistantError, "assistant reply",
            )
            await self._send_reply(conversation, reply.content, ctx)
            return True
        except Exception as e:
            entry.error = str(e) or type(e).__name__
            logger.error("text_processing_failed", error=entry.error, **ctx)
            await self._apologize(conversation, entry, TEXT_APOLOGY, ctx)
            return False

    # ── Audio ─────────────────────────────────────────────────

    async def _handle_audio(
        self,
        message: InboundMessage,
        conversation: Conversation,
        entry: MessageEntry,
        ctx: dict[str, Any],
    ) -> bool:
        try:
            if entry.attempts == 1:
                await self.send_text(conversation, AUDIO_RECEIVED_NOTICE)

            audio = await self._call(
                self.transport.fetch_media(message.media_id), MediaFetchError, "media fetch",
            )
            if not audio:
                raise MediaFetchError(f"Empty media payload for {message.media_id}")

            text = await self._call(
                self.speech.transcribe(audio, message.mime_type), TranscriptionError, "transcription",
            )
            conversation.metadata.audio_transcriptions.append(
                TranscriptionRecord(message_id=message.id, text=text, timestamp=self._clock())
            )
            conversation.touch(self._clock())
            logger.info("audio_transcribed", chars=len(text), **ctx)

            await self.send_text(conversation, TRANSCRIPTION_ECHO.format(text=text))

            category = self._categorize(conversation, message.id)
            if category == Category.UNKNOWN:
                logger.info("category_unknown", **ctx)
                return True
            reply = await self._call(
                self.assistant.respond(text, category, conversation.conversation_id),
                AssistantError, "assistant reply",
            )
            await self._send_reply(conversation, reply.content, ctx)
            return True
        except Exception as e:
            entry.error = str(e) or type(e).__name__
            logger.error("audio_processing_failed", error=entry.error, **ctx)
            await self._apologize(conversation, entry, AUDIO_APOLOGY, ctx)
            raise

    # ── Classification ────────────────────────────────────────

    def _categorize(self, conversation: Conversation, message_id: str) -> Category:
        if conversation.has_category:
            result = ClassificationResult(
                category=conversation.category,
                confidence=conversation.classification_confidence,
            )
        else:
            try:
                result = self._classify(conversation.classification_corpus())
            except Exception as e:
                raise ClassificationError(f"Classification failed: {e}") from e
        conversation.record_classification(message_id, result, self._clock())
        return result.category

    # ── Chat reset ────────────────────────────────────────────

    async def chat_reset(self, conversation: Conversation, message_id: str, ctx: dict[str, Any]) -> None:
        previous = conversation.category
        conversation.restart_classification()

        if previous is not None and previous != Category.UNKNOWN:
            try:
                await self._call(
                    self.assistant.reset_session(previous, conversation.conversation_id),
                    AssistantError, "assistant session reset",
                )
            except ConverseError as e:
                logger.error("assistant_reset_failed", category=previous.value, error=str(e), **ctx)

        now = self._clock()
        conversation.metadata.processing_history.append(ProcessingRecord(
            message_id=message_id,
            action="reset",
            timestamp=now,
        ))
        conversation.touch(now)
        logger.info("chat_reset", previous_category=previous.value if previous else None, **ctx)
        await self.send_text(conversation, RESET_NOTICE)

    # ── Document request ──────────────────────────────────────

    async def _handle_document_request(
        self,
        conversation: Conversation,
        entry: MessageEntry,
        ctx: dict[str, Any],
    ) -> bool:
        if not conversation.has_category:
            logger.info("document_request_without_category", **ctx)
            await self.send_text(conversation, DOCUMENT_NEEDS_CASE)
            return True

        category = conversation.category
        fill_case_details(conversation)
        history = conversation.history()
        profile = conversation.customer_profile()
        try:
            await self.send_text(conversation, DOCUMENT_IN_PROGRESS)
            result = await self._call(
                self.drafting.draft(category, history, profile), DraftingError, "drafting",
            )
            await self.send_text(conversation, format_document(result, profile))
        except Exception as e:
            entry.error = str(e) or type(e).__name__
            logger.error("document_generation_failed", category=category.value, error=entry.error, **ctx)
            await self._apologize(conversation, entry, DOCUMENT_APOLOGY, ctx)
            return False

        now = self._clock()
        md = conversation.metadata
        md.document_generated = True
        md.document_generated_at = now
        md.document_reference = result.reference
        md.processing_history.append(ProcessingRecord(
            message_id=entry.id,
            action="document",
            timestamp=now,
        ))
        conversation.touch(now)
        logger.info("document_generated", category=category.value, reference=result.reference, **ctx)
        return True

    # ── Outbound ──────────────────────────────────────────────

    async def send_welcome(self, conversation: Conversation, profile_name: str = "") -> None:
        name = profile_name or conversation.metadata.user_profile.name or "Usuario"
        if profile_name:
            conversation.metadata.user_profile.name = profile_name
        await self.send_text(conversation, WELCOME_MESSAGE.format(name=name))

    async def send_text(self, conversation: Conversation, text: str) -> dict[str, Any]:
        result = await self._call(
            self.transport.send_text(conversation.user_address, text), DeliveryError, "text delivery",
        )
        self._append_outbound(conversation, text, MessageType.TEXT, result)
        return result

    async def _send_reply(self, conversation: Conversation, content: str, ctx: dict[str, Any]) -> None:
        if self.should_speak(conversation, content):
            try:
                audio = await self._call(self.speech.synthesize(content), SynthesisError, "synthesis")
                result = await self._call(
                    self.transport.send_voice(conversation.user_address, audio),
                    DeliveryError, "voice delivery",
                )
            except Exception as e:
                logger.warning("voice_reply_fallback", error=str(e), **ctx)
            else:
                conversation.metadata.last_tts_time = self._clock()
                self._append_outbound(conversation, content, MessageType.AUDIO, result)
                logger.info("voice_reply_sent", **ctx)
                return
        elif self.config.tts_trigger_phrase and self.config.tts_trigger_phrase.lower() in content.lower():
            logger.info("voice_reply_throttled", **ctx)

        await self.send_text(conversation, content)

    async def _apologize(
        self,
        conversation: Conversation,
        entry: MessageEntry,
        text: str,
        ctx: dict[str, Any],
    ) -> None:
        if entry.apology_sent:
            return
        try:
            await self.send_text(conversation, text)
            entry.apology_sent = True
        except Exception as e:
            logger.error("apology_delivery_failed", error=str(e), **ctx)

    def _append_outbound(
        self,
        conversation: Conversation,
        content: str,
        kind: MessageType,
        result: Optional[dict[str, Any]],
    ) -> None:
        now = self._clock()
        msg_id = (result or {}).get("channel_message_id") or f"out-{uuid.uuid4().hex}"
        conversation.add_message(MessageEntry(
            id=msg_id,
            timestamp=now,
            type=kind.value,
            direction=MessageDirection.OUTBOUND,
            content=content,
            status=MessageStatus.SENT,
            processed=True,
        ), now)

    # ── Bookkeeping ───────────────────────────────────────────

    def _record_success(self, conversation: Conversation, entry: MessageEntry) -> None:
        now = self._clock()
        entry.processed = True
        entry.error = None
        conversation.metadata.processing_history.append(ProcessingRecord(
            message_id=entry.id,
            action="processed",
            timestamp=now,
        ))
        conversation.metadata.has_unread_messages = bool(conversation.unprocessed_messages())
        conversation.touch(now)

    def _record_failure(self, conversation: Conversation, entry: MessageEntry, error: str) -> None:
        now = self._clock()
        entry.processed = False
        entry.error = error
        record = ProcessingRecord(
            message_id=entry.id,
            action="failed",
            success=False,
            error=error,
            timestamp=now,
        )
        conversation.metadata.processing_history.append(record)
        conversation.metadata.processing_errors.append(record)
        conversation.touch(now)

    async def _call(self, awaitable: Awaitable[T], error_cls: type[ConverseError], what: str) -> T:
        timeout = self.config.collaborator_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise error_cls(f"{what} timed out after {timeout}s", retryable=True) from e
