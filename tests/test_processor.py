"""Tests for per-message processing: text, audio, reset, documents, voice replies."""
import asyncio
import pytest

from core.errors import (
    AssistantError,
    DeliveryError,
    MediaFetchError,
    SynthesisError,
    TranscriptionError,
    UnsupportedMessageType,
)
from core.processor import (
    AUDIO_APOLOGY,
    AUDIO_RECEIVED_NOTICE,
    DOCUMENT_APOLOGY,
    DOCUMENT_IN_PROGRESS,
    DOCUMENT_NEEDS_CASE,
    RESET_NOTICE,
    TEXT_APOLOGY,
    WELCOME_MESSAGE,
)
from models.schemas import (
    AssistantReply,
    Category,
    MessageDirection,
    MessageType,
    TelecomCase,
)

from tests.helpers import inbound

CONFIRMATION = "Perfecto, he registrado toda la información de tu caso. ¿Deseas el documento?"


async def seed_first_turn(processor, conversation, text="hola"):
    """The first inbound message only triggers the welcome."""
    return await processor.process(inbound("m1", text), conversation)


def audio(msg_id="a1", media_id="media-1"):
    return inbound(msg_id, "", type="audio", media_id=media_id, mime_type="audio/ogg")


# ══════════════════════════════════════════════════════════════
#  TEXT
# ══════════════════════════════════════════════════════════════

class TestTextMessages:
    @pytest.mark.asyncio
    async def test_first_message_is_welcome_turn_only(self, processor, conversation, assistant, transport):
        ok = await seed_first_turn(processor, conversation)
        assert ok is True
        assistant.respond.assert_not_called()
        assert transport.texts == []
        entry = conversation.find_message("m1")
        assert entry.processed is True
        assert entry.attempts == 1

    @pytest.mark.asyncio
    async def test_second_message_classifies_and_replies(self, processor, conversation, assistant, transport):
        await seed_first_turn(processor, conversation)
        ok = await processor.process(inbound("m2", "mi internet es muy lento"), conversation)

        assert ok is True
        assert conversation.category == Category.TELECOM
        assert isinstance(conversation.metadata.case_details, TelecomCase)
        assistant.respond.assert_awaited_once_with(
            "mi internet es muy lento", Category.TELECOM, conversation.conversation_id,
        )
        assert transport.sent_texts == ["Entiendo, cuéntame más sobre tu plan."]

        outbound = [m for m in conversation.messages if m.direction == MessageDirection.OUTBOUND]
        assert len(outbound) == 1
        assert outbound[0].id == "wamid.out1"

    @pytest.mark.asyncio
    async def test_category_is_sticky(self, processor, conversation, assistant):
        await seed_first_turn(processor, conversation)
        await processor.process(inbound("m2", "mi internet no sirve"), conversation)
        await processor.process(inbound("m3", "también el vuelo se retrasó con mi maleta"), conversation)

        assert conversation.category == Category.TELECOM
        assert assistant.respond.await_args.args[1] == Category.TELECOM
        assert len(conversation.metadata.classifications) == 2

    @pytest.mark.asyncio
    async def test_unknown_category_skips_assistant(self, processor, conversation, assistant, transport):
        await seed_first_turn(processor, conversation)
        ok = await processor.process(inbound("m2", "buenas tardes"), conversation)

        assert ok is True
        assert conversation.category is None
        assert conversation.metadata.case_details is None
        assistant.respond.assert_not_called()
        assert transport.texts == []

    @pytest.mark.asyncio
    async def test_classification_uses_accumulated_context(self, processor, conversation):
        await seed_first_turn(processor, conversation, "hola, tengo un problema con mi internet")
        await processor.process(inbound("m2", "desde ayer"), conversation)
        assert conversation.category == Category.TELECOM

    @pytest.mark.asyncio
    async def test_assistant_failure_apologizes_and_returns_false(
        self, processor, conversation, assistant, transport,
    ):
        assistant.respond.side_effect = AssistantError("upstream 502")
        await seed_first_turn(processor, conversation)

        ok = await processor.process(inbound("m2", "mi internet no funciona"), conversation)

        assert ok is False
        assert transport.sent_texts == [TEXT_APOLOGY]
        entry = conversation.find_message("m2")
        assert entry.processed is False
        assert entry.apology_sent is True
        assert "upstream 502" in entry.error
        assert conversation.metadata.processing_errors[-1].message_id == "m2"

    @pytest.mark.asyncio
    async def test_apology_sent_once_per_message(self, processor, conversation, assistant, transport):
        assistant.respond.side_effect = AssistantError("down")
        await seed_first_turn(processor, conversation)

        msg = inbound("m2", "mi internet no funciona")
        await processor.process(msg, conversation)
        await processor.process(msg, conversation)

        assert transport.sent_texts.count(TEXT_APOLOGY) == 1
        assert conversation.find_message("m2").attempts == 2

    @pytest.mark.asyncio
    async def test_delivery_failure_during_apology_is_logged_only(
        self, processor, conversation, assistant, transport,
    ):
        await seed_first_turn(processor, conversation)
        transport.text_error = DeliveryError("graph down")

        ok = await processor.process(inbound("m2", "mi internet no funciona"), conversation)

        assert ok is False
        assert conversation.find_message("m2").apology_sent is False

    @pytest.mark.asyncio
    async def test_collaborator_timeout_becomes_transient_error(
        self, processor, conversation, assistant, settings,
    ):
        settings.conversation.collaborator_timeout_seconds = 0.01

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)
            return AssistantReply(content="tarde")

        assistant.respond.side_effect = slow
        await seed_first_turn(processor, conversation)

        ok = await processor.process(inbound("m2", "mi internet no funciona"), conversation)

        assert ok is False
        assert "timed out" in conversation.find_message("m2").error


# ══════════════════════════════════════════════════════════════
#  AUDIO
# ══════════════════════════════════════════════════════════════

class TestAudioMessages:
    @pytest.mark.asyncio
    async def test_audio_transcribed_echoed_and_answered(
        self, processor, conversation, speech, assistant, transport,
    ):
        ok = await processor.process(audio(), conversation)

        assert ok is True
        speech.transcribe.assert_awaited_once_with(b"OggS-voice-note", "audio/ogg")
        assert transport.media_requests == ["media-1"]
        assert transport.sent_texts == [
            AUDIO_RECEIVED_NOTICE,
            '📝 Entendí: "mi internet no funciona"',
            "Entiendo, cuéntame más sobre tu plan.",
        ]
        assert conversation.metadata.audio_transcriptions[0].text == "mi internet no funciona"
        assert conversation.category == Category.TELECOM
        assistant.respond.assert_awaited_once_with(
            "mi internet no funciona", Category.TELECOM, conversation.conversation_id,
        )

    @pytest.mark.asyncio
    async def test_media_failure_apologizes_and_raises(self, processor, conversation, transport, speech):
        transport.media_error = MediaFetchError("503 from graph")

        with pytest.raises(MediaFetchError):
            await processor.process(audio(), conversation)

        assert transport.sent_texts == [AUDIO_RECEIVED_NOTICE, AUDIO_APOLOGY]
        speech.transcribe.assert_not_called()
        entry = conversation.find_message("a1")
        assert entry.processed is False
        assert entry.apology_sent is True

    @pytest.mark.asyncio
    async def test_empty_media_is_a_fetch_error(self, processor, conversation, transport):
        transport.media = b""
        with pytest.raises(MediaFetchError):
            await processor.process(audio(), conversation)

    @pytest.mark.asyncio
    async def test_transcription_failure_raises(self, processor, conversation, speech, transport):
        speech.transcribe.side_effect = TranscriptionError("stt unavailable")
        with pytest.raises(TranscriptionError):
            await processor.process(audio(), conversation)
        assert transport.sent_texts[-1] == AUDIO_APOLOGY
        assert conversation.metadata.audio_transcriptions == []

    @pytest.mark.asyncio
    async def test_repeated_attempts_send_notice_and_apology_once(
        self, processor, conversation, transport,
    ):
        transport.media_error = MediaFetchError("503")
        msg = audio()
        for _ in range(3):
            with pytest.raises(MediaFetchError):
                await processor.process(msg, conversation)

        assert transport.sent_texts == [AUDIO_RECEIVED_NOTICE, AUDIO_APOLOGY]
        assert conversation.find_message("a1").attempts == 3


# ══════════════════════════════════════════════════════════════
#  OTHER TYPES
# ══════════════════════════════════════════════════════════════

class TestOtherTypes:
    @pytest.mark.asyncio
    async def test_unsupported_type_raises_and_records_failure(self, processor, conversation):
        with pytest.raises(UnsupportedMessageType):
            await processor.process(inbound("s1", "", type="sticker"), conversation)
        entry = conversation.find_message("s1")
        assert entry.processed is False
        assert conversation.metadata.processing_errors

    @pytest.mark.asyncio
    async def test_document_message_is_logged_only(self, processor, conversation, transport, assistant):
        msg = inbound("d1", "", type="document", media_id="doc-1", filename="factura.pdf")
        assert await processor.process(msg, conversation) is True
        assert transport.texts == []
        assistant.respond.assert_not_called()
        assert conversation.find_message("d1").content == "factura.pdf"


# ══════════════════════════════════════════════════════════════
#  CHAT RESET
# ══════════════════════════════════════════════════════════════

class TestChatReset:
    @pytest.mark.asyncio
    async def test_reset_phrase_clears_category(self, processor, conversation, assistant, transport):
        await seed_first_turn(processor, conversation)
        await processor.process(inbound("m2", "mi internet no funciona"), conversation)
        assert conversation.category == Category.TELECOM

        ok = await processor.process(inbound("m3", "  Reiniciar Chat "), conversation)

        assert ok is True
        assert conversation.category is None
        assert conversation.metadata.classifications == []
        assert conversation.metadata.case_details is None
        assistant.reset_session.assert_awaited_once_with(Category.TELECOM, conversation.conversation_id)
        assert transport.sent_texts[-1] == RESET_NOTICE
        assert conversation.metadata.processing_history[-2].action == "reset"

    @pytest.mark.asyncio
    async def test_reset_without_category_still_notifies(self, processor, conversation, assistant, transport):
        ok = await processor.process(inbound("m1", "reiniciar conversación"), conversation)
        assert ok is True
        assistant.reset_session.assert_not_called()
        assert transport.sent_texts == [RESET_NOTICE]

    @pytest.mark.asyncio
    async def test_reset_phrase_must_match_exactly(self, processor, conversation, assistant):
        await seed_first_turn(processor, conversation)
        await processor.process(inbound("m2", "mi internet no funciona"), conversation)
        await processor.process(inbound("m3", "quiero reiniciar chat por favor"), conversation)
        assert conversation.category == Category.TELECOM
        assistant.reset_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_channel_reset_event(self, processor, conversation, assistant, transport):
        conversation.category = Category.AIR_TRANSPORT
        msg = inbound("r1", "", type="system", status="deleted")
        assert msg.is_reset_event

        assert await processor.process(msg, conversation) is True
        assert conversation.category is None
        assistant.reset_session.assert_awaited_once_with(
            Category.AIR_TRANSPORT, conversation.conversation_id,
        )
        assert transport.sent_texts == [RESET_NOTICE]

    @pytest.mark.asyncio
    async def test_assistant_reset_failure_does_not_abort(self, processor, conversation, assistant, transport):
        conversation.category = Category.TELECOM
        assistant.reset_session.side_effect = AssistantError("no session")

        assert await processor.process(inbound("m1", "nueva conversación"), conversation) is True
        assert conversation.category is None
        assert transport.sent_texts == [RESET_NOTICE]

    @pytest.mark.asyncio
    async def test_reclassifies_after_reset(self, processor, conversation, assistant):
        await seed_first_turn(processor, conversation)
        await processor.process(
            inbound("m2", "mi internet y mi celular y el wifi y el router no funcionan"), conversation,
        )
        assert conversation.category == Category.TELECOM
        await processor.process(inbound("m3", "reiniciar chat"), conversation)
        assert conversation.category is None

        await processor.process(inbound("m4", "perdieron mi maleta en el vuelo"), conversation)

        assert conversation.category == Category.AIR_TRANSPORT
        assert conversation.classification_corpus() == "perdieron mi maleta en el vuelo"
        assert assistant.respond.await_args.args[1] == Category.AIR_TRANSPORT


# ══════════════════════════════════════════════════════════════
#  DOCUMENT REQUESTS
# ══════════════════════════════════════════════════════════════

class TestDocumentRequests:
    @pytest.mark.asyncio
    async def test_requires_known_category(self, processor, conversation, drafting, transport, assistant):
        ok = await processor.process(inbound("m1", "Quiero el documento"), conversation)
        assert ok is True
        drafting.draft.assert_not_called()
        assistant.respond.assert_not_called()
        assert transport.sent_texts == [DOCUMENT_NEEDS_CASE]

    @pytest.mark.asyncio
    async def test_generates_document_for_known_category(self, processor, conversation, drafting, transport):
        await seed_first_turn(processor, conversation)
        await processor.process(inbound("m2", "mi internet no funciona"), conversation)
        transport.texts.clear()

        ok = await processor.process(inbound("m3", "por favor genera el documento"), conversation)

        assert ok is True
        args = drafting.draft.await_args.args
        assert args[0] == Category.TELECOM
        assert [h["content"] for h in args[1] if h["role"] == "user"][:2] == [
            "hola", "mi internet no funciona",
        ]
        assert args[2].user.phone == conversation.user_address

        assert transport.sent_texts[0] == DOCUMENT_IN_PROGRESS
        document = transport.sent_texts[1]
        assert "COMUNICACIÓN CELULAR S.A. COMCEL S.A." in document
        assert "El servicio se cae a diario." in document

        md = conversation.metadata
        assert md.document_generated is True
        assert md.document_reference == "Reclamación por fallas en el servicio de internet"
        assert md.processing_history[-2].action == "document"

    @pytest.mark.asyncio
    async def test_drafting_receives_details_from_the_chat(self, processor, conversation, drafting):
        await seed_first_turn(processor, conversation)
        await processor.process(inbound("m2", "mi internet no funciona"), conversation)
        await processor.process(inbound(
            "m3", "mi línea es 3001112233, mi cédula es 52.123.456 y mi correo ana@example.com",
        ), conversation)

        await processor.process(inbound("m4", "quiero el documento"), conversation)

        profile = drafting.draft.await_args.args[2]
        assert profile.user.document_number == "52123456"
        assert profile.user.email == "ana@example.com"
        assert profile.case.line_number == "3001112233"

    @pytest.mark.asyncio
    async def test_drafting_failure_apologizes(self, processor, conversation, drafting, transport):
        conversation.category = Category.TELECOM
        drafting.draft.side_effect = RuntimeError("model overloaded")

        ok = await processor.process(inbound("m1", "necesito el documento"), conversation)

        assert ok is False
        assert transport.sent_texts == [DOCUMENT_IN_PROGRESS, DOCUMENT_APOLOGY]
        assert conversation.metadata.document_generated is False


# ══════════════════════════════════════════════════════════════
#  VOICE REPLIES
# ══════════════════════════════════════════════════════════════

class TestVoiceReplies:
    async def _classified(self, processor, conversation):
        await seed_first_turn(processor, conversation)
        await processor.process(inbound("m2", "mi internet no funciona"), conversation)

    @pytest.mark.asyncio
    async def test_confirmation_phrase_is_spoken(self, processor, conversation, assistant, speech, transport):
        await self._classified(processor, conversation)
        assistant.respond.return_value = AssistantReply(content=CONFIRMATION)
        transport.texts.clear()

        await processor.process(inbound("m3", "mi plan es de 300 megas"), conversation)

        speech.synthesize.assert_awaited_once_with(CONFIRMATION)
        assert transport.voices == [(conversation.user_address, b"OggS-synthesized")]
        assert transport.texts == []
        assert conversation.metadata.last_tts_time is not None
        assert conversation.messages[-1].type == MessageType.AUDIO.value

    @pytest.mark.asyncio
    async def test_voice_throttled_within_cooldown(
        self, processor, conversation, assistant, speech, transport, clock,
    ):
        await self._classified(processor, conversation)
        assistant.respond.return_value = AssistantReply(content=CONFIRMATION)

        await processor.process(inbound("m3", "mi plan es de 300 megas"), conversation)
        clock.advance(seconds=10)
        await processor.process(inbound("m4", "sí, eso es todo"), conversation)

        assert len(transport.voices) == 1
        assert transport.sent_texts[-1] == CONFIRMATION

        clock.advance(seconds=21)
        await processor.process(inbound("m5", "gracias"), conversation)
        assert len(transport.voices) == 2

    @pytest.mark.asyncio
    async def test_synthesis_failure_falls_back_to_text(
        self, processor, conversation, assistant, speech, transport,
    ):
        await self._classified(processor, conversation)
        assistant.respond.return_value = AssistantReply(content=CONFIRMATION)
        speech.synthesize.side_effect = SynthesisError("tts quota")

        ok = await processor.process(inbound("m3", "mi plan es de 300 megas"), conversation)

        assert ok is True
        assert transport.voices == []
        assert transport.sent_texts[-1] == CONFIRMATION
        assert conversation.metadata.last_tts_time is None

    @pytest.mark.asyncio
    async def test_regular_reply_is_text(self, processor, conversation, speech):
        await self._classified(processor, conversation)
        speech.synthesize.assert_not_called()


class TestWelcome:
    @pytest.mark.asyncio
    async def test_welcome_uses_profile_name(self, processor, conversation, transport):
        await processor.send_welcome(conversation, "Ana")
        assert transport.sent_texts == [WELCOME_MESSAGE.format(name="Ana")]
        assert conversation.metadata.user_profile.name == "Ana"

    @pytest.mark.asyncio
    async def test_welcome_default_name(self, processor, conversation, transport):
        await processor.send_welcome(conversation)
        assert "¡Hola Usuario!" in transport.sent_texts[0]
