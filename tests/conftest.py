"""Shared test fixtures for the JULI conversation backend."""
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

from backend.assistant import AssistantBackend
from backend.drafting import DraftingService
from config.settings import ConversationConfig, Settings, WhatsAppConfig
from core.processor import MessageProcessor
from core.retry import RetryCoordinator
from core.service import ConversationService
from models.schemas import AssistantReply, Conversation, DraftResult
from voice.speech import SpeechService

from tests.helpers import FakeClock, FakeTransport, SleepRecorder


# ── Fixtures ──────────────────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def speech() -> AsyncMock:
    mock = AsyncMock(spec=SpeechService)
    mock.transcribe.return_value = "mi internet no funciona"
    mock.synthesize.return_value = b"OggS-synthesized"
    return mock


@pytest.fixture
def assistant() -> AsyncMock:
    mock = AsyncMock(spec=AssistantBackend)
    mock.respond.return_value = AssistantReply(content="Entiendo, cuéntame más sobre tu plan.")
    return mock


@pytest.fixture
def drafting() -> AsyncMock:
    mock = AsyncMock(spec=DraftingService)
    mock.draft.return_value = DraftResult(
        company_name="COMUNICACIÓN CELULAR S.A. COMCEL S.A.",
        reference="Reclamación por fallas en el servicio de internet",
        facts=["Contraté un plan de 300 megas.", "El servicio se cae a diario."],
        petition="Solicito la compensación por los días sin servicio.",
    )
    return mock


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.whatsapp = WhatsAppConfig(verify_token="verify-me")
    s.conversation = ConversationConfig(collaborator_timeout_seconds=2.0)
    return s


@pytest.fixture
def processor(transport, speech, assistant, drafting, settings, clock) -> MessageProcessor:
    return MessageProcessor(transport, speech, assistant, drafting, settings.conversation, clock=clock)


@pytest.fixture
def conversation(clock) -> Conversation:
    return Conversation(
        conversation_id="573001112233",
        user_address="573001112233",
        start_time=clock(),
        last_update_time=clock(),
        last_heartbeat=clock(),
    )


@pytest.fixture
def service(settings, transport, speech, assistant, drafting, clock, sleeper) -> ConversationService:
    retry = RetryCoordinator(
        max_attempts=settings.conversation.max_retry_attempts,
        base_delay=settings.conversation.retry_base_delay_seconds,
        sleep=sleeper,
    )
    return ConversationService(
        settings, transport, speech, assistant, drafting, clock=clock, retry=retry,
    )


@pytest_asyncio.fixture
async def events(service):
    """Collects every event the service publishes; the broadcaster runs for the test."""
    received = []

    async def collect(event):
        received.append(event)

    service.bus.subscribe(collect)
    service.bus.start()
    yield received
    await service.bus.stop()
