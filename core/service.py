"""
Conversation Service — wires the pipeline together and owns its lifecycle.

An explicitly constructed object: every collaborator is injected, and
``start``/``stop`` manage the broadcaster, the maintenance sweeps and the
observer heartbeat. ``create_service`` builds one from settings with the
real HTTP collaborators.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Callable, Optional

from backend.assistant import AssistantBackend, ChatbaseAssistant
from backend.drafting import DraftingService, LLMDraftingService
from channels.base import ChannelTransport
from channels.observer_adapter import ObserverHub
from channels.whatsapp_adapter import WhatsAppTransport
from config.settings import Settings
from context.registry import ConversationRegistry
from core.events import EventBus
from core.processor import MessageProcessor
from core.retry import RetryCoordinator
from core.scheduler import MaintenanceScheduler
from core.webhook import WebhookIngestor
from models.schemas import Conversation, utcnow
from voice.speech import GoogleSpeechService, SpeechService

logger = structlog.get_logger()


class ConversationService:
    def __init__(
        self,
        settings: Settings,
        transport: ChannelTransport,
        speech: SpeechService,
        assistant: AssistantBackend,
        drafting: DraftingService,
        clock: Callable[[], datetime] = utcnow,
        retry: Optional[RetryCoordinator] = None,
    ):
        conv_cfg = settings.conversation
        self.settings = settings
        self.transport = transport
        self.speech = speech
        self.assistant = assistant
        self.drafting = drafting
        self._clock = clock

        self.registry = ConversationRegistry(clock=clock)
        self.bus = EventBus(maxsize=conv_cfg.event_queue_size, clock=clock)
        self.processor = MessageProcessor(
            transport, speech, assistant, drafting, conv_cfg, clock=clock,
        )
        self.retry = retry or RetryCoordinator(
            max_attempts=conv_cfg.max_retry_attempts,
            base_delay=conv_cfg.retry_base_delay_seconds,
        )
        self.ingestor = WebhookIngestor(self.registry, self.processor, self.retry, self.bus, clock=clock)
        self.scheduler = MaintenanceScheduler(self.registry, self.processor, self.bus, conv_cfg, clock=clock)
        self.observers = ObserverHub(settings.observer)
        self.bus.subscribe(self.observers.broadcast)
        self._started = False

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        if self._started:
            return
        self.bus.start()
        self.scheduler.start()
        self.observers.start()
        self._started = True
        logger.info("conversation_service_started")

    async def stop(self) -> None:
        if not self._started:
            return
        await self.scheduler.stop()
        await self.bus.stop()
        await self.observers.stop()
        for collaborator in (self.transport, self.speech, self.assistant, self.drafting):
            try:
                await collaborator.shutdown()
            except Exception as e:
                logger.error("collaborator_shutdown_failed",
                             collaborator=type(collaborator).__name__, error=str(e))
        self._started = False
        logger.info("conversation_service_stopped")

    @property
    def started(self) -> bool:
        return self._started

    # ── Operations ────────────────────────────────────────────

    async def ingest(self, payload: Any) -> dict[str, Any]:
        return await self.ingestor.ingest(payload)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return await self.registry.get(conversation_id)

    async def list_conversations(self) -> list[Conversation]:
        return await self.registry.all()

    async def close_conversation(self, conversation_id: str, reason: str = "manual") -> bool:
        conv = await self.registry.get(conversation_id)
        if conv is None:
            return False
        async with self.registry.lock_for(conversation_id):
            if not self.registry.is_live(conv):
                return False
            await self.scheduler.close(conv, reason)
        return True

    async def record_heartbeat(self, conversation_id: str) -> Optional[Conversation]:
        conv = await self.registry.get(conversation_id)
        if conv is None:
            return None
        self.scheduler.record_heartbeat(conv)
        return conv

    async def snapshot(self) -> list[dict[str, Any]]:
        return [c.model_dump(mode="json") for c in await self.registry.all()]

    async def stats(self) -> dict[str, Any]:
        conversations = await self.registry.all()
        by_category: dict[str, int] = {}
        for conv in conversations:
            key = conv.category.value if conv.category else "unclassified"
            by_category[key] = by_category.get(key, 0) + 1
        return {
            "active_conversations": len(conversations),
            "by_category": by_category,
            "documents_generated": sum(1 for c in conversations if c.metadata.document_generated),
            "events": self.bus.stats(),
            "scheduler": self.scheduler.stats(),
            "observers": self.observers.stats(),
            "transport": self.transport.metrics.to_dict(),
        }


def create_service(settings: Settings, clock: Callable[[], datetime] = utcnow) -> ConversationService:
    """Build a service with the HTTP-backed collaborators described by ``settings``."""
    return ConversationService(
        settings,
        transport=WhatsAppTransport(settings.whatsapp),
        speech=GoogleSpeechService(settings.speech),
        assistant=ChatbaseAssistant(settings.assistant),
        drafting=LLMDraftingService(settings.llm),
        clock=clock,
    )
