"""
Conversational-AI Backend — per-category assistants that answer the user.

ChatbaseAssistant routes each legal area to its own Chatbase chatbot and
keeps one chat session per (conversation, category) pair so that the
assistant remembers the case across turns until a reset.
"""
from __future__ import annotations

import abc
import uuid
import structlog
from typing import Optional

import httpx

from config.settings import AssistantConfig
from core.errors import AssistantError, from_http_error
from models.schemas import AssistantReply, Category

logger = structlog.get_logger()


class AssistantBackend(abc.ABC):
    @abc.abstractmethod
    async def respond(self, text: str, category: Category, session_key: str = "") -> AssistantReply:
        ...

    @abc.abstractmethod
    async def reset_session(self, category: Category, session_key: str = "") -> None:
        ...

    async def shutdown(self) -> None:
        pass


class ChatbaseAssistant(AssistantBackend):
    def __init__(self, config: AssistantConfig):
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None
        self._sessions: dict[tuple[str, str], str] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                timeout=self.config.timeout_seconds,
            )
        return self._client

    def _chatbot_id(self, category: Category) -> str:
        chatbot_id = self.config.chatbot_ids.get(category.value, "")
        if not chatbot_id:
            raise AssistantError(f"No chatbot configured for {category.value}", retryable=False)
        return chatbot_id

    def _session_id(self, category: Category, session_key: str) -> str:
        key = (session_key, category.value)
        if key not in self._sessions:
            self._sessions[key] = f"chat_{category.value}_{uuid.uuid4().hex[:12]}"
        return self._sessions[key]

    async def respond(self, text: str, category: Category, session_key: str = "") -> AssistantReply:
        chatbot_id = self._chatbot_id(category)
        chat_id = self._session_id(category, session_key)
        client = await self._get_client()

        try:
            response = await client.post(self.config.endpoint, json={
                "messages": [{"role": "user", "content": text}],
                "chatbotId": chatbot_id,
                "conversationId": chat_id,
                "stream": False,
            })
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("assistant_request_failed", category=category.value, chat_id=chat_id, error=str(e))
            raise from_http_error(e, AssistantError, "Assistant request failed") from e

        content = (response.json() or {}).get("text", "")
        if not content:
            raise AssistantError("Assistant returned an empty reply")

        logger.info("assistant_replied", category=category.value, chat_id=chat_id, chars=len(content))
        return AssistantReply(content=content)

    async def reset_session(self, category: Category, session_key: str = "") -> None:
        chat_id = self._sessions.pop((session_key, category.value), None)
        if chat_id:
            logger.info("assistant_session_reset", category=category.value, chat_id=chat_id)
        else:
            logger.info("assistant_session_absent", category=category.value)

    async def shutdown(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
