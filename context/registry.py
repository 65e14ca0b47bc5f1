"""
Conversation Registry — the live set of conversation records.

One record per conversation id. Mutations are guarded by a single
asyncio lock; each conversation additionally owns a turn lock so that
messages for the same user are processed one at a time while different
users proceed in parallel.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Callable, Optional

from core.errors import DuplicateOrInvalidInput
from models.schemas import Conversation, ConversationStatus, utcnow

logger = structlog.get_logger()


class ConversationRegistry:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._records: dict[str, Conversation] = {}
        self._turn_locks: dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    def _new_record(self, conversation_id: str, user_address: str) -> Conversation:
        if not conversation_id or not user_address:
            raise DuplicateOrInvalidInput(
                f"conversation_id and user_address are required "
                f"(got {conversation_id!r}, {user_address!r})"
            )
        now = self._clock()
        conv = Conversation(
            conversation_id=conversation_id,
            user_address=user_address,
            start_time=now,
            last_update_time=now,
            last_heartbeat=now,
        )
        conv.metadata.user_profile.phone = user_address
        return conv

    async def create(self, conversation_id: str, user_address: str) -> Conversation:
        """Create a fresh record, replacing any existing one with the same id."""
        conv = self._new_record(conversation_id, user_address)
        async with self._lock:
            replaced = conversation_id in self._records
            self._records[conversation_id] = conv
            self._turn_locks.setdefault(conversation_id, asyncio.Lock())
        logger.info("conversation_created", conversation_id=conversation_id, replaced=replaced)
        return conv

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        async with self._lock:
            return self._records.get(conversation_id)

    async def get_or_create(self, conversation_id: str, user_address: str) -> tuple[Conversation, bool]:
        """Return (record, created). Lookup and insert happen under one lock hold."""
        async with self._lock:
            existing = self._records.get(conversation_id)
            if existing is not None:
                return existing, False
            conv = self._new_record(conversation_id, user_address)
            self._records[conversation_id] = conv
            self._turn_locks.setdefault(conversation_id, asyncio.Lock())
        logger.info("conversation_created", conversation_id=conversation_id, replaced=False)
        return conv, True

    async def delete(self, conversation_id: str) -> Optional[Conversation]:
        async with self._lock:
            self._turn_locks.pop(conversation_id, None)
            return self._records.pop(conversation_id, None)

    async def all(self) -> list[Conversation]:
        async with self._lock:
            return list(self._records.values())

    async def count(self) -> int:
        async with self._lock:
            return len(self._records)

    def lock_for(self, conversation_id: str) -> asyncio.Lock:
        """Turn lock for one conversation; created on demand."""
        lock = self._turn_locks.get(conversation_id)
        if lock is None:
            lock = self._turn_locks[conversation_id] = asyncio.Lock()
        return lock

    def is_busy(self, conversation_id: str) -> bool:
        lock = self._turn_locks.get(conversation_id)
        return lock is not None and lock.locked()

    def is_live(self, conversation: Conversation) -> bool:
        """True while this exact record is still registered and active."""
        return (
            self._records.get(conversation.conversation_id) is conversation
            and conversation.status == ConversationStatus.ACTIVE
        )
