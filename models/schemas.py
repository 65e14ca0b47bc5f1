"""
Core data models for the JULI conversation backend.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Category(str, Enum):
    """Legal areas a conversation can be routed to, in declaration (tie-break) order."""
    SERVICE_UTILITIES = "service_utilities"
    TELECOM = "telecom"
    AIR_TRANSPORT = "air_transport"
    UNKNOWN = "unknown"


class MessageType(str, Enum):
    TEXT = "text"
    AUDIO = "audio"
    DOCUMENT = "document"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    RECEIVED = "received"
    SENT = "sent"
    DELIVERED = "delivered"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class EventKind(str, Enum):
    NEW_CONVERSATION = "newConversation"
    NEW_MESSAGE = "newMessage"
    CONVERSATION_UPDATE = "conversationUpdate"
    CONVERSATION_CLOSED = "conversationClosed"
    RECONNECT_NEEDED = "reconnectNeeded"
    WEBHOOK_SUMMARY = "webhookSummary"


# ──────────────────────────────────────────────────────────────
#  Message entry — one line in a conversation's log
# ──────────────────────────────────────────────────────────────

class MessageEntry(BaseModel):
    id: str                                   # provider-assigned message id
    timestamp: datetime = Field(default_factory=utcnow)
    type: str = MessageType.TEXT.value        # kept as str so unsupported types can be recorded
    direction: MessageDirection = MessageDirection.INBOUND
    content: str = ""
    status: MessageStatus = MessageStatus.RECEIVED
    processed: bool = False
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    error: Optional[str] = None
    media_id: str = ""
    mime_type: str = ""
    apology_sent: bool = False


# ──────────────────────────────────────────────────────────────
#  Metadata — structured per-conversation fields
# ──────────────────────────────────────────────────────────────

class ClassificationResult(BaseModel):
    category: Category
    confidence: float
    scores: dict[str, float] = {}


class ClassificationRecord(BaseModel):
    message_id: str
    category: Category
    confidence: float
    timestamp: datetime = Field(default_factory=utcnow)


class TranscriptionRecord(BaseModel):
    message_id: str
    text: str
    timestamp: datetime = Field(default_factory=utcnow)


class ProcessingRecord(BaseModel):
    """Immutable log line for one processing outcome."""
    message_id: str
    action: str                               # processed | failed | reset | document
    success: bool = True
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class UserProfile(BaseModel):
    name: str = "Usuario"
    phone: str = ""
    email: str = ""
    document_number: str = ""
    address: str = ""


class UtilitiesCase(BaseModel):
    kind: Literal["service_utilities"] = "service_utilities"
    account_number: str = ""                  # cuenta / contrato
    service_type: str = ""
    billing_period: str = ""


class TelecomCase(BaseModel):
    kind: Literal["telecom"] = "telecom"
    line_number: str = ""
    plan: str = ""
    contract_date: str = ""


class AirTransportCase(BaseModel):
    kind: Literal["air_transport"] = "air_transport"
    booking_number: str = ""
    flight_number: str = ""
    flight_date: str = ""
    route: str = ""
    ticket_value: str = ""


CaseDetails = Annotated[
    Union[UtilitiesCase, TelecomCase, AirTransportCase],
    Field(discriminator="kind"),
]


def empty_case_for(category: Category) -> Optional[CaseDetails]:
    return {
        Category.SERVICE_UTILITIES: UtilitiesCase,
        Category.TELECOM: TelecomCase,
        Category.AIR_TRANSPORT: AirTransportCase,
    }.get(category, lambda: None)()


class CustomerProfile(BaseModel):
    """Everything the drafting service needs to know about the complainant."""
    user: UserProfile
    case: Optional[CaseDetails] = None


class ConversationMetadata(BaseModel):
    user_profile: UserProfile = Field(default_factory=UserProfile)
    classifications: list[ClassificationRecord] = []
    audio_transcriptions: list[TranscriptionRecord] = []
    processing_history: list[ProcessingRecord] = []
    processing_errors: list[ProcessingRecord] = []
    case_details: Optional[CaseDetails] = None
    document_generated: bool = False
    document_generated_at: Optional[datetime] = None
    document_reference: str = ""
    last_tts_time: Optional[datetime] = None
    reconnect_attempts: int = 0
    heartbeat_enabled: bool = False
    message_count: int = 0
    has_unread_messages: bool = False
    corpus_start: int = 0                     # index of the first message after the last reset


# ──────────────────────────────────────────────────────────────
#  Conversation — one user's session
# ──────────────────────────────────────────────────────────────

class Conversation(BaseModel):
    """
    A single user's session. Keyed by the channel identity of the sender;
    the message log is append-only and the category is sticky once set.
    """
    conversation_id: str
    user_address: str
    messages: list[MessageEntry] = []
    status: ConversationStatus = ConversationStatus.ACTIVE
    category: Optional[Category] = None
    classification_confidence: float = 0.0
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)
    start_time: datetime = Field(default_factory=utcnow)
    last_update_time: datetime = Field(default_factory=utcnow)
    last_heartbeat: datetime = Field(default_factory=utcnow)

    @property
    def has_category(self) -> bool:
        return self.category is not None and self.category != Category.UNKNOWN

    def touch(self, now: datetime) -> None:
        """Bump last_update_time; never moves backwards."""
        self.last_update_time = max(self.last_update_time, now)

    def find_message(self, message_id: str) -> Optional[MessageEntry]:
        return next((m for m in self.messages if m.id == message_id), None)

    def add_message(self, entry: MessageEntry, now: datetime) -> bool:
        """Append an entry. Returns False if an entry with the same id already exists."""
        if self.find_message(entry.id) is not None:
            return False
        self.messages.append(entry)
        self.metadata.message_count = len(self.messages)
        if entry.direction == MessageDirection.INBOUND:
            self.metadata.has_unread_messages = True
        self.touch(now)
        return True

    def inbound_count(self) -> int:
        return sum(1 for m in self.messages if m.direction == MessageDirection.INBOUND)

    def unprocessed_messages(self) -> list[MessageEntry]:
        return [
            m for m in self.messages
            if m.direction == MessageDirection.INBOUND and not m.processed
        ]

    def classification_corpus(self) -> str:
        """Inbound text and audio transcriptions since the last chat reset, oldest first."""
        transcripts = {t.message_id: t.text for t in self.metadata.audio_transcriptions}
        parts = []
        for m in self.messages[self.metadata.corpus_start:]:
            if m.direction != MessageDirection.INBOUND:
                continue
            if m.type == MessageType.TEXT.value:
                parts.append(m.content)
            elif m.id in transcripts:
                parts.append(transcripts[m.id])
        return " ".join(p for p in parts if p)

    def restart_classification(self) -> None:
        """Forget the category; later classification only sees messages from here on."""
        self.category = None
        self.classification_confidence = 0.0
        self.metadata.classifications.clear()
        self.metadata.case_details = None
        self.metadata.corpus_start = len(self.messages)

    def record_classification(self, message_id: str, result: ClassificationResult, now: datetime) -> None:
        self.metadata.classifications.append(ClassificationRecord(
            message_id=message_id,
            category=result.category,
            confidence=result.confidence,
            timestamp=now,
        ))
        if not self.has_category and result.category != Category.UNKNOWN:
            self.category = result.category
            self.classification_confidence = result.confidence
            if self.metadata.case_details is None:
                self.metadata.case_details = empty_case_for(result.category)
        self.touch(now)

    def history(self) -> list[dict[str, Any]]:
        """Plain message history handed to the drafting service."""
        return [
            {
                "role": "user" if m.direction == MessageDirection.INBOUND else "assistant",
                "type": m.type,
                "content": m.content,
                "timestamp": m.timestamp.isoformat(),
            }
            for m in self.messages
        ]

    def customer_profile(self) -> CustomerProfile:
        user = self.metadata.user_profile.model_copy()
        if not user.phone:
            user.phone = self.user_address
        return CustomerProfile(user=user, case=self.metadata.case_details)

    def summary(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "status": self.status.value,
            "category": self.category.value if self.category else None,
            "message_count": len(self.messages),
            "last_update_time": self.last_update_time.isoformat(),
        }


# ──────────────────────────────────────────────────────────────
#  Inbound message — provider payload normalized
# ──────────────────────────────────────────────────────────────

_RESET_STATUSES = {"deleted", "reset"}


class InboundMessage(BaseModel):
    id: str
    sender: str
    timestamp: datetime = Field(default_factory=utcnow)
    type: str
    text: str = ""
    media_id: str = ""
    mime_type: str = ""
    filename: str = ""
    profile_name: str = ""
    phone_number_id: str = ""
    display_phone_number: str = ""
    status: str = ""
    event: str = ""

    @classmethod
    def from_webhook(cls, raw: dict[str, Any], value: dict[str, Any]) -> "InboundMessage":
        """Build from one element of a WhatsApp Cloud API ``value.messages`` list."""
        msg_type = raw.get("type", "")
        contacts = value.get("contacts") or [{}]
        contact = contacts[0] if isinstance(contacts, list) and isinstance(contacts[0], dict) else {}
        profile = contact.get("profile") if isinstance(contact.get("profile"), dict) else {}
        meta = value.get("metadata") if isinstance(value.get("metadata"), dict) else {}
        body = raw.get(msg_type)
        if not isinstance(body, dict):
            body = {}

        ts = raw.get("timestamp")
        timestamp = (
            datetime.fromtimestamp(int(ts), tz=timezone.utc)
            if ts not in (None, "") and str(ts).isdigit()
            else utcnow()
        )

        if msg_type == "text":
            text = body.get("body", "")
        else:
            text = body.get("caption", "")

        return cls(
            id=str(raw.get("id", "")),
            sender=str(raw.get("from", "")),
            timestamp=timestamp,
            type=msg_type,
            text=text,
            media_id=body.get("id", "") if msg_type != "text" else "",
            mime_type=body.get("mime_type", ""),
            filename=body.get("filename", ""),
            profile_name=profile.get("name", ""),
            phone_number_id=meta.get("phone_number_id", ""),
            display_phone_number=meta.get("display_phone_number", ""),
            status=raw.get("status", ""),
            event=raw.get("event", ""),
        )

    @classmethod
    def from_entry(cls, entry: MessageEntry, sender: str) -> "InboundMessage":
        return cls(
            id=entry.id,
            sender=sender,
            timestamp=entry.timestamp,
            type=entry.type,
            text=entry.content if entry.type == MessageType.TEXT.value else "",
            media_id=entry.media_id,
            mime_type=entry.mime_type,
        )

    @property
    def is_reset_event(self) -> bool:
        """Channel-side deletion, reset flag or system notification."""
        return (
            self.status.lower() in _RESET_STATUSES
            or self.event.lower() in _RESET_STATUSES
            or self.type == "system"
        )

    def to_entry(self) -> MessageEntry:
        if self.type == MessageType.TEXT.value:
            content = self.text
        elif self.type == MessageType.AUDIO.value:
            content = "[audio]"
        elif self.type == MessageType.DOCUMENT.value:
            content = self.filename or self.text or "[document]"
        else:
            content = self.text or f"[{self.type}]"
        return MessageEntry(
            id=self.id,
            timestamp=self.timestamp,
            type=self.type,
            direction=MessageDirection.INBOUND,
            content=content,
            media_id=self.media_id,
            mime_type=self.mime_type,
        )


# ──────────────────────────────────────────────────────────────
#  Collaborator results
# ──────────────────────────────────────────────────────────────

class AssistantReply(BaseModel):
    content: str


class DraftResult(BaseModel):
    company_name: str
    reference: str
    facts: list[str] = []
    petition: str = ""


# ──────────────────────────────────────────────────────────────
#  Events — internal event bus messages
# ──────────────────────────────────────────────────────────────

class ConversationEvent(BaseModel):
    """Internal event passed from the pipeline to the broadcaster."""
    kind: EventKind
    conversation_id: Optional[str] = None
    payload: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utcnow)

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "conversationId": self.conversation_id,
            "data": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }
