"""
Error taxonomy for the conversation pipeline.

Every error carries a ``retryable`` flag; ``is_retryable`` is the single
policy the retry coordinator consults.
"""
from __future__ import annotations

import asyncio

import httpx


class ConverseError(Exception):
    """Base exception for all pipeline operations."""

    retryable_default = False

    def __init__(self, message: str = "", retryable: bool = None):
        self.retryable = self.retryable_default if retryable is None else retryable
        super().__init__(message)


# ── Permanent ─────────────────────────────────────────────────

class InvalidPayloadError(ConverseError):
    """Malformed webhook envelope; fatal to the whole batch."""


class ValidationError(ConverseError):
    """Malformed individual message; only that message is skipped."""


class UnsupportedMessageType(ConverseError):
    def __init__(self, message_type: str):
        self.message_type = message_type
        super().__init__(f"Unsupported message type: {message_type}")


class DuplicateOrInvalidInput(ConverseError):
    """Registry creation guard."""


# ── Transient (retry-eligible) ────────────────────────────────

class TransientError(ConverseError):
    retryable_default = True


class MediaFetchError(TransientError):
    pass


class TranscriptionError(TransientError):
    pass


class SynthesisError(TransientError):
    pass


class ClassificationError(TransientError):
    pass


class DraftingError(TransientError):
    pass


class DeliveryError(TransientError):
    pass


class AssistantError(TransientError):
    pass


def is_retryable(exc: BaseException) -> bool:
    """True for transient collaborator failures (network, timeout, 429, 5xx)."""
    if isinstance(exc, ConverseError):
        return exc.retryable
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    return False


def from_http_error(exc: httpx.HTTPError, error_cls: type[TransientError], what: str) -> TransientError:
    """Wrap an httpx failure into a typed error, keeping its retry class."""
    return error_cls(f"{what}: {exc}", retryable=is_retryable(exc))
