"""
Speech Service — speech-to-text for inbound voice notes and text-to-speech
for voice replies.

GoogleSpeechService talks to the Google Cloud Speech / Text-to-Speech REST
APIs with an API key. WhatsApp voice notes arrive as OGG/Opus, and replies
are synthesized as OGG/Opus so they can be sent back as voice notes.
"""
from __future__ import annotations

import abc
import base64
import structlog
from typing import Any, Optional

import httpx

from config.settings import SpeechConfig
from core.errors import SynthesisError, TranscriptionError, from_http_error

logger = structlog.get_logger()


# WhatsApp mime type → Google RecognitionConfig encoding
_ENCODINGS = {
    "audio/ogg": ("OGG_OPUS", 16000),
    "audio/opus": ("OGG_OPUS", 16000),
    "audio/mpeg": ("MP3", 16000),
    "audio/amr": ("AMR", 8000),
}


class SpeechService(abc.ABC):
    @abc.abstractmethod
    async def transcribe(self, audio: bytes, mime_type: str) -> str:
        ...

    @abc.abstractmethod
    async def synthesize(self, text: str) -> bytes:
        ...

    async def shutdown(self) -> None:
        pass


class GoogleSpeechService(SpeechService):
    def __init__(self, config: SpeechConfig):
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                params={"key": self.config.api_key},
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=5.0),
            )
        return self._client

    @staticmethod
    def _recognition_config(mime_type: str, language_code: str) -> dict[str, Any]:
        base_mime = (mime_type or "audio/ogg").split(";")[0].strip().lower()
        encoding, rate = _ENCODINGS.get(base_mime, ("OGG_OPUS", 16000))
        return {
            "encoding": encoding,
            "sampleRateHertz": rate,
            "languageCode": language_code,
            "enableAutomaticPunctuation": True,
            "model": "default",
        }

    async def transcribe(self, audio: bytes, mime_type: str) -> str:
        if not audio:
            raise TranscriptionError("Empty audio payload", retryable=False)

        client = await self._get_client()
        body = {
            "config": self._recognition_config(mime_type, self.config.language_code),
            "audio": {"content": base64.b64encode(audio).decode("ascii")},
        }
        try:
            response = await client.post(self.config.stt_endpoint, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise from_http_error(e, TranscriptionError, "Speech-to-text request failed") from e

        results = response.json().get("results") or []
        transcript = " ".join(
            (r.get("alternatives") or [{}])[0].get("transcript", "").strip()
            for r in results
        ).strip()
        if not transcript:
            raise TranscriptionError("No speech recognized in audio", retryable=False)

        logger.info("audio_transcribed", bytes=len(audio), chars=len(transcript))
        return transcript

    async def synthesize(self, text: str) -> bytes:
        client = await self._get_client()
        body = {
            "input": {"text": text},
            "voice": {"languageCode": self.config.language_code, "name": self.config.voice_name},
            "audioConfig": {"audioEncoding": "OGG_OPUS", "speakingRate": 1.0},
        }
        try:
            response = await client.post(self.config.tts_endpoint, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise from_http_error(e, SynthesisError, "Text-to-speech request failed") from e

        content = response.json().get("audioContent", "")
        if not content:
            raise SynthesisError("Text-to-speech returned no audio")
        audio = base64.b64decode(content)
        logger.info("speech_synthesized", chars=len(text), bytes=len(audio))
        return audio

    async def shutdown(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
