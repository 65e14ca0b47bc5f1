"""
Configuration loader for the JULI conversation backend.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class WhatsAppConfig:
    api_version: str = "v18.0"
    base_url: str = "https://graph.facebook.com"
    phone_number_id: str = ""
    access_token: str = ""
    verify_token: str = ""
    app_secret: str = ""                # empty disables X-Hub-Signature-256 checks
    timeout_seconds: float = 10.0


@dataclass
class AssistantConfig:
    endpoint: str = "https://www.chatbase.co/api/v1/chat"
    api_key: str = ""
    chatbot_ids: dict[str, str] = field(default_factory=dict)   # category value → chatbot id
    timeout_seconds: float = 10.0


@dataclass
class SpeechConfig:
    api_key: str = ""
    language_code: str = "es-CO"
    voice_name: str = "es-US-Neural2-A"
    stt_endpoint: str = "https://speech.googleapis.com/v1/speech:recognize"
    tts_endpoint: str = "https://texttospeech.googleapis.com/v1/text:synthesize"
    timeout_seconds: float = 20.0


@dataclass
class LLMConfig:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    max_tokens: int = 2048
    api_key: str = ""


@dataclass
class ConversationConfig:
    inactivity_timeout_minutes: float = 30
    cleanup_interval_minutes: float = 5
    heartbeat_interval_seconds: float = 45
    max_reconnect_attempts: int = 5
    tts_cooldown_seconds: float = 30
    tts_trigger_phrase: str = "he registrado toda la información de tu caso"
    document_triggers: list[str] = field(default_factory=lambda: [
        "quiero el documento",
        "generar documento",
        "genera el documento",
        "necesito el documento",
    ])
    reset_phrases: list[str] = field(default_factory=lambda: [
        "reiniciar chat",
        "reiniciar conversación",
        "nueva conversación",
    ])
    max_retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    event_queue_size: int = 1000
    collaborator_timeout_seconds: float = 15.0


@dataclass
class ObserverConfig:
    ping_interval_seconds: float = 45
    max_missed_pongs: int = 3


@dataclass
class Settings:
    app_name: str = "JULI"
    debug: bool = False
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    assistant: AssistantConfig = field(default_factory=AssistantConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    observer: ObserverConfig = field(default_factory=ObserverConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _build(cls, raw: dict[str, Any]):
    """Instantiate a config dataclass from the keys it knows, ignoring the rest."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "JULI_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "whatsapp" in raw:
            settings.whatsapp = _build(WhatsAppConfig, raw["whatsapp"])
        if "assistant" in raw:
            settings.assistant = _build(AssistantConfig, raw["assistant"])
        if "speech" in raw:
            settings.speech = _build(SpeechConfig, raw["speech"])
        if "llm" in raw:
            settings.llm = _build(LLMConfig, raw["llm"])
        if "conversation" in raw:
            settings.conversation = _build(ConversationConfig, raw["conversation"])
        if "observer" in raw:
            settings.observer = _build(ObserverConfig, raw["observer"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
