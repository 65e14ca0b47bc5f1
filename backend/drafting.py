"""
Legal-Drafting Service — turns a conversation into a formal complaint.

LLMDraftingService runs two passes against the configured LLM provider
(OpenAI or Anthropic): a junior analysis that summarizes the case in the
first person, then a senior pass that writes the sectioned complaint
(EMPRESA / REFERENCIA / HECHOS / PETICIÓN) parsed by ``core.documents``.
"""
from __future__ import annotations

import abc
import json
import structlog
from typing import Any

from config.settings import LLMConfig
from core.documents import parse_draft
from core.errors import DraftingError
from models.schemas import Category, CustomerProfile, DraftResult

logger = structlog.get_logger()


SECTOR_NAMES = {
    Category.SERVICE_UTILITIES: "servicios públicos domiciliarios",
    Category.TELECOM: "servicios de telecomunicaciones",
    Category.AIR_TRANSPORT: "transporte aéreo",
}

ANALYSIS_PROMPT = """Eres un abogado junior especializado en reclamaciones de {sector} en Colombia.
Analiza la conversación y redacta en primera persona, como si fueras el cliente, un resumen
cronológico y detallado del caso con fechas, números de contrato o reserva y demás datos relevantes.
No menciones a JULI ni a ningún intermediario.

Responde con este formato:
RESUMEN DESCRIPTIVO (EN PRIMERA PERSONA):
...
CATEGORÍA: ...
EMPRESA O PROVEEDOR: ..."""

REFINE_PROMPT = """Eres un abogado senior especializado en reclamaciones de {sector} en Colombia.
Con base en el análisis del abogado junior y los datos del cliente, redacta la reclamación formal
en primera persona con tono jurídico y profesional.

Datos del cliente:
{customer}

Responde EXACTAMENTE con este formato:
EMPRESA: <razón social de la empresa>
REFERENCIA: <asunto de la reclamación>
HECHOS:
1. <hecho>
2. <hecho>
PETICIÓN:
<petición concreta>"""


class DraftingService(abc.ABC):
    @abc.abstractmethod
    async def draft(
        self,
        category: Category,
        history: list[dict[str, Any]],
        profile: CustomerProfile,
    ) -> DraftResult:
        ...

    async def shutdown(self) -> None:
        pass


def render_history(history: list[dict[str, Any]]) -> str:
    lines = []
    for item in history:
        who = "Usuario" if item.get("role") == "user" else "Asistente"
        lines.append(f"{who}: {item.get('content', '')}")
    return "\n".join(lines)


class LLMDraftingService(DraftingService):
    """Generates complaints with Claude or OpenAI, chosen by ``llm.provider``."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self._client = None

    @property
    def is_openai(self) -> bool:
        return self.config.provider == "openai"

    async def _get_client(self):
        if self._client is None:
            if self.is_openai:
                from openai import AsyncOpenAI
                self._client = AsyncOpenAI(api_key=self.config.api_key)
            else:
                import anthropic
                self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
            logger.info("llm_client_initialized", provider=self.config.provider, model=self.config.model)
        return self._client

    async def _call_llm(self, system: str, user: str) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        if self.is_openai:
            response = await client.chat.completions.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            return response.choices[0].message.content or ""

        response = await client.messages.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        return response.content[0].text

    async def draft(
        self,
        category: Category,
        history: list[dict[str, Any]],
        profile: CustomerProfile,
    ) -> DraftResult:
        sector = SECTOR_NAMES.get(category)
        if sector is None:
            raise DraftingError(f"Unsupported category for drafting: {category.value}", retryable=False)

        try:
            analysis = await self._call_llm(
                ANALYSIS_PROMPT.format(sector=sector),
                f"Conversación:\n{render_history(history)}",
            )
            refined = await self._call_llm(
                REFINE_PROMPT.format(
                    sector=sector,
                    customer=json.dumps(profile.model_dump(), ensure_ascii=False),
                ),
                analysis,
            )
        except DraftingError:
            raise
        except Exception as e:
            logger.error("drafting_llm_failed", category=category.value, error=str(e))
            raise DraftingError(f"Drafting model call failed: {e}") from e

        if not refined.strip():
            raise DraftingError("Drafting model returned an empty document")

        result = parse_draft(refined, category)
        logger.info("document_drafted", category=category.value, facts=len(result.facts))
        return result
