"""
Keyword classifier — maps free text to one of the supported legal areas.

Pure and stateless: the same text always yields the same result.
"""
from __future__ import annotations

from typing import Mapping, Sequence

from models.schemas import Category, ClassificationResult

# Declaration order is the tie-break order.
DEFAULT_KEYWORDS: dict[Category, tuple[str, ...]] = {
    Category.SERVICE_UTILITIES: (
        "agua", "luz", "electricidad", "gas", "factura", "recibo",
        "servicio público", "corte", "reconexión", "medidor",
    ),
    Category.TELECOM: (
        "internet", "teléfono", "celular", "móvil", "plan", "datos",
        "señal", "cobertura", "telefonía", "wifi", "router", "modem",
    ),
    Category.AIR_TRANSPORT: (
        "vuelo", "avión", "aerolínea", "viaje", "maleta", "equipaje",
        "boleto", "tiquete", "reserva", "aeropuerto",
    ),
}

MIN_SCORE = 1.0


def score(text: str, keywords: Sequence[str]) -> float:
    """
    +1 per keyword found as a substring of the text, +0.5 per whitespace
    token that contains the keyword or is contained by it.
    """
    tokens = text.split()
    total = 0.0
    for keyword in keywords:
        if keyword in text:
            total += 1.0
        total += 0.5 * sum(1 for t in tokens if keyword in t or t in keyword)
    return total


def classify(
    text: str,
    keywords: Mapping[Category, Sequence[str]] = DEFAULT_KEYWORDS,
) -> ClassificationResult:
    if not text or not text.strip():
        return ClassificationResult(category=Category.UNKNOWN, confidence=0.0, scores={})

    normalized = text.lower()
    scores = {cat.value: score(normalized, kws) for cat, kws in keywords.items()}

    best_cat, best_score = Category.UNKNOWN, 0.0
    for cat in keywords:
        if scores[cat.value] > best_score:
            best_cat, best_score = cat, scores[cat.value]

    if best_score < MIN_SCORE:
        return ClassificationResult(category=Category.UNKNOWN, confidence=best_score, scores=scores)
    return ClassificationResult(category=best_cat, confidence=best_score, scores=scores)
