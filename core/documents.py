"""
Legal document text helpers.

``parse_draft`` turns the drafting model's sectioned text into a DraftResult;
``format_document`` renders a DraftResult as the single WhatsApp message the
user receives. ``fill_case_details`` picks profile and case fields out of the
conversation before drafting.
"""
from __future__ import annotations

import re

from models.schemas import (
    AirTransportCase,
    Category,
    Conversation,
    CustomerProfile,
    DraftResult,
    TelecomCase,
    UtilitiesCase,
)

DEFAULT_COMPANY = {
    Category.SERVICE_UTILITIES: "EMPRESA DE ACUEDUCTO Y ALCANTARILLADO DE BOGOTÁ E.S.P.",
    Category.TELECOM: "PROVEEDOR DE SERVICIOS DE TELECOMUNICACIONES",
    Category.AIR_TRANSPORT: "AEROLÍNEA",
}

DEFAULT_REFERENCE = {
    Category.SERVICE_UTILITIES: "Reclamación de servicios públicos",
    Category.TELECOM: "Reclamación de servicios de telecomunicaciones",
    Category.AIR_TRANSPORT: "Reclamación de transporte aéreo",
}

NO_FACTS = "No se encontraron hechos"
NO_PETITION = "No se encontró petición"

_COMPANY_RE = re.compile(r"EMPRESA(?: DE SERVICIOS| O PROVEEDOR)?:[ \t]*(.+)")
_REFERENCE_RE = re.compile(r"REFERENCIA:[ \t]*(.+)")
_FACTS_RE = re.compile(r"HECHOS:[ \t]*\n([\s\S]*?)(?=PETICI[ÓO]N:|\Z)")
_PETITION_RE = re.compile(r"PETICI[ÓO]N:[ \t]*\n?([\s\S]*?)(?:\n\s*\n|\Z)")
_NUMBERED_RE = re.compile(r"^\s*\d+[.)]\s*(.*)$")


def parse_draft(text: str, category: Category) -> DraftResult:
    """Extract the EMPRESA / REFERENCIA / HECHOS / PETICIÓN sections, with defaults."""
    text = text or ""

    company = _COMPANY_RE.search(text)
    reference = _REFERENCE_RE.search(text)

    facts: list[str] = []
    section = _FACTS_RE.search(text)
    if section:
        for line in section.group(1).splitlines():
            m = _NUMBERED_RE.match(line)
            if m and m.group(1).strip():
                facts.append(m.group(1).strip())

    petition = _PETITION_RE.search(text)

    return DraftResult(
        company_name=company.group(1).strip() if company else DEFAULT_COMPANY.get(category, ""),
        reference=reference.group(1).strip() if reference else DEFAULT_REFERENCE.get(category, ""),
        facts=facts or [NO_FACTS],
        petition=petition.group(1).strip() if petition and petition.group(1).strip() else NO_PETITION,
    )


def format_document(result: DraftResult, profile: CustomerProfile) -> str:
    lines = [
        "📄 *Documento de reclamación*",
        "",
        f"*Señores:* {result.company_name}",
        f"*Referencia:* {result.reference}",
        f"*Solicitante:* {profile.user.name}",
    ]
    if profile.user.document_number:
        lines.append(f"*Documento:* {profile.user.document_number}")
    lines += ["", "*HECHOS*"]
    lines += [f"{i}. {fact}" for i, fact in enumerate(result.facts, start=1)]
    lines += ["", "*PETICIÓN*", result.petition]
    return "\n".join(lines)


# ──────────────────────────────────────────────────────────────
#  Case details from the conversation text
# ──────────────────────────────────────────────────────────────

_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_ID_NUMBER_RE = re.compile(r"(?:c[ée]dula|c\.c\.?|documento)\D{0,15}(\d[\d.]{4,13}\d)", re.I)
_LINE_RE = re.compile(r"\b(3\d{9})\b")
_ACCOUNT_RE = re.compile(r"(?:cuenta|contrato)\D{0,15}(\d{5,12})\b", re.I)
_FLIGHT_RE = re.compile(r"vuelo\s+(?:n[úu]mero\s+)?([A-Z]{2}\s?\d{2,4})\b", re.I)
_BOOKING_RE = re.compile(r"reserva\D{0,15}\b((?=[A-Z]*\d)[A-Z0-9]{6})\b", re.I)


def _first(pattern: re.Pattern, text: str) -> str:
    m = pattern.search(text)
    return m.group(1) if m else ""


def fill_case_details(conversation: Conversation) -> None:
    """
    Fill blank profile and case fields from what the user wrote since the
    last reset. Values already set are never overwritten.
    """
    text = conversation.classification_corpus()
    if not text:
        return

    user = conversation.metadata.user_profile
    if not user.email:
        m = _EMAIL_RE.search(text)
        user.email = m.group(0) if m else ""
    if not user.document_number:
        user.document_number = _first(_ID_NUMBER_RE, text).replace(".", "")

    case = conversation.metadata.case_details
    if isinstance(case, TelecomCase) and not case.line_number:
        case.line_number = _first(_LINE_RE, text)
    elif isinstance(case, UtilitiesCase) and not case.account_number:
        case.account_number = _first(_ACCOUNT_RE, text)
    elif isinstance(case, AirTransportCase):
        if not case.flight_number:
            case.flight_number = _first(_FLIGHT_RE, text).replace(" ", "").upper()
        if not case.booking_number:
            case.booking_number = _first(_BOOKING_RE, text).upper()
