"""
Guard Predicates
----------------
Deterministic keyword/number matching for inbound replies, organised as a
single table keyed by stage → ordered (token class, matcher) pairs.

Adding a stage or an accepted token is a data change here, not new
control flow in the stage machine.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .models import Intent, Stage

# -----------------------------
# Lexicons
# -----------------------------
YES = {"si", "sip", "claro", "vale", "ok", "okay", "de acuerdo", "por supuesto", "afirmativo", "continuar", "seguir"}
NO = {"no", "nop", "negativo", "para nada"}
WRONG_PERSON = {"no soy", "no es el asegurado", "numero equivocado", "se ha equivocado", "se equivoca", "no conozco"}
BUSY = {"no puedo", "ahora no", "ocupado", "ocupada", "mas tarde", "luego", "en otro momento", "estoy trabajando"}
CONFIRM = {"soy el asegurado", "soy la asegurada", "soy yo", "correcto", "correctos", "correcta", "correctas", "todo bien", "todo correcto"}
CORRECTION = {"error", "errores", "incorrecto", "incorrectos", "incorrecta", "incorrectas", "corregir", "cambiar", "no es correcto", "no son correctos", "equivocados"}
SELF = {"yo", "yo mismo", "yo misma", "asegurado", "asegurada", "el asegurado", "la asegurada"}
OTHER = {"otra persona", "otro", "otra", "inquilino", "inquilina", "familiar", "vecino", "vecina", "administrador"}
PRESENCIAL = {"presencial", "en persona", "visita", "que venga", "en casa"}
TELEMATICA = {"telematica", "telematico", "video", "videollamada", "online", "llamada", "por telefono"}

WEEKDAYS = {"lunes", "martes", "miercoles", "jueves", "viernes", "sabado", "domingo"}
MONTHS = {
    "enero", "febrero", "marzo", "abril", "mayo", "junio", "julio",
    "agosto", "septiembre", "setiembre", "octubre", "noviembre", "diciembre",
}
RELATIVE_DAYS = {"hoy", "manana", "pasado manana", "esta tarde", "esta semana", "proxima semana", "semana que viene", "cualquier dia"}
DAY_PARTS = {"por la manana", "por la tarde", "a mediodia", "por la noche"}

# -----------------------------
# Claim types (menu order)
# -----------------------------
CLAIM_TYPES: Dict[int, str] = {
    1: "Actos vandálicos sin sustracción",
    2: "Avería eléctrica de equipo",
    3: "Caída de rayo",
    4: "Cristales o rotura de vitrocerámica",
    5: "Daños por agua",
    6: "Impacto",
    7: "Incendio",
    8: "Viento",
    9: "Precipitaciones",
    10: "Responsabilidad Civil (RC)",
    11: "Robo sin sustracción (intento de robo, daños...)",
    12: "Rotura sanitario",
    13: "Sobretensión suministro público",
    14: "Arbitraje",
    15: "Lesiones",
    16: "Robo con sustracción",
    17: "Varias opciones",
    18: "Otros",
}

CLAIM_TYPE_KEYWORDS: List[Tuple[int, Tuple[str, ...]]] = [
    (1, ("actos vandalicos", "vandalico", "vandalismo")),
    (2, ("averia electrica", "equipo electrico")),
    (3, ("caida de rayo", "rayo")),
    (4, ("cristales", "rotura de vitroceramica", "vitroceramica")),
    (5, ("danos por agua", "agua", "fuga", "humedad", "inundacion")),
    (6, ("impacto", "golpe")),
    (7, ("incendio", "fuego")),
    (8, ("viento", "temporal")),
    (9, ("precipitaciones", "lluvia", "granizo", "nieve")),
    (10, ("responsabilidad civil", "rc", "responsabilidad")),
    (11, ("robo sin sustraccion", "intento de robo", "intento robo")),
    (12, ("rotura sanitario", "sanitario", "wc", "inodoro", "lavabo")),
    (13, ("sobretension", "suministro publico")),
    (14, ("arbitraje",)),
    (15, ("lesiones",)),
    (16, ("robo con sustraccion",)),
    (17, ("varias opciones", "varias", "multiple")),
    (18, ("otros", "otro")),
]

# upper bound (EUR) of each severity band; band 5 is open-ended
SEVERITY_BANDS: Dict[int, str] = {
    1: "0 – 500 €",
    2: "500 – 2.500 €",
    3: "2.500 – 5.000 €",
    4: "5.000 – 12.000 €",
    5: "Más de 12.000 €",
}
_SEVERITY_LIMITS = ((1, 500), (2, 2500), (3, 5000), (4, 12000))


# -----------------------------
# Utils
# -----------------------------
_KEEP = re.compile(r"[^a-z0-9/:.\-\s]")
_SPACES = re.compile(r"\s+")


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip accents and emoji/punctuation, collapse whitespace."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", str(text).lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = _KEEP.sub(" ", stripped)
    return _SPACES.sub(" ", stripped).strip(" .-")


def _has_any(text: str, phrases: Iterable[str]) -> bool:
    return any(p in text for p in phrases)


def _match_words(text: str, words: Iterable[str]) -> bool:
    pattern = r"\b(" + "|".join(map(re.escape, words)) + r")\b"
    return bool(re.search(pattern, text))


def _is_option(text: str, *options: str) -> bool:
    """Bare menu answer such as "1" or "1." (emoji keycaps normalize to the digit)."""
    return text in options


def _first_word(text: str) -> str:
    return text.split(" ", 1)[0] if text else ""


# -----------------------------
# Extractors
# -----------------------------
def extract_claim_type(text: str) -> Optional[int]:
    """Menu number 1–18, or a category keyword."""
    t = normalize_text(text)
    m = re.search(r"(?<![\d.,])(\d{1,2})(?![\d.,])", t)
    if m:
        n = int(m.group(1))
        if n in CLAIM_TYPES:
            return n
    for n, keys in CLAIM_TYPE_KEYWORDS:
        if _match_words(t, keys):
            return n
    return None


def extract_severity_band(text: str) -> Optional[int]:
    """Band number 1–5, or an amount in euros mapped onto the bands."""
    t = normalize_text(text)
    m = re.search(r"(?<![\d.,])([1-5])(?![\d.,])", t)
    if m:
        return int(m.group(1))

    amounts = []
    for raw in re.findall(r"\d{1,3}(?:\.\d{3})+|\d+", t):
        try:
            amounts.append(int(raw.replace(".", "")))
        except ValueError:
            continue
    if not amounts:
        return None
    top = max(amounts)
    if top >= 12000 and ("mas de" in t or ">" in str(text)):
        return 5
    for band, limit in _SEVERITY_LIMITS:
        if top <= limit:
            return band
    return 5


_LABELS = {
    "corrected_address": re.compile(r"direcci[oó]n\s*:\s*(.+)", re.IGNORECASE),
    "corrected_date": re.compile(r"fecha(?:\s*de\s*ocurrencia)?\s*:\s*(.+)", re.IGNORECASE),
    "corrected_name": re.compile(r"nombre(?:\s*del\s*asegurado)?\s*:\s*(.+)", re.IGNORECASE),
}


def parse_corrections(text: str) -> Dict[str, str]:
    """
    Best-effort split of a correction message into address/date/name.

    Labelled lines ("Dirección: …") win; otherwise the first three
    non-empty lines are taken in that order.
    """
    raw = (text or "").strip()
    out = {"corrected_text": raw, "corrected_address": "", "corrected_date": "", "corrected_name": ""}
    for line in raw.splitlines():
        clean = line.strip().lstrip("-·•* ").strip()
        for key, rx in _LABELS.items():
            m = rx.match(clean)
            if m and not out[key]:
                out[key] = m.group(1).strip()
    if not (out["corrected_address"] or out["corrected_date"] or out["corrected_name"]):
        lines = [l.strip() for l in raw.splitlines() if l.strip()]
        for key, line in zip(("corrected_address", "corrected_date", "corrected_name"), lines):
            out[key] = line
    return out


_DATE_PATTERNS = (
    re.compile(r"\b\d{1,2}[/\-.]\d{1,2}(?:[/\-.]\d{2,4})?\b"),
    re.compile(r"\b\d{1,2}:\d{2}\b"),
    re.compile(r"\ba las \d{1,2}\b"),
    re.compile(r"\b\d{1,2} ?h\b"),
    re.compile(r"\b\d{1,2} de (" + "|".join(sorted(MONTHS)) + r")\b"),
)


def looks_like_date(text: str) -> bool:
    """True when the text contains a date or time-of-day phrase."""
    t = normalize_text(text)
    if not t:
        return False
    if any(rx.search(t) for rx in _DATE_PATTERNS):
        return True
    return (
        _match_words(t, WEEKDAYS)
        or _match_words(t, MONTHS)
        or _match_words(t, RELATIVE_DAYS)
        or _has_any(t, DAY_PARTS)
    )


def yes_no(text: str) -> Optional[Intent]:
    """Interpret a reply as yes/no only; None when neither."""
    t = normalize_text(text)
    if not t:
        return None
    if _is_option(t, "1") or _first_word(t) in YES or t.startswith("de acuerdo"):
        return Intent.YES
    if _is_option(t, "2") or _first_word(t) in NO:
        return Intent.NO
    if _match_words(t, NO):
        return Intent.NO
    if _match_words(t, YES):
        return Intent.YES
    return None


# -----------------------------
# Guard table
# -----------------------------
Matcher = Callable[[str, str], Optional[Dict[str, Any]]]


class Lexicon:
    """Keyword matcher for a token class that carries no extracted value."""

    def __init__(self, options: Tuple[str, ...] = (), phrases: Iterable[str] = (), words: Iterable[str] = ()):
        self.options = tuple(options)
        self.phrases = tuple(phrases)
        self.words = tuple(words)

    def __call__(self, norm: str, raw: str) -> Optional[Dict[str, Any]]:
        if self.options and _is_option(norm, *self.options):
            return {}
        if self.phrases and _has_any(norm, self.phrases):
            return {}
        if self.words and _match_words(norm, self.words):
            return {}
        return None


def _correction_details(norm: str, raw: str) -> Optional[Dict[str, Any]]:
    if len(raw.strip()) < 5:
        return None
    return parse_corrections(raw)


def _other_person_details(norm: str, raw: str) -> Optional[Dict[str, Any]]:
    text = raw.strip()
    if len(text) < 10 or len(text.split()) < 2:
        return None
    out: Dict[str, Any] = {"other_person_details": text}
    phone = re.search(r"\+?\d[\d\s]{7,}\d", text)
    if phone:
        out["other_person_phone"] = re.sub(r"\s", "", phone.group(0))
    return out


def _claim_type(norm: str, raw: str) -> Optional[Dict[str, Any]]:
    n = extract_claim_type(raw)
    if n is None:
        return None
    return {"claim_type": n, "claim_type_label": CLAIM_TYPES[n], "claim_type_raw": raw.strip()}


def _severity(norm: str, raw: str) -> Optional[Dict[str, Any]]:
    band = extract_severity_band(raw)
    if band is None:
        return None
    return {"severity_band": band}


def _date(norm: str, raw: str) -> Optional[Dict[str, Any]]:
    if not looks_like_date(raw):
        return None
    return {"preferred_date": raw.strip()}


GUARD_TABLE: Dict[Stage, List[Tuple[Intent, Matcher]]] = {
    Stage.INITIAL: [
        (Intent.WRONG_PERSON, Lexicon(("2",), phrases=WRONG_PERSON)),
        (Intent.BUSY, Lexicon(("3",), phrases=BUSY)),
        (Intent.CORRECTION, Lexicon(("4",), words=CORRECTION)),
        (Intent.CONFIRM, Lexicon(("1",), words=CONFIRM | YES)),
        (Intent.CORRECTION, Lexicon(words=NO)),
    ],
    Stage.AWAITING_CORRECTIONS: [
        (Intent.DETAILS, _correction_details),
    ],
    Stage.CONFIRMING_CORRECTIONS: [
        (Intent.REJECT, Lexicon(("2",), words=CORRECTION | NO)),
        (Intent.CONFIRM, Lexicon(("1",), words=CONFIRM | YES)),
    ],
    Stage.ATTENDEE_SELECT: [
        (Intent.OTHER, Lexicon(("2",), words=OTHER)),
        (Intent.SELF, Lexicon(("1",), words=SELF)),
    ],
    Stage.OTHER_PERSON_DETAILS: [
        (Intent.DETAILS, _other_person_details),
    ],
    Stage.CLAIM_TYPE: [
        (Intent.CLAIM_TYPE, _claim_type),
    ],
    Stage.SEVERITY: [
        (Intent.SEVERITY, _severity),
    ],
    Stage.APPOINTMENT_SELECT: [
        (Intent.PRESENCIAL, Lexicon(("1",), phrases=PRESENCIAL)),
        (Intent.TELEMATICA, Lexicon(("2",), phrases=TELEMATICA)),
    ],
    Stage.AWAITING_DATE: [
        (Intent.DATE, _date),
    ],
}

# generic classifier labels that stand for a stage-specific token class
INTENT_ALIASES: Dict[Stage, Dict[Intent, Intent]] = {
    Stage.INITIAL: {Intent.YES: Intent.CONFIRM, Intent.NO: Intent.CORRECTION, Intent.REJECT: Intent.CORRECTION},
    Stage.CONFIRMING_CORRECTIONS: {Intent.YES: Intent.CONFIRM, Intent.NO: Intent.REJECT, Intent.CORRECTION: Intent.REJECT},
}


@dataclass(frozen=True)
class GuardMatch:
    intent: Intent
    fields: Dict[str, Any] = field(default_factory=dict)


def accepted_intents(stage: Stage) -> FrozenSet[Intent]:
    return frozenset(intent for intent, _ in GUARD_TABLE.get(stage, ()))


def match_guard(stage: Stage, text: str) -> Optional[GuardMatch]:
    """First token class of ``stage`` whose matcher accepts ``text``."""
    raw = text or ""
    norm = normalize_text(raw)
    for intent, matcher in GUARD_TABLE.get(stage, ()):
        extracted = matcher(norm, raw)
        if extracted is not None:
            return GuardMatch(intent, extracted)
    return None


def match_intent(stage: Stage, intent: Intent, text: str) -> Optional[GuardMatch]:
    """
    Validate a classifier-chosen intent against the stage's matcher for that
    token class. Lexicon classes need no extra evidence; value classes
    (claim type, severity, date, details) must still extract their fields.
    """
    intent = INTENT_ALIASES.get(stage, {}).get(intent, intent)
    raw = text or ""
    norm = normalize_text(raw)
    for candidate, matcher in GUARD_TABLE.get(stage, ()):
        if candidate != intent:
            continue
        extracted = matcher(norm, raw)
        if extracted is not None:
            return GuardMatch(intent, extracted)
        if isinstance(matcher, Lexicon):
            return GuardMatch(intent, {})
        return None
    return None


__all__ = [
    "GUARD_TABLE",
    "GuardMatch",
    "accepted_intents",
    "extract_claim_type",
    "extract_severity_band",
    "looks_like_date",
    "match_guard",
    "match_intent",
    "normalize_text",
    "parse_corrections",
    "yes_no",
]
