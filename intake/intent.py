# intake/intent.py
"""
Intent Classifier
-----------------
Rule-based, stage-agnostic intent detection for inbound WhatsApp replies.

Only high-signal labels are produced here; bare menu numbers and free text
are left as ``unknown`` so the stage guards decide what they mean.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from .guards import (
    BUSY,
    CORRECTION,
    PRESENCIAL,
    TELEMATICA,
    WRONG_PERSON,
    _has_any,
    _match_words,
    normalize_text,
    yes_no,
)
from .models import Intent

LEXICON_CONFIDENCE = 0.8


@dataclass(frozen=True)
class Classification:
    intent: Intent
    confidence: float = 0.0
    extracted_fields: Dict[str, Any] = field(default_factory=dict)


class Classifier(Protocol):
    def classify(self, text: str) -> Classification: ...


def with_text(text: str, fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Extracted fields plus the raw reply under ``text``."""
    out = dict(fields or {})
    out["text"] = text or ""
    return out


class KeywordClassifier:
    """Deterministic Spanish lexicon classifier (accent insensitive)."""

    def classify(self, text: str) -> Classification:
        t = normalize_text(text)
        if not t:
            return Classification(Intent.UNKNOWN, 0.0, with_text(text))

        if _has_any(t, WRONG_PERSON):
            label = Intent.WRONG_PERSON
        elif _has_any(t, BUSY):
            label = Intent.BUSY
        elif _match_words(t, CORRECTION):
            label = Intent.CORRECTION
        elif "otra persona" in t:
            label = Intent.OTHER
        elif _has_any(t, PRESENCIAL):
            label = Intent.PRESENCIAL
        elif _has_any(t, TELEMATICA):
            label = Intent.TELEMATICA
        elif t.isdigit():
            label = None
        else:
            label = yes_no(t)

        if label is None:
            return Classification(Intent.UNKNOWN, 0.0, with_text(text))
        return Classification(label, LEXICON_CONFIDENCE, with_text(text))


def classify_intent(text: str) -> str:
    """Return the standardized intent label for an inbound reply."""
    return KeywordClassifier().classify(text).intent.value


__all__ = ["Classification", "Classifier", "KeywordClassifier", "classify_intent"]
