# intake/ai/classifier.py
from __future__ import annotations

import json
import time
from typing import Any, Dict, Optional

from openai import OpenAI

from ..intent import Classification, KeywordClassifier, with_text
from ..models import Intent
from ..runtime import get_logger

logger = get_logger("ai.classifier")

_LABELS = ", ".join(i.value for i in Intent)

SYSTEM_MSG = (
    "You classify WhatsApp replies (Spanish) in an insurance-claim intake dialogue. "
    f"Answer ONLY with JSON: {{\"intent\": one of [{_LABELS}], \"confidence\": 0..1, \"fields\": {{}}}}. "
    "Use claim_type (1-18) or severity_band (1-5) inside fields when the reply names one. "
    "Bare menu numbers whose meaning depends on the question are \"unknown\"."
)


# ───────────────────────────────────────────────────────────
# Client
# ───────────────────────────────────────────────────────────
def _client(api_key: Optional[str], timeout: float) -> Optional[Any]:
    if not api_key:
        return None
    try:
        return OpenAI(api_key=api_key, timeout=timeout)
    except Exception as exc:
        logger.warning("OpenAI client init failed: %s", exc)
        return None


class OpenAIClassifier:
    """
    Model-backed classifier. Never raises: a missing key, timeout, API error
    or unknown label degrades to the keyword classifier.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str = "gpt-4o-mini",
        timeout: float = 12.0,
        max_retries: int = 1,
        fallback: Optional[KeywordClassifier] = None,
        client: Any = None,
    ):
        self.model = model
        self.max_retries = max_retries
        self.fallback = fallback or KeywordClassifier()
        self.client = client if client is not None else _client(api_key, timeout)

    @classmethod
    def from_settings(cls, cfg) -> "OpenAIClassifier":
        return cls(cfg.OPENAI_API_KEY, model=cfg.OPENAI_MODEL, timeout=cfg.OPENAI_TIMEOUT)

    def classify(self, text: str) -> Classification:
        if self.client is None or not (text or "").strip():
            return self.fallback.classify(text)

        last_err: Optional[str] = None
        for attempt in range(1, self.max_retries + 2):
            try:
                resp = self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": SYSTEM_MSG},
                        {"role": "user", "content": text},
                    ],
                    temperature=0,
                    max_tokens=120,
                    response_format={"type": "json_object"},
                )
                content = ((resp.choices[0].message.content if resp and resp.choices else None) or "").strip()
                if not content:
                    raise RuntimeError("Empty completion content")
                return self._parse(content, text)
            except Exception as exc:
                last_err = str(exc)
                logger.warning("Classification attempt %s failed: %s", attempt, last_err)
                if attempt <= self.max_retries:
                    time.sleep(1.2 ** attempt)

        logger.info("Falling back to keyword classifier after errors: %s", last_err)
        return self.fallback.classify(text)

    def _parse(self, content: str, text: str) -> Classification:
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("completion is not a JSON object")
        intent = Intent(str(data.get("intent", "")).strip().lower())
        confidence = float(data.get("confidence", 0.0))
        fields: Dict[str, Any] = data.get("fields") if isinstance(data.get("fields"), dict) else {}
        return Classification(intent, max(0.0, min(1.0, confidence)), with_text(text, fields))
