# intake/transport.py
"""
📡 WhatsApp Transport
- Twilio-style 2010-04-01 Messages endpoint over httpx
- Plain body or content template (ContentSid + ContentVariables)
- Dry-run and in-memory dispatchers for local runs and tests

Every dispatcher exposes ``dispatch(identity, descriptor) -> dict`` and
raises TransportError on failure.
"""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from .errors import InvalidIdentity, TransportError
from .identity import normalize_identity
from .prompts import PromptDescriptor
from .runtime import get_logger, retry

logger = get_logger("transport")

MAX_BODY_CHARS = 1600
RETRY_BASE_DELAY = 0.5


class Dispatcher(Protocol):
    def dispatch(self, identity: str, descriptor: PromptDescriptor) -> Dict[str, Any]: ...


# =========================
# Small helpers
# =========================
def _has_value(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def dispatch_budget_seconds(timeout: float, retries: int) -> float:
    """Worst-case wall time of one Twilio dispatch: every attempt times out, plus backoff."""
    backoff = sum(RETRY_BASE_DELAY * (2 ** n) for n in range(retries))
    return (retries + 1) * timeout + backoff


def build_payload(identity: str, from_number: str, descriptor: PromptDescriptor) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"To": identity, "From": from_number}
    if descriptor.template_sid:
        payload["ContentSid"] = descriptor.template_sid
        if descriptor.variables:
            payload["ContentVariables"] = json.dumps(descriptor.variables, ensure_ascii=False)
    else:
        payload["Body"] = descriptor.text
    return payload


def _validate_payload(payload: Dict[str, Any]) -> None:
    """Ensure required transport fields are present and sane."""
    problems: List[str] = []
    for name in ("To", "From"):
        if not _has_value(payload.get(name)):
            problems.append(f"{name} is required")
    body = payload.get("Body")
    if not _has_value(body) and not _has_value(payload.get("ContentSid")):
        problems.append("Body or ContentSid is required")
    if _has_value(body) and len(str(body)) > MAX_BODY_CHARS:
        problems.append(f"Body exceeds {MAX_BODY_CHARS} characters")
    if problems:
        raise TransportError("Invalid message payload: " + "; ".join(problems), payload=dict(payload))


def _extract_error_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return (resp.text or "").strip()


def _summarize_error_body(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, dict):
        for key in ("message", "error", "detail", "error_message"):
            value = body.get(key)
            if _has_value(value):
                return str(value)
    return str(body)


# =========================
# Twilio
# =========================
class TwilioDispatcher:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        api_base: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
        retries: int = 2,
        client: Optional[httpx.Client] = None,
    ):
        if not (account_sid and auth_token and from_number):
            raise TransportError("Twilio credentials and sender number are required")
        self.url = f"{api_base.rstrip('/')}/Accounts/{account_sid}/Messages.json"
        self.auth: Tuple[str, str] = (account_sid, auth_token)
        self.from_number = normalize_identity(from_number)
        self.retries = retries
        self.client = client or httpx.Client(timeout=timeout)

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.client.post(self.url, data=payload, auth=self.auth)
        if resp.status_code == 429:
            raise TransportError(
                f"429 rate limited; retry_after={resp.headers.get('Retry-After')}",
                status_code=429,
                body=resp.headers.get("Retry-After"),
                payload=payload,
            )
        if resp.is_error:
            body = _extract_error_body(resp)
            logger.error("Twilio %s error body: %s", resp.status_code, body)
            summary = _summarize_error_body(body)
            message = f"Twilio HTTP {resp.status_code}"
            if summary:
                message = f"{message}: {summary}"
            raise TransportError(message, status_code=resp.status_code, body=body, payload=payload)
        try:
            return resp.json()
        except ValueError:
            return {"raw": resp.text}

    def dispatch(self, identity: str, descriptor: PromptDescriptor) -> Dict[str, Any]:
        try:
            to = normalize_identity(identity)
        except InvalidIdentity as exc:
            raise TransportError(f"Invalid recipient {identity!r}") from exc
        payload = build_payload(to, self.from_number, descriptor)
        _validate_payload(payload)
        try:
            data = retry(
                lambda: self._post(payload),
                retries=self.retries,
                base_delay=RETRY_BASE_DELAY,
                exceptions=(httpx.TransportError,),
                logger=logger,
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"Twilio request failed: {exc}", payload=payload) from exc
        logger.info("📤 Sent %s to %s (sid=%s)", descriptor.key, to, data.get("sid"))
        return data


# =========================
# Dry run / in-memory
# =========================
class LoggingDispatcher:
    """Dry-run transport: logs what would be sent."""

    def dispatch(self, identity: str, descriptor: PromptDescriptor) -> Dict[str, Any]:
        logger.info("[DRY RUN] → %s [%s]: %s", identity, descriptor.key, descriptor.text.replace("\n", " ")[:160])
        return {"sid": f"SM_dry_{int(time.time() * 1000)}", "status": "queued"}


class RecordingDispatcher:
    """Keeps every dispatch in memory; can be told to fail."""

    def __init__(self, fail: bool = False):
        self.sent: List[Tuple[str, PromptDescriptor]] = []
        self.fail = fail
        self._lock = threading.Lock()

    def dispatch(self, identity: str, descriptor: PromptDescriptor) -> Dict[str, Any]:
        if self.fail:
            raise TransportError("simulated transport outage", status_code=503)
        with self._lock:
            self.sent.append((identity, descriptor))
            return {"sid": f"SM_rec_{len(self.sent)}", "status": "queued"}

    def keys(self) -> List[str]:
        return [d.key for _, d in self.sent]


def build_dispatcher(cfg) -> Dispatcher:
    if cfg.TRANSPORT_DRY_RUN or not (cfg.TWILIO_ACCOUNT_SID and cfg.TWILIO_AUTH_TOKEN and cfg.TWILIO_FROM_NUMBER):
        logger.warning("⚠️ Twilio not configured or dry-run enabled; using logging dispatcher")
        return LoggingDispatcher()
    return TwilioDispatcher(
        cfg.TWILIO_ACCOUNT_SID,
        cfg.TWILIO_AUTH_TOKEN,
        cfg.TWILIO_FROM_NUMBER,
        api_base=cfg.TWILIO_API_BASE,
        timeout=cfg.DISPATCH_TIMEOUT_SECONDS,
        retries=cfg.DISPATCH_RETRIES,
    )
