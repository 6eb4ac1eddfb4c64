"""
🧠 Intake Runtime Core
----------------------
Centralized utilities for logging, retries, time handling
and environment introspection shared by the intake engine.
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

_LOGGING_CONFIGURED = False
_CORE_ENV_LOGGED = False


# ────────────────────────────────────────────────
# ENV MASKING + LOGGING CONFIG
# ────────────────────────────────────────────────
def _mask_env_value(value: Optional[str]) -> str:
    """Mask sensitive env values (API keys, tokens, etc.)."""
    if not value:
        return "<missing>"
    trimmed = value.strip()
    if len(trimmed) <= 4:
        return "*" * len(trimmed)
    if len(trimmed) <= 8:
        return f"{trimmed[:2]}...{trimmed[-2:]}"
    return f"{trimmed[:4]}...{trimmed[-4:]}"


def _normalize_level(value: int | str | None) -> int:
    if value is None:
        env_level = os.getenv("INTAKE_LOG_LEVEL")
        if env_level:
            value = env_level
        else:
            return logging.INFO
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    """Initialize root logging configuration once."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    logging.basicConfig(
        level=_normalize_level(level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _LOGGING_CONFIGURED = True
    _log_core_env()


def get_logger(name: str = "intake") -> logging.Logger:
    """Return module-specific logger."""
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)


def _log_core_env() -> None:
    """Logs masked environment variables for observability."""
    global _CORE_ENV_LOGGED
    if _CORE_ENV_LOGGED:
        return
    _CORE_ENV_LOGGED = True
    logger = logging.getLogger("env")
    redis_tcp = os.getenv("REDIS_URL") or os.getenv("UPSTASH_REDIS_URL")
    logger.info(
        "Core env summary:\n"
        "• Store=%s | Redis=%s\n"
        "• Twilio SID=%s | From=%s | DryRun=%s\n"
        "• OpenAI Key=%s | SendWindow=%s-%s (%s) | TEST_MODE=%s",
        os.getenv("STORE_BACKEND", "file"),
        bool(redis_tcp),
        _mask_env_value(os.getenv("TWILIO_ACCOUNT_SID")),
        os.getenv("TWILIO_FROM_NUMBER") or "<missing>",
        os.getenv("TRANSPORT_DRY_RUN", "auto"),
        _mask_env_value(os.getenv("OPENAI_API_KEY")),
        os.getenv("SEND_START_HOUR", "8"),
        os.getenv("SEND_END_HOUR", "21"),
        os.getenv("SEND_TZ", "Europe/Madrid"),
        os.getenv("TEST_MODE", "false"),
    )


# ────────────────────────────────────────────────
# TIME UTILITIES
# ────────────────────────────────────────────────
def utc_now() -> datetime:
    """Return UTC datetime (always timezone-aware)."""
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Return ISO8601 UTC timestamp (Z suffix)."""
    return to_iso(utc_now())


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into an aware UTC datetime; None for blanks or garbage."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ────────────────────────────────────────────────
# PERF TIMER
# ────────────────────────────────────────────────
class PerfTimer:
    """Context manager that records duration to logs."""

    def __init__(self, label: str):
        self.label = label
        self.start: Optional[float] = None
        self.duration: float = 0.0

    def __enter__(self):
        self.start = time.time()
        return self

    def __exit__(self, *_):
        self.duration = round(time.time() - (self.start or time.time()), 3)
        get_logger("perf").info("⏱ %s: %ss", self.label, self.duration)


# ────────────────────────────────────────────────
# RETRY UTILITIES
# ────────────────────────────────────────────────
def retry(
    func: Callable[[], T],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    backoff: float = 2.0,
    exceptions: Iterable[type[BaseException]] = (Exception,),
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Retry a callable with exponential backoff."""
    log = logger or get_logger(__name__)
    exceptions = tuple(exceptions)
    attempt = 0
    while True:
        try:
            return func()
        except exceptions as exc:
            if attempt >= retries:
                log.error("Retry exhausted after %s attempts: %s", attempt + 1, exc, exc_info=exc)
                raise
            delay = base_delay * (backoff ** attempt)
            log.warning("Retryable error (%s/%s): %s, sleeping %.2fs", attempt + 1, retries + 1, exc, delay)
            sleep(delay)
            attempt += 1
