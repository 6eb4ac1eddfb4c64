from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import FrozenSet, Optional

from dotenv import load_dotenv

# -----------------------------
# .env Loader
# -----------------------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PATH = os.path.join(BASE_DIR, "..", ".env")
load_dotenv(dotenv_path=ENV_PATH, override=False)


# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except Exception:
        return default


def env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except Exception:
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    return v if (v and str(v).strip() != "") else default


def env_int_set(key: str, default: FrozenSet[int]) -> FrozenSet[int]:
    """Parse a comma separated list of integers ("14,15,16")."""
    raw = os.getenv(key)
    if not raw:
        return default
    try:
        return frozenset(int(part) for part in raw.split(",") if part.strip())
    except ValueError:
        return default


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    DATA_DIR: str
    CONVERSATIONS_FILE: str
    STORE_BACKEND: str
    REDIS_URL: Optional[str]
    REDIS_TLS: bool
    REDIS_PREFIX: str
    SEND_TZ: str
    SEND_START_HOUR: int
    SEND_END_HOUR: int
    SEND_WINDOW_ENFORCED: bool
    TEST_MODE: bool
    TICK_SECONDS: int
    MAX_REMINDER_ATTEMPTS: int
    REMINDER_INTERVAL_MINUTES: int
    INACTIVITY_TIMEOUT_MINUTES: int
    CONTINUATION_WINDOW_MINUTES: int
    SNOOZE_MINUTES: int
    MAX_DISPATCH_FAILURES: int
    DISPATCH_TIMEOUT_SECONDS: float
    DISPATCH_RETRIES: int
    IN_FLIGHT_GRACE_SECONDS: int
    MAX_UNPARSED_REPLIES: int
    CLASSIFIER_MIN_CONFIDENCE: float
    PRESENCIAL_CLAIM_TYPES: FrozenSet[int]
    PRESENCIAL_SEVERITY_BANDS: FrozenSet[int]
    SWEEP_WORKERS: int
    IDEMPOTENCY_TTL_HOURS: int
    TWILIO_ACCOUNT_SID: Optional[str]
    TWILIO_AUTH_TOKEN: Optional[str]
    TWILIO_FROM_NUMBER: Optional[str]
    TWILIO_API_BASE: str
    TRANSPORT_DRY_RUN: bool
    INITIAL_TEMPLATE_SID: Optional[str]
    CONTINUATION_TEMPLATE_SID: Optional[str]
    OPENAI_API_KEY: Optional[str]
    OPENAI_MODEL: str
    OPENAI_TIMEOUT: float
    CRON_TOKEN: Optional[str]
    WEBHOOK_TOKEN: Optional[str]


def load_settings() -> Settings:
    test_mode = env_bool("TEST_MODE", False)
    data_dir = env_str("DATA_DIR", os.path.join(BASE_DIR, "..", "data"))
    return Settings(
        DATA_DIR=data_dir,
        CONVERSATIONS_FILE=env_str("CONVERSATIONS_FILE", os.path.join(data_dir, "conversations.json")),
        STORE_BACKEND=(env_str("STORE_BACKEND", "file") or "file").lower(),
        REDIS_URL=env_str("REDIS_URL") or env_str("UPSTASH_REDIS_URL"),
        REDIS_TLS=env_bool("REDIS_TLS", False),
        REDIS_PREFIX=env_str("REDIS_PREFIX", "intake"),
        SEND_TZ=env_str("SEND_TZ", "Europe/Madrid"),
        SEND_START_HOUR=env_int("SEND_START_HOUR", 8),
        SEND_END_HOUR=env_int("SEND_END_HOUR", 21),
        SEND_WINDOW_ENFORCED=env_bool("SEND_WINDOW_ENFORCED", True),
        TEST_MODE=test_mode,
        TICK_SECONDS=env_int("TICK_SECONDS", 60 if test_mode else 300),
        MAX_REMINDER_ATTEMPTS=env_int("MAX_REMINDER_ATTEMPTS", 3),
        REMINDER_INTERVAL_MINUTES=env_int("REMINDER_INTERVAL_MINUTES", 360),
        INACTIVITY_TIMEOUT_MINUTES=env_int("INACTIVITY_TIMEOUT_MINUTES", 1 if test_mode else 60),
        CONTINUATION_WINDOW_MINUTES=env_int("CONTINUATION_WINDOW_MINUTES", 5 if test_mode else 60),
        SNOOZE_MINUTES=env_int("SNOOZE_MINUTES", 360),
        MAX_DISPATCH_FAILURES=env_int("MAX_DISPATCH_FAILURES", 3),
        DISPATCH_TIMEOUT_SECONDS=env_float("DISPATCH_TIMEOUT_SECONDS", 10.0),
        DISPATCH_RETRIES=max(0, env_int("DISPATCH_RETRIES", 2)),
        IN_FLIGHT_GRACE_SECONDS=env_int("IN_FLIGHT_GRACE_SECONDS", 300),
        MAX_UNPARSED_REPLIES=max(1, env_int("MAX_UNPARSED_REPLIES", 1)),
        CLASSIFIER_MIN_CONFIDENCE=env_float("CLASSIFIER_MIN_CONFIDENCE", 0.6),
        PRESENCIAL_CLAIM_TYPES=env_int_set("PRESENCIAL_CLAIM_TYPES", frozenset({14, 15, 16, 17, 18})),
        PRESENCIAL_SEVERITY_BANDS=env_int_set("PRESENCIAL_SEVERITY_BANDS", frozenset({3, 4, 5})),
        SWEEP_WORKERS=max(1, env_int("SWEEP_WORKERS", 4)),
        IDEMPOTENCY_TTL_HOURS=env_int("IDEMPOTENCY_TTL_HOURS", 24),
        TWILIO_ACCOUNT_SID=env_str("TWILIO_ACCOUNT_SID"),
        TWILIO_AUTH_TOKEN=env_str("TWILIO_AUTH_TOKEN"),
        TWILIO_FROM_NUMBER=env_str("TWILIO_FROM_NUMBER"),
        TWILIO_API_BASE=env_str("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01"),
        TRANSPORT_DRY_RUN=env_bool("TRANSPORT_DRY_RUN", test_mode),
        INITIAL_TEMPLATE_SID=env_str("INITIAL_TEMPLATE_SID"),
        CONTINUATION_TEMPLATE_SID=env_str("CONTINUATION_TEMPLATE_SID"),
        OPENAI_API_KEY=env_str("OPENAI_API_KEY"),
        OPENAI_MODEL=env_str("OPENAI_MODEL", "gpt-4o-mini"),
        OPENAI_TIMEOUT=env_float("OPENAI_TIMEOUT", 12.0),
        CRON_TOKEN=env_str("CRON_TOKEN"),
        WEBHOOK_TOKEN=env_str("WEBHOOK_TOKEN"),
    )


@lru_cache(maxsize=1)
def settings() -> Settings:
    return load_settings()
