import os
import sys
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from intake.config import settings
from intake.engine import IntakeEngine
from intake.idempotency import IdempotencyStore
from intake.intent import KeywordClassifier
from intake.prompts import Composer
from intake.send_window import SendWindowPolicy
from intake.stage_machine import IntakeRules
from intake.store import FileConversationStore
from intake.sweep import SweepTimings, next_due_at
from intake.transport import RecordingDispatcher

# 11:00 in Madrid (CET), inside the default 08–21 window
T0 = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    for key in ["CRON_TOKEN", "WEBHOOK_TOKEN", "OPENAI_API_KEY", "REDIS_URL", "UPSTASH_REDIS_URL", "STORE_BACKEND"]:
        monkeypatch.delenv(key, raising=False)
    settings.cache_clear()
    yield
    settings.cache_clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timings():
    return SweepTimings(
        max_attempts=3,
        reminder_interval=timedelta(hours=6),
        inactivity_timeout=timedelta(hours=1),
        continuation_window=timedelta(hours=1),
        max_dispatch_failures=3,
        record_timeout=5.0,
    )


@pytest.fixture
def madrid_window():
    return SendWindowPolicy(ZoneInfo("Europe/Madrid"), start_hour=8, end_hour=21, enforced=True)


@pytest.fixture
def make_store(tmp_path, timings):
    def _make(name="conversations.json"):
        return FileConversationStore(str(tmp_path / name), due_at=lambda rec: next_due_at(rec, timings))

    return _make


@pytest.fixture
def make_engine(make_store, clock, timings, madrid_window):
    def _make(**overrides):
        parts = dict(
            store=make_store(),
            policy=madrid_window,
            classifier=KeywordClassifier(),
            composer=Composer(),
            dispatcher=RecordingDispatcher(),
            idempotency=IdempotencyStore(None),
            rules=IntakeRules(),
            timings=timings,
            clock=clock,
            workers=2,
        )
        parts.update(overrides)
        return IntakeEngine(**parts)

    return _make
