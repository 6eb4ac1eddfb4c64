"""
⏳ Continuation sub-protocol
----------------------------
"Are you still there?" handling for conversations that went quiet while
a free-text answer was outstanding.

  ask      → awaiting_continuation, timeout armed, outstanding prompt saved
  "sí"     → saved stage/status restored, saved prompt resent verbatim
  "no"     → escalated to administration
  timeout  → completed (expired_no_continuation)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .guards import yes_no
from .models import ConversationRecord, Intent, Outcome, PromptKind, Stage, Status
from .runtime import get_logger

logger = get_logger("continuation")


@dataclass(frozen=True)
class ContinuationReply:
    action: str  # resume | escalate | repeat
    prompt: Optional[Dict[str, Any]] = None


def ask(record: ConversationRecord, now: datetime, window: timedelta) -> ConversationRecord:
    record.continuation_return = {
        "stage": record.stage.value,
        "status": record.status.value,
        "last_prompt_kind": record.last_prompt_kind.value if record.last_prompt_kind else None,
        "last_prompt": record.last_prompt,
    }
    record.status = Status.AWAITING_CONTINUATION
    record.continuation_asked_at = now
    record.continuation_timeout_at = now + window
    record.inactivity_check_at = None
    record.next_reminder_at = None
    return record


def expire(record: ConversationRecord, now: datetime) -> ConversationRecord:
    record.finish(Stage.COMPLETED, Status.COMPLETED, Outcome.EXPIRED_NO_CONTINUATION, now)
    record.last_prompt_kind = None
    return record


def answer(record: ConversationRecord, text: str, now: datetime) -> ContinuationReply:
    """Apply a reply while awaiting continuation; mutates ``record``."""
    choice = yes_no(text)
    if choice == Intent.YES:
        saved = record.continuation_return or {}
        record.stage = Stage(saved.get("stage", record.stage.value))
        record.status = Status(saved.get("status", Status.RESPONDED.value))
        kind = saved.get("last_prompt_kind")
        record.last_prompt_kind = PromptKind(kind) if kind else None
        record.continuation_return = None
        record.continuation_asked_at = None
        record.continuation_timeout_at = None
        logger.info("▶️ %s continues at %s", record.id, record.stage.value)
        return ContinuationReply("resume", saved.get("last_prompt"))

    if choice == Intent.NO:
        record.finish(Stage.ESCALATED, Status.ESCALATED, Outcome.ESCALATED_BY_USER, now)
        record.last_prompt_kind = None
        logger.info("📞 %s declined to continue; escalated", record.id)
        return ContinuationReply("escalate")

    return ContinuationReply("repeat")
