"""
🙋 Administration Offer Guard
-----------------------------
Intercepts replies to fixed-choice prompts that match nothing the stage
accepts and offers a human handoff instead of misrouting the dialogue.

    fire    → status=awaiting_admin_offer (prior stage/status remembered)
    "sí"    → escalated (escalated_by_user)
    "no"    → prior stage/status restored, stage prompt re-issued
    other   → ask yes/no again

Never fires after a free-text prompt.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .guards import yes_no
from .models import ConversationRecord, Intent, Outcome, PromptKind, Stage, Status
from .runtime import get_logger, to_iso

logger = get_logger("admin_offer")

ESCALATE = "escalate"
RESUME = "resume"
REPEAT = "repeat"


@dataclass(frozen=True)
class OfferReply:
    action: str
    prompt_key: str


class AdministrationOfferGuard:
    def __init__(self, max_unparsed: int = 1):
        self.max_unparsed = max(1, int(max_unparsed))

    def should_fire(self, record: ConversationRecord, accepted: bool) -> bool:
        if accepted or record.is_terminal:
            return False
        if record.last_prompt_kind != PromptKind.FIXED_CHOICE:
            return False
        if record.status in (Status.AWAITING_ADMIN_OFFER, Status.AWAITING_CONTINUATION, Status.SNOOZED):
            return False
        return record.unparsed_count + 1 >= self.max_unparsed

    def fire(self, record: ConversationRecord, now: datetime) -> ConversationRecord:
        record.admin_offer_return = {
            "stage": record.stage.value,
            "status": record.status.value,
            "offered_at": to_iso(now),
        }
        record.status = Status.AWAITING_ADMIN_OFFER
        record.next_reminder_at = None
        record.inactivity_check_at = None
        record.unparsed_count = 0
        logger.info("🙋 Offering administration to %s at stage %s", record.id, record.stage.value)
        return record

    def answer(self, record: ConversationRecord, text: str, now: datetime, reminder_at: Optional[datetime] = None) -> OfferReply:
        """Apply a yes/no reply to a pending offer; mutates ``record``."""
        choice = yes_no(text)
        if choice == Intent.YES:
            record.finish(Stage.ESCALATED, Status.ESCALATED, Outcome.ESCALATED_BY_USER, now)
            record.last_prompt_kind = None
            logger.info("📞 %s accepted administration handoff", record.id)
            return OfferReply(ESCALATE, "admin_handoff")

        if choice == Intent.NO:
            saved = record.admin_offer_return or {}
            record.stage = Stage(saved.get("stage", record.stage.value))
            record.status = Status(saved.get("status", Status.PENDING.value))
            record.admin_offer_return = None
            record.unparsed_count = 0
            if record.status == Status.PENDING and record.next_reminder_at is None:
                record.next_reminder_at = reminder_at
            logger.info("↩️ %s declined administration; back to %s/%s", record.id, record.stage.value, record.status.value)
            return OfferReply(RESUME, "stage")

        return OfferReply(REPEAT, "admin_offer_repeat")
