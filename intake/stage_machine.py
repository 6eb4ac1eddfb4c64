"""
🧭 Stage Machine
----------------
Pure transition function for the claim-intake dialogue:

    transition(record, intent, fields, rules) → Transition

No I/O and no clock: the same inputs always give the same Transition.
``apply_transition`` then writes a Transition onto a record copy, which
is where timers and counters are maintained.

Flow (happy path):
    initial → attendee_select → claim_type → severity
            → appointment_select → awaiting_date → completed
Detours: corrections loop, other-person details, presencial shortcuts,
snooze (busy) and the wrong-person close.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .guards import GuardMatch, match_guard, match_intent
from .models import ConversationRecord, Intent, Outcome, PromptKind, Stage, Status

# ---------------------------------------------------------------------------
# Stage plan: outstanding status, prompt kind and prompt key per stage
# ---------------------------------------------------------------------------
STAGE_PLAN: Dict[Stage, Tuple[Status, PromptKind, str]] = {
    Stage.INITIAL: (Status.PENDING, PromptKind.FIXED_CHOICE, "initial"),
    Stage.AWAITING_CORRECTIONS: (Status.RESPONDED, PromptKind.FREE_TEXT, "ask_corrections"),
    Stage.CONFIRMING_CORRECTIONS: (Status.AWAITING_CORRECTION_CONFIRMATION, PromptKind.FIXED_CHOICE, "confirm_corrections"),
    Stage.ATTENDEE_SELECT: (Status.AWAITING_ATTENDEE, PromptKind.FIXED_CHOICE, "attendee_menu"),
    Stage.OTHER_PERSON_DETAILS: (Status.RESPONDED, PromptKind.FREE_TEXT, "other_person_request"),
    Stage.CLAIM_TYPE: (Status.RESPONDED, PromptKind.FIXED_CHOICE, "claim_type_menu"),
    Stage.SEVERITY: (Status.AWAITING_SEVERITY_PROMPT, PromptKind.FIXED_CHOICE, "severity_menu"),
    Stage.APPOINTMENT_SELECT: (Status.AWAITING_APPOINTMENT, PromptKind.FIXED_CHOICE, "appointment_menu"),
    Stage.AWAITING_DATE: (Status.RESPONDED, PromptKind.FREE_TEXT, "date_request"),
}


@dataclass(frozen=True)
class IntakeRules:
    """Domain cutoffs and timings, built once from Settings."""

    presencial_claim_types: FrozenSet[int] = frozenset({14, 15, 16, 17, 18})
    presencial_severity_bands: FrozenSet[int] = frozenset({3, 4, 5})
    min_confidence: float = 0.6
    reminder_interval: timedelta = timedelta(hours=6)
    snooze: timedelta = timedelta(hours=6)

    @classmethod
    def from_settings(cls, cfg) -> "IntakeRules":
        return cls(
            presencial_claim_types=frozenset(cfg.PRESENCIAL_CLAIM_TYPES),
            presencial_severity_bands=frozenset(cfg.PRESENCIAL_SEVERITY_BANDS),
            min_confidence=cfg.CLASSIFIER_MIN_CONFIDENCE,
            reminder_interval=timedelta(minutes=cfg.REMINDER_INTERVAL_MINUTES),
            snooze=timedelta(minutes=cfg.SNOOZE_MINUTES),
        )


@dataclass(frozen=True)
class Transition:
    stage: Stage
    status: Status
    field_updates: Dict[str, Any] = field(default_factory=dict)
    prompt_kind: Optional[PromptKind] = None
    prompt_key: str = ""
    matched: bool = True
    intent: Optional[Intent] = None
    outcome: Optional[Outcome] = None
    snooze: bool = False

    @property
    def terminal(self) -> bool:
        return self.stage in (Stage.COMPLETED, Stage.ESCALATED)


# ---------------------------------------------------------------------------
# Intent resolution
# ---------------------------------------------------------------------------
def resolve(
    stage: Stage,
    intent: Optional[Intent],
    fields: Dict[str, Any],
    rules: IntakeRules,
    confidence: float = 1.0,
) -> Optional[GuardMatch]:
    """
    Trust the classifier when its label is accepted at this stage with enough
    confidence; otherwise fall back to the deterministic guard table.
    """
    text = str(fields.get("text") or "")
    if intent is not None and intent != Intent.UNKNOWN and confidence >= rules.min_confidence:
        hit = match_intent(stage, intent, text)
        if hit is not None:
            extra = {k: v for k, v in fields.items() if k != "text" and k not in hit.fields}
            return GuardMatch(hit.intent, {**extra, **hit.fields})
    return match_guard(stage, text)


def accepts(record: ConversationRecord, intent: Optional[Intent], fields: Dict[str, Any], rules: IntakeRules,
            confidence: float = 1.0) -> bool:
    return resolve(record.stage, intent, fields, rules, confidence) is not None


# ---------------------------------------------------------------------------
# Transition
# ---------------------------------------------------------------------------
def _goto(stage: Stage, intent: Intent, updates: Optional[Dict[str, Any]] = None, key: Optional[str] = None) -> Transition:
    status, kind, default_key = STAGE_PLAN[stage]
    return Transition(
        stage=stage,
        status=status,
        field_updates=dict(updates or {}),
        prompt_kind=kind,
        prompt_key=key or default_key,
        intent=intent,
    )


def _finish(stage: Stage, intent: Intent, outcome: Outcome, key: str, updates: Optional[Dict[str, Any]] = None) -> Transition:
    status = Status.ESCALATED if stage == Stage.ESCALATED else Status.COMPLETED
    return Transition(
        stage=stage,
        status=status,
        field_updates=dict(updates or {}),
        prompt_kind=None,
        prompt_key=key,
        intent=intent,
        outcome=outcome,
    )


def _no_match(record: ConversationRecord) -> Transition:
    status, kind, key = STAGE_PLAN[record.stage]
    return Transition(stage=record.stage, status=status, prompt_kind=kind, prompt_key=key, matched=False)


def transition(
    record: ConversationRecord,
    intent: Optional[Intent],
    fields: Dict[str, Any],
    rules: IntakeRules,
    confidence: float = 1.0,
) -> Transition:
    """Compute the next stage/status/prompt for one inbound reply."""
    stage = record.stage
    if stage in (Stage.COMPLETED, Stage.ESCALATED):
        return Transition(stage=stage, status=record.status, prompt_key="finished", matched=False)

    hit = resolve(stage, intent, fields, rules, confidence)
    if hit is None:
        return _no_match(record)
    got, values = hit.intent, hit.fields

    if stage == Stage.INITIAL:
        if got == Intent.WRONG_PERSON:
            return _finish(Stage.COMPLETED, got, Outcome.WRONG_PERSON, "wrong_person_close")
        if got == Intent.BUSY:
            _, kind, _ = STAGE_PLAN[stage]
            return Transition(stage=stage, status=Status.SNOOZED, prompt_kind=kind, prompt_key="snooze_ack",
                              intent=got, snooze=True)
        if got == Intent.CONFIRM:
            return _goto(Stage.ATTENDEE_SELECT, got, {"identity_confirmed": True})
        if got == Intent.CORRECTION:
            return _goto(Stage.AWAITING_CORRECTIONS, got)

    elif stage == Stage.AWAITING_CORRECTIONS:
        return _goto(Stage.CONFIRMING_CORRECTIONS, got, values)

    elif stage == Stage.CONFIRMING_CORRECTIONS:
        if got == Intent.CONFIRM:
            return _goto(Stage.ATTENDEE_SELECT, got, {"corrections_confirmed": True})
        if got == Intent.REJECT:
            return _goto(Stage.AWAITING_CORRECTIONS, got, {"corrections_confirmed": False})

    elif stage == Stage.ATTENDEE_SELECT:
        if got == Intent.SELF:
            return _goto(Stage.CLAIM_TYPE, got, {"attendee": "self"})
        if got == Intent.OTHER:
            return _goto(Stage.OTHER_PERSON_DETAILS, got, {"attendee": "other"})

    elif stage == Stage.OTHER_PERSON_DETAILS:
        return _goto(Stage.CLAIM_TYPE, got, values)

    elif stage == Stage.CLAIM_TYPE:
        claim_type = values.get("claim_type")
        if claim_type in rules.presencial_claim_types:
            updates = {**values, "appointment_mode": "presencial", "severity_band": None}
            return _goto(Stage.AWAITING_DATE, got, updates, key="date_request_presencial")
        return _goto(Stage.SEVERITY, got, values)

    elif stage == Stage.SEVERITY:
        band = values.get("severity_band")
        if band in rules.presencial_severity_bands:
            updates = {**values, "appointment_mode": "presencial"}
            return _finish(Stage.COMPLETED, got, Outcome.PRESENCIAL_FORCED, "presencial_forced_close", updates)
        return _goto(Stage.APPOINTMENT_SELECT, got, values)

    elif stage == Stage.APPOINTMENT_SELECT:
        mode = "presencial" if got == Intent.PRESENCIAL else "telematica"
        return _goto(Stage.AWAITING_DATE, got, {"appointment_mode": mode})

    elif stage == Stage.AWAITING_DATE:
        return _finish(Stage.COMPLETED, got, Outcome.COMPLETED, "summary", values)

    return _no_match(record)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------
def apply_transition(record: ConversationRecord, t: Transition, now: datetime, rules: IntakeRules) -> ConversationRecord:
    """Write ``t`` onto ``record`` (a copy owned by the caller) and keep timers consistent."""
    record.fields.update(t.field_updates)

    if t.terminal:
        record.finish(t.stage, t.status, t.outcome or Outcome.COMPLETED, now)
        record.last_prompt_kind = None
        record.attempts = 0
        record.unparsed_count = 0
        return record

    if t.snooze:
        if record.status != Status.SNOOZED:
            record.snooze_return_status = record.status
        record.clear_timers()
        record.continuation_return = None
        record.admin_offer_return = None
        record.status = Status.SNOOZED
        record.snoozed_until = now + rules.snooze
        record.unparsed_count = 0
        return record

    if t.stage != record.stage:
        record.attempts = 0
        record.unparsed_count = 0
    if not t.matched:
        record.unparsed_count += 1
    else:
        record.unparsed_count = 0

    record.stage = t.stage
    record.status = t.status
    record.last_prompt_kind = t.prompt_kind
    if record.status == Status.PENDING:
        if record.next_reminder_at is None:
            record.next_reminder_at = now + rules.reminder_interval
    else:
        record.next_reminder_at = None
    return record
