"""
📦 Conversation Record Model
----------------------------
Enums and the per-identity ConversationRecord persisted by the store.

Timestamps live on the record as aware UTC datetimes and are written to
JSON as ISO-8601 strings (Z suffix). Field names are snake_case in both.
"""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .runtime import parse_iso, to_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Stage(str, Enum):
    INITIAL = "initial"
    AWAITING_CORRECTIONS = "awaiting_corrections"
    CONFIRMING_CORRECTIONS = "confirming_corrections"
    ATTENDEE_SELECT = "attendee_select"
    OTHER_PERSON_DETAILS = "other_person_details"
    CLAIM_TYPE = "claim_type"
    SEVERITY = "severity"
    APPOINTMENT_SELECT = "appointment_select"
    AWAITING_DATE = "awaiting_date"
    COMPLETED = "completed"
    ESCALATED = "escalated"


class Status(str, Enum):
    PENDING = "pending"
    RESPONDED = "responded"
    AWAITING_ATTENDEE = "awaiting_attendee"
    AWAITING_CORRECTION_CONFIRMATION = "awaiting_correction_confirmation"
    AWAITING_SEVERITY_PROMPT = "awaiting_severity_prompt"
    AWAITING_APPOINTMENT = "awaiting_appointment"
    AWAITING_CONTINUATION = "awaiting_continuation"
    AWAITING_ADMIN_OFFER = "awaiting_admin_offer"
    SNOOZED = "snoozed"
    ESCALATED = "escalated"
    COMPLETED = "completed"


class PromptKind(str, Enum):
    FIXED_CHOICE = "fixed_choice"
    FREE_TEXT = "free_text"


class Actor(str, Enum):
    USER = "user"
    SYSTEM = "system"


class Outcome(str, Enum):
    COMPLETED = "completed"
    WRONG_PERSON = "wrong_person"
    PRESENCIAL_FORCED = "presencial_forced"
    EXPIRED_NO_CONTINUATION = "expired_no_continuation"
    ESCALATED_NO_RESPONSE = "escalated_no_response"
    ESCALATED_BY_USER = "escalated_by_user"
    ESCALATED_DISPATCH_FAILURE = "escalated_dispatch_failure"


class Intent(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"
    CORRECTION = "correction"
    WRONG_PERSON = "wrong_person"
    BUSY = "busy"
    SELF = "self"
    OTHER = "other"
    PRESENCIAL = "presencial"
    TELEMATICA = "telematica"
    CLAIM_TYPE = "claim_type"
    SEVERITY = "severity"
    DATE = "date"
    DETAILS = "details"
    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"


TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.ESCALATED})
TERMINAL_STATUSES = frozenset({Status.COMPLETED, Status.ESCALATED})
WAITING_STATUSES = frozenset({Status.AWAITING_CONTINUATION, Status.AWAITING_ADMIN_OFFER, Status.SNOOZED})

_TIMESTAMP_FIELDS = (
    "created_at",
    "last_message_at",
    "last_user_message_at",
    "next_reminder_at",
    "continuation_asked_at",
    "continuation_timeout_at",
    "snoozed_until",
    "escalated_at",
    "inactivity_check_at",
    "escalation_deferred_until",
    "completed_at",
)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------
@dataclass
class HistoryEntry:
    actor: str
    text: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"actor": self.actor, "text": self.text, "timestamp": to_iso(self.timestamp)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["HistoryEntry"]:
        ts = parse_iso(data.get("timestamp"))
        if ts is None:
            return None
        actor = str(data.get("actor") or Actor.SYSTEM.value)
        return cls(actor=actor, text=str(data.get("text") or ""), timestamp=ts)


@dataclass
class ConversationRecord:
    id: str
    created_at: datetime
    last_message_at: datetime
    stage: Stage = Stage.INITIAL
    status: Status = Status.PENDING
    attempts: int = 0
    last_user_message_at: Optional[datetime] = None
    next_reminder_at: Optional[datetime] = None
    continuation_asked_at: Optional[datetime] = None
    continuation_timeout_at: Optional[datetime] = None
    snoozed_until: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    inactivity_check_at: Optional[datetime] = None
    escalation_deferred_until: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    last_prompt_kind: Optional[PromptKind] = None
    last_prompt: Optional[Dict[str, Any]] = None
    history: List[HistoryEntry] = field(default_factory=list)
    unparsed_count: int = 0
    dispatch_failures: int = 0
    continuation_return: Optional[Dict[str, Any]] = None
    admin_offer_return: Optional[Dict[str, Any]] = None
    snooze_return_status: Optional[Status] = None
    outcome: Optional[Outcome] = None
    in_flight: Optional[Dict[str, Any]] = None  # {"action", "key", "at"} while a sweep send is underway
    version: int = 0

    # ---- construction ----
    @classmethod
    def new(cls, identity: str, now: datetime) -> "ConversationRecord":
        return cls(id=identity, created_at=now, last_message_at=now)

    def copy(self) -> "ConversationRecord":
        return copy.deepcopy(self)

    # ---- predicates ----
    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES or self.status in TERMINAL_STATUSES

    def waiting_modes(self) -> List[str]:
        """Active waiting modes; never more than one on a well-formed record."""
        modes = []
        if self.snoozed_until is not None:
            modes.append("snooze")
        if self.continuation_asked_at is not None:
            modes.append("continuation")
        if self.status == Status.AWAITING_ADMIN_OFFER:
            modes.append("admin_offer")
        return modes

    # ---- mutation helpers (used on copies inside upsert mutators) ----
    def append_history(self, actor: Actor | str, text: str, at: datetime) -> None:
        """Append one entry, clamping the timestamp so history never goes backwards."""
        if self.history and at < self.history[-1].timestamp:
            at = self.history[-1].timestamp
        self.history.append(HistoryEntry(actor=Actor(actor).value, text=text, timestamp=at))
        if at > self.last_message_at:
            self.last_message_at = at
        if Actor(actor) == Actor.USER:
            self.last_user_message_at = at

    def clear_timers(self) -> None:
        self.next_reminder_at = None
        self.continuation_asked_at = None
        self.continuation_timeout_at = None
        self.snoozed_until = None
        self.inactivity_check_at = None
        self.escalation_deferred_until = None

    def finish(self, stage: Stage, status: Status, outcome: Outcome, now: datetime) -> None:
        """Move to a terminal state and make the record inert."""
        self.stage = stage
        self.status = status
        self.outcome = outcome
        self.clear_timers()
        self.continuation_return = None
        self.admin_offer_return = None
        self.snooze_return_status = None
        if stage == Stage.ESCALATED:
            self.escalated_at = now
        else:
            self.completed_at = now

    def last_system_text(self) -> Optional[str]:
        for entry in reversed(self.history):
            if entry.actor == Actor.SYSTEM.value and entry.text.strip():
                return entry.text
        return None

    # ---- serialization ----
    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in _TIMESTAMP_FIELDS:
            data[name] = to_iso(getattr(self, name))
        data["stage"] = self.stage.value
        data["status"] = self.status.value
        data["last_prompt_kind"] = self.last_prompt_kind.value if self.last_prompt_kind else None
        data["snooze_return_status"] = self.snooze_return_status.value if self.snooze_return_status else None
        data["outcome"] = self.outcome.value if self.outcome else None
        data["history"] = [h.to_dict() for h in self.history]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], identity: Optional[str] = None) -> "ConversationRecord":
        created = parse_iso(data.get("created_at"))
        last = parse_iso(data.get("last_message_at")) or created
        if created is None:
            created = last
        if created is None:
            raise ValueError("record has no usable created_at/last_message_at")

        history = []
        for raw in data.get("history") or []:
            if isinstance(raw, dict):
                entry = HistoryEntry.from_dict(raw)
                if entry is not None:
                    history.append(entry)
        history.sort(key=lambda h: h.timestamp)

        kwargs: Dict[str, Any] = {}
        for name in _TIMESTAMP_FIELDS:
            kwargs[name] = parse_iso(data.get(name))
        kwargs["created_at"] = created
        kwargs["last_message_at"] = last

        return cls(
            id=identity or str(data["id"]),
            stage=_enum_or(Stage, data.get("stage"), Stage.INITIAL),
            status=_enum_or(Status, data.get("status"), Status.PENDING),
            attempts=int(data.get("attempts") or 0),
            fields=dict(data.get("fields") or {}),
            last_prompt_kind=_enum_or(PromptKind, data.get("last_prompt_kind"), None),
            last_prompt=data.get("last_prompt") or None,
            history=history,
            unparsed_count=int(data.get("unparsed_count") or 0),
            dispatch_failures=int(data.get("dispatch_failures") or 0),
            continuation_return=data.get("continuation_return") or None,
            admin_offer_return=data.get("admin_offer_return") or None,
            snooze_return_status=_enum_or(Status, data.get("snooze_return_status"), None),
            outcome=_enum_or(Outcome, data.get("outcome"), None),
            in_flight=data.get("in_flight") or None,
            version=int(data.get("version") or 0),
            **kwargs,
        )


def _enum_or(enum_cls, value, default):
    if value is None or value == "":
        return default
    try:
        return enum_cls(value)
    except ValueError:
        return default
