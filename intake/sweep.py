"""
⏰ Timing Sweep
---------------
Periodic scan of due conversations. Per record and tick, at most one action,
in strict priority order:

  1. escalate              – reminders exhausted, hand over to a person
  2. remind                – outstanding prompt re-sent, attempts += 1
  3. expire continuation   – "are you still there?" timed out
  4. inactivity            – free-text answer overdue, ask to continue
  5. un-snooze             – busy deferral over, timers resume

Dispatching actions (1, 2, 4) that fall outside the send window are
rescheduled to the next window opening instead of being sent or dropped.
Sends happen outside the store lock in two steps: one upsert records an
in-flight marker, the dispatcher runs, a second upsert applies the result.
A marker that outlives the grace window means the process died mid-send;
the action is then applied without resending. The idempotency key guards
the same action across workers sharing redis.
"""

from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from . import continuation
from .idempotency import IdempotencyStore, action_key
from .models import ConversationRecord, Actor, Outcome, Stage, Status
from .prompts import Composer, PromptDescriptor
from .runtime import PerfTimer, get_logger, parse_iso, to_iso, utc_now
from .send_window import SendWindowPolicy
from .store import ConversationStore
from .transport import Dispatcher

logger = get_logger("sweep")


class Action(str, Enum):
    ESCALATE = "escalate"
    REMIND = "remind"
    EXPIRE_CONTINUATION = "expire_continuation"
    INACTIVITY = "inactivity"
    UNSNOOZE = "unsnooze"


@dataclass(frozen=True)
class SweepTimings:
    max_attempts: int = 3
    reminder_interval: timedelta = timedelta(hours=6)
    inactivity_timeout: timedelta = timedelta(hours=1)
    continuation_window: timedelta = timedelta(hours=1)
    max_dispatch_failures: int = 3
    record_timeout: float = 10.0
    in_flight_grace: timedelta = timedelta(minutes=5)

    @classmethod
    def from_settings(cls, cfg) -> "SweepTimings":
        return cls(
            max_attempts=cfg.MAX_REMINDER_ATTEMPTS,
            reminder_interval=timedelta(minutes=cfg.REMINDER_INTERVAL_MINUTES),
            inactivity_timeout=timedelta(minutes=cfg.INACTIVITY_TIMEOUT_MINUTES),
            continuation_window=timedelta(minutes=cfg.CONTINUATION_WINDOW_MINUTES),
            max_dispatch_failures=cfg.MAX_DISPATCH_FAILURES,
            record_timeout=cfg.DISPATCH_TIMEOUT_SECONDS * 2,
            in_flight_grace=timedelta(seconds=cfg.IN_FLIGHT_GRACE_SECONDS),
        )


@dataclass
class DispatchedAction:
    identity: str
    action: Action
    outcome: str  # sent | deferred | applied | duplicate | failed | in_flight
    at: datetime
    prompt_key: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "action": self.action.value,
            "outcome": self.outcome,
            "at": to_iso(self.at),
            "prompt_key": self.prompt_key,
            "detail": self.detail,
        }


# ---------------------------------------------------------------------------
# Pure decision
# ---------------------------------------------------------------------------
def _inactivity_due(record: ConversationRecord, timings: SweepTimings) -> datetime:
    base = (record.last_user_message_at or record.last_message_at) + timings.inactivity_timeout
    if record.inactivity_check_at is not None and record.inactivity_check_at > base:
        return record.inactivity_check_at
    return base


def next_due_at(record: ConversationRecord, timings: SweepTimings) -> Optional[datetime]:
    """Earliest time any timer on ``record`` can fire; None when nothing is armed."""
    if record.is_terminal:
        return None
    if record.status == Status.PENDING:
        if record.attempts >= timings.max_attempts:
            return record.escalation_deferred_until or record.last_message_at
        return record.next_reminder_at
    if record.status == Status.AWAITING_CONTINUATION:
        return record.continuation_timeout_at
    if record.status == Status.RESPONDED:
        return _inactivity_due(record, timings)
    if record.status == Status.SNOOZED:
        return record.snoozed_until
    return None


def decide(record: ConversationRecord, now: datetime, timings: SweepTimings) -> Optional[Action]:
    """The single highest-priority action due for ``record`` at ``now``."""
    if record.is_terminal:
        return None

    if record.status == Status.PENDING:
        if record.attempts >= timings.max_attempts:
            hold = record.escalation_deferred_until
            return Action.ESCALATE if hold is None or hold <= now else None
        if record.next_reminder_at is not None and record.next_reminder_at <= now:
            return Action.REMIND
        return None

    if record.status == Status.AWAITING_CONTINUATION:
        if record.continuation_timeout_at is not None and record.continuation_timeout_at <= now:
            return Action.EXPIRE_CONTINUATION
        return None

    if record.status == Status.RESPONDED:
        if _inactivity_due(record, timings) <= now:
            return Action.INACTIVITY
        return None

    if record.status == Status.SNOOZED:
        if record.snoozed_until is not None and record.snoozed_until <= now:
            return Action.UNSNOOZE
    return None


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------
class TimingSweep:
    def __init__(
        self,
        store: ConversationStore,
        policy: SendWindowPolicy,
        composer: Composer,
        dispatcher: Dispatcher,
        idempotency: IdempotencyStore,
        timings: SweepTimings,
        *,
        clock: Callable[[], datetime] = utc_now,
        workers: int = 4,
    ):
        self.store = store
        self.policy = policy
        self.composer = composer
        self.dispatcher = dispatcher
        self.idempotency = idempotency
        self.timings = timings
        self.clock = clock
        self.workers = max(1, workers)

    # ---- entry point ----
    def tick(self, now: Optional[datetime] = None) -> List[DispatchedAction]:
        now = now or self.clock()
        due = self.store.scan_due(lambda rec, at: decide(rec, at, self.timings) is not None, now)
        if not due:
            return []

        actions: List[DispatchedAction] = []
        with PerfTimer("sweep_tick"):
            pool = concurrent.futures.ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="sweep")
            try:
                futures = {pool.submit(self.process, rec.id, now): rec.id for rec in due}
                for fut, identity in futures.items():
                    try:
                        result = fut.result(timeout=self.timings.record_timeout)
                    except concurrent.futures.TimeoutError:
                        logger.error("⌛ Sweep action for %s exceeded %ss; retrying next tick",
                                     identity, self.timings.record_timeout)
                        continue
                    except Exception as exc:
                        logger.error("❌ Sweep action for %s failed: %s", identity, exc, exc_info=exc)
                        continue
                    if result is not None:
                        actions.append(result)
            finally:
                pool.shutdown(wait=False, cancel_futures=True)

        logger.info("✅ Sweep tick at %s: %s due, %s actions", to_iso(now), len(due), len(actions))
        return actions

    # ---- per record ----
    def process(self, identity: str, now: datetime) -> Optional[DispatchedAction]:
        outcome: Dict[str, Any] = {}

        def prepare(current: Optional[ConversationRecord]) -> Optional[ConversationRecord]:
            if current is None:
                return None
            action = decide(current, now, self.timings)
            if action is None:
                return None  # changed since the scan
            result = self._apply(current, action, now, outcome)
            if result is None:
                return None
            outcome["result"] = result
            return current

        self.store.upsert(identity, prepare)
        pending = outcome.get("send")
        if pending is None:
            return outcome.get("result")
        return self._send(identity, now, *pending)

    def _apply(self, record: ConversationRecord, action: Action, now: datetime,
               outcome: Dict[str, Any]) -> Optional[DispatchedAction]:
        if action == Action.EXPIRE_CONTINUATION:
            continuation.expire(record, now)
            logger.info("🧹 Continuation expired for %s", record.id)
            return DispatchedAction(record.id, action, "applied", now)

        if action == Action.UNSNOOZE:
            record.status = record.snooze_return_status or Status.PENDING
            record.snooze_return_status = None
            record.snoozed_until = None
            if record.status == Status.PENDING:
                record.next_reminder_at = now
            logger.info("⏰ Snooze over for %s; back to %s", record.id, record.status.value)
            return DispatchedAction(record.id, action, "applied", now, detail={"status": record.status.value})

        opening = self.policy.defer(now)
        if opening is not None:
            if action == Action.INACTIVITY:
                record.inactivity_check_at = opening
            elif action == Action.ESCALATE:
                record.escalation_deferred_until = opening
            else:
                record.next_reminder_at = opening
            logger.info("⏸️ %s for %s outside send window; deferred to %s", action.value, record.id, to_iso(opening))
            return DispatchedAction(record.id, action, "deferred", now, detail={"until": to_iso(opening)})

        return self._claim(record, action, now, outcome)

    def _descriptor(self, record: ConversationRecord, action: Action) -> PromptDescriptor:
        if action == Action.REMIND:
            if record.last_system_text() is None:
                # first contact was deferred or failed: send the prompt itself
                return self.composer.for_stage(record)
            return self.composer.reminder(record, record.attempts + 1)
        if action == Action.ESCALATE:
            return self.composer.compose("escalation", record)
        return self.composer.compose("continuation_question", record)

    def _trigger(self, record: ConversationRecord, action: Action) -> Optional[str]:
        if action == Action.INACTIVITY:
            return to_iso(record.last_user_message_at or record.last_message_at)
        return to_iso(record.next_reminder_at) or f"attempt-{record.attempts}"

    def _claim(self, record: ConversationRecord, action: Action, now: datetime,
               outcome: Dict[str, Any]) -> Optional[DispatchedAction]:
        """First step of a send: check earlier attempts and mark this one in flight."""
        descriptor = self._descriptor(record, action)
        key = action_key(action.value, record.id, self._trigger(record, action))

        marker = record.in_flight
        if marker is not None:
            started = parse_iso(marker.get("at"))
            if started is not None and now - started < self.timings.in_flight_grace:
                logger.info("⏳ %s for %s in flight since %s; skipping", marker.get("action"), record.id,
                            marker.get("at"))
                return None
            record.in_flight = None
            if marker.get("key") == key:
                logger.warning("⏭️ %s for %s was interrupted mid-send; applying without resend",
                               action.value, record.id)
                self._after_send(record, action, descriptor, now, sent=False)
                return DispatchedAction(record.id, action, "duplicate", now, descriptor.key)

        if not self.idempotency.claim(key):
            logger.warning("⏭️ %s already dispatched for %s; applying without resend", action.value, record.id)
            self._after_send(record, action, descriptor, now, sent=False)
            return DispatchedAction(record.id, action, "duplicate", now, descriptor.key)

        record.in_flight = {"action": action.value, "key": key, "at": to_iso(now)}
        outcome["send"] = (action, descriptor, key)
        return DispatchedAction(record.id, action, "in_flight", now, descriptor.key)

    def _send(self, identity: str, now: datetime, action: Action, descriptor: PromptDescriptor,
              key: str) -> DispatchedAction:
        """Second step of a send: dispatch outside the lock, then settle the marker."""
        error: Optional[Exception] = None
        try:
            self.dispatcher.dispatch(identity, descriptor)
        except Exception as exc:
            self.idempotency.release(key)
            error = exc

        settled: Dict[str, DispatchedAction] = {}

        def settle(current: Optional[ConversationRecord]) -> Optional[ConversationRecord]:
            if current is None or (current.in_flight or {}).get("key") != key:
                return None
            current.in_flight = None
            still_due = decide(current, now, self.timings) == action
            if error is not None:
                settled["result"] = self._failed(current, action, descriptor, now, error, counted=still_due)
            elif still_due:
                current.dispatch_failures = 0
                self._after_send(current, action, descriptor, now, sent=True)
                settled["result"] = DispatchedAction(identity, action, "sent", now, descriptor.key)
            else:
                # user wrote back while the send was underway
                current.append_history(Actor.SYSTEM, descriptor.text, now)
                settled["result"] = DispatchedAction(identity, action, "sent", now, descriptor.key,
                                                     {"superseded": True})
            return current

        self.store.upsert(identity, settle)
        if "result" in settled:
            return settled["result"]
        return DispatchedAction(identity, action, "failed" if error else "sent", now, descriptor.key)

    def _failed(self, record: ConversationRecord, action: Action, descriptor: PromptDescriptor, now: datetime,
                exc: Exception, *, counted: bool) -> DispatchedAction:
        detail: Dict[str, Any] = {"error": str(exc)}
        if not counted:
            logger.error("❌ Dispatch of %s to %s failed: %s", action.value, record.id, exc)
            return DispatchedAction(record.id, action, "failed", now, descriptor.key, detail)

        record.dispatch_failures += 1
        logger.error("❌ Dispatch of %s to %s failed (%s/%s): %s", action.value, record.id,
                     record.dispatch_failures, self.timings.max_dispatch_failures, exc)
        detail["failures"] = record.dispatch_failures
        if record.dispatch_failures >= self.timings.max_dispatch_failures:
            record.finish(Stage.ESCALATED, Status.ESCALATED, Outcome.ESCALATED_DISPATCH_FAILURE, now)
            record.last_prompt_kind = None
            detail["escalated"] = True
            logger.error("📞 %s escalated after repeated dispatch failures", record.id)
        return DispatchedAction(record.id, action, "failed", now, descriptor.key, detail)

    def _after_send(self, record: ConversationRecord, action: Action, descriptor: PromptDescriptor,
                    now: datetime, *, sent: bool) -> None:
        if sent:
            record.append_history(Actor.SYSTEM, descriptor.text, now)
        if action == Action.REMIND:
            if descriptor.key.startswith("reminder_"):
                record.attempts += 1
            record.next_reminder_at = now + self.timings.reminder_interval
        elif action == Action.ESCALATE:
            record.finish(Stage.ESCALATED, Status.ESCALATED, Outcome.ESCALATED_NO_RESPONSE, now)
            record.last_prompt_kind = None
        else:
            continuation.ask(record, now, self.timings.continuation_window)


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------
def run_forever(runner: Any, stop_event: threading.Event, interval_seconds: float = 60.0) -> None:
    """Call ``runner.tick()`` every ``interval_seconds`` until ``stop_event`` is set."""
    logger.info("🚀 Sweep loop started (every %ss)", interval_seconds)
    while not stop_event.is_set():
        try:
            runner.tick()
        except Exception as exc:
            logger.error("❌ Sweep tick crashed: %s", exc, exc_info=exc)
        stop_event.wait(interval_seconds)
    logger.info("👋 Sweep loop stopped")
