# intake/engine.py
"""
🧠 Intake Engine
----------------
Explicitly constructed context that owns every collaborator:

  store · send window · classifier · composer · dispatcher · idempotency
  rules · sweep timings · clock

Entry points:
  handle_inbound(raw_identity, raw_text) → PromptDescriptor
  start_conversation(raw_identity, fields) → dict
  tick(now=None)                         → [DispatchedAction]

Inbound order inside one atomic upsert:
  create → history → lift snooze → continuation / admin offer answers
  → AdministrationOfferGuard → StageMachine → store outstanding prompt
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import continuation
from .admin_offer import RESUME, AdministrationOfferGuard
from .ai.classifier import OpenAIClassifier
from .config import Settings, settings
from .idempotency import IdempotencyStore, action_key
from .identity import normalize_identity
from .intent import Classification, Classifier, KeywordClassifier, with_text
from .models import Actor, ConversationRecord, Intent, PromptKind, Status
from .prompts import Composer, PromptDescriptor
from .runtime import get_logger, to_iso, utc_now
from .send_window import SendWindowPolicy
from .stage_machine import IntakeRules, accepts, apply_transition, transition
from .store import ConversationStore, build_store
from .sweep import DispatchedAction, SweepTimings, TimingSweep, next_due_at
from .transport import Dispatcher, build_dispatcher

logger = get_logger("engine")


class IntakeEngine:
    def __init__(
        self,
        store: ConversationStore,
        policy: SendWindowPolicy,
        classifier: Classifier,
        composer: Composer,
        dispatcher: Dispatcher,
        idempotency: IdempotencyStore,
        rules: IntakeRules,
        timings: SweepTimings,
        *,
        guard: Optional[AdministrationOfferGuard] = None,
        clock: Callable[[], datetime] = utc_now,
        workers: int = 4,
    ):
        self.store = store
        self.policy = policy
        self.classifier = classifier
        self.composer = composer
        self.dispatcher = dispatcher
        self.idempotency = idempotency
        self.rules = rules
        self.timings = timings
        self.guard = guard or AdministrationOfferGuard()
        self.clock = clock
        self.sweep = TimingSweep(
            store, policy, composer, dispatcher, idempotency, timings, clock=clock, workers=workers
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def _classify(self, text: str) -> Classification:
        try:
            return self.classifier.classify(text)
        except Exception as exc:
            logger.warning("Classifier failed, using guards only: %s", exc)
            return Classification(Intent.UNKNOWN, 0.0, with_text(text))

    def handle_inbound(self, raw_identity: Any, raw_text: Optional[str]) -> PromptDescriptor:
        """Process one received message and return the prompt to answer with."""
        identity = normalize_identity(raw_identity)
        text = (raw_text or "").strip()
        classification = self._classify(text)
        now = self.clock()
        reply: Dict[str, PromptDescriptor] = {}

        def mutate(current: Optional[ConversationRecord]) -> Optional[ConversationRecord]:
            if current is not None and current.is_terminal:
                reply["prompt"] = self.composer.compose("finished", current)
                return None

            record = current or ConversationRecord.new(identity, now)
            record.append_history(Actor.USER, text, now)
            record.inactivity_check_at = None
            descriptor, outstanding = self._respond(record, text, classification, now, created=current is None)
            if outstanding is not None:
                record.last_prompt = outstanding.to_dict()
            record.append_history(Actor.SYSTEM, descriptor.text, now)
            reply["prompt"] = descriptor
            return record

        self.store.upsert(identity, mutate)
        prompt = reply["prompt"]
        logger.info("📥 %s → %s", identity, prompt.key)
        return prompt

    def _respond(
        self,
        record: ConversationRecord,
        text: str,
        classification: Classification,
        now: datetime,
        *,
        created: bool,
    ) -> Tuple[PromptDescriptor, Optional[PromptDescriptor]]:
        """Mutate ``record`` for one reply; returns (reply prompt, new outstanding stage prompt or None)."""
        if record.status == Status.SNOOZED:
            record.status = record.snooze_return_status or Status.PENDING
            record.snooze_return_status = None
            record.snoozed_until = None
            logger.info("⏰ %s wrote back while snoozed; snooze lifted", record.id)

        if record.status == Status.AWAITING_CONTINUATION:
            answer = continuation.answer(record, text, now)
            if answer.action == "resume":
                saved = PromptDescriptor.from_dict(answer.prompt) if answer.prompt else None
                if saved is None or not saved.text:
                    saved = self.composer.for_stage(record)
                if record.status == Status.PENDING:
                    record.next_reminder_at = now + self.rules.reminder_interval
                return saved, saved
            key = "admin_handoff" if answer.action == "escalate" else "continuation_repeat"
            return self.composer.compose(key, record), None

        if record.status == Status.AWAITING_ADMIN_OFFER:
            offer = self.guard.answer(record, text, now, reminder_at=now + self.rules.reminder_interval)
            if offer.action == RESUME:
                prompt = self.composer.for_stage(record)
                return prompt, prompt
            return self.composer.compose(offer.prompt_key, record), None

        fields = dict(classification.extracted_fields)
        fields.setdefault("text", text)
        intent, confidence = classification.intent, classification.confidence

        if self.guard.should_fire(record, accepts(record, intent, fields, self.rules, confidence)):
            self.guard.fire(record, now)
            return self.composer.compose("admin_offer", record), None

        t = transition(record, intent, fields, self.rules, confidence)
        apply_transition(record, t, now, self.rules)
        logger.debug("↪️ %s: %s/%s intent=%s matched=%s", record.id, t.stage.value, t.status.value,
                     t.intent.value if t.intent else None, t.matched)

        if t.snooze:
            return self.composer.compose("snooze_ack", record), None
        if t.terminal:
            return self.composer.compose(t.prompt_key, record), None
        if not t.matched:
            prompt = self.composer.for_stage(record)
            if created:
                return prompt, prompt
            return self.composer.for_stage(record, reprompt=True), prompt
        prompt = self.composer.compose(t.prompt_key, record)
        return prompt, prompt

    # ------------------------------------------------------------------
    # Outbound-initiated contact
    # ------------------------------------------------------------------
    def start_conversation(self, raw_identity: Any, fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Create (or reset) a record at initial/pending and send the opening prompt."""
        identity = normalize_identity(raw_identity)
        now = self.clock()
        result: Dict[str, Any] = {"identity": identity, "dispatched": False, "deferred_until": None}

        def mutate(current: Optional[ConversationRecord]) -> ConversationRecord:
            record = ConversationRecord.new(identity, now)
            record.fields = {k: v for k, v in (fields or {}).items() if v not in (None, "")}
            record.last_prompt_kind = PromptKind.FIXED_CHOICE
            descriptor = self.composer.compose("initial", record)
            record.last_prompt = descriptor.to_dict()
            result["prompt_key"] = descriptor.key

            opening = self.policy.defer(now)
            if opening is not None:
                record.next_reminder_at = opening
                result["deferred_until"] = to_iso(opening)
                logger.info("⏸️ Initial prompt for %s deferred to %s", identity, to_iso(opening))
                return record

            key = action_key("initial", identity, to_iso(now))
            if not self.idempotency.claim(key):
                record.next_reminder_at = now + self.rules.reminder_interval
                return record
            try:
                self.dispatcher.dispatch(identity, descriptor)
            except Exception as exc:
                self.idempotency.release(key)
                record.dispatch_failures += 1
                record.next_reminder_at = now + self.rules.reminder_interval
                result["error"] = str(exc)
                logger.error("❌ Initial prompt to %s failed: %s", identity, exc)
                return record

            record.append_history(Actor.SYSTEM, descriptor.text, now)
            record.next_reminder_at = now + self.rules.reminder_interval
            result["dispatched"] = True
            return record

        record = self.store.upsert(identity, mutate)
        result["version"] = record.version if record is not None else None
        return result

    # ------------------------------------------------------------------
    # Timers & admin
    # ------------------------------------------------------------------
    def tick(self, now: Optional[datetime] = None) -> List[DispatchedAction]:
        return self.sweep.tick(now)

    def get(self, raw_identity: Any) -> Optional[ConversationRecord]:
        return self.store.get(raw_identity)

    def reset(self, raw_identity: Any) -> bool:
        return self.store.delete(raw_identity)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------
def build_classifier(cfg: Settings) -> Classifier:
    if cfg.OPENAI_API_KEY:
        return OpenAIClassifier.from_settings(cfg)
    logger.info("🤖 OPENAI_API_KEY not set; keyword classifier only")
    return KeywordClassifier()


def build_engine(cfg: Optional[Settings] = None, **overrides: Any) -> IntakeEngine:
    """Wire production collaborators from Settings; keyword overrides replace any of them."""
    cfg = cfg or settings()
    timings = overrides.pop("timings", None) or SweepTimings.from_settings(cfg)
    parts: Dict[str, Any] = {
        "store": overrides.pop("store", None) or build_store(cfg, due_at=lambda rec: next_due_at(rec, timings)),
        "policy": overrides.pop("policy", None) or SendWindowPolicy.from_settings(cfg),
        "classifier": overrides.pop("classifier", None) or build_classifier(cfg),
        "composer": overrides.pop("composer", None) or Composer.from_settings(cfg),
        "dispatcher": overrides.pop("dispatcher", None) or build_dispatcher(cfg),
        "idempotency": overrides.pop("idempotency", None) or IdempotencyStore.from_settings(cfg),
        "rules": overrides.pop("rules", None) or IntakeRules.from_settings(cfg),
        "timings": timings,
    }
    guard = overrides.pop("guard", None) or AdministrationOfferGuard(cfg.MAX_UNPARSED_REPLIES)
    workers = overrides.pop("workers", cfg.SWEEP_WORKERS)
    return IntakeEngine(guard=guard, workers=workers, **parts, **overrides)
