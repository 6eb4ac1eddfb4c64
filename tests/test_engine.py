from datetime import timedelta

import pytest

from conftest import T0
from intake.config import load_settings
from intake.engine import build_classifier, build_engine
from intake.errors import InvalidIdentity
from intake.intent import KeywordClassifier
from intake.models import Actor, ConversationRecord, Outcome, PromptKind, Stage, Status
from intake.transport import RecordingDispatcher

ID = "whatsapp:+34600112233"
CLAIM = {"nombre": "Ana Ruiz", "direccion": "Calle Mayor 1, Madrid", "fecha": "02/03/2026"}


def _started(make_engine, **overrides):
    engine = make_engine(**overrides)
    result = engine.start_conversation("+34 600 112 233", CLAIM)
    assert result["dispatched"] is True
    return engine


# ---------------------------------------------------------------------------
# start_conversation
# ---------------------------------------------------------------------------
def test_start_conversation_sends_initial_prompt(make_engine):
    engine = make_engine()
    result = engine.start_conversation("+34 600 112 233", CLAIM)
    assert result == {
        "identity": ID,
        "dispatched": True,
        "deferred_until": None,
        "prompt_key": "initial",
        "version": 1,
    }
    rec = engine.get(ID)
    assert (rec.stage, rec.status, rec.last_prompt_kind) == (Stage.INITIAL, Status.PENDING, PromptKind.FIXED_CHOICE)
    assert rec.next_reminder_at == T0 + timedelta(hours=6)
    assert rec.fields["nombre"] == "Ana Ruiz"
    identity, descriptor = engine.dispatcher.sent[0]
    assert identity == ID
    assert "Calle Mayor 1, Madrid" in descriptor.text


def test_start_conversation_resets_an_existing_record(make_engine, clock):
    engine = _started(make_engine)
    engine.handle_inbound(ID, "sí")
    clock.advance(minutes=30)
    engine.start_conversation(ID, {"nombre": "Ana Ruiz", "direccion": ""})
    rec = engine.get(ID)
    assert rec.stage == Stage.INITIAL
    assert rec.fields == {"nombre": "Ana Ruiz"}
    assert [h.actor for h in rec.history] == ["system"]


def test_start_conversation_failure_is_recorded(make_engine):
    engine = make_engine(dispatcher=RecordingDispatcher(fail=True))
    result = engine.start_conversation(ID, CLAIM)
    assert result["dispatched"] is False
    assert "simulated transport outage" in result["error"]
    rec = engine.get(ID)
    assert rec.dispatch_failures == 1
    assert rec.history == []
    assert rec.next_reminder_at == T0 + timedelta(hours=6)


# ---------------------------------------------------------------------------
# Inbound dialogue
# ---------------------------------------------------------------------------
def test_confirmation_moves_to_attendee_select(make_engine):
    engine = _started(make_engine)
    reply = engine.handle_inbound("+34600112233", "Sí")
    assert reply.key == "attendee_menu"
    rec = engine.get(ID)
    assert (rec.stage, rec.status, rec.last_prompt_kind) == (Stage.ATTENDEE_SELECT, Status.AWAITING_ATTENDEE, PromptKind.FIXED_CHOICE)
    assert rec.next_reminder_at is None
    assert rec.last_prompt["key"] == "attendee_menu"
    assert [h.actor for h in rec.history] == ["system", "user", "system"]
    assert rec.last_user_message_at == T0


def test_full_dialogue_to_summary(make_engine, clock):
    engine = _started(make_engine)
    keys = []
    for text in ["1", "yo mismo", "5", "2", "telemática", "15/01/2026"]:
        clock.advance(minutes=2)
        keys.append(engine.handle_inbound(ID, text).key)
    assert keys == ["attendee_menu", "claim_type_menu", "severity_menu", "appointment_menu", "date_request", "summary"]

    rec = engine.get(ID)
    assert (rec.stage, rec.status, rec.outcome) == (Stage.COMPLETED, Status.COMPLETED, Outcome.COMPLETED)
    assert rec.fields["claim_type"] == 5
    assert rec.fields["severity_band"] == 2
    assert rec.fields["appointment_mode"] == "telematica"
    assert rec.fields["preferred_date"] == "15/01/2026"
    assert "Tramo 2" in rec.history[-1].text
    assert engine.tick(clock() + timedelta(days=2)) == []


def test_presencial_claim_type_skips_severity(make_engine):
    engine = _started(make_engine)
    engine.handle_inbound(ID, "1")
    engine.handle_inbound(ID, "1")
    reply = engine.handle_inbound(ID, "16")
    assert reply.key == "date_request_presencial"
    assert engine.get(ID).stage == Stage.AWAITING_DATE


def test_wrong_person_closes_conversation(make_engine):
    engine = _started(make_engine)
    reply = engine.handle_inbound(ID, "No soy yo")
    assert reply.key == "wrong_person_close"
    rec = engine.get(ID)
    assert rec.outcome == Outcome.WRONG_PERSON
    assert rec.next_reminder_at is None


def test_terminal_record_only_answers_finished(make_engine):
    engine = _started(make_engine)
    engine.handle_inbound(ID, "No soy yo")
    before = engine.get(ID)
    reply = engine.handle_inbound(ID, "hola?")
    assert reply.key == "finished"
    after = engine.get(ID)
    assert after.version == before.version
    assert len(after.history) == len(before.history)


def test_first_message_from_unknown_number_gets_the_opening_prompt(make_engine):
    engine = make_engine()
    reply = engine.handle_inbound(ID, "hola")
    assert reply.key == "initial"
    assert not reply.text.startswith("No he entendido")
    rec = engine.get(ID)
    assert (rec.stage, rec.status) == (Stage.INITIAL, Status.PENDING)
    assert rec.next_reminder_at == T0 + timedelta(hours=6)
    assert rec.last_prompt_kind == PromptKind.FIXED_CHOICE


def test_unmatched_free_text_reply_reprompts(make_engine):
    engine = _started(make_engine)
    engine.handle_inbound(ID, "1")
    engine.handle_inbound(ID, "2")
    reply = engine.handle_inbound(ID, "Juan")
    assert reply.key == "other_person_request"
    assert reply.text.startswith("No he entendido")
    rec = engine.get(ID)
    assert rec.unparsed_count == 1
    assert rec.status == Status.RESPONDED


def test_invalid_identity_is_rejected(make_engine):
    engine = make_engine()
    with pytest.raises(InvalidIdentity):
        engine.handle_inbound("hola", "sí")
    assert engine.store.all() == []


def test_classifier_failure_falls_back_to_guards(make_engine):
    class Broken:
        def classify(self, text):
            raise RuntimeError("model down")

    engine = _started(make_engine, classifier=Broken())
    assert engine.handle_inbound(ID, "1").key == "attendee_menu"


# ---------------------------------------------------------------------------
# Administration offer
# ---------------------------------------------------------------------------
def test_unparsed_fixed_choice_reply_offers_administration(make_engine):
    engine = _started(make_engine)
    engine.handle_inbound(ID, "sí")
    reply = engine.handle_inbound(ID, "necesito ayuda")
    assert reply.key == "admin_offer"
    rec = engine.get(ID)
    assert rec.status == Status.AWAITING_ADMIN_OFFER
    assert rec.stage == Stage.ATTENDEE_SELECT

    reply = engine.handle_inbound(ID, "no")
    assert reply.key == "attendee_menu"
    rec = engine.get(ID)
    assert (rec.stage, rec.status) == (Stage.ATTENDEE_SELECT, Status.AWAITING_ATTENDEE)
    assert rec.admin_offer_return is None


def test_accepting_the_offer_escalates(make_engine):
    engine = _started(make_engine)
    engine.handle_inbound(ID, "¿de qué va esto?")
    assert engine.get(ID).status == Status.AWAITING_ADMIN_OFFER
    assert engine.handle_inbound(ID, "quizás").key == "admin_offer_repeat"
    reply = engine.handle_inbound(ID, "sí")
    assert reply.key == "admin_handoff"
    rec = engine.get(ID)
    assert (rec.status, rec.outcome) == (Status.ESCALATED, Outcome.ESCALATED_BY_USER)


def test_declining_offer_at_initial_rearms_reminder(make_engine, clock):
    engine = _started(make_engine)
    clock.advance(minutes=10)
    engine.handle_inbound(ID, "¿de qué va esto?")
    assert engine.get(ID).next_reminder_at is None
    engine.handle_inbound(ID, "no")
    rec = engine.get(ID)
    assert rec.status == Status.PENDING
    assert rec.next_reminder_at == clock() + timedelta(hours=6)


# ---------------------------------------------------------------------------
# Snooze and continuation
# ---------------------------------------------------------------------------
def test_busy_snoozes_and_any_reply_lifts_it(make_engine, clock):
    engine = _started(make_engine)
    reply = engine.handle_inbound(ID, "ahora no puedo, estoy trabajando")
    assert reply.key == "snooze_ack"
    rec = engine.get(ID)
    assert rec.status == Status.SNOOZED
    assert rec.snoozed_until == T0 + timedelta(hours=6)
    assert rec.next_reminder_at is None

    clock.advance(hours=1)
    reply = engine.handle_inbound(ID, "sí, ya puedo")
    assert reply.key == "attendee_menu"
    rec = engine.get(ID)
    assert rec.snoozed_until is None
    assert rec.status == Status.AWAITING_ATTENDEE


def _quiet_at_date(engine):
    rec = ConversationRecord.new(ID, T0 - timedelta(hours=3))
    rec.append_history(Actor.SYSTEM, "Por favor, indique la fecha", T0 - timedelta(hours=3))
    rec.append_history(Actor.USER, "vale", T0 - timedelta(hours=2))
    rec.stage = Stage.AWAITING_DATE
    rec.status = Status.RESPONDED
    rec.last_prompt_kind = PromptKind.FREE_TEXT
    rec.last_prompt = {"kind": "free_text", "key": "date_request", "text": "Por favor, indique la fecha", "template_sid": None, "variables": {}}
    engine.store.upsert(ID, lambda _: rec)
    engine.tick(T0)
    assert engine.get(ID).status == Status.AWAITING_CONTINUATION


def test_continuation_yes_resends_saved_prompt(make_engine, clock):
    engine = make_engine()
    _quiet_at_date(engine)
    clock.advance(minutes=10)
    reply = engine.handle_inbound(ID, "Sí")
    assert (reply.key, reply.text) == ("date_request", "Por favor, indique la fecha")
    rec = engine.get(ID)
    assert (rec.stage, rec.status, rec.last_prompt_kind) == (Stage.AWAITING_DATE, Status.RESPONDED, PromptKind.FREE_TEXT)
    assert rec.waiting_modes() == []
    assert rec.continuation_return is None


def test_continuation_no_escalates(make_engine):
    engine = make_engine()
    _quiet_at_date(engine)
    reply = engine.handle_inbound(ID, "no")
    assert reply.key == "admin_handoff"
    rec = engine.get(ID)
    assert (rec.stage, rec.outcome) == (Stage.ESCALATED, Outcome.ESCALATED_BY_USER)


def test_continuation_other_reply_repeats_question(make_engine):
    engine = make_engine()
    _quiet_at_date(engine)
    reply = engine.handle_inbound(ID, "el lunes")
    assert reply.key == "continuation_repeat"
    rec = engine.get(ID)
    assert rec.status == Status.AWAITING_CONTINUATION
    assert rec.continuation_timeout_at == T0 + timedelta(hours=1)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------
def test_build_classifier_without_key_is_keyword():
    assert isinstance(build_classifier(load_settings()), KeywordClassifier)


def test_build_engine_from_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("CONVERSATIONS_FILE", str(tmp_path / "store.json"))
    monkeypatch.setenv("MAX_UNPARSED_REPLIES", "2")
    monkeypatch.setenv("TRANSPORT_DRY_RUN", "true")
    engine = build_engine(load_settings(), dispatcher=RecordingDispatcher())
    assert engine.guard.max_unparsed == 2
    assert isinstance(engine.dispatcher, RecordingDispatcher)
    engine.start_conversation(ID, CLAIM)
    assert engine.get(ID) is not None


def test_reset_deletes_the_record(make_engine):
    engine = _started(make_engine)
    assert engine.reset(ID) is True
    assert engine.get(ID) is None
    assert engine.reset(ID) is False
