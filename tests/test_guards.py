import pytest

from intake.guards import (
    accepted_intents,
    extract_claim_type,
    extract_severity_band,
    looks_like_date,
    match_guard,
    match_intent,
    normalize_text,
    parse_corrections,
    yes_no,
)
from intake.models import Intent, Stage


def test_normalize_text_strips_accents_and_emoji():
    assert normalize_text("  Sí, ¡Telemática! 👍 ") == "si telematica"
    assert normalize_text(None) == ""


@pytest.mark.parametrize(
    "text,expected",
    [
        ("1", Intent.CONFIRM),
        ("Sí, soy yo", Intent.CONFIRM),
        ("2", Intent.WRONG_PERSON),
        ("No soy el asegurado", Intent.WRONG_PERSON),
        ("3", Intent.BUSY),
        ("ahora no puedo, estoy trabajando", Intent.BUSY),
        ("4", Intent.CORRECTION),
        ("hay un error en la dirección", Intent.CORRECTION),
        ("los datos son incorrectos", Intent.CORRECTION),
        ("no", Intent.CORRECTION),
    ],
)
def test_initial_stage_guards(text, expected):
    assert match_guard(Stage.INITIAL, text).intent == expected


def test_initial_stage_rejects_noise():
    assert match_guard(Stage.INITIAL, "hola buenas") is None
    assert match_guard(Stage.INITIAL, "5") is None


@pytest.mark.parametrize(
    "stage,text,expected",
    [
        (Stage.CONFIRMING_CORRECTIONS, "sí", Intent.CONFIRM),
        (Stage.CONFIRMING_CORRECTIONS, "no", Intent.REJECT),
        (Stage.ATTENDEE_SELECT, "1", Intent.SELF),
        (Stage.ATTENDEE_SELECT, "yo mismo", Intent.SELF),
        (Stage.ATTENDEE_SELECT, "mi inquilino", Intent.OTHER),
        (Stage.APPOINTMENT_SELECT, "presencial", Intent.PRESENCIAL),
        (Stage.APPOINTMENT_SELECT, "2", Intent.TELEMATICA),
        (Stage.APPOINTMENT_SELECT, "por videollamada", Intent.TELEMATICA),
    ],
)
def test_menu_stage_guards(stage, text, expected):
    assert match_guard(stage, text).intent == expected


def test_correction_details_need_five_characters():
    assert match_guard(Stage.AWAITING_CORRECTIONS, "abc") is None
    hit = match_guard(Stage.AWAITING_CORRECTIONS, "Dirección: Calle Sol 3\nNombre: Ana Ruiz")
    assert hit.intent == Intent.DETAILS
    assert hit.fields["corrected_address"] == "Calle Sol 3"
    assert hit.fields["corrected_name"] == "Ana Ruiz"


def test_parse_corrections_falls_back_to_line_order():
    out = parse_corrections("Calle Luna 7\n12/01/2026\nPedro Gil")
    assert out["corrected_address"] == "Calle Luna 7"
    assert out["corrected_date"] == "12/01/2026"
    assert out["corrected_name"] == "Pedro Gil"
    assert out["corrected_text"].startswith("Calle Luna 7")


def test_other_person_details_extracts_phone():
    assert match_guard(Stage.OTHER_PERSON_DETAILS, "Juan") is None
    hit = match_guard(Stage.OTHER_PERSON_DETAILS, "Juan Pérez, 600 11 22 33, inquilino")
    assert hit.fields["other_person_phone"] == "600112233"


@pytest.mark.parametrize(
    "text,expected",
    [("5", 5), ("opción 16", 16), ("daños por agua", 5), ("se quemó la cocina, incendio", 7), ("99", None), ("nada", None)],
)
def test_extract_claim_type(text, expected):
    assert extract_claim_type(text) == expected


@pytest.mark.parametrize(
    "text,expected",
    [("2", 2), ("unos 300 euros", 1), ("1.800 €", 2), ("4.000", 3), ("10000", 4), ("más de 12.000", 5), ("20.000 €", 5), ("no sé", None)],
)
def test_extract_severity_band(text, expected):
    assert extract_severity_band(text) == expected


@pytest.mark.parametrize(
    "text", ["15/01/2026", "el martes por la tarde", "mañana a las 10", "3 de febrero", "cualquier dia"]
)
def test_looks_like_date(text):
    assert looks_like_date(text)


def test_not_a_date():
    assert not looks_like_date("cuando pueda")
    assert match_guard(Stage.AWAITING_DATE, "cuando pueda") is None
    assert match_guard(Stage.AWAITING_DATE, "el lunes").fields == {"preferred_date": "el lunes"}


@pytest.mark.parametrize(
    "text,expected",
    [("Sí", Intent.YES), ("vale, continuemos", Intent.YES), ("1", Intent.YES), ("No gracias", Intent.NO), ("2", Intent.NO), ("quizás", None)],
)
def test_yes_no(text, expected):
    assert yes_no(text) == expected


def test_match_intent_aliases_generic_labels():
    assert match_intent(Stage.INITIAL, Intent.YES, "claro que sí").intent == Intent.CONFIRM
    assert match_intent(Stage.CONFIRMING_CORRECTIONS, Intent.NO, "nope").intent == Intent.REJECT


def test_match_intent_value_classes_still_need_evidence():
    assert match_intent(Stage.CLAIM_TYPE, Intent.CLAIM_TYPE, "no lo sé") is None
    assert match_intent(Stage.CLAIM_TYPE, Intent.CLAIM_TYPE, "fue el viento").fields["claim_type"] == 8
    assert match_intent(Stage.ATTENDEE_SELECT, Intent.PRESENCIAL, "presencial") is None


def test_accepted_intents():
    assert accepted_intents(Stage.ATTENDEE_SELECT) == {Intent.SELF, Intent.OTHER}
    assert accepted_intents(Stage.COMPLETED) == frozenset()
