# intake/prompts.py
"""
Prompt composer: turns a prompt key + conversation record into the literal
WhatsApp text (and optional content-template reference) to send.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Optional

from .guards import CLAIM_TYPES, SEVERITY_BANDS
from .models import ConversationRecord, PromptKind, Stage
from .stage_machine import STAGE_PLAN

# -------------------------------
# Dialogue texts
# -------------------------------
KEYCAPS = {
    1: "1️⃣", 2: "2️⃣", 3: "3️⃣", 4: "4️⃣", 5: "5️⃣", 6: "6️⃣", 7: "7️⃣", 8: "8️⃣", 9: "9️⃣", 10: "🔟",
}


def _keycap(n: int) -> str:
    if n in KEYCAPS:
        return KEYCAPS[n]
    return "".join(KEYCAPS[int(d)] if d != "0" else "0️⃣" for d in str(n))


CLAIM_TYPE_MENU = "Indique la tipología del siniestro (marque una opción):\n\n" + "\n".join(
    f"{_keycap(n)} {label}" for n, label in CLAIM_TYPES.items()
)

SEVERITY_MENU = (
    "Para clasificar la gravedad aproximada del siniestro, indique el tramo que considera más adecuado:\n\n"
    + "\n".join(f"{_keycap(n)} {label}" for n, label in SEVERITY_BANDS.items())
)

ATTENDEE_MENU = "¿Quién atenderá al perito durante la visita?\n\n1️⃣ Yo (asegurado/a)\n2️⃣ Otra persona"

APPOINTMENT_MENU = "¿Qué tipo de cita prefiere?\n\n1️⃣ Presencial\n2️⃣ Telemática"

ASK_CORRECTIONS = (
    "De acuerdo. Por favor, indíquenos los datos corregidos en un solo mensaje.\n\n"
    "Ejemplo:\n- Dirección: ...\n- Fecha de ocurrencia: ...\n- Nombre del asegurado: ..."
)

OTHER_PERSON_REQUEST = (
    "Por favor, indíquenos:\n\n"
    "· Nombre y apellidos\n· Teléfono de contacto\n· Relación con el siniestro (inquilino/a, familiar, etc.)"
)

DATE_REQUEST = 'Por favor, indique la fecha que mejor le convenga (por ejemplo: 15/01/2026 o "martes por la tarde").'
DATE_REQUEST_PRESENCIAL = "Cita únicamente disponible presencialmente, por favor indique la fecha que mejor le convenga."

WRONG_PERSON_CLOSE = "Disculpe las molestias. Un saludo."
PRESENCIAL_FORCED_CLOSE = (
    "Por la gravedad indicada, la cita será presencial. "
    "El perito se pondrá en contacto con usted para coordinar la visita. Un saludo."
)
CONTINUATION_QUESTION = "¿Sigue ahí? ¿Desea continuar con la conversación?\n\nResponda Sí o No."
CONTINUATION_REPEAT = 'Por favor, responda "Sí" o "No" para continuar la conversación.'
ADMIN_OFFER = (
    "No he podido entender su respuesta. "
    "¿Desea que le atienda una persona del equipo de administración?\n\nResponda Sí o No."
)
ADMIN_OFFER_REPEAT = 'Por favor, responda "Sí" o "No".'
ADMIN_HANDOFF = "Administración se pondrá en contacto con usted. Un saludo."
ESCALATION = "Debido a que no hemos recibido respuesta, se procederá a la llamada por parte del perito.\n\nUn saludo."
FINISHED = "Gracias por su tiempo. La conversación ha finalizado."
NOT_UNDERSTOOD = "No he entendido su respuesta. Por favor, responda según las opciones indicadas."

REMINDER_LINES = {
    1: "Hola de nuevo. ¿Ha podido revisar nuestro mensaje anterior?",
    2: "Le recordamos que necesitamos su respuesta para continuar con la gestión del siniestro.",
    3: "Último recordatorio: si no recibimos respuesta, el perito le llamará directamente.",
}


# -------------------------------
# Helpers
# -------------------------------
def _field(record: ConversationRecord, *names: str, default: str = "") -> str:
    for name in names:
        value = record.fields.get(name)
        if value not in (None, ""):
            return str(value)
    return default


def _initial(record: ConversationRecord) -> str:
    nombre = _field(record, "corrected_name", "nombre", "name")
    direccion = _field(record, "corrected_address", "direccion", "address", default="la dirección indicada")
    fecha = _field(record, "corrected_date", "fecha", "incident_date", default="la fecha indicada")
    saludo = f"Hola {nombre}." if nombre else "Hola."
    return (
        f"{saludo} Le escribimos en relación con el siniestro declarado en {direccion} con fecha {fecha}.\n\n"
        "¿Es usted el asegurado/a y son correctos estos datos?\n\n"
        "1️⃣ Sí, soy el asegurado/a y los datos son correctos\n"
        "2️⃣ No soy el asegurado/a\n"
        "3️⃣ Ahora no puedo atender\n"
        "4️⃣ Hay algún error en los datos"
    )


def _confirm_corrections(record: ConversationRecord) -> str:
    texto = _field(record, "corrected_text", default="(sin datos)")
    return f"Perfecto. Estos son los datos corregidos que nos ha indicado:\n\n{texto}\n\n¿Son correctos?\n\nResponda:\n- Sí\n- No"


def _summary(record: ConversationRecord) -> str:
    claim_type = record.fields.get("claim_type")
    band = record.fields.get("severity_band")
    modo = "Presencial" if record.fields.get("appointment_mode") == "presencial" else "Telemática"
    tipologia = f"Opción {claim_type}" if claim_type else "(sin tipología)"
    gravedad = f"Tramo {band}" if band else "No aplica"
    fecha = _field(record, "preferred_date", default="(sin fecha)")
    return (
        "✅ Resumen de datos:\n\n"
        f"- Tipología: {tipologia}\n"
        f"- Gravedad: {gravedad}\n"
        f"- Tipo de cita: {modo}\n"
        f"- Fecha propuesta: {fecha}\n\n"
        "Muchas gracias. El perito se pondrá en contacto con el asegurado para coordinar la visita."
    )


def _snooze_ack(hours: int) -> Callable[[ConversationRecord], str]:
    return lambda record: f"Sin problema, entendemos que está ocupado/a. Le volveremos a contactar en {hours} horas."


# -------------------------------
# Descriptor
# -------------------------------
@dataclass
class PromptDescriptor:
    kind: Optional[PromptKind]
    key: str
    text: str
    template_sid: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value if self.kind else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PromptDescriptor":
        kind = data.get("kind")
        return cls(
            kind=PromptKind(kind) if kind else None,
            key=str(data.get("key") or ""),
            text=str(data.get("text") or ""),
            template_sid=data.get("template_sid") or None,
            variables=dict(data.get("variables") or {}),
        )


# -------------------------------
# Composer
# -------------------------------
class Composer:
    """Stateless text generator; owned by the engine, configured once."""

    def __init__(
        self,
        *,
        initial_template_sid: Optional[str] = None,
        continuation_template_sid: Optional[str] = None,
        snooze_hours: int = 6,
    ):
        self.initial_template_sid = initial_template_sid
        self.continuation_template_sid = continuation_template_sid
        self.templates: Dict[str, Callable[[ConversationRecord], str]] = {
            "initial": _initial,
            "ask_corrections": lambda r: ASK_CORRECTIONS,
            "confirm_corrections": _confirm_corrections,
            "attendee_menu": lambda r: ATTENDEE_MENU,
            "other_person_request": lambda r: OTHER_PERSON_REQUEST,
            "claim_type_menu": lambda r: CLAIM_TYPE_MENU,
            "severity_menu": lambda r: SEVERITY_MENU,
            "appointment_menu": lambda r: APPOINTMENT_MENU,
            "date_request": lambda r: DATE_REQUEST,
            "date_request_presencial": lambda r: DATE_REQUEST_PRESENCIAL,
            "summary": _summary,
            "snooze_ack": _snooze_ack(snooze_hours),
            "wrong_person_close": lambda r: WRONG_PERSON_CLOSE,
            "presencial_forced_close": lambda r: PRESENCIAL_FORCED_CLOSE,
            "continuation_question": lambda r: CONTINUATION_QUESTION,
            "continuation_repeat": lambda r: CONTINUATION_REPEAT,
            "admin_offer": lambda r: ADMIN_OFFER,
            "admin_offer_repeat": lambda r: ADMIN_OFFER_REPEAT,
            "admin_handoff": lambda r: ADMIN_HANDOFF,
            "escalation": lambda r: ESCALATION,
            "finished": lambda r: FINISHED,
        }

    @classmethod
    def from_settings(cls, cfg) -> "Composer":
        return cls(
            initial_template_sid=cfg.INITIAL_TEMPLATE_SID,
            continuation_template_sid=cfg.CONTINUATION_TEMPLATE_SID,
            snooze_hours=max(1, round(cfg.SNOOZE_MINUTES / 60)),
        )

    def _kind_for(self, key: str) -> Optional[PromptKind]:
        for _, kind, stage_key in STAGE_PLAN.values():
            if stage_key == key:
                return kind
        if key == "date_request_presencial":
            return PromptKind.FREE_TEXT
        if key in ("continuation_question", "continuation_repeat", "admin_offer", "admin_offer_repeat"):
            return PromptKind.FIXED_CHOICE
        return None

    def compose(self, key: str, record: ConversationRecord, *, reprompt: bool = False) -> PromptDescriptor:
        render = self.templates.get(key)
        if render is None:
            return PromptDescriptor(kind=None, key="not_understood", text=NOT_UNDERSTOOD)
        text = render(record)
        if reprompt:
            text = f"No he entendido su respuesta.\n\n{text}"
        descriptor = PromptDescriptor(kind=self._kind_for(key), key=key, text=text)
        if key == "initial" and self.initial_template_sid and not reprompt:
            descriptor.template_sid = self.initial_template_sid
            descriptor.variables = {
                "1": _field(record, "corrected_name", "nombre", "name"),
                "2": _field(record, "corrected_address", "direccion", "address"),
                "3": _field(record, "corrected_date", "fecha", "incident_date"),
            }
        elif key == "continuation_question" and self.continuation_template_sid:
            descriptor.template_sid = self.continuation_template_sid
        return descriptor

    def for_stage(self, record: ConversationRecord, *, reprompt: bool = False) -> PromptDescriptor:
        """Outstanding prompt for the record's current stage."""
        if record.stage in (Stage.COMPLETED, Stage.ESCALATED):
            return self.compose("finished", record)
        _, _, key = STAGE_PLAN[record.stage]
        if record.stage == Stage.AWAITING_DATE and record.fields.get("appointment_mode") == "presencial" \
                and not record.fields.get("severity_band"):
            key = "date_request_presencial"
        return self.compose(key, record, reprompt=reprompt)

    def reminder(self, record: ConversationRecord, n: int) -> PromptDescriptor:
        """Outstanding prompt wrapped with a reminder line that firms up with ``n``."""
        base = self.for_stage(record)
        line = REMINDER_LINES.get(n) or REMINDER_LINES[max(REMINDER_LINES)]
        # template sends cannot carry a prefix, so reminders are always plain text
        return PromptDescriptor(kind=base.kind, key=f"reminder_{n}", text=f"{line}\n\n{base.text}")
