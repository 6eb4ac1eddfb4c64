import json
from urllib.parse import parse_qs

import httpx
import pytest

from intake.config import load_settings
from intake.errors import TransportError
from intake.models import PromptKind
from intake.prompts import PromptDescriptor
from intake.transport import (
    LoggingDispatcher,
    RecordingDispatcher,
    TwilioDispatcher,
    build_dispatcher,
    build_payload,
)

TO = "whatsapp:+34600112233"
FROM = "+14155238886"


def _descriptor(**kw):
    base = dict(kind=PromptKind.FIXED_CHOICE, key="initial", text="Hola.")
    base.update(kw)
    return PromptDescriptor(**base)


def _dispatcher(handler, retries=0):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return TwilioDispatcher("AC123", "secret", FROM, client=client, retries=retries)


def test_build_payload_plain_body():
    payload = build_payload(TO, "whatsapp:+14155238886", _descriptor())
    assert payload == {"To": TO, "From": "whatsapp:+14155238886", "Body": "Hola."}


def test_build_payload_content_template():
    payload = build_payload(TO, "whatsapp:+14155238886", _descriptor(template_sid="HX1", variables={"1": "Ana"}))
    assert payload["ContentSid"] == "HX1"
    assert json.loads(payload["ContentVariables"]) == {"1": "Ana"}
    assert "Body" not in payload


def test_twilio_posts_form_to_messages_endpoint():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["form"] = parse_qs(request.content.decode())
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(201, json={"sid": "SM1", "status": "queued"})

    data = _dispatcher(handler).dispatch("+34 600 112 233", _descriptor())
    assert data["sid"] == "SM1"
    assert seen["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
    assert seen["form"]["To"] == [TO]
    assert seen["form"]["From"] == ["whatsapp:+14155238886"]
    assert seen["form"]["Body"] == ["Hola."]
    assert seen["auth"].startswith("Basic ")


def test_rate_limit_raises_transport_error():
    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "30"})

    with pytest.raises(TransportError) as err:
        _dispatcher(handler).dispatch(TO, _descriptor())
    assert err.value.status_code == 429


def test_http_error_carries_summary():
    def handler(request):
        return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

    with pytest.raises(TransportError, match="Invalid 'To' Phone Number"):
        _dispatcher(handler).dispatch(TO, _descriptor())


def test_connection_errors_are_retried_then_wrapped():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportError, match="request failed"):
        _dispatcher(handler, retries=0).dispatch(TO, _descriptor())
    assert len(calls) == 1


def test_connection_error_then_success():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(201, json={"sid": "SM2"})

    assert _dispatcher(handler, retries=1).dispatch(TO, _descriptor())["sid"] == "SM2"
    assert len(calls) == 2


def test_invalid_recipient_and_empty_body_fail_before_sending():
    def handler(request):  # pragma: no cover - must not be reached
        raise AssertionError("no request expected")

    dispatcher = _dispatcher(handler)
    with pytest.raises(TransportError, match="Invalid recipient"):
        dispatcher.dispatch("hola", _descriptor())
    with pytest.raises(TransportError, match="Body or ContentSid"):
        dispatcher.dispatch(TO, _descriptor(text="  "))
    with pytest.raises(TransportError, match="exceeds"):
        dispatcher.dispatch(TO, _descriptor(text="x" * 1601))


def test_missing_credentials_rejected():
    with pytest.raises(TransportError):
        TwilioDispatcher("", "secret", FROM)


def test_recording_dispatcher():
    rec = RecordingDispatcher()
    rec.dispatch(TO, _descriptor())
    assert rec.keys() == ["initial"]
    rec.fail = True
    with pytest.raises(TransportError):
        rec.dispatch(TO, _descriptor())


def test_build_dispatcher_dry_run_without_credentials(monkeypatch):
    for key in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_FROM_NUMBER", "TRANSPORT_DRY_RUN"):
        monkeypatch.delenv(key, raising=False)
    dispatcher = build_dispatcher(load_settings())
    assert isinstance(dispatcher, LoggingDispatcher)
    assert dispatcher.dispatch(TO, _descriptor())["status"] == "queued"


def test_build_dispatcher_with_credentials(monkeypatch):
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC999")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "tok")
    monkeypatch.setenv("TWILIO_FROM_NUMBER", FROM)
    monkeypatch.setenv("TRANSPORT_DRY_RUN", "false")
    monkeypatch.delenv("TEST_MODE", raising=False)
    dispatcher = build_dispatcher(load_settings())
    assert isinstance(dispatcher, TwilioDispatcher)
    assert dispatcher.url.endswith("/Accounts/AC999/Messages.json")
