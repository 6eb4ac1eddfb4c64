"""
💬 WhatsApp Claim Intake: HTTP service
- POST /webhook           inbound WhatsApp messages (form or JSON), TwiML reply
- POST /conversations     start an outbound-initiated conversation (CRON_TOKEN)
- GET  /conversations/{identity}  inspect a record (CRON_TOKEN)
- POST /tick              run one sweep tick now (CRON_TOKEN)
- Sweep loop runs in a background thread owned by the app lifespan
"""

from __future__ import annotations

import asyncio
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from xml.sax.saxutils import escape

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from .config import settings
from .engine import IntakeEngine, build_engine
from .errors import InvalidIdentity
from .runtime import _log_core_env, get_logger, iso_now, parse_iso
from .sweep import run_forever

logger = get_logger("main")

TEMPORARY_ERROR = "Estamos teniendo un problema técnico. Por favor, vuelva a escribirnos en unos minutos."


# ─────────────────────────── Request models ───────────────────────────
class StartConversationRequest(BaseModel):
    identity: str
    address: Optional[str] = None
    date: Optional[str] = None
    name: Optional[str] = None
    fields: Dict[str, Any] = Field(default_factory=dict)

    def claim_fields(self) -> Dict[str, Any]:
        out = dict(self.fields)
        for key, value in (("direccion", self.address), ("fecha", self.date), ("nombre", self.name)):
            if value:
                out[key] = value
        return out


# ─────────────────────────── Auth helpers ───────────────────────────
def _extract_token(request: Request, qp_token: Optional[str], *headers: Optional[str]) -> str:
    if qp_token:
        return qp_token
    for value in headers:
        if value:
            return value
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1]
    return ""


def require_cron(
    request: Request,
    token: Optional[str] = Query(default=None),
    x_cron_token: Optional[str] = Header(default=None),
) -> None:
    """Require CRON_TOKEN in header, query, or bearer token."""
    expected = settings().CRON_TOKEN
    if not expected:
        return
    if _extract_token(request, token, x_cron_token) != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_webhook(
    request: Request,
    token: Optional[str] = Query(default=None),
    x_webhook_token: Optional[str] = Header(default=None),
) -> None:
    expected = settings().WEBHOOK_TOKEN
    if not expected:
        return  # auth disabled
    if _extract_token(request, token, x_webhook_token) != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


# ─────────────────────────── Body parsing ───────────────────────────
async def _parse_body(request: Request) -> Dict[str, Any]:
    """Parse request body supporting both JSON and form data."""
    content_type = request.headers.get("content-type", "").lower()
    try:
        if "application/json" in content_type:
            body = await request.json()
            return dict(body) if isinstance(body, dict) else {}
        form = await request.form()
        return {k: (v if isinstance(v, str) else str(v)) for k, v in dict(form).items()}
    except Exception as exc:
        logger.warning("⚠️ Failed to parse request body: %s", exc)
        raise HTTPException(status_code=422, detail="Invalid payload")


def twiml(text: str) -> Response:
    body = f'<?xml version="1.0" encoding="UTF-8"?><Response><Message>{escape(text)}</Message></Response>'
    return Response(content=body, media_type="application/xml")


# ─────────────────────────── App factory ───────────────────────────
def create_app(engine: Optional[IntakeEngine] = None, *, run_sweep: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _log_core_env()
        if app.state.engine is None:
            app.state.engine = build_engine()
        stop = threading.Event()
        worker = None
        if run_sweep and settings().TICK_SECONDS > 0:
            worker = threading.Thread(
                target=run_forever,
                args=(app.state.engine, stop, settings().TICK_SECONDS),
                name="intake-sweep",
                daemon=True,
            )
            worker.start()
        try:
            yield
        finally:
            stop.set()
            if worker is not None:
                worker.join(timeout=5)

    app = FastAPI(title="WhatsApp Claim Intake", version="1.0.0", lifespan=lifespan)
    app.state.engine = engine

    def _engine(request: Request) -> IntakeEngine:
        if request.app.state.engine is None:
            request.app.state.engine = build_engine()
        return request.app.state.engine

    # ─────────────── Health ───────────────
    @app.get("/")
    async def root(request: Request):
        eng = _engine(request)
        return {"ok": True, "service": "intake", "time": iso_now(), "send_window_open": eng.policy.is_within_window(eng.clock())}

    # ─────────────── Inbound ───────────────
    @app.post("/webhook", dependencies=[Depends(require_webhook)])
    async def webhook(request: Request):
        data = await _parse_body(request)
        sender = data.get("From") or data.get("from")
        body = data.get("Body") or data.get("body") or ""
        try:
            prompt = await asyncio.to_thread(_engine(request).handle_inbound, sender, body)
        except InvalidIdentity as exc:
            logger.warning("🚫 Rejected inbound from %r: %s", sender, exc.reason)
            raise HTTPException(status_code=422, detail=str(exc))
        except Exception as exc:
            # provider redelivers on non-2xx
            logger.error("❌ Inbound from %r failed: %s", sender, exc, exc_info=exc)
            return twiml(TEMPORARY_ERROR)
        return twiml(prompt.text)

    # ─────────────── Conversations ───────────────
    @app.post("/conversations", dependencies=[Depends(require_cron)])
    async def start_conversation(payload: StartConversationRequest, request: Request):
        try:
            result = await asyncio.to_thread(_engine(request).start_conversation, payload.identity, payload.claim_fields())
        except InvalidIdentity as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return {"ok": True, **result}

    @app.get("/conversations/{identity}", dependencies=[Depends(require_cron)])
    async def show_conversation(identity: str, request: Request):
        try:
            record = await asyncio.to_thread(_engine(request).get, identity)
        except InvalidIdentity as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        if record is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return record.to_dict()

    # ─────────────── Sweep ───────────────
    @app.post("/tick", dependencies=[Depends(require_cron)])
    async def tick(request: Request, now: Optional[str] = Query(default=None)):
        at = parse_iso(now) if now else None
        if now and at is None:
            raise HTTPException(status_code=422, detail="now must be an ISO-8601 timestamp")
        actions = await asyncio.to_thread(_engine(request).tick, at)
        return {"ok": True, "count": len(actions), "actions": [a.to_dict() for a in actions]}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("intake.main:app", host="0.0.0.0", port=8000)
