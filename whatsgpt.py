# whatsgpt.py
"""
WhatsGPT: a WhatsApp front-end for OpenAI chat completions.

- Inbound WhatsApp messages are answered from the sender's stored transcript.
- A CSV upload seeds a transcript per contact and sends each an opening message.
- Integrates with:
    - transcript_store (Firebase Realtime Database or DynamoDB)
    - whatsapp_session.WhatsAppSession (WhatsApp Web HTTP gateway)
    - completion.OpenAICompleter
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

from fastapi import FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse
from fastapi.concurrency import run_in_threadpool

from bulk_intake import BulkIntake, ContactListError, read_contacts
from completion import OpenAICompleter
from conversation import ReplyOrchestrator
from pages import bulk_sent_page, landing_page, pairing_page, pairing_timeout_page, print_terminal_qr
from settings import Settings, get_settings
from transcript_store import KeyedLocks, build_store
from whatsapp_session import MESSAGE_EVENT, QR_EVENT, READY_EVENT, WhatsAppSession

# --- Configuration & logging ---
settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("whatsgpt")

MISSING_UPLOAD_INPUT = "Please provide both CSV file and initial message"


@dataclass
class Services:
    settings: Settings
    store: Any
    completer: Any
    session: WhatsAppSession
    orchestrator: ReplyOrchestrator
    intake: BulkIntake


def _log_ready(_payload: Any) -> None:
    logger.info("WhatsApp client is ready!")


def build_services(settings: Settings, store: Any = None, completer: Any = None, session: Optional[WhatsAppSession] = None) -> Services:
    """Construct the long-lived collaborators once and wire the session events."""
    store = store if store is not None else build_store(settings)
    completer = completer if completer is not None else OpenAICompleter(settings.openai_api_key, settings.openai_model)
    session = session if session is not None else WhatsAppSession(settings.gateway_url, settings.session_name, settings.gateway_api_key)
    locks = KeyedLocks()
    orchestrator = ReplyOrchestrator(store, completer, session, locks)
    intake = BulkIntake(store, session, locks)

    session.on(QR_EVENT, print_terminal_qr)
    session.on(READY_EVENT, _log_ready)
    session.on(MESSAGE_EVENT, orchestrator.handle_message)
    return Services(settings=settings, store=store, completer=completer, session=session, orchestrator=orchestrator, intake=intake)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    if services.session.enabled:
        try:
            await run_in_threadpool(services.session.start)
        except Exception as exc:
            logger.error("WhatsApp session start failed: %s", exc)
    else:
        logger.warning("WHATSAPP_GATEWAY_URL not set; WhatsApp session not started")
    yield


app = FastAPI(title="WhatsGPT", version="1.0.0", lifespan=lifespan)
app.state.services = build_services(settings)


def _services(request: Request) -> Services:
    return request.app.state.services


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------

@app.get("/", response_class=HTMLResponse)
def index():
    return HTMLResponse(landing_page())

@app.post("/submit")
def submit(message: str = Form(...), phoneNumber: str = Form(...)):
    # routes match the decoded path, so a slash may only survive in the trailing segment
    phone = phoneNumber.replace("/", "")
    return RedirectResponse(f"/authenticate/{quote(phone, safe='')}/{quote(message, safe='')}", status_code=302)

@app.get("/authenticate/{phone_number}/{promt:path}", response_class=HTMLResponse)
def authenticate(phone_number: str, promt: str, request: Request):
    # phone_number and promt are accepted but pairing is per gateway session, not per number
    services = _services(request)
    timeout = services.settings.pairing_timeout_seconds
    code = services.session.wait_for_pairing_code(timeout)
    if not code:
        logger.warning("No pairing code within %ss", timeout)
        return HTMLResponse(pairing_timeout_page(timeout), status_code=504)
    return HTMLResponse(pairing_page(code))


# ---------------------------------------------------------------------------
# Bulk intake
# ---------------------------------------------------------------------------

def _spool_path(upload_dir: str) -> str:
    os.makedirs(upload_dir, exist_ok=True)
    fd, path = tempfile.mkstemp(dir=upload_dir, suffix=".csv")
    os.close(fd)
    return path

@app.post("/upload")
def upload(request: Request, csvFile: Optional[UploadFile] = File(default=None), initialMessage: Optional[str] = Form(default=None)):
    if csvFile is None or not csvFile.filename or not initialMessage:
        return PlainTextResponse(MISSING_UPLOAD_INPUT, status_code=400)

    services = _services(request)
    path = _spool_path(services.settings.upload_dir)
    try:
        with open(path, "wb") as spooled:
            shutil.copyfileobj(csvFile.file, spooled)
        contacts = read_contacts(path)
    except ContactListError as exc:
        logger.warning("Rejected contact list %s: %s", csvFile.filename, exc)
        return PlainTextResponse(f"Could not read CSV file: {exc}", status_code=400)
    finally:
        os.unlink(path)

    result = services.intake.run(contacts, initialMessage)
    if "application/json" in request.headers.get("accept", ""):
        return JSONResponse(result.summary())
    return HTMLResponse(bulk_sent_page(result))


# ---------------------------------------------------------------------------
# Gateway webhook
# ---------------------------------------------------------------------------

@app.post("/webhook")
def receive_webhook(payload: Dict[str, Any], request: Request, x_webhook_token: Optional[str] = Header(default=None)):
    services = _services(request)
    expected = services.settings.webhook_token
    if expected and x_webhook_token != expected:
        raise HTTPException(status_code=403, detail="Webhook token mismatch")
    outcome = services.session.handle_gateway_event(payload)
    return JSONResponse({"status": outcome})

@app.get("/healthz")
def healthcheck(request: Request):
    services = _services(request)
    return {
        "status": "ok",
        "store_backend": services.settings.store_backend,
        "firebase": services.settings.firebase.public_view(),
        "completion_enabled": services.completer.enabled,
        "gateway_enabled": services.session.enabled,
        "whatsapp_ready": services.session.ready,
    }


# ---------------------------------------------------------------------------
# Local runner
# ---------------------------------------------------------------------------

def run():
    import uvicorn
    uvicorn.run("whatsgpt:app", host="0.0.0.0", port=settings.port, reload=bool(int(os.environ.get("RELOAD", "0"))))

if __name__ == "__main__":
    run()
