# whatsapp_session.py
"""
WhatsApp Web session held through an HTTP gateway.

The gateway runs the browser-protocol client and exposes:
- POST {base}/api/sessions/start           start / resume pairing
- GET  {base}/api/{session}/auth/qr        current pairing code (format=raw)
- POST {base}/api/sendText                 send a text message
and pushes events ("session.status", "message") to our /webhook.

One WhatsAppSession is built at startup and handed to everything that needs it.
"""
from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger("whatsapp_session")

CHAT_SUFFIX = "@c.us"

QR_EVENT = "qr"
READY_EVENT = "ready"
MESSAGE_EVENT = "message"

Handler = Callable[[Any], None]


def to_chat_id(phone: str) -> str:
    return f"{phone}{CHAT_SUFFIX}"


def user_id_from_chat(chat_id: str) -> str:
    return chat_id.split("@", 1)[0]


@dataclass
class InboundMessage:
    chat_id: str
    body: str
    message_id: Optional[str] = None

    @property
    def user_id(self) -> str:
        return user_id_from_chat(self.chat_id)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "InboundMessage":
        return cls(chat_id=payload.get("from") or "", body=payload.get("body") or "", message_id=payload.get("id"))


class _PairingWaiter:
    def __init__(self):
        self._event = threading.Event()
        self.code: Optional[str] = None

    def __call__(self, code: str) -> None:
        self.code = code
        self._event.set()

    def wait(self, timeout: float) -> Optional[str]:
        self._event.wait(timeout)
        return self.code


class WhatsAppSession:
    def __init__(self, base_url: Optional[str], session_name: str = "default", api_key: Optional[str] = None, http: Optional[requests.Session] = None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.session_name = session_name
        self.api_key = api_key
        self.timeout = timeout
        self._http = http or requests.Session()
        self._handlers: Dict[str, List[Tuple[Handler, bool]]] = defaultdict(list)
        self._lock = threading.Lock()
        self._started = False
        self.latest_qr: Optional[str] = None
        self.ready = False

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    # --- events ---------------------------------------------------------

    def on(self, event: str, handler: Handler, once: bool = False) -> None:
        with self._lock:
            self._handlers[event].append((handler, once))

    def off(self, event: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[event] = [(h, once) for h, once in self._handlers[event] if h is not handler]

    def emit(self, event: str, payload: Any = None) -> None:
        with self._lock:
            registered = list(self._handlers[event])
            self._handlers[event] = [(h, once) for h, once in registered if not once]
        for handler, _ in registered:
            handler(payload)

    # --- gateway calls --------------------------------------------------

    def _url(self, path: str) -> str:
        if not self.base_url:
            raise RuntimeError("WHATSAPP_GATEWAY_URL is required to talk to WhatsApp.")
        return f"{self.base_url}{path}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        return headers

    def _post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        response = self._http.post(self._url(path), json=payload, headers=self._headers(), timeout=self.timeout)
        if not response.ok:
            logger.error("Gateway call %s failed - status=%s body=%s", path, response.status_code, response.text)
            response.raise_for_status()
        return response

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
        logger.info("Starting WhatsApp session %s", self.session_name)
        self._post("/api/sessions/start", {"name": self.session_name})

    def send(self, recipient_id: str, text: str, reply_to: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"session": self.session_name, "chatId": recipient_id, "text": text}
        if reply_to:
            payload["reply_to"] = reply_to
        self._post("/api/sendText", payload)

    def fetch_pairing_code(self) -> Optional[str]:
        response = self._http.get(self._url(f"/api/{self.session_name}/auth/qr"), params={"format": "raw"}, headers=self._headers(), timeout=self.timeout)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        try:
            data = response.json()
        except json.JSONDecodeError:
            return response.text or None
        return data.get("value") if isinstance(data, dict) else None

    # --- inbound events -------------------------------------------------

    def _publish_pairing_code(self) -> None:
        code = self.fetch_pairing_code()
        if code:
            self.latest_qr = code
            self.emit(QR_EVENT, code)

    def handle_gateway_event(self, body: Dict[str, Any]) -> str:
        """Translate one webhook body into session events; returns what was done."""
        event = body.get("event")
        payload = body.get("payload") or {}
        if event == "session.status":
            status = payload.get("status")
            if status == "SCAN_QR_CODE":
                self.ready = False
                self._publish_pairing_code()
                return "qr"
            if status == "WORKING":
                self.ready = True
                self.emit(READY_EVENT, payload)
                return "ready"
            logger.info("Session %s status %s", self.session_name, status)
            return "status"
        if event == QR_EVENT:
            code = payload.get("qr") or payload.get("value")
            if code:
                self.latest_qr = code
                self.emit(QR_EVENT, code)
                return "qr"
            return "ignored"
        if event == MESSAGE_EVENT:
            if payload.get("fromMe"):
                return "ignored"
            self.emit(MESSAGE_EVENT, InboundMessage.from_payload(payload))
            return "message"
        logger.debug("Ignoring gateway event %s", event)
        return "ignored"

    def wait_for_pairing_code(self, timeout: float) -> Optional[str]:
        waiter = _PairingWaiter()
        self.on(QR_EVENT, waiter, once=True)
        try:
            if self.enabled:
                try:
                    self._publish_pairing_code()
                except requests.RequestException as exc:
                    logger.warning("Could not fetch pairing code yet: %s", exc)
            return waiter.wait(timeout)
        finally:
            self.off(QR_EVENT, waiter)
