import dataclasses
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure project root is on sys.path for the top-level modules
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep tests away from real services regardless of the developer's .env
for _name in ("WHATSAPP_GATEWAY_URL", "OPEN_AI_KEY", "DATABASE_URL", "GATEWAY_WEBHOOK_TOKEN"):
    os.environ[_name] = ""
os.environ["STORE_BACKEND"] = "firebase"

from transcript_store import Turn  # noqa: E402
from whatsapp_session import WhatsAppSession  # noqa: E402


class FakeStore:
    def __init__(self, records: Optional[Dict[str, List[Turn]]] = None, fail_for: Optional[set] = None):
        self.records: Dict[str, List[Turn]] = records or {}
        self.fail_for = fail_for or set()
        self.saves: List[tuple] = []
        self.loads: List[str] = []

    @property
    def backend(self) -> str:
        return "fake"

    def load(self, user_id: str) -> List[Turn]:
        self.loads.append(user_id)
        return [Turn(t.role, t.content) for t in self.records.get(user_id, [])]

    def save(self, user_id: str, transcript: List[Turn]) -> None:
        if user_id in self.fail_for:
            raise RuntimeError(f"store down for {user_id}")
        self.saves.append((user_id, [Turn(t.role, t.content) for t in transcript]))
        self.records[user_id] = [Turn(t.role, t.content) for t in transcript]


class FakeCompleter:
    enabled = True

    def __init__(self, reply: str = "Sure, happy to help.", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.calls: List[List[Turn]] = []

    def complete(self, transcript: List[Turn]) -> str:
        self.calls.append([Turn(t.role, t.content) for t in transcript])
        if self.error:
            raise self.error
        return self.reply


class RecordingSession(WhatsAppSession):
    """WhatsAppSession whose sends are captured instead of hitting a gateway."""

    def __init__(self, fail_for: Optional[set] = None):
        super().__init__(None, "test")
        self.sent: List[Dict[str, Any]] = []
        self.fail_for = fail_for or set()

    def send(self, recipient_id: str, text: str, reply_to: Optional[str] = None) -> None:
        if recipient_id in self.fail_for:
            raise RuntimeError(f"send failed for {recipient_id}")
        self.sent.append({"to": recipient_id, "text": text, "reply_to": reply_to})


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        return self._payload

    def raise_for_status(self):
        import requests

        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeHttp:
    def __init__(self, get_response: Optional[FakeResponse] = None, post_response: Optional[FakeResponse] = None, put_response: Optional[FakeResponse] = None):
        self.get_response = get_response or FakeResponse(200, None)
        self.post_response = post_response or FakeResponse(201, {})
        self.put_response = put_response or FakeResponse(200, {})
        self.calls: List[Dict[str, Any]] = []

    def get(self, url, **kwargs):
        self.calls.append({"method": "GET", "url": url, **kwargs})
        return self.get_response

    def post(self, url, **kwargs):
        self.calls.append({"method": "POST", "url": url, **kwargs})
        return self.post_response

    def put(self, url, **kwargs):
        self.calls.append({"method": "PUT", "url": url, **kwargs})
        return self.put_response


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def completer():
    return FakeCompleter()


@pytest.fixture
def session():
    return RecordingSession()


@pytest.fixture
def services(monkeypatch, tmp_path, store, completer, session):
    import whatsgpt

    settings = dataclasses.replace(
        whatsgpt.get_settings(),
        upload_dir=str(tmp_path / "uploads"),
        pairing_timeout_seconds=0.2,
        webhook_token=None,
    )
    built = whatsgpt.build_services(settings, store=store, completer=completer, session=session)
    monkeypatch.setattr(whatsgpt.app.state, "services", built)
    return built
