import os
import threading

from fastapi.testclient import TestClient

from conftest import FakeStore, RecordingSession
from transcript_store import Turn
from whatsgpt import app

CSV = (
    "phone_number,firstname,lastname,company_name\n"
    "+1 (555) 123-4567,Ada,Lovelace,Engines Ltd\n"
    "+44 20 7946 0000,Alan,Turing,Bletchley\n"
    "555-0100,Grace,Hopper,Navy\n"
)


def _upload(client, csv_text=CSV, message="Hi there!", headers=None):
    files = {"csvFile": ("contacts.csv", csv_text.encode("utf-8"), "text/csv")} if csv_text is not None else None
    data = {"initialMessage": message} if message is not None else {}
    return client.post("/upload", files=files, data=data, headers=headers or {})


def test_index_page(services):
    r = TestClient(app).get("/")
    assert r.status_code == 200
    assert 'action="/upload"' in r.text


def test_submit_redirects_to_authenticate(services):
    r = TestClient(app).post("/submit", data={"message": "hello there", "phoneNumber": "15551234567"}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/authenticate/15551234567/hello%20there"


def test_upload_seeds_and_sends_every_row(services, store, session):
    r = _upload(TestClient(app))

    assert r.status_code == 200, r.text
    assert "sent to 3 contacts" in r.text
    assert [user_id for user_id, _ in store.saves] == ["15551234567", "442079460000", "5550100"]
    assert all(transcript == [Turn("system", "Hi there!")] for _, transcript in store.saves)
    assert [s["to"] for s in session.sent] == ["15551234567@c.us", "442079460000@c.us", "5550100@c.us"]
    assert session.sent[0]["text"] == "Hello Ada Lovelace from Engines Ltd, Hi there!"
    assert "Alan Turing from Bletchley" in session.sent[1]["text"]


def test_upload_reports_attempted_count_despite_failures(services, session):
    session.fail_for.add("442079460000@c.us")
    r = _upload(TestClient(app))
    assert r.status_code == 200
    assert "sent to 3 contacts" in r.text
    assert "442079460000" in r.text
    assert len(session.sent) == 2


def test_upload_json_summary(services, store):
    store.fail_for.add("5550100")
    r = _upload(TestClient(app), headers={"Accept": "application/json"})
    body = r.json()
    assert body["attempted"] == 3
    assert body["sent"] == 2
    assert body["rows"][2] == {"phone": "5550100", "ok": False, "error": "store down for 5550100"}


def test_upload_missing_file_is_rejected(services, store, session):
    r = _upload(TestClient(app), csv_text=None)
    assert r.status_code == 400
    assert r.text == "Please provide both CSV file and initial message"
    assert store.saves == [] and session.sent == []


def test_upload_missing_message_is_rejected(services, store, session):
    r = _upload(TestClient(app), message=None)
    assert r.status_code == 400
    assert store.saves == [] and session.sent == []


def test_upload_removes_spooled_file_even_when_decoding_fails(services, store):
    r = _upload(TestClient(app), csv_text="phone_number,firstname\n1,A\n")
    assert r.status_code == 400
    assert "Missing column" in r.text
    assert os.listdir(services.settings.upload_dir) == []
    assert store.saves == []


def test_upload_removes_spooled_file_after_success(services):
    _upload(TestClient(app))
    assert os.listdir(services.settings.upload_dir) == []


def test_authenticate_times_out_with_retry_page(services):
    r = TestClient(app).get("/authenticate/15551234567/hello")
    assert r.status_code == 504
    assert "retry" in r.text.lower()


def test_authenticate_renders_pairing_code(services, session):
    timer = threading.Timer(0.05, lambda: session.emit("qr", "2@pairing-code"))
    timer.start()
    try:
        r = TestClient(app).get("/authenticate/15551234567/hello")
    finally:
        timer.cancel()
    assert r.status_code == 200
    assert "data:image/svg+xml;base64," in r.text


def test_webhook_message_round_trip(services, store, session, completer):
    store.records["15551234567"] = [Turn("system", "Hi there!")]
    r = TestClient(app).post("/webhook", json={
        "event": "message",
        "payload": {"from": "15551234567@c.us", "body": "Tell me more", "id": "m-9"},
    })
    assert r.status_code == 200
    assert r.json() == {"status": "message"}
    assert store.records["15551234567"][-2:] == [Turn("user", "Tell me more"), Turn("system", completer.reply)]
    assert session.sent[-1] == {"to": "15551234567@c.us", "text": completer.reply, "reply_to": "m-9"}


def test_webhook_message_failure_is_server_error(services, store):
    store.fail_for.add("1")
    client = TestClient(app, raise_server_exceptions=False)
    r = client.post("/webhook", json={"event": "message", "payload": {"from": "1@c.us", "body": "hi"}})
    assert r.status_code == 500


def test_webhook_token_is_enforced(monkeypatch, services):
    import dataclasses

    monkeypatch.setattr(services, "settings", dataclasses.replace(services.settings, webhook_token="s3cret"))
    client = TestClient(app)
    assert client.post("/webhook", json={"event": "noop"}).status_code == 403
    ok = client.post("/webhook", json={"event": "noop"}, headers={"X-Webhook-Token": "s3cret"})
    assert ok.json() == {"status": "ignored"}


def test_healthz(services):
    body = TestClient(app).get("/healthz").json()
    assert body["status"] == "ok"
    assert body["completion_enabled"] is True
    assert body["gateway_enabled"] is False


def test_prompt_with_slash_reaches_pairing_view(services, session):
    client = TestClient(app)
    r = client.post("/submit", data={"message": "yes/no", "phoneNumber": "1555/1"}, follow_redirects=False)
    assert r.headers["location"] == "/authenticate/15551/yes%2Fno"

    timer = threading.Timer(0.05, lambda: session.emit("qr", "2@pairing-code"))
    timer.start()
    try:
        page = client.get(r.headers["location"])
    finally:
        timer.cancel()
    assert page.status_code == 200
    assert "QRCode Generated" in page.text


def test_orchestrator_and_bulk_seed_share_per_number_lock(services):
    assert services.orchestrator.locks is services.intake.locks


def test_bulk_seed_waits_for_inflight_reply_to_same_number(services, store, session):
    from bulk_intake import ContactRow
    from whatsapp_session import InboundMessage

    store.records["15551234567"] = [Turn("system", "old")]
    in_completion = threading.Event()
    release = threading.Event()
    original_complete = services.completer.complete

    def slow_complete(transcript):
        in_completion.set()
        release.wait(2)
        return original_complete(transcript)

    services.completer.complete = slow_complete
    replier = threading.Thread(target=services.orchestrator.handle_message, args=(InboundMessage("15551234567@c.us", "hi"),))
    replier.start()
    assert in_completion.wait(2)

    contact = ContactRow(phone_number="+1 (555) 123-4567", firstname="Ada", lastname="L", company_name="E")
    seeder = threading.Thread(target=services.intake.run, args=([contact], "Fresh start"))
    seeder.start()
    seeder.join(0.1)
    assert seeder.is_alive()
    assert store.saves == []

    release.set()
    replier.join(2)
    seeder.join(2)

    assert [transcript[-1].content for _, transcript in store.saves] == [services.completer.reply, "Fresh start"]
    assert store.records["15551234567"] == [Turn("system", "Fresh start")]


def test_spooled_upload_removed_when_copy_fails(monkeypatch, services):
    import whatsgpt

    def broken_copy(src, dst):
        dst.write(b"phone_number,")
        raise OSError("disk full")

    monkeypatch.setattr(whatsgpt.shutil, "copyfileobj", broken_copy)
    r = _upload(TestClient(app, raise_server_exceptions=False))
    assert r.status_code == 500
    assert os.listdir(services.settings.upload_dir) == []
