import types

import pytest
from fastapi.testclient import TestClient

from mail_scheduler.api import API_TOKEN_HEADER_NAME, create_app


API_TOKEN = "secret-token"

SCHEDULED_ROW = {
    "id": "sch1",
    "account_id": "a1",
    "to_email": "a@x.com",
    "cc": None,
    "bcc": None,
    "subject": "Later",
    "body_html": "<p>hi</p>",
    "attachments_json": None,
    "draft_id": None,
    "send_at": 1_700_000_000,
    "status": "failed",
    "retry_count": 3,
    "error_message": "SMTP send returned false",
    "created_at": "2024-01-01 00:00:00",
}


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.fail_with = None

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if self.fail_with is not None:
            return {"ok": False, "error": self.fail_with}
        if cmd == "run now":
            return {"ok": True, "started": True}
        if cmd == "listAccounts":
            return {"ok": True, "accounts": [{"id": "a1", "email": "me@x.com", "host": "smtp", "port": 25}]}
        if cmd == "snoozeEmail":
            return {
                "ok": True,
                "snoozed": {
                    "id": "s1",
                    "email_id": payload["email_id"],
                    "account_id": "a1",
                    "original_folder_id": "inbox",
                    "snooze_until": payload["snooze_until"],
                },
            }
        if cmd == "listSnoozed":
            return {"ok": True, "snoozed": []}
        if cmd in ("scheduleSend", "addReminder"):
            return {"ok": True, "id": payload.get("id", "generated")}
        if cmd == "listScheduledSends":
            return {"ok": True, "scheduled": [SCHEDULED_ROW]}
        if cmd == "listReminders":
            return {
                "ok": True,
                "reminders": [{"id": "r1", "email_id": "e1", "account_id": "a1", "remind_at": 5, "is_triggered": 0}],
            }
        return {"ok": True}


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    client = TestClient(create_app(None, api_token=API_TOKEN))
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_rejects_wrong_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/status", headers={API_TOKEN_HEADER_NAME: "nope"})
    assert response.status_code == 401


def test_no_token_configured_allows_requests():
    client = TestClient(create_app(DummyService()))
    assert client.get("/status").json() == {"ok": True}


def test_run_now_and_accounts(client_and_service):
    client, svc = client_and_service

    assert client.post("/commands/run-now").json() == {"ok": True, "started": True}

    account = {"id": "a1", "email": "me@x.com", "host": "smtp", "port": 25}
    assert client.post("/account", json=account).json() == {"ok": True}
    assert svc.calls[-1][0] == "addAccount"
    assert svc.calls[-1][1]["host"] == "smtp"

    accounts = client.get("/accounts").json()
    assert accounts["accounts"][0]["id"] == "a1"


def test_snooze_endpoints(client_and_service):
    client, svc = client_and_service

    response = client.post("/snooze", json={"email_id": "e1", "snooze_until": 100})
    assert response.status_code == 200
    assert response.json()["snoozed"]["original_folder_id"] == "inbox"
    assert svc.calls[-1] == ("snoozeEmail", {"email_id": "e1", "snooze_until": 100})

    assert client.post("/unsnooze", json={"email_id": "e1"}).json() == {"ok": True}
    assert client.get("/snoozed", params={"account_id": "a1"}).json() == {"ok": True, "snoozed": []}
    assert svc.calls[-1] == ("listSnoozed", {"account_id": "a1"})


def test_scheduled_send_endpoints(client_and_service):
    client, svc = client_and_service

    payload = {
        "account_id": "a1",
        "to": ["a@x.com"],
        "subject": "Later",
        "send_at": 1_700_000_000,
        "attachments": [{"filename": "a.txt", "content": "aGk=", "contentType": "text/plain"}],
    }
    assert client.post("/scheduled", json=payload).json() == {"ok": True, "id": "generated"}
    cmd, sent = svc.calls[-1]
    assert cmd == "scheduleSend"
    assert sent["attachments"] == [{"filename": "a.txt", "content": "aGk=", "contentType": "text/plain"}]
    assert "cc" not in sent

    listed = client.get("/scheduled", params={"status": "failed"}).json()
    assert listed["scheduled"][0]["error_message"] == "SMTP send returned false"
    assert svc.calls[-1] == ("listScheduledSends", {"account_id": None, "status": "failed"})

    assert client.get("/scheduled", params={"status": "bogus"}).status_code == 422

    assert client.patch("/scheduled/sch1", json={"subject": "Sooner"}).json() == {"ok": True}
    assert svc.calls[-1] == ("updateScheduledSend", {"subject": "Sooner", "id": "sch1"})

    assert client.delete("/scheduled/sch1").json() == {"ok": True}
    assert svc.calls[-1] == ("cancelScheduledSend", {"id": "sch1"})


def test_reminder_endpoints(client_and_service):
    client, svc = client_and_service

    payload = {"id": "r1", "email_id": "e1", "account_id": "a1", "remind_at": 5}
    assert client.post("/reminders", json=payload).json() == {"ok": True, "id": "r1"}

    listed = client.get("/reminders", params={"include_triggered": "true"}).json()
    assert listed["reminders"][0]["is_triggered"] is False
    assert svc.calls[-1] == ("listReminders", {"account_id": None, "include_triggered": True})

    assert client.delete("/reminders/r1").json() == {"ok": True}


def test_command_errors_map_to_http_status(client_and_service):
    client, svc = client_and_service
    svc.fail_with = "scheduled send not found or already in flight"

    response = client.delete("/scheduled/missing")
    assert response.status_code == 404
    assert response.json()["detail"] == "scheduled send not found or already in flight"

    response = client.post("/scheduled", json={"account_id": "a1", "to": "", "send_at": 1})
    assert response.status_code == 400


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.text == "metrics-data"


def test_update_rejects_null_send_at(client_and_service):
    client, svc = client_and_service
    calls_before = len(svc.calls)

    response = client.patch("/scheduled/sch1", json={"send_at": None})
    assert response.status_code == 400
    assert response.json()["detail"] == "send_at cannot be null"
    assert len(svc.calls) == calls_before
