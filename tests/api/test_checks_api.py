import json

import pytest
from fastapi.testclient import TestClient

from adlex_app.api.app import create_app
from adlex_app.api.errors import QueueError
from adlex_app.client import parse_sse_lines
from adlex_app.llm.config import LLMConfig
from adlex_app.llm.gateway import Gateway

TEXT = "このサプリメントで驚異的な効果を実感できます。"


@pytest.fixture
def client(engine, seeded):
    app = create_app(engine=engine, gateway=Gateway(LLMConfig()))
    with TestClient(app) as c:
        yield c


def _submit(client, user="user-1", **body):
    payload = {"organization_id": 1, "text": TEXT}
    payload.update(body)
    return client.post("/api/checks", json=payload, headers={"x-user-id": user})


def _events(resp):
    return [(event, json.loads(data)) for event, data in parse_sse_lines(resp.text.splitlines())]


def _wait(client, check_id, user="user-1"):
    resp = client.get(f"/api/checks/{check_id}/stream", headers={"x-user-id": user})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    return _events(resp)


def test_submit_and_follow_to_completion(client):
    r = _submit(client)
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "pending"
    assert body["message"] == "チェック処理をキューに追加しました"

    events = _wait(client, body["check_id"])
    assert events[-1][0] == "completed"
    assert events[-1][1]["check_id"] == body["check_id"]

    check = client.get(f"/api/checks/{body['check_id']}", headers={"x-user-id": "user-1"}).json()
    assert check["status"] == "completed"
    assert check["modified_text"] and check["modified_text"] != TEXT
    assert check["completed_at"]
    assert check["violations"]
    for v in check["violations"]:
        assert 0 <= v["start_pos"] < v["end_pos"] <= len(TEXT)
    assert any("効果" in TEXT[v["start_pos"] : v["end_pos"]] for v in check["violations"])


def test_stream_accepts_user_id_query_param(client):
    check_id = _submit(client).json()["check_id"]
    resp = client.get(f"/api/checks/{check_id}/stream", params={"user_id": "user-1"})
    assert _events(resp)[-1][0] == "completed"


def test_camel_case_body_is_accepted(client):
    r = client.post(
        "/api/checks",
        json={"organizationId": 1, "text": TEXT, "inputType": "text"},
        headers={"x-user-id": "user-1"},
    )
    assert r.status_code == 201


def test_missing_user_is_401(client):
    r = client.post("/api/checks", json={"organization_id": 1, "text": TEXT})
    assert r.status_code == 401
    assert r.headers["content-type"].startswith("application/problem+json")
    assert r.json()["code"] == "AUTHENTICATION_ERROR"
    assert _submit(client, user="ghost").status_code == 401


def test_other_organization_is_403(client):
    r = _submit(client, user="user-2")
    assert r.status_code == 403
    assert r.json()["code"] == "AUTHORIZATION_ERROR"


def test_text_too_long_is_400(client):
    r = _submit(client, text="あ" * 10_001)
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["detail"] == "テキストが長すぎます（最大10,000文字）"


def test_text_at_limit_is_accepted(client):
    assert _submit(client, text="あ" * 10_000).status_code == 201


def test_blank_text_is_400(client):
    r = _submit(client, text="   ")
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"


def test_malformed_body_is_validation_error(client):
    r = client.post("/api/checks", json={"text": TEXT}, headers={"x-user-id": "user-1"})
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert "organization_id" in body["extra"]["fields"]


def test_queue_failure_marks_check_failed(client, monkeypatch):
    def reject(*a, **kw):
        raise QueueError("full")

    monkeypatch.setattr(client.app.state.queue, "enqueue", reject)
    r = _submit(client)
    assert r.status_code == 503
    body = r.json()
    assert body["code"] == "QUEUE_ERROR"
    check_id = body["extra"]["check_id"]

    check = client.get(f"/api/checks/{check_id}", headers={"x-user-id": "user-1"}).json()
    assert check["status"] == "failed"
    assert check["error_message"] == "キュー追加に失敗しました"

    events = _wait(client, check_id)
    assert [e for e, _ in events] == ["failed"]


def test_unexpected_enqueue_error_still_fails_check(client, monkeypatch):
    def broken(*a, **kw):
        raise RuntimeError("queue state corrupted")

    monkeypatch.setattr(client.app.state.queue, "enqueue", broken)
    r = _submit(client)
    assert r.status_code == 503
    body = r.json()
    assert body["code"] == "QUEUE_ERROR"

    check = client.get(f"/api/checks/{body['extra']['check_id']}", headers={"x-user-id": "user-1"}).json()
    assert check["status"] == "failed"
    assert check["error_message"] == "キュー追加に失敗しました"


def test_unknown_check_is_404(client):
    r = client.get("/api/checks/9999", headers={"x-user-id": "user-1"})
    assert r.status_code == 404
    assert r.json()["code"] == "NOT_FOUND"


def test_read_access_rules(client):
    check_id = _submit(client).json()["check_id"]
    _wait(client, check_id)
    assert client.get(f"/api/checks/{check_id}", headers={"x-user-id": "user-3"}).status_code == 403
    assert client.get(f"/api/checks/{check_id}", headers={"x-user-id": "user-2"}).status_code == 403
    assert client.get(f"/api/checks/{check_id}", headers={"x-user-id": "admin-1"}).status_code == 200
    stream = client.get(f"/api/checks/{check_id}/stream", headers={"x-user-id": "user-3"})
    assert stream.status_code == 403


def test_delete_hides_check(client):
    check_id = _submit(client).json()["check_id"]
    _wait(client, check_id)
    assert client.delete(f"/api/checks/{check_id}", headers={"x-user-id": "user-1"}).status_code == 204
    assert client.get(f"/api/checks/{check_id}", headers={"x-user-id": "user-1"}).status_code == 404


def test_queue_status(client):
    body = client.get("/api/queue/status").json()
    assert body["running"] is True
    assert body["max_concurrent"] == 3
    assert body["max_size"] == 1000
    assert body["queue_length"] >= 0


def test_health_and_llm_status(client):
    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["provider"] == "mock"
    assert health["queue_running"] is True

    llm = client.get("/api/llm/status").json()
    assert llm["provider"] == "mock"
    assert llm["issues"] == []
