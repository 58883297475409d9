"""HTTP tests for the signed provider webhooks."""

from commhub.activity.models import ActivityKind
from commhub.core.config import reset_settings_cache
from commhub.interactions.models import CallState
from commhub.scheduling.models import TaskState
from commhub.webhooks.signature import SIGNATURE_HEADER, compute_signature

CUSTOMER = "+15551230000"
LINE = "+15559990000"
VOICE_URL = "https://hooks.example.com/api/webhooks/voice"


def _voice_params(call_sid: str = "CA1", **extra) -> dict:
    return {"CallSid": call_sid, "From": CUSTOMER, "To": LINE, "Direction": "inbound", **extra}


def _recording_params(status: str = "completed", url: str = "https://media.example.com/RE1"):
    return {
        "CallSid": "CA1",
        "RecordingSid": "RE1",
        "RecordingUrl": url,
        "RecordingStatus": status,
    }


def test_voice_webhook_answers_with_twiml(post_webhook, platform):
    resp = post_webhook("voice", _voice_params())

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/xml")
    assert "<Response>" in resp.text
    assert platform.interactions.get("CA1").state == CallState.RINGING.value


def test_unsigned_request_is_rejected_without_state_change(client, post_webhook, platform):
    resp = client.post("/api/webhooks/voice", data=_voice_params())
    assert resp.status_code == 401

    resp = post_webhook("voice", _voice_params(), token="wrong-token")
    assert resp.status_code == 401
    assert platform.interactions.get("CA1") is None


def test_signature_over_different_fields_is_rejected(client, platform):
    signed_for = _voice_params()
    signature = compute_signature("test-auth-token", VOICE_URL, signed_for.items())

    resp = client.post(
        "/api/webhooks/voice",
        data=_voice_params(From="+15550000000"),
        headers={SIGNATURE_HEADER: signature},
    )

    assert resp.status_code == 401
    assert platform.interactions.get("CA1") is None


def test_invalid_phone_number_is_a_bad_request(post_webhook, platform):
    resp = post_webhook("voice", _voice_params(From="not-a-phone"))
    assert resp.status_code == 400
    assert platform.interactions.get("CA1") is None


def test_missing_field_is_a_bad_request(post_webhook):
    resp = post_webhook("status", {"CallSid": "CA1"})
    assert resp.status_code == 400


def test_oversized_payload_is_refused(post_webhook, platform):
    params = {"MessageSid": "SM1", "From": CUSTOMER, "To": LINE, "Body": "x" * 5000}
    resp = post_webhook("message", params)
    assert resp.status_code == 413
    assert platform.interactions.list() == []


def test_status_callbacks_return_json_and_detect_duplicates(post_webhook, platform):
    post_webhook("voice", _voice_params())
    platform.runner.drain()

    params = {"CallSid": "CA1", "CallStatus": "completed", "CallDuration": "12"}
    first = post_webhook("status", params)
    assert first.status_code == 200
    assert first.json() == {
        "status": "transitioned",
        "interaction_id": "CA1",
        "event": "completed",
    }

    second = post_webhook("status", params)
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"
    assert len(platform.activity.list()) == 1


def test_status_for_unknown_call_is_acknowledged_as_orphan(post_webhook):
    resp = post_webhook("status", {"CallSid": "CA404", "CallStatus": "completed"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "orphan"


def test_unfinished_recording_is_ignored(post_webhook, platform):
    post_webhook("voice", _voice_params())
    resp = post_webhook("recording", _recording_params(status="in-progress"))

    assert resp.status_code == 200
    assert resp.json()["status"] == "ignored"
    assert platform.interactions.get("CA1").recording_url is None


def test_plain_http_recording_url_is_refused(post_webhook):
    post_webhook("voice", _voice_params())
    resp = post_webhook("recording", _recording_params(url="http://media.example.com/RE1"))
    assert resp.status_code == 400


def test_inbound_call_lifecycle(client, post_webhook, platform, clock, crm):
    crm.add_customer(CUSTOMER, "cust-1")
    resp = client.put(
        "/api/workers/W1",
        json={"skills": [], "max_concurrent_tasks": 1, "status": "available"},
    )
    assert resp.status_code == 200

    assert post_webhook("voice", _voice_params()).status_code == 200
    platform.runner.drain()

    tasks = client.get("/api/tasks").json()["items"]
    assert len(tasks) == 1
    task = tasks[0]
    assert task["state"] == TaskState.RESERVED.value
    assert task["worker_id"] == "W1"

    resp = client.post(f"/api/tasks/{task['id']}/accept", json={"worker_id": "W1"})
    assert resp.status_code == 200
    assert resp.json()["state"] == TaskState.ASSIGNED.value
    assert client.get("/api/interactions/CA1").json()["assigned_worker_id"] == "W1"

    post_webhook("status", {"CallSid": "CA1", "CallStatus": "in-progress"})
    assert platform.interactions.get("CA1").state == CallState.IN_PROGRESS.value

    post_webhook("status", {"CallSid": "CA1", "CallStatus": "completed", "CallDuration": "42"})
    resp = post_webhook("recording", _recording_params())
    assert resp.json()["status"] == "attached"

    call = client.get("/api/interactions/CA1").json()
    assert call["state"] == CallState.COMPLETED.value
    assert call["is_terminal"] is True
    assert call["duration_seconds"] == 42
    assert call["contact_id"] == "cust-1"

    clock.advance(5)
    platform.activity.process_due()
    assert crm.logged == [
        {
            "id": "CA1",
            "customerId": "cust-1",
            "type": "call",
            "direction": "inbound",
            "timestamp": "2024-03-04T15:00:00+00:00",
            "agentId": "W1",
            "status": "completed",
            "duration": 42,
            "recordingUrl": "https://media.example.com/RE1",
            "notes": f"CallSid: CA1, From: {CUSTOMER}, To: {LINE}",
        }
    ]
    assert platform.activity.get("CA1", ActivityKind.CALL).attempts == 1

    resp = client.post(f"/api/tasks/{task['id']}/complete", json={"worker_id": "W1"})
    assert resp.status_code == 200
    assert resp.json()["state"] == TaskState.COMPLETED.value
    assert client.get("/api/workers").json()[0]["active_task_count"] == 0


def test_inbound_message_returns_empty_twiml(post_webhook, platform):
    resp = post_webhook(
        "message",
        {
            "SmsSid": "SM1",
            "From": CUSTOMER,
            "To": LINE,
            "Body": "Is my order ready?",
            "NumMedia": "1",
            "MediaUrl0": "https://media.example.com/img.jpg",
        },
    )
    assert resp.status_code == 200
    assert "<Response>" in resp.text

    thread = platform.interactions.get(f"thread:{CUSTOMER}:{LINE}")
    assert thread.messages[0].sid == "SM1"
    assert thread.messages[0].media_urls == ["https://media.example.com/img.jpg"]


def test_webhooks_are_rate_limited(post_webhook, monkeypatch):
    monkeypatch.setenv("WEBHOOK_RATE_LIMIT", "2/minute")
    reset_settings_cache()
    headers = {"X-Forwarded-For": "4.4.4.4"}

    for call_sid in ("CA1", "CA2"):
        resp = post_webhook("voice", _voice_params(call_sid), headers)
        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "2"

    resp = post_webhook("voice", _voice_params("CA3"), headers)
    assert resp.status_code == 429

    other = post_webhook("voice", _voice_params("CA4"), {"X-Forwarded-For": "5.5.5.5"})
    assert other.status_code == 200
