import json
import sqlite3

import pytest

import sse_broadcast
import webhook_handlers
import whoop_client

WEBHOOK_URL = "/api/webhooks/whoop"


class FakeWriter:
    def __init__(self):
        self.chunks = []
        self.closed = False

    def write(self, chunk):
        self.chunks.append(chunk)

    def close(self):
        self.closed = True


@pytest.fixture
def integration(conn):
    conn.execute(
        """
        INSERT INTO user_integrations (user_id, provider, external_user_id, access_token, is_active)
        VALUES ('user_1', 'whoop', '10129', 'token-abc', 1)
        """
    )
    conn.commit()


@pytest.fixture
def whoop_api(monkeypatch):
    """Replace the WHOOP API with canned entities keyed by entity name."""
    calls = []
    entities = {
        "workout": {
            "id": "w-1",
            "start": "2026-10-18T10:00:00.000Z",
            "end": "2026-10-18T11:00:00.000Z",
            "timezone_offset": "+00:00",
            "sport_name": "weightlifting",
            "score_state": "SCORED",
            "score": {"strain": 12.1},
        },
        "recovery": {
            "cycle_id": 93845,
            "created_at": "2026-10-18T07:00:00.000Z",
            "score": {
                "recovery_score": 64,
                "resting_heart_rate": 55,
                "hrv_rmssd_milli": 48.2,
            },
        },
        "sleep": {
            "start": "2026-10-17T22:30:00.000Z",
            "end": "2026-10-18T06:30:00.000Z",
            "score": {"sleep_performance_percentage": 88, "stage_summary": {"disturbance_count": 3}},
        },
    }

    def fake_fetch(access_token, entity, entity_id, timeout=10):
        calls.append((access_token, entity, entity_id))
        return entities[entity]

    monkeypatch.setattr(whoop_client, "fetch_entity", fake_fetch)
    return calls


def _post(client, body, headers):
    return client.post(WEBHOOK_URL, data=body, headers=headers)


def test_get_reports_active(client):
    resp = client.get(WEBHOOK_URL)
    assert resp.status_code == 200
    assert resp.get_json()["message"] == "Whoop webhook endpoint is active"


def test_missing_headers_rejected(client, webhook_body):
    resp = client.post(WEBHOOK_URL, data=webhook_body(), content_type="application/json")
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Invalid webhook headers"}


def test_bad_signature_rejected(client, webhook_body, signed_headers):
    headers = signed_headers(webhook_body(), secret="wrong-secret")
    resp = _post(client, webhook_body(), headers)
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "Invalid signature"}


def test_invalid_json_rejected(client, signed_headers):
    body = "not json at all"
    resp = _post(client, body, signed_headers(body))
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Invalid JSON payload"}


def test_payload_missing_fields_rejected(client, signed_headers):
    body = json.dumps({"id": "x"})
    resp = _post(client, body, signed_headers(body))
    assert resp.status_code == 400


def test_test_user_workout_is_stored_without_broadcast(client, conn, webhook_body, signed_headers, monkeypatch):
    def no_api(*args, **kwargs):
        raise AssertionError("test user must not hit the WHOOP API")

    monkeypatch.setattr(whoop_client, "fetch_entity", no_api)
    writer = FakeWriter()
    sse_broadcast.add_connection(whoop_client.TEST_DB_USER_ID, writer)

    body = webhook_body("workout.updated", user_id=12345, entity_id="test-workout")
    resp = _post(client, body, signed_headers(body))

    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "message": "workout.updated processed successfully"}
    row = conn.execute("SELECT * FROM external_workouts_whoop WHERE whoop_workout_id = 'test-workout'").fetchone()
    assert row["user_id"] == whoop_client.TEST_DB_USER_ID
    assert row["sport_name"] == "TEST WORKOUT"
    assert writer.chunks == []

    event = conn.execute("SELECT status, processing_time_ms FROM webhook_events").fetchone()
    assert event["status"] == "processed"
    assert event["processing_time_ms"] is not None


def test_workout_update_is_broadcast(client, conn, integration, whoop_api, webhook_body, signed_headers):
    writer = FakeWriter()
    sse_broadcast.add_connection("user_1", writer)

    body = webhook_body("workout.updated", user_id=10129, entity_id="w-1")
    resp = _post(client, body, signed_headers(body))

    assert resp.status_code == 200
    assert whoop_api == [("token-abc", "workout", "w-1")]
    assert len(writer.chunks) == 1
    event = json.loads(writer.chunks[0].decode()[len("data: "):])
    assert event["type"] == "workout-updated"
    assert event["workout"]["id"] == "w-1"


def test_repeated_delivery_upserts(client, conn, integration, whoop_api, webhook_body, signed_headers):
    body = webhook_body("workout.updated", user_id=10129, entity_id="w-1")
    _post(client, body, signed_headers(body))
    _post(client, body, signed_headers(body))
    count = conn.execute("SELECT COUNT(*) FROM external_workouts_whoop").fetchone()[0]
    assert count == 1


def test_recovery_and_sleep_updates(client, conn, integration, whoop_api, webhook_body, signed_headers):
    for event_type, entity_id in (("recovery.updated", "r-1"), ("sleep.updated", "s-1")):
        body = webhook_body(event_type, user_id=10129, entity_id=entity_id)
        assert _post(client, body, signed_headers(body)).status_code == 200

    recovery = conn.execute("SELECT * FROM whoop_recovery").fetchone()
    assert recovery["user_id"] == "user_1"
    assert recovery["recovery_score"] == 64
    assert recovery["date"] == "2026-10-18"
    sleep = conn.execute("SELECT * FROM whoop_sleep").fetchone()
    assert sleep["sleep_performance_percentage"] == 88
    assert sleep["disturbance_count"] == 3


def test_unknown_event_type_is_ignored(client, conn, webhook_body, signed_headers):
    body = webhook_body("team.updated", user_id=10129)
    resp = _post(client, body, signed_headers(body))
    assert resp.status_code == 200
    assert resp.get_json()["message"] == "Event type not processed"
    assert conn.execute("SELECT status FROM webhook_events").fetchone()["status"] == "ignored"


def test_handler_failure_returns_500(client, conn, webhook_body, signed_headers, monkeypatch):
    def explode(db, payload):
        raise RuntimeError("boom")

    monkeypatch.setitem(webhook_handlers.HANDLERS, "cycle.updated", explode)
    body = webhook_body("cycle.updated", user_id=10129)
    resp = _post(client, body, signed_headers(body))

    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Internal server error"}
    event = conn.execute("SELECT status, error FROM webhook_events").fetchone()
    assert event["status"] == "failed"
    assert event["error"] == "boom"


def test_missing_integration_is_not_fatal(client, conn, webhook_body, signed_headers):
    body = webhook_body("recovery.updated", user_id=777)
    resp = _post(client, body, signed_headers(body))
    assert resp.status_code == 200
    assert conn.execute("SELECT COUNT(*) FROM whoop_recovery").fetchone()[0] == 0


def test_event_log_failure_does_not_fail_delivery(client, conn, webhook_body, signed_headers, monkeypatch):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(webhook_handlers, "mark_event", locked)

    body = webhook_body("workout.updated", user_id=12345, entity_id="locked-workout")
    resp = _post(client, body, signed_headers(body))
    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "message": "workout.updated processed successfully"}
    row = conn.execute("SELECT * FROM external_workouts_whoop WHERE whoop_workout_id = 'locked-workout'").fetchone()
    assert row is not None

    body = webhook_body("team.updated", user_id=10129)
    resp = _post(client, body, signed_headers(body))
    assert resp.status_code == 200
    assert resp.get_json()["message"] == "Event type not processed"
