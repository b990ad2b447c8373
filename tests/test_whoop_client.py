import pytest
import requests

import whoop_client
from errors import WhoopApiError


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self.ok = status_code < 400
        self._body = body or {}
        self.text = text

    def json(self):
        return self._body


def test_fetch_entity_uses_v2_endpoint(monkeypatch):
    seen = {}

    def fake_get(url, headers=None, timeout=None):
        seen.update(url=url, headers=headers)
        return FakeResponse(body={"id": "r-1"})

    monkeypatch.setattr(whoop_client.requests, "get", fake_get)
    assert whoop_client.fetch_entity("tok", "recovery", "r-1") == {"id": "r-1"}
    assert seen["url"] == "https://whoop.test/developer/v2/recovery/r-1"
    assert seen["headers"]["Authorization"] == "Bearer tok"


def test_fetch_entity_raises_on_http_error(monkeypatch):
    monkeypatch.setattr(whoop_client.requests, "get",
                        lambda *a, **kw: FakeResponse(status_code=401, text="Unauthorized"))
    with pytest.raises(WhoopApiError) as excinfo:
        whoop_client.fetch_entity("tok", "sleep", "s-1")
    assert excinfo.value.status_code == 401


def test_fetch_entity_wraps_network_errors(monkeypatch):
    def offline(*args, **kwargs):
        raise requests.exceptions.ConnectionError("no route")

    monkeypatch.setattr(whoop_client.requests, "get", offline)
    with pytest.raises(WhoopApiError):
        whoop_client.fetch_entity("tok", "cycle", "c-1")


def test_fetch_whoop_data_fails_closed(conn, monkeypatch):
    monkeypatch.setattr(whoop_client.requests, "get",
                        lambda *a, **kw: FakeResponse(status_code=500, text="oops"))
    conn.execute(
        "INSERT INTO user_integrations (user_id, provider, external_user_id, access_token) "
        "VALUES ('user_1', 'whoop', '10129', 'tok')"
    )
    conn.commit()

    assert whoop_client.fetch_whoop_data(conn, "recovery", "r-1", 10129) is None
    assert whoop_client.fetch_whoop_data(conn, "recovery", "r-1", 99999) is None


def test_test_user_never_calls_api(conn, monkeypatch):
    def forbidden(*args, **kwargs):
        raise AssertionError("unexpected API call")

    monkeypatch.setattr(whoop_client.requests, "get", forbidden)
    assert whoop_client.fetch_whoop_data(conn, "sleep", "s-1", 12345) is None
    workout = whoop_client.fetch_workout(conn, "w-1", "12345")
    assert workout["sport_name"] == "TEST WORKOUT"
    assert workout["id"] == "w-1"


def test_inactive_integration_is_ignored(conn):
    conn.execute(
        "INSERT INTO user_integrations (user_id, provider, external_user_id, access_token, is_active) "
        "VALUES ('user_1', 'whoop', '10129', 'tok', 0)"
    )
    conn.commit()
    assert whoop_client.get_active_integration(conn, 10129) is None
