import json
import time
import pytest
import importlib
from types import ModuleType

WEBHOOK_SECRET = "whsec_test_secret"


def _import_app_module():
    # Try common entry points in order
    candidates = ["app", "wsgi", "main"]
    last_err = None
    for name in candidates:
        try:
            return importlib.import_module(name)
        except Exception as e:
            last_err = e
    raise last_err or ImportError("Could not import app module (tried app.py, wsgi.py, main.py)")


@pytest.fixture(scope="session")
def flask_app():
    """
    Resolve a Flask app instance. Supports:
      - module-level `app = Flask(__name__)`
      - factory `create_app()`
    """
    mod: ModuleType = _import_app_module()
    app = getattr(mod, "app", None)
    if app is not None:
        return app
    factory = getattr(mod, "create_app", None)
    if callable(factory):
        return factory()
    raise RuntimeError("Neither `app` nor `create_app()` found in your entry module.")


@pytest.fixture(autouse=True)
def test_env(tmp_path, monkeypatch):
    """Set safe defaults for tests (no real secrets, no OpenAI calls)."""
    monkeypatch.setenv("FLASK_SECRET_KEY", "test_" + "a" * 64)
    monkeypatch.setenv("WHOOP_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("WHOOP_CLIENT_ID", "whoop-test-id")
    monkeypatch.setenv("WHOOP_CLIENT_SECRET", "whoop-test-secret")
    monkeypatch.setenv("WHOOP_API_BASE", "https://whoop.test/developer/v2")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("HEALTH_ADVICE_RATE_LIMIT", raising=False)
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    (tmp_path / "data").mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    (tmp_path / "logs").mkdir(parents=True, exist_ok=True)


@pytest.fixture(autouse=True)
def clean_connections():
    import sse_broadcast
    sse_broadcast.registry.clear()
    yield
    sse_broadcast.registry.clear()


@pytest.fixture
def client(flask_app):
    flask_app.testing = True
    return flask_app.test_client()


@pytest.fixture
def auth_client(client):
    with client.session_transaction() as sess:
        sess["user_id"] = "user_1"
    return client


@pytest.fixture
def conn():
    import db
    connection = db.connect()
    yield connection
    connection.close()


@pytest.fixture
def signed_headers():
    """Build valid WHOOP signature headers for a body."""
    from whoop_webhook import compute_signature

    def _sign(body, timestamp=None, secret=WEBHOOK_SECRET):
        ts = str(int(time.time() * 1000)) if timestamp is None else str(timestamp)
        return {
            "X-WHOOP-Signature": compute_signature(body, ts, secret),
            "X-WHOOP-Signature-Timestamp": ts,
            "Content-Type": "application/json",
        }
    return _sign


@pytest.fixture
def webhook_body():
    def _body(event_type="workout.updated", user_id=12345, entity_id="abc-123"):
        return json.dumps({"user_id": user_id, "id": entity_id, "type": event_type, "trace_id": "trace-1"})
    return _body
