"""
Tests for the HTTP command routes.

Tests cover:
- POST /subscribe and POST /unsubscribe, including verdict status codes
- GET /subscribers/{user_id} and GET /subscribers/{user_id}/verify
- POST /broadcast, GET /stats, GET /help
- Health, metrics and request id headers
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import RecordingNotifier, StaticProbe

from stampbot import main
from stampbot.main import app, get_notifier, get_probe
from stampbot.storage import Base, engine


@pytest.fixture
def probe() -> StaticProbe:
    return StaticProbe(status_code=200, latency_ms=87)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="function")
def client(probe, notifier):
    """Create test client with fresh database and probe/notifier doubles."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_probe] = lambda: probe
    app.dependency_overrides[get_notifier] = lambda: notifier

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


def subscribe(client, user_id: str, username: str = None):
    body = {"user_id": user_id}
    if username is not None:
        body["username"] = username
    response = client.post("/subscribe", json=body)
    assert response.status_code == 200
    return response.json()


class TestSubscribeRoute:
    """Test POST /subscribe."""

    def test_subscribe_success(self, client):
        data = subscribe(client, "42", "alice")

        assert data["status"] == "subscribed"
        assert data["verdict"]["verdict"] == "SUCCESS"
        assert data["verdict"]["label"] == "✓ SUCCESS"
        assert data["subscriber"]["user_id"] == "42"
        assert data["subscriber"]["username"] == "alice"
        assert data["subscriber"]["subscribed"] is True
        assert data["subscriber"]["created_at"].endswith("Z")

        proof = data["proof"]
        assert list(proof.keys()) == ["kind", "data", "timestamp", "signature"]
        assert proof["kind"] == "consent_verification"
        assert proof["data"]["token"] == data["subscriber"]["consent_token"]
        assert proof["data"]["ip_address"] == "testclient"

    def test_already_subscribed(self, client):
        subscribe(client, "42")
        data = subscribe(client, "42")

        assert data["status"] == "already_subscribed"
        assert data["proof"] is None
        assert data["verdict"] is None

    def test_blank_user_id_is_422(self, client):
        response = client.post("/subscribe", json={"user_id": "   "})
        assert response.status_code == 422

    def test_missing_user_id_is_422(self, client):
        response = client.post("/subscribe", json={"username": "alice"})
        assert response.status_code == 422


class TestUnsubscribeRoute:
    """Test POST /unsubscribe."""

    def test_unsubscribe_success(self, client):
        subscribe(client, "42")

        response = client.post("/unsubscribe", json={"user_id": "42"})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "unsubscribed"
        assert data["verdict"]["verdict"] == "SUCCESS"
        assert data["latency_ms"] == 87
        assert data["proof"]["kind"] == "unsubscribe_verification"
        assert data["proof"]["data"]["url"].startswith("https://")
        assert data["removed_at"].endswith("Z")

        status = client.get("/subscribers/42").json()
        assert status["subscriber"]["subscribed"] is False

    def test_unsubscribe_twice_is_404(self, client):
        subscribe(client, "42")
        assert client.post("/unsubscribe", json={"user_id": "42"}).status_code == 200

        response = client.post("/unsubscribe", json={"user_id": "42"})
        assert response.status_code == 404
        assert response.json() == {"detail": "not subscribed"}

    def test_unsubscribe_unknown_is_404(self, client):
        response = client.post("/unsubscribe", json={"user_id": "nobody"})
        assert response.status_code == 404

    def test_dead_link_is_503_and_keeps_subscription(self, client, probe):
        subscribe(client, "42")
        probe.status_code = 404

        response = client.post("/unsubscribe", json={"user_id": "42"})

        assert response.status_code == 503
        detail = response.json()["detail"]
        assert detail["verdict"] == "INVALID_RESPONSE"
        assert detail["category"] == "transient"
        assert detail["retryable"] is True
        assert client.get("/subscribers/42").json()["subscriber"]["subscribed"] is True

    def test_slow_link_is_503_timeout(self, client, probe):
        subscribe(client, "42")
        probe.latency_ms = 250

        response = client.post("/unsubscribe", json={"user_id": "42"})

        assert response.status_code == 503
        assert response.json()["detail"]["verdict"] == "TIMEOUT"


class TestStatusRoute:
    """Test GET /subscribers/{user_id}."""

    def test_unknown_is_404(self, client):
        response = client.get("/subscribers/nobody")
        assert response.status_code == 404
        assert response.json() == {"detail": "no subscription found"}

    def test_status(self, client):
        subscribe(client, "42", "alice")
        subscribe(client, "43")

        response = client.get("/subscribers/42")

        assert response.status_code == 200
        data = response.json()
        assert data["subscriber"]["username"] == "alice"
        assert data["recent_messages"] == []
        assert data["consent_proof"]["kind"] == "consent_verification"
        assert data["stats"] == {"total_subscribers": 2, "active_subscribers": 2, "total_messages": 0}

    def test_recent_messages_limited_to_five(self, client):
        subscribe(client, "42")
        for i in range(6):
            assert client.post("/broadcast", json={"subject": f"m{i}", "body": "b"}).status_code == 200

        data = client.get("/subscribers/42").json()
        assert [m["subject"] for m in data["recent_messages"]] == ["m5", "m4", "m3", "m2", "m1"]


class TestVerifyRoute:
    """Test GET /subscribers/{user_id}/verify."""

    def test_no_messages_is_404(self, client):
        subscribe(client, "42")
        response = client.get("/subscribers/42/verify")
        assert response.status_code == 404
        assert response.json() == {"detail": "no messages to verify"}

    def test_verify_last_message(self, client):
        subscribe(client, "42")
        client.post("/broadcast", json={"subject": "first", "body": "b"})
        client.post("/broadcast", json={"subject": "second", "body": "b"})

        response = client.get("/subscribers/42/verify")

        assert response.status_code == 200
        data = response.json()
        assert data["message"]["subject"] == "second"
        assert data["proof"]["kind"] == "unsubscribe_verification"
        assert data["signature_valid"] is True


class TestBroadcastRoute:
    """Test POST /broadcast."""

    def test_broadcast(self, client, notifier):
        subscribe(client, "a")
        subscribe(client, "b")

        response = client.post("/broadcast", json={"subject": "Hello", "body": "World"})

        assert response.status_code == 200
        data = response.json()
        assert data["sent"] == 2
        assert data["failed"] == 0
        assert data["halted_by"] is None
        assert len(data["message_ids"]) == 2
        assert len(notifier.sent) == 2

    def test_partial_failure(self, client, notifier):
        subscribe(client, "a")
        subscribe(client, "b")
        notifier.fail_for.add("a")

        data = client.post("/broadcast", json={"subject": "Hello", "body": "World"}).json()

        assert data["sent"] == 1
        assert data["failed"] == 1
        assert client.get("/stats").json()["total_messages"] == 1

    def test_empty_subject_is_422(self, client):
        response = client.post("/broadcast", json={"subject": "", "body": "World"})
        assert response.status_code == 422


class TestMiscRoutes:
    """Test stats, help, health and metrics."""

    def test_empty_stats(self, client):
        response = client.get("/stats")
        assert response.status_code == 200
        assert response.json() == {"total_subscribers": 0, "active_subscribers": 0, "total_messages": 0}

    def test_stats_after_activity(self, client):
        subscribe(client, "a")
        subscribe(client, "b")
        client.post("/unsubscribe", json={"user_id": "b"})
        client.post("/broadcast", json={"subject": "Hello", "body": "World"})

        assert client.get("/stats").json() == {
            "total_subscribers": 2,
            "active_subscribers": 1,
            "total_messages": 1,
        }

    def test_help(self, client):
        data = client.get("/help").json()
        assert "POST /subscribe" in data["commands"]

    def test_health(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_request_id_header(self, client):
        response = client.get("/stats")
        assert "x-request-id" in response.headers

    def test_metrics_count_verdicts(self, client):
        subscribe(client, "42")
        response = client.get("/metrics")

        assert response.status_code == 200
        body = response.text
        assert "verification_outcomes_total" in body
        assert 'check="consent"' in body
        assert 'path="/subscribe"' in body


class TestLifespan:
    """Test the periodic broadcast task lifecycle."""

    def test_broadcast_task_is_collected_on_shutdown(self, monkeypatch):
        events = []

        async def fake_periodic_broadcast(interval_seconds):
            events.append(interval_seconds)
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                events.append("cancelled")
                raise

        monkeypatch.setattr(main, "settings", main.settings.model_copy(update={"BROADCAST_INTERVAL_SECONDS": 60}))
        monkeypatch.setattr(main, "_periodic_broadcast", fake_periodic_broadcast)

        with TestClient(app) as test_client:
            assert test_client.get("/health/live").status_code == 200

        assert events == [60, "cancelled"]
        Base.metadata.drop_all(bind=engine)
