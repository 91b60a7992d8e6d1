"""Error envelope and middleware behaviour."""

import pytest
from fastapi.testclient import TestClient

from teamsync import app as app_module
from teamsync.service.runtime import get_runtime
from teamsync.storage.errors import StoreUnavailable


@pytest.fixture
def client():
    return TestClient(app_module.app, base_url="https://testserver")


def _down(*args, **kwargs):
    raise StoreUnavailable("connection refused", backend="postgres")


class TestErrorEnvelope:
    def test_request_id_echoes_correlation_header(self, client):
        response = client.get("/v1/users/current", headers={"X-Request-ID": "req-123"})
        body = response.json()
        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-123"
        assert body == {
            "status": "error",
            "data": None,
            "error": {
                "code": "unauthorized",
                "message": "Unauthorized. Please log in.",
                "details": None,
            },
            "request_id": "req-123",
        }

    def test_store_outage_is_503_and_keeps_cookies(self, client, monkeypatch):
        monkeypatch.setattr(get_runtime().store, "get_session", _down)
        client.cookies.set("session_id", "some-session")
        response = client.get("/v1/users/current")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "unavailable"
        assert not response.headers.get_list("set-cookie")

    def test_login_during_outage(self, client, monkeypatch):
        monkeypatch.setattr(get_runtime().store, "find_identity_by_provider", _down)
        response = client.post(
            "/v1/auth/login", json={"email": "a@example.com", "password": "whatever1"}
        )
        assert response.status_code == 503

    def test_unsupported_oauth_provider(self, client):
        response = client.get("/v1/auth/oauth/myspace/start")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_validation_errors_use_envelope(self, client):
        response = client.post("/v1/auth/login", json={"email": "a@example.com"})
        body = response.json()
        assert response.status_code == 400
        assert body["status"] == "error"
        assert isinstance(body["error"]["details"], list)


class TestMiddleware:
    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "Strict-Transport-Security" in response.headers

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["checks"]["store"] == "MemoryStore"

    def test_generated_request_id(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Request-ID"]
