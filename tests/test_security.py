"""
Security hardening tests for main.py.

Covers the defensive controls on the admin surface:
- Bearer ADMIN_TOKEN on every /v1/watchdog route, unset token locks it
- Unauthenticated /health
- gcp-url length cap
- Security response headers and CORS preflight

Strategy: same as test_api.py; the `client` fixture from conftest.
"""
import dataclasses

import pytest

from main import MAX_URL_LEN, app, get_config

ADMIN_ROUTES = [
    ("GET", "/v1/watchdog/status"),
    ("POST", "/v1/watchdog/check"),
    ("POST", "/v1/watchdog/failover"),
    ("POST", "/v1/watchdog/revert"),
    ("POST", "/v1/watchdog/revert/haiphen-api"),
    ("POST", "/v1/watchdog/gcp-url"),
    ("POST", "/v1/watchdog/digest"),
]


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------


class TestHealthEndpoint:
    def test_returns_200(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200

    def test_returns_ok_status(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_fast_response(self, client):
        """Health check must not hit any slow dependencies."""
        import time
        start = time.monotonic()
        client.get("/health")
        elapsed = time.monotonic() - start
        assert elapsed < 1.0, "Health check took too long"


# ---------------------------------------------------------------------------
# Admin authentication
# ---------------------------------------------------------------------------


class TestAdminAuth:
    @pytest.mark.parametrize("method,path", ADMIN_ROUTES)
    def test_missing_token_rejected(self, client, cf, method, path):
        resp = client.request(method, path)
        assert resp.status_code == 401
        assert resp.json()["detail"]["code"] == "unauthorized"
        assert cf.calls == []

    @pytest.mark.parametrize("header", [
        "Bearer wrong",
        "admin-secret",
        "bearer admin-secret",
        "Basic YWRtaW46YWRtaW4=",
    ])
    def test_wrong_token_rejected(self, client, header):
        resp = client.get("/v1/watchdog/status", headers={"Authorization": header})
        assert resp.status_code == 401

    def test_correct_token_accepted(self, client):
        resp = client.get("/v1/watchdog/status", headers={"Authorization": "Bearer admin-secret"})
        assert resp.status_code == 200

    def test_unset_admin_token_locks_everything(self, client, config):
        app.dependency_overrides[get_config] = lambda: dataclasses.replace(config, admin_token="")
        for header in ("Bearer ", "Bearer", ""):
            resp = client.get("/v1/watchdog/status", headers={"Authorization": header})
            assert resp.status_code == 401


# ---------------------------------------------------------------------------
# gcp-url length cap
# ---------------------------------------------------------------------------


class TestUrlLengthLimit:
    AUTH = {"Authorization": "Bearer admin-secret"}

    def test_at_limit_accepted(self, client):
        url = "a" * MAX_URL_LEN
        resp = client.post("/v1/watchdog/gcp-url", json={"service": "haiphen-api", "url": url}, headers=self.AUTH)
        assert resp.status_code == 200

    def test_over_limit_rejected(self, client):
        url = "a" * (MAX_URL_LEN + 1)
        resp = client.post("/v1/watchdog/gcp-url", json={"service": "haiphen-api", "url": url}, headers=self.AUTH)
        assert resp.status_code == 400
        assert "too long" in resp.json()["detail"]["message"]

    def test_non_string_url_rejected(self, client):
        resp = client.post("/v1/watchdog/gcp-url", json={"service": "haiphen-api", "url": 42}, headers=self.AUTH)
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Security headers
# ---------------------------------------------------------------------------


class TestSecurityHeaders:
    @pytest.mark.parametrize("header,value", [
        ("x-content-type-options", "nosniff"),
        ("x-frame-options", "DENY"),
        ("referrer-policy", "strict-origin-when-cross-origin"),
        ("strict-transport-security", "max-age=31536000; includeSubDomains"),
        ("cache-control", "no-store"),
    ])
    def test_header_on_health(self, client, header, value):
        assert client.get("/health").headers[header] == value

    def test_headers_on_error_responses(self, client):
        resp = client.get("/v1/watchdog/status")
        assert resp.status_code == 401
        assert resp.headers["x-frame-options"] == "DENY"

    def test_cors_preflight(self, client):
        resp = client.options(
            "/v1/watchdog/status",
            headers={
                "Origin": "https://haiphen.io",
                "Access-Control-Request-Method": "GET",
                "Access-Control-Request-Headers": "Authorization",
            },
        )
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "*"
