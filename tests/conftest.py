"""
Shared pytest fixtures for the watchdog test suite.

FakeCloudflare is an in-memory stand-in for every external HTTP API the
watchdog talks to (Cloudflare GraphQL + REST, GitHub dispatch, SendGrid),
plugged into httpx through httpx.MockTransport so the real client code runs
unmodified.
"""
import json
import re

import httpx
import pytest
from fastapi.testclient import TestClient

from config import WatchdogConfig
from main import app, get_config, get_http, get_kv
from state_store import FileKV
from usage_service import USAGE_QUERIES

_ROUTES_RE = re.compile(r"^/client/v4/zones/(?P<zone>[^/]+)/workers/routes(?:/(?P<id>[^/]+))?$")
_DNS_RE = re.compile(r"^/client/v4/zones/(?P<zone>[^/]+)/dns_records(?:/(?P<id>[^/]+))?$")


def _cf_ok(result, status=200) -> httpx.Response:
    return httpx.Response(status, json={"success": True, "errors": [], "result": result})


def _cf_error(status: int, code: int, message: str) -> httpx.Response:
    return httpx.Response(
        status, json={"success": False, "errors": [{"code": code, "message": message}], "result": None}
    )


class FakeCloudflare:
    def __init__(self):
        self.routes = {}          # id → {"id", "pattern", "script"}
        self.dns = {}             # id → {"id", "type", "name", "content", "proxied", "ttl"}
        self.usage = {}           # resource key → count
        self.failing_resources = set()
        self.failing_paths = set()   # (method, path-fragment) pairs that answer 500
        self.github_status = 204
        self.sendgrid_status = 202
        self.github_calls = []
        self.sendgrid_calls = []
        self.calls = []
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq}"

    def add_route(self, pattern: str, script: str) -> str:
        route_id = self._next_id("route-")
        self.routes[route_id] = {"id": route_id, "pattern": pattern, "script": script}
        return route_id

    def cnames(self, name: str = None) -> list:
        return [r for r in self.dns.values() if r["type"] == "CNAME" and (name is None or r["name"] == name)]

    # ── transport entry point ────────────────────────────────────────────────
    def handler(self, request: httpx.Request) -> httpx.Response:
        host, path, method = request.url.host, request.url.path, request.method
        self.calls.append((method, path))

        for fail_method, fragment in self.failing_paths:
            if method == fail_method and fragment in path:
                return _cf_error(500, 10000, "internal error")

        if host == "api.github.com":
            self.github_calls.append(json.loads(request.content or b"{}"))
            return httpx.Response(self.github_status)
        if host == "api.sendgrid.com":
            self.sendgrid_calls.append(json.loads(request.content))
            if self.sendgrid_status >= 400:
                return httpx.Response(self.sendgrid_status, json={"errors": [{"message": "bad"}]})
            return httpx.Response(self.sendgrid_status, headers={"x-message-id": "msg-1"})

        if path == "/client/v4/graphql":
            return self._graphql(request)
        m = _ROUTES_RE.match(path)
        if m:
            return self._routes(request, m.group("id"))
        m = _DNS_RE.match(path)
        if m:
            return self._dns(request, m.group("id"))
        return _cf_error(404, 7003, f"no route for {method} {path}")

    def _graphql(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        query = payload["query"]
        for resource, usage_query in USAGE_QUERIES.items():
            if usage_query.dataset in query and f"sum {{ {usage_query.field} }}" in query:
                break
        else:
            return httpx.Response(200, json={"data": None, "errors": [{"message": "unknown dataset"}]})

        if resource in self.failing_resources:
            return httpx.Response(500, text="upstream exploded")
        row = {"sum": {usage_query.field: self.usage.get(resource, 0)}}
        return httpx.Response(200, json={"data": {"viewer": {"accounts": [{usage_query.dataset: [row]}]}}})

    def _routes(self, request: httpx.Request, route_id):
        if request.method == "GET":
            return _cf_ok(list(self.routes.values()))
        if request.method == "POST":
            body = json.loads(request.content)
            new_id = self.add_route(body["pattern"], body["script"])
            return _cf_ok(self.routes[new_id])
        if request.method == "DELETE":
            if route_id not in self.routes:
                return _cf_error(404, 10005, "Route not found")
            del self.routes[route_id]
            return _cf_ok({"id": route_id})
        return _cf_error(405, 10000, "method not allowed")

    def _dns(self, request: httpx.Request, record_id):
        if request.method == "GET":
            params = request.url.params
            records = [
                r for r in self.dns.values()
                if r["type"] == params.get("type", r["type"]) and r["name"] == params.get("name", r["name"])
            ]
            return _cf_ok(records)
        if request.method == "POST":
            body = json.loads(request.content)
            if self.cnames(body["name"]):
                return _cf_error(400, 81053, "An A, AAAA, or CNAME record with that host already exists.")
            new_id = self._next_id("dns-")
            self.dns[new_id] = {"id": new_id, **body}
            return _cf_ok(self.dns[new_id])
        if request.method == "DELETE":
            if record_id not in self.dns:
                return _cf_error(404, 81044, "Record does not exist.")
            del self.dns[record_id]
            return _cf_ok({"id": record_id})
        return _cf_error(405, 10000, "method not allowed")


@pytest.fixture
def cf() -> FakeCloudflare:
    return FakeCloudflare()


@pytest.fixture
async def http(cf):
    async with httpx.AsyncClient(transport=httpx.MockTransport(cf.handler)) as client:
        yield client


@pytest.fixture
def config() -> WatchdogConfig:
    return WatchdogConfig(
        cf_api_token="cf-token",
        cf_account_id="acct-1",
        cf_zone_id="zone-1",
        cf_d1_database_id="d1-db",
        admin_token="admin-secret",
        github_pat="gh-pat",
        sendgrid_api_key="sg-key",
        query_timeout_s=2.0,
    )


@pytest.fixture
def kv(tmp_path) -> FileKV:
    return FileKV(str(tmp_path / "watchdog_state.json"))


@pytest.fixture
def client(config, kv, cf):
    """TestClient for the admin app wired to the test config, file KV and FakeCloudflare."""
    async def fake_http():
        async with httpx.AsyncClient(transport=httpx.MockTransport(cf.handler)) as http:
            yield http

    app.dependency_overrides[get_config] = lambda: config
    app.dependency_overrides[get_kv] = lambda: kv
    app.dependency_overrides[get_http] = fake_http
    yield TestClient(app)
    app.dependency_overrides.clear()
