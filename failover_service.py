"""
Failover execution: worker route deletion + DNS CNAME creation, and the
inverse revert.

Failover for one service:
  1. resolve the secondary (Cloud Run) target
  2. find and delete the primary worker route, if there is one
  3. create an un-proxied CNAME <subdomain>.<zone> → target
  4. hand back a FailoverRecord with everything needed to undo 2 and 3

Every step tolerates having already been done by an earlier, partially failed
attempt, so re-running a failover or a revert converges instead of erroring.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from config import WatchdogConfig
from limits import get_route
from state_store import FailoverRecord, KVStore, WatchdogState, get_target_override

logger = logging.getLogger(__name__)

CF_API = "https://api.cloudflare.com/client/v4"

# Cloudflare error code for "Record does not exist"
CF_DNS_RECORD_NOT_FOUND = 81044

CLOUD_RUN_LOOKUP_TIMEOUT_S = 10.0


class CloudflareAPIError(Exception):
    def __init__(self, message: str, status_code: int = 0, codes=()):
        super().__init__(message)
        self.status_code = status_code
        self.codes = tuple(codes)

    @property
    def not_found(self) -> bool:
        return self.status_code == 404 or CF_DNS_RECORD_NOT_FOUND in self.codes


class UnknownServiceError(KeyError):
    def __str__(self):
        return f"Unknown service: {self.args[0]}"


# ── Cloudflare REST client ────────────────────────────────────────────────────

class CloudflareClient:
    def __init__(self, http: httpx.AsyncClient, token: str, zone_id: str):
        self._http = http
        self._token = token
        self._zone = zone_id

    async def _call(self, method: str, path: str, body: Optional[dict] = None, params: Optional[dict] = None):
        try:
            res = await self._http.request(
                method,
                f"{CF_API}{path}",
                json=body,
                params=params,
                headers={"Authorization": f"Bearer {self._token}", "Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise CloudflareAPIError(f"CF API {method} {path}: {type(e).__name__} {e}") from e

        try:
            payload = res.json()
        except ValueError:
            raise CloudflareAPIError(
                f"CF API {method} {path}: HTTP {res.status_code} non-JSON response",
                status_code=res.status_code,
            )
        if res.status_code >= 400 or not payload.get("success"):
            errors = payload.get("errors") or []
            msg = "; ".join(str(e.get("message", e)) for e in errors) or res.reason_phrase
            codes = [e.get("code") for e in errors if isinstance(e, dict)]
            raise CloudflareAPIError(
                f"CF API {method} {path}: {msg}", status_code=res.status_code, codes=codes
            )
        return payload.get("result")

    # Worker routes

    async def list_routes(self) -> List[dict]:
        return await self._call("GET", f"/zones/{self._zone}/workers/routes") or []

    async def delete_route(self, route_id: str) -> None:
        await self._call("DELETE", f"/zones/{self._zone}/workers/routes/{route_id}")

    async def create_route(self, pattern: str, script: str) -> str:
        result = await self._call(
            "POST", f"/zones/{self._zone}/workers/routes", {"pattern": pattern, "script": script}
        )
        return (result or {}).get("id", "")

    # DNS

    async def find_dns_records(self, name: str, record_type: str = "CNAME") -> List[dict]:
        return await self._call(
            "GET", f"/zones/{self._zone}/dns_records", params={"type": record_type, "name": name}
        ) or []

    async def create_dns_cname(self, name: str, target: str) -> str:
        result = await self._call("POST", f"/zones/{self._zone}/dns_records", {
            "type": "CNAME",
            "name": name,
            "content": target,
            "ttl": 60,
            "proxied": False,  # DNS only, bypasses the worker
        })
        return (result or {}).get("id", "")

    async def delete_dns_record(self, record_id: str) -> None:
        await self._call("DELETE", f"/zones/{self._zone}/dns_records/{record_id}")


def cloudflare_client(config: WatchdogConfig, http: httpx.AsyncClient) -> CloudflareClient:
    return CloudflareClient(http, config.cf_api_token, config.cf_zone_id)


# ── Secondary target resolution ───────────────────────────────────────────────

def convention_target(service: str, region: str = "us-central1") -> str:
    """Fallback Cloud Run hostname when nothing better is known."""
    return f"{service}.{region}.run.app"


def _strip_scheme(url: str) -> str:
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            url = url[len(prefix):]
    return url.rstrip("/")


def _lookup_cloud_run_uri_sync(project: str, region: str, service: str) -> str:
    from google.cloud import run_v2

    client = run_v2.ServicesClient()
    service_path = f"projects/{project}/locations/{region}/services/{service}"
    return client.get_service(name=service_path, timeout=CLOUD_RUN_LOOKUP_TIMEOUT_S).uri


async def lookup_cloud_run_host(config: WatchdogConfig, service: str) -> Optional[str]:
    if not config.gcp_project:
        return None
    loop = asyncio.get_running_loop()
    try:
        uri = await loop.run_in_executor(
            None, _lookup_cloud_run_uri_sync, config.gcp_project, config.gcp_region, service
        )
    except Exception as e:
        logger.warning(f"Cloud Run lookup failed for {service}: {e}")
        return None
    return _strip_scheme(uri) if uri else None


async def resolve_secondary_target(service: str, config: WatchdogConfig, kv: KVStore) -> str:
    """Admin override → live Cloud Run URI → naming convention."""
    override = await get_target_override(kv, service)
    if override:
        return _strip_scheme(override)
    host = await lookup_cloud_run_host(config, service)
    if host:
        return host
    return convention_target(service, config.gcp_region)


# ── Failover / revert ─────────────────────────────────────────────────────────

async def find_route_id(cf: CloudflareClient, service: str) -> Optional[str]:
    meta = get_route(service)
    if not meta:
        return None
    for route in await cf.list_routes():
        if route.get("pattern") == meta["pattern"] or route.get("script") == service:
            return route.get("id")
    return None


async def _ensure_cname(cf: CloudflareClient, name: str, target: str) -> str:
    for record in await cf.find_dns_records(name):
        if record.get("content") == target:
            logger.info(f"Reusing existing CNAME {name} → {target}")
            return record["id"]
        logger.info(f"Replacing stale CNAME {name} → {record.get('content')}")
        await cf.delete_dns_record(record["id"])
    return await cf.create_dns_cname(name, target)


async def execute_failover(
    service: str,
    config: WatchdogConfig,
    kv: KVStore,
    http: httpx.AsyncClient,
) -> FailoverRecord:
    meta = get_route(service)
    if not meta:
        raise UnknownServiceError(service)

    t0 = time.perf_counter()
    cf = cloudflare_client(config, http)
    target = await resolve_secondary_target(service, config, kv)

    route_id = await find_route_id(cf, service)
    if route_id:
        await cf.delete_route(route_id)
    else:
        logger.info(f"No primary route found for {service}; continuing with DNS only")

    dns_name = f"{meta['subdomain']}.{config.zone_domain}"
    dns_record_id = await _ensure_cname(cf, dns_name, target)

    logger.info(
        f"[TIMING] step=failover service={service} target={target} "
        f"duration_ms={1000*(time.perf_counter()-t0):.1f}"
    )
    return FailoverRecord(
        service=service,
        primary_route_ref=route_id,
        secondary_route_ref=dns_record_id,
        secondary_target=target,
        failed_at=datetime.now(timezone.utc).isoformat(),
    )


async def execute_revert(record: FailoverRecord, config: WatchdogConfig, http: httpx.AsyncClient) -> None:
    meta = get_route(record.service)
    if not meta:
        raise UnknownServiceError(record.service)

    cf = cloudflare_client(config, http)

    # 1. Delete the CNAME; a record that is already gone is fine
    if record.secondary_route_ref:
        try:
            await cf.delete_dns_record(record.secondary_route_ref)
        except CloudflareAPIError as e:
            if not e.not_found:
                raise
            logger.info(f"CNAME for {record.service} already removed")

    # 2. Recreate the worker route unless it is already back
    existing = await cf.list_routes()
    if any(r.get("pattern") == meta["pattern"] for r in existing):
        logger.info(f"Route {meta['pattern']} already present; not recreating")
        return
    await cf.create_route(meta["pattern"], record.service)
    logger.info(f"Reverted {record.service} to primary route {meta['pattern']}")


async def revert_all(state: WatchdogState, config: WatchdogConfig, http: httpx.AsyncClient) -> List[str]:
    """
    Revert every diverted service independently. Returns the services that
    were reverted; failures are logged and left for the caller to report.
    """
    reverted: List[str] = []
    for service, record in list(state.routing.items()):
        try:
            await execute_revert(record, config, http)
            reverted.append(service)
        except Exception as e:
            logger.error(f"Revert failed for {service}: {e}")
    return reverted
