import asyncio
import logging
import secrets
from functools import lru_cache

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from config import WatchdogConfig, load_config
from failover_service import UnknownServiceError
from limits import FAILOVER_PRIORITY, SERVICE_ROUTES
from orchestrator import (
    ServiceAlreadyDivertedError,
    ServiceNotDivertedError,
    is_known_service,
    manual_failover,
    manual_revert,
    manual_revert_all,
    run_tick,
)
from digest_service import send_digest
from state_store import KVStore, StateConflictError, load_state, open_kv, set_target_override

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ── Limits ────────────────────────────────────────────────────────────────────
MAX_URL_LEN = 512
HTTP_TIMEOUT = httpx.Timeout(15.0, connect=5.0)

app = FastAPI(title="Quota Watchdog")

# Serialises every read-modify-write of the state document within this process.
_state_lock = asyncio.Lock()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add defensive security headers to every response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Cache-Control"] = "no-store"
        return response


app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


# ── Dependencies ──────────────────────────────────────────────────────────────
@lru_cache
def get_config() -> WatchdogConfig:
    return load_config()


_kv = None


def get_kv(config: WatchdogConfig = Depends(get_config)) -> KVStore:
    global _kv
    if _kv is None:
        _kv = open_kv(config)
    return _kv


async def get_http():
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
        yield client


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def require_admin(request: Request, config: WatchdogConfig = Depends(get_config)) -> None:
    """Bearer ADMIN_TOKEN on every admin route. An unset token locks the surface entirely."""
    auth = request.headers.get("Authorization", "")
    expected = f"Bearer {config.admin_token}"
    if not config.admin_token or not secrets.compare_digest(auth.encode(), expected.encode()):
        raise _error(401, "unauthorized", "Invalid or missing ADMIN_TOKEN")


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ── Health check ──────────────────────────────────────────────────────────────
@app.get("/health")
async def health():
    """Unauthenticated liveness probe."""
    return {"status": "ok"}


# ── Admin API ─────────────────────────────────────────────────────────────────
@app.get("/v1/watchdog/status", dependencies=[Depends(require_admin)])
async def api_status(kv: KVStore = Depends(get_kv)):
    state = await load_state(kv)
    return {
        "ok": True,
        **state.to_dict(),
        "failover_priority": FAILOVER_PRIORITY,
        "known_services": list(SERVICE_ROUTES.keys()),
    }


@app.post("/v1/watchdog/check", dependencies=[Depends(require_admin)])
async def api_check(
    config: WatchdogConfig = Depends(get_config),
    kv: KVStore = Depends(get_kv),
    http: httpx.AsyncClient = Depends(get_http),
):
    """Run one orchestration tick now."""
    async with _state_lock:
        try:
            state = await run_tick(config, kv, http)
        except StateConflictError as e:
            raise _error(409, "state_conflict", str(e))
        except Exception as e:
            logger.error(f"Manual check failed: {e}")
            raise _error(502, "check_failed", str(e))
    return {"ok": True, **state.to_dict()}


@app.post("/v1/watchdog/failover", dependencies=[Depends(require_admin)])
async def api_failover(
    request: Request,
    config: WatchdogConfig = Depends(get_config),
    kv: KVStore = Depends(get_kv),
    http: httpx.AsyncClient = Depends(get_http),
):
    body = await _json_body(request)
    service = body.get("service")
    if not isinstance(service, str) or not is_known_service(service):
        known = ", ".join(SERVICE_ROUTES.keys())
        raise _error(400, "bad_request", f"Unknown service: {service}. Known: {known}")

    async with _state_lock:
        try:
            record = await manual_failover(service, config, kv, http)
        except ServiceAlreadyDivertedError as e:
            raise _error(409, "conflict", str(e))
        except StateConflictError as e:
            raise _error(409, "state_conflict", str(e))
        except UnknownServiceError as e:
            raise _error(400, "bad_request", str(e))
        except Exception as e:
            logger.error(f"Manual failover failed for {service}: {e}")
            raise _error(502, "failover_failed", str(e))
    return {"ok": True, "failover": record.to_dict()}


@app.post("/v1/watchdog/revert", dependencies=[Depends(require_admin)])
async def api_revert_all(
    config: WatchdogConfig = Depends(get_config),
    kv: KVStore = Depends(get_kv),
    http: httpx.AsyncClient = Depends(get_http),
):
    async with _state_lock:
        try:
            result = await manual_revert_all(config, kv, http)
        except StateConflictError as e:
            raise _error(409, "state_conflict", str(e))
    return {"ok": not result["failed"], **result}


@app.post("/v1/watchdog/revert/{service}", dependencies=[Depends(require_admin)])
async def api_revert_one(
    service: str,
    config: WatchdogConfig = Depends(get_config),
    kv: KVStore = Depends(get_kv),
    http: httpx.AsyncClient = Depends(get_http),
):
    async with _state_lock:
        try:
            await manual_revert(service, config, kv, http)
        except ServiceNotDivertedError as e:
            raise _error(404, "not_found", str(e))
        except StateConflictError as e:
            raise _error(409, "state_conflict", str(e))
        except Exception as e:
            logger.error(f"Manual revert failed for {service}: {e}")
            raise _error(502, "revert_failed", str(e))
    return {"ok": True, "reverted": service}


@app.post("/v1/watchdog/gcp-url", dependencies=[Depends(require_admin)])
async def api_register_target(request: Request, kv: KVStore = Depends(get_kv)):
    """Register an explicit secondary-environment target for a service."""
    body = await _json_body(request)
    service, url = body.get("service"), body.get("url")
    if not isinstance(service, str) or not service or not isinstance(url, str) or not url:
        raise _error(400, "bad_request", "Required: service, url")
    if not is_known_service(service):
        raise _error(400, "bad_request", f"Unknown service: {service}")
    if len(url) > MAX_URL_LEN:
        raise _error(400, "bad_request", f"url too long (max {MAX_URL_LEN} characters)")
    await set_target_override(kv, service, url)
    return {"ok": True, "service": service, "url": url}


@app.post("/v1/watchdog/digest", dependencies=[Depends(require_admin)])
async def api_digest(
    config: WatchdogConfig = Depends(get_config),
    kv: KVStore = Depends(get_kv),
    http: httpx.AsyncClient = Depends(get_http),
):
    if not config.sendgrid_api_key:
        raise _error(400, "not_configured", "SENDGRID_API_KEY not set")
    state = await load_state(kv)
    try:
        result = await send_digest(config, state, http)
    except httpx.HTTPError as e:
        logger.error(f"Digest send failed: {e}")
        raise _error(502, "digest_failed", str(e))
    return {"ok": result["ok"], "status": result["status"], "message_id": result["message_id"]}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
