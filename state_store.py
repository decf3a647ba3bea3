"""
Persisted watchdog state and the key-value backends it lives in.

The whole watchdog shares one JSON document (STATE_KEY). It is read once at the
start of a tick and written once at the end, only if its `version` is unchanged
since the read. Two small side keys live next to it: the monthly standup marker
and per-service secondary-target overrides.

Backends
--------
- RedisKV : redis.asyncio client, native TTL.           (WATCHDOG_REDIS_URL)
- FileKV  : one JSON file, TTL stored alongside values.  (WATCHDOG_STATE_FILE)
"""
import asyncio
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional

from redis.exceptions import WatchError

from config import WatchdogConfig
from thresholds import AlertLevel, ResourceUsage

logger = logging.getLogger(__name__)

STATE_KEY = "watchdog:state"
OVERRIDE_KEY_PREFIX = "gcp:"


# ── Data model ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FailoverRecord:
    service: str
    primary_route_ref: Optional[str]   # None when no primary route was found
    secondary_route_ref: str           # DNS record id created on failover
    secondary_target: str
    failed_at: str                     # ISO timestamp

    def to_dict(self) -> dict:
        return {
            "service": self.service,
            "primary_route_ref": self.primary_route_ref,
            "secondary_route_ref": self.secondary_route_ref,
            "secondary_target": self.secondary_target,
            "failed_at": self.failed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FailoverRecord":
        return cls(
            service=data["service"],
            primary_route_ref=data.get("primary_route_ref") or None,
            secondary_route_ref=data.get("secondary_route_ref", ""),
            secondary_target=data.get("secondary_target", ""),
            failed_at=data.get("failed_at", ""),
        )


class DuplicateFailoverError(ValueError):
    """A second failover record was offered for a service that already has one."""


class StateConflictError(Exception):
    """The stored state document changed after it was loaded."""


def month_start(now: datetime) -> str:
    return date(now.year, now.month, 1).isoformat()


@dataclass
class WatchdogState:
    billing_month_start: str = ""
    last_check: str = ""
    usage: Dict[str, ResourceUsage] = field(default_factory=dict)
    level: AlertLevel = AlertLevel.NORMAL
    routing: Dict[str, FailoverRecord] = field(default_factory=dict)
    last_errors: List[str] = field(default_factory=list)
    standup_dispatched_at: Optional[str] = None
    version: int = 0

    # always keys(routing)
    @property
    def diverted_services(self) -> List[str]:
        return list(self.routing.keys())

    def is_diverted(self, service: str) -> bool:
        return service in self.routing

    def record_failover(self, record: FailoverRecord) -> None:
        if record.service in self.routing:
            raise DuplicateFailoverError(f"{record.service} already has a failover record")
        self.routing[record.service] = record

    def clear_service(self, service: str) -> Optional[FailoverRecord]:
        return self.routing.pop(service, None)

    def clear_all(self) -> None:
        self.routing.clear()

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "last_check": self.last_check,
            "billing_month_start": self.billing_month_start,
            "usage": {key: data.to_dict() for key, data in self.usage.items()},
            "level": self.level.value,
            "diverted_services": self.diverted_services,
            "routing": {svc: rec.to_dict() for svc, rec in self.routing.items()},
            "last_errors": list(self.last_errors),
            "standup_dispatched_at": self.standup_dispatched_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WatchdogState":
        usage = {
            key: ResourceUsage(
                current=int(item.get("current", 0)),
                limit=int(item.get("limit", 0)),
                pct=float(item.get("pct", 0.0)),
            )
            for key, item in (data.get("usage") or {}).items()
        }
        routing: Dict[str, FailoverRecord] = {}
        for svc, item in (data.get("routing") or {}).items():
            routing[svc] = FailoverRecord.from_dict({**item, "service": svc})

        listed = set(data.get("diverted_services") or [])
        if listed != set(routing):
            logger.warning(
                f"Stored diverted_services {sorted(listed)} disagrees with routing "
                f"{sorted(routing)}; using routing"
            )

        try:
            level = AlertLevel(data.get("level") or "normal")
        except ValueError:
            level = AlertLevel.NORMAL

        return cls(
            billing_month_start=data.get("billing_month_start", ""),
            last_check=data.get("last_check", ""),
            usage=usage,
            level=level,
            routing=routing,
            last_errors=list(data.get("last_errors") or []),
            standup_dispatched_at=data.get("standup_dispatched_at"),
            version=int(data.get("version", 0)),
        )


def new_state(now: Optional[datetime] = None) -> WatchdogState:
    now = now or datetime.now(timezone.utc)
    return WatchdogState(billing_month_start=month_start(now))


# ── Key-value backends ────────────────────────────────────────────────────────

class KVStore:
    """Minimal async key-value interface used by the watchdog."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def put(self, key: str, value: str, ttl_s: Optional[int] = None) -> None:
        raise NotImplementedError

    async def put_if(
        self, key: str, value: str, check: Callable[[Optional[str]], bool], ttl_s: Optional[int] = None
    ) -> bool:
        """Write value only if check(current value) holds, atomically. Returns False when it did not write."""
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class RedisKV(KVStore):
    def __init__(self, client):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKV":
        import redis.asyncio as redis
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        value = await self._redis.get(key)
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def put(self, key: str, value: str, ttl_s: Optional[int] = None) -> None:
        if ttl_s:
            await self._redis.set(key, value, ex=ttl_s)
        else:
            await self._redis.set(key, value)

    async def put_if(
        self, key: str, value: str, check: Callable[[Optional[str]], bool], ttl_s: Optional[int] = None
    ) -> bool:
        # WATCH/MULTI: EXEC fails if another client touched the key after WATCH.
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = await pipe.get(key)
                if isinstance(current, bytes):
                    current = current.decode("utf-8")
                if not check(current):
                    return False
                pipe.multi()
                if ttl_s:
                    pipe.set(key, value, ex=ttl_s)
                else:
                    pipe.set(key, value)
                await pipe.execute()
            except WatchError:
                logger.warning(f"Concurrent write to {key}; not written")
                return False
        return True

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def close(self) -> None:
        await self._redis.aclose()


class FileKV(KVStore):
    """
    Single JSON file: {key: {"value": str, "expires_at": float|None}}.

    Writes go to a temp file in the same directory and are moved into place
    with os.replace, so a crash mid-write never leaves a truncated document.
    Only safe for one process at a time.
    """

    def __init__(self, path: str, clock=time.time):
        self._path = path
        self._clock = clock
        self._lock = asyncio.Lock()

    def _read(self) -> dict:
        if not os.path.exists(self._path):
            return {}
        with open(self._path, encoding="utf-8") as fh:
            raw = fh.read()
        return json.loads(raw) if raw.strip() else {}

    def _write(self, data: dict) -> None:
        directory = os.path.dirname(os.path.abspath(self._path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _live_value(self, entry: Optional[dict]) -> Optional[str]:
        if not entry:
            return None
        expires_at = entry.get("expires_at")
        if expires_at is not None and expires_at <= self._clock():
            return None
        return entry.get("value")

    def _store(self, data: dict, key: str, value: str, ttl_s: Optional[int]) -> None:
        now = self._clock()
        data = {
            k: v for k, v in data.items()
            if v.get("expires_at") is None or v["expires_at"] > now
        }
        data[key] = {"value": value, "expires_at": now + ttl_s if ttl_s else None}
        self._write(data)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._read().get(key)
        return self._live_value(entry)

    async def put(self, key: str, value: str, ttl_s: Optional[int] = None) -> None:
        async with self._lock:
            self._store(self._read(), key, value, ttl_s)

    async def put_if(
        self, key: str, value: str, check: Callable[[Optional[str]], bool], ttl_s: Optional[int] = None
    ) -> bool:
        async with self._lock:
            data = self._read()
            if not check(self._live_value(data.get(key))):
                return False
            self._store(data, key, value, ttl_s)
        return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)


def open_kv(config: WatchdogConfig) -> KVStore:
    if config.redis_url:
        logger.info("Watchdog state backend: redis")
        return RedisKV.from_url(config.redis_url)
    logger.info(f"Watchdog state backend: file ({config.state_file})")
    return FileKV(config.state_file)


# ── State load / save ─────────────────────────────────────────────────────────

async def load_state(kv: KVStore, now: Optional[datetime] = None) -> WatchdogState:
    """Read the state document, or start a fresh one for the current month if absent."""
    raw = await kv.get(STATE_KEY)
    if not raw:
        return new_state(now)
    return WatchdogState.from_dict(json.loads(raw))


def _stored_version(raw: Optional[str]) -> int:
    if not raw:
        return 0
    return int(json.loads(raw).get("version", 0))


async def save_state(kv: KVStore, state: WatchdogState) -> None:
    """
    Persist the whole document, but only if the stored version is still the
    one this state was loaded at.

    Raises StateConflictError when another writer saved in between; the caller
    reloads and reapplies its change. Errors propagate: an unsaved tick must
    not look saved.
    """
    loaded = state.version
    state.version = loaded + 1
    try:
        written = await kv.put_if(
            STATE_KEY,
            json.dumps(state.to_dict()),
            lambda raw: _stored_version(raw) == loaded,
        )
    except Exception:
        state.version = loaded
        raise
    if not written:
        state.version = loaded
        raise StateConflictError(f"state changed since version {loaded} was loaded")


async def get_target_override(kv: KVStore, service: str) -> Optional[str]:
    return await kv.get(f"{OVERRIDE_KEY_PREFIX}{service}")


async def set_target_override(kv: KVStore, service: str, url: str) -> None:
    await kv.put(f"{OVERRIDE_KEY_PREFIX}{service}", url)
