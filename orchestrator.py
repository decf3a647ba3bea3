"""
The monitor → evaluate → act loop.

run_tick is invoked on a schedule (hourly) and by the admin /check endpoint.
It loads the single state document, acts, and writes it back once. If another
writer saved in the meantime, the tick reloads and replays its own changes.
Everything except persisting the state is recovered locally: failures end up
in state.last_errors and the logs, never as an exception out of the tick.
"""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

import httpx

from config import WatchdogConfig
from digest_service import send_digest
from failover_service import execute_failover, execute_revert, revert_all
from limits import get_route
from standup_service import trigger_standup
from state_store import (
    FailoverRecord,
    KVStore,
    StateConflictError,
    WatchdogState,
    load_state,
    month_start,
    save_state,
)
from thresholds import LOW_WATER_PCT, AlertLevel, all_below, build_usage_map, evaluate
from usage_service import fetch_all_usage

logger = logging.getLogger(__name__)

DIGEST_STALE_AFTER = timedelta(hours=2)
SAVE_ATTEMPTS = 3


class ServiceAlreadyDivertedError(Exception):
    pass


class ServiceNotDivertedError(Exception):
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _month_start_dt(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _apply_reverts(state: WatchdogState, reverted: List[str]) -> List[str]:
    """Drop reverted services from routing; return error strings for the ones still diverted."""
    for service in reverted:
        state.clear_service(service)
    return [f"revert failed for {service}; still diverted" for service in state.diverted_services]


def _reapply(
    fresh: WatchdogState,
    ours: WatchdogState,
    added: Sequence[FailoverRecord],
    removed: Sequence[str],
    tick: bool,
) -> WatchdogState:
    """Replay one writer's routing changes (and, for a tick, its snapshot) onto a reloaded state."""
    for service in removed:
        fresh.clear_service(service)
    for record in added:
        if fresh.is_diverted(record.service):
            logger.warning(f"[watchdog] {record.service} was diverted concurrently; keeping the stored record")
            continue
        fresh.record_failover(record)
    if tick:
        fresh.billing_month_start = ours.billing_month_start
        fresh.last_check = ours.last_check
        fresh.usage = ours.usage
        fresh.level = ours.level
        fresh.last_errors = ours.last_errors
        fresh.standup_dispatched_at = ours.standup_dispatched_at or fresh.standup_dispatched_at
    elif removed and not fresh.routing:
        fresh.level = AlertLevel.NORMAL
    return fresh


async def _persist(
    kv: KVStore,
    state: WatchdogState,
    added: Sequence[FailoverRecord] = (),
    removed: Sequence[str] = (),
    tick: bool = False,
) -> WatchdogState:
    """save_state, reloading and replaying on a concurrent write. Returns the state actually stored."""
    attempt = 1
    while True:
        try:
            await save_state(kv, state)
            return state
        except StateConflictError as e:
            if attempt >= SAVE_ATTEMPTS:
                raise
            logger.warning(f"[watchdog] {e}; reloading and reapplying (attempt {attempt})")
            state = _reapply(await load_state(kv), state, added, removed, tick)
            attempt += 1


async def run_tick(
    config: WatchdogConfig,
    kv: KVStore,
    http: httpx.AsyncClient,
    now: Optional[datetime] = None,
) -> WatchdogState:
    now = now or _utc_now()
    t_tick = time.perf_counter()
    state = await load_state(kv, now)
    current_month = month_start(now)

    # ── New billing month: put everything back and start clean ──
    if state.billing_month_start != current_month and state.routing:
        logger.info(
            f"[watchdog] Billing month rolled over ({state.billing_month_start} → {current_month}); "
            f"reverting {state.diverted_services}"
        )
        reverted = await revert_all(state, config, http)
        # A service whose revert failed keeps its record so the next tick can retry it.
        state.last_errors = _apply_reverts(state, reverted)
        state.level = AlertLevel.NORMAL
        state.billing_month_start = current_month
        state.last_check = now.isoformat()
        return await _persist(kv, state, removed=reverted, tick=True)
    state.billing_month_start = current_month

    # ── Poll usage ──
    counts, errors = await fetch_all_usage(config, http, _month_start_dt(now), now)
    usage = build_usage_map(counts)
    state.usage = usage
    state.last_check = now.isoformat()

    # ── Evaluate against the current diversion set ──
    evaluation = evaluate(usage, state.diverted_services, config.warn_pct, config.fail_pct)
    state.level = evaluation.level
    if evaluation.triggered_resources:
        triggered = ", ".join(f"{r}={pct:.1f}%" for r, pct in evaluation.triggered_resources)
        logger.warning(f"[watchdog] level={evaluation.level.value} triggered: {triggered}")

    # ── Warm the secondary environment before anything is diverted ──
    if evaluation.level is not AlertLevel.NORMAL and not state.routing:
        try:
            if await trigger_standup(config, kv, http, now):
                state.standup_dispatched_at = now.isoformat()
        except Exception as e:
            logger.error(f"[watchdog] GCP standup dispatch error: {e}")

    # ── Divert in priority order; one failure does not stop the rest ──
    added: List[FailoverRecord] = []
    removed: List[str] = []
    for service in evaluation.failover_targets:
        if state.is_diverted(service):
            continue
        try:
            record = await execute_failover(service, config, kv, http)
        except Exception as e:
            logger.error(f"Failover failed for {service}: {e}")
            errors.append(f"failover {service}: {e}")
            continue
        state.record_failover(record)
        added.append(record)
        logger.info(f"[watchdog] {service} diverted to {record.secondary_target}")

    # ── Low-water mark: revert everything once all resources are well below warning ──
    if state.routing and all_below(usage, LOW_WATER_PCT):
        logger.info(f"[watchdog] All resources below {LOW_WATER_PCT:g}%; reverting {state.diverted_services}")
        reverted = await revert_all(state, config, http)
        removed.extend(reverted)
        added = [record for record in added if record.service not in reverted]
        errors.extend(_apply_reverts(state, reverted))
        if not state.routing:
            state.level = AlertLevel.NORMAL

    state.last_errors = errors
    state = await _persist(kv, state, added=added, removed=removed, tick=True)
    logger.info(
        f"[TIMING] step=tick level={state.level.value} diverted={len(state.routing)} "
        f"errors={len(errors)} duration_ms={1000*(time.perf_counter()-t_tick):.1f}"
    )
    return state


async def run_daily_digest(
    config: WatchdogConfig,
    kv: KVStore,
    http: httpx.AsyncClient,
    now: Optional[datetime] = None,
) -> Optional[dict]:
    if not config.sendgrid_api_key:
        logger.info("[watchdog] No SENDGRID_API_KEY; skipping daily digest")
        return None

    now = now or _utc_now()
    state = await load_state(kv, now)
    last_check = datetime.fromisoformat(state.last_check) if state.last_check else None
    if last_check is None or now - last_check > DIGEST_STALE_AFTER:
        state = await run_tick(config, kv, http, now)

    try:
        result = await send_digest(config, state, http)
    except Exception as e:
        logger.error(f"[watchdog] Daily digest failed: {e}")
        return {"ok": False, "status": 0, "message_id": None}
    logger.info(f"[watchdog] Daily digest sent: {result}")
    return result


# ── Manual operations (admin surface) ─────────────────────────────────────────

async def manual_failover(
    service: str,
    config: WatchdogConfig,
    kv: KVStore,
    http: httpx.AsyncClient,
) -> FailoverRecord:
    state = await load_state(kv)
    if state.is_diverted(service):
        raise ServiceAlreadyDivertedError(f"{service} is already failed over")
    record = await execute_failover(service, config, kv, http)
    state.record_failover(record)
    await _persist(kv, state, added=[record])
    return record


async def manual_revert(service: str, config: WatchdogConfig, kv: KVStore, http: httpx.AsyncClient) -> None:
    state = await load_state(kv)
    record = state.routing.get(service)
    if record is None:
        raise ServiceNotDivertedError(f"{service} is not currently failed over")
    await execute_revert(record, config, http)
    state.clear_service(service)
    if not state.routing:
        state.level = AlertLevel.NORMAL
    await _persist(kv, state, removed=[service])


async def manual_revert_all(config: WatchdogConfig, kv: KVStore, http: httpx.AsyncClient) -> dict:
    state = await load_state(kv)
    reverted = await revert_all(state, config, http)
    failed = [svc for svc in state.diverted_services if svc not in reverted]
    for service in reverted:
        state.clear_service(service)
    if not state.routing:
        state.level = AlertLevel.NORMAL
    await _persist(kv, state, removed=reverted)
    return {"reverted": reverted, "failed": failed}


def is_known_service(service: str) -> bool:
    return get_route(service) is not None
