"""
GCP standup: dispatch the gcp-standup GitHub Actions workflow so the Cloud Run
side is warm before any service is actually diverted.

Fires at most once per billing month. The "already triggered" marker lives in
the KV store with a 35-day TTL so the dedup survives restarts.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from config import WatchdogConfig
from state_store import KVStore

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
STANDUP_TRIGGERED_KEY = "watchdog:gcp-standup-triggered"
STANDUP_MARKER_TTL_S = 35 * 24 * 60 * 60


class StandupDispatchError(Exception):
    pass


def billing_month(now: datetime) -> str:
    return f"{now.year}-{now.month:02d}"


async def trigger_standup(
    config: WatchdogConfig,
    kv: KVStore,
    http: httpx.AsyncClient,
    now: Optional[datetime] = None,
) -> bool:
    """Return True when the workflow was dispatched by this call."""
    if not config.github_pat:
        logger.info("[watchdog] No GITHUB_PAT; skipping GCP standup trigger")
        return False

    now = now or datetime.now(timezone.utc)
    current = billing_month(now)
    if await kv.get(STANDUP_TRIGGERED_KEY) == current:
        logger.info("[watchdog] GCP standup already triggered this month; skipping")
        return False

    url = f"{GITHUB_API}/repos/{config.github_repo}/actions/workflows/{config.github_workflow}/dispatches"
    res = await http.post(
        url,
        json={"ref": config.github_ref},
        headers={
            "Authorization": f"Bearer {config.github_pat}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "quota-watchdog",
        },
    )
    if res.status_code != 204:
        raise StandupDispatchError(f"GitHub dispatch failed ({res.status_code}): {res.text[:300]}")

    await kv.put(STANDUP_TRIGGERED_KEY, current, ttl_s=STANDUP_MARKER_TTL_S)
    logger.info(f"[watchdog] GCP standup workflow dispatched for {current}")
    return True
