"""
GCP Cloud Function: hourly watchdog tick.
Triggered by Cloud Scheduler through Pub/Sub. Runs one monitor → evaluate → act
cycle and persists the state document. Deployed with the repository root as its
source directory so the watchdog modules are importable.
"""
import asyncio
import logging

import functions_framework
import httpx

from config import load_config
from orchestrator import run_tick
from state_store import open_kv

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def _tick() -> dict:
    config = load_config()
    kv = open_kv(config)
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0)) as http:
            state = await run_tick(config, kv, http)
    finally:
        await kv.close()
    return {"level": state.level.value, "diverted": state.diverted_services, "errors": state.last_errors}


@functions_framework.cloud_event
def handler(cloud_event):
    logger.info(f"Watchdog tick triggered by {cloud_event['source']}")
    # A failed save propagates so the invocation is marked failed and retried.
    summary = asyncio.run(_tick())
    logger.info(f"Watchdog tick done: {summary}")
    return summary
