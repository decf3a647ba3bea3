"""
GCP Cloud Function: weekday usage digest.
Triggered by Cloud Scheduler at 08:00 UTC Monday–Friday. Refreshes usage first
when the last tick is more than two hours old, then emails the digest.
"""
import asyncio
import logging

import functions_framework
import httpx

from config import load_config
from orchestrator import run_daily_digest
from state_store import open_kv

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def _digest():
    config = load_config()
    kv = open_kv(config)
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0)) as http:
            return await run_daily_digest(config, kv, http)
    finally:
        await kv.close()


@functions_framework.cloud_event
def handler(cloud_event):
    result = asyncio.run(_digest())
    if result is None:
        logger.info("Digest skipped: SENDGRID_API_KEY not configured.")
    else:
        logger.info(f"Digest result: {result}")
    return result
