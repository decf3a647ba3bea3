"""
Daily usage digest: turns the persisted WatchdogState into template data and
delivers it through SendGrid (dynamic template when configured, otherwise the
inline HTML rendered from templates/digest.html).
"""
import calendar
import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import WatchdogConfig
from limits import RESOURCE_LABELS, RESOURCE_LIMITS
from state_store import WatchdogState
from thresholds import AlertLevel

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
WATCHDOG_URL = "https://haiphen.io/#watchdog"

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
_templates = Environment(
    loader=FileSystemLoader(os.path.join(BASE_DIR, "templates")),
    autoescape=select_autoescape(["html"]),
)

LEVEL_COLORS = {
    AlertLevel.CRITICAL: "#ef4444",
    AlertLevel.FAILOVER: "#F59E0B",
    AlertLevel.WARNING: "#F59E0B",
    AlertLevel.NORMAL: "#10B981",
}


def bar_color(pct: float) -> str:
    if pct >= 80:
        return "#ef4444"
    if pct >= 60:
        return "#F59E0B"
    return "#5A9BD4"


def days_remaining(now: datetime) -> int:
    last_day = calendar.monthrange(now.year, now.month)[1]
    return last_day - now.day + 1


def build_digest_data(state: WatchdogState, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now(timezone.utc)

    resources = []
    for key, limit in RESOURCE_LIMITS.items():
        data = state.usage.get(key)
        current = data.current if data else 0
        pct = data.pct if data else 0.0
        resources.append({
            "label": RESOURCE_LABELS[key],
            "current": f"{current:,}",
            "limit": f"{limit:,}",
            "pct": f"{pct:.1f}%",
            "pct_num": min(pct, 100.0),
            "bar_color": bar_color(pct),
        })

    routing = [
        {
            "service": svc,
            "target": record.secondary_target,
            "since": record.failed_at.split("T")[0] if record.failed_at else "-",
        }
        for svc, record in state.routing.items()
    ]

    return {
        "date_label": now.date().isoformat(),
        "month_label": now.strftime("%b %Y"),
        "level": state.level.value.upper(),
        "level_color": LEVEL_COLORS[state.level],
        "days_remaining": days_remaining(now),
        "resources": resources,
        "diverted_services": state.diverted_services,
        "has_failovers": bool(state.routing),
        "routing": routing,
        "watchdog_url": WATCHDOG_URL,
        "fetch_errors": list(state.last_errors),
        "has_errors": bool(state.last_errors),
    }


def render_digest_html(data: dict) -> str:
    return _templates.get_template("digest.html").render(**data)


async def send_digest(config: WatchdogConfig, state: WatchdogState, http: httpx.AsyncClient) -> dict:
    """POST the digest to SendGrid. Returns {"ok", "status", "message_id"}."""
    data = build_digest_data(state)
    subject = f"Haiphen Watchdog - {data['date_label']} [{data['level']}]"

    personalization = {"to": [{"email": config.digest_to_email}]}
    body = {
        "from": {"email": config.digest_from_email, "name": config.digest_from_name},
        "personalizations": [personalization],
    }
    if config.digest_template_id:
        personalization["dynamic_template_data"] = data
        body["template_id"] = config.digest_template_id
    else:
        body["subject"] = subject
        body["content"] = [{"type": "text/html", "value": render_digest_html(data)}]

    t0 = time.perf_counter()
    res = await http.post(
        SENDGRID_URL,
        json=body,
        headers={"Authorization": f"Bearer {config.sendgrid_api_key}", "Content-Type": "application/json"},
    )
    message_id = res.headers.get("x-message-id")
    logger.info(
        f"[TIMING] step=digest_send status={res.status_code} "
        f"duration_ms={1000*(time.perf_counter()-t0):.1f}"
    )
    if res.status_code >= 400:
        logger.error(f"[watchdog-email] SendGrid error: {res.status_code} {res.text[:300]}")
        return {"ok": False, "status": res.status_code, "message_id": message_id}
    return {"ok": True, "status": res.status_code, "message_id": message_id}
