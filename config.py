import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_WARN_PCT = 60
DEFAULT_FAIL_PCT = 80
DEFAULT_QUERY_TIMEOUT_S = 10.0


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    """Parse an integer env var; anything unparseable or non-positive falls back to default."""
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default
    return value if value > 0 else default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class WatchdogConfig:
    # Cloudflare
    cf_api_token: str = ""
    cf_account_id: str = ""
    cf_zone_id: str = ""
    cf_d1_database_id: str = ""
    zone_domain: str = "haiphen.io"

    # Thresholds
    warn_pct: int = DEFAULT_WARN_PCT
    fail_pct: int = DEFAULT_FAIL_PCT
    query_timeout_s: float = DEFAULT_QUERY_TIMEOUT_S

    # Admin surface
    admin_token: str = ""

    # Digest (SendGrid)
    sendgrid_api_key: str = ""
    digest_to_email: str = "jude@haiphen.io"
    digest_from_email: str = "jude@haiphen.io"
    digest_from_name: str = "Haiphen Watchdog"
    digest_template_id: str = ""

    # Standup (GitHub Actions)
    github_pat: str = ""
    github_repo: str = "judesafo/haiphen-aboutme"
    github_workflow: str = "gcp-standup.yml"
    github_ref: str = "master"

    # Secondary environment (Cloud Run)
    gcp_project: str = ""
    gcp_region: str = "us-central1"

    # State backend
    redis_url: Optional[str] = None
    state_file: str = "watchdog_state.json"


def load_config(env: Optional[Mapping[str, str]] = None) -> WatchdogConfig:
    """Build a WatchdogConfig from environment variables (os.environ by default)."""
    env = os.environ if env is None else env
    return WatchdogConfig(
        cf_api_token=env.get("CF_API_TOKEN", ""),
        cf_account_id=env.get("CF_ACCOUNT_ID", ""),
        cf_zone_id=env.get("CF_ZONE_ID", ""),
        cf_d1_database_id=env.get("CF_D1_DATABASE_ID", ""),
        zone_domain=env.get("ZONE_DOMAIN") or "haiphen.io",
        warn_pct=_env_int(env, "WARNING_THRESHOLD_PCT", DEFAULT_WARN_PCT),
        fail_pct=_env_int(env, "FAILOVER_THRESHOLD_PCT", DEFAULT_FAIL_PCT),
        query_timeout_s=_env_float(env, "USAGE_QUERY_TIMEOUT_S", DEFAULT_QUERY_TIMEOUT_S),
        admin_token=env.get("ADMIN_TOKEN", ""),
        sendgrid_api_key=env.get("SENDGRID_API_KEY", ""),
        digest_to_email=env.get("DIGEST_TO_EMAIL") or "jude@haiphen.io",
        digest_from_email=env.get("DIGEST_FROM_EMAIL") or "jude@haiphen.io",
        digest_from_name=env.get("DIGEST_FROM_NAME") or "Haiphen Watchdog",
        digest_template_id=env.get("WATCHDOG_DIGEST_TEMPLATE_ID", ""),
        github_pat=env.get("GITHUB_PAT", ""),
        github_repo=env.get("GITHUB_REPO") or "judesafo/haiphen-aboutme",
        github_workflow=env.get("GITHUB_WORKFLOW") or "gcp-standup.yml",
        github_ref=env.get("GITHUB_DISPATCH_REF") or "master",
        gcp_project=env.get("GCP_PROJECT", ""),
        gcp_region=env.get("GCP_REGION") or "us-central1",
        redis_url=env.get("WATCHDOG_REDIS_URL") or None,
        state_file=env.get("WATCHDOG_STATE_FILE") or "watchdog_state.json",
    )
