"""
Cloudflare usage polling through the GraphQL Analytics API.

One query per tracked resource, all in flight at once. A query that fails,
times out or returns GraphQL errors contributes 0 to the snapshot and one
error string; it never aborts the collection.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import httpx

from config import WatchdogConfig
from limits import RESOURCE_KEYS

logger = logging.getLogger(__name__)

CF_GQL_URL = "https://api.cloudflare.com/client/v4/graphql"


class UsageQueryError(Exception):
    """A single analytics query could not produce a count."""


@dataclass(frozen=True)
class UsageQuery:
    dataset: str        # GraphQL node under viewer.accounts
    field: str          # key inside `sum`
    date_only: bool     # filter on Date (YYYY-MM-DD) instead of Time
    needs_database: bool = False


USAGE_QUERIES = {
    "workerRequests": UsageQuery("workersInvocationsAdaptive", "requests", date_only=False),
    "d1RowsRead":     UsageQuery("d1AnalyticsAdaptiveGroups", "rowsRead", date_only=True, needs_database=True),
    "d1RowsWritten":  UsageQuery("d1AnalyticsAdaptiveGroups", "rowsWritten", date_only=True, needs_database=True),
    "kvReads":        UsageQuery("workersKvStorageAdaptive", "readOperations", date_only=True),
    "kvWrites":       UsageQuery("workersKvStorageAdaptive", "writeOperations", date_only=True),
    "doRequests":     UsageQuery("durableObjectsInvocationsAdaptiveGroups", "requests", date_only=True),
}


@dataclass(frozen=True)
class UsageResult:
    """Tagged outcome of one resource query: exactly one of value / error is set."""
    resource: str
    value: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def build_query(query: UsageQuery) -> str:
    scalar = "Date" if query.date_only else "Time"
    if query.date_only:
        time_filter = "date_geq: $start, date_leq: $end"
    else:
        time_filter = "datetime_geq: $start, datetime_leq: $end"
    db_var = ", $dbId: String!" if query.needs_database else ""
    db_filter = "databaseId: $dbId, " if query.needs_database else ""
    return f"""
    query Usage($accountId: String!, $start: {scalar}!, $end: {scalar}!{db_var}) {{
      viewer {{
        accounts(filter: {{ accountTag: $accountId }}) {{
          {query.dataset}(
            filter: {{ {db_filter}{time_filter} }}
            limit: 10000
          ) {{
            sum {{ {query.field} }}
          }}
        }}
      }}
    }}
    """


def build_variables(
    query: UsageQuery,
    config: WatchdogConfig,
    month_start: datetime,
    now: datetime,
) -> dict:
    if query.date_only:
        start, end = month_start.date().isoformat(), now.date().isoformat()
    else:
        start, end = _iso(month_start), _iso(now)
    variables = {"accountId": config.cf_account_id, "start": start, "end": end}
    if query.needs_database:
        variables["dbId"] = config.cf_d1_database_id
    return variables


def _iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def extract_count(body: dict, query: UsageQuery) -> int:
    """Pull `sum.<field>` out of the first row; an empty result set means 0."""
    accounts = ((body.get("data") or {}).get("viewer") or {}).get("accounts") or []
    if not accounts:
        return 0
    rows = accounts[0].get(query.dataset) or []
    if not rows:
        return 0
    value = (rows[0].get("sum") or {}).get(query.field) or 0
    return max(int(value), 0)


async def _post_graphql(http: httpx.AsyncClient, token: str, query: str, variables: dict) -> dict:
    try:
        res = await http.post(
            CF_GQL_URL,
            json={"query": query, "variables": variables},
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        )
    except httpx.HTTPError as e:
        raise UsageQueryError(f"{type(e).__name__} {e}") from e

    if res.status_code >= 400:
        raise UsageQueryError(f"HTTP {res.status_code} {res.text[:300]}")
    try:
        body = res.json()
    except ValueError:
        raise UsageQueryError(f"invalid JSON {res.text[:200]}")

    errors = body.get("errors") or []
    if errors:
        msgs = "; ".join(str(e.get("message", e)) for e in errors)
        raise UsageQueryError(f"GraphQL errors {msgs}")
    return body


async def fetch_resource_usage(
    resource: str,
    config: WatchdogConfig,
    http: httpx.AsyncClient,
    month_start: datetime,
    now: datetime,
) -> int:
    query = USAGE_QUERIES[resource]
    body = await _post_graphql(
        http,
        config.cf_api_token,
        build_query(query),
        build_variables(query, config, month_start, now),
    )
    return extract_count(body, query)


async def _query_one(
    resource: str,
    config: WatchdogConfig,
    http: httpx.AsyncClient,
    month_start: datetime,
    now: datetime,
) -> UsageResult:
    t0 = time.perf_counter()
    try:
        value = await asyncio.wait_for(
            fetch_resource_usage(resource, config, http, month_start, now),
            timeout=config.query_timeout_s,
        )
        result = UsageResult(resource, value=value)
    except asyncio.TimeoutError:
        result = UsageResult(resource, error=f"timed out after {config.query_timeout_s:g}s")
    except UsageQueryError as e:
        result = UsageResult(resource, error=str(e))
    except Exception as e:
        result = UsageResult(resource, error=f"{type(e).__name__}: {e}")
    logger.info(
        f"[TIMING] step=usage_query resource={resource} ok={result.ok} "
        f"duration_ms={1000*(time.perf_counter()-t0):.1f}"
    )
    return result


async def fetch_all_usage(
    config: WatchdogConfig,
    http: httpx.AsyncClient,
    month_start: datetime,
    now: datetime,
) -> Tuple[Dict[str, int], List[str]]:
    """
    Return ({resource: count}, errors) for the billing month so far.

    Without a CF_API_TOKEN nothing is queried: every count is 0 and a single
    error explains why, so a missing secret can never look like an overage.
    """
    counts = {key: 0 for key in RESOURCE_KEYS}
    errors: List[str] = []

    if not config.cf_api_token:
        errors.append("CF_API_TOKEN is not set; usage queries skipped")
        logger.error("[watchdog] CF_API_TOKEN is not set; reporting zero usage")
        return counts, errors
    if not config.cf_account_id:
        errors.append("CF_ACCOUNT_ID is not set")

    results = await asyncio.gather(
        *(_query_one(key, config, http, month_start, now) for key in RESOURCE_KEYS)
    )
    for result in results:
        if result.ok:
            counts[result.resource] = result.value
        else:
            errors.append(f"{result.resource}: {result.error}")

    if errors:
        logger.error(f"[watchdog] Usage fetch errors: {'; '.join(errors)}")
    return counts, errors
