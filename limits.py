# Cloudflare Workers Paid plan ($5/mo) monthly allowances, failover priority
# and per-service route metadata. Pure data plus two lookups.

RESOURCE_LIMITS = {
    "workerRequests": 10_000_000,
    "d1RowsRead":     25_000_000_000,
    "d1RowsWritten":  50_000_000,
    "kvReads":        10_000_000,
    "kvWrites":       1_000_000,
    "doRequests":     1_000_000,
}

RESOURCE_KEYS = list(RESOURCE_LIMITS.keys())

RESOURCE_LABELS = {
    "workerRequests": "Worker Requests",
    "d1RowsRead":     "D1 Rows Read",
    "d1RowsWritten":  "D1 Rows Written",
    "kvReads":        "KV Reads",
    "kvWrites":       "KV Writes",
    "doRequests":     "DO Requests",
}

# Highest-traffic / most quota-intensive first. Services already diverted are skipped.
FAILOVER_PRIORITY = [
    "haiphen-api",
    "haiphen-secure",
    "haiphen-network",
    "haiphen-graph",
    "haiphen-risk",
    "haiphen-causal",
    "haiphen-supply",
    "haiphen-auth",
    "haiphen-contact",
    "edge-crawler",        # wrangler name for haiphen-crawler
    "haiphen-checkout",
    "haiphen-orchestrator",
]

# service → primary route pattern and the subdomain that gets a CNAME on failover
SERVICE_ROUTES = {
    "haiphen-api":          {"pattern": "api.haiphen.io/*",          "subdomain": "api"},
    "haiphen-auth":         {"pattern": "auth.haiphen.io/*",         "subdomain": "auth"},
    "haiphen-checkout":     {"pattern": "checkout.haiphen.io/*",     "subdomain": "checkout"},
    "haiphen-contact":      {"pattern": "haiphen-contact",           "subdomain": "contact"},  # workers.dev only
    "edge-crawler":         {"pattern": "crawler.haiphen.io/*",      "subdomain": "crawler"},
    "haiphen-orchestrator": {"pattern": "orchestrator.haiphen.io/*", "subdomain": "orchestrator"},
    "haiphen-secure":       {"pattern": "secure.haiphen.io/*",       "subdomain": "secure"},
    "haiphen-network":      {"pattern": "network.haiphen.io/*",      "subdomain": "network"},
    "haiphen-graph":        {"pattern": "graph.haiphen.io/*",        "subdomain": "graph"},
    "haiphen-risk":         {"pattern": "risk.haiphen.io/*",         "subdomain": "risk"},
    "haiphen-causal":       {"pattern": "causal.haiphen.io/*",       "subdomain": "causal"},
    "haiphen-supply":       {"pattern": "supply.haiphen.io/*",       "subdomain": "supply"},
}


def get_limit(resource: str) -> int:
    """Monthly allowance for a tracked resource. Raises KeyError for unknown keys."""
    return RESOURCE_LIMITS[resource]


def get_route(service: str):
    """Route metadata for a service, or None when the service is not routable."""
    return SERVICE_ROUTES.get(service)
