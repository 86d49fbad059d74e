"""
Prometheus metrics for the decision engine.
"""

from prometheus_client import Counter

DECISIONS = Counter(
    "authz_decisions_total",
    "Terminal authorization decisions",
    ["kind", "resource_type", "allowed"],
)
CACHE_LOOKUPS = Counter(
    "authz_cache_lookups_total",
    "Decision cache lookups",
    ["kind", "outcome"],
)
EVALUATION_ERRORS = Counter(
    "authz_evaluation_errors_total",
    "Checks that ended with an evaluation fault",
    ["kind", "error"],
)
INFLIGHT_JOINS = Counter(
    "authz_inflight_joins_total",
    "Checks that joined an identical evaluation already in flight",
    ["kind"],
)

__all__ = ["CACHE_LOOKUPS", "DECISIONS", "EVALUATION_ERRORS", "INFLIGHT_JOINS"]
