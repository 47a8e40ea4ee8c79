"""Resource contention detection: queries competing for the same table."""

import logging
import math
from collections.abc import Sequence

from query_correlation.engine.models import QueryMetricRecord, ResourceContention, Severity, stable_id
from query_correlation.engine.resources import (
    DEFAULT_FALLBACK_RESOURCE,
    DEFAULT_KNOWN_TABLES,
    RESOURCE_TYPE_SHARED,
    RESOURCE_TYPE_TABLE,
    extract_resources,
    resource_type,
)
from query_correlation.observability.metrics import RECORDS_SKIPPED_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_COMPETITOR_WEIGHT = 15.0

# Recommendation rules keyed by (severity, resource type). {resource} is filled in.
_RECOMMENDATION_RULES: dict[tuple[Severity, str], list[str]] = {
    (Severity.CRITICAL, RESOURCE_TYPE_TABLE): [
        "Consider adding a covering index on {resource}",
        "Implement query result caching for the hottest readers of {resource}",
        "Use READ COMMITTED SNAPSHOT or READ UNCOMMITTED where appropriate",
        "Stagger batch jobs that scan {resource}",
    ],
    (Severity.HIGH, RESOURCE_TYPE_TABLE): [
        "Consider adding a covering index on {resource}",
        "Implement query result caching",
        "Use READ UNCOMMITTED isolation where appropriate",
    ],
    (Severity.MEDIUM, RESOURCE_TYPE_TABLE): [
        "Monitor lock wait statistics",
        "Review index usage on {resource}",
    ],
    (Severity.CRITICAL, RESOURCE_TYPE_SHARED): [
        "Extend the known-table vocabulary so these queries can be attributed to real tables",
        "Capture lock and wait statistics to identify the contended objects",
    ],
    (Severity.HIGH, RESOURCE_TYPE_SHARED): [
        "Extend the known-table vocabulary so these queries can be attributed to real tables",
    ],
    (Severity.MEDIUM, RESOURCE_TYPE_SHARED): [
        "Monitor lock wait statistics",
    ],
}


def contention_severity(competitors: int) -> Severity | None:
    """Severity tier for a competitor count; None means no contention."""
    if competitors > 5:
        return Severity.CRITICAL
    if competitors > 3:
        return Severity.HIGH
    if competitors > 1:
        return Severity.MEDIUM
    return None


def contention_score(competitors: int, total_executions: int, weight: float = DEFAULT_COMPETITOR_WEIGHT) -> float:
    """Score in [0, 100], monotonic in competitor count and execution frequency."""
    return round(min(100.0, competitors * weight + 10.0 * math.log10(1 + total_executions)), 2)


def _wait_estimate(competing: list[QueryMetricRecord]) -> tuple[float, float]:
    """Return (average wait ms, weighted mean elapsed ms) for one contended resource.

    A competitor waits on average for the others' share of the resource, so the
    execution-weighted mean elapsed time is scaled by (n - 1) / n.
    """
    total_execs = sum(q.execution_count for q in competing)
    if total_execs > 0:
        mean_elapsed = sum(q.avg_elapsed_time_ms * q.execution_count for q in competing) / total_execs
    else:
        mean_elapsed = sum(q.avg_elapsed_time_ms for q in competing) / len(competing)
    n = len(competing)
    return mean_elapsed * (n - 1) / n, mean_elapsed


def map_resources(
    queries: Sequence[QueryMetricRecord],
    known_tables: frozenset[str] = DEFAULT_KNOWN_TABLES,
    fallback_resource: str = DEFAULT_FALLBACK_RESOURCE,
) -> dict[str, dict[str, QueryMetricRecord]]:
    """Map resource name -> {query hash: first record seen} in input order.

    Records whose text cannot be examined are skipped here only; they still
    take part in timing-based analysis elsewhere.
    """
    access: dict[str, dict[str, QueryMetricRecord]] = {}
    for record in queries:
        try:
            resources = extract_resources(record.query_text, known_tables, fallback_resource)
        except Exception as exc:
            RECORDS_SKIPPED_TOTAL.labels(stage="resource_extraction").inc()
            logger.warning("Skipping resource extraction for query %s: %s", record.query_hash, exc)
            continue
        for resource in sorted(resources):
            access.setdefault(resource, {}).setdefault(record.query_hash, record)
    return access


def detect_contention(
    queries: Sequence[QueryMetricRecord],
    *,
    known_tables: frozenset[str] = DEFAULT_KNOWN_TABLES,
    fallback_resource: str = DEFAULT_FALLBACK_RESOURCE,
    competitor_weight: float = DEFAULT_COMPETITOR_WEIGHT,
) -> list[ResourceContention]:
    """Group queries by referenced resource and score every shared resource.

    Only resources referenced by two or more distinct query hashes are
    reported. Results are sorted by score (highest first), then resource name.
    """
    if not queries:
        return []

    # Execution counts across every record of a hash, not just the first seen
    executions_by_hash: dict[str, int] = {}
    for record in queries:
        executions_by_hash[record.query_hash] = executions_by_hash.get(record.query_hash, 0) + record.execution_count

    contentions: list[ResourceContention] = []
    for resource, by_hash in map_resources(queries, known_tables, fallback_resource).items():
        severity = contention_severity(len(by_hash))
        if severity is None:
            continue

        competing = list(by_hash.values())
        hashes = list(by_hash)
        affected = sum(executions_by_hash[h] for h in hashes)
        wait_ms, mean_elapsed = _wait_estimate(competing)
        degradation = 100.0 * wait_ms / (wait_ms + mean_elapsed) if wait_ms + mean_elapsed > 0 else 0.0
        kind = resource_type(resource, fallback_resource)

        contentions.append(
            ResourceContention(
                contention_id=stable_id("contention", resource, *hashes),
                competing_queries=hashes,
                resource_type=kind,
                resource_name=resource,
                severity=severity,
                contention_score=contention_score(len(hashes), affected, competitor_weight),
                average_wait_time_ms=round(wait_ms, 3),
                performance_degradation_pct=round(degradation, 2),
                affected_executions=affected,
                recommendations=[r.format(resource=resource) for r in _RECOMMENDATION_RULES[(severity, kind)]],
                description=f"{len(hashes)} queries compete for access to {kind.lower()} '{resource}'",
            )
        )

    contentions.sort(key=lambda c: (-c.contention_score, c.resource_name))
    logger.debug("Detected %d contentions across %d records", len(contentions), len(queries))
    return contentions
