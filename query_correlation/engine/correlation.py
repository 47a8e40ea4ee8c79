"""Pairwise co-occurrence correlation across historical snapshots.

The pairwise pass is the only super-linear step of an analysis, so it honours
a cancellation event and a pair-evaluation cap and reports truncation instead
of running unbounded.
"""

import logging
import math
import threading
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from itertools import combinations

from query_correlation.engine.models import (
    CorrelationScan,
    CorrelationType,
    HistoricalSnapshot,
    QueryCorrelation,
    QueryMetricRecord,
    QuerySnapshotRow,
)
from query_correlation.engine.resources import DEFAULT_FALLBACK_RESOURCE, DEFAULT_KNOWN_TABLES, extract_resources
from query_correlation.observability.metrics import CORRELATION_TRUNCATIONS_TOTAL, RECORDS_SKIPPED_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_EXECUTE_TOGETHER_THRESHOLD = 0.5
DEFAULT_CONFIDENCE_PER_OBSERVATION = 10.0
DEFAULT_SNAPSHOT_BUCKET = timedelta(minutes=1)

PairKey = tuple[str, str]


def group_snapshot_rows(
    rows: Sequence[QuerySnapshotRow],
    bucket: timedelta = DEFAULT_SNAPSHOT_BUCKET,
) -> list[HistoricalSnapshot]:
    """Group per-query snapshot rows into co-execution snapshots.

    Rows whose timestamps fall into the same ``bucket``-sized window (aligned
    to the Unix epoch) form one snapshot. Output is ordered by time.
    """
    bucket_seconds = bucket.total_seconds()
    if bucket_seconds <= 0:
        msg = "Snapshot bucket must be a positive duration"
        raise ValueError(msg)

    grouped: dict[int, tuple[datetime, list[str]]] = {}
    for row in rows:
        key = math.floor(row.timestamp.timestamp() / bucket_seconds)
        start, hashes = grouped.setdefault(key, (datetime.fromtimestamp(key * bucket_seconds, tz=UTC), []))
        if row.query_hash not in hashes:
            hashes.append(row.query_hash)

    return [HistoricalSnapshot(timestamp=start, query_hashes=hashes) for _, (start, hashes) in sorted(grouped.items())]


def _correlation_type(coefficient: float) -> CorrelationType:
    if coefficient > 0:
        return CorrelationType.POSITIVE
    if coefficient < 0:
        return CorrelationType.NEGATIVE
    return CorrelationType.NONE


def score_correlations(
    queries: Sequence[QueryMetricRecord],
    snapshots: Sequence[HistoricalSnapshot],
    *,
    known_tables: frozenset[str] = DEFAULT_KNOWN_TABLES,
    fallback_resource: str = DEFAULT_FALLBACK_RESOURCE,
    max_pairs: int | None = None,
    cancel_event: threading.Event | None = None,
    execute_together_threshold: float = DEFAULT_EXECUTE_TOGETHER_THRESHOLD,
    confidence_per_observation: float = DEFAULT_CONFIDENCE_PER_OBSERVATION,
) -> CorrelationScan:
    """Score every pair of analysed queries that co-occur in at least one snapshot.

    coefficient = co-occurrences / sqrt(count(A) * count(B)), which lies in
    (0, 1] because co-occurrences never exceed either count. Pairs that never
    share a snapshot get no entry at all.

    Args:
        queries: Records under analysis; snapshot hashes outside this set are ignored.
        snapshots: Historical co-execution snapshots, scanned in time order.
        max_pairs: Stop after this many pair evaluations (None or 0 = unlimited).
        cancel_event: Set from another thread to stop the scan early.

    Returns:
        A CorrelationScan; ``truncated`` is True when the scan stopped early and
        the correlations cover only the snapshots scanned so far.
    """
    known_hashes = {q.query_hash for q in queries}
    if not known_hashes or not snapshots:
        return CorrelationScan()

    occurrences: dict[str, int] = {}
    co_occurrences: dict[PairKey, int] = {}
    pairs_evaluated = 0
    snapshots_scanned = 0
    truncated = False

    for snapshot in sorted(snapshots, key=lambda s: s.timestamp):
        if cancel_event is not None and cancel_event.is_set():
            truncated = True
            break
        try:
            members = sorted({h for h in snapshot.query_hashes if h in known_hashes})
        except TypeError as exc:
            RECORDS_SKIPPED_TOTAL.labels(stage="correlation_snapshot").inc()
            logger.warning("Skipping malformed snapshot at %s: %s", snapshot.timestamp, exc)
            continue

        snapshots_scanned += 1
        for h in members:
            occurrences[h] = occurrences.get(h, 0) + 1

        for key in combinations(members, 2):
            if max_pairs and pairs_evaluated >= max_pairs:
                truncated = True
                break
            co_occurrences[key] = co_occurrences.get(key, 0) + 1
            pairs_evaluated += 1
        if truncated:
            break

    if truncated:
        CORRELATION_TRUNCATIONS_TOTAL.inc()
        logger.warning(
            "Correlation scan truncated after %d pair evaluations (%d/%d snapshots)",
            pairs_evaluated,
            snapshots_scanned,
            len(snapshots),
        )

    resources_by_hash: dict[str, set[str]] = {}
    for record in queries:
        if record.query_hash in resources_by_hash:
            continue
        try:
            resources_by_hash[record.query_hash] = extract_resources(record.query_text, known_tables, fallback_resource)
        except Exception as exc:
            RECORDS_SKIPPED_TOTAL.labels(stage="resource_extraction").inc()
            logger.debug("No resources for query %s: %s", record.query_hash, exc)

    correlations: list[QueryCorrelation] = []
    for (first, second), together in co_occurrences.items():
        try:
            coefficient = together / math.sqrt(occurrences[first] * occurrences[second])
            coefficient = round(min(1.0, coefficient), 6)
            shared = resources_by_hash.get(first, set()) & resources_by_hash.get(second, set())
            correlations.append(
                QueryCorrelation(
                    query1_hash=first,
                    query2_hash=second,
                    correlation_coefficient=coefficient,
                    correlation_type=_correlation_type(coefficient),
                    execute_together=coefficient >= execute_together_threshold,
                    share_resources=bool(shared),
                    confidence=round(min(100.0, together * confidence_per_observation), 2),
                    observation_count=together,
                    description=(
                        f"Queries executed together in {together} of "
                        f"{max(occurrences[first], occurrences[second])} snapshots"
                    ),
                )
            )
        except (ArithmeticError, ValueError) as exc:
            RECORDS_SKIPPED_TOTAL.labels(stage="correlation_pair").inc()
            logger.warning("Skipping correlation pair %s/%s: %s", first, second, exc)

    correlations.sort(key=lambda c: (-c.correlation_coefficient, c.query1_hash, c.query2_hash))
    return CorrelationScan(
        correlations=correlations,
        truncated=truncated,
        pairs_evaluated=pairs_evaluated,
        snapshots_scanned=snapshots_scanned,
    )
