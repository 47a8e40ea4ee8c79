"""Cascade detection: queries reliably followed by other queries in a time window."""

import logging
import statistics
from collections.abc import Sequence
from datetime import timedelta

from query_correlation.engine.models import CascadeType, QueryCascade, QueryMetricRecord, stable_id

logger = logging.getLogger(__name__)

DEFAULT_CASCADE_WINDOW = timedelta(seconds=5)
DEFAULT_LOOKAHEAD = 5
DEFAULT_JITTER_TOLERANCE_MS = 100.0


def _cascade_confidence(delays: list[float]) -> float:
    """Confidence grows with follower count and shrinks with delay variance."""
    sample_factor = len(delays) / (len(delays) + 1)
    mean = statistics.fmean(delays)
    spread = statistics.pstdev(delays) / mean if mean > 0 else 0.0
    return round(100.0 * sample_factor / (1.0 + spread), 2)


def _cascade_type(delays: list[float], jitter_tolerance_ms: float) -> CascadeType:
    if len(delays) == 1:
        return CascadeType.SEQUENTIAL
    if max(delays) - min(delays) > jitter_tolerance_ms:
        return CascadeType.MIXED
    return CascadeType.PARALLEL


def find_cascades(
    queries: Sequence[QueryMetricRecord],
    window: timedelta = DEFAULT_CASCADE_WINDOW,
    *,
    lookahead: int = DEFAULT_LOOKAHEAD,
    jitter_tolerance_ms: float = DEFAULT_JITTER_TOLERANCE_MS,
) -> list[QueryCascade]:
    """Find trigger -> follower sequences by last-execution time.

    Each record is compared with at most ``lookahead`` later records, so the
    scan is O(N * lookahead) rather than O(N^2).

    Args:
        queries: Metric records; not modified.
        window: Maximum trigger-to-follower delay.
        lookahead: Number of subsequent records inspected per trigger.
        jitter_tolerance_ms: Follower delay spread above which a multi-follower
            cascade is Mixed rather than Parallel.

    Returns:
        One cascade per record that has at least one follower, in time order.
    """
    if not queries:
        return []

    window_ms = window.total_seconds() * 1000.0
    ordered = sorted(queries, key=lambda q: q.last_execution_time)
    cascades: list[QueryCascade] = []

    for i, trigger in enumerate(ordered):
        followers: list[QueryMetricRecord] = []
        delays: list[float] = []
        seen = {trigger.query_hash}

        for follower in ordered[i + 1 : i + 1 + lookahead]:
            delay_ms = (follower.last_execution_time - trigger.last_execution_time).total_seconds() * 1000.0
            if delay_ms > window_ms:
                break  # sorted input: every later record is further away
            if follower.query_hash in seen:
                continue  # repeat executions: first delay per hash only, never the trigger itself
            seen.add(follower.query_hash)
            followers.append(follower)
            delays.append(delay_ms)

        if not followers:
            continue

        follower_hashes = [f.query_hash for f in followers]
        noun = "query" if len(followers) == 1 else "queries"
        cascades.append(
            QueryCascade(
                cascade_id=stable_id("cascade", trigger.query_hash, str(i), *follower_hashes),
                trigger_query=trigger.query_hash,
                following_queries=follower_hashes,
                average_delay_ms=round(statistics.fmean(delays), 3),
                delay_std_dev_ms=round(statistics.pstdev(delays), 3),
                confidence=_cascade_confidence(delays),
                observation_count=len(delays),
                total_cascade_time_ms=trigger.avg_elapsed_time_ms + sum(f.avg_elapsed_time_ms for f in followers),
                cascade_type=_cascade_type(delays, jitter_tolerance_ms),
                description=(
                    f"Query triggers {len(followers)} dependent {noun} within {window.total_seconds():g}s"
                ),
            )
        )

    logger.debug("Found %d cascades across %d records", len(cascades), len(queries))
    return cascades
