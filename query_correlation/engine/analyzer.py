"""Correlation analysis entry point and result aggregation.

Cascade detection, contention detection and correlation scoring are
independent, so they run concurrently on a thread pool over the same
read-only inputs.  Their outputs feed the dependency graph, which feeds the
execution scheduler and (optionally) the impact predictor.  A detector that
fails is logged and replaced by an empty result so a partial analysis is
always produced.
"""

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from typing import Any

from query_correlation.config import Settings, get_settings
from query_correlation.engine.cascades import find_cascades
from query_correlation.engine.contention import detect_contention
from query_correlation.engine.correlation import score_correlations
from query_correlation.engine.graph import build_dependency_graph
from query_correlation.engine.history import AnalysisHistory
from query_correlation.engine.impact import predict_impact
from query_correlation.engine.models import (
    CorrelationAnalysisResult,
    CorrelationScan,
    HistoricalSnapshot,
    QueryCascade,
    QueryMetricRecord,
    ResourceContention,
    Severity,
)
from query_correlation.engine.resources import parse_table_vocabulary
from query_correlation.engine.scheduler import optimize_execution_order
from query_correlation.observability.metrics import (
    ANALYSES_TOTAL,
    ANALYSIS_DURATION,
    STAGE_DURATION,
    STAGE_FAILURES_TOTAL,
)

logger = logging.getLogger(__name__)

STRONG_CORRELATION_THRESHOLD = 0.7
MAX_OPPORTUNITIES = 5
_SEVERE = (Severity.HIGH, Severity.CRITICAL)


def _timed(stage: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    start = time.monotonic()
    try:
        return func(*args, **kwargs)
    finally:
        STAGE_DURATION.labels(stage=stage).observe(time.monotonic() - start)


def _collect(stage: str, future: "Future[Any]", fallback: Any) -> Any:
    try:
        return future.result()
    except Exception:
        STAGE_FAILURES_TOTAL.labels(stage=stage).inc()
        logger.warning("Analysis stage %s failed; continuing without it", stage, exc_info=True)
        return fallback


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def _key_findings(result: CorrelationAnalysisResult) -> list[str]:
    findings: list[str] = []
    if result.cascades:
        findings.append(
            f"Found {len(result.cascades)} query cascade patterns - queries that trigger other queries"
        )
    if result.contentions:
        severe = sum(1 for c in result.contentions if c.severity in _SEVERE)
        findings.append(f"Detected {len(result.contentions)} resource contentions ({severe} high severity)")
    if result.correlations:
        strong = sum(1 for c in result.correlations if c.correlation_coefficient > STRONG_CORRELATION_THRESHOLD)
        findings.append(f"Identified {strong} strong correlations between queries")
    if result.correlations_truncated:
        findings.append("Correlation scan was truncated; treat correlations as lower-confidence")
    if result.dependency_graph.adjustments:
        findings.append(
            f"Broke {len(result.dependency_graph.adjustments)} cyclic dependency edge(s) while building the graph"
        )
    plan = result.execution_plan
    if plan is not None and plan.time_savings_ms > 0:
        findings.append(
            f"Reordering execution into {plan.parallel_batches} batches saves "
            f"{plan.time_savings_ms:.0f}ms ({plan.improvement_percent:.1f}%)"
        )
    return findings


def _optimization_opportunities(result: CorrelationAnalysisResult) -> list[str]:
    opportunities: list[str] = []
    for cascade in sorted(result.cascades, key=lambda c: -c.total_cascade_time_ms)[:3]:
        noun = "query" if len(cascade.following_queries) == 1 else "queries"
        opportunities.append(
            f"Optimize cascade starting with query {cascade.trigger_query[:8]}... "
            f"to improve {len(cascade.following_queries)} dependent {noun}"
        )
    for contention in [c for c in result.contentions if c.severity in _SEVERE][:2]:
        opportunities.append(
            f"Resolve {contention.severity.value.lower()} contention on {contention.resource_name} "
            f"affecting {len(contention.competing_queries)} queries"
        )
    return opportunities[:MAX_OPPORTUNITIES]


def _summary(result: CorrelationAnalysisResult) -> str:
    recovery = result.potential_savings_ms / max(1.0, result.estimated_time_wasted_ms) * 100.0
    lines = [
        "Query Correlation Analysis Complete",
        "",
        f"Analyzed: {result.total_queries_analyzed} queries",
        f"Correlations Found: {result.correlations_found}"
        + (" (truncated)" if result.correlations_truncated else ""),
        "",
        "Key Patterns:",
        f"- {len(result.cascades)} query cascades",
        f"- {len(result.contentions)} resource contentions",
        f"- {len(result.correlations)} query correlations",
        "",
        "Performance Impact:",
        f"- Estimated time wasted: {result.estimated_time_wasted_ms:,.0f} ms",
        f"- Potential savings: {result.potential_savings_ms:,.0f} ms",
        f"- Improvement opportunity: {recovery:.1f}%",
    ]
    if result.optimization_opportunities:
        lines.extend(["", "Top Opportunities:"])
        lines.extend(f"- {o}" for o in result.optimization_opportunities[:3])
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def analyze_correlations(
    queries: Sequence[QueryMetricRecord],
    snapshots: Sequence[HistoricalSnapshot],
    *,
    settings: Settings | None = None,
    target_hash: str | None = None,
    improvement_ratio: float | None = None,
    cancel_event: threading.Event | None = None,
    history: AnalysisHistory | None = None,
) -> CorrelationAnalysisResult:
    """Run the full correlation analysis over one batch of metrics.

    Args:
        queries: Query metric records (empty input gives an empty result).
        snapshots: Historical co-execution snapshots for correlation scoring.
        settings: Engine settings; defaults to ``get_settings()``.
        target_hash: When set, also predict the impact of optimizing this query.
        improvement_ratio: Assumed target speed-up; defaults to the configured ratio.
        cancel_event: Stops the correlation scan early (result marked truncated).
        history: Optional ring buffer that receives a summary of the result.

    Raises:
        ValueError: If ``target_hash`` is not among ``queries``.
    """
    settings = settings or get_settings()
    start = time.monotonic()
    logger.info("Starting correlation analysis for %d queries, %d snapshots", len(queries), len(snapshots))

    try:
        result = _analyze(queries, snapshots, settings, target_hash, improvement_ratio, cancel_event)
    except Exception:
        ANALYSES_TOTAL.labels(status="error").inc()
        ANALYSIS_DURATION.observe(time.monotonic() - start)
        raise

    ANALYSES_TOTAL.labels(status="success").inc()
    ANALYSIS_DURATION.observe(time.monotonic() - start)
    if history is not None:
        history.record(result)

    logger.info(
        "Correlation analysis complete: %d cascades, %d contentions, %d correlations%s",
        len(result.cascades),
        len(result.contentions),
        result.correlations_found,
        " (truncated)" if result.correlations_truncated else "",
    )
    return result


def _analyze(
    queries: Sequence[QueryMetricRecord],
    snapshots: Sequence[HistoricalSnapshot],
    settings: Settings,
    target_hash: str | None,
    improvement_ratio: float | None,
    cancel_event: threading.Event | None,
) -> CorrelationAnalysisResult:
    target = None
    if target_hash is not None:
        target = next((q for q in queries if q.query_hash == target_hash), None)
        if target is None:
            msg = f"Target query {target_hash} is not among the analysed queries"
            raise ValueError(msg)

    records = tuple(queries)
    history_rows = tuple(snapshots)
    known_tables = parse_table_vocabulary(settings.known_tables)
    window = timedelta(seconds=settings.cascade_window_seconds)

    with ThreadPoolExecutor(max_workers=settings.analysis_workers, thread_name_prefix="correlation") as pool:
        cascades_future = pool.submit(
            _timed,
            "cascades",
            find_cascades,
            records,
            window,
            lookahead=settings.cascade_lookahead,
            jitter_tolerance_ms=settings.cascade_jitter_tolerance_ms,
        )
        contention_future = pool.submit(
            _timed,
            "contention",
            detect_contention,
            records,
            known_tables=known_tables,
            fallback_resource=settings.fallback_resource,
            competitor_weight=settings.contention_competitor_weight,
        )
        correlation_future = pool.submit(
            _timed,
            "correlation",
            score_correlations,
            records,
            history_rows,
            known_tables=known_tables,
            fallback_resource=settings.fallback_resource,
            max_pairs=settings.correlation_max_pairs or None,
            cancel_event=cancel_event,
            execute_together_threshold=settings.correlation_execute_together_threshold,
            confidence_per_observation=settings.correlation_confidence_per_observation,
        )

    cascades: list[QueryCascade] = _collect("cascades", cascades_future, [])
    contentions: list[ResourceContention] = _collect("contention", contention_future, [])
    scan: CorrelationScan = _collect("correlation", correlation_future, CorrelationScan())

    graph = _timed(
        "graph",
        build_dependency_graph,
        records,
        cascades=cascades,
        contentions=contentions,
        window=window,
        bottleneck_count=settings.bottleneck_count,
        known_tables=known_tables,
        fallback_resource=settings.fallback_resource,
    )
    plan = _timed(
        "schedule",
        optimize_execution_order,
        records,
        graph=graph,
        max_lanes=settings.max_parallel_lanes,
        shares_threshold=settings.shares_exclusion_threshold,
        ignored_resources=(settings.fallback_resource,),
    )

    impact = None
    if target is not None:
        ratio = settings.default_improvement_ratio if improvement_ratio is None else improvement_ratio
        impact = _timed("impact", predict_impact, target, records, improvement_ratio=ratio, graph=graph)

    result = CorrelationAnalysisResult(
        analysis_date=datetime.now(UTC),
        total_queries_analyzed=len(records),
        correlations_found=len(scan.correlations),
        cascades=cascades,
        contentions=contentions,
        correlations=scan.correlations,
        correlations_truncated=scan.truncated,
        dependency_graph=graph,
        execution_plan=plan,
        impact=impact,
    )
    result.key_findings = _key_findings(result)
    result.optimization_opportunities = _optimization_opportunities(result)
    result.estimated_time_wasted_ms = sum(c.average_wait_time_ms * c.affected_executions for c in result.contentions)
    result.potential_savings_ms = result.estimated_time_wasted_ms * settings.savings_recovery_ratio
    result.summary = _summary(result)
    return result
