"""FastAPI backend for the query correlation engine.

Exposes each engine operation as a JSON endpoint so the metric collector and
the DBA tooling can call it over HTTP.  The engine is CPU-bound, so every
call runs in a worker thread to keep the event loop responsive.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, TypeVar

from fastapi import FastAPI, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from query_correlation.config import get_settings
from query_correlation.engine.analyzer import analyze_correlations
from query_correlation.engine.cascades import find_cascades
from query_correlation.engine.contention import detect_contention
from query_correlation.engine.correlation import score_correlations
from query_correlation.engine.graph import build_dependency_graph
from query_correlation.engine.history import AnalysisHistory, AnalysisHistoryEntry
from query_correlation.engine.impact import predict_impact
from query_correlation.engine.models import (
    CorrelationAnalysisResult,
    CorrelationImpact,
    CorrelationScan,
    DependencyGraph,
    ExecutionPlan,
    HistoricalSnapshot,
    QueryCascade,
    QueryMetricRecord,
    ResourceContention,
)
from query_correlation.engine.resources import parse_table_vocabulary
from query_correlation.engine.scheduler import optimize_execution_order
from query_correlation.observability.metrics import (
    APP_INFO,
    REQUEST_DURATION,
    REQUESTS_IN_PROGRESS,
    REQUESTS_TOTAL,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class QueriesRequest(BaseModel):
    """Request body carrying only query metrics."""

    queries: list[QueryMetricRecord] = Field(default_factory=list)


class AnalyzeRequest(BaseModel):
    """Request body for POST /analyze."""

    queries: list[QueryMetricRecord] = Field(default_factory=list)
    snapshots: list[HistoricalSnapshot] = Field(default_factory=list)
    target_hash: str | None = None
    improvement_ratio: float | None = Field(default=None, ge=0, le=1)


class CascadesRequest(BaseModel):
    """Request body for POST /cascades."""

    queries: list[QueryMetricRecord] = Field(default_factory=list)
    window_seconds: float | None = Field(default=None, gt=0)


class CorrelationsRequest(BaseModel):
    """Request body for POST /correlations."""

    queries: list[QueryMetricRecord] = Field(default_factory=list)
    snapshots: list[HistoricalSnapshot] = Field(default_factory=list)


class ExecutionPlanRequest(BaseModel):
    """Request body for POST /execution-plan."""

    queries: list[QueryMetricRecord] = Field(default_factory=list)
    max_lanes: int | None = Field(default=None, ge=1)


class ImpactRequest(BaseModel):
    """Request body for POST /impact."""

    target: QueryMetricRecord
    related: list[QueryMetricRecord] = Field(default_factory=list)
    improvement_ratio: float | None = Field(default=None, ge=0, le=1)


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    history_enabled: bool


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the optional analysis history once at startup."""
    settings = get_settings()
    APP_INFO.info({"version": "0.1.0"})
    app.state.history = AnalysisHistory(settings.history_size) if settings.history_size > 0 else None
    logger.info("Query correlation engine ready (history size: %d)", settings.history_size)
    yield
    logger.info("Shutting down query correlation engine")


app = FastAPI(title="Query Correlation Engine", lifespan=lifespan)


async def _run(endpoint: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run an engine call in a thread, recording request metrics.

    ValueError from the engine is a caller error (HTTP 400); anything else is
    an internal failure (HTTP 500).
    """
    REQUESTS_IN_PROGRESS.labels(endpoint=endpoint).inc()
    start = time.monotonic()
    try:
        result = await asyncio.to_thread(func, *args, **kwargs)
    except ValueError as exc:
        REQUESTS_TOTAL.labels(endpoint=endpoint, status="rejected").inc()
        REQUEST_DURATION.labels(endpoint=endpoint).observe(time.monotonic() - start)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        REQUESTS_TOTAL.labels(endpoint=endpoint, status="error").inc()
        REQUEST_DURATION.labels(endpoint=endpoint).observe(time.monotonic() - start)
        logger.exception("%s failed", endpoint)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        REQUESTS_IN_PROGRESS.labels(endpoint=endpoint).dec()

    REQUEST_DURATION.labels(endpoint=endpoint).observe(time.monotonic() - start)
    REQUESTS_TOTAL.labels(endpoint=endpoint, status="success").inc()
    return result


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """The engine has no external dependencies; healthy once started."""
    return HealthResponse(status="healthy", history_enabled=app.state.history is not None)


@app.post("/analyze", response_model=CorrelationAnalysisResult)
async def analyze(request: AnalyzeRequest) -> CorrelationAnalysisResult:
    """Run the full correlation analysis."""
    if request.target_hash is not None and all(q.query_hash != request.target_hash for q in request.queries):
        REQUESTS_TOTAL.labels(endpoint="/analyze", status="rejected").inc()
        raise HTTPException(status_code=404, detail=f"Unknown target query hash: {request.target_hash}")

    return await _run(
        "/analyze",
        analyze_correlations,
        request.queries,
        request.snapshots,
        settings=get_settings(),
        target_hash=request.target_hash,
        improvement_ratio=request.improvement_ratio,
        history=app.state.history,
    )


@app.post("/cascades", response_model=list[QueryCascade])
async def cascades(request: CascadesRequest) -> list[QueryCascade]:
    """Find trigger -> follower cascades."""
    settings = get_settings()
    window = timedelta(seconds=request.window_seconds or settings.cascade_window_seconds)
    return await _run(
        "/cascades",
        find_cascades,
        request.queries,
        window,
        lookahead=settings.cascade_lookahead,
        jitter_tolerance_ms=settings.cascade_jitter_tolerance_ms,
    )


@app.post("/contention", response_model=list[ResourceContention])
async def contention(request: QueriesRequest) -> list[ResourceContention]:
    """Detect queries competing for the same resources."""
    settings = get_settings()
    return await _run(
        "/contention",
        detect_contention,
        request.queries,
        known_tables=parse_table_vocabulary(settings.known_tables),
        fallback_resource=settings.fallback_resource,
        competitor_weight=settings.contention_competitor_weight,
    )


@app.post("/correlations", response_model=CorrelationScan)
async def correlations(request: CorrelationsRequest) -> CorrelationScan:
    """Score pairwise co-occurrence correlations."""
    settings = get_settings()
    return await _run(
        "/correlations",
        score_correlations,
        request.queries,
        request.snapshots,
        known_tables=parse_table_vocabulary(settings.known_tables),
        fallback_resource=settings.fallback_resource,
        max_pairs=settings.correlation_max_pairs or None,
        execute_together_threshold=settings.correlation_execute_together_threshold,
        confidence_per_observation=settings.correlation_confidence_per_observation,
    )


@app.post("/dependency-graph", response_model=DependencyGraph)
async def dependency_graph(request: QueriesRequest) -> DependencyGraph:
    """Build the query dependency graph."""
    settings = get_settings()
    return await _run(
        "/dependency-graph",
        build_dependency_graph,
        request.queries,
        window=timedelta(seconds=settings.cascade_window_seconds),
        bottleneck_count=settings.bottleneck_count,
        known_tables=parse_table_vocabulary(settings.known_tables),
        fallback_resource=settings.fallback_resource,
    )


@app.post("/execution-plan", response_model=ExecutionPlan)
async def execution_plan(request: ExecutionPlanRequest) -> ExecutionPlan:
    """Produce a batched execution plan."""
    settings = get_settings()

    def _plan() -> ExecutionPlan:
        graph = build_dependency_graph(
            request.queries,
            window=timedelta(seconds=settings.cascade_window_seconds),
            known_tables=parse_table_vocabulary(settings.known_tables),
            fallback_resource=settings.fallback_resource,
        )
        return optimize_execution_order(
            request.queries,
            graph=graph,
            max_lanes=request.max_lanes or settings.max_parallel_lanes,
            shares_threshold=settings.shares_exclusion_threshold,
            ignored_resources=(settings.fallback_resource,),
        )

    return await _run("/execution-plan", _plan)


@app.post("/impact", response_model=CorrelationImpact)
async def impact(request: ImpactRequest) -> CorrelationImpact:
    """Predict the impact of optimizing one query."""
    settings = get_settings()
    ratio = settings.default_improvement_ratio if request.improvement_ratio is None else request.improvement_ratio
    return await _run(
        "/impact",
        predict_impact,
        request.target,
        request.related,
        improvement_ratio=ratio,
    )


@app.get("/history", response_model=list[AnalysisHistoryEntry])
async def history(limit: int | None = None) -> list[AnalysisHistoryEntry]:
    """Recent analyses, newest first (404 when history is disabled)."""
    if app.state.history is None:
        raise HTTPException(status_code=404, detail="Analysis history is disabled (HISTORY_SIZE is 0)")
    return app.state.history.recent(limit)
