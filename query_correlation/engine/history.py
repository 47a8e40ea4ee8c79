"""Bounded, caller-owned history of recent correlation analyses.

The engine itself is stateless; callers that want a short memory of past
results create one of these and pass it to ``analyze_correlations``.
"""

import threading
from collections import deque
from datetime import datetime

from pydantic import BaseModel

from query_correlation.engine.models import CorrelationAnalysisResult


class AnalysisHistoryEntry(BaseModel):
    """Compact summary of one analysis."""

    analysis_date: datetime
    total_queries_analyzed: int
    cascades: int
    contentions: int
    correlations: int
    correlations_truncated: bool
    estimated_time_wasted_ms: float
    potential_savings_ms: float
    optimized_total_time_ms: float | None
    summary: str


class AnalysisHistory:
    """Ring buffer: once full, recording a new analysis evicts the oldest."""

    def __init__(self, max_entries: int) -> None:
        if max_entries < 1:
            msg = f"max_entries must be at least 1, got {max_entries}"
            raise ValueError(msg)
        self._entries: deque[AnalysisHistoryEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    @property
    def max_entries(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, result: CorrelationAnalysisResult) -> AnalysisHistoryEntry:
        entry = AnalysisHistoryEntry(
            analysis_date=result.analysis_date,
            total_queries_analyzed=result.total_queries_analyzed,
            cascades=len(result.cascades),
            contentions=len(result.contentions),
            correlations=len(result.correlations),
            correlations_truncated=result.correlations_truncated,
            estimated_time_wasted_ms=result.estimated_time_wasted_ms,
            potential_savings_ms=result.potential_savings_ms,
            optimized_total_time_ms=(
                result.execution_plan.optimized_total_time_ms if result.execution_plan is not None else None
            ),
            summary=result.summary,
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    def recent(self, limit: int | None = None) -> list[AnalysisHistoryEntry]:
        """Most recent entries first."""
        with self._lock:
            entries = list(reversed(self._entries))
        return entries if limit is None else entries[:limit]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
