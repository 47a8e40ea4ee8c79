"""Tests for the end-to-end correlation analysis."""

import threading
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from query_correlation.config import Settings
from query_correlation.engine.analyzer import analyze_correlations
from query_correlation.engine.history import AnalysisHistory
from query_correlation.engine.models import HistoricalSnapshot

BASE = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


@pytest.fixture
def workload(make_record) -> list:
    return [
        make_record("a", text="SELECT * FROM CUSTTABLE WHERE ACCOUNTNUM = @p1", elapsed_ms=500, offset_ms=0),
        make_record("b", text="UPDATE CUSTTABLE SET CREDITMAX = @p1", elapsed_ms=300, offset_ms=50),
        make_record("c", text="SELECT * FROM INVENTTABLE", elapsed_ms=200, offset_ms=20_000),
        make_record("d", text="SELECT * FROM SALESTABLE", elapsed_ms=800, offset_ms=40_000),
    ]


@pytest.fixture
def snapshots() -> list[HistoricalSnapshot]:
    groups = [["a", "b"], ["a", "b", "c"], ["c", "d"], ["a", "b"]]
    return [HistoricalSnapshot(timestamp=BASE + timedelta(minutes=i), query_hashes=g) for i, g in enumerate(groups)]


class TestAnalyzeCorrelations:
    def test_full_result(self, workload, snapshots, mock_settings: Settings) -> None:
        result = analyze_correlations(workload, snapshots)

        assert result.total_queries_analyzed == 4
        assert [(c.trigger_query, c.following_queries) for c in result.cascades] == [("a", ["b"])]
        assert [c.resource_name for c in result.contentions] == ["CUSTTABLE"]
        assert result.correlations_found == len(result.correlations) > 0
        assert not result.correlations_truncated
        assert result.dependency_graph.total_nodes == 4
        assert result.execution_plan is not None
        assert result.execution_plan.optimized_total_time_ms <= 1800.0
        assert result.impact is None
        assert result.key_findings
        assert result.summary.startswith("Query Correlation Analysis Complete")

    def test_time_wasted_and_savings(self, workload, snapshots, mock_settings: Settings) -> None:
        result = analyze_correlations(workload, snapshots)

        contention = result.contentions[0]
        expected = contention.average_wait_time_ms * contention.affected_executions
        assert result.estimated_time_wasted_ms == pytest.approx(expected)
        assert result.potential_savings_ms == pytest.approx(expected * mock_settings.savings_recovery_ratio)

    def test_idempotent(self, workload, snapshots, mock_settings: Settings) -> None:
        first = analyze_correlations(workload, snapshots)
        second = analyze_correlations(workload, snapshots)

        assert first.cascades == second.cascades
        assert first.contentions == second.contentions
        assert first.correlations == second.correlations
        assert first.dependency_graph == second.dependency_graph
        assert first.execution_plan.parallel_groups == second.execution_plan.parallel_groups

    def test_empty_input(self, mock_settings: Settings) -> None:
        result = analyze_correlations([], [])

        assert result.total_queries_analyzed == 0
        assert result.cascades == []
        assert result.contentions == []
        assert result.correlations == []
        assert result.dependency_graph.nodes == []
        assert result.execution_plan is not None
        assert result.execution_plan.steps == []
        assert result.estimated_time_wasted_ms == 0.0

    def test_target_impact(self, workload, snapshots, mock_settings: Settings) -> None:
        result = analyze_correlations(workload, snapshots, target_hash="a", improvement_ratio=0.4)

        assert result.impact is not None
        assert result.impact.target_query_hash == "a"
        assert result.impact.direct_time_saving_ms == pytest.approx(200.0)
        assert {d.query_hash for d in result.impact.affected_query_details} == {"b"}

    def test_unknown_target_rejected(self, workload, snapshots, mock_settings: Settings) -> None:
        with pytest.raises(ValueError, match="not among"):
            analyze_correlations(workload, snapshots, target_hash="zzz")

    def test_cancelled_scan_marked_truncated(self, workload, snapshots, mock_settings: Settings) -> None:
        cancel = threading.Event()
        cancel.set()

        result = analyze_correlations(workload, snapshots, cancel_event=cancel)

        assert result.correlations_truncated
        assert result.correlations == []
        assert "(truncated)" in result.summary

    def test_failed_detector_degrades_to_empty(self, workload, snapshots, mock_settings: Settings) -> None:
        with patch("query_correlation.engine.analyzer.find_cascades", side_effect=RuntimeError("boom")):
            result = analyze_correlations(workload, snapshots)

        assert result.cascades == []
        assert result.contentions
        assert result.dependency_graph.total_nodes == 4

    def test_records_history(self, workload, snapshots, mock_settings: Settings) -> None:
        history = AnalysisHistory(3)

        analyze_correlations(workload, snapshots, history=history)

        assert len(history) == 1
        assert history.recent()[0].total_queries_analyzed == 4

    def test_explicit_settings_override(self, workload, snapshots) -> None:
        settings = Settings(cascade_window_seconds=0.01, max_parallel_lanes=1)

        result = analyze_correlations(workload, snapshots, settings=settings)

        assert result.cascades == []
        assert result.execution_plan.parallel_batches == 4
