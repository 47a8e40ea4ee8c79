"""Tests for resource contention detection."""

import pytest

from query_correlation.engine.contention import (
    contention_score,
    contention_severity,
    detect_contention,
    map_resources,
)
from query_correlation.engine.models import Severity
from query_correlation.engine.resources import DEFAULT_FALLBACK_RESOURCE, RESOURCE_TYPE_SHARED, RESOURCE_TYPE_TABLE


class TestSeverityAndScore:
    @pytest.mark.parametrize(
        ("competitors", "expected"),
        [
            (1, None),
            (2, Severity.MEDIUM),
            (3, Severity.MEDIUM),
            (4, Severity.HIGH),
            (5, Severity.HIGH),
            (6, Severity.CRITICAL),
        ],
    )
    def test_severity_tiers(self, competitors: int, expected: Severity | None) -> None:
        assert contention_severity(competitors) == expected

    def test_score_is_capped(self) -> None:
        assert contention_score(20, 1_000_000) == 100.0

    def test_score_grows_with_competitors_and_frequency(self) -> None:
        assert contention_score(3, 10) > contention_score(2, 10)
        assert contention_score(2, 1000) > contention_score(2, 10)

    def test_score_without_executions(self) -> None:
        assert contention_score(2, 0) == 30.0


class TestDetectContention:
    """Grouping queries by referenced table."""

    def test_two_custtable_readers_and_one_inventtable_reader(self, make_record) -> None:
        queries = [
            make_record("a", text="SELECT * FROM CUSTTABLE WHERE ACCOUNTNUM = @p1"),
            make_record("b", text="UPDATE CUSTTABLE SET CREDITMAX = @p1"),
            make_record("c", text="SELECT * FROM INVENTTABLE"),
        ]

        contentions = detect_contention(queries)

        assert len(contentions) == 1
        contention = contentions[0]
        assert contention.resource_name == "CUSTTABLE"
        assert contention.resource_type == RESOURCE_TYPE_TABLE
        assert sorted(contention.competing_queries) == ["a", "b"]
        assert contention.severity == Severity.MEDIUM
        assert contention.recommendations

    def test_wait_and_affected_executions_derived_from_inputs(self, make_record) -> None:
        queries = [
            make_record("a", text="SELECT * FROM CUSTTABLE", elapsed_ms=100, executions=30),
            make_record("b", text="SELECT * FROM CUSTTABLE", elapsed_ms=300, executions=10),
        ]

        contention = detect_contention(queries)[0]

        # weighted mean = (100*30 + 300*10) / 40 = 150; wait = 150 * 1/2
        assert contention.affected_executions == 40
        assert contention.average_wait_time_ms == pytest.approx(75.0)
        assert contention.performance_degradation_pct == pytest.approx(33.33, abs=0.01)

    def test_never_emits_single_competitor(self, make_record) -> None:
        tables = ["CUSTTABLE", "INVENTTABLE", "SALESTABLE", "PURCHLINE", "VENDTABLE"]
        queries = [make_record(f"q{i}", text=f"SELECT * FROM {t}") for i, t in enumerate(tables)]
        assert detect_contention(queries) == []

    def test_duplicate_hash_is_one_competitor(self, make_record) -> None:
        queries = [
            make_record("a", text="SELECT * FROM CUSTTABLE", executions=5),
            make_record("a", text="SELECT * FROM CUSTTABLE", executions=7),
        ]
        assert detect_contention(queries) == []

    def test_unrecognised_text_lands_in_shared_bucket(self, make_record) -> None:
        queries = [make_record("a", text="SELECT 1"), make_record("b", text="SELECT 2")]

        contention = detect_contention(queries)[0]

        assert contention.resource_name == DEFAULT_FALLBACK_RESOURCE
        assert contention.resource_type == RESOURCE_TYPE_SHARED

    def test_sorted_by_score(self, make_record) -> None:
        queries = [make_record(f"c{i}", text="SELECT * FROM CUSTTABLE") for i in range(4)]
        queries += [make_record(f"v{i}", text="SELECT * FROM VENDTABLE") for i in range(2)]

        contentions = detect_contention(queries)

        assert [c.resource_name for c in contentions] == ["CUSTTABLE", "VENDTABLE"]
        assert contentions[0].severity == Severity.HIGH

    def test_empty_input(self) -> None:
        assert detect_contention([]) == []


class TestMapResources:
    def test_first_record_per_hash_kept(self, make_record) -> None:
        first = make_record("a", text="SELECT * FROM CUSTTABLE", elapsed_ms=10)
        second = make_record("a", text="SELECT * FROM CUSTTABLE", elapsed_ms=20)

        access = map_resources([first, second])

        assert access == {"CUSTTABLE": {"a": first}}

    def test_extraction_failure_skips_record(self, make_record, monkeypatch: pytest.MonkeyPatch) -> None:
        def _boom(*_args: object) -> set[str]:
            raise ValueError("unparseable")

        monkeypatch.setattr("query_correlation.engine.contention.extract_resources", _boom)

        assert map_resources([make_record("a", text="???")]) == {}
