"""Tests for the batch execution scheduler."""

import random

import pytest

from query_correlation.engine.graph import build_dependency_graph
from query_correlation.engine.models import (
    DependencyGraph,
    ExecutionMode,
    GraphEdge,
    GraphNode,
    RelationshipType,
)
from query_correlation.engine.scheduler import optimize_execution_order

TABLES = ["CUSTTABLE", "INVENTTABLE", "SALESTABLE", "PURCHLINE", "VENDTABLE"]


class TestBatching:
    def test_five_independent_queries_on_two_lanes(self, make_record) -> None:
        queries = [
            make_record(f"q{i}", text=f"SELECT * FROM {table}", elapsed_ms=100.0 * (i + 1), offset_ms=i * 60_000)
            for i, table in enumerate(TABLES)
        ]

        plan = optimize_execution_order(queries, max_lanes=2)

        assert plan.parallel_batches == 3
        assert plan.parallel_lanes == 2
        assert plan.current_total_time_ms == 1500.0
        # longest first: [500, 400] [300, 200] [100]
        assert plan.optimized_total_time_ms == 900.0
        assert plan.optimized_total_time_ms < plan.current_total_time_ms
        assert plan.parallel_groups == [["q4", "q3"], ["q2", "q1"], ["q0"]]
        assert plan.time_savings_ms == 600.0
        assert plan.improvement_percent == 40.0

    def test_steps_carry_lane_and_offset(self, make_record) -> None:
        queries = [
            make_record(f"q{i}", text=f"SELECT * FROM {table}", elapsed_ms=100.0, offset_ms=i * 60_000)
            for i, table in enumerate(TABLES[:3])
        ]

        plan = optimize_execution_order(queries, max_lanes=2)

        assert [s.step_number for s in plan.steps] == [1, 2, 3]
        assert [(s.parallel_batch, s.lane) for s in plan.steps] == [(0, 0), (0, 1), (1, 0)]
        assert [s.start_offset_ms for s in plan.steps] == [0.0, 0.0, 100.0]
        assert plan.steps[0].execution_mode == ExecutionMode.PARALLEL
        assert plan.steps[2].execution_mode == ExecutionMode.SEQUENTIAL

    def test_single_lane_is_sequential(self, make_record) -> None:
        queries = [
            make_record(f"q{i}", text=f"SELECT * FROM {table}", elapsed_ms=50.0, offset_ms=i * 60_000)
            for i, table in enumerate(TABLES)
        ]

        plan = optimize_execution_order(queries, max_lanes=1)

        assert plan.parallel_batches == 5
        assert plan.optimized_total_time_ms == plan.current_total_time_ms
        assert plan.time_savings_ms == 0.0

    def test_empty_input(self) -> None:
        plan = optimize_execution_order([])
        assert plan.steps == []
        assert plan.optimized_total_time_ms == 0.0
        assert plan.summary == "No queries to schedule."


class TestConstraints:
    def test_triggers_edge_orders_follower_after_trigger(self, make_record) -> None:
        queries = [
            make_record("a", text="SELECT * FROM CUSTTABLE", elapsed_ms=100, offset_ms=0),
            make_record("b", text="SELECT * FROM VENDTABLE", elapsed_ms=400, offset_ms=200),
        ]

        plan = optimize_execution_order(queries, max_lanes=4)

        steps = {s.query_hash: s for s in plan.steps}
        assert steps["a"].parallel_batch < steps["b"].parallel_batch
        assert steps["b"].dependencies == ["a"]
        assert steps["a"].dependencies == []
        assert plan.optimized_total_time_ms == 500.0

    def test_strong_shares_edge_prevents_concurrency(self, make_record) -> None:
        queries = [
            make_record(f"q{i}", text="SELECT * FROM CUSTTABLE", elapsed_ms=100, offset_ms=i * 60_000)
            for i in range(3)
        ]

        plan = optimize_execution_order(queries, max_lanes=4)

        assert plan.parallel_batches == 3
        assert plan.optimized_total_time_ms == plan.current_total_time_ms
        assert plan.steps[2].blocked_by == ["q0", "q1"]

    def test_weak_shares_edge_allows_concurrency(self, make_record) -> None:
        queries = [
            make_record(f"q{i}", text="SELECT * FROM CUSTTABLE", elapsed_ms=100, offset_ms=i * 60_000)
            for i in range(3)
        ]

        plan = optimize_execution_order(queries, max_lanes=4, shares_threshold=0.99)

        assert plan.parallel_batches == 1

    def test_fallback_bucket_does_not_force_exclusion(self, make_record) -> None:
        queries = [make_record(f"q{i}", text="SELECT 1", elapsed_ms=100, offset_ms=i * 60_000) for i in range(4)]

        plan = optimize_execution_order(queries, max_lanes=4)

        assert plan.parallel_batches == 1
        assert plan.optimized_total_time_ms == 100.0

    def test_caller_graph_with_cycle_is_still_scheduled(self, make_record) -> None:
        queries = [make_record("a", elapsed_ms=10), make_record("b", elapsed_ms=20)]
        graph = DependencyGraph(
            nodes=[GraphNode(query_hash="a", execution_time_ms=10), GraphNode(query_hash="b", execution_time_ms=20)],
            edges=[
                GraphEdge(
                    from_query_hash="a", to_query_hash="b", relationship_type=RelationshipType.BLOCKS, strength=0.9
                ),
                GraphEdge(
                    from_query_hash="b", to_query_hash="a", relationship_type=RelationshipType.BLOCKS, strength=0.1
                ),
            ],
        )

        plan = optimize_execution_order(queries, graph=graph)

        steps = {s.query_hash: s for s in plan.steps}
        assert steps["b"].dependencies == ["a"]
        assert plan.parallel_batches == 2

    def test_caller_graph_edges_to_unknown_nodes_ignored(self, make_record) -> None:
        queries = [make_record("a", elapsed_ms=10), make_record("b", elapsed_ms=20)]
        graph = DependencyGraph(
            nodes=[GraphNode(query_hash="a", execution_time_ms=10), GraphNode(query_hash="b", execution_time_ms=20)],
            edges=[
                GraphEdge(
                    from_query_hash="a",
                    to_query_hash="zzz",
                    relationship_type=RelationshipType.SHARES,
                    strength=0.9,
                    resource="CUSTTABLE",
                ),
                GraphEdge(
                    from_query_hash="b", to_query_hash="zzz", relationship_type=RelationshipType.TRIGGERS, strength=0.9
                ),
            ],
        )

        plan = optimize_execution_order(queries, graph=graph)

        assert len(plan.steps) == 2
        assert plan.parallel_batches == 1
        assert all(s.dependencies == [] and s.blocked_by == [] for s in plan.steps)

    def test_close_executions_become_trigger_chains(self, make_record) -> None:
        # Without a caller graph, every pair inside the cascade window is a Triggers edge
        queries = [
            make_record(f"q{i}", text=f"SELECT * FROM {table}", elapsed_ms=100, offset_ms=i * 10)
            for i, table in enumerate(TABLES)
        ]

        plan = optimize_execution_order(queries, max_lanes=2)

        assert plan.parallel_batches == 5
        assert [s.query_hash for s in plan.steps] == ["q0", "q1", "q2", "q3", "q4"]
        assert plan.optimized_total_time_ms == plan.current_total_time_ms
        assert plan.time_savings_ms == 0.0


class TestNeverSlower:
    @pytest.mark.parametrize("seed", range(8))
    def test_optimized_total_never_exceeds_sequential_sum(self, make_record, seed: int) -> None:
        rng = random.Random(seed)
        queries = [
            make_record(
                f"q{rng.randrange(12)}",
                text=f"SELECT * FROM {rng.choice(TABLES)}",
                elapsed_ms=rng.uniform(1, 1000),
                offset_ms=rng.uniform(0, 20_000),
            )
            for _ in range(15)
        ]

        plan = optimize_execution_order(queries, max_lanes=rng.randint(1, 4))

        assert plan.optimized_total_time_ms <= sum(q.avg_elapsed_time_ms for q in queries)
        assert len(plan.steps) == len({q.query_hash for q in queries})

    def test_plan_id_is_deterministic(self, make_record) -> None:
        queries = [make_record(f"q{i}", elapsed_ms=10.0 * i, offset_ms=i * 60_000) for i in range(4)]
        graph = build_dependency_graph(queries)
        assert (
            optimize_execution_order(queries, graph=graph).plan_id
            == optimize_execution_order(queries, graph=graph).plan_id
        )
