"""Execution scheduler: reorder queries into parallel batches under resource constraints.

A list-scheduling heuristic over the dependency graph.  Queries are visited
in a topological order of Triggers / Blocks edges (longest first among ready
queries) and each one is placed in the earliest batch that

* comes after the batches of all its predecessors,
* still has a free lane, and
* holds no query it shares a strong Shares edge with.

Lanes inside a batch run concurrently and batches run back to back, so the
optimized total is the maximum lane finish time: the sum of each batch's
longest query.  That never exceeds the sequential sum.
"""

import logging
from collections.abc import Container, Iterable, Sequence
from datetime import UTC, datetime

import networkx as nx

from query_correlation.engine.graph import break_cycles, build_dependency_graph
from query_correlation.engine.models import (
    DependencyGraph,
    ExecutionMode,
    ExecutionPlan,
    ExecutionStep,
    GraphEdge,
    QueryMetricRecord,
    RelationshipType,
    make_preview,
    stable_id,
)
from query_correlation.engine.resources import DEFAULT_FALLBACK_RESOURCE

logger = logging.getLogger(__name__)

DEFAULT_MAX_LANES = 4
DEFAULT_SHARES_THRESHOLD = 0.5
STEP_PREVIEW_LENGTH = 100

_ORDERING_RELATIONSHIPS = frozenset({RelationshipType.TRIGGERS, RelationshipType.BLOCKS})


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def _known_endpoints(edge: GraphEdge, nodes: Container[str]) -> bool:
    if edge.from_query_hash in nodes and edge.to_query_hash in nodes:
        return True
    logger.debug("Ignoring edge with unknown endpoint: %s -> %s", edge.from_query_hash, edge.to_query_hash)
    return False


def _ordering_dag(graph: DependencyGraph) -> nx.DiGraph:
    dag = nx.DiGraph()
    dag.add_nodes_from(node.query_hash for node in graph.nodes)
    for order, edge in enumerate(graph.edges):
        if edge.relationship_type not in _ORDERING_RELATIONSHIPS or not _known_endpoints(edge, dag):
            continue
        if dag.has_edge(edge.from_query_hash, edge.to_query_hash):
            data = dag.edges[edge.from_query_hash, edge.to_query_hash]
            data["strength"] = max(data["strength"], edge.strength)
            if edge.relationship_type.value not in data["relationships"]:
                data["relationships"].append(edge.relationship_type.value)
        else:
            dag.add_edge(
                edge.from_query_hash,
                edge.to_query_hash,
                strength=edge.strength,
                order=order,
                relationships=[edge.relationship_type.value],
            )
    if not nx.is_directed_acyclic_graph(dag):
        # Caller-supplied graphs may not have been through the builder
        break_cycles(dag)
    return dag


def _exclusions(
    graph: DependencyGraph,
    threshold: float,
    ignored_resources: Iterable[str],
) -> dict[str, set[str]]:
    ignored = set(ignored_resources)
    exclusive: dict[str, set[str]] = {node.query_hash: set() for node in graph.nodes}
    for edge in graph.edges:
        if edge.relationship_type != RelationshipType.SHARES or edge.strength < threshold:
            continue
        if edge.resource in ignored or not _known_endpoints(edge, exclusive):
            continue
        exclusive[edge.from_query_hash].add(edge.to_query_hash)
        exclusive[edge.to_query_hash].add(edge.from_query_hash)
    return exclusive


def _step_reason(batch_size: int, batch_index: int, dependencies: list[str], blocked_by: list[str]) -> str:
    parts: list[str] = []
    if dependencies:
        parts.append(
            f"Waits for {len(dependencies)} triggering {_plural(len(dependencies), 'query', 'queries')}"
        )
    if blocked_by:
        parts.append(
            f"Deferred to avoid contention with {len(blocked_by)} "
            f"{_plural(len(blocked_by), 'query', 'queries')} on a shared resource"
        )
    if batch_size > 1:
        others = batch_size - 1
        parts.append(f"Runs alongside {others} other {_plural(others, 'query', 'queries')} in batch {batch_index + 1}")
    else:
        parts.append(f"Runs alone in batch {batch_index + 1}")
    return "; ".join(parts)


def optimize_execution_order(
    queries: Sequence[QueryMetricRecord],
    *,
    graph: DependencyGraph | None = None,
    max_lanes: int = DEFAULT_MAX_LANES,
    shares_threshold: float = DEFAULT_SHARES_THRESHOLD,
    ignored_resources: Iterable[str] = (DEFAULT_FALLBACK_RESOURCE,),
) -> ExecutionPlan:
    """Produce a batched execution plan that minimizes total execution time.

    Args:
        queries: Records to schedule; their summed elapsed time is the
            sequential baseline.
        graph: Dependency graph of ``queries``; built when omitted.
        max_lanes: Maximum number of queries running concurrently.
        shares_threshold: Shares edges at or above this strength forbid two
            queries from running concurrently.
        ignored_resources: Resources whose Shares edges never force exclusion
            (the synthetic fallback bucket by default).

    Returns:
        An ExecutionPlan whose optimized total is <= the sequential total.
    """
    created_at = datetime.now(UTC)
    current_total = sum(q.avg_elapsed_time_ms for q in queries)
    if not queries:
        return ExecutionPlan(plan_id=stable_id("plan"), created_at=created_at, summary="No queries to schedule.")

    if graph is None:
        graph = build_dependency_graph(queries)
    max_lanes = max(1, max_lanes)

    position = {node.query_hash: i for i, node in enumerate(graph.nodes)}
    exec_time = {node.query_hash: node.execution_time_ms for node in graph.nodes}
    texts: dict[str, str] = {}
    for record in queries:
        texts.setdefault(record.query_hash, record.query_text)

    dag = _ordering_dag(graph)
    exclusive = _exclusions(graph, shares_threshold, ignored_resources)
    order = nx.lexicographical_topological_sort(dag, key=lambda h: (-exec_time[h], position[h]))

    batches: list[list[str]] = []
    batch_of: dict[str, int] = {}
    for query_hash in order:
        b = max((batch_of[p] + 1 for p in dag.predecessors(query_hash)), default=0)
        while b < len(batches) and (
            len(batches[b]) >= max_lanes or not exclusive[query_hash].isdisjoint(batches[b])
        ):
            b += 1
        if b == len(batches):
            batches.append([])
        batches[b].append(query_hash)
        batch_of[query_hash] = b

    steps: list[ExecutionStep] = []
    offset = 0.0
    for b, members in enumerate(batches):
        mode = ExecutionMode.PARALLEL if len(members) > 1 else ExecutionMode.SEQUENTIAL
        for lane, query_hash in enumerate(members):
            dependencies = sorted(dag.predecessors(query_hash), key=position.__getitem__)
            blocked_by = sorted(
                (h for h in exclusive[query_hash] if batch_of[h] < b),
                key=position.__getitem__,
            )
            steps.append(
                ExecutionStep(
                    step_number=len(steps) + 1,
                    query_hash=query_hash,
                    query_preview=make_preview(texts.get(query_hash, ""), STEP_PREVIEW_LENGTH),
                    execution_mode=mode,
                    lane=lane,
                    parallel_batch=b,
                    start_offset_ms=offset,
                    estimated_time_ms=exec_time[query_hash],
                    dependencies=dependencies,
                    blocked_by=blocked_by,
                    reason=_step_reason(len(members), b, dependencies, blocked_by),
                )
            )
        offset += max(exec_time[h] for h in members)

    optimized_total = min(offset, current_total)
    savings = current_total - optimized_total
    improvement = savings / current_total * 100.0 if current_total > 0 else 0.0
    lanes_used = max(len(members) for members in batches)

    logger.debug(
        "Scheduled %d queries into %d batches over %d lanes (%.0fms -> %.0fms)",
        len(steps),
        len(batches),
        lanes_used,
        current_total,
        optimized_total,
    )

    return ExecutionPlan(
        plan_id=stable_id("plan", *(f"{b}:{h}" for b, members in enumerate(batches) for h in members)),
        created_at=created_at,
        steps=steps,
        current_total_time_ms=current_total,
        optimized_total_time_ms=optimized_total,
        time_savings_ms=savings,
        improvement_percent=round(improvement, 2),
        parallel_lanes=lanes_used,
        parallel_batches=len(batches),
        parallel_groups=[list(members) for members in batches],
        summary=(
            f"Optimized execution plan reduces total time by {improvement:.1f}% "
            f"({savings:.0f}ms savings) using {len(batches)} "
            f"{_plural(len(batches), 'batch', 'batches')} across up to {lanes_used} parallel "
            f"{_plural(lanes_used, 'lane', 'lanes')}"
        ),
    )
