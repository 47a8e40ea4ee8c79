"""Dependency graph construction, cycle breaking and critical-path analysis.

Nodes are the distinct query hashes of the input in first-seen order.  Edges
come from detected cascades (Triggers), contentions (Shares) and any caller
supplied Follows / Blocks relationships.  Ordering edges (Triggers, Follows,
Blocks) must form a DAG: cycles are broken by dropping the weakest edge.
"""

import logging
from collections.abc import Sequence
from datetime import timedelta

import networkx as nx

from query_correlation.engine.cascades import DEFAULT_CASCADE_WINDOW, find_cascades
from query_correlation.engine.contention import detect_contention
from query_correlation.engine.models import (
    DEPENDENCY_RELATIONSHIPS,
    DependencyGraph,
    GraphEdge,
    GraphNode,
    NodeRole,
    QueryCascade,
    QueryMetricRecord,
    RelationshipType,
    ResourceContention,
    make_preview,
)
from query_correlation.engine.resources import DEFAULT_FALLBACK_RESOURCE, DEFAULT_KNOWN_TABLES
from query_correlation.observability.metrics import CYCLE_EDGES_DROPPED_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_BOTTLENECK_COUNT = 3
NODE_PREVIEW_LENGTH = 60

EdgeKey = tuple[str, str, RelationshipType]


def _edge_key(edge: GraphEdge, position: dict[str, int]) -> EdgeKey:
    if edge.relationship_type == RelationshipType.SHARES:
        # Shares is symmetric: one edge per unordered pair, oriented by node order
        a, b = sorted((edge.from_query_hash, edge.to_query_hash), key=position.__getitem__)
        return a, b, edge.relationship_type
    return edge.from_query_hash, edge.to_query_hash, edge.relationship_type


def _candidate_edges(
    cascades: Sequence[QueryCascade],
    contentions: Sequence[ResourceContention],
    position: dict[str, int],
) -> list[GraphEdge]:
    edges: list[GraphEdge] = []
    for cascade in cascades:
        for follower in cascade.following_queries:
            edges.append(
                GraphEdge(
                    from_query_hash=cascade.trigger_query,
                    to_query_hash=follower,
                    relationship_type=RelationshipType.TRIGGERS,
                    strength=round(cascade.confidence / 100.0, 4),
                    average_delay_ms=cascade.average_delay_ms,
                    description=f"Executes within {cascade.average_delay_ms:.0f}ms of its trigger",
                )
            )
    for contention in contentions:
        competitors = sorted((h for h in contention.competing_queries if h in position), key=position.__getitem__)
        for i, first in enumerate(competitors):
            for second in competitors[i + 1 :]:
                edges.append(
                    GraphEdge(
                        from_query_hash=first,
                        to_query_hash=second,
                        relationship_type=RelationshipType.SHARES,
                        strength=round(contention.contention_score / 100.0, 4),
                        resource=contention.resource_name,
                        description=f"Both access {contention.resource_type.lower()} '{contention.resource_name}'",
                    )
                )
    return edges


def _merge_edges(edges: Sequence[GraphEdge], position: dict[str, int]) -> list[GraphEdge]:
    """Drop self-loops and dangling edges; keep the strongest of duplicates."""
    merged: dict[EdgeKey, GraphEdge] = {}
    for edge in edges:
        if edge.from_query_hash == edge.to_query_hash:
            continue
        if edge.from_query_hash not in position or edge.to_query_hash not in position:
            logger.debug("Dropping edge with unknown endpoint: %s -> %s", edge.from_query_hash, edge.to_query_hash)
            continue
        key = _edge_key(edge, position)
        if edge.relationship_type == RelationshipType.SHARES and (key[0], key[1]) != (
            edge.from_query_hash,
            edge.to_query_hash,
        ):
            edge = edge.model_copy(update={"from_query_hash": key[0], "to_query_hash": key[1]})
        existing = merged.get(key)
        if existing is None or edge.strength > existing.strength:
            merged[key] = edge
    return list(merged.values())


def break_cycles(dag: nx.DiGraph) -> list[tuple[str, str, str]]:
    """Remove the weakest edge of each cycle until the graph is acyclic.

    Ties on strength drop the edge that was added last. Returns the removed
    (from, to, note) triples.
    """
    removed: list[tuple[str, str, str]] = []
    while True:
        try:
            cycle = nx.find_cycle(dag)
        except nx.NetworkXNoCycle:
            return removed
        u, v = min(
            ((a, b) for a, b, *_ in cycle),
            key=lambda e: (dag.edges[e]["strength"], -dag.edges[e]["order"]),
        )
        path = " -> ".join([a for a, *_ in cycle] + [cycle[0][0]])
        kinds = dag.edges[u, v]["relationships"]
        note = (
            f"Dropped {' and '.join(kinds)} {'edge' if len(kinds) == 1 else 'edges'} {u} -> {v} "
            f"(strength {dag.edges[u, v]['strength']:.2f}) to break cycle {path}"
        )
        logger.warning("%s", note)
        CYCLE_EDGES_DROPPED_TOTAL.inc()
        dag.remove_edge(u, v)
        removed.append((u, v, note))


def dependency_dag(graph: DependencyGraph) -> nx.DiGraph:
    """networkx view of a graph's ordering edges (Triggers, Follows, Blocks)."""
    dag = nx.DiGraph()
    dag.add_nodes_from(node.query_hash for node in graph.nodes)
    for order, edge in enumerate(graph.edges):
        if edge.relationship_type not in DEPENDENCY_RELATIONSHIPS:
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
    return dag


def build_dependency_graph(
    queries: Sequence[QueryMetricRecord],
    *,
    cascades: Sequence[QueryCascade] | None = None,
    contentions: Sequence[ResourceContention] | None = None,
    extra_edges: Sequence[GraphEdge] = (),
    window: timedelta = DEFAULT_CASCADE_WINDOW,
    bottleneck_count: int = DEFAULT_BOTTLENECK_COUNT,
    known_tables: frozenset[str] = DEFAULT_KNOWN_TABLES,
    fallback_resource: str = DEFAULT_FALLBACK_RESOURCE,
) -> DependencyGraph:
    """Build the query dependency graph.

    Cascades and contentions are detected from ``queries`` when not supplied.
    The returned graph's ordering edges are guaranteed acyclic; any edge
    dropped to get there is described in ``adjustments``.
    """
    if not queries:
        return DependencyGraph(summary="Dependency graph is empty: no queries supplied.")

    position: dict[str, int] = {}
    records_by_hash: dict[str, list[QueryMetricRecord]] = {}
    for record in queries:
        position.setdefault(record.query_hash, len(position))
        records_by_hash.setdefault(record.query_hash, []).append(record)
    exec_time = {h: sum(r.avg_elapsed_time_ms for r in rs) / len(rs) for h, rs in records_by_hash.items()}

    if cascades is None:
        cascades = find_cascades(queries, window)
    if contentions is None:
        contentions = detect_contention(queries, known_tables=known_tables, fallback_resource=fallback_resource)

    edges = _merge_edges([*_candidate_edges(cascades, contentions, position), *extra_edges], position)
    draft = DependencyGraph(
        nodes=[GraphNode(query_hash=h) for h in position],
        edges=edges,
    )

    dag = dependency_dag(draft)
    adjustments: list[str] = []
    for u, v, note in break_cycles(dag):
        edges = [
            e
            for e in edges
            if not (
                e.from_query_hash == u
                and e.to_query_hash == v
                and e.relationship_type in DEPENDENCY_RELATIONSHIPS
            )
        ]
        adjustments.append(note)

    topo_order: list[str] = list(nx.lexicographical_topological_sort(dag, key=position.__getitem__))

    # Dependency depth and longest path weighted by execution time
    level: dict[str, int] = {}
    best: dict[str, float] = {}
    previous: dict[str, str | None] = {}
    for node in topo_order:
        preds = sorted(dag.predecessors(node), key=position.__getitem__)
        level[node] = max((level[p] + 1 for p in preds), default=0)
        heaviest = max(preds, key=lambda p: best[p], default=None)
        best[node] = exec_time[node] + (best[heaviest] if heaviest is not None else 0.0)
        previous[node] = heaviest

    path_end = max(position, key=lambda h: (best[h], -position[h]))
    critical_path: list[str] = []
    cursor: str | None = path_end
    while cursor is not None:
        critical_path.append(cursor)
        cursor = previous[cursor]
    critical_path.reverse()

    incoming = dict.fromkeys(position, 0)
    outgoing = dict.fromkeys(position, 0)
    for edge in edges:
        outgoing[edge.from_query_hash] += 1
        incoming[edge.to_query_hash] += 1

    nodes: list[GraphNode] = []
    for h, idx in position.items():
        if incoming[h] == 0:
            role = NodeRole.SOURCE
        elif outgoing[h] == 0:
            role = NodeRole.SINK
        else:
            role = NodeRole.INTERMEDIATE
        nodes.append(
            GraphNode(
                query_hash=h,
                query_preview=make_preview(records_by_hash[h][0].query_text, NODE_PREVIEW_LENGTH),
                label=f"Q{idx + 1}",
                level=level[h],
                execution_time_ms=exec_time[h],
                incoming_edges=incoming[h],
                outgoing_edges=outgoing[h],
                node_type=role,
            )
        )

    ranked = sorted(position, key=lambda h: (-exec_time[h], position[h]))
    independent = [h for h in position if incoming[h] == 0 and outgoing[h] == 0]
    max_depth = max(level.values(), default=0)
    labels = {node.query_hash: node.label for node in nodes}

    summary = (
        f"Dependency graph contains {len(nodes)} queries with {len(edges)} relationships. "
        f"Max depth: {max_depth} levels. "
        f"Critical path {' -> '.join(labels[h] for h in critical_path)} takes {best[path_end]:.0f}ms."
    )
    if adjustments:
        summary += f" {len(adjustments)} edge(s) dropped to break dependency cycles."

    return DependencyGraph(
        nodes=nodes,
        edges=edges,
        total_nodes=len(nodes),
        total_edges=len(edges),
        critical_path=critical_path,
        critical_path_time_ms=best[path_end],
        bottleneck_queries=ranked[:bottleneck_count],
        independent_queries=independent,
        max_dependency_depth=max_depth,
        average_dependencies_per_query=round(len(edges) / len(nodes), 4),
        adjustments=adjustments,
        summary=summary,
    )
