"""Impact prediction: estimated savings from optimizing one target query."""

import logging
from collections.abc import Sequence

from query_correlation.engine.graph import build_dependency_graph
from query_correlation.engine.models import (
    AffectedQuery,
    CorrelationImpact,
    DependencyGraph,
    GraphEdge,
    ImpactType,
    QueryMetricRecord,
    RelationshipType,
    RiskLevel,
    make_preview,
)

logger = logging.getLogger(__name__)

DEFAULT_IMPROVEMENT_RATIO = 0.5
DEFAULT_HIGH_FAN_OUT = 4
AFFECTED_PREVIEW_LENGTH = 80

_REASONS = {
    RelationshipType.SHARES: "Reduced contention for shared resources",
    RelationshipType.TRIGGERS: "Triggered by the target query; starts sooner once the target is faster",
}


def _connecting_edges(target_hash: str, graph: DependencyGraph) -> dict[str, GraphEdge]:
    """Strongest Shares (either direction) or outgoing Triggers edge per related query."""
    strongest: dict[str, GraphEdge] = {}
    for edge in graph.edges:
        if edge.relationship_type == RelationshipType.SHARES:
            if edge.from_query_hash == target_hash:
                other = edge.to_query_hash
            elif edge.to_query_hash == target_hash:
                other = edge.from_query_hash
            else:
                continue
        elif edge.relationship_type == RelationshipType.TRIGGERS and edge.from_query_hash == target_hash:
            other = edge.to_query_hash
        else:
            continue
        current = strongest.get(other)
        if current is None or edge.strength > current.strength:
            strongest[other] = edge
    return strongest


def _risk(fan_out: int, high_fan_out: int) -> tuple[RiskLevel, list[str]]:
    if fan_out == 0:
        return RiskLevel.LOW, ["Minimal risk - optimization is isolated"]
    noun = "query" if fan_out == 1 else "queries"
    if fan_out < high_fan_out:
        return RiskLevel.MEDIUM, [
            f"Target triggers {fan_out} downstream {noun}; verify they still behave as expected",
        ]
    return RiskLevel.HIGH, [
        f"Target triggers {fan_out} downstream {noun}; changes will propagate widely",
        "Roll out the optimization gradually and compare downstream timings",
    ]


def predict_impact(
    target: QueryMetricRecord,
    related: Sequence[QueryMetricRecord],
    *,
    improvement_ratio: float = DEFAULT_IMPROVEMENT_RATIO,
    graph: DependencyGraph | None = None,
    high_fan_out: int = DEFAULT_HIGH_FAN_OUT,
) -> CorrelationImpact:
    """Estimate direct and propagated savings from optimizing ``target``.

    Direct saving is the target's average elapsed time times
    ``improvement_ratio``.  Each related query connected to the target by a
    Shares edge, or triggered by it, gains ``edge strength * direct saving``.

    Args:
        target: The query to be optimized.
        related: Candidate affected queries. Entries with the target's hash are ignored.
        improvement_ratio: Expected fractional speed-up of the target, in [0, 1].
        graph: Dependency graph covering target and related; built when omitted.
        high_fan_out: Number of triggered queries from which risk is High.

    Raises:
        ValueError: If improvement_ratio is outside [0, 1].
    """
    if not 0.0 <= improvement_ratio <= 1.0:
        msg = f"improvement_ratio must be within [0, 1], got {improvement_ratio}"
        raise ValueError(msg)

    others: dict[str, QueryMetricRecord] = {}
    for record in related:
        if record.query_hash != target.query_hash:
            others.setdefault(record.query_hash, record)

    if graph is None:
        graph = build_dependency_graph([target, *others.values()])

    direct_saving = target.avg_elapsed_time_ms * improvement_ratio
    direct_percent = improvement_ratio * 100.0

    affected: list[AffectedQuery] = []
    indirect_saving = 0.0
    related_time = 0.0
    for query_hash, edge in _connecting_edges(target.query_hash, graph).items():
        record = others.get(query_hash)
        if record is None:
            continue
        saving = edge.strength * direct_saving
        percent = 0.0
        if record.avg_elapsed_time_ms > 0:
            percent = max(-100.0, -saving / record.avg_elapsed_time_ms * 100.0)
        affected.append(
            AffectedQuery(
                query_hash=query_hash,
                query_preview=make_preview(record.query_text, AFFECTED_PREVIEW_LENGTH),
                impact_type=ImpactType.POSITIVE if saving > 0 else ImpactType.NEUTRAL,
                expected_change_ms=-saving,
                expected_change_percent=round(percent, 2),
                relationship_type=edge.relationship_type,
                reason=_REASONS[edge.relationship_type],
            )
        )
        indirect_saving += saving
        related_time += record.avg_elapsed_time_ms

    affected.sort(key=lambda a: (a.expected_change_ms, a.query_hash))
    indirect_percent = indirect_saving / related_time * 100.0 if related_time > 0 else 0.0
    baseline = target.avg_elapsed_time_ms + related_time
    total_saving = direct_saving + indirect_saving
    total_percent = total_saving / baseline * 100.0 if baseline > 0 else 0.0

    fan_out = sum(
        1
        for edge in graph.edges
        if edge.relationship_type == RelationshipType.TRIGGERS and edge.from_query_hash == target.query_hash
    )
    risk_level, risks = _risk(fan_out, high_fan_out)

    logger.debug(
        "Impact for %s: direct %.0fms, indirect %.0fms over %d queries",
        target.query_hash,
        direct_saving,
        indirect_saving,
        len(affected),
    )

    noun = "query" if len(affected) == 1 else "queries"
    return CorrelationImpact(
        target_query_hash=target.query_hash,
        affected_queries=len(affected),
        direct_time_saving_ms=direct_saving,
        direct_improvement_percent=round(direct_percent, 2),
        indirect_time_saving_ms=indirect_saving,
        indirect_improvement_percent=round(indirect_percent, 2),
        total_time_saving_ms=total_saving,
        total_improvement_percent=round(total_percent, 2),
        affected_query_details=affected,
        risk_level=risk_level,
        risks=risks,
        summary=(
            f"Optimizing this query saves {direct_saving:.0f}ms directly and {indirect_saving:.0f}ms "
            f"across {len(affected)} related {noun} ({total_percent:.1f}% of their combined time)"
        ),
    )
