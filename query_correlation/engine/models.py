"""Pydantic models for query metrics and every correlation-analysis result.

All models are plain data so results can cross the HTTP boundary (or any
other transport) unchanged via ``model_dump(mode="json")``.
"""

import hashlib
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Tagged variants
# ---------------------------------------------------------------------------


class CascadeType(StrEnum):
    SEQUENTIAL = "Sequential"
    PARALLEL = "Parallel"
    MIXED = "Mixed"


class Severity(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class CorrelationType(StrEnum):
    POSITIVE = "Positive"
    NEGATIVE = "Negative"
    NONE = "None"


class RelationshipType(StrEnum):
    FOLLOWS = "Follows"
    TRIGGERS = "Triggers"
    BLOCKS = "Blocks"
    SHARES = "Shares"


class NodeRole(StrEnum):
    SOURCE = "Source"
    INTERMEDIATE = "Intermediate"
    SINK = "Sink"


class ExecutionMode(StrEnum):
    SEQUENTIAL = "Sequential"
    PARALLEL = "Parallel"


class ImpactType(StrEnum):
    POSITIVE = "Positive"
    NEGATIVE = "Negative"
    NEUTRAL = "Neutral"


class RiskLevel(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


# Edge types that impose an execution order (Shares is a mutual-exclusion hint only).
DEPENDENCY_RELATIONSHIPS = frozenset(
    {RelationshipType.TRIGGERS, RelationshipType.FOLLOWS, RelationshipType.BLOCKS}
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_preview(text: str | None, limit: int) -> str:
    """Truncate query text for display, appending '...' when cut."""
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."


def stable_id(prefix: str, *parts: str) -> str:
    """Deterministic identifier so repeated analyses produce identical results."""
    digest = hashlib.sha1("\x1f".join(parts).encode("utf-8")).hexdigest()[:16]
    return f"{prefix}-{digest}"


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps as UTC so records from mixed sources stay comparable."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class QueryMetricRecord(BaseModel):
    """Aggregated performance metrics for one normalized query."""

    model_config = ConfigDict(frozen=True)

    query_hash: str
    query_text: str = ""
    execution_count: int = Field(default=0, ge=0)
    avg_elapsed_time_ms: float = Field(default=0.0, ge=0)
    total_elapsed_time_ms: float = Field(default=0.0, ge=0)
    avg_cpu_time_ms: float = Field(default=0.0, ge=0)
    total_cpu_time_ms: float = Field(default=0.0, ge=0)
    avg_logical_reads: int = Field(default=0, ge=0)
    total_logical_reads: int = Field(default=0, ge=0)
    avg_physical_reads: int = Field(default=0, ge=0)
    total_physical_reads: int = Field(default=0, ge=0)
    last_execution_time: datetime
    collected_at: datetime | None = None

    @field_validator("last_execution_time", "collected_at")
    @classmethod
    def _naive_is_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class HistoricalSnapshot(BaseModel):
    """Query hashes observed executing together within one sampling window."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    query_hashes: list[str] = Field(default_factory=list)

    @field_validator("timestamp")
    @classmethod
    def _naive_is_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class QuerySnapshotRow(BaseModel):
    """One query's historical sample, as stored by the metric collector."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    query_hash: str
    execution_count: int = Field(default=0, ge=0)
    avg_elapsed_time_ms: float = Field(default=0.0, ge=0)
    avg_cpu_time_ms: float = Field(default=0.0, ge=0)
    avg_logical_reads: int = Field(default=0, ge=0)
    avg_physical_reads: int = Field(default=0, ge=0)
    avg_wait_time_ms: float = Field(default=0.0, ge=0)
    active_users: int = Field(default=0, ge=0)

    @field_validator("timestamp")
    @classmethod
    def _naive_is_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


# ---------------------------------------------------------------------------
# Detector outputs
# ---------------------------------------------------------------------------


class QueryCascade(BaseModel):
    """A trigger query reliably followed by other queries within a time window."""

    cascade_id: str
    trigger_query: str
    following_queries: list[str]
    average_delay_ms: float = Field(ge=0)
    delay_std_dev_ms: float = Field(default=0.0, ge=0)
    confidence: float = Field(ge=0, le=100)
    observation_count: int = Field(ge=0)
    total_cascade_time_ms: float = Field(default=0.0, ge=0)
    cascade_type: CascadeType
    description: str = ""


class ResourceContention(BaseModel):
    """Two or more queries competing for the same named resource."""

    contention_id: str
    competing_queries: list[str]
    resource_type: str
    resource_name: str
    severity: Severity
    contention_score: float = Field(ge=0, le=100)
    average_wait_time_ms: float = Field(default=0.0, ge=0)
    performance_degradation_pct: float = Field(default=0.0, ge=0, le=100)
    affected_executions: int = Field(default=0, ge=0)
    recommendations: list[str] = Field(default_factory=list)
    description: str = ""

    @model_validator(mode="after")
    def _require_two_competitors(self) -> "ResourceContention":
        if len(set(self.competing_queries)) < 2:
            msg = f"Contention on '{self.resource_name}' needs at least two distinct competing queries"
            raise ValueError(msg)
        return self


class QueryCorrelation(BaseModel):
    """Co-occurrence association between two distinct queries."""

    query1_hash: str
    query2_hash: str
    correlation_coefficient: float = Field(ge=-1, le=1)
    correlation_type: CorrelationType
    execute_together: bool = False
    share_resources: bool = False
    causative_relationship: bool = False  # association only, never causation
    confidence: float = Field(ge=0, le=100)
    observation_count: int = Field(ge=0)
    description: str = ""

    @model_validator(mode="after")
    def _require_distinct_queries(self) -> "QueryCorrelation":
        if self.query1_hash == self.query2_hash:
            msg = "A correlation needs two distinct queries"
            raise ValueError(msg)
        return self


class CorrelationScan(BaseModel):
    """Correlation scorer output; truncated=True means the scan stopped early."""

    correlations: list[QueryCorrelation] = Field(default_factory=list)
    truncated: bool = False
    pairs_evaluated: int = 0
    snapshots_scanned: int = 0


# ---------------------------------------------------------------------------
# Dependency graph
# ---------------------------------------------------------------------------


class GraphNode(BaseModel):
    query_hash: str
    query_preview: str = ""
    label: str = ""
    level: int = 0
    execution_time_ms: float = 0.0
    incoming_edges: int = 0
    outgoing_edges: int = 0
    node_type: NodeRole = NodeRole.SOURCE


class GraphEdge(BaseModel):
    from_query_hash: str
    to_query_hash: str
    relationship_type: RelationshipType
    strength: float = Field(ge=0, le=1)
    average_delay_ms: float = Field(default=0.0, ge=0)
    resource: str | None = None  # set for Shares edges
    description: str = ""


class DependencyGraph(BaseModel):
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
    total_nodes: int = 0
    total_edges: int = 0
    critical_path: list[str] = Field(default_factory=list)
    critical_path_time_ms: float = 0.0
    bottleneck_queries: list[str] = Field(default_factory=list)
    independent_queries: list[str] = Field(default_factory=list)
    max_dependency_depth: int = 0
    average_dependencies_per_query: float = 0.0
    adjustments: list[str] = Field(default_factory=list)
    summary: str = ""


# ---------------------------------------------------------------------------
# Execution plan
# ---------------------------------------------------------------------------


class ExecutionStep(BaseModel):
    step_number: int
    query_hash: str
    query_preview: str = ""
    execution_mode: ExecutionMode
    lane: int
    parallel_batch: int
    start_offset_ms: float = 0.0
    estimated_time_ms: float = 0.0
    dependencies: list[str] = Field(default_factory=list)
    blocked_by: list[str] = Field(default_factory=list)
    reason: str = ""


class ExecutionPlan(BaseModel):
    plan_id: str
    created_at: datetime
    steps: list[ExecutionStep] = Field(default_factory=list)
    current_total_time_ms: float = 0.0
    optimized_total_time_ms: float = 0.0
    time_savings_ms: float = 0.0
    improvement_percent: float = 0.0
    parallel_lanes: int = 0
    parallel_batches: int = 0
    parallel_groups: list[list[str]] = Field(default_factory=list)
    summary: str = ""

    @model_validator(mode="after")
    def _never_slower_than_sequential(self) -> "ExecutionPlan":
        if self.optimized_total_time_ms > self.current_total_time_ms:
            msg = "Optimized total time cannot exceed the sequential total time"
            raise ValueError(msg)
        return self


# ---------------------------------------------------------------------------
# Impact prediction
# ---------------------------------------------------------------------------


class AffectedQuery(BaseModel):
    query_hash: str
    query_preview: str = ""
    impact_type: ImpactType
    expected_change_ms: float  # negative = faster
    expected_change_percent: float
    relationship_type: RelationshipType
    reason: str = ""


class CorrelationImpact(BaseModel):
    target_query_hash: str
    affected_queries: int = 0
    direct_time_saving_ms: float = 0.0
    direct_improvement_percent: float = 0.0
    indirect_time_saving_ms: float = 0.0
    indirect_improvement_percent: float = 0.0
    total_time_saving_ms: float = 0.0
    total_improvement_percent: float = 0.0
    affected_query_details: list[AffectedQuery] = Field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    risks: list[str] = Field(default_factory=list)
    summary: str = ""


# ---------------------------------------------------------------------------
# Aggregate result
# ---------------------------------------------------------------------------


class CorrelationAnalysisResult(BaseModel):
    analysis_date: datetime
    total_queries_analyzed: int = 0
    correlations_found: int = 0
    cascades: list[QueryCascade] = Field(default_factory=list)
    contentions: list[ResourceContention] = Field(default_factory=list)
    correlations: list[QueryCorrelation] = Field(default_factory=list)
    correlations_truncated: bool = False
    dependency_graph: DependencyGraph = Field(default_factory=DependencyGraph)
    execution_plan: ExecutionPlan | None = None
    impact: CorrelationImpact | None = None
    key_findings: list[str] = Field(default_factory=list)
    optimization_opportunities: list[str] = Field(default_factory=list)
    estimated_time_wasted_ms: float = 0.0
    potential_savings_ms: float = 0.0
    summary: str = ""
