"""
Pydantic models for parsed diagnostic payloads.

These models are the plain-data output of every parser:
- PlanNode: Engine-agnostic node shared by the SQL Server, PostgreSQL and
  MongoDB parsers, linked by integer ids (parent_id / children)
- *PlanResult: Per-engine parse results carrying the nodes plus the
  engine-specific extras (statement summary, timings, rejected plans)
- DeadlockGraph: Sessions, lock resources and owner→waiter edges

All models are frozen. A parse creates them fresh and nothing mutates them
afterwards, so two parses of the same payload compare equal.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class Engine(str, Enum):
    """Database engines whose plans produce PlanNode trees."""

    MSSQL = "mssql"
    POSTGRES = "postgres"
    MONGO = "mongo"


class ParseStatus(str, Enum):
    """
    Outcome of a parse call.

    PARSED: At least one node (or participant) was extracted
    EMPTY: Format markers were present but no extraction tier matched
    UNRECOGNIZED: Nothing in the payload looks like this format
    FAILED: A required DOM parse failed; raw text is kept for display
    """

    PARSED = "parsed"
    EMPTY = "empty"
    UNRECOGNIZED = "unrecognized"
    FAILED = "failed"


# =============================================================================
# Node metrics
# =============================================================================


class SqlServerCost(BaseModel):
    """ShowPlan cost estimates for one operator."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["mssql"] = "mssql"
    cpu: float = 0.0
    io: float = 0.0
    subtree_total: float = 0.0

    @property
    def operator_cost(self) -> float:
        """Cost of the operator alone (CPU + I/O), excluding its inputs."""
        return self.cpu + self.io


class PostgresCost(BaseModel):
    """Planner startup and total cost (`cost=start..end`)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["postgres"] = "postgres"
    start: float = 0.0
    end: float = 0.0


NodeCost = Annotated[Union[SqlServerCost, PostgresCost], Field(discriminator="kind")]


class TimeRange(BaseModel):
    """Actual startup/total time in milliseconds (`actual time=A..B`)."""

    model_config = ConfigDict(frozen=True)

    start: float
    end: float


class BlockCounts(BaseModel):
    """Block counters from one `Buffers:` category."""

    model_config = ConfigDict(frozen=True)

    hit: int | None = None
    read: int | None = None
    dirtied: int | None = None
    written: int | None = None


class BufferStats(BaseModel):
    """Parsed `Buffers: shared ..., local ..., temp ...` line."""

    model_config = ConfigDict(frozen=True)

    shared: BlockCounts | None = None
    local: BlockCounts | None = None
    temp: BlockCounts | None = None


class NodeDetail(BaseModel):
    """A `Label: value` line attached to a PostgreSQL plan node."""

    model_config = ConfigDict(frozen=True)

    label: str
    value: str


class MongoExecution(BaseModel):
    """Execution counters matched to a MongoDB stage."""

    model_config = ConfigDict(frozen=True)

    n_returned: int | None = None
    execution_time_ms: float | None = None
    works: int | None = None
    advanced: int | None = None
    docs_examined: int | None = None
    keys_examined: int | None = None
    is_eof: bool | None = None


# =============================================================================
# PlanNode
# =============================================================================


class PlanNode(BaseModel):
    """
    One operator (SQL Server, PostgreSQL) or stage (MongoDB) of a plan.

    Nodes reference each other by id. `parent_id` is None for roots, and
    every non-root parent id resolves to a node of the same result. A child
    id appears in exactly one parent's `children`.

    Engine-specific fields are optional and stay None for other engines.
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=0, description="Unique within one parse result")
    parent_id: int | None = Field(default=None, description="None for roots")
    engine: Engine
    physical_op: str = Field(..., description="Operator or stage name")
    logical_op: str | None = None
    stage: str | None = None

    estimated_rows: float | None = Field(default=None, ge=0)
    actual_rows: float | None = Field(default=None, ge=0)
    cost: NodeCost | None = None

    object_name: str | None = None
    index_name: str | None = None
    predicate: str | None = None
    children: tuple[int, ...] = ()

    # SQL Server
    avg_row_size: int | None = None
    is_ordered: bool | None = None
    is_parallel: bool | None = None
    scan_direction: str | None = None

    # PostgreSQL
    actual_time: TimeRange | None = None
    loops: int | None = None
    width: int | None = None
    never_executed: bool = False
    buffers: BufferStats | None = None
    details: tuple[NodeDetail, ...] = ()
    raw_text: str = ""

    # MongoDB
    execution: MongoExecution | None = None
    key_pattern: str | None = None
    direction: str | None = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def name(self) -> str:
        """Display name: the stage for MongoDB, the physical operator otherwise."""
        return self.stage or self.physical_op

    @property
    def row_ratio(self) -> float | None:
        """
        Ratio of actual to estimated rows.

        Derived on access so it can never disagree with the stored counts.
        None when either side is missing or the estimate is zero.
        """
        if self.actual_rows is None or self.estimated_rows is None:
            return None
        if self.estimated_rows == 0:
            return None
        return self.actual_rows / self.estimated_rows

    @property
    def cost_metric(self) -> float | None:
        """
        The number used for cost ranking on this node's engine.

        SQL Server: estimated subtree cost. PostgreSQL: total cost.
        MongoDB: executionTimeMillisEstimate.
        """
        if isinstance(self.cost, SqlServerCost):
            return self.cost.subtree_total
        if isinstance(self.cost, PostgresCost):
            return self.cost.end
        if self.execution is not None:
            return self.execution.execution_time_ms
        return None

    def detail(self, label: str) -> str | None:
        """Return the first detail value with the given label."""
        for item in self.details:
            if item.label == label:
                return item.value
        return None


# =============================================================================
# Results shared by the plan parsers
# =============================================================================


class PlanResult(BaseModel):
    """
    Common shape of a plan parse.

    Attributes:
        engine: Source engine
        status: Outcome (see ParseStatus)
        nodes: Extracted nodes
        strategy: Name of the extraction tier that produced the nodes
        errors: Messages for anything swallowed during the parse
    """

    model_config = ConfigDict(frozen=True)

    engine: Engine
    status: ParseStatus
    nodes: tuple[PlanNode, ...] = ()
    strategy: str | None = None
    errors: tuple[str, ...] = ()

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    def get(self, node_id: int) -> PlanNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def in_id_order(self) -> list[PlanNode]:
        """Nodes in extraction order, regardless of how `nodes` is sorted."""
        return sorted(self.nodes, key=lambda n: n.id)

    def roots(self) -> list[PlanNode]:
        return [n for n in self.in_id_order() if n.parent_id is None]

    def children_of(self, node_id: int) -> list[PlanNode]:
        node = self.get(node_id)
        if node is None:
            return []
        by_id = {n.id: n for n in self.nodes}
        return [by_id[c] for c in node.children if c in by_id]

    @property
    def max_cost_metric(self) -> float:
        values = [n.cost_metric for n in self.nodes if n.cost_metric is not None]
        return max(values, default=0.0)


# -----------------------------------------------------------------------------
# SQL Server
# -----------------------------------------------------------------------------


class WarningKind(str, Enum):
    """Warning flags recognized in ShowPlan XML."""

    MISSING_INDEX = "missing_index"
    TEMPDB_SPILL = "tempdb_spill"
    PLAN_WARNINGS = "plan_warnings"
    STATISTICS_MISSING = "statistics_missing"
    UNMATCHED_INDEXES = "unmatched_indexes"
    JOIN_ISSUE = "join_issue"
    CARTESIAN_JOIN = "cartesian_join"
    PLAN_GUIDE = "plan_guide"
    NON_PARALLEL_PLAN = "non_parallel_plan"
    PARAMETERIZATION = "parameterization"
    MEMORY_GRANT = "memory_grant"
    ROW_ESTIMATE = "row_estimate"


class PlanWarning(BaseModel):
    """One warning flag with its display text."""

    model_config = ConfigDict(frozen=True)

    kind: WarningKind
    message: str


class MissingIndexRecommendation(BaseModel):
    """
    A `MissingIndexGroup/MissingIndex` entry with its generated DDL.

    The recommendation is kept even without key columns; in that case
    `has_key_columns` is False and `ddl_script` is a comment only.
    """

    model_config = ConfigDict(frozen=True)

    database: str = ""
    schema_name: str = ""
    table: str
    impact: float = Field(default=0.0, ge=0, le=100)
    equality_columns: tuple[str, ...] = ()
    inequality_columns: tuple[str, ...] = ()
    included_columns: tuple[str, ...] = ()
    ddl_script: str = ""

    @property
    def key_columns(self) -> tuple[str, ...]:
        return self.equality_columns + self.inequality_columns

    @property
    def has_key_columns(self) -> bool:
        return bool(self.key_columns)


class UsedIndex(BaseModel):
    """An index referenced by the plan."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: str


class ExecutionStats(BaseModel):
    """Statement-level runtime counters (actual plans only)."""

    model_config = ConfigDict(frozen=True)

    actual_rows: float | None = None
    row_size: int | None = None
    logical_reads: int | None = None
    physical_reads: int | None = None
    execution_time: float | None = None
    cpu_time: float | None = None
    elapsed_time: float | None = None


class StatementSummary(BaseModel):
    """Statement and plan level facts from ShowPlan XML."""

    model_config = ConfigDict(frozen=True)

    statement_type: str = ""
    statement_text: str = ""
    estimated_rows: float = 0.0
    degree_of_parallelism: int = 0
    query_hash: str = ""
    plan_hash: str = ""
    cached: bool = False
    cached_plan_size: int = 0
    execution: ExecutionStats = Field(default_factory=ExecutionStats)


class GenericPlanCheck(BaseModel):
    """Result of the generic/irrelevant plan heuristic."""

    model_config = ConfigDict(frozen=True)

    suspected: bool = False
    reasons: tuple[str, ...] = ()


class MssqlPlanResult(PlanResult):
    """
    SQL Server ShowPlan parse.

    `nodes` is ordered by descending subtree cost for "most expensive
    operations" reporting; use `in_id_order()` for tree work.
    """

    engine: Engine = Engine.MSSQL
    statement_est_rows: float | None = None
    summary: StatementSummary = Field(default_factory=StatementSummary)
    warnings: tuple[PlanWarning, ...] = ()
    missing_indexes: tuple[MissingIndexRecommendation, ...] = ()
    used_indexes: tuple[UsedIndex, ...] = ()
    generic_plan: GenericPlanCheck = Field(default_factory=GenericPlanCheck)


# -----------------------------------------------------------------------------
# PostgreSQL
# -----------------------------------------------------------------------------


class TimingEntry(BaseModel):
    """A planning, execution or trigger timing line."""

    model_config = ConfigDict(frozen=True)

    name: str
    time_ms: float
    calls: int | None = None
    percentage: float = 0.0


class PostgresPlanResult(PlanResult):
    """PostgreSQL EXPLAIN ANALYZE text parse. `nodes` is in id order."""

    engine: Engine = Engine.POSTGRES
    timings: tuple[TimingEntry, ...] = ()
    planning_time_ms: float | None = None
    execution_time_ms: float | None = None

    def slowest_node(self) -> PlanNode | None:
        """Node with the largest actual end time."""
        timed = [n for n in self.nodes if n.actual_time is not None]
        return max(timed, key=lambda n: n.actual_time.end, default=None)

    def largest_node(self) -> PlanNode | None:
        """Node returning the most actual rows."""
        counted = [n for n in self.nodes if n.actual_rows is not None]
        return max(counted, key=lambda n: n.actual_rows, default=None)

    def costliest_node(self) -> PlanNode | None:
        """Node with the highest total cost."""
        costed = [n for n in self.nodes if n.cost_metric is not None]
        return max(costed, key=lambda n: n.cost_metric, default=None)


# -----------------------------------------------------------------------------
# MongoDB
# -----------------------------------------------------------------------------


class MongoExecutionSummary(BaseModel):
    """Top-level `executionStats` counters."""

    model_config = ConfigDict(frozen=True)

    execution_success: bool = False
    n_returned: int = 0
    execution_time_ms: float = 0.0
    total_keys_examined: int = 0
    total_docs_examined: int = 0


class MongoServerInfo(BaseModel):
    """`serverInfo` section."""

    model_config = ConfigDict(frozen=True)

    host: str = ""
    port: int | None = None
    version: str = ""
    git_version: str = ""


class MongoPlanResult(PlanResult):
    """
    MongoDB explain parse.

    `nodes` holds the winning plan. Each rejected plan is an independent
    node tuple with its own id space.
    """

    engine: Engine = Engine.MONGO
    namespace: str = ""
    parsed_query: str = ""
    rejected_plans: tuple[tuple[PlanNode, ...], ...] = ()
    execution_summary: MongoExecutionSummary = Field(default_factory=MongoExecutionSummary)
    server_info: MongoServerInfo = Field(default_factory=MongoServerInfo)


# =============================================================================
# Deadlock graph
# =============================================================================


class DeadlockParticipant(BaseModel):
    """A `process-list/process` entry."""

    model_config = ConfigDict(frozen=True)

    process_id: str
    session_id: int | None = None
    status: str = ""
    wait_resource: str = ""
    wait_time_ms: int | None = None
    lock_mode: str = ""
    transaction_name: str = ""
    isolation_level: str = ""
    host_name: str = ""
    login_name: str = ""
    client_app: str = ""
    database: str = ""
    input_query: str = ""
    procedures: tuple[str, ...] = ()
    is_victim: bool = False


class LockHolder(BaseModel):
    """An owner or waiter reference on a lock resource."""

    model_config = ConfigDict(frozen=True)

    participant_id: str
    mode: str = ""
    is_victim: bool = False


class LockResource(BaseModel):
    """A `resource-list` entry (keylock, pagelock, objectlock, ...)."""

    model_config = ConfigDict(frozen=True)

    resource_type: str = "keylock"
    object_name: str = ""
    index_name: str = ""
    mode: str = ""
    owners: tuple[LockHolder, ...] = ()
    waiters: tuple[LockHolder, ...] = ()


class DeadlockEdge(BaseModel):
    """Directed owner → waiter edge through one resource."""

    model_config = ConfigDict(frozen=True)

    owner_id: str
    waiter_id: str
    resource_index: int
    owner_mode: str = ""
    waiter_mode: str = ""


class DeadlockGraph(BaseModel):
    """
    Parsed deadlock report.

    Attributes:
        status: PARSED, UNRECOGNIZED, or FAILED when the XML is malformed
        victim_id: Process id from victim-list, None if absent
        participants: Processes in document order
        resources: Lock resources in document order
        edges: Owner → waiter edges, resolved ids only
        warnings: Owner/waiter references that were dropped
        errors: Parse failure messages
        raw_text: Decoded text kept for fallback display on failure
    """

    model_config = ConfigDict(frozen=True)

    status: ParseStatus
    victim_id: str | None = None
    participants: tuple[DeadlockParticipant, ...] = ()
    resources: tuple[LockResource, ...] = ()
    edges: tuple[DeadlockEdge, ...] = ()
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    raw_text: str | None = None

    @property
    def victim(self) -> DeadlockParticipant | None:
        for participant in self.participants:
            if participant.is_victim:
                return participant
        return None

    def participant(self, process_id: str) -> DeadlockParticipant | None:
        for participant in self.participants:
            if participant.process_id == process_id:
                return participant
        return None


ParseResult = Union[MssqlPlanResult, PostgresPlanResult, MongoPlanResult, DeadlockGraph]


def link_children(nodes: list[PlanNode]) -> list[PlanNode]:
    """Fill `children` from `parent_id`, preserving id order."""
    children: dict[int, list[int]] = {}
    for node in nodes:
        if node.parent_id is not None:
            children.setdefault(node.parent_id, []).append(node.id)
    return [
        node.model_copy(update={"children": tuple(children.get(node.id, ()))})
        for node in nodes
    ]
