"""
Parser for PostgreSQL EXPLAIN (ANALYZE, BUFFERS) text output.

Text plans are indentation-significant:

    Sort  (cost=10.1..10.2 rows=5 width=8) (actual time=0.1..0.1 rows=5 loops=1)
      Sort Key: o.created_at
      ->  Hash Join  (cost=1.1..10.0 rows=5 width=8) (actual time=...)
            Hash Cond: (o.customer_id = c.id)
            ->  Seq Scan on orders o  (cost=0.0..8.0 rows=100 width=12) (...)
            ->  Hash  (cost=1.0..1.0 rows=4 width=4) (...)
    Planning Time: 0.210 ms
    Execution Time: 0.452 ms

Each line is one of:
- an operation line, which opens a node; its parent is found with an
  explicit stack of (indent, node_id) pairs
- a detail line (`Label: value`), attached to the most recent node
- a timing line (Planning Time, Execution Time, Trigger ... time=... calls=...)
- a block header whose indented lines are not node details (`Planning:`, `JIT:`)

A second pass repairs row counts from each node's stored line, for lines
the first pass only partly understood.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from plansense.exceptions import PlanSenseError
from plansense.parser.config import DEFAULT_CONFIG, ParserConfig
from plansense.parser.detect import is_postgres_plan
from plansense.parser.envelope import ensure_within_limits, unwrap_payload
from plansense.parser.models import (
    BlockCounts,
    BufferStats,
    Engine,
    NodeDetail,
    ParseStatus,
    PlanNode,
    PostgresCost,
    PostgresPlanResult,
    TimeRange,
    TimingEntry,
    link_children,
)

logger = logging.getLogger(__name__)

KNOWN_OPERATIONS = (
    "Seq Scan", "Index Scan", "Index Only Scan", "Bitmap Heap Scan", "Bitmap Index Scan",
    "Tid Scan", "Tid Range Scan", "Sample Scan", "Subquery Scan", "Function Scan",
    "Table Function Scan", "Values Scan", "CTE Scan", "Named Tuplestore Scan",
    "WorkTable Scan", "Foreign Scan", "Custom Scan",
    "Nested Loop", "Hash Join", "Merge Join", "Hash",
    "Incremental Sort", "Sort", "HashAggregate", "GroupAggregate", "MixedAggregate",
    "Aggregate", "Group", "WindowAgg", "Unique", "SetOp", "HashSetOp", "Limit",
    "LockRows", "Result", "ProjectSet", "Materialize", "Material", "Memoize",
    "Gather Merge", "Gather", "Append", "Merge Append", "Recursive Union",
    "BitmapAnd", "BitmapOr",
    "Insert", "Update", "Delete", "Merge",
)

_OPERATION = re.compile(
    r"^(?:Parallel\s+)?(?:" + "|".join(re.escape(op) for op in KNOWN_OPERATIONS) + r")\b"
)
_DETAIL = re.compile(r"^([A-Za-z][A-Za-z /-]*?):\s*(.*)$")
_PLANNING_TIME = re.compile(r"^Planning(?: Time)?:\s*([\d.]+)\s*ms", re.IGNORECASE)
_EXECUTION_TIME = re.compile(r"^(?:Execution|Total runtime)(?: Time)?:\s*([\d.]+)\s*ms", re.IGNORECASE)
_TRIGGER = re.compile(r"^(Trigger .+?):\s*time=([\d.]+)\s*calls=(\d+)")
_IGNORED_BLOCKS = ("Planning:", "JIT:")
_NOISE = re.compile(r"^(?:QUERY PLAN|-{3,}.*|={3,}.*|\(\d+ rows?\))$")

_COST = re.compile(r"\(cost=([\d.]+)\.\.([\d.]+)(?:\s+rows=(\d+))?(?:\s+width=(\d+))?")
_ACTUAL = re.compile(r"\(actual ([^)]*)\)")
_ACTUAL_TIME = re.compile(r"time=([\d.]+)\.\.([\d.]+)")
_ACTUAL_ROWS = re.compile(r"rows=([\d.]+)")
_LOOPS = re.compile(r"loops=(\d+)")
_NEVER_EXECUTED = "(never executed)"

_HEAD = re.compile(r"^(.*?)\s*\((?:cost=|actual |never executed)")
_USING_ON = re.compile(r"^(.+?) using (\S+) on (\S+)(?: (\S+))?$")
_ON = re.compile(r"^(.+?) on (\S+)(?: (\S+))?$")

_BUFFER_PART = re.compile(r"\b(shared|local|temp)\s+((?:\w+=\d+\s*)+)")
_BUFFER_COUNT = re.compile(r"(hit|read|dirtied|written)=(\d+)")


# =============================================================================
# Line helpers
# =============================================================================


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def parse_buffers(value: str) -> BufferStats:
    """
    Parse the value of a `Buffers:` line.

    Example:
        >>> parse_buffers("shared hit=12 read=3, temp written=5").shared.hit
        12
    """
    parts: dict[str, BlockCounts] = {}
    for category, counts in _BUFFER_PART.findall(value):
        values = {name: int(number) for name, number in _BUFFER_COUNT.findall(counts)}
        parts[category] = BlockCounts(**values)
    return BufferStats(**parts)


def split_operation(text: str) -> dict[str, str | None]:
    """
    Split an operation line's head into operator, index and relation.

    "Index Scan using idx_orders_customer on orders o" gives
    physical_op="Index Scan", index_name="idx_orders_customer",
    object_name="orders".
    """
    head_match = _HEAD.match(text)
    head = (head_match.group(1) if head_match else text).strip()

    using_on = _USING_ON.match(head)
    if using_on:
        return {
            "physical_op": using_on.group(1),
            "index_name": using_on.group(2),
            "object_name": using_on.group(3),
        }
    on = _ON.match(head)
    if on:
        op, target = on.group(1), on.group(2)
        if op.endswith("Bitmap Index Scan"):
            return {"physical_op": op, "index_name": target, "object_name": None}
        return {"physical_op": op, "index_name": None, "object_name": target}
    return {"physical_op": head, "index_name": None, "object_name": None}


def _is_operation(trimmed: str) -> bool:
    if trimmed.startswith("->"):
        return True
    if _DETAIL.match(trimmed.split("(", 1)[0]):
        return False
    return bool(_OPERATION.match(trimmed)) or "(cost=" in trimmed


# =============================================================================
# Node drafts
# =============================================================================


@dataclass
class _NodeDraft:
    id: int
    parent_id: int | None
    raw_text: str
    fields: dict[str, object] = field(default_factory=dict)
    details: list[NodeDetail] = field(default_factory=list)
    buffers: BufferStats | None = None

    def to_node(self) -> PlanNode:
        return PlanNode(
            id=self.id,
            parent_id=self.parent_id,
            engine=Engine.POSTGRES,
            raw_text=self.raw_text,
            details=tuple(self.details),
            buffers=self.buffers,
            **self.fields,
        )


def _metrics(text: str) -> dict[str, object]:
    metrics: dict[str, object] = {}
    cost = _COST.search(text)
    if cost:
        metrics["cost"] = PostgresCost(start=float(cost.group(1)), end=float(cost.group(2)))
        if cost.group(3) is not None:
            metrics["estimated_rows"] = float(cost.group(3))
        if cost.group(4) is not None:
            metrics["width"] = int(cost.group(4))

    actual = _ACTUAL.search(text)
    if actual:
        inner = actual.group(1)
        timing = _ACTUAL_TIME.search(inner)
        if timing:
            metrics["actual_time"] = TimeRange(start=float(timing.group(1)), end=float(timing.group(2)))
        rows = _ACTUAL_ROWS.search(inner)
        if rows:
            metrics["actual_rows"] = float(rows.group(1))
        loops = _LOOPS.search(inner)
        if loops:
            metrics["loops"] = int(loops.group(1))
    if _NEVER_EXECUTED in text:
        metrics["never_executed"] = True
    return metrics


def _repair_rows(draft: _NodeDraft) -> None:
    """Second pass: recover row counts the first pass missed."""
    text = draft.raw_text
    if "estimated_rows" not in draft.fields:
        planned = re.search(r"cost=[^)]*?\brows=(\d+)", text)
        if planned:
            draft.fields["estimated_rows"] = float(planned.group(1))
    if "actual_rows" not in draft.fields:
        actual = re.search(r"actual[^)]*?\brows=([\d.]+)", text)
        if actual:
            draft.fields["actual_rows"] = float(actual.group(1))


# =============================================================================
# Parsing
# =============================================================================


@dataclass
class _PlanState:
    config: ParserConfig
    drafts: list[_NodeDraft] = field(default_factory=list)
    stack: list[tuple[int, int]] = field(default_factory=list)
    timings: list[tuple[str, float, int | None]] = field(default_factory=list)
    ignore_below: int | None = None
    truncated: bool = False
    errors: list[str] = field(default_factory=list)

    def open_node(self, line: str, indent: int) -> None:
        if len(self.drafts) >= self.config.max_nodes:
            if not self.truncated:
                self.errors.append(f"Node limit reached ({self.config.max_nodes}), plan truncated")
                self.truncated = True
            return
        while self.stack and self.stack[-1][0] >= indent:
            self.stack.pop()
        parent_id = self.stack[-1][1] if self.stack else None

        text = line.strip()
        if text.startswith("->"):
            text = text[2:].strip()
        draft = _NodeDraft(id=len(self.drafts), parent_id=parent_id, raw_text=text)
        draft.fields.update(split_operation(text))
        draft.fields.update(_metrics(text))
        self.drafts.append(draft)
        self.stack.append((indent, draft.id))

    def add_detail(self, label: str, value: str) -> None:
        # Details after the node limit belong to operations that were not kept
        if not self.drafts or self.truncated:
            return
        draft = self.drafts[-1]
        draft.details.append(NodeDetail(label=label, value=value))
        if label == "Buffers":
            draft.buffers = parse_buffers(value)
        elif label in ("Index Cond", "Filter", "Recheck Cond", "Hash Cond", "Merge Cond", "Join Filter"):
            draft.fields.setdefault("predicate", value)

    def feed(self, line: str) -> None:
        trimmed = line.strip()
        if not trimmed or _NOISE.match(trimmed):
            return
        indent = _indent(line)

        if self.ignore_below is not None:
            if indent > self.ignore_below:
                return
            self.ignore_below = None

        planning = _PLANNING_TIME.match(trimmed)
        if planning:
            self.timings.append(("Planning Time", float(planning.group(1)), None))
            return
        execution = _EXECUTION_TIME.match(trimmed)
        if execution:
            self.timings.append(("Execution Time", float(execution.group(1)), None))
            return
        trigger = _TRIGGER.match(trimmed)
        if trigger:
            self.timings.append((trigger.group(1), float(trigger.group(2)), int(trigger.group(3))))
            return
        if trimmed in _IGNORED_BLOCKS:
            self.ignore_below = indent
            return

        if _is_operation(trimmed):
            self.open_node(line, indent)
            return

        detail = _DETAIL.match(trimmed)
        if detail:
            self.add_detail(detail.group(1), detail.group(2).strip())
            return
        logger.debug("Unclassified plan line ignored: %s", trimmed[:80])


def compute_timings(raw: list[tuple[str, float, int | None]]) -> list[TimingEntry]:
    """Percentages of the summed timings, most expensive first."""
    total = sum(time for _, time, _ in raw)
    entries = [
        TimingEntry(
            name=name,
            time_ms=time,
            calls=calls,
            percentage=(time / total * 100) if total > 0 else 0.0,
        )
        for name, time, calls in raw
    ]
    return sorted(entries, key=lambda e: -e.time_ms)


def parse_postgres_plan(
    payload: str | None,
    config: ParserConfig | None = None,
) -> PostgresPlanResult:
    """
    Parse PostgreSQL EXPLAIN ANALYZE text (wrapped or not).

    Never raises. `nodes` is in id order; roots have parent_id None and
    every child id appears in exactly one parent's `children`.

    Example:
        >>> result = parse_postgres_plan(text)
        >>> [n.physical_op for n in result.roots()]
        ['Sort']
    """
    config = config or DEFAULT_CONFIG
    if not payload or not payload.strip():
        return PostgresPlanResult(status=ParseStatus.UNRECOGNIZED)

    try:
        ensure_within_limits(payload, config)
        text = unwrap_payload(payload, config)
        if not is_postgres_plan(text):
            return PostgresPlanResult(status=ParseStatus.UNRECOGNIZED)

        state = _PlanState(config=config)
        for line in text.splitlines():
            state.feed(line)

        for draft in state.drafts:
            _repair_rows(draft)
        nodes = link_children([draft.to_node() for draft in state.drafts])

        timings = compute_timings(state.timings)
        planning = next((t.time_ms for t in timings if t.name == "Planning Time"), None)
        execution = next((t.time_ms for t in timings if t.name == "Execution Time"), None)

        logger.debug("Parsed %d PostgreSQL node(s), %d timing(s)", len(nodes), len(timings))
        return PostgresPlanResult(
            status=ParseStatus.PARSED if nodes else ParseStatus.EMPTY,
            nodes=tuple(nodes),
            strategy="indentation",
            timings=tuple(timings),
            planning_time_ms=planning,
            execution_time_ms=execution,
            errors=tuple(state.errors),
        )
    except PlanSenseError as e:
        logger.warning("PostgreSQL plan not parsed: %s", e.message)
        return PostgresPlanResult(status=ParseStatus.UNRECOGNIZED, errors=(e.message,))
    except Exception as e:  # noqa: BLE001 - parser entry points never raise
        logger.exception("Unexpected error parsing PostgreSQL plan")
        return PostgresPlanResult(status=ParseStatus.EMPTY, errors=(str(e),))
