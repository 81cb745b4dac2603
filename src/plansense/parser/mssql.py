"""
Parser for SQL Server ShowPlan XML.

ShowPlan payloads are frequently truncated or partially escaped, so this
parser does not build a DOM. It scans `<RelOp ...>` opening tags and their
`</RelOp>` closers, reads attributes in any order, and runs a chain of
extraction tiers (most precise first):

1. full_attributes: every RelOp carrying all six cost/row attributes
2. reduced_attributes: RelOps with PhysicalOp and LogicalOp only, missing
   cost/rows filled with placeholders
3. operator_sweep: every distinct PhysicalOp/LogicalOp value, parent-less
4. clustered_scan: a single synthesized Clustered Index Scan node

The first tier producing at least one node wins. Parent/child links come
from tag nesting; unclosed tags simply stay open.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from plansense.exceptions import PlanSenseError
from plansense.parser.attributes import parse_attributes, strip_brackets, to_bool, to_float, to_int
from plansense.parser.config import DEFAULT_CONFIG, ParserConfig
from plansense.parser.detect import is_mssql_plan
from plansense.parser.envelope import ensure_within_limits, unwrap_payload
from plansense.parser.models import (
    Engine,
    MssqlPlanResult,
    ParseStatus,
    PlanNode,
    SqlServerCost,
    link_children,
)
from plansense.parser.mssql_guards import check_generic_plan
from plansense.parser.mssql_summary import extract_plan_details
from plansense.parser.strategies import Matched, Strategy, first_match

logger = logging.getLogger(__name__)

_RELOP_TOKEN = re.compile(r'<RelOp\b((?:[^>"]|"[^"]*")*)>|</RelOp\s*>')
_NEXT_RELOP = re.compile(r"</?RelOp\b")

_OBJECT_TAG = re.compile(r"<Object\b((?:[^>\"]|\"[^\"]*\")*)/?>")
_PREDICATE = re.compile(r'<Predicate\b.*?<ScalarOperator\b[^>]*?ScalarString="([^"]*)"', re.DOTALL)
_ACTUAL_ROWS = re.compile(r'\bActualRows="([^"]+)"')
_STATEMENT_EST_ROWS = re.compile(r'StatementEstRows="([^"]+)"', re.IGNORECASE)
_OPERATOR_NAME = re.compile(r'(?:PhysicalOp|LogicalOp)="([^"]*)"')

_CLUSTERED_SCAN = re.compile(r'PhysicalOp="Clustered Index Scan"', re.IGNORECASE)
_BRACKETED_TABLE = re.compile(r'Table="\[([^\]]+)\]"')
_BRACKETED_INDEX = re.compile(r'Index="\[([^\]]+)\]"')
_FIRST_ACTUAL_ROWS = re.compile(r'ActualRows="([^"]+)"', re.IGNORECASE)
_FIRST_ROW_SIZE = re.compile(r'AvgRowSize="([^"]+)"', re.IGNORECASE)

FULL_ATTRIBUTES = (
    "PhysicalOp",
    "LogicalOp",
    "EstimateRows",
    "EstimateCPU",
    "EstimateIO",
    "EstimatedTotalSubtreeCost",
)

# Cost figures SQL Server reports for a single-page clustered scan
CLUSTERED_SCAN_CPU = 0.0012834
CLUSTERED_SCAN_IO = 0.0105324
CLUSTERED_SCAN_SUBTREE = 0.0118158


# =============================================================================
# Scanned plan text
# =============================================================================


@dataclass(frozen=True)
class RelOpElement:
    """
    One `<RelOp>` opening tag.

    Attributes:
        index: Position among all RelOp tags (document order)
        attributes: The tag's own attributes
        segment: Text from the tag up to the next RelOp open/close tag,
            i.e. the operator's own content without its children
        parent_index: Index of the enclosing RelOp, None at top level
    """

    index: int
    attributes: dict[str, str]
    segment: str
    parent_index: int | None


@dataclass
class PlanText:
    """Unwrapped ShowPlan text plus the RelOp elements found in it."""

    text: str
    config: ParserConfig
    elements: list[RelOpElement] = field(default_factory=list)
    statement_rows: float | None = None

    @classmethod
    def scan(cls, text: str, config: ParserConfig) -> PlanText:
        plan = cls(text=text, config=config)
        stmt = _STATEMENT_EST_ROWS.search(text)
        plan.statement_rows = to_float(stmt.group(1)) if stmt else None

        open_stack: list[int] = []
        for token in _RELOP_TOKEN.finditer(text):
            if token.group(0).startswith("</"):
                if open_stack:
                    open_stack.pop()
                continue

            body = token.group(1)
            self_closing = body.rstrip().endswith("/")
            next_tag = _NEXT_RELOP.search(text, token.end())
            segment_end = next_tag.start() if next_tag else len(text)
            element = RelOpElement(
                index=len(plan.elements),
                attributes=parse_attributes(body),
                segment=text[token.start():segment_end],
                parent_index=open_stack[-1] if open_stack else None,
            )
            plan.elements.append(element)
            if not self_closing:
                open_stack.append(element.index)
        return plan


# =============================================================================
# Node construction
# =============================================================================


def _segment_details(segment: str) -> dict[str, object]:
    """Object/Index/Predicate/ActualRows from an operator's own content."""
    details: dict[str, object] = {}
    obj = _OBJECT_TAG.search(segment)
    if obj:
        attrs = parse_attributes(obj.group(1))
        if "Table" in attrs:
            details["object_name"] = strip_brackets(attrs["Table"])
        if "Index" in attrs:
            details["index_name"] = strip_brackets(attrs["Index"])
    predicate = _PREDICATE.search(segment)
    if predicate:
        details["predicate"] = html.unescape(predicate.group(1))

    per_thread = [to_float(v) for v in _ACTUAL_ROWS.findall(segment)]
    counted = [v for v in per_thread if v is not None]
    if counted:
        details["actual_rows"] = sum(counted)
    return details


def _element_node(
    element: RelOpElement,
    node_id: int,
    parent_id: int | None,
    estimated_rows: float | None,
    cost: SqlServerCost,
) -> PlanNode:
    attrs = element.attributes
    return PlanNode(
        id=node_id,
        parent_id=parent_id,
        engine=Engine.MSSQL,
        physical_op=attrs["PhysicalOp"],
        logical_op=attrs.get("LogicalOp"),
        estimated_rows=estimated_rows,
        cost=cost,
        avg_row_size=to_int(attrs.get("AvgRowSize")),
        is_ordered=to_bool(attrs.get("Ordered")),
        is_parallel=to_bool(attrs.get("Parallel")),
        scan_direction=attrs.get("ScanDirection"),
        **_segment_details(element.segment),
    )


def _build_from_elements(
    plan: PlanText,
    include: list[RelOpElement],
    make_node: Callable[[RelOpElement, int, int | None], PlanNode],
) -> list[PlanNode]:
    """
    Number the included elements and resolve parents to the nearest
    included ancestor.
    """
    ids: dict[int, int] = {}
    nodes: list[PlanNode] = []
    by_index = {e.index: e for e in plan.elements}
    for element in include:
        if len(nodes) >= plan.config.max_nodes:
            logger.warning("Node limit reached (%d), truncating plan", plan.config.max_nodes)
            break
        parent = element.parent_index
        while parent is not None and parent not in ids:
            parent = by_index[parent].parent_index
        node_id = len(nodes)
        ids[element.index] = node_id
        nodes.append(make_node(element, node_id, ids[parent] if parent is not None else None))
    return nodes


# =============================================================================
# Extraction tiers
# =============================================================================


def extract_full_attributes(plan: PlanText) -> list[PlanNode]:
    """Tier 1: RelOps carrying every cost and row attribute."""
    include = [
        e for e in plan.elements
        if all(name in e.attributes for name in FULL_ATTRIBUTES)
    ]

    def make_node(element: RelOpElement, node_id: int, parent_id: int | None) -> PlanNode:
        attrs = element.attributes
        cost = SqlServerCost(
            cpu=to_float(attrs["EstimateCPU"]) or 0.0,
            io=to_float(attrs["EstimateIO"]) or 0.0,
            subtree_total=to_float(attrs["EstimatedTotalSubtreeCost"]) or 0.0,
        )
        return _element_node(element, node_id, parent_id, to_float(attrs["EstimateRows"]), cost)

    return _build_from_elements(plan, include, make_node)


def extract_reduced_attributes(plan: PlanText) -> list[PlanNode]:
    """Tier 2: RelOps with operator names only; placeholders fill the rest."""
    include = [
        e for e in plan.elements
        if "PhysicalOp" in e.attributes and "LogicalOp" in e.attributes
    ]
    fallback_rows = plan.statement_rows or 0.0

    def make_node(element: RelOpElement, node_id: int, parent_id: int | None) -> PlanNode:
        attrs = element.attributes
        subtree = to_float(attrs.get("EstimatedTotalSubtreeCost"))
        rows = to_float(attrs.get("EstimateRows"))
        cost = SqlServerCost(
            cpu=to_float(attrs.get("EstimateCPU")) or 0.0,
            io=to_float(attrs.get("EstimateIO")) or 0.0,
            subtree_total=subtree if subtree is not None else plan.config.placeholder_cost,
        )
        return _element_node(
            element, node_id, parent_id, rows if rows is not None else fallback_rows, cost
        )

    return _build_from_elements(plan, include, make_node)


def extract_operator_sweep(plan: PlanText) -> list[PlanNode]:
    """Tier 3: distinct operator names anywhere in the text, as a flat list."""
    seen: dict[str, None] = {}
    for name in _OPERATOR_NAME.findall(plan.text):
        seen.setdefault(name, None)
    operators = list(seen)[: plan.config.max_nodes]
    return [
        PlanNode(
            id=node_id,
            engine=Engine.MSSQL,
            physical_op=name,
            logical_op=name,
            estimated_rows=plan.statement_rows or 0.0,
            cost=SqlServerCost(subtree_total=plan.config.placeholder_cost),
        )
        for node_id, name in enumerate(operators)
    ]


def extract_clustered_scan(plan: PlanText) -> list[PlanNode]:
    """Tier 4: one synthesized Clustered Index Scan node."""
    if not _CLUSTERED_SCAN.search(plan.text):
        return []
    table = _BRACKETED_TABLE.search(plan.text)
    index = _BRACKETED_INDEX.search(plan.text)
    actual = _FIRST_ACTUAL_ROWS.search(plan.text)
    row_size = _FIRST_ROW_SIZE.search(plan.text)
    rows = plan.statement_rows
    return [
        PlanNode(
            id=0,
            engine=Engine.MSSQL,
            physical_op="Clustered Index Scan",
            logical_op="Clustered Index Scan",
            estimated_rows=rows if rows is not None else plan.config.default_statement_rows,
            actual_rows=to_float(actual.group(1)) if actual else None,
            cost=SqlServerCost(
                cpu=CLUSTERED_SCAN_CPU,
                io=CLUSTERED_SCAN_IO,
                subtree_total=CLUSTERED_SCAN_SUBTREE,
            ),
            object_name=table.group(1) if table else "Unknown",
            index_name=index.group(1) if index else "Unknown",
            avg_row_size=to_int(row_size.group(1)) if row_size else None,
        )
    ]


OPERATOR_STRATEGIES: tuple[Strategy[PlanNode], ...] = (
    Strategy("full_attributes", extract_full_attributes),
    Strategy("reduced_attributes", extract_reduced_attributes),
    Strategy("operator_sweep", extract_operator_sweep),
    Strategy("clustered_scan", extract_clustered_scan),
)


def sort_by_cost(nodes: list[PlanNode]) -> tuple[PlanNode, ...]:
    """Most expensive first; ties keep id order."""
    return tuple(sorted(nodes, key=lambda n: -(n.cost_metric or 0.0)))


# =============================================================================
# Public API
# =============================================================================


def parse_mssql_plan(
    payload: str | None,
    config: ParserConfig | None = None,
    expected_statement: str | None = None,
) -> MssqlPlanResult:
    """
    Parse SQL Server ShowPlan XML (wrapped or not) into a MssqlPlanResult.

    Never raises. Payloads without any ShowPlan marker come back
    UNRECOGNIZED; payloads with markers but no extractable operator come
    back EMPTY (the summary and warnings are still filled in).

    Args:
        payload: Raw payload, envelopes allowed
        config: Parser limits and placeholders
        expected_statement: Query text the plan was requested for. Enables
            the statement-type half of the generic plan check.

    Example:
        >>> result = parse_mssql_plan(xml)
        >>> result.nodes[0].physical_op   # most expensive operator
        'Hash Match'
    """
    config = config or DEFAULT_CONFIG
    if not payload or not payload.strip():
        return MssqlPlanResult(status=ParseStatus.UNRECOGNIZED)

    try:
        ensure_within_limits(payload, config)
        text = unwrap_payload(payload, config)
        if not is_mssql_plan(text):
            return MssqlPlanResult(status=ParseStatus.UNRECOGNIZED)

        plan = PlanText.scan(text, config)
        outcome = first_match(OPERATOR_STRATEGIES, plan)
        if isinstance(outcome, Matched):
            nodes = link_children(list(outcome.items))
            status = ParseStatus.PARSED
        else:
            nodes = []
            status = ParseStatus.EMPTY

        details = extract_plan_details(text, plan.statement_rows)
        guard = check_generic_plan(details.summary, nodes, expected_statement)

        return MssqlPlanResult(
            status=status,
            nodes=sort_by_cost(nodes),
            strategy=outcome.strategy,
            statement_est_rows=plan.statement_rows,
            summary=details.summary,
            warnings=details.warnings,
            missing_indexes=details.missing_indexes,
            used_indexes=details.used_indexes,
            generic_plan=guard,
        )
    except PlanSenseError as e:
        logger.warning("SQL Server plan not parsed: %s", e.message)
        return MssqlPlanResult(status=ParseStatus.UNRECOGNIZED, errors=(e.message,))
    except Exception as e:  # noqa: BLE001 - parser entry points never raise
        logger.exception("Unexpected error parsing SQL Server plan")
        return MssqlPlanResult(status=ParseStatus.EMPTY, errors=(str(e),))
