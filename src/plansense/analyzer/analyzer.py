"""
DiagnosticAnalyzer - severity classification over any parse result.

Runs the same checks regardless of engine, then the engine-specific ones:

- Every plan: cost band per node (relative to the plan's most expensive
  node, dampened for cheap plans), row-estimation class per node, and a
  COST_HOTSPOT for each HIGH node whose children are not HIGH themselves
- SQL Server: the ShowPlan warning taxonomy, missing-index recommendations
  and the generic-plan guard
- PostgreSQL: sorts and hashes that went to disk, nested loops with a
  large number of inner loops, filters that discard most rows, sequential
  scans of large tables, slow operations and a slow query overall
- MongoDB: collection scans, in-memory sorts and docsExamined/nReturned
- Deadlocks: the deadlock itself, each wait edge and unresolved references

The analyzer never mutates the parse result. Diagnostics point at nodes by
id only.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from plansense.analyzer.classify import classify_cost, classify_row_mismatch, row_mismatch_severity
from plansense.analyzer.index_script import missing_index_message
from plansense.analyzer.models import (
    AnalysisResult,
    CostBand,
    Diagnostic,
    DiagnosticCategory,
    NodeAssessment,
    RowMismatch,
    Severity,
)
from plansense.parser.models import (
    DeadlockGraph,
    MongoPlanResult,
    MssqlPlanResult,
    ParseStatus,
    PlanNode,
    PlanResult,
    PostgresPlanResult,
    WarningKind,
)

if TYPE_CHECKING:
    from plansense.config import Config
    from plansense.parser.models import ParseResult

logger = logging.getLogger(__name__)

# Share of plan cost at which a hotspot becomes critical
DOMINANT_COST_RATIO = 0.9

# Filters discarding fewer rows than this are not worth reporting
MIN_ROWS_REMOVED = 1000

_BATCHES = re.compile(r"\bBatches:\s*(\d+)")
_DISK_SORT = re.compile(r"\bexternal\b|\bDisk:", re.IGNORECASE)

# ShowPlan warning kind -> (code, category, severity)
MSSQL_WARNING_TAXONOMY: dict[WarningKind, tuple[str, DiagnosticCategory, Severity]] = {
    WarningKind.MISSING_INDEX: ("MISSING_INDEX", DiagnosticCategory.INDEX, Severity.WARNING),
    WarningKind.TEMPDB_SPILL: ("TEMPDB_SPILL", DiagnosticCategory.TEMPDB_SPILL, Severity.WARNING),
    WarningKind.PLAN_WARNINGS: ("PLAN_WARNINGS", DiagnosticCategory.OTHER, Severity.INFO),
    WarningKind.STATISTICS_MISSING: ("STATISTICS_MISSING", DiagnosticCategory.CARDINALITY, Severity.WARNING),
    WarningKind.UNMATCHED_INDEXES: ("UNMATCHED_INDEXES", DiagnosticCategory.INDEX, Severity.INFO),
    WarningKind.JOIN_ISSUE: ("JOIN_ISSUE", DiagnosticCategory.JOIN, Severity.WARNING),
    WarningKind.CARTESIAN_JOIN: ("CARTESIAN_JOIN", DiagnosticCategory.JOIN, Severity.CRITICAL),
    WarningKind.PLAN_GUIDE: ("PLAN_GUIDE_USED", DiagnosticCategory.OTHER, Severity.INFO),
    WarningKind.NON_PARALLEL_PLAN: ("NON_PARALLEL_PLAN", DiagnosticCategory.PARALLELISM, Severity.INFO),
    WarningKind.PARAMETERIZATION: ("PARAMETERIZATION", DiagnosticCategory.OTHER, Severity.WARNING),
    WarningKind.MEMORY_GRANT: ("MEMORY_GRANT", DiagnosticCategory.OTHER, Severity.WARNING),
    WarningKind.ROW_ESTIMATE: ("STATEMENT_ROW_ESTIMATE", DiagnosticCategory.CARDINALITY, Severity.WARNING),
}


def _label(node: PlanNode) -> str:
    if node.object_name:
        return f"{node.name} on {node.object_name}"
    return node.name


def _count(value: float) -> str:
    return f"{value:,.0f}"


class DiagnosticAnalyzer:
    """
    Format-agnostic analyzer producing diagnostics and node assessments.

    Thresholds come from Config; pass one explicitly in tests.

    Example:
        from plansense.parser import parse_mssql_plan
        from plansense.analyzer.analyzer import DiagnosticAnalyzer

        result = parse_mssql_plan(xml)
        analysis = DiagnosticAnalyzer().analyze(result)
        for diagnostic in analysis.diagnostics:
            print(diagnostic.severity, diagnostic.message)
    """

    def __init__(self, config: Config | None = None) -> None:
        if config is None:
            from plansense.config import get_config

            config = get_config()
        self.config = config

    def analyze(self, result: ParseResult) -> AnalysisResult:
        """Analyze one parse result. Never mutates it."""
        if isinstance(result, DeadlockGraph):
            diagnostics = self._deadlock(result)
            return AnalysisResult(diagnostics=tuple(sorted(diagnostics)))

        assessments = self.assess_nodes(result)
        diagnostics = self._hotspots(result, assessments)
        diagnostics.extend(self._row_estimates(result, assessments))

        if isinstance(result, MssqlPlanResult):
            diagnostics.extend(self._mssql(result))
        elif isinstance(result, PostgresPlanResult):
            diagnostics.extend(self._postgres(result))
        elif isinstance(result, MongoPlanResult):
            diagnostics.extend(self._mongo(result))

        logger.debug(
            "Analyzed %s plan: %d node(s), %d diagnostic(s)",
            result.engine.value,
            result.node_count,
            len(diagnostics),
        )
        return AnalysisResult(
            diagnostics=tuple(sorted(diagnostics)),
            node_assessments=tuple(assessments.values()),
        )

    # ── Shared checks ────────────────────────────────────────────────────

    def assess_nodes(self, result: PlanResult) -> dict[int, NodeAssessment]:
        """Cost band and row mismatch per node, keyed by id, in id order."""
        config = self.config
        max_cost = result.max_cost_metric
        assessments: dict[int, NodeAssessment] = {}
        for node in result.in_id_order():
            cost = node.cost_metric
            assessments[node.id] = NodeAssessment(
                node_id=node.id,
                cost_band=classify_cost(
                    cost,
                    max_cost,
                    medium_ratio=config.cost_medium_ratio,
                    high_ratio=config.cost_high_ratio,
                    dampening_threshold=config.cost_dampening_threshold,
                ),
                cost_ratio=cost / max_cost if cost is not None and max_cost > 0 else None,
                row_mismatch=classify_row_mismatch(
                    node.actual_rows,
                    node.estimated_rows,
                    significant_ratio=config.row_significant_ratio,
                    severe_ratio=config.row_severe_ratio,
                ),
            )
        return assessments

    def _hotspots(self, result: PlanResult, assessments: dict[int, NodeAssessment]) -> list[Diagnostic]:
        # Costs are cumulative, so only the deepest HIGH node on each path is reported
        diagnostics = []
        for node in result.in_id_order():
            assessment = assessments[node.id]
            if assessment.cost_band is not CostBand.HIGH:
                continue
            if any(assessments[c].cost_band is CostBand.HIGH for c in node.children if c in assessments):
                continue
            ratio = assessment.cost_ratio or 0.0
            diagnostics.append(
                Diagnostic(
                    code="COST_HOTSPOT",
                    category=DiagnosticCategory.COST,
                    severity=Severity.CRITICAL if ratio >= DOMINANT_COST_RATIO else Severity.WARNING,
                    message=f"{_label(node)} accounts for {ratio:.0%} of the plan cost",
                    node_id=node.id,
                )
            )
        return diagnostics

    def _row_estimates(self, result: PlanResult, assessments: dict[int, NodeAssessment]) -> list[Diagnostic]:
        diagnostics = []
        for node in result.in_id_order():
            mismatch = assessments[node.id].row_mismatch
            severity = row_mismatch_severity(mismatch)
            if severity is None or node.row_ratio is None:
                continue
            actual = node.actual_rows or 0.0
            estimated = node.estimated_rows or 0.0
            if actual >= estimated:
                direction = f"{node.row_ratio:,.0f}x more rows than estimated"
            elif actual == 0:
                direction = "no rows where rows were estimated"
            else:
                direction = f"{1 / node.row_ratio:,.0f}x fewer rows than estimated"
            diagnostics.append(
                Diagnostic(
                    code="ROW_ESTIMATE_SEVERE" if mismatch is RowMismatch.SEVERE else "ROW_ESTIMATE_SIGNIFICANT",
                    category=DiagnosticCategory.CARDINALITY,
                    severity=severity,
                    message=(
                        f"{_label(node)} returned {direction} "
                        f"({_count(actual)} actual vs {_count(estimated)} estimated)"
                    ),
                    node_id=node.id,
                )
            )
        return diagnostics

    # ── SQL Server ───────────────────────────────────────────────────────

    def _mssql(self, result: MssqlPlanResult) -> list[Diagnostic]:
        diagnostics = []

        for warning in result.warnings:
            if warning.kind is WarningKind.MISSING_INDEX and result.missing_indexes:
                continue
            code, category, severity = MSSQL_WARNING_TAXONOMY[warning.kind]
            if warning.kind is WarningKind.ROW_ESTIMATE:
                mismatch = classify_row_mismatch(
                    result.summary.execution.actual_rows,
                    result.summary.estimated_rows,
                    significant_ratio=self.config.row_significant_ratio,
                    severe_ratio=self.config.row_severe_ratio,
                )
                severity = row_mismatch_severity(mismatch) or Severity.INFO
            diagnostics.append(
                Diagnostic(code=code, category=category, severity=severity, message=warning.message)
            )

        for index in result.missing_indexes:
            target = ".".join(part for part in (index.schema_name, index.table) if part)
            if not index.has_key_columns:
                diagnostics.append(
                    Diagnostic(
                        code="MISSING_INDEX_NO_KEYS",
                        category=DiagnosticCategory.INDEX,
                        severity=Severity.INFO,
                        message=f"Missing index suggested on {target} without key columns",
                    )
                )
                continue
            diagnostics.append(
                Diagnostic(
                    code="MISSING_INDEX",
                    category=DiagnosticCategory.INDEX,
                    severity=(
                        Severity.CRITICAL
                        if index.impact >= self.config.missing_index_critical_impact
                        else Severity.WARNING
                    ),
                    message=missing_index_message(index),
                )
            )

        for reason in result.generic_plan.reasons:
            diagnostics.append(
                Diagnostic(
                    code="GENERIC_PLAN_SUSPECTED",
                    category=DiagnosticCategory.OTHER,
                    severity=Severity.INFO,
                    message=reason,
                )
            )
        return diagnostics

    # ── PostgreSQL ───────────────────────────────────────────────────────

    def _postgres(self, result: PostgresPlanResult) -> list[Diagnostic]:
        diagnostics = []
        for node in result.in_id_order():
            diagnostics.extend(self._postgres_scan_and_time(node))

            sort_method = node.detail("Sort Method")
            if sort_method and _DISK_SORT.search(sort_method):
                diagnostics.append(
                    Diagnostic(
                        code="SORT_SPILL",
                        category=DiagnosticCategory.TEMPDB_SPILL,
                        severity=Severity.WARNING,
                        message=f"{_label(node)} spilled to disk ({sort_method})",
                        node_id=node.id,
                    )
                )

            batches = 1
            for item in node.details:
                # HashAggregate puts Batches first, so the label is part of the match
                match = _BATCHES.search(f"{item.label}: {item.value}")
                if match:
                    batches = max(batches, int(match.group(1)))
            if batches > 1:
                diagnostics.append(
                    Diagnostic(
                        code="HASH_BATCHES",
                        category=DiagnosticCategory.TEMPDB_SPILL,
                        severity=Severity.WARNING,
                        message=f"{_label(node)} used {batches} batches; the hash table did not fit in work_mem",
                        node_id=node.id,
                    )
                )

            if "Nested Loop" in node.physical_op:
                children = result.children_of(node.id)
                inner = children[1] if len(children) > 1 else None
                if inner is not None and (inner.loops or 0) > self.config.postgres_loops_threshold:
                    diagnostics.append(
                        Diagnostic(
                            code="NESTED_LOOP_HIGH_LOOPS",
                            category=DiagnosticCategory.JOIN,
                            severity=Severity.WARNING,
                            message=f"Nested Loop runs {_label(inner)} {_count(inner.loops or 0)} times",
                            node_id=node.id,
                        )
                    )

            removed = node.detail("Rows Removed by Filter")
            if removed and removed.isdigit() and node.actual_rows is not None:
                removed_rows = int(removed)
                returned = node.actual_rows * (node.loops or 1)
                if removed_rows >= MIN_ROWS_REMOVED and removed_rows > returned * self.config.row_significant_ratio:
                    diagnostics.append(
                        Diagnostic(
                            code="FILTER_DISCARDS_ROWS",
                            category=DiagnosticCategory.INDEX,
                            severity=Severity.INFO,
                            message=(
                                f"{_label(node)} filters out {_count(removed_rows)} rows "
                                f"to return {_count(returned)}"
                            ),
                            node_id=node.id,
                        )
                    )

        total_ms = result.execution_time_ms
        if total_ms is None:
            total_ms = sum(n.actual_time.end for n in result.roots() if n.actual_time is not None)
        if total_ms > self.config.postgres_slow_query_ms:
            diagnostics.append(
                Diagnostic(
                    code="SLOW_QUERY",
                    category=DiagnosticCategory.COST,
                    severity=Severity.INFO,
                    message=f"Total execution time is {total_ms:,.1f} ms; consider optimizing this query",
                )
            )
        return diagnostics

    def _postgres_scan_and_time(self, node: PlanNode) -> list[Diagnostic]:
        diagnostics = []
        rows = node.actual_rows if node.actual_rows is not None else node.estimated_rows
        if "Seq Scan" in node.physical_op and rows is not None and rows > self.config.postgres_seq_scan_rows:
            table = node.object_name or "the table"
            diagnostics.append(
                Diagnostic(
                    code="SEQ_SCAN_LARGE_TABLE",
                    category=DiagnosticCategory.INDEX,
                    severity=Severity.WARNING,
                    message=(
                        f"Sequential scan on {table} reads {_count(rows)} rows; "
                        f"consider an index on its filter columns or ANALYZE {table}"
                    ),
                    node_id=node.id,
                )
            )

        if node.actual_time is not None and node.actual_time.end > self.config.postgres_slow_operation_ms:
            diagnostics.append(
                Diagnostic(
                    code="SLOW_OPERATION",
                    category=DiagnosticCategory.COST,
                    severity=Severity.WARNING,
                    message=f"{_label(node)} took {node.actual_time.end:,.1f} ms",
                    node_id=node.id,
                )
            )
        return diagnostics

    # ── MongoDB ──────────────────────────────────────────────────────────

    def _mongo(self, result: MongoPlanResult) -> list[Diagnostic]:
        diagnostics = []
        namespace = f" on {result.namespace}" if result.namespace else ""

        for node in result.in_id_order():
            if node.name == "COLLSCAN":
                diagnostics.append(
                    Diagnostic(
                        code="COLLECTION_SCAN",
                        category=DiagnosticCategory.INDEX,
                        severity=Severity.WARNING,
                        message=f"Collection scan{namespace}: no index supports this query",
                        node_id=node.id,
                    )
                )
            elif node.name == "SORT":
                diagnostics.append(
                    Diagnostic(
                        code="IN_MEMORY_SORT",
                        category=DiagnosticCategory.INDEX,
                        severity=Severity.INFO,
                        message="Blocking SORT stage: results are sorted in memory",
                        node_id=node.id,
                    )
                )

        summary = result.execution_summary
        if summary.total_docs_examined > 0:
            ratio = summary.total_docs_examined / max(summary.n_returned, 1)
            if ratio > self.config.mongo_docs_examined_ratio:
                diagnostics.append(
                    Diagnostic(
                        code="DOCS_EXAMINED_RATIO",
                        category=DiagnosticCategory.INDEX,
                        severity=Severity.WARNING,
                        message=(
                            f"Examined {_count(summary.total_docs_examined)} documents "
                            f"to return {_count(summary.n_returned)} ({ratio:,.0f}x)"
                        ),
                    )
                )
        return diagnostics

    # ── Deadlocks ────────────────────────────────────────────────────────

    def _deadlock(self, graph: DeadlockGraph) -> list[Diagnostic]:
        if graph.status is ParseStatus.FAILED:
            detail = graph.errors[0] if graph.errors else "Failed to parse deadlock report"
            return [
                Diagnostic(
                    code="DEADLOCK_PARSE_FAILED",
                    category=DiagnosticCategory.OTHER,
                    severity=Severity.WARNING,
                    message=detail,
                )
            ]
        if not graph.participants:
            return []

        diagnostics = []
        victim = graph.victim
        sessions = ", ".join(
            str(p.session_id) if p.session_id is not None else p.process_id for p in graph.participants
        )
        message = f"Deadlock between {len(graph.participants)} sessions ({sessions})"
        if victim is not None:
            message += f"; victim: session {victim.session_id if victim.session_id is not None else victim.process_id}"
        diagnostics.append(
            Diagnostic(
                code="DEADLOCK_DETECTED",
                category=DiagnosticCategory.OTHER,
                severity=Severity.CRITICAL,
                message=message,
            )
        )

        if victim is None:
            diagnostics.append(
                Diagnostic(
                    code="DEADLOCK_NO_VICTIM",
                    category=DiagnosticCategory.OTHER,
                    severity=Severity.WARNING,
                    message="No deadlock victim could be identified",
                )
            )

        for edge in graph.edges:
            resource = graph.resources[edge.resource_index]
            target = resource.object_name or resource.resource_type
            if resource.index_name:
                target += f" ({resource.index_name})"
            diagnostics.append(
                Diagnostic(
                    code="DEADLOCK_WAIT",
                    category=DiagnosticCategory.INDEX if resource.index_name else DiagnosticCategory.OTHER,
                    severity=Severity.INFO,
                    message=(
                        f"{edge.waiter_id} waits for {edge.waiter_mode or '?'} on {target} "
                        f"held by {edge.owner_id} ({edge.owner_mode or '?'})"
                    ),
                )
            )

        for participant in graph.participants:
            if participant.isolation_level.lower().startswith("serializable"):
                diagnostics.append(
                    Diagnostic(
                        code="SERIALIZABLE_ISOLATION",
                        category=DiagnosticCategory.OTHER,
                        severity=Severity.INFO,
                        message=f"{participant.process_id} runs under {participant.isolation_level}",
                    )
                )

        for warning in graph.warnings:
            diagnostics.append(
                Diagnostic(
                    code="DEADLOCK_UNRESOLVED_REFERENCE",
                    category=DiagnosticCategory.OTHER,
                    severity=Severity.INFO,
                    message=warning,
                )
            )
        return diagnostics


def analyze(result: ParseResult, config: Config | None = None) -> AnalysisResult:
    """Convenience wrapper around DiagnosticAnalyzer(config).analyze(result)."""
    return DiagnosticAnalyzer(config).analyze(result)
