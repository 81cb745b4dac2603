"""
Output renderers for different formats.

Separates presentation logic from parsing and analysis.
Uses schema.py Pydantic models as the single source of truth
for JSON serialization.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator

from plansense.analyzer.index_script import combine_scripts
from plansense.output.schema import (
    DiagnosticSchema,
    NodeAssessmentSchema,
    ReportSchema,
    SummarySchema,
)
from plansense.parser.models import (
    DeadlockGraph,
    MongoPlanResult,
    MssqlPlanResult,
    ParseStatus,
    PlanNode,
    PlanResult,
    PostgresPlanResult,
)

if TYPE_CHECKING:
    from plansense.analyzer.models import AnalysisResult, Diagnostic
    from plansense.engine import AnalysisReport

# Operators listed in the "most expensive" section
TOP_OPERATIONS = 10


class OutputFormat(str, Enum):
    """Supported output formats."""

    TEXT = "text"
    JSON = "json"
    MARKDOWN = "markdown"


def render(report: AnalysisReport, format: OutputFormat = OutputFormat.TEXT) -> str:
    """
    Render an analysis report in the specified format.

    Args:
        report: Report to render
        format: Output format (text, json, markdown)

    Returns:
        Formatted string
    """
    if format == OutputFormat.TEXT:
        return render_text(report)
    elif format == OutputFormat.JSON:
        return render_json(report)
    elif format == OutputFormat.MARKDOWN:
        return render_markdown(report)
    else:
        raise ValueError(f"Unknown output format: {format}")


# =============================================================================
# Schema-based serialization (single source of truth)
# =============================================================================


def _node_count(report: AnalysisReport) -> int:
    if isinstance(report.result, DeadlockGraph):
        return len(report.result.participants)
    if isinstance(report.result, PlanResult):
        return report.result.node_count
    return 0


def _diagnostic_to_schema(diagnostic: Diagnostic) -> DiagnosticSchema:
    return DiagnosticSchema(
        code=diagnostic.code,
        category=diagnostic.category.value,
        severity=diagnostic.severity.value,
        message=diagnostic.message,
        node_id=diagnostic.node_id,
    )


def _report_to_schema(report: AnalysisReport) -> ReportSchema:
    """Convert an AnalysisReport to the Pydantic schema model."""
    analysis = report.analysis
    summary = analysis.summary()
    return ReportSchema(
        format=report.format.value,
        status=report.status.value,
        file_path=report.file_path,
        layers=list(report.layers),
        errors=list(report.all_errors),
        summary=SummarySchema(
            total=summary["total"],
            critical=summary["critical"],
            warning=summary["warning"],
            info=summary["info"],
            node_count=_node_count(report),
        ),
        diagnostics=[_diagnostic_to_schema(d) for d in analysis.diagnostics],
        node_assessments=[
            NodeAssessmentSchema(
                node_id=a.node_id,
                cost_band=a.cost_band.value if a.cost_band else None,
                cost_ratio=a.cost_ratio,
                row_mismatch=a.row_mismatch.value if a.row_mismatch else None,
            )
            for a in analysis.node_assessments
        ],
        result=report.result.model_dump(mode="json") if report.result is not None else None,
    )


def report_to_dict(report: AnalysisReport) -> dict[str, Any]:
    """Convert an AnalysisReport to a dictionary via the schema model."""
    return _report_to_schema(report).model_dump(mode="json")


# =============================================================================
# Shared helpers
# =============================================================================


def _severity_icon(severity: Any) -> str:
    """Get icon for severity level."""
    severity_str = severity.value if hasattr(severity, "value") else str(severity)
    return {
        "critical": "🔴",
        "warning": "🟡",
        "info": "🔵",
    }.get(severity_str, "⚪")


def _walk(result: PlanResult) -> Iterator[tuple[int, PlanNode]]:
    """Depth-first (depth, node) pairs from every root."""
    stack = [(0, root) for root in reversed(result.roots())]
    while stack:
        depth, node = stack.pop()
        yield depth, node
        stack.extend((depth + 1, child) for child in reversed(result.children_of(node.id)))


def _number(value: float | None) -> str:
    if value is None:
        return "-"
    if float(value).is_integer():
        return f"{value:,.0f}"
    return f"{value:,.4f}".rstrip("0").rstrip(".")


def _short_name(node: PlanNode) -> str:
    if node.object_name:
        return f"{node.name} on {node.object_name}"
    return node.name


def _node_line(node: PlanNode, analysis: AnalysisResult) -> str:
    parts = [node.name]
    if node.index_name and node.object_name:
        parts.append(f"using {node.index_name} on {node.object_name}")
    elif node.object_name:
        parts.append(f"on {node.object_name}")
    elif node.index_name:
        parts.append(f"({node.index_name})")

    metrics = []
    if node.cost_metric is not None:
        metrics.append(f"cost={_number(node.cost_metric)}")
    if node.estimated_rows is not None:
        metrics.append(f"est={_number(node.estimated_rows)}")
    if node.actual_rows is not None:
        metrics.append(f"actual={_number(node.actual_rows)}")
    if node.loops is not None and node.loops > 1:
        metrics.append(f"loops={node.loops}")
    if node.never_executed:
        metrics.append("never executed")
    if metrics:
        parts.append(f"[{' '.join(metrics)}]")

    assessment = analysis.assessment(node.id)
    if assessment is not None and assessment.cost_band is not None and assessment.cost_band.value == "high":
        parts.append("◀ high cost")
    return " ".join(parts)


def detail_lines(report: AnalysisReport, markdown: bool = False) -> list[str]:
    """Engine-specific body shared by the text and Markdown renderers."""
    result = report.result
    lines: list[str] = []
    bullet = "- " if markdown else "  "

    if isinstance(result, MssqlPlanResult):
        summary = result.summary
        if summary.statement_type:
            lines.append(f"{bullet}Statement: {summary.statement_type}")
        lines.append(f"{bullet}Estimated rows: {_number(summary.estimated_rows)}")
        if summary.degree_of_parallelism:
            lines.append(f"{bullet}Degree of parallelism: {summary.degree_of_parallelism}")
        if summary.execution.actual_rows is not None:
            lines.append(f"{bullet}Actual rows: {_number(summary.execution.actual_rows)}")
        if summary.execution.logical_reads is not None:
            lines.append(f"{bullet}Logical reads: {_number(summary.execution.logical_reads)}")
        if result.strategy:
            lines.append(f"{bullet}Extraction: {result.strategy}")

        if result.nodes:
            lines.append("")
            lines.append("Most expensive operations:")
            for node in result.nodes[:TOP_OPERATIONS]:
                lines.append(f"{bullet}{_node_line(node, report.analysis)}")
        if result.used_indexes:
            lines.append("")
            lines.append("Indexes used:")
            for index in result.used_indexes:
                lines.append(f"{bullet}{index.name} ({index.kind})")

    elif isinstance(result, PostgresPlanResult):
        if result.nodes:
            lines.append("Plan:")
            for depth, node in _walk(result):
                indent = "  " * depth
                lines.append(f"{bullet}{indent}{_node_line(node, report.analysis)}")
        statistics = []
        slowest = result.slowest_node()
        if slowest is not None:
            statistics.append(f"Slowest: {_short_name(slowest)} ({slowest.actual_time.end:.3f} ms)")
        largest = result.largest_node()
        if largest is not None:
            statistics.append(f"Largest: {_short_name(largest)} ({_number(largest.actual_rows)} rows)")
        costliest = result.costliest_node()
        if costliest is not None:
            statistics.append(f"Costliest: {_short_name(costliest)} (cost {_number(costliest.cost_metric)})")
        if statistics:
            lines.append("")
            lines.append("Statistics:")
            lines.extend(f"{bullet}{line}" for line in statistics)
        if result.timings:
            lines.append("")
            lines.append("Timings:")
            for timing in result.timings:
                calls = f", {timing.calls} calls" if timing.calls is not None else ""
                lines.append(
                    f"{bullet}{timing.name}: {timing.time_ms:.3f} ms ({timing.percentage:.1f}%{calls})"
                )

    elif isinstance(result, MongoPlanResult):
        if result.namespace:
            lines.append(f"{bullet}Namespace: {result.namespace}")
        stats = result.execution_summary
        lines.append(
            f"{bullet}Returned {_number(stats.n_returned)} in {_number(stats.execution_time_ms)} ms "
            f"(keys examined {_number(stats.total_keys_examined)}, "
            f"docs examined {_number(stats.total_docs_examined)})"
        )
        if result.server_info.version:
            lines.append(f"{bullet}Server: {result.server_info.host} (MongoDB {result.server_info.version})")
        if result.nodes:
            lines.append("")
            lines.append("Winning plan:")
            for depth, node in _walk(result):
                lines.append(f"{bullet}{'  ' * depth}{_node_line(node, report.analysis)}")
        if result.rejected_plans:
            lines.append("")
            lines.append(f"Rejected plans: {len(result.rejected_plans)}")

    elif isinstance(result, DeadlockGraph):
        if result.status is ParseStatus.FAILED:
            lines.append("Deadlock report could not be parsed; raw report follows.")
            lines.append("")
            lines.append("```" if markdown else "")
            lines.append(result.raw_text or "")
            lines.append("```" if markdown else "")
            return lines
        lines.append("Participants:")
        for participant in result.participants:
            victim = " (victim)" if participant.is_victim else ""
            session = participant.session_id if participant.session_id is not None else "?"
            lines.append(
                f"{bullet}{participant.process_id}: session {session}{victim}, "
                f"{participant.lock_mode or '-'} lock, wait {participant.wait_time_ms or 0} ms"
            )
            if participant.input_query:
                lines.append(f"{bullet}  {participant.input_query.splitlines()[0][:120]}")
        if result.resources:
            lines.append("")
            lines.append("Resources:")
            for resource in result.resources:
                index = f" ({resource.index_name})" if resource.index_name else ""
                lines.append(f"{bullet}{resource.resource_type} {resource.object_name}{index} {resource.mode}")
        if result.edges:
            lines.append("")
            lines.append("Wait-for edges:")
            for edge in result.edges:
                lines.append(f"{bullet}{edge.owner_id} ({edge.owner_mode}) -> {edge.waiter_id} ({edge.waiter_mode})")

    return lines


# =============================================================================
# Text renderer (terminal)
# =============================================================================


def render_text(report: AnalysisReport) -> str:
    """Render an analysis report as plain terminal text."""
    lines: list[str] = []
    summary = report.analysis.summary()

    lines.append("=" * 60)
    lines.append("PlanSense Analysis Report")
    lines.append("=" * 60)
    lines.append("")
    if report.file_path:
        lines.append(f"File: {report.file_path}")
    lines.append(f"Format: {report.format.value}")
    lines.append(f"Status: {report.status.value}")
    if report.layers:
        lines.append(f"Envelopes: {' > '.join(report.layers)}")
    for error in report.all_errors:
        lines.append(f"⚠ {error}")
    lines.append("")

    body = detail_lines(report)
    if body:
        lines.extend(body)
        lines.append("")

    lines.append("Summary:")
    lines.append(f"  Total Diagnostics: {summary['total']}")
    if summary["critical"]:
        lines.append(f"  🔴 Critical: {summary['critical']}")
    if summary["warning"]:
        lines.append(f"  🟡 Warnings: {summary['warning']}")
    if summary["info"]:
        lines.append(f"  🔵 Info: {summary['info']}")
    lines.append("")

    if report.analysis.diagnostics:
        lines.append("-" * 60)
        lines.append("DIAGNOSTICS")
        lines.append("-" * 60)
        for i, diagnostic in enumerate(report.analysis.diagnostics, 1):
            location = f" (node {diagnostic.node_id})" if diagnostic.node_id is not None else ""
            lines.append(
                f"[{i}] {_severity_icon(diagnostic.severity)} {diagnostic.category.value}: "
                f"{diagnostic.message}{location}"
            )
    else:
        lines.append("✓ No issues found")

    lines.append("")
    lines.append("=" * 60)
    return "\n".join(lines)


# =============================================================================
# JSON renderer (uses schema models)
# =============================================================================


def render_json(report: AnalysisReport, indent: int = 2) -> str:
    """
    Render an analysis report as stable JSON.

    Suitable for API responses, CI/CD integration, log aggregation.
    """
    return json.dumps(report_to_dict(report), indent=indent, default=str)


# =============================================================================
# Markdown renderer
# =============================================================================


def render_markdown(report: AnalysisReport) -> str:
    """Render an analysis report as Markdown for issues and chat messages."""
    lines: list[str] = []
    summary = report.analysis.summary()

    lines.append("# PlanSense Analysis Report")
    lines.append("")
    if summary["critical"]:
        lines.append("🔴 **Critical issues found**")
    elif summary["warning"]:
        lines.append("🟡 **Warnings found**")
    elif report.status is not ParseStatus.PARSED:
        lines.append(f"⚠️ **Payload {report.status.value}**")
    else:
        lines.append("✅ **No issues found**")
    lines.append("")

    lines.append("## Summary")
    lines.append("")
    lines.append("| Metric | Value |")
    lines.append("|--------|-------|")
    lines.append(f"| Format | `{report.format.value}` |")
    lines.append(f"| Status | `{report.status.value}` |")
    lines.append(f"| Nodes | {_node_count(report)} |")
    lines.append(f"| Critical | {summary['critical']} |")
    lines.append(f"| Warnings | {summary['warning']} |")
    lines.append(f"| Info | {summary['info']} |")
    lines.append("")

    body = detail_lines(report, markdown=True)
    if body:
        lines.append("## Details")
        lines.append("")
        lines.extend(body)
        lines.append("")

    if report.analysis.diagnostics:
        lines.append("## Diagnostics")
        lines.append("")
        lines.append("| Severity | Category | Code | Message |")
        lines.append("|----------|----------|------|---------|")
        for diagnostic in report.analysis.diagnostics:
            message = diagnostic.message.replace("|", "\\|")
            lines.append(
                f"| {_severity_icon(diagnostic.severity)} {diagnostic.severity.value} "
                f"| {diagnostic.category.value} | `{diagnostic.code}` | {message} |"
            )
        lines.append("")

    if isinstance(report.result, MssqlPlanResult) and report.result.missing_indexes:
        lines.append("<details>")
        lines.append("<summary>Missing index scripts</summary>")
        lines.append("")
        lines.append("```sql")
        lines.append(render_index_scripts(report.result))
        lines.append("```")
        lines.append("")
        lines.append("</details>")

    if report.all_errors:
        lines.append("")
        lines.append("**Errors:**")
        for error in report.all_errors:
            lines.append(f"- {error}")

    return "\n".join(lines)


# =============================================================================
# Index scripts
# =============================================================================


def render_index_scripts(result: MssqlPlanResult, max_name_length: int | None = None) -> str:
    """All missing-index scripts of a SQL Server plan, highest impact first."""
    if not result.missing_indexes:
        return "-- No missing index recommendations in this plan"
    return combine_scripts(list(result.missing_indexes), max_name_length)
