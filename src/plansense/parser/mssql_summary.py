"""
Statement-level facts from SQL Server ShowPlan XML.

Everything here is independent of the operator tiers in `mssql`:
- StatementSummary: statement type/text, parallelism, hashes, caching,
  runtime counters
- Warning set: one independent pattern check per warning kind
- Missing index groups with their EQUALITY / INEQUALITY / INCLUDE columns
- Used indexes, via an ordered chain of strategies
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass

from plansense.analyzer.classify import classify_row_mismatch
from plansense.analyzer.index_script import generate_index_script, missing_index_message
from plansense.analyzer.models import RowMismatch
from plansense.parser.attributes import parse_attributes, strip_brackets, to_bool, to_float, to_int
from plansense.parser.models import (
    ExecutionStats,
    MissingIndexRecommendation,
    PlanWarning,
    StatementSummary,
    UsedIndex,
    WarningKind,
)
from plansense.parser.strategies import Matched, Strategy, first_match

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanDetails:
    """Everything the summary pass extracts from one plan."""

    summary: StatementSummary
    warnings: tuple[PlanWarning, ...]
    missing_indexes: tuple[MissingIndexRecommendation, ...]
    used_indexes: tuple[UsedIndex, ...]


def _first(pattern: str, text: str) -> str | None:
    match = re.search(pattern, text, re.IGNORECASE)
    return match.group(1) if match else None


def _tags(name: str, text: str) -> list[dict[str, str]]:
    """Attributes of every `<name ...>` opening or self-closing tag."""
    pattern = re.compile(rf'<{name}\b((?:[^>"]|"[^"]*")*)>')
    return [parse_attributes(m.group(1)) for m in pattern.finditer(text)]


def _blocks(name: str, text: str) -> list[tuple[dict[str, str], str]]:
    """(attributes, inner text) for every `<name ...>...</name>` element."""
    pattern = re.compile(rf'<{name}\b((?:[^>"]|"[^"]*")*)>(.*?)</{name}\s*>', re.DOTALL)
    return [(parse_attributes(m.group(1)), m.group(2)) for m in pattern.finditer(text)]


def format_count(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


# =============================================================================
# Statement summary
# =============================================================================


def extract_summary(text: str, statement_rows: float | None) -> StatementSummary:
    statement_type = _first(r'\bStatementType="([^"]+)"', text) or ""
    statement_text = _first(r'\bStatementText="([^"]+)"', text) or ""
    if statement_text:
        statement_text = html.unescape(statement_text).strip()
    if not statement_type and statement_text:
        statement_type = statement_text.split()[0].upper()

    estimated_rows = statement_rows
    if estimated_rows is None:
        estimated_rows = to_float(_first(r'<RelOp\b[^>]*?\bEstimateRows="([^"]+)"', text))

    reads = [to_int(v) for v in re.findall(r'\bActualLogicalReads="([^"]+)"', text)]
    physical = [to_int(v) for v in re.findall(r'\bActualPhysicalReads="([^"]+)"', text)]

    execution = ExecutionStats(
        actual_rows=to_float(_first(r'\bActualRows="([^"]+)"', text)),
        row_size=to_int(_first(r'\bAvgRowSize="([^"]+)"', text)),
        logical_reads=sum(v for v in reads if v is not None) if reads else None,
        physical_reads=sum(v for v in physical if v is not None) if physical else None,
        execution_time=to_float(_first(r'\b(?:ExecutionTime|ElapsedTime)="([^"]+)"', text)),
        cpu_time=to_float(_first(r'\bCpuTime="([^"]+)"', text)),
        elapsed_time=to_float(_first(r'\bElapsedTime="([^"]+)"', text)),
    )

    cached = _first(r'\b(?:RetrievedFromCache|FromCache)="([^"]+)"', text)
    return StatementSummary(
        statement_type=statement_type,
        statement_text=statement_text,
        estimated_rows=estimated_rows or 0.0,
        degree_of_parallelism=to_int(_first(r'\b(?:DegreeOfParallelism|MaxDOP)="([^"]+)"', text)) or 0,
        query_hash=_first(r'\b(?:QueryHash|PlanGuid)="([^"]+)"', text) or "",
        plan_hash=_first(r'\b(?:QueryPlanHash|PlanHash)="([^"]+)"', text) or "",
        cached=bool(cached) and cached.lower() == "true",
        cached_plan_size=to_int(_first(r'\bCachedPlanSize="([^"]+)"', text)) or 0,
        execution=execution,
    )


# =============================================================================
# Missing indexes
# =============================================================================


def _column_names(group_text: str) -> list[str]:
    return [
        strip_brackets(attrs["Name"])
        for attrs in _tags("Column", group_text)
        if attrs.get("Name")
    ]


def extract_missing_indexes(text: str) -> list[MissingIndexRecommendation]:
    """
    Parse MissingIndexGroup → MissingIndex → ColumnGroup nesting.

    Recommendations without key columns are kept; their script is a
    comment explaining why nothing was generated.
    """
    recommendations: list[MissingIndexRecommendation] = []
    for group_attrs, group_text in _blocks("MissingIndexGroup", text):
        impact = min(max(to_float(group_attrs.get("Impact")) or 0.0, 0.0), 100.0)

        for index_attrs, index_text in _blocks("MissingIndex", group_text):
            columns: dict[str, list[str]] = {"EQUALITY": [], "INEQUALITY": [], "INCLUDE": []}
            for column_attrs, column_text in _blocks("ColumnGroup", index_text):
                usage = column_attrs.get("Usage", "").upper()
                if usage in columns:
                    columns[usage].extend(_column_names(column_text))

            recommendation = MissingIndexRecommendation(
                database=strip_brackets(index_attrs.get("Database", "")),
                schema_name=strip_brackets(index_attrs.get("Schema", "")),
                table=strip_brackets(index_attrs.get("Table", "")),
                impact=impact,
                equality_columns=tuple(columns["EQUALITY"]),
                inequality_columns=tuple(columns["INEQUALITY"]),
                included_columns=tuple(columns["INCLUDE"]),
            )
            recommendations.append(
                recommendation.model_copy(update={"ddl_script": generate_index_script(recommendation)})
            )
    return recommendations


# =============================================================================
# Warning set
# =============================================================================


def _row_estimate_warning(summary: StatementSummary) -> PlanWarning | None:
    actual = summary.execution.actual_rows
    estimated = summary.estimated_rows
    if not actual or not estimated:
        return None
    mismatch = classify_row_mismatch(actual, estimated)
    if mismatch in (None, RowMismatch.NONE):
        return None

    ratio = actual / estimated
    actual_text, estimated_text = format_count(actual), format_count(estimated)
    if ratio > 1:
        if mismatch is RowMismatch.SEVERE:
            message = (
                f"Severe row estimation error: Actual rows ({actual_text}) "
                f"is 100x higher than estimated ({estimated_text})"
            )
        else:
            message = (
                f"Significant row underestimation: Actual rows ({actual_text}) "
                f"is {round(ratio)}x higher than estimated ({estimated_text})"
            )
    elif mismatch is RowMismatch.SEVERE:
        message = (
            f"Severe row overestimation: Actual rows ({actual_text}) "
            f"is 100x lower than estimated ({estimated_text})"
        )
    else:
        message = (
            f"Significant row overestimation: Actual rows ({actual_text}) "
            f"is {round(1 / ratio)}x lower than estimated ({estimated_text})"
        )
    return PlanWarning(kind=WarningKind.ROW_ESTIMATE, message=message)


def extract_warnings(
    text: str,
    summary: StatementSummary,
    missing_indexes: list[MissingIndexRecommendation],
) -> list[PlanWarning]:
    warnings: list[PlanWarning] = []

    def flag(kind: WarningKind, message: str) -> None:
        warnings.append(PlanWarning(kind=kind, message=message))

    if re.search(r"MissingIndex", text, re.IGNORECASE):
        flag(WarningKind.MISSING_INDEX, "Missing indexes detected")
        for index in missing_indexes:
            if index.has_key_columns:
                flag(WarningKind.MISSING_INDEX, missing_index_message(index))

    if re.search(r"SpillToTempDb|TempDbSpills", text, re.IGNORECASE):
        flag(WarningKind.TEMPDB_SPILL, "Spill to TempDB detected")
        spill_size = _first(r'\bSpillToTempDb="([^"]+)"', text)
        if spill_size:
            flag(WarningKind.TEMPDB_SPILL, f"Spill size: {spill_size}")
        for attrs in _tags("SpillToTempDb", text):
            if "SpillLevel" in attrs:
                flag(WarningKind.TEMPDB_SPILL, f"Spill level: {attrs['SpillLevel']}")

    if re.search(r'\bWarnings="(?:true|1)"', text, re.IGNORECASE) or re.search(r"<Warnings\b", text):
        flag(WarningKind.PLAN_WARNINGS, "Plan contains warnings")

        if re.search(r"ColumnsWithNoStatistics", text, re.IGNORECASE):
            blocks = _blocks("ColumnsWithNoStatistics", text)
            references = [attrs for _, body in blocks for attrs in _tags("ColumnReference", body)]
            named = [r for r in references if r.get("Column")]
            for ref in named:
                table = strip_brackets(ref.get("Table", ""))
                column = strip_brackets(ref["Column"])
                flag(
                    WarningKind.STATISTICS_MISSING,
                    f"No statistics for column: {table}.{column}" if table else f"No statistics for column: {column}",
                )
            if not named:
                flag(WarningKind.STATISTICS_MISSING, "Columns with no statistics")

        if re.search(r"UnmatchedIndexes", text, re.IGNORECASE):
            flag(WarningKind.UNMATCHED_INDEXES, "Unmatched indexes are present")

    if re.search(r"NoJoinPredicate|UnmatchedIndexes", text, re.IGNORECASE):
        flag(WarningKind.JOIN_ISSUE, "Join issues detected")
        if to_bool(_first(r'\bNoJoinPredicate="([^"]+)"', text)):
            flag(WarningKind.CARTESIAN_JOIN, "Cartesian join (no join predicate) detected")

    for attrs in _tags(r"\w+", text):
        if "PlanGuideDB" in attrs and "PlanGuideName" in attrs:
            flag(WarningKind.PLAN_GUIDE, f"Plan guide used: {attrs['PlanGuideDB']}.{attrs['PlanGuideName']}")
            break

    reason = _first(r'\bNonParallelPlanReason="([^"]+)"', text)
    if reason:
        flag(WarningKind.NON_PARALLEL_PLAN, f"Parallel plan prevented: {reason}")

    if re.search(r"ParameterizationProblems", text, re.IGNORECASE):
        flag(WarningKind.PARAMETERIZATION, "Parameterization problems detected")

    if re.search(r"MemoryGrantWarning", text, re.IGNORECASE):
        grant = next(iter(_tags("MemoryGrantWarning", text)), {})
        kind = grant.get("GrantWarningKind")
        flag(WarningKind.MEMORY_GRANT, f"Memory grant warning: {kind}" if kind else "Memory grant warning")

    row_warning = _row_estimate_warning(summary)
    if row_warning is not None:
        warnings.append(row_warning)

    return warnings


# =============================================================================
# Used indexes
# =============================================================================


def _dedupe(indexes: list[UsedIndex]) -> list[UsedIndex]:
    seen: set[str] = set()
    unique = []
    for index in indexes:
        if index.name not in seen:
            seen.add(index.name)
            unique.append(index)
    return unique


def used_from_object_attributes(text: str) -> list[UsedIndex]:
    """`<Object Index="..." IndexKind="...">` pairs."""
    return _dedupe([
        UsedIndex(name=strip_brackets(attrs["Index"]), kind=attrs["IndexKind"])
        for attrs in _tags("Object", text)
        if attrs.get("Index") and attrs.get("IndexKind")
    ])


def used_from_index_scans(text: str) -> list[UsedIndex]:
    """`<IndexScan>` blocks whose Object names an index."""
    found = []
    for scan_attrs, body in _blocks("IndexScan", text):
        for attrs in _tags("Object", body):
            if attrs.get("Index"):
                kind = "Lookup" if to_bool(scan_attrs.get("Lookup")) else "NonClustered"
                found.append(UsedIndex(name=strip_brackets(attrs["Index"]), kind=kind))
                break
    return _dedupe(found)


def used_from_seek_predicates(text: str) -> list[UsedIndex]:
    """Tables referenced from `<SeekPredicates>`; the index itself is implicit."""
    found = []
    for _, body in _blocks("SeekPredicates", text):
        for attrs in _tags("ColumnReference", body):
            if attrs.get("Table"):
                found.append(UsedIndex(name=f"{strip_brackets(attrs['Table'])} (Implicit)", kind="Unknown"))
                break
    return _dedupe(found)


def used_from_clustered_scan(text: str) -> list[UsedIndex]:
    """Clustered Index Scan without an index attribute: assume the primary key."""
    scan = re.search(
        r'<RelOp\b[^>]*?PhysicalOp="Clustered Index Scan".*?<Object\b[^>]*?Table="\[([^\]]+)\]"',
        text,
        re.IGNORECASE | re.DOTALL,
    )
    if not scan:
        return []
    index = _first(r'\bIndex="\[([^\]]+)\]"', text)
    return [UsedIndex(name=index or f"PK_{strip_brackets(scan.group(1))}", kind="Clustered")]


USED_INDEX_STRATEGIES: tuple[Strategy[UsedIndex], ...] = (
    Strategy("object_attributes", used_from_object_attributes),
    Strategy("index_scans", used_from_index_scans),
    Strategy("seek_predicates", used_from_seek_predicates),
    Strategy("clustered_scan", used_from_clustered_scan),
)


def extract_used_indexes(text: str) -> list[UsedIndex]:
    outcome = first_match(USED_INDEX_STRATEGIES, text)
    return list(outcome.items) if isinstance(outcome, Matched) else []


# =============================================================================
# Entry point
# =============================================================================


def extract_plan_details(text: str, statement_rows: float | None) -> PlanDetails:
    """Run every statement-level extraction over unwrapped ShowPlan text."""
    summary = extract_summary(text, statement_rows)
    missing = extract_missing_indexes(text)
    warnings = extract_warnings(text, summary, missing)
    used = extract_used_indexes(text)
    logger.debug(
        "Plan details: %d warning(s), %d missing index(es), %d used index(es)",
        len(warnings),
        len(missing),
        len(used),
    )
    return PlanDetails(
        summary=summary,
        warnings=tuple(warnings),
        missing_indexes=tuple(missing),
        used_indexes=tuple(used),
    )
