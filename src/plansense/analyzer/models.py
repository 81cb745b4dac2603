"""
Data models for the analyzer module.

The analyzer never annotates parse results. It returns:
- Diagnostic: one detected issue, with an optional pointer to the node that
  triggered it
- NodeAssessment: per-node cost band and row-mismatch class, for renderers
  that color a tree
- AnalysisResult: both of the above for one parse result

All models are frozen and carry no references to the parse result itself.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    """
    Severity levels for diagnostics.

    CRITICAL: Severe performance impact (dominant cost, 100x misestimate)
    WARNING: Significant issue that should be addressed
    INFO: Context worth knowing, nothing necessarily wrong
    """

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"

    def __lt__(self, other: object) -> bool:
        """Enable sorting by severity (CRITICAL > WARNING > INFO)."""
        if not isinstance(other, Severity):
            return NotImplemented
        order = {Severity.CRITICAL: 0, Severity.WARNING: 1, Severity.INFO: 2}
        return order[self] < order[other]


class DiagnosticCategory(str, Enum):
    """What kind of problem a diagnostic describes."""

    COST = "cost"
    CARDINALITY = "cardinality"
    TEMPDB_SPILL = "tempdb-spill"
    JOIN = "join"
    INDEX = "index"
    PARALLELISM = "parallelism"
    OTHER = "other"


class RowMismatch(str, Enum):
    """
    Row estimation error class.

    SEVERE: actual/estimated above 100x or below 0.01x
    SIGNIFICANT: above 10x or below 0.1x
    NONE: within an order of magnitude
    """

    NONE = "none"
    SIGNIFICANT = "significant"
    SEVERE = "severe"


class CostBand(str, Enum):
    """A node's cost relative to the most expensive node of its plan."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Diagnostic(BaseModel):
    """
    A single issue derived from a parse result.

    Attributes:
        code: Stable identifier (UPPER_SNAKE_CASE), e.g. "COST_HOTSPOT"
        category: Problem family
        severity: How serious the issue is
        message: Human-readable one-line description
        node_id: Id of the node that triggered it, None for plan-level issues

    Example:
        Diagnostic(
            code="ROW_ESTIMATE_SEVERE",
            category=DiagnosticCategory.CARDINALITY,
            severity=Severity.CRITICAL,
            message="Index Seek returned 150x more rows than estimated",
            node_id=3,
        )
    """

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., description="Stable identifier (UPPER_SNAKE_CASE)")
    category: DiagnosticCategory
    severity: Severity
    message: str = Field(..., min_length=1)
    node_id: int | None = Field(default=None, description="Triggering node, if any")

    def __lt__(self, other: Diagnostic) -> bool:
        """Deterministic order: severity, then code, then node id."""
        return (self.severity, self.code, _node_key(self.node_id)) < (
            other.severity, other.code, _node_key(other.node_id)
        )


def _node_key(node_id: int | None) -> int:
    return -1 if node_id is None else node_id


class NodeAssessment(BaseModel):
    """Cost band and row mismatch for one plan node."""

    model_config = ConfigDict(frozen=True)

    node_id: int
    cost_band: CostBand | None = None
    cost_ratio: float | None = None
    row_mismatch: RowMismatch | None = None


class AnalysisResult(BaseModel):
    """
    Diagnostics for one parse result.

    Attributes:
        diagnostics: All diagnostics, sorted (critical first)
        node_assessments: Per-node cost/row classification, in id order
    """

    model_config = ConfigDict(frozen=True)

    diagnostics: tuple[Diagnostic, ...] = ()
    node_assessments: tuple[NodeAssessment, ...] = ()

    @property
    def has_critical(self) -> bool:
        return any(d.severity == Severity.CRITICAL for d in self.diagnostics)

    @property
    def has_warnings(self) -> bool:
        return any(d.severity == Severity.WARNING for d in self.diagnostics)

    def by_severity(self, severity: Severity) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == severity]

    def assessment(self, node_id: int) -> NodeAssessment | None:
        for item in self.node_assessments:
            if item.node_id == node_id:
                return item
        return None

    def summary(self) -> dict[str, int]:
        """Counts by severity."""
        return {
            "total": len(self.diagnostics),
            "critical": len(self.by_severity(Severity.CRITICAL)),
            "warning": len(self.by_severity(Severity.WARNING)),
            "info": len(self.by_severity(Severity.INFO)),
        }
