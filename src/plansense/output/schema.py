"""
JSON Schema definitions for stable report output.

The schema is stable across minor versions.
Breaking changes only in major versions.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Schema version - increment on breaking changes
SCHEMA_VERSION = "1.0"


class DiagnosticSchema(BaseModel):
    """Schema for a single diagnostic."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., description="Stable diagnostic identifier")
    category: str = Field(..., description="cost/cardinality/tempdb-spill/join/index/parallelism/other")
    severity: str = Field(..., description="Severity level (critical/warning/info)")
    message: str = Field(..., description="One-line description")
    node_id: int | None = Field(None, description="Triggering plan node, if any")


class NodeAssessmentSchema(BaseModel):
    """Schema for a node's cost band and row mismatch."""

    model_config = ConfigDict(frozen=True)

    node_id: int = Field(..., description="Plan node id")
    cost_band: str | None = Field(None, description="low/medium/high")
    cost_ratio: float | None = Field(None, description="Cost relative to the plan maximum")
    row_mismatch: str | None = Field(None, description="none/significant/severe")


class SummarySchema(BaseModel):
    """Schema for report summary."""

    model_config = ConfigDict(frozen=True)

    total: int = Field(0, description="Total diagnostics count")
    critical: int = Field(0, description="Critical diagnostics count")
    warning: int = Field(0, description="Warning diagnostics count")
    info: int = Field(0, description="Info diagnostics count")
    node_count: int = Field(0, description="Plan nodes or deadlock participants")


class ReportSchema(BaseModel):
    """
    Top-level schema for one analyzed payload.

    `result` is the parse result serialized as-is; its shape depends on
    `format`.
    """

    model_config = ConfigDict(frozen=True)

    version: str = Field(SCHEMA_VERSION, description="Schema version")
    format: str = Field(..., description="mssql/postgres/mongo/deadlock/unknown")
    status: str = Field(..., description="parsed/empty/unrecognized/failed")
    file_path: str | None = Field(None, description="Source file, if any")
    layers: list[str] = Field(default_factory=list, description="Envelope layers peeled, outermost first")
    errors: list[str] = Field(default_factory=list, description="Errors from the service and the parser")
    summary: SummarySchema = Field(..., description="Report summary")
    diagnostics: list[DiagnosticSchema] = Field(default_factory=list, description="All diagnostics")
    node_assessments: list[NodeAssessmentSchema] = Field(default_factory=list, description="Per-node classes")
    result: dict[str, Any] | None = Field(None, description="Parse result")


def get_json_schema() -> dict[str, Any]:
    """Get the JSON Schema for documentation."""
    return ReportSchema.model_json_schema()
