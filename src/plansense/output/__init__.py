"""
Output module - separates rendering from parsing and analysis.

Provides multiple output formats:
- render_text: Terminal output for the CLI
- render_json: Stable JSON schema for integrations
- render_markdown: Issue/chat-friendly format

Usage:
    from plansense.output import render_text

    report = AnalysisService().analyze(payload)
    print(render_text(report))
"""

from plansense.output.renderers import (
    OutputFormat,
    render,
    render_index_scripts,
    render_json,
    render_markdown,
    render_text,
)
from plansense.output.schema import DiagnosticSchema, ReportSchema, get_json_schema

__all__ = [
    "OutputFormat",
    "render",
    "render_text",
    "render_json",
    "render_markdown",
    "render_index_scripts",
    "DiagnosticSchema",
    "ReportSchema",
    "get_json_schema",
]
