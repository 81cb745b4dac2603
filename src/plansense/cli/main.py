"""
PlanSense CLI - diagnostic payload analyzer.

Reads SQL Server ShowPlan XML, PostgreSQL EXPLAIN ANALYZE text, MongoDB
explain JSON and SQL Server deadlock reports, wrapped or not.

Usage:
    plansense analyze plan.xml
    plansense analyze --engine postgres --format markdown explain.txt
    plansense index-script plan.xml > indexes.sql
    plansense detect payload.json
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from plansense import __version__
from plansense.analyzer.models import Severity
from plansense.engine import FAIL_ON_LEVELS, AnalysisReport, AnalysisService, BatchReport
from plansense.exceptions import ConfigurationError, PlanSenseError
from plansense.output.renderers import (
    OutputFormat,
    detail_lines,
    render_index_scripts,
    render_json,
    render_markdown,
)
from plansense.parser.detect import detect_format
from plansense.parser.envelope import peel
from plansense.parser.models import MssqlPlanResult, ParseStatus


class EngineChoice(str, Enum):
    """Payload formats accepted by --engine."""
    auto = "auto"
    mssql = "mssql"
    postgres = "postgres"
    mongo = "mongo"
    deadlock = "deadlock"


app = typer.Typer(
    name="plansense",
    help="Diagnostic payload analyzer (SQL Server, PostgreSQL, MongoDB, deadlocks)",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)

PayloadFile = Annotated[
    Path,
    typer.Argument(
        help="Path to the payload file",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"PlanSense version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Log parser decisions to stderr.",
        ),
    ] = False,
) -> None:
    """PlanSense - diagnostic payload analyzer."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(levelname)s %(name)s: %(message)s",
        )


def _service() -> AnalysisService:
    try:
        return AnalysisService()
    except ConfigurationError as e:
        error_console.print(f"[red]Configuration error:[/red] {escape(e.message)}")
        raise typer.Exit(code=2)


def _severity_style(severity: Severity) -> str:
    if severity == Severity.CRITICAL:
        return "red bold"
    if severity == Severity.WARNING:
        return "yellow"
    return "blue"


def _print_report(report: AnalysisReport) -> None:
    """Pretty terminal output."""
    header = f"{report.format.value} payload, {report.status.value}"
    if report.layers:
        header += f" (envelopes: {' > '.join(report.layers)})"
    console.print(f"[dim]{escape(header)}[/dim]\n")

    for error in report.all_errors:
        error_console.print(f"[yellow]Warning:[/yellow] {escape(error)}")

    for line in detail_lines(report):
        console.print(escape(line))
    console.print()

    diagnostics = report.analysis.diagnostics
    if not diagnostics:
        console.print(Panel(
            "[green]No issues found![/green]",
            title="PlanSense",
            border_style="green",
        ))
        return

    table = Table(title=f"{len(diagnostics)} diagnostic(s)")
    table.add_column("Severity")
    table.add_column("Category", style="cyan")
    table.add_column("Message")
    table.add_column("Node", justify="right")
    for diagnostic in diagnostics:
        style = _severity_style(diagnostic.severity)
        table.add_row(
            f"[{style}]{diagnostic.severity.value.upper()}[/{style}]",
            diagnostic.category.value,
            escape(diagnostic.message),
            "" if diagnostic.node_id is None else str(diagnostic.node_id),
        )
    console.print(table)


@app.command()
def analyze(
    payload_file: PayloadFile,
    engine: Annotated[
        EngineChoice,
        typer.Option(
            "--engine",
            "-e",
            help="Payload format (auto-detected if not specified)",
        ),
    ] = EngineChoice.auto,
    output_format: Annotated[
        OutputFormat,
        typer.Option(
            "--format",
            "-f",
            help="Output format",
        ),
    ] = OutputFormat.TEXT,
    expected_sql: Annotated[
        Optional[Path],
        typer.Option(
            "--expected-sql",
            help="File with the query the plan was requested for (SQL Server generic-plan check)",
            exists=True,
            readable=True,
        ),
    ] = None,
    fail_on: Annotated[
        str,
        typer.Option(
            "--fail-on",
            help="Exit with code 1 at this severity: critical, warning, info, none",
        ),
    ] = "none",
) -> None:
    """
    Parse and analyze a diagnostic payload.

    Examples:

        # SQL Server plan, auto-detected
        $ plansense analyze plan.xml

        # PostgreSQL, Markdown for an issue comment
        $ psql -c "EXPLAIN (ANALYZE, BUFFERS) SELECT ..." > explain.txt
        $ plansense analyze --format markdown explain.txt

        # Fail a CI job on warnings
        $ plansense analyze --fail-on warning plan.xml
    """
    if fail_on not in FAIL_ON_LEVELS:
        error_console.print(f"[red]Error:[/red] --fail-on must be one of {', '.join(FAIL_ON_LEVELS)}")
        raise typer.Exit(code=2)

    service = _service()
    payload = payload_file.read_text(encoding="utf-8", errors="replace")
    statement = expected_sql.read_text(encoding="utf-8") if expected_sql else None
    report = service.analyze(
        payload,
        engine=engine.value,
        expected_statement=statement,
        file_path=str(payload_file),
    )

    if output_format == OutputFormat.JSON:
        typer.echo(render_json(report))
    elif output_format == OutputFormat.MARKDOWN:
        typer.echo(render_markdown(report))
    else:
        _print_report(report)

    if BatchReport(reports=(report,), fail_on=fail_on).has_failures:
        raise typer.Exit(code=1)


@app.command("index-script")
def index_script(payload_file: PayloadFile) -> None:
    """
    Output CREATE INDEX scripts for a SQL Server plan's missing indexes.

    Examples:

        $ plansense index-script plan.xml > indexes.sql
    """
    service = _service()
    report = service.analyze(
        payload_file.read_text(encoding="utf-8", errors="replace"),
        engine=EngineChoice.mssql.value,
        file_path=str(payload_file),
    )
    if not isinstance(report.result, MssqlPlanResult) or report.status is ParseStatus.UNRECOGNIZED:
        error_console.print("[red]Error:[/red] not a SQL Server execution plan")
        raise typer.Exit(code=1)
    typer.echo(render_index_scripts(report.result, service.config.index_name_max_length))


@app.command()
def detect(payload_file: PayloadFile) -> None:
    """Show the detected payload format and the envelopes around it."""
    payload = payload_file.read_text(encoding="utf-8", errors="replace")
    try:
        text, layers = peel(payload)
    except PlanSenseError as e:
        error_console.print(f"[yellow]Warning:[/yellow] {escape(e.message)}")
        text, layers = payload, ()
    plan_format = detect_format(text)
    console.print(f"Format: [cyan]{plan_format.value}[/cyan]")
    console.print(f"Envelopes: {escape(' > '.join(layers)) if layers else 'none'}")


if __name__ == "__main__":
    app()
