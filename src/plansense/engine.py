"""
AnalysisService - orchestration layer for plansense.

The single entry point for turning a raw diagnostic payload into a parse
result plus diagnostics. The CLI and any embedding application use this
service rather than chaining the parsers and the analyzer themselves.

Pipeline:
    raw payload -> unwrap -> detect format -> parse -> analyze

Usage:
    from plansense.engine import AnalysisService

    service = AnalysisService()

    # Auto-detected format
    report = service.analyze(payload)

    # Forced format, with the query the plan was requested for
    report = service.analyze(payload, engine="mssql", expected_statement=sql)

    # Several payloads, e.g. a directory of captured plans
    batch = service.analyze_batch([("q1.xml", text1), ("q2.txt", text2)])
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from plansense.analyzer.analyzer import DiagnosticAnalyzer
from plansense.analyzer.models import AnalysisResult, Severity
from plansense.exceptions import PlanSenseError
from plansense.parser.deadlock import parse_deadlock_graph
from plansense.parser.detect import PlanFormat, detect_format
from plansense.parser.envelope import ensure_within_limits, peel
from plansense.parser.models import ParseResult, ParseStatus
from plansense.parser.mongo import parse_mongo_plan
from plansense.parser.mssql import parse_mssql_plan
from plansense.parser.postgres import parse_postgres_plan

if TYPE_CHECKING:
    from plansense.config import Config
    from plansense.parser.config import ParserConfig

logger = logging.getLogger(__name__)

FAIL_ON_LEVELS = ("critical", "warning", "info", "none")


@dataclass(frozen=True)
class AnalysisReport:
    """
    Parse result and diagnostics for one payload.

    `result` is None only when the payload matched no known format.
    """

    format: PlanFormat
    result: ParseResult | None
    analysis: AnalysisResult
    layers: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    file_path: str | None = None

    @property
    def status(self) -> ParseStatus:
        if self.result is None:
            return ParseStatus.UNRECOGNIZED
        return self.result.status

    @property
    def has_critical(self) -> bool:
        """Whether critical diagnostics were produced."""
        return self.analysis.has_critical

    @property
    def has_warnings(self) -> bool:
        """Whether warning diagnostics were produced."""
        return self.analysis.has_warnings

    @property
    def all_errors(self) -> tuple[str, ...]:
        """Service errors followed by the parser's own."""
        parser_errors = self.result.errors if self.result is not None else ()
        return self.errors + tuple(parser_errors)


@dataclass(frozen=True)
class BatchReport:
    """
    Reports for several payloads, with a pass/fail threshold.

    fail_on is one of "critical", "warning", "info", "none".
    """

    reports: tuple[AnalysisReport, ...] = ()
    fail_on: str = "critical"

    @property
    def total(self) -> int:
        return len(self.reports)

    def _count(self, severity: Severity) -> int:
        return sum(len(r.analysis.by_severity(severity)) for r in self.reports)

    @property
    def critical_count(self) -> int:
        return self._count(Severity.CRITICAL)

    @property
    def warning_count(self) -> int:
        return self._count(Severity.WARNING)

    @property
    def info_count(self) -> int:
        return self._count(Severity.INFO)

    @property
    def has_failures(self) -> bool:
        """Check if any report reaches the fail_on threshold."""
        if self.fail_on == "critical":
            return self.critical_count > 0
        if self.fail_on == "warning":
            return self.critical_count > 0 or self.warning_count > 0
        if self.fail_on == "info":
            return self.critical_count > 0 or self.warning_count > 0 or self.info_count > 0
        return False

    def to_summary_dict(self) -> dict[str, Any]:
        """Export summary as dictionary for JSON output."""
        return {
            "total": self.total,
            "critical_count": self.critical_count,
            "warning_count": self.warning_count,
            "info_count": self.info_count,
            "fail_on": self.fail_on,
            "has_failures": self.has_failures,
        }


class AnalysisService:
    """
    Orchestration service: unwrap, detect, parse, analyze.

    Never raises from analyze(); anything unexpected ends up in the
    report's `errors`.
    """

    def __init__(self, config: Config | None = None) -> None:
        """
        Initialize the service.

        Args:
            config: Configuration instance (if None, uses get_config())
        """
        if config is None:
            from plansense.config import get_config

            config = get_config()
        self._config = config
        self._analyzer = DiagnosticAnalyzer(config)

    @property
    def config(self) -> Config:
        return self._config

    @property
    def analyzer(self) -> DiagnosticAnalyzer:
        return self._analyzer

    def _parse(self, plan_format: PlanFormat, text: str, expected_statement: str | None) -> ParseResult | None:
        parser_config: ParserConfig = self._config.parser
        parsers: dict[PlanFormat, Callable[[], ParseResult]] = {
            PlanFormat.MSSQL: lambda: parse_mssql_plan(text, parser_config, expected_statement),
            PlanFormat.POSTGRES: lambda: parse_postgres_plan(text, parser_config),
            PlanFormat.MONGO: lambda: parse_mongo_plan(text, parser_config),
            PlanFormat.DEADLOCK: lambda: parse_deadlock_graph(text, parser_config),
        }
        parse = parsers.get(plan_format)
        return parse() if parse is not None else None

    def analyze(
        self,
        payload: str | None,
        engine: PlanFormat | str = PlanFormat.UNKNOWN,
        expected_statement: str | None = None,
        file_path: str | None = None,
    ) -> AnalysisReport:
        """
        Analyze one raw payload.

        Args:
            payload: Raw text, envelopes allowed
            engine: Force a format ("mssql", "postgres", "mongo",
                "deadlock"); "auto" or UNKNOWN sniffs the content
            expected_statement: Query text the plan was requested for
                (SQL Server generic-plan check)
            file_path: Where the payload came from, for reporting

        Returns:
            AnalysisReport; status UNRECOGNIZED when no format matched
        """
        try:
            requested = PlanFormat.UNKNOWN if engine in ("auto", None) else PlanFormat(engine)
        except ValueError:
            return AnalysisReport(
                format=PlanFormat.UNKNOWN,
                result=None,
                analysis=AnalysisResult(),
                errors=(f"Unknown engine: {engine}",),
                file_path=file_path,
            )

        if not payload or not payload.strip():
            return AnalysisReport(
                format=requested,
                result=None,
                analysis=AnalysisResult(),
                errors=("Empty payload",),
                file_path=file_path,
            )

        layers: tuple[str, ...] = ()
        try:
            ensure_within_limits(payload, self._config.parser)
            text, layers = peel(payload, self._config.parser)
            plan_format = requested if requested is not PlanFormat.UNKNOWN else detect_format(text)
            logger.debug("Payload format %s after layers %s", plan_format.value, layers or "none")

            result = self._parse(plan_format, text, expected_statement)
            if result is None:
                return AnalysisReport(
                    format=plan_format,
                    result=None,
                    analysis=AnalysisResult(),
                    layers=layers,
                    errors=("Unrecognized payload format",),
                    file_path=file_path,
                )
            return AnalysisReport(
                format=plan_format,
                result=result,
                analysis=self._analyzer.analyze(result),
                layers=layers,
                file_path=file_path,
            )
        except PlanSenseError as e:
            logger.warning("Payload rejected: %s", e.message)
            return AnalysisReport(
                format=requested,
                result=None,
                analysis=AnalysisResult(),
                errors=(e.message,),
                file_path=file_path,
            )
        except Exception as e:  # noqa: BLE001 - the service never raises
            logger.exception("Analysis failed")
            return AnalysisReport(
                format=requested,
                result=None,
                analysis=AnalysisResult(),
                layers=layers,
                errors=(f"Analysis failed: {e}",),
                file_path=file_path,
            )

    def analyze_batch(
        self,
        payloads: list[tuple[str, str]],
        engine: PlanFormat | str = PlanFormat.UNKNOWN,
        fail_on: str = "critical",
    ) -> BatchReport:
        """
        Analyze several payloads.

        Args:
            payloads: List of (file_path, payload) tuples
            engine: Format for all payloads, or "auto"
            fail_on: Severity threshold for failure

        Returns:
            BatchReport with one report per payload, in input order
        """
        if fail_on not in FAIL_ON_LEVELS:
            raise ValueError(f"fail_on must be one of {', '.join(FAIL_ON_LEVELS)}")
        reports = tuple(
            self.analyze(payload, engine=engine, file_path=file_path) for file_path, payload in payloads
        )
        return BatchReport(reports=reports, fail_on=fail_on)
