"""PlanSense - Diagnostic payload parser for SQL Server, PostgreSQL and MongoDB plans and deadlock reports."""

__version__ = "0.1.0"
__license__ = "MIT"

# Exception hierarchy (import first so other modules can use it)
from plansense.exceptions import (
    PlanSenseError,
    PayloadError,
    ParseError,
    ConfigurationError,
)

# Parsers
from plansense.parser import (
    DeadlockGraph,
    Engine,
    MongoPlanResult,
    MssqlPlanResult,
    ParseStatus,
    PlanFormat,
    PlanNode,
    PostgresPlanResult,
    detect_format,
    parse_deadlock_graph,
    parse_mongo_plan,
    parse_mssql_plan,
    parse_postgres_plan,
    unwrap_payload,
)

# Analysis
from plansense.analyzer.analyzer import DiagnosticAnalyzer, analyze
from plansense.analyzer.index_script import generate_index_script
from plansense.analyzer.models import (
    AnalysisResult,
    CostBand,
    Diagnostic,
    DiagnosticCategory,
    RowMismatch,
    Severity,
)
from plansense.config import Config, get_config
from plansense.engine import AnalysisReport, AnalysisService, BatchReport

__all__ = [
    # Version
    "__version__",
    # Exceptions
    "PlanSenseError",
    "PayloadError",
    "ParseError",
    "ConfigurationError",
    # Parsers
    "DeadlockGraph",
    "Engine",
    "MongoPlanResult",
    "MssqlPlanResult",
    "ParseStatus",
    "PlanFormat",
    "PlanNode",
    "PostgresPlanResult",
    "detect_format",
    "parse_deadlock_graph",
    "parse_mongo_plan",
    "parse_mssql_plan",
    "parse_postgres_plan",
    "unwrap_payload",
    # Analysis
    "AnalysisResult",
    "CostBand",
    "Diagnostic",
    "DiagnosticAnalyzer",
    "DiagnosticCategory",
    "RowMismatch",
    "Severity",
    "analyze",
    "generate_index_script",
    # Orchestration
    "AnalysisReport",
    "AnalysisService",
    "BatchReport",
    "Config",
    "get_config",
]
