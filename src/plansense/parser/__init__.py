"""Diagnostic payload parsing: envelopes, plan parsers and deadlock graphs."""

from plansense.parser.config import DEFAULT_CONFIG, STRICT_CONFIG, ParserConfig
from plansense.parser.deadlock import parse_deadlock_graph
from plansense.parser.detect import PlanFormat, detect_format
from plansense.parser.envelope import classify_envelope, unwrap_payload
from plansense.parser.models import (
    DeadlockGraph,
    Engine,
    MongoPlanResult,
    MssqlPlanResult,
    ParseResult,
    ParseStatus,
    PlanNode,
    PostgresPlanResult,
)
from plansense.parser.mongo import parse_mongo_plan
from plansense.parser.mssql import parse_mssql_plan
from plansense.parser.postgres import parse_postgres_plan

__all__ = [
    "DeadlockGraph",
    "Engine",
    "MongoPlanResult",
    "MssqlPlanResult",
    "ParseResult",
    "ParseStatus",
    "PlanFormat",
    "PlanNode",
    "PostgresPlanResult",
    "classify_envelope",
    "detect_format",
    "parse_deadlock_graph",
    "parse_mongo_plan",
    "parse_mssql_plan",
    "parse_postgres_plan",
    "unwrap_payload",
    "ParserConfig",
    "DEFAULT_CONFIG",
    "STRICT_CONFIG",
]
