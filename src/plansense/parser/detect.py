"""
Content sniffing: decide which parser an unwrapped payload belongs to.

Detection looks for format markers only. It runs once on unwrapped text and
is deliberately cheap; parsers do their own, more thorough recognition.
"""

from __future__ import annotations

import re
from enum import Enum


class PlanFormat(str, Enum):
    """Payload formats understood by the parsers."""

    MSSQL = "mssql"
    POSTGRES = "postgres"
    MONGO = "mongo"
    DEADLOCK = "deadlock"
    UNKNOWN = "unknown"


_DEADLOCK_MARKERS = ("<deadlock", "xml_deadlock_report", "<victim-list", "<victimProcess")
_MSSQL_MARKERS = ("<RelOp", "<ShowPlanXML", "PhysicalOp=", "<StmtSimple", "StatementEstRows=")
_MONGO_MARKERS = ('"queryPlanner"', '"winningPlan"', '"executionStats"', "## Query Planner")

_POSTGRES_LINE = re.compile(
    r"\(cost=\d|\(actual (?:time|rows)=|"
    r"^\s*(?:->\s*)?(?:Seq Scan|Index Scan|Index Only Scan|Bitmap Heap Scan|"
    r"Hash Join|Merge Join|Nested Loop|HashAggregate|GroupAggregate|Aggregate|"
    r"Sort|Limit|Gather)\b",
    re.MULTILINE,
)


def is_deadlock(text: str) -> bool:
    return any(marker in text for marker in _DEADLOCK_MARKERS)


def is_mssql_plan(text: str) -> bool:
    return any(marker in text for marker in _MSSQL_MARKERS)


def is_mongo_plan(text: str) -> bool:
    return any(marker in text for marker in _MONGO_MARKERS)


def is_postgres_plan(text: str) -> bool:
    return _POSTGRES_LINE.search(text) is not None


def detect_format(text: str | None) -> PlanFormat:
    """
    Classify unwrapped payload text.

    Deadlock reports are checked first because they are XML that can mention
    plan-like attributes inside `inputbuf` text.
    """
    if not text or not text.strip():
        return PlanFormat.UNKNOWN
    if is_deadlock(text):
        return PlanFormat.DEADLOCK
    if is_mssql_plan(text):
        return PlanFormat.MSSQL
    if is_mongo_plan(text):
        return PlanFormat.MONGO
    if is_postgres_plan(text):
        return PlanFormat.POSTGRES
    return PlanFormat.UNKNOWN
