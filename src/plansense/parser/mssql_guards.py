"""
Generic plan heuristic for SQL Server.

Some monitoring backends answer a plan request with a cached plan for an
unrelated statement, or with a template plan over placeholder objects.
This module flags such plans. It is a guard against that backend quirk,
not part of ShowPlan parsing: it never removes nodes or changes the parse
status, and the analyzer turns a positive check into an informational
diagnostic only.
"""

from __future__ import annotations

import re

from plansense.parser.models import GenericPlanCheck, PlanNode, StatementSummary

PLACEHOLDER_TABLES = re.compile(
    r"^(?:unknown|table|tablename|table_name|table\d+|t\d*|dummy|placeholder|"
    r"sample|example|spt_\w+|#\w*)$",
    re.IGNORECASE,
)

_LEADING_KEYWORD = re.compile(r"^\s*(?:\(\s*)*(\w+)")

# Leading keywords that do not name the statement type on their own
_PREFIX_KEYWORDS = {"WITH", "SET", "DECLARE", "EXEC", "EXECUTE", "BEGIN"}


def statement_keyword(sql: str) -> str | None:
    """First meaningful keyword of a statement, upper-cased."""
    match = _LEADING_KEYWORD.match(sql or "")
    if not match:
        return None
    keyword = match.group(1).upper()
    return None if keyword in _PREFIX_KEYWORDS else keyword


def check_generic_plan(
    summary: StatementSummary,
    nodes: list[PlanNode],
    expected_statement: str | None = None,
) -> GenericPlanCheck:
    """
    Decide whether a plan looks generic or unrelated to the requested query.

    Reasons:
        - every table referenced by the operators is a placeholder name
        - the plan's statement type differs from the expected statement's
    """
    reasons: list[str] = []

    tables = sorted({n.object_name for n in nodes if n.object_name})
    if tables and all(PLACEHOLDER_TABLES.match(t) for t in tables):
        reasons.append(f"Plan only references placeholder tables: {', '.join(tables)}")

    expected = statement_keyword(expected_statement) if expected_statement else None
    words = (summary.statement_type or "").split()[:1]
    actual = words[0].upper() if words else None
    if expected and actual and expected != actual:
        reasons.append(f"Plan statement type {actual} does not match requested {expected}")

    return GenericPlanCheck(suspected=bool(reasons), reasons=tuple(reasons))
