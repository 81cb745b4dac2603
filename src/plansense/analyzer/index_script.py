"""
CREATE INDEX script generation for SQL Server missing-index recommendations.

Deterministic text generation: the same recommendation always produces the
same script, and nothing here touches a database.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from plansense.parser.models import MissingIndexRecommendation

SQLSERVER_IDENTIFIER_LIMIT = 128

NO_KEY_COLUMNS_SCRIPT = "-- Unable to generate index script: No key columns specified"

INDEX_OPTIONS = (
    "PAD_INDEX = OFF",
    "STATISTICS_NORECOMPUTE = OFF",
    "SORT_IN_TEMPDB = OFF",
    "DROP_EXISTING = OFF",
    "ONLINE = OFF",
    "ALLOW_ROW_LOCKS = ON",
    "ALLOW_PAGE_LOCKS = ON",
)


def _clean(name: str) -> str:
    return re.sub(r"[\[\]]", "", name)


def index_name(
    table: str,
    key_columns: tuple[str, ...] | list[str],
    max_length: int = SQLSERVER_IDENTIFIER_LIMIT,
) -> str:
    """
    `IX_<table>_<key1>_<key2>...`, truncated to the identifier limit.

    Example:
        >>> index_name("Orders", ["CustomerID"])
        'IX_Orders_CustomerID'
    """
    table_clean = re.sub(r"[\[\]()]", "", table)
    keys = "_".join(_clean(column) for column in key_columns)
    return f"IX_{table_clean}_{keys}"[:max_length]


def verification_query(schema: str, table: str, name: str) -> str:
    """Query reading back the created index from sys.indexes / sys.index_columns."""

    def literal(value: str) -> str:
        return value.replace("'", "''")

    def column_list(included: int, alias: str) -> str:
        return (
            "    STUFF((\n"
            "        SELECT ', ' + c.name\n"
            "        FROM sys.index_columns ic\n"
            "        INNER JOIN sys.columns c ON ic.object_id = c.object_id AND ic.column_id = c.column_id\n"
            f"        WHERE ic.object_id = i.object_id AND ic.index_id = i.index_id AND ic.is_included_column = {included}\n"
            "        ORDER BY ic.key_ordinal\n"
            "        FOR XML PATH('')\n"
            f"    ), 1, 2, '') AS {alias}"
        )

    return (
        "-- Verify index creation\n"
        "SELECT \n"
        "    i.name AS IndexName,\n"
        "    i.type_desc AS IndexType,\n"
        f"{column_list(0, 'KeyColumns')},\n"
        f"{column_list(1, 'IncludedColumns')}\n"
        "FROM sys.indexes i\n"
        "INNER JOIN sys.objects o ON i.object_id = o.object_id\n"
        "INNER JOIN sys.schemas s ON o.schema_id = s.schema_id\n"
        f"WHERE s.name = '{literal(schema)}' AND o.name = '{literal(table)}' AND i.name = '{literal(name)}';\n"
    )


def generate_index_script(
    recommendation: MissingIndexRecommendation,
    max_name_length: int = SQLSERVER_IDENTIFIER_LIMIT,
) -> str:
    """
    Build the CREATE NONCLUSTERED INDEX script for one recommendation.

    Key columns are the equality columns followed by the inequality
    columns. Without any key column, a comment-only script is returned.
    """
    keys = recommendation.key_columns
    if not keys:
        return NO_KEY_COLUMNS_SCRIPT

    name = index_name(recommendation.table, keys, max_name_length)
    schema = recommendation.schema_name
    table = recommendation.table

    lines = [
        f"-- Missing Index Script (Impact: {recommendation.impact:.1f}%)\n",
        "-- Generated from execution plan analysis\n",
        f"USE [{recommendation.database}];\nGO\n\n",
        f"CREATE NONCLUSTERED INDEX [{name}]\n",
        f"ON [{schema}].[{table}] (\n",
        ",\n".join(f"    [{_clean(column)}] ASC" for column in keys),
        "\n)",
    ]
    if recommendation.included_columns:
        lines.append("\nINCLUDE (\n")
        lines.append(",\n".join(f"    [{_clean(column)}]" for column in recommendation.included_columns))
        lines.append("\n)")

    lines.append("\nWITH (\n")
    lines.append(",\n".join(f"    {option}" for option in INDEX_OPTIONS))
    lines.append("\n);\nGO\n\n")
    lines.append(verification_query(schema, table, name))
    return "".join(lines)


def missing_index_message(recommendation: MissingIndexRecommendation) -> str:
    """One-line recommendation text, e.g. for warning lists."""
    keys = ", ".join(recommendation.key_columns)
    message = f"Consider adding index on {recommendation.schema_name}.{recommendation.table} ({keys})"
    if recommendation.included_columns:
        message += f" INCLUDE ({', '.join(recommendation.included_columns)})"
    return f"{message} - Impact: {recommendation.impact:.1f}%"


def combine_scripts(
    recommendations: list[MissingIndexRecommendation],
    max_name_length: int | None = None,
) -> str:
    """
    All scripts, highest impact first, separated by blank lines.

    With max_name_length, scripts are regenerated for that identifier limit
    instead of reusing each recommendation's ddl_script.
    """
    ordered = sorted(recommendations, key=lambda r: -r.impact)
    if max_name_length is not None:
        return "\n".join(generate_index_script(r, max_name_length) for r in ordered)
    return "\n".join(r.ddl_script or generate_index_script(r) for r in ordered)
