"""
Parser configuration with resource limits and extraction fallbacks.

The limits keep pathological payloads (multi-hundred-MB plan dumps, envelopes
nested inside envelopes) from exhausting memory. The fallback values are the
placeholders the SQL Server operator tiers use when a payload only carries
partial attributes.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ParserConfig(BaseModel):
    """
    Configuration for the payload parsers.

    Attributes:
        max_payload_mb: Maximum payload size. Larger payloads are reported
            as unrecognized instead of being scanned.
        max_nodes: Maximum number of plan nodes kept per parse.
        max_unwrap_depth: How many envelope layers (JSON, base64, gzip,
            escaping) are peeled before giving up.
        placeholder_cost: Subtree cost assigned to SQL Server operators that
            carry no cost attribute, so cost ratios never divide by zero.
        default_statement_rows: Estimated rows used by the single-node
            Clustered Index Scan fallback when StatementEstRows is absent.

    Example:
        config = ParserConfig(max_payload_mb=5, max_nodes=2_000)
    """

    model_config = ConfigDict(frozen=True)

    max_payload_mb: float = Field(
        default=50.0,
        gt=0,
        description="Maximum payload size in megabytes",
    )

    max_nodes: int = Field(
        default=50_000,
        gt=0,
        description="Maximum number of plan nodes",
    )

    max_unwrap_depth: int = Field(
        default=6,
        gt=0,
        description="Maximum number of envelope layers to peel",
    )

    placeholder_cost: float = Field(
        default=0.01,
        gt=0,
        description="Cost used when an operator has no EstimatedTotalSubtreeCost",
    )

    default_statement_rows: float = Field(
        default=1024.0,
        ge=0,
        description="Row estimate for the single-node fallback",
    )


# Sensible defaults for different use cases
DEFAULT_CONFIG = ParserConfig()

# Stricter limits for untrusted input
STRICT_CONFIG = ParserConfig(
    max_payload_mb=5.0,
    max_nodes=5_000,
    max_unwrap_depth=3,
)
