"""
Severity classification shared by every engine.

Two classifiers, both pure functions of numbers:
- classify_row_mismatch: actual vs estimated rows
- classify_cost: a node's cost relative to the plan's most expensive node,
  dampened for plans or nodes that are cheap in absolute terms
"""

from __future__ import annotations

from plansense.analyzer.models import CostBand, RowMismatch, Severity

DEFAULT_SIGNIFICANT_RATIO = 10.0
DEFAULT_SEVERE_RATIO = 100.0

DEFAULT_MEDIUM_RATIO = 0.1
DEFAULT_HIGH_RATIO = 0.3
DEFAULT_DAMPENING_THRESHOLD = 0.1


def classify_row_mismatch(
    actual: float | None,
    estimated: float | None,
    significant_ratio: float = DEFAULT_SIGNIFICANT_RATIO,
    severe_ratio: float = DEFAULT_SEVERE_RATIO,
) -> RowMismatch | None:
    """
    Classify actual/estimated rows.

    Bands are exclusive at the boundary: a ratio of exactly 100 is
    SIGNIFICANT and exactly 10 is NONE (and symmetrically 0.01 / 0.1).

    Returns:
        None when either count is missing or the estimate is not positive.

    Example:
        >>> classify_row_mismatch(150, 1)
        <RowMismatch.SEVERE: 'severe'>
        >>> classify_row_mismatch(10, 1)
        <RowMismatch.NONE: 'none'>
    """
    if actual is None or estimated is None or estimated <= 0:
        return None
    ratio = actual / estimated
    if ratio > severe_ratio or ratio < 1 / severe_ratio:
        return RowMismatch.SEVERE
    if ratio > significant_ratio or ratio < 1 / significant_ratio:
        return RowMismatch.SIGNIFICANT
    return RowMismatch.NONE


def row_mismatch_severity(mismatch: RowMismatch | None) -> Severity | None:
    if mismatch is RowMismatch.SEVERE:
        return Severity.CRITICAL
    if mismatch is RowMismatch.SIGNIFICANT:
        return Severity.WARNING
    return None


def classify_cost(
    cost: float | None,
    max_cost: float,
    medium_ratio: float = DEFAULT_MEDIUM_RATIO,
    high_ratio: float = DEFAULT_HIGH_RATIO,
    dampening_threshold: float = DEFAULT_DAMPENING_THRESHOLD,
) -> CostBand | None:
    """
    Bucket a node's cost against the plan maximum.

    When the whole plan is cheap (max below the dampening threshold), or the
    node itself is, the band is capped at MEDIUM: dominating a trivially
    cheap plan is not a hotspot.

    Returns:
        None when the node has no cost or the plan has no positive cost.
    """
    if cost is None or max_cost <= 0:
        return None
    ratio = cost / max_cost
    if max_cost < dampening_threshold or cost < dampening_threshold:
        return CostBand.MEDIUM if ratio > high_ratio else CostBand.LOW
    if ratio > high_ratio:
        return CostBand.HIGH
    if ratio > medium_ratio:
        return CostBand.MEDIUM
    return CostBand.LOW
