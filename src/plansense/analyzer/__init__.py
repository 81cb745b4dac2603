"""
Severity classification and index script generation.

The analyzer itself lives in `plansense.analyzer.analyzer`; it is not
re-exported here because the parsers import the classifiers below.
"""

from plansense.analyzer.classify import classify_cost, classify_row_mismatch
from plansense.analyzer.index_script import combine_scripts, generate_index_script
from plansense.analyzer.models import (
    AnalysisResult,
    CostBand,
    Diagnostic,
    DiagnosticCategory,
    NodeAssessment,
    RowMismatch,
    Severity,
)

__all__ = [
    "AnalysisResult",
    "CostBand",
    "Diagnostic",
    "DiagnosticCategory",
    "NodeAssessment",
    "RowMismatch",
    "Severity",
    "classify_cost",
    "classify_row_mismatch",
    "combine_scripts",
    "generate_index_script",
]
