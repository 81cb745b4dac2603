"""
Package-level exception hierarchy for plansense.

All exceptions inherit from PlanSenseError, enabling:
- Catching all plansense errors with a single except clause
- Context fields for debugging (source, config_key)
- Structured serialization via to_dict() for JSON error output

Hierarchy:
    PlanSenseError
    ├── PayloadError        – An envelope layer could not be decoded
    ├── ParseError          – A diagnostic payload could not be interpreted
    └── ConfigurationError  – Invalid configuration

Parser entry points never let these escape: they are raised by internal
helpers and converted into a result status plus an error message.
"""

from __future__ import annotations

from typing import Any


class PlanSenseError(Exception):
    """
    Base exception for all plansense errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON error output."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
        }


# ── Payload Errors ───────────────────────────────────────────────────────


class PayloadError(PlanSenseError):
    """
    An envelope layer (JSON, base64, gzip) could not be decoded.

    Attributes:
        layer: Name of the envelope layer that failed (e.g. "compressed_xml").
    """

    def __init__(self, message: str, layer: str | None = None) -> None:
        self.layer = layer
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["layer"] = self.layer
        return result


# ── Parse Errors ─────────────────────────────────────────────────────────


class ParseError(PlanSenseError):
    """
    Failed to interpret a diagnostic payload.

    Raised when the input is too large, is not well-formed where a DOM parse
    is required, or otherwise cannot be interpreted.

    Attributes:
        source: Which parser or stage raised (e.g. "deadlock", "resource_limit").
    """

    def __init__(self, message: str, source: str | None = None) -> None:
        self.source = source
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["source"] = self.source
        return result


# ── Configuration Errors ─────────────────────────────────────────────────


class ConfigurationError(PlanSenseError):
    """
    Error in plansense configuration.

    Attributes:
        config_key: The configuration key that caused the error (if known).
    """

    def __init__(self, message: str, config_key: str | None = None) -> None:
        self.config_key = config_key
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["config_key"] = self.config_key
        return result
