"""
Configuration system for plansense.

Implements 12-factor config principles:
- Environment variables as primary config source
- Optional JSON or YAML config file for local development
- Analyzer thresholds and parser resource limits in one frozen model

Usage:
    from plansense.config import get_config

    config = get_config()
    if ratio > config.row_severe_ratio:
        ...
"""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from plansense.exceptions import ConfigurationError
from plansense.parser.config import ParserConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "PLANSENSE_"


class Config(BaseModel):
    """
    plansense configuration.

    Thresholds used by the diagnostic analyzer, plus the parser limits.
    Loaded from environment variables and an optional config file.
    """

    model_config = ConfigDict(frozen=True)

    # Cost bands, as a fraction of the plan's most expensive node
    cost_medium_ratio: float = Field(
        default=0.1,
        gt=0,
        lt=1,
        description="Cost ratio above which a node is MEDIUM",
    )
    cost_high_ratio: float = Field(
        default=0.3,
        gt=0,
        lt=1,
        description="Cost ratio above which a node is HIGH",
    )
    cost_dampening_threshold: float = Field(
        default=0.1,
        ge=0,
        description="Absolute cost below which a node is never HIGH",
    )

    # Row estimation bands (actual / estimated)
    row_significant_ratio: float = Field(
        default=10.0,
        gt=1,
        description="Ratio beyond which a misestimate is significant",
    )
    row_severe_ratio: float = Field(
        default=100.0,
        gt=1,
        description="Ratio beyond which a misestimate is severe",
    )

    # Index recommendations
    index_name_max_length: int = Field(
        default=128,
        gt=3,
        description="Identifier length limit for generated index names",
    )
    missing_index_critical_impact: float = Field(
        default=80.0,
        ge=0,
        le=100,
        description="Missing-index impact (%) at which the diagnostic is critical",
    )

    # Engine-specific heuristics
    mongo_docs_examined_ratio: float = Field(
        default=10.0,
        gt=0,
        description="docsExamined / nReturned ratio flagged as inefficient",
    )
    postgres_loops_threshold: int = Field(
        default=1000,
        gt=0,
        description="Inner-side loops above which a nested loop is flagged",
    )
    postgres_seq_scan_rows: int = Field(
        default=1000,
        gt=0,
        description="Rows above which a sequential scan is flagged",
    )
    postgres_slow_operation_ms: float = Field(
        default=100.0,
        gt=0,
        description="Per-node actual time (ms) above which an operation is slow",
    )
    postgres_slow_query_ms: float = Field(
        default=1000.0,
        gt=0,
        description="Total execution time (ms) above which the query is slow",
    )

    parser: ParserConfig = Field(
        default_factory=ParserConfig,
        description="Parser resource limits and fallbacks",
    )

    @model_validator(mode="after")
    def _check_ordering(self) -> Config:
        if self.cost_high_ratio <= self.cost_medium_ratio:
            raise ValueError("cost_high_ratio must be greater than cost_medium_ratio")
        if self.row_severe_ratio <= self.row_significant_ratio:
            raise ValueError("row_severe_ratio must be greater than row_significant_ratio")
        return self


def _parse_env_int(value: str | None, default: int) -> int:
    """Parse integer from environment variable."""
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer value %r", value)
        return default


def _parse_env_float(value: str | None, default: float) -> float:
    """Parse float from environment variable."""
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric value %r", value)
        return default


def _build(data: dict[str, Any], source: str) -> Config:
    try:
        return Config(**data)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        key = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ConfigurationError(f"Invalid configuration from {source}: {e}", config_key=key) from e


def load_config_from_env() -> Config:
    """
    Load configuration from environment variables.

    Variables are named PLANSENSE_<FIELD>, parser limits
    PLANSENSE_<PARSER_FIELD>.

    Examples:
    - PLANSENSE_COST_HIGH_RATIO=0.4
    - PLANSENSE_ROW_SEVERE_RATIO=1000
    - PLANSENSE_MAX_PAYLOAD_MB=10

    Raises:
        ConfigurationError: If the resulting thresholds are inconsistent.
    """
    defaults = Config.model_construct()
    env = os.environ.get

    float_fields = (
        "cost_medium_ratio",
        "cost_high_ratio",
        "cost_dampening_threshold",
        "row_significant_ratio",
        "row_severe_ratio",
        "missing_index_critical_impact",
        "mongo_docs_examined_ratio",
        "postgres_slow_operation_ms",
        "postgres_slow_query_ms",
    )
    int_fields = ("index_name_max_length", "postgres_loops_threshold", "postgres_seq_scan_rows")

    config_kwargs: dict[str, Any] = {}
    for name in float_fields:
        config_kwargs[name] = _parse_env_float(env(f"{ENV_PREFIX}{name.upper()}"), getattr(defaults, name))
    for name in int_fields:
        config_kwargs[name] = _parse_env_int(env(f"{ENV_PREFIX}{name.upper()}"), getattr(defaults, name))

    parser_defaults = ParserConfig()
    config_kwargs["parser"] = {
        "max_payload_mb": _parse_env_float(env(f"{ENV_PREFIX}MAX_PAYLOAD_MB"), parser_defaults.max_payload_mb),
        "max_nodes": _parse_env_int(env(f"{ENV_PREFIX}MAX_NODES"), parser_defaults.max_nodes),
        "max_unwrap_depth": _parse_env_int(
            env(f"{ENV_PREFIX}MAX_UNWRAP_DEPTH"), parser_defaults.max_unwrap_depth
        ),
        "placeholder_cost": _parse_env_float(
            env(f"{ENV_PREFIX}PLACEHOLDER_COST"), parser_defaults.placeholder_cost
        ),
        "default_statement_rows": _parse_env_float(
            env(f"{ENV_PREFIX}DEFAULT_STATEMENT_ROWS"), parser_defaults.default_statement_rows
        ),
    }

    return _build(config_kwargs, "environment")


def load_config_from_file(path: Path) -> Config:
    """
    Load configuration from a JSON or YAML file.

    Falls back to environment variables when the file does not exist.

    Raises:
        ConfigurationError: If the file cannot be read or holds invalid values.
    """
    if not path.exists():
        logger.warning("Config file not found: %s, using environment", path)
        return load_config_from_env()

    try:
        with open(path) as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return _build(data, str(path))


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the global configuration instance.

    Loads from:
    1. PLANSENSE_CONFIG_FILE environment variable (if set)
    2. Environment variables (default)

    Result is cached for the lifetime of the process.
    """
    config_file = os.environ.get(f"{ENV_PREFIX}CONFIG_FILE")

    if config_file:
        return load_config_from_file(Path(config_file))

    return load_config_from_env()


def reset_config() -> None:
    """Reset the cached configuration (mainly for testing)."""
    get_config.cache_clear()
