"""Attribute and number helpers shared by the XML-ish parsers."""

from __future__ import annotations

import html
import re

_ATTRIBUTE = re.compile(r'([\w:.-]+)\s*=\s*"([^"]*)"')


def parse_attributes(fragment: str) -> dict[str, str]:
    """Read `name="value"` pairs in any order, unescaping XML entities."""
    return {name: html.unescape(value) for name, value in _ATTRIBUTE.findall(fragment)}


def strip_brackets(value: str) -> str:
    return value.replace("[", "").replace("]", "")


def to_float(value: str | None) -> float | None:
    """Parse a non-negative number; None for missing, invalid or negative input."""
    if value is None:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    # NaN and negatives are not valid counts or costs
    if number != number or number < 0:
        return None
    return number


def to_int(value: str | None) -> int | None:
    number = to_float(value)
    return int(number) if number is not None else None


def to_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    return value == "1" or value.lower() == "true"
