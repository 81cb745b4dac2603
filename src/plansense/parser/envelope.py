"""
Envelope classification and unwrapping.

Diagnostic payloads rarely arrive as bare engine output. They come wrapped in
API envelopes and escaping layers:

- `COMPRESSED_XML:<base64 of gzip>` (deadlock reports)
- `{"plan": "<string>"}`, possibly with the string itself being JSON
- `{"result": {"value": "<base64 of JSON>"}}`
- `{"QUERY PLAN_1": "...", "QUERY PLAN_2": "..."}` or `[{"QUERY PLAN": "..."}]`
  (PostgreSQL text plans returned row by row)
- A JSON string literal holding the payload
- Literal `\\u003c` / `\\u003e` escape sequences
- HTML entities (`&lt;RelOp ...&gt;`)

`classify_envelope` looks at the text once and returns exactly one envelope
case carrying the already-decoded inner text. `unwrap_payload` peels layers
until the text classifies as `Raw`. Decoding failures never raise: a layer
that fails to decode simply does not match, and classification moves on to
the next case.
"""

from __future__ import annotations

import base64
import binascii
import html
import json
import logging
import re
import zlib
from dataclasses import dataclass
from typing import Any, Union

from plansense.exceptions import ParseError, PayloadError
from plansense.parser.config import DEFAULT_CONFIG, ParserConfig

logger = logging.getLogger(__name__)

COMPRESSED_PREFIX = "COMPRESSED_XML:"

_QUERY_PLAN_KEY = re.compile(r"^QUERY PLAN_(\d+)$")


# =============================================================================
# Envelope cases
# =============================================================================


@dataclass(frozen=True)
class CompressedXml:
    """`COMPRESSED_XML:` prefix followed by base64-encoded gzip."""

    inner: str


@dataclass(frozen=True)
class JsonPlanEnvelope:
    """JSON object with a `plan` field."""

    inner: str


@dataclass(frozen=True)
class Base64ResultEnvelope:
    """JSON object whose `result.value` is base64-encoded JSON."""

    inner: str


@dataclass(frozen=True)
class QueryPlanLines:
    """PostgreSQL text plan delivered one JSON entry per line."""

    inner: str


@dataclass(frozen=True)
class QuotedString:
    """The whole payload is a JSON string literal."""

    inner: str


@dataclass(frozen=True)
class UnicodeEscaped:
    """XML with literal `\\u003c` / `\\u003e` sequences in place of < and >."""

    inner: str


@dataclass(frozen=True)
class HtmlEscaped:
    """XML whose markup is entirely HTML-entity encoded."""

    inner: str


@dataclass(frozen=True)
class Raw:
    """Nothing left to peel."""

    inner: str


Envelope = Union[
    CompressedXml,
    JsonPlanEnvelope,
    Base64ResultEnvelope,
    QueryPlanLines,
    QuotedString,
    UnicodeEscaped,
    HtmlEscaped,
    Raw,
]

_LAYER_NAMES: dict[type, str] = {
    CompressedXml: "compressed_xml",
    JsonPlanEnvelope: "json_plan",
    Base64ResultEnvelope: "base64_result",
    QueryPlanLines: "query_plan_lines",
    QuotedString: "quoted_string",
    UnicodeEscaped: "unicode_escaped",
    HtmlEscaped: "html_escaped",
    Raw: "raw",
}


def layer_name(envelope: Envelope) -> str:
    return _LAYER_NAMES[type(envelope)]


# =============================================================================
# Decoders
# =============================================================================


def decode_compressed_base64(payload: str) -> str:
    """
    Decode a `COMPRESSED_XML:` payload (base64 of gzip or zlib data).

    Raises:
        PayloadError: If the base64 or the compressed stream is invalid.
    """
    data = payload.strip()
    if data.startswith(COMPRESSED_PREFIX):
        data = data[len(COMPRESSED_PREFIX):]
    try:
        raw = base64.b64decode(data.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise PayloadError(f"Invalid base64 data: {e}", layer="compressed_xml") from e
    try:
        # wbits=47 auto-detects gzip and zlib headers
        inflated = zlib.decompress(raw, 47)
    except zlib.error as e:
        raise PayloadError(f"Failed to decompress data: {e}", layer="compressed_xml") from e
    return inflated.decode("utf-8", errors="replace")


def _decode_base64_json(value: str) -> str | None:
    """Decode base64 text that must itself be JSON; None if it is not."""
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None
    try:
        json.loads(decoded)
    except json.JSONDecodeError:
        return None
    return decoded


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        return None


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return None


def _query_plan_lines(data: Any) -> str | None:
    """Join `QUERY PLAN_<n>` entries (ordered by n) or `QUERY PLAN` rows."""
    if isinstance(data, dict):
        numbered = []
        for key, value in data.items():
            match = _QUERY_PLAN_KEY.match(key)
            if match and isinstance(value, str):
                numbered.append((int(match.group(1)), value))
        if numbered:
            numbered.sort(key=lambda item: item[0])
            return "\n".join(line for _, line in numbered)
        return None
    if isinstance(data, list) and data and all(
        isinstance(row, dict) and isinstance(row.get("QUERY PLAN"), str) for row in data
    ):
        return "\n".join(row["QUERY PLAN"] for row in data)
    return None


def _classify_json(data: Any) -> Envelope | None:
    if isinstance(data, str):
        return QuotedString(data)

    if isinstance(data, dict):
        if "plan" in data:
            inner = _as_text(data["plan"])
            if inner is not None:
                return JsonPlanEnvelope(inner)

        result = data.get("result")
        if isinstance(result, dict) and isinstance(result.get("value"), str):
            decoded = _decode_base64_json(result["value"])
            if decoded is not None:
                return Base64ResultEnvelope(decoded)
            logger.debug("result.value is not base64-encoded JSON, skipping layer")

    lines = _query_plan_lines(data)
    if lines is not None:
        return QueryPlanLines(lines)

    return None


# =============================================================================
# Public API
# =============================================================================


def classify_envelope(text: str) -> Envelope:
    """
    Classify the outermost layer of a payload.

    Cases are evaluated in order; the first one whose decoding succeeds
    wins. A case that fails to decode falls through to the next.
    """
    stripped = text.strip()

    if stripped.startswith(COMPRESSED_PREFIX):
        try:
            return CompressedXml(decode_compressed_base64(stripped))
        except PayloadError as e:
            logger.warning("Could not decode compressed payload: %s", e.message)

    if stripped.startswith(("{", "[", '"')):
        envelope = _classify_json(_loads(stripped))
        if envelope is not None:
            return envelope

    if "\\u003c" in text or "\\u003e" in text or "\\u003C" in text or "\\u003E" in text:
        decoded = re.sub(r"\\u003[cC]", "<", text)
        decoded = re.sub(r"\\u003[eE]", ">", decoded)
        return UnicodeEscaped(decoded)

    if ("&lt;" in text or "&gt;" in text) and "<" not in text:
        return HtmlEscaped(html.unescape(text))

    return Raw(text)


def ensure_within_limits(text: str, config: ParserConfig | None = None) -> None:
    """
    Reject payloads larger than the configured limit.

    Raises:
        ParseError: If the payload exceeds max_payload_mb.
    """
    config = config or DEFAULT_CONFIG
    size_mb = len(text.encode("utf-8", errors="ignore")) / (1024 * 1024)
    if size_mb > config.max_payload_mb:
        raise ParseError(
            f"Payload too large: {size_mb:.1f}MB (max {config.max_payload_mb}MB)",
            source="resource_limit",
        )


def peel(text: str, config: ParserConfig | None = None) -> tuple[str, tuple[str, ...]]:
    """
    Peel envelope layers and report which ones were removed.

    Returns:
        The innermost text and the names of the peeled layers, outermost first.
    """
    config = config or DEFAULT_CONFIG
    layers: list[str] = []
    current = text
    for _ in range(config.max_unwrap_depth):
        envelope = classify_envelope(current)
        if isinstance(envelope, Raw):
            break
        layers.append(layer_name(envelope))
        if envelope.inner == current:
            break
        current = envelope.inner
    return current, tuple(layers)


def unwrap_payload(text: str | None, config: ParserConfig | None = None) -> str:
    """
    Strip envelopes and escaping, yielding engine-native text.

    Never raises. If nothing matches, the input is returned unchanged;
    callers treat output without recognizable markers as "no plan".

    Example:
        >>> unwrap_payload('{"plan": "\\u003cRelOp PhysicalOp=\\"X\\"\\u003e"}')
        '<RelOp PhysicalOp="X">'
    """
    if not text:
        return ""
    try:
        unwrapped, layers = peel(text, config)
    except Exception as e:  # noqa: BLE001 - best-effort by contract
        logger.error("Unwrapping failed, returning payload unchanged: %s", e)
        return text
    if layers:
        logger.debug("Peeled envelope layers: %s", ", ".join(layers))
    return unwrapped
