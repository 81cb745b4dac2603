"""
Parser for MongoDB explain output.

Accepted shapes:
- The explain document itself: `{"queryPlanner": ..., "executionStats": ..., "serverInfo": ...}`
- Aggregation explain: `{"stages": [{"$cursor": {"queryPlanner": ...}}, ...]}`
- Markdown sections, one JSON object each:

      ## Query Planner
      {...}
      ## Execution Stats
      {...}
      ## Server Info
      {...}

The winning plan becomes a stage tree (inputStage, inputStages,
outerStage/innerStage). Each stage is matched to runtime counters from
executionStats.executionStages and allPlansExecution: first by position in
the tree, then by the first stage with the same name and index.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator

from plansense.exceptions import ParseError, PlanSenseError
from plansense.parser.config import DEFAULT_CONFIG, ParserConfig
from plansense.parser.envelope import ensure_within_limits, unwrap_payload
from plansense.parser.models import (
    Engine,
    MongoExecution,
    MongoExecutionSummary,
    MongoPlanResult,
    MongoServerInfo,
    ParseStatus,
    PlanNode,
    link_children,
)

logger = logging.getLogger(__name__)

UNKNOWN_STAGE = "UNKNOWN"

_SECTION_HEADER = re.compile(r"^##\s*(.+?)\s*$", re.MULTILINE)

_SECTION_KEYS = {
    "query planner": "queryPlanner",
    "queryplanner": "queryPlanner",
    "execution stats": "executionStats",
    "executionstats": "executionStats",
    "server info": "serverInfo",
    "serverinfo": "serverInfo",
}

_CHILD_KEYS = ("inputStage", "inputStages", "outerStage", "innerStage")


# =============================================================================
# Document loading
# =============================================================================


def _first_object(body: str) -> dict[str, Any] | None:
    """Decode the first braces-delimited JSON object in a section body."""
    start = body.find("{")
    if start < 0:
        return None
    try:
        value, _ = json.JSONDecoder().raw_decode(body[start:])
    except json.JSONDecodeError as e:
        logger.warning("Section body is not valid JSON: %s", e)
        return None
    return value if isinstance(value, dict) else None


def split_markdown_sections(text: str) -> dict[str, Any]:
    """Map `## Section` headers to explain keys, decoding each body."""
    headers = list(_SECTION_HEADER.finditer(text))
    document: dict[str, Any] = {}
    for i, header in enumerate(headers):
        key = _SECTION_KEYS.get(header.group(1).lower())
        if key is None:
            continue
        end = headers[i + 1].start() if i + 1 < len(headers) else len(text)
        section = _first_object(text[header.end():end])
        if section is not None:
            document[key] = section
    return document


def _unwrap_document(data: Any) -> dict[str, Any] | None:
    if isinstance(data, list) and len(data) == 1:
        data = data[0]
    if not isinstance(data, dict):
        return None
    if "queryPlanner" in data or "executionStats" in data:
        return data
    stages = data.get("stages")
    if isinstance(stages, list) and stages and isinstance(stages[0], dict):
        cursor = stages[0].get("$cursor")
        if isinstance(cursor, dict) and ("queryPlanner" in cursor or "executionStats" in cursor):
            merged = dict(cursor)
            merged.setdefault("serverInfo", data.get("serverInfo", {}))
            return merged
    return None


def load_explain_document(text: str) -> dict[str, Any]:
    """
    Turn explain text into a document with queryPlanner/executionStats keys.

    Raises:
        ParseError: If neither the JSON nor the Markdown form is present.
    """
    stripped = text.strip()
    if stripped.startswith(("{", "[")):
        try:
            document = _unwrap_document(json.loads(stripped))
        except json.JSONDecodeError:
            document = None
        if document is not None:
            return document

    if _SECTION_HEADER.search(text):
        document = split_markdown_sections(text)
        if document:
            return document

    raise ParseError("No queryPlanner or executionStats section found", source="mongo")


# =============================================================================
# Stage tree
# =============================================================================


def _children(stage: dict[str, Any]) -> list[dict[str, Any]]:
    found: list[dict[str, Any]] = []
    for key in _CHILD_KEYS:
        value = stage.get(key)
        if isinstance(value, dict):
            found.append(value)
        elif isinstance(value, list):
            found.extend(child for child in value if isinstance(child, dict))
    return found


def _stage_name(stage: dict[str, Any]) -> str:
    name = stage.get("stage")
    return name if isinstance(name, str) and name else UNKNOWN_STAGE


def _iter_stages(stage: dict[str, Any]) -> Iterator[dict[str, Any]]:
    yield stage
    for child in _children(stage):
        yield from _iter_stages(child)


def _at_path(root: dict[str, Any], path: tuple[int, ...]) -> dict[str, Any] | None:
    current = root
    for position in path:
        children = _children(current)
        if position >= len(children):
            return None
        current = children[position]
    return current


def _same_stage(plan_stage: dict[str, Any], exec_stage: dict[str, Any]) -> bool:
    return (
        _stage_name(plan_stage) == _stage_name(exec_stage)
        and plan_stage.get("indexName") == exec_stage.get("indexName")
    )


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, dict):
        # Extended JSON: {"$numberLong": "123"}
        for key in ("$numberLong", "$numberInt"):
            if key in value:
                return _as_int(value[key])
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            return None
    return None


def _as_float(value: Any) -> float | None:
    number = _as_int(value) if isinstance(value, dict) else value
    if isinstance(number, bool):
        return float(number)
    if isinstance(number, (int, float)):
        return float(number)
    return None


def _execution(stage: dict[str, Any]) -> MongoExecution:
    eof = stage.get("isEOF")
    return MongoExecution(
        n_returned=_as_int(stage.get("nReturned")),
        execution_time_ms=_as_float(stage.get("executionTimeMillisEstimate")),
        works=_as_int(stage.get("works")),
        advanced=_as_int(stage.get("advanced")),
        docs_examined=_as_int(stage.get("docsExamined")),
        keys_examined=_as_int(stage.get("keysExamined")),
        is_eof=bool(eof) if eof is not None else None,
    )


@dataclass
class _StageWalker:
    """Builds PlanNodes from one plan tree, matching runtime counters."""

    config: ParserConfig
    exec_roots: list[dict[str, Any]]
    nodes: list[PlanNode] = field(default_factory=list)
    truncated: bool = False

    def find_execution(self, stage: dict[str, Any], path: tuple[int, ...]) -> dict[str, Any] | None:
        for root in self.exec_roots:
            candidate = _at_path(root, path)
            if candidate is not None and _same_stage(stage, candidate):
                return candidate
        for root in self.exec_roots:
            for candidate in _iter_stages(root):
                if _same_stage(stage, candidate):
                    return candidate
        return None

    def walk(self, stage: dict[str, Any], parent_id: int | None, path: tuple[int, ...] = ()) -> None:
        if len(self.nodes) >= self.config.max_nodes:
            self.truncated = True
            return
        node_id = len(self.nodes)
        name = _stage_name(stage)
        matched = self.find_execution(stage, path)
        execution = _execution(matched) if matched is not None else None

        key_pattern = stage.get("keyPattern")
        predicate = stage.get("filter")
        self.nodes.append(
            PlanNode(
                id=node_id,
                parent_id=parent_id,
                engine=Engine.MONGO,
                physical_op=name,
                stage=name,
                index_name=str(stage["indexName"]) if stage.get("indexName") else None,
                actual_rows=execution.n_returned if execution and execution.n_returned is not None else None,
                predicate=json.dumps(predicate, sort_keys=True) if predicate else None,
                key_pattern=json.dumps(key_pattern) if key_pattern is not None else None,
                direction=str(stage["direction"]) if stage.get("direction") else None,
                execution=execution,
            )
        )
        for position, child in enumerate(_children(stage)):
            self.walk(child, node_id, path + (position,))


def _plan_root(plan: Any) -> dict[str, Any]:
    """Classic plans are the stage itself; SBE nests it under queryPlan."""
    if not isinstance(plan, dict):
        return {"stage": UNKNOWN_STAGE}
    query_plan = plan.get("queryPlan")
    if isinstance(query_plan, dict):
        return query_plan
    return plan


def build_stage_tree(
    plan: Any,
    exec_roots: list[dict[str, Any]],
    config: ParserConfig,
) -> tuple[list[PlanNode], bool]:
    walker = _StageWalker(config=config, exec_roots=exec_roots)
    walker.walk(_plan_root(plan), None)
    return link_children(walker.nodes), walker.truncated


def _execution_roots(execution_stats: dict[str, Any]) -> list[dict[str, Any]]:
    roots: list[dict[str, Any]] = []
    stages = execution_stats.get("executionStages")
    if isinstance(stages, dict):
        roots.append(stages)
    for candidate in execution_stats.get("allPlansExecution") or []:
        if isinstance(candidate, dict) and isinstance(candidate.get("executionStages"), dict):
            roots.append(candidate["executionStages"])
    return roots


def _summary(execution_stats: dict[str, Any]) -> MongoExecutionSummary:
    return MongoExecutionSummary(
        execution_success=bool(execution_stats.get("executionSuccess", False)),
        n_returned=_as_int(execution_stats.get("nReturned")) or 0,
        execution_time_ms=_as_float(execution_stats.get("executionTimeMillis")) or 0.0,
        total_keys_examined=_as_int(execution_stats.get("totalKeysExamined")) or 0,
        total_docs_examined=_as_int(execution_stats.get("totalDocsExamined")) or 0,
    )


def _server_info(info: dict[str, Any]) -> MongoServerInfo:
    return MongoServerInfo(
        host=str(info.get("host", "")),
        port=_as_int(info.get("port")),
        version=str(info.get("version", "")),
        git_version=str(info.get("gitVersion", "")),
    )


# =============================================================================
# Public API
# =============================================================================


def parse_mongo_plan(
    payload: str | None,
    config: ParserConfig | None = None,
) -> MongoPlanResult:
    """
    Parse MongoDB explain output (JSON or Markdown sections).

    Never raises. Missing sections produce typed defaults: a plan without a
    winningPlan still yields one node with stage "UNKNOWN".

    Example:
        >>> result = parse_mongo_plan(explain_json)
        >>> [n.stage for n in result.in_id_order()]
        ['FETCH', 'IXSCAN']
    """
    config = config or DEFAULT_CONFIG
    if not payload or not payload.strip():
        return MongoPlanResult(status=ParseStatus.UNRECOGNIZED)

    try:
        ensure_within_limits(payload, config)
        document = load_explain_document(unwrap_payload(payload, config))

        planner = document.get("queryPlanner")
        planner = planner if isinstance(planner, dict) else {}
        execution_stats = document.get("executionStats")
        execution_stats = execution_stats if isinstance(execution_stats, dict) else {}
        server = document.get("serverInfo")
        server = server if isinstance(server, dict) else {}

        exec_roots = _execution_roots(execution_stats)
        nodes, truncated = build_stage_tree(planner.get("winningPlan"), exec_roots, config)

        rejected = []
        for plan in planner.get("rejectedPlans") or []:
            rejected_nodes, _ = build_stage_tree(plan, exec_roots, config)
            rejected.append(tuple(rejected_nodes))

        parsed_query = planner.get("parsedQuery")
        errors = (f"Node limit reached ({config.max_nodes}), plan truncated",) if truncated else ()
        logger.debug("Parsed %d MongoDB stage(s), %d rejected plan(s)", len(nodes), len(rejected))
        return MongoPlanResult(
            status=ParseStatus.PARSED,
            nodes=tuple(nodes),
            strategy="stage_tree",
            namespace=str(planner.get("namespace", "")),
            parsed_query=json.dumps(parsed_query, sort_keys=True) if parsed_query is not None else "",
            rejected_plans=tuple(rejected),
            execution_summary=_summary(execution_stats),
            server_info=_server_info(server),
            errors=errors,
        )
    except PlanSenseError as e:
        logger.info("MongoDB explain not recognized: %s", e.message)
        return MongoPlanResult(status=ParseStatus.UNRECOGNIZED, errors=(e.message,))
    except Exception as e:  # noqa: BLE001 - parser entry points never raise
        logger.exception("Unexpected error parsing MongoDB explain")
        return MongoPlanResult(status=ParseStatus.EMPTY, errors=(str(e),))
