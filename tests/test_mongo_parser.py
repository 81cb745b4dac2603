"""
Tests for the MongoDB explain parser.

Tests cover:
1. Stage tree from the winning plan (inputStage, inputStages, SBE queryPlan)
2. Runtime counter matching: tree position first, then first same stage
3. Rejected plans, execution summary, server info
4. Accepted document shapes (JSON, list, aggregation, Markdown sections)
5. Unrecognized input
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from plansense.exceptions import ParseError
from plansense.parser.config import ParserConfig
from plansense.parser.models import ParseStatus
from plansense.parser.mongo import UNKNOWN_STAGE, load_explain_document, parse_mongo_plan

FIXTURES_DIR = Path(__file__).parent / "fixtures"


# =============================================================================
# Fixtures
# =============================================================================

EXPLAIN_JSON = (FIXTURES_DIR / "explain.json").read_text(encoding="utf-8")
EXPLAIN = json.loads(EXPLAIN_JSON)


def explain(winning_plan: dict, execution_stages: dict | None = None) -> str:
    document: dict = {"queryPlanner": {"namespace": "shop.orders", "winningPlan": winning_plan}}
    if execution_stages is not None:
        document["executionStats"] = {"executionStages": execution_stages}
    return json.dumps(document)


OR_PLAN = {
    "stage": "FETCH",
    "inputStage": {
        "stage": "OR",
        "inputStages": [
            {"stage": "IXSCAN", "indexName": "status_1"},
            {"stage": "IXSCAN", "indexName": "customer_1"},
        ],
    },
}

MARKDOWN = """\
## Query Planner
```json
{"namespace": "shop.orders", "winningPlan": {"stage": "COLLSCAN", "direction": "forward"}}
```

## Execution Stats
```json
{"nReturned": 4, "executionTimeMillis": 12, "totalDocsExamined": 1000,
 "executionStages": {"stage": "COLLSCAN", "nReturned": 4, "docsExamined": 1000}}
```

## Server Info
```json
{"host": "db2", "port": 27018, "version": "6.0.4"}
```
"""


# =============================================================================
# Test: Stage Tree
# =============================================================================


class TestStageTree:
    """Winning plan stages become linked nodes."""

    def test_fixture_tree(self):
        result = parse_mongo_plan(EXPLAIN_JSON)
        assert result.status == ParseStatus.PARSED
        assert result.strategy == "stage_tree"
        assert [(n.stage, n.parent_id) for n in result.nodes] == [("FETCH", None), ("IXSCAN", 0)]
        assert result.get(0).children == (1,)

    def test_index_scan_fields(self):
        ixscan = parse_mongo_plan(EXPLAIN_JSON).get(1)
        assert ixscan.index_name == "status_1"
        assert ixscan.key_pattern == '{"status": 1}'
        assert ixscan.direction == "forward"
        assert ixscan.physical_op == "IXSCAN"
        assert ixscan.name == "IXSCAN"

    def test_input_stages(self):
        result = parse_mongo_plan(explain(OR_PLAN))
        assert [n.stage for n in result.nodes] == ["FETCH", "OR", "IXSCAN", "IXSCAN"]
        assert result.get(1).children == (2, 3)
        assert [n.index_name for n in result.children_of(1)] == ["status_1", "customer_1"]

    def test_join_stages(self):
        plan = {
            "stage": "EQ_LOOKUP",
            "outerStage": {"stage": "COLLSCAN"},
            "innerStage": {"stage": "IXSCAN", "indexName": "_id_"},
        }
        result = parse_mongo_plan(explain(plan))
        assert [(n.stage, n.parent_id) for n in result.nodes] == [
            ("EQ_LOOKUP", None),
            ("COLLSCAN", 0),
            ("IXSCAN", 0),
        ]

    def test_slot_based_plan(self):
        plan = {
            "queryPlan": {"stage": "FETCH", "inputStage": {"stage": "IXSCAN", "indexName": "status_1"}},
            "slotBasedPlan": {"slots": "...", "stages": "..."},
        }
        result = parse_mongo_plan(explain(plan))
        assert [n.stage for n in result.nodes] == ["FETCH", "IXSCAN"]

    def test_missing_winning_plan(self):
        result = parse_mongo_plan(json.dumps({"queryPlanner": {"namespace": "shop.orders"}}))
        assert result.status == ParseStatus.PARSED
        assert [n.stage for n in result.nodes] == [UNKNOWN_STAGE]

    def test_filter_is_predicate(self):
        plan = {"stage": "COLLSCAN", "filter": {"total": {"$gt": 100}, "status": {"$eq": "open"}}}
        node = parse_mongo_plan(explain(plan)).nodes[0]
        assert node.predicate == '{"status": {"$eq": "open"}, "total": {"$gt": 100}}'

    def test_node_limit(self):
        result = parse_mongo_plan(EXPLAIN_JSON, config=ParserConfig(max_nodes=1))
        assert result.node_count == 1
        assert result.errors == ("Node limit reached (1), plan truncated",)


# =============================================================================
# Test: Execution Matching
# =============================================================================


class TestExecutionMatching:
    """Runtime counters attach to the right stage."""

    def test_fixture_counters(self):
        result = parse_mongo_plan(EXPLAIN_JSON)
        fetch, ixscan = result.nodes
        assert fetch.execution.n_returned == 50
        assert fetch.execution.docs_examined == 50
        assert fetch.execution.is_eof is True
        assert fetch.actual_rows == 50
        assert fetch.cost_metric == 2.0
        assert ixscan.execution.keys_examined == 50
        assert ixscan.execution.execution_time_ms == 1.0

    def test_falls_back_to_first_same_stage(self):
        plan = {"stage": "FETCH", "inputStage": {"stage": "IXSCAN", "indexName": "status_1"}}
        stages = {
            "stage": "FETCH",
            "nReturned": 7,
            "inputStage": {
                "stage": "SHARDING_FILTER",
                "nReturned": 7,
                "inputStage": {"stage": "IXSCAN", "indexName": "status_1", "nReturned": 8},
            },
        }
        result = parse_mongo_plan(explain(plan, stages))
        assert result.get(1).actual_rows == 8

    def test_tree_position_wins_over_first_match(self):
        plan = {
            "stage": "OR",
            "inputStages": [
                {"stage": "IXSCAN", "indexName": "status_1"},
                {"stage": "IXSCAN", "indexName": "status_1"},
            ],
        }
        stages = {
            "stage": "OR",
            "nReturned": 12,
            "inputStages": [
                {"stage": "IXSCAN", "indexName": "status_1", "nReturned": 3},
                {"stage": "IXSCAN", "indexName": "status_1", "nReturned": 9},
            ],
        }
        result = parse_mongo_plan(explain(plan, stages))
        assert [n.actual_rows for n in result.nodes] == [12, 3, 9]

    def test_index_name_must_match(self):
        plan = {"stage": "IXSCAN", "indexName": "status_1"}
        stages = {"stage": "IXSCAN", "indexName": "customer_1", "nReturned": 5}
        node = parse_mongo_plan(explain(plan, stages)).nodes[0]
        assert node.execution is None
        assert node.actual_rows is None

    def test_extended_json_numbers(self):
        stages = {
            "stage": "COLLSCAN",
            "nReturned": {"$numberLong": "12345678901"},
            "executionTimeMillisEstimate": {"$numberLong": "4"},
        }
        node = parse_mongo_plan(explain({"stage": "COLLSCAN"}, stages)).nodes[0]
        assert node.execution.n_returned == 12345678901
        assert node.execution.execution_time_ms == 4.0


# =============================================================================
# Test: Rejected Plans and Summary Sections
# =============================================================================


class TestDocumentSections:
    """Everything around the winning plan."""

    def test_rejected_plans(self):
        result = parse_mongo_plan(EXPLAIN_JSON)
        assert len(result.rejected_plans) == 1
        rejected = result.rejected_plans[0]
        assert [n.stage for n in rejected] == ["COLLSCAN"]
        assert rejected[0].id == 0
        assert rejected[0].predicate == '{"status": {"$eq": "open"}}'

    def test_namespace_and_query(self):
        result = parse_mongo_plan(EXPLAIN_JSON)
        assert result.namespace == "shop.orders"
        assert result.parsed_query == '{"status": {"$eq": "open"}}'

    def test_execution_summary(self):
        summary = parse_mongo_plan(EXPLAIN_JSON).execution_summary
        assert summary.execution_success is True
        assert summary.n_returned == 50
        assert summary.execution_time_ms == 3.0
        assert summary.total_keys_examined == 50
        assert summary.total_docs_examined == 50

    def test_server_info(self):
        info = parse_mongo_plan(EXPLAIN_JSON).server_info
        assert info.host == "db1"
        assert info.port == 27017
        assert info.version == "7.0.2"

    def test_missing_sections_default(self):
        result = parse_mongo_plan(explain({"stage": "COLLSCAN"}))
        assert result.execution_summary.n_returned == 0
        assert result.server_info.host == ""
        assert result.rejected_plans == ()


# =============================================================================
# Test: Document Shapes
# =============================================================================


class TestDocumentShapes:
    """JSON, wrapped JSON and Markdown all load."""

    def test_single_element_list(self):
        result = parse_mongo_plan(json.dumps([EXPLAIN]))
        assert result.nodes == parse_mongo_plan(EXPLAIN_JSON).nodes

    def test_aggregation_cursor(self):
        document = {
            "stages": [
                {"$cursor": {"queryPlanner": EXPLAIN["queryPlanner"], "executionStats": EXPLAIN["executionStats"]}},
                {"$group": {"_id": "$customer", "n": {"$sum": 1}}},
            ],
            "serverInfo": {"host": "db3"},
        }
        result = parse_mongo_plan(json.dumps(document))
        assert [n.stage for n in result.nodes] == ["FETCH", "IXSCAN"]
        assert result.server_info.host == "db3"

    def test_json_plan_envelope(self):
        result = parse_mongo_plan(json.dumps({"plan": EXPLAIN}))
        assert result.nodes == parse_mongo_plan(EXPLAIN_JSON).nodes

    def test_markdown_sections(self):
        result = parse_mongo_plan(MARKDOWN)
        assert result.status == ParseStatus.PARSED
        assert [n.stage for n in result.nodes] == ["COLLSCAN"]
        assert result.nodes[0].execution.docs_examined == 1000
        assert result.execution_summary.total_docs_examined == 1000
        assert result.server_info.port == 27018

    def test_load_document_rejects_other_json(self):
        with pytest.raises(ParseError):
            load_explain_document('{"foo": 1}')


# =============================================================================
# Test: Entry Point
# =============================================================================


class TestParseEntryPoint:
    """Never raises; unrecognized input is reported as such."""

    @pytest.mark.parametrize("payload", [None, "", '{"foo": 1}', "not an explain", "[1, 2]"])
    def test_unrecognized(self, payload):
        result = parse_mongo_plan(payload)
        assert result.status == ParseStatus.UNRECOGNIZED
        assert result.nodes == ()

    def test_unrecognized_reason(self):
        result = parse_mongo_plan('{"foo": 1}')
        assert result.errors == ("No queryPlanner or executionStats section found",)

    def test_deterministic(self):
        assert parse_mongo_plan(EXPLAIN_JSON) == parse_mongo_plan(EXPLAIN_JSON)
