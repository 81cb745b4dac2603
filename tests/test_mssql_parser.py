"""
Tests for the SQL Server ShowPlan parser.

Tests cover:
1. Extraction tiers, each in isolation and through the chain
2. Tree shape: parent/child ids, cost ordering, node limit
3. Statement summary, warning set and missing indexes
4. Used-index strategies
5. Generic plan heuristic
6. Entry point statuses (never raises)
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from plansense.parser.config import DEFAULT_CONFIG, ParserConfig
from plansense.parser.models import ParseStatus, SqlServerCost, StatementSummary, WarningKind
from plansense.parser.mssql import (
    CLUSTERED_SCAN_SUBTREE,
    PlanText,
    extract_clustered_scan,
    extract_full_attributes,
    extract_operator_sweep,
    extract_reduced_attributes,
    parse_mssql_plan,
)
from plansense.parser.mssql_guards import check_generic_plan, statement_keyword
from plansense.parser.mssql_summary import (
    extract_missing_indexes,
    extract_summary,
    extract_used_indexes,
    used_from_clustered_scan,
    used_from_index_scans,
    used_from_seek_predicates,
)

FIXTURES_DIR = Path(__file__).parent / "fixtures"


# =============================================================================
# Fixtures: ShowPlan fragments
# =============================================================================

ORDERS_PLAN = (FIXTURES_DIR / "orders_plan.xml").read_text(encoding="utf-8")

REDUCED_PLAN = """
<ShowPlanXML>
  <StmtSimple StatementType="SELECT" StatementEstRows="200">
    <RelOp PhysicalOp="Sort" LogicalOp="Sort">
      <Sort Distinct="false">
        <RelOp PhysicalOp="Table Scan" LogicalOp="Table Scan" EstimateRows="50">
          <TableScan><Object Table="[Orders]" /></TableScan>
        </RelOp>
      </Sort>
    </RelOp>
  </StmtSimple>
</ShowPlanXML>
"""

SWEEP_PLAN = """
<ShowPlanXML>
  <Op PhysicalOp="Hash Match" LogicalOp="Inner Join" />
  <Op PhysicalOp="Hash Match" LogicalOp="Inner Join" />
  <Op PhysicalOp="Index Scan" LogicalOp="Index Scan" />
</ShowPlanXML>
"""

CLUSTERED_SCAN_FRAGMENT = (
    '<ShowPlanXML><Scan physicalop="Clustered Index Scan" Table="[Orders]" '
    'Index="[PK_Orders]" ActualRows="42" AvgRowSize="27" /></ShowPlanXML>'
)

WARNING_PLAN = """
<ShowPlanXML>
  <StmtSimple StatementType="SELECT" StatementEstRows="10">
    <QueryPlan>
      <Warnings NoJoinPredicate="true">
        <ColumnsWithNoStatistics>
          <ColumnReference Table="[Orders]" Column="[ShipDate]" />
        </ColumnsWithNoStatistics>
        <SpillToTempDb SpillLevel="2" />
      </Warnings>
      <MemoryGrantWarning GrantWarningKind="Excessive Grant" />
      <RelOp PhysicalOp="Sort" LogicalOp="Sort" EstimateRows="10" EstimateCPU="0.1" EstimateIO="0.01" EstimatedTotalSubtreeCost="2.5">
        <RunTimeInformation>
          <RunTimeCountersPerThread Thread="0" ActualRows="5000" ActualLogicalReads="30" />
        </RunTimeInformation>
      </RelOp>
    </QueryPlan>
  </StmtSimple>
</ShowPlanXML>
"""

PARALLEL_PLAN = """
<ShowPlanXML>
  <RelOp PhysicalOp="Clustered Index Scan" LogicalOp="Clustered Index Scan" EstimateRows="20" EstimateCPU="0.01" EstimateIO="0.1" EstimatedTotalSubtreeCost="0.11" Parallel="1">
    <RunTimeInformation>
      <RunTimeCountersPerThread Thread="1" ActualRows="10" ActualLogicalReads="10" />
      <RunTimeCountersPerThread Thread="2" ActualRows="15" ActualLogicalReads="7" />
    </RunTimeInformation>
    <IndexScan Ordered="0"><Object Table="[Orders]" Index="[PK_Orders]" IndexKind="Clustered" /></IndexScan>
  </RelOp>
</ShowPlanXML>
"""

PLACEHOLDER_PLAN = """
<ShowPlanXML>
  <StmtSimple StatementType="SELECT">
    <RelOp PhysicalOp="Table Scan" LogicalOp="Table Scan" EstimateRows="1" EstimateCPU="0.0001" EstimateIO="0.003" EstimatedTotalSubtreeCost="0.0032">
      <TableScan><Object Table="[dummy]" /></TableScan>
    </RelOp>
  </StmtSimple>
</ShowPlanXML>
"""


def scan(text: str) -> PlanText:
    return PlanText.scan(text, DEFAULT_CONFIG)


# =============================================================================
# Test: Extraction Tiers
# =============================================================================


class TestExtractionTiers:
    """Each tier works on its own."""

    def test_full_attributes(self):
        nodes = extract_full_attributes(scan(ORDERS_PLAN))
        assert [n.physical_op for n in nodes] == ["Nested Loops", "Index Seek", "Key Lookup"]
        assert nodes[0].logical_op == "Inner Join"
        assert nodes[1].estimated_rows == 12.5
        assert nodes[1].cost == SqlServerCost(cpu=0.000171, io=0.003125, subtree_total=0.0033)

    def test_full_attributes_skips_partial_relops(self):
        assert extract_full_attributes(scan(REDUCED_PLAN)) == []

    def test_reduced_attributes_placeholders(self):
        nodes = extract_reduced_attributes(scan(REDUCED_PLAN))
        sort, table_scan = nodes
        assert sort.cost.subtree_total == DEFAULT_CONFIG.placeholder_cost
        assert sort.estimated_rows == 200
        assert table_scan.estimated_rows == 50
        assert table_scan.parent_id == sort.id
        assert table_scan.object_name == "Orders"

    def test_operator_sweep_distinct_flat(self):
        nodes = extract_operator_sweep(scan(SWEEP_PLAN))
        assert [n.physical_op for n in nodes] == ["Hash Match", "Inner Join", "Index Scan"]
        assert all(n.parent_id is None for n in nodes)
        assert [n.id for n in nodes] == [0, 1, 2]

    def test_clustered_scan_case_insensitive(self):
        nodes = extract_clustered_scan(scan(CLUSTERED_SCAN_FRAGMENT))
        assert len(nodes) == 1
        node = nodes[0]
        assert node.physical_op == "Clustered Index Scan"
        assert node.object_name == "Orders"
        assert node.index_name == "PK_Orders"
        assert node.actual_rows == 42
        assert node.avg_row_size == 27
        assert node.estimated_rows == DEFAULT_CONFIG.default_statement_rows
        assert node.cost.subtree_total == CLUSTERED_SCAN_SUBTREE

    def test_clustered_scan_absent(self):
        assert extract_clustered_scan(scan(SWEEP_PLAN)) == []

    def test_chain_picks_reduced_tier(self):
        result = parse_mssql_plan(REDUCED_PLAN)
        assert result.status == ParseStatus.PARSED
        assert result.strategy == "reduced_attributes"

    def test_chain_picks_operator_sweep(self):
        result = parse_mssql_plan(SWEEP_PLAN)
        assert result.strategy == "operator_sweep"
        assert result.node_count == 3

    def test_chain_falls_back_to_clustered_scan(self):
        result = parse_mssql_plan(CLUSTERED_SCAN_FRAGMENT)
        assert result.status == ParseStatus.PARSED
        assert result.strategy == "clustered_scan"
        assert result.nodes[0].object_name == "Orders"


# =============================================================================
# Test: Tree Shape
# =============================================================================


class TestPlanTree:
    """Parent/child links and ordering."""

    def test_nodes_sorted_by_subtree_cost(self):
        result = parse_mssql_plan(ORDERS_PLAN)
        costs = [n.cost_metric for n in result.nodes]
        assert costs == sorted(costs, reverse=True)
        assert [n.physical_op for n in result.nodes] == ["Nested Loops", "Key Lookup", "Index Seek"]

    def test_parent_child_ids(self):
        result = parse_mssql_plan(ORDERS_PLAN)
        roots = result.roots()
        assert [n.physical_op for n in roots] == ["Nested Loops"]
        assert roots[0].children == (1, 2)
        assert [c.physical_op for c in result.children_of(0)] == ["Index Seek", "Key Lookup"]
        assert all(n.parent_id == 0 for n in result.nodes if n.id != 0)

    def test_every_child_has_one_parent(self):
        result = parse_mssql_plan(ORDERS_PLAN)
        child_ids = [c for n in result.nodes for c in n.children]
        assert len(child_ids) == len(set(child_ids))
        ids = {n.id for n in result.nodes}
        assert all(n.parent_id in ids for n in result.nodes if n.parent_id is not None)

    def test_operator_details(self):
        result = parse_mssql_plan(ORDERS_PLAN)
        seek = result.get(1)
        assert seek.object_name == "Orders"
        assert seek.index_name == "IX_Orders_Status"
        assert seek.avg_row_size == 11
        assert seek.is_parallel is False

    def test_actual_rows_summed_across_threads(self):
        result = parse_mssql_plan(PARALLEL_PLAN)
        assert result.nodes[0].actual_rows == 25
        assert result.nodes[0].is_parallel is True

    def test_node_limit(self):
        result = parse_mssql_plan(ORDERS_PLAN, config=ParserConfig(max_nodes=1))
        assert result.node_count == 1
        assert result.nodes[0].physical_op == "Nested Loops"

    def test_unclosed_tags_still_nest(self):
        truncated = ORDERS_PLAN[: ORDERS_PLAN.index("<IndexScan Lookup")]
        result = parse_mssql_plan(truncated)
        assert result.node_count == 3
        assert result.get(2).parent_id == 0


# =============================================================================
# Test: Statement Summary, Warnings, Missing Indexes
# =============================================================================


class TestStatementDetails:
    """Statement-level extraction."""

    def test_summary(self):
        summary = parse_mssql_plan(ORDERS_PLAN).summary
        assert summary.statement_type == "SELECT"
        assert summary.statement_text.startswith("SELECT o.OrderID")
        assert summary.estimated_rows == 12.5
        assert summary.degree_of_parallelism == 1
        assert summary.query_hash == "0x1A2B3C4D5E6F7081"
        assert summary.plan_hash == "0x8192A3B4C5D6E7F8"
        assert summary.cached is True
        assert summary.cached_plan_size == 24

    def test_reads_summed(self):
        summary = extract_summary(PARALLEL_PLAN, None)
        assert summary.execution.logical_reads == 17
        assert summary.execution.physical_reads is None

    def test_statement_type_from_text(self):
        summary = extract_summary('<StmtSimple StatementText="update dbo.Orders set x = 1" />', None)
        assert summary.statement_type == "UPDATE"

    def test_missing_index(self):
        result = parse_mssql_plan(ORDERS_PLAN)
        assert len(result.missing_indexes) == 1
        index = result.missing_indexes[0]
        assert index.impact == 87.5
        assert index.database == "Sales"
        assert index.schema_name == "dbo"
        assert index.table == "Orders"
        assert index.equality_columns == ("CustomerID",)
        assert index.included_columns == ("OrderDate",)
        assert "CREATE NONCLUSTERED INDEX [IX_Orders_CustomerID]" in index.ddl_script
        assert "INCLUDE (\n    [OrderDate]\n)" in index.ddl_script

    def test_missing_index_without_keys_kept(self):
        text = (
            '<MissingIndexGroup Impact="12"><MissingIndex Schema="[dbo]" Table="[T]">'
            '<ColumnGroup Usage="INCLUDE"><Column Name="[A]" /></ColumnGroup>'
            "</MissingIndex></MissingIndexGroup>"
        )
        indexes = extract_missing_indexes(text)
        assert len(indexes) == 1
        assert not indexes[0].has_key_columns
        assert indexes[0].ddl_script.startswith("-- Unable to generate index script")

    def test_impact_clamped(self):
        text = (
            '<MissingIndexGroup Impact="250"><MissingIndex Table="[T]">'
            '<ColumnGroup Usage="EQUALITY"><Column Name="[A]" /></ColumnGroup>'
            "</MissingIndex></MissingIndexGroup>"
        )
        assert extract_missing_indexes(text)[0].impact == 100.0

    def test_orders_plan_warnings(self):
        kinds = [w.kind for w in parse_mssql_plan(ORDERS_PLAN).warnings]
        assert kinds.count(WarningKind.MISSING_INDEX) == 2
        assert WarningKind.NON_PARALLEL_PLAN in kinds
        assert WarningKind.TEMPDB_SPILL not in kinds

    def test_warning_set(self):
        warnings = parse_mssql_plan(WARNING_PLAN).warnings
        kinds = {w.kind for w in warnings}
        assert kinds == {
            WarningKind.TEMPDB_SPILL,
            WarningKind.PLAN_WARNINGS,
            WarningKind.STATISTICS_MISSING,
            WarningKind.JOIN_ISSUE,
            WarningKind.CARTESIAN_JOIN,
            WarningKind.MEMORY_GRANT,
            WarningKind.ROW_ESTIMATE,
        }
        messages = [w.message for w in warnings]
        assert "Spill level: 2" in messages
        assert "No statistics for column: Orders.ShipDate" in messages
        assert "Memory grant warning: Excessive Grant" in messages

    def test_row_estimate_warning_message(self):
        warnings = parse_mssql_plan(WARNING_PLAN).warnings
        row = [w for w in warnings if w.kind == WarningKind.ROW_ESTIMATE]
        assert len(row) == 1
        assert row[0].message.startswith("Severe row estimation error")
        assert "5,000" in row[0].message

    def test_plan_guide(self):
        text = '<ShowPlanXML><StmtSimple PlanGuideDB="Sales" PlanGuideName="pg_orders" /><RelOp PhysicalOp="Sort" LogicalOp="Sort" /></ShowPlanXML>'
        messages = [w.message for w in parse_mssql_plan(text).warnings]
        assert "Plan guide used: Sales.pg_orders" in messages


# =============================================================================
# Test: Used Indexes
# =============================================================================


class TestUsedIndexes:
    """Ordered strategies; the first that finds anything wins."""

    def test_object_attributes(self):
        used = parse_mssql_plan(ORDERS_PLAN).used_indexes
        assert [(u.name, u.kind) for u in used] == [
            ("IX_Orders_Status", "NonClustered"),
            ("PK_Orders", "Clustered"),
        ]

    def test_index_scans(self):
        text = '<IndexScan Lookup="1"><Object Table="[Orders]" Index="[PK_Orders]" /></IndexScan>'
        used = used_from_index_scans(text)
        assert [(u.name, u.kind) for u in used] == [("PK_Orders", "Lookup")]

    def test_seek_predicates(self):
        text = '<SeekPredicates><SeekKeys><ColumnReference Table="[Orders]" Column="[ID]" /></SeekKeys></SeekPredicates>'
        assert [u.name for u in used_from_seek_predicates(text)] == ["Orders (Implicit)"]

    def test_clustered_scan_assumes_primary_key(self):
        text = '<RelOp PhysicalOp="Clustered Index Scan"><Object Table="[Orders]" /></RelOp>'
        used = used_from_clustered_scan(text)
        assert [(u.name, u.kind) for u in used] == [("PK_Orders", "Clustered")]

    def test_first_match_wins(self):
        text = (
            '<Object Index="[IX_A]" IndexKind="NonClustered" />'
            '<SeekPredicates><ColumnReference Table="[Orders]" /></SeekPredicates>'
        )
        assert [u.name for u in extract_used_indexes(text)] == ["IX_A"]

    def test_deduplicated(self):
        text = '<Object Index="[IX_A]" IndexKind="NonClustered" /><Object Index="[IX_A]" IndexKind="NonClustered" />'
        assert len(extract_used_indexes(text)) == 1


# =============================================================================
# Test: Generic Plan Heuristic
# =============================================================================


class TestGenericPlan:
    """Flags unrelated or template plans without touching the parse."""

    def test_real_plan_not_suspected(self):
        assert not parse_mssql_plan(ORDERS_PLAN).generic_plan.suspected

    def test_placeholder_tables(self):
        result = parse_mssql_plan(PLACEHOLDER_PLAN)
        assert result.status == ParseStatus.PARSED
        assert result.node_count == 1
        assert result.generic_plan.suspected
        assert "dummy" in result.generic_plan.reasons[0]

    def test_statement_type_mismatch(self):
        result = parse_mssql_plan(ORDERS_PLAN, expected_statement="UPDATE dbo.Orders SET Status = 1")
        assert result.generic_plan.suspected
        assert result.generic_plan.reasons == ("Plan statement type SELECT does not match requested UPDATE",)

    def test_statement_type_match(self):
        result = parse_mssql_plan(ORDERS_PLAN, expected_statement="  select * from dbo.Orders")
        assert not result.generic_plan.suspected

    def test_no_nodes_no_table_reason(self):
        check = check_generic_plan(parse_mssql_plan(ORDERS_PLAN).summary, [])
        assert not check.suspected

    def test_blank_statement_type(self):
        check = check_generic_plan(StatementSummary(statement_type="   "), [], "UPDATE dbo.Orders SET Status = 1")
        assert check.suspected is False
        assert check.reasons == ()

    @pytest.mark.parametrize(
        "sql, keyword",
        [
            ("SELECT 1", "SELECT"),
            ("(select 1)", "SELECT"),
            ("WITH cte AS (SELECT 1) SELECT * FROM cte", None),
            ("", None),
        ],
    )
    def test_statement_keyword(self, sql, keyword):
        assert statement_keyword(sql) == keyword


# =============================================================================
# Test: Entry Point
# =============================================================================


class TestParseEntryPoint:
    """Statuses, envelopes and the never-raises contract."""

    def test_parsed(self):
        result = parse_mssql_plan(ORDERS_PLAN)
        assert result.status == ParseStatus.PARSED
        assert result.strategy == "full_attributes"
        assert result.statement_est_rows == 12.5
        assert result.errors == ()

    def test_wrapped_equals_raw(self):
        wrapped = json.dumps({"plan": ORDERS_PLAN})
        assert parse_mssql_plan(wrapped) == parse_mssql_plan(ORDERS_PLAN)

    def test_parse_is_deterministic(self):
        assert parse_mssql_plan(ORDERS_PLAN) == parse_mssql_plan(ORDERS_PLAN)

    def test_empty_when_markers_but_no_operators(self):
        text = '<ShowPlanXML><StmtSimple StatementText="SELECT 1" StatementType="SELECT" /></ShowPlanXML>'
        result = parse_mssql_plan(text)
        assert result.status == ParseStatus.EMPTY
        assert result.nodes == ()
        assert result.summary.statement_type == "SELECT"

    @pytest.mark.parametrize("payload", [None, "", "   ", "hello world", '{"plan": 42}', "\x00\x01\x02"])
    def test_unrecognized(self, payload):
        result = parse_mssql_plan(payload)
        assert result.status == ParseStatus.UNRECOGNIZED
        assert result.nodes == ()

    def test_too_large(self):
        result = parse_mssql_plan(ORDERS_PLAN, config=ParserConfig(max_payload_mb=0.001))
        assert result.status == ParseStatus.UNRECOGNIZED
        assert "too large" in result.errors[0]
