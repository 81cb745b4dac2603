"""
Tests for the SQL Server deadlock report parser.

Tests cover:
1. Participants, victim and procedures from a full extended-event report
2. Lock resources and owner → waiter edges
3. Dropped references and victim mismatches
4. Report variants: compressed, legacy deadlock-list, namespaced
5. Statuses: FAILED keeps the raw text, EMPTY, UNRECOGNIZED
"""

from __future__ import annotations

import base64
import gzip
from pathlib import Path

import pytest

from plansense.parser.deadlock import parse_deadlock_graph
from plansense.parser.models import DeadlockEdge, LockHolder, ParseStatus

FIXTURES_DIR = Path(__file__).parent / "fixtures"


# =============================================================================
# Fixtures
# =============================================================================

DEADLOCK_REPORT = (FIXTURES_DIR / "deadlock.xml").read_text(encoding="utf-8")

LEGACY_REPORT = """\
<deadlock-list>
  <deadlock victim="p2">
    <process-list>
      <process id="p1" spid="51" />
      <process id="p2" spid="52" />
    </process-list>
    <resource-list>
      <pagelock objectname="Sales.dbo.Invoices" mode="IX">
        <owner-list><owner id="p1" mode="IX" /></owner-list>
        <waiter-list><waiter id="p2" mode="S" /></waiter-list>
      </pagelock>
    </resource-list>
  </deadlock>
</deadlock-list>
"""


def report(resources: str, victim: str = "p2") -> str:
    return (
        f'<deadlock><victim-list><victimProcess id="{victim}" /></victim-list>'
        '<process-list><process id="p1" spid="51" /><process id="p2" spid="52" /></process-list>'
        f"<resource-list>{resources}</resource-list></deadlock>"
    )


def keylock(owners: str, waiters: str) -> str:
    return (
        '<keylock objectname="Sales.dbo.Orders" indexname="PK_Orders" mode="X">'
        f"<owner-list>{owners}</owner-list><waiter-list>{waiters}</waiter-list></keylock>"
    )


def compressed(text: str) -> str:
    return "COMPRESSED_XML:" + base64.b64encode(gzip.compress(text.encode("utf-8"))).decode("ascii")


# =============================================================================
# Test: Participants
# =============================================================================


class TestParticipants:
    """process-list entries become participants."""

    def test_fixture_participants(self):
        graph = parse_deadlock_graph(DEADLOCK_REPORT)
        assert graph.status == ParseStatus.PARSED
        assert [p.process_id for p in graph.participants] == ["process1", "process2"]
        assert [p.session_id for p in graph.participants] == [57, 58]

    def test_participant_fields(self):
        first = parse_deadlock_graph(DEADLOCK_REPORT).participant("process1")
        assert first.wait_time_ms == 4000
        assert first.lock_mode == "U"
        assert first.isolation_level == "read committed (2)"
        assert first.host_name == "APP01"
        assert first.login_name == "app"
        assert first.client_app == "OrdersService"
        assert first.database == "Sales"
        assert first.transaction_name == "user_transaction"
        assert first.wait_resource == "KEY: 5:72057594043564032 (8194443284a0)"
        assert first.input_query == "UPDATE dbo.Orders SET Status = 'shipped' WHERE OrderID = @id"

    def test_procedures_skip_anonymous_frames(self):
        graph = parse_deadlock_graph(DEADLOCK_REPORT)
        assert graph.participant("process1").procedures == ("Sales.dbo.usp_UpdateOrder",)
        assert graph.participant("process2").procedures == ()

    def test_victim(self):
        graph = parse_deadlock_graph(DEADLOCK_REPORT)
        assert graph.victim_id == "process2"
        assert graph.victim.session_id == 58
        assert [p.is_victim for p in graph.participants] == [False, True]

    def test_unknown_participant(self):
        assert parse_deadlock_graph(DEADLOCK_REPORT).participant("process9") is None


# =============================================================================
# Test: Resources and Edges
# =============================================================================


class TestResourcesAndEdges:
    """resource-list entries and the wait-for edges between participants."""

    def test_fixture_resource(self):
        graph = parse_deadlock_graph(DEADLOCK_REPORT)
        assert len(graph.resources) == 1
        resource = graph.resources[0]
        assert resource.resource_type == "keylock"
        assert resource.object_name == "Sales.dbo.Orders"
        assert resource.index_name == "PK_Orders"
        assert resource.mode == "X"
        assert resource.owners == (LockHolder(participant_id="process1", mode="X"),)
        assert resource.waiters == (LockHolder(participant_id="process2", mode="U", is_victim=True),)

    def test_fixture_edges(self):
        graph = parse_deadlock_graph(DEADLOCK_REPORT)
        assert graph.edges == (
            DeadlockEdge(
                owner_id="process1",
                waiter_id="process2",
                resource_index=0,
                owner_mode="X",
                waiter_mode="U",
            ),
        )
        assert graph.warnings == ()

    def test_every_owner_waiter_pair(self):
        resources = keylock(
            '<owner id="p1" mode="S" /><owner id="p2" mode="S" />',
            '<waiter id="p2" mode="X" /><waiter id="p1" mode="X" />',
        )
        graph = parse_deadlock_graph(report(resources))
        assert [(e.owner_id, e.waiter_id) for e in graph.edges] == [("p1", "p2"), ("p2", "p1")]

    def test_edges_reference_participants(self):
        graph = parse_deadlock_graph(DEADLOCK_REPORT)
        ids = {p.process_id for p in graph.participants}
        assert all(e.owner_id in ids and e.waiter_id in ids for e in graph.edges)

    def test_resource_index_follows_document_order(self):
        resources = keylock('<owner id="p1" mode="X" />', '<waiter id="p2" mode="U" />') + keylock(
            '<owner id="p2" mode="X" />', '<waiter id="p1" mode="U" />'
        )
        graph = parse_deadlock_graph(report(resources))
        assert [(e.owner_id, e.resource_index) for e in graph.edges] == [("p1", 0), ("p2", 1)]


# =============================================================================
# Test: Dropped References
# =============================================================================


class TestDroppedReferences:
    """Ids that match no process are reported, not linked."""

    def test_dropped_owner(self):
        resources = keylock('<owner id="p9" mode="X" />', '<waiter id="p2" mode="U" />')
        graph = parse_deadlock_graph(report(resources))
        assert graph.edges == ()
        assert graph.resources[0].owners == ()
        assert graph.warnings == ("Dropped owner 'p9' on resource 0: no matching process",)

    def test_dropped_waiter(self):
        resources = keylock('<owner id="p1" mode="X" />', '<waiter id="p7" mode="U" />')
        graph = parse_deadlock_graph(report(resources))
        assert graph.warnings == ("Dropped waiter 'p7' on resource 0: no matching process",)

    def test_unmatched_victim(self):
        graph = parse_deadlock_graph(report("", victim="p9"))
        assert graph.status == ParseStatus.PARSED
        assert graph.victim_id is None
        assert graph.victim is None
        assert graph.warnings == ("Victim 'p9' does not match any process",)


# =============================================================================
# Test: Report Variants
# =============================================================================


class TestReportVariants:
    """Envelopes and legacy layouts give the same graph."""

    def test_compressed_equals_raw(self):
        assert parse_deadlock_graph(compressed(DEADLOCK_REPORT)) == parse_deadlock_graph(DEADLOCK_REPORT)

    def test_legacy_deadlock_list(self):
        graph = parse_deadlock_graph(LEGACY_REPORT)
        assert graph.status == ParseStatus.PARSED
        assert graph.victim_id == "p2"
        assert graph.resources[0].resource_type == "pagelock"
        assert [(e.owner_id, e.waiter_id) for e in graph.edges] == [("p1", "p2")]

    def test_namespaced_report(self):
        text = report(keylock('<owner id="p1" mode="X" />', '<waiter id="p2" mode="U" />'))
        namespaced = text.replace("<deadlock>", '<deadlock xmlns="http://example.com/deadlock">', 1)
        graph = parse_deadlock_graph(namespaced)
        assert graph.victim_id == "p2"
        assert len(graph.edges) == 1


# =============================================================================
# Test: Statuses
# =============================================================================


class TestStatuses:
    """Never raises; every outcome is a status."""

    def test_malformed_keeps_raw_text(self):
        text = '<deadlock><process-list><process id="p1"></deadlock>'
        graph = parse_deadlock_graph(text)
        assert graph.status == ParseStatus.FAILED
        assert graph.errors[0].startswith("Failed to parse deadlock XML:")
        assert graph.raw_text == text
        assert graph.participants == ()

    def test_empty_deadlock(self):
        graph = parse_deadlock_graph("<deadlock></deadlock>")
        assert graph.status == ParseStatus.EMPTY
        assert graph.participants == ()

    def test_markers_without_deadlock_element(self):
        graph = parse_deadlock_graph('<victim-list><victimProcess id="p1" /></victim-list>')
        assert graph.status == ParseStatus.UNRECOGNIZED
        assert graph.errors == ("No <deadlock> element found",)

    @pytest.mark.parametrize(
        "payload",
        [None, "", "hello world", '<ShowPlanXML><RelOp PhysicalOp="Sort" /></ShowPlanXML>'],
    )
    def test_unrecognized(self, payload):
        assert parse_deadlock_graph(payload).status == ParseStatus.UNRECOGNIZED

    def test_deterministic(self):
        assert parse_deadlock_graph(DEADLOCK_REPORT) == parse_deadlock_graph(DEADLOCK_REPORT)
