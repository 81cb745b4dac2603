"""
Parser for SQL Server deadlock reports (xml_deadlock_report).

Unlike ShowPlan, deadlock reports are reliable enough for a real XML parse.
The report may arrive wrapped in an extended-event `<event>` envelope, as a
legacy `<deadlock-list>`, or prefixed with `COMPRESSED_XML:` (base64 of
gzip); all are handled.

The graph:
- participants: `process-list/process`, victim flagged by id match with
  `victim-list/victimProcess` (or the legacy `deadlock/@victim`)
- resources: every child of `resource-list` (keylock, pagelock, objectlock,
  ridlock, ...) with its owners and waiters
- edges: owner → waiter per resource; ids that match no process are
  dropped with a warning
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET

from plansense.exceptions import PlanSenseError
from plansense.parser.attributes import to_int
from plansense.parser.config import DEFAULT_CONFIG, ParserConfig
from plansense.parser.detect import is_deadlock
from plansense.parser.envelope import ensure_within_limits, unwrap_payload
from plansense.parser.models import (
    DeadlockEdge,
    DeadlockGraph,
    DeadlockParticipant,
    LockHolder,
    LockResource,
    ParseStatus,
)

logger = logging.getLogger(__name__)

# Frame procnames that do not name a real module
_ANONYMOUS_FRAMES = {"adhoc", "unknown", ""}


def _local(tag: str) -> str:
    """Tag name without a `{namespace}` prefix."""
    return tag.rsplit("}", 1)[-1]


def _child(element: ET.Element, name: str) -> ET.Element | None:
    for child in element:
        if _local(child.tag) == name:
            return child
    return None


def _children(element: ET.Element | None, name: str) -> list[ET.Element]:
    if element is None:
        return []
    return [child for child in element if _local(child.tag) == name]


def find_deadlock_element(root: ET.Element) -> ET.Element | None:
    for element in root.iter():
        if _local(element.tag) == "deadlock":
            return element
    return None


def _victim_id(deadlock: ET.Element) -> str | None:
    for victim in _children(_child(deadlock, "victim-list"), "victimProcess"):
        if victim.get("id"):
            return victim.get("id")
    return deadlock.get("victim") or None


def _procedures(process: ET.Element) -> tuple[str, ...]:
    names: list[str] = []
    for frame in _children(_child(process, "executionStack"), "frame"):
        name = (frame.get("procname") or "").strip()
        if name.lower() not in _ANONYMOUS_FRAMES and name not in names:
            names.append(name)
    return tuple(names)


def _participant(process: ET.Element, victim_id: str | None) -> DeadlockParticipant:
    process_id = process.get("id", "")
    inputbuf = _child(process, "inputbuf")
    return DeadlockParticipant(
        process_id=process_id,
        session_id=to_int(process.get("spid")),
        status=process.get("status", ""),
        wait_resource=process.get("waitresource", ""),
        wait_time_ms=to_int(process.get("waittime")),
        lock_mode=process.get("lockMode", ""),
        transaction_name=process.get("transactionname", ""),
        isolation_level=process.get("isolationlevel", ""),
        host_name=process.get("hostname", ""),
        login_name=process.get("loginname", ""),
        client_app=process.get("clientapp", ""),
        database=process.get("currentdbname", ""),
        input_query=(inputbuf.text or "").strip() if inputbuf is not None else "",
        procedures=_procedures(process),
        is_victim=victim_id is not None and process_id == victim_id,
    )


def _holders(
    resource: ET.Element,
    list_name: str,
    item_name: str,
    participants: dict[str, DeadlockParticipant],
    resource_index: int,
    warnings: list[str],
) -> list[LockHolder]:
    holders: list[LockHolder] = []
    for item in _children(_child(resource, list_name), item_name):
        holder_id = item.get("id", "")
        participant = participants.get(holder_id)
        if participant is None:
            message = (
                f"Dropped {item_name} '{holder_id}' on resource {resource_index}: "
                "no matching process"
            )
            logger.warning(message)
            warnings.append(message)
            continue
        holders.append(
            LockHolder(
                participant_id=holder_id,
                mode=item.get("mode", ""),
                is_victim=participant.is_victim,
            )
        )
    return holders


def build_graph(deadlock: ET.Element, raw_text: str | None = None) -> DeadlockGraph:
    """Build the wait-for graph from a `<deadlock>` element."""
    victim_id = _victim_id(deadlock)
    participants = [
        _participant(process, victim_id)
        for process in _children(_child(deadlock, "process-list"), "process")
    ]
    by_id = {p.process_id: p for p in participants}

    warnings: list[str] = []
    if victim_id is not None and victim_id not in by_id:
        warnings.append(f"Victim '{victim_id}' does not match any process")
        victim_id = None

    resources: list[LockResource] = []
    edges: list[DeadlockEdge] = []
    resource_list = _child(deadlock, "resource-list")
    for index, resource in enumerate(list(resource_list) if resource_list is not None else []):
        owners = _holders(resource, "owner-list", "owner", by_id, index, warnings)
        waiters = _holders(resource, "waiter-list", "waiter", by_id, index, warnings)
        resources.append(
            LockResource(
                resource_type=_local(resource.tag),
                object_name=resource.get("objectname", ""),
                index_name=resource.get("indexname", ""),
                mode=resource.get("mode", ""),
                owners=tuple(owners),
                waiters=tuple(waiters),
            )
        )
        for owner in owners:
            for waiter in waiters:
                if owner.participant_id == waiter.participant_id:
                    continue
                edges.append(
                    DeadlockEdge(
                        owner_id=owner.participant_id,
                        waiter_id=waiter.participant_id,
                        resource_index=index,
                        owner_mode=owner.mode,
                        waiter_mode=waiter.mode,
                    )
                )

    return DeadlockGraph(
        status=ParseStatus.PARSED if participants else ParseStatus.EMPTY,
        victim_id=victim_id,
        participants=tuple(participants),
        resources=tuple(resources),
        edges=tuple(edges),
        warnings=tuple(warnings),
        raw_text=raw_text,
    )


def parse_deadlock_graph(
    payload: str | None,
    config: ParserConfig | None = None,
) -> DeadlockGraph:
    """
    Parse a deadlock report into participants, resources and edges.

    Never raises. Malformed XML yields status FAILED with the decoded text
    kept in `raw_text` for fallback display.

    Example:
        >>> graph = parse_deadlock_graph(report_xml)
        >>> graph.victim.session_id
        57
    """
    config = config or DEFAULT_CONFIG
    if not payload or not payload.strip():
        return DeadlockGraph(status=ParseStatus.UNRECOGNIZED)

    text = payload
    try:
        ensure_within_limits(payload, config)
        text = unwrap_payload(payload, config)
        if not is_deadlock(text):
            return DeadlockGraph(status=ParseStatus.UNRECOGNIZED, raw_text=text)

        try:
            root = ET.fromstring(text.strip())
        except ET.ParseError as e:
            logger.warning("Deadlock XML is malformed: %s", e)
            return DeadlockGraph(
                status=ParseStatus.FAILED,
                errors=(f"Failed to parse deadlock XML: {e}",),
                raw_text=text,
            )

        deadlock = find_deadlock_element(root)
        if deadlock is None:
            return DeadlockGraph(
                status=ParseStatus.UNRECOGNIZED,
                errors=("No <deadlock> element found",),
                raw_text=text,
            )
        graph = build_graph(deadlock, raw_text=text)
        logger.debug(
            "Deadlock graph: %d participant(s), %d resource(s), %d edge(s)",
            len(graph.participants),
            len(graph.resources),
            len(graph.edges),
        )
        return graph
    except PlanSenseError as e:
        logger.warning("Deadlock report not parsed: %s", e.message)
        return DeadlockGraph(status=ParseStatus.UNRECOGNIZED, errors=(e.message,))
    except Exception as e:  # noqa: BLE001 - parser entry points never raise
        logger.exception("Unexpected error parsing deadlock report")
        return DeadlockGraph(status=ParseStatus.FAILED, errors=(str(e),), raw_text=text)
