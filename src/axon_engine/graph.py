"""Bead graph model operations: validation, scheduling order, and statistics.

All functions here are pure over the in-memory ``BeadGraph``/``Bead`` models;
persistence lives in :mod:`axon_engine.state_store` and status mutation in
:mod:`axon_engine.scheduler`.

Validation is advisory. Nothing here refuses to build or mutate an invalid
graph; the scheduler calls :func:`validate_graph` to explain why nothing is
runnable and to stop a batch before touching any bead.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Sequence

from .models import (
    Bead,
    BeadGraph,
    BeadStatus,
    BlockedBead,
    GraphMetadata,
    GraphStats,
    GraphValidationReport,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

CYCLE_ERROR = "circular dependency detected"


def create_empty_graph() -> BeadGraph:
    now = utc_now_iso()
    return BeadGraph(version="1.0", beads=[], metadata=GraphMetadata(created_at=now, updated_at=now))


def find_duplicate_ids(beads: Sequence[Bead]) -> list[str]:
    counts = Counter(bead.id for bead in beads)
    # Report in first-seen order.
    seen: set[str] = set()
    duplicates: list[str] = []
    for bead in beads:
        if counts[bead.id] > 1 and bead.id not in seen:
            duplicates.append(bead.id)
            seen.add(bead.id)
    return duplicates


def find_dangling_dependencies(beads: Sequence[Bead]) -> list[tuple[str, str]]:
    """Return ``(bead_id, missing_dependency_id)`` pairs in stored order."""
    known = {bead.id for bead in beads}
    return [(bead.id, dep) for bead in beads for dep in bead.dependencies if dep not in known]


def has_cycle(beads: Sequence[Bead]) -> bool:
    """Return True when the dependency relation contains a back-edge.

    Depth-first search with an explicit recursion stack: a dependency that is
    still on the stack when reached again closes a cycle. Dependencies that do
    not resolve to a bead are ignored here (they are reported as dangling).
    The walk is iterative so long dependency chains cannot exhaust the
    interpreter recursion limit.
    """
    bead_map: dict[str, Bead] = {}
    for bead in beads:
        bead_map.setdefault(bead.id, bead)

    visited: set[str] = set()
    on_stack: set[str] = set()

    for root in bead_map:
        if root in visited:
            continue
        visited.add(root)
        on_stack.add(root)
        stack: list[tuple[str, Iterable[str]]] = [(root, iter(bead_map[root].dependencies))]
        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                if dep not in bead_map:
                    continue
                if dep in on_stack:
                    return True
                if dep not in visited:
                    visited.add(dep)
                    on_stack.add(dep)
                    stack.append((dep, iter(bead_map[dep].dependencies)))
                    advanced = True
                    break
            if not advanced:
                on_stack.discard(node)
                stack.pop()
    return False


def validate_graph(graph: BeadGraph) -> GraphValidationReport:
    """Check the graph for duplicate IDs, dangling dependencies, and cycles, in that order.

    Args:
        graph: The bead graph to validate.

    Returns:
        A report with ``valid=False`` and one error string per defect when any
        defect is present. A cycle is reported once, without enumerating it.
    """
    errors: list[str] = []
    for bead_id in find_duplicate_ids(graph.beads):
        errors.append(f"duplicate bead id: {bead_id}")
    for bead_id, missing in find_dangling_dependencies(graph.beads):
        errors.append(f"bead {bead_id} depends on missing bead {missing}")
    if has_cycle(graph.beads):
        errors.append(CYCLE_ERROR)
    return GraphValidationReport(valid=not errors, errors=errors)


def get_next_executable(beads: Sequence[Bead]) -> Bead | None:
    """Return the first pending bead, in stored order, whose dependencies are all completed.

    ``None`` means either every bead is done or the remaining pending beads are
    blocked; callers distinguish the two with :func:`pending_beads`.
    """
    status_by_id: dict[str, BeadStatus] = {}
    for bead in beads:
        status_by_id.setdefault(bead.id, bead.status)

    for bead in beads:
        if bead.status != BeadStatus.PENDING:
            continue
        if all(status_by_id.get(dep) == BeadStatus.COMPLETED for dep in bead.dependencies):
            return bead
    return None


def pending_beads(beads: Sequence[Bead]) -> list[Bead]:
    return [bead for bead in beads if bead.status == BeadStatus.PENDING]


def topological_sort(beads: Sequence[Bead]) -> list[Bead]:
    """Order beads dependencies-first, preserving stored order among independent beads.

    Missing dependency IDs are skipped. On a cyclic graph the order is still
    total but cannot satisfy every edge.
    """
    bead_map: dict[str, Bead] = {}
    for bead in beads:
        bead_map.setdefault(bead.id, bead)
    visited: set[str] = set()
    ordered: list[Bead] = []

    def visit(bead_id: str) -> None:
        if bead_id in visited:
            return
        visited.add(bead_id)
        bead = bead_map.get(bead_id)
        if bead is None:
            return
        for dep in bead.dependencies:
            visit(dep)
        ordered.append(bead)

    for bead in bead_map.values():
        visit(bead.id)
    return ordered


def get_graph_stats(graph: BeadGraph) -> GraphStats:
    counts = Counter(bead.status for bead in graph.beads)
    total = len(graph.beads)
    completed = counts[BeadStatus.COMPLETED]
    return GraphStats(
        total=total,
        pending=counts[BeadStatus.PENDING],
        running=counts[BeadStatus.RUNNING],
        completed=completed,
        failed=counts[BeadStatus.FAILED],
        paused=counts[BeadStatus.PAUSED],
        progress=(completed / total) * 100 if total else 0.0,
    )


def find_blocked_beads(beads: Sequence[Bead]) -> list[BlockedBead]:
    """Explain which pending beads are blocked and by which unmet dependencies.

    Each unmet dependency is rendered as ``"<id>(<status>)"`` or
    ``"<id>(missing)"``. The result is sorted by unmet-dependency count,
    most-blocked first; ties keep stored order.
    """
    status_by_id: dict[str, BeadStatus] = {}
    for bead in beads:
        status_by_id.setdefault(bead.id, bead.status)

    blocked: list[BlockedBead] = []
    for bead in pending_beads(beads):
        unmet: list[str] = []
        for dep in bead.dependencies:
            status = status_by_id.get(dep)
            if status is None:
                unmet.append(f"{dep}(missing)")
            elif status != BeadStatus.COMPLETED:
                unmet.append(f"{dep}({status.value})")
        if unmet:
            blocked.append(BlockedBead(bead_id=bead.id, title=bead.title, unmet=unmet))
    blocked.sort(key=lambda item: len(item.unmet), reverse=True)
    return blocked


def failed_beads(beads: Sequence[Bead]) -> list[Bead]:
    return [bead for bead in beads if bead.status == BeadStatus.FAILED]


def recover_interrupted(graph: BeadGraph) -> list[str]:
    """Reset every ``running`` bead to ``pending`` and return the reset IDs.

    Nothing can legitimately be running while no scheduler holds the graph, so a
    running bead on load is the trace of an interrupted run.
    """
    reset: list[str] = []
    now = utc_now_iso()
    for bead in graph.beads:
        if bead.status == BeadStatus.RUNNING:
            bead.status = BeadStatus.PENDING
            bead.updated_at = now
            reset.append(bead.id)
            logger.warning("Resetting interrupted bead %s to pending", bead.id)
    return reset


def total_estimated_tokens(beads: Sequence[Bead]) -> int:
    return sum(max(bead.estimated_tokens, 0) for bead in beads)
