from __future__ import annotations

from axon_engine.graph import (
    CYCLE_ERROR,
    create_empty_graph,
    find_blocked_beads,
    get_graph_stats,
    get_next_executable,
    has_cycle,
    recover_interrupted,
    topological_sort,
    validate_graph,
)
from axon_engine.models import Bead, BeadGraph, BeadStatus


def _bead(bead_id: str, *deps: str, status: BeadStatus = BeadStatus.PENDING) -> Bead:
    return Bead(id=bead_id, title=f"Bead {bead_id}", dependencies=list(deps), status=status)


def _graph(*beads: Bead) -> BeadGraph:
    graph = create_empty_graph()
    graph.beads = list(beads)
    return graph


def test_valid_graph_has_no_errors() -> None:
    report = validate_graph(_graph(_bead("A"), _bead("B", "A"), _bead("C", "A", "B")))
    assert report.valid is True
    assert report.errors == []


def test_duplicate_id_alone_invalidates_graph() -> None:
    report = validate_graph(_graph(_bead("A"), _bead("A")))
    assert report.valid is False
    assert report.errors == ["duplicate bead id: A"]


def test_dangling_dependency_alone_invalidates_graph() -> None:
    report = validate_graph(_graph(_bead("A"), _bead("B", "Y")))
    assert report.valid is False
    assert report.errors == ["bead B depends on missing bead Y"]


def test_cycle_alone_invalidates_graph() -> None:
    report = validate_graph(_graph(_bead("A", "C"), _bead("B", "A"), _bead("C", "B")))
    assert report.valid is False
    assert report.errors == [CYCLE_ERROR]


def test_self_dependency_is_a_cycle() -> None:
    assert has_cycle([_bead("A", "A")]) is True


def test_errors_are_reported_in_check_order() -> None:
    report = validate_graph(_graph(_bead("A", "B"), _bead("B", "A"), _bead("B"), _bead("C", "missing")))
    assert report.errors == [
        "duplicate bead id: B",
        "bead C depends on missing bead missing",
        CYCLE_ERROR,
    ]


def test_long_chain_does_not_hit_recursion_limit() -> None:
    beads = [_bead("n0")] + [_bead(f"n{i}", f"n{i - 1}") for i in range(1, 5000)]
    assert has_cycle(beads) is False


def test_next_executable_scans_stored_order() -> None:
    beads = [_bead("B", "A"), _bead("A"), _bead("C")]
    assert get_next_executable(beads).id == "A"


def test_next_executable_requires_completed_dependencies() -> None:
    beads = [_bead("A", status=BeadStatus.RUNNING), _bead("B", "A")]
    assert get_next_executable(beads) is None


def test_draining_an_acyclic_graph_respects_dependencies() -> None:
    beads = [_bead("D", "B", "C"), _bead("C", "A"), _bead("B", "A"), _bead("A"), _bead("E")]
    order: list[str] = []
    while (bead := get_next_executable(beads)) is not None:
        by_id = {item.id: item for item in beads}
        assert all(by_id[dep].status == BeadStatus.COMPLETED for dep in bead.dependencies)
        bead.status = BeadStatus.COMPLETED
        order.append(bead.id)

    assert sorted(order) == ["A", "B", "C", "D", "E"]
    position = {bead_id: index for index, bead_id in enumerate(order)}
    assert position["A"] < position["B"] < position["D"]
    assert position["A"] < position["C"] < position["D"]


def test_topological_sort_puts_dependencies_first_and_skips_missing() -> None:
    ordered = [bead.id for bead in topological_sort([_bead("C", "B", "ghost"), _bead("B", "A"), _bead("A")])]
    assert ordered == ["A", "B", "C"]


def test_blocked_beads_name_unmet_dependencies() -> None:
    beads = [
        _bead("A", status=BeadStatus.FAILED),
        _bead("B", "A"),
        _bead("C", "A", "X"),
        _bead("D", "A", status=BeadStatus.COMPLETED),
    ]
    blocked = find_blocked_beads(beads)
    assert [entry.bead_id for entry in blocked] == ["C", "B"]
    assert blocked[0].unmet == ["A(failed)", "X(missing)"]
    assert blocked[1].unmet == ["A(failed)"]


def test_graph_stats_counts_and_progress() -> None:
    stats = get_graph_stats(
        _graph(
            _bead("A", status=BeadStatus.COMPLETED),
            _bead("B", status=BeadStatus.FAILED),
            _bead("C"),
            _bead("D", status=BeadStatus.PAUSED),
        )
    )
    assert (stats.total, stats.completed, stats.failed, stats.pending, stats.paused) == (4, 1, 1, 1, 1)
    assert stats.progress == 25.0
    assert get_graph_stats(create_empty_graph()).progress == 0.0


def test_recover_interrupted_resets_running_only() -> None:
    graph = _graph(_bead("A", status=BeadStatus.RUNNING), _bead("B", status=BeadStatus.COMPLETED))
    assert recover_interrupted(graph) == ["A"]
    assert graph.get("A").status == BeadStatus.PENDING
    assert graph.get("B").status == BeadStatus.COMPLETED
    assert recover_interrupted(graph) == []
