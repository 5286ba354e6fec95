from __future__ import annotations

import json
from pathlib import Path

import pytest

from axon_engine.errors import BeadsError
from axon_engine.models import Bead, BeadStatus
from axon_engine.state_store import GraphStore


def _write_graph(path: Path, beads: list[dict[str, object]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(
            {
                "version": "1.0",
                "beads": beads,
                "metadata": {
                    "total_estimated_tokens": 0,
                    "total_cost_usd": 0.0,
                    "created_at": "2026-01-01T00:00:00+00:00",
                    "updated_at": "2026-01-01T00:00:00+00:00",
                },
            }
        ),
        encoding="utf-8",
    )


def test_missing_graph_raises_beads_error(tmp_path: Path) -> None:
    with pytest.raises(BeadsError, match="not found"):
        GraphStore(tmp_path / ".beads" / "graph.json").load()


def test_corrupt_graph_raises_beads_error(tmp_path: Path) -> None:
    path = tmp_path / "graph.json"
    path.write_text('{"beads": [{"title": "no id"}]}', encoding="utf-8")
    with pytest.raises(BeadsError, match="failed validation"):
        GraphStore(path).load()


def test_crash_recovery_is_persisted_and_idempotent(tmp_path: Path) -> None:
    path = tmp_path / ".beads" / "graph.json"
    _write_graph(path, [{"id": "A", "status": "running"}, {"id": "B", "dependencies": ["A"], "status": "pending"}])

    store = GraphStore(path)
    graph = store.load()
    assert graph.get("A").status == BeadStatus.PENDING
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["beads"][0]["status"] == "pending"

    first_reset = path.read_text(encoding="utf-8")
    again = store.load()
    assert [bead.status for bead in again.beads] == [BeadStatus.PENDING, BeadStatus.PENDING]
    assert path.read_text(encoding="utf-8") == first_reset


def test_save_round_trips_planner_fields_and_stamps_metadata(tmp_path: Path) -> None:
    path = tmp_path / "graph.json"
    _write_graph(path, [{"id": "A", "estimated_tokens": 1200, "planner_note": "keep me"}])
    store = GraphStore(path)
    graph = store.load()
    graph.beads.append(Bead(id="B", dependencies=["A"], estimated_tokens=800))
    store.save(graph)

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["beads"][0]["planner_note"] == "keep me"
    assert payload["beads"][1]["status"] == "pending"
    assert payload["metadata"]["total_estimated_tokens"] == 2000
    assert payload["metadata"]["updated_at"] != "2026-01-01T00:00:00+00:00"
    assert not list(path.parent.glob(".graph.json.*.tmp"))


def test_initialize_creates_empty_graph_once(tmp_path: Path) -> None:
    store = GraphStore(tmp_path / ".beads" / "graph.json")
    graph = store.initialize()
    assert graph.beads == []
    assert store.exists()
    assert store.initialize().version == "1.0"
