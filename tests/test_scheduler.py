from __future__ import annotations

import json
from pathlib import Path

import pytest

from axon_engine.bridge import AgentBridge, AgentExecutionResult
from axon_engine.context import BeadContext
from axon_engine.errors import BeadsError, CostLimitError, GraphValidationError
from axon_engine.llm import LLMResponse
from axon_engine.models import Bead, BeadStatus
from axon_engine.pricing import CostTracker
from axon_engine.scheduler import ExecutionScheduler
from axon_engine.settings import RuntimeSettings
from axon_engine.state_store import GraphStore
from axon_engine.verify import CheckResult, VerificationResult


class _ScriptedBridge:
    """Succeeds for every bead not in ``failing``; records what it saw on disk while running."""

    def __init__(self, store: GraphStore, failing: set[str] | None = None) -> None:
        self.store = store
        self.failing = failing or set()
        self.executed: list[str] = []
        self.status_on_disk: list[str] = []
        self.contexts: list[BeadContext | None] = []

    def execute(self, bead: Bead, context: BeadContext | None = None) -> AgentExecutionResult:
        self.executed.append(bead.id)
        self.contexts.append(context)
        payload = json.loads(self.store.path.read_text(encoding="utf-8"))
        self.status_on_disk.extend(item["status"] for item in payload["beads"] if item["id"] == bead.id)
        if bead.id in self.failing:
            return AgentExecutionResult(success=False, bead_id=bead.id, error="compile error in module")
        return AgentExecutionResult(
            success=True,
            bead_id=bead.id,
            model="gpt-4o",
            artifacts=[f"src/{bead.id.lower()}.py"],
            input_tokens=1000,
            output_tokens=500,
            cost_usd=0.25,
        )


class _StubVerifier:
    def __init__(self, failing_checks: list[str] | None = None) -> None:
        self.failing_checks = failing_checks or []
        self.calls: list[tuple[str, list[str]]] = []

    def verify(self, bead_id: str, acceptance_criteria: list[str] | None = None) -> VerificationResult:
        self.calls.append((bead_id, list(acceptance_criteria or [])))
        checks = [CheckResult(name=name, passed=False, output="3 failing") for name in self.failing_checks]
        checks.append(CheckResult(name="Linting", passed=True))
        return VerificationResult(passed=not self.failing_checks, bead_id=bead_id, checks=checks)


def _write_graph(path: Path, beads: list[dict[str, object]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    beads = [{"status": "pending", **bead} for bead in beads]
    path.write_text(json.dumps({"version": "1.0", "beads": beads}), encoding="utf-8")


def _scheduler(
    tmp_path: Path,
    beads: list[dict[str, object]],
    *,
    failing: set[str] | None = None,
    failing_checks: list[str] | None = None,
    daily_token_limit: int = 2_000_000,
    verify: bool = True,
) -> tuple[ExecutionScheduler, _ScriptedBridge, _StubVerifier]:
    settings = RuntimeSettings(project_root=str(tmp_path))
    store = GraphStore(settings.graph_file)
    _write_graph(store.path, beads)
    bridge = _ScriptedBridge(store, failing)
    verifier = _StubVerifier(failing_checks)
    scheduler = ExecutionScheduler(
        settings,
        store=store,
        bridge=bridge,
        verifier=verifier,
        cost_tracker=CostTracker(daily_token_limit=daily_token_limit),
        verify=verify,
    )
    return scheduler, bridge, verifier


def _statuses(scheduler: ExecutionScheduler) -> dict[str, str]:
    payload = json.loads(scheduler.store.path.read_text(encoding="utf-8"))
    return {item["id"]: item["status"] for item in payload["beads"]}


CHAIN = [
    {"id": "B", "title": "Wire login route", "dependencies": ["A"], "acceptance_criteria": ["route returns 200"]},
    {"id": "A", "title": "Create user model", "skills_required": ["python"]},
]


def test_execute_all_runs_dependencies_first_and_persists(tmp_path: Path) -> None:
    scheduler, bridge, verifier = _scheduler(tmp_path, CHAIN)
    report = scheduler.execute_all()

    assert report.outcome == "completed"
    assert report.success is True
    assert bridge.executed == ["A", "B"]
    assert bridge.status_on_disk == ["running", "running"]
    assert verifier.calls == [("A", []), ("B", ["route returns 200"])]
    assert _statuses(scheduler) == {"A": "completed", "B": "completed"}

    reloaded = GraphStore(scheduler.store.path).load()
    bead_a = reloaded.get("A")
    assert bead_a.completed_at is not None
    assert bead_a.artifacts.files == ["src/a.py"]
    assert reloaded.metadata.total_cost_usd == pytest.approx(0.5)
    assert report.stats.progress == 100.0


def test_failure_stops_batch_and_blocks_dependents(tmp_path: Path) -> None:
    scheduler, bridge, _ = _scheduler(tmp_path, CHAIN, failing={"A"})
    report = scheduler.execute_all()

    assert report.outcome == "failed"
    assert [result.bead_id for result in report.results] == ["A"]
    assert report.results[0].error == "compile error in module"
    assert _statuses(scheduler) == {"A": "failed", "B": "pending"}
    assert GraphStore(scheduler.store.path).load().get("A").error == "compile error in module"

    assert scheduler.execute_next() is None
    blocked = scheduler.blocked()
    assert [(entry.bead_id, entry.unmet) for entry in blocked] == [("B", ["A(failed)"])]

    again = scheduler.execute_all()
    assert again.outcome == "blocked"
    assert again.failed_roots == ["A"]
    assert [entry.bead_id for entry in again.blocked] == ["B"]
    assert bridge.executed == ["A"]


def test_failed_bead_can_be_retried_by_id(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    scheduler, bridge, _ = _scheduler(tmp_path, CHAIN, failing={"A"})
    scheduler.execute_next()
    bridge.failing.clear()

    seen: list[tuple[str, str]] = []
    original = scheduler._transition

    def _recording(bead: Bead, status: BeadStatus) -> None:
        seen.append((bead.status.value, status.value))
        original(bead, status)

    monkeypatch.setattr(scheduler, "_transition", _recording)
    result = scheduler.execute_by_id("A")

    assert seen == [("failed", "pending"), ("pending", "running"), ("running", "completed")]

    assert result.success is True
    assert scheduler.graph.get("A").error is None
    assert _statuses(scheduler)["A"] == "completed"
    assert scheduler.next_executable().id == "B"


def test_execute_by_id_rejects_unknown_done_and_blocked_beads(tmp_path: Path) -> None:
    scheduler, bridge, _ = _scheduler(tmp_path, CHAIN)

    with pytest.raises(BeadsError, match="does not exist"):
        scheduler.execute_by_id("Z")
    with pytest.raises(BeadsError, match="unmet dependencies: A"):
        scheduler.execute_by_id("B")

    scheduler.execute_by_id("A")
    with pytest.raises(BeadsError, match="only pending or failed"):
        scheduler.execute_by_id("A")
    assert bridge.executed == ["A"]


def test_invalid_graph_is_never_executed(tmp_path: Path) -> None:
    scheduler, bridge, _ = _scheduler(tmp_path, [{"id": "A", "dependencies": ["B"]}, {"id": "B", "dependencies": ["A"]}])

    report = scheduler.execute_all()
    assert report.outcome == "invalid"
    assert report.validation_errors == ["circular dependency detected"]
    with pytest.raises(GraphValidationError):
        scheduler.execute_next()
    assert bridge.executed == []
    assert _statuses(scheduler) == {"A": "pending", "B": "pending"}


def test_claimed_completion_is_overruled_by_verification(tmp_path: Path) -> None:
    scheduler, _, _ = _scheduler(tmp_path, [{"id": "A"}], failing_checks=["Tests"])
    result = scheduler.execute_next()

    assert result.success is False
    assert result.error == "Verification failed for bead A: Tests"
    assert result.error_code == "VERIFICATION_FAILED"
    assert result.verification["passed"] is False
    assert _statuses(scheduler) == {"A": "failed"}


def test_verification_can_be_disabled(tmp_path: Path) -> None:
    scheduler, _, verifier = _scheduler(tmp_path, [{"id": "A"}], failing_checks=["Tests"], verify=False)
    result = scheduler.execute_next()
    assert result.success is True
    assert result.verification is None
    assert verifier.calls == []


def test_usage_is_recorded_per_bead(tmp_path: Path) -> None:
    scheduler, _, _ = _scheduler(tmp_path, [{"id": "A"}])
    result = scheduler.execute_next()

    assert result.tokens_used == 1500
    assert result.cost_usd == 0.25
    assert scheduler.cost_tracker.daily_tokens() == 1500
    assert scheduler.cost_tracker.statistics()["by_model"] == {"gpt-4o": {"tokens": 1500, "cost": 0.25}}


def test_daily_token_limit_leaves_bead_pending(tmp_path: Path) -> None:
    scheduler, bridge, _ = _scheduler(tmp_path, [{"id": "A", "estimated_tokens": 5000}], daily_token_limit=1000)
    with pytest.raises(CostLimitError):
        scheduler.execute_next()
    assert bridge.executed == []
    assert scheduler.graph.get("A").status == BeadStatus.PENDING


def test_skills_and_criteria_reach_the_agent_context(tmp_path: Path) -> None:
    skills = tmp_path / ".axon" / "skills"
    skills.mkdir(parents=True)
    (skills / "python.md").write_text("Use dataclasses for value types.", encoding="utf-8")
    scheduler, bridge, _ = _scheduler(tmp_path, CHAIN)

    scheduler.execute_all()

    first, second = bridge.contexts
    assert "Use dataclasses for value types." in first.skills_context
    assert "Title: Create user model" in first.system_prompt
    assert "- route returns 200" in second.system_prompt


def test_interrupted_bead_is_rerun_after_restart(tmp_path: Path) -> None:
    scheduler, bridge, _ = _scheduler(tmp_path, [{"id": "A", "status": "running"}])
    assert scheduler.graph.get("A").status == BeadStatus.PENDING
    assert scheduler.execute_next().success is True
    assert bridge.executed == ["A"]


def test_unexpected_bridge_error_marks_bead_failed_before_propagating(tmp_path: Path) -> None:
    scheduler, bridge, _ = _scheduler(tmp_path, CHAIN)

    def _explode(bead: Bead, context: BeadContext | None = None) -> AgentExecutionResult:
        raise PermissionError(13, "Permission denied", "src/a.py")

    bridge.execute = _explode  # type: ignore[method-assign]

    with pytest.raises(PermissionError):
        scheduler.execute_next()

    bead = scheduler.graph.get("A")
    assert bead.status == BeadStatus.FAILED
    assert "Permission denied" in bead.error
    assert _statuses(scheduler) == {"A": "failed", "B": "pending"}
    assert "Permission denied" in GraphStore(scheduler.store.path).load().get("A").error


def test_api_mode_write_error_fails_bead_without_raising(tmp_path: Path) -> None:
    class _Session:
        mode = "fallback"

        def chat(self, messages, options=None) -> LLMResponse:  # noqa: ANN001
            content = '```json\n{"files": [{"path": ".", "content": "x"}]}\n```\n[[AXON_STATUS:COMPLETED]]'
            return LLMResponse(content=content, model="gpt-4o")

    settings = RuntimeSettings(project_root=str(tmp_path))
    store = GraphStore(settings.graph_file)
    _write_graph(store.path, [{"id": "A"}])
    scheduler = ExecutionScheduler(
        settings,
        store=store,
        bridge=AgentBridge(settings, session=_Session()),  # type: ignore[arg-type]
        verifier=_StubVerifier(),
    )

    result = scheduler.execute_next()

    assert result.success is False
    assert result.error_code == "INVOCATION_ERROR"
    assert result.error.startswith("Could not write generated file")
    assert _statuses(scheduler) == {"A": "failed"}
