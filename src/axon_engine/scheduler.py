from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field

from .bridge import AgentBridge, AgentExecutionResult
from .context import ContextProvider, SkillsDirectoryContext
from .errors import AxonError, BeadsError, GraphValidationError, VerificationFailure
from .graph import (
    failed_beads,
    find_blocked_beads,
    get_graph_stats,
    get_next_executable,
    pending_beads,
    validate_graph,
)
from .models import (
    BEAD_STATUS_TRANSITIONS,
    Bead,
    BeadArtifacts,
    BeadExecutionResult,
    BeadGraph,
    BeadStatus,
    BlockedBead,
    GraphStats,
    GraphValidationReport,
    utc_now_iso,
)
from .pricing import CostTracker
from .resolver import LLMSession
from .settings import RuntimeSettings
from .state_store import GraphStore
from .verify import Verifier

logger = logging.getLogger(__name__)

BatchOutcome = Literal["completed", "blocked", "failed", "exhausted", "invalid"]


class BatchReport(BaseModel):
    outcome: BatchOutcome
    results: list[BeadExecutionResult] = Field(default_factory=list)
    blocked: list[BlockedBead] = Field(default_factory=list)
    failed_roots: list[str] = Field(default_factory=list)
    validation_errors: list[str] = Field(default_factory=list)
    stats: GraphStats = Field(default_factory=GraphStats)

    @property
    def success(self) -> bool:
        return self.outcome == "completed"


class ExecutionScheduler:
    """Drive beads through pending -> running -> completed/failed, one at a time.

    Every status change is persisted before the next step begins, so the graph
    file is always a consistent resume point. Any bead failure stops automatic
    progress; the failed bead keeps its ``error`` for an explicit retry through
    :meth:`execute_by_id`.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        store: GraphStore | None = None,
        bridge: AgentBridge | None = None,
        verifier: Verifier | None = None,
        context_provider: ContextProvider | None = None,
        cost_tracker: CostTracker | None = None,
        verify: bool = True,
    ) -> None:
        self.settings = settings
        self.store = store or GraphStore(settings.graph_file)
        self._bridge = bridge
        self._verifier = verifier
        self.context_provider = context_provider or SkillsDirectoryContext(settings.skills_path, settings.spec_file)
        self.cost_tracker = cost_tracker or CostTracker(
            daily_token_limit=settings.daily_token_limit,
            cost_alert_threshold_usd=settings.cost_alert_threshold_usd,
        )
        self.verify_enabled = verify
        self.graph: BeadGraph = self.store.load()

    @property
    def bridge(self) -> AgentBridge:
        if self._bridge is None:
            self._bridge = AgentBridge(self.settings, session=LLMSession.from_settings(self.settings))
        return self._bridge

    @property
    def verifier(self) -> Verifier:
        if self._verifier is None:
            self._verifier = Verifier.from_settings(self.settings)
        return self._verifier

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def reload(self) -> BeadGraph:
        self.graph = self.store.load()
        return self.graph

    def validate(self) -> GraphValidationReport:
        return validate_graph(self.graph)

    def next_executable(self) -> Bead | None:
        return get_next_executable(self.graph.beads)

    def stats(self) -> GraphStats:
        return get_graph_stats(self.graph)

    def blocked(self) -> list[BlockedBead]:
        return find_blocked_beads(self.graph.beads)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _require_valid(self) -> None:
        report = self.validate()
        if not report.valid:
            raise GraphValidationError(report.errors)

    def _transition(self, bead: Bead, status: BeadStatus) -> None:
        if status not in BEAD_STATUS_TRANSITIONS[bead.status]:
            raise BeadsError(f"Illegal status change for bead {bead.id}: {bead.status.value} -> {status.value}")
        logger.info("Bead %s: %s -> %s", bead.id, bead.status.value, status.value)
        bead.status = status
        bead.updated_at = utc_now_iso()

    def execute_next(self) -> BeadExecutionResult | None:
        """Run the next executable bead, or return None when nothing is runnable.

        Raises:
            GraphValidationError: If the graph is structurally invalid.
        """
        self._require_valid()
        bead = self.next_executable()
        if bead is None:
            if pending_beads(self.graph.beads):
                for entry in self.blocked():
                    logger.warning("Bead %s is blocked by %s", entry.bead_id, ", ".join(entry.unmet))
            else:
                logger.info("All beads are completed")
            return None
        return self._execute_bead(bead)

    def execute_by_id(self, bead_id: str) -> BeadExecutionResult:
        """Run one specific bead; a ``failed`` bead may be retried this way.

        Raises:
            BeadsError: If the bead is unknown, not pending/failed, or has unmet dependencies.
            GraphValidationError: If the graph is structurally invalid.
        """
        self._require_valid()
        bead = self.graph.get(bead_id)
        if bead is None:
            raise BeadsError(f"Bead {bead_id} does not exist")
        if bead.status not in (BeadStatus.PENDING, BeadStatus.FAILED):
            raise BeadsError(f"Bead {bead_id} is {bead.status.value}; only pending or failed beads can run")
        index = self.graph.by_id()
        unmet = [dep for dep in bead.dependencies if index[dep].status != BeadStatus.COMPLETED]
        if unmet:
            raise BeadsError(
                f"Bead {bead_id} has unmet dependencies: {', '.join(unmet)}",
                suggestions=[f"Complete {dep} first" for dep in unmet],
            )
        if bead.status == BeadStatus.FAILED:
            self._transition(bead, BeadStatus.PENDING)
            self.store.save(self.graph)
        return self._execute_bead(bead)

    def execute_all(self) -> BatchReport:
        """Drain the graph until it completes, blocks, or a bead fails."""
        report = self.validate()
        if not report.valid:
            for error in report.errors:
                logger.error("Graph invalid: %s", error)
            return BatchReport(outcome="invalid", validation_errors=report.errors, stats=self.stats())

        results: list[BeadExecutionResult] = []
        budget = max(2 * len(self.graph.beads), 1)
        iterations = 0
        progress_made = True
        outcome: BatchOutcome = "exhausted"
        blocked: list[BlockedBead] = []
        failed_roots: list[str] = []

        while progress_made and iterations < budget:
            iterations += 1
            bead = self.next_executable()
            if bead is None:
                if not pending_beads(self.graph.beads):
                    outcome = "completed"
                    logger.info("All beads are completed")
                else:
                    outcome = "blocked"
                    blocked = self.blocked()
                    failed_roots = [failed.id for failed in failed_beads(self.graph.beads)]
                    logger.warning(
                        "%d bead(s) blocked; failed roots: %s", len(blocked), ", ".join(failed_roots) or "none"
                    )
                break
            result = self._execute_bead(bead)
            results.append(result)
            progress_made = result.success
            if not progress_made:
                outcome = "failed"
                logger.error("Bead %s failed; stopping the batch", bead.id)
                break

        if outcome == "exhausted":
            logger.error("Iteration budget of %d exhausted", budget)
        return BatchReport(
            outcome=outcome,
            results=results,
            blocked=blocked,
            failed_roots=failed_roots,
            stats=self.stats(),
        )

    def _execute_bead(self, bead: Bead) -> BeadExecutionResult:
        self.cost_tracker.check_limit(bead.estimated_tokens)

        logger.info("Running bead %s - %s", bead.id, bead.title)
        self._transition(bead, BeadStatus.RUNNING)
        bead.error = None
        self.store.save(self.graph)

        verification = None
        agent_result: AgentExecutionResult | None = None
        error: str | None = None
        error_code: str | None = None
        try:
            context = self.context_provider.build_context(bead)
            agent_result = self.bridge.execute(bead, context)
            if not agent_result.success:
                error = agent_result.error or "Agent reported failure"
                error_code = agent_result.error_code
            elif self.verify_enabled:
                verification = self.verifier.verify(bead.id, bead.acceptance_criteria)
                if not verification.passed:
                    failure = VerificationFailure(bead.id, verification.failed_checks)
                    error, error_code = failure.message, failure.code
        except AxonError as exc:
            error = exc.message
            error_code = exc.code
            logger.error("Bead %s raised %s: %s", bead.id, exc.code, exc.message)
        except Exception as exc:
            self._transition(bead, BeadStatus.FAILED)
            bead.error = str(exc) or type(exc).__name__
            self.store.save(self.graph)
            logger.exception("Bead %s aborted by an unexpected error", bead.id)
            raise

        cost = 0.0
        tokens = 0
        artifacts = BeadArtifacts()
        if agent_result is not None:
            tokens = agent_result.tokens_used
            cost = self.cost_tracker.record_usage(
                agent_result.model or bead.agent,
                agent_result.input_tokens,
                agent_result.output_tokens,
                cost=agent_result.cost_usd,
            )
            artifacts = BeadArtifacts(files=list(agent_result.artifacts))
        self.graph.metadata.total_cost_usd += cost

        if error is None:
            self._transition(bead, BeadStatus.COMPLETED)
            bead.completed_at = bead.updated_at
            bead.artifacts = artifacts
        else:
            self._transition(bead, BeadStatus.FAILED)
            bead.error = error
            logger.error("Bead %s failed: %s", bead.id, error)
        self.store.save(self.graph)

        return BeadExecutionResult(
            success=error is None,
            bead_id=bead.id,
            tokens_used=tokens,
            cost_usd=cost,
            artifacts=artifacts,
            error=error,
            error_code=error_code,
            verification=verification.model_dump() if verification is not None else None,
        )
