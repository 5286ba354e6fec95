from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class BeadStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class BeadPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Legal status transitions driven by the scheduler and verifier. RUNNING -> PENDING
# only happens through crash recovery on load. A failed bead re-enters RUNNING
# only by way of PENDING.
BEAD_STATUS_TRANSITIONS: dict[BeadStatus, frozenset[BeadStatus]] = {
    BeadStatus.PENDING: frozenset({BeadStatus.RUNNING, BeadStatus.PAUSED}),
    BeadStatus.RUNNING: frozenset({BeadStatus.COMPLETED, BeadStatus.FAILED, BeadStatus.PENDING}),
    BeadStatus.FAILED: frozenset({BeadStatus.PENDING}),
    BeadStatus.PAUSED: frozenset({BeadStatus.PENDING}),
    BeadStatus.COMPLETED: frozenset(),
}


class BeadArtifacts(BaseModel):
    files: list[str] = Field(default_factory=list)
    commits: list[str] = Field(default_factory=list)


class Bead(BaseModel):
    """One atomic, independently verifiable unit of work.

    Unknown fields written by the planner are kept so a load/save round
    trip never drops planner data.
    """

    model_config = ConfigDict(extra="allow", use_enum_values=False)

    id: str
    title: str = ""
    description: str = ""
    instruction: str = ""
    dependencies: list[str] = Field(default_factory=list)
    status: BeadStatus = BeadStatus.PENDING
    skills_required: list[str] = Field(default_factory=list)
    acceptance_criteria: list[str] = Field(default_factory=list)
    estimated_tokens: int = 0
    priority: BeadPriority = BeadPriority.MEDIUM
    agent: str = "sisyphus"
    # Planner hint only; execution is always sequential.
    parallel_group: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str | None = None
    completed_at: str | None = None
    artifacts: BeadArtifacts | None = None
    error: str | None = None

    @property
    def prompt_instruction(self) -> str:
        """Instruction text for the agent, falling back to the description."""
        return self.instruction.strip() or self.description.strip() or self.title.strip()


class GraphMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    total_estimated_tokens: int = 0
    total_cost_usd: float = 0.0
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class BeadGraph(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: str = "1.0"
    beads: list[Bead] = Field(default_factory=list)
    metadata: GraphMetadata = Field(default_factory=GraphMetadata)

    def get(self, bead_id: str) -> Bead | None:
        for bead in self.beads:
            if bead.id == bead_id:
                return bead
        return None

    def by_id(self) -> dict[str, Bead]:
        # First occurrence wins when IDs are duplicated; validation reports duplicates.
        index: dict[str, Bead] = {}
        for bead in self.beads:
            index.setdefault(bead.id, bead)
        return index


class GraphValidationReport(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class GraphStats(BaseModel):
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    paused: int = 0
    progress: float = 0.0


class BlockedBead(BaseModel):
    bead_id: str
    title: str = ""
    unmet: list[str] = Field(default_factory=list)


class BeadExecutionResult(BaseModel):
    success: bool
    bead_id: str
    tokens_used: int = 0
    cost_usd: float = 0.0
    artifacts: BeadArtifacts = Field(default_factory=BeadArtifacts)
    error: str | None = None
    error_code: str | None = None
    verification: dict[str, Any] | None = None
