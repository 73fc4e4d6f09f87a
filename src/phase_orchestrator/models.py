from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(UTC)


class Phase(str, Enum):
    MARKET_RESEARCH = "market_research"
    COMPETITIVE_ANALYSIS = "competitive_analysis"
    TECHNICAL_FEASIBILITY = "technical_feasibility"
    ARCHITECTURE_DESIGN = "architecture_design"
    RISK_ASSESSMENT = "risk_assessment"
    SPRINT_PLANNING = "sprint_planning"
    GENERAL = "general"


class ResearchMode(str, Enum):
    QUICK = "quick"
    BALANCED = "balanced"
    COMPREHENSIVE = "comprehensive"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    SKIPPED = "skipped"


class OrchestrationStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    COMPLETED = "completed"
    FAILED = "failed"


# A completed phase may go back to in_progress for an approval-gate revision.
PHASE_STATUS_TRANSITIONS: dict[PhaseStatus, frozenset[PhaseStatus]] = {
    PhaseStatus.PENDING: frozenset({PhaseStatus.IN_PROGRESS, PhaseStatus.SKIPPED}),
    PhaseStatus.IN_PROGRESS: frozenset(
        {PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.SKIPPED, PhaseStatus.PAUSED, PhaseStatus.PENDING}
    ),
    PhaseStatus.PAUSED: frozenset({PhaseStatus.IN_PROGRESS, PhaseStatus.FAILED, PhaseStatus.PENDING}),
    PhaseStatus.COMPLETED: frozenset({PhaseStatus.IN_PROGRESS}),
    PhaseStatus.FAILED: frozenset(),
    PhaseStatus.SKIPPED: frozenset(),
}

RESUMABLE_STATUSES: frozenset[OrchestrationStatus] = frozenset(
    {
        OrchestrationStatus.IDLE,
        OrchestrationStatus.RUNNING,
        OrchestrationStatus.PAUSED,
        OrchestrationStatus.WAITING_FOR_APPROVAL,
    }
)


class _CamelModel(BaseModel):
    """Base for persisted models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, validate_assignment=True)


class PhaseState(_CamelModel):
    phase: Phase
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    output: str | None = None
    progress: int = 0

    @field_validator("progress")
    @classmethod
    def _clamp_progress(cls, value: int) -> int:
        return max(0, min(100, value))

    def transition(self, new_status: PhaseStatus) -> None:
        """Move to ``new_status``, rejecting transitions the phase lifecycle does not allow."""
        allowed = PHASE_STATUS_TRANSITIONS[self.status]
        if new_status not in allowed:
            raise ValueError(
                f"Illegal phase status transition for {self.phase.value}: "
                f"{self.status.value} -> {new_status.value}"
            )
        self.status = new_status


class OrchestratorConfig(_CamelModel):
    """Input to ``PhaseOrchestrator.start``."""

    project_id: str
    project_name: str
    project_path: str
    mode: ResearchMode = Field(default=ResearchMode.BALANCED, alias="researchMode")
    phases: list[Phase]

    @field_validator("project_id", "project_name", "project_path")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be non-empty")
        return value

    @field_validator("phases")
    @classmethod
    def _phases_non_empty(cls, value: list[Phase]) -> list[Phase]:
        if not value:
            raise ValueError("at least one phase is required")
        return value


class ExecutionState(_CamelModel):
    """Root aggregate for one orchestration; the only thing serialized into checkpoints."""

    project_id: str
    project_name: str
    project_path: str
    mode: ResearchMode = Field(default=ResearchMode.BALANCED, alias="researchMode")
    phases: list[PhaseState]
    current_phase_index: int = -1
    status: OrchestrationStatus = OrchestrationStatus.IDLE
    started_at: datetime | None = None
    paused_at: datetime | None = None
    completed_at: datetime | None = None
    awaiting_approval_phase_index: int | None = None

    @model_validator(mode="after")
    def _check_index_bounds(self) -> "ExecutionState":
        if self.current_phase_index < -1 or self.current_phase_index >= max(len(self.phases), 1):
            raise ValueError(
                f"currentPhaseIndex {self.current_phase_index} is out of range for {len(self.phases)} phases"
            )
        return self

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> "ExecutionState":
        return cls(
            project_id=config.project_id,
            project_name=config.project_name,
            project_path=config.project_path,
            mode=config.mode,
            phases=[PhaseState(phase=phase) for phase in config.phases],
            current_phase_index=-1,
            status=OrchestrationStatus.RUNNING,
            started_at=utc_now(),
        )

    @property
    def current_phase(self) -> PhaseState | None:
        if self.current_phase_index < 0 or self.current_phase_index >= len(self.phases):
            return None
        return self.phases[self.current_phase_index]

    def snapshot(self) -> "ExecutionState":
        """Deep copy handed to event listeners so they never alias live engine state."""
        return self.model_copy(deep=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, text: str) -> "ExecutionState":
        try:
            return cls.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"execution state failed validation: {exc}") from exc


class CheckpointRecord(_CamelModel):
    """Persisted snapshot of an ``ExecutionState``.

    ``serialized_execution_state`` holds the full state as JSON text with all
    datetimes encoded as ISO-8601 strings; ``load_execution_state`` restores them.
    """

    id: str
    project_id: str
    project_path: str
    project_name: str
    serialized_execution_state: str
    current_phase_index: int
    status: OrchestrationStatus
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def load_execution_state(self) -> ExecutionState:
        return ExecutionState.from_json(self.serialized_execution_state)

    @property
    def is_resumable(self) -> bool:
        return self.status in RESUMABLE_STATUSES


class CheckpointSummary(_CamelModel):
    id: str
    project_id: str
    project_path: str
    project_name: str
    current_phase_index: int
    status: OrchestrationStatus
    completed_phases: int
    total_phases: int
    last_phase: Phase | None = None
    created_at: datetime
    updated_at: datetime
