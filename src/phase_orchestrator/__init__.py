from importlib.metadata import version

from .approval import ApprovalDecision, ApprovalGate, ContinueDecision, ReviseDecision
from .cancellation import CancellationToken
from .checkpoint_store import CheckpointStore, FileCheckpointStore, SqliteCheckpointStore, open_checkpoint_store
from .checkpoints import CheckpointService, new_checkpoint_id, serialize_execution_state, summarize_checkpoint
from .engine import PhaseOrchestrator
from .errors import (
    AlreadyRunningError,
    CheckpointNotFoundError,
    ExecutionAborted,
    NoPausedExecutionError,
    OrchestratorError,
    PhaseGenerationError,
    PhaseSkipped,
)
from .events import EVENT_NAMES, EventBus, EventListener, OrchestratorEvent
from .generation import (
    CancelledEvent,
    ChatModelGenerationEngine,
    ErrorEvent,
    GenerationEngine,
    GenerationEvent,
    GenerationSession,
    ProgressEvent,
    TextEvent,
    open_session,
)
from .model_selection import DEFAULT_MODELS_BY_TIER, MODE_TIERS, RuntimeModelSelection
from .models import (
    CheckpointRecord,
    CheckpointSummary,
    ExecutionState,
    OrchestrationStatus,
    OrchestratorConfig,
    Phase,
    PhaseState,
    PhaseStatus,
    ResearchMode,
)
from .phases import PHASE_DISPLAY_NAMES, PHASE_PROMPTS, build_phase_prompt, build_revision_prompt, display_name
from .settings import RuntimeSettings


def get_version() -> str:
    try:
        return version("phase-orchestrator")
    except Exception:
        return "0.0.0"


__all__ = [
    "AlreadyRunningError",
    "ApprovalDecision",
    "ApprovalGate",
    "CancellationToken",
    "CancelledEvent",
    "ChatModelGenerationEngine",
    "CheckpointNotFoundError",
    "CheckpointRecord",
    "CheckpointService",
    "CheckpointStore",
    "CheckpointSummary",
    "ContinueDecision",
    "DEFAULT_MODELS_BY_TIER",
    "EVENT_NAMES",
    "ErrorEvent",
    "EventBus",
    "EventListener",
    "ExecutionAborted",
    "ExecutionState",
    "FileCheckpointStore",
    "GenerationEngine",
    "GenerationEvent",
    "GenerationSession",
    "MODE_TIERS",
    "NoPausedExecutionError",
    "OrchestrationStatus",
    "OrchestratorConfig",
    "OrchestratorError",
    "OrchestratorEvent",
    "PHASE_DISPLAY_NAMES",
    "PHASE_PROMPTS",
    "Phase",
    "PhaseGenerationError",
    "PhaseOrchestrator",
    "PhaseSkipped",
    "PhaseState",
    "PhaseStatus",
    "ProgressEvent",
    "ResearchMode",
    "ReviseDecision",
    "RuntimeModelSelection",
    "RuntimeSettings",
    "SqliteCheckpointStore",
    "TextEvent",
    "build_phase_prompt",
    "build_revision_prompt",
    "display_name",
    "get_version",
    "new_checkpoint_id",
    "open_checkpoint_store",
    "open_session",
    "serialize_execution_state",
    "summarize_checkpoint",
]
