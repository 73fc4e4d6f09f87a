from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for every error raised by the phase orchestrator."""


class AlreadyRunningError(OrchestratorError):
    def __init__(self, message: str = "An execution is already running. Stop or complete it first.") -> None:
        super().__init__(message)


class NoPausedExecutionError(OrchestratorError):
    def __init__(self, message: str = "No paused execution to resume.") -> None:
        super().__init__(message)


class CheckpointNotFoundError(OrchestratorError, LookupError):
    def __init__(self, checkpoint_id: str) -> None:
        super().__init__(f"Checkpoint not found: {checkpoint_id}")
        self.checkpoint_id = checkpoint_id


class PhaseGenerationError(OrchestratorError):
    """A generation attempt for one phase failed.

    The provider's exception, when there is one, is chained as ``__cause__``.
    """

    def __init__(self, phase: str, message: str) -> None:
        super().__init__(message)
        self.phase = phase
        self.message = message


class ExecutionAborted(OrchestratorError):
    """Cooperative cancellation observed; unwinds the loop without touching state."""

    def __init__(self, message: str = "Execution aborted") -> None:
        super().__init__(message)


class PhaseSkipped(OrchestratorError):
    """The in-flight phase attempt was skipped by the caller."""

    def __init__(self, phase: str) -> None:
        super().__init__(f"Phase {phase} skipped")
        self.phase = phase
