"""Phase orchestration engine.

``PhaseOrchestrator`` drives one ``ExecutionState`` through its configured
phases, one at a time, pausing for an approval decision after every completed
phase that is not the last one. Control calls (pause, stop, skip, approve,
revise) are plain synchronous methods meant to be invoked from other tasks
while ``start``/``resume``/``resume_from_checkpoint`` is being awaited.

The loop suspends in exactly three places: inside a streaming generation
call, on an approval gate, and on return after a cooperative pause.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from .approval import ApprovalGate, ContinueDecision, ReviseDecision
from .cancellation import CancellationToken
from .checkpoint_store import CheckpointStore
from .checkpoints import CheckpointService
from .errors import (
    AlreadyRunningError,
    CheckpointNotFoundError,
    ExecutionAborted,
    NoPausedExecutionError,
    PhaseGenerationError,
    PhaseSkipped,
)
from .events import (
    CheckpointResumedEvent,
    CheckpointSavedEvent,
    EventBus,
    EventListener,
    OrchestrationCompleteEvent,
    OrchestrationErrorEvent,
    OrchestrationPauseEvent,
    OrchestrationResumeEvent,
    OrchestrationStartEvent,
    OrchestratorEvent,
    PhaseAwaitingApprovalEvent,
    PhaseCompleteEvent,
    PhaseErrorEvent,
    PhaseProgressEvent,
    PhaseStartEvent,
    StateUpdateEvent,
)
from .generation import (
    CancelledEvent,
    ErrorEvent,
    GenerationEngine,
    GenerationEvent,
    GenerationSession,
    ProgressEvent,
    TextEvent,
    open_session,
)
from .models import (
    CheckpointRecord,
    ExecutionState,
    OrchestrationStatus,
    OrchestratorConfig,
    Phase,
    PhaseState,
    PhaseStatus,
    utc_now,
)
from .phases import build_phase_prompt, build_revision_prompt, display_name

logger = logging.getLogger(__name__)

STOPPED_BY_USER = "Execution stopped by user"

_ACTIVE_STATUSES = frozenset({OrchestrationStatus.RUNNING, OrchestrationStatus.WAITING_FOR_APPROVAL})


@dataclass
class _RunContext:
    """Everything one loop instance reads; a stopped loop never sees its successor's context."""

    state: ExecutionState
    session: GenerationSession
    token: CancellationToken = field(default_factory=CancellationToken)
    pause_requested: bool = False
    gate: ApprovalGate | None = None
    phase_token: CancellationToken | None = None


class PhaseOrchestrator:
    """Owns one execution at a time; multiple orchestrations mean multiple instances."""

    def __init__(
        self,
        generation: GenerationEngine,
        checkpoints: CheckpointService | CheckpointStore,
        *,
        progress_chars_per_percent: int = 100,
        progress_cap: int = 95,
    ) -> None:
        if progress_chars_per_percent < 1:
            raise ValueError("progress_chars_per_percent must be >= 1")
        if not 0 <= progress_cap < 100:
            raise ValueError("progress_cap must be within [0, 100)")
        self.generation = generation
        self.checkpoints = checkpoints if isinstance(checkpoints, CheckpointService) else CheckpointService(checkpoints)
        self.events = EventBus()
        self.progress_chars_per_percent = progress_chars_per_percent
        self.progress_cap = progress_cap
        self._execution: ExecutionState | None = None
        self._run: _RunContext | None = None
        self._current_checkpoint_id: str | None = None

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------

    def get_execution_state(self) -> ExecutionState | None:
        return self._execution.snapshot() if self._execution is not None else None

    def get_current_phase(self) -> PhaseState | None:
        if self._execution is None:
            return None
        current = self._execution.current_phase
        return current.model_copy() if current is not None else None

    def get_phase_states(self) -> list[PhaseState]:
        if self._execution is None:
            return []
        return [phase.model_copy() for phase in self._execution.phases]

    def get_phase_display_name(self, phase: Phase) -> str:
        return display_name(phase)

    def get_overall_progress(self) -> int:
        """Completed phases plus the fraction of the in-flight phase, as 0..100."""
        if self._execution is None or not self._execution.phases:
            return 0
        phases = self._execution.phases
        completed = sum(1 for phase in phases if phase.status == PhaseStatus.COMPLETED)
        current = self._execution.current_phase
        in_flight = current.progress / 100 if current is not None and current.status == PhaseStatus.IN_PROGRESS else 0.0
        return int((completed + in_flight) / len(phases) * 100)

    def is_running(self) -> bool:
        return self._execution is not None and self._execution.status == OrchestrationStatus.RUNNING

    def is_paused(self) -> bool:
        return self._execution is not None and self._execution.status == OrchestrationStatus.PAUSED

    def is_waiting_for_approval(self) -> bool:
        return self._execution is not None and self._execution.status == OrchestrationStatus.WAITING_FOR_APPROVAL

    def is_active(self) -> bool:
        return self._execution is not None and self._execution.status in _ACTIVE_STATUSES

    def get_current_checkpoint_id(self) -> str | None:
        return self._current_checkpoint_id

    def has_resumable_checkpoint(self, project_path: str) -> bool:
        return self.checkpoints.has_resumable_checkpoint(project_path)

    def get_checkpoint_for_project(self, project_path: str) -> CheckpointRecord | None:
        return self.checkpoints.get_checkpoint_by_project_path(project_path)

    def subscribe(self, listener: EventListener, *, event_name: str | None = None) -> Callable[[], None]:
        return self.events.subscribe(listener, event_name=event_name)

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def start(self, config: OrchestratorConfig | Mapping[str, Any]) -> ExecutionState:
        """Start a fresh execution and drive it until it completes, pauses or fails.

        Approval decisions must come from another task while this is awaited.

        Raises:
            AlreadyRunningError: If an execution is running or awaiting approval.
            pydantic.ValidationError: If ``config`` is invalid.
        """
        if self.is_active():
            raise AlreadyRunningError()
        if not isinstance(config, OrchestratorConfig):
            config = OrchestratorConfig.model_validate(config)

        state = ExecutionState.from_config(config)
        ctx = _RunContext(state=state, session=open_session(state))
        self._execution = state
        self._run = ctx
        self._current_checkpoint_id = None
        logger.info(
            "Starting execution for project %s with %d phases (%s mode)",
            state.project_id,
            len(state.phases),
            state.mode.value,
        )

        self._emit(OrchestrationStartEvent(state=state.snapshot()))
        self._emit_state_update(state)
        await self._run_loop(ctx)
        return state.snapshot()

    def pause(self) -> bool:
        """Request a cooperative pause; it takes effect before the next phase starts."""
        if not self.is_running() or self._run is None:
            return False
        self._run.pause_requested = True
        logger.info("Pause requested for project %s", self._run.state.project_id)
        return True

    async def resume(self) -> ExecutionState:
        """Continue a paused execution from ``current_phase_index + 1``.

        Raises:
            NoPausedExecutionError: If the execution is not paused.
        """
        state = self._execution
        ctx = self._run
        if state is None or ctx is None or state.status != OrchestrationStatus.PAUSED:
            raise NoPausedExecutionError()

        ctx.token = CancellationToken()
        ctx.pause_requested = False
        state.status = OrchestrationStatus.RUNNING
        state.paused_at = None
        logger.info("Resuming project %s after phase index %d", state.project_id, state.current_phase_index)

        self._emit(OrchestrationResumeEvent(state=state.snapshot()))
        self._emit_state_update(state)
        await self._run_loop(ctx)
        return state.snapshot()

    def stop(self) -> bool:
        """Hard-abort the execution. Returns False when there is nothing left to stop."""
        state = self._execution
        if state is None or state.status in {OrchestrationStatus.COMPLETED, OrchestrationStatus.FAILED}:
            return False

        ctx = self._run
        if ctx is not None:
            ctx.token.cancel(STOPPED_BY_USER)
            ctx.pause_requested = False
            if ctx.gate is not None:
                ctx.gate.abort(STOPPED_BY_USER)

        state.status = OrchestrationStatus.FAILED
        state.awaiting_approval_phase_index = None
        current = state.current_phase
        if current is not None and current.status == PhaseStatus.IN_PROGRESS:
            current.transition(PhaseStatus.FAILED)
            current.error = STOPPED_BY_USER
        logger.warning("Execution for project %s stopped by user", state.project_id)

        self._emit(OrchestrationErrorEvent(message=STOPPED_BY_USER, state=state.snapshot()))
        self._emit_state_update(state)
        self._save_checkpoint(state)
        return True

    def skip_current_phase(self) -> bool:
        """Mark the in-flight phase ``skipped`` and abandon its generation attempt."""
        if not self.is_running() or self._run is None:
            return False
        state = self._run.state
        current = state.current_phase
        if current is None or current.status != PhaseStatus.IN_PROGRESS:
            return False

        current.transition(PhaseStatus.SKIPPED)
        current.completed_at = utc_now()
        if self._run.phase_token is not None:
            self._run.phase_token.cancel(f"Phase {current.phase.value} skipped")
        logger.info("Skipping phase %s", current.phase.value)
        self._emit_state_update(state)
        return True

    def approve_and_continue(self) -> bool:
        gate = self._open_gate()
        if gate is None:
            return False
        return gate.resolve(ContinueDecision())

    def revise_phase(self, feedback: str) -> bool:
        gate = self._open_gate()
        if gate is None:
            return False
        return gate.resolve(ReviseDecision(feedback=feedback))

    async def resume_from_checkpoint(self, checkpoint_id: str) -> ExecutionState:
        """Restore an execution from a checkpoint and continue its phase loop.

        Phases already completed, skipped or failed are never re-run. A phase
        captured mid-generation is reset to ``pending`` and run again.

        Raises:
            AlreadyRunningError: If an execution is running or awaiting approval.
            CheckpointNotFoundError: If no checkpoint has ``checkpoint_id``.
        """
        if self.is_active():
            raise AlreadyRunningError()
        record = self.checkpoints.get_checkpoint(checkpoint_id)
        if record is None:
            raise CheckpointNotFoundError(checkpoint_id)

        state = record.load_execution_state()
        self._rewind_interrupted_phases(state)
        state.status = OrchestrationStatus.RUNNING
        state.paused_at = None
        state.awaiting_approval_phase_index = None

        ctx = _RunContext(state=state, session=open_session(state, resumed=True))
        self._execution = state
        self._run = ctx
        self._current_checkpoint_id = checkpoint_id
        logger.info(
            "Resuming project %s from checkpoint %s at phase index %d",
            state.project_id,
            checkpoint_id,
            state.current_phase_index + 1,
        )

        self._emit(OrchestrationResumeEvent(state=state.snapshot()))
        self._emit(CheckpointResumedEvent(record=record))
        self._emit_state_update(state)
        await self._run_loop(ctx)
        return state.snapshot()

    # ------------------------------------------------------------------
    # Checkpoint helpers
    # ------------------------------------------------------------------

    def save_checkpoint(self) -> CheckpointRecord | None:
        if self._execution is None:
            return None
        return self._save_checkpoint(self._execution)

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        if self._current_checkpoint_id == checkpoint_id:
            self._current_checkpoint_id = None
        return self.checkpoints.delete_checkpoint(checkpoint_id)

    def delete_checkpoints_for_project(self, project_path: str) -> int:
        return self.checkpoints.delete_checkpoints_by_project_path(project_path)

    def cleanup(self) -> None:
        """Cancel any in-flight work and forget the execution and all listeners."""
        if self._run is not None:
            self._run.token.cancel()
            if self._run.gate is not None:
                self._run.gate.abort()
        self._execution = None
        self._run = None
        self._current_checkpoint_id = None
        self.events.clear()

    # ------------------------------------------------------------------
    # Phase loop
    # ------------------------------------------------------------------

    async def _run_loop(self, ctx: _RunContext) -> None:
        try:
            await self._execute_phases(ctx)
        except ExecutionAborted:
            logger.info("Execution for project %s unwound after abort", ctx.state.project_id)
        except Exception as exc:  # noqa: BLE001
            if ctx.token.cancelled:
                logger.info("Execution for project %s unwound after abort: %s", ctx.state.project_id, exc)
                return
            logger.exception("Execution for project %s failed", ctx.state.project_id)
            self._handle_execution_error(ctx.state, exc)

    async def _execute_phases(self, ctx: _RunContext) -> None:
        state = ctx.state
        last_index = len(state.phases) - 1

        for index in range(state.current_phase_index + 1, len(state.phases)):
            if ctx.pause_requested:
                self._apply_pause(state)
                return
            if ctx.token.cancelled:
                return

            phase_state = state.phases[index]
            if phase_state.status != PhaseStatus.PENDING:
                continue

            state.current_phase_index = index
            await self._execute_phase(ctx, phase_state, index, build_phase_prompt(phase_state.phase, state))

            if phase_state.status == PhaseStatus.COMPLETED and index < last_index:
                await self._approval_loop(ctx, phase_state, index)

        if ctx.token.cancelled:
            return
        state.status = OrchestrationStatus.COMPLETED
        state.completed_at = utc_now()
        logger.info("Execution for project %s completed", state.project_id)
        self._emit(OrchestrationCompleteEvent(state=state.snapshot()))
        self._emit_state_update(state)
        self._save_checkpoint(state)

    async def _approval_loop(self, ctx: _RunContext, phase_state: PhaseState, index: int) -> None:
        state = ctx.state
        while True:
            decision = await self._wait_for_approval(ctx, phase_state.phase, index)
            state.status = OrchestrationStatus.RUNNING
            state.awaiting_approval_phase_index = None
            self._emit_state_update(state)

            if isinstance(decision, ContinueDecision):
                logger.info("Phase %s approved", phase_state.phase.value)
                return

            logger.info("Revising phase %s with reviewer feedback", phase_state.phase.value)
            prompt = build_revision_prompt(build_phase_prompt(phase_state.phase, state), decision.feedback)
            await self._execute_phase(ctx, phase_state, index, prompt)
            if phase_state.status != PhaseStatus.COMPLETED:
                return

    async def _wait_for_approval(self, ctx: _RunContext, phase: Phase, index: int) -> ContinueDecision | ReviseDecision:
        ctx.token.raise_if_cancelled()
        state = ctx.state
        gate = ApprovalGate(phase, index)
        ctx.gate = gate
        state.status = OrchestrationStatus.WAITING_FOR_APPROVAL
        state.awaiting_approval_phase_index = index
        logger.info("Waiting for approval of phase %s (index %d)", phase.value, index)

        self._emit(PhaseAwaitingApprovalEvent(phase=phase, index=index))
        self._emit_state_update(state)
        try:
            return await gate.wait()
        finally:
            if ctx.gate is gate:
                ctx.gate = None

    async def _execute_phase(self, ctx: _RunContext, phase_state: PhaseState, index: int, prompt: str) -> None:
        state = ctx.state
        phase = phase_state.phase
        phase_token = CancellationToken()
        ctx.phase_token = phase_token

        phase_state.transition(PhaseStatus.IN_PROGRESS)
        phase_state.started_at = utc_now()
        phase_state.completed_at = None
        phase_state.error = None
        phase_state.progress = 0
        logger.info("Starting phase %s (index %d)", phase.value, index)
        self._emit(PhaseStartEvent(phase=phase, index=index))
        self._emit_state_update(state)

        chunks: list[str] = []
        received = 0

        def on_event(event: GenerationEvent) -> None:
            nonlocal received
            ctx.token.raise_if_cancelled()
            if phase_token.cancelled:
                raise PhaseSkipped(phase.value)

            if isinstance(event, TextEvent):
                chunks.append(event.text)
                received += len(event.text)
                percent = max(phase_state.progress, min(self.progress_cap, received // self.progress_chars_per_percent))
                phase_state.progress = percent
                self._emit(PhaseProgressEvent(phase=phase, percent=percent, text_delta=event.text))
                self._emit_state_update(state)
            elif isinstance(event, ProgressEvent):
                percent = max(phase_state.progress, min(self.progress_cap, int(event.percentage)))
                phase_state.progress = percent
                self._emit(PhaseProgressEvent(phase=phase, percent=percent, text_delta=""))
                self._emit_state_update(state)
            elif isinstance(event, ErrorEvent):
                raise PhaseGenerationError(phase.value, event.message)
            elif isinstance(event, CancelledEvent):
                raise PhaseGenerationError(phase.value, "Phase cancelled")

        try:
            output = await self.generation.run_streaming(prompt, on_event, ctx.session, phase=phase)
            ctx.token.raise_if_cancelled()
            if phase_token.cancelled:
                raise PhaseSkipped(phase.value)
        except ExecutionAborted:
            raise
        except PhaseSkipped:
            self._finish_skipped_phase(state, phase_state)
            return
        except Exception as exc:  # noqa: BLE001
            if ctx.token.cancelled:
                raise ExecutionAborted(ctx.token.reason or STOPPED_BY_USER) from exc
            if phase_token.cancelled:
                self._finish_skipped_phase(state, phase_state)
                return
            if isinstance(exc, PhaseGenerationError):
                failure = exc
            else:
                failure = PhaseGenerationError(phase.value, str(exc) or type(exc).__name__)
                failure.__cause__ = exc
            self._fail_phase(state, phase_state, failure)
            return
        finally:
            if ctx.phase_token is phase_token:
                ctx.phase_token = None

        text = output if output is not None else "".join(chunks)
        phase_state.transition(PhaseStatus.COMPLETED)
        phase_state.completed_at = utc_now()
        phase_state.output = text
        phase_state.progress = 100
        logger.info("Phase %s completed (%d chars)", phase.value, len(text))
        self._emit(PhaseCompleteEvent(phase=phase, output=text))
        self._emit_state_update(state)
        self._save_checkpoint(state)

    def _finish_skipped_phase(self, state: ExecutionState, phase_state: PhaseState) -> None:
        phase_state.output = None
        logger.info("Phase %s skipped before completion", phase_state.phase.value)
        self._emit_state_update(state)
        self._save_checkpoint(state)

    def _fail_phase(self, state: ExecutionState, phase_state: PhaseState, failure: PhaseGenerationError) -> None:
        # Fail-open: the loop moves on to the next phase.
        phase_state.transition(PhaseStatus.FAILED)
        phase_state.error = failure.message
        logger.error("Phase %s failed: %s", phase_state.phase.value, failure.message)
        self._emit(PhaseErrorEvent(phase=phase_state.phase, message=failure.message))
        self._emit_state_update(state)
        self._save_checkpoint(state)

    def _apply_pause(self, state: ExecutionState) -> None:
        state.status = OrchestrationStatus.PAUSED
        state.paused_at = utc_now()
        logger.info("Execution for project %s paused after phase index %d", state.project_id, state.current_phase_index)
        self._emit(OrchestrationPauseEvent(state=state.snapshot()))
        self._emit_state_update(state)
        self._save_checkpoint(state)

    def _handle_execution_error(self, state: ExecutionState, exc: BaseException) -> None:
        message = str(exc) or type(exc).__name__
        state.status = OrchestrationStatus.FAILED
        state.awaiting_approval_phase_index = None
        self._emit(OrchestrationErrorEvent(message=message, state=state.snapshot()))
        self._emit_state_update(state)
        try:
            self._save_checkpoint(state)
        except Exception:  # noqa: BLE001
            logger.exception("Could not save failure checkpoint for project %s", state.project_id)

    @staticmethod
    def _rewind_interrupted_phases(state: ExecutionState) -> None:
        interrupted = [
            index
            for index, phase in enumerate(state.phases)
            if phase.status in {PhaseStatus.IN_PROGRESS, PhaseStatus.PAUSED}
        ]
        for index in interrupted:
            phase = state.phases[index]
            phase.transition(PhaseStatus.PENDING)
            phase.started_at = None
            phase.completed_at = None
            phase.output = None
            phase.progress = 0
        if interrupted:
            state.current_phase_index = min(state.current_phase_index, interrupted[0] - 1)

    # ------------------------------------------------------------------
    # Events and persistence
    # ------------------------------------------------------------------

    def _open_gate(self) -> ApprovalGate | None:
        if not self.is_waiting_for_approval() or self._run is None:
            return None
        gate = self._run.gate
        if gate is None or not gate.is_open:
            return None
        return gate

    def _save_checkpoint(self, state: ExecutionState) -> CheckpointRecord:
        record = self.checkpoints.save_checkpoint(state)
        self._current_checkpoint_id = record.id
        self._emit(CheckpointSavedEvent(record=record))
        return record

    def _emit(self, event: OrchestratorEvent) -> None:
        self.events.emit(event)

    def _emit_state_update(self, state: ExecutionState) -> None:
        self._emit(StateUpdateEvent(state=state.snapshot()))
