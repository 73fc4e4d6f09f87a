from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

import pytest

from phase_orchestrator import (
    CheckpointService,
    OrchestratorConfig,
    Phase,
    PhaseOrchestrator,
    ResearchMode,
    SqliteCheckpointStore,
)
from phase_orchestrator.events import OrchestratorEvent
from phase_orchestrator.generation import (
    CancelledEvent,
    ErrorEvent,
    GenerationSession,
    OnGenerationEvent,
    ProgressEvent,
    TextEvent,
)


class ScriptedEngine:
    """Generation engine double driven by per-phase scripts.

    ``outputs`` maps a phase to its text, or to a list consumed one entry per
    call; an exception in that list is raised on its call. Phases in
    ``failures`` raise; phases in ``error_events`` report an error through the
    callback. ``progress`` percentages are reported before any text, and
    phases in ``cancelled`` report a cancellation after their text. ``block``
    holds a phase after its first chunk until ``release`` is called.
    """

    def __init__(
        self,
        outputs: dict[Phase, str | list[str | Exception]] | None = None,
        *,
        failures: dict[Phase, str] | None = None,
        error_events: dict[Phase, str] | None = None,
        progress: dict[Phase, list[float]] | None = None,
        cancelled: set[Phase] | None = None,
        chunk_size: int = 40,
    ) -> None:
        self.outputs = {phase: list(value) if isinstance(value, list) else value for phase, value in (outputs or {}).items()}
        self.failures = dict(failures or {})
        self.error_events = dict(error_events or {})
        self.progress = dict(progress or {})
        self.cancelled = set(cancelled or ())
        self.chunk_size = chunk_size
        self.calls: list[tuple[Phase, str]] = []
        self.sessions: list[GenerationSession] = []
        self._blocked: dict[Phase, asyncio.Event] = {}
        self._started: dict[Phase, asyncio.Event] = {}

    def block(self, phase: Phase) -> None:
        self._blocked[phase] = asyncio.Event()

    def release(self, phase: Phase) -> None:
        self._blocked.pop(phase).set()

    async def started(self, phase: Phase) -> None:
        await self._started.setdefault(phase, asyncio.Event()).wait()

    def prompts_for(self, phase: Phase) -> list[str]:
        return [prompt for called, prompt in self.calls if called == phase]

    def _next_output(self, phase: Phase) -> str:
        scripted = self.outputs.get(phase)
        if isinstance(scripted, list):
            entry = scripted.pop(0)
            if isinstance(entry, Exception):
                raise entry
            return entry
        if scripted is not None:
            return scripted
        return f"{phase.value} findings"

    async def run_streaming(
        self,
        prompt: str,
        on_event: OnGenerationEvent,
        session: GenerationSession,
        *,
        phase: Phase,
    ) -> str:
        self.calls.append((phase, prompt))
        self.sessions.append(session)
        self._started.setdefault(phase, asyncio.Event()).set()
        if phase in self.failures:
            raise RuntimeError(self.failures[phase])

        for percentage in self.progress.get(phase, []):
            on_event(ProgressEvent(percentage=percentage))
        text = self._next_output(phase)
        chunks = [text[i : i + self.chunk_size] for i in range(0, len(text), self.chunk_size)] or [""]
        for position, chunk in enumerate(chunks):
            on_event(TextEvent(text=chunk))
            if position == 0 and phase in self._blocked:
                await self._blocked[phase].wait()
            await asyncio.sleep(0)
        if phase in self.error_events:
            on_event(ErrorEvent(message=self.error_events[phase]))
        if phase in self.cancelled:
            on_event(CancelledEvent())
        return text


class EventLog:
    def __init__(self) -> None:
        self.events: list[OrchestratorEvent] = []

    def __call__(self, event: OrchestratorEvent) -> None:
        self.events.append(event)

    def names(self, *, skip: tuple[str, ...] = ("state:update", "checkpoint:saved", "phase:progress")) -> list[str]:
        return [event.name for event in self.events if event.name not in skip]

    def of(self, name: str) -> list[OrchestratorEvent]:
        return [event for event in self.events if event.name == name]


def auto_approve(orchestrator: PhaseOrchestrator) -> Callable[[], None]:
    return orchestrator.subscribe(
        lambda _event: orchestrator.approve_and_continue(),
        event_name="phase:awaiting_approval",
    )


async def wait_until(predicate: Callable[[], bool], *, attempts: int = 2_000) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def make_config(*phases: Phase, mode: ResearchMode = ResearchMode.BALANCED) -> OrchestratorConfig:
    return OrchestratorConfig(
        project_id="proj-1",
        project_name="Acme Planner",
        project_path="/work/acme",
        mode=mode,
        phases=list(phases),
    )


@pytest.fixture
def store(tmp_path: Path):
    with SqliteCheckpointStore(tmp_path / "checkpoints.sqlite") as sqlite_store:
        yield sqlite_store


@pytest.fixture
def checkpoints(store: SqliteCheckpointStore) -> CheckpointService:
    return CheckpointService(store)
