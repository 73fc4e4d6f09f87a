"""Typed events emitted by the orchestrator and the observer list that delivers them.

Delivery is synchronous and in emission order: a listener sees ``state:update``
for a mutation before the engine performs the next one. Every state-carrying
event holds a deep snapshot, never the live ``ExecutionState``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, ClassVar

from .models import CheckpointRecord, ExecutionState, Phase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseStartEvent:
    name: ClassVar[str] = "phase:start"
    phase: Phase
    index: int


@dataclass(frozen=True)
class PhaseProgressEvent:
    name: ClassVar[str] = "phase:progress"
    phase: Phase
    percent: int
    text_delta: str


@dataclass(frozen=True)
class PhaseCompleteEvent:
    name: ClassVar[str] = "phase:complete"
    phase: Phase
    output: str


@dataclass(frozen=True)
class PhaseErrorEvent:
    name: ClassVar[str] = "phase:error"
    phase: Phase
    message: str


@dataclass(frozen=True)
class PhaseAwaitingApprovalEvent:
    name: ClassVar[str] = "phase:awaiting_approval"
    phase: Phase
    index: int


@dataclass(frozen=True)
class OrchestrationStartEvent:
    name: ClassVar[str] = "orchestration:start"
    state: ExecutionState


@dataclass(frozen=True)
class OrchestrationPauseEvent:
    name: ClassVar[str] = "orchestration:pause"
    state: ExecutionState


@dataclass(frozen=True)
class OrchestrationResumeEvent:
    name: ClassVar[str] = "orchestration:resume"
    state: ExecutionState


@dataclass(frozen=True)
class OrchestrationCompleteEvent:
    name: ClassVar[str] = "orchestration:complete"
    state: ExecutionState


@dataclass(frozen=True)
class OrchestrationErrorEvent:
    name: ClassVar[str] = "orchestration:error"
    message: str
    state: ExecutionState | None = None


@dataclass(frozen=True)
class StateUpdateEvent:
    name: ClassVar[str] = "state:update"
    state: ExecutionState


@dataclass(frozen=True)
class CheckpointSavedEvent:
    name: ClassVar[str] = "checkpoint:saved"
    record: CheckpointRecord


@dataclass(frozen=True)
class CheckpointResumedEvent:
    name: ClassVar[str] = "checkpoint:resumed"
    record: CheckpointRecord


OrchestratorEvent = (
    PhaseStartEvent
    | PhaseProgressEvent
    | PhaseCompleteEvent
    | PhaseErrorEvent
    | PhaseAwaitingApprovalEvent
    | OrchestrationStartEvent
    | OrchestrationPauseEvent
    | OrchestrationResumeEvent
    | OrchestrationCompleteEvent
    | OrchestrationErrorEvent
    | StateUpdateEvent
    | CheckpointSavedEvent
    | CheckpointResumedEvent
)

EventListener = Callable[[OrchestratorEvent], None]

EVENT_NAMES: frozenset[str] = frozenset(
    cls.name
    for cls in (
        PhaseStartEvent,
        PhaseProgressEvent,
        PhaseCompleteEvent,
        PhaseErrorEvent,
        PhaseAwaitingApprovalEvent,
        OrchestrationStartEvent,
        OrchestrationPauseEvent,
        OrchestrationResumeEvent,
        OrchestrationCompleteEvent,
        OrchestrationErrorEvent,
        StateUpdateEvent,
        CheckpointSavedEvent,
        CheckpointResumedEvent,
    )
)


class EventBus:
    """Ordered observer list.

    A listener that raises is logged and skipped; it never interrupts the
    phase loop or the listeners after it.
    """

    def __init__(self) -> None:
        self._listeners: list[tuple[str | None, EventListener]] = []

    def subscribe(self, listener: EventListener, *, event_name: str | None = None) -> Callable[[], None]:
        if event_name is not None and event_name not in EVENT_NAMES:
            raise ValueError(f"Unknown event name: {event_name!r}")
        entry = (event_name, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def emit(self, event: OrchestratorEvent) -> None:
        for event_name, listener in list(self._listeners):
            if event_name is not None and event_name != event.name:
                continue
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Listener for %s failed", event.name)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
