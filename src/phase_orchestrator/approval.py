from __future__ import annotations

import asyncio
from dataclasses import dataclass

from .errors import ExecutionAborted
from .models import Phase


@dataclass(frozen=True)
class ContinueDecision:
    """Accept the phase output and advance to the next phase."""


@dataclass(frozen=True)
class ReviseDecision:
    """Re-run the phase with ``feedback`` appended to its prompt."""

    feedback: str


ApprovalDecision = ContinueDecision | ReviseDecision


class ApprovalGate:
    """Single-slot rendezvous between the phase loop and an external reviewer.

    One gate is created per approval cycle. The loop awaits ``wait()``; the
    control API calls ``resolve()`` exactly once. ``abort()`` is used by
    ``stop()`` to release a loop suspended on the gate.
    """

    def __init__(self, phase: Phase, phase_index: int) -> None:
        self.phase = phase
        self.phase_index = phase_index
        self._future: asyncio.Future[ApprovalDecision] = asyncio.get_running_loop().create_future()

    @property
    def is_open(self) -> bool:
        return not self._future.done()

    def resolve(self, decision: ApprovalDecision) -> bool:
        if self._future.done():
            return False
        self._future.set_result(decision)
        return True

    def abort(self, reason: str = "Execution aborted") -> bool:
        if self._future.done():
            return False
        self._future.set_exception(ExecutionAborted(reason))
        return True

    async def wait(self) -> ApprovalDecision:
        return await self._future
