from __future__ import annotations

from .errors import ExecutionAborted


class CancellationToken:
    """One-way cancellation flag passed down to everything one run calls.

    A fresh token is created for every start, resume and checkpoint resume, so
    a loop still unwinding from a stopped run never observes the next run's token.
    """

    __slots__ = ("_cancelled", "_reason")

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Execution aborted") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ExecutionAborted(self._reason or "Execution aborted")
