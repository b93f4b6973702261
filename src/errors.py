"""Fatal processing errors tagged with the algorithmic phase that raised them."""

from __future__ import annotations


class ProcessingError(RuntimeError):
    """Aborts the current processing run."""

    def __init__(self, phase: str, message: str):
        super().__init__(f"{phase}: {message}")
        self.phase = phase


class InvariantError(ProcessingError):
    """A data-integrity or programming error, never retried."""


def check(condition: bool, phase: str, message: str) -> None:
    if not condition:
        raise InvariantError(phase, message)
