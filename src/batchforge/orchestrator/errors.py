"""Error types raised by orchestrator operations."""

from __future__ import annotations


class ValidationError(ValueError):
    """Malformed request input; raised before any state is mutated."""


class PreconditionError(RuntimeError):
    """Operation not allowed from the current state; nothing was mutated."""

    def __init__(self, message: str, *, current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status


class NotFoundError(LookupError):
    """Referenced task or unit does not exist."""
