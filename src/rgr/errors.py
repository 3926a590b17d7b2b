"""Error taxonomy shared by the cycle engine and its components."""

from __future__ import annotations

from typing import Any, Dict, Sequence

__all__ = [
    "ExecutionError",
    "NotFoundError",
    "PhaseViolation",
    "RGRError",
    "RestoreError",
    "ServiceUnavailableError",
    "ValidationError",
]


class RGRError(RuntimeError):
    """Base error raised by the Red-Green-Refactor engine."""

    def details(self) -> Dict[str, Any]:
        """Return structured context attached to the error payload."""
        return {}


class ValidationError(RGRError):
    """Raised when an action request is malformed or missing required input."""


class PhaseViolation(RGRError):
    """Raised when a requested phase transition breaks the transition table."""

    def __init__(self, message: str, *, current: str, target: str) -> None:
        super().__init__(message)
        self.current = current
        self.target = target

    def details(self) -> Dict[str, Any]:
        return {"current_phase": self.current, "target_phase": self.target}


class NotFoundError(RGRError):
    """Raised for unknown checkpoint/cycle identifiers or a missing active cycle."""


class ExecutionError(RGRError):
    """Raised when an external process cannot be started or exceeds its timeout."""


class RestoreError(ExecutionError):
    """Raised when a checkpoint restore stops partway through its file list."""

    def __init__(
        self,
        message: str,
        *,
        restored: Sequence[str],
        failed: str,
        pending: Sequence[str],
    ) -> None:
        super().__init__(message)
        self.restored = list(restored)
        self.failed = failed
        self.pending = list(pending)

    def details(self) -> Dict[str, Any]:
        return {
            "restored": list(self.restored),
            "failed": self.failed,
            "pending": list(self.pending),
        }


class ServiceUnavailableError(RGRError):
    """Raised while the generation service circuit breaker is open."""
