"""Phase enumeration and transition validation."""

from __future__ import annotations

from ..memory.schema import Phase
from .transitions import (
    ExpectationResult,
    check_transition,
    is_transition_allowed,
    next_action,
    phase_after_run,
    validate_expectation,
)

PHASE_SEQUENCE = [
    Phase.READY,
    Phase.RED,
    Phase.GREEN,
    Phase.REFACTOR,
    Phase.COMPLETE,
]


__all__ = [
    "ExpectationResult",
    "PHASE_SEQUENCE",
    "Phase",
    "check_transition",
    "is_transition_allowed",
    "next_action",
    "phase_after_run",
    "validate_expectation",
]
