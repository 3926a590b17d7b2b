"""Phase transition rules for the Red-Green-Refactor state machine."""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import PhaseViolation
from ..memory.schema import Outcome, Phase, TestRunResult


@dataclass(slots=True, frozen=True)
class ExpectationResult:
    """Comparison between the outcome a caller expected and the observed one."""

    expectation: Outcome
    actual_outcome: Outcome
    expectation_met: bool


def check_transition(
    current: Phase,
    target: Phase,
    *,
    failing: int,
    passing: int,
    strict: bool = True,
) -> None:
    """Raise :class:`PhaseViolation` when ``current -> target`` is not allowed."""

    if not strict:
        return

    message: str | None = None
    if target is Phase.RED:
        if current is Phase.COMPLETE:
            message = "Cannot go to RED from COMPLETE. Start a new cycle."
    elif target is Phase.GREEN:
        if failing == 0:
            message = (
                "Cannot go to GREEN phase without failing tests. "
                "Write tests first (RED phase)."
            )
    elif target is Phase.REFACTOR:
        if failing > 0:
            message = "Cannot refactor with failing tests. Fix tests first (GREEN phase)."
        elif passing == 0:
            message = "Cannot refactor without passing tests. Write and pass tests first."
    elif target is Phase.COMPLETE:
        if failing > 0:
            message = "Cannot complete cycle with failing tests. All tests must pass."
        elif passing == 0:
            message = "Cannot complete cycle without any passing tests."

    if message is not None:
        raise PhaseViolation(message, current=current.value, target=target.value)


def is_transition_allowed(
    current: Phase,
    target: Phase,
    *,
    failing: int,
    passing: int,
    strict: bool = True,
) -> bool:
    try:
        check_transition(current, target, failing=failing, passing=passing, strict=strict)
    except PhaseViolation:
        return False
    return True


def validate_expectation(expectation: Outcome, result: TestRunResult) -> ExpectationResult:
    """Compare ``expectation`` with the outcome derived from ``result.tests_failed``.

    Kept free of process execution so it can be exercised with fixture results.
    """

    if expectation not in ("pass", "fail"):
        raise ValueError(f"Unknown expectation: {expectation!r}")
    actual: Outcome = "fail" if result.tests_failed > 0 else "pass"
    return ExpectationResult(
        expectation=expectation,
        actual_outcome=actual,
        expectation_met=expectation == actual,
    )


def phase_after_run(current: Phase, expectation: ExpectationResult, result: TestRunResult) -> Phase:
    """Return the phase a cycle should hold after an observed test run.

    A met ``pass`` expectation with at least one passing test moves the cycle to
    GREEN; every other outcome keeps the current phase.
    """

    if current is Phase.COMPLETE:
        return current
    if (
        expectation.expectation_met
        and expectation.expectation == "pass"
        and result.tests_failed == 0
        and result.tests_passed > 0
    ):
        return Phase.GREEN
    return current


def next_action(phase: Phase, failing: int, passing: int) -> str:
    """Human-readable hint for what the caller should do next."""

    if phase is Phase.READY:
        return "Write your first failing test using write-test"
    if phase is Phase.RED:
        if failing == 0:
            return "Write more tests that will fail, or verify existing tests fail with run-tests"
        return "Implement code to make failing tests pass using implement"
    if phase is Phase.GREEN:
        if failing > 0:
            return "Continue implementing code to make all tests pass"
        return "Consider refactoring with refactor, or add more tests (RED), or complete the cycle"
    if phase is Phase.REFACTOR:
        return "Run tests to verify refactoring did not break anything, then add more tests or complete"
    return "Cycle complete. Start a new cycle with init"


__all__ = [
    "ExpectationResult",
    "check_transition",
    "is_transition_allowed",
    "next_action",
    "phase_after_run",
    "validate_expectation",
]
