"""Action layer that drives a Red-Green-Refactor cycle.

``CycleEngine`` composes the cycle store, the test runner, the checkpoint
helpers and the generation client. Each action takes a validated request
model and either returns an :class:`ActionResult` or raises an
:class:`~rgr.errors.RGRError`; :meth:`CycleEngine.dispatch` is the boundary
that turns those errors into failed results so a long-running caller never
crashes on a single bad request.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .config import Settings, settings_as_dict
from .errors import ExecutionError, NotFoundError, RGRError, ServiceUnavailableError, ValidationError
from .memory.schema import (
    Checkpoint,
    Cycle,
    Implementation,
    Phase,
    Refactoring,
    TestCase,
    TestRunResult,
    TestStatus,
    clone_tests,
    new_record_id,
    utc_now,
)
from .memory.store import CycleStore
from .models.generation import CircuitBreaker, GenerationClient, GenerationError, RetryPolicy
from .phases import (
    ExpectationResult,
    check_transition,
    next_action,
    phase_after_run,
    validate_expectation,
)
from .requests import (
    ActionRequest,
    CheckpointRequest,
    CompareApproachesRequest,
    CompleteRequest,
    ConsultRequest,
    CoverageRequest,
    ImplementRequest,
    InitRequest,
    RefactorRequest,
    RollbackRequest,
    RunTestsRequest,
    StatusRequest,
    WriteTestRequest,
    normalize_action,
    parse_request,
)
from .tools.checkpoint import FileAccess, LocalFileAccess, restore, snapshot
from .tools.test_runner import Executor, TestRunner, supported_frameworks

LOGGER = logging.getLogger(__name__)

ActionHandler = Callable[[Any], "ActionResult"]


@dataclass(slots=True)
class ActionResult:
    """Structured outcome returned to callers for every action."""

    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "data": self.data}


def _cycle_summary(cycle: Cycle) -> Dict[str, Any]:
    return {
        "cycle_id": cycle.id,
        "feature": cycle.feature,
        "phase": cycle.phase.value,
        "test_framework": cycle.test_framework,
        "language": cycle.language,
        "tests_written": cycle.tests_written,
        "tests_passing": cycle.tests_passing,
        "tests_failing": cycle.tests_failing,
    }


def _run_summary(result: TestRunResult) -> Dict[str, Any]:
    payload = result.model_dump(mode="json", exclude={"output"})
    payload["tests_total"] = result.tests_passed + result.tests_failed
    return payload


def _leaf_name(name: str) -> str:
    """``"Math › adds numbers:"`` -> ``"adds numbers"``."""
    return name.rsplit("›", 1)[-1].strip().rstrip(":").strip()


def _status_after_run(test: TestCase, result: TestRunResult) -> TestStatus:
    """Attribute a run outcome to one tracked test by name where possible."""
    failing_names = [failure.test_name for failure in result.failures]
    wanted = test.test_name.strip()
    if any(wanted in (name.strip(), _leaf_name(name)) for name in failing_names):
        return TestStatus.FAILED
    if result.tests_failed == 0:
        return TestStatus.PASSED if result.tests_run > 0 else test.status
    if failing_names:
        return TestStatus.PASSED
    return TestStatus.FAILED


class CycleEngine:
    """Single-cycle Red-Green-Refactor orchestrator."""

    def __init__(
        self,
        store: CycleStore,
        *,
        runner: TestRunner,
        files: FileAccess,
        client: GenerationClient,
    ) -> None:
        self.store = store
        self.runner = runner
        self.files = files
        self.client = client
        self._settings: Optional[Settings] = None
        self._handlers: Dict[str, ActionHandler] = {
            "init": self.init_cycle,
            "write_test": self.write_test,
            "implement": self.implement,
            "refactor": self.refactor,
            "run_tests": self.run_tests,
            "status": self.status,
            "complete": self.complete,
            "checkpoint": self.checkpoint,
            "rollback": self.rollback,
            "coverage": self.coverage,
            "consult": self.consult,
            "compare_approaches": self.compare_approaches,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        executor: Executor | None = None,
        transport: Any = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> "CycleEngine":
        """Wire every collaborator from resolved settings."""
        store = CycleStore.from_settings(settings)
        runner = TestRunner(settings.workspace, timeout=settings.test_timeout, executor=executor)
        client = GenerationClient(
            settings.service_base_url,
            model=settings.model,
            timeout=settings.service_timeout,
            retry=RetryPolicy(
                max_attempts=settings.max_retries,
                base_delay=settings.base_delay,
                max_delay=settings.max_delay,
                multiplier=settings.multiplier,
            ),
            breaker=CircuitBreaker(
                failure_threshold=settings.failure_threshold,
                reset_timeout=settings.reset_timeout,
                clock=clock,
            ),
            transport=transport,
            sleep=sleep,
        )
        engine = cls(store, runner=runner, files=LocalFileAccess(settings.workspace), client=client)
        engine._settings = settings
        return engine

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------
    def dispatch(self, action: str, payload: Mapping[str, Any] | ActionRequest | None = None) -> ActionResult:
        """Validate ``payload`` for ``action``, run it, and report errors as failed results."""
        try:
            request = parse_request(action, payload)
            handler = self._handlers[normalize_action(action)]
            return handler(request)
        except RGRError as error:
            LOGGER.warning("Action %s failed: %s", action, error)
            data: Dict[str, Any] = {"error": type(error).__name__}
            data.update(error.details())
            return ActionResult(success=False, message=str(error), data=data)
        except Exception as error:
            LOGGER.exception("Action %s raised an unexpected error", action)
            return ActionResult(
                success=False,
                message=f"Internal error while running {action}: {error}",
                data={"error": "InternalError", "type": type(error).__name__},
            )

    # ------------------------------------------------------------------
    # Cycle lifecycle
    # ------------------------------------------------------------------
    def init_cycle(self, request: InitRequest) -> ActionResult:
        config = self.store.config
        cycle = Cycle(
            id=new_record_id("cycle"),
            feature=request.feature,
            description=request.description,
            phase=Phase.READY,
            test_framework=request.test_framework or config.test_framework,
            language=request.language or config.language,
            files=list(dict.fromkeys(request.files)),
        )
        self.store.create_cycle(cycle)
        data = _cycle_summary(cycle)
        data["next_action"] = next_action(cycle.phase, 0, 0)
        return ActionResult(
            success=True,
            message=f"Started TDD cycle for '{cycle.feature}' ({cycle.id}).",
            data=data,
        )

    def write_test(self, request: WriteTestRequest) -> ActionResult:
        cycle = self.store.require_active_cycle()
        self._check(cycle, Phase.RED)

        existing = self._read_optional(request.test_file)
        content = f"{existing}\n\n{request.test_code}" if existing else request.test_code
        self._write(request.test_file, content, kind="test file")

        test = TestCase(
            id=new_record_id("test"),
            cycle_id=cycle.id,
            test_file=request.test_file,
            test_name=request.test_name,
            test_code=request.test_code,
            category=request.category,
            expected_to_fail=request.expected_to_fail,
        )
        self.store.add_test(test)
        cycle = self.store.update_cycle(
            cycle.id,
            tests_written=cycle.tests_written + 1,
            phase=Phase.RED,
            files=self._track(cycle, request.test_file),
        )
        return ActionResult(
            success=True,
            message=f"Test '{test.test_name}' written to {test.test_file}.",
            data={
                "test_id": test.id,
                **_cycle_summary(cycle),
                "next_action": "Run tests with run-tests --expect fail to verify they fail",
            },
        )

    def implement(self, request: ImplementRequest) -> ActionResult:
        cycle = self.store.require_active_cycle()
        if self.store.config.strict_mode:
            # Implementation needs the GREEN precondition; the phase itself moves on a passing run.
            self._check(cycle, Phase.GREEN)

        self._write(request.implementation_file, request.code, kind="implementation")
        implementation = Implementation(
            id=new_record_id("impl"),
            cycle_id=cycle.id,
            implementation_file=request.implementation_file,
            code=request.code,
            tests_covered=list(request.tests_covered),
            minimal=request.minimal,
        )
        self.store.add_implementation(implementation)
        cycle = self.store.update_cycle(
            cycle.id,
            implementations=[*cycle.implementations, request.implementation_file],
            files=self._track(cycle, request.implementation_file),
        )
        return ActionResult(
            success=True,
            message=f"Implementation written to {implementation.implementation_file}.",
            data={
                "implementation_id": implementation.id,
                **_cycle_summary(cycle),
                "next_action": "Run tests with run-tests --expect pass to verify the implementation",
            },
        )

    def refactor(self, request: RefactorRequest) -> ActionResult:
        cycle = self.store.require_active_cycle()
        if not request.maintain_tests:
            raise ValidationError("maintain_tests must be true. Refactoring must not break tests.")
        self._check(cycle, Phase.REFACTOR)

        framework = cycle.test_framework
        tests_before = self.runner.run(framework)
        self._write(request.file, request.code, kind="refactored code")

        tests_after: Optional[TestRunResult] = None
        if request.auto_test:
            tests_after = self.runner.run(framework)
        success = tests_after is not None and tests_after.tests_failed == 0 and tests_after.success

        refactoring = Refactoring(
            id=new_record_id("refactor"),
            cycle_id=cycle.id,
            file=request.file,
            changes=request.changes,
            tests_before=tests_before,
            tests_after=tests_after,
            success=success,
        )
        self.store.add_refactoring(refactoring)
        data: Dict[str, Any] = {
            "refactoring_id": refactoring.id,
            "tests_before": _run_summary(tests_before),
            "tests_after": _run_summary(tests_after) if tests_after else None,
        }

        if tests_after is not None and not success:
            cycle = self.store.update_cycle(
                cycle.id,
                tests_passing=tests_after.tests_passed,
                tests_failing=tests_after.tests_failed,
                files=self._track(cycle, request.file),
            )
            data.update(_cycle_summary(cycle))
            data["next_action"] = "Roll back to a checkpoint or fix the broken tests"
            return ActionResult(
                success=False,
                message=(
                    "Refactoring broke tests: "
                    f"{tests_before.tests_passed} passed/{tests_before.tests_failed} failed before, "
                    f"{tests_after.tests_passed} passed/{tests_after.tests_failed} failed after."
                ),
                data=data,
            )

        changes: Dict[str, Any] = {
            "refactorings": [*cycle.refactorings, request.file],
            "phase": Phase.REFACTOR,
            "files": self._track(cycle, request.file),
        }
        if tests_after is not None:
            changes["tests_passing"] = tests_after.tests_passed
            changes["tests_failing"] = tests_after.tests_failed
        cycle = self.store.update_cycle(cycle.id, **changes)
        data.update(_cycle_summary(cycle))
        data["next_action"] = next_action(cycle.phase, cycle.tests_failing, cycle.tests_passing)
        message = f"Refactoring of {request.file} recorded."
        if tests_after is None:
            message += " Tests were not re-run; verify with run-tests."
        return ActionResult(success=True, message=message, data=data)

    def run_tests(self, request: RunTestsRequest) -> ActionResult:
        cycle = self.store.get_active_cycle()
        framework = cycle.test_framework if cycle else self.store.config.test_framework
        result = self.runner.run(framework, request.pattern, request.coverage)
        expectation = validate_expectation(request.expectation, result)

        data: Dict[str, Any] = {
            "run": _run_summary(result),
            "expectation": expectation.expectation,
            "actual_outcome": expectation.actual_outcome,
            "expectation_met": expectation.expectation_met,
            "warnings": [],
        }
        if not expectation.expectation_met:
            data["warnings"].append(
                f"Expected tests to {expectation.expectation} but they "
                f"{'failed' if expectation.actual_outcome == 'fail' else 'passed'}."
            )

        if cycle is None:
            data["warnings"].append("No active cycle; results were not recorded.")
            return ActionResult(success=True, message=self._run_message(expectation), data=data)

        previous = cycle.phase
        target = phase_after_run(previous, expectation, result)
        ran_at = utc_now()
        for test in self.store.tests_for_cycle(cycle.id):
            self.store.update_test_status(test.id, _status_after_run(test, result), ran_at=ran_at)
        cycle = self.store.update_cycle(
            cycle.id,
            tests_passing=result.tests_passed,
            tests_failing=result.tests_failed,
            phase=target,
        )
        if target is not previous and target in self.store.config.checkpoint_on_phase:
            auto = self._capture_checkpoint(
                cycle,
                name=f"auto-{target.value.lower()}",
                reason=f"Entered {target.value} phase",
            )
            data["auto_checkpoint_id"] = auto.id

        data.update(_cycle_summary(cycle))
        data["next_action"] = next_action(cycle.phase, cycle.tests_failing, cycle.tests_passing)
        return ActionResult(success=True, message=self._run_message(expectation), data=data)

    def status(self, request: StatusRequest | None = None) -> ActionResult:
        cycle = self.store.get_active_cycle()
        if cycle is None:
            return ActionResult(
                success=True,
                message="No active cycle. Start a new TDD cycle with init.",
                data={"active": False},
            )
        warnings: List[str] = []
        if cycle.phase is Phase.GREEN and cycle.tests_failing > 0:
            warnings.append("Tests are still failing in GREEN phase")
        tests = self.store.tests_for_cycle(cycle.id)
        data = {
            "active": True,
            **_cycle_summary(cycle),
            "description": cycle.description,
            "duration_seconds": int((utc_now() - cycle.created_at).total_seconds()),
            "implementations": len(self.store.implementations_for_cycle(cycle.id)),
            "refactorings": len(self.store.refactorings_for_cycle(cycle.id)),
            "checkpoints": [entry.id for entry in self.store.checkpoints_for_cycle(cycle.id)],
            "files_modified": cycle.files_modified(),
            "tests": [
                {"test_id": test.id, "test_name": test.test_name, "status": test.status.value}
                for test in tests
            ],
            "warnings": warnings,
            "next_action": next_action(cycle.phase, cycle.tests_failing, cycle.tests_passing),
        }
        return ActionResult(
            success=True,
            message=f"Cycle '{cycle.feature}' is in {cycle.phase.value} phase.",
            data=data,
        )

    def complete(self, request: CompleteRequest) -> ActionResult:
        cycle = self.store.require_active_cycle()
        self._check(cycle, Phase.COMPLETE)
        implementations = self.store.implementations_for_cycle(cycle.id)
        refactorings = self.store.refactorings_for_cycle(cycle.id)
        cycle = self.store.update_cycle(cycle.id, phase=Phase.COMPLETE)
        self.store.clear_active_cycle()
        LOGGER.info("Cycle %s completed", cycle.id)
        return ActionResult(
            success=True,
            message=f"TDD cycle for '{cycle.feature}' complete.",
            data={
                **_cycle_summary(cycle),
                "summary": request.summary,
                "notes": request.notes,
                "implementations": len(implementations),
                "refactorings": len(refactorings),
                "duration_seconds": int((cycle.updated_at - cycle.created_at).total_seconds()),
                "files_modified": cycle.files_modified(),
                "next_action": next_action(Phase.COMPLETE, 0, 0),
            },
        )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------
    def checkpoint(self, request: CheckpointRequest) -> ActionResult:
        cycle = self.store.require_active_cycle()
        checkpoint = self._capture_checkpoint(
            cycle, name=request.name, reason=request.reason, extra_paths=request.files
        )
        return ActionResult(
            success=True,
            message=f"Checkpoint '{checkpoint.checkpoint_name}' created ({checkpoint.id}).",
            data={
                "checkpoint_id": checkpoint.id,
                "phase": checkpoint.phase.value,
                "files": sorted(checkpoint.files_snapshot),
                "tests_saved": len(checkpoint.tests_snapshot),
            },
        )

    def rollback(self, request: RollbackRequest) -> ActionResult:
        checkpoint = self.store.get_checkpoint(request.checkpoint_id)
        if checkpoint is None:
            raise NotFoundError(f"Checkpoint not found: {request.checkpoint_id}")

        restored = restore(self.files, checkpoint.files_snapshot)

        # Only the phase and file contents revert; records added later are kept.
        active = self.store.get_active_cycle()
        phase_reset = active is not None and active.id == checkpoint.cycle_id
        if phase_reset:
            self.store.reset_phase(checkpoint.cycle_id, checkpoint.phase)
        return ActionResult(
            success=True,
            message=f"Rolled back to checkpoint '{checkpoint.checkpoint_name}'.",
            data={
                "checkpoint_id": checkpoint.id,
                "phase": checkpoint.phase.value,
                "phase_reset": phase_reset,
                "restored": restored,
            },
        )

    # ------------------------------------------------------------------
    # Coverage and advisory calls
    # ------------------------------------------------------------------
    def coverage(self, request: CoverageRequest) -> ActionResult:
        cycle = self.store.get_active_cycle()
        framework = cycle.test_framework if cycle else self.store.config.test_framework
        result = self.runner.run(framework, request.pattern, True)
        threshold = request.threshold if request.threshold is not None else self.store.config.coverage_threshold
        if result.coverage is None:
            return ActionResult(
                success=True,
                message="No coverage data available. Make sure the test framework writes a json-summary report.",
                data={"coverage": None, "threshold": threshold, "meets_threshold": None},
            )
        meets = result.coverage.lines.percentage >= threshold
        return ActionResult(
            success=True,
            message=(
                f"Line coverage {result.coverage.lines.percentage:.1f}% "
                f"{'meets' if meets else 'is below'} the {threshold:g}% threshold."
            ),
            data={
                "coverage": result.coverage.model_dump(mode="json"),
                "threshold": threshold,
                "meets_threshold": meets,
            },
        )

    def consult(self, request: ConsultRequest) -> ActionResult:
        cycle = self.store.get_active_cycle() if request.include_cycle else None
        prompt = request.question
        if cycle is not None:
            prompt = (
                f'Context: TDD Cycle for "{cycle.feature}"\n'
                f"Phase: {cycle.phase.value}\n"
                f"Language: {cycle.language}\n"
                f"Framework: {cycle.test_framework}\n"
                f"Tests: {cycle.tests_written} written, {cycle.tests_passing} passing, "
                f"{cycle.tests_failing} failing\n\n"
                f"Question: {request.question}"
            )
        model = request.model or self.client.model
        answer = self.client.generate(prompt, model=model)
        return ActionResult(
            success=True,
            message="Consultation complete.",
            data={"question": request.question, "model": model, "answer": answer},
        )

    def compare_approaches(self, request: CompareApproachesRequest) -> ActionResult:
        approaches = [
            {"name": f"Approach {index}", "description": description}
            for index, description in enumerate(request.approaches, start=1)
        ]
        criteria = ", ".join(request.criteria)
        if request.use_consult:
            prompt = (
                "Compare these implementation approaches for TDD:\n\n"
                + "\n\n".join(f"{index}. {text}" for index, text in enumerate(request.approaches, start=1))
                + f"\n\nEvaluate based on: {criteria}\n\n"
                "Provide pros, cons, complexity rating, and testability rating for each approach. "
                "Then recommend the best approach for TDD and explain why."
            )
            try:
                analysis = self.client.generate(prompt)
            except (GenerationError, ServiceUnavailableError) as error:
                LOGGER.warning("Comparison consultation failed: %s", error)
                analysis = f"Consultation unavailable: {error}"
        else:
            analysis = f"Basic comparison of {len(approaches)} approaches based on criteria: {criteria}"
        return ActionResult(
            success=True,
            message=f"Compared {len(approaches)} approach(es).",
            data={"approaches": approaches, "criteria": list(request.criteria), "analysis": analysis},
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def health(self) -> ActionResult:
        data: Dict[str, Any] = {
            "store": self.store.health_check(),
            "generation_service": {
                "base_url": self.client.base_url,
                "model": self.client.model,
                "breaker_state": self.client.breaker.state.value,
                "healthy": self.client.is_healthy(),
            },
            "frameworks": supported_frameworks(),
        }
        if self._settings is not None:
            data["settings"] = settings_as_dict(self._settings)
        return ActionResult(success=True, message="Engine is healthy.", data=data)

    def reset(self) -> ActionResult:
        self.store.reset()
        return ActionResult(
            success=True,
            message=f"State cleared in {self.store.state_dir}.",
            data={"state_dir": str(self.store.state_dir)},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _check(self, cycle: Cycle, target: Phase) -> None:
        check_transition(
            cycle.phase,
            target,
            failing=cycle.tests_failing,
            passing=cycle.tests_passing,
            strict=self.store.config.strict_mode,
        )

    @staticmethod
    def _track(cycle: Cycle, path: str) -> List[str]:
        return list(dict.fromkeys([*cycle.files, path]))

    def _tracked_paths(self, cycle: Cycle, extra: Iterable[str] = ()) -> List[str]:
        paths: List[str] = [*cycle.files]
        paths.extend(test.test_file for test in self.store.tests_for_cycle(cycle.id))
        paths.extend(entry.implementation_file for entry in self.store.implementations_for_cycle(cycle.id))
        paths.extend(entry.file for entry in self.store.refactorings_for_cycle(cycle.id))
        paths.extend(extra)
        return list(dict.fromkeys(paths))

    def _capture_checkpoint(
        self,
        cycle: Cycle,
        *,
        name: str,
        reason: Optional[str],
        extra_paths: Iterable[str] = (),
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            id=new_record_id("checkpoint"),
            cycle_id=cycle.id,
            checkpoint_name=name,
            reason=reason,
            phase=cycle.phase,
            files_snapshot=snapshot(self.files, self._tracked_paths(cycle, extra_paths)),
            tests_snapshot=clone_tests(self.store.tests_for_cycle(cycle.id)),
        )
        return self.store.add_checkpoint(checkpoint)

    def _read_optional(self, path: str) -> str:
        if not self.files.exists(path):
            return ""
        try:
            return self.files.read_text(path)
        except OSError as error:
            raise ExecutionError(f"Failed to read {path}: {error}") from error

    def _write(self, path: str, content: str, *, kind: str) -> None:
        try:
            self.files.write_text(path, content)
        except OSError as error:
            raise ExecutionError(f"Failed to write {kind} {path}: {error}") from error

    @staticmethod
    def _run_message(expectation: ExpectationResult) -> str:
        outcome = "failed" if expectation.actual_outcome == "fail" else "passed"
        suffix = "as expected" if expectation.expectation_met else "unexpectedly"
        return f"Tests {outcome} {suffix}."


__all__ = ["ActionResult", "CycleEngine"]
