from __future__ import annotations

import io
import json
import re
import sys
import urllib.request
from typing import List

import pytest

from rgr.config import Settings
from rgr.engine import CycleEngine, _status_after_run
from rgr.memory import schema
from rgr.memory.schema import Phase
from rgr.memory.schema import TestRunResult as RunResult
from rgr.models.generation import GenerationTransportError
from rgr.tools.test_runner import FrameworkStrategy, register_framework, unregister_framework

from conftest import JEST_ALL_PASSING, JEST_ONE_FAILURE, EngineHarness, FakeExecutor, FakeTransport

TEST_CODE = "it('adds numbers', () => { expect(add(1, 2)).toBe(3); });\n"
IMPL_CODE = "export const add = (a: number, b: number) => a + b;\n"


def _start_red(harness: EngineHarness) -> str:
    engine = harness.engine
    result = engine.dispatch("init", {"feature": "adder", "files": ["src/math.ts"]})
    assert result.success, result.message
    result = engine.dispatch(
        "write_test",
        {"test_file": "src/math.test.ts", "test_name": "adds numbers", "test_code": TEST_CODE},
    )
    assert result.success, result.message
    harness.executor.queue(JEST_ONE_FAILURE)
    result = engine.dispatch("run_tests", {"expectation": "fail"})
    assert result.success, result.message
    return result.data["cycle_id"]


def test_full_red_green_complete_cycle(harness: EngineHarness) -> None:
    engine = harness.engine

    init = engine.dispatch("init", {"feature": "adder", "description": "integer addition"})
    assert init.data["phase"] == "READY"

    written = engine.dispatch(
        "write_test",
        {"test_file": "src/math.test.ts", "test_name": "adds numbers", "test_code": TEST_CODE},
    )
    assert written.data["phase"] == "RED"
    assert harness.read("src/math.test.ts") == TEST_CODE

    harness.executor.queue(JEST_ONE_FAILURE)
    red_run = engine.dispatch("run_tests", {"expectation": "fail"})
    assert red_run.data["expectation_met"] is True
    assert red_run.data["phase"] == "RED"
    assert red_run.data["tests_failing"] == 1
    assert red_run.data["run"]["failures"][0]["test_name"] == "adds numbers"

    implemented = engine.dispatch(
        "implement", {"implementation_file": "src/math.ts", "code": IMPL_CODE, "tests_covered": ["adds numbers"]}
    )
    assert implemented.success
    assert implemented.data["phase"] == "RED"
    assert harness.read("src/math.ts") == IMPL_CODE

    harness.executor.queue(JEST_ALL_PASSING)
    green_run = engine.dispatch("run_tests", {"expectation": "pass"})
    assert green_run.data["expectation_met"] is True
    assert green_run.data["phase"] == "GREEN"
    assert harness.executor.calls[-1]["command"] == ["npx", "jest"]

    cycle_id = green_run.data["cycle_id"]
    statuses = {test.test_name: test.status.value for test in engine.store.tests_for_cycle(cycle_id)}
    assert statuses == {"adds numbers": "passed"}

    completed = engine.dispatch("complete", {"summary": "adder works"})
    assert completed.success
    assert completed.data["phase"] == "COMPLETE"
    assert completed.data["files_modified"] == ["src/math.ts"]
    assert engine.store.get_active_cycle() is None
    assert engine.store.get_cycle(cycle_id).phase is Phase.COMPLETE

    status = engine.dispatch("status")
    assert status.data == {"active": False}


def test_state_survives_engine_restart(harness: EngineHarness, make_harness) -> None:
    cycle_id = _start_red(harness)

    restarted = make_harness().engine
    status = restarted.dispatch("status", {})

    assert status.data["cycle_id"] == cycle_id
    assert status.data["phase"] == "RED"
    assert status.data["tests"][0]["status"] == "failed"


def test_write_test_appends_to_existing_file(harness: EngineHarness) -> None:
    (harness.workspace / "src").mkdir()
    (harness.workspace / "src" / "math.test.ts").write_text("import { add } from './math';", encoding="utf-8")
    harness.engine.dispatch("init", {"feature": "adder"})

    harness.engine.dispatch(
        "write_test",
        {"test_file": "src/math.test.ts", "test_name": "adds numbers", "test_code": TEST_CODE},
    )

    assert harness.read("src/math.test.ts") == "import { add } from './math';\n\n" + TEST_CODE


def test_unmet_expectation_keeps_phase_and_warns(harness: EngineHarness) -> None:
    _start_red(harness)
    harness.executor.queue(JEST_ONE_FAILURE)

    result = harness.engine.dispatch("run_tests", {"expectation": "pass"})

    assert result.success
    assert result.data["expectation_met"] is False
    assert result.data["actual_outcome"] == "fail"
    assert result.data["phase"] == "RED"
    assert result.data["warnings"]


def test_run_tests_without_active_cycle_still_reports(harness: EngineHarness) -> None:
    harness.executor.queue(JEST_ALL_PASSING)

    result = harness.engine.dispatch("run_tests", {"expectation": "pass"})

    assert result.success
    assert result.data["run"]["tests_passed"] == 1
    assert "No active cycle" in result.data["warnings"][-1]


def test_entering_green_captures_automatic_checkpoint(harness: EngineHarness) -> None:
    cycle_id = _start_red(harness)
    harness.engine.dispatch("implement", {"implementation_file": "src/math.ts", "code": IMPL_CODE})
    harness.executor.queue(JEST_ALL_PASSING)

    result = harness.engine.dispatch("run_tests", {"expectation": "pass"})

    checkpoints = harness.engine.store.checkpoints_for_cycle(cycle_id)
    assert [entry.checkpoint_name for entry in checkpoints] == ["auto-green"]
    assert result.data["auto_checkpoint_id"] == checkpoints[0].id
    assert checkpoints[0].phase is Phase.GREEN
    assert checkpoints[0].files_snapshot["src/math.ts"] == IMPL_CODE


def test_rollback_restores_files_and_phase_but_keeps_records(harness: EngineHarness) -> None:
    engine = harness.engine
    cycle_id = _start_red(harness)

    saved = engine.dispatch("checkpoint", {"name": "before-impl", "reason": "safe point"})
    assert saved.success
    assert saved.data["files"] == ["src/math.test.ts"]
    checkpoint_id = saved.data["checkpoint_id"]

    engine.dispatch(
        "write_test",
        {"test_file": "src/math.test.ts", "test_name": "adds negatives", "test_code": "it('adds negatives');"},
    )
    engine.dispatch("implement", {"implementation_file": "src/math.ts", "code": IMPL_CODE})
    harness.executor.queue(JEST_ALL_PASSING)
    assert engine.dispatch("run_tests", {"expectation": "pass"}).data["phase"] == "GREEN"

    rolled = engine.dispatch("rollback", {"checkpoint_id": checkpoint_id})

    assert rolled.success
    assert rolled.data["phase_reset"] is True
    assert rolled.data["restored"] == ["src/math.test.ts"]
    assert harness.read("src/math.test.ts") == TEST_CODE
    assert engine.store.get_active_cycle().phase is Phase.RED
    # Records created after the checkpoint survive the rollback.
    assert len(engine.store.tests_for_cycle(cycle_id)) == 2
    assert len(engine.store.implementations_for_cycle(cycle_id)) == 1
    # Files absent at checkpoint time are not removed.
    assert harness.read("src/math.ts") == IMPL_CODE


def test_rollback_partial_failure_reports_paths(harness: EngineHarness) -> None:
    engine = harness.engine
    _start_red(harness)
    engine.dispatch("implement", {"implementation_file": "src/math.ts", "code": IMPL_CODE})
    saved = engine.dispatch("checkpoint", {"name": "both-files"})
    assert saved.data["files"] == ["src/math.test.ts", "src/math.ts"]

    impl_file = harness.workspace / "src" / "math.ts"
    impl_file.unlink()
    impl_file.mkdir()

    result = engine.dispatch("rollback", {"checkpoint_id": saved.data["checkpoint_id"]})

    assert result.success is False
    assert result.data["error"] == "RestoreError"
    assert result.data["failed"] == "src/math.ts"
    assert result.data["restored"] == []
    assert result.data["pending"] == ["src/math.test.ts"]


def test_rollback_unknown_checkpoint_is_not_found(harness: EngineHarness) -> None:
    result = harness.engine.dispatch("rollback", {"checkpoint_id": "checkpoint-missing"})

    assert result.success is False
    assert result.data["error"] == "NotFoundError"


def test_boundary_rejects_malformed_requests(harness: EngineHarness) -> None:
    engine = harness.engine

    missing = engine.dispatch("write_test", {"test_file": "a.test.ts"})
    unknown_action = engine.dispatch("deploy", {})
    bad_expectation = engine.dispatch("run_tests", {"expectation": "maybe"})
    extra_field = engine.dispatch("init", {"feature": "x", "colour": "red"})

    for result in (missing, unknown_action, bad_expectation, extra_field):
        assert result.success is False
        assert result.data["error"] == "ValidationError"
    assert harness.executor.calls == []


def test_actions_without_active_cycle_are_not_found(harness: EngineHarness) -> None:
    result = harness.engine.dispatch(
        "write_test", {"test_file": "a.test.ts", "test_name": "a", "test_code": "it('a')"}
    )

    assert result.success is False
    assert result.data["error"] == "NotFoundError"


def test_strict_mode_blocks_implement_without_failing_tests(harness: EngineHarness) -> None:
    harness.engine.dispatch("init", {"feature": "adder"})

    result = harness.engine.dispatch("implement", {"implementation_file": "src/math.ts", "code": IMPL_CODE})

    assert result.success is False
    assert result.data["error"] == "PhaseViolation"
    assert result.data["target_phase"] == "GREEN"
    assert not (harness.workspace / "src" / "math.ts").exists()


def test_lenient_mode_allows_implement_first(make_harness) -> None:
    harness = make_harness(strict_mode=False)
    harness.engine.dispatch("init", {"feature": "adder"})

    result = harness.engine.dispatch("implement", {"implementation_file": "src/math.ts", "code": IMPL_CODE})

    assert result.success


def test_complete_with_failing_tests_is_rejected(harness: EngineHarness) -> None:
    _start_red(harness)

    result = harness.engine.dispatch("complete", {})

    assert result.success is False
    assert result.data["error"] == "PhaseViolation"
    assert harness.engine.store.get_active_cycle().phase is Phase.RED


def _reach_green(harness: EngineHarness) -> None:
    _start_red(harness)
    harness.engine.dispatch("implement", {"implementation_file": "src/math.ts", "code": IMPL_CODE})
    harness.executor.queue(JEST_ALL_PASSING)
    harness.engine.dispatch("run_tests", {"expectation": "pass"})


def test_refactor_keeps_tests_green(harness: EngineHarness) -> None:
    _reach_green(harness)
    harness.executor.queue(JEST_ALL_PASSING, JEST_ALL_PASSING)

    result = harness.engine.dispatch(
        "refactor",
        {"file": "src/math.ts", "changes": "inline add", "code": "export function add(a, b) { return a + b; }\n"},
    )

    assert result.success, result.message
    assert result.data["phase"] == "REFACTOR"
    assert result.data["tests_after"]["tests_failed"] == 0
    refactorings = harness.engine.store.refactorings_for_cycle(result.data["cycle_id"])
    assert refactorings[0].success is True


def test_refactor_that_breaks_tests_is_reported(harness: EngineHarness) -> None:
    _reach_green(harness)
    harness.executor.queue(JEST_ALL_PASSING, JEST_ONE_FAILURE)

    result = harness.engine.dispatch(
        "refactor", {"file": "src/math.ts", "changes": "break it", "code": "export const add = () => 0;\n"}
    )

    assert result.success is False
    assert result.data["phase"] == "GREEN"
    assert result.data["tests_failing"] == 1
    refactorings = harness.engine.store.refactorings_for_cycle(result.data["cycle_id"])
    assert refactorings[0].success is False


def test_refactor_requires_maintain_tests(harness: EngineHarness) -> None:
    _reach_green(harness)

    result = harness.engine.dispatch(
        "refactor", {"file": "src/math.ts", "changes": "x", "code": "", "maintain_tests": False}
    )

    assert result.success is False
    assert result.data["error"] == "ValidationError"


def test_coverage_compares_line_percentage_with_threshold(harness: EngineHarness) -> None:
    summary = harness.workspace / "coverage" / "coverage-summary.json"
    summary.parent.mkdir()
    metric = {"total": 10, "covered": 8, "pct": 80}
    summary.write_text(
        json.dumps({"total": {key: metric for key in ("lines", "branches", "functions", "statements")}}),
        encoding="utf-8",
    )
    harness.executor.queue(JEST_ALL_PASSING, JEST_ALL_PASSING)

    below = harness.engine.dispatch("coverage", {"threshold": 85})
    default = harness.engine.dispatch("coverage", {})

    assert below.data["meets_threshold"] is False
    assert default.data["threshold"] == 80.0
    assert default.data["meets_threshold"] is True
    assert "--coverage" in harness.executor.calls[0]["command"]


def test_coverage_without_summary_reports_none(harness: EngineHarness) -> None:
    harness.executor.queue(JEST_ALL_PASSING)

    result = harness.engine.dispatch("coverage", {})

    assert result.success
    assert result.data["coverage"] is None


def test_consult_prefixes_active_cycle_context(harness: EngineHarness) -> None:
    _start_red(harness)
    harness.transport.replies.append({"response": "Start with the simplest case."})

    result = harness.engine.dispatch("consult", {"question": "What next?"})

    assert result.success
    assert result.data["answer"] == "Start with the simplest case."
    prompt = harness.transport.calls[0]["payload"]["prompt"]
    assert prompt.startswith('Context: TDD Cycle for "adder"')
    assert prompt.endswith("Question: What next?")


def test_consult_failure_is_reported_not_raised(make_harness) -> None:
    harness = make_harness(failure_threshold=1)
    harness.transport.replies.extend(
        [GenerationTransportError("connection refused", retryable=True) for _ in range(3)]
    )

    first = harness.engine.dispatch("consult", {"question": "Anyone there?"})
    second = harness.engine.dispatch("consult", {"question": "Anyone there?"})

    assert first.success is False
    assert first.data["error"] == "GenerationTransportError"
    assert harness.sleeps == [1.0, 2.0]
    assert second.data["error"] == "ServiceUnavailableError"
    assert len(harness.transport.calls) == 3


def test_compare_approaches_falls_back_when_service_unavailable(harness: EngineHarness) -> None:
    harness.transport.replies.append(GenerationTransportError("HTTP 500", retryable=False, status=500))

    result = harness.engine.dispatch(
        "compare_approaches",
        {"approaches": ["recursion", "iteration"], "criteria": ["readability"], "use_consult": True},
    )

    assert result.success
    assert [entry["name"] for entry in result.data["approaches"]] == ["Approach 1", "Approach 2"]
    assert result.data["analysis"].startswith("Consultation unavailable")


def test_health_reports_breaker_and_frameworks(harness: EngineHarness) -> None:
    result = harness.engine.health()

    assert result.data["generation_service"]["breaker_state"] == "CLOSED"
    assert {"jest", "mocha", "vitest"} <= set(result.data["frameworks"])
    assert result.data["settings"]["test_framework"] == "jest"


def test_unexpected_errors_become_failed_results(harness: EngineHarness) -> None:
    def broken_executor(command, **kwargs):
        raise RuntimeError("runner exploded")

    harness.engine.runner._executor = broken_executor

    result = harness.engine.dispatch("run_tests", {"expectation": "fail"})

    assert result.success is False
    assert result.data["error"] == "InternalError"
    assert "runner exploded" in result.message


def test_undecodable_runner_output_is_still_recorded(settings: Settings) -> None:
    script = "import sys; sys.stdout.buffer.write(b'Tests: 1 failed\\n\\xff\\xfe\\n')"
    register_framework(
        FrameworkStrategy(
            name="raw-bytes",
            build_command=lambda pattern, coverage: (sys.executable, "-c", script),
            passed_re=re.compile(r"(\d+) passed"),
            failed_re=re.compile(r"(\d+) failed"),
        )
    )
    try:
        engine = CycleEngine.from_settings(settings, transport=FakeTransport())
        engine.dispatch("init", {"feature": "adder", "test_framework": "raw-bytes"})
        result = engine.dispatch("run_tests", {"expectation": "fail"})
    finally:
        unregister_framework("raw-bytes")

    assert result.success, result.message
    assert result.data["expectation_met"] is True
    assert result.data["tests_failing"] == 1


def test_non_utf8_generation_body_is_a_failed_consultation(
    settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    class _Response(io.BytesIO):
        def __enter__(self):
            return self

        def __exit__(self, *exc_info):
            return False

    calls: List[str] = []

    def fake_urlopen(request, timeout):
        calls.append(request.full_url)
        return _Response(b'{"response": "\xff"}')

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    engine = CycleEngine.from_settings(settings, executor=FakeExecutor(), sleep=lambda _: None)

    result = engine.dispatch("consult", {"question": "q", "include_cycle": False})

    assert result.success is False
    assert result.data["error"] == "GenerationResponseError"
    assert len(calls) == 1
    assert engine.client.breaker.failures == 1


def test_status_matches_failures_by_exact_test_name(harness: EngineHarness) -> None:
    engine = harness.engine
    engine.dispatch("init", {"feature": "adder"})
    for name in ("adds numbers", "add"):
        engine.dispatch(
            "write_test",
            {"test_file": "src/math.test.ts", "test_name": name, "test_code": TEST_CODE},
        )
    harness.executor.queue(JEST_ONE_FAILURE)
    engine.dispatch("run_tests", {"expectation": "fail"})

    statuses = {entry["test_name"]: entry["status"] for entry in engine.dispatch("status").data["tests"]}
    assert statuses == {"adds numbers": "failed", "add": "passed"}


def test_nested_failure_names_match_their_last_segment() -> None:
    result = RunResult(
        tests_run=2,
        tests_passed=1,
        tests_failed=1,
        failures=[schema.TestFailure(test_name="Math › adds numbers:", error="boom")],
    )

    def status_of(name: str) -> str:
        test = schema.TestCase(id="t", cycle_id="c", test_file="a.test.ts", test_name=name, test_code="")
        return _status_after_run(test, result).value

    assert status_of("adds numbers") == "failed"
    assert status_of("add") == "passed"
