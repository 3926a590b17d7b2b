"""Typed records persisted in the cycle state document."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def new_record_id(prefix: str) -> str:
    """Return a sortable, collision-resistant identifier such as ``cycle-1700000000000-3f9a2c1``."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid4().hex[:7]}"


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class Phase(str, Enum):
    """Position of a cycle in the Red-Green-Refactor state machine."""

    READY = "READY"
    RED = "RED"
    GREEN = "GREEN"
    REFACTOR = "REFACTOR"
    COMPLETE = "COMPLETE"


class TestCategory(str, Enum):
    """Scope of a test case."""

    UNIT = "unit"
    INTEGRATION = "integration"
    E2E = "e2e"


class TestStatus(str, Enum):
    """Latest observed outcome of a tracked test case."""

    PENDING = "pending"
    FAILED = "failed"
    PASSED = "passed"


Outcome = Literal["pass", "fail"]


class Cycle(RecordModel):
    """One unit of tracked Red-Green-Refactor work for a single feature."""

    id: str
    feature: str
    description: str
    phase: Phase = Phase.READY
    test_framework: str
    language: str = "typescript"
    files: List[str] = Field(default_factory=list)
    tests_written: int = 0
    tests_passing: int = 0
    tests_failing: int = 0
    implementations: List[str] = Field(default_factory=list)
    refactorings: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def files_modified(self) -> List[str]:
        """Return implementation and refactoring paths without duplicates."""
        return list(dict.fromkeys([*self.implementations, *self.refactorings]))


class TestCase(RecordModel):
    """Test written during a cycle."""

    id: str
    cycle_id: str
    test_file: str
    test_name: str
    test_code: str
    category: TestCategory = TestCategory.UNIT
    expected_to_fail: bool = True
    status: TestStatus = TestStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    last_run: Optional[datetime] = None


class Implementation(RecordModel):
    """Code written to satisfy failing tests."""

    id: str
    cycle_id: str
    implementation_file: str
    code: str
    tests_covered: List[str] = Field(default_factory=list)
    minimal: bool = True
    verified: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class CoverageMetric(RecordModel):
    total: int = 0
    covered: int = 0
    percentage: float = 0.0


class CoverageReport(RecordModel):
    """Coverage percentages translated from a json-summary document."""

    lines: CoverageMetric = Field(default_factory=CoverageMetric)
    branches: CoverageMetric = Field(default_factory=CoverageMetric)
    functions: CoverageMetric = Field(default_factory=CoverageMetric)
    statements: CoverageMetric = Field(default_factory=CoverageMetric)


class TestFailure(RecordModel):
    """Single failure extracted from raw runner output."""

    test_name: str
    error: str
    context: List[str] = Field(default_factory=list)
    suggestion: str = ""


class TestRunResult(RecordModel):
    """Uniform view over the output of any supported test runner."""

    framework: str = ""
    command: List[str] = Field(default_factory=list)
    success: bool = False
    tests_run: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    tests_skipped: int = 0
    duration_ms: int = 0
    output: str = ""
    failures: List[TestFailure] = Field(default_factory=list)
    coverage: Optional[CoverageReport] = None


class Refactoring(RecordModel):
    """Structural change made while the suite was green."""

    id: str
    cycle_id: str
    file: str
    changes: str
    tests_before: TestRunResult
    tests_after: Optional[TestRunResult] = None
    success: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class Checkpoint(RecordModel):
    """Immutable snapshot of file contents and test metadata."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    cycle_id: str
    checkpoint_name: str
    reason: Optional[str] = None
    phase: Phase
    files_snapshot: Dict[str, str] = Field(default_factory=dict)
    tests_snapshot: List[TestCase] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class CycleConfig(RecordModel):
    """Behavioural switches persisted alongside the state graph."""

    test_framework: str = "jest"
    language: str = "typescript"
    coverage_threshold: float = 80.0
    strict_mode: bool = True
    auto_run_tests: bool = True
    checkpoint_on_phase: List[Phase] = Field(default_factory=lambda: [Phase.GREEN])
    consult_on_complexity: bool = True
    test_patterns: Dict[str, str] = Field(
        default_factory=lambda: {
            "unit": "**/*.test.ts",
            "integration": "**/*.integration.ts",
            "e2e": "**/*.e2e.ts",
        }
    )


class StateDocument(RecordModel):
    """Full state graph written to disk after every mutation."""

    active_cycle_id: Optional[str] = None
    cycles: Dict[str, Cycle] = Field(default_factory=dict)
    tests: Dict[str, TestCase] = Field(default_factory=dict)
    implementations: Dict[str, Implementation] = Field(default_factory=dict)
    refactorings: Dict[str, Refactoring] = Field(default_factory=dict)
    checkpoints: Dict[str, Checkpoint] = Field(default_factory=dict)
    config: CycleConfig = Field(default_factory=CycleConfig)


def clone_tests(tests: List[TestCase]) -> List[TestCase]:
    """Return a structural deep copy of ``tests`` for embedding in a checkpoint."""
    return [test.model_copy(deep=True) for test in tests]
