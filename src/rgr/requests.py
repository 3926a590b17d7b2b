"""Validated request payloads, one model per engine action."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .memory.schema import Outcome, TestCategory


class ActionRequest(BaseModel):
    """Base model for action payloads; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")


class InitRequest(ActionRequest):
    feature: str = Field(min_length=1)
    description: str = ""
    test_framework: Optional[str] = None
    language: Optional[str] = None
    files: List[str] = Field(default_factory=list)


class WriteTestRequest(ActionRequest):
    test_file: str = Field(min_length=1)
    test_name: str = Field(min_length=1)
    test_code: str = Field(min_length=1)
    category: TestCategory = TestCategory.UNIT
    expected_to_fail: bool = True


class ImplementRequest(ActionRequest):
    implementation_file: str = Field(min_length=1)
    code: str
    tests_covered: List[str] = Field(default_factory=list)
    minimal: bool = True


class RefactorRequest(ActionRequest):
    file: str = Field(min_length=1)
    changes: str = Field(min_length=1)
    code: str
    maintain_tests: bool = True
    auto_test: bool = True


class RunTestsRequest(ActionRequest):
    expectation: Outcome
    pattern: Optional[str] = None
    coverage: bool = False


class StatusRequest(ActionRequest):
    pass


class CompleteRequest(ActionRequest):
    summary: str = ""
    notes: Optional[str] = None


class CheckpointRequest(ActionRequest):
    name: str = Field(min_length=1)
    reason: Optional[str] = None
    files: List[str] = Field(default_factory=list)


class RollbackRequest(ActionRequest):
    checkpoint_id: str = Field(min_length=1)


class CoverageRequest(ActionRequest):
    threshold: Optional[float] = Field(default=None, ge=0, le=100)
    pattern: Optional[str] = None


class ConsultRequest(ActionRequest):
    question: str = Field(min_length=1)
    include_cycle: bool = True
    model: Optional[str] = None


class CompareApproachesRequest(ActionRequest):
    approaches: List[str] = Field(min_length=1)
    criteria: List[str] = Field(default_factory=list)
    use_consult: bool = False


REQUEST_MODELS: Dict[str, type[ActionRequest]] = {
    "init": InitRequest,
    "write_test": WriteTestRequest,
    "implement": ImplementRequest,
    "refactor": RefactorRequest,
    "run_tests": RunTestsRequest,
    "status": StatusRequest,
    "complete": CompleteRequest,
    "checkpoint": CheckpointRequest,
    "rollback": RollbackRequest,
    "coverage": CoverageRequest,
    "consult": ConsultRequest,
    "compare_approaches": CompareApproachesRequest,
}


def normalize_action(action: str) -> str:
    """Accept ``write-test`` and ``write_test`` spellings alike."""
    return action.strip().lower().replace("-", "_")


def parse_request(action: str, payload: Mapping[str, Any] | ActionRequest | None) -> ActionRequest:
    """Validate ``payload`` into the request model registered for ``action``."""

    name = normalize_action(action)
    model = REQUEST_MODELS.get(name)
    if model is None:
        valid = ", ".join(sorted(REQUEST_MODELS))
        raise ValidationError(f"Unknown action '{action}'. Expected one of: {valid}")
    if isinstance(payload, model):
        return payload
    if payload is not None and not isinstance(payload, Mapping):
        raise ValidationError(f"Arguments for {name} must be an object.")
    try:
        return model.model_validate(dict(payload or {}))
    except PydanticValidationError as error:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in item['loc']) or name}: {item['msg']}"
            for item in error.errors()
        )
        raise ValidationError(f"Invalid arguments for {name}: {problems}") from error


__all__ = [
    "ActionRequest",
    "CheckpointRequest",
    "CompareApproachesRequest",
    "CompleteRequest",
    "ConsultRequest",
    "CoverageRequest",
    "ImplementRequest",
    "InitRequest",
    "REQUEST_MODELS",
    "RefactorRequest",
    "RollbackRequest",
    "RunTestsRequest",
    "StatusRequest",
    "WriteTestRequest",
    "normalize_action",
    "parse_request",
]
