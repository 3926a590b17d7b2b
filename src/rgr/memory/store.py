"""Durable storage for cycles, tests, implementations, refactorings and checkpoints.

The whole state graph lives in a single JSON document that is re-read on
startup and fully overwritten after every mutation. There is no partial write,
no write-ahead log and no lock: one process owns a state directory at a time.
"""

from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..errors import NotFoundError, ValidationError
from ..phases.transitions import check_transition
from .schema import (
    Checkpoint,
    Cycle,
    CycleConfig,
    Implementation,
    Phase,
    Refactoring,
    StateDocument,
    TestCase,
    TestStatus,
    utc_now,
)

if TYPE_CHECKING:
    from ..config import Settings

STATE_FILE_NAME = "tdd-state.json"
LOGGER = logging.getLogger(__name__)

_IMMUTABLE_CYCLE_FIELDS = frozenset({"id", "created_at"})


class CycleStore:
    """JSON-document persistence for the Red-Green-Refactor engine."""

    def __init__(
        self,
        state_dir: Path | str,
        *,
        defaults: CycleConfig | None = None,
        autoload: bool = True,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.state_path = self.state_dir / STATE_FILE_NAME
        self._defaults = defaults or CycleConfig()
        self._state = StateDocument(config=self._defaults.model_copy(deep=True))
        if autoload:
            self.load()

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CycleStore":
        return cls(settings.state_dir, defaults=settings.cycle_defaults())

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load(self) -> StateDocument:
        """Read the state document, falling back to defaults when it is unusable."""
        fresh = StateDocument(config=self._defaults.model_copy(deep=True))
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            LOGGER.warning("Unable to create state directory %s: %s", self.state_dir, error)

        if not self.state_path.exists():
            self._state = fresh
            return self._state

        try:
            raw = json.loads(self.state_path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("state document must be a JSON object")
            persisted_config = raw.get("config")
            merged_config = self._defaults.model_dump(mode="json")
            if isinstance(persisted_config, dict):
                unknown = set(persisted_config) - set(CycleConfig.model_fields)
                if unknown:
                    LOGGER.warning(
                        "Ignoring unknown config keys in %s: %s",
                        self.state_path,
                        ", ".join(sorted(unknown)),
                    )
                merged_config.update(
                    {key: value for key, value in persisted_config.items() if key in CycleConfig.model_fields}
                )
            raw["config"] = merged_config
            self._state = StateDocument.model_validate(raw)
        except (OSError, ValueError, PydanticValidationError) as error:
            LOGGER.warning(
                "Failed to load state from %s, using defaults: %s", self.state_path, error
            )
            self._state = fresh
        return self._state

    def persist(self) -> None:
        """Overwrite the state document with the full in-memory graph."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        payload = self._state.model_dump(mode="json")
        self.state_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def reset(self) -> None:
        """Drop every record and recreate an empty state directory."""
        if self.state_dir.exists():
            shutil.rmtree(self.state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._state = StateDocument(config=self._defaults.model_copy(deep=True))
        LOGGER.info("State reset in %s", self.state_dir)

    def health_check(self) -> Dict[str, Any]:
        return {
            "state_dir": str(self.state_dir),
            "state_file_exists": self.state_path.exists(),
            "active_cycle": self._state.active_cycle_id is not None,
            "cycles": len(self._state.cycles),
            "checkpoints": len(self._state.checkpoints),
        }

    @property
    def state(self) -> StateDocument:
        return self._state

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @property
    def config(self) -> CycleConfig:
        return self._state.config

    def update_config(self, **changes: Any) -> CycleConfig:
        unknown = set(changes) - set(CycleConfig.model_fields)
        if unknown:
            raise ValidationError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        merged = {**self._state.config.model_dump(), **changes}
        try:
            self._state.config = CycleConfig.model_validate(merged)
        except PydanticValidationError as error:
            raise ValidationError(f"Invalid config update: {error}") from error
        self.persist()
        return self._state.config

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------
    def create_cycle(self, cycle: Cycle) -> Cycle:
        """Register ``cycle`` and make it the active one."""
        displaced = self.get_active_cycle()
        if displaced is not None and displaced.id != cycle.id:
            LOGGER.warning(
                "Cycle %s (%s) displaced by new cycle %s while in phase %s",
                displaced.id,
                displaced.feature,
                cycle.id,
                displaced.phase.value,
            )
        self._state.cycles[cycle.id] = cycle
        self._state.active_cycle_id = cycle.id
        self.persist()
        LOGGER.info("Created cycle %s for feature %r", cycle.id, cycle.feature)
        return cycle

    def get_active_cycle(self) -> Optional[Cycle]:
        cycle_id = self._state.active_cycle_id
        if cycle_id is None:
            return None
        return self._state.cycles.get(cycle_id)

    def require_active_cycle(self) -> Cycle:
        cycle = self.get_active_cycle()
        if cycle is None:
            raise NotFoundError("No active TDD cycle. Start one with init first.")
        return cycle

    def get_cycle(self, cycle_id: str) -> Optional[Cycle]:
        return self._state.cycles.get(cycle_id)

    def list_cycles(self) -> List[Cycle]:
        return sorted(self._state.cycles.values(), key=lambda cycle: cycle.created_at)

    def update_cycle(self, cycle_id: str, **changes: Any) -> Cycle:
        """Apply ``changes`` to a cycle, stamp ``updated_at`` and persist."""
        cycle = self._state.cycles.get(cycle_id)
        if cycle is None:
            raise NotFoundError(f"Cycle not found: {cycle_id}")
        unknown = set(changes) - set(Cycle.model_fields)
        if unknown:
            raise ValidationError(f"Unknown cycle fields: {', '.join(sorted(unknown))}")
        frozen = set(changes) & _IMMUTABLE_CYCLE_FIELDS
        if frozen:
            raise ValidationError(f"Cycle fields cannot be changed: {', '.join(sorted(frozen))}")

        payload = cycle.model_dump()
        payload.update(changes)
        payload["updated_at"] = utc_now()
        try:
            updated = Cycle.model_validate(payload)
        except PydanticValidationError as error:
            raise ValidationError(f"Invalid cycle update: {error}") from error
        self._state.cycles[cycle_id] = updated
        self.persist()
        return updated

    def transition(self, cycle_id: str, target: Phase) -> Cycle:
        """Move a cycle to ``target`` after checking the transition table."""
        cycle = self._state.cycles.get(cycle_id)
        if cycle is None:
            raise NotFoundError(f"Cycle not found: {cycle_id}")
        check_transition(
            cycle.phase,
            target,
            failing=cycle.tests_failing,
            passing=cycle.tests_passing,
            strict=self.config.strict_mode,
        )
        LOGGER.info("Cycle %s: %s -> %s", cycle_id, cycle.phase.value, target.value)
        return self.update_cycle(cycle_id, phase=target)

    def reset_phase(self, cycle_id: str, phase: Phase) -> Cycle:
        """Force a cycle back to ``phase``; only rollbacks bypass the table."""
        LOGGER.info("Cycle %s phase reset to %s", cycle_id, phase.value)
        return self.update_cycle(cycle_id, phase=phase)

    def clear_active_cycle(self) -> None:
        self._state.active_cycle_id = None
        self.persist()

    # ------------------------------------------------------------------
    # Tests
    # ------------------------------------------------------------------
    def add_test(self, test: TestCase) -> TestCase:
        self._require_cycle(test.cycle_id)
        self._state.tests[test.id] = test
        self.persist()
        return test

    def update_test_status(
        self,
        test_id: str,
        status: TestStatus,
        *,
        ran_at: datetime | None = None,
    ) -> TestCase:
        test = self._state.tests.get(test_id)
        if test is None:
            raise NotFoundError(f"Test not found: {test_id}")
        updated = test.model_copy(update={"status": status, "last_run": ran_at or utc_now()})
        self._state.tests[test_id] = updated
        self.persist()
        return updated

    def tests_for_cycle(self, cycle_id: str) -> List[TestCase]:
        return [test for test in self._state.tests.values() if test.cycle_id == cycle_id]

    # ------------------------------------------------------------------
    # Implementations and refactorings
    # ------------------------------------------------------------------
    def add_implementation(self, implementation: Implementation) -> Implementation:
        self._require_cycle(implementation.cycle_id)
        self._state.implementations[implementation.id] = implementation
        self.persist()
        return implementation

    def implementations_for_cycle(self, cycle_id: str) -> List[Implementation]:
        return [
            entry for entry in self._state.implementations.values() if entry.cycle_id == cycle_id
        ]

    def add_refactoring(self, refactoring: Refactoring) -> Refactoring:
        self._require_cycle(refactoring.cycle_id)
        self._state.refactorings[refactoring.id] = refactoring
        self.persist()
        return refactoring

    def refactorings_for_cycle(self, cycle_id: str) -> List[Refactoring]:
        return [
            entry for entry in self._state.refactorings.values() if entry.cycle_id == cycle_id
        ]

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------
    def add_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        self._require_cycle(checkpoint.cycle_id)
        if checkpoint.id in self._state.checkpoints:
            raise ValidationError(f"Checkpoint already exists: {checkpoint.id}")
        self._state.checkpoints[checkpoint.id] = checkpoint
        self.persist()
        LOGGER.info(
            "Checkpoint %s (%s) captured %d file(s)",
            checkpoint.id,
            checkpoint.checkpoint_name,
            len(checkpoint.files_snapshot),
        )
        return checkpoint

    def get_checkpoint(self, checkpoint_id: str) -> Optional[Checkpoint]:
        return self._state.checkpoints.get(checkpoint_id)

    def checkpoints_for_cycle(self, cycle_id: str) -> List[Checkpoint]:
        return sorted(
            (entry for entry in self._state.checkpoints.values() if entry.cycle_id == cycle_id),
            key=lambda entry: entry.created_at,
        )

    def _require_cycle(self, cycle_id: str) -> Cycle:
        cycle = self._state.cycles.get(cycle_id)
        if cycle is None:
            raise NotFoundError(f"Cycle not found: {cycle_id}")
        return cycle


__all__ = ["CycleStore", "STATE_FILE_NAME"]
