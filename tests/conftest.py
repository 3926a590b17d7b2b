from __future__ import annotations

import json
import subprocess
import sys
import textwrap
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from rgr.config import Settings  # noqa: E402
from rgr.engine import CycleEngine  # noqa: E402

JEST_ONE_FAILURE = textwrap.dedent(
    """
    FAIL src/math.test.ts
      ● adds numbers

        expect(received).toBe(expected)

        Expected: 3
        Received: undefined

          at Object.<anonymous> (src/math.test.ts:4:21)

    Tests:       1 failed, 1 total
    """
)

JEST_ALL_PASSING = textwrap.dedent(
    """
    PASS src/math.test.ts
      ✓ adds numbers (2 ms)

    Tests:       1 passed, 1 total
    """
)


@dataclass(slots=True)
class FakeExecutor:
    """Stand-in for ``subprocess.run`` that replays queued runner output."""

    outputs: List[str] = field(default_factory=list)
    calls: List[Dict[str, Any]] = field(default_factory=list)
    returncode: int = 0

    def queue(self, *outputs: str) -> None:
        self.outputs.extend(outputs)

    def __call__(self, command: List[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append({"command": list(command), **kwargs})
        stdout = self.outputs.pop(0) if self.outputs else ""
        return subprocess.CompletedProcess(command, self.returncode, stdout=stdout, stderr="")


@dataclass(slots=True)
class FakeTransport:
    """Generation transport returning canned ``response`` bodies or raising queued errors."""

    replies: List[Any] = field(default_factory=list)
    calls: List[Dict[str, Any]] = field(default_factory=list)

    def __call__(self, url: str, payload: Dict[str, Any], timeout: float) -> str:
        self.calls.append({"url": url, "payload": dict(payload), "timeout": timeout})
        reply = self.replies.pop(0) if self.replies else {"response": "ok"}
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return reply
        return json.dumps(reply)


@dataclass(slots=True)
class EngineHarness:
    """Engine wired to a temporary workspace and fake collaborators."""

    engine: CycleEngine
    executor: FakeExecutor
    transport: FakeTransport
    workspace: Path
    state_dir: Path
    sleeps: List[float]

    def read(self, relative: str) -> str:
        return (self.workspace / relative).read_text(encoding="utf-8")


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return Settings(state_dir=tmp_path / "state", workspace=workspace, test_framework="jest")


@pytest.fixture()
def make_harness(settings: Settings) -> Callable[..., EngineHarness]:
    def _factory(**overrides: Any) -> EngineHarness:
        active = replace(settings, **overrides)
        executor = FakeExecutor()
        transport = FakeTransport()
        sleeps: List[float] = []
        engine = CycleEngine.from_settings(
            active,
            executor=executor,
            transport=transport,
            sleep=sleeps.append,
        )
        return EngineHarness(
            engine=engine,
            executor=executor,
            transport=transport,
            workspace=active.workspace,
            state_dir=active.state_dir,
            sleeps=sleeps,
        )

    return _factory


@pytest.fixture()
def harness(make_harness: Callable[..., EngineHarness]) -> EngineHarness:
    return make_harness()
