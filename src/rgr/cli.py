"""CLI commands for driving a Red-Green-Refactor cycle."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from .config import Settings, load_settings
from .engine import ActionResult, CycleEngine
from .errors import RGRError

APP_HELP = "Red-Green-Refactor cycle engine."
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

app = typer.Typer(help=APP_HELP, no_args_is_help=True)


@dataclass(slots=True)
class CLIState:
    """Options shared by every command."""

    config_path: Optional[Path] = None
    engine: Optional[CycleEngine] = None


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def _build_engine(settings: Settings) -> CycleEngine:
    """Create the engine for ``settings``; tests replace this to inject fakes."""
    return CycleEngine.from_settings(settings)


def _engine(ctx: typer.Context) -> CycleEngine:
    state: CLIState = ctx.ensure_object(CLIState)
    if state.engine is None:
        try:
            settings = load_settings(config_path=state.config_path)
        except RGRError as error:
            typer.echo(f"Failed to load configuration: {error}", err=True)
            raise typer.Exit(code=1) from error
        state.engine = _build_engine(settings)
    return state.engine


def _emit(result: ActionResult) -> None:
    typer.echo(json.dumps(result.to_dict(), indent=2))
    if not result.success:
        raise typer.Exit(code=1)


def _read_code(code: Optional[str], code_file: Optional[Path]) -> str:
    """Return source text passed inline or read from ``code_file``."""
    if code is not None and code_file is not None:
        raise typer.BadParameter("Use either --code or --code-file, not both.")
    if code_file is not None:
        try:
            return code_file.read_text(encoding="utf-8")
        except OSError as error:
            raise typer.BadParameter(f"Cannot read {code_file}: {error}") from error
    if code is None:
        raise typer.BadParameter("Provide source with --code or --code-file.")
    return code


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to an rgr.yaml configuration file.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug output to stderr.",
    ),
) -> None:
    """Red-Green-Refactor cycle engine."""
    _configure_logging(verbose)
    ctx.obj = CLIState(config_path=config)


@app.command()
def init(
    ctx: typer.Context,
    feature: str = typer.Argument(..., help="Name of the feature under development."),
    description: str = typer.Option("", "--description", "-d", help="Free-text description."),
    framework: Optional[str] = typer.Option(
        None, "--framework", "-f", help="Test framework (vitest, jest, mocha)."
    ),
    language: Optional[str] = typer.Option(None, "--language", "-l", help="Implementation language."),
    file: List[str] = typer.Option(None, "--file", help="Path to track in checkpoints (repeatable)."),
) -> None:
    """Start a new cycle, replacing any active one."""
    _emit(
        _engine(ctx).dispatch(
            "init",
            {
                "feature": feature,
                "description": description,
                "test_framework": framework,
                "language": language,
                "files": list(file or []),
            },
        )
    )


@app.command("write-test")
def write_test(
    ctx: typer.Context,
    test_file: str = typer.Argument(..., help="Test file to append to."),
    name: str = typer.Option(..., "--name", "-n", help="Test name."),
    code: Optional[str] = typer.Option(None, "--code", help="Test source."),
    code_file: Optional[Path] = typer.Option(None, "--code-file", help="Read test source from a file."),
    category: str = typer.Option("unit", "--category", help="unit, integration or e2e."),
    expected_to_fail: bool = typer.Option(
        True, "--expected-to-fail/--expected-to-pass", help="Whether the test should fail first."
    ),
) -> None:
    """Append a test and move the cycle to RED."""
    _emit(
        _engine(ctx).dispatch(
            "write_test",
            {
                "test_file": test_file,
                "test_name": name,
                "test_code": _read_code(code, code_file),
                "category": category,
                "expected_to_fail": expected_to_fail,
            },
        )
    )


@app.command()
def implement(
    ctx: typer.Context,
    implementation_file: str = typer.Argument(..., help="File to write."),
    code: Optional[str] = typer.Option(None, "--code", help="Implementation source."),
    code_file: Optional[Path] = typer.Option(None, "--code-file", help="Read source from a file."),
    covers: List[str] = typer.Option(None, "--covers", help="Test name this satisfies (repeatable)."),
    minimal: bool = typer.Option(True, "--minimal/--not-minimal", help="Mark as a minimal implementation."),
) -> None:
    """Write implementation code for the failing tests."""
    _emit(
        _engine(ctx).dispatch(
            "implement",
            {
                "implementation_file": implementation_file,
                "code": _read_code(code, code_file),
                "tests_covered": list(covers or []),
                "minimal": minimal,
            },
        )
    )


@app.command()
def refactor(
    ctx: typer.Context,
    file: str = typer.Argument(..., help="File to overwrite with refactored code."),
    changes: str = typer.Option(..., "--changes", help="Description of the change."),
    code: Optional[str] = typer.Option(None, "--code", help="Refactored source."),
    code_file: Optional[Path] = typer.Option(None, "--code-file", help="Read source from a file."),
    maintain_tests: bool = typer.Option(
        True, "--maintain-tests/--no-maintain-tests", help="Require the suite to stay green."
    ),
    auto_test: bool = typer.Option(True, "--auto-test/--no-auto-test", help="Re-run tests afterwards."),
) -> None:
    """Refactor a file while keeping tests green."""
    _emit(
        _engine(ctx).dispatch(
            "refactor",
            {
                "file": file,
                "changes": changes,
                "code": _read_code(code, code_file),
                "maintain_tests": maintain_tests,
                "auto_test": auto_test,
            },
        )
    )


@app.command("run-tests")
def run_tests(
    ctx: typer.Context,
    expect: str = typer.Option(..., "--expect", "-e", help="Expected outcome: pass or fail."),
    pattern: Optional[str] = typer.Option(None, "--pattern", "-p", help="Test file pattern."),
    coverage: bool = typer.Option(False, "--coverage", help="Collect coverage."),
) -> None:
    """Run the suite and compare the outcome with the expectation."""
    _emit(
        _engine(ctx).dispatch(
            "run_tests", {"expectation": expect, "pattern": pattern, "coverage": coverage}
        )
    )


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the active cycle and the suggested next action."""
    _emit(_engine(ctx).dispatch("status", {}))


@app.command()
def complete(
    ctx: typer.Context,
    summary: str = typer.Option("", "--summary", "-s", help="What the cycle delivered."),
    notes: Optional[str] = typer.Option(None, "--notes", help="Extra notes."),
) -> None:
    """Complete the active cycle."""
    _emit(_engine(ctx).dispatch("complete", {"summary": summary, "notes": notes}))


@app.command()
def checkpoint(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Checkpoint label."),
    reason: Optional[str] = typer.Option(None, "--reason", "-r", help="Why the checkpoint was taken."),
    file: List[str] = typer.Option(None, "--file", help="Additional path to capture (repeatable)."),
) -> None:
    """Snapshot tracked files and tests."""
    _emit(
        _engine(ctx).dispatch(
            "checkpoint", {"name": name, "reason": reason, "files": list(file or [])}
        )
    )


@app.command()
def rollback(
    ctx: typer.Context,
    checkpoint_id: str = typer.Argument(..., help="Checkpoint identifier."),
) -> None:
    """Restore files from a checkpoint and reset the cycle phase."""
    _emit(_engine(ctx).dispatch("rollback", {"checkpoint_id": checkpoint_id}))


@app.command()
def coverage(
    ctx: typer.Context,
    threshold: Optional[float] = typer.Option(None, "--threshold", "-t", help="Minimum line coverage."),
    pattern: Optional[str] = typer.Option(None, "--pattern", "-p", help="Test file pattern."),
) -> None:
    """Run the suite with coverage and compare against the threshold."""
    _emit(_engine(ctx).dispatch("coverage", {"threshold": threshold, "pattern": pattern}))


@app.command()
def consult(
    ctx: typer.Context,
    question: str = typer.Argument(..., help="Question for the generation service."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model override."),
    include_cycle: bool = typer.Option(
        True, "--with-cycle/--without-cycle", help="Prefix the active cycle as context."
    ),
) -> None:
    """Ask the generation service for advice."""
    _emit(
        _engine(ctx).dispatch(
            "consult", {"question": question, "model": model, "include_cycle": include_cycle}
        )
    )


@app.command()
def compare(
    ctx: typer.Context,
    approaches: List[str] = typer.Argument(..., help="Approach descriptions."),
    criterion: List[str] = typer.Option(None, "--criterion", help="Evaluation criterion (repeatable)."),
    use_consult: bool = typer.Option(False, "--consult", help="Ask the generation service for analysis."),
) -> None:
    """Compare implementation approaches."""
    _emit(
        _engine(ctx).dispatch(
            "compare_approaches",
            {
                "approaches": list(approaches),
                "criteria": list(criterion or []),
                "use_consult": use_consult,
            },
        )
    )


@app.command()
def health(ctx: typer.Context) -> None:
    """Report store, generation service and framework status."""
    _emit(_engine(ctx).health())


@app.command()
def reset(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete all persisted cycle state."""
    engine = _engine(ctx)
    if not yes:
        typer.confirm(f"Delete all state in {engine.store.state_dir}?", abort=True)
    _emit(engine.reset())


def _serve_line(engine: CycleEngine, line: str) -> ActionResult:
    try:
        message = json.loads(line)
    except json.JSONDecodeError as error:
        return ActionResult(
            success=False,
            message=f"Invalid JSON request: {error}",
            data={"error": "ValidationError"},
        )
    if not isinstance(message, dict) or not isinstance(message.get("action"), str):
        return ActionResult(
            success=False,
            message="Requests must be objects with an 'action' string.",
            data={"error": "ValidationError"},
        )
    action = message["action"]
    if action == "health":
        return engine.health()
    arguments: Dict[str, Any] | None = message.get("arguments")
    return engine.dispatch(action, arguments)


@app.command()
def serve(ctx: typer.Context) -> None:
    """Read JSON requests from stdin, one per line, and answer each on stdout."""
    engine = _engine(ctx)
    for raw in sys.stdin:
        line = raw.strip()
        if not line:
            continue
        result = _serve_line(engine, line)
        typer.echo(json.dumps(result.to_dict()))


if __name__ == "__main__":
    app()
