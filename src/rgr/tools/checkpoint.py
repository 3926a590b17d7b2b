"""Snapshot and restore the content of an explicit set of workspace files.

Snapshots hold the full text of every path that existed when they were taken;
missing paths are left out, so a restore cannot recreate a file that did not
exist at snapshot time. Restores write paths one at a time and are not
transactional: when a write fails, earlier paths stay restored and later paths
are never attempted. :class:`~rgr.errors.RestoreError` reports which is which.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Mapping, Protocol

from ..errors import RestoreError

__all__ = [
    "FileAccess",
    "LocalFileAccess",
    "restore",
    "snapshot",
]

LOGGER = logging.getLogger(__name__)


class FileAccess(Protocol):
    """Minimal file operations the checkpoint engine depends on."""

    def exists(self, path: str) -> bool: ...

    def read_text(self, path: str) -> str: ...

    def write_text(self, path: str, content: str) -> None: ...


class LocalFileAccess:
    """File access on the local filesystem, resolving relative paths against ``root``."""

    def __init__(self, root: Path | str | None = None) -> None:
        self.root = Path(root or Path.cwd()).resolve()

    def resolve(self, path: str) -> Path:
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.root / candidate

    def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    def read_text(self, path: str) -> str:
        # newline="" and surrogateescape keep the round trip byte-identical.
        with self.resolve(path).open("r", encoding="utf-8", errors="surrogateescape", newline="") as handle:
            return handle.read()

    def write_text(self, path: str, content: str) -> None:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("w", encoding="utf-8", errors="surrogateescape", newline="") as handle:
            handle.write(content)


def snapshot(files: FileAccess, paths: Iterable[str]) -> Dict[str, str]:
    """Capture the current content of each existing path in ``paths``."""

    captured: Dict[str, str] = {}
    for path in dict.fromkeys(paths):
        if not files.exists(path):
            continue
        try:
            captured[path] = files.read_text(path)
        except OSError as error:
            LOGGER.warning("Skipping unreadable file %s in snapshot: %s", path, error)
    return captured


def restore(files: FileAccess, captured: Mapping[str, str]) -> list[str]:
    """Write every captured path back verbatim and return the restored paths."""

    ordered = list(captured.keys())
    restored: list[str] = []
    for index, path in enumerate(ordered):
        try:
            files.write_text(path, captured[path])
        except OSError as error:
            pending = ordered[index + 1 :]
            LOGGER.error(
                "Restore stopped at %s after %d file(s); %d not attempted: %s",
                path,
                len(restored),
                len(pending),
                error,
            )
            raise RestoreError(
                f"Failed to restore {path}: {error}",
                restored=restored,
                failed=path,
                pending=pending,
            ) from error
        restored.append(path)
    return restored
