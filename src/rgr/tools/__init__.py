"""Process and filesystem integrations used by the cycle engine."""

from .checkpoint import FileAccess, LocalFileAccess, restore, snapshot
from .test_runner import (
    FrameworkStrategy,
    TestRunner,
    parse_output,
    register_framework,
    resolve_framework,
    supported_frameworks,
)

__all__ = [
    "FileAccess",
    "FrameworkStrategy",
    "LocalFileAccess",
    "TestRunner",
    "parse_output",
    "register_framework",
    "resolve_framework",
    "restore",
    "snapshot",
    "supported_frameworks",
]
