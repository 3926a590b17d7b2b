"""Runtime settings resolved from the environment and an optional YAML file."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ValidationError
from .memory.schema import CycleConfig

DEFAULT_CONFIG_NAME = "rgr.yaml"
DEFAULT_STATE_DIR_NAME = "rgr-tdd-state"

# YAML section -> {yaml key: Settings attribute}
_SECTION_FIELDS: Dict[str, Dict[str, str]] = {
    "engine": {
        "test_framework": "test_framework",
        "language": "language",
        "coverage_threshold": "coverage_threshold",
        "strict_mode": "strict_mode",
        "test_timeout": "test_timeout",
    },
    "service": {
        "base_url": "service_base_url",
        "model": "model",
        "timeout": "service_timeout",
        "failure_threshold": "failure_threshold",
        "reset_timeout": "reset_timeout",
        "max_retries": "max_retries",
        "base_delay": "base_delay",
        "max_delay": "max_delay",
        "multiplier": "multiplier",
    },
    "paths": {
        "state_dir": "state_dir",
        "workspace": "workspace",
    },
}


def _default_state_dir() -> Path:
    return Path(tempfile.gettempdir()) / DEFAULT_STATE_DIR_NAME


@dataclass(slots=True)
class Settings:
    """Resolved configuration for one engine process."""

    state_dir: Path = field(default_factory=_default_state_dir)
    workspace: Path = field(default_factory=Path.cwd)
    test_framework: str = "jest"
    language: str = "typescript"
    coverage_threshold: float = 80.0
    strict_mode: bool = True
    test_timeout: float = 300.0
    service_base_url: str = "http://localhost:11434"
    model: str = "llama2"
    service_timeout: float = 60.0
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0

    def cycle_defaults(self) -> CycleConfig:
        """Config used when the state document has not persisted one yet."""
        return CycleConfig(
            test_framework=self.test_framework,
            language=self.language,
            coverage_threshold=self.coverage_threshold,
            strict_mode=self.strict_mode,
        )


def _coerce(name: str, value: Any, template: Any) -> Any:
    """Convert ``value`` to the type of the ``template`` default for ``name``."""
    try:
        if isinstance(template, bool):
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() != "false"
        if isinstance(template, int):
            return int(value)
        if isinstance(template, float):
            return float(value)
        if isinstance(template, Path):
            return Path(str(value)).expanduser()
    except (TypeError, ValueError) as error:
        raise ValidationError(f"Invalid value for {name}: {value!r}") from error
    return str(value)


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ValidationError(f"Failed to parse config {config_path}: {error}") from error
    if not isinstance(data, dict):
        raise ValidationError("Configuration must be a mapping at the top level.")
    return data


def _apply_yaml(settings: Settings, data: Mapping[str, Any], base_dir: Path) -> Settings:
    defaults = Settings()
    updates: Dict[str, Any] = {}
    for section, mapping in _SECTION_FIELDS.items():
        section_data = data.get(section) or {}
        if not isinstance(section_data, dict):
            raise ValidationError(f"Config section '{section}' must be a mapping.")
        for key, attr in mapping.items():
            if key not in section_data or section_data[key] is None:
                continue
            value = _coerce(f"{section}.{key}", section_data[key], getattr(defaults, attr))
            if isinstance(value, Path) and not value.is_absolute():
                value = (base_dir / value).resolve()
            updates[attr] = value
    return replace(settings, **updates)


_ENV_FIELDS: Dict[str, str] = {
    "TEST_FRAMEWORK": "test_framework",
    "MIN_COVERAGE": "coverage_threshold",
    "TDD_STRICT_MODE": "strict_mode",
    "OLLAMA_BASE_URL": "service_base_url",
    "TDD_STATE_DIR": "state_dir",
    "RGR_MODEL": "model",
    "RGR_TEST_TIMEOUT": "test_timeout",
    "RGR_WORKSPACE": "workspace",
}


def _apply_env(settings: Settings, env: Mapping[str, str]) -> Settings:
    defaults = Settings()
    updates: Dict[str, Any] = {}
    for variable, attr in _ENV_FIELDS.items():
        raw = env.get(variable)
        if raw is None or not str(raw).strip():
            continue
        updates[attr] = _coerce(variable, raw, getattr(defaults, attr))
    return replace(settings, **updates)


def load_settings(
    *,
    env: Optional[Mapping[str, str]] = None,
    config_path: Path | str | None = None,
) -> Settings:
    """Resolve settings: built-in defaults, then ``rgr.yaml``, then environment variables.

    An explicit ``config_path`` must exist. Without one, ``rgr.yaml`` in the
    current directory is used when present.
    """

    environ = os.environ if env is None else env
    settings = Settings()

    if config_path is not None:
        path = Path(config_path)
        if not path.is_file():
            raise ValidationError(f"Config file not found: {path}")
    else:
        path = Path.cwd() / DEFAULT_CONFIG_NAME
    if path.is_file():
        settings = _apply_yaml(settings, _load_yaml(path), path.parent.resolve())

    settings = _apply_env(settings, environ)
    return replace(settings, workspace=Path(settings.workspace).resolve())


def settings_as_dict(settings: Settings) -> Dict[str, Any]:
    """JSON-friendly view of ``settings`` for health reports."""
    payload: Dict[str, Any] = {}
    for item in fields(settings):
        value = getattr(settings, item.name)
        payload[item.name] = str(value) if isinstance(value, Path) else value
    return payload


__all__ = ["DEFAULT_CONFIG_NAME", "Settings", "load_settings", "settings_as_dict"]
