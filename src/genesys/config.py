"""Configuration loader for genesys.

Settings are merged from several sources, lowest precedence first:

1. Built-in defaults.
2. ``~/.genesys/settings.yml`` (or an override path).
3. Environment variables prefixed with ``GENESYS_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export GENESYS_RETRY__MAX_ATTEMPTS=3
    export GENESYS_DEFAULT_REGION=eu-west-1

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load genesys settings. Install with "
        "`pip install genesys` or ensure PyYAML>=6.0 is available."
    ) from exc

from .context import MAX_ATTEMPTS_CAP, RetryPolicy

ENV_PREFIX = "GENESYS_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DiscoveryConfig:
    """Parallel discovery settings."""

    max_workers: int = 5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_workers": self.max_workers}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for genesys."""

    config_file: Path
    config_dir: Path
    state_file: Path
    logs_dir: Path
    resources_dir: Path
    default_provider: str
    default_region: str
    call_timeout: float
    retry: RetryPolicy
    discovery: DiscoveryConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "config_dir": str(self.config_dir),
            "state_file": str(self.state_file),
            "logs_dir": str(self.logs_dir),
            "resources_dir": str(self.resources_dir),
            "default_provider": self.default_provider,
            "default_region": self.default_region,
            "call_timeout": self.call_timeout,
            "retry": self.retry.to_dict(),
            "discovery": self.discovery.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.genesys/settings.yml",
    "config_dir": "~/.genesys",
    "state_file": "~/.genesys-state.json",
    "logs_dir": None,  # derived from config_dir when absent
    "resources_dir": "resources",
    "default_provider": "aws",
    "default_region": "us-east-1",
    "call_timeout": 60.0,
    "retry": {
        "max_attempts": MAX_ATTEMPTS_CAP,
        "base_delay": 0.5,
        "max_delay": 8.0,
        "jitter": 0.25,
    },
    "discovery": {
        "max_workers": 5,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS = {
    "retry": {"max_attempts", "base_delay", "max_delay", "jitter"},
    "discovery": {"max_workers"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        extra = set(mapping.keys()) - allowed
        if extra:
            joined = ", ".join(f"{section}.{key}" for key in sorted(extra))
            raise ConfigError(f"Unknown configuration keys: {joined}.")

    for key in ("default_provider", "default_region"):
        value = raw.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{key} must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_dir = _to_path(raw["config_dir"])
    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value else config_dir / "logs"

    retry_raw = _as_dict(raw.get("retry"), "retry")
    max_attempts = _expect_int(retry_raw.get("max_attempts"), "retry.max_attempts", default=5)
    if not 1 <= max_attempts <= MAX_ATTEMPTS_CAP:
        raise ConfigError(
            f"retry.max_attempts must be between 1 and {MAX_ATTEMPTS_CAP}. Got {max_attempts}."
        )
    retry = RetryPolicy(
        max_attempts=max_attempts,
        base_delay=_expect_positive_float(retry_raw.get("base_delay"), "retry.base_delay", default=0.5),
        max_delay=_expect_positive_float(retry_raw.get("max_delay"), "retry.max_delay", default=8.0),
        jitter=_expect_non_negative_float(retry_raw.get("jitter"), "retry.jitter", default=0.25),
    )

    discovery_raw = _as_dict(raw.get("discovery"), "discovery")
    max_workers = _expect_int(discovery_raw.get("max_workers"), "discovery.max_workers", default=5)
    if max_workers < 1:
        raise ConfigError(f"discovery.max_workers must be at least 1. Got {max_workers}.")

    return AppConfig(
        config_file=_to_path(raw["config_file"]),
        config_dir=config_dir,
        state_file=_to_path(raw["state_file"]),
        logs_dir=logs_dir,
        resources_dir=_to_path(raw["resources_dir"]),
        default_provider=_expect_str(raw["default_provider"], "default_provider").strip().lower(),
        default_region=_expect_str(raw["default_region"], "default_region").strip(),
        call_timeout=_expect_positive_float(raw.get("call_timeout"), "call_timeout", default=60.0),
        retry=retry,
        discovery=DiscoveryConfig(max_workers=max_workers),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "CONFIG_ENV_VAR",
    "ConfigError",
    "DEFAULTS",
    "DiscoveryConfig",
    "ENV_PREFIX",
    "load_config",
]
