"""
Runtime config loading.

Effective config is layered with the precedence CLI > env (``JOULE_``) > ``joule.toml``
> built-in defaults, validated after every layer, and finally turned into the runtime
objects the planes consume (:func:`runtime_settings`).
"""

from __future__ import annotations

import dataclasses
import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

from joule_orchestrator.config.schema import (
    PROVIDER_NAMES,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from joule_orchestrator.constants import DEFAULT_CONFIG_FILENAME, ENV_PREFIX
from joule_orchestrator.control_plane.budgets import BUDGET_PRESETS, BudgetEnvelope
from joule_orchestrator.control_plane.engine import ExecutionSettings
from joule_orchestrator.domain.errors import ConfigError
from joule_orchestrator.synthesis_plane.model_catalog import EnergyConfig
from joule_orchestrator.synthesis_plane.router import RoutingConfig

DEFAULT_CONFIG_FILE: Final[str] = DEFAULT_CONFIG_FILENAME

# Config paths resolved relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_INTEGER_ENVELOPE_FIELDS: Final[frozenset[str]] = frozenset({"max_tool_calls", "max_escalations"})

_ValueKind = Literal["str", "int", "float", "bool", "list"]


@dataclass(frozen=True, slots=True)
class _Binding:
    path: tuple[str, ...]
    value_type: _ValueKind


class ConfigLoadError(ConfigError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    """Validated config turned into the objects the runtime is built from."""

    routing: RoutingConfig
    energy: EnergyConfig
    execution: ExecutionSettings
    budget_presets: Mapping[str, BudgetEnvelope]
    default_budget_preset: str
    crew_max_concurrency: int
    observability: Mapping[str, object]


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load effective config with precedence CLI > env > file > defaults.

    ``cli_overrides`` accepts dotted keys (``"routing.prefer_local"``) or nested
    mappings. A profile is taken from ``profile``, then ``cli_overrides["profile"]``,
    then ``JOULE_PROFILE``.
    """

    resolved_path = _resolve_config_path(config_path)
    explicit_path = config_path is not None
    env_map = dict(os.environ if environ is None else environ)
    cli_map = dict(cli_overrides or {})

    file_payload = _load_toml_file(resolved_path, required=explicit_path)
    selected_profile = _resolve_profile(profile=profile, cli_overrides=cli_map, environ=env_map)

    merged = merge_config(default_config(), file_payload)
    merged = assert_valid_config(merged)

    if selected_profile is not None:
        merged = apply_profile_overlay(merged, selected_profile)

    env_overrides = _collect_env_overrides(merged, env_map)
    cli_payload = _materialize_cli_overrides(cli_map)

    merged = merge_config(merged, env_overrides)
    merged = merge_config(merged, cli_payload)
    merged = assert_valid_config(merged, active_profile=selected_profile)

    return normalize_paths(merged, base_dir=resolved_path.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve configured path fields relative to ``base_dir``."""

    materialized = merge_config({}, config)
    for field_path in PATH_FIELDS:
        value = _get_nested(materialized, field_path)
        if isinstance(value, str):
            _set_nested(materialized, field_path, _normalize_one_path(value, base_dir))
    return materialized


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    """JSON dump of the redacted effective config, keys sorted."""

    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def runtime_settings(config: Mapping[str, Any]) -> RuntimeSettings:
    providers = config.get("providers", {})
    enabled_providers = {
        name: section
        for name, section in providers.items()
        if isinstance(section, Mapping) and section.get("enabled", True) is not False
    }
    budgets = config.get("budgets", {})
    return RuntimeSettings(
        routing=RoutingConfig.from_mapping(config.get("routing", {}), enabled_providers),
        energy=EnergyConfig.from_mapping(config.get("energy", {})),
        execution=ExecutionSettings.from_mapping(config.get("execution", {})),
        budget_presets=budget_presets(budgets.get("presets", {})),
        default_budget_preset=str(budgets.get("default_preset", "medium")),
        crew_max_concurrency=int(config.get("crew", {}).get("max_concurrency", 8)),
        observability=dict(config.get("observability", {})),
    )


def budget_presets(overrides: Mapping[str, Mapping[str, object]]) -> dict[str, BudgetEnvelope]:
    """Built-in presets with per-field overrides applied."""

    presets = dict(BUDGET_PRESETS)
    for name, fields in overrides.items():
        values = {
            key: int(value) if key in _INTEGER_ENVELOPE_FIELDS else value
            for key, value in fields.items()
        }
        try:
            presets[name] = dataclasses.replace(presets[name], **values)
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigLoadError(f"invalid budget preset override {name!r}: {exc}") from exc
    return presets


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    return parsed


def _resolve_profile(
    *,
    profile: str | None,
    cli_overrides: Mapping[str, object],
    environ: Mapping[str, str],
) -> str | None:
    if profile is not None:
        return profile.strip() or None

    cli_profile = cli_overrides.get("profile")
    if cli_profile is not None:
        if not isinstance(cli_profile, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
        return cli_profile.strip() or None

    env_profile = environ.get(f"{ENV_PREFIX}PROFILE")
    if env_profile is None:
        return None
    return env_profile.strip() or None


def _collect_env_overrides(
    config: Mapping[str, object], environ: Mapping[str, str]
) -> dict[str, Any]:
    bindings = _build_bindings(config)
    overrides: dict[str, Any] = {}
    for env_name in sorted(bindings):
        raw = environ.get(env_name)
        if raw is None:
            continue
        binding = bindings[env_name]
        value = _coerce_env(raw, binding.value_type, env_name, binding.path)
        _set_nested(overrides, binding.path, value)
    return overrides


def _build_bindings(config: Mapping[str, object]) -> dict[str, _Binding]:
    bindings: dict[str, _Binding] = {}

    for path, value in _iter_scalar_paths(config):
        if path and path[0] == "profiles":
            continue
        kind = _kind_for_value(value)
        if kind is None:
            continue
        bindings[_env_name_for_path(path)] = _Binding(path=path, value_type=kind)

    optional: list[_Binding] = [
        _Binding(("execution", "step_timeout_ms"), "float"),
        _Binding(("execution", "max_steps"), "int"),
        _Binding(("execution", "instructions"), "str"),
        _Binding(("routing", "provider_priority", "slm"), "list"),
        _Binding(("routing", "provider_priority", "llm"), "list"),
    ]
    for provider_name in PROVIDER_NAMES:
        optional.append(_Binding(("providers", provider_name, "slm_model"), "str"))
        optional.append(_Binding(("providers", provider_name, "llm_model"), "str"))
    for binding in optional:
        bindings.setdefault(_env_name_for_path(binding.path), binding)

    return bindings


def _iter_scalar_paths(
    payload: Mapping[str, object],
    prefix: tuple[str, ...] = (),
) -> list[tuple[tuple[str, ...], object]]:
    pairs: list[tuple[tuple[str, ...], object]] = []
    for key in sorted(payload):
        value = payload[key]
        path = (*prefix, key)
        if isinstance(value, Mapping):
            pairs.extend(_iter_scalar_paths(value, path))
        else:
            pairs.append((path, value))
    return pairs


def _kind_for_value(value: object) -> _ValueKind | None:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "str"
    if isinstance(value, (list, tuple)):
        return "list"
    return None


def _coerce_env(
    raw: str,
    value_type: _ValueKind,
    env_name: str,
    path: tuple[str, ...],
) -> object:
    value = raw.strip()
    if value_type == "str":
        return value
    if value_type == "list":
        return [item.strip() for item in value.split(",") if item.strip()]
    if value_type == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(path)} must be an integer") from exc
    if value_type == "float":
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(path)} must be a number") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(
        f"{env_name} -> {'.'.join(path)} must be a boolean (true/false/1/0/yes/no/on/off)"
    )


def _materialize_cli_overrides(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(cli_overrides):
        if key == "profile":
            continue
        value = cli_overrides[key]
        if "." in key:
            path = tuple(part for part in key.split(".") if part)
            if not path:
                raise ConfigLoadError(f"invalid CLI override key {key!r}")
            _set_nested(payload, path, value)
            continue
        if isinstance(value, Mapping):
            payload[key] = merge_config({}, value)
            continue
        payload[key] = value
    return payload


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    cursor = target
    for part in path[:-1]:
        next_node = cursor.get(part)
        if not isinstance(next_node, dict):
            next_node = {}
            cursor[part] = next_node
        cursor = next_node
    cursor[path[-1]] = value


def _get_nested(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    cursor: object = payload
    for part in path:
        if not isinstance(cursor, Mapping) or part not in cursor:
            return None
        cursor = cursor[part]
    return cursor


def _normalize_one_path(raw: str, base_dir: Path) -> str:
    expanded = os.path.expandvars(raw)
    candidate = Path(expanded).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(str(candidate))).as_posix()


def _env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "PATH_FIELDS",
    "RuntimeSettings",
    "budget_presets",
    "dump_effective_config",
    "effective_config",
    "load_config",
    "normalize_paths",
    "runtime_settings",
]
