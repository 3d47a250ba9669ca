"""
Configuration schema, defaults and validation.

Each section is described by a table of :class:`FieldRule` entries; one walker checks a
raw TOML mapping against those tables and reports every problem as a
:class:`ConfigValidationIssue` (dotted path plus message). Profile overlays are checked
as partial configs, then merged and checked again. Secrets never live in config:
providers name the environment variable holding their key (``api_key_env``).
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Literal, NotRequired, TypedDict

from joule_orchestrator.constants import BUDGET_PRESET_NAMES, CONFIG_SCHEMA_VERSION
from joule_orchestrator.domain.errors import ConfigError

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("eco", "frugal", "performance")
LOCAL_PROVIDER_NAMES: Final[tuple[str, ...]] = ("ollama",)
REMOTE_PROVIDER_NAMES: Final[tuple[str, ...]] = ("anthropic", "openai", "google")
PROVIDER_NAMES: Final[tuple[str, ...]] = LOCAL_PROVIDER_NAMES + REMOTE_PROVIDER_NAMES
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
REDACTED: Final[str] = "<redacted>"

_ENV_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")
_PROFILE_NAME = re.compile(r"[a-z][a-z0-9_-]*")
_WORD_SPLIT = re.compile(r"[^A-Za-z0-9]+|(?<=[a-z0-9])(?=[A-Z])")
# Word-level matches, so ``max_tokens`` and ``keyboard`` stay allowed.
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "password", "passwd", "apikey", "credential", "credentials", "auth"}
)
_SECRET_PAIRS: Final[frozenset[tuple[str, str]]] = frozenset(
    {("api", "key"), ("private", "key"), ("access", "token"), ("refresh", "token")}
)


class MetaConfig(TypedDict):
    schema_version: int


class RoutingSection(TypedDict):
    prefer_local: bool
    slm_confidence_threshold: float
    complexity_threshold: float
    max_replan_depth: int
    prefer_efficient_models: bool
    provider_priority: NotRequired[dict[str, list[str]]]


class BudgetsSection(TypedDict):
    default_preset: str
    presets: NotRequired[dict[str, dict[str, float]]]


class EnergySection(TypedDict):
    enabled: bool
    grid_carbon_intensity: float
    local_model_carbon_intensity: float
    include_in_routing: bool
    energy_weight: float


class ProviderSettings(TypedDict, total=False):
    enabled: bool
    base_url: str
    api_key_env: str
    slm_model: str
    llm_model: str


class ProvidersSection(TypedDict):
    ollama: ProviderSettings
    anthropic: ProviderSettings
    openai: ProviderSettings
    google: ProviderSettings


class ExecutionSection(TypedDict):
    abort_on_high_severity: bool
    enable_critique: bool
    enable_goal_checkpoints: bool
    synthesis_temperature: float
    step_timeout_ms: NotRequired[float]
    max_steps: NotRequired[int]
    instructions: NotRequired[str]


class CrewSection(TypedDict):
    max_concurrency: int


class ObservabilitySection(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    log_to_file: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    routing: dict[str, object]
    budgets: dict[str, object]
    energy: dict[str, object]
    providers: dict[str, object]
    execution: dict[str, object]
    crew: dict[str, object]
    observability: dict[str, object]


class JouleConfig(TypedDict):
    meta: MetaConfig
    routing: RoutingSection
    budgets: BudgetsSection
    energy: EnergySection
    providers: ProvidersSection
    execution: ExecutionSection
    crew: CrewSection
    observability: ObservabilitySection
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[JouleConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "routing": {
        "prefer_local": True,
        "slm_confidence_threshold": 0.6,
        "complexity_threshold": 0.7,
        "max_replan_depth": 2,
        "prefer_efficient_models": False,
    },
    "budgets": {
        "default_preset": "medium",
    },
    "energy": {
        "enabled": True,
        "grid_carbon_intensity": 400.0,
        "local_model_carbon_intensity": 0.0,
        "include_in_routing": False,
        "energy_weight": 0.3,
    },
    "providers": {
        "ollama": {
            "enabled": True,
            "base_url": "http://localhost:11434",
            "slm_model": "llama3.2:3b",
        },
        "anthropic": {
            "enabled": True,
            "api_key_env": "JOULE_ANTHROPIC_API_KEY",
        },
        "openai": {
            "enabled": True,
            "api_key_env": "JOULE_OPENAI_API_KEY",
        },
        "google": {
            "enabled": False,
            "api_key_env": "JOULE_GOOGLE_API_KEY",
        },
    },
    "execution": {
        "abort_on_high_severity": False,
        "enable_critique": True,
        "enable_goal_checkpoints": True,
        "synthesis_temperature": 0.3,
    },
    "crew": {
        "max_concurrency": 8,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": True,
        "log_to_file": True,
        "redact_secrets": True,
    },
    "profiles": {
        "eco": {
            "routing": {"prefer_local": True, "prefer_efficient_models": True},
            "energy": {"include_in_routing": True, "energy_weight": 0.6},
        },
        "frugal": {
            "routing": {"prefer_local": True, "max_replan_depth": 1},
            "budgets": {"default_preset": "low"},
            "execution": {"enable_critique": False, "enable_goal_checkpoints": False},
        },
        "performance": {
            "routing": {"prefer_local": False, "complexity_threshold": 0.5},
            "budgets": {"default_preset": "high"},
        },
    },
}



RuleKind = Literal["bool", "int", "number", "text", "choice", "names", "env", "url", "table"]


@dataclass(frozen=True, slots=True)
class FieldRule:
    """How one config key is checked and normalized."""

    kind: RuleKind
    required: bool = False
    minimum: float | None = None
    maximum: float | None = None
    positive: bool = False
    choices: tuple[str, ...] = ()
    upper: bool = False
    fields: Mapping[str, FieldRule] = field(default_factory=dict)


def _flag(required: bool = True) -> FieldRule:
    return FieldRule("bool", required=required)


def _ratio(required: bool = True) -> FieldRule:
    return FieldRule("number", required=required, minimum=0.0, maximum=1.0)


ENVELOPE_RULES: Final[Mapping[str, FieldRule]] = {
    name: FieldRule("number", minimum=0.0)
    for name in (
        "max_tokens",
        "max_latency_ms",
        "max_tool_calls",
        "max_escalations",
        "cost_ceiling_usd",
        "max_energy_wh",
        "max_carbon_grams",
    )
}

SECTION_RULES: Final[Mapping[str, Mapping[str, FieldRule]]] = {
    "meta": {"schema_version": FieldRule("int", required=True, minimum=1)},
    "routing": {
        "prefer_local": _flag(),
        "prefer_efficient_models": _flag(),
        "slm_confidence_threshold": _ratio(),
        "complexity_threshold": _ratio(),
        "max_replan_depth": FieldRule("int", required=True, minimum=0, maximum=10),
        "provider_priority": FieldRule(
            "table", fields={"slm": FieldRule("names"), "llm": FieldRule("names")}
        ),
    },
    "budgets": {
        "default_preset": FieldRule("choice", required=True, choices=BUDGET_PRESET_NAMES),
        "presets": FieldRule(
            "table",
            fields={
                name: FieldRule("table", fields=ENVELOPE_RULES) for name in BUDGET_PRESET_NAMES
            },
        ),
    },
    "energy": {
        "enabled": _flag(),
        "include_in_routing": _flag(),
        "grid_carbon_intensity": FieldRule("number", required=True, minimum=0.0),
        "local_model_carbon_intensity": FieldRule("number", required=True, minimum=0.0),
        "energy_weight": _ratio(),
    },
    "execution": {
        "abort_on_high_severity": _flag(),
        "enable_critique": _flag(),
        "enable_goal_checkpoints": _flag(),
        "synthesis_temperature": FieldRule("number", required=True, minimum=0.0, maximum=2.0),
        "step_timeout_ms": FieldRule("number", positive=True),
        "max_steps": FieldRule("int", minimum=1),
        "instructions": FieldRule("text"),
    },
    "crew": {"max_concurrency": FieldRule("int", required=True, minimum=1)},
    "observability": {
        "log_level": FieldRule("choice", required=True, choices=LOG_LEVELS, upper=True),
        "log_dir": FieldRule("text", required=True),
        "log_to_stdout": _flag(),
        "log_to_file": _flag(),
        "redact_secrets": _flag(),
    },
}

_PROVIDER_COMMON: Final[Mapping[str, FieldRule]] = {
    "enabled": _flag(required=False),
    "slm_model": FieldRule("text"),
    "llm_model": FieldRule("text"),
}
LOCAL_PROVIDER_RULES: Final[Mapping[str, FieldRule]] = {
    **_PROVIDER_COMMON,
    "base_url": FieldRule("url"),
}
REMOTE_PROVIDER_RULES: Final[Mapping[str, FieldRule]] = {
    **_PROVIDER_COMMON,
    "api_key_env": FieldRule("env", required=True),
}

SECTION_NAMES: Final[tuple[str, ...]] = (*SECTION_RULES, "providers")


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Normalized config, or ``None`` with the issues that prevented it."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ConfigError):
    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        rendered = (
            "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
            if self.issues
            else "unknown validation failure"
        )
        super().__init__(f"invalid config:\n{rendered}")


def default_config() -> JouleConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "rewrite joule.toml for the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than {ConfigSchemaVersion}; "
            "upgrade the joule-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; tables merge, scalars and lists replace."""

    merged = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named ``[profiles.<name>]`` overlay and re-validate the result."""

    selected = profile.strip() if profile else ""
    if not selected:
        return copy.deepcopy(dict(config))
    profiles = config.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object, *, active_profile: str | None = None
) -> ConfigValidationResult:
    checker = _Checker()
    normalized = checker.root(config)
    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if normalized is not None and selected and selected not in normalized.get("profiles", {}):
        checker.issue("profiles", f"profile {selected!r} is not defined")
    if checker.issues or normalized is None:
        return ConfigValidationResult(config=None, issues=tuple(checker.issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object, *, active_profile: str | None = None
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy for logs and ``--dump-config``: ``*_env`` names and secret-looking keys masked."""

    if not isinstance(config, Mapping):
        return {}
    return _redacted(config)  # type: ignore[return-value]


def looks_like_secret(key: str) -> bool:
    words = [word for word in _WORD_SPLIT.split(key.strip()) if word]
    lowered = [word.lower() for word in words]
    if lowered and lowered[-1] == "env":
        return False
    if any(word in _SECRET_WORDS or word.endswith("token") for word in lowered):
        return True
    return any(pair in _SECRET_PAIRS for pair in zip(lowered, lowered[1:]))


class _Checker:
    """Walks a raw mapping against the rule tables, collecting issues."""

    def __init__(self) -> None:
        self.issues: list[ConfigValidationIssue] = []

    def issue(self, path: str, message: str) -> None:
        self.issues.append(ConfigValidationIssue(path, message))

    def root(self, raw: object) -> dict[str, Any] | None:
        payload = self.table(raw, "<root>")
        if payload is None:
            return None
        self.unknown(payload, {*SECTION_NAMES, "profiles"}, "")
        out = self.sections(payload, "", partial=False)
        if "profiles" in payload:
            profiles = self.table(payload["profiles"], "profiles")
            if profiles is not None:
                out["profiles"] = self.profiles(profiles)
        version = out.get("meta", {}).get("schema_version")
        if version is not None and version != ConfigSchemaVersion:
            self.issue("meta.schema_version", migration_guidance(version))
        return out

    def sections(
        self, payload: Mapping[str, object], prefix: str, *, partial: bool
    ) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name in SECTION_NAMES:
            path = _join(prefix, name)
            if name not in payload:
                if not partial and name != "providers":
                    self.issue(path, "missing required field")
                continue
            section = self.table(payload[name], path)
            if section is None:
                continue
            if name == "providers":
                out[name] = self.providers(section, path, partial=partial)
            else:
                out[name] = self.fields(section, SECTION_RULES[name], path, partial=partial)
        return out

    def providers(
        self, payload: Mapping[str, object], path: str, *, partial: bool
    ) -> dict[str, Any]:
        self.unknown(payload, set(PROVIDER_NAMES), path)
        out: dict[str, Any] = {}
        for name in PROVIDER_NAMES:
            if name not in payload:
                continue
            settings = self.table(payload[name], _join(path, name))
            if settings is None:
                continue
            local = name in LOCAL_PROVIDER_NAMES
            rules = LOCAL_PROVIDER_RULES if local else REMOTE_PROVIDER_RULES
            # A disabled remote provider needs no key reference.
            skip_required = partial or settings.get("enabled", True) is False
            out[name] = self.fields(settings, rules, _join(path, name), partial=skip_required)
        return out

    def profiles(self, payload: Mapping[str, object]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name in sorted(payload):
            path = _join("profiles", name)
            if not _PROFILE_NAME.fullmatch(name):
                self.issue(path, "profile names must match [a-z][a-z0-9_-]*")
                continue
            overlay = self.table(payload[name], path)
            if overlay is None:
                continue
            self.unknown(overlay, set(SECTION_NAMES) - {"meta"}, path)
            out[name] = self.sections(
                {key: value for key, value in overlay.items() if key != "meta"}, path, partial=True
            )
        return out

    def fields(
        self,
        payload: Mapping[str, object],
        rules: Mapping[str, FieldRule],
        path: str,
        *,
        partial: bool,
    ) -> dict[str, Any]:
        self.unknown(payload, set(rules), path)
        out: dict[str, Any] = {}
        for key, rule in rules.items():
            key_path = _join(path, key)
            if key not in payload:
                if rule.required and not partial:
                    self.issue(key_path, "missing required field")
                continue
            value = self.value(payload[key], rule, key_path, partial=partial)
            if value is not None:
                out[key] = value
        return out

    def value(self, raw: object, rule: FieldRule, path: str, *, partial: bool) -> Any:
        kind = rule.kind
        if kind == "table":
            nested = self.table(raw, path)
            if nested is None:
                return None
            return self.fields(nested, rule.fields, path, partial=partial)
        if kind == "bool":
            if isinstance(raw, bool):
                return raw
            return self.expected(path, "boolean", raw)
        if kind in ("int", "number"):
            return self.number(raw, rule, path)
        if kind == "names":
            if isinstance(raw, str) or not isinstance(raw, Sequence):
                return self.expected(path, "list of strings", raw)
            names = [self.text(item, f"{path}[{index}]") for index, item in enumerate(raw)]
            return [name.lower() for name in names if name is not None]
        text = self.text(raw, path)
        if text is None:
            return None
        if kind == "choice":
            text = text.upper() if rule.upper else text
            if text not in rule.choices:
                expected = ", ".join(sorted(rule.choices))
                self.issue(path, f"invalid value {text!r}; expected one of: {expected}")
                return None
        elif kind == "env" and not _ENV_NAME.fullmatch(text):
            self.issue(path, "must be an env var name (example: JOULE_OPENAI_API_KEY)")
            return None
        elif kind == "url":
            if not text.startswith(("http://", "https://")):
                self.issue(path, "must be an http(s) URL")
                return None
            text = text.rstrip("/")
        elif kind == "text" and "\x00" in text:
            self.issue(path, "must not contain NUL bytes")
            return None
        return text

    def number(self, raw: object, rule: FieldRule, path: str) -> int | float | None:
        integral = rule.kind == "int"
        if isinstance(raw, bool) or not isinstance(raw, int if integral else (int, float)):
            return self.expected(path, "integer" if integral else "number", raw)
        value = raw if integral else float(raw)
        if math.isnan(value):
            self.issue(path, "must be a number")
        elif rule.positive and value <= 0:
            self.issue(path, "must be > 0")
        elif rule.minimum is not None and value < rule.minimum:
            self.issue(path, f"must be >= {_bound(rule.minimum, integral)}")
        elif rule.maximum is not None and value > rule.maximum:
            self.issue(path, f"must be <= {_bound(rule.maximum, integral)}")
        else:
            return value
        return None

    def text(self, raw: object, path: str) -> str | None:
        if not isinstance(raw, str):
            return self.expected(path, "string", raw)
        if not raw.strip():
            self.issue(path, "must not be empty")
            return None
        return raw.strip()

    def table(self, raw: object, path: str) -> dict[str, object] | None:
        if not isinstance(raw, Mapping):
            return self.expected(path, "object", raw)
        out: dict[str, object] = {}
        for key, item in raw.items():
            if isinstance(key, str):
                out[key] = item
            else:
                self.issue(path, f"object key must be string, got {type(key).__name__}")
        return out

    def unknown(self, payload: Mapping[str, object], allowed: set[str], path: str) -> None:
        for key in sorted(set(payload) - allowed):
            if looks_like_secret(key):
                self.issue(
                    _join(path, key),
                    "embedded secret values are forbidden; use an *_env key with an env var name",
                )
            else:
                self.issue(_join(path, key), "unknown field")

    def expected(self, path: str, what: str, raw: object) -> None:
        self.issue(path, f"expected {what}, got {type(raw).__name__}")
        return None


def _bound(limit: float, integral: bool) -> int | float:
    return int(limit) if integral else float(limit)


def _join(prefix: str, key: str) -> str:
    return f"{prefix}.{key}" if prefix else key


def _redacted(value: object) -> object:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if looks_like_secret(key) or key.endswith("_env") else _redacted(item)
            for key, item in sorted(value.items())
        }
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "ENVELOPE_RULES",
    "FieldRule",
    "JouleConfig",
    "PROVIDER_NAMES",
    "ProfileOverlay",
    "SECTION_RULES",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "looks_like_secret",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
