"""
joule-orchestrator config package public API.

Purpose
- Export config loading and validation entrypoints and public error types.

Functional requirements
- Support loading from ``joule.toml`` + ``JOULE_`` env overrides.
- Fail fast with clear structured validation and load errors.
"""

from joule_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    PATH_FIELDS,
    ConfigLoadError,
    RuntimeSettings,
    dump_effective_config,
    effective_config,
    load_config,
    normalize_paths,
    runtime_settings,
)
from joule_orchestrator.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    JouleConfig,
    ProfileOverlay,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "JouleConfig",
    "PATH_FIELDS",
    "ProfileOverlay",
    "RuntimeSettings",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "effective_config",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "runtime_settings",
]
