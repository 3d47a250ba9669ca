"""
Unit tests for config schema validation.

Coverage:
- Built-in defaults validate as a full config.
- Unknown keys and invalid types are rejected with dotted paths.
- Embedded secrets are rejected while ``*_env`` references are accepted.
- Profile overlays deep-merge and re-validate.
- Redaction is recursive and non-destructive.
"""

from __future__ import annotations

import pytest

from joule_orchestrator.config.schema import (
    BUILTIN_PROFILE_NAMES,
    SECTION_RULES,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    looks_like_secret,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)
from joule_orchestrator.domain.errors import ConfigError

pytestmark = pytest.mark.unit


def _paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_default_config_validates_and_is_a_fresh_copy() -> None:
    config = default_config()

    result = validate_config(config)

    assert result.is_valid
    assert result.config is not None
    assert result.config["meta"]["schema_version"] == ConfigSchemaVersion
    assert sorted(result.config["profiles"]) == sorted(BUILTIN_PROFILE_NAMES)
    config["routing"]["prefer_local"] = False
    assert default_config()["routing"]["prefer_local"] is True


def test_unknown_keys_are_rejected_explicitly() -> None:
    config = default_config()
    config["routing"]["turbo"] = True  # type: ignore[typeddict-unknown-key]
    config["extras"] = {}  # type: ignore[typeddict-unknown-key]

    result = validate_config(config)

    assert not result.is_valid
    assert result.config is None
    assert ConfigValidationIssue("routing.turbo", "unknown field") in result.issues
    assert ConfigValidationIssue("extras", "unknown field") in result.issues


def test_type_and_range_violations_report_exact_paths() -> None:
    config = merge_config(
        default_config(),
        {
            "routing": {"complexity_threshold": 1.5, "prefer_local": "yes"},
            "crew": {"max_concurrency": 0},
            "observability": {"log_level": "verbose"},
            "execution": {"step_timeout_ms": -5},
        },
    )

    issues = {issue.path: issue.message for issue in validate_config(config).issues}

    assert issues == {
        "routing.prefer_local": "expected boolean, got str",
        "routing.complexity_threshold": "must be <= 1.0",
        "crew.max_concurrency": "must be >= 1",
        "observability.log_level": (
            "invalid value 'VERBOSE'; expected one of: DEBUG, ERROR, INFO, WARNING"
        ),
        "execution.step_timeout_ms": "must be > 0",
    }


def test_missing_sections_and_fields_are_reported() -> None:
    config = default_config()
    del config["energy"]  # type: ignore[misc]
    del config["budgets"]["default_preset"]  # type: ignore[misc]

    paths = _paths(config)

    assert "energy" in paths
    assert "budgets.default_preset" in paths
    assert _paths("not a table") == ["<root>"]


def test_embedded_secret_is_rejected_but_api_key_env_is_allowed() -> None:
    config = merge_config(
        default_config(),
        {"providers": {"openai": {"apiKey": "sk-live", "api_key_env": "MY_OPENAI_KEY"}}},
    )

    issues = validate_config(config).issues

    assert issues == (
        ConfigValidationIssue(
            "providers.openai.apiKey",
            "embedded secret values are forbidden; use an *_env key with an env var name",
        ),
    )
    bad_env = merge_config(default_config(), {"providers": {"openai": {"api_key_env": "lower"}}})
    assert _paths(bad_env) == ["providers.openai.api_key_env"]


def test_remote_providers_need_api_key_env_unless_disabled() -> None:
    config = default_config()
    del config["providers"]["anthropic"]["api_key_env"]

    assert _paths(config) == ["providers.anthropic.api_key_env"]
    config["providers"]["anthropic"]["enabled"] = False
    assert validate_config(config).is_valid


def test_provider_priority_and_presets_are_normalized() -> None:
    config = merge_config(
        default_config(),
        {
            "routing": {"provider_priority": {"llm": [" OpenAI ", "anthropic"]}},
            "budgets": {"presets": {"low": {"max_tokens": 2000, "max_tool_calls": 5}}},
            "providers": {"ollama": {"base_url": "http://gpu-box:11434/"}},
        },
    )

    validated = assert_valid_config(config)

    assert validated["routing"]["provider_priority"] == {"llm": ["openai", "anthropic"]}
    assert validated["budgets"]["presets"] == {"low": {"max_tokens": 2000.0, "max_tool_calls": 5.0}}
    assert validated["providers"]["ollama"]["base_url"] == "http://gpu-box:11434"

    bad = merge_config(default_config(), {"budgets": {"presets": {"tiny": {}}}})
    assert _paths(bad) == ["budgets.presets.tiny"]


def test_schema_version_mismatch_carries_migration_guidance() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": ConfigSchemaVersion + 1}})

    (issue,) = validate_config(config).issues

    assert issue.path == "meta.schema_version"
    assert "upgrade the joule-orchestrator runtime" in issue.message
    assert "older than supported" in migration_guidance(0)
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


def test_profile_overlay_deep_merges_and_revalidates() -> None:
    base = assert_valid_config(default_config())

    eco = apply_profile_overlay(base, "eco")
    frugal = apply_profile_overlay(base, "frugal")

    assert eco["routing"]["prefer_efficient_models"] is True
    assert eco["energy"]["energy_weight"] == 0.6
    assert eco["routing"]["complexity_threshold"] == base["routing"]["complexity_threshold"]
    assert frugal["budgets"]["default_preset"] == "low"
    assert frugal["execution"]["enable_critique"] is False
    assert apply_profile_overlay(base, None) == base
    assert apply_profile_overlay(base, "  ") == base


def test_unknown_or_invalid_profiles_raise_validation_errors() -> None:
    base = assert_valid_config(default_config())

    with pytest.raises(ConfigValidationError, match="profile 'turbo' is not defined"):
        apply_profile_overlay(base, "turbo")

    broken = merge_config(base, {"profiles": {"Bad Name": {}, "slow": {"crew": {"x": 1}}}})
    paths = _paths(broken)
    assert "profiles.Bad Name" in paths
    assert "profiles.slow.crew.x" in paths
    assert validate_config(base, active_profile="ghost").issues == (
        ConfigValidationIssue("profiles", "profile 'ghost' is not defined"),
    )


def test_validation_error_renders_every_issue() -> None:
    error = ConfigValidationError(
        [ConfigValidationIssue("a.b", "unknown field"), ConfigValidationIssue("c", "bad")]
    )

    assert isinstance(error, ConfigError)
    assert str(error) == "invalid config:\n- a.b: unknown field\n- c: bad"
    assert "unknown validation failure" in str(ConfigValidationError([]))


def test_merge_config_replaces_scalars_and_lists() -> None:
    base = {"a": {"b": 1, "c": [1, 2]}, "d": "x"}

    merged = merge_config(base, {"a": {"c": [3]}, "e": {"f": True}})

    assert merged == {"a": {"b": 1, "c": [3]}, "d": "x", "e": {"f": True}}
    assert base["a"]["c"] == [1, 2]


def test_redact_config_is_recursive_and_preserves_shape() -> None:
    config = {
        "providers": {"openai": {"api_key_env": "JOULE_OPENAI_API_KEY", "enabled": True}},
        "nested": [{"client_secret": "abc", "name": "ok"}],
    }

    redacted = redact_config(config)

    assert redacted == {
        "nested": [{"client_secret": "<redacted>", "name": "ok"}],
        "providers": {"openai": {"api_key_env": "<redacted>", "enabled": True}},
    }
    assert config["providers"]["openai"]["api_key_env"] == "JOULE_OPENAI_API_KEY"
    assert redact_config(["not", "a", "mapping"]) == {}


def test_defaults_supply_every_required_field() -> None:
    defaults = default_config()

    for section, rules in SECTION_RULES.items():
        required = {key for key, rule in rules.items() if rule.required}
        assert required <= set(defaults[section]), section  # type: ignore[literal-required]


@pytest.mark.parametrize(
    ("key", "secret"),
    [
        ("apiKey", True),
        ("api_key_env", False),
        ("client_secret", True),
        ("auth_token", True),
        ("max_tokens", False),
        ("keyboard_layout", False),
    ],
)
def test_secret_detection_matches_whole_words(key: str, secret: bool) -> None:
    assert looks_like_secret(key) is secret
