"""
Unit tests for config loading.

Coverage:
- Precedence: CLI > env > file > defaults.
- Env var path mapping and type coercion.
- Profile selection from argument, CLI overrides and ``JOULE_PROFILE``.
- Path normalization relative to the config file.
- Redacted effective config dumps and runtime object construction.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from joule_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
    runtime_settings,
)
from joule_orchestrator.config.loader import budget_presets
from joule_orchestrator.control_plane.budgets import BUDGET_PRESETS
from joule_orchestrator.domain.errors import ConfigError
from joule_orchestrator.synthesis_plane.providers.base import ModelTier

pytestmark = pytest.mark.unit


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _sha256_json(data: dict[str, object]) -> str:
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    default_path = _write_config(tmp_path / "empty.toml", "")
    config_path = _write_config(
        tmp_path / "joule.toml",
        """
[routing]
complexity_threshold = 0.6
""".strip(),
    )
    env = {"JOULE_ROUTING_COMPLEXITY_THRESHOLD": "0.55"}

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ=env)
    cli_loaded = load_config(
        config_path, environ=env, cli_overrides={"routing.complexity_threshold": 0.5}
    )

    assert default_loaded["routing"]["complexity_threshold"] == 0.7
    assert file_loaded["routing"]["complexity_threshold"] == 0.6
    assert env_loaded["routing"]["complexity_threshold"] == 0.55
    assert cli_loaded["routing"]["complexity_threshold"] == 0.5


def test_missing_default_file_falls_back_to_builtins(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = load_config(environ={})

    assert loaded["budgets"]["default_preset"] == "medium"
    assert loaded["observability"]["log_dir"] == (tmp_path / "logs").resolve().as_posix()


def test_explicit_missing_or_broken_file_raises(tmp_path: Path) -> None:
    broken = _write_config(tmp_path / "broken.toml", "[routing\nprefer_local = true")

    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "missing.toml", environ={})
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_env_mapping_covers_nested_and_optional_fields(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "joule.toml", "")

    loaded = load_config(
        config_path,
        environ={
            "JOULE_CREW_MAX_CONCURRENCY": "3",
            "JOULE_ROUTING_PREFER_LOCAL": "off",
            "JOULE_PROVIDERS_ANTHROPIC_LLM_MODEL": "claude-sonnet-4-20250514",
            "JOULE_ROUTING_PROVIDER_PRIORITY_LLM": "openai, anthropic,",
            "JOULE_EXECUTION_MAX_STEPS": "12",
            "UNRELATED": "ignored",
        },
    )

    assert loaded["crew"]["max_concurrency"] == 3
    assert loaded["routing"]["prefer_local"] is False
    assert loaded["providers"]["anthropic"]["llm_model"] == "claude-sonnet-4-20250514"
    assert loaded["routing"]["provider_priority"] == {"llm": ["openai", "anthropic"]}
    assert loaded["execution"]["max_steps"] == 12


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"JOULE_CREW_MAX_CONCURRENCY": "many"}, "crew.max_concurrency must be an integer"),
        ({"JOULE_ENERGY_ENERGY_WEIGHT": "heavy"}, "energy.energy_weight must be a number"),
        ({"JOULE_ROUTING_PREFER_LOCAL": "maybe"}, "routing.prefer_local must be a boolean"),
    ],
)
def test_invalid_env_coercion_raises_actionable_error(
    tmp_path: Path, env: dict[str, str], message: str
) -> None:
    config_path = _write_config(tmp_path / "joule.toml", "")

    with pytest.raises(ConfigLoadError, match=message):
        load_config(config_path, environ=env)


def test_out_of_range_override_fails_validation(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "joule.toml", "")

    with pytest.raises(ConfigValidationError) as caught:
        load_config(config_path, environ={}, cli_overrides={"crew": {"max_concurrency": 0}})

    assert [issue.path for issue in caught.value.issues] == ["crew.max_concurrency"]
    assert isinstance(caught.value, ConfigError)


def test_profile_selection_order(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "joule.toml", "")

    from_env = load_config(config_path, environ={"JOULE_PROFILE": "frugal"})
    from_cli = load_config(
        config_path, environ={"JOULE_PROFILE": "frugal"}, cli_overrides={"profile": "eco"}
    )
    from_argument = load_config(
        config_path,
        profile="performance",
        environ={"JOULE_PROFILE": "frugal"},
        cli_overrides={"profile": "eco"},
    )

    assert from_env["budgets"]["default_preset"] == "low"
    assert from_cli["routing"]["prefer_efficient_models"] is True
    assert from_argument["budgets"]["default_preset"] == "high"
    with pytest.raises(ConfigLoadError, match="'profile' must be a string"):
        load_config(config_path, environ={}, cli_overrides={"profile": 3})


def test_env_overrides_apply_on_top_of_profile(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "joule.toml", "")

    loaded = load_config(
        config_path,
        profile="frugal",
        environ={"JOULE_BUDGETS_DEFAULT_PRESET": "medium"},
    )

    assert loaded["budgets"]["default_preset"] == "medium"
    assert loaded["routing"]["max_replan_depth"] == 1


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "conf" / "joule.toml",
        """
[observability]
log_dir = "../state/logs/"
""".strip(),
    )

    loaded = load_config(config_path, environ={})

    expected = (tmp_path / "state" / "logs").resolve().as_posix()
    assert loaded["observability"]["log_dir"] == expected


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "joule.toml",
        """
[energy]
include_in_routing = true
""".strip(),
    )
    env = {"JOULE_ENERGY_ENERGY_WEIGHT": "0.4"}

    first = load_config(config_path, environ=env)
    second = load_config(config_path, environ=env)

    assert _sha256_json(first) == _sha256_json(second)


def test_dump_effective_config_is_redacted_and_sorted(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "joule.toml", "")
    loaded = load_config(config_path, environ={})

    dumped = dump_effective_config(loaded)
    parsed = json.loads(dumped)

    assert "JOULE_OPENAI_API_KEY" not in dumped
    assert parsed["providers"]["openai"]["api_key_env"] == "<redacted>"
    assert parsed["providers"]["ollama"]["base_url"] == "http://localhost:11434"
    assert dumped == dump_effective_config(loaded)


def test_runtime_settings_build_runtime_objects(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "joule.toml",
        """
[budgets]
default_preset = "low"

[budgets.presets.low]
max_tool_calls = 5

[execution]
abort_on_high_severity = true
step_timeout_ms = 2500

[providers.google]
enabled = false
llm_model = "gemini-2.0-pro"
""".strip(),
    )

    settings = runtime_settings(
        load_config(
            config_path,
            environ={"JOULE_ROUTING_PROVIDER_PRIORITY_LLM": "openai,anthropic"},
        )
    )

    assert settings.routing.model_override("ollama", ModelTier.SLM) == "llama3.2:3b"
    assert settings.routing.model_override("google", ModelTier.LLM) is None
    assert settings.routing.priority_for(ModelTier.LLM) == ("openai", "anthropic")
    assert settings.energy.grid_carbon_intensity == 400.0
    assert settings.execution.abort_on_high_severity is True
    assert settings.execution.step_timeout_ms == 2500.0
    assert settings.default_budget_preset == "low"
    assert settings.budget_presets["low"].max_tool_calls == 5
    assert settings.budget_presets["medium"] == BUDGET_PRESETS["medium"]
    assert settings.crew_max_concurrency == 8
    assert settings.observability["redact_secrets"] is True


@pytest.mark.parametrize(
    "overrides",
    [{"ghost": {"max_tokens": 1.0}}, {"low": {"bogus_field": 1.0}}],
)
def test_budget_preset_overrides_reject_unknown_names(overrides) -> None:
    with pytest.raises(ConfigLoadError, match="invalid budget preset override"):
        budget_presets(overrides)
