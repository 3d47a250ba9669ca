"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from typing import Final

# Schema versions for serialized contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
CREW_DEFINITION_SCHEMA_VERSION: Final[int] = 1
TRACE_SCHEMA_VERSION: Final[int] = 1

# Default config file and environment prefix.
DEFAULT_CONFIG_FILENAME: Final[str] = "joule.toml"
ENV_PREFIX: Final[str] = "JOULE_"

# Budget dimensions, in the order they are checked.
BUDGET_DIMENSIONS: Final[tuple[str, ...]] = (
    "tokens",
    "cost",
    "latency",
    "tool_calls",
    "escalations",
    "energy",
    "carbon",
)

BUDGET_PRESET_NAMES: Final[tuple[str, ...]] = ("low", "medium", "high", "unlimited")
DEFAULT_BUDGET_PRESET: Final[str] = "medium"

# Engine bounds.
DEFAULT_STEP_CONFIDENCE: Final[float] = 0.7
MIN_STEP_CONFIDENCE: Final[float] = 0.1
MAX_STEP_CONFIDENCE: Final[float] = 1.0
DEFAULT_STEP_MAX_RETRIES: Final[int] = 2
MIN_CHECKPOINT_INTERVAL: Final[int] = 3

# Crew defaults.
DEFAULT_AGENT_RETRY_DELAY_MS: Final[int] = 1000
DEFAULT_AGENT_MAX_ITERATIONS: Final[int] = 10
SEQUENTIAL_AGENT_MAX_RETRIES: Final[int] = 2
DEFAULT_CREW_CONCURRENCY: Final[int] = 8
BUDGET_SHARE_TOLERANCE: Final[float] = 1.001

# Provider names used by the default priority lists.
LOCAL_PROVIDER_NAME: Final[str] = "ollama"
BASELINE_MODEL_ID: Final[str] = "gpt-4o"

# Tool risk tiers used by plan simulation.
HIGH_RISK_TOOLS: Final[frozenset[str]] = frozenset(
    {"file_write", "os_keyboard", "os_mouse", "browser_evaluate"}
)
MEDIUM_RISK_TOOLS: Final[frozenset[str]] = frozenset(
    {"browser_click", "browser_type", "os_clipboard", "http_fetch"}
)

__all__ = [
    "BASELINE_MODEL_ID",
    "BUDGET_DIMENSIONS",
    "BUDGET_PRESET_NAMES",
    "BUDGET_SHARE_TOLERANCE",
    "CONFIG_SCHEMA_VERSION",
    "CREW_DEFINITION_SCHEMA_VERSION",
    "DEFAULT_AGENT_MAX_ITERATIONS",
    "DEFAULT_AGENT_RETRY_DELAY_MS",
    "DEFAULT_BUDGET_PRESET",
    "DEFAULT_CONFIG_FILENAME",
    "DEFAULT_CREW_CONCURRENCY",
    "DEFAULT_STEP_CONFIDENCE",
    "DEFAULT_STEP_MAX_RETRIES",
    "ENV_PREFIX",
    "HIGH_RISK_TOOLS",
    "LOCAL_PROVIDER_NAME",
    "MAX_STEP_CONFIDENCE",
    "MEDIUM_RISK_TOOLS",
    "MIN_CHECKPOINT_INTERVAL",
    "MIN_STEP_CONFIDENCE",
    "SEQUENTIAL_AGENT_MAX_RETRIES",
    "TRACE_SCHEMA_VERSION",
]
