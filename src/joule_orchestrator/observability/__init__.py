"""Public observability primitives: structured logging, execution traces and decision graphs."""

from joule_orchestrator.observability.decision_graph import DecisionGraph, DecisionGraphBuilder
from joule_orchestrator.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    correlation_scope,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)
from joule_orchestrator.observability.trace import ExecutionTrace, TraceEventType, TraceLogger

__all__ = [
    "DecisionGraph",
    "DecisionGraphBuilder",
    "ExecutionTrace",
    "LoggingConfig",
    "LoggingHandle",
    "TraceEventType",
    "TraceLogger",
    "correlation_scope",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
