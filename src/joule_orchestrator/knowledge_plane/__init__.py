"""
Knowledge plane: agent memory used for planning hints and failure pattern lookup.

Only the in-process store ships here. Durable stores implement :class:`AgentMemory`.
"""

from joule_orchestrator.knowledge_plane.memory import (
    AgentMemory,
    FailurePattern,
    InMemoryAgentMemory,
)

__all__ = ["AgentMemory", "FailurePattern", "InMemoryAgentMemory"]
