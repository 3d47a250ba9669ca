"""
joule-orchestrator: budget-aware task execution that routes between small local models
and large remote models.

Importing the package root has no side effects. Config loading and logging setup are
explicit calls (:func:`joule_orchestrator.config.load_config`,
:func:`joule_orchestrator.observability.setup_logging`).
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
