"""Constitution rules checked before every tool call and model output."""

from joule_orchestrator.security.constitution import (
    Constitution,
    ConstitutionRule,
    ConstitutionViolation,
    RuleSeverity,
)

__all__ = ["Constitution", "ConstitutionRule", "ConstitutionViolation", "RuleSeverity"]
