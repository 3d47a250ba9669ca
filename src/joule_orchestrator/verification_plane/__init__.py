"""Deterministic step verification and success-criteria evaluation."""

from joule_orchestrator.verification_plane.step_checks import (
    VerificationOutcome,
    evaluate_criteria,
    verify_step,
)

__all__ = ["VerificationOutcome", "evaluate_criteria", "verify_step"]
