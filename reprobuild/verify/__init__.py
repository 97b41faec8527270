"""Reproducibility verification module."""

from reprobuild.verify.verifier import ReproducibilityVerifier, VerificationReport

__all__ = ["ReproducibilityVerifier", "VerificationReport"]
