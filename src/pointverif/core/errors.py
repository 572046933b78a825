from __future__ import annotations


class VerificationInputError(ValueError):
    """Fatal input problem: missing columns, inconsistent options, bad schema."""


class NoDataError(RuntimeError):
    """No lead-time chunk produced any forecast/observation pairs."""
