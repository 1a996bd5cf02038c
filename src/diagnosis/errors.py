from __future__ import annotations

__all__ = [
    "DiagnosisError",
    "ConfigurationError",
    "EvaluationError",
    "ResamplingError",
]


class DiagnosisError(RuntimeError):
    """Base class for failures raised while diagnosing a design."""


class ConfigurationError(DiagnosisError):
    """Raised when the simulations table or diagnosand specification is unusable."""


class EvaluationError(DiagnosisError):
    """Raised when a diagnosand function returns malformed output."""


class ResamplingError(DiagnosisError):
    """Raised when simulations cannot be cluster-resampled."""
