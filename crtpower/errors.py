"""
Exception types raised by crtpower.

Configuration problems are fatal and raised before any simulation runs.
Fit failures are per-replicate and normally absorbed by the simulation
runner, which drops the replicate and keeps going.
"""

from typing import Optional


class ConfigurationError(ValueError):
    """Invalid configuration input.

    Attributes:
        field: Name of the offending argument (e.g. ``"nsubjects"``).
    """

    def __init__(self, field: Optional[str], message: str):
        self.field = field
        if field is not None and field not in message:
            message = f"{field}: {message}"
        super().__init__(message)


class DesignInconsistencyError(ConfigurationError):
    """Crossover schedule or cluster-size vector fails a structural check."""


class AnalysisFitError(RuntimeError):
    """A model fit failed for a single replicate (e.g. non-convergence).

    Attributes:
        reason: Short description of why the fit was rejected.
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class InsufficientReplicatesError(RuntimeError):
    """No replicate produced a usable fit, so power cannot be estimated."""


__all__ = [
    "ConfigurationError",
    "DesignInconsistencyError",
    "AnalysisFitError",
    "InsufficientReplicatesError",
]
