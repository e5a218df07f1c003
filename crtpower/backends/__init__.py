"""
Backend abstraction for crtpower model fitting.

This module provides a unified interface for the regression code that
analyses each replicate, so the simulation loop never imports a specific
fitting routine directly. The built-in backend wraps statsmodels
(MixedLM, GEE) and the quadrature GLMM solver.

Users can replace it with any object implementing ``FittingBackend`` via
``set_backend``; ``set_backend('statsmodels')`` or ``reset_backend()``
restores the built-in one.
"""

from typing import Protocol, Union, runtime_checkable

import numpy as np

from ..stats.mixed_models import FitSummary


@runtime_checkable
class FittingBackend(Protocol):
    """Protocol defining the fitting backend interface.

    Both methods test the coefficient in column *target_index* of *X* and
    return a ``FitSummary``, or raise ``AnalysisFitError`` if the fit is
    rejected (non-convergence, non-finite estimates, numerical failure).
    """

    def glmm_analysis(
        self,
        X: np.ndarray,
        y: np.ndarray,
        cluster_ids: np.ndarray,
        target_index: int,
        family: str,
        dispersion: float,
    ) -> FitSummary:
        """Fit a random-intercept GLMM and return a z test."""
        ...

    def gee_analysis(
        self,
        X: np.ndarray,
        y: np.ndarray,
        cluster_ids: np.ndarray,
        target_index: int,
        family: str,
        dispersion: float,
    ) -> FitSummary:
        """Fit an exchangeable-correlation GEE and return a Wald test."""
        ...


# Name accepted by set_backend()
BUILTIN_BACKEND = "statsmodels"

# Global backend instance
_backend_instance = None
_backend_custom = False


def _create_backend() -> FittingBackend:
    from .statsmodels_backend import StatsmodelsBackend

    return StatsmodelsBackend()


def get_backend() -> FittingBackend:
    """
    Get the active fitting backend.

    On first call, creates the built-in backend. Subsequent calls return
    the cached instance unless reset_backend() is called.
    """
    global _backend_instance

    if _backend_instance is None:
        _backend_instance = _create_backend()
    return _backend_instance


def set_backend(backend: Union[str, FittingBackend]) -> None:
    """
    Set the fitting backend.

    Args:
        backend: ``'statsmodels'`` for the built-in backend, or a
            ``FittingBackend`` instance.

    Raises:
        ValueError: If the string is not recognized or the object does not
            implement ``FittingBackend``.
    """
    global _backend_instance, _backend_custom

    if isinstance(backend, str):
        if backend.lower().strip() != BUILTIN_BACKEND:
            raise ValueError(f"Unknown backend {backend!r}. Use {BUILTIN_BACKEND!r} or a FittingBackend instance")
        _backend_instance = _create_backend()
        _backend_custom = False
    elif isinstance(backend, FittingBackend):
        _backend_instance = backend
        _backend_custom = True
    else:
        raise ValueError(f"{type(backend).__name__} does not implement the FittingBackend interface")


def reset_backend() -> None:
    """Reset to the built-in backend."""
    global _backend_instance, _backend_custom
    _backend_instance = None
    _backend_custom = False


def get_backend_info() -> dict:
    """
    Get information about the current backend.

    Returns:
        Dictionary with backend name, module, and whether it is a
        user-supplied instance.
    """
    backend = get_backend()
    return {
        "name": type(backend).__name__,
        "module": type(backend).__module__,
        "custom": _backend_custom,
    }


__all__ = [
    "FittingBackend",
    "get_backend",
    "set_backend",
    "reset_backend",
    "get_backend_info",
]
