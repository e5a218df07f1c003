"""
Built-in fitting backend for crtpower.

Delegates to the fitters in ``crtpower.stats``: statsmodels ``MixedLM``
and ``GEE``, and the quadrature GLMM solver for non-Gaussian mixed models.
"""

import numpy as np

from ..stats.gee import _gee_analysis_statsmodels
from ..stats.mixed_models import FitSummary, _glmm_analysis


class StatsmodelsBackend:
    """Fitting backend built on statsmodels (MixedLM, GEE) and scipy (GLMM)."""

    def glmm_analysis(
        self,
        X: np.ndarray,
        y: np.ndarray,
        cluster_ids: np.ndarray,
        target_index: int,
        family: str,
        dispersion: float = 1.0,
    ) -> FitSummary:
        """Fit a random-intercept GLMM (REML for Gaussian, ML otherwise)."""
        return _glmm_analysis(X, y, cluster_ids, target_index, family, dispersion)

    def gee_analysis(
        self,
        X: np.ndarray,
        y: np.ndarray,
        cluster_ids: np.ndarray,
        target_index: int,
        family: str,
        dispersion: float = 1.0,
    ) -> FitSummary:
        """Fit an exchangeable GEE with robust standard errors."""
        return _gee_analysis_statsmodels(X, y, cluster_ids, target_index, family, dispersion)
