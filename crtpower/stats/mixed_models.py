"""
Mixed-model fitting for replicate analysis.

Gaussian outcomes are fitted with statsmodels ``MixedLM`` (REML, random
intercept per cluster). Binary, Poisson and negative-binomial outcomes
are fitted by maximum likelihood with the cluster intercept integrated
out (``glmm_solver``), and tested with a Wald z on the observed
information.

Each fitter returns a ``FitSummary`` for one coefficient or raises
``AnalysisFitError`` when the fit cannot be trusted.
"""

import warnings
from dataclasses import dataclass

import numpy as np
from scipy.stats import norm

from ..errors import AnalysisFitError
from .glmm_solver import GLMM_FAMILIES, glmm_fit

# Binary ICC on the latent logistic scale uses pi^2 / 3 as level-1 variance
LOGISTIC_VARIANCE = np.pi**2 / 3

# maxiter ladder for MixedLM; later attempts start cold with more iterations
_MIXEDLM_ATTEMPTS = (100, 200, 500)

# L-BFGS-B iteration ladder for GLMM fits; later attempts warm-start
_FIT_ATTEMPTS = (100, 300, 1000)


@dataclass(frozen=True)
class FitSummary:
    """Test of one fixed-effect coefficient from a single fitted model.

    Attributes:
        estimate: Coefficient estimate (link scale).
        std_err: Standard error (model-based for mixed models, robust for GEE).
        statistic: Test statistic (z for mixed models, Wald chi-square for GEE).
        p_value: Two-sided p-value.
        fitted_icc: Intra-cluster correlation implied by the fitted model.
    """

    estimate: float
    std_err: float
    statistic: float
    p_value: float
    fitted_icc: float = np.nan


def _check_finite(estimate: float, std_err: float) -> None:
    if not np.isfinite(estimate):
        raise AnalysisFitError("Non-finite coefficient estimate")
    if not np.isfinite(std_err) or std_err <= 0:
        raise AnalysisFitError("Non-finite or zero standard error")


def _z_summary(estimate: float, std_err: float, fitted_icc: float) -> FitSummary:
    _check_finite(estimate, std_err)
    z = estimate / std_err
    p_value = float(2 * norm.sf(abs(z)))
    return FitSummary(
        estimate=float(estimate),
        std_err=float(std_err),
        statistic=float(z),
        p_value=p_value,
        fitted_icc=float(fitted_icc),
    )


def _random_intercept_variance(result) -> float:
    cov_re = result.cov_re
    if hasattr(cov_re, "iloc"):
        return float(cov_re.iloc[0, 0])
    return float(np.asarray(cov_re).flat[0])


def _mixedlm_analysis(
    X: np.ndarray,
    y: np.ndarray,
    cluster_ids: np.ndarray,
    target_index: int,
) -> FitSummary:
    """Linear mixed model with REML and a random intercept per cluster.

    Convergence is retried with an increasing iteration budget. Boundary
    warnings (zero cluster variance) are expected for small ICCs and do not
    reject the fit; a ``converged=False`` flag after the last attempt does.
    """
    try:
        from statsmodels.regression.mixed_linear_model import MixedLM
    except ImportError as e:
        raise ImportError("statsmodels required for mixed models: pip install statsmodels") from e

    model = MixedLM(endog=y, exog=X, groups=cluster_ids)

    result = None
    failure_reason = "Model did not converge"
    for max_iter in _MIXEDLM_ATTEMPTS:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                candidate = model.fit(reml=True, method="lbfgs", maxiter=max_iter)
        except (np.linalg.LinAlgError, ValueError, FloatingPointError) as e:
            failure_reason = f"{type(e).__name__}: {e}"
            continue
        if getattr(candidate, "converged", True):
            result = candidate
            break
        failure_reason = "Model did not converge"

    if result is None:
        raise AnalysisFitError(failure_reason)

    estimate = float(np.asarray(result.fe_params)[target_index])
    std_err = float(np.asarray(result.bse_fe)[target_index])

    tau_sq = max(_random_intercept_variance(result), 0.0)
    total = tau_sq + float(result.scale)
    fitted_icc = tau_sq / total if total > 0 else np.nan
    return _z_summary(estimate, std_err, fitted_icc)


def _quadrature_glmm_analysis(
    X: np.ndarray,
    y: np.ndarray,
    cluster_ids: np.ndarray,
    target_index: int,
    family: str,
    dispersion: float,
) -> FitSummary:
    """Binary or count GLMM fitted by maximum likelihood.

    The cluster intercept is integrated out by adaptive Gauss-Hermite
    quadrature (see ``glmm_solver``). An iteration-limit stop is retried
    from the previous optimum with a larger budget.
    """
    start = None
    result = None
    for max_iter in _FIT_ATTEMPTS:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                candidate = glmm_fit(X, y, cluster_ids, family, size=dispersion, max_iter=max_iter, start=start)
        except (np.linalg.LinAlgError, ValueError, FloatingPointError, OverflowError) as e:
            raise AnalysisFitError(f"{type(e).__name__}: {e}") from e
        if candidate.converged:
            result = candidate
            break
        start = candidate.params

    if result is None:
        raise AnalysisFitError("Maximum likelihood optimization reached its iteration limit")
    if not np.isfinite(result.log_likelihood):
        raise AnalysisFitError("Non-finite log-likelihood")

    estimate = float(result.beta[target_index])
    std_err = float(result.se_beta[target_index])

    if family == "binary":
        level1 = LOGISTIC_VARIANCE
    else:
        baseline = float(np.exp(result.beta[0]))
        level1 = np.log1p(1.0 / baseline + (1.0 / dispersion if family == "neg-binomial" else 0.0))
    fitted_icc = result.tau2 / (result.tau2 + level1)
    return _z_summary(estimate, std_err, fitted_icc)


def _glmm_analysis(
    X: np.ndarray,
    y: np.ndarray,
    cluster_ids: np.ndarray,
    target_index: int,
    family: str,
    dispersion: float = 1.0,
) -> FitSummary:
    """Dispatch a GLMM fit by outcome family.

    Args:
        X: ``(n, p)`` fixed-effects design matrix including the intercept.
        y: ``(n,)`` response vector.
        cluster_ids: ``(n,)`` cluster membership.
        target_index: Column of *X* whose coefficient is tested.
        family: ``"gaussian"``, ``"binary"``, ``"poisson"`` or ``"neg-binomial"``.
        dispersion: Negative-binomial size parameter.
    """
    if family == "gaussian":
        return _mixedlm_analysis(X, y, cluster_ids, target_index)
    if family in GLMM_FAMILIES:
        return _quadrature_glmm_analysis(X, y, cluster_ids, target_index, family, dispersion)
    raise AnalysisFitError(f"No mixed-model fitter for family {family!r}")
