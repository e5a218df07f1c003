"""
GEE fitting for replicate analysis.

Population-averaged models with an exchangeable working correlation within
clusters and robust (sandwich) standard errors. The treatment effect is
tested with a one-degree-of-freedom Wald chi-square statistic.
"""

import warnings

import numpy as np
from scipy.stats import chi2

from ..errors import AnalysisFitError
from .mixed_models import FitSummary, _check_finite


def _gee_family(family: str, dispersion: float):
    import statsmodels.api as sm

    if family == "gaussian":
        return sm.families.Gaussian()
    if family == "binary":
        return sm.families.Binomial()
    if family == "poisson":
        return sm.families.Poisson()
    if family == "neg-binomial":
        # statsmodels uses alpha = 1 / size (variance mu + alpha * mu^2)
        return sm.families.NegativeBinomial(alpha=1.0 / dispersion)
    raise AnalysisFitError(f"No GEE family for {family!r}")


def _gee_analysis_statsmodels(
    X: np.ndarray,
    y: np.ndarray,
    cluster_ids: np.ndarray,
    target_index: int,
    family: str,
    dispersion: float = 1.0,
    maxiter: int = 60,
) -> FitSummary:
    """Fit a GEE with exchangeable correlation and test one coefficient.

    Rows are sorted by cluster (stable) before fitting. A convergence warning
    from statsmodels, a numerical exception or a non-finite estimate rejects
    the fit.

    Args:
        X: ``(n, p)`` design matrix including the intercept.
        y: ``(n,)`` response vector.
        cluster_ids: ``(n,)`` cluster membership.
        target_index: Column of *X* whose coefficient is tested.
        family: Analysis family (``gaussian``, ``binary``, ``poisson``,
            ``neg-binomial``).
        dispersion: Negative-binomial size parameter.
        maxiter: Iteration cap for the GEE solver.
    """
    try:
        import statsmodels.api as sm
        from statsmodels.tools.sm_exceptions import ConvergenceWarning
    except ImportError as e:
        raise ImportError("statsmodels required for GEE: pip install statsmodels") from e

    order = np.argsort(cluster_ids, kind="stable")
    X_sorted = X[order]
    y_sorted = np.asarray(y, dtype=float)[order]
    groups = cluster_ids[order]

    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            model = sm.GEE(
                y_sorted,
                X_sorted,
                groups=groups,
                family=_gee_family(family, dispersion),
                cov_struct=sm.cov_struct.Exchangeable(),
            )
            result = model.fit(maxiter=maxiter)
    except (np.linalg.LinAlgError, ValueError, FloatingPointError, ZeroDivisionError) as e:
        raise AnalysisFitError(f"{type(e).__name__}: {e}") from e

    for w in caught:
        if issubclass(w.category, ConvergenceWarning):
            raise AnalysisFitError(f"GEE did not converge: {w.message}")

    estimate = float(np.asarray(result.params)[target_index])
    std_err = float(np.asarray(result.bse)[target_index])
    _check_finite(estimate, std_err)

    wald = (estimate / std_err) ** 2
    p_value = float(chi2.sf(wald, df=1))

    dep_params = np.atleast_1d(np.asarray(model.cov_struct.dep_params, dtype=float))
    fitted_icc = float(dep_params[0]) if dep_params.size else np.nan

    return FitSummary(
        estimate=estimate,
        std_err=std_err,
        statistic=float(wald),
        p_value=p_value,
        fitted_icc=fitted_icc,
    )
