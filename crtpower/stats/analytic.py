"""
Closed-form power for two-arm cluster-randomized trials with continuous outcomes.

Power is the upper tail of a noncentral t distribution beyond the two-sided
critical value. Any one parameter may be left as ``None``; it is then solved
for with ``scipy.optimize.brentq`` so that the power equation is satisfied.

- ``crtpwr_2mean``: independent arms, optionally unequal cluster sizes
  (Taylor-series or weighted variance inflation).
- ``crtpwr_2mean_matched``: cluster-matched (paired) designs.
"""

from typing import Callable, Dict, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.optimize import brentq
from scipy.stats import nct
from scipy.stats import t as t_dist

from ..errors import ConfigurationError

__all__ = ["crtpwr_2mean", "crtpwr_2mean_matched"]

DEFAULT_TOL = np.finfo(float).eps ** 0.25

# search interval and direction per solvable parameter
# "up": power increases with the parameter; "down": power decreases
_SEARCH = {
    "alpha": ((1e-10, 1 - 1e-10), None),
    "nclusters": ((2 + 1e-10, 1e7), "up"),
    "nsubjects": ((2 + 1e-10, 1e7), "up"),
    "cv": ((1e-10, 1e7), "down"),
    "d": ((1e-7, 1e7), "up"),
    "icc": ((1e-7, 1 - 1e-7), None),
    "vart": ((1e-7, 1e7), "down"),
    "rho_m": ((1e-7, 1 - 1e-7), None),
}


def _missing_parameter(params: Dict[str, Optional[float]]) -> str:
    missing = [name for name, value in params.items() if value is None]
    if len(missing) != 1:
        names = ", ".join(f"'{name}'" for name in params)
        raise ConfigurationError(missing[0] if missing else None, f"Exactly one of {names} must be None.")
    return missing[0]


def _noncentral_power(alpha: float, df: float, ncp: float) -> float:
    tcrit = t_dist.isf(alpha / 2, df)
    return float(nct.sf(tcrit, df, ncp))


def _expand(func: Callable[[float], float], lo: float, hi: float, direction: Optional[str]) -> Tuple[float, float]:
    """Shrink the search interval until the endpoints bracket a root.

    Mirrors an "extend the interval" root search: the upper endpoint walks
    geometrically from *lo* towards *hi* until the sign changes.
    """
    if direction is None:
        return lo, hi
    f_lo = func(lo)
    b = lo
    while b < hi:
        b = min(b * 10 if b > 0 else 1.0, hi)
        f_b = func(b)
        if np.isfinite(f_b) and np.sign(f_b) != np.sign(f_lo):
            return lo, b
    return lo, hi


def _solve(func: Callable[[float], float], name: str, tol: float, hi: Optional[float] = None) -> float:
    (lo, default_hi), direction = _SEARCH[name]
    lo, hi = _expand(func, lo, default_hi if hi is None else hi, direction)
    try:
        return float(brentq(func, lo, hi, xtol=tol))
    except ValueError as e:
        raise ValueError(f"No value of '{name}' in [{lo:g}, {hi:g}] achieves the requested power") from e


def _vif(
    nsubjects: float,
    icc: float,
    cv: float,
    method: str,
    nvec: Optional[np.ndarray] = None,
) -> float:
    """Variance inflation for unequal cluster sizes."""
    if method == "weighted":
        return 1 + ((cv**2 + 1) * nsubjects - 1) * icc

    deff = 1 + (nsubjects - 1) * icc
    if nvec is not None:
        a = (1 - icc) / icc
        relative_efficiency = ((nsubjects + a) / nsubjects) * np.mean(nvec / (nvec + a))
        return deff * relative_efficiency

    lam = nsubjects * icc / deff
    return deff / (1 - cv**2 * lam * (1 - lam))


def crtpwr_2mean(
    alpha: Optional[float] = 0.05,
    power: Optional[float] = 0.80,
    nclusters: Optional[float] = None,
    nsubjects: Union[None, float, Sequence[float]] = None,
    cv: Optional[float] = 0.0,
    d: Optional[float] = None,
    icc: Optional[float] = None,
    vart: Optional[float] = None,
    method: str = "taylor",
    tol: float = DEFAULT_TOL,
) -> Dict[str, float]:
    """Power or sample size for a two-arm CRT with a continuous outcome.

    Args:
        alpha: Two-sided significance level.
        power: Target power.
        nclusters: Clusters per arm.
        nsubjects: Mean subjects per cluster, or a vector of cluster sizes
            (which then sets ``nclusters`` and ``cv``).
        cv: Coefficient of variation of cluster sizes.
        d: Expected difference in means.
        icc: Intra-cluster correlation.
        vart: Total variance of the outcome.
        method: ``"taylor"`` or ``"weighted"`` variance inflation.
        tol: Root-finding tolerance.

    Returns:
        ``{name: value}`` for the parameter that was ``None``.

    Raises:
        ConfigurationError: Unless exactly one parameter is ``None``, or if
            ``nclusters <= 1`` or *method* is unknown.
    """
    if method not in ("taylor", "weighted"):
        raise ConfigurationError("method", f"method must be 'taylor' or 'weighted', got {method!r}")

    nvec = None
    if nsubjects is not None and np.ndim(nsubjects) > 0 and len(nsubjects) > 1:
        nvec = np.asarray(nsubjects, dtype=float)
        nsubjects = float(np.mean(nvec))
        cv = float(np.std(nvec, ddof=1) / nsubjects)
        nclusters = len(nvec)

    if nclusters is not None and nclusters <= 1:
        raise ConfigurationError("nclusters", "'nclusters' must be greater than 1.")

    params: Dict[str, Optional[float]] = {
        "alpha": alpha,
        "power": power,
        "nclusters": nclusters,
        "nsubjects": nsubjects,
        "cv": cv,
        "d": d,
        "icc": icc,
        "vart": vart,
    }
    target = _missing_parameter(params)

    def power_at(**values: float) -> float:
        p = {**params, **values}
        vif = _vif(p["nsubjects"], p["icc"], p["cv"], method, nvec)
        df = 2 * (p["nclusters"] - 1)
        ncp = np.sqrt(p["nclusters"] * p["nsubjects"] / (2 * vif)) * abs(p["d"]) / np.sqrt(p["vart"])
        return _noncentral_power(p["alpha"], df, ncp)

    if target == "power":
        return {"power": power_at()}

    hi = None
    if target == "cv" and method == "taylor" and nvec is None:
        # the Taylor approximation is only defined while cv^2 L (1 - L) < 1
        deff = 1 + (nsubjects - 1) * icc
        lam = nsubjects * icc / deff
        hi = min(_SEARCH["cv"][0][1], (1 - 1e-9) / np.sqrt(lam * (1 - lam)))

    return {target: _solve(lambda x: power_at(**{target: x}) - power, target, tol, hi)}


def crtpwr_2mean_matched(
    alpha: Optional[float] = 0.05,
    power: Optional[float] = 0.80,
    nclusters: Optional[float] = None,
    nsubjects: Optional[float] = None,
    d: Optional[float] = None,
    icc: Optional[float] = None,
    vart: Optional[float] = None,
    rho_m: Optional[float] = None,
    tol: float = DEFAULT_TOL,
) -> Dict[str, float]:
    """Power or sample size for a cluster-matched two-arm CRT.

    The design effect ``1 + (m - 1) icc - m rho_m icc`` accounts for the
    correlation *rho_m* between matched cluster means; the t test has
    ``nclusters - 1`` degrees of freedom.

    Returns:
        ``{name: value}`` for the parameter that was ``None``.
    """
    if nclusters is not None and nclusters <= 1:
        raise ConfigurationError("nclusters", "'nclusters' must be greater than 1.")

    params: Dict[str, Optional[float]] = {
        "alpha": alpha,
        "power": power,
        "nclusters": nclusters,
        "nsubjects": nsubjects,
        "d": d,
        "icc": icc,
        "vart": vart,
        "rho_m": rho_m,
    }
    target = _missing_parameter(params)

    def power_at(**values: float) -> float:
        p = {**params, **values}
        deff = 1 + (p["nsubjects"] - 1) * p["icc"] - p["nsubjects"] * p["rho_m"] * p["icc"]
        df = p["nclusters"] - 1
        ncp = np.sqrt(p["nclusters"] * p["nsubjects"] / (2 * deff)) * abs(p["d"]) / np.sqrt(p["vart"])
        return _noncentral_power(p["alpha"], df, ncp)

    if target == "power":
        return {"power": power_at()}
    return {target: _solve(lambda x: power_at(**{target: x}) - power, target, tol)}
