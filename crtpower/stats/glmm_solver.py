"""Maximum-likelihood solver for random-intercept GLMMs.

Fits ``g(E[y | u]) = X beta + tau * u`` with one standard-normal intercept
``u`` per cluster, using the spherical random-effects parameterization of
Bates et al. (2015) "Fitting Linear Mixed-Effects Models Using lme4"
(JSS 67(1)). The cluster effect is integrated out of the likelihood with
adaptive Gauss-Hermite quadrature centred on each cluster's conditional
mode; a single node gives the Laplace approximation.

Subjects that share a cluster and a row of ``X`` share their linear
predictor, so the likelihood is evaluated once per (cluster, design row)
cell from the cell's subject count and outcome total. A parallel trial
collapses to one cell per cluster, a stepped-wedge trial to one cell per
cluster-period.

Conditional families: ``binary`` (logit link), ``poisson`` (log link) and
``neg-binomial`` (log link, size known).

Standard errors of ``beta`` come from the observed information, i.e. the
numerical Hessian of the marginal log-likelihood at the optimum.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy import sparse
from scipy.special import expit, gammaln, logit, logsumexp

GLMM_FAMILIES = ("binary", "poisson", "neg-binomial")

QUADRATURE_POINTS = 7

_NEWTON_MAX_ITER = 50
_NEWTON_TOL = 1e-10
# largest conditional-mode step on the standard-normal scale
_NEWTON_MAX_STEP = 2.0

_BETA_BOUND = 50.0
_TAU_BOUND = 20.0

_LOG_SQRT_2PI = 0.5 * np.log(2.0 * np.pi)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass
class CellData:
    """Per-cell outcome totals, computed once per replicate."""

    X: np.ndarray  # (C, p) design row of each cell
    count: np.ndarray  # (C,) subjects in the cell
    total: np.ndarray  # (C,) outcome sum in the cell
    cell_cluster: np.ndarray  # (C,) cluster code of the cell
    indicators: sparse.csr_matrix  # (C, K) cell-to-cluster membership
    n_clusters: int
    n_obs: int
    constant: float  # parameter-free part of the log-likelihood


@dataclass
class GLMMResult:
    """Result of GLMM fitting."""

    beta: np.ndarray  # (p,) fixed effects incl. intercept
    tau2: float  # random intercept variance (link scale)
    params: np.ndarray  # optimizer parameters (beta, tau)
    cov_beta: np.ndarray  # (p, p) covariance of fixed effects
    se_beta: np.ndarray  # (p,) standard errors
    log_likelihood: float  # at optimum
    converged: bool
    n_iter: int
    conditional_cov: bool  # cov_beta taken with tau held fixed


def cluster_indicators(codes: np.ndarray, n_clusters: int) -> sparse.csr_matrix:
    """Sparse ``n x K`` indicator matrix of cluster membership."""
    n = codes.shape[0]
    return sparse.csr_matrix(
        (np.ones(n), (np.arange(n), codes)),
        shape=(n, n_clusters),
    )


def compute_cell_data(X: np.ndarray, y: np.ndarray, cluster_ids: np.ndarray, family: str, size: float = 1.0) -> CellData:
    """Collapse subjects into (cluster, design row) cells."""
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)

    _, cluster_codes = np.unique(cluster_ids, return_inverse=True)
    cluster_codes = cluster_codes.reshape(-1)
    n_clusters = int(cluster_codes.max()) + 1

    cells, cell_index = np.unique(np.column_stack([cluster_codes, X]), axis=0, return_inverse=True)
    cell_index = cell_index.reshape(-1)
    cell_cluster = cells[:, 0].astype(np.int64)

    if family == "binary":
        constant = 0.0
    elif family == "poisson":
        constant = -float(np.sum(gammaln(y + 1.0)))
    else:
        constant = float(np.sum(gammaln(y + size) - gammaln(size) - gammaln(y + 1.0)))

    return CellData(
        X=cells[:, 1:],
        count=np.bincount(cell_index).astype(float),
        total=np.bincount(cell_index, weights=y),
        cell_cluster=cell_cluster,
        indicators=cluster_indicators(cell_cluster, n_clusters),
        n_clusters=n_clusters,
        n_obs=y.shape[0],
        constant=constant,
    )


# ---------------------------------------------------------------------------
# Conditional log-likelihood per cell
# ---------------------------------------------------------------------------


def _cell_loglik(eta, count, total, family: str, size: float):
    """Cell log-likelihood up to the parameter-free constant."""
    if family == "binary":
        return total * eta - count * np.logaddexp(0.0, eta)
    if family == "poisson":
        return total * eta - count * np.exp(eta)
    # sum over the cell of y log(mu) - (size + y) log(size + mu) + size log(size)
    shape = count * size + total
    return total * eta - shape * np.logaddexp(np.log(size), eta) + count * size * np.log(size)


def _cell_derivatives(eta, count, total, family: str, size: float) -> Tuple[np.ndarray, np.ndarray]:
    """First and second derivatives of the cell log-likelihood in ``eta``."""
    if family == "binary":
        p = expit(eta)
        return total - count * p, -count * p * (1.0 - p)
    if family == "poisson":
        mu = np.exp(eta)
        return total - count * mu, -count * mu
    shape = count * size + total
    frac = expit(eta - np.log(size))
    return total - shape * frac, -shape * frac * (1.0 - frac)


# ---------------------------------------------------------------------------
# Marginal likelihood
# ---------------------------------------------------------------------------


def _conditional_modes(eta_fixed: np.ndarray, tau: float, data: CellData, family: str, size: float):
    """Newton iterations for the mode of each cluster's ``u`` posterior.

    Returns:
        ``(u_hat, curvature)`` where *curvature* is the second derivative
        of the log integrand at the mode (always below -1).
    """
    K = data.n_clusters
    u = np.zeros(K)
    for _ in range(_NEWTON_MAX_ITER):
        eta = eta_fixed + tau * u[data.cell_cluster]
        d1, d2 = _cell_derivatives(eta, data.count, data.total, family, size)
        grad = tau * np.bincount(data.cell_cluster, weights=d1, minlength=K) - u
        curvature = tau**2 * np.bincount(data.cell_cluster, weights=d2, minlength=K) - 1.0
        step = np.clip(grad / curvature, -_NEWTON_MAX_STEP, _NEWTON_MAX_STEP)
        u = u - step
        if np.max(np.abs(step)) < _NEWTON_TOL:
            break

    eta = eta_fixed + tau * u[data.cell_cluster]
    _, d2 = _cell_derivatives(eta, data.count, data.total, family, size)
    curvature = tau**2 * np.bincount(data.cell_cluster, weights=d2, minlength=K) - 1.0
    return u, curvature


def marginal_loglik(
    params: np.ndarray,
    data: CellData,
    family: str,
    size: float,
    nodes: np.ndarray,
    log_weights: np.ndarray,
) -> float:
    """Log-likelihood with the cluster intercepts integrated out.

    Args:
        params: ``(beta, tau)``.
        nodes, log_weights: Gauss-Hermite abscissae and ``log(w) + x**2``.
    """
    p = data.X.shape[1]
    beta, tau = params[:p], params[p]
    eta_fixed = data.X @ beta

    u_hat, curvature = _conditional_modes(eta_fixed, tau, data, family, size)
    scale = np.sqrt(2.0) / np.sqrt(-curvature)

    u_nodes = u_hat[:, None] + scale[:, None] * nodes[None, :]
    eta = eta_fixed[:, None] + tau * u_nodes[data.cell_cluster]
    cell_ll = _cell_loglik(eta, data.count[:, None], data.total[:, None], family, size)
    integrand = data.indicators.T @ cell_ll - 0.5 * u_nodes**2 - _LOG_SQRT_2PI

    per_cluster = np.log(scale) + logsumexp(integrand + log_weights[None, :], axis=1)
    return float(per_cluster.sum() + data.constant)


def _start_values(data: CellData, family: str) -> np.ndarray:
    """Intercept at the pooled rate, other effects at zero, tau at 0.5.

    Assumes column 0 of ``X`` is the intercept.
    """
    rate = data.total.sum() / data.count.sum()
    if family == "binary":
        intercept = float(logit(np.clip(rate, 1e-3, 1.0 - 1e-3)))
    else:
        intercept = float(np.log(max(rate, 1e-3)))

    x0 = np.zeros(data.X.shape[1] + 1)
    x0[0] = intercept
    x0[-1] = 0.5
    return x0


def _fixed_effect_covariance(info: np.ndarray, p: int) -> Tuple[np.ndarray, bool]:
    """Invert the observed information for the fixed effects.

    Uses the full matrix when it is positive definite, otherwise the
    ``beta`` block alone (covariance conditional on ``tau``).

    Raises:
        LinAlgError: If neither matrix is positive definite.
    """
    info = (info + info.T) / 2.0
    if np.all(np.isfinite(info)):
        eigvals, eigvecs = np.linalg.eigh(info)
        if np.min(eigvals) > 0:
            cov = (eigvecs / eigvals) @ eigvecs.T
            return cov[:p, :p], False

    block = info[:p, :p]
    if np.all(np.isfinite(block)) and np.min(np.linalg.eigvalsh(block)) > 0:
        return np.linalg.inv(block), True

    raise np.linalg.LinAlgError("Observed information matrix is not positive definite")


def glmm_fit(
    X: np.ndarray,
    y: np.ndarray,
    cluster_ids: np.ndarray,
    family: str,
    size: float = 1.0,
    n_quadrature: int = QUADRATURE_POINTS,
    max_iter: int = 200,
    start: Optional[np.ndarray] = None,
) -> GLMMResult:
    """Fit a random-intercept GLMM by maximum likelihood.

    Args:
        X: ``(n, p)`` fixed-effects design with the intercept in column 0.
        y: ``(n,)`` outcomes (0/1 for binary, counts otherwise).
        cluster_ids: ``(n,)`` cluster membership.
        family: ``"binary"``, ``"poisson"`` or ``"neg-binomial"``.
        size: Negative-binomial size (ignored for other families).
        n_quadrature: Gauss-Hermite nodes per cluster (1 = Laplace).
        max_iter: L-BFGS-B iteration limit.
        start: Warm-start ``(beta, tau)``.

    Returns:
        GLMMResult. When the optimizer hits *max_iter*, ``converged`` is
        ``False`` and the covariance is left as NaN.

    Raises:
        ValueError: If *family* is not supported.
        LinAlgError: If the observed information cannot be inverted.
    """
    from scipy.optimize import minimize
    from statsmodels.tools.numdiff import approx_hess

    if family not in GLMM_FAMILIES:
        raise ValueError(f"Unsupported GLMM family: {family!r}")

    data = compute_cell_data(X, y, cluster_ids, family, size)
    nodes, weights = np.polynomial.hermite.hermgauss(n_quadrature)
    log_weights = np.log(weights) + nodes**2
    p = data.X.shape[1]

    def loglik(params):
        return marginal_loglik(params, data, family, size, nodes, log_weights)

    def objective(params):
        return -loglik(params) / data.n_obs

    x0 = _start_values(data, family) if start is None else np.asarray(start, dtype=float)
    bounds = [(-_BETA_BOUND, _BETA_BOUND)] * p + [(0.0, _TAU_BOUND)]

    result = minimize(
        objective,
        x0,
        method="L-BFGS-B",
        bounds=bounds,
        options={"maxiter": max_iter, "ftol": 1e-10, "gtol": 1e-6},
    )

    # status 1: iteration or evaluation limit; status 2 (line-search stall) is an optimum to precision
    converged = result.status != 1
    params = np.asarray(result.x, dtype=float)

    cov_beta = np.full((p, p), np.nan)
    conditional = False
    if converged:
        info = -approx_hess(params, loglik)
        cov_beta, conditional = _fixed_effect_covariance(info, p)

    return GLMMResult(
        beta=params[:p],
        tau2=float(params[p] ** 2),
        params=params,
        cov_beta=cov_beta,
        se_beta=np.sqrt(np.diag(cov_beta)),
        log_likelihood=-float(result.fun) * data.n_obs,
        converged=converged,
        n_iter=int(result.nit),
        conditional_cov=conditional,
    )
