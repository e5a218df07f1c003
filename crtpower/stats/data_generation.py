"""
Replicate generation for cluster-randomized trial simulations.

Each replicate draws one random intercept per cluster and arm, then the
subject outcomes for the outcome family:

- gaussian: arm mean + intercept + N(0, within-cluster SD)
- binary: Bernoulli(expit(logit(p_arm) + intercept + N(0, 1)))
- poisson: Poisson(exp(log(mean_arm) + intercept))
- neg-binomial: NB(size=dispersion, mean=exp(log(mean_arm) + intercept))

All randomness comes from the ``numpy.random.Generator`` passed in, so a
replicate is fully determined by its generator's seed.
"""

from typing import Tuple

import numpy as np
import pandas as pd
from scipy.special import expit, logit

from ..core.design import AssignmentTable
from ..core.specs import VarianceSpec

__all__ = ["generate_replicate", "replicate_group_means"]


def _generate_cluster_intercepts(
    n_clusters: int,
    sigma_b: Tuple[float, float],
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw random intercepts, one column per arm.

    Returns:
        ``(n_clusters, 2)`` array; column 0 holds control-arm intercepts
        ``N(0, sqrt(sigma_b[0]))`` and column 1 treatment-arm intercepts
        ``N(0, sqrt(sigma_b[1]))``.
    """
    b0 = rng.normal(0.0, np.sqrt(sigma_b[0]), size=n_clusters)
    b1 = rng.normal(0.0, np.sqrt(sigma_b[1]), size=n_clusters)
    return np.column_stack([b0, b1])


def _linear_predictor(table: AssignmentTable, spec: VarianceSpec, rng: np.random.Generator) -> np.ndarray:
    """Per-row arm level on the link scale plus the cluster's intercept."""
    intercepts = _generate_cluster_intercepts(table.n_clusters, spec.sigma_b, rng)
    row_intercept = intercepts[table.cluster, table.trt]
    levels = spec.arm_levels()

    if spec.family == "gaussian":
        link_levels = levels
    elif spec.family == "binary":
        link_levels = logit(levels)
    else:
        link_levels = np.log(levels)
    return link_levels[table.trt] + row_intercept


def _draw_outcomes(eta: np.ndarray, trt: np.ndarray, spec: VarianceSpec, rng: np.random.Generator) -> np.ndarray:
    n = eta.shape[0]

    if spec.family == "gaussian":
        within_sd = np.sqrt(np.asarray(spec.residual_variance, dtype=float))
        return eta + rng.normal(0.0, 1.0, size=n) * within_sd[trt]

    if spec.family == "binary":
        prob = expit(eta + rng.normal(0.0, 1.0, size=n))
        return rng.binomial(1, prob).astype(np.int64)

    mu = np.exp(eta)
    if spec.family == "poisson":
        return rng.poisson(mu).astype(np.int64)

    # numpy parametrizes NB by (size, p) with mean size * (1 - p) / p
    size = spec.dispersion
    return rng.negative_binomial(size, size / (size + mu)).astype(np.int64)


def generate_replicate(table: AssignmentTable, spec: VarianceSpec, rng: np.random.Generator) -> pd.DataFrame:
    """Simulate one dataset on the fixed assignment table.

    Args:
        table: Shared assignment table (not modified).
        spec: Validated outcome model.
        rng: Generator owned by this replicate.

    Returns:
        DataFrame with the table's columns plus the outcome ``y``.
    """
    eta = _linear_predictor(table, spec, rng)
    y = _draw_outcomes(eta, table.trt, spec, rng)

    frame = table.to_frame()
    frame["y"] = y
    return frame


def replicate_group_means(dataset: pd.DataFrame) -> pd.Series:
    """Mean outcome per (trt, period) cell, indexed by ``(trt, period)``."""
    return dataset.groupby(["trt", "period"], sort=True)["y"].mean()
