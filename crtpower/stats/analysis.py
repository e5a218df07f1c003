"""
Replicate analysis: build the fixed-effects design and fit one replicate.
"""

from typing import List, Tuple

import numpy as np
import pandas as pd

from ..core.specs import SimulationConfig
from .mixed_models import FitSummary

TREATMENT_COLUMN = 1


def build_fixed_effects(dataset: pd.DataFrame, n_periods: int) -> Tuple[np.ndarray, List[str]]:
    """Fixed-effects design matrix: intercept, treatment and period dummies.

    Period dummies (periods ``1..S``) are only added when the design has
    more than one period; period 0 is the reference.

    Returns:
        ``(X, column_names)`` with the treatment indicator in column 1.
    """
    n = len(dataset)
    columns = [np.ones(n), dataset["trt"].to_numpy(dtype=float)]
    names = ["intercept", "trt"]

    if n_periods > 1:
        period = dataset["period"].to_numpy()
        for p in range(1, n_periods):
            columns.append((period == p).astype(float))
            names.append(f"period{p}")

    return np.column_stack(columns), names


def analyze_replicate(dataset: pd.DataFrame, config: SimulationConfig, backend=None) -> FitSummary:
    """Fit the configured model to one replicate and test the treatment effect.

    Args:
        dataset: Replicate returned by ``generate_replicate``.
        config: Validated simulation configuration.
        backend: ``FittingBackend``; the active global backend when ``None``.

    Raises:
        AnalysisFitError: If the fit is rejected.
    """
    if backend is None:
        from ..backends import get_backend

        backend = get_backend()

    X, _ = build_fixed_effects(dataset, config.design.n_periods)
    y = dataset["y"].to_numpy(dtype=float)
    cluster_ids = dataset["cluster"].to_numpy()
    family = config.variance.analysis_family

    if config.method == "gee":
        return backend.gee_analysis(X, y, cluster_ids, TREATMENT_COLUMN, family, config.variance.dispersion)
    return backend.glmm_analysis(X, y, cluster_ids, TREATMENT_COLUMN, family, config.variance.dispersion)
