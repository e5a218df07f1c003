"""
Normalized configuration records for crtpower.

These are produced by the validators and consumed read-only by the design
builder, the data synthesizer and the simulation runner.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

PARALLEL = "parallel"
STEPPED_WEDGE = "stepped-wedge"
TOPOLOGIES = (PARALLEL, STEPPED_WEDGE)

FAMILIES = ("gaussian", "binary", "poisson", "neg-binomial")
COUNT_FAMILIES = ("poisson", "neg-binomial")
METHODS = ("glmm", "gee")

METHOD_NAMES = {
    "glmm": "Generalized Linear Mixed Model",
    "gee": "Generalized Estimating Equation",
}

FAMILY_NAMES = {
    "gaussian": "Continuous",
    "binary": "Binary",
    "poisson": "Poisson",
    "neg-binomial": "Negative Binomial",
}


@dataclass(frozen=True)
class TrialDesignSpec:
    """Validated design topology.

    Attributes:
        topology: ``"parallel"`` or ``"stepped-wedge"``.
        nclusters: Clusters per arm ``(control, treatment)`` for parallel
            designs; ``(total,)`` for stepped-wedge designs.
        nsubjects: Subjects per cluster, one entry per cluster.
        step_index: Cumulative number of clusters crossed over after each
            step (stepped-wedge only, empty otherwise).
    """

    topology: str
    nclusters: Tuple[int, ...]
    nsubjects: Tuple[int, ...]
    step_index: Tuple[int, ...] = ()

    @property
    def total_clusters(self) -> int:
        return int(sum(self.nclusters))

    @property
    def n_steps(self) -> int:
        return len(self.step_index)

    @property
    def n_periods(self) -> int:
        """Number of observation periods (baseline plus one per step)."""
        if self.topology == STEPPED_WEDGE:
            return self.n_steps + 1
        return 1

    @property
    def is_stepped_wedge(self) -> bool:
        return self.topology == STEPPED_WEDGE


@dataclass(frozen=True)
class VarianceSpec:
    """Validated outcome model.

    Attributes:
        family: Outcome family used to simulate data.
        mean_ntrt: Outcome level in the control arm (mean, probability or
            expected count depending on *family*).
        mean_trt: Outcome level in the treatment arm.
        difference: Signed difference ``mean_trt - mean_ntrt``.
        sigma_b: Between-cluster variance ``(control, treatment)``.
        variance: Total outcome variance ``(control, treatment)``; Gaussian only.
        dispersion: Negative-binomial size parameter.
        analysis: Family used for fitting count outcomes.
    """

    family: str
    mean_ntrt: float
    mean_trt: float
    difference: float
    sigma_b: Tuple[float, float]
    variance: Optional[Tuple[float, float]] = None
    dispersion: float = 1.0
    analysis: Optional[str] = None

    @property
    def analysis_family(self) -> str:
        """Family the regression model is fitted with."""
        return self.analysis if self.analysis is not None else self.family

    @property
    def residual_variance(self) -> Tuple[float, float]:
        """Within-cluster variance per arm (Gaussian only)."""
        if self.variance is None:
            raise AttributeError("residual_variance is only defined for gaussian outcomes")
        return (
            self.variance[0] - self.sigma_b[0],
            self.variance[1] - self.sigma_b[1],
        )

    def arm_levels(self) -> np.ndarray:
        return np.array([self.mean_ntrt, self.mean_trt], dtype=float)


@dataclass(frozen=True)
class SimulationConfig:
    """Everything a simulation run needs, after validation."""

    nsim: int
    design: TrialDesignSpec
    variance: VarianceSpec
    method: str = "glmm"
    alpha: float = 0.05
    seed: Optional[int] = None
    quiet: bool = False
    all_sim_data: bool = False
    parallel: bool = False
    n_cores: int = 1
    max_failed_simulations: Optional[float] = None
    warnings: Tuple[str, ...] = field(default=(), compare=False)

    @property
    def method_name(self) -> str:
        return METHOD_NAMES[self.method]
