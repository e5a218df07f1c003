"""crtpower - Monte Carlo power for cluster-randomized trials.

Simulation-based power estimation for parallel and stepped-wedge
cluster-randomized trials with continuous, binary and count outcomes,
analysed with mixed models (GLMM) or generalized estimating equations (GEE).

Example:
    >>> from crtpower import ClusterPower, simulate_power
    >>>
    >>> result = simulate_power(
    ...     nsim=200, nsubjects=20, nclusters=10,
    ...     mean_ntrt=0.0, difference=0.4, sigma_b=0.1, variance=1.0,
    ... )
    >>> result["results"]["power"]
    >>>
    >>> model = ClusterPower("stepped-wedge", "binary")
    >>> model.set_clusters(nclusters=12, nsubjects=15).set_steps(4)
    >>> model.set_outcomes(mean_ntrt=0.2, mean_trt=0.35).set_variance(sigma_b=0.2)
    >>> model.find_power()
"""

from importlib.metadata import version as _get_version

from .errors import (
    AnalysisFitError,
    ConfigurationError,
    DesignInconsistencyError,
    InsufficientReplicatesError,
)
from .model import ClusterPower, simulate_power
from .progress import PrintReporter, ProgressReporter, SimulationCancelled, TqdmReporter
from .stats.analytic import crtpwr_2mean, crtpwr_2mean_matched

__version__ = _get_version("crtpower")

__all__ = [
    "ClusterPower",
    "simulate_power",
    "crtpwr_2mean",
    "crtpwr_2mean_matched",
    "ConfigurationError",
    "DesignInconsistencyError",
    "AnalysisFitError",
    "InsufficientReplicatesError",
    "SimulationCancelled",
    "ProgressReporter",
    "PrintReporter",
    "TqdmReporter",
]
