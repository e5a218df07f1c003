"""
crtpower - Monte Carlo power for cluster-randomized trials.

This module provides the ``ClusterPower`` class and the one-shot
``simulate_power`` function.
"""

import multiprocessing as mp
import warnings
from numbers import Real
from typing import Any, Dict, List, Optional, Sequence, Union

from .core import ResultsProcessor, SimulationRunner, build_cluster_sweep_result
from .core.specs import FAMILIES, METHODS, PARALLEL, STEPPED_WEDGE, TOPOLOGIES
from .errors import ConfigurationError, InsufficientReplicatesError
from .progress import PrintReporter, ProgressReporter, compute_total_simulations
from .utils.formatters import _format_results
from .utils.validators import (
    _validate_alpha,
    _validate_choice,
    _validate_max_failed,
    _validate_parallel_settings,
    _validate_seed,
    _validate_simulations,
    validate_config,
)
from .utils.visualization import _create_power_plot


def _resolve_reporter(progress_callback, enabled: bool, total: int) -> Optional[ProgressReporter]:
    """Wrap the effective progress callback in a ``ProgressReporter``.

    ``None`` picks ``PrintReporter`` when *enabled*; ``False`` disables
    progress; any callable ``(current, total)`` is used as given.
    """
    if progress_callback is None:
        effective_cb = PrintReporter() if enabled else None
    elif progress_callback is False:
        effective_cb = None
    else:
        effective_cb = progress_callback

    if effective_cb is None:
        return None
    return ProgressReporter(total, effective_cb)


def simulate_power(
    nsim: Any = None,
    nsubjects: Any = None,
    nclusters: Any = None,
    *,
    progress_callback=None,
    cancel_check=None,
    backend=None,
    **kwargs,
) -> Dict[str, Any]:
    """Estimate power for one cluster-randomized trial design by simulation.

    Accepts every option of ``validate_config`` as a keyword argument
    (``design``, ``family``, ``mean_ntrt``, ``mean_trt``, ``difference``,
    ``sigma_b``, ``sigma_b2``, ``variance``, ``steps``, ``dispersion``,
    ``analysis``, ``method``, ``alpha``, ``seed``, ``quiet``,
    ``all_sim_data``, ``parallel``, ``n_cores``, ``max_failed_simulations``).

    Args:
        nsim: Number of simulated trials.
        nsubjects: Subjects per cluster (scalar or one entry per cluster).
        nclusters: Clusters per arm (parallel) or total clusters
            (stepped-wedge).
        progress_callback: ``None`` for a ``PrintReporter`` unless *quiet*,
            ``False`` to disable, or a ``(current, total)`` callable.
        cancel_check: Optional callable returning ``True`` to abort.
        backend: Optional ``FittingBackend``; the active backend otherwise.

    Returns:
        Result dictionary with ``"model"`` and ``"results"`` keys.

    Raises:
        ConfigurationError: On invalid input.
        InsufficientReplicatesError: If no replicate could be analysed.
        SimulationCancelled: If *cancel_check* returned ``True``.
    """
    config = validate_config(nsim, nsubjects, nclusters, **kwargs)

    reporter = _resolve_reporter(progress_callback, not config.quiet, compute_total_simulations(config.nsim))
    if reporter is not None:
        reporter.start()
    result = SimulationRunner(config, backend=backend).run(progress=reporter, cancel_check=cancel_check)
    if reporter is not None:
        reporter.finish()
    return result


class ClusterPower:
    """Monte Carlo power analysis for cluster-randomized trials.

    Configure the trial with chained ``set_*`` calls, then call
    ``find_power`` for one design or ``find_clusters`` for a sweep over
    cluster counts. Settings are validated when set where possible, and
    the full configuration is validated at analysis time.

    Attributes:
        design: ``"parallel"`` or ``"stepped-wedge"``.
        family: Outcome family.
        seed: Random seed for reproducibility (default: 2137).
        power: Target power for ``find_clusters`` (default: 0.8).
        alpha: Significance level (default: 0.05).
        n_simulations: Number of Monte Carlo replicates (default: 400).
        method: ``"glmm"`` (default) or ``"gee"``.
        parallel: Run replicates in parallel with joblib (default: False).
        n_cores: Number of CPU cores for parallel execution.
        max_failed_simulations: Maximum acceptable failure rate, or ``None``
            to accept any rate short of total failure.

    Example:
        >>> model = ClusterPower("parallel", "gaussian")
        >>> model.set_clusters(nclusters=10, nsubjects=20)
        >>> model.set_outcomes(mean_ntrt=0.0, difference=0.4)
        >>> model.set_variance(sigma_b=0.1, variance=1.0)
        >>> model.find_power()

        >>> sw = ClusterPower("stepped-wedge", "binary")
        >>> sw.set_clusters(nclusters=12, nsubjects=15).set_steps(4)
        >>> sw.set_outcomes(mean_ntrt=0.2, mean_trt=0.35).set_variance(sigma_b=0.2)
        >>> sw.find_clusters(from_clusters=8, to_clusters=24, by=4)
    """

    def __init__(self, design: str = PARALLEL, family: str = "gaussian"):
        """Initialize a power analysis for one design topology and outcome family.

        Args:
            design: ``"parallel"`` or ``"stepped-wedge"``.
            family: ``"gaussian"``, ``"binary"``, ``"poisson"`` or
                ``"neg-binomial"``.

        Raises:
            ConfigurationError: If *design* or *family* is unknown.
        """
        _validate_choice(design, "design", TOPOLOGIES).raise_if_invalid()
        _validate_choice(family, "family", FAMILIES).raise_if_invalid()
        self.design = design
        self.family = family

        # Core configuration
        self.seed: Optional[int] = 2137
        self.power = 0.8
        self.alpha = 0.05
        self.n_simulations = 400
        self.method = "glmm"
        self.analysis: Optional[str] = None

        # Parallel processing
        self.parallel = False
        self.n_cores = max(1, (mp.cpu_count() or 1) // 2)

        # Simulation failure tolerance
        self.max_failed_simulations: Optional[float] = None

        # Trial settings (validated together at analysis time)
        self.nclusters: Any = None
        self.nsubjects: Any = None
        self.steps: Any = None
        self.mean_ntrt: Optional[float] = None
        self.mean_trt: Optional[float] = None
        self.difference: Optional[float] = None
        self.sigma_b: Any = None
        self.sigma_b2: Optional[float] = None
        self.variance: Any = None
        self.dispersion = 1.0

    # =========================================================================
    # Configuration methods
    # =========================================================================

    def set_clusters(self, nclusters: Union[int, Sequence[int]], nsubjects: Union[int, Sequence[int]]):
        """Set cluster counts and cluster sizes.

        Args:
            nclusters: Parallel designs: clusters per arm (scalar) or
                ``(control, treatment)``. Stepped-wedge: total clusters.
            nsubjects: Subjects per cluster (scalar) or one entry per cluster.

        Returns:
            self: For method chaining.
        """
        self.nclusters = nclusters
        self.nsubjects = nsubjects
        return self

    def set_steps(self, steps: Union[int, Sequence[int]]):
        """Set the stepped-wedge crossover schedule.

        Args:
            steps: Number of steps, per-step crossover counts, or cumulative
                crossover counts.

        Returns:
            self: For method chaining.

        Raises:
            ConfigurationError: If the design is not stepped-wedge.
        """
        if self.design != STEPPED_WEDGE:
            raise ConfigurationError("steps", "steps can only be specified for stepped-wedge designs")
        self.steps = steps
        return self

    def set_outcomes(
        self,
        mean_ntrt: Optional[float] = None,
        mean_trt: Optional[float] = None,
        difference: Optional[float] = None,
    ):
        """Set arm outcome levels; any two of the three are enough.

        Levels are means (gaussian), probabilities (binary) or expected
        counts (poisson, neg-binomial).

        Returns:
            self: For method chaining.
        """
        self.mean_ntrt = mean_ntrt
        self.mean_trt = mean_trt
        self.difference = difference
        return self

    def set_variance(
        self,
        sigma_b: Union[float, Sequence[float]],
        sigma_b2: Optional[float] = None,
        variance: Union[None, float, Sequence[float]] = None,
        dispersion: float = 1.0,
    ):
        """Set variance components.

        Args:
            sigma_b: Between-cluster variance (scalar or per arm).
            sigma_b2: Treatment-arm between-cluster variance (parallel) or
                additional variance once treated (stepped-wedge).
            variance: Total outcome variance (gaussian only; scalar or per arm).
            dispersion: Negative-binomial size parameter.

        Returns:
            self: For method chaining.
        """
        self.sigma_b = sigma_b
        self.sigma_b2 = sigma_b2
        self.variance = variance
        self.dispersion = dispersion
        return self

    def set_method(self, method: str = "glmm", analysis: Optional[str] = None):
        """Set the analysis method and, for counts, the analysis family.

        Args:
            method: ``"glmm"`` or ``"gee"``.
            analysis: ``"poisson"`` or ``"neg-binomial"`` (count outcomes).

        Returns:
            self: For method chaining.
        """
        _validate_choice(method, "method", METHODS).raise_if_invalid()
        self.method = method
        self.analysis = analysis
        return self

    def set_power(self, power: float):
        """Set the target power used by ``find_clusters`` (0-1).

        Returns:
            self: For method chaining.
        """
        if not isinstance(power, Real) or isinstance(power, bool) or not 0 < power < 1:
            raise ConfigurationError("power", f"power must be a numeric value between 0 - 1, got {power!r}")
        self.power = float(power)
        return self

    def set_alpha(self, alpha: float):
        """Set the significance level for hypothesis testing.

        Returns:
            self: For method chaining.
        """
        _validate_alpha(alpha).raise_if_invalid()
        self.alpha = float(alpha)
        return self

    def set_simulations(self, n_simulations: int):
        """Set the number of Monte Carlo replicates.

        Returns:
            self: For method chaining.
        """
        n_sims, result = _validate_simulations(n_simulations)
        result.raise_if_invalid()
        for warning in result.warnings:
            print(f"Warning: {warning}")
        self.n_simulations = n_sims
        return self

    def set_seed(self, seed: Optional[int] = None):
        """Set random seed for reproducibility.

        Args:
            seed: Non-negative integer, or ``None`` for fully random seeding.

        Returns:
            self: For method chaining.
        """
        _validate_seed(seed).raise_if_invalid()
        self.seed = seed
        if seed is not None:
            print(f"Seed set to: {seed}")
        else:
            print("Random seeding enabled")
        return self

    def set_parallel(self, enable: bool = True, n_cores: Optional[int] = None):
        """Enable or disable parallel processing of replicates.

        Requires ``joblib``. Falls back to sequential processing with a
        warning if ``joblib`` is unavailable.

        Args:
            enable: ``True`` for parallel, ``False`` for sequential.
            n_cores: Number of CPU cores to use. Defaults to
                ``cpu_count // 2``.

        Returns:
            self: For method chaining.
        """
        if enable is False:
            self.parallel, self.n_cores = False, 1
            return self

        try:
            import joblib  # noqa: F401 (availability check only)
        except ImportError:
            print("Warning: joblib not available. Install with: pip install joblib")
            print("Warning: Continuing with sequential processing.")
            self.parallel = False
            return self

        settings, result = _validate_parallel_settings(enable, n_cores)
        result.raise_if_invalid()
        self.parallel, self.n_cores = settings
        return self

    def set_max_failed_simulations(self, proportion: Optional[float]):
        """Set the maximum acceptable proportion of failed fits (0-1 or ``None``).

        Returns:
            self: For method chaining.
        """
        _validate_max_failed(proportion).raise_if_invalid()
        self.max_failed_simulations = proportion
        return self

    # =========================================================================
    # Analysis methods
    # =========================================================================

    def _config_kwargs(self, **overrides) -> Dict[str, Any]:
        kwargs = {
            "nsim": self.n_simulations,
            "nsubjects": self.nsubjects,
            "nclusters": self.nclusters,
            "design": self.design,
            "family": self.family,
            "mean_ntrt": self.mean_ntrt,
            "mean_trt": self.mean_trt,
            "difference": self.difference,
            "sigma_b": self.sigma_b,
            "sigma_b2": self.sigma_b2,
            "variance": self.variance,
            "steps": self.steps,
            "dispersion": self.dispersion,
            "analysis": self.analysis,
            "method": self.method,
            "alpha": self.alpha,
            "seed": self.seed,
            "quiet": True,
            "parallel": self.parallel,
            "n_cores": self.n_cores if self.parallel else None,
            "max_failed_simulations": self.max_failed_simulations,
        }
        kwargs.update(overrides)
        return kwargs

    def find_power(
        self,
        print_results: bool = True,
        summary: str = "short",
        return_results: bool = False,
        all_sim_data: bool = False,
        progress_callback=None,
        cancel_check=None,
    ):
        """
        Estimate power for the configured design.

        Args:
            print_results: Whether to print results
            summary: Output detail level ("short" or "long")
            return_results: Return results dict
            all_sim_data: Keep every simulated dataset in the results
            progress_callback: Progress reporting control:
                - ``None`` (default): auto-use ``PrintReporter`` when
                  *print_results* is ``True``.
                - ``False``: explicitly disable progress.
                - callable ``(current, total)``: custom callback.
            cancel_check: Optional callable returning ``True`` to abort.

        Returns:
            dict or None: If *return_results* is ``True``, returns a
            results dictionary with keys ``"model"`` (settings) and
            ``"results"`` (power estimate and tables). Returns ``None``
            otherwise.
        """
        config = validate_config(**self._config_kwargs(all_sim_data=all_sim_data))

        reporter = _resolve_reporter(progress_callback, print_results, compute_total_simulations(config.nsim))
        if reporter is not None:
            reporter.start()
        result = SimulationRunner(config).run(progress=reporter, cancel_check=cancel_check)
        if reporter is not None:
            reporter.finish()

        if print_results:
            print(f"\n{'=' * 80}")
            print("MONTE CARLO POWER ANALYSIS RESULTS")
            print(f"{'=' * 80}")
            print(_format_results("power", result, summary))

        return result if return_results else None

    def find_clusters(
        self,
        from_clusters: int,
        to_clusters: int,
        by: int = 1,
        print_results: bool = True,
        summary: str = "short",
        return_results: bool = False,
        progress_callback=None,
        cancel_check=None,
    ):
        """
        Find the smallest cluster count reaching the target power.

        Counts are clusters per arm for parallel designs and total clusters
        for stepped-wedge designs. Cluster sizes must be a scalar.

        Args:
            from_clusters: Smallest cluster count to test
            to_clusters: Largest cluster count to test
            by: Step between cluster counts
            print_results: Whether to print results
            summary: Output detail level; ``"long"`` also draws the power curve
            return_results: Return results dict
            progress_callback: See ``find_power``.
            cancel_check: Optional callable returning ``True`` to abort.

        Returns:
            dict or None: If *return_results* is ``True``, returns a
            results dictionary with the powers per count and the first count
            achieving the target power (``-1`` if none did).
        """
        counts = self._cluster_range(from_clusters, to_clusters, by)
        if self.nsubjects is not None and not isinstance(self.nsubjects, Real):
            raise ConfigurationError("nsubjects", "find_clusters requires a scalar nsubjects (equal cluster sizes)")

        configs = [validate_config(**self._config_kwargs(nclusters=count)) for count in counts]

        total = compute_total_simulations(self.n_simulations, len(counts))
        reporter = _resolve_reporter(progress_callback, print_results, total)
        if reporter is not None:
            reporter.start()

        results: List = []
        for count, config in zip(counts, configs):
            try:
                power_result = SimulationRunner(config).run(progress=reporter, cancel_check=cancel_check)
            except InsufficientReplicatesError as e:
                warnings.warn(f"No usable replicates at {count} clusters: {e}")
                power_result = None
            results.append((count, power_result))

        if reporter is not None:
            reporter.finish()

        processor = ResultsProcessor(alpha=self.alpha, target_power=self.power)
        result = build_cluster_sweep_result(configs[0], counts, processor.process_cluster_sweep(results))

        if print_results:
            print(f"\n{'=' * 80}")
            print("CLUSTER COUNT ANALYSIS RESULTS")
            print(f"{'=' * 80}")
            print(_format_results("clusters", result, summary))

            if summary == "long":
                self._create_cluster_plot(result)

        return result if return_results else None

    # =========================================================================
    # Internal methods
    # =========================================================================

    def _cluster_range(self, from_clusters: int, to_clusters: int, by: int) -> List[int]:
        for name, value in (("from_clusters", from_clusters), ("to_clusters", to_clusters), ("by", by)):
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigurationError(name, f"{name} must be a positive integer, got {value!r}")
        if to_clusters < from_clusters:
            raise ConfigurationError("to_clusters", "to_clusters must be greater than or equal to from_clusters")
        return list(range(from_clusters, to_clusters + 1, by))

    def _create_cluster_plot(self, result: Dict[str, Any]):
        results = result["results"]
        xlabel = "Total Clusters" if self.design == STEPPED_WEDGE else "Clusters per Arm"
        return _create_power_plot(
            cluster_counts=results["clusters_tested"],
            powers=results["powers"],
            lower=results["lower"],
            upper=results["upper"],
            first_achieved=results["first_achieved"],
            target_power=results["target_power"],
            title=result["model"]["overview"],
            xlabel=xlabel,
        )
