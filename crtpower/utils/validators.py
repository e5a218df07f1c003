"""
Validation utilities for cluster-randomized trial power simulations.

Every public input passes through here before any design is built or
replicate is drawn. Individual checks return a ``_ValidationResult``;
``validate_config`` chains them and returns a fully normalized
``SimulationConfig`` (scalars broadcast to vectors, schedules converted to
cumulative form, missing effect sizes derived).
"""

import math
import multiprocessing as mp
import warnings
from dataclasses import dataclass
from numbers import Integral, Real
from typing import Any, List, Optional, Sequence, Tuple, Type

import numpy as np

from ..core.specs import (
    COUNT_FAMILIES,
    FAMILIES,
    METHODS,
    PARALLEL,
    STEPPED_WEDGE,
    TOPOLOGIES,
    SimulationConfig,
    TrialDesignSpec,
    VarianceSpec,
)
from ..errors import ConfigurationError, DesignInconsistencyError

__all__ = ["validate_config"]

_WHOLE_TOL = math.sqrt(np.finfo(float).eps)


@dataclass
class _ValidationResult:
    """Outcome of a validation check, carrying errors and warnings.

    Attributes:
        is_valid: ``True`` if no errors were found.
        errors: List of error messages (empty when valid).
        warnings: List of non-fatal warning messages.
        field: Name of the argument the errors refer to.
        error_type: Exception class raised by ``raise_if_invalid``.
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]
    field: Optional[str] = None
    error_type: Type[ConfigurationError] = ConfigurationError

    def raise_if_invalid(self):
        """Raise ``error_type`` naming the offending field if validation failed."""
        if not self.is_valid:
            if len(self.errors) == 1:
                error_msg = self.errors[0]
            else:
                error_msg = "Validation failed:\n" + "\n".join(f"• {err}" for err in self.errors)
            raise self.error_type(self.field, error_msg)


def _ok(name: str, warns: Optional[List[str]] = None) -> _ValidationResult:
    return _ValidationResult(True, [], warns or [], field=name)


def _fail(name: str, message: str, error_type: Type[ConfigurationError] = ConfigurationError) -> _ValidationResult:
    return _ValidationResult(False, [message], [], field=name, error_type=error_type)


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _is_whole_number(value: Any, tol: float = _WHOLE_TOL) -> bool:
    """True for finite real numbers within *tol* of an integer (booleans excluded)."""
    if not _is_number(value):
        return False
    if isinstance(value, Integral):
        return True
    value = float(value)
    return math.isfinite(value) and abs(value - round(value)) < tol


def _as_vector(value: Any) -> Optional[np.ndarray]:
    """Return *value* as a 1-D array of Python-level numbers, or ``None`` if not numeric."""
    if isinstance(value, (str, bytes, dict, set)):
        return None
    if _is_number(value):
        return np.array([value], dtype=object)
    try:
        arr = np.asarray(value, dtype=object).ravel()
    except (TypeError, ValueError):
        return None
    if arr.size == 0 or not all(_is_number(v) or isinstance(v, np.number) for v in arr):
        return None
    if any(isinstance(v, (bool, np.bool_)) for v in arr):
        return None
    return arr


def _validate_whole_number(value: Any, name: str, min_val: int = 1) -> Tuple[int, _ValidationResult]:
    """Validate a scalar integral argument (``10`` and ``10.0`` are both fine)."""
    if not _is_whole_number(value):
        return 0, _fail(name, f"{name} must be an integer greater than or equal to {min_val}, got {value!r}")
    rounded = int(round(float(value)))
    if rounded < min_val:
        return 0, _fail(name, f"{name} must be an integer greater than or equal to {min_val}, got {value!r}")
    return rounded, _ok(name)


def _validate_simulations(nsim: Any) -> Tuple[int, _ValidationResult]:
    """Validate and process number of simulations."""
    rounded, result = _validate_whole_number(nsim, "nsim")
    if result.is_valid and rounded < 100:
        result.warnings.append(f"Low simulation count ({rounded}). Consider using at least 1000 for reliable results.")
    return rounded, result


def _validate_alpha(alpha: Any) -> _ValidationResult:
    """Validate significance level (strictly between 0 and 1)."""
    if not _is_number(alpha) or not 0 < float(alpha) < 1:
        return _fail("alpha", f"alpha must be a numeric value between 0 - 1, got {alpha!r}")
    return _ok("alpha")


def _validate_choice(value: Any, name: str, options: Sequence[str]) -> _ValidationResult:
    if not isinstance(value, str) or value not in options:
        choices = ", ".join(repr(o) for o in options)
        return _fail(name, f"{name} must be one of {choices}, got {value!r}")
    return _ok(name)


def _validate_flag(value: Any, name: str) -> _ValidationResult:
    if not isinstance(value, (bool, np.bool_)):
        return _fail(name, f"{name} must be either True or False, got {value!r}")
    return _ok(name)


def _validate_nclusters(nclusters: Any, topology: str) -> Tuple[Tuple[int, ...], _ValidationResult]:
    """Validate cluster counts.

    Parallel designs accept one count (used for both arms) or a pair
    ``(control, treatment)``. Stepped-wedge designs take the total count.
    """
    arr = _as_vector(nclusters)
    if arr is None or not all(_is_whole_number(v) and v >= 1 for v in arr):
        return (), _fail("nclusters", f"nclusters must be an integer greater than or equal to 1, got {nclusters!r}")

    counts = tuple(int(round(float(v))) for v in arr)
    if topology == STEPPED_WEDGE:
        if len(counts) != 1:
            return (), _fail("nclusters", "nclusters must be a scalar (total number of clusters) for stepped-wedge designs")
        return counts, _ok("nclusters")

    if len(counts) == 1:
        counts = (counts[0], counts[0])
    elif len(counts) != 2:
        return (), _fail(
            "nclusters",
            "nclusters can only be a vector of length 1 (equal # of clusters per arm) or 2 (unequal # of clusters per arm)",
        )
    return counts, _ok("nclusters")


def _validate_nsubjects(nsubjects: Any, total_clusters: int) -> Tuple[Tuple[int, ...], _ValidationResult]:
    """Validate cluster sizes; a scalar is broadcast to every cluster."""
    arr = _as_vector(nsubjects)
    if arr is None or not all(_is_whole_number(v) and v >= 1 for v in arr):
        return (), _fail("nsubjects", f"nsubjects must be an integer greater than or equal to 1, got {nsubjects!r}")

    sizes = tuple(int(round(float(v))) for v in arr)
    if len(sizes) == 1:
        return sizes * total_clusters, _ok("nsubjects")
    if len(sizes) != total_clusters:
        return (), _fail(
            "nsubjects",
            f"nsubjects must either be a scalar (equal cluster sizes) or a vector of length {total_clusters} "
            f"(one size per cluster), got length {len(sizes)}",
            DesignInconsistencyError,
        )
    return sizes, _ok("nsubjects")


def _even_schedule(n_steps: int, total_clusters: int) -> Tuple[Tuple[int, ...], List[str]]:
    """Spread clusters over *n_steps*; any remainder goes to the earliest steps."""
    base, remainder = divmod(total_clusters, n_steps)
    per_step = [base + (1 if i < remainder else 0) for i in range(n_steps)]
    warns = []
    if remainder:
        warns.append(
            f"{total_clusters} clusters do not divide evenly into {n_steps} steps; "
            f"the first {remainder} step(s) cross over one extra cluster ({per_step})."
        )
    return tuple(int(c) for c in np.cumsum(per_step)), warns


def _validate_steps(steps: Any, total_clusters: int) -> Tuple[Tuple[int, ...], _ValidationResult]:
    """Normalize a crossover specification to cumulative counts per step.

    Accepts a step count, a vector of per-step crossover counts summing to
    the number of clusters, or a non-decreasing cumulative vector reaching it.
    """
    arr = _as_vector(steps)
    if arr is None or not all(_is_whole_number(v) and v >= 0 for v in arr):
        return (), _fail("steps", "All values supplied to steps must be non-negative integers", DesignInconsistencyError)

    values = [int(round(float(v))) for v in arr]

    if len(values) == 1:
        n_steps = values[0]
        if n_steps < 1:
            return (), _fail("steps", "steps must be at least 1", DesignInconsistencyError)
        if n_steps > total_clusters:
            return (), _fail(
                "steps",
                f"steps ({n_steps}) cannot exceed the number of clusters ({total_clusters})",
                DesignInconsistencyError,
            )
        step_index, warns = _even_schedule(n_steps, total_clusters)
        return step_index, _ok("steps", warns)

    if sum(values) == total_clusters:
        return tuple(int(c) for c in np.cumsum(values)), _ok("steps")

    monotone = all(b >= a for a, b in zip(values, values[1:]))
    if monotone and values[-1] == total_clusters:
        return tuple(values), _ok("steps")

    return (), _fail(
        "steps",
        f"Total number of clusters specified by steps {values} must either sum to nclusters ({total_clusters}) "
        f"or increase monotonically such that max(steps) == nclusters",
        DesignInconsistencyError,
    )


def _validate_effect_sizes(
    family: str,
    mean_ntrt: Any,
    mean_trt: Any,
    difference: Any,
) -> Tuple[Tuple[float, float, float], _ValidationResult]:
    """Require two of the three effect-size fields and derive the third."""
    supplied = {"mean_ntrt": mean_ntrt, "mean_trt": mean_trt, "difference": difference}
    for name, value in supplied.items():
        if value is not None and (not _is_number(value) or not math.isfinite(float(value))):
            return (0.0, 0.0, 0.0), _fail(name, f"{name} must be a finite number, got {value!r}")

    missing = [name for name, value in supplied.items() if value is None]
    if len(missing) > 1:
        return (0.0, 0.0, 0.0), _fail(
            missing[0], "At least two of the following terms must be specified: mean_ntrt, mean_trt, difference"
        )

    if not missing:
        m1, m2, d = float(mean_ntrt), float(mean_trt), float(difference)
        if not math.isclose(d, abs(m2 - m1), rel_tol=1e-9, abs_tol=1e-12):
            return (0.0, 0.0, 0.0), _fail(
                "difference",
                f"difference ({d}) must equal abs(mean_trt - mean_ntrt) ({abs(m2 - m1)}); "
                "at least one of mean_ntrt, mean_trt, difference is misspecified",
            )
    elif missing[0] == "mean_trt":
        m1, d = float(mean_ntrt), float(difference)
        m2 = m1 + d
    elif missing[0] == "mean_ntrt":
        m2, d = float(mean_trt), float(difference)
        m1 = m2 - d
    else:
        m1, m2 = float(mean_ntrt), float(mean_trt)

    for name, level in (("mean_ntrt", m1), ("mean_trt", m2)):
        if family == "binary" and not 0 < level < 1:
            return (0.0, 0.0, 0.0), _fail(name, f"{name} must be a probability strictly between 0 and 1, got {level}")
        if family in COUNT_FAMILIES and level <= 0:
            return (0.0, 0.0, 0.0), _fail(name, f"{name} must be an expected count greater than 0, got {level}")

    return (m1, m2, m2 - m1), _ok("mean_trt")


def _validate_sigma_b(sigma_b: Any, sigma_b2: Any, topology: str) -> Tuple[Tuple[float, float], _ValidationResult]:
    """Resolve between-cluster variances for (control, treatment).

    For parallel designs an arm-specific value replaces the baseline; for
    stepped-wedge designs it is added to it, since every cluster carries
    the baseline variance in both conditions.
    """
    arr = _as_vector(sigma_b)
    if arr is None or any(float(v) < 0 or not math.isfinite(float(v)) for v in arr):
        return (0.0, 0.0), _fail("sigma_b", f"All values supplied to sigma_b must be numeric values >= 0, got {sigma_b!r}")
    if len(arr) not in (1, 2):
        return (0.0, 0.0), _fail(
            "sigma_b",
            "sigma_b must be a scalar (equal between-cluster variance for both arms) or a vector of length 2",
        )

    base = float(arr[0])
    extra: Optional[float] = float(arr[1]) if len(arr) == 2 else None

    if sigma_b2 is not None:
        if extra is not None:
            return (0.0, 0.0), _fail("sigma_b2", "sigma_b2 cannot be combined with a length-2 sigma_b")
        if not _is_number(sigma_b2) or float(sigma_b2) < 0 or not math.isfinite(float(sigma_b2)):
            return (0.0, 0.0), _fail("sigma_b2", f"sigma_b2 must be a numeric value >= 0, got {sigma_b2!r}")
        extra = float(sigma_b2)

    if extra is None:
        return (base, base), _ok("sigma_b")
    if topology == STEPPED_WEDGE:
        return (base, base + extra), _ok("sigma_b")
    return (base, extra), _ok("sigma_b")


def _validate_total_variance(variance: Any, sigma_b: Tuple[float, float]) -> Tuple[Tuple[float, float], _ValidationResult]:
    """Validate total (between + within) outcome variance for Gaussian outcomes."""
    arr = _as_vector(variance)
    if arr is None or len(arr) not in (1, 2) or any(not math.isfinite(float(v)) or float(v) <= 0 for v in arr):
        return (0.0, 0.0), _fail(
            "variance", f"variance must be a positive scalar or a vector of length 2 (one per arm), got {variance!r}"
        )
    totals = (float(arr[0]), float(arr[-1]))
    for arm, (total, between) in enumerate(zip(totals, sigma_b)):
        if total < between:
            return (0.0, 0.0), _fail(
                "variance",
                f"variance ({total}) must be at least the between-cluster variance ({between}) in arm {arm}",
            )
    return totals, _ok("variance")


def _validate_analysis(analysis: Any, family: str) -> Tuple[Optional[str], _ValidationResult]:
    if family not in COUNT_FAMILIES:
        if analysis is not None and analysis != family:
            return None, _fail("analysis", f"analysis can only be set for count outcomes, got {analysis!r}")
        return None, _ok("analysis")

    resolved = "poisson" if analysis is None else analysis
    result = _validate_choice(resolved, "analysis", COUNT_FAMILIES)
    if not result.is_valid:
        return None, result
    return resolved, result


def _validate_seed(seed: Any) -> _ValidationResult:
    if seed is None:
        return _ok("seed")
    if not isinstance(seed, Integral) or isinstance(seed, bool):
        return _fail("seed", "seed must be an integer or None")
    if seed < 0:
        return _fail("seed", "seed must be non-negative")
    return _ok("seed")


def _validate_parallel_settings(enable: Any, n_cores: Optional[int]) -> Tuple[Tuple[bool, int], _ValidationResult]:
    """Validate parallel processing settings.

    Args:
        enable: True or False.
        n_cores: Number of CPU cores (positive int or None for auto).

    Returns:
        ((enable, n_cores), ValidationResult)
    """
    if not isinstance(enable, (bool, np.bool_)):
        return (False, 1), _fail("parallel", f"parallel must be True or False, got {enable!r}")

    max_cores = mp.cpu_count() or 1
    validated_n_cores = max(1, max_cores // 2)

    if n_cores is not None:
        if not isinstance(n_cores, Integral) or isinstance(n_cores, bool) or n_cores <= 0:
            return (bool(enable), 1), _fail("n_cores", f"n_cores must be a positive integer, got {n_cores}")
        validated_n_cores = min(int(n_cores), max_cores)

    if not enable:
        validated_n_cores = 1
    return (bool(enable), validated_n_cores), _ok("parallel")


def _validate_max_failed(value: Any) -> _ValidationResult:
    if value is None:
        return _ok("max_failed_simulations")
    if not _is_number(value) or not 0 <= float(value) <= 1:
        return _fail("max_failed_simulations", "max_failed_simulations must be between 0 and 1")
    return _ok("max_failed_simulations")


def validate_config(
    nsim: Any = None,
    nsubjects: Any = None,
    nclusters: Any = None,
    *,
    design: Any = PARALLEL,
    family: Any = "gaussian",
    mean_ntrt: Any = None,
    mean_trt: Any = None,
    difference: Any = None,
    sigma_b: Any = None,
    sigma_b2: Any = None,
    variance: Any = None,
    steps: Any = None,
    dispersion: Any = 1.0,
    analysis: Any = None,
    method: Any = "glmm",
    alpha: Any = 0.05,
    seed: Any = None,
    quiet: Any = False,
    all_sim_data: Any = False,
    parallel: Any = False,
    n_cores: Any = None,
    max_failed_simulations: Any = None,
) -> SimulationConfig:
    """Validate and normalize a full simulation configuration.

    Raises:
        ConfigurationError: Naming the first offending field.
        DesignInconsistencyError: For structural problems with cluster
            sizes or the crossover schedule.

    Returns:
        A frozen ``SimulationConfig``.
    """
    collected_warnings: List[str] = []

    def check(result: _ValidationResult) -> None:
        result.raise_if_invalid()
        collected_warnings.extend(result.warnings)

    required = {"nsim": nsim, "nsubjects": nsubjects, "nclusters": nclusters, "sigma_b": sigma_b}
    if family == "gaussian":
        required["variance"] = variance
    missing = [name for name, value in required.items() if value is None]
    if missing:
        raise ConfigurationError(missing[0], f"{', '.join(missing)} must all be specified. Please review your input values.")

    check(_validate_choice(design, "design", TOPOLOGIES))
    check(_validate_choice(family, "family", FAMILIES))
    check(_validate_choice(method, "method", METHODS))
    resolved_analysis, result = _validate_analysis(analysis, family)
    check(result)
    check(_validate_flag(quiet, "quiet"))
    check(_validate_flag(all_sim_data, "all_sim_data"))

    n_sims, result = _validate_simulations(nsim)
    check(result)

    counts, result = _validate_nclusters(nclusters, design)
    check(result)
    total_clusters = sum(counts)

    sizes, result = _validate_nsubjects(nsubjects, total_clusters)
    check(result)

    step_index: Tuple[int, ...] = ()
    if design == STEPPED_WEDGE:
        if steps is None:
            raise ConfigurationError("steps", "steps must be specified for stepped-wedge designs")
        step_index, result = _validate_steps(steps, total_clusters)
        check(result)
        if len(step_index) == 1:
            collected_warnings.append(
                "A single step crosses every cluster over at once, so the treatment effect is "
                "confounded with the period effect; most fits will fail."
            )
    elif steps is not None:
        raise ConfigurationError("steps", "steps can only be specified for stepped-wedge designs")

    check(_validate_alpha(alpha))

    (m1, m2, diff), result = _validate_effect_sizes(family, mean_ntrt, mean_trt, difference)
    check(result)

    between, result = _validate_sigma_b(sigma_b, sigma_b2, design)
    check(result)

    totals: Optional[Tuple[float, float]] = None
    if family == "gaussian":
        totals, result = _validate_total_variance(variance, between)
        check(result)

    if not _is_number(dispersion) or not float(dispersion) > 0:
        raise ConfigurationError("dispersion", f"dispersion must be a number greater than 0, got {dispersion!r}")

    check(_validate_seed(seed))
    (enable_parallel, cores), result = _validate_parallel_settings(parallel, n_cores)
    check(result)
    check(_validate_max_failed(max_failed_simulations))

    for message in collected_warnings:
        warnings.warn(message, UserWarning, stacklevel=2)

    design_spec = TrialDesignSpec(
        topology=design,
        nclusters=counts,
        nsubjects=sizes,
        step_index=step_index,
    )
    variance_spec = VarianceSpec(
        family=family,
        mean_ntrt=m1,
        mean_trt=m2,
        difference=diff,
        sigma_b=between,
        variance=totals,
        dispersion=float(dispersion),
        analysis=resolved_analysis,
    )
    return SimulationConfig(
        nsim=n_sims,
        design=design_spec,
        variance=variance_spec,
        method=method,
        alpha=float(alpha),
        seed=None if seed is None else int(seed),
        quiet=bool(quiet),
        all_sim_data=bool(all_sim_data),
        parallel=enable_parallel,
        n_cores=cores,
        max_failed_simulations=None if max_failed_simulations is None else float(max_failed_simulations),
        warnings=tuple(collected_warnings),
    )
