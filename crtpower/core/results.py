"""
Results processing for crtpower.

This module turns per-replicate fit results into the power estimate, its
Wald confidence interval and the descriptive tables that accompany it.
Every computation first sorts replicate results by ``sim_id``, so the output
does not depend on the order in which replicates finished.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm

from ..errors import InsufficientReplicatesError
from .specs import COUNT_FAMILIES, FAMILY_NAMES, STEPPED_WEDGE, SimulationConfig, TrialDesignSpec, VarianceSpec

ESTIMATE_COLUMNS = ["estimate", "std_err", "test_statistic", "p_value", "significant"]


@dataclass(frozen=True)
class ReplicateResult:
    """Outcome of one successfully analysed replicate."""

    sim_id: int
    estimate: float
    std_err: float
    statistic: float
    p_value: float
    fitted_icc: float = np.nan
    group_means: Dict[Tuple[int, int], float] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class PowerEstimate:
    """Power point estimate with a Wald confidence interval.

    The interval is not clipped to [0, 1].
    """

    power: float
    lower: float
    upper: float
    n_used: int
    alpha: float = 0.05

    def to_frame(self) -> pd.DataFrame:
        level = int(round((1 - self.alpha) * 100))
        return pd.DataFrame(
            {
                "power": [self.power],
                f"lower.{level}.ci": [self.lower],
                f"upper.{level}.ci": [self.upper],
                "n_used": [self.n_used],
            }
        )


def _sorted(results: Sequence[ReplicateResult]) -> List[ReplicateResult]:
    return sorted(results, key=lambda r: r.sim_id)


def specified_icc(spec: VarianceSpec) -> np.ndarray:
    """ICC implied by the input variance components, one value per arm.

    gaussian: sigma_b / total variance; binary: sigma_b / (sigma_b + pi^2/3);
    counts: sigma_b / (sigma_b + ln(1 + 1/mu [+ 1/size])).
    """
    sigma_b = np.asarray(spec.sigma_b, dtype=float)
    if spec.family == "gaussian":
        return sigma_b / np.asarray(spec.variance, dtype=float)
    if spec.family == "binary":
        return sigma_b / (sigma_b + np.pi**2 / 3)

    inv_mu = 1.0 / spec.arm_levels()
    if spec.family == "neg-binomial":
        inv_mu = inv_mu + 1.0 / spec.dispersion
    return sigma_b / (sigma_b + np.log1p(inv_mu))


class ResultsProcessor:
    """Converts replicate results into power estimates and summary tables.

    Also aggregates cluster-count sweeps to find the first count that
    achieves the target power.
    """

    def __init__(self, alpha: float = 0.05, target_power: float = 0.8):
        """Initialise the results processor.

        Args:
            alpha: Significance level used to flag replicates and size the CI.
            target_power: Target power as a proportion (0-1), used by sweeps.
        """
        self.alpha = alpha
        self.target_power = target_power

    def build_estimates_table(self, results: Sequence[ReplicateResult]) -> pd.DataFrame:
        """One row per completed replicate, indexed and sorted by ``sim_id``."""
        ordered = _sorted(results)
        table = pd.DataFrame(
            {
                "estimate": [r.estimate for r in ordered],
                "std_err": [r.std_err for r in ordered],
                "test_statistic": [r.statistic for r in ordered],
                "p_value": [r.p_value for r in ordered],
            },
            index=pd.Index([r.sim_id for r in ordered], name="sim_id", dtype=np.int64),
        )
        table["significant"] = table["p_value"] < self.alpha
        return table[ESTIMATE_COLUMNS]

    def calculate_power(self, estimates: pd.DataFrame) -> PowerEstimate:
        """Power as the share of significant replicates, with a Wald CI.

        ``point -/+ |z_{alpha/2}| * sqrt(p (1 - p) / n)`` with *n* the number
        of completed replicates.

        Raises:
            InsufficientReplicatesError: If *estimates* is empty.
        """
        n = len(estimates)
        if n == 0:
            raise InsufficientReplicatesError("No replicates completed; power cannot be estimated")

        power = float(np.mean(estimates["significant"].to_numpy(dtype=float)))
        z = abs(norm.ppf(self.alpha / 2))
        half_width = z * np.sqrt(power * (1 - power) / n)
        return PowerEstimate(
            power=power,
            lower=float(power - half_width),
            upper=float(power + half_width),
            n_used=n,
            alpha=self.alpha,
        )

    def group_means(self, results: Sequence[ReplicateResult], design: TrialDesignSpec) -> pd.DataFrame:
        """Average outcome per (period, trt) cell across completed replicates.

        Cells are summed replicate by replicate and divided by the number of
        completed replicates; cells the design never populates are omitted.
        """
        ordered = _sorted(results)
        totals: Dict[Tuple[int, int], float] = {}
        for result in ordered:
            for key, value in result.group_means.items():
                totals[key] = totals.get(key, 0.0) + value

        n = len(ordered)
        rows = []
        for period in range(design.n_periods):
            for trt in (0, 1):
                if (trt, period) in totals:
                    rows.append({"period": period, "trt": trt, "mean": totals[(trt, period)] / n if n else np.nan})
        return pd.DataFrame(rows, columns=["period", "trt", "mean"])

    def icc_table(self, spec: VarianceSpec, results: Sequence[ReplicateResult]) -> pd.DataFrame:
        """Specified ICC (mean over arms) next to the mean fitted ICC."""
        fitted = np.array([r.fitted_icc for r in _sorted(results)], dtype=float)
        fitted = fitted[np.isfinite(fitted)]
        return pd.DataFrame(
            {"icc": [float(np.mean(specified_icc(spec))), float(np.mean(fitted)) if fitted.size else np.nan]},
            index=pd.Index(["specified", "fitted"], name="source"),
        )

    def variance_table(self, spec: VarianceSpec) -> pd.DataFrame:
        """Per-arm between-cluster variance (plus within/total for Gaussian)."""
        table = pd.DataFrame(
            {"sigma_b": list(spec.sigma_b)},
            index=pd.Index(["ntrt", "trt"], name="arm"),
        )
        if spec.family == "gaussian":
            table["sigma"] = list(spec.residual_variance)
            table["variance"] = list(spec.variance)
        table["icc"] = specified_icc(spec)
        return table

    def inputs_table(self, spec: VarianceSpec) -> pd.Series:
        """Arm levels, difference and ratio measures for the effect size."""
        inputs: Dict[str, float] = {
            "mean_ntrt": spec.mean_ntrt,
            "mean_trt": spec.mean_trt,
            "difference": spec.difference,
        }
        if spec.family == "binary":
            p1, p2 = spec.mean_ntrt, spec.mean_trt
            inputs["odds_ratio"] = (p2 / (1 - p2)) / (p1 / (1 - p1))
        elif spec.family in COUNT_FAMILIES:
            inputs["risk_ratio"] = spec.mean_trt / spec.mean_ntrt
        return pd.Series(inputs, name="value")

    def process_cluster_sweep(self, results: List[Tuple[int, Optional[Dict]]]) -> Dict[str, Any]:
        """
        Process power results from a cluster-count sweep.

        Args:
            results: List of (cluster_count, power_result) tuples; a ``None``
                result marks a count where every replicate failed.

        Returns:
            Dictionary with the counts tested, power and CI per count, and
            the first count achieving the target power (``-1`` if none).
        """
        counts, powers, lowers, uppers = [], [], [], []
        first_achieved = -1

        for count, power_result in results:
            counts.append(count)
            if power_result is None:
                powers.append(np.nan)
                lowers.append(np.nan)
                uppers.append(np.nan)
                continue

            estimate: PowerEstimate = power_result["results"]["power_estimate"]
            powers.append(estimate.power)
            lowers.append(estimate.lower)
            uppers.append(estimate.upper)
            if estimate.power >= self.target_power and first_achieved == -1:
                first_achieved = count

        return {
            "clusters_tested": counts,
            "powers": powers,
            "lower": lowers,
            "upper": uppers,
            "first_achieved": first_achieved,
            "target_power": self.target_power,
        }


def _overview(config: SimulationConfig) -> str:
    topology = "Stepped Wedge" if config.design.topology == STEPPED_WEDGE else "Parallel"
    family = FAMILY_NAMES[config.variance.family]
    return (
        f"Monte Carlo Power Estimation: {family} Outcome, {topology} Cluster-Randomized Trial "
        f"({config.method.upper()} analysis)"
    )


def _cluster_counts(design: TrialDesignSpec) -> Dict[str, Any]:
    if design.topology == STEPPED_WEDGE:
        return {"total": design.total_clusters, "steps": design.n_steps, "step_index": list(design.step_index)}
    return {"ntrt": design.nclusters[0], "trt": design.nclusters[1]}


def build_power_result(
    config: SimulationConfig,
    power: PowerEstimate,
    estimates: pd.DataFrame,
    means: pd.DataFrame,
    icc: pd.DataFrame,
    variance: pd.DataFrame,
    inputs: pd.Series,
    crossover: pd.DataFrame,
    failures: Dict[str, Any],
    sim_data: Optional[List[pd.DataFrame]] = None,
) -> Dict[str, Any]:
    """
    Build complete power analysis result dictionary.

    Args:
        config: Validated configuration the run used.
        power: Power estimate from ``ResultsProcessor.calculate_power``.
        estimates: Per-replicate model estimates table.
        means: Group means per (period, trt).
        icc: Specified vs fitted ICC.
        variance: Per-arm variance table.
        inputs: Effect-size inputs (levels, difference, ratios).
        crossover: Clusters x periods crossover matrix.
        failures: Failure summary from the simulation runner.
        sim_data: Retained replicate datasets (``all_sim_data=True`` only).

    Returns:
        Complete result dictionary
    """
    design = config.design
    return {
        "model": {
            "overview": _overview(config),
            "design": design.topology,
            "family": config.variance.family,
            "analysis": config.variance.analysis_family,
            "method": config.method_name,
            "alpha": config.alpha,
            "n_simulations": config.nsim,
            "cluster_sizes": list(design.nsubjects),
            "n_clusters": _cluster_counts(design),
            "seed": config.seed,
            "parallel": config.parallel,
        },
        "results": {
            "power": power.to_frame(),
            "power_estimate": power,
            "n_simulations_used": power.n_used,
            "n_simulations_failed": failures.get("n_failed", 0),
            "failures": failures,
            "variance_parms": variance,
            "inputs": inputs,
            "means": means,
            "icc": icc,
            "crossover_matrix": crossover,
            "model_estimates": estimates,
            "sim_data": sim_data,
        },
    }


def build_cluster_sweep_result(
    config: SimulationConfig,
    counts: List[int],
    analysis_results: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Build complete cluster-count sweep result dictionary.

    Args:
        config: Configuration of the first design point (shared settings).
        counts: Cluster counts tested (per arm for parallel designs, total
            for stepped-wedge designs).
        analysis_results: Output of ``ResultsProcessor.process_cluster_sweep``.

    Returns:
        Complete result dictionary
    """
    return {
        "model": {
            "overview": _overview(config),
            "design": config.design.topology,
            "family": config.variance.family,
            "method": config.method_name,
            "alpha": config.alpha,
            "n_simulations": config.nsim,
            "target_power": analysis_results["target_power"],
            "cluster_range": {
                "from_clusters": counts[0],
                "to_clusters": counts[-1],
                "by": counts[1] - counts[0] if len(counts) > 1 else 1,
            },
        },
        "results": analysis_results,
    }
