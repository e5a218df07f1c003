"""
Simulation execution for crtpower.

This module contains the Monte Carlo loop: it builds the design once,
then for every replicate draws a dataset, fits the configured model and
records the treatment-effect test. Replicates whose fit is rejected are
dropped and counted; the remaining ones are aggregated into the power
estimate and its tables.
"""

import warnings
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..errors import AnalysisFitError, InsufficientReplicatesError
from ..progress import ProgressReporter, SimulationCancelled
from ..stats.analysis import analyze_replicate
from ..stats.data_generation import generate_replicate, replicate_group_means
from .design import AssignmentTable, build_design, crossover_matrix
from .results import ReplicateResult, ResultsProcessor, build_power_result
from .specs import SimulationConfig


class RunState(str, Enum):
    """Lifecycle of a ``SimulationRunner.run`` call."""

    IDLE = "idle"
    VALIDATING = "validating"
    BUILDING_DESIGN = "building_design"
    ITERATING = "iterating"
    AGGREGATING = "aggregating"
    DONE = "done"
    FAILED = "failed"


# (sim_id, result or None, failure reason or None, dataset or None)
ReplicateOutcome = Tuple[int, Optional[ReplicateResult], Optional[str], Optional[pd.DataFrame]]


def _replicate_rng(seed: Optional[int], sim_id: int) -> np.random.Generator:
    """Generator for replicate *sim_id*: seeded with ``seed + sim_id``, or fresh entropy."""
    return np.random.default_rng(seed + sim_id if seed is not None else None)


def _run_replicate(
    sim_id: int,
    table: AssignmentTable,
    config: SimulationConfig,
    backend,
    keep_data: bool,
) -> ReplicateOutcome:
    """Generate and analyse one replicate.

    Module-level so that joblib workers can pickle it. Fit rejections are
    returned as a failure reason rather than raised.
    """
    rng = _replicate_rng(config.seed, sim_id)
    dataset = generate_replicate(table, config.variance, rng)
    if keep_data:
        dataset.insert(0, "sim_id", sim_id)

    try:
        fit = analyze_replicate(dataset, config, backend)
    except AnalysisFitError as e:
        return sim_id, None, e.reason, None

    means = {(int(trt), int(period)): float(value) for (trt, period), value in replicate_group_means(dataset).items()}
    result = ReplicateResult(
        sim_id=sim_id,
        estimate=fit.estimate,
        std_err=fit.std_err,
        statistic=fit.statistic,
        p_value=fit.p_value,
        fitted_icc=fit.fitted_icc,
        group_means=means,
    )
    return sim_id, result, None, dataset if keep_data else None


class SimulationRunner:
    """Executes Monte Carlo simulations for power estimation.

    The runner owns the iteration count, optional dataset retention,
    progress reporting, the per-replicate failure policy and optional
    parallel execution. Its ``state`` attribute records how far the last
    ``run`` call got (``DONE`` on success, ``FAILED`` otherwise).
    """

    def __init__(
        self,
        config: Union[SimulationConfig, Mapping[str, Any]],
        backend=None,
    ):
        """Initialise the simulation runner.

        Args:
            config: Validated ``SimulationConfig``, or raw keyword arguments
                for ``validate_config``.
            backend: ``FittingBackend`` used for every replicate; the active
                global backend when ``None``.
        """
        self.config = config
        self.backend = backend
        self.state = RunState.IDLE
        self.failures: Dict[str, int] = {}
        self.design: Optional[AssignmentTable] = None

    def run(
        self,
        progress: Optional[ProgressReporter] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> Dict[str, Any]:
        """Run all replicates and return the power result dictionary.

        Args:
            progress: Optional ``ProgressReporter`` (advanced by 1 per
                replicate; the caller starts and finishes it).
            cancel_check: Optional callable returning ``True`` to abort.

        Raises:
            ConfigurationError: If raw configuration fails validation.
            SimulationCancelled: If *cancel_check* requested a stop.
            InsufficientReplicatesError: If no replicate produced a usable fit.
            RuntimeError: If the failure rate exceeds ``max_failed_simulations``.
        """
        try:
            self.state = RunState.VALIDATING
            config = self._validated_config()

            self.state = RunState.BUILDING_DESIGN
            self.design = build_design(config.design)

            self.state = RunState.ITERATING
            backend = self.backend
            if backend is None:
                from ..backends import get_backend

                backend = get_backend()
            outcomes = self._iterate(config, self.design, backend, progress, cancel_check)

            self.state = RunState.AGGREGATING
            result = self._aggregate(config, self.design, outcomes)
        except BaseException:
            self.state = RunState.FAILED
            raise

        self.state = RunState.DONE
        return result

    def _validated_config(self) -> SimulationConfig:
        if isinstance(self.config, SimulationConfig):
            return self.config
        from ..utils.validators import validate_config

        self.config = validate_config(**dict(self.config))
        return self.config

    def _iterate(
        self,
        config: SimulationConfig,
        table: AssignmentTable,
        backend,
        progress: Optional[ProgressReporter],
        cancel_check: Optional[Callable[[], bool]],
    ) -> List[ReplicateOutcome]:
        if config.parallel and config.n_cores > 1:
            return self._iterate_parallel(config, table, backend, progress, cancel_check)
        return self._iterate_sequential(config, table, backend, progress, cancel_check, range(config.nsim))

    def _iterate_sequential(self, config, table, backend, progress, cancel_check, sim_ids) -> List[ReplicateOutcome]:
        outcomes = []
        for sim_id in sim_ids:
            if cancel_check is not None and cancel_check():
                raise SimulationCancelled("Simulation cancelled by user")
            outcomes.append(_run_replicate(sim_id, table, config, backend, config.all_sim_data))
            if progress is not None:
                progress.advance(1)
        return outcomes

    def _iterate_parallel(self, config, table, backend, progress, cancel_check) -> List[ReplicateOutcome]:
        from joblib import Parallel, delayed

        outcomes: List[ReplicateOutcome] = []
        try:
            generator = Parallel(
                n_jobs=config.n_cores,
                backend="loky",
                verbose=0,
                return_as="generator_unordered",
            )(delayed(_run_replicate)(sim_id, table, config, backend, config.all_sim_data) for sim_id in range(config.nsim))
            for outcome in generator:
                if cancel_check is not None and cancel_check():
                    raise SimulationCancelled("Simulation cancelled by user")
                outcomes.append(outcome)
                if progress is not None:
                    progress.advance(1)
        except Exception as e:
            if isinstance(e, SimulationCancelled):
                raise
            print(f"Warning: Parallel execution failed ({e}). Falling back to sequential.")
            done = {outcome[0] for outcome in outcomes}
            remaining = [sim_id for sim_id in range(config.nsim) if sim_id not in done]
            outcomes.extend(self._iterate_sequential(config, table, backend, progress, cancel_check, remaining))
        return outcomes

    def _aggregate(self, config: SimulationConfig, table: AssignmentTable, outcomes: List[ReplicateOutcome]) -> Dict[str, Any]:
        outcomes = sorted(outcomes, key=lambda o: o[0])
        completed = [result for _, result, _, _ in outcomes if result is not None]

        self.failures = {}
        for _, result, reason, _ in outcomes:
            if result is None:
                key = reason or "Unknown"
                self.failures[key] = self.failures.get(key, 0) + 1

        n_failed = config.nsim - len(completed)
        failed_pct = n_failed / config.nsim

        if not completed:
            raise InsufficientReplicatesError(
                f"All {config.nsim} simulations failed; power cannot be estimated. "
                f"Failure reasons: {self.failures}"
            )
        if config.max_failed_simulations is not None and failed_pct > config.max_failed_simulations:
            raise RuntimeError(
                f"Too many failed simulations: {n_failed}/{config.nsim} "
                f"({failed_pct:.1%}), threshold: {config.max_failed_simulations:.1%}"
            )
        if n_failed > 0:
            warnings.warn(f"{n_failed} simulations failed ({failed_pct:.1%}) and were dropped: {self.failures}")

        processor = ResultsProcessor(alpha=config.alpha)
        estimates = processor.build_estimates_table(completed)
        sim_data = None
        if config.all_sim_data:
            sim_data = [dataset for _, _, _, dataset in outcomes if dataset is not None]

        return build_power_result(
            config=config,
            power=processor.calculate_power(estimates),
            estimates=estimates,
            means=processor.group_means(completed, config.design),
            icc=processor.icc_table(config.variance, completed),
            variance=processor.variance_table(config.variance),
            inputs=processor.inputs_table(config.variance),
            crossover=crossover_matrix(table),
            failures={
                "n_failed": n_failed,
                "proportion": failed_pct,
                "reasons": dict(self.failures),
            },
            sim_data=sim_data,
        )
