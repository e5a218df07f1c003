"""Core components for the crtpower framework.

Re-exports the foundational building blocks:

- ``TrialDesignSpec``, ``VarianceSpec``, ``SimulationConfig`` — validated
  configuration records.
- ``AssignmentTable``, ``build_design``, ``crossover_matrix`` — design
  construction.
- ``SimulationRunner``, ``RunState`` — Monte Carlo simulation execution.
- ``ResultsProcessor``, ``PowerEstimate``, ``ReplicateResult``,
  ``build_power_result``, ``build_cluster_sweep_result`` — power
  calculation and result formatting.
"""

from .design import AssignmentTable, build_design, crossover_matrix
from .results import (
    PowerEstimate,
    ReplicateResult,
    ResultsProcessor,
    build_cluster_sweep_result,
    build_power_result,
)
from .simulation import RunState, SimulationRunner
from .specs import SimulationConfig, TrialDesignSpec, VarianceSpec

__all__ = [
    # Specs
    "TrialDesignSpec",
    "VarianceSpec",
    "SimulationConfig",
    # Design
    "AssignmentTable",
    "build_design",
    "crossover_matrix",
    # Simulation
    "SimulationRunner",
    "RunState",
    # Results
    "ResultsProcessor",
    "PowerEstimate",
    "ReplicateResult",
    "build_power_result",
    "build_cluster_sweep_result",
]
