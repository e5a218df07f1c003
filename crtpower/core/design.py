"""
Design construction for cluster-randomized trials.

Turns a validated ``TrialDesignSpec`` into a long-format assignment table
(one row per subject and observation period) that every replicate of a run
shares. Construction is deterministic; no randomness is involved.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np
import pandas as pd

from .specs import TrialDesignSpec

__all__ = ["AssignmentTable", "build_design", "crossover_matrix"]


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr = np.ascontiguousarray(arr)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class AssignmentTable:
    """Per-row treatment assignment for one design.

    All arrays have one entry per (subject, period) row and are read-only.

    Attributes:
        subject: Subject id, unique across the whole trial.
        cluster: Cluster id, contiguous ``0..K-1``.
        period: Observation period (always 0 for parallel designs).
        trt: Treatment indicator (0 = control, 1 = intervention).
        crossover: Step at which the row's cluster crosses over
            (0 for parallel designs).
        design: The spec the table was built from.
    """

    subject: np.ndarray
    cluster: np.ndarray
    period: np.ndarray
    trt: np.ndarray
    crossover: np.ndarray
    design: TrialDesignSpec

    def __len__(self) -> int:
        return int(self.subject.shape[0])

    @property
    def n_clusters(self) -> int:
        return self.design.total_clusters

    @property
    def n_periods(self) -> int:
        return self.design.n_periods

    def to_frame(self) -> pd.DataFrame:
        """Return a fresh (writable) DataFrame copy of the table."""
        return pd.DataFrame(
            {
                "subject": self.subject.copy(),
                "cluster": self.cluster.copy(),
                "period": self.period.copy(),
                "trt": self.trt.copy(),
                "crossover": self.crossover.copy(),
            }
        )


def _cluster_crossover_steps(step_index: Tuple[int, ...], n_clusters: int) -> np.ndarray:
    """Crossover step for each cluster: ``1 + #{cumulative counts <= c}``."""
    cumulative = np.asarray(step_index, dtype=np.int64)
    clusters = np.arange(n_clusters)
    return 1 + np.searchsorted(cumulative, clusters, side="right")


def _build_parallel(spec: TrialDesignSpec) -> AssignmentTable:
    n_ctrl = spec.nclusters[0]
    sizes = np.asarray(spec.nsubjects, dtype=np.int64)
    n_clusters = spec.total_clusters

    cluster = np.repeat(np.arange(n_clusters, dtype=np.int64), sizes)
    trt = (cluster >= n_ctrl).astype(np.int64)
    n_rows = cluster.shape[0]

    return AssignmentTable(
        subject=_readonly(np.arange(n_rows, dtype=np.int64)),
        cluster=_readonly(cluster),
        period=_readonly(np.zeros(n_rows, dtype=np.int64)),
        trt=_readonly(trt),
        crossover=_readonly(np.zeros(n_rows, dtype=np.int64)),
        design=spec,
    )


def _build_stepped_wedge(spec: TrialDesignSpec) -> AssignmentTable:
    n_clusters = spec.total_clusters
    n_periods = spec.n_periods
    sizes = np.asarray(spec.nsubjects, dtype=np.int64)
    steps = _cluster_crossover_steps(spec.step_index, n_clusters)

    # one period block: every subject of every cluster, cluster-major
    block_cluster = np.repeat(np.arange(n_clusters, dtype=np.int64), sizes)
    block_subject = np.arange(block_cluster.shape[0], dtype=np.int64)
    block_steps = steps[block_cluster]

    cluster = np.tile(block_cluster, n_periods)
    subject = np.tile(block_subject, n_periods)
    crossover = np.tile(block_steps, n_periods)
    period = np.repeat(np.arange(n_periods, dtype=np.int64), block_cluster.shape[0])
    trt = (period >= crossover).astype(np.int64)

    return AssignmentTable(
        subject=_readonly(subject),
        cluster=_readonly(cluster),
        period=_readonly(period),
        trt=_readonly(trt),
        crossover=_readonly(crossover.astype(np.int64)),
        design=spec,
    )


def build_design(spec: TrialDesignSpec) -> AssignmentTable:
    """Build the assignment table for *spec*.

    Parallel designs put the control arm's clusters first (``trt=0``) and
    the treatment arm's clusters after them, numbering clusters
    contiguously across arms. Stepped-wedge designs observe every cluster
    at periods ``0..S``; a cluster is treated from its crossover step
    onward. Rows are ordered by period, then cluster, then subject.
    """
    if spec.is_stepped_wedge:
        return _build_stepped_wedge(spec)
    return _build_parallel(spec)


def crossover_matrix(table: AssignmentTable) -> pd.DataFrame:
    """Clusters x periods matrix of treatment indicators.

    Rows are labelled by cluster id, columns ``t0..tS`` by period.
    """
    n_clusters = table.n_clusters
    n_periods = table.n_periods
    matrix = np.zeros((n_clusters, n_periods), dtype=np.int64)
    matrix[table.cluster, table.period] = table.trt
    return pd.DataFrame(
        matrix,
        index=pd.Index(np.arange(n_clusters), name="cluster"),
        columns=[f"t{p}" for p in range(n_periods)],
    )
