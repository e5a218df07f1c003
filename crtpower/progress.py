"""
Progress reporting for crtpower simulations.

Provides a callback-based progress system that works from both Python scripts
and notebooks. Progress is reported via a simple (current, total) callback
and never influences the simulation itself.
"""

import sys
import time
from datetime import datetime
from typing import Callable, Optional


class SimulationCancelled(Exception):
    """Raised when a simulation is cancelled by the user."""

    pass


class ProgressReporter:
    """Wraps a ``(current, total)`` callback with counting and throttling.

    Tracks the number of completed replicates and fires the callback
    at most once every *update_every* advances. The first replicate always
    fires so that reporters can derive a completion estimate from it.

    Args:
        total: Total number of replicates.
        callback: Function called as ``callback(current, total)`` on each
            (throttled) update.
        update_every: Fire the callback at most once per this many advances.
            Defaults to ``max(1, total // 100)`` (~100 updates total).
    """

    def __init__(
        self,
        total: int,
        callback: Callable[[int, int], None],
        update_every: Optional[int] = None,
    ):
        self.total = total
        self._callback = callback
        self._current = 0
        self.update_every = update_every if update_every is not None else max(1, total // 100)

    @property
    def current(self) -> int:
        return self._current

    def start(self):
        """Signal the beginning of the run (fires an initial 0/total update)."""
        self._current = 0
        self._callback(0, self.total)

    def advance(self, n: int = 1):
        """Advance the counter by *n* steps, firing the callback when due."""
        previous = self._current
        self._current += n
        if previous == 0 or self._current >= self.total or self._current % self.update_every == 0:
            self._callback(self._current, self.total)

    def finish(self):
        """Signal completion (fires a final total/total update if not already there)."""
        if self._current < self.total:
            self._current = self.total
            self._callback(self.total, self.total)


def _format_duration(seconds: float) -> str:
    hours, rem = divmod(int(round(seconds)), 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours}Hr:{minutes}Min:{secs}Sec"


class PrintReporter:
    """Console progress reporter.

    Writes the start time and an estimated completion time once the first
    replicate has finished, then a ``\\rProgress: 45.2% (723/1600 replicates)``
    line, and the total runtime on completion. All output goes to stderr.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._started_at: Optional[float] = None
        self._announced = False

    def __call__(self, current: int, total: int):
        if total <= 0:
            return

        if self._started_at is None or current == 0:
            self._started_at = self._clock()
            self._announced = False
            if current == 0:
                return

        elapsed = self._clock() - self._started_at
        if not self._announced and current >= 1:
            remaining = elapsed / current * (total - current)
            sys.stderr.write(
                f"Begin simulations :: Start Time: {datetime.now():%Y-%m-%d %H:%M:%S}"
                f" :: Estimated completion time: {_format_duration(remaining)}\n"
            )
            self._announced = True

        pct = 100.0 * current / total
        sys.stderr.write(f"\rProgress: {pct:5.1f}% ({current}/{total} replicates)")
        sys.stderr.flush()
        if current >= total:
            sys.stderr.write(
                f"\nSimulations Complete! Time Completed: {datetime.now():%Y-%m-%d %H:%M:%S}"
                f"\nTotal Runtime: {_format_duration(elapsed)}\n"
            )
            sys.stderr.flush()
            self._started_at = None


class TqdmReporter:
    """Optional tqdm-based progress reporter (lazy import).

    Usage::

        from crtpower.progress import TqdmReporter
        model.find_power(progress_callback=TqdmReporter())
    """

    def __init__(self, **tqdm_kwargs):
        self._tqdm_kwargs = tqdm_kwargs
        self._bar = None

    def __call__(self, current: int, total: int):
        from tqdm import tqdm

        if self._bar is None:
            self._bar = tqdm(total=total, unit="rep", **self._tqdm_kwargs)

        delta = current - self._bar.n
        if delta > 0:
            self._bar.update(delta)

        if current >= total:
            self._bar.close()
            self._bar = None


def compute_total_simulations(n_simulations: int, n_design_points: int = 1) -> int:
    """Return the total number of replicates across a run.

    Args:
        n_simulations: Replicates per design point.
        n_design_points: Number of cluster counts being evaluated (1 for
            ``find_power``, more for ``find_clusters``).
    """
    return n_simulations * n_design_points
