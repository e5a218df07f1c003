"""
Parallel execution produces the same results as sequential execution.
"""

import warnings

import pandas as pd
import pytest

from crtpower import ClusterPower, simulate_power


@pytest.fixture(autouse=True)
def _ignore_low_nsim_warning():
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", message="Low simulation count")
        yield


class TestParallelMatchesSequential:
    def test_simulate_power(self, gaussian_kwargs):
        sequential = simulate_power(**gaussian_kwargs)
        parallel = simulate_power(**gaussian_kwargs, parallel=True, n_cores=2)
        pd.testing.assert_frame_equal(
            sequential["results"]["model_estimates"],
            parallel["results"]["model_estimates"],
        )
        pd.testing.assert_frame_equal(sequential["results"]["means"], parallel["results"]["means"])
        assert sequential["results"]["power_estimate"] == parallel["results"]["power_estimate"]

    def test_result_records_parallel_flag(self, gaussian_kwargs):
        result = simulate_power(**gaussian_kwargs, parallel=True, n_cores=2)
        assert result["model"]["parallel"] is True

    def test_class_api(self, gaussian_model):
        sequential = gaussian_model.find_power(print_results=False, return_results=True)
        gaussian_model.set_parallel(True, n_cores=2)
        parallel = gaussian_model.find_power(print_results=False, return_results=True)
        assert sequential["results"]["power_estimate"] == parallel["results"]["power_estimate"]
