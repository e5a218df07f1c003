"""
Shared pytest fixtures for crtpower tests.
"""

import contextlib
import io

import matplotlib
import numpy as np
import pytest

matplotlib.use("Agg")


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: long-running Monte Carlo calibration tests")


@pytest.fixture(autouse=True)
def _reset_backend():
    """Every test starts and ends with the default fitting backend."""
    from crtpower.backends import reset_backend

    reset_backend()
    yield
    reset_backend()


@pytest.fixture
def suppress_output():
    """Silence stdout and stderr (progress lines, seed messages)."""
    with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
        yield


@pytest.fixture
def gaussian_kwargs():
    """Keyword arguments for a small, fast parallel Gaussian design."""
    return {
        "nsim": 20,
        "nsubjects": 10,
        "nclusters": 6,
        "mean_ntrt": 0.0,
        "difference": 0.5,
        "sigma_b": 0.1,
        "variance": 1.0,
        "seed": 2137,
        "quiet": True,
    }


@pytest.fixture
def stepped_wedge_kwargs():
    """Keyword arguments for a small stepped-wedge Gaussian design."""
    return {
        "nsim": 20,
        "nsubjects": 5,
        "nclusters": 6,
        "design": "stepped-wedge",
        "steps": 3,
        "mean_ntrt": 0.0,
        "difference": 0.5,
        "sigma_b": 0.1,
        "variance": 1.0,
        "seed": 2137,
        "quiet": True,
    }


@pytest.fixture
def rng():
    """Deterministic generator for data-generation tests."""
    return np.random.default_rng(42)


@pytest.fixture
def gaussian_model():
    """ClusterPower model with a complete parallel Gaussian configuration."""
    from crtpower import ClusterPower

    model = ClusterPower("parallel", "gaussian")
    model.set_clusters(nclusters=6, nsubjects=10)
    model.set_outcomes(mean_ntrt=0.0, difference=0.5)
    model.set_variance(sigma_b=0.1, variance=1.0)
    model.n_simulations = 20
    return model
