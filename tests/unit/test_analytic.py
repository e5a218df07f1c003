"""
Tests for closed-form power calculations.
"""

import numpy as np
import pytest
from scipy.stats import nct
from scipy.stats import t as t_dist

from crtpower.errors import ConfigurationError
from crtpower.stats.analytic import _vif, crtpwr_2mean, crtpwr_2mean_matched


def _reference_power(alpha, nclusters, nsubjects, d, icc, vart, df=None):
    deff = 1 + (nsubjects - 1) * icc
    df = 2 * (nclusters - 1) if df is None else df
    ncp = np.sqrt(nclusters * nsubjects / (2 * deff)) * d / np.sqrt(vart)
    return nct.sf(t_dist.isf(alpha / 2, df), df, ncp)


class TestVarianceInflation:
    def test_equal_sizes_is_design_effect(self):
        assert _vif(20, 0.05, 0.0, "taylor") == pytest.approx(1 + 19 * 0.05)

    def test_taylor_increases_with_cv(self):
        assert _vif(20, 0.05, 0.5, "taylor") > _vif(20, 0.05, 0.0, "taylor")

    def test_weighted(self):
        assert _vif(20, 0.05, 0.5, "weighted") == pytest.approx(1 + (1.25 * 20 - 1) * 0.05)

    def test_exact_sizes_equal_vector(self):
        nvec = np.full(6, 20.0)
        assert _vif(20, 0.05, 0.0, "taylor", nvec) == pytest.approx(1 + 19 * 0.05)


class TestCrtpwr2mean:
    """Two-arm continuous outcome."""

    def test_power(self):
        result = crtpwr_2mean(nclusters=10, nsubjects=20, d=0.5, icc=0.05, vart=1.0, power=None)
        assert set(result) == {"power"}
        assert result["power"] == pytest.approx(_reference_power(0.05, 10, 20, 0.5, 0.05, 1.0))

    def test_power_increases_with_clusters(self):
        low = crtpwr_2mean(nclusters=5, nsubjects=20, d=0.5, icc=0.05, vart=1.0, power=None)["power"]
        high = crtpwr_2mean(nclusters=15, nsubjects=20, d=0.5, icc=0.05, vart=1.0, power=None)["power"]
        assert low < high

    def test_solve_nclusters(self):
        nclusters = crtpwr_2mean(nsubjects=20, d=0.5, icc=0.05, vart=1.0)["nclusters"]
        achieved = _reference_power(0.05, nclusters, 20, 0.5, 0.05, 1.0)
        assert achieved == pytest.approx(0.8, abs=2e-3)

    def test_solve_nsubjects(self):
        nsubjects = crtpwr_2mean(nclusters=20, d=0.3, icc=0.02, vart=1.0)["nsubjects"]
        achieved = crtpwr_2mean(nclusters=20, nsubjects=nsubjects, d=0.3, icc=0.02, vart=1.0, power=None)["power"]
        assert achieved == pytest.approx(0.8, abs=2e-3)

    def test_solve_difference(self):
        d = crtpwr_2mean(nclusters=10, nsubjects=20, icc=0.05, vart=1.0)["d"]
        assert d > 0
        assert _reference_power(0.05, 10, 20, d, 0.05, 1.0) == pytest.approx(0.8, abs=2e-3)

    def test_solve_icc(self):
        icc = crtpwr_2mean(nclusters=10, nsubjects=20, d=0.5, vart=1.0, power=0.6)["icc"]
        assert 0 < icc < 1
        assert _reference_power(0.05, 10, 20, 0.5, icc, 1.0) == pytest.approx(0.6, abs=2e-3)

    def test_solve_alpha(self):
        alpha = crtpwr_2mean(alpha=None, nclusters=10, nsubjects=20, d=0.5, icc=0.05, vart=1.0)["alpha"]
        assert 0 < alpha < 1
        assert _reference_power(alpha, 10, 20, 0.5, 0.05, 1.0) == pytest.approx(0.8, abs=2e-3)

    def test_solve_cv(self):
        full = crtpwr_2mean(nclusters=15, nsubjects=20, d=0.5, icc=0.05, vart=1.0, power=None)["power"]
        cv = crtpwr_2mean(nclusters=15, nsubjects=20, d=0.5, icc=0.05, vart=1.0, power=full - 0.02, cv=None)["cv"]
        assert cv > 0
        achieved = crtpwr_2mean(nclusters=15, nsubjects=20, d=0.5, icc=0.05, vart=1.0, power=None, cv=cv)["power"]
        assert achieved == pytest.approx(full - 0.02, abs=2e-3)

    def test_cluster_size_vector(self):
        sizes = np.array([10, 15, 20, 25, 30, 10, 15, 20, 25, 30], dtype=float)
        result = crtpwr_2mean(nsubjects=list(sizes), d=0.5, icc=0.05, vart=1.0, power=None)["power"]

        a = (1 - 0.05) / 0.05
        mean_size = sizes.mean()
        vif = (1 + (mean_size - 1) * 0.05) * ((mean_size + a) / mean_size) * np.mean(sizes / (sizes + a))
        ncp = np.sqrt(10 * mean_size / (2 * vif)) * 0.5
        expected = nct.sf(t_dist.isf(0.025, 18), 18, ncp)
        assert result == pytest.approx(expected)

    def test_equal_size_vector_matches_scalar(self):
        vector = crtpwr_2mean(nsubjects=[20] * 10, d=0.5, icc=0.05, vart=1.0, power=None)["power"]
        scalar = crtpwr_2mean(nclusters=10, nsubjects=20, d=0.5, icc=0.05, vart=1.0, power=None)["power"]
        assert vector == pytest.approx(scalar)

    def test_weighted_method(self):
        result = crtpwr_2mean(nclusters=10, nsubjects=20, cv=0.4, d=0.5, icc=0.05, vart=1.0, power=None, method="weighted")
        assert 0 < result["power"] < 1

    def test_negative_difference_same_power(self):
        pos = crtpwr_2mean(nclusters=10, nsubjects=20, d=0.5, icc=0.05, vart=1.0, power=None)["power"]
        neg = crtpwr_2mean(nclusters=10, nsubjects=20, d=-0.5, icc=0.05, vart=1.0, power=None)["power"]
        assert pos == pytest.approx(neg)

    def test_requires_exactly_one_missing(self):
        with pytest.raises(ConfigurationError, match="Exactly one"):
            crtpwr_2mean(nclusters=10, nsubjects=20, d=0.5, icc=0.05, vart=1.0)

    def test_too_many_missing(self):
        with pytest.raises(ConfigurationError):
            crtpwr_2mean(nsubjects=20, icc=0.05, vart=1.0)

    def test_nclusters_must_exceed_one(self):
        with pytest.raises(ConfigurationError) as info:
            crtpwr_2mean(nclusters=1, nsubjects=20, d=0.5, icc=0.05, vart=1.0, power=None)
        assert info.value.field == "nclusters"

    def test_unknown_method(self):
        with pytest.raises(ConfigurationError):
            crtpwr_2mean(nclusters=10, nsubjects=20, d=0.5, icc=0.05, vart=1.0, power=None, method="exact")


class TestCrtpwr2meanMatched:
    """Cluster-matched designs."""

    def test_power_uses_matched_df(self):
        power = crtpwr_2mean_matched(nclusters=10, nsubjects=20, d=0.5, icc=0.05, vart=1.0, rho_m=0.0, power=None)["power"]
        assert power == pytest.approx(_reference_power(0.05, 10, 20, 0.5, 0.05, 1.0, df=9))

    def test_matching_correlation_increases_power(self):
        unmatched = crtpwr_2mean_matched(nclusters=10, nsubjects=20, d=0.5, icc=0.05, vart=1.0, rho_m=0.0, power=None)
        matched = crtpwr_2mean_matched(nclusters=10, nsubjects=20, d=0.5, icc=0.05, vart=1.0, rho_m=0.5, power=None)
        assert matched["power"] > unmatched["power"]

    def test_solve_nclusters(self):
        nclusters = crtpwr_2mean_matched(nsubjects=20, d=0.5, icc=0.05, vart=1.0, rho_m=0.3)["nclusters"]
        achieved = crtpwr_2mean_matched(
            nclusters=nclusters, nsubjects=20, d=0.5, icc=0.05, vart=1.0, rho_m=0.3, power=None
        )["power"]
        assert achieved == pytest.approx(0.8, abs=2e-3)

    def test_requires_exactly_one_missing(self):
        with pytest.raises(ConfigurationError):
            crtpwr_2mean_matched(nclusters=10, nsubjects=20, d=0.5, icc=0.05, vart=1.0, rho_m=0.3)
