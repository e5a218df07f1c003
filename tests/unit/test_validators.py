"""
Tests for validation utilities.
"""

import warnings

import numpy as np
import pytest

from crtpower.errors import ConfigurationError, DesignInconsistencyError


def _valid(**overrides):
    kwargs = {
        "nsim": 100,
        "nsubjects": 10,
        "nclusters": 5,
        "mean_ntrt": 0.0,
        "difference": 0.5,
        "sigma_b": 0.1,
        "variance": 1.0,
    }
    kwargs.update(overrides)
    return kwargs


class TestValidationResult:
    """Test _ValidationResult.raise_if_invalid."""

    def test_valid_does_not_raise(self):
        from crtpower.utils.validators import _ok

        _ok("alpha").raise_if_invalid()

    def test_single_error_message(self):
        from crtpower.utils.validators import _fail

        with pytest.raises(ConfigurationError, match="alpha is bad") as info:
            _fail("alpha", "alpha is bad").raise_if_invalid()
        assert info.value.field == "alpha"

    def test_multiple_errors_listed(self):
        from crtpower.utils.validators import _ValidationResult

        result = _ValidationResult(False, ["first", "second"], [], field="seed")
        with pytest.raises(ConfigurationError, match="Validation failed") as info:
            result.raise_if_invalid()
        assert "first" in str(info.value)
        assert "second" in str(info.value)

    def test_custom_error_type(self):
        from crtpower.utils.validators import _fail

        with pytest.raises(DesignInconsistencyError):
            _fail("steps", "bad steps", DesignInconsistencyError).raise_if_invalid()


class TestWholeNumbers:
    """Test _validate_whole_number and _validate_simulations."""

    @pytest.mark.parametrize("value", [10, 10.0, np.int64(10)])
    def test_accepts_integral_values(self, value):
        from crtpower.utils.validators import _validate_whole_number

        rounded, result = _validate_whole_number(value, "nsim")
        assert result.is_valid
        assert rounded == 10
        assert isinstance(rounded, int)

    @pytest.mark.parametrize("value", [10.5, "10", True, None, float("nan"), 0])
    def test_rejects(self, value):
        from crtpower.utils.validators import _validate_whole_number

        _, result = _validate_whole_number(value, "nsim")
        assert not result.is_valid
        assert result.field == "nsim"

    def test_low_simulation_count_warns(self):
        from crtpower.utils.validators import _validate_simulations

        n, result = _validate_simulations(50)
        assert result.is_valid
        assert n == 50
        assert any("Low simulation count" in w for w in result.warnings)

    def test_no_warning_at_100(self):
        from crtpower.utils.validators import _validate_simulations

        _, result = _validate_simulations(100)
        assert result.warnings == []


class TestValidateAlpha:
    """Test _validate_alpha function."""

    def test_valid_alpha(self):
        from crtpower.utils.validators import _validate_alpha

        assert _validate_alpha(0.05).is_valid

    @pytest.mark.parametrize("alpha", [0, 1, -0.1, 1.5, "0.05", None])
    def test_invalid_alpha(self, alpha):
        from crtpower.utils.validators import _validate_alpha

        assert not _validate_alpha(alpha).is_valid


class TestValidateNclusters:
    """Test cluster count validation per topology."""

    def test_parallel_scalar_duplicated(self):
        from crtpower.utils.validators import _validate_nclusters

        counts, result = _validate_nclusters(5, "parallel")
        assert result.is_valid
        assert counts == (5, 5)

    def test_parallel_pair(self):
        from crtpower.utils.validators import _validate_nclusters

        counts, result = _validate_nclusters([4, 6], "parallel")
        assert result.is_valid
        assert counts == (4, 6)

    def test_parallel_too_many(self):
        from crtpower.utils.validators import _validate_nclusters

        _, result = _validate_nclusters([4, 6, 8], "parallel")
        assert not result.is_valid

    def test_stepped_wedge_scalar(self):
        from crtpower.utils.validators import _validate_nclusters

        counts, result = _validate_nclusters(12, "stepped-wedge")
        assert result.is_valid
        assert counts == (12,)

    def test_stepped_wedge_vector_rejected(self):
        from crtpower.utils.validators import _validate_nclusters

        _, result = _validate_nclusters([6, 6], "stepped-wedge")
        assert not result.is_valid

    @pytest.mark.parametrize("value", [0, -3, 2.5, "five", None])
    def test_invalid_values(self, value):
        from crtpower.utils.validators import _validate_nclusters

        _, result = _validate_nclusters(value, "parallel")
        assert not result.is_valid


class TestValidateNsubjects:
    """Test cluster size validation."""

    def test_scalar_broadcast(self):
        from crtpower.utils.validators import _validate_nsubjects

        sizes, result = _validate_nsubjects(8, 4)
        assert result.is_valid
        assert sizes == (8, 8, 8, 8)

    def test_vector_kept(self):
        from crtpower.utils.validators import _validate_nsubjects

        sizes, result = _validate_nsubjects([3, 4, 5], 3)
        assert result.is_valid
        assert sizes == (3, 4, 5)

    def test_wrong_length_is_design_inconsistency(self):
        from crtpower.utils.validators import _validate_nsubjects

        _, result = _validate_nsubjects([3, 4, 5], 4)
        assert not result.is_valid
        assert result.error_type is DesignInconsistencyError
        assert result.field == "nsubjects"

    def test_zero_size_rejected(self):
        from crtpower.utils.validators import _validate_nsubjects

        _, result = _validate_nsubjects([3, 0], 2)
        assert not result.is_valid


class TestValidateSteps:
    """Test crossover schedule normalization."""

    def test_step_count_even(self):
        from crtpower.utils.validators import _validate_steps

        index, result = _validate_steps(3, 9)
        assert result.is_valid
        assert index == (3, 6, 9)
        assert result.warnings == []

    def test_step_count_uneven_front_loads(self):
        from crtpower.utils.validators import _validate_steps

        index, result = _validate_steps(3, 10)
        assert result.is_valid
        assert index == (4, 7, 10)
        assert len(result.warnings) == 1

    def test_per_step_counts(self):
        from crtpower.utils.validators import _validate_steps

        index, result = _validate_steps([2, 3, 1], 6)
        assert result.is_valid
        assert index == (2, 5, 6)

    def test_cumulative_counts(self):
        from crtpower.utils.validators import _validate_steps

        index, result = _validate_steps([2, 5, 8], 8)
        assert result.is_valid
        assert index == (2, 5, 8)

    def test_inconsistent_vector(self):
        from crtpower.utils.validators import _validate_steps

        _, result = _validate_steps([2, 5, 6], 8)
        assert not result.is_valid
        assert result.error_type is DesignInconsistencyError

    def test_decreasing_vector(self):
        from crtpower.utils.validators import _validate_steps

        _, result = _validate_steps([5, 3, 8], 8)
        assert not result.is_valid

    def test_more_steps_than_clusters(self):
        from crtpower.utils.validators import _validate_steps

        _, result = _validate_steps(9, 8)
        assert not result.is_valid

    @pytest.mark.parametrize("steps", [0, -1, 1.5, "3"])
    def test_invalid_values(self, steps):
        from crtpower.utils.validators import _validate_steps

        _, result = _validate_steps(steps, 8)
        assert not result.is_valid


class TestValidateEffectSizes:
    """Two of mean_ntrt, mean_trt and difference determine the third."""

    def test_derive_mean_trt(self):
        from crtpower.utils.validators import _validate_effect_sizes

        (m1, m2, d), result = _validate_effect_sizes("gaussian", 1.0, None, 0.5)
        assert result.is_valid
        assert (m1, m2, d) == (1.0, 1.5, 0.5)

    def test_derive_mean_ntrt(self):
        from crtpower.utils.validators import _validate_effect_sizes

        (m1, m2, d), result = _validate_effect_sizes("gaussian", None, 2.0, 0.5)
        assert result.is_valid
        assert (m1, m2) == (1.5, 2.0)

    def test_derive_signed_difference(self):
        from crtpower.utils.validators import _validate_effect_sizes

        (_, _, d), result = _validate_effect_sizes("binary", 0.4, 0.25, None)
        assert result.is_valid
        assert d == pytest.approx(-0.15)

    def test_all_three_consistent(self):
        from crtpower.utils.validators import _validate_effect_sizes

        _, result = _validate_effect_sizes("binary", 0.4, 0.25, 0.15)
        assert result.is_valid

    def test_all_three_inconsistent(self):
        from crtpower.utils.validators import _validate_effect_sizes

        _, result = _validate_effect_sizes("gaussian", 0.0, 1.0, 0.5)
        assert not result.is_valid
        assert result.field == "difference"

    def test_only_one_supplied(self):
        from crtpower.utils.validators import _validate_effect_sizes

        _, result = _validate_effect_sizes("gaussian", 1.0, None, None)
        assert not result.is_valid

    def test_binary_out_of_range(self):
        from crtpower.utils.validators import _validate_effect_sizes

        _, result = _validate_effect_sizes("binary", 0.9, None, 0.2)
        assert not result.is_valid
        assert result.field == "mean_trt"

    def test_count_must_be_positive(self):
        from crtpower.utils.validators import _validate_effect_sizes

        _, result = _validate_effect_sizes("poisson", 1.0, None, -1.0)
        assert not result.is_valid


class TestValidateSigmaB:
    """Between-cluster variance per arm."""

    def test_scalar(self):
        from crtpower.utils.validators import _validate_sigma_b

        between, result = _validate_sigma_b(0.2, None, "parallel")
        assert result.is_valid
        assert between == (0.2, 0.2)

    def test_parallel_second_value_replaces(self):
        from crtpower.utils.validators import _validate_sigma_b

        between, _ = _validate_sigma_b(0.2, 0.5, "parallel")
        assert between == (0.2, 0.5)

    def test_stepped_wedge_second_value_adds(self):
        from crtpower.utils.validators import _validate_sigma_b

        between, _ = _validate_sigma_b(0.2, 0.5, "stepped-wedge")
        assert between == pytest.approx((0.2, 0.7))

    def test_vector_form(self):
        from crtpower.utils.validators import _validate_sigma_b

        between, _ = _validate_sigma_b([0.1, 0.3], None, "parallel")
        assert between == (0.1, 0.3)

    def test_vector_and_sigma_b2_conflict(self):
        from crtpower.utils.validators import _validate_sigma_b

        _, result = _validate_sigma_b([0.1, 0.3], 0.4, "parallel")
        assert not result.is_valid

    def test_negative_rejected(self):
        from crtpower.utils.validators import _validate_sigma_b

        _, result = _validate_sigma_b(-0.1, None, "parallel")
        assert not result.is_valid


class TestValidateTotalVariance:
    def test_scalar(self):
        from crtpower.utils.validators import _validate_total_variance

        totals, result = _validate_total_variance(2.0, (0.5, 0.5))
        assert result.is_valid
        assert totals == (2.0, 2.0)

    def test_smaller_than_between(self):
        from crtpower.utils.validators import _validate_total_variance

        _, result = _validate_total_variance(0.4, (0.5, 0.5))
        assert not result.is_valid


class TestValidateAnalysis:
    def test_count_default_poisson(self):
        from crtpower.utils.validators import _validate_analysis

        analysis, result = _validate_analysis(None, "neg-binomial")
        assert result.is_valid
        assert analysis == "poisson"

    def test_negative_binomial_with_gee(self):
        from crtpower.utils.validators import _validate_analysis

        analysis, result = _validate_analysis("neg-binomial", "neg-binomial")
        assert result.is_valid
        assert analysis == "neg-binomial"

    def test_unknown_count_analysis(self):
        from crtpower.utils.validators import _validate_analysis

        _, result = _validate_analysis("gamma", "poisson")
        assert not result.is_valid
        assert result.field == "analysis"

    def test_negative_binomial_with_glmm_accepted(self):
        from crtpower.utils.validators import validate_config

        config = validate_config(
            nsim=10,
            nsubjects=5,
            nclusters=3,
            family="neg-binomial",
            mean_ntrt=2.0,
            mean_trt=3.0,
            sigma_b=0.1,
            method="glmm",
            analysis="neg-binomial",
            dispersion=2.0,
        )
        assert config.method == "glmm"
        assert config.variance.analysis_family == "neg-binomial"

    def test_non_count_family(self):
        from crtpower.utils.validators import _validate_analysis

        _, result = _validate_analysis("poisson", "gaussian")
        assert not result.is_valid


class TestValidateParallelSettings:
    def test_disabled_uses_one_core(self):
        from crtpower.utils.validators import _validate_parallel_settings

        (enable, cores), result = _validate_parallel_settings(False, 4)
        assert result.is_valid
        assert (enable, cores) == (False, 1)

    def test_cores_capped_by_cpu_count(self):
        import multiprocessing as mp

        from crtpower.utils.validators import _validate_parallel_settings

        (_, cores), _ = _validate_parallel_settings(True, 10_000)
        assert cores == mp.cpu_count()

    @pytest.mark.parametrize("n_cores", [0, -2, 1.5, True])
    def test_invalid_cores(self, n_cores):
        from crtpower.utils.validators import _validate_parallel_settings

        _, result = _validate_parallel_settings(True, n_cores)
        assert not result.is_valid

    def test_enable_must_be_bool(self):
        from crtpower.utils.validators import _validate_parallel_settings

        _, result = _validate_parallel_settings("yes", None)
        assert not result.is_valid


class TestValidateConfig:
    """Test the full configuration pipeline."""

    def test_returns_normalized_config(self):
        from crtpower.utils.validators import validate_config

        config = validate_config(**_valid())
        assert config.nsim == 100
        assert config.design.nclusters == (5, 5)
        assert config.design.nsubjects == (10,) * 10
        assert config.variance.mean_trt == 0.5
        assert config.variance.sigma_b == (0.1, 0.1)
        assert config.variance.variance == (1.0, 1.0)
        assert config.n_cores == 1

    def test_missing_required_names_field(self):
        from crtpower.utils.validators import validate_config

        kwargs = _valid()
        del kwargs["sigma_b"]
        with pytest.raises(ConfigurationError) as info:
            validate_config(**kwargs)
        assert info.value.field == "sigma_b"

    def test_variance_required_for_gaussian_only(self):
        from crtpower.utils.validators import validate_config

        config = validate_config(
            **_valid(family="binary", mean_ntrt=0.2, difference=0.1, variance=None)
        )
        assert config.variance.variance is None

    def test_unknown_family(self):
        from crtpower.utils.validators import validate_config

        with pytest.raises(ConfigurationError) as info:
            validate_config(**_valid(family="gamma"))
        assert info.value.field == "family"

    def test_nsubjects_length_mismatch(self):
        from crtpower.utils.validators import validate_config

        with pytest.raises(DesignInconsistencyError) as info:
            validate_config(**_valid(nsubjects=[10] * 7))
        assert info.value.field == "nsubjects"

    def test_steps_on_parallel_design(self):
        from crtpower.utils.validators import validate_config

        with pytest.raises(ConfigurationError) as info:
            validate_config(**_valid(steps=3))
        assert info.value.field == "steps"

    def test_stepped_wedge_requires_steps(self):
        from crtpower.utils.validators import validate_config

        with pytest.raises(ConfigurationError) as info:
            validate_config(**_valid(design="stepped-wedge", nclusters=6))
        assert info.value.field == "steps"

    def test_stepped_wedge_config(self):
        from crtpower.utils.validators import validate_config

        config = validate_config(**_valid(design="stepped-wedge", nclusters=6, steps=[2, 2, 2]))
        assert config.design.step_index == (2, 4, 6)
        assert config.design.n_periods == 4

    def test_single_step_warns(self):
        from crtpower.utils.validators import validate_config

        with pytest.warns(UserWarning, match="confounded"):
            validate_config(**_valid(design="stepped-wedge", nclusters=6, steps=1))

    def test_uneven_steps_warn(self):
        from crtpower.utils.validators import validate_config

        with pytest.warns(UserWarning, match="do not divide evenly"):
            config = validate_config(**_valid(design="stepped-wedge", nclusters=7, steps=3))
        assert config.design.step_index == (3, 5, 7)

    def test_warnings_recorded_on_config(self):
        from crtpower.utils.validators import validate_config

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            config = validate_config(**_valid(nsim=20))
        assert any("Low simulation count" in w for w in config.warnings)

    def test_invalid_dispersion(self):
        from crtpower.utils.validators import validate_config

        with pytest.raises(ConfigurationError) as info:
            validate_config(**_valid(family="neg-binomial", mean_ntrt=2.0, difference=1.0, dispersion=0, method="gee"))
        assert info.value.field == "dispersion"

    def test_invalid_max_failed(self):
        from crtpower.utils.validators import validate_config

        with pytest.raises(ConfigurationError) as info:
            validate_config(**_valid(max_failed_simulations=1.5))
        assert info.value.field == "max_failed_simulations"

    def test_seed_must_be_integer(self):
        from crtpower.utils.validators import validate_config

        with pytest.raises(ConfigurationError) as info:
            validate_config(**_valid(seed=1.5))
        assert info.value.field == "seed"

    def test_quiet_must_be_bool(self):
        from crtpower.utils.validators import validate_config

        with pytest.raises(ConfigurationError) as info:
            validate_config(**_valid(quiet="yes"))
        assert info.value.field == "quiet"
