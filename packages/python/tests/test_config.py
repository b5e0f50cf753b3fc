"""
Tests for FitConfig defaults and validation.
"""

import numpy as np
import pytest

from sdfit import (
    FitConfig,
    InvalidConfiguration,
    OmegaStructure,
    ParameterTransform,
    ResidualErrorType,
)


class TestFitConfig:
    """Test configuration defaults and derived values."""

    def test_defaults(self):
        config = FitConfig()
        assert config.k1 == 300
        assert config.k2 == 100
        assert config.n_chains == 1
        assert config.seed == 12345
        assert config.n_importance_samples == 5000
        assert config.theta_bounds == (0.0, 5.0)
        assert config.delta_bounds == (0.0, 5.0)
        assert config.outlier_theta_max == 3.0
        assert config.outlier_delta_max == 2.0
        assert config.scale_constant == 75.0
        assert config.lm_max_iter == 1024
        assert config.omega_structure is OmegaStructure.DIAGONAL
        assert config.residual_error is ResidualErrorType.CONSTANT

    def test_derived_values(self):
        config = FitConfig(k1=10, k2=4)
        assert config.n_iterations == 14
        assert config.saem_n_annealing == 5
        np.testing.assert_array_equal(config.initial_omega, np.eye(2))
        np.testing.assert_array_equal(config.lower_bounds, [0.0, 0.0])

    def test_string_enums_are_coerced(self):
        config = FitConfig(
            omega_structure="full",
            residual_error="combined",
            transforms=["log_normal", "normal"],
        )
        assert config.omega_structure is OmegaStructure.FULL
        assert config.residual_error is ResidualErrorType.COMBINED
        assert config.transforms[0] is ParameterTransform.LOG_NORMAL

    def test_dict_round_trip(self):
        config = FitConfig(k1=50, theta_bounds=[0.1, 4.0], residual_error="proportional")
        again = FitConfig.from_dict(config.to_dict())
        assert again == config

    def test_unknown_option(self):
        with pytest.raises(InvalidConfiguration, match="k3"):
            FitConfig.from_dict({"k3": 1})


class TestFitConfigValidation:
    """Test that inconsistent options are rejected before fitting."""

    @pytest.mark.parametrize("options", [
        {"theta_bounds": (2.0, 1.0)},
        {"delta_bounds": (0.0, 0.0)},
        {"k1": -1},
        {"k2": -5},
        {"k1": 0, "k2": 0},
        {"scale_constant": 0.0},
        {"n_chains": 0},
        {"n_importance_samples": 0},
        {"seed": -1},
        {"omega_init": [[1.0, 2.0], [2.0, 1.0]]},
        {"theta_init": 6.0},
        {"saem_annealing_alpha": 1.5},
        {"residual_error": "proportional", "residual_init": (1.0, 0.0)},
        {"transforms": ("log_normal", "log_normal"), "delta_init": 0.0},
    ])
    def test_invalid(self, options):
        with pytest.raises(InvalidConfiguration):
            FitConfig(**options)

    def test_is_value_error(self):
        with pytest.raises(ValueError):
            FitConfig(theta_bounds=(1.0, 1.0))
