"""
Pytest configuration for sdfit tests.

Shared fixtures: the reference two-subject dataset, simulated cohorts and
short SAEM configurations. Cohorts and fitted results are session scoped so
that the slow SAEM runs happen once.
"""

import numpy as np
import pytest

from sdfit import (
    DataTable,
    FitConfig,
    ResidualErrorModel,
    ResidualErrorType,
    SaemEngine,
    simulate_cohort,
)

PREDICTORS = (1.0, 5.0, 20.0, 50.0, 100.0)

# True population used by the recovery tests
TRUE_THETA = 1.2
TRUE_DELTA = 0.05
TRUE_OMEGA = ((0.1 ** 2, 0.0), (0.0, 0.015 ** 2))
TRUE_A = 2.0


@pytest.fixture
def two_subject_table():
    """Subject 1 decays smoothly; subject 2 is non-monotonic."""
    return DataTable.from_records([
        (1, 1, 87.5), (1, 5, 87.5), (1, 20, 52.5), (1, 50, 12.5), (1, 100, 7.5),
        (2, 1, 87.5), (2, 5, 87.5), (2, 20, 2.5), (2, 50, 2.5), (2, 100, 87.5),
    ])


@pytest.fixture
def fast_config():
    """Short SAEM run for behavioural tests."""
    return FitConfig(
        k1=40, k2=20, seed=2024, n_importance_samples=300,
        theta_init=1.0, delta_init=0.2,
    )


@pytest.fixture(scope="session")
def small_cohort():
    """12 subjects, constant residual error."""
    return simulate_cohort(
        12,
        theta_mean=TRUE_THETA,
        delta_mean=TRUE_DELTA,
        omega=TRUE_OMEGA,
        residual_error=ResidualErrorModel(ResidualErrorType.CONSTANT, a=TRUE_A),
        predictors=PREDICTORS,
        seed=3,
    )


@pytest.fixture(scope="session")
def recovery_cohort():
    """40 subjects drawn from the true population."""
    return simulate_cohort(
        40,
        theta_mean=TRUE_THETA,
        delta_mean=TRUE_DELTA,
        omega=TRUE_OMEGA,
        residual_error=ResidualErrorModel(ResidualErrorType.CONSTANT, a=TRUE_A),
        predictors=PREDICTORS,
        seed=11,
    )


@pytest.fixture(scope="session")
def recovery_config():
    return FitConfig(
        k1=150, k2=50, seed=7, n_importance_samples=2000,
        theta_init=1.0, delta_init=0.2,
    )


@pytest.fixture(scope="session")
def recovery_result(recovery_cohort, recovery_config):
    """SAEM fit of the 40-subject cohort."""
    return SaemEngine(recovery_config).run(recovery_cohort.table)


@pytest.fixture(scope="session")
def low_noise_result():
    """SAEM fit of near-linear, low-noise data for likelihood comparisons."""
    cohort = simulate_cohort(
        30,
        theta_mean=TRUE_THETA,
        delta_mean=TRUE_DELTA,
        omega=((0.05 ** 2, 0.0), (0.0, 0.005 ** 2)),
        residual_error=ResidualErrorModel(ResidualErrorType.CONSTANT, a=1.0),
        predictors=PREDICTORS,
        seed=19,
    )
    config = FitConfig(
        k1=150, k2=50, seed=5, n_importance_samples=3000,
        theta_init=1.0, delta_init=0.2,
    )
    return SaemEngine(config).run(cohort.table)


@pytest.fixture
def rng():
    return np.random.default_rng(12345)
