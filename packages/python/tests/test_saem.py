"""
Tests for the SAEM population engine.

Tests cover:
- Step-size schedule and covariance safeguards
- Input checks and cancellation
- Determinism across runs and worker counts
- Recovery of the generating population (slow)
- Agreement of the two log-likelihood estimators (slow)
"""

import threading

import numpy as np
import pytest

from sdfit import (
    DataTable,
    EstimationCancelled,
    FitConfig,
    InsufficientData,
    NumericDivergence,
    OmegaStructure,
    ParameterTransform,
    ResidualErrorType,
    SaemEngine,
    population_fingerprint,
)
from sdfit.estimation import check_positive_definite, project_positive_definite, step_size, subject_rng

TRUE_THETA = 1.2
TRUE_DELTA = 0.05


class TestSchedule:
    """Step sizes of the exploration and smoothing phases."""

    def test_exploration_step_is_one(self):
        assert all(step_size(k, 10) == 1.0 for k in range(10))

    def test_smoothing_steps_decrease(self):
        assert step_size(10, 10) == 1.0
        assert step_size(11, 10) == 0.5
        assert step_size(13, 10) == 0.25

    def test_history_records_schedule(self, small_cohort, fast_config):
        result = SaemEngine(fast_config).run(small_cohort.table)
        gamma = result.history.step_size
        assert gamma.size == fast_config.n_iterations
        assert np.all(gamma[:fast_config.saem_n_burn] == 0.0)
        assert gamma[fast_config.k1] == 1.0
        assert gamma[-1] == pytest.approx(1.0 / fast_config.k2)


class TestCovarianceSafeguards:
    """Non positive-definite updates are detected and projected."""

    def test_detects_indefinite(self):
        with pytest.raises(NumericDivergence):
            check_positive_definite(np.array([[1.0, 2.0], [2.0, 1.0]]))

    def test_detects_non_finite(self):
        with pytest.raises(NumericDivergence):
            check_positive_definite(np.array([[np.nan, 0.0], [0.0, 1.0]]))

    def test_projection_is_positive_definite(self):
        projected = project_positive_definite(np.array([[1.0, 2.0], [2.0, 1.0]]))
        check_positive_definite(projected)
        np.testing.assert_allclose(projected, projected.T)

    def test_projection_keeps_valid_matrix(self):
        omega = np.array([[0.04, 0.01], [0.01, 0.02]])
        np.testing.assert_allclose(project_positive_definite(omega), omega)


class TestInputs:
    """Subject handling before the loop starts."""

    def test_single_subject_raises(self, two_subject_table, fast_config):
        with pytest.raises(InsufficientData):
            SaemEngine(fast_config).run(two_subject_table.subset([1]))

    def test_subject_without_responses_is_dropped(self, small_cohort, fast_config):
        ids = small_cohort.table.subject_ids
        empty = DataTable.from_records([(999, 1, None), (999, 5, None)])
        table = DataTable(list(small_cohort.table) + list(empty))
        result = SaemEngine(fast_config).run(table)
        assert result.dropped_subjects == [999]
        assert 999 not in result.individuals
        assert result.subject_ids == sorted(ids)
        assert any("999" in w for w in result.warnings)

    def test_cancel_event(self, small_cohort, fast_config):
        event = threading.Event()
        event.set()
        with pytest.raises(EstimationCancelled):
            SaemEngine(fast_config).run(small_cohort.table, cancel_event=event)


class TestOutputs:
    """Shape and consistency of a short run."""

    @pytest.fixture(scope="class")
    def result(self, small_cohort):
        config = FitConfig(k1=40, k2=20, seed=2024, n_importance_samples=300, delta_init=0.2)
        return SaemEngine(config).run(small_cohort.table)

    def test_population_model(self, result):
        pop = result.population
        assert pop.n_subjects == 12
        assert pop.n_observations == 60
        assert pop.covariance.shape == (2, 2)
        assert pop.covariance[0, 1] == 0.0
        assert np.all(np.linalg.eigvalsh(pop.covariance) > 0)
        assert pop.residual_error.type is ResidualErrorType.CONSTANT
        assert pop.residual_error.a > 0
        assert np.isfinite(pop.log_likelihood_linearized)
        assert np.isfinite(pop.log_likelihood_importance_sampling)

    def test_individuals_are_map_estimates(self, result):
        assert set(result.individuals) == set(result.subject_ids)
        for est in result.individuals.values():
            assert est.method == "saem_map"
            assert len(est.residuals) == 5
            assert 0.0 <= est.theta <= 5.0
            assert 0.0 <= est.delta <= 5.0

    def test_conditional_moments(self, result):
        assert set(result.conditional_means) == set(result.subject_ids)
        for var in result.conditional_variances.values():
            assert all(v >= 0 for v in var)

    def test_history_shapes(self, result):
        assert result.history.fixed_effects.shape == (60, 2)
        assert result.history.omega_diag.shape == (60, 2)
        assert np.all(np.isnan(result.history.residual[:, 1]))
        np.testing.assert_allclose(
            result.history.fixed_effects[-1],
            [result.population.theta_mean, result.population.delta_mean],
        )

    def test_information_criteria(self, result):
        pop = result.population
        assert pop.n_parameters == 5
        assert pop.aic("lin") == pytest.approx(-2 * pop.log_likelihood_linearized + 10)
        with pytest.raises(ValueError):
            pop.aic("laplace")

    def test_fingerprint(self, result):
        assert len(result.fingerprint()) == 64
        assert result.fingerprint() == population_fingerprint(result.population)


class TestDeterminism:
    """Identical inputs give identical population models."""

    def test_repeat_runs(self, small_cohort, fast_config):
        first = SaemEngine(fast_config).run(small_cohort.table)
        second = SaemEngine(fast_config).run(small_cohort.table)
        assert first.fingerprint() == second.fingerprint()
        np.testing.assert_array_equal(first.history.fixed_effects, second.history.fixed_effects)

    def test_worker_count_does_not_matter(self, small_cohort, fast_config):
        sequential = SaemEngine(fast_config).run(small_cohort.table)
        config = FitConfig.from_dict({**fast_config.to_dict(), "n_jobs": 2})
        parallel = SaemEngine(config).run(small_cohort.table)
        assert sequential.fingerprint() == parallel.fingerprint()

    def test_seed_changes_draws(self, small_cohort, fast_config):
        other = FitConfig.from_dict({**fast_config.to_dict(), "seed": fast_config.seed + 1})
        a = SaemEngine(fast_config).run(small_cohort.table)
        b = SaemEngine(other).run(small_cohort.table)
        assert a.fingerprint() != b.fingerprint()

    def test_streams_are_keyed_by_subject_id(self):
        draws = subject_rng(11, 0, 42).random(4)
        np.testing.assert_array_equal(draws, subject_rng(11, 0, 42).random(4))
        assert not np.array_equal(draws, subject_rng(11, 0, 43).random(4))
        assert not np.array_equal(draws, subject_rng(11, 1, 42).random(4))
        assert not np.array_equal(draws, subject_rng(11, 0, -42).random(4))

    def test_adding_a_subject_keeps_other_streams(self, small_cohort, fast_config):
        engine = SaemEngine(fast_config)
        extra = DataTable.from_records([(0, 1, 80.0), (0, 5, 70.0)])
        base, _ = engine._prepare(small_cohort.table, [])
        grown, _ = engine._prepare(DataTable(list(small_cohort.table) + list(extra)), [])
        assert grown[0].subject_id == 0
        for before, after in zip(base, grown[1:]):
            assert before.subject_id == after.subject_id
            np.testing.assert_array_equal(before.rng.random(3), after.rng.random(3))


class TestVariants:
    """Alternative covariance, residual and transform choices run end to end."""

    @pytest.mark.parametrize("options", [
        {"omega_structure": "full"},
        {"residual_error": "proportional", "residual_init": (1.0, 0.1)},
        {"residual_error": "combined", "residual_init": (1.0, 0.05)},
        {"transforms": ("log_normal", "log_normal"), "delta_bounds": (1e-4, 5.0)},
        {"n_chains": 2},
        {"k2": 0},
    ])
    def test_runs(self, small_cohort, options):
        config = FitConfig(k1=30, k2=10, seed=3, n_importance_samples=200, delta_init=0.2)
        config = FitConfig.from_dict({**config.to_dict(), **options})
        result = SaemEngine(config).run(small_cohort.table)
        pop = result.population
        assert np.all(np.isfinite(pop.covariance))
        assert np.all(np.linalg.eigvalsh(pop.covariance) > 0)
        assert np.isfinite(pop.log_likelihood_importance_sampling)
        assert len(pop.se_residual) == pop.residual_error.n_parameters
        if config.omega_structure is OmegaStructure.FULL:
            assert pop.n_parameters == 6
        if config.transforms[1] is ParameterTransform.LOG_NORMAL:
            assert pop.delta_mean > 0


@pytest.mark.slow
class TestRecovery:
    """Monte Carlo recovery of the generating population."""

    def test_fixed_effects(self, recovery_result):
        pop = recovery_result.population
        assert abs(pop.theta_mean - TRUE_THETA) < 0.1
        assert abs(pop.delta_mean - TRUE_DELTA) < 0.015

    def test_standard_errors_are_defined(self, recovery_result):
        pop = recovery_result.population
        assert all(np.isfinite(pop.se_fixed))
        assert all(se > 0 for se in pop.se_fixed)

    def test_residual_error(self, recovery_result):
        assert 1.0 < recovery_result.population.residual_error.a < 3.5

    def test_map_estimates_track_truth(self, recovery_result, recovery_cohort):
        true_theta = [recovery_cohort.individual_params[sid][0] for sid in recovery_result.subject_ids]
        map_theta = [recovery_result.individuals[sid].theta for sid in recovery_result.subject_ids]
        assert np.corrcoef(true_theta, map_theta)[0, 1] > 0.5


@pytest.mark.slow
class TestLikelihoodAgreement:
    """Linearization and importance sampling agree on near-linear data."""

    def test_relative_difference(self, low_noise_result):
        pop = low_noise_result.population
        lin = pop.log_likelihood_linearized
        is_ = pop.log_likelihood_importance_sampling
        assert abs(lin - is_) <= 0.05 * abs(is_)
