"""
Tests for the end-to-end analysis and cohort simulation.
"""

import threading

import numpy as np
import pytest

from sdfit import (
    AnalysisResult,
    DataTable,
    EstimationCancelled,
    FitConfig,
    InsufficientData,
    run_analysis,
    simulate_cohort,
)


class TestSimulateCohort:
    """Synthetic cohorts for recovery checks."""

    def test_shape_and_ids(self):
        cohort = simulate_cohort(5, predictors=(1.0, 10.0, 100.0), seed=1, first_subject_id=10)
        assert cohort.table.subject_ids == (10, 11, 12, 13, 14)
        assert cohort.table.n_observations == 15
        assert set(cohort.individual_params) == set(cohort.table.subject_ids)

    def test_reproducible(self):
        a = simulate_cohort(4, seed=2)
        b = simulate_cohort(4, seed=2)
        assert a.individual_params == b.individual_params
        for sid in a.table.subject_ids:
            assert a.table[sid] == b.table[sid]

    def test_missing_fraction(self):
        cohort = simulate_cohort(20, seed=3, missing_fraction=0.5)
        assert cohort.table.n_observations < 20 * 7

    def test_log_normal_parameters_are_positive(self):
        cohort = simulate_cohort(
            30, theta_mean=1.0, delta_mean=0.05, omega=((0.1, 0.0), (0.0, 0.5)),
            transforms=("log_normal", "log_normal"), seed=4,
        )
        assert all(theta > 0 and delta > 0 for theta, delta in cohort.individual_params.values())

    @pytest.mark.parametrize("options", [{"n_subjects": 0}, {"n_subjects": 3, "missing_fraction": 1.0}])
    def test_invalid(self, options):
        with pytest.raises(ValueError):
            simulate_cohort(**options)


class TestRunAnalysis:
    """Individual fits, selection and SAEM in one call."""

    @pytest.fixture(scope="class")
    def analysis(self):
        cohort = simulate_cohort(
            10, theta_mean=1.2, delta_mean=0.05, omega=((0.01, 0.0), (0.0, 2e-4)),
            predictors=(1.0, 5.0, 20.0, 50.0, 100.0), seed=21,
        )
        outlier = DataTable.from_records([
            (90, 1, 300.0), (90, 5, 290.0), (90, 20, 280.0), (90, 50, 270.0), (90, 100, 260.0),
        ])
        unfit = DataTable.from_records([(91, 1, 80.0), (91, 5, None)])
        table = DataTable(list(cohort.table) + list(outlier) + list(unfit))
        config = FitConfig(k1=30, k2=10, seed=6, n_importance_samples=200, delta_init=0.2)
        return run_analysis(table, config, include_gauss_newton=True)

    def test_result_type(self, analysis):
        assert isinstance(analysis, AnalysisResult)
        assert len(analysis.lm_estimates) == 12
        assert set(analysis.gn_estimates) == set(analysis.lm_estimates)

    def test_exclusions(self, analysis):
        assert 90 not in analysis.retained_ids
        assert 91 not in analysis.retained_ids
        assert analysis.exclusions[90].startswith("outlier")
        assert analysis.exclusions[91] == "insufficient_data"
        assert analysis.saem.subject_ids == sorted(analysis.retained_ids)
        assert any("Subject 90" in w for w in analysis.warnings)

    def test_tables(self, analysis):
        assert len(analysis.lm_table()) == 12
        assert analysis.gn_table()["subject_id"].tolist() == analysis.lm_table()["subject_id"].tolist()
        assert len(analysis.saem_table()) == len(analysis.retained_ids)
        assert "theta_mean" in analysis.population_table()["parameter"].tolist()

        comparison = analysis.comparison_table().set_index("subject_id")
        assert not comparison.loc[90, "in_population"]
        assert comparison.loc[91, "exclusion_reason"] == "insufficient_data"
        assert comparison["in_population"].sum() == len(analysis.retained_ids)

    def test_population_estimates_are_finite(self, analysis):
        pop = analysis.saem.population
        assert np.isfinite(pop.theta_mean)
        assert np.isfinite(pop.delta_mean)

    def test_gauss_newton_is_optional(self, two_subject_table):
        table = DataTable(list(two_subject_table) + list(simulate_cohort(3, seed=8, first_subject_id=3).table))
        config = FitConfig(k1=10, k2=5, seed=1, n_importance_samples=50, delta_init=0.2)
        analysis = run_analysis(table, config)
        assert analysis.gn_estimates is None
        assert analysis.gn_table() is None


class TestRunAnalysisFailures:
    """Errors that stop the analysis."""

    def test_too_few_subjects(self, two_subject_table):
        with pytest.raises(InsufficientData):
            run_analysis(two_subject_table.subset([1]), FitConfig(k1=5, k2=0))

    def test_cancelled(self, small_cohort):
        event = threading.Event()
        event.set()
        with pytest.raises(EstimationCancelled):
            run_analysis(small_cohort.table, FitConfig(k1=5, k2=0), cancel_event=event)
