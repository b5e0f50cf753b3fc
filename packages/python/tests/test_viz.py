"""
Tests for SAEM convergence plots.
"""

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pytest

from sdfit import FitConfig, SaemEngine
from sdfit.viz import plot_saem_convergence


@pytest.fixture(scope="module")
def result(small_cohort):
    config = FitConfig(k1=20, k2=10, seed=4, n_importance_samples=100, delta_init=0.2)
    return SaemEngine(config).run(small_cohort.table)


class TestConvergencePlot:
    """Trace panels of a SAEM run."""

    def test_plot_convergence(self, result):
        fig = plot_saem_convergence(result, title="SAEM")
        visible = [ax for ax in fig.axes if ax.get_visible()]
        assert len(visible) == 5
        assert [ax.get_title() for ax in visible][:2] == ["theta", "delta"]
        plt.close(fig)

    def test_trace_matches_history(self, result):
        fig = plot_saem_convergence(result)
        line = fig.axes[0].get_lines()[0]
        np.testing.assert_allclose(line.get_ydata(), result.history.fixed_effects[:, 0])
        plt.close(fig)

    def test_combined_error_has_two_residual_panels(self, small_cohort):
        config = FitConfig(
            k1=10, k2=5, seed=4, n_importance_samples=50, delta_init=0.2,
            residual_error="combined", residual_init=(1.0, 0.05),
        )
        fig = plot_saem_convergence(SaemEngine(config).run(small_cohort.table))
        assert len([ax for ax in fig.axes if ax.get_visible()]) == 6
        plt.close(fig)

    def test_empty_history(self, result):
        from dataclasses import replace

        empty = replace(result, history=replace(
            result.history,
            fixed_effects=np.empty((0, 2)),
            omega_diag=np.empty((0, 2)),
            residual=np.empty((0, 2)),
            step_size=np.empty(0),
        ))
        with pytest.raises(ValueError):
            plot_saem_convergence(empty)
