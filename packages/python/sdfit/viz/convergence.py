"""
sdfit Convergence Visualization

Per-parameter SAEM traces with the exploration/smoothing boundary marked.
"""

from __future__ import annotations

from typing import Any, List, Optional, Tuple

import numpy as np

from ..estimation.types import SaemResult


def _traces(result: SaemResult) -> List[Tuple[str, np.ndarray, float]]:
    history = result.history
    pop = result.population
    traces = [
        ("theta", history.fixed_effects[:, 0], pop.theta_mean),
        ("delta", history.fixed_effects[:, 1], pop.delta_mean),
        ("omega theta", history.omega_diag[:, 0], pop.covariance[0, 0]),
        ("omega delta", history.omega_diag[:, 1], pop.covariance[1, 1]),
    ]
    for j, name in enumerate(("a", "b")):
        if name in pop.residual_error.parameter_names:
            traces.append((f"residual {name}", history.residual[:, j], getattr(pop.residual_error, name)))
    return traces


def plot_saem_convergence(
    result: SaemResult,
    title: Optional[str] = None,
    figsize: Tuple[float, float] = (12, 8),
) -> Any:
    """
    Plot population parameter traces during SAEM.

    Shows how each parameter evolved over the iterations, with the final
    estimate as a dashed line and the start of the smoothing phase as a
    dotted vertical line. Useful for choosing K1 and K2.

    Args:
        result: SaemResult from SaemEngine.run()
        title: Plot title
        figsize: Figure size

    Returns:
        matplotlib Figure
    """
    import matplotlib.pyplot as plt

    history = result.history
    if history.n_iterations == 0:
        raise ValueError("Result does not contain convergence history")

    traces = _traces(result)
    iterations = np.arange(history.n_iterations)
    n_plots = len(traces)
    n_cols = min(3, n_plots)
    n_rows = (n_plots + n_cols - 1) // n_cols

    fig, axes = plt.subplots(n_rows, n_cols, figsize=figsize)
    axes = np.atleast_1d(axes).flatten()

    for ax, (name, values, final) in zip(axes, traces):
        ax.plot(iterations, values, linewidth=1.5)
        ax.axhline(final, color='red', linestyle='--', alpha=0.7, label='Final')
        if 0 < history.k1 < history.n_iterations:
            ax.axvline(history.k1, color='gray', linestyle=':', alpha=0.7)
        ax.set_title(name)
        ax.set_xlabel("Iteration")
        ax.grid(alpha=0.3)

    for ax in axes[n_plots:]:
        ax.set_visible(False)

    if title:
        fig.suptitle(title)

    fig.tight_layout()
    return fig
