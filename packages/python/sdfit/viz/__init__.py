"""
sdfit Visualization

Convergence traces of a SAEM run. Requires matplotlib (``pip install sdfit[viz]``).

Example:
    >>> from sdfit.viz import plot_saem_convergence
    >>> fig = plot_saem_convergence(result)
    >>> fig.savefig("saem_convergence.png")
"""

from .convergence import plot_saem_convergence

__all__ = [
    "plot_saem_convergence",
]
