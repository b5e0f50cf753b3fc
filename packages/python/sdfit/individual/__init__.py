"""
sdfit Individual Fitting

Per-subject least-squares estimation of (theta, delta):
- Bounded Levenberg-Marquardt solver with asymptotic standard errors
- Unconstrained Gauss-Newton comparison mode
- Outlier exclusion ahead of the population fit

Example:
    >>> from sdfit.individual import fit_subjects, filter_outliers
    >>> estimates = fit_subjects(table)
    >>> kept = filter_outliers(estimates, theta_max=3, delta_max=2)
"""

from .solver import (
    BoundedLMSolver,
    FitStatus,
    ParameterEstimate,
    SolverMode,
    fit_subject,
    fit_subjects,
    gaussian_log_likelihood,
    invert_information,
)

from .filters import (
    filter_outliers,
    select_for_population,
    split_outliers,
)

__all__ = [
    # Solver
    "BoundedLMSolver",
    "FitStatus",
    "ParameterEstimate",
    "SolverMode",
    "fit_subject",
    "fit_subjects",
    "gaussian_log_likelihood",
    "invert_information",
    # Filters
    "filter_outliers",
    "select_for_population",
    "split_outliers",
]
