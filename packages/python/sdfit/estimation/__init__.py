"""
sdfit Population Estimation

SAEM estimation of the nonlinear mixed-effects discounting model:
- MCMC simulation with prior, component-wise and block kernels
- Stochastic approximation of the sufficient statistics
- MAP individual estimates with linearized standard errors
- Log-likelihood by linearization and by importance sampling
- Diagnostics and model comparison

Example:
    >>> from sdfit.estimation import SaemEngine
    >>> result = SaemEngine(config).run(table)
    >>> print(result.population.theta_mean, result.population.covariance)
"""

from .types import (
    PopulationModel,
    ResidualErrorModel,
    SaemHistory,
    SaemResult,
)

from .saem import (
    SaemEngine,
    check_positive_definite,
    project_positive_definite,
    step_size,
    subject_rng,
)

from .residual import (
    fit_combined_error,
    residual_statistic,
    update_residual_error,
)

from .likelihood import (
    LinearizationResult,
    importance_sampling_log_likelihood,
    linearized_log_likelihood,
)

from .diagnostics import (
    DiagnosticsSummary,
    ModelComparisonResult,
    compare_models,
    compute_diagnostics,
    individual_predictions,
    likelihood_ratio_test,
)

__all__ = [
    # Types
    "PopulationModel",
    "ResidualErrorModel",
    "SaemHistory",
    "SaemResult",
    # Engine
    "SaemEngine",
    "check_positive_definite",
    "project_positive_definite",
    "step_size",
    "subject_rng",
    # Residual error
    "fit_combined_error",
    "residual_statistic",
    "update_residual_error",
    # Likelihood
    "LinearizationResult",
    "importance_sampling_log_likelihood",
    "linearized_log_likelihood",
    # Diagnostics
    "DiagnosticsSummary",
    "ModelComparisonResult",
    "compare_models",
    "compute_diagnostics",
    "individual_predictions",
    "likelihood_ratio_test",
]
