"""
sdfit - Social Discounting Model Fitting

Two-stage estimation of the hyperbolic social-discounting model

    response = theta * K / (1 + delta * social_distance)

Features:
- Individual fits:
  - Bounded Levenberg-Marquardt with asymptotic standard errors
  - Unconstrained Gauss-Newton comparison mode
- Outlier exclusion ahead of the population fit
- Population fits (SAEM):
  - MCMC simulation with stochastic approximation
  - Diagonal or full random-effect covariance
  - Constant, proportional or combined residual error
  - MAP individual estimates
  - Log-likelihood by linearization and importance sampling
- Result tables as pandas DataFrames
- Cohort simulation and reproducibility fingerprints

Quick Start:
    >>> import sdfit
    >>> table = sdfit.DataTable.from_records([
    ...     (1, 1, 87.5), (1, 5, 87.5), (1, 20, 52.5), (1, 50, 37.5), (1, 100, 22.5),
    ...     (2, 1, 60.0), (2, 5, 45.0), (2, 20, 30.0), (2, 50, 15.0), (2, 100, 10.0),
    ... ])

    >>> # Individual fits
    >>> estimates = sdfit.fit_subjects(table)
    >>> print(estimates[1].theta, estimates[1].delta)

    >>> # Full analysis
    >>> analysis = sdfit.run_analysis(table, sdfit.FitConfig(k1=200, k2=50, seed=7))
    >>> print(analysis.population_table())

For more information, see the docstrings for individual functions.
"""

import logging

from .errors import (
    EstimationCancelled,
    InsufficientData,
    InvalidConfiguration,
    NonConvergence,
    NumericDivergence,
    SdfitError,
    SingularJacobian,
)

from .model import (
    ParameterTransform,
    StructuralModel,
)

from .config import (
    FitConfig,
    OmegaStructure,
    ResidualErrorType,
)

from .data import (
    DataTable,
    Observation,
    SubjectData,
)

from .individual import (
    BoundedLMSolver,
    FitStatus,
    ParameterEstimate,
    SolverMode,
    filter_outliers,
    fit_subjects,
    select_for_population,
    split_outliers,
)

from .estimation import (
    PopulationModel,
    ResidualErrorModel,
    SaemEngine,
    SaemHistory,
    SaemResult,
    compare_models,
    compute_diagnostics,
    likelihood_ratio_test,
)

from .results import (
    comparison_table,
    lm_result_table,
    population_table,
    saem_individual_table,
)

from .pipeline import (
    AnalysisResult,
    run_analysis,
)

from .simulation import (
    SimulatedCohort,
    simulate_cohort,
)

from .provenance import population_fingerprint

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())


__all__ = [
    # Errors
    "SdfitError",
    "InvalidConfiguration",
    "InsufficientData",
    "NonConvergence",
    "SingularJacobian",
    "NumericDivergence",
    "EstimationCancelled",

    # Model
    "ParameterTransform",
    "StructuralModel",

    # Configuration
    "FitConfig",
    "OmegaStructure",
    "ResidualErrorType",

    # Data
    "DataTable",
    "Observation",
    "SubjectData",

    # Individual fitting
    "BoundedLMSolver",
    "FitStatus",
    "ParameterEstimate",
    "SolverMode",
    "fit_subjects",
    "filter_outliers",
    "split_outliers",
    "select_for_population",

    # Population estimation
    "PopulationModel",
    "ResidualErrorModel",
    "SaemEngine",
    "SaemHistory",
    "SaemResult",
    "compute_diagnostics",
    "compare_models",
    "likelihood_ratio_test",

    # Results
    "lm_result_table",
    "saem_individual_table",
    "population_table",
    "comparison_table",

    # Pipeline
    "AnalysisResult",
    "run_analysis",

    # Simulation and provenance
    "SimulatedCohort",
    "simulate_cohort",
    "population_fingerprint",
]
