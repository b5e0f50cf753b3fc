"""
sdfit Analysis Pipeline

Two-stage analysis in one call: individual least squares, subject
selection, population SAEM and aggregation of the results.

Example:
    >>> from sdfit import DataTable, FitConfig, run_analysis
    >>> table = DataTable.from_frame(df)
    >>> analysis = run_analysis(table, FitConfig(seed=42))
    >>> analysis.comparison_table().head()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Event
from typing import Dict, List, Optional

import pandas as pd

from .config import FitConfig
from .data import DataTable
from .estimation.saem import SaemEngine
from .estimation.types import SaemResult
from .individual.filters import select_for_population
from .individual.solver import ParameterEstimate, SolverMode, fit_subjects
from .model import StructuralModel
from .results import comparison_table, lm_result_table, population_table, saem_individual_table

logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """Everything produced by run_analysis().

    Attributes:
        config: Configuration used
        lm_estimates: Levenberg-Marquardt estimate of every subject
        gn_estimates: Gauss-Newton estimates when requested
        retained_ids: Subjects passed to the population fit
        exclusions: Reason for every subject left out of the population fit
        saem: Population fit
        warnings: Warnings collected from every stage
    """
    config: FitConfig
    lm_estimates: Dict[int, ParameterEstimate]
    gn_estimates: Optional[Dict[int, ParameterEstimate]]
    retained_ids: List[int]
    exclusions: Dict[int, str]
    saem: SaemResult
    warnings: List[str] = field(default_factory=list)

    def lm_table(self) -> pd.DataFrame:
        return lm_result_table(self.lm_estimates)

    def gn_table(self) -> Optional[pd.DataFrame]:
        if self.gn_estimates is None:
            return None
        return lm_result_table(self.gn_estimates)

    def saem_table(self) -> pd.DataFrame:
        return saem_individual_table(self.saem)

    def population_table(self) -> pd.DataFrame:
        return population_table(self.saem.population)

    def comparison_table(self) -> pd.DataFrame:
        return comparison_table(self.lm_estimates, self.saem, self.exclusions)


def run_analysis(
    table: DataTable,
    config: Optional[FitConfig] = None,
    include_gauss_newton: bool = False,
    cancel_event: Optional[Event] = None,
) -> AnalysisResult:
    """
    Run the full two-stage analysis.

    1. Fit every subject with the bounded LM solver (optionally also with
       unconstrained Gauss-Newton for comparison)
    2. Keep converged subjects whose estimates pass the outlier thresholds
    3. Fit the population model by SAEM on the retained subjects

    Args:
        table: Observations of all subjects
        config: Fit configuration (validated on construction)
        include_gauss_newton: Also run the Gauss-Newton comparison fits
        cancel_event: Cancels the SAEM loop between iterations

    Returns:
        AnalysisResult

    Raises:
        InsufficientData: Fewer than 2 subjects remain for the population fit
        EstimationCancelled: cancel_event was set during SAEM
    """
    config = config if config is not None else FitConfig()
    model = StructuralModel(config.scale_constant)
    warnings: List[str] = []

    lm_estimates = fit_subjects(table, config, SolverMode.LEVENBERG_MARQUARDT, model)
    gn_estimates = None
    if include_gauss_newton:
        gn_estimates = fit_subjects(table, config, SolverMode.GAUSS_NEWTON, model)

    retained, exclusions = select_for_population(lm_estimates, config)
    for sid, reason in exclusions.items():
        warnings.append(f"Subject {sid} excluded from the population fit: {reason}")
    logger.info("Population fit on %d of %d subjects", len(retained), len(lm_estimates))

    saem = SaemEngine(config, model).run(table.subset(retained), cancel_event=cancel_event)
    warnings.extend(saem.warnings)

    return AnalysisResult(
        config=config,
        lm_estimates=lm_estimates,
        gn_estimates=gn_estimates,
        retained_ids=retained,
        exclusions=exclusions,
        saem=saem,
        warnings=warnings,
    )
