"""
sdfit Estimation Diagnostics

Shrinkage and residual summaries of a SAEM fit, and comparison of fitted
population models by information criteria and likelihood ratio tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
from scipy.stats import chi2

from ..model import transform_to_phi
from .types import SaemResult


# ============================================================================
# Result Types
# ============================================================================

@dataclass
class DiagnosticsSummary:
    """Summary of estimation diagnostics."""
    iwres_mean: float
    iwres_std: float
    eta_shrinkage: List[float]
    epsilon_shrinkage: float
    condition_number: float
    n_map_failures: int


@dataclass
class ModelComparisonResult:
    """Result from model comparison."""
    model_names: List[str]
    log_likelihoods: List[float]
    aic_values: List[float]
    bic_values: List[float]
    n_params: List[int]
    best_model_aic: str
    best_model_bic: str
    lrt_statistic: Optional[float]
    lrt_pvalue: Optional[float]
    lrt_df: Optional[int]


# ============================================================================
# Diagnostic Functions
# ============================================================================

def compute_diagnostics(result: SaemResult) -> DiagnosticsSummary:
    """
    Compute diagnostic summary from a SAEM result.

    Args:
        result: SaemResult from SaemEngine.run()

    Returns:
        DiagnosticsSummary with residual and shrinkage metrics

    Example:
        >>> diag = compute_diagnostics(result)
        >>> print(f"IWRES mean: {diag.iwres_mean:.3f} (should be ~0)")
        >>> print(f"Eta shrinkage: {[f'{s:.1f}%' for s in diag.eta_shrinkage]}")
    """
    pop = result.population
    all_iwres = []
    all_etas = []

    for sid in result.subject_ids:
        ind = result.individuals[sid]
        if ind.fitted:
            sd = pop.residual_error.sd(ind.fitted)
            all_iwres.extend(np.asarray(ind.residuals) / sd)
        phi = transform_to_phi(pop.transforms, np.array([ind.theta, ind.delta]))
        all_etas.append(phi - np.asarray(pop.mu_phi))

    iwres_arr = np.array(all_iwres, dtype=float)
    etas_arr = np.array(all_etas, dtype=float)

    iwres_mean = float(np.nanmean(iwres_arr)) if iwres_arr.size else float("nan")
    iwres_std = float(np.nanstd(iwres_arr)) if iwres_arr.size else float("nan")

    # Eta shrinkage: 1 - SD(eta) / sqrt(omega)
    eta_shrinkage = []
    for j in range(2):
        sd_empirical = float(np.nanstd(etas_arr[:, j]))
        sd_theoretical = np.sqrt(pop.covariance[j, j])
        if sd_theoretical > 0:
            shrinkage = (1.0 - sd_empirical / sd_theoretical) * 100
        else:
            shrinkage = float("nan")
        eta_shrinkage.append(shrinkage)

    # Epsilon shrinkage: 1 - SD(IWRES)
    epsilon_shrinkage = (1.0 - iwres_std) * 100

    return DiagnosticsSummary(
        iwres_mean=iwres_mean,
        iwres_std=iwres_std,
        eta_shrinkage=eta_shrinkage,
        epsilon_shrinkage=epsilon_shrinkage,
        condition_number=pop.fim_condition_number,
        n_map_failures=sum(1 for e in result.individuals.values() if not e.converged),
    )


def individual_predictions(result: SaemResult) -> Dict[int, Dict[str, List[float]]]:
    """
    Extract MAP predictions and residuals per subject.

    Example:
        >>> preds = individual_predictions(result)
        >>> for subj_id, data in preds.items():
        ...     print(f"Subject {subj_id}: IPRED = {data['ipred'][:3]}...")
    """
    residual_error = result.population.residual_error
    predictions = {}
    for sid in result.subject_ids:
        ind = result.individuals[sid]
        sd = residual_error.sd(ind.fitted) if ind.fitted else np.empty(0)
        predictions[sid] = {
            "ipred": list(ind.fitted),
            "residuals": list(ind.residuals),
            "iwres": (np.asarray(ind.residuals) / sd).tolist() if ind.fitted else [],
            "log_likelihood": ind.log_likelihood,
        }
    return predictions


# ============================================================================
# Model Comparison Functions
# ============================================================================

def compare_models(
    results: List[SaemResult],
    model_names: List[str],
    method: str = "is",
) -> ModelComparisonResult:
    """
    Compare population fits of the same data using AIC, BIC, and LRT.

    Args:
        results: List of SaemResult objects
        model_names: Names for each model
        method: Log-likelihood estimate to use ("is" or "lin")

    Returns:
        ModelComparisonResult with comparison metrics

    Example:
        >>> comparison = compare_models([full, diagonal], ["Full", "Diagonal"])
        >>> print(f"Best model (AIC): {comparison.best_model_aic}")
    """
    if len(results) != len(model_names):
        raise ValueError("results and model_names must have the same length")
    pops = [r.population for r in results]
    lls = [p.log_likelihood(method) for p in pops]
    aic_values = [p.aic(method) for p in pops]
    bic_values = [p.bic(method) for p in pops]
    n_params = [p.n_parameters for p in pops]

    best_aic_idx = int(np.argmin(aic_values))
    best_bic_idx = int(np.argmin(bic_values))

    # LRT only for exactly 2 models; the one with more parameters is the full model
    lrt_statistic = None
    lrt_pvalue = None
    lrt_df = None
    if len(results) == 2:
        lrt_df = abs(n_params[0] - n_params[1])
        if lrt_df > 0:
            full, reduced = (0, 1) if n_params[0] > n_params[1] else (1, 0)
            test = likelihood_ratio_test(lls[full], lls[reduced], lrt_df)
            lrt_statistic = test["chi_sq"]
            lrt_pvalue = test["p_value"]

    return ModelComparisonResult(
        model_names=model_names,
        log_likelihoods=lls,
        aic_values=aic_values,
        bic_values=bic_values,
        n_params=n_params,
        best_model_aic=model_names[best_aic_idx],
        best_model_bic=model_names[best_bic_idx],
        lrt_statistic=lrt_statistic,
        lrt_pvalue=lrt_pvalue,
        lrt_df=lrt_df,
    )


def likelihood_ratio_test(
    ll_full: float,
    ll_reduced: float,
    df: int,
) -> Dict[str, float]:
    """
    Perform likelihood ratio test between nested models.

    Args:
        ll_full: Log-likelihood of the full (more complex) model
        ll_reduced: Log-likelihood of the reduced (simpler) model
        df: Degrees of freedom (difference in parameters)

    Returns:
        Dict with chi_sq statistic and p_value

    Example:
        >>> result = likelihood_ratio_test(-225.0, -230.0, df=1)
        >>> if result["p_value"] < 0.05:
        ...     print("Full model significantly better")
    """
    chi_sq = max(0.0, 2.0 * (ll_full - ll_reduced))
    p_value = float(chi2.sf(chi_sq, df))
    return {"chi_sq": chi_sq, "p_value": p_value, "df": df}
