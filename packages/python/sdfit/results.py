"""
sdfit Result Tables

Aggregate individual and population estimates into pandas DataFrames, one
row per subject (or per population parameter).
"""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional, Union

import numpy as np
import pandas as pd

from .config import OmegaStructure
from .estimation.types import PopulationModel, SaemResult
from .individual.solver import ParameterEstimate

Estimates = Union[Iterable[ParameterEstimate], Mapping[int, ParameterEstimate]]


def _as_list(estimates: Estimates):
    if isinstance(estimates, Mapping):
        return list(estimates.values())
    return list(estimates)


def lm_result_table(estimates: Estimates) -> pd.DataFrame:
    """
    Individual least-squares results.

    Columns: subject_id, theta, se_theta, delta, se_delta,
    residual_1 .. residual_n, log_likelihood, converged, status. Subjects
    with fewer residuals than the widest subject are padded with NaN.

    Example:
        >>> df = lm_result_table(fit_subjects(table))
        >>> df[["subject_id", "theta", "delta", "converged"]]
    """
    rows = _as_list(estimates)
    n_resid = max((len(e.residuals) for e in rows), default=0)
    records = []
    for est in rows:
        record = {
            "subject_id": est.subject_id,
            "theta": est.theta,
            "se_theta": est.se_theta,
            "delta": est.delta,
            "se_delta": est.se_delta,
        }
        for j in range(n_resid):
            record[f"residual_{j + 1}"] = est.residuals[j] if j < len(est.residuals) else np.nan
        record["log_likelihood"] = est.log_likelihood
        record["converged"] = est.converged
        record["status"] = est.status.value
        records.append(record)
    columns = (
        ["subject_id", "theta", "se_theta", "delta", "se_delta"]
        + [f"residual_{j + 1}" for j in range(n_resid)]
        + ["log_likelihood", "converged", "status"]
    )
    return pd.DataFrame.from_records(records, columns=columns)


def saem_individual_table(result: SaemResult) -> pd.DataFrame:
    """MAP estimates and conditional means of every subject in the population fit."""
    records = []
    for sid in result.subject_ids:
        est = result.individuals[sid]
        cond = result.conditional_means[sid]
        records.append({
            "subject_id": sid,
            "theta_map": est.theta,
            "delta_map": est.delta,
            "se_theta_map": est.se_theta,
            "se_delta_map": est.se_delta,
            "theta_cond_mean": cond[0],
            "delta_cond_mean": cond[1],
        })
    columns = [
        "subject_id", "theta_map", "delta_map", "se_theta_map", "se_delta_map",
        "theta_cond_mean", "delta_cond_mean",
    ]
    return pd.DataFrame.from_records(records, columns=columns)


def population_table(population: PopulationModel) -> pd.DataFrame:
    """
    Population estimates with standard errors and relative standard errors (%).

    Example:
        >>> population_table(result.population).set_index("parameter")
    """
    rows = [
        ("theta_mean", population.theta_mean, population.se_fixed[0]),
        ("delta_mean", population.delta_mean, population.se_fixed[1]),
        ("omega_theta", population.covariance[0, 0], population.se_covariance[0, 0]),
        ("omega_delta", population.covariance[1, 1], population.se_covariance[1, 1]),
    ]
    if population.omega_structure is OmegaStructure.FULL:
        rows.append(("omega_theta_delta", population.covariance[0, 1], population.se_covariance[0, 1]))
    residual = population.residual_error
    for name, value, se in zip(residual.parameter_names, residual.parameters, population.se_residual):
        rows.append((f"residual_{name}", value, se))

    df = pd.DataFrame(rows, columns=["parameter", "estimate", "se"])
    df["estimate"] = df["estimate"].astype(float)
    df["se"] = df["se"].astype(float)
    with np.errstate(divide="ignore", invalid="ignore"):
        df["rse"] = 100.0 * df["se"] / df["estimate"].abs()
    return df


def comparison_table(
    lm_estimates: Estimates,
    saem_result: Optional[SaemResult],
    exclusions: Optional[Dict[int, str]] = None,
) -> pd.DataFrame:
    """
    Side-by-side LM and SAEM estimates, one row per LM subject.

    Subjects outside the population fit keep their LM estimates, have NaN
    SAEM columns, in_population False and the reason of their exclusion.

    Args:
        lm_estimates: Individual LM estimates
        saem_result: Population fit (None when it was not run)
        exclusions: Exclusion reason by subject id

    Returns:
        DataFrame in the order of lm_estimates
    """
    exclusions = exclusions or {}
    in_population = set(saem_result.subject_ids) if saem_result is not None else set()
    dropped = set(saem_result.dropped_subjects) if saem_result is not None else set()
    records = []
    for est in _as_list(lm_estimates):
        sid = est.subject_id
        record = {
            "subject_id": sid,
            "theta_lm": est.theta,
            "delta_lm": est.delta,
            "se_theta_lm": est.se_theta,
            "se_delta_lm": est.se_delta,
            "converged_lm": est.converged,
            "theta_map": np.nan,
            "delta_map": np.nan,
            "se_theta_map": np.nan,
            "se_delta_map": np.nan,
            "theta_cond_mean": np.nan,
            "delta_cond_mean": np.nan,
            "in_population": sid in in_population,
            "exclusion_reason": exclusions.get(sid),
        }
        if sid in in_population:
            ind = saem_result.individuals[sid]
            cond = saem_result.conditional_means[sid]
            record.update({
                "theta_map": ind.theta,
                "delta_map": ind.delta,
                "se_theta_map": ind.se_theta,
                "se_delta_map": ind.se_delta,
                "theta_cond_mean": cond[0],
                "delta_cond_mean": cond[1],
            })
        elif sid in dropped and record["exclusion_reason"] is None:
            record["exclusion_reason"] = "no observed responses"
        elif record["exclusion_reason"] is None and saem_result is None:
            record["exclusion_reason"] = "population fit not run"
        records.append(record)
    df = pd.DataFrame.from_records(records, columns=[
        "subject_id", "theta_lm", "delta_lm", "se_theta_lm", "se_delta_lm", "converged_lm",
        "theta_map", "delta_map", "se_theta_map", "se_delta_map",
        "theta_cond_mean", "delta_cond_mean", "in_population", "exclusion_reason",
    ])
    # object dtype keeps None for included subjects
    df["exclusion_reason"] = pd.Series(
        [record["exclusion_reason"] for record in records], index=df.index, dtype=object
    )
    return df
