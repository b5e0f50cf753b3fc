"""
sdfit Outlier Filter

Threshold-based exclusion of implausible individual estimates before the
population fit.
"""

from __future__ import annotations

import math
from typing import Dict, Iterable, List, Mapping, Tuple, Union

from ..config import FitConfig
from .solver import ParameterEstimate

Estimates = Union[Iterable[ParameterEstimate], Mapping[int, ParameterEstimate]]


def _as_list(estimates: Estimates) -> List[ParameterEstimate]:
    if isinstance(estimates, Mapping):
        return list(estimates.values())
    return list(estimates)


def _within(est: ParameterEstimate, theta_max: float, delta_max: float) -> bool:
    if not (math.isfinite(est.theta) and math.isfinite(est.delta)):
        return False
    return est.theta < theta_max and est.delta < delta_max


def filter_outliers(
    estimates: Estimates,
    theta_max: float = 3.0,
    delta_max: float = 2.0,
) -> List[ParameterEstimate]:
    """
    Drop subjects whose estimates reach the sanity thresholds.

    A subject is excluded when theta >= theta_max or delta >= delta_max;
    estimates that are not finite are excluded as well. Order is preserved
    and filtering is idempotent.

    Args:
        estimates: Individual estimates (sequence or dict keyed by subject)
        theta_max: Exclusive upper limit for theta
        delta_max: Exclusive upper limit for delta

    Returns:
        Retained estimates

    Example:
        >>> kept = filter_outliers(lm_estimates, theta_max=3, delta_max=2)
        >>> filter_outliers(kept, theta_max=3, delta_max=2) == kept
        True
    """
    return [e for e in _as_list(estimates) if _within(e, theta_max, delta_max)]


def split_outliers(
    estimates: Estimates,
    theta_max: float = 3.0,
    delta_max: float = 2.0,
) -> Tuple[List[ParameterEstimate], List[ParameterEstimate]]:
    """Partition estimates into (retained, excluded)."""
    retained, excluded = [], []
    for est in _as_list(estimates):
        (retained if _within(est, theta_max, delta_max) else excluded).append(est)
    return retained, excluded


def select_for_population(
    estimates: Estimates,
    config: FitConfig,
) -> Tuple[List[int], Dict[int, str]]:
    """
    Choose the subjects that enter the population fit.

    Only converged individual fits that pass the outlier thresholds are
    kept. Every other subject gets an exclusion reason so that it can be
    reported rather than silently dropped.

    Returns:
        (retained subject ids in input order, {subject_id: reason})
    """
    retained: List[int] = []
    reasons: Dict[int, str] = {}
    for est in _as_list(estimates):
        if not est.converged:
            reasons[est.subject_id] = est.status.value
        elif not _within(est, config.outlier_theta_max, config.outlier_delta_max):
            reasons[est.subject_id] = (
                f"outlier (theta={est.theta:.4g}, delta={est.delta:.4g}; "
                f"limits {config.outlier_theta_max:g}, {config.outlier_delta_max:g})"
            )
        else:
            retained.append(est.subject_id)
    return retained, reasons
