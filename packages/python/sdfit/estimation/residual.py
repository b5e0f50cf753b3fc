"""
sdfit Residual Error Updates

M-step of the residual error parameters inside SAEM.

Constant and proportional errors have a closed-form update from one
sufficient statistic; the combined error a + b|f| has none and is fitted by
minimising the complete-data objective.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
from scipy import optimize

from ..config import ResidualErrorType
from .types import ResidualErrorModel

_PRED_FLOOR = 1e-12


def residual_statistic(error_type: ResidualErrorType, observations, predictions) -> float:
    """
    Complete-data residual statistic of one set of predictions.

    constant: sum (y - f)^2; proportional: sum ((y - f) / f)^2. The
    combined model does not reduce to a statistic and returns the plain
    sum of squares, which is kept for reporting only.
    """
    y = np.asarray(observations, dtype=float)
    f = np.asarray(predictions, dtype=float)
    r = y - f
    if error_type is ResidualErrorType.PROPORTIONAL:
        r = r / np.maximum(np.abs(f), _PRED_FLOOR)
    return float(np.sum(r * r))


def combined_error_objective(log_ab: np.ndarray, observations: np.ndarray, predictions: np.ndarray) -> Tuple[float, np.ndarray]:
    """
    Complete-data objective of the combined error model and its gradient.

    Minimises sum ((y - f) / g)^2 + 2 log g with g = a + b|f|, over
    (log a, log b) so that both stay positive.
    """
    a, b = np.exp(log_ab)
    af = np.abs(predictions)
    g = a + b * af
    z2 = ((observations - predictions) / g) ** 2
    value = float(np.sum(z2 + 2.0 * np.log(g)))
    common = 2.0 * (1.0 - z2) / g
    grad = np.array([np.sum(common * a), np.sum(common * b * af)])
    return value, grad


def fit_combined_error(observations, predictions, a0: float, b0: float) -> Tuple[float, float]:
    """
    Combined-error parameters minimising the complete-data objective.

    Args:
        observations: Pooled responses of every subject (and chain)
        predictions: Matching predictions
        a0, b0: Starting values (current estimates)

    Returns:
        (a, b); the start is returned unchanged if the optimiser fails
    """
    y = np.asarray(observations, dtype=float).ravel()
    f = np.asarray(predictions, dtype=float).ravel()
    start = np.log([max(a0, 1e-8), max(b0, 1e-8)])
    res = optimize.minimize(
        combined_error_objective,
        start,
        args=(y, f),
        jac=True,
        method="L-BFGS-B",
        bounds=[(-30.0, 30.0), (-30.0, 30.0)],
    )
    if not np.all(np.isfinite(res.x)):
        return a0, b0
    a, b = np.exp(res.x)
    return float(a), float(b)


def update_residual_error(
    current: ResidualErrorModel,
    statistic: float,
    n_observations: int,
    gamma: float,
    pooled: Tuple[np.ndarray, np.ndarray],
    anneal_alpha: float = 0.0,
) -> ResidualErrorModel:
    """
    M-step for the residual parameters.

    Args:
        current: Residual model of the previous iteration
        statistic: Stochastic-approximation residual statistic S3
        n_observations: Observations across subjects
        gamma: Step size of the current iteration (combined model)
        pooled: (observations, predictions) of the current chain states
        anneal_alpha: When positive, parameters decrease by at most this
            factor per iteration

    Returns:
        Updated ResidualErrorModel
    """
    a, b = current.a, current.b
    if current.type is ResidualErrorType.CONSTANT:
        a = float(np.sqrt(statistic / n_observations))
    elif current.type is ResidualErrorType.PROPORTIONAL:
        b = float(np.sqrt(statistic / n_observations))
    else:
        a_new, b_new = fit_combined_error(pooled[0], pooled[1], a, b)
        a = a + gamma * (a_new - a)
        b = b + gamma * (b_new - b)

    if anneal_alpha > 0:
        if "a" in current.parameter_names:
            a = max(a, anneal_alpha * current.a)
        if "b" in current.parameter_names:
            b = max(b, anneal_alpha * current.b)
    return ResidualErrorModel(current.type, a=a, b=b)
