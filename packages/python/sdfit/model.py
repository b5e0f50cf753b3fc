"""
sdfit Structural Model

Hyperbolic social-discounting function and its parameter transforms.

    response = theta * K / (1 + delta * predictor)

theta scales the amount a subject would forgo for a socially close person,
delta is the discount rate over social distance and K is a fixed scale
constant (75 in the reference study).

The population engine works on a Gaussian scale phi; a ParameterTransform
maps phi to the parameter scale psi = h(phi).
"""

from __future__ import annotations

from enum import Enum
from typing import Sequence, Union

import numpy as np
from scipy import special, stats

ArrayLike = Union[Sequence[float], np.ndarray]


# ============================================================================
# Parameter Transforms
# ============================================================================

class ParameterTransform(str, Enum):
    """Distribution of an individual parameter across the population."""
    NORMAL = "normal"          # psi = phi
    LOG_NORMAL = "log_normal"  # psi = exp(phi)
    LOGIT = "logit"            # psi = 1 / (1 + exp(-phi))
    PROBIT = "probit"          # psi = Phi(phi)

    def to_psi(self, phi):
        """Map Gaussian-scale values to the parameter scale."""
        phi = np.asarray(phi, dtype=float)
        if self is ParameterTransform.NORMAL:
            return phi
        if self is ParameterTransform.LOG_NORMAL:
            return np.exp(phi)
        if self is ParameterTransform.LOGIT:
            return special.expit(phi)
        return stats.norm.cdf(phi)

    def to_phi(self, psi):
        """Inverse of :meth:`to_psi`."""
        psi = np.asarray(psi, dtype=float)
        if self is ParameterTransform.NORMAL:
            return psi
        if self is ParameterTransform.LOG_NORMAL:
            with np.errstate(divide="ignore"):
                return np.log(psi)
        if self is ParameterTransform.LOGIT:
            with np.errstate(divide="ignore"):
                return special.logit(psi)
        return stats.norm.ppf(psi)

    def derivative(self, phi):
        """dpsi/dphi evaluated at phi."""
        phi = np.asarray(phi, dtype=float)
        if self is ParameterTransform.NORMAL:
            return np.ones_like(phi)
        if self is ParameterTransform.LOG_NORMAL:
            return np.exp(phi)
        if self is ParameterTransform.LOGIT:
            p = special.expit(phi)
            return p * (1.0 - p)
        return stats.norm.pdf(phi)

    def in_domain(self, psi: float) -> bool:
        """True when psi can be produced by this transform."""
        if not np.isfinite(psi):
            return False
        if self is ParameterTransform.NORMAL:
            return True
        if self is ParameterTransform.LOG_NORMAL:
            return psi > 0.0
        return 0.0 < psi < 1.0


def transform_to_psi(transforms: Sequence[ParameterTransform], phi: np.ndarray) -> np.ndarray:
    """Apply per-column transforms to an (..., 2) array of phi values."""
    phi = np.asarray(phi, dtype=float)
    out = np.empty_like(phi)
    for j, tr in enumerate(transforms):
        out[..., j] = tr.to_psi(phi[..., j])
    return out


def transform_to_phi(transforms: Sequence[ParameterTransform], psi: np.ndarray) -> np.ndarray:
    """Apply per-column inverse transforms to an (..., 2) array of psi values."""
    psi = np.asarray(psi, dtype=float)
    out = np.empty_like(psi)
    for j, tr in enumerate(transforms):
        out[..., j] = tr.to_phi(psi[..., j])
    return out


def transform_derivative(transforms: Sequence[ParameterTransform], phi: np.ndarray) -> np.ndarray:
    """Per-column dpsi/dphi for an (..., 2) array of phi values."""
    phi = np.asarray(phi, dtype=float)
    out = np.empty_like(phi)
    for j, tr in enumerate(transforms):
        out[..., j] = tr.derivative(phi[..., j])
    return out


# ============================================================================
# Structural Model
# ============================================================================

class StructuralModel:
    """
    Closed-form hyperbolic discounting model.

    Args:
        scale_constant: Fixed scale K applied to theta (default: 75)

    Example:
        >>> model = StructuralModel(75.0)
        >>> model.evaluate(1.0, 0.05, [1, 5, 20, 50, 100])
        array([71.42857143, 60.        , 37.5       , 21.42857143, 12.5       ])
    """

    n_params = 2
    param_names = ("theta", "delta")

    def __init__(self, scale_constant: float = 75.0):
        self.scale_constant = float(scale_constant)

    def __repr__(self) -> str:
        return f"StructuralModel(scale_constant={self.scale_constant!r})"

    def evaluate(self, theta: float, delta: float, predictors: ArrayLike) -> np.ndarray:
        """Predicted responses for one subject."""
        x = np.asarray(predictors, dtype=float)
        return theta * self.scale_constant / (1.0 + delta * x)

    def jacobian(self, theta: float, delta: float, predictors: ArrayLike) -> np.ndarray:
        """Partial derivatives of the predictions, shape (n, 2) over (theta, delta)."""
        x = np.asarray(predictors, dtype=float)
        denom = 1.0 + delta * x
        jac = np.empty((x.size, 2))
        jac[:, 0] = self.scale_constant / denom
        jac[:, 1] = -theta * self.scale_constant * x / denom ** 2
        return jac

    def evaluate_batch(self, psi: np.ndarray, predictors: ArrayLike) -> np.ndarray:
        """
        Predictions for many parameter vectors at once.

        Args:
            psi: Array of shape (m, 2) holding (theta, delta) rows
            predictors: Predictor values, length n

        Returns:
            Array of shape (m, n)
        """
        psi = np.atleast_2d(np.asarray(psi, dtype=float))
        x = np.asarray(predictors, dtype=float)
        denom = 1.0 + psi[:, 1:2] * x[np.newaxis, :]
        return psi[:, 0:1] * self.scale_constant / denom

    @staticmethod
    def in_domain(delta, predictors: ArrayLike):
        """True where 1 + delta * x stays positive for every predictor."""
        x = np.asarray(predictors, dtype=float)
        if x.size == 0:
            return np.ones_like(np.asarray(delta, dtype=float), dtype=bool)
        delta = np.asarray(delta, dtype=float)
        # the extreme predictors bound 1 + delta * x on the whole set
        return (1.0 + delta * x.max() > 0.0) & (1.0 + delta * x.min() > 0.0)
