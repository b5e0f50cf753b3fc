"""
sdfit Individual Posterior Estimates

Maximum a posteriori individual parameters after SAEM, with standard errors
from the linearized posterior precision J^T G^-1 J + Omega^-1.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import optimize

from ..config import FitConfig
from ..errors import SingularJacobian
from ..individual.solver import FitStatus, ParameterEstimate, invert_information
from ..model import StructuralModel, transform_derivative, transform_to_psi
from .mcmc import PopulationState, SubjectChain, conditional_log_likelihood, log_prior

logger = logging.getLogger(__name__)

_PENALTY = 1e100


def phi_bounds(config: FitConfig) -> List[Tuple[Optional[float], Optional[float]]]:
    """Parameter bounds mapped to the Gaussian scale (None where unbounded)."""
    out = []
    for bounds, tr in zip((config.theta_bounds, config.delta_bounds), config.transforms):
        with np.errstate(invalid="ignore"):
            lo, hi = (float(tr.to_phi(v)) for v in bounds)
        out.append((lo if np.isfinite(lo) else None, hi if np.isfinite(hi) else None))
    return out


def phi_jacobian(model: StructuralModel, transforms, phi: np.ndarray, predictors: np.ndarray) -> np.ndarray:
    """Jacobian of the predictions with respect to phi, shape (n, 2)."""
    psi = transform_to_psi(transforms, phi)
    return model.jacobian(psi[0], psi[1], predictors) * transform_derivative(transforms, phi)


def map_phi(
    chain: SubjectChain,
    start: np.ndarray,
    state: PopulationState,
    model: StructuralModel,
    bounds: Sequence[Tuple[Optional[float], Optional[float]]],
) -> optimize.OptimizeResult:
    """Minimise -log p(y | phi) - log p(phi) with L-BFGS-B."""
    omega_inv = state.omega_inv
    x, y = chain.predictors, chain.responses

    def objective(phi):
        ll, _ = conditional_log_likelihood(model, state.residual, state.transforms, phi, x, y)
        value = -(ll[0] + log_prior(phi, state.mu, omega_inv)[0])
        return float(value) if np.isfinite(value) else _PENALTY

    lo = np.array([-np.inf if b[0] is None else b[0] for b in bounds])
    hi = np.array([np.inf if b[1] is None else b[1] for b in bounds])
    x0 = np.clip(start, lo, hi)
    return optimize.minimize(objective, x0, method="L-BFGS-B", bounds=list(bounds))


def posterior_standard_errors(
    phi: np.ndarray,
    chain: SubjectChain,
    state: PopulationState,
    model: StructuralModel,
) -> np.ndarray:
    """
    Standard errors of phi from the linearized posterior precision.

    Raises:
        SingularJacobian: When the precision cannot be inverted
    """
    jac = phi_jacobian(model, state.transforms, phi, chain.predictors)
    psi = transform_to_psi(state.transforms, phi)
    g = state.residual.sd(model.evaluate(psi[0], psi[1], chain.predictors))
    precision = (jac / g[:, None] ** 2).T @ jac + state.omega_inv
    cov = invert_information(precision)
    return np.sqrt(np.clip(np.diag(cov), 0.0, None))


def map_estimate(
    chain: SubjectChain,
    start: np.ndarray,
    state: PopulationState,
    model: StructuralModel,
    config: FitConfig,
) -> Tuple[ParameterEstimate, np.ndarray]:
    """
    MAP estimate of one subject.

    Args:
        chain: Subject data (its chain state is not used)
        start: Gaussian-scale starting point, normally the conditional mean
        state: Final population parameters
        model: Structural model
        config: Supplies the parameter bounds

    Returns:
        (ParameterEstimate with method "saem_map", MAP on the Gaussian scale)
    """
    res = map_phi(chain, start, state, model, phi_bounds(config))
    phi = np.asarray(res.x, dtype=float)
    psi = transform_to_psi(state.transforms, phi)
    x, y = chain.predictors, chain.responses

    notes = []
    status = FitStatus.CONVERGED if res.success else FitStatus.NON_CONVERGENCE
    if not res.success:
        notes.append(f"MAP optimisation: {res.message}")

    se = np.full(2, np.nan)
    try:
        se = posterior_standard_errors(phi, chain, state, model) * np.abs(
            transform_derivative(state.transforms, phi)
        )
    except SingularJacobian as exc:
        if status is FitStatus.CONVERGED:
            status = FitStatus.SINGULAR_JACOBIAN
        notes.append(str(exc))

    ll, pred = conditional_log_likelihood(model, state.residual, state.transforms, phi, x, y)
    lower, upper = config.lower_bounds, config.upper_bounds
    at_bound = bool(np.any(np.isclose(psi, lower)) or np.any(np.isclose(psi, upper)))
    if at_bound:
        notes.append("Estimate on a parameter bound")
    if status is not FitStatus.CONVERGED:
        logger.warning("Subject %s (saem_map): %s", chain.subject_id, status.value)

    estimate = ParameterEstimate(
        subject_id=chain.subject_id,
        method="saem_map",
        theta=float(psi[0]),
        delta=float(psi[1]),
        se_theta=float(se[0]),
        se_delta=float(se[1]),
        residuals=tuple(float(r) for r in y - pred[0]),
        log_likelihood=float(ll[0]),
        converged=bool(res.success),
        status=status,
        n_iterations=int(res.nit),
        n_observations=int(y.size),
        at_bound=at_bound,
        warnings=tuple(notes),
        fitted=tuple(float(v) for v in pred[0]),
    )
    return estimate, phi

