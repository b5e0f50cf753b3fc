"""
sdfit Population Likelihood

Two estimates of the marginal log-likelihood of the fitted population model:

- Linearization of the model around each subject's MAP estimate, which also
  yields the Fisher information and standard errors of the population
  parameters
- Importance sampling with a Student-t proposal centred at each subject's
  conditional mean
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import numpy as np
from joblib import Parallel, delayed
from scipy import linalg, special, stats

from ..config import OmegaStructure
from ..errors import SingularJacobian
from ..individual.solver import invert_information
from ..model import StructuralModel, transform_derivative, transform_to_psi
from .mcmc import PopulationState, SubjectChain, conditional_log_likelihood
from .posterior import phi_jacobian

logger = logging.getLogger(__name__)

_LOG_2PI = math.log(2.0 * math.pi)


# ============================================================================
# Linearization
# ============================================================================

@dataclass
class LinearizationResult:
    """Linearized log-likelihood with Fisher-information standard errors.

    Attributes:
        log_likelihood: Sum of the subjects' linearized log-densities
        se_mu_phi: Standard errors of the Gaussian-scale means
        se_fixed: Standard errors of the fixed effects on the parameter scale
        se_covariance: 2x2 standard errors of Omega (NaN where not estimated)
        se_residual: Standard errors of the residual parameters
        condition_number: Condition number of the fixed-effect information
        warnings: Problems met while inverting the information
    """
    log_likelihood: float
    se_mu_phi: Tuple[float, float]
    se_fixed: Tuple[float, float]
    se_covariance: np.ndarray
    se_residual: Tuple[float, ...]
    condition_number: float
    warnings: List[str] = field(default_factory=list)


def _variance_parameters(structure: OmegaStructure, residual_names: Sequence[str]) -> List[str]:
    names = ["omega_theta", "omega_delta"]
    if structure is OmegaStructure.FULL:
        names.append("omega_theta_delta")
    return names + list(residual_names)


def linearized_log_likelihood(
    chains: Sequence[SubjectChain],
    map_phis: Dict[int, np.ndarray],
    state: PopulationState,
    model: StructuralModel,
    structure: OmegaStructure,
) -> LinearizationResult:
    """
    Log-likelihood and standard errors by first-order linearization.

    Around the MAP estimate phi_i each subject's responses are Gaussian:

        y_i ~ N(f_i + J_i (mu - phi_i), J_i Omega J_i^T + diag(g_i^2))

    The information of mu is sum J_i^T V_i^-1 J_i and the information of the
    variance parameters is 0.5 tr(V^-1 dV_p V^-1 dV_q).

    Args:
        chains: Subject data in reduction order
        map_phis: Gaussian-scale MAP of each subject
        state: Final population parameters
        model: Structural model
        structure: Diagonal or full Omega

    Returns:
        LinearizationResult
    """
    residual = state.residual
    var_names = _variance_parameters(structure, residual.parameter_names)
    n_var = len(var_names)
    info_mu = np.zeros((2, 2))
    info_var = np.zeros((n_var, n_var))
    total = 0.0
    notes: List[str] = []

    for chain in chains:
        phi = map_phis[chain.subject_id]
        x, y = chain.predictors, chain.responses
        psi = transform_to_psi(state.transforms, phi)
        f = model.evaluate(psi[0], psi[1], x)
        jac = phi_jacobian(model, state.transforms, phi, x)
        g = residual.sd(f)
        n = y.size

        cov = jac @ state.omega @ jac.T + np.diag(g * g)
        mean = f + jac @ (state.mu - phi)
        try:
            factor = linalg.cho_factor(cov, lower=True)
        except linalg.LinAlgError:
            notes.append(f"Subject {chain.subject_id}: linearized covariance not positive definite")
            total = float("nan")
            continue
        resid = y - mean
        logdet = 2.0 * float(np.sum(np.log(np.diag(factor[0]))))
        total += -0.5 * (n * _LOG_2PI + logdet + float(resid @ linalg.cho_solve(factor, resid)))

        cov_inv = linalg.cho_solve(factor, np.eye(n))
        info_mu += jac.T @ cov_inv @ jac

        dvs = [np.outer(jac[:, 0], jac[:, 0]), np.outer(jac[:, 1], jac[:, 1])]
        if structure is OmegaStructure.FULL:
            dvs.append(np.outer(jac[:, 0], jac[:, 1]) + np.outer(jac[:, 1], jac[:, 0]))
        for dg in residual.sd_derivatives(f).values():
            dvs.append(np.diag(2.0 * g * dg))
        products = [cov_inv @ dv for dv in dvs]
        for p in range(n_var):
            for q in range(p, n_var):
                value = 0.5 * float(np.sum(products[p] * products[q].T))
                info_var[p, q] += value
                info_var[q, p] = info_var[p, q]

    se_mu = np.full(2, np.nan)
    condition = float("nan")
    try:
        condition = float(np.linalg.cond(info_mu))
        se_mu = np.sqrt(np.clip(np.diag(invert_information(info_mu)), 0.0, None))
    except SingularJacobian as exc:
        notes.append(f"Fixed-effect information: {exc}")

    se_var = np.full(n_var, np.nan)
    try:
        se_var = np.sqrt(np.clip(np.diag(invert_information(info_var)), 0.0, None))
    except SingularJacobian as exc:
        notes.append(f"Variance information: {exc}")

    se_cov = np.full((2, 2), np.nan)
    se_cov[0, 0], se_cov[1, 1] = se_var[0], se_var[1]
    if structure is OmegaStructure.FULL:
        se_cov[0, 1] = se_cov[1, 0] = se_var[2]
    n_omega = 3 if structure is OmegaStructure.FULL else 2

    # delta method: se(h(mu)) = |h'(mu)| se(mu)
    se_fixed = se_mu * np.abs(transform_derivative(state.transforms, state.mu))

    for note in notes:
        logger.warning(note)
    return LinearizationResult(
        log_likelihood=float(total),
        se_mu_phi=(float(se_mu[0]), float(se_mu[1])),
        se_fixed=(float(se_fixed[0]), float(se_fixed[1])),
        se_covariance=se_cov,
        se_residual=tuple(float(v) for v in se_var[n_omega:]),
        condition_number=condition,
        warnings=notes,
    )


# ============================================================================
# Importance Sampling
# ============================================================================

def subject_importance_log_likelihood(
    chain: SubjectChain,
    cond_mean: np.ndarray,
    cond_var: np.ndarray,
    state: PopulationState,
    model: StructuralModel,
    n_samples: int,
    df: float,
    rng: np.random.Generator,
) -> float:
    """
    log p(y_i) estimated by importance sampling.

    Draws phi from a Student-t proposal centred at the conditional mean with
    the conditional standard deviation (floored at 1% of the population
    one), then averages p(y | phi) p(phi) / q(phi) on the log scale.
    """
    sd = np.sqrt(np.maximum(cond_var, 1e-4 * np.diag(state.omega)))
    z = rng.standard_t(df, size=(n_samples, 2))
    phi = cond_mean + sd * z

    log_q = np.sum(stats.t.logpdf(z, df), axis=1) - np.sum(np.log(sd))
    log_p = stats.multivariate_normal.logpdf(phi, mean=state.mu, cov=state.omega)
    ll, _ = conditional_log_likelihood(model, state.residual, state.transforms, phi, chain.predictors, chain.responses)
    log_w = ll + np.atleast_1d(log_p) - log_q
    return float(special.logsumexp(log_w) - math.log(n_samples))


def importance_sampling_log_likelihood(
    chains: Sequence[SubjectChain],
    cond_means: Dict[int, np.ndarray],
    cond_vars: Dict[int, np.ndarray],
    state: PopulationState,
    model: StructuralModel,
    n_samples: int,
    df: float,
    rngs: Sequence[np.random.Generator],
    n_jobs: int = 1,
) -> float:
    """
    Marginal log-likelihood by importance sampling, summed over subjects.

    Args:
        chains: Subject data in reduction order
        cond_means: Gaussian-scale conditional mean of each subject
        cond_vars: Gaussian-scale conditional variance of each subject
        state: Final population parameters
        model: Structural model
        n_samples: Draws per subject
        df: Degrees of freedom of the t proposal
        rngs: One generator per subject, aligned with chains
        n_jobs: joblib workers

    Returns:
        Summed log-likelihood
    """
    def task(chain, rng):
        return subject_importance_log_likelihood(
            chain, cond_means[chain.subject_id], cond_vars[chain.subject_id],
            state, model, n_samples, df, rng,
        )

    if n_jobs == 1:
        values = [task(chain, rng) for chain, rng in zip(chains, rngs)]
    else:
        values = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(task)(chain, rng) for chain, rng in zip(chains, rngs)
        )
    # summed in subject order so the total does not depend on n_jobs
    return float(sum(values))
