"""
sdfit MCMC Kernels

Simulation step of SAEM: Metropolis-Hastings updates of each subject's
Gaussian-scale parameters phi given the current population parameters.

Three kernels run in sequence every iteration:

1. Independence proposals from the prior N(mu, Omega), accepted on the
   likelihood ratio
2. Component-wise random walk, accepted on the posterior ratio
3. Block random walk shaped by chol(Omega), accepted on the posterior ratio

Every subject owns its chain state and random generator. advance() touches
nothing else, so subjects can be advanced concurrently.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

from ..model import ParameterTransform, StructuralModel, transform_to_psi
from .types import ResidualErrorModel

TARGET_ACCEPTANCE = 0.4


# ============================================================================
# State
# ============================================================================

@dataclass(frozen=True)
class PopulationState:
    """Population parameters held fixed during one simulation step."""
    mu: np.ndarray
    omega: np.ndarray
    residual: ResidualErrorModel
    transforms: Tuple[ParameterTransform, ParameterTransform]

    @property
    def omega_inv(self) -> np.ndarray:
        return np.linalg.inv(self.omega)

    @property
    def chol(self) -> np.ndarray:
        return np.linalg.cholesky(self.omega)


@dataclass
class ProposalScales:
    """Random-walk scales adapted towards the target acceptance rate."""
    componentwise: np.ndarray
    block: float = 1.0

    @classmethod
    def initial(cls) -> "ProposalScales":
        return cls(componentwise=np.full(2, 0.5), block=0.5)

    def adapt(self, acceptance_componentwise: np.ndarray, acceptance_block: float) -> None:
        """Multiplicative update after each barrier; NaN rates leave a scale unchanged."""
        rates = np.nan_to_num(acceptance_componentwise, nan=TARGET_ACCEPTANCE)
        self.componentwise = self.componentwise * (1.0 + 0.4 * (rates - TARGET_ACCEPTANCE))
        if np.isfinite(acceptance_block):
            self.block = self.block * (1.0 + 0.4 * (acceptance_block - TARGET_ACCEPTANCE))


class SubjectChain:
    """
    Markov chains of one subject.

    Attributes:
        subject_id: Subject identifier
        predictors: Observed predictor values
        responses: Observed responses
        phi: (n_chains, 2) current Gaussian-scale parameters
        rng: Generator reserved for this subject
    """

    def __init__(
        self,
        subject_id: int,
        predictors: np.ndarray,
        responses: np.ndarray,
        phi: np.ndarray,
        rng: np.random.Generator,
    ):
        self.subject_id = subject_id
        self.predictors = predictors
        self.responses = responses
        self.phi = np.array(phi, dtype=float)
        self.rng = rng

    @property
    def n_chains(self) -> int:
        return self.phi.shape[0]

    @property
    def n_observations(self) -> int:
        return int(self.responses.size)


@dataclass(frozen=True)
class ChainMoves:
    """Outcome of advancing one subject's chains."""
    subject_id: int
    accepted_componentwise: np.ndarray  # accepted moves per component
    proposed_componentwise: int
    accepted_block: int
    proposed_block: int
    predictions: np.ndarray             # (n_chains, n) at the final states


# ============================================================================
# Densities
# ============================================================================

def conditional_log_likelihood(
    model: StructuralModel,
    residual: ResidualErrorModel,
    transforms: Sequence[ParameterTransform],
    phi: np.ndarray,
    predictors: np.ndarray,
    responses: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    log p(y | phi) for each row of phi.

    Rows whose parameters fall outside the transform or model domain get
    -inf.

    Returns:
        (log-likelihoods of shape (m,), predictions of shape (m, n))
    """
    phi = np.atleast_2d(phi)
    psi = transform_to_psi(transforms, phi)
    valid = np.ones(psi.shape[0], dtype=bool)
    for j, tr in enumerate(transforms):
        valid &= np.array([tr.in_domain(v) for v in psi[:, j]])
    valid &= model.in_domain(psi[:, 1], predictors)

    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        pred = model.evaluate_batch(psi, predictors)
        ll = residual.log_likelihood(responses, pred)
    ll = np.where(valid & np.isfinite(ll), ll, -np.inf)
    return ll, pred


def log_prior(phi: np.ndarray, mu: np.ndarray, omega_inv: np.ndarray) -> np.ndarray:
    """Unnormalised log N(mu, Omega) density of each row of phi."""
    d = np.atleast_2d(phi) - mu
    return -0.5 * np.einsum("ij,jk,ik->i", d, omega_inv, d)


def _accept(rng: np.random.Generator, log_ratio: np.ndarray) -> np.ndarray:
    u = rng.random(log_ratio.shape[0])
    with np.errstate(invalid="ignore"):
        # NaN from -inf - -inf compares False and rejects
        return np.log(u) < log_ratio


# ============================================================================
# Kernels
# ============================================================================

def advance(
    chain: SubjectChain,
    state: PopulationState,
    scales: ProposalScales,
    n_steps: Tuple[int, int, int],
    model: StructuralModel,
) -> ChainMoves:
    """
    Run the three kernels on one subject.

    Args:
        chain: Subject chains, updated in place
        state: Current population parameters
        scales: Random-walk scales (read only)
        n_steps: Steps of the (prior, component-wise, block) kernels
        model: Structural model

    Returns:
        ChainMoves with acceptance counts and predictions at the new states
    """
    rng = chain.rng
    x, y = chain.predictors, chain.responses
    omega_inv = state.omega_inv
    chol = state.chol
    n_chains = chain.n_chains

    def loglik(phi):
        return conditional_log_likelihood(model, state.residual, state.transforms, phi, x, y)

    phi = chain.phi
    ll, pred = loglik(phi)

    # Kernel 1: prior proposals, the prior cancels in the ratio
    for _ in range(n_steps[0]):
        prop = state.mu + rng.standard_normal((n_chains, 2)) @ chol.T
        ll_prop, pred_prop = loglik(prop)
        with np.errstate(invalid="ignore"):
            ok = _accept(rng, ll_prop - ll)
        phi = np.where(ok[:, None], prop, phi)
        ll = np.where(ok, ll_prop, ll)
        pred = np.where(ok[:, None], pred_prop, pred)

    lp = log_prior(phi, state.mu, omega_inv)

    # Kernel 2: one component at a time
    accepted = np.zeros(2)
    sd = np.sqrt(np.diag(state.omega))
    for _ in range(n_steps[1]):
        for j in range(2):
            prop = phi.copy()
            prop[:, j] += scales.componentwise[j] * sd[j] * rng.standard_normal(n_chains)
            ll_prop, pred_prop = loglik(prop)
            lp_prop = log_prior(prop, state.mu, omega_inv)
            with np.errstate(invalid="ignore"):
                ok = _accept(rng, (ll_prop + lp_prop) - (ll + lp))
            phi = np.where(ok[:, None], prop, phi)
            ll = np.where(ok, ll_prop, ll)
            lp = np.where(ok, lp_prop, lp)
            pred = np.where(ok[:, None], pred_prop, pred)
            accepted[j] += ok.sum()

    # Kernel 3: joint move
    accepted_block = 0
    for _ in range(n_steps[2]):
        prop = phi + scales.block * (rng.standard_normal((n_chains, 2)) @ chol.T)
        ll_prop, pred_prop = loglik(prop)
        lp_prop = log_prior(prop, state.mu, omega_inv)
        with np.errstate(invalid="ignore"):
            ok = _accept(rng, (ll_prop + lp_prop) - (ll + lp))
        phi = np.where(ok[:, None], prop, phi)
        ll = np.where(ok, ll_prop, ll)
        lp = np.where(ok, lp_prop, lp)
        pred = np.where(ok[:, None], pred_prop, pred)
        accepted_block += int(ok.sum())

    chain.phi = phi
    return ChainMoves(
        subject_id=chain.subject_id,
        accepted_componentwise=accepted,
        proposed_componentwise=n_steps[1] * n_chains,
        accepted_block=accepted_block,
        proposed_block=n_steps[2] * n_chains,
        predictions=pred,
    )
