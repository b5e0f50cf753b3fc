"""
sdfit SAEM Engine

Stochastic Approximation Expectation-Maximization for the nonlinear
mixed-effects discounting model

    y_ij = f(psi_i, x_ij) + g(f) eps_ij,   psi_i = h(phi_i),   phi_i ~ N(mu, Omega)

Each iteration simulates the individual parameters with MCMC, updates the
sufficient statistics by stochastic approximation and maximises the
complete-data likelihood in closed form. The first K1 iterations use a
step size of 1 (exploration), the last K2 a decreasing 1/(k - K1 + 1)
(smoothing). After the loop the engine computes MAP individual estimates,
linearized standard errors and both log-likelihood estimates.
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from threading import Event
from typing import Dict, List, Optional, Tuple

import numpy as np
from joblib import Parallel, delayed

from ..config import FitConfig, OmegaStructure, ResidualErrorType
from ..data import DataTable
from ..errors import EstimationCancelled, InsufficientData, NumericDivergence, SingularJacobian
from ..model import StructuralModel, transform_to_phi, transform_to_psi
from .likelihood import importance_sampling_log_likelihood, linearized_log_likelihood
from .mcmc import PopulationState, ProposalScales, SubjectChain, advance
from .posterior import map_estimate, posterior_standard_errors
from .residual import residual_statistic, update_residual_error
from .types import PopulationModel, ResidualErrorModel, SaemHistory, SaemResult

logger = logging.getLogger(__name__)

# spawn keys of the per-subject random streams
_MCMC_STREAM = 0
_IS_STREAM = 1


# ============================================================================
# Helpers
# ============================================================================

def step_size(k: int, k1: int) -> float:
    """SAEM step size of iteration k (0-based): 1 during exploration, then 1/(k - k1 + 1)."""
    if k < k1:
        return 1.0
    return 1.0 / (k - k1 + 1)


def subject_rng(seed: int, stream: int, subject_id: int) -> np.random.Generator:
    """Independent generator of one subject within one stream, keyed by subject id."""
    sid = int(subject_id)
    # spawn keys must be non-negative
    return np.random.default_rng(np.random.SeedSequence(seed, spawn_key=(stream, int(sid < 0), abs(sid))))


def check_positive_definite(omega: np.ndarray) -> None:
    """
    Raises:
        NumericDivergence: When omega is not finite or not positive definite
    """
    if not np.all(np.isfinite(omega)):
        raise NumericDivergence(f"Covariance has non-finite entries: {omega.tolist()}")
    eig = np.linalg.eigvalsh(omega)
    if eig.min() <= 0:
        raise NumericDivergence(f"Covariance is not positive definite (eigenvalues {eig})")


def project_positive_definite(omega: np.ndarray, floor: float = 1e-10) -> np.ndarray:
    """Nearest symmetric matrix with eigenvalues of at least floor (relative to the largest)."""
    sym = 0.5 * (omega + omega.T)
    w, v = np.linalg.eigh(sym)
    w = np.maximum(w, max(floor, floor * float(np.abs(w).max())))
    return (v * w) @ v.T


def _map(parallel, fn, *iterables) -> list:
    if parallel is None:
        return [fn(*args) for args in zip(*iterables)]
    return parallel(delayed(fn)(*args) for args in zip(*iterables))


# ============================================================================
# Engine
# ============================================================================

class SaemEngine:
    """
    Population estimation by SAEM.

    Args:
        config: Fit configuration (default: FitConfig())
        model: Structural model (default uses config.scale_constant)

    Example:
        >>> engine = SaemEngine(FitConfig(k1=300, k2=100, seed=1))
        >>> result = engine.run(table.subset(retained_ids))
        >>> print(result.population.theta_mean, result.population.delta_mean)
    """

    def __init__(self, config: Optional[FitConfig] = None, model: Optional[StructuralModel] = None):
        self.config = config if config is not None else FitConfig()
        self.model = model if model is not None else StructuralModel(self.config.scale_constant)

    def run(self, table: DataTable, cancel_event: Optional[Event] = None) -> SaemResult:
        """
        Fit the population model.

        Args:
            table: Subjects to fit (already filtered)
            cancel_event: Checked between iterations; when set the run stops

        Returns:
            SaemResult

        Raises:
            InsufficientData: Fewer than 2 subjects with observed responses
            EstimationCancelled: cancel_event was set
        """
        cfg = self.config
        started = time.perf_counter()
        warnings: List[str] = []

        chains, dropped = self._prepare(table, warnings)
        n_subjects = len(chains)
        n_obs = sum(c.n_observations for c in chains)
        n_iter = cfg.n_iterations
        logger.info(
            "SAEM: %d subjects, %d observations, K1=%d, K2=%d, %d chain(s)",
            n_subjects, n_obs, cfg.k1, cfg.k2, cfg.n_chains,
        )

        mu = transform_to_phi(cfg.transforms, cfg.initial_params)
        omega = cfg.initial_omega.copy()
        a0, b0 = cfg.residual_init
        residual = ResidualErrorModel(cfg.residual_error, a=a0, b=b0)
        for chain in chains:
            chain.phi = np.tile(mu, (cfg.n_chains, 1))

        # sufficient statistics consistent with the initial values
        s1_sa = n_subjects * mu
        s2_sa = n_subjects * (omega + np.outer(mu, mu))
        s3_sa = n_obs * (b0 ** 2 if cfg.residual_error is ResidualErrorType.PROPORTIONAL else a0 ** 2)

        scales = ProposalScales.initial()
        hist_fixed = np.empty((n_iter, 2))
        hist_omega = np.empty((n_iter, 2))
        hist_residual = np.empty((n_iter, 2))
        hist_gamma = np.empty(n_iter)
        phi_sum = np.zeros((n_subjects, 2))
        phi_sq_sum = np.zeros((n_subjects, 2))
        n_smoothing_draws = 0
        n_projections = 0

        executor = Parallel(n_jobs=cfg.n_jobs, prefer="threads") if cfg.n_jobs != 1 else nullcontext()
        with executor as parallel:
            for k in range(n_iter):
                if cancel_event is not None and cancel_event.is_set():
                    raise EstimationCancelled(f"SAEM cancelled before iteration {k}")
                if k == cfg.k1 and cfg.k2 > 0:
                    logger.info("SAEM: smoothing phase from iteration %d", k)

                state = PopulationState(mu, omega, residual, cfg.transforms)
                moves = _map(
                    parallel,
                    lambda chain: advance(chain, state, scales, cfg.saem_n_mcmc_steps, self.model),
                    chains,
                )

                # barrier: everything below runs in subject order
                scales.adapt(*self._acceptance(moves))
                s1, s2, s3, pooled = self._statistics(chains, moves, residual.type)

                gamma = 0.0 if k < cfg.saem_n_burn else step_size(k, cfg.k1)
                if gamma > 0:
                    s1_sa = s1_sa + gamma * (s1 - s1_sa)
                    s2_sa = s2_sa + gamma * (s2 - s2_sa)
                    s3_sa = s3_sa + gamma * (s3 - s3_sa)
                    annealing = k < cfg.saem_n_annealing

                    mu_new = s1_sa / n_subjects
                    omega_new = s2_sa / n_subjects - np.outer(mu_new, mu_new)
                    if cfg.omega_structure is OmegaStructure.DIAGONAL:
                        omega_new = np.diag(np.diag(omega_new))
                    if annealing:
                        idx = np.diag_indices(2)
                        omega_new[idx] = np.maximum(omega_new[idx], cfg.saem_annealing_alpha * np.diag(omega))
                    try:
                        check_positive_definite(omega_new)
                    except NumericDivergence as exc:
                        n_projections += 1
                        logger.warning("Iteration %d: %s; projecting", k, exc)
                        if np.all(np.isfinite(omega_new)):
                            omega_new = project_positive_definite(omega_new)
                        else:
                            omega_new = omega

                    residual = update_residual_error(
                        residual, s3_sa, n_obs, gamma, pooled,
                        anneal_alpha=cfg.saem_annealing_alpha if annealing else 0.0,
                    )
                    mu, omega = mu_new, omega_new

                if k >= cfg.k1:
                    for i, chain in enumerate(chains):
                        phi_sum[i] += chain.phi.sum(axis=0)
                        phi_sq_sum[i] += (chain.phi ** 2).sum(axis=0)
                    n_smoothing_draws += cfg.n_chains

                hist_fixed[k] = transform_to_psi(cfg.transforms, mu)
                hist_omega[k] = np.diag(omega)
                hist_residual[k] = (
                    residual.a if "a" in residual.parameter_names else np.nan,
                    residual.b if "b" in residual.parameter_names else np.nan,
                )
                hist_gamma[k] = gamma

                if cfg.verbose and ((k + 1) % cfg.log_every == 0 or k == n_iter - 1):
                    logger.info(
                        "SAEM iteration %d/%d: theta=%.5g delta=%.5g omega=(%.4g, %.4g) residual=%s",
                        k + 1, n_iter, hist_fixed[k, 0], hist_fixed[k, 1],
                        omega[0, 0], omega[1, 1], residual.to_dict(),
                    )

            if n_projections:
                warnings.append(
                    f"Random-effect covariance projected to positive definite in {n_projections} iteration(s)"
                )

            state = PopulationState(mu, omega, residual, cfg.transforms)
            cond_means, cond_vars = self._conditional_moments(
                chains, phi_sum, phi_sq_sum, n_smoothing_draws, state
            )

            # MAP estimates start at the conditional means
            maps = _map(
                parallel,
                lambda chain: map_estimate(chain, cond_means[chain.subject_id], state, self.model, cfg),
                chains,
            )

        individuals = {est.subject_id: est for est, _ in maps}
        map_phis = {est.subject_id: phi for est, phi in maps}
        n_failed = sum(1 for est in individuals.values() if not est.converged)
        if n_failed:
            warnings.append(f"MAP estimation did not converge for {n_failed} subject(s)")

        lin = linearized_log_likelihood(chains, map_phis, state, self.model, cfg.omega_structure)
        warnings.extend(lin.warnings)
        ll_is = importance_sampling_log_likelihood(
            chains, cond_means, cond_vars, state, self.model,
            n_samples=cfg.n_importance_samples,
            df=cfg.saem_importance_df,
            rngs=[subject_rng(cfg.seed, _IS_STREAM, chain.subject_id) for chain in chains],
            n_jobs=cfg.n_jobs,
        )

        psi_mu = transform_to_psi(cfg.transforms, mu)
        population = PopulationModel(
            theta_mean=float(psi_mu[0]),
            delta_mean=float(psi_mu[1]),
            mu_phi=(float(mu[0]), float(mu[1])),
            covariance=omega.copy(),
            residual_error=residual,
            log_likelihood_linearized=lin.log_likelihood,
            log_likelihood_importance_sampling=ll_is,
            se_fixed=lin.se_fixed,
            se_fixed_phi=lin.se_mu_phi,
            se_covariance=lin.se_covariance,
            se_residual=lin.se_residual,
            transforms=cfg.transforms,
            omega_structure=cfg.omega_structure,
            n_subjects=n_subjects,
            n_observations=n_obs,
            fim_condition_number=lin.condition_number,
        )

        runtime = time.perf_counter() - started
        logger.info(
            "SAEM finished in %.2fs: theta=%.5g delta=%.5g LL(lin)=%.4f LL(IS)=%.4f",
            runtime, population.theta_mean, population.delta_mean,
            population.log_likelihood_linearized, population.log_likelihood_importance_sampling,
        )

        return SaemResult(
            population=population,
            individuals=individuals,
            conditional_means={
                sid: tuple(float(v) for v in transform_to_psi(cfg.transforms, phi))
                for sid, phi in cond_means.items()
            },
            conditional_variances={sid: tuple(float(v) for v in var) for sid, var in cond_vars.items()},
            history=SaemHistory(
                fixed_effects=hist_fixed,
                omega_diag=hist_omega,
                residual=hist_residual,
                step_size=hist_gamma,
                k1=cfg.k1,
            ),
            subject_ids=[c.subject_id for c in chains],
            n_iterations=n_iter,
            runtime_seconds=runtime,
            warnings=warnings,
            dropped_subjects=dropped,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _prepare(self, table: DataTable, warnings: List[str]) -> Tuple[List[SubjectChain], List[int]]:
        chains: List[SubjectChain] = []
        dropped: List[int] = []
        for subject in sorted(table, key=lambda s: s.subject_id):
            x, y = subject.observed()
            if y.size == 0:
                dropped.append(subject.subject_id)
                message = f"Subject {subject.subject_id} has no observed responses and was dropped"
                logger.warning(message)
                warnings.append(message)
                continue
            chains.append(SubjectChain(
                subject.subject_id, x, y,
                phi=np.zeros((self.config.n_chains, 2)),
                rng=subject_rng(self.config.seed, _MCMC_STREAM, subject.subject_id),
            ))
        if len(chains) < 2:
            raise InsufficientData(
                f"SAEM needs at least 2 subjects with observed responses, got {len(chains)}"
            )
        return chains, dropped

    @staticmethod
    def _acceptance(moves) -> Tuple[np.ndarray, float]:
        accepted = np.sum([m.accepted_componentwise for m in moves], axis=0)
        proposed = sum(m.proposed_componentwise for m in moves)
        accepted_block = sum(m.accepted_block for m in moves)
        proposed_block = sum(m.proposed_block for m in moves)
        rate = accepted / proposed if proposed else np.full(2, np.nan)
        rate_block = accepted_block / proposed_block if proposed_block else float("nan")
        return rate, rate_block

    @staticmethod
    def _statistics(chains, moves, error_type: ResidualErrorType):
        """Complete-data sufficient statistics averaged over chains."""
        s1 = np.zeros(2)
        s2 = np.zeros((2, 2))
        s3 = 0.0
        pooled_y, pooled_f = [], []
        for chain, move in zip(chains, moves):
            phi = chain.phi
            s1 += phi.mean(axis=0)
            s2 += phi.T @ phi / chain.n_chains
            s3 += sum(
                residual_statistic(error_type, chain.responses, f) for f in move.predictions
            ) / chain.n_chains
            if error_type is ResidualErrorType.COMBINED:
                pooled_y.append(np.tile(chain.responses, chain.n_chains))
                pooled_f.append(move.predictions.ravel())
        pooled = (
            (np.concatenate(pooled_y), np.concatenate(pooled_f)) if pooled_y else (np.empty(0), np.empty(0))
        )
        return s1, s2, s3, pooled

    def _conditional_moments(
        self,
        chains: List[SubjectChain],
        phi_sum: np.ndarray,
        phi_sq_sum: np.ndarray,
        n_draws: int,
        state: PopulationState,
    ) -> Tuple[Dict[int, np.ndarray], Dict[int, np.ndarray]]:
        """Gaussian-scale conditional mean and variance of each subject."""
        means: Dict[int, np.ndarray] = {}
        variances: Dict[int, np.ndarray] = {}
        for i, chain in enumerate(chains):
            if n_draws > 0:
                mean = phi_sum[i] / n_draws
                var = np.maximum(phi_sq_sum[i] / n_draws - mean ** 2, 0.0)
            else:
                mean = chain.phi.mean(axis=0)
                var = chain.phi.var(axis=0)
            if n_draws < 2 and chain.n_chains < 2:
                # a single draw has no spread; use the linearized posterior
                try:
                    var = posterior_standard_errors(mean, chain, state, self.model) ** 2
                except SingularJacobian as exc:
                    logger.warning("Subject %s: %s", chain.subject_id, exc)
            means[chain.subject_id] = mean
            variances[chain.subject_id] = var
        return means, variances
