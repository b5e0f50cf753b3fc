"""
sdfit Individual Solver

Per-subject nonlinear least squares for the hyperbolic discounting model.

Two modes share one solver:
- Levenberg-Marquardt with box constraints (default)
- Unconstrained Gauss-Newton, kept as a comparison baseline

Each subject is fitted independently, so fit_subjects() is a plain map over
the subjects of a DataTable and may run in parallel.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
from joblib import Parallel, delayed

from ..config import FitConfig
from ..data import DataTable, SubjectData
from ..errors import InsufficientData, NonConvergence, SingularJacobian
from ..model import StructuralModel

logger = logging.getLogger(__name__)


# ============================================================================
# Enumerations
# ============================================================================

class SolverMode(str, Enum):
    """Individual fitting algorithm."""
    LEVENBERG_MARQUARDT = "lm"  # Damped, bounded
    GAUSS_NEWTON = "gn"         # Undamped, unbounded comparison mode


class FitStatus(str, Enum):
    """Outcome of a single-subject fit."""
    CONVERGED = "converged"
    NON_CONVERGENCE = "non_convergence"
    SINGULAR_JACOBIAN = "singular_jacobian"
    INSUFFICIENT_DATA = "insufficient_data"


# ============================================================================
# Result Types
# ============================================================================

@dataclass(frozen=True)
class ParameterEstimate:
    """Individual parameter estimate of one subject from one method.

    Attributes:
        subject_id: Subject the estimate belongs to
        method: "lm", "gn" or "saem_map"
        theta: Point estimate of theta
        delta: Point estimate of delta
        se_theta: Standard error of theta (NaN when undefined)
        se_delta: Standard error of delta (NaN when undefined)
        residuals: Observed minus predicted, one per fitted observation
        log_likelihood: Gaussian log-likelihood at the estimate
        converged: Whether the tolerance was met
        status: Detailed outcome
        n_iterations: Iterations used
        n_observations: Observations used in the fit
        at_bound: Whether any parameter sits on a box constraint
        warnings: Human-readable notes about the fit
        fitted: Model predictions at the estimate, aligned with residuals
    """
    subject_id: int
    method: str
    theta: float
    delta: float
    se_theta: float
    se_delta: float
    residuals: Tuple[float, ...]
    log_likelihood: float
    converged: bool
    status: FitStatus = FitStatus.CONVERGED
    n_iterations: int = 0
    n_observations: int = 0
    at_bound: bool = False
    warnings: Tuple[str, ...] = field(default_factory=tuple)
    fitted: Tuple[float, ...] = field(default_factory=tuple)

    @property
    def params(self) -> np.ndarray:
        return np.array([self.theta, self.delta])

    @property
    def se_defined(self) -> bool:
        return bool(np.isfinite(self.se_theta) and np.isfinite(self.se_delta))

    @property
    def trustworthy(self) -> bool:
        """Converged with defined standard errors."""
        return self.converged and self.se_defined

    def raise_for_status(self) -> None:
        """Raise the error matching a failed status, if any."""
        if self.status is FitStatus.INSUFFICIENT_DATA:
            raise InsufficientData(f"Subject {self.subject_id}: too few observations to fit")
        if self.status is FitStatus.SINGULAR_JACOBIAN:
            raise SingularJacobian(f"Subject {self.subject_id}: singular information matrix ({self.method})")
        if self.status is FitStatus.NON_CONVERGENCE:
            raise NonConvergence(
                f"Subject {self.subject_id}: no convergence after {self.n_iterations} iterations ({self.method})"
            )


# ============================================================================
# Helpers
# ============================================================================

def invert_information(info: np.ndarray, rcond: float = 1e-12) -> np.ndarray:
    """
    Invert a symmetric information matrix.

    Raises:
        SingularJacobian: When the matrix is not finite or numerically singular
    """
    if not np.all(np.isfinite(info)):
        raise SingularJacobian("Information matrix has non-finite entries")
    eig = np.linalg.eigvalsh(info)
    if eig.max() <= 0 or eig.min() <= rcond * eig.max():
        raise SingularJacobian(f"Information matrix is singular (eigenvalues {eig})")
    return np.linalg.inv(info)


def gaussian_log_likelihood(ssr: float, n: int) -> float:
    """Log-likelihood of n Gaussian residuals at the ML variance ssr / n."""
    if n == 0:
        return float("nan")
    if ssr <= 0:
        return float("inf")
    return float(-0.5 * n * (np.log(2.0 * np.pi * ssr / n) + 1.0))


# ============================================================================
# Solver
# ============================================================================

class BoundedLMSolver:
    """
    Levenberg-Marquardt solver with box constraints, one subject at a time.

    Minimises sum_i (y_i - f(theta, delta, x_i))^2 over the box. Parameters
    held on a bound are excluded from the damped step and steps are cut at
    the first bound they cross, so estimates never leave the bounds.
    In Gauss-Newton mode damping and bounds are removed and the iteration
    cap drops to ``config.gn_max_iter``.

    Args:
        model: Structural model (default uses config.scale_constant)
        config: Fit configuration (default: FitConfig())
        mode: LEVENBERG_MARQUARDT or GAUSS_NEWTON

    Example:
        >>> solver = BoundedLMSolver()
        >>> est = solver.fit(table[1])
        >>> print(f"theta = {est.theta:.3f} +/- {est.se_theta:.3f}")
    """

    def __init__(
        self,
        model: Optional[StructuralModel] = None,
        config: Optional[FitConfig] = None,
        mode: SolverMode = SolverMode.LEVENBERG_MARQUARDT,
    ):
        self.config = config if config is not None else FitConfig()
        self.model = model if model is not None else StructuralModel(self.config.scale_constant)
        self.mode = SolverMode(mode)

    @property
    def bounded(self) -> bool:
        return self.mode is SolverMode.LEVENBERG_MARQUARDT

    @property
    def max_iter(self) -> int:
        if self.mode is SolverMode.GAUSS_NEWTON:
            return self.config.gn_max_iter
        return self.config.lm_max_iter

    def fit(self, subject: SubjectData, initial: Optional[Tuple[float, float]] = None) -> ParameterEstimate:
        """
        Fit one subject.

        Args:
            subject: Observations of the subject
            initial: Optional (theta, delta) start, default from config

        Returns:
            ParameterEstimate with method "lm" or "gn"

        Raises:
            InsufficientData: Fewer than 2 observed responses
        """
        x, y = subject.observed()
        if x.size < 2:
            raise InsufficientData(
                f"Subject {subject.subject_id}: {x.size} observed responses, at least 2 required"
            )

        lower = self.config.lower_bounds
        upper = self.config.upper_bounds
        p = np.array(initial if initial is not None else self.config.initial_params, dtype=float)
        if self.bounded:
            p = np.clip(p, lower, upper)

        p, n_iter, iter_status = self._iterate(p, x, y, lower, upper)
        status = iter_status

        notes: List[str] = []
        fitted = self.model.evaluate(p[0], p[1], x)
        residuals = y - fitted
        ssr = float(residuals @ residuals)
        n = x.size

        se = np.full(2, np.nan)
        if status is not FitStatus.SINGULAR_JACOBIAN and np.all(np.isfinite(p)):
            jac = self.model.jacobian(p[0], p[1], x)
            try:
                cov = invert_information(jac.T @ jac)
            except SingularJacobian as exc:
                if status is FitStatus.CONVERGED:
                    status = FitStatus.SINGULAR_JACOBIAN
                notes.append(str(exc))
            else:
                if n > 2:
                    sigma2 = ssr / (n - 2)
                    se = np.sqrt(np.clip(np.diag(cov) * sigma2, 0.0, None))
                else:
                    notes.append("Standard errors undefined with n <= 2 observations")

        if status is FitStatus.NON_CONVERGENCE:
            notes.append(f"Maximum iterations ({self.max_iter}) reached")
        at_bound = bool(self.bounded and (np.any(p <= lower) or np.any(p >= upper)))
        if at_bound:
            notes.append("Estimate on a parameter bound")
        if status is not FitStatus.CONVERGED:
            logger.warning("Subject %s (%s): %s", subject.subject_id, self.mode.value, status.value)

        return ParameterEstimate(
            subject_id=subject.subject_id,
            method=self.mode.value,
            theta=float(p[0]),
            delta=float(p[1]),
            se_theta=float(se[0]),
            se_delta=float(se[1]),
            residuals=tuple(float(r) for r in residuals),
            log_likelihood=gaussian_log_likelihood(ssr, n) if np.isfinite(ssr) else float("nan"),
            converged=iter_status is FitStatus.CONVERGED,
            status=status,
            n_iterations=n_iter,
            n_observations=int(n),
            at_bound=at_bound,
            warnings=tuple(notes),
            fitted=tuple(float(v) for v in fitted),
        )

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def _iterate(
        self,
        p: np.ndarray,
        x: np.ndarray,
        y: np.ndarray,
        lower: np.ndarray,
        upper: np.ndarray,
    ) -> Tuple[np.ndarray, int, FitStatus]:
        r = y - self.model.evaluate(p[0], p[1], x)
        ssr = float(r @ r)
        if not np.isfinite(ssr):
            return p, 0, FitStatus.NON_CONVERGENCE
        if self.bounded:
            return self._levenberg_marquardt(p, x, y, r, ssr, lower, upper)
        return self._gauss_newton(p, x, y, r, ssr)

    def _levenberg_marquardt(
        self,
        p: np.ndarray,
        x: np.ndarray,
        y: np.ndarray,
        r: np.ndarray,
        ssr: float,
        lower: np.ndarray,
        upper: np.ndarray,
    ) -> Tuple[np.ndarray, int, FitStatus]:
        """
        Active-set Levenberg-Marquardt on the box.

        Parameters sitting on a bound that the gradient pushes against are
        held fixed and the damped system is solved over the remaining ones.
        Steps leaving the box are shortened to the first bound they cross.
        A fit only converges at a point where no further descent is
        available inside the box.
        """
        cfg = self.config
        lam = cfg.lm_lambda_init

        for it in range(1, self.max_iter + 1):
            if ssr == 0.0:
                return p, it - 1, FitStatus.CONVERGED

            jac = self.model.jacobian(p[0], p[1], x)
            jtj = jac.T @ jac
            grad = jac.T @ r
            if _stationary(p, grad, jtj, ssr, lower, upper):
                return p, it - 1, FitStatus.CONVERGED

            free = ~_blocked(p, grad, lower, upper)
            sub = jtj[np.ix_(free, free)]
            diag = np.diag(sub).copy()
            floor = 1e-12 * max(float(diag.max()), 1.0)
            step = np.zeros(2)
            try:
                step[free] = np.linalg.solve(sub + lam * np.diag(np.maximum(diag, floor)), grad[free])
            except np.linalg.LinAlgError:
                step[free] = np.nan

            tol = cfg.lm_xtol * (cfg.lm_xtol + np.linalg.norm(p))
            if np.all(np.isfinite(step)):
                trial, shortened = _shorten_to_box(p, step, lower, upper)
                r_trial = y - self.model.evaluate(trial[0], trial[1], x)
                ssr_trial = float(r_trial @ r_trial)

                if np.isfinite(ssr_trial) and ssr_trial < ssr:
                    reduction = (ssr - ssr_trial) / ssr
                    moved = np.linalg.norm(trial - p)
                    p, r, ssr = trial, r_trial, ssr_trial
                    lam = max(lam / 10.0, 1e-15)
                    if not shortened and moved <= tol and reduction <= cfg.lm_ftol:
                        return p, it, FitStatus.CONVERGED
                    continue

                if _undamped_step_negligible(jac[:, free], r, ssr, tol, cfg.lm_ftol):
                    return p, it, FitStatus.CONVERGED

            lam *= 10.0
            if lam > 1e16:
                return p, it, FitStatus.NON_CONVERGENCE

        return p, self.max_iter, FitStatus.NON_CONVERGENCE

    def _gauss_newton(
        self,
        p: np.ndarray,
        x: np.ndarray,
        y: np.ndarray,
        r: np.ndarray,
        ssr: float,
    ) -> Tuple[np.ndarray, int, FitStatus]:
        cfg = self.config
        for it in range(1, self.max_iter + 1):
            if ssr == 0.0:
                return p, it - 1, FitStatus.CONVERGED

            jac = self.model.jacobian(p[0], p[1], x)
            try:
                step = np.linalg.solve(jac.T @ jac, jac.T @ r)
            except np.linalg.LinAlgError:
                return p, it, FitStatus.SINGULAR_JACOBIAN
            if not np.all(np.isfinite(step)):
                return p, it, FitStatus.SINGULAR_JACOBIAN

            tol = cfg.lm_xtol * (cfg.lm_xtol + np.linalg.norm(p))
            trial = p + step
            r_trial = y - self.model.evaluate(trial[0], trial[1], x)
            ssr_trial = float(r_trial @ r_trial)
            # every step is taken
            if not np.all(np.isfinite(trial)) or not np.isfinite(ssr_trial):
                return p, it, FitStatus.NON_CONVERGENCE
            reduction = abs(ssr - ssr_trial)
            moved = np.linalg.norm(trial - p)
            p, r, ssr = trial, r_trial, ssr_trial
            if moved <= tol or reduction <= cfg.lm_ftol * max(ssr, 1e-300):
                return p, it, FitStatus.CONVERGED

        return p, self.max_iter, FitStatus.NON_CONVERGENCE


def _blocked(p: np.ndarray, grad: np.ndarray, lower: np.ndarray, upper: np.ndarray) -> np.ndarray:
    """Parameters on a bound whose descent direction (grad = J^T r) points outside the box."""
    return ((p <= lower) & (grad < 0)) | ((p >= upper) & (grad > 0))


def _stationary(
    p: np.ndarray,
    grad: np.ndarray,
    jtj: np.ndarray,
    ssr: float,
    lower: np.ndarray,
    upper: np.ndarray,
    gtol: float = 1e-12,
) -> bool:
    """
    First-order optimality on the box.

    grad is J^T r, the descent direction. Components pushing against an
    active bound are ignored; the rest are compared with the cosine between
    the residual vector and the Jacobian column.
    """
    blocked = _blocked(p, grad, lower, upper)
    scale = np.sqrt(np.maximum(np.diag(jtj), 0.0) * ssr)
    with np.errstate(divide="ignore", invalid="ignore"):
        cosine = np.where(scale > 0, np.abs(grad) / scale, 0.0)
    return bool(np.all(blocked | (cosine <= gtol)))


def _shorten_to_box(
    p: np.ndarray,
    step: np.ndarray,
    lower: np.ndarray,
    upper: np.ndarray,
) -> Tuple[np.ndarray, bool]:
    """
    Trial point p + alpha * step, with alpha cut at the first bound crossed.

    The crossed parameters land exactly on their bound. When p already sits
    on a bound the step points out of, the full step is projected instead.

    Returns:
        Tuple of (trial point, whether the step was modified)
    """
    target = p + step
    if np.all((target >= lower) & (target <= upper)):
        return target, False
    with np.errstate(divide="ignore", invalid="ignore"):
        limit = np.where(
            step > 0, (upper - p) / step,
            np.where(step < 0, (lower - p) / step, np.inf),
        )
    alpha = float(np.min(limit))
    if alpha <= 0.0:
        return np.clip(target, lower, upper), True
    trial = np.clip(p + alpha * step, lower, upper)
    hit = limit <= alpha
    trial[hit] = np.where(step[hit] > 0, upper[hit], lower[hit])
    return trial, True


def _undamped_step_negligible(jac: np.ndarray, r: np.ndarray, ssr: float, xtol: float, ftol: float) -> bool:
    """Whether the Gauss-Newton step over the given columns can no longer move or improve the fit."""
    step, *_ = np.linalg.lstsq(jac, r, rcond=None)
    gain = jac @ step
    return bool(np.linalg.norm(step) <= xtol or gain @ gain <= ftol * ssr)


# ============================================================================
# Batch Fitting
# ============================================================================

def _insufficient_estimate(subject: SubjectData, mode: SolverMode, message: str) -> ParameterEstimate:
    _, y = subject.observed()
    return ParameterEstimate(
        subject_id=subject.subject_id,
        method=mode.value,
        theta=float("nan"),
        delta=float("nan"),
        se_theta=float("nan"),
        se_delta=float("nan"),
        residuals=tuple(float("nan") for _ in y),
        log_likelihood=float("nan"),
        converged=False,
        status=FitStatus.INSUFFICIENT_DATA,
        n_iterations=0,
        n_observations=int(y.size),
        warnings=(message,),
    )


def fit_subject(solver: BoundedLMSolver, subject: SubjectData) -> ParameterEstimate:
    """Fit one subject, turning InsufficientData into a flagged record."""
    try:
        return solver.fit(subject)
    except InsufficientData as exc:
        logger.warning("%s; subject excluded from fitting", exc)
        return _insufficient_estimate(subject, solver.mode, str(exc))


def fit_subjects(
    table: DataTable,
    config: Optional[FitConfig] = None,
    mode: SolverMode = SolverMode.LEVENBERG_MARQUARDT,
    model: Optional[StructuralModel] = None,
) -> Dict[int, ParameterEstimate]:
    """
    Fit every subject of a table independently.

    Per-subject failures never abort the batch: they come back as flagged
    estimates (converged=False, possibly NaN).

    Args:
        table: Grouped observations
        config: Fit configuration (n_jobs controls parallelism)
        mode: Solver mode
        model: Optional structural model override

    Returns:
        Dict mapping subject_id to ParameterEstimate, in table order

    Example:
        >>> estimates = fit_subjects(table, FitConfig(n_jobs=4))
        >>> [e.subject_id for e in estimates.values() if not e.converged]
    """
    config = config if config is not None else FitConfig()
    solver = BoundedLMSolver(model=model, config=config, mode=mode)
    subjects = list(table)

    if config.n_jobs == 1 or len(subjects) < 2:
        results = [fit_subject(solver, s) for s in subjects]
    else:
        results = Parallel(n_jobs=config.n_jobs, prefer="threads")(
            delayed(fit_subject)(solver, s) for s in subjects
        )

    estimates = {est.subject_id: est for est in results}
    n_failed = sum(1 for e in estimates.values() if not e.converged)
    logger.info(
        "Fitted %d subjects with %s (%d not converged)", len(estimates), SolverMode(mode).value, n_failed
    )
    return estimates
