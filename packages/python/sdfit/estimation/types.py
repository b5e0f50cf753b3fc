"""
sdfit Estimation Types

Result containers of the population (SAEM) fit.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from ..config import OmegaStructure, ResidualErrorType
from ..individual.solver import ParameterEstimate
from ..model import ParameterTransform


# ============================================================================
# Residual Error
# ============================================================================

@dataclass(frozen=True)
class ResidualErrorModel:
    """Residual error model with its current parameters.

    Attributes:
        type: constant (g = a), proportional (g = b|f|) or combined (g = a + b|f|)
        a: Additive component (ignored for proportional)
        b: Proportional component (ignored for constant)
    """
    type: ResidualErrorType
    a: float = 0.0
    b: float = 0.0

    _FLOOR = 1e-12

    @property
    def parameter_names(self) -> Tuple[str, ...]:
        if self.type is ResidualErrorType.CONSTANT:
            return ("a",)
        if self.type is ResidualErrorType.PROPORTIONAL:
            return ("b",)
        return ("a", "b")

    @property
    def parameters(self) -> Tuple[float, ...]:
        return tuple(getattr(self, name) for name in self.parameter_names)

    @property
    def n_parameters(self) -> int:
        return len(self.parameter_names)

    def sd(self, predictions) -> np.ndarray:
        """Residual standard deviation g(f), floored away from zero."""
        f = np.abs(np.asarray(predictions, dtype=float))
        if self.type is ResidualErrorType.CONSTANT:
            g = np.full_like(f, self.a)
        elif self.type is ResidualErrorType.PROPORTIONAL:
            g = self.b * f
        else:
            g = self.a + self.b * f
        return np.maximum(g, self._FLOOR)

    def sd_derivatives(self, predictions) -> Dict[str, np.ndarray]:
        """dg/d(parameter) for each residual parameter."""
        f = np.abs(np.asarray(predictions, dtype=float))
        out = {}
        if "a" in self.parameter_names:
            out["a"] = np.ones_like(f)
        if "b" in self.parameter_names:
            out["b"] = f
        return out

    def log_likelihood(self, observations, predictions) -> np.ndarray:
        """Gaussian log-density of each observation (last axis summed)."""
        y = np.asarray(observations, dtype=float)
        f = np.asarray(predictions, dtype=float)
        g = self.sd(f)
        z = (y - f) / g
        return np.sum(-0.5 * math.log(2.0 * math.pi) - np.log(g) - 0.5 * z * z, axis=-1)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type.value}
        out.update(dict(zip(self.parameter_names, self.parameters)))
        return out


# ============================================================================
# Population Model
# ============================================================================

@dataclass(frozen=True)
class PopulationModel:
    """Population parameters estimated by SAEM.

    Fixed effects are reported on the parameter scale (h(mu)); the
    covariance is over the Gaussian-scale random effects of (theta, delta).

    Attributes:
        theta_mean: Population theta
        delta_mean: Population delta
        mu_phi: Gaussian-scale means
        covariance: 2x2 random-effect covariance
        residual_error: Residual error model
        log_likelihood_linearized: Log-likelihood by linearization
        log_likelihood_importance_sampling: Log-likelihood by importance sampling
        se_fixed: Standard errors of (theta_mean, delta_mean)
        se_fixed_phi: Standard errors of mu_phi
        se_covariance: 2x2 standard errors of the covariance entries
            (NaN where not estimated)
        se_residual: Standard errors of the residual parameters
        transforms: Distribution of each parameter
        omega_structure: Diagonal or full covariance
        n_subjects: Subjects in the fit
        n_observations: Observations in the fit
        fim_condition_number: Condition number of the fixed-effect information
    """
    theta_mean: float
    delta_mean: float
    mu_phi: Tuple[float, float]
    covariance: np.ndarray
    residual_error: ResidualErrorModel
    log_likelihood_linearized: float
    log_likelihood_importance_sampling: float
    se_fixed: Tuple[float, float]
    se_fixed_phi: Tuple[float, float]
    se_covariance: np.ndarray
    se_residual: Tuple[float, ...]
    transforms: Tuple[ParameterTransform, ParameterTransform]
    omega_structure: OmegaStructure
    n_subjects: int
    n_observations: int
    fim_condition_number: float = float("nan")

    @property
    def fixed_effects(self) -> Dict[str, float]:
        return {"theta_mean": self.theta_mean, "delta_mean": self.delta_mean}

    @property
    def correlation(self) -> np.ndarray:
        sd = np.sqrt(np.diag(self.covariance))
        return self.covariance / np.outer(sd, sd)

    @property
    def n_parameters(self) -> int:
        n_cov = 3 if self.omega_structure is OmegaStructure.FULL else 2
        return 2 + n_cov + self.residual_error.n_parameters

    def aic(self, method: str = "is") -> float:
        """Akaike criterion from the "is" or "lin" log-likelihood."""
        return -2.0 * self.log_likelihood(method) + 2.0 * self.n_parameters

    def bic(self, method: str = "is") -> float:
        """Bayesian criterion, penalised by the number of subjects."""
        return -2.0 * self.log_likelihood(method) + math.log(self.n_subjects) * self.n_parameters

    def log_likelihood(self, method: str = "is") -> float:
        """Importance-sampling ("is") or linearized ("lin") log-likelihood."""
        if method == "is":
            return self.log_likelihood_importance_sampling
        if method == "lin":
            return self.log_likelihood_linearized
        raise ValueError(f"Unknown likelihood method: {method}")


# ============================================================================
# SAEM Result
# ============================================================================

@dataclass
class SaemHistory:
    """Parameter trajectories, one row per SAEM iteration."""
    fixed_effects: np.ndarray   # n_iter x 2 (parameter scale)
    omega_diag: np.ndarray      # n_iter x 2
    residual: np.ndarray        # n_iter x 2 (a, b)
    step_size: np.ndarray       # n_iter
    k1: int = 0

    @property
    def n_iterations(self) -> int:
        return int(self.step_size.size)


@dataclass
class SaemResult:
    """Result of a SAEM run.

    Attributes:
        population: Frozen population model
        individuals: MAP estimates keyed by subject_id (method "saem_map")
        conditional_means: Mean of each subject's chain over the smoothing
            phase, on the parameter scale
        conditional_variances: Gaussian-scale variance of the same samples
        history: Parameter trajectories
        subject_ids: Subjects in the fit, in reduction order
        n_iterations: Iterations performed (K1 + K2)
        runtime_seconds: Wall time of the run
        warnings: Recovered problems encountered during the run
    """
    population: PopulationModel
    individuals: Dict[int, ParameterEstimate]
    conditional_means: Dict[int, Tuple[float, float]]
    conditional_variances: Dict[int, Tuple[float, float]]
    history: SaemHistory
    subject_ids: List[int]
    n_iterations: int
    runtime_seconds: float
    warnings: List[str] = field(default_factory=list)
    dropped_subjects: List[int] = field(default_factory=list)

    def fingerprint(self) -> str:
        """SHA-256 content hash of the population model."""
        from ..provenance import population_fingerprint
        return population_fingerprint(self.population)

    def individual(self, subject_id: int) -> Optional[ParameterEstimate]:
        return self.individuals.get(subject_id)
