"""
sdfit Configuration

A single flat configuration surface for the individual solver, the outlier
filter and the SAEM engine. Options specific to one stage carry its prefix
(``lm_``, ``gn_``, ``saem_``).
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .errors import InvalidConfiguration
from .model import ParameterTransform


# ============================================================================
# Enumerations
# ============================================================================

class OmegaStructure(str, Enum):
    """Structure of the random-effect covariance matrix."""
    DIAGONAL = "diagonal"  # No correlation between theta and delta
    FULL = "full"          # Estimated correlation


class ResidualErrorType(str, Enum):
    """Residual error model g(f)."""
    CONSTANT = "constant"          # g = a
    PROPORTIONAL = "proportional"  # g = b * |f|
    COMBINED = "combined"          # g = a + b * |f|


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class FitConfig:
    """Configuration for individual and population fitting.

    Attributes:
        k1: SAEM exploration iterations (step size 1)
        k2: SAEM smoothing iterations (step size 1/(k - k1 + 1))
        n_chains: Markov chains per subject
        seed: Seed driving every random draw
        n_importance_samples: Draws per subject for the IS log-likelihood
        theta_bounds: Box constraint on theta
        delta_bounds: Box constraint on delta
        outlier_theta_max: Subjects with theta >= this are excluded
        outlier_delta_max: Subjects with delta >= this are excluded
        scale_constant: K in theta * K / (1 + delta * x)
        theta_init: Initial theta (LM start and SAEM fixed effect)
        delta_init: Initial delta (LM start and SAEM fixed effect)
        lm_max_iter: LM iteration cap
        lm_lambda_init: Initial LM damping
        lm_xtol: Relative step tolerance
        lm_ftol: Relative sum-of-squares reduction tolerance
        gn_max_iter: Iteration cap of the unconstrained Gauss-Newton mode
        omega_init: Initial random-effect covariance (default identity)
        omega_structure: Diagonal or full covariance
        residual_error: Residual error model
        residual_init: Initial (a, b) residual parameters
        transforms: Distribution of (theta, delta) across subjects
        saem_n_mcmc_steps: Steps of the (prior, component-wise, block) kernels
        saem_n_burn: Leading iterations without parameter updates
        saem_n_annealing: Iterations with bounded variance decrease
            (default k1 // 2)
        saem_annealing_alpha: Per-iteration variance decay floor
        saem_importance_df: Degrees of freedom of the t importance density
        n_jobs: joblib workers for per-subject work (1 = sequential)
        verbose: Log SAEM progress
        log_every: Progress logging period in iterations
    """
    k1: int = 300
    k2: int = 100
    n_chains: int = 1
    seed: int = 12345
    n_importance_samples: int = 5000
    theta_bounds: Tuple[float, float] = (0.0, 5.0)
    delta_bounds: Tuple[float, float] = (0.0, 5.0)
    outlier_theta_max: float = 3.0
    outlier_delta_max: float = 2.0
    scale_constant: float = 75.0
    theta_init: float = 1.0
    delta_init: float = 1.0
    # LM-specific options
    lm_max_iter: int = 1024
    lm_lambda_init: float = 1e-3
    lm_xtol: float = 1e-10
    lm_ftol: float = 1e-14
    # Gauss-Newton comparison mode
    gn_max_iter: int = 50
    # SAEM-specific options
    omega_init: Optional[List[List[float]]] = None
    omega_structure: OmegaStructure = OmegaStructure.DIAGONAL
    residual_error: ResidualErrorType = ResidualErrorType.CONSTANT
    residual_init: Tuple[float, float] = (1.0, 0.1)
    transforms: Tuple[ParameterTransform, ParameterTransform] = (
        ParameterTransform.NORMAL, ParameterTransform.NORMAL
    )
    saem_n_mcmc_steps: Tuple[int, int, int] = (2, 2, 2)
    saem_n_burn: int = 5
    saem_n_annealing: Optional[int] = None
    saem_annealing_alpha: float = 0.97
    saem_importance_df: float = 4.0
    # Execution
    n_jobs: int = 1
    verbose: bool = False
    log_every: int = 50

    def __post_init__(self):
        self.theta_bounds = tuple(float(v) for v in self.theta_bounds)
        self.delta_bounds = tuple(float(v) for v in self.delta_bounds)
        self.residual_init = tuple(float(v) for v in self.residual_init)
        self.saem_n_mcmc_steps = tuple(int(v) for v in self.saem_n_mcmc_steps)
        self.omega_structure = OmegaStructure(self.omega_structure)
        self.residual_error = ResidualErrorType(self.residual_error)
        self.transforms = tuple(ParameterTransform(t) for t in self.transforms)
        if self.saem_n_annealing is None:
            self.saem_n_annealing = self.k1 // 2
        self.validate()

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def lower_bounds(self) -> np.ndarray:
        return np.array([self.theta_bounds[0], self.delta_bounds[0]])

    @property
    def upper_bounds(self) -> np.ndarray:
        return np.array([self.theta_bounds[1], self.delta_bounds[1]])

    @property
    def initial_params(self) -> np.ndarray:
        return np.array([self.theta_init, self.delta_init], dtype=float)

    @property
    def initial_omega(self) -> np.ndarray:
        if self.omega_init is None:
            return np.eye(2)
        return np.array(self.omega_init, dtype=float)

    @property
    def n_iterations(self) -> int:
        return self.k1 + self.k2

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Raise InvalidConfiguration for any inconsistent option."""
        for name in ("theta_bounds", "delta_bounds"):
            bounds = getattr(self, name)
            if len(bounds) != 2 or not bounds[0] < bounds[1]:
                raise InvalidConfiguration(f"{name} must be (lower, upper) with lower < upper, got {getattr(self, name)}")
        if self.k1 < 0 or self.k2 < 0:
            raise InvalidConfiguration(f"k1 and k2 must be non-negative, got k1={self.k1}, k2={self.k2}")
        if self.k1 + self.k2 < 1:
            raise InvalidConfiguration("SAEM needs at least one iteration")
        if not self.scale_constant > 0:
            raise InvalidConfiguration(f"scale_constant must be positive, got {self.scale_constant}")
        if self.seed < 0:
            raise InvalidConfiguration(f"seed must be non-negative, got {self.seed}")
        if self.n_chains < 1:
            raise InvalidConfiguration(f"n_chains must be >= 1, got {self.n_chains}")
        if self.n_importance_samples < 1:
            raise InvalidConfiguration(f"n_importance_samples must be >= 1, got {self.n_importance_samples}")
        if self.lm_max_iter < 1 or self.gn_max_iter < 1:
            raise InvalidConfiguration("lm_max_iter and gn_max_iter must be >= 1")
        if self.lm_lambda_init <= 0 or self.lm_xtol <= 0 or self.lm_ftol < 0:
            raise InvalidConfiguration("LM damping and tolerances must be positive")
        if not (self.outlier_theta_max > 0 and self.outlier_delta_max > 0):
            raise InvalidConfiguration("Outlier thresholds must be positive")
        if len(self.saem_n_mcmc_steps) != 3 or min(self.saem_n_mcmc_steps) < 0 or sum(self.saem_n_mcmc_steps) == 0:
            raise InvalidConfiguration(f"saem_n_mcmc_steps must be three non-negative counts, got {self.saem_n_mcmc_steps}")
        if self.saem_n_burn < 0 or self.saem_n_annealing < 0:
            raise InvalidConfiguration("saem_n_burn and saem_n_annealing must be non-negative")
        if not 0.0 < self.saem_annealing_alpha <= 1.0:
            raise InvalidConfiguration(f"saem_annealing_alpha must lie in (0, 1], got {self.saem_annealing_alpha}")
        if self.saem_importance_df <= 0:
            raise InvalidConfiguration("saem_importance_df must be positive")
        if self.n_jobs == 0:
            raise InvalidConfiguration("n_jobs must be non-zero")
        if self.log_every < 1:
            raise InvalidConfiguration("log_every must be >= 1")
        if len(self.transforms) != 2:
            raise InvalidConfiguration("transforms needs one entry for theta and one for delta")

        a, b = self.residual_init
        if self.residual_error is ResidualErrorType.CONSTANT and not a > 0:
            raise InvalidConfiguration("constant residual error needs a > 0")
        if self.residual_error is ResidualErrorType.PROPORTIONAL and not b > 0:
            raise InvalidConfiguration("proportional residual error needs b > 0")
        if self.residual_error is ResidualErrorType.COMBINED and not (a > 0 and b > 0):
            raise InvalidConfiguration("combined residual error needs a > 0 and b > 0")

        omega = self.initial_omega
        if omega.shape != (2, 2) or not np.allclose(omega, omega.T):
            raise InvalidConfiguration("omega_init must be a symmetric 2x2 matrix")
        if np.min(np.linalg.eigvalsh(omega)) <= 0:
            raise InvalidConfiguration("omega_init must be positive definite")

        for value, bounds, tr, name in zip(
            (self.theta_init, self.delta_init),
            (self.theta_bounds, self.delta_bounds),
            self.transforms,
            ("theta_init", "delta_init"),
        ):
            if not bounds[0] <= value <= bounds[1]:
                raise InvalidConfiguration(f"{name}={value} lies outside {bounds}")
            if not tr.in_domain(value):
                raise InvalidConfiguration(f"{name}={value} is outside the {tr.value} transform domain")

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, options: Dict[str, Any]) -> "FitConfig":
        """
        Build a configuration from a plain mapping.

        Unknown keys are rejected so that typos do not silently fall back
        to defaults.

        Example:
            >>> config = FitConfig.from_dict({"k1": 200, "theta_bounds": [0, 4]})
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise InvalidConfiguration(f"Unknown configuration options: {', '.join(unknown)}")
        return cls(**options)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-Python view of the configuration (enums as values)."""
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, tuple):
                value = [v.value if isinstance(v, Enum) else v for v in value]
            out[f.name] = value
        return out
