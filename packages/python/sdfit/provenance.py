"""
Reproducibility fingerprints via SHA-256 hashing.
"""

import hashlib
import json
from typing import Any, Dict

import numpy as np

from .estimation.types import PopulationModel


def compute_content_hash(content: str) -> str:
    """
    Compute SHA-256 hash of a string.

    Example:
        >>> len(compute_content_hash("test data"))
        64
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _canonical(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return [_canonical(v) for v in value.tolist()]
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if hasattr(value, "value") and isinstance(value.value, str):
        return value.value
    if isinstance(value, (float, np.floating)):
        # repr round-trips exactly; NaN and inf are not valid JSON numbers
        return repr(float(value))
    if isinstance(value, np.integer):
        return int(value)
    return value


def population_payload(population: PopulationModel) -> Dict[str, Any]:
    """Plain, JSON-serialisable view of a population model."""
    return _canonical({
        "theta_mean": population.theta_mean,
        "delta_mean": population.delta_mean,
        "mu_phi": population.mu_phi,
        "covariance": population.covariance,
        "residual_error": population.residual_error.to_dict(),
        "log_likelihood_linearized": population.log_likelihood_linearized,
        "log_likelihood_importance_sampling": population.log_likelihood_importance_sampling,
        "se_fixed": population.se_fixed,
        "se_covariance": population.se_covariance,
        "se_residual": population.se_residual,
        "transforms": population.transforms,
        "omega_structure": population.omega_structure,
        "n_subjects": population.n_subjects,
        "n_observations": population.n_observations,
    })


def population_fingerprint(population: PopulationModel) -> str:
    """
    SHA-256 of the canonical JSON form of a population model.

    Two runs with identical data, configuration and seed yield the same
    fingerprint.

    Example:
        >>> population_fingerprint(result_a.population) == population_fingerprint(result_b.population)
        True
    """
    payload = json.dumps(population_payload(population), sort_keys=True, separators=(",", ":"))
    return compute_content_hash(payload)
