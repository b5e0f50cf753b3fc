"""
sdfit Errors

Exception taxonomy shared by the individual solver and the population
engine. Recoverable conditions (NonConvergence, SingularJacobian,
NumericDivergence) are caught at the seam that owns the recovery and turned
into status flags and warnings; the rest propagate to the caller.
"""


class SdfitError(Exception):
    """Base class for all sdfit errors."""


class InvalidConfiguration(SdfitError, ValueError):
    """Configuration rejected before any fitting starts."""


class InsufficientData(SdfitError):
    """Not enough observations (LM) or subjects (SAEM) to estimate."""


class NonConvergence(SdfitError):
    """Iteration cap reached without meeting the convergence tolerance."""


class SingularJacobian(SdfitError):
    """Information matrix could not be inverted."""


class NumericDivergence(SdfitError):
    """Covariance update produced a matrix that is not positive definite."""


class EstimationCancelled(SdfitError):
    """SAEM run aborted between iterations on request."""
