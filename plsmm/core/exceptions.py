"""
Exception hierarchy for plsmm.

All exceptions inherit from PlsmmError so callers can catch any
library-specific failure in one place.

    PlsmmError
    ├── ValidationError          bad inputs, detected before any factorization
    │   └── DimensionError       inconsistent shapes
    ├── ConfigurationError       malformed parameter-mapping function
    └── NumericalError           factorization failures for a given theta
        └── NotPositiveDefiniteError

Validation errors are fatal to construction. Numerical errors describe a
region of the parameter space, not a caller bug, and an optimizer may route
around them.
"""


class PlsmmError(Exception):
    """Base exception for all plsmm errors."""
    pass


class ValidationError(PlsmmError):
    """
    Input validation failed.

    Raised when user-provided inputs fail validation checks.
    """
    pass


class DimensionError(ValidationError):
    """
    Array dimensions are incorrect or inconsistent.

    Raised when array shapes don't match expected dimensions or
    when multiple arrays have inconsistent shapes.
    """
    pass


class ConfigurationError(PlsmmError):
    """
    The parameter-mapping function produced unusable output.

    Raised on use, when thfun(theta) does not return one value per
    structural non-zero of Lambdat.

    Attributes:
        expected: Number of values required
        actual: Number of values produced
    """

    def __init__(
        self,
        message: str,
        expected: int | None = None,
        actual: int | None = None,
    ):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class NumericalError(PlsmmError):
    """
    Numerical computation failed.

    Base class for errors arising from numerical issues during computation.
    """
    pass


class NotPositiveDefiniteError(NumericalError):
    """
    Matrix is not positive definite.

    Raised when a Cholesky factorization (sparse or dense) fails.

    Attributes:
        matrix_name: Name/description of the problematic matrix
        min_eigenvalue: Minimum eigenvalue, if computed
    """

    def __init__(
        self,
        message: str,
        matrix_name: str | None = None,
        min_eigenvalue: float | None = None,
    ):
        super().__init__(message)
        self.matrix_name = matrix_name
        self.min_eigenvalue = min_eigenvalue
