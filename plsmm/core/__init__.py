"""
Core infrastructure for plsmm.

Shared abstractions used by the mixed-model code:
    result: Generic Result[P] envelope
    exceptions: Exception hierarchy
    validation: Input validators
    compute: Timing utilities
"""

from plsmm.core.result import Result
from plsmm.core.exceptions import (
    PlsmmError,
    ValidationError,
    DimensionError,
    ConfigurationError,
    NumericalError,
    NotPositiveDefiniteError,
)

__all__ = [
    # Result
    "Result",
    # Exceptions
    "PlsmmError",
    "ValidationError",
    "DimensionError",
    "ConfigurationError",
    "NumericalError",
    "NotPositiveDefiniteError",
]
