"""
plsmm: linear mixed models via penalized least squares.

Computes the profiled deviance or REML criterion of a linear mixed model as
a function of its covariance parameters, using a sparse random-effects
design and a sparse Cholesky factorization that is refactored, not
re-analyzed, on every evaluation.

Submodules:
    core: Result envelope, exceptions, validation, timing
    mixed: Random-effects structures, PLS evaluator, fitting drivers
"""

__version__ = "0.1.0"

from plsmm import core
from plsmm import mixed

__all__ = [
    "__version__",
    "core",
    "mixed",
]
