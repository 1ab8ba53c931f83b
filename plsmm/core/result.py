"""
Generic result container for plsmm computations.

Design decisions:
    - Generic over parameter payload P
    - info dict for flexible metadata (converged, evaluations, optimizer)
    - timing is optional (don't burden unit tests)
    - Immutable (frozen=True) for reproducibility
"""

from dataclasses import dataclass, field
from typing import TypeVar, Generic, Any

P = TypeVar('P')  # Parameter payload type


@dataclass(frozen=True)
class Result(Generic[P]):
    """
    Immutable result envelope for a fitted model.

    Attributes:
        params: Domain-specific parameters (theta, beta, modes, ...)
        info: Structured metadata (method, convergence, diagnostics)
        timing: Execution timing breakdown, or None if not measured
        backend_name: Identifier of the code path that produced this result
        warnings: Non-fatal issues encountered during computation

    Examples:
        >>> Result(
        ...     params=LMMParams(...),
        ...     info={'method': 'REML', 'converged': True, 'n_evals': 212},
        ...     timing={'total_seconds': 0.4, 'optimization': 0.38},
        ...     backend_name='cholmod_pls'
        ... )
    """
    params: P
    info: dict[str, Any]
    timing: dict[str, float] | None
    backend_name: str
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def has_warning(self, substring: str) -> bool:
        """Check if any warning contains the given substring."""
        return any(substring in w for w in self.warnings)
