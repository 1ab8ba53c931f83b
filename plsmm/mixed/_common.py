"""
Common data types for fitted linear mixed models.

Contains the frozen parameter payload that goes inside the Result[P]
envelope. The payload is a pure data container: no computation.
"""

from dataclasses import dataclass

from numpy.typing import NDArray

from plsmm.mixed._random_effects import RanefStructure


@dataclass(frozen=True)
class VarCompSummary:
    """Variance component summary for one column of one random-effects term.

    Attributes:
        group: Name of the term's grouping factor.
        name: Column name within the term.
        variance: Estimated variance of this random effect.
        std_dev: Standard deviation (sqrt of variance).
        corr: Correlation with the first column of the same term,
              or None for the first (or only) column.
    """
    group: str
    name: str
    variance: float
    std_dev: float
    corr: float | None = None


@dataclass(frozen=True)
class LMMParams:
    """
    Parameter payload for a fitted linear mixed model.
    """
    # Covariance parameters
    theta: NDArray                     # θ̂ (m,)
    var_components: tuple[VarCompSummary, ...]
    residual_variance: float           # σ² = pwrss / n_eff
    residual_std: float

    # Fixed effects
    coefficients: NDArray              # β̂ (p,)

    # Conditional modes
    u: NDArray                         # spherical random effects (q,)
    b: NDArray                         # b = Lambdat'u (q,)
    random_effects: tuple[NDArray, ...]  # per term, (n_levels, n_columns)

    # Predictions
    fitted_values: NDArray             # μ̂ = Zt'b + Xβ + offset (n,)
    residuals: NDArray                 # y - μ̂ (n,)

    # Model fit
    criterion: float                   # profiled deviance or REML criterion
    pwrss: float
    log_likelihood: float
    aic: float
    bic: float
    reml: bool
    n_obs: int

    # Convergence
    converged: bool
    n_evals: int
    n_failed_evals: int

    # Structure the model was fit with
    structure: RanefStructure
    group_names: tuple[str, ...]
