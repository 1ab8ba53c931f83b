"""
Penalized Least Squares (PLS) evaluator for Linear Mixed Models.

For fixed θ (and hence fixed Λ_θ), the PLS problem

    minimize ‖W½(y - o - Xβ - Z Λ u)‖² + ‖u‖²

is solved for the spherical random effects u and the fixed effects β, and
σ² is profiled out. What is left is the profiled deviance (ML) or REML
criterion as a function of θ only, which an outer optimizer minimizes.

The evaluator keeps a sparse Cholesky factor L of

    Λ'Z'WZΛ + I  =  (Lambdat ZtW)(Lambdat ZtW)' + I

in an explicit PLSCache. The fill-reducing permutation P is chosen once,
from the structural pattern, on the first call; every call afterwards only
refactors numerically (CHOLMOD via scikit-sparse).

Per call:
    Lambdat.data = thfun(θ)
    L L' = P (Lambdat ZtW ZtW' Lambdat' + I) P'
    cu   = L⁻¹ P Lambdat ZtWy
    RZX  = L⁻¹ P Lambdat ZtWX
    DD   = X'WX - RZX'RZX
    β    = DD⁻¹ (X'Wy - RZX'cu)
    u    = P' L'⁻¹ (cu - RZX β)
    b    = Lambdat' u
    μ    = Zt'b + Xβ + offset
    pwrss = ‖W½(y - μ)‖² + ‖u‖²

    ML:   d(θ) = log|LL'|          + n     [1 + log(2π pwrss / n)]
    REML: d(θ) = log|LL'| + log|DD| + (n-p) [1 + log(2π pwrss / (n-p))]

A PLSEvaluator is not safe for concurrent calls: every call overwrites its
cache. Use one instance per thread.

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), 1-48. Section 3.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np
from numpy.typing import ArrayLike, NDArray
import scipy.linalg as sla
import scipy.sparse as sp
from sksparse.cholmod import CholmodError, analyze_AAt

from plsmm.core.exceptions import (
    ConfigurationError, DimensionError, NotPositiveDefiniteError,
    NumericalError, ValidationError,
)
from plsmm.core.validation import (
    check_1d, check_2d, check_array, check_consistent_length, check_finite,
    check_nonnegative,
)


@dataclass
class PLSCache:
    """Mutable state owned by exactly one PLSEvaluator.

    Attributes:
        Lambdat: Private copy of the relative covariance factor; only its
            data array is written.
        factor: CHOLMOD factor of (Lambdat ZtW)(Lambdat ZtW)' + I, or None
            before the first call.
        cu: Intermediate solution L⁻¹ P Lambdat ZtWy (q,).
        RZX: Intermediate matrix L⁻¹ P Lambdat ZtWX (q, p).
        DD: Downdated X'WX (p, p).
        beta: Conditional estimate of the fixed effects (p,).
        u: Conditional mode of the spherical random effects (q,).
        b: Conditional mode of the random effects (q,).
        mu: Conditional mean of the response (n,).
        pwrss: Penalized weighted residual sum of squares.
        ldL2: log|LL'|.
        ldRX2: log|DD|.
        n_evals: Number of calls, successful or not.
        valid: True when the fields above come from the last call and that
            call succeeded.
    """
    Lambdat: sp.csc_matrix
    factor: Any = None
    cu: NDArray = field(default_factory=lambda: np.empty(0))
    RZX: NDArray = field(default_factory=lambda: np.empty((0, 0)))
    DD: NDArray = field(default_factory=lambda: np.empty((0, 0)))
    beta: NDArray = field(default_factory=lambda: np.empty(0))
    u: NDArray = field(default_factory=lambda: np.empty(0))
    b: NDArray = field(default_factory=lambda: np.empty(0))
    mu: NDArray = field(default_factory=lambda: np.empty(0))
    pwrss: float = np.nan
    ldL2: float = np.nan
    ldRX2: float = np.nan
    n_evals: int = 0
    valid: bool = False


class PLSEvaluator:
    """Profiled deviance / REML criterion as a function of θ.

    Create with pls(). Calling the instance with θ returns the criterion
    and leaves the PLS solution for that θ in the instance's cache, where
    the read-only properties (beta, u, b, mu, ...) expose it.
    """

    def __init__(
        self,
        X: ArrayLike,
        y: ArrayLike,
        Zt: Any,
        Lambdat: Any,
        thfun: Callable[[NDArray], ArrayLike],
        weights: ArrayLike | None = None,
        offset: ArrayLike | None = None,
        reml: bool = True,
    ):
        X, y, Zt, Lambdat, weights, offset = _validate_inputs(
            X, y, Zt, Lambdat, thfun, weights, offset, reml,
        )
        self._X = X
        self._y = y
        self._Zt = Zt
        self._offset = offset
        self._thfun = thfun
        self._reml = bool(reml)
        self._n, self._p = X.shape
        self._q = Zt.shape[0]

        # Weighted products, fixed for the life of the evaluator
        self._sqrtW = np.sqrt(weights)
        WX = X * self._sqrtW[:, np.newaxis]
        Wy = y * self._sqrtW
        self._ZtW = (Zt @ sp.diags(self._sqrtW)).tocsc()
        self._XtWX = WX.T @ WX
        self._XtWy = WX.T @ Wy
        self._ZtWX = np.asarray(self._ZtW @ WX)
        self._ZtWy = np.asarray(self._ZtW @ Wy).ravel()

        self._cache = PLSCache(Lambdat=Lambdat)

        # Every matrix passed to CHOLMOD carries this exact pattern
        self._pattern = self._structural_pattern()
        self._pattern_rows = self._pattern.indices.copy()
        self._pattern_cols = np.repeat(np.arange(self._pattern.shape[1]),
                                       np.diff(self._pattern.indptr))

    # --- Evaluation ---

    def __call__(self, theta: ArrayLike) -> float:
        """Profiled deviance (reml=False) or REML criterion at θ.

        Raises:
            ConfigurationError: If thfun(θ) has the wrong length.
            NumericalError: If thfun(θ) is not finite or a Cholesky
                factorization fails (NotPositiveDefiniteError).
        """
        cache = self._cache
        cache.n_evals += 1
        cache.valid = False

        lx = np.asarray(self._thfun(np.asarray(theta, dtype=np.float64)),
                        dtype=np.float64).ravel()
        if lx.shape[0] != cache.Lambdat.nnz:
            raise ConfigurationError(
                f"thfun returned {lx.shape[0]} values, Lambdat has "
                f"{cache.Lambdat.nnz} structural non-zeros",
                expected=cache.Lambdat.nnz,
                actual=lx.shape[0],
            )
        if not np.all(np.isfinite(lx)):
            raise NumericalError(f"thfun returned non-finite values for theta={theta!r}")

        cache.Lambdat.data[:] = lx
        LZtW = self._pattern.copy()
        prod = (cache.Lambdat @ self._ZtW).tocsr()
        LZtW.data[:] = np.asarray(prod[self._pattern_rows, self._pattern_cols]).ravel()

        if cache.factor is None:
            cache.factor = analyze_AAt(self._pattern)
        L = cache.factor
        try:
            L.cholesky_AAt_inplace(LZtW, beta=1.0)
        except CholmodError as e:
            raise NotPositiveDefiniteError(
                f"Cholesky factorization of Lambdat ZtW W Z Lambda + I failed: {e}",
                matrix_name='Lambdat*ZtW*(Lambdat*ZtW)\' + I',
            ) from e

        # Forward solves (eqns. 30-31 of the lme4 PLS derivation)
        cu = self._solve_forward(cache.Lambdat @ self._ZtWy[:, np.newaxis]).ravel()
        RZX = self._solve_forward(cache.Lambdat @ self._ZtWX)

        # Downdate X'WX and factor the Schur complement
        DD = self._XtWX - RZX.T @ RZX
        try:
            DD_chol = sla.cho_factor(DD, lower=True)
        except sla.LinAlgError as e:
            raise NotPositiveDefiniteError(
                f"Downdated X'WX is not positive definite: {e}",
                matrix_name='DD',
                min_eigenvalue=float(np.linalg.eigvalsh(DD)[0]),
            ) from e
        beta = sla.cho_solve(DD_chol, self._XtWy - RZX.T @ cu)

        u = self._solve_backward((cu - RZX @ beta)[:, np.newaxis]).ravel()
        b = np.asarray(cache.Lambdat.T @ u).ravel()
        mu = np.asarray(self._Zt.T @ b).ravel() + self._X @ beta + self._offset

        wtres = self._sqrtW * (self._y - mu)
        pwrss = float(wtres @ wtres + u @ u)

        ldL2 = float(L.logdet())
        ldRX2 = float(2.0 * np.sum(np.log(np.diag(DD_chol[0]))))

        cache.cu, cache.RZX, cache.DD = cu, RZX, DD
        cache.beta, cache.u, cache.b, cache.mu = beta, u, b, mu
        cache.pwrss, cache.ldL2, cache.ldRX2 = pwrss, ldL2, ldRX2
        cache.valid = True

        fn = float(self.n_eff)
        ld = ldL2 + ldRX2 if self._reml else ldL2
        return float(ld + fn * (1.0 + np.log(2.0 * np.pi * pwrss) - np.log(fn)))

    def _solve_forward(self, B: NDArray) -> NDArray:
        """L⁻¹ P B."""
        L = self._cache.factor
        return np.asarray(L.solve_L(L.apply_P(np.asarray(B)),
                                    use_LDLt_decomposition=False))

    def _solve_backward(self, B: NDArray) -> NDArray:
        """P' L'⁻¹ B."""
        L = self._cache.factor
        return np.asarray(L.apply_Pt(L.solve_Lt(B, use_LDLt_decomposition=False)))

    def _structural_pattern(self) -> sp.csc_matrix:
        """Lambdat ZtW with every structural non-zero present.

        Products of positive values cannot cancel, so the symbolic analysis
        sees the largest pattern any θ can produce.
        """
        pattern = self._cache.Lambdat.copy()
        pattern.data[:] = 1.0
        out = (pattern @ abs(self._ZtW)).tocsc()
        out.sort_indices()
        return out

    # --- Cached state ---

    def _checked(self) -> PLSCache:
        if not self._cache.valid:
            raise RuntimeError(
                "PLSEvaluator state requested before a successful evaluation"
            )
        return self._cache

    @property
    def reml(self) -> bool:
        return self._reml

    @property
    def n(self) -> int:
        return self._n

    @property
    def p(self) -> int:
        return self._p

    @property
    def q(self) -> int:
        return self._q

    @property
    def n_eff(self) -> int:
        """Residual degrees of freedom used by the criterion."""
        return self._n - self._p if self._reml else self._n

    @property
    def n_evals(self) -> int:
        return self._cache.n_evals

    @property
    def beta(self) -> NDArray:
        """Conditional estimate of the fixed effects at the last θ."""
        return self._checked().beta.copy()

    @property
    def u(self) -> NDArray:
        """Conditional mode of the spherical random effects."""
        return self._checked().u.copy()

    @property
    def b(self) -> NDArray:
        """Conditional mode of the random effects, b = Lambdat'u."""
        return self._checked().b.copy()

    @property
    def mu(self) -> NDArray:
        """Conditional mean of the response."""
        return self._checked().mu.copy()

    @property
    def pwrss(self) -> float:
        return self._checked().pwrss

    @property
    def sigma_sq(self) -> float:
        """Profiled residual variance pwrss / n_eff."""
        return self._checked().pwrss / self.n_eff

    @property
    def ldL2(self) -> float:
        return self._checked().ldL2

    @property
    def ldRX2(self) -> float:
        return self._checked().ldRX2

    @property
    def RZX(self) -> NDArray:
        return self._checked().RZX.copy()

    @property
    def DD(self) -> NDArray:
        return self._checked().DD.copy()

    @property
    def Lambdat(self) -> sp.csc_matrix:
        """Copy of the cached Lambdat (values from the last call)."""
        return self._cache.Lambdat.copy()

    @property
    def permutation(self) -> NDArray | None:
        """Fill-reducing permutation of the factor, None before the first call."""
        if self._cache.factor is None:
            return None
        return np.asarray(self._cache.factor.P()).copy()

    def __repr__(self) -> str:
        return (
            f"PLSEvaluator(n={self._n}, p={self._p}, q={self._q}, "
            f"reml={self._reml}, n_evals={self._cache.n_evals})"
        )


def pls(
    X: ArrayLike,
    y: ArrayLike,
    Zt: Any,
    Lambdat: Any,
    thfun: Callable[[NDArray], ArrayLike],
    weights: ArrayLike | None = None,
    offset: ArrayLike | None = None,
    reml: bool = True,
) -> PLSEvaluator:
    """Create a linear mixed model deviance function.

    Args:
        X: Fixed effects model matrix (n, p).
        y: Response (n,).
        Zt: Transposed random effects model matrix (q, n), sparse.
        Lambdat: Upper-triangular transposed relative covariance factor
            (q, q), sparse CSC. Only its numeric values change between
            calls; thfun must produce them in its CSC storage order. Other
            sparse formats are rejected rather than converted.
        thfun: Maps θ to the structural non-zeros of Lambdat, e.g.
            RanefStructure.thfun or ``lambda theta: theta[Lind]``.
        weights: Prior weights (n,), non-negative. Default: ones.
        offset: Offset (n,). Default: zeros.
        reml: If True the evaluator returns the REML criterion, otherwise
            the profiled deviance.

    Returns:
        PLSEvaluator mapping θ to the criterion.

    Raises:
        DimensionError: On any shape mismatch among the inputs.
        ValidationError: On other invalid inputs.

    Examples:
        >>> re = make_ranef_structures(grp, mm_re)
        >>> devfun = pls(X, y, re.Zt, re.Lambdat, re.thfun, reml=False)
        >>> devfun(re.theta)
    """
    return PLSEvaluator(X, y, Zt, Lambdat, thfun,
                        weights=weights, offset=offset, reml=reml)


def _validate_inputs(X, y, Zt, Lambdat, thfun, weights, offset, reml):
    """Check shapes and values; return arrays in the forms the evaluator uses."""
    y = check_array(y, 'y')
    if y.ndim == 2 and y.shape[1] == 1:
        y = y.ravel()
    check_1d(y, 'y')
    check_finite(y, 'y')
    n = y.shape[0]

    X = check_array(X, 'X')
    check_2d(X, 'X')
    check_finite(X, 'X')
    if X.shape[0] != n:
        raise DimensionError(f"X has {X.shape[0]} rows, expected {n} (matching y)")
    p = X.shape[1]

    if not sp.issparse(Zt):
        Zt = check_array(Zt, 'Zt')
        check_2d(Zt, 'Zt')
    Zt = sp.csc_matrix(Zt, dtype=np.float64)
    if Zt.shape[1] != n:
        raise DimensionError(f"Zt has {Zt.shape[1]} columns, expected {n} (matching y)")
    q = Zt.shape[0]

    if not sp.issparse(Lambdat):
        raise ValidationError(
            f"Lambdat: expected a scipy.sparse matrix, got {type(Lambdat).__name__}"
        )
    if Lambdat.shape != (q, q):
        raise DimensionError(f"Lambdat has shape {Lambdat.shape}, expected ({q}, {q})")
    # thfun fills Lambdat.data in CSC order; a format conversion would reorder it
    if Lambdat.format != 'csc':
        raise ValidationError(
            f"Lambdat: expected CSC format, got {Lambdat.format!r}"
        )
    Lambdat = sp.csc_matrix(Lambdat, dtype=np.float64, copy=True)
    if sp.tril(Lambdat, k=-1).nnz > 0:
        raise ValidationError("Lambdat: structural non-zeros below the diagonal")

    if not callable(thfun):
        raise ValidationError(f"thfun: expected a callable, got {type(thfun).__name__}")

    if weights is None:
        weights = np.ones(n)
    else:
        weights = check_array(weights, 'weights').ravel()
        check_consistent_length(y, weights, names=('y', 'weights'))
        check_finite(weights, 'weights')
        check_nonnegative(weights, 'weights')

    if offset is None:
        offset = np.zeros(n)
    else:
        offset = check_array(offset, 'offset').ravel()
        check_consistent_length(y, offset, names=('y', 'offset'))
        check_finite(offset, 'offset')

    if reml and n <= p:
        raise ValidationError(f"REML needs more observations than fixed effects (n={n}, p={p})")

    return X, y, Zt, Lambdat, weights, offset
