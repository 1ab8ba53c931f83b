"""
Random-effects structures: sparse Zt, the relative covariance factor
Lambdat, and the mapping from θ to Lambdat's structural non-zeros.

This module handles:
1. Building one term's section of the transposed random-effects design
   matrix Zt from a grouping factor and a dense model matrix
2. Building one term's diagonal block of Lambdat together with its starting
   θ, lower bounds and the index array Lind
3. Stacking the per-term pieces into a single RanefStructure

Layout conventions (used consistently by Zt, Lambdat and θ):
    - Within a term, rows of Zt are level-major: row l*nc + j holds column j
      of the term's model matrix for level l.
    - Lambdat's term block is the nc × nc upper-triangular template T
      replicated nl times along the diagonal.
    - θ for a term lists T's upper triangle column by column:
      T[0,0], T[0,1], T[1,1], T[0,2], ... which is also the CSC storage
      order of the template, so Lambdat.data == θ[Lind].

Since Lambdat = Λ', the relative covariance of the random effects for one
level of a term is T'T.

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), Section 2.3.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray
import scipy.linalg as sla
import scipy.sparse as sp

from plsmm.core.exceptions import (
    DimensionError, NotPositiveDefiniteError, ValidationError,
)
from plsmm.core.validation import (
    check_1d, check_2d, check_array, check_finite,
)


@dataclass(frozen=True)
class LambdatBlock:
    """Diagonal block of Lambdat for one random-effects term.

    Attributes:
        theta: Starting values for this term's θ segment.
        lower: Lower bounds for the segment (0 for template-diagonal
            entries, -inf otherwise).
        Lambdat: The block, CSC, structural zeros stored explicitly.
        Lind: For each entry of Lambdat.data, the index of the θ entry
            that fills it.
        scale: Optional fixed multiplier per structural non-zero
            (used by the correlated-level structure), or None.
    """
    theta: NDArray
    lower: NDArray
    Lambdat: sp.csc_matrix
    Lind: NDArray
    scale: NDArray | None = None

    @property
    def n_theta(self) -> int:
        return len(self.theta)

    def update_lambdatx(self, theta: ArrayLike) -> NDArray:
        """Map a θ segment onto the structural non-zeros of this block."""
        values = np.asarray(theta, dtype=np.float64)[self.Lind]
        if self.scale is not None:
            values = values * self.scale
        return values


@dataclass(frozen=True)
class TermInfo:
    """Bookkeeping for one random-effects term.

    Attributes:
        levels: Levels of the grouping factor, in Zt row order.
        n_columns: Columns of the term's model matrix (nc).
        block: The term's LambdatBlock.
    """
    levels: tuple
    n_columns: int
    block: LambdatBlock

    @property
    def n_levels(self) -> int:
        return len(self.levels)

    @property
    def theta_size(self) -> int:
        return self.block.n_theta

    @property
    def n_ranef(self) -> int:
        return self.n_levels * self.n_columns


@dataclass(frozen=True)
class RanefStructure:
    """Everything needed to set up the PLS evaluator and the optimizer.

    Attributes:
        Zt: Transposed random-effects design matrix, q × n, CSC.
        Lambdat: Relative covariance factor at the starting θ, q × q, CSC.
        theta: Starting values of the covariance parameters (m,).
        lower: Lower bounds on θ (m,).
        upper: Upper bounds on θ (m,), all +inf.
        Lind: θ index for every structural non-zero of Lambdat.
        terms: Per-term bookkeeping, in stacking order.
    """
    Zt: sp.csc_matrix
    Lambdat: sp.csc_matrix
    theta: NDArray
    lower: NDArray
    upper: NDArray
    Lind: NDArray
    terms: tuple[TermInfo, ...]

    @property
    def bounds(self) -> list[tuple[float | None, float | None]]:
        """Bounds in the (low, high) pair form scipy.optimize expects."""
        return [
            (None if np.isinf(lo) else float(lo), None if np.isinf(hi) else float(hi))
            for lo, hi in zip(self.lower, self.upper)
        ]

    def thfun(self, theta: ArrayLike) -> NDArray:
        """Map θ onto the structural non-zeros of Lambdat.

        θ is split into per-term segments using the parameter counts
        recorded at assembly time, and each term's block mapping is applied
        to its segment. The concatenation follows the stacking order of Zt
        and Lambdat.
        """
        theta = np.asarray(theta, dtype=np.float64).ravel()
        if theta.shape[0] != len(self.theta):
            raise DimensionError(
                f"theta has {theta.shape[0]} elements, expected {len(self.theta)}"
            )
        sizes = [t.theta_size for t in self.terms]
        segments = np.split(theta, np.cumsum(sizes)[:-1])
        return np.concatenate([
            term.block.update_lambdatx(seg)
            for term, seg in zip(self.terms, segments)
        ])

    def lambdat_at(self, theta: ArrayLike) -> sp.csc_matrix:
        """Copy of Lambdat with its values filled in from θ."""
        out = self.Lambdat.copy()
        out.data[:] = self.thfun(theta)
        return out


# =====================================================================
# Grouping factors
# =====================================================================

def factor_codes(
    grp: ArrayLike,
    levels: Sequence | None = None,
) -> tuple[NDArray, tuple]:
    """Encode a grouping factor as 0-indexed level codes.

    Args:
        grp: Labels of length n (any hashable, comparable values).
        levels: Optional explicit level order. Defaults to the sorted
            unique labels; levels that never occur are kept.

    Returns:
        (codes, levels) with codes of shape (n,).

    Raises:
        DimensionError: If grp is not 1-D.
        ValidationError: If a label is not among the supplied levels.
    """
    grp = np.asarray(grp)
    if grp.ndim != 1:
        raise DimensionError(
            f"grp: expected 1D array, got {grp.ndim}D with shape {grp.shape}"
        )

    if levels is None:
        uniq, codes = np.unique(grp, return_inverse=True)
        return codes.astype(np.intp).ravel(), tuple(uniq.tolist())

    levels = tuple(levels)
    lookup = {lev: k for k, lev in enumerate(levels)}
    if len(lookup) != len(levels):
        raise ValidationError("levels: contains duplicated labels")
    try:
        codes = np.fromiter(
            (lookup[g] for g in grp.tolist()), dtype=np.intp, count=grp.shape[0]
        )
    except KeyError as e:
        raise ValidationError(
            f"grp: label {e.args[0]!r} is not one of the {len(levels)} supplied levels"
        ) from e
    return codes, levels


# =====================================================================
# Term structure builder
# =====================================================================

def z_section(
    grp: ArrayLike,
    mm: ArrayLike,
    levels: Sequence | None = None,
) -> sp.csc_matrix:
    """Section of Zt for a single random-effects term.

    The transposed indicator matrix Jt (nl × n) of the grouping factor is
    combined with mm' (nc × n) by a column-wise Khatri-Rao product: column i
    of the result is kron(Jt[:, i], mm[i, :]). Entry (l*nc + j, i) therefore
    equals mm[i, j] if observation i is in level l and 0 otherwise.

    Args:
        grp: Grouping factor of length n.
        mm: Dense model matrix for the term, (n, nc). A 1-D array is
            treated as a single column.
        levels: Optional explicit level order (see factor_codes).

    Returns:
        Sparse (nl*nc, n) CSC matrix with nc stored entries per column.

    Raises:
        DimensionError: If len(grp) != number of rows of mm.

    Examples:
        >>> mm = np.column_stack([np.ones(6), np.arange(1, 7)])
        >>> z_section(list('abcabc'), mm).toarray()
        array([[1., 0., 0., 1., 0., 0.],
               [1., 0., 0., 4., 0., 0.],
               [0., 1., 0., 0., 1., 0.],
               [0., 2., 0., 0., 5., 0.],
               [0., 0., 1., 0., 0., 1.],
               [0., 0., 3., 0., 0., 6.]])
    """
    mm = check_array(mm, 'mm')
    if mm.ndim == 1:
        mm = mm.reshape(-1, 1)
    check_2d(mm, 'mm')
    check_finite(mm, 'mm')

    grp = np.asarray(grp)
    if grp.ndim == 1 and grp.shape[0] != mm.shape[0]:
        raise DimensionError(
            f"grp has {grp.shape[0]} elements but mm has {mm.shape[0]} rows"
        )
    codes, levels = factor_codes(grp, levels)

    n, nc = mm.shape
    nl = len(levels)

    indptr = np.arange(0, n * nc + 1, nc, dtype=np.intp)
    indices = (codes[:, np.newaxis] * nc + np.arange(nc)).ravel()
    data = np.ascontiguousarray(mm, dtype=np.float64).ravel()

    return sp.csc_matrix((data, indices, indptr), shape=(nl * nc, n))


# =====================================================================
# Covariance block builder
# =====================================================================

def block_lambdat(nl: int, nc: int) -> LambdatBlock:
    """Diagonal block of Lambdat for a term with nl levels and nc columns.

    For nc == 1 the block is the nl × nl identity driven by a single
    parameter. Otherwise the nc × nc upper-triangular template (identity at
    the start) is replicated nl times and every replicate reads the same
    nc(nc+1)/2 parameters.

    Examples:
        >>> blk = block_lambdat(3, 1)
        >>> blk.Lambdat.toarray()
        array([[1., 0., 0.],
               [0., 1., 0.],
               [0., 0., 1.]])
        >>> blk.lower
        array([0.])
        >>> blk.update_lambdatx([5.0])
        array([5., 5., 5.])
    """
    nl = int(nl)
    nc = int(nc)
    if nl < 1 or nc < 1:
        raise ValidationError(f"block_lambdat: need nl >= 1 and nc >= 1, got nl={nl}, nc={nc}")

    if nc == 1:
        return LambdatBlock(
            theta=np.ones(1),
            lower=np.zeros(1),
            Lambdat=sp.identity(nl, dtype=np.float64, format='csc'),
            Lind=np.zeros(nl, dtype=np.intp),
        )

    # Upper triangle of the template, column by column: (i, j) with i <= j
    j, i = np.tril_indices(nc)
    m = len(i)
    theta = (i == j).astype(np.float64)
    lower = np.where(i == j, 0.0, -np.inf)

    # Template column j holds rows 0..j
    tmpl_indptr = np.cumsum(np.arange(1, nc + 1))
    reps = np.arange(nl)[:, np.newaxis]
    indices = (i[np.newaxis, :] + nc * reps).ravel().astype(np.intp)
    indptr = np.concatenate([[0], (tmpl_indptr[np.newaxis, :] + m * reps).ravel()])
    Lind = np.tile(np.arange(m, dtype=np.intp), nl)

    Lambdat = sp.csc_matrix(
        (theta[Lind], indices, indptr.astype(np.intp)),
        shape=(nl * nc, nl * nc),
    )
    return LambdatBlock(theta=theta, lower=lower, Lambdat=Lambdat, Lind=Lind)


def template_factor(theta: ArrayLike, nc: int) -> NDArray:
    """Dense nc × nc upper-triangular template T from a term's θ segment."""
    theta = np.asarray(theta, dtype=np.float64)
    T = np.zeros((nc, nc), dtype=np.float64)
    j, i = np.tril_indices(nc)
    T[i, j] = theta
    return T


# =====================================================================
# Assemblers
# =====================================================================

def _block_diag_csc(blocks: Sequence[sp.csc_matrix]) -> sp.csc_matrix:
    """Block-diagonal stack of CSC matrices that keeps explicit zeros.

    The result's data array is the concatenation of the blocks' data
    arrays, so per-block Lind arrays line up after offsetting.
    """
    data, indices, indptr = [], [], [np.zeros(1, dtype=np.intp)]
    row_off = 0
    nnz_off = 0
    for B in blocks:
        B = sp.csc_matrix(B)
        B.sort_indices()
        data.append(B.data)
        indices.append(B.indices.astype(np.intp) + row_off)
        indptr.append(B.indptr[1:].astype(np.intp) + nnz_off)
        row_off += B.shape[0]
        nnz_off += B.nnz
    return sp.csc_matrix(
        (np.concatenate(data), np.concatenate(indices), np.concatenate(indptr)),
        shape=(row_off, row_off),
    )


def make_ranef_structures(
    grps: ArrayLike | Sequence[ArrayLike],
    mms: ArrayLike | Sequence[ArrayLike],
) -> RanefStructure:
    """Random-effects representation for a set of terms.

    z_section and block_lambdat are called once per term. The Zt sections
    are stacked vertically, the Lambdat blocks block-diagonally, in term
    order. When every term has a single column a diagonal Lambdat is built
    directly.

    Args:
        grps: Grouping factor per term, or a single grouping factor.
        mms: Model matrix per term, or a single model matrix.

    Returns:
        RanefStructure.

    Raises:
        ValidationError: If the numbers of factors and matrices differ or
            no term is given.
        DimensionError: If terms disagree on the number of observations.
    """
    grps, mms = _as_term_lists(grps, mms)

    sections = []
    infos = []
    for k, (g, mm) in enumerate(zip(grps, mms)):
        mm = check_array(mm, f'mms[{k}]')
        if mm.ndim == 1:
            mm = mm.reshape(-1, 1)
        _, levels = factor_codes(g)
        sections.append(z_section(g, mm, levels))
        nc = mm.shape[1]
        infos.append(TermInfo(
            levels=levels,
            n_columns=nc,
            block=block_lambdat(len(levels), nc),
        ))

    n_obs = {s.shape[1] for s in sections}
    if len(n_obs) > 1:
        raise DimensionError(
            f"Random-effects terms disagree on the number of observations: {sorted(n_obs)}"
        )

    Zt = sp.vstack(sections, format='csc')

    if all(t.n_columns == 1 for t in infos):
        q = sum(t.n_levels for t in infos)
        Lambdat = sp.identity(q, dtype=np.float64, format='csc')
        Lind = np.repeat(np.arange(len(infos), dtype=np.intp),
                         [t.n_levels for t in infos])
    else:
        Lambdat = _block_diag_csc([t.block.Lambdat for t in infos])
        offsets = np.cumsum([0] + [t.theta_size for t in infos[:-1]])
        Lind = np.concatenate([t.block.Lind + off for t, off in zip(infos, offsets)])

    theta = np.concatenate([t.block.theta for t in infos])
    lower = np.concatenate([t.block.lower for t in infos])

    return RanefStructure(
        Zt=Zt,
        Lambdat=Lambdat,
        theta=theta,
        lower=lower,
        upper=np.full(len(theta), np.inf),
        Lind=Lind,
        terms=tuple(infos),
    )


def make_corr_ranef_structures(
    corr: ArrayLike,
    grp: ArrayLike,
    levels: Sequence | None = None,
) -> RanefStructure:
    """Structure for one scalar random effect with correlated levels.

    The levels of the random effect have a known correlation matrix
    corr = R'R (R upper triangular). With Λ = θ R' the covariance of the
    random effects is σ²θ² corr, so Lambdat = θ R and its structural
    non-zeros are the non-zeros of R scaled by the single parameter θ.

    Args:
        corr: Correlation (or any SPD template) matrix, nl × nl, rows in
            level order.
        grp: Grouping factor of length n.
        levels: Level labels for the rows of corr. Defaults to the sorted
            unique labels of grp.

    Raises:
        DimensionError: If corr is not square or does not match the
            number of levels.
        NotPositiveDefiniteError: If corr has no Cholesky factor.
    """
    corr = check_array(corr, 'corr')
    check_2d(corr, 'corr')
    check_finite(corr, 'corr')
    if corr.shape[0] != corr.shape[1]:
        raise DimensionError(f"corr: expected a square matrix, got shape {corr.shape}")

    grp = np.asarray(grp)
    check_1d(grp, 'grp')
    _, levels = factor_codes(grp, levels)
    nl = len(levels)
    if corr.shape[0] != nl:
        raise DimensionError(
            f"corr is {corr.shape[0]} x {corr.shape[1]} but the grouping factor has {nl} levels"
        )

    try:
        R = sla.cholesky(corr, lower=False)
    except sla.LinAlgError as e:
        raise NotPositiveDefiniteError(
            f"corr is not positive definite: {e}", matrix_name='corr',
            min_eigenvalue=float(np.linalg.eigvalsh(corr)[0]),
        ) from e

    Rt = sp.csc_matrix(np.triu(R))
    Rt.sort_indices()
    block = LambdatBlock(
        theta=np.ones(1),
        lower=np.zeros(1),
        Lambdat=Rt.copy(),
        Lind=np.zeros(Rt.nnz, dtype=np.intp),
        scale=Rt.data.copy(),
    )
    Zt = z_section(grp, np.ones(grp.shape[0]), levels)

    return RanefStructure(
        Zt=Zt,
        Lambdat=Rt,
        theta=block.theta.copy(),
        lower=block.lower.copy(),
        upper=np.full(1, np.inf),
        Lind=block.Lind.copy(),
        terms=(TermInfo(levels=levels, n_columns=1, block=block),),
    )


def _as_term_lists(grps, mms) -> tuple[list, list]:
    """Normalize (grps, mms) into two equally long lists of terms."""
    # A list of label arrays is a list of terms; a flat list of labels is one term
    if isinstance(grps, (list, tuple)) and all(np.ndim(g) == 1 for g in grps):
        grps = list(grps)
        mms = list(mms) if isinstance(mms, (list, tuple)) else [mms]
    else:
        grps = [grps]
        mms = [mms]

    if len(grps) == 0:
        raise ValidationError("At least one random-effects term required")
    if len(grps) != len(mms):
        raise ValidationError(
            f"Got {len(grps)} grouping factor(s) but {len(mms)} model matrices"
        )
    return grps, mms
