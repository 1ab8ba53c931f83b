"""
Fitting drivers for linear mixed models.

Public API:
    lmer_fit()     : fit from raw matrices, vectors and grouping factors
    lmer_corr_fit(): fit a single scalar random effect whose levels have a
                     known correlation matrix

Both build the random-effects structures, create the PLS evaluator and
minimize it over θ with scipy.optimize.minimize under the structures'
lower bounds. The only output of the optimization is θ̂; everything else is
read from the evaluator after a final evaluation at θ̂.
"""

from __future__ import annotations

import warnings
from typing import Sequence

import numpy as np
from numpy.typing import ArrayLike
from scipy.optimize import minimize

from plsmm.core.compute.timing import Timer
from plsmm.core.exceptions import NumericalError, ValidationError
from plsmm.core.result import Result
from plsmm.mixed._common import LMMParams, VarCompSummary
from plsmm.mixed._pls import PLSEvaluator, pls
from plsmm.mixed._random_effects import (
    RanefStructure, make_corr_ranef_structures, make_ranef_structures,
    template_factor,
)
from plsmm.mixed.solution import LMMSolution


# Optimizer options by scipy method, as functions of (tol, max_evals)
_OPTIONS = {
    'Powell': lambda tol, k: {'xtol': tol, 'ftol': tol, 'maxfev': k},
    'Nelder-Mead': lambda tol, k: {'xatol': tol, 'fatol': tol, 'maxfev': k},
    'L-BFGS-B': lambda tol, k: {'ftol': tol, 'gtol': tol * 10, 'maxfun': k},
    'TNC': lambda tol, k: {'ftol': tol, 'xtol': tol, 'maxfun': k},
}


def lmer_fit(
    y: ArrayLike,
    X: ArrayLike,
    mm_re: ArrayLike | Sequence[ArrayLike],
    grp: ArrayLike | Sequence[ArrayLike],
    *,
    weights: ArrayLike | None = None,
    offset: ArrayLike | None = None,
    reml: bool = True,
    method: str = 'Powell',
    tol: float = 1e-8,
    max_evals: int = 10000,
    group_names: Sequence[str] | None = None,
) -> LMMSolution:
    """Fit a linear mixed model from raw matrices and grouping factors.

    Args:
        y: Response vector (n,).
        X: Fixed effects model matrix (n, p), including an intercept column
            if one is wanted.
        mm_re: Model matrix of a random-effects term (n, nc), or a list of
            such matrices, one per term.
        grp: Grouping factor of a term (n,), or a list of them matching
            mm_re.
        weights: Prior weights (n,). Default: ones.
        offset: Offset (n,). Default: zeros.
        reml: If True (default) minimize the REML criterion, otherwise the
            profiled deviance.
        method: Bounded scipy.optimize.minimize method. The default
            'Powell' is derivative-free.
        tol: Convergence tolerance passed to the optimizer.
        max_evals: Maximum number of criterion evaluations.
        group_names: Optional names of the grouping factors, for summaries.

    Returns:
        LMMSolution.

    Examples:
        >>> rng = np.random.default_rng(1)
        >>> n = 1000
        >>> X = np.column_stack([np.ones(n), rng.standard_normal(n)])
        >>> ZZ = np.column_stack([np.ones(n), rng.standard_normal(n)])
        >>> grp = np.repeat(np.arange(n // 5), 5)
        >>> re = make_ranef_structures(grp, ZZ)
        >>> y = X @ rng.standard_normal(2) + re.Zt.T @ rng.standard_normal(re.Zt.shape[0]) \\
        ...     + rng.standard_normal(n)
        >>> fit = lmer_fit(y, X, ZZ, grp)
        >>> fit.theta
    """
    timer = Timer()
    timer.start()

    with timer.section('setup'):
        structure = make_ranef_structures(grp, mm_re)
        devfun = pls(X, y, structure.Zt, structure.Lambdat, structure.thfun,
                     weights=weights, offset=offset, reml=reml)

    return _fit(devfun, structure, y, timer, method=method, tol=tol,
                max_evals=max_evals, group_names=group_names)


def lmer_corr_fit(
    y: ArrayLike,
    X: ArrayLike,
    corr: ArrayLike,
    grp: ArrayLike,
    *,
    levels: Sequence | None = None,
    weights: ArrayLike | None = None,
    offset: ArrayLike | None = None,
    reml: bool = True,
    method: str = 'Powell',
    tol: float = 1e-8,
    max_evals: int = 10000,
    group_name: str = 'grp',
) -> LMMSolution:
    """Fit a scalar random effect whose levels have a known correlation.

    The random effects for the levels of grp are modelled as
    b ~ N(0, σ²θ² corr), with a single covariance parameter θ.

    Args:
        y: Response vector (n,).
        X: Fixed effects model matrix (n, p).
        corr: Correlation matrix of the levels (nl, nl).
        grp: Grouping factor (n,).
        levels: Labels of corr's rows. Defaults to the sorted unique labels
            of grp.
        weights, offset, reml, method, tol, max_evals: As for lmer_fit.
        group_name: Name of the grouping factor, for summaries.

    Returns:
        LMMSolution.
    """
    timer = Timer()
    timer.start()

    with timer.section('setup'):
        structure = make_corr_ranef_structures(corr, grp, levels)
        devfun = pls(X, y, structure.Zt, structure.Lambdat, structure.thfun,
                     weights=weights, offset=offset, reml=reml)

    return _fit(devfun, structure, y, timer, method=method, tol=tol,
                max_evals=max_evals, group_names=(group_name,))


# =====================================================================
# Helpers
# =====================================================================

def _fit(
    devfun: PLSEvaluator,
    structure: RanefStructure,
    y: ArrayLike,
    timer: Timer,
    *,
    method: str,
    tol: float,
    max_evals: int,
    group_names: Sequence[str] | None,
) -> LMMSolution:
    """Minimize devfun over θ and wrap the final state in an LMMSolution."""
    if method not in _OPTIONS:
        raise ValidationError(
            f"method: expected one of {sorted(_OPTIONS)}, got {method!r}"
        )
    if group_names is None:
        group_names = tuple(f'grp{k + 1}' for k in range(len(structure.terms)))
    group_names = tuple(group_names)
    if len(group_names) != len(structure.terms):
        raise ValidationError(
            f"group_names: got {len(group_names)} names for {len(structure.terms)} terms"
        )

    failures: list[str] = []

    def objective(theta):
        try:
            return devfun(theta)
        except NumericalError as e:
            # Let the optimizer route around this region
            failures.append(str(e))
            return np.inf

    with timer.section('optimization'):
        opt = minimize(
            objective,
            structure.theta,
            method=method,
            bounds=structure.bounds,
            options=_OPTIONS[method](tol, max_evals),
        )

    converged = bool(opt.success)
    theta_hat = np.asarray(opt.x, dtype=np.float64)
    if not converged:
        warnings.warn(
            f"LMM optimizer did not converge after {devfun.n_evals} evaluations. "
            f"Message: {opt.message}",
            RuntimeWarning,
            stacklevel=3,
        )

    # Final evaluation so the evaluator's state corresponds to θ̂
    with timer.section('final_solve'):
        n_evals = devfun.n_evals
        criterion = devfun(theta_hat)

    with timer.section('variance_components'):
        sigma_sq = devfun.sigma_sq
        var_comps = _extract_var_components(theta_hat, sigma_sq, structure, group_names)
        ranef = _extract_modes(devfun.b, structure)

    ll, aic, bic = _compute_fit_stats(criterion, devfun.p, len(theta_hat), devfun.n)

    timer.stop()

    mu = devfun.mu
    params = LMMParams(
        theta=theta_hat,
        var_components=tuple(var_comps),
        residual_variance=sigma_sq,
        residual_std=float(np.sqrt(sigma_sq)),
        coefficients=devfun.beta,
        u=devfun.u,
        b=devfun.b,
        random_effects=ranef,
        fitted_values=mu,
        residuals=np.asarray(y, dtype=np.float64).ravel() - mu,
        criterion=criterion,
        pwrss=devfun.pwrss,
        log_likelihood=ll,
        aic=aic,
        bic=bic,
        reml=devfun.reml,
        n_obs=devfun.n,
        converged=converged,
        n_evals=n_evals,
        n_failed_evals=len(failures),
        structure=structure,
        group_names=group_names,
    )

    warn_list = []
    if not converged:
        warn_list.append(f"Optimizer did not converge: {opt.message}")
    if failures:
        warn_list.append(
            f"{len(failures)} evaluation(s) failed numerically; first: {failures[0]}"
        )

    result = Result(
        params=params,
        info={
            'method': 'REML' if devfun.reml else 'ML',
            'optimizer': method,
            'converged': converged,
            'n_evals': n_evals,
            'n_iter': int(getattr(opt, 'nit', 0)),
            'message': str(opt.message),
            'criterion': criterion,
        },
        timing=timer.result(),
        backend_name='cholmod_pls',
        warnings=tuple(warn_list),
    )

    return LMMSolution(_result=result)


def _extract_var_components(
    theta: np.ndarray,
    sigma_sq: float,
    structure: RanefStructure,
    group_names: tuple[str, ...],
) -> list[VarCompSummary]:
    """Variance component summaries from θ and σ².

    For a term with template T, one level's random effects have
    covariance σ² T'T. A correlated-level term reports σ²θ², the variance
    of every level when corr has a unit diagonal.
    """
    var_comps = []
    theta_offset = 0

    for term, group in zip(structure.terms, group_names):
        q = term.n_columns
        theta_k = theta[theta_offset:theta_offset + term.theta_size]
        theta_offset += term.theta_size

        T = template_factor(theta_k, q)
        cov_matrix = sigma_sq * (T.T @ T)

        for i in range(q):
            var_i = cov_matrix[i, i]
            sd_i = np.sqrt(max(var_i, 0.0))

            if i > 0 and cov_matrix[0, 0] > 0 and var_i > 0:
                corr = cov_matrix[i, 0] / (np.sqrt(cov_matrix[0, 0]) * sd_i)
                corr = float(np.clip(corr, -1.0, 1.0))
            else:
                corr = None

            var_comps.append(VarCompSummary(
                group=group,
                name='(Intercept)' if q == 1 else f'V{i + 1}',
                variance=float(var_i),
                std_dev=float(sd_i),
                corr=corr,
            ))

    return var_comps


def _extract_modes(b: np.ndarray, structure: RanefStructure) -> tuple[np.ndarray, ...]:
    """Split b into per-term (n_levels, n_columns) arrays.

    b follows the row order of Zt: level-major within each term.
    """
    out = []
    offset = 0
    for term in structure.terms:
        seg = b[offset:offset + term.n_ranef]
        out.append(seg.reshape(term.n_levels, term.n_columns))
        offset += term.n_ranef
    return tuple(out)


def _compute_fit_stats(criterion: float, p: int, n_theta: int, n: int):
    """Log-likelihood, AIC, BIC from the criterion at convergence."""
    # fixed effects + covariance parameters + σ
    n_params = p + n_theta + 1
    ll = -0.5 * criterion
    aic = -2.0 * ll + 2.0 * n_params
    bic = -2.0 * ll + np.log(n) * n_params
    return float(ll), float(aic), float(bic)
