"""
Solution wrapper for fitted linear mixed models.

LMMSolution wraps Result[LMMParams] and provides property accessors for
the fitted covariance parameters, conditional modes and fit statistics,
reconstruction of Lambdat and the per-term covariance matrices, and an
lme4-style summary.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
import scipy.sparse as sp

from plsmm.core.result import Result
from plsmm.mixed._common import LMMParams, VarCompSummary
from plsmm.mixed._random_effects import template_factor


class LMMSolution:
    """Solution wrapper for a fitted linear mixed model."""

    def __init__(self, _result: Result[LMMParams]):
        self._result = _result

    @property
    def params(self) -> LMMParams:
        return self._result.params

    @property
    def result(self) -> Result[LMMParams]:
        return self._result

    # --- Covariance parameters ---

    @property
    def theta(self) -> NDArray:
        """Fitted covariance parameters θ̂."""
        return self.params.theta

    @property
    def sigma(self) -> float:
        """Residual standard deviation."""
        return self.params.residual_std

    @property
    def var_components(self) -> tuple[VarCompSummary, ...]:
        return self.params.var_components

    def lambdat(self) -> sp.csc_matrix:
        """Lambdat at θ̂ (values θ̂[Lind] on the fixed pattern)."""
        return self.params.structure.lambdat_at(self.params.theta)

    def covariance_blocks(self) -> tuple[NDArray, ...]:
        """Covariance matrix of one level's random effects, per term.

        For a term with template T the covariance is σ² T'T. For a
        correlated-level structure it is the full nl × nl matrix
        σ² Lambdat'Lambdat.
        """
        structure = self.params.structure
        sigma_sq = self.params.residual_variance
        blocks = []
        offset = 0
        for term in structure.terms:
            seg = self.params.theta[offset:offset + term.theta_size]
            offset += term.theta_size
            if term.block.scale is not None:
                Lt = structure.lambdat_at(self.params.theta)
                blocks.append(sigma_sq * (Lt.T @ Lt).toarray())
            else:
                T = template_factor(seg, term.n_columns)
                blocks.append(sigma_sq * (T.T @ T))
        return tuple(blocks)

    # --- Fixed effects and modes ---

    @property
    def coefficients(self) -> NDArray:
        """Fixed effect estimates β̂."""
        return self.params.coefficients

    @property
    def ranef(self) -> tuple[NDArray, ...]:
        """Conditional modes b per term, shape (n_levels, n_columns)."""
        return self.params.random_effects

    @property
    def u(self) -> NDArray:
        return self.params.u

    @property
    def fitted_values(self) -> NDArray:
        return self.params.fitted_values

    @property
    def residuals(self) -> NDArray:
        return self.params.residuals

    # --- Model fit ---

    @property
    def criterion(self) -> float:
        """Profiled deviance (ML) or REML criterion at θ̂."""
        return self.params.criterion

    @property
    def reml(self) -> bool:
        return self.params.reml

    @property
    def log_likelihood(self) -> float:
        return self.params.log_likelihood

    @property
    def aic(self) -> float:
        return self.params.aic

    @property
    def bic(self) -> float:
        return self.params.bic

    @property
    def converged(self) -> bool:
        return self.params.converged

    @property
    def n_evals(self) -> int:
        return self.params.n_evals

    @property
    def timing(self) -> dict[str, float] | None:
        return self._result.timing

    @property
    def warnings(self) -> tuple[str, ...]:
        return self._result.warnings

    # --- Summary ---

    def summary(self) -> str:
        """lme4-style summary of the fit."""
        params = self.params
        method = 'REML' if params.reml else 'ML'

        lines = []
        lines.append(f"Linear mixed model fit by {method}")
        lines.append("")

        lines.append("Random effects:")
        lines.append(f" {'Groups':<12s} {'Name':<15s} {'Variance':>10s} "
                     f"{'Std.Dev.':>10s} {'Corr':>6s}")

        prev_group = None
        for vc in params.var_components:
            grp_label = vc.group if vc.group != prev_group else ''
            corr_str = f'{vc.corr:6.2f}' if vc.corr is not None else ''
            lines.append(
                f" {grp_label:<12s} {vc.name:<15s} {vc.variance:10.4f} "
                f"{vc.std_dev:10.4f} {corr_str}"
            )
            prev_group = vc.group

        lines.append(
            f" {'Residual':<12s} {'':<15s} {params.residual_variance:10.4f} "
            f"{params.residual_std:10.4f}"
        )
        lines.append("")

        group_parts = ', '.join(
            f'{name}: {term.n_levels}'
            for name, term in zip(params.group_names, params.structure.terms)
        )
        lines.append(f"Number of obs: {params.n_obs}, groups: {group_parts}")
        lines.append("")

        lines.append("Fixed effects:")
        lines.append(f" {'':>15s} {'Estimate':>10s}")
        for i, est in enumerate(params.coefficients):
            lines.append(f" {'X' + str(i):>15s} {est:10.4f}")
        lines.append("")

        lines.append(f"{method} criterion at convergence: {params.criterion:.1f}")
        lines.append(f"theta: {np.array2string(params.theta, precision=4)}")
        lines.append(f"AIC: {params.aic:.1f}, BIC: {params.bic:.1f}")

        if not params.converged:
            lines.append("")
            lines.append("WARNING: Model did not converge")
        if params.n_failed_evals:
            lines.append(
                f"NOTE: {params.n_failed_evals} evaluation(s) failed numerically "
                f"and were reported to the optimizer as +inf"
            )

        return '\n'.join(lines)

    def __repr__(self) -> str:
        method = 'REML' if self.params.reml else 'ML'
        return (
            f"LMMSolution({method}, "
            f"n={self.params.n_obs}, "
            f"fixed={len(self.params.coefficients)}, "
            f"theta={len(self.params.theta)})"
        )
