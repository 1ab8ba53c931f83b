"""
Linear mixed models by penalized least squares.

Public API:
    z_section                  : one term's section of Zt
    block_lambdat              : one term's diagonal block of Lambdat
    make_ranef_structures      : Zt, Lambdat, θ, bounds and θ → Lambdat mapping
    make_corr_ranef_structures : the same for a scalar effect with correlated levels
    pls                        : create the profiled deviance / REML evaluator
    lmer_fit, lmer_corr_fit    : minimize the evaluator over θ
    LMMSolution                : result wrapper
"""

from plsmm.mixed._random_effects import (
    LambdatBlock,
    RanefStructure,
    TermInfo,
    block_lambdat,
    make_corr_ranef_structures,
    make_ranef_structures,
    z_section,
)
from plsmm.mixed._pls import PLSCache, PLSEvaluator, pls
from plsmm.mixed.solvers import lmer_fit, lmer_corr_fit
from plsmm.mixed.solution import LMMSolution

__all__ = [
    "LambdatBlock",
    "RanefStructure",
    "TermInfo",
    "block_lambdat",
    "make_corr_ranef_structures",
    "make_ranef_structures",
    "z_section",
    "PLSCache",
    "PLSEvaluator",
    "pls",
    "lmer_fit",
    "lmer_corr_fit",
    "LMMSolution",
]
