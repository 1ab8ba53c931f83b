"""
Shared fixtures for mixed model tests.

Provides simulated datasets with known covariance structure.
"""

import numpy as np
import pytest


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(2024)


@pytest.fixture
def small_slope(rng):
    """Small random intercept + slope dataset for exact comparisons.

    6 groups with unequal sizes (64 observations).
    """
    sizes = np.array([8, 12, 9, 11, 14, 10])
    grp = np.repeat(np.arange(len(sizes)), sizes)
    n = len(grp)

    x = rng.standard_normal(n)
    z = rng.uniform(-1, 1, n)
    b = rng.normal(0, [1.5, 0.7], size=(len(sizes), 2))
    y = 2.0 + 0.5 * x + b[grp, 0] + b[grp, 1] * z + rng.normal(0, 0.8, n)

    return {
        'y': y,
        'X': np.column_stack([np.ones(n), x]),
        'ZZ': np.column_stack([np.ones(n), z]),
        'grp': grp,
        'weights': rng.uniform(0.5, 2.0, n),
        'offset': rng.normal(0, 0.3, n),
    }


@pytest.fixture
def crossed_scalar(rng):
    """Crossed random intercepts: y ~ x + (1 | subject) + (1 | item).

    30 subjects × 10 items = 300 observations.
    """
    n_subjects = 30
    n_items = 10
    n = n_subjects * n_items

    subject = np.repeat(np.arange(n_subjects), n_items)
    item = np.tile(np.arange(n_items), n_subjects)
    x = rng.standard_normal(n)

    y = (3.0 + 1.5 * x
         + rng.normal(0, 2.0, n_subjects)[subject]
         + rng.normal(0, 1.5, n_items)[item]
         + rng.normal(0, 1.0, n))

    return {
        'y': y,
        'X': np.column_stack([np.ones(n), x]),
        'subject': subject,
        'item': item,
        'n_subjects': n_subjects,
        'n_items': n_items,
    }


def ar1_corr(nl, rho):
    """AR(1) correlation matrix of size nl × nl."""
    idx = np.arange(nl)
    return rho ** np.abs(idx[:, np.newaxis] - idx[np.newaxis, :])


@pytest.fixture
def correlated_levels(rng):
    """Scalar random effect with AR(1)-correlated levels.

    30 levels, 10 observations each; b ~ N(0, 4 corr), residual SD = 1.
    """
    nl = 30
    n_per = 10
    corr = ar1_corr(nl, 0.6)
    b = 2.0 * np.linalg.cholesky(corr) @ rng.standard_normal(nl)

    grp = np.repeat(np.arange(nl), n_per)
    n = len(grp)
    y = 1.0 + b[grp] + rng.standard_normal(n)

    return {
        'y': y,
        'X': np.ones((n, 1)),
        'grp': grp,
        'corr': corr,
        'nl': nl,
    }
