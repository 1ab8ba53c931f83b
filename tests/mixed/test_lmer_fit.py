"""Tests for the fitting drivers and the solution wrapper."""

import numpy as np
import pytest

import plsmm.mixed.solvers as solvers
from plsmm.core.exceptions import NumericalError, ValidationError
from plsmm.mixed import LMMSolution, lmer_corr_fit, lmer_fit, pls
from plsmm.mixed._pls import PLSEvaluator
from plsmm.mixed._random_effects import make_ranef_structures, template_factor


@pytest.fixture(scope='module')
def slope_fit_data():
    rng = np.random.default_rng(7)
    n_groups, n_per = 200, 5
    n = n_groups * n_per
    X = np.column_stack([np.ones(n), rng.standard_normal(n)])
    ZZ = np.column_stack([np.ones(n), rng.standard_normal(n)])
    grp = np.repeat(np.arange(n_groups), n_per)
    re = make_ranef_structures(grp, ZZ)
    beta = np.array([1.0, -0.5])
    y = X @ beta + re.Zt.T @ rng.standard_normal(re.Zt.shape[0]) + rng.standard_normal(n)
    return {'y': y, 'X': X, 'ZZ': ZZ, 'grp': grp, 'beta': beta, 'n_groups': n_groups}


@pytest.fixture(scope='module')
def slope_fit(slope_fit_data):
    d = slope_fit_data
    return lmer_fit(d['y'], d['X'], d['ZZ'], d['grp'], group_names=['subject'])


# ═══════════════════════════════════════════════════════════════════════
# Recovery
# ═══════════════════════════════════════════════════════════════════════


class TestInterceptSlopeFit:

    def test_converged(self, slope_fit):
        assert isinstance(slope_fit, LMMSolution)
        assert slope_fit.converged
        assert slope_fit.n_evals > 0
        assert slope_fit.warnings == ()

    def test_theta_recovered(self, slope_fit):
        np.testing.assert_allclose(slope_fit.theta, [1.0, 0.0, 1.0], atol=0.3)
        assert slope_fit.theta[0] >= 0.0
        assert slope_fit.theta[2] >= 0.0

    def test_sigma_and_beta(self, slope_fit, slope_fit_data):
        assert slope_fit.sigma == pytest.approx(1.0, abs=0.15)
        np.testing.assert_allclose(slope_fit.coefficients, slope_fit_data['beta'], atol=0.2)

    def test_criterion_matches_evaluator(self, slope_fit, slope_fit_data):
        d = slope_fit_data
        re = make_ranef_structures(d['grp'], d['ZZ'])
        devfun = pls(d['X'], d['y'], re.Zt, re.Lambdat, re.thfun, reml=True)
        assert devfun(slope_fit.theta) == pytest.approx(slope_fit.criterion, rel=1e-12)
        np.testing.assert_allclose(devfun.u, slope_fit.u, atol=1e-10)

    def test_is_local_minimum(self, slope_fit, slope_fit_data):
        d = slope_fit_data
        re = make_ranef_structures(d['grp'], d['ZZ'])
        devfun = pls(d['X'], d['y'], re.Zt, re.Lambdat, re.thfun, reml=True)
        for k in range(3):
            step = np.zeros(3)
            step[k] = 0.05
            assert devfun(slope_fit.theta + step) >= slope_fit.criterion - 1e-6

    def test_fitted_plus_residuals(self, slope_fit, slope_fit_data):
        np.testing.assert_allclose(
            slope_fit.fitted_values + slope_fit.residuals, slope_fit_data['y'], atol=1e-10)

    def test_ranef_shape(self, slope_fit, slope_fit_data):
        assert len(slope_fit.ranef) == 1
        assert slope_fit.ranef[0].shape == (slope_fit_data['n_groups'], 2)
        np.testing.assert_allclose(slope_fit.ranef[0].ravel(), slope_fit.params.b)

    def test_fit_statistics(self, slope_fit):
        assert slope_fit.log_likelihood == pytest.approx(-0.5 * slope_fit.criterion)
        # 2 fixed effects + 3 covariance parameters + σ
        assert slope_fit.aic == pytest.approx(slope_fit.criterion + 2 * 6)
        assert slope_fit.bic > slope_fit.aic

    def test_covariance_blocks(self, slope_fit):
        (cov,) = slope_fit.covariance_blocks()
        T = template_factor(slope_fit.theta, 2)
        np.testing.assert_allclose(cov, slope_fit.sigma ** 2 * T.T @ T)
        vc = slope_fit.var_components
        assert [v.name for v in vc] == ['V1', 'V2']
        assert vc[0].variance == pytest.approx(cov[0, 0])
        assert vc[1].variance == pytest.approx(cov[1, 1])
        assert vc[0].corr is None
        assert -1.0 <= vc[1].corr <= 1.0

    def test_lambdat(self, slope_fit, slope_fit_data):
        Lt = slope_fit.lambdat()
        T = template_factor(slope_fit.theta, 2)
        np.testing.assert_allclose(
            Lt.toarray(), np.kron(np.eye(slope_fit_data['n_groups']), T))

    def test_result_envelope(self, slope_fit):
        result = slope_fit.result
        assert result.backend_name == 'cholmod_pls'
        assert result.info['method'] == 'REML'
        assert slope_fit.reml
        assert result.info['optimizer'] == 'Powell'
        assert 'optimization' in slope_fit.timing
        assert slope_fit.timing['total_seconds'] > 0

    def test_summary(self, slope_fit):
        text = slope_fit.summary()
        assert "Linear mixed model fit by REML" in text
        assert "Random effects:" in text
        assert "subject" in text
        assert "Residual" in text
        assert "Number of obs: 1000, groups: subject: 200" in text
        assert "WARNING" not in text

    def test_repr(self, slope_fit):
        assert repr(slope_fit) == "LMMSolution(REML, n=1000, fixed=2, theta=3)"


class TestMLFit:

    def test_ml_close_to_reml(self, slope_fit, slope_fit_data):
        d = slope_fit_data
        ml = lmer_fit(d['y'], d['X'], d['ZZ'], d['grp'], reml=False)
        assert ml.result.info['method'] == 'ML'
        assert ml.sigma == pytest.approx(slope_fit.sigma, abs=0.05)
        np.testing.assert_allclose(ml.coefficients, slope_fit.coefficients, atol=0.05)
        assert "fit by ML" in ml.summary()


class TestCrossedFit:

    def test_two_scalar_terms(self, crossed_scalar):
        d = crossed_scalar
        n = len(d['y'])
        fit = lmer_fit(d['y'], d['X'], [np.ones(n), np.ones(n)],
                       [d['subject'], d['item']], group_names=['subject', 'item'])
        assert fit.converged
        assert fit.theta.shape == (2,)
        assert np.all(fit.theta > 0)
        assert [v.group for v in fit.var_components] == ['subject', 'item']
        assert [v.name for v in fit.var_components] == ['(Intercept)', '(Intercept)']
        assert fit.ranef[0].shape == (d['n_subjects'], 1)
        assert fit.ranef[1].shape == (d['n_items'], 1)
        assert "subject: 30, item: 10" in fit.summary()

    def test_default_group_names(self, crossed_scalar):
        d = crossed_scalar
        n = len(d['y'])
        fit = lmer_fit(d['y'], d['X'], [np.ones(n), np.ones(n)],
                       [d['subject'], d['item']])
        assert fit.params.group_names == ('grp1', 'grp2')

    @pytest.mark.parametrize("method", ['Nelder-Mead', 'L-BFGS-B'])
    def test_other_optimizers_agree(self, crossed_scalar, method):
        d = crossed_scalar
        n = len(d['y'])
        args = (d['y'], d['X'], [np.ones(n), np.ones(n)], [d['subject'], d['item']])
        ref = lmer_fit(*args)
        fit = lmer_fit(*args, method=method)
        assert fit.criterion == pytest.approx(ref.criterion, abs=1e-3)


class TestCorrFit:

    def test_correlated_levels(self, correlated_levels):
        d = correlated_levels
        fit = lmer_corr_fit(d['y'], d['X'], d['corr'], d['grp'], group_name='site')
        assert fit.converged
        assert fit.theta.shape == (1,)
        assert fit.theta[0] > 0.5
        (cov,) = fit.covariance_blocks()
        assert cov.shape == (d['nl'], d['nl'])
        np.testing.assert_allclose(
            cov, fit.sigma ** 2 * fit.theta[0] ** 2 * d['corr'], atol=1e-10)
        assert fit.var_components[0].group == 'site'
        assert "site: 30" in fit.summary()

    def test_explicit_levels(self, correlated_levels):
        d = correlated_levels
        labels = np.array([f'L{k:02d}' for k in range(d['nl'])])
        fit = lmer_corr_fit(d['y'], d['X'], d['corr'], labels[d['grp']],
                            levels=labels.tolist())
        ref = lmer_corr_fit(d['y'], d['X'], d['corr'], d['grp'])
        assert fit.criterion == pytest.approx(ref.criterion, rel=1e-8)


# ═══════════════════════════════════════════════════════════════════════
# Driver behaviour
# ═══════════════════════════════════════════════════════════════════════


class TestDriver:

    def test_bad_method(self, crossed_scalar):
        d = crossed_scalar
        with pytest.raises(ValidationError, match="method"):
            lmer_fit(d['y'], d['X'], np.ones(len(d['y'])), d['subject'], method='BFGS')

    def test_group_names_length(self, crossed_scalar):
        d = crossed_scalar
        with pytest.raises(ValidationError, match="group_names"):
            lmer_fit(d['y'], d['X'], np.ones(len(d['y'])), d['subject'],
                     group_names=['a', 'b'])

    def test_non_convergence_warns(self, crossed_scalar):
        d = crossed_scalar
        n = len(d['y'])
        with pytest.warns(RuntimeWarning, match="did not converge"):
            fit = lmer_fit(d['y'], d['X'], [np.ones(n), np.ones(n)],
                           [d['subject'], d['item']], max_evals=3)
        assert not fit.converged
        assert fit.result.has_warning("did not converge")
        assert "WARNING: Model did not converge" in fit.summary()

    def test_numerical_failures_are_counted(self, crossed_scalar, monkeypatch):
        d = crossed_scalar

        class FailsOnce(PLSEvaluator):
            def __call__(self, theta):
                if self.n_evals == 1:
                    self._cache.n_evals += 1
                    raise NumericalError("injected failure")
                return super().__call__(theta)

        monkeypatch.setattr(solvers, 'pls', lambda *args, **kwargs: FailsOnce(*args, **kwargs))
        fit = lmer_fit(d['y'], d['X'], np.ones(len(d['y'])), d['subject'])
        assert fit.params.n_failed_evals == 1
        assert fit.result.has_warning("injected failure")
        assert "failed numerically" in fit.summary()
        assert np.isfinite(fit.criterion)
