"""Tests for the Result envelope and the Timer."""

import dataclasses

import pytest

from plsmm.core.compute import Timer
from plsmm.core.result import Result


# ═══════════════════════════════════════════════════════════════════════
# Result
# ═══════════════════════════════════════════════════════════════════════


class TestResult:

    def test_fields(self):
        r = Result(params={'theta': 1.0}, info={'converged': True},
                   timing=None, backend_name='cholmod_pls')
        assert r.params == {'theta': 1.0}
        assert r.info['converged'] is True
        assert r.timing is None
        assert r.warnings == ()

    def test_frozen(self):
        r = Result(params=None, info={}, timing=None, backend_name='x')
        with pytest.raises(dataclasses.FrozenInstanceError):
            r.backend_name = 'y'

    def test_has_warning(self):
        r = Result(params=None, info={}, timing=None, backend_name='x',
                   warnings=("Optimizer did not converge: max evals",))
        assert r.has_warning("did not converge")
        assert not r.has_warning("failed numerically")


# ═══════════════════════════════════════════════════════════════════════
# Timer
# ═══════════════════════════════════════════════════════════════════════


class TestTimer:

    def test_sections_accumulate(self):
        timer = Timer()
        timer.start()
        with timer.section('solve'):
            pass
        with timer.section('solve'):
            pass
        timer.stop()
        out = timer.result()
        assert set(out) == {'total_seconds', 'solve'}
        assert out['solve'] >= 0.0
        assert out['total_seconds'] >= 0.0

    def test_result_before_stop(self):
        timer = Timer()
        timer.start()
        with pytest.raises(RuntimeError):
            timer.result()

    def test_stop_before_start(self):
        with pytest.raises(RuntimeError):
            Timer().stop()
