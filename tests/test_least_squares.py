import math

import numpy as np
import pytest

import synthetic
from driftfit.chisq import CHISQ_SENTINEL, ChiSqEvaluator
from driftfit.config import FitterConfig
from driftfit.geometry import Wire
from driftfit.hit_model import FitMode, HitInfo, HitModelBuilder
from driftfit.hits import LorentzDeflectionTable
from driftfit.least_squares import FitStatus, LeastSquaresStepper
from driftfit.trajectory import ReferenceTrajectory

_KICK = np.array([0.002, -0.001, 0.003])


def _stepper(cfg=None):
    cfg = cfg or FitterConfig()
    return LeastSquaresStepper(cfg, ChiSqEvaluator(cfg))


def test_linear_problem_is_solved_in_one_step(linear_problem):
    rt = linear_problem.oracle(mom=linear_problem.mom + _KICK)
    stepper = _stepper()
    status = stepper.fit_step(linear_problem.hinfo(), rt)
    assert status is FitStatus.SUCCESS
    step = rt.first_step()
    assert np.allclose(step.origin, linear_problem.pos, atol=1e-6)
    assert np.allclose(step.mom, linear_problem.mom, atol=1e-6)
    assert stepper.chisq == pytest.approx(0.0, abs=1e-6)
    assert stepper.ndof == len(linear_problem.wires) - 5
    assert stepper.covariance.shape == (5, 5)
    assert np.allclose(stepper.covariance, stepper.covariance.T)
    assert np.all(np.linalg.eigvalsh(stepper.covariance) > 0.0)


def test_solution_is_left_alone(linear_problem):
    rt = linear_problem.oracle()
    calls = rt.swim_calls
    stepper = _stepper()
    status = stepper.fit_step(linear_problem.hinfo(), rt)
    assert status is FitStatus.NO_IMPROVEMENT
    assert rt.swim_calls == calls
    assert np.array_equal(rt.first_step().mom, linear_problem.mom)
    assert stepper.chisq == 0.0
    assert stepper.covariance is not None


def test_scratch_trajectory_takes_the_charge(linear_problem):
    rt = linear_problem.oracle(mom=linear_problem.mom + _KICK, charge=-1.0)
    scratch = synthetic.LinearWireOracle(linear_problem.coeffs, charge=1.0)
    assert _stepper().fit_step(linear_problem.hinfo(), rt, scratch) is FitStatus.SUCCESS
    assert scratch.charge == -1.0
    # finite differences and line search all swim the scratch trajectory
    assert scratch.swim_calls >= 6
    assert rt.swim_calls == 2


def test_too_few_hits_fails_before_solving(monkeypatch):
    problem = synthetic.LinearProblem.make(n_wires=2, seed=5)

    def _no_inverse(*args, **kwargs):
        raise AssertionError("normal equations must not be solved")

    monkeypatch.setattr("driftfit.least_squares.linalg.inv", _no_inverse)
    stepper = _stepper()
    assert stepper.fit_step(problem.hinfo(), problem.oracle(mom=problem.mom + _KICK)) is FitStatus.FAILED
    assert stepper.covariance is None
    assert stepper.chisq == CHISQ_SENTINEL


def test_empty_reference_trajectory_fails(linear_problem):
    rt = synthetic.LinearWireOracle(linear_problem.coeffs)
    assert _stepper().fit_step(linear_problem.hinfo(), rt) is FitStatus.FAILED


def test_insensitive_wire_gives_zero_jacobian_row(linear_problem):
    flat = Wire.cdc((5.0, 0.0, 65.0), (0.0, 0.0, 1.0), ring=99, straw=0)
    linear_problem.coeffs[flat] = (np.zeros(3), np.zeros(3), 0.3)
    hinfo = linear_problem.hinfo() + [HitInfo(flat, 0.3, 0.02)]
    rt = linear_problem.oracle(mom=linear_problem.mom + _KICK)
    stepper = _stepper()
    assert stepper.fit_step(hinfo, rt) is FitStatus.SUCCESS
    assert np.allclose(rt.first_step().mom, linear_problem.mom, atol=1e-6)
    assert stepper.ndof == len(hinfo) - 5


def test_non_finite_slot_is_excluded(linear_problem):
    dead = Wire.cdc((5.0, 0.0, 65.0), (0.0, 0.0, 1.0), ring=98, straw=0)
    linear_problem.coeffs[dead] = (np.zeros(3), np.zeros(3), math.nan)
    hinfo = linear_problem.hinfo()
    hinfo.insert(3, HitInfo(dead, 0.3, 0.02))
    rt = linear_problem.oracle(mom=linear_problem.mom + _KICK)
    stepper = _stepper()
    assert stepper.fit_step(hinfo, rt) is FitStatus.SUCCESS
    assert np.allclose(rt.first_step().mom, linear_problem.mom, atol=1e-6)
    assert stepper.ndof == len(linear_problem.wires) - 5


@pytest.mark.parametrize("override", [{"jacobian_max_norm": 1.0e-6}, {"least_squares_max_norm": 1.0e-12}])
def test_norm_ceilings_fail_the_step(linear_problem, override):
    rt = linear_problem.oracle(mom=linear_problem.mom + _KICK)
    calls = rt.swim_calls
    stepper = _stepper(FitterConfig(**override))
    assert stepper.fit_step(linear_problem.hinfo(), rt) is FitStatus.FAILED
    assert stepper.covariance is None
    assert rt.swim_calls == calls


def test_degenerate_geometry_fails(linear_problem):
    same = linear_problem.coeffs[linear_problem.wires[0]]
    for w in linear_problem.wires:
        linear_problem.coeffs[w] = same
    hinfo = [HitInfo(w, 0.4, 0.02) for w in linear_problem.wires]
    rt = linear_problem.oracle(mom=linear_problem.mom + _KICK)
    assert _stepper().fit_step(hinfo, rt) is FitStatus.FAILED


def test_mismatched_records_are_an_error(linear_problem, caplog):
    class _Lopsided(ChiSqEvaluator):
        def evaluate(self, rt, hinfo):
            return super().evaluate(rt, hinfo[:-1])

    cfg = FitterConfig()
    stepper = LeastSquaresStepper(cfg, _Lopsided(cfg))
    with caplog.at_level("ERROR", logger="driftfit.least_squares"):
        status = stepper.fit_step(linear_problem.hinfo(), linear_problem.oracle(mom=linear_problem.mom + _KICK))
    assert status is FitStatus.FAILED
    assert "length mismatch" in caplog.text


def test_wire_based_step_keeps_good_seed(barrel_truth):
    hits = synthetic.six_wire_hits(barrel_truth)
    cfg = FitterConfig(cdc_cell_size=0.015 * math.sqrt(12.0), least_squares_dx=0.001, least_squares_dp=1.0e-5)
    hinfo = [HitInfo(h.wire, 0.0, 0.015) for h in hits]
    stepper = _stepper(cfg)
    assert stepper.fit_step(hinfo, barrel_truth) is FitStatus.NO_IMPROVEMENT
    assert stepper.ndof == 1
    assert stepper.chisq == pytest.approx(6 * (0.004 / 0.015) ** 2, rel=0.05)


def test_accepted_step_never_raises_chisq_per_dof(barrel_truth, swim_config):
    cfg = FitterConfig()
    hits = synthetic.barrel_hits(barrel_truth)
    seed = synthetic.seed_near(synthetic.BARREL_MOM, scale=1.01)
    rt = ReferenceTrajectory(swim_config, seed.charge, seed.mass)
    rt.swim(seed.position, seed.momentum)
    hinfo = HitModelBuilder(cfg, LorentzDeflectionTable.constant()).build(FitMode.TIME_BASED, rt, hits, [])
    base = ChiSqEvaluator(cfg).evaluate(rt, hinfo)
    stepper = _stepper(cfg)
    status = stepper.fit_step(hinfo, rt)
    assert status in (FitStatus.SUCCESS, FitStatus.NO_IMPROVEMENT)
    assert stepper.chisq_per_dof <= base.chisq_per_dof
