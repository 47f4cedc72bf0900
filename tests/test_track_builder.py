import math

import numpy as np
import pytest

import synthetic
from driftfit.config import FitterConfig
from driftfit.fitter import FitResult, KinematicData, LeastSquaresTrackFitter, TrackCandidate
from driftfit.hit_model import FitMode
from driftfit.least_squares import FitStatus
from driftfit.track_builder import _RESULT_COLUMNS, TrackBuilder

PION, KAON, PROTON = 0.13957018, 0.493677, 0.938272


class _StubFitter:
    """Replays canned time-based outcomes keyed by mass."""

    def __init__(self, time_based, wire_based_ok=True):
        self.time_based = time_based
        self.wire_based_ok = wire_based_ok
        self.calls = []
        self.wb_kinematics = None

    def fit(self, candidate, fit_mode, mass=None):
        self.calls.append((fit_mode, mass, candidate.seed))
        if fit_mode is FitMode.WIRE_BASED:
            if not self.wire_based_ok:
                return FitResult(FitStatus.FAILED, fit_mode)
            seed = candidate.seed
            self.wb_kinematics = KinematicData(seed.position, seed.momentum * 1.01, seed.charge, seed.mass)
            return FitResult(FitStatus.SUCCESS, fit_mode, self.wb_kinematics, 5.0, 2)
        status, chisq, ndof = self.time_based[round(mass, 3)]
        kin = KinematicData(candidate.seed.position, candidate.seed.momentum, candidate.seed.charge, mass)
        if status is FitStatus.FAILED:
            return FitResult(status, fit_mode)
        return FitResult(status, fit_mode, kin, chisq, ndof, cdchits=candidate.cdchits, fdchits=candidate.fdchits)


def _candidate(cid=1, mass=PION):
    return TrackCandidate(KinematicData((0.0, 0.0, 65.0), (0.1, 0.2, 0.9), 1.0, mass), [], [], cid)


def test_lowest_chisq_per_dof_wins():
    fitter = _StubFitter({0.14: (FitStatus.SUCCESS, 30.0, 10),
                          0.494: (FitStatus.SUCCESS, 15.0, 10),
                          0.938: (FitStatus.SUCCESS, 10.0, 10)})
    builder = TrackBuilder(fitter, (0.13957, PROTON, KAON))
    best = builder.fit_candidate(_candidate())
    assert best.kinematics.mass == PROTON
    assert best.chisq_per_dof == pytest.approx(1.0)
    modes = [c[0] for c in fitter.calls]
    masses = [c[1] for c in fitter.calls]
    assert modes == [FitMode.WIRE_BASED] + [FitMode.TIME_BASED] * 3
    # wire-based mass first, near-duplicate pion hypothesis skipped
    assert masses == [None, PION, PROTON, KAON]
    # time-based fits start from the wire-based result
    assert all(c[2] is fitter.wb_kinematics for c in fitter.calls[1:])


def test_ties_keep_the_earlier_hypothesis():
    fitter = _StubFitter({0.14: (FitStatus.SUCCESS, 10.0, 10), 0.938: (FitStatus.SUCCESS, 10.0, 10)})
    best = TrackBuilder(fitter, (PROTON,)).fit_candidate(_candidate())
    assert best.kinematics.mass == PION


def test_failed_and_low_ndof_fits_are_skipped():
    fitter = _StubFitter({0.14: (FitStatus.SUCCESS, 40.0, 10),
                          0.494: (FitStatus.SUCCESS, 0.1, 0),
                          0.938: (FitStatus.FAILED, 0.0, 0)})
    builder = TrackBuilder(fitter, (PROTON, KAON))
    best = builder.fit_candidate(_candidate())
    assert best.kinematics.mass == PION
    stats = builder.get_track_statistics()
    assert stats["time_based_fits"] == 3
    assert stats["time_based_failed"] == 1
    assert stats["low_ndof"] == 1
    assert stats["tracks"] == 1


def test_wire_based_failure_drops_candidate(caplog):
    builder = TrackBuilder(_StubFitter({}, wire_based_ok=False))
    with caplog.at_level("WARNING", logger="driftfit.track_builder"):
        assert builder.fit_candidate(_candidate(cid=42)) is None
    assert "Candidate 42: wire-based fit failed" in caplog.text
    stats = builder.get_track_statistics()
    assert stats["wire_based_failed"] == 1
    assert stats["time_based_fits"] == 0
    assert stats["efficiency"] == 0.0


def test_no_usable_time_based_fit(caplog):
    fitter = _StubFitter({0.14: (FitStatus.FAILED, 0.0, 0), 0.938: (FitStatus.SUCCESS, 1.0, 0)})
    builder = TrackBuilder(fitter, (PROTON,))
    with caplog.at_level("WARNING", logger="driftfit.track_builder"):
        assert builder.fit_candidate(_candidate(cid=3)) is None
    assert "no usable time-based fit" in caplog.text


def test_build_keeps_input_order_and_counts():
    fitter = _StubFitter({0.14: (FitStatus.SUCCESS, 4.0, 4), 0.938: (FitStatus.SUCCESS, 8.0, 4)})
    builder = TrackBuilder(fitter, (PROTON,))
    tracks = builder.build([_candidate(cid=k) for k in range(4)])
    assert len(tracks) == 4
    stats = builder.get_track_statistics()
    assert stats["candidates"] == 4
    assert stats["efficiency"] == 1.0
    builder.reset()
    assert builder.get_track_statistics()["candidates"] == 0
    assert builder.get_track_statistics()["efficiency"] == 0.0


def test_results_frame_columns_and_failed_rows():
    ok = FitResult(FitStatus.SUCCESS, FitMode.TIME_BASED,
                   KinematicData((0.0, 0.0, 65.0), (0.0, 0.3, 0.4), -1.0, PION), 12.0, 6)
    bad = FitResult(FitStatus.FAILED, FitMode.TIME_BASED)
    frame = TrackBuilder.results_frame([ok, bad], candidate_ids=[11, 12])
    assert list(frame.columns) == _RESULT_COLUMNS
    assert frame["candidate_id"].tolist() == [11, 12]
    assert frame.loc[0, "p"] == pytest.approx(0.5)
    assert frame.loc[0, "chisq_per_dof"] == pytest.approx(2.0)
    assert frame.loc[0, "charge"] == -1.0
    assert frame.loc[0, "status"] == "success"
    assert np.isnan(frame.loc[1, "p"])
    assert math.isinf(frame.loc[1, "chisq_per_dof"])
    assert TrackBuilder.results_frame([]).empty


def test_builder_with_real_fitter(forward_truth, swim_config):
    hits = synthetic.forward_hits(forward_truth)
    cand = TrackCandidate(synthetic.seed_near(synthetic.FORWARD_MOM), [], hits, candidate_id=5)
    builder = TrackBuilder(LeastSquaresTrackFitter(FitterConfig(), swim_config), (PROTON,))
    best = builder.fit_candidate(cand)
    assert best is not None
    assert best.fit_mode is FitMode.TIME_BASED
    # the time-of-flight mass is fixed by configuration, so both hypotheses tie
    assert best.kinematics.mass == pytest.approx(PION)
    assert best.kinematics.p == pytest.approx(float(np.linalg.norm(synthetic.FORWARD_MOM)), rel=0.01)
    assert builder.get_track_statistics()["tracks"] == 1
