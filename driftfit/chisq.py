from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Sequence, Tuple

import numpy as np

from driftfit.config import FitterConfig
from driftfit.hit_model import HitInfo, n_measurements
from driftfit.trajectory import SwimStep, TrajectoryOracle

logger = logging.getLogger(__name__)

__all__ = [
    "CHISQ_SENTINEL",
    "N_PARAMETERS",
    "StateIndex",
    "TrackState",
    "ChiSq",
    "ChiSqEvaluator",
]

CHISQ_SENTINEL = 1.0e6
N_PARAMETERS = 5

# A DOCA this far behind the first step belongs to the wrong half of the helix
_BACKWARD_S_LIMIT = -5.0


class StateIndex(IntEnum):
    """Slots of the 5-parameter track state."""
    PX = 0
    PY = 1
    PZ = 2
    X = 3
    V = 4


class TrackState:
    r"""
    Five track parameters relative to a reference swim step.

    With the step's frame :math:`(\hat{s},\hat{t},\hat{u})`, its origin
    :math:`\mathbf{o}` and :math:`\hat{v}=\widehat{\hat{s}\times\mathbf{p}}`,

    .. math::

        \mathbf{x} = \mathbf{o} + x\,\hat{s} + v\,\hat{v},\qquad
        \mathbf{p} = p_x\hat{s} + p_y\hat{t} + p_z\hat{u}.

    The state taken from a step (:meth:`from_step`) therefore reproduces that
    step exactly, with :math:`x=v=0`.
    """
    __slots__ = ("values",)

    def __init__(self, values) -> None:
        arr = np.array(values, dtype=np.float64).reshape(N_PARAMETERS)
        self.values = arr

    @classmethod
    def from_step(cls, step: SwimStep) -> "TrackState":
        mom = step.mom
        return cls((float(mom @ step.sdir), float(mom @ step.tdir), float(mom @ step.udir), 0.0, 0.0))

    px = property(lambda self: float(self.values[StateIndex.PX]))
    py = property(lambda self: float(self.values[StateIndex.PY]))
    pz = property(lambda self: float(self.values[StateIndex.PZ]))
    x = property(lambda self: float(self.values[StateIndex.X]))
    v = property(lambda self: float(self.values[StateIndex.V]))

    def perturbed(self, index: StateIndex, delta: float) -> "TrackState":
        """Copy with one parameter shifted by ``delta``."""
        out = TrackState(self.values)
        out.values[index] += delta
        return out

    def stepped(self, delta: np.ndarray, lam: float) -> "TrackState":
        """Copy moved by ``lam * delta``."""
        return TrackState(self.values + lam * np.asarray(delta, dtype=np.float64))

    def to_position_momentum(self, step: SwimStep) -> Tuple[np.ndarray, np.ndarray]:
        pos = step.origin + self.x * step.sdir + self.v * step.vdir
        mom = self.px * step.sdir + self.py * step.tdir + self.pz * step.udir
        return pos, mom

    def __repr__(self) -> str:
        return (f"TrackState(px={self.px:.5g}, py={self.py:.5g}, pz={self.pz:.5g}, "
                f"x={self.x:.5g}, v={self.v:.5g})")


@dataclass(slots=True)
class ChiSq:
    r"""
    Outcome of a :math:`\chi^2` evaluation.

    Attributes
    ----------
    chisq_per_dof : float
        :math:`\chi^2/n_\mathrm{dof}`, or :data:`CHISQ_SENTINEL` when
        :math:`n_\mathrm{dof}<2`.
    residuals : ndarray
        Signed residuals in units of sigma, one slot per measurement; may hold
        non-finite values.
    chisq : float
        Sum of squares of the finite residuals.
    ndof : int
        Finite residual count minus :data:`N_PARAMETERS`.
    """
    chisq_per_dof: float
    residuals: np.ndarray
    chisq: float
    ndof: int


class ChiSqEvaluator:
    r"""
    Residuals and :math:`\chi^2` of a trajectory against a list of hit records.

    For each record the trajectory's distance of closest approach :math:`d` to
    the wire gives the drift residual

    .. math::

        r_i = \frac{d_{\mathrm{drift},i} - d_i}{\sigma_i},

    and, when a cathode measurement is present, the along-wire residual
    :math:`(u_i - u_{\mathrm{meas},i})/\sigma_{u,i}` follows it in the vector.
    Non-finite residuals keep their slot but are left out of
    :math:`\chi^2=\sum r_i^2` and of the degree-of-freedom count.
    """
    __slots__ = ("config",)

    def __init__(self, config: FitterConfig) -> None:
        self.config = config

    @staticmethod
    def sentinel(hinfo: Sequence[HitInfo]) -> ChiSq:
        """Result for an unusable trajectory: every slot and the statistic are the sentinel."""
        return ChiSq(CHISQ_SENTINEL, np.full(n_measurements(hinfo), CHISQ_SENTINEL), CHISQ_SENTINEL, 0)

    def evaluate(self, rt: TrajectoryOracle, hinfo: Sequence[HitInfo]) -> ChiSq:
        if rt.n_steps < 1:
            return self.sentinel(hinfo)

        debug = logger.isEnabledFor(logging.DEBUG)
        resid = np.empty(n_measurements(hinfo))
        chisq = 0.0
        n_finite = 0
        j = 0
        for hi in hinfo:
            d, s = rt.dist_to_wire(hi.wire)
            if s < _BACKWARD_S_LIMIT:
                d = hi.wire.perp
            c = (hi.dist - d) / hi.err
            resid[j] = c
            j += 1
            if math.isfinite(c):
                chisq += c * c
                n_finite += 1
            if debug:
                logger.debug("resid=%.4g d=%.4f R=%.3f s=%.3f %s", c, d, hi.wire.perp, s, hi.wire.describe())

            if hi.has_cathode:
                u = rt.last_dist_along_wire()
                c = (u - hi.u_dist) / hi.u_err
                resid[j] = c
                j += 1
                if math.isfinite(c):
                    chisq += c * c
                    n_finite += 1
                if debug:
                    logger.debug("resid=%.4g u=%.4f u_meas=%.4f (cathode) %s", c, u, hi.u_dist, hi.wire.describe())

        ndof = n_finite - N_PARAMETERS
        chisq_per_dof = chisq / ndof if ndof >= 2 else CHISQ_SENTINEL
        return ChiSq(chisq_per_dof, resid, chisq, ndof)

    def evaluate_state(self,
                       state: TrackState,
                       start_step: SwimStep,
                       rt: TrajectoryOracle,
                       hinfo: Sequence[HitInfo]) -> ChiSq:
        r"""
        Swim ``rt`` to ``state`` (relative to ``start_step``) and evaluate it.

        States with :math:`\|\mathbf{x}\|` above ``max_state_position`` or an
        offset :math:`|x|` or :math:`|v|` above ``max_state_offset`` get the
        sentinel result and ``rt`` is left untouched.
        """
        cfg = self.config
        pos, mom = state.to_position_momentum(start_step)
        if (float(np.linalg.norm(pos)) > cfg.max_state_position
                or abs(state.x) > cfg.max_state_offset
                or abs(state.v) > cfg.max_state_offset):
            logger.debug("State out of range, not swimming: %r", state)
            return self.sentinel(hinfo)
        rt.swim(pos, mom)
        return self.evaluate(rt, hinfo)
