from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence

import numpy as np

from driftfit.config import FitterConfig
from driftfit.geometry import Wire
from driftfit.hits import CDCTrackHit, FDCPseudoHit, LorentzDeflections
from driftfit.kernels import unit
from driftfit.trajectory import TrajectoryOracle

logger = logging.getLogger(__name__)

__all__ = [
    "FitMode",
    "HitInfo",
    "HitModelBuilder",
    "measurement_errors",
    "n_measurements",
    "SPEED_OF_LIGHT",
]

# cm/ns
SPEED_OF_LIGHT = 29.98


class FitMode(Enum):
    """Which measurements a fit uses."""
    WIRE_BASED = "wire_based"
    TIME_BASED = "time_based"


@dataclass(slots=True)
class HitInfo:
    r"""
    Uniform per-wire measurement record consumed by the fitter.

    Attributes
    ----------
    wire : Wire
        Reference line. Its identity is stable across outer iterations.
    dist : float
        Drift distance (cm), ``0`` in wire-based fits. May be non-finite.
    err : float
        Uncertainty of ``dist`` (cm).
    u_dist : float
        Along-wire cathode coordinate (cm).
    u_err : float
        Uncertainty of ``u_dist``; ``0`` means there is no cathode measurement.
    """
    wire: Wire
    dist: float
    err: float
    u_dist: float = 0.0
    u_err: float = 0.0

    @property
    def has_cathode(self) -> bool:
        return self.u_err != 0.0


def n_measurements(hinfo: Sequence[HitInfo]) -> int:
    """Residual slots produced by ``hinfo``: one per record plus one per cathode."""
    return len(hinfo) + sum(1 for hi in hinfo if hi.has_cathode)


def measurement_errors(hinfo: Sequence[HitInfo]) -> np.ndarray:
    """Errors aligned slot-for-slot with the residual vector of ``hinfo``."""
    errs: List[float] = []
    for hi in hinfo:
        errs.append(hi.err)
        if hi.has_cathode:
            errs.append(hi.u_err)
    return np.asarray(errs, dtype=np.float64)


class HitModelBuilder:
    r"""
    Turn raw chamber hits into :class:`HitInfo` records for one outer iteration.

    **Wire-based.** Only wire positions are used: ``dist = 0`` and the error is
    that of a uniformly illuminated cell of width :math:`w`,
    :math:`\sigma = w/\sqrt{12}`.

    **Time-based.** The raw drift distance :math:`d_\mathrm{raw}` was derived
    from a drift time :math:`t` that still contains the time of flight. With
    the path length :math:`s` to the DOCA point and the momentum :math:`p` there,

    .. math::

        \beta = \frac{1}{\sqrt{1+(m/p)^2}},\qquad
        t_\mathrm{tof} = \frac{s}{\beta c},\qquad
        d = d_\mathrm{raw}\,\frac{t - t_\mathrm{tof}}{t}.

    For planar-chamber hits the cathode coordinate is corrected by the Lorentz
    deflection with a sign fixed by the side of the wire the track passes:
    with :math:`\hat{\mathbf{n}} = \widehat{\hat{\mathbf{w}}\times\mathbf{p}}`,

    .. math::

        \epsilon = \begin{cases} +1 & \hat{\mathbf{n}}\cdot(\mathbf{x}_\mathrm{doca}
        - \mathbf{x}_\mathrm{wire}) < 0\\ -1 & \text{otherwise}\end{cases},\qquad
        u = s_\mathrm{strip} + \epsilon\,\delta_L(\mathbf{x}_\mathrm{doca}, \alpha, d),

    where :math:`\alpha` is the polar angle of the momentum at the DOCA point.

    The only side effect is the DOCA cache of the trajectory; the trajectory
    itself is never re-swum.

    Parameters
    ----------
    config : FitterConfig
    lorentz : LorentzDeflections
        Along-wire Lorentz correction for planar-chamber cathodes.
    """
    __slots__ = ("config", "lorentz")

    def __init__(self, config: FitterConfig, lorentz: LorentzDeflections) -> None:
        self.config = config
        self.lorentz = lorentz

    def build(self,
              fit_mode: FitMode,
              rt: TrajectoryOracle,
              cdchits: Sequence[CDCTrackHit],
              fdchits: Sequence[FDCPseudoHit]) -> List[HitInfo]:
        cfg = self.config
        hinfo: List[HitInfo] = []

        if cfg.target_constraint:
            hinfo.append(HitInfo(Wire.target(cfg.target_z, cfg.target_length), 0.0, cfg.target_sigma))

        time_based = fit_mode is FitMode.TIME_BASED

        if cfg.use_cdc:
            cdc_err = cfg.cdc_cell_size / math.sqrt(12.0)
            for hit in cdchits:
                if not time_based:
                    hinfo.append(HitInfo(hit.wire, 0.0, cdc_err))
                    continue
                dist, _, _ = self._tof_corrected(rt, hit.wire, hit.dist, hit.tdrift)
                hinfo.append(HitInfo(hit.wire, dist, cfg.sigma_cdc))

        if cfg.use_fdc_anode:
            fdc_err = cfg.fdc_cell_size / math.sqrt(12.0)
            for hit in fdchits:
                if not time_based:
                    hinfo.append(HitInfo(hit.wire, 0.0, fdc_err))
                    continue
                dist, pos_doca, mom_doca = self._tof_corrected(rt, hit.wire, hit.dist, hit.time)
                if not cfg.use_fdc_cathode:
                    hinfo.append(HitInfo(hit.wire, dist, cfg.sigma_fdc_anode))
                    continue
                u_dist = self._cathode_coordinate(rt, hit, dist, pos_doca, mom_doca)
                hinfo.append(HitInfo(hit.wire, dist, cfg.sigma_fdc_anode, u_dist, cfg.sigma_fdc_cathode))

        return hinfo

    def _tof_corrected(self, rt: TrajectoryOracle, wire: Wire, raw_dist: float, t_drift: float):
        _, s = rt.dist_to_wire(wire)
        pos_doca, mom_doca = rt.last_doca_point()
        # zero momentum or drift time give non-finite distances, dropped later
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            p = np.float64(np.linalg.norm(mom_doca))
            beta = 1.0 / np.sqrt(1.0 + (self.config.tof_mass / p) ** 2)
            tof = np.float64(s) / (beta * SPEED_OF_LIGHT)
            t = np.float64(t_drift)
            dist = np.float64(raw_dist) * ((t - tof) / t)
        return float(dist), pos_doca, mom_doca

    def _cathode_coordinate(self, rt: TrajectoryOracle, hit: FDCPseudoHit, dist: float,
                            pos_doca: np.ndarray, mom_doca: np.ndarray) -> float:
        wire = hit.wire
        shift = unit(np.cross(wire.udir, mom_doca))
        pos_wire = wire.point_at(rt.last_dist_along_wire())
        lr_sign = 1.0 if float(shift @ (pos_doca - pos_wire)) < 0.0 else -1.0
        p = float(np.linalg.norm(mom_doca))
        alpha = math.acos(min(1.0, max(-1.0, mom_doca[2] / p))) if p > 0.0 else math.nan
        u_lorentz = lr_sign * self.lorentz.get_lorentz_correction(
            float(pos_doca[0]), float(pos_doca[1]), float(pos_doca[2]), alpha, dist
        )
        return float(hit.s + u_lorentz)
