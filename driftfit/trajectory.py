from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import numpy as np

from driftfit.config import SwimConfig
from driftfit.geometry import Wire
from driftfit.kernels import polyline_line_closest, unit

logger = logging.getLogger(__name__)

__all__ = ["SwimStep", "TrajectoryOracle", "ReferenceTrajectory", "K_FIELD"]

# GeV/c per (Tesla * cm)
K_FIELD = 0.00299792458

_Z_HAT = np.array([0.0, 0.0, 1.0])
_X_HAT = np.array([1.0, 0.0, 0.0])


@dataclass(slots=True)
class SwimStep:
    r"""
    One point of a swum trajectory together with its local frame.

    The frame is right-handed and orthonormal with :math:`\hat{u}` along the
    momentum:

    .. math::

        \hat{u} = \frac{\mathbf{p}}{\|\mathbf{p}\|},\qquad
        \hat{s} = \frac{\hat{z}\times\hat{u}}{\|\hat{z}\times\hat{u}\|},\qquad
        \hat{t} = \hat{u}\times\hat{s}.

    When the momentum is parallel to :math:`\hat{z}` the cross product
    vanishes and :math:`\hat{s}` falls back to :math:`\hat{x}`.

    Attributes
    ----------
    origin : ndarray, shape (3,)
        Position (cm).
    mom : ndarray, shape (3,)
        Momentum (GeV/c).
    sdir, tdir, udir : ndarray, shape (3,)
        Local basis vectors.
    s : float
        Path length from the start of the trajectory (cm).
    """
    origin: np.ndarray
    mom: np.ndarray
    sdir: np.ndarray
    tdir: np.ndarray
    udir: np.ndarray
    s: float = 0.0

    @classmethod
    def from_position_momentum(cls, position, momentum, s: float = 0.0) -> "SwimStep":
        pos = np.array(position, dtype=np.float64).reshape(3)
        mom = np.array(momentum, dtype=np.float64).reshape(3)
        udir = unit(mom)
        sdir = np.cross(_Z_HAT, udir)
        n = float(np.linalg.norm(sdir))
        sdir = sdir / n if n > 1e-12 else _X_HAT.copy()
        tdir = np.cross(udir, sdir)
        return cls(pos, mom, sdir, tdir, udir, float(s))

    @property
    def vdir(self) -> np.ndarray:
        r"""Second transverse offset direction :math:`\widehat{\hat{s}\times\mathbf{p}}`."""
        return unit(np.cross(self.sdir, self.mom))


class TrajectoryOracle(Protocol):
    """What the fitter needs from a swimmer: a re-swimmable path with DOCA queries."""

    charge: float
    mass: float

    @property
    def n_steps(self) -> int:
        ...

    def swim(self, position, momentum, charge: Optional[float] = None) -> None:
        ...

    def first_step(self) -> SwimStep:
        ...

    def dist_to_wire(self, wire: Wire) -> Tuple[float, float]:
        ...

    def last_doca_point(self) -> Tuple[np.ndarray, np.ndarray]:
        ...

    def last_dist_along_wire(self) -> float:
        ...

    def make_scratch(self) -> "TrajectoryOracle":
        ...


class ReferenceTrajectory:
    r"""
    Discretised helix in a uniform solenoidal field.

    A particle of charge :math:`q` and momentum :math:`\mathbf{p}` in
    :math:`\mathbf{B}=B_z\hat{z}` has a constant :math:`|\mathbf{p}|` and
    :math:`p_z`; with path length :math:`s` and
    :math:`a = q\,k\,B_z/|\mathbf{p}|` (:math:`k` = :data:`K_FIELD`) the
    transverse momentum rotates as

    .. math::

        \begin{aligned}
        p_x(s) &= p_{x0}\cos(as) + p_{y0}\sin(as),\\
        p_y(s) &= p_{y0}\cos(as) - p_{x0}\sin(as),
        \end{aligned}

    and the position follows by integrating :math:`d\mathbf{x}/ds=\mathbf{p}/|\mathbf{p}|`:

    .. math::

        \begin{aligned}
        x(s) &= x_0 + \frac{p_{x0}\sin(as) + p_{y0}\,(1-\cos as)}{a\,|\mathbf{p}|},\\
        y(s) &= y_0 + \frac{p_{y0}\sin(as) - p_{x0}\,(1-\cos as)}{a\,|\mathbf{p}|},\\
        z(s) &= z_0 + p_{z}\,s/|\mathbf{p}|.
        \end{aligned}

    For :math:`|a|\ll 1` (neutral track or ``bz = 0``) the path is a straight line.

    Steps are stored every ``step_size`` until ``max_path_length`` or the first
    step outside the tracking volume (which is kept). A swim that starts
    outside the volume, or with a zero or non-finite momentum, has no steps.

    Parameters
    ----------
    config : SwimConfig
        Field and stepping parameters.
    charge : float
        Particle charge in units of :math:`e`.
    mass : float
        Mass hypothesis (GeV), carried for the caller.

    Notes
    -----
    DOCA queries cache the closest-approach point of the last query, which is
    what :meth:`last_doca_point` and :meth:`last_dist_along_wire` return. One
    instance must not be shared between concurrent fits.
    """
    __slots__ = ("config", "charge", "mass", "_pos", "_mom", "_s",
                 "_doca_pos", "_doca_mom", "_doca_u")

    def __init__(self, config: SwimConfig | None = None, charge: float = 1.0, mass: float = 0.13957018) -> None:
        self.config = config or SwimConfig()
        self.charge = float(charge)
        self.mass = float(mass)
        self._pos = np.empty((0, 3))
        self._mom = np.empty((0, 3))
        self._s = np.empty(0)
        self._reset_doca()

    def _reset_doca(self) -> None:
        self._doca_pos = np.full(3, np.nan)
        self._doca_mom = np.full(3, np.nan)
        self._doca_u = math.nan

    @property
    def n_steps(self) -> int:
        return int(self._s.size)

    @property
    def positions(self) -> np.ndarray:
        """Read-only view of the step positions, shape (n_steps, 3)."""
        v = self._pos.view()
        v.flags.writeable = False
        return v

    def make_scratch(self) -> "ReferenceTrajectory":
        """Fresh trajectory with the same field, charge and mass."""
        return ReferenceTrajectory(self.config, self.charge, self.mass)

    def _inside(self, pos: np.ndarray) -> np.ndarray:
        cfg = self.config
        r = np.hypot(pos[..., 0], pos[..., 1])
        z = pos[..., 2]
        return (r <= cfg.max_radius) & (z >= cfg.z_min) & (z <= cfg.z_max)

    def swim(self, position, momentum, charge: Optional[float] = None) -> None:
        r"""
        Re-swim from ``position`` with ``momentum``, overwriting all steps.

        Parameters
        ----------
        position : array_like, shape (3,)
            Start point (cm).
        momentum : array_like, shape (3,)
            Start momentum (GeV/c).
        charge : float, optional
            New charge; the current one is kept when ``None``.
        """
        if charge is not None:
            self.charge = float(charge)
        self._reset_doca()
        x0 = np.asarray(position, dtype=np.float64).reshape(3)
        p0 = np.asarray(momentum, dtype=np.float64).reshape(3)
        p = float(np.linalg.norm(p0))
        if not (np.all(np.isfinite(x0)) and math.isfinite(p) and p > 0.0) or not self._inside(x0):
            self._pos = np.empty((0, 3))
            self._mom = np.empty((0, 3))
            self._s = np.empty(0)
            return

        cfg = self.config
        n = int(math.floor(cfg.max_path_length / cfg.step_size + 1e-9))
        s = np.arange(n + 1, dtype=np.float64) * cfg.step_size
        a = self.charge * K_FIELD * cfg.bz / p

        if abs(a) < 1e-12:
            pos = x0 + np.outer(s, p0 / p)
            mom = np.broadcast_to(p0, pos.shape).copy()
        else:
            phi = a * s
            c, sn = np.cos(phi), np.sin(phi)
            omc = 2.0 * np.sin(0.5 * phi) ** 2
            ap = a * p
            px0, py0, pz0 = p0
            pos = np.empty((s.size, 3))
            pos[:, 0] = x0[0] + (px0 * sn + py0 * omc) / ap
            pos[:, 1] = x0[1] + (py0 * sn - px0 * omc) / ap
            pos[:, 2] = x0[2] + pz0 * s / p
            mom = np.empty_like(pos)
            mom[:, 0] = px0 * c + py0 * sn
            mom[:, 1] = py0 * c - px0 * sn
            mom[:, 2] = pz0

        outside = np.flatnonzero(~self._inside(pos))
        keep = int(outside[0]) + 1 if outside.size else s.size
        self._pos = pos[:keep]
        self._mom = mom[:keep]
        self._s = s[:keep]

    def first_step(self) -> SwimStep:
        """Copy of the first step with its local frame."""
        if self.n_steps < 1:
            raise ValueError("trajectory has no swim steps")
        return SwimStep.from_position_momentum(self._pos[0], self._mom[0], float(self._s[0]))

    def dist_to_wire(self, wire: Wire) -> Tuple[float, float]:
        r"""
        Distance of closest approach to ``wire`` and path length at that point.

        Returns
        -------
        doca : float
            Distance (cm); ``inf`` when the trajectory has fewer than two steps.
        s : float
            Path length at the DOCA point; negative when the closest approach
            lies behind the first step.
        """
        if self.n_steps < 2:
            self._reset_doca()
            return math.inf, math.nan
        k, t, u, dist = polyline_line_closest(self._pos, wire.origin, wire.udir)
        p0, p1 = self._pos[k], self._pos[k + 1]
        self._doca_pos = p0 + t * (p1 - p0)
        tm = min(max(t, 0.0), 1.0)
        self._doca_mom = self._mom[k] + tm * (self._mom[k + 1] - self._mom[k])
        self._doca_u = u
        return dist, float(self._s[k] + t * (self._s[k + 1] - self._s[k]))

    def last_doca_point(self) -> Tuple[np.ndarray, np.ndarray]:
        """Position and momentum at the DOCA point of the last :meth:`dist_to_wire` call."""
        return self._doca_pos.copy(), self._doca_mom.copy()

    def last_dist_along_wire(self) -> float:
        """Coordinate along the wire (from its origin) of the last DOCA point."""
        return float(self._doca_u)
