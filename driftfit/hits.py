from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import numpy as np
from scipy.interpolate import RegularGridInterpolator

from driftfit.geometry import Wire

__all__ = [
    "CDCTrackHit",
    "FDCPseudoHit",
    "LorentzDeflections",
    "LorentzDeflectionTable",
]


@dataclass(slots=True)
class CDCTrackHit:
    r"""
    Straw hit of the cylindrical drift chamber.

    Attributes
    ----------
    wire : Wire
        Straw wire geometry.
    dist : float
        Drift distance from the drift time (cm). The time of flight has **not**
        been subtracted from the drift time it was derived from.
    tdrift : float
        Raw drift time (ns).
    hit_id : int
        Caller's identifier, carried through to fit results.
    """
    wire: Wire
    dist: float
    tdrift: float
    hit_id: int = -1


@dataclass(slots=True)
class FDCPseudoHit:
    r"""
    Anode/cathode pseudo-point of a planar drift chamber.

    Attributes
    ----------
    wire : Wire
        Anode wire geometry.
    dist : float
        Drift distance from the anode drift time (cm), TOF not subtracted.
    time : float
        Raw drift time (ns).
    s : float
        Along-wire coordinate from the cathode strips, measured from the wire
        origin (cm), before the Lorentz correction.
    hit_id : int
        Caller's identifier.
    """
    wire: Wire
    dist: float
    time: float
    s: float
    hit_id: int = -1


class LorentzDeflections(Protocol):
    """Along-wire shift of the avalanche position caused by the Lorentz angle."""

    def get_lorentz_correction(self, x: float, y: float, z: float,
                               alpha: float, dist: float) -> float:
        ...


class LorentzDeflectionTable:
    r"""
    Lorentz deflection lookup on a regular :math:`(z, \alpha)` grid.

    The table stores :math:`\tan\theta_L(z,\alpha)`, the tangent of the
    Lorentz angle as a function of the plane position :math:`z` and the track
    polar angle :math:`\alpha` at the chamber. The along-wire correction for a
    drift distance :math:`d` is

    .. math::

        \delta u = d \,\tan\theta_L(z,\alpha).

    Queries outside the grid are clamped to its edges. The transverse position
    does not enter this table; it is accepted to satisfy
    :class:`LorentzDeflections`.

    Parameters
    ----------
    z : sequence of float, shape (nz,)
        Strictly increasing plane positions (cm).
    alpha : sequence of float, shape (na,)
        Strictly increasing polar angles (radians).
    tan_lorentz : array_like, shape (nz, na)
        Tangent of the Lorentz angle at each grid node.
    """
    __slots__ = ("_z", "_alpha", "_interp")

    def __init__(self, z: Sequence[float], alpha: Sequence[float], tan_lorentz) -> None:
        self._z = np.asarray(z, dtype=np.float64)
        self._alpha = np.asarray(alpha, dtype=np.float64)
        values = np.asarray(tan_lorentz, dtype=np.float64)
        if values.shape != (self._z.size, self._alpha.size):
            raise ValueError(
                f"tan_lorentz shape {values.shape} does not match grid "
                f"({self._z.size}, {self._alpha.size})"
            )
        self._interp = RegularGridInterpolator(
            (self._z, self._alpha), values, method="linear", bounds_error=False, fill_value=None
        )

    @classmethod
    def constant(cls, tan_lorentz: float = 0.0) -> "LorentzDeflectionTable":
        """Table with the same Lorentz angle everywhere (``0`` disables the correction)."""
        t = float(tan_lorentz)
        return cls((-1.0e4, 1.0e4), (0.0, math.pi), [[t, t], [t, t]])

    @classmethod
    def from_mapping(cls, block: Mapping[str, Any] | None) -> "LorentzDeflectionTable":
        r"""
        Build from a config block.

        Either ``{"tan_lorentz": <float>}`` for a constant table or
        ``{"z": [...], "alpha": [...], "tan_lorentz": [[...], ...]}`` for a grid.
        An empty or missing block gives a zero correction.
        """
        if not block:
            return cls.constant(0.0)
        tl = block.get("tan_lorentz", 0.0)
        if "z" not in block and "alpha" not in block:
            return cls.constant(float(tl))
        try:
            return cls(block["z"], block["alpha"], tl)
        except KeyError as e:
            raise ValueError(f"Lorentz table block is missing {e.args[0]!r}") from e

    def tan_lorentz(self, z: float, alpha: float) -> float:
        """Interpolated :math:`\\tan\\theta_L` at ``(z, alpha)``, edge-clamped; NaN for non-finite input."""
        if not (math.isfinite(z) and math.isfinite(alpha)):
            return math.nan
        zq = min(max(float(z), self._z[0]), self._z[-1])
        aq = min(max(float(alpha), self._alpha[0]), self._alpha[-1])
        return float(self._interp(np.array([[zq, aq]]))[0])

    def get_lorentz_correction(self, x: float, y: float, z: float,
                               alpha: float, dist: float) -> float:
        return float(dist) * self.tan_lorentz(z, alpha)
