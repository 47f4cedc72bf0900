from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

import numpy as np

__all__ = ["WireKind", "StrawId", "PlaneWireId", "Wire"]


class WireKind(Enum):
    """Detector a wire belongs to."""
    CDC = "cdc"
    FDC = "fdc"
    TARGET = "target"


@dataclass(frozen=True, slots=True)
class StrawId:
    """Straw identity in the cylindrical chamber (stereo angle in radians)."""
    ring: int
    straw: int
    stereo: float = 0.0


@dataclass(frozen=True, slots=True)
class PlaneWireId:
    """Sense wire identity in the planar chambers (wire angle in radians)."""
    layer: int
    wire: int
    angle: float = 0.0


@dataclass(frozen=True, slots=True, eq=False)
class Wire:
    r"""
    A line-shaped measurement reference: straw, planar sense wire or beam line.

    The wire is the infinite line :math:`\mathbf{o} + u\,\hat{\mathbf{u}}`.
    ``length`` is informational only (the DOCA queries do not clip to it).

    Parameters
    ----------
    origin : array_like, shape (3,)
        Wire centre (cm).
    udir : array_like, shape (3,)
        Wire direction. Normalised on construction.
    kind : WireKind
        Detector tag.
    ident : StrawId or PlaneWireId or None
        Detector-specific identity, only used for diagnostics.
    length : float
        Active length (cm).

    Raises
    ------
    ValueError
        If ``udir`` has zero or non-finite length.

    Notes
    -----
    Instances compare by identity; the fitter relies on wire identity being
    stable across outer iterations, not on value equality.
    """
    origin: np.ndarray
    udir: np.ndarray
    kind: WireKind = WireKind.CDC
    ident: Optional[Union[StrawId, PlaneWireId]] = None
    length: float = field(default=math.inf)

    def __post_init__(self) -> None:
        origin = np.array(self.origin, dtype=np.float64).reshape(3)
        udir = np.array(self.udir, dtype=np.float64).reshape(3)
        norm = float(np.linalg.norm(udir))
        if not (norm > 0.0 and math.isfinite(norm)):
            raise ValueError(f"Wire direction must be a non-zero finite vector, got {udir}")
        udir = udir / norm
        origin.flags.writeable = False
        udir.flags.writeable = False
        object.__setattr__(self, "origin", origin)
        object.__setattr__(self, "udir", udir)

    @classmethod
    def cdc(cls, origin, udir, ring: int, straw: int, stereo: float = 0.0,
            length: float = 150.0) -> "Wire":
        """Straw wire of the cylindrical drift chamber."""
        return cls(origin, udir, WireKind.CDC, StrawId(int(ring), int(straw), float(stereo)), float(length))

    @classmethod
    def fdc(cls, origin, udir, layer: int, wire: int, angle: float = 0.0,
            length: float = math.inf) -> "Wire":
        """Sense wire of a planar drift chamber."""
        return cls(origin, udir, WireKind.FDC, PlaneWireId(int(layer), int(wire), float(angle)), float(length))

    @classmethod
    def target(cls, z: float = 65.0, length: float = 30.0) -> "Wire":
        """Beam line through the target centre, used by the target constraint."""
        return cls((0.0, 0.0, float(z)), (0.0, 0.0, 1.0), WireKind.TARGET, None, float(length))

    @property
    def perp(self) -> float:
        """Transverse distance of the wire origin from the beam axis."""
        return float(math.hypot(self.origin[0], self.origin[1]))

    def point_at(self, u: float) -> np.ndarray:
        """Position a distance ``u`` along the wire from its origin."""
        return self.origin + float(u) * self.udir

    def describe(self) -> str:
        """Short human-readable label for log lines."""
        if isinstance(self.ident, StrawId):
            return (f"CDC: ring={self.ident.ring} straw={self.ident.straw} "
                    f"stereo={self.ident.stereo:.4f}")
        if isinstance(self.ident, PlaneWireId):
            return (f"FDC: layer={self.ident.layer} wire={self.ident.wire} "
                    f"angle={self.ident.angle:.4f}")
        return f"{self.kind.value}: R={self.perp:.3f}"
