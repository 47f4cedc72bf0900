from __future__ import annotations

import math
from typing import Tuple

import numpy as np

__all__ = [
    "unit",
    "line_point_distances",
    "segment_line_closest",
    "polyline_line_closest",
]

# Below this |sin|^2 between a segment and the wire they are treated as parallel
_PARALLEL_EPS = 1e-14


def unit(v: np.ndarray) -> np.ndarray:
    r"""
    Return :math:`\mathbf{v}/\|\mathbf{v}\|` (a zero vector is returned unchanged).
    """
    v = np.asarray(v, dtype=np.float64)
    n = float(np.linalg.norm(v))
    return v / n if n > 0.0 else v.copy()


def line_point_distances(points: np.ndarray,
                         origin: np.ndarray,
                         udir: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    r"""
    Distances of many points from one infinite line.

    For points :math:`\mathbf{p}_i` and the line :math:`\mathbf{o}+u\,\hat{\mathbf{u}}`,

    .. math::

        u_i = (\mathbf{p}_i-\mathbf{o})\cdot\hat{\mathbf{u}}, \qquad
        d_i = \bigl\|\mathbf{p}_i-\mathbf{o}-u_i\,\hat{\mathbf{u}}\bigr\|.

    Parameters
    ----------
    points : ndarray, shape (N, 3)
    origin : ndarray, shape (3,)
    udir : ndarray, shape (3,)
        Unit direction of the line.

    Returns
    -------
    d : ndarray, shape (N,)
        Perpendicular distances.
    u : ndarray, shape (N,)
        Coordinates of the feet of the perpendiculars along the line.
    """
    w = np.asarray(points, dtype=np.float64) - origin
    u = w @ udir
    perp = w - u[:, None] * udir
    return np.sqrt(np.einsum("ij,ij->i", perp, perp)), u


def segment_line_closest(p0: np.ndarray,
                         p1: np.ndarray,
                         origin: np.ndarray,
                         udir: np.ndarray,
                         t_min: float = 0.0,
                         t_max: float = 1.0) -> Tuple[float, float, float]:
    r"""
    Closest approach between a (possibly extended) segment and an infinite line.

    The segment is :math:`\mathbf{p}(t)=\mathbf{p}_0+t\,(\mathbf{p}_1-\mathbf{p}_0)`
    with :math:`t\in[t_\min,t_\max]`; the line is
    :math:`\mathbf{o}+u\,\hat{\mathbf{u}}` with unit :math:`\hat{\mathbf{u}}`.
    With :math:`\mathbf{d}=\mathbf{p}_1-\mathbf{p}_0`,
    :math:`\mathbf{r}=\mathbf{p}_0-\mathbf{o}`, :math:`a=\mathbf{d}\cdot\mathbf{d}`,
    :math:`b=\mathbf{d}\cdot\hat{\mathbf{u}}`, :math:`e=\mathbf{r}\cdot\hat{\mathbf{u}}`,
    the unconstrained optimum is

    .. math::

        t^\star = \frac{b\,e-\mathbf{d}\cdot\mathbf{r}}{a-b^2},

    which is clipped to the allowed range; :math:`u` is then the foot of the
    perpendicular from :math:`\mathbf{p}(t)`. Pass ``-inf``/``inf`` limits to
    extrapolate the segment.

    Returns
    -------
    t : float
        Segment parameter of the closest point.
    u : float
        Line coordinate of the closest point.
    dist : float
        Distance of closest approach.

    Notes
    -----
    A segment parallel to the line (or of zero length) has no unique optimum;
    :math:`t` is then taken at the end of the allowed range nearest to ``0``.
    """
    d = p1 - p0
    r = p0 - origin
    a = float(d @ d)
    b = float(d @ udir)
    e = float(r @ udir)
    den = a - b * b
    if a <= 0.0 or den <= _PARALLEL_EPS * a:
        t = min(max(0.0, t_min), t_max)
    else:
        t = (b * e - float(d @ r)) / den
        t = min(max(t, t_min), t_max)
    p = r + t * d
    u = float(p @ udir)
    perp = p - u * udir
    return t, u, float(math.sqrt(perp @ perp))


def polyline_line_closest(points: np.ndarray,
                          origin: np.ndarray,
                          udir: np.ndarray) -> Tuple[int, float, float, float]:
    r"""
    Closest approach between a polyline (swim steps) and an infinite line.

    The step nearest to the line (by perpendicular distance) is located
    first; the closest approach is then refined on the segments adjacent to
    that step with :func:`segment_line_closest`. The first segment may be
    extrapolated backwards (:math:`t<0`) and the last one forwards
    (:math:`t>1`), so the DOCA point can lie before the first step.

    Parameters
    ----------
    points : ndarray, shape (N, 3)
        Polyline vertices, :math:`N\ge 2`.
    origin, udir : ndarray, shape (3,)
        Line origin and unit direction.

    Returns
    -------
    k : int
        Index of the segment start (segment ``k`` joins steps ``k`` and ``k+1``).
    t : float
        Parameter along that segment.
    u : float
        Coordinate along the line.
    dist : float
        Distance of closest approach.
    """
    n = points.shape[0]
    if n < 2:
        raise ValueError("polyline_line_closest needs at least two points")
    d_all, _ = line_point_distances(points, origin, udir)
    i = int(np.argmin(d_all))
    best = None
    for k in (i - 1, i):
        if k < 0 or k > n - 2:
            continue
        t_min = -math.inf if k == 0 else 0.0
        t_max = math.inf if k == n - 2 else 1.0
        t, u, dist = segment_line_closest(points[k], points[k + 1], origin, udir, t_min, t_max)
        if best is None or dist < best[3]:
            best = (k, t, u, dist)
    return best
