import math

import numpy as np
import pytest

from driftfit.geometry import PlaneWireId, StrawId, Wire, WireKind


def test_direction_is_normalised_and_frozen():
    w = Wire.cdc((3.0, 4.0, 0.0), (0.0, 0.0, 2.0), ring=5, straw=12, stereo=0.1)
    assert np.allclose(w.udir, [0.0, 0.0, 1.0])
    assert w.kind is WireKind.CDC
    assert w.ident == StrawId(5, 12, 0.1)
    assert w.perp == pytest.approx(5.0)
    with pytest.raises(ValueError):
        w.origin[0] = 1.0
    with pytest.raises(ValueError):
        w.udir[2] = 0.5


@pytest.mark.parametrize("udir", [(0.0, 0.0, 0.0), (np.nan, 1.0, 0.0), (np.inf, 0.0, 0.0)])
def test_degenerate_direction_is_rejected(udir):
    with pytest.raises(ValueError):
        Wire((0.0, 0.0, 0.0), udir)


def test_wires_compare_by_identity():
    a = Wire.fdc((0.0, 1.0, 200.0), (1.0, 0.0, 0.0), layer=2, wire=40)
    b = Wire.fdc((0.0, 1.0, 200.0), (1.0, 0.0, 0.0), layer=2, wire=40)
    assert a == a
    assert a != b
    assert len({a, b}) == 2


def test_point_at_and_describe():
    w = Wire.fdc((1.0, 0.0, 180.0), (0.0, 3.0, 0.0), layer=4, wire=7, angle=math.pi / 2)
    assert np.allclose(w.point_at(2.5), [1.0, 2.5, 180.0])
    assert w.ident == PlaneWireId(4, 7, math.pi / 2)
    assert w.describe() == "FDC: layer=4 wire=7 angle=1.5708"
    assert Wire.cdc((0.0, 10.0, 0.0), (0.0, 0.0, 1.0), 1, 2).describe().startswith("CDC: ring=1 straw=2")


def test_target_wire_is_the_beam_line():
    t = Wire.target(z=70.0, length=20.0)
    assert t.kind is WireKind.TARGET
    assert t.ident is None
    assert t.perp == 0.0
    assert np.allclose(t.origin, [0.0, 0.0, 70.0])
    assert np.allclose(t.udir, [0.0, 0.0, 1.0])
    assert t.length == 20.0
    assert t.describe() == "target: R=0.000"
