import math

import pytest

from driftfit.hits import LorentzDeflectionTable


def test_constant_table():
    table = LorentzDeflectionTable.constant(0.2)
    assert table.tan_lorentz(123.0, 0.3) == pytest.approx(0.2)
    assert table.get_lorentz_correction(1.0, 2.0, 200.0, 0.1, 0.4) == pytest.approx(0.08)


def test_grid_interpolates_linearly_and_clamps():
    table = LorentzDeflectionTable((100.0, 300.0), (0.0, 1.0), [[0.0, 0.2], [0.4, 0.6]])
    assert table.tan_lorentz(200.0, 0.5) == pytest.approx(0.3)
    assert table.tan_lorentz(150.0, 0.0) == pytest.approx(0.1)
    # clamped to the grid edges
    assert table.tan_lorentz(-50.0, 2.0) == pytest.approx(0.2)
    assert table.tan_lorentz(900.0, -1.0) == pytest.approx(0.4)
    assert table.get_lorentz_correction(0.0, 0.0, 300.0, 1.0, 0.5) == pytest.approx(0.3)


def test_shape_mismatch_is_rejected():
    with pytest.raises(ValueError, match="shape"):
        LorentzDeflectionTable((0.0, 1.0, 2.0), (0.0, 1.0), [[0.0, 0.0], [0.0, 0.0]])


def test_from_mapping_variants():
    assert LorentzDeflectionTable.from_mapping(None).tan_lorentz(0.0, 0.0) == 0.0
    assert LorentzDeflectionTable.from_mapping({}).tan_lorentz(0.0, 0.0) == 0.0
    assert LorentzDeflectionTable.from_mapping({"tan_lorentz": 0.05}).tan_lorentz(10.0, 1.0) == pytest.approx(0.05)
    grid = LorentzDeflectionTable.from_mapping(
        {"z": [0.0, 10.0], "alpha": [0.0, 1.0], "tan_lorentz": [[0.0, 1.0], [1.0, 2.0]]}
    )
    assert grid.tan_lorentz(5.0, 0.5) == pytest.approx(1.0)
    with pytest.raises(ValueError, match="alpha"):
        LorentzDeflectionTable.from_mapping({"z": [0.0, 10.0], "tan_lorentz": [[0.0], [0.0]]})


def test_non_finite_query_gives_nan():
    table = LorentzDeflectionTable.constant(0.1)
    assert math.isnan(table.tan_lorentz(200.0, math.nan))
    assert math.isnan(table.get_lorentz_correction(0.0, 0.0, math.inf, 0.2, 0.5))
