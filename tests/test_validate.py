"""
Polyline gating and table acceptance checks.
"""

import math

import pytest

from infrahex.aggregate import AggregationTable
from infrahex.config import Extent
from infrahex.errors import InvalidPolyline, OutOfDomain
from infrahex.hexgrid import HexCellId
from infrahex.validate import TableValidationError, validate_polyline, validate_table


class TestValidatePolyline:
    def test_returns_float_pairs(self):
        coords = validate_polyline([(1, 2), [3, 4.5]])
        assert coords == ((1.0, 2.0), (3.0, 4.5))
        assert all(isinstance(v, float) for pair in coords for v in pair)

    @pytest.mark.parametrize("polyline", [[], [(1.0, 2.0)]])
    def test_too_short(self, polyline):
        with pytest.raises(InvalidPolyline):
            validate_polyline(polyline)

    @pytest.mark.parametrize("bad", [(1.0,), ("a", "b"), None])
    def test_not_a_numeric_pair(self, bad):
        with pytest.raises(InvalidPolyline):
            validate_polyline([(1.0, 2.0), bad])

    def test_nan_rejected(self):
        with pytest.raises(InvalidPolyline):
            validate_polyline([(1.0, 2.0), (math.nan, 2.0)])

    def test_custom_extent(self):
        extent = Extent(0.0, 0.0, 10.0, 10.0)
        with pytest.raises(OutOfDomain):
            validate_polyline([(1.0, 2.0), (11.0, 2.0)], extent)


class TestValidateTable:
    def test_valid_table_passes(self):
        table = AggregationTable({HexCellId(10, 1, 1): 2, HexCellId(10, 2, 1): 1})
        validate_table(table)

    def test_empty_table_passes(self):
        validate_table(AggregationTable({}))

    def test_zero_count_fails(self):
        table = AggregationTable({HexCellId(10, 1, 1): 0})
        with pytest.raises(TableValidationError, match="T1"):
            validate_table(table)

    def test_mixed_zoom_fails(self):
        table = AggregationTable({HexCellId(10, 1, 1): 1, HexCellId(11, 1, 1): 1})
        with pytest.raises(TableValidationError, match="T3"):
            validate_table(table)

    def test_all_failures_reported_together(self):
        table = AggregationTable({HexCellId(10, 1, 1): 0, HexCellId(11, 1, 1): 1})
        with pytest.raises(TableValidationError) as excinfo:
            validate_table(table)
        assert "T1" in str(excinfo.value) and "T3" in str(excinfo.value)
        assert "2 issue(s)" in str(excinfo.value)
