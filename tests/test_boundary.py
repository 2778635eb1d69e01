"""
Built-up-area parsing, the ONS client, and the boundary cell filter.
"""

import pytest
from shapely.geometry import Polygon, box

from conftest import FakeResponse, FakeSession
from infrahex.boundary import BoundaryFilter, BuiltUpAreaClient, parse_bua_feature
from infrahex.errors import ApiError, GeometryError
from infrahex.hexgrid import HexCellId, center_of

SQUARE = [[[-0.2, 51.54], [0.0, 51.54], [0.0, 51.58], [-0.2, 51.58], [-0.2, 51.54]]]


def bua_feature(**props):
    properties = {
        "OBJECTID": 1310,
        "BUA24CD": "E63008401",
        "BUA24NM": "Manchester",
        "BUA24NMW": " ",
        "areahectar": 11582.5,
    }
    properties.update(props)
    return {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": SQUARE},
        "properties": properties,
    }


class TestParseBuaFeature:
    def test_fields(self):
        area = parse_bua_feature(bua_feature())
        assert area.object_id == 1310
        assert area.code == "E63008401"
        assert area.name == "Manchester"
        assert area.name_welsh is None
        assert area.area_hectares == pytest.approx(11582.5)
        assert len(area.geometry.geoms) == 1

    def test_bbox(self):
        bbox = parse_bua_feature(bua_feature()).bbox()
        assert (bbox.min_lat, bbox.min_lon, bbox.max_lat, bbox.max_lon) == pytest.approx(
            (51.54, -0.2, 51.58, 0.0)
        )

    def test_geojson_feature_round_trip(self):
        area = parse_bua_feature(bua_feature(BUA24NMW="Manceinion"))
        out = area.to_geojson_feature()
        assert out["properties"]["name_welsh"] == "Manceinion"
        assert out["geometry"]["type"] == "MultiPolygon"
        assert parse_bua_feature(
            {"geometry": out["geometry"], "properties": {"OBJECTID": 1}}
        ).geometry.equals(area.geometry)

    def test_to_bng(self):
        min_x, min_y, max_x, max_y = parse_bua_feature(bua_feature()).to_bng().bounds
        assert 515_000 < min_x < max_x < 545_000
        assert 180_000 < min_y < max_y < 190_000

    def test_missing_object_id(self):
        feature = bua_feature()
        del feature["properties"]["OBJECTID"]
        with pytest.raises(GeometryError):
            parse_bua_feature(feature)

    def test_missing_properties(self):
        with pytest.raises(GeometryError):
            parse_bua_feature({"geometry": {"type": "Polygon", "coordinates": SQUARE}})


class TestBuiltUpAreaClient:
    def test_fetch_by_object_id(self):
        session = FakeSession(lambda params: FakeResponse({"features": [bua_feature()]}))
        area = BuiltUpAreaClient(session=session).fetch_by_object_id(1310)
        assert area.name == "Manchester"
        assert session.calls[0]["where"] == "OBJECTID=1310"
        assert session.calls[0]["f"] == "geojson"

    def test_unknown_id(self):
        session = FakeSession(lambda params: FakeResponse({"features": []}))
        with pytest.raises(ApiError):
            BuiltUpAreaClient(session=session).fetch_by_object_id(999999)


class TestBoundaryFilter:
    def test_keeps_only_intersecting_cells(self):
        inside = HexCellId(10, 240, 121)
        outside = HexCellId(10, 250, 121)
        cx, cy = center_of(inside)
        flt = BoundaryFilter(box(cx - 10, cy - 10, cx + 10, cy + 10))
        assert flt.valid_cell_ids([inside, outside]) == {inside}

    def test_touching_cell_is_kept(self):
        cell = HexCellId(10, 240, 121)
        cx, cy = center_of(cell)
        # Boundary starts just inside the east edge of the cell.
        flt = BoundaryFilter(box(cx + 880, cy - 10, cx + 5000, cy + 10))
        assert cell in flt.valid_cell_ids([cell])

    def test_empty_input(self):
        assert BoundaryFilter(box(0, 0, 10, 10)).valid_cell_ids([]) == set()

    def test_empty_boundary_rejected(self):
        with pytest.raises(GeometryError):
            BoundaryFilter(Polygon())

    def test_projected_built_up_area(self):
        area = parse_bua_feature(bua_feature())
        flt = BoundaryFilter(area.to_bng())
        london = HexCellId(10, 240, 121)
        far_away = HexCellId(10, 100, 300)
        assert flt.valid_cell_ids([london, far_away]) == {london}
