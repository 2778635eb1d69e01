"""
Shared fixtures.

All fixtures work offline: remote APIs are replaced by in-process fakes and
outputs are redirected to pytest's tmp_path.
"""

import pytest
import requests

from infrahex.config import AreaConfig
from infrahex.hexgrid import HexCellId, center_of
from infrahex.sources import PipelineFeature

ZOOM = 10


class FakeResponse:
    def __init__(self, payload, status_error=None):
        self._payload = payload
        self._status_error = status_error

    def raise_for_status(self):
        if self._status_error is not None:
            raise self._status_error

    def json(self):
        return self._payload


class FakeSession:
    """Stands in for ``requests.Session``; ``handler(params)`` builds each response."""

    def __init__(self, handler):
        self.headers = {}
        self.calls = []
        self._handler = handler

    def get(self, url, params=None, timeout=None):
        self.calls.append(dict(params or {}))
        return self._handler(params or {})


def opendatasoft_handler(records, fail_offsets=()):
    """Serve *records* the way the OpenDataSoft records endpoint pages them."""
    def handler(params):
        offset = int(params.get("offset", 0))
        limit = int(params["limit"])
        if offset in fail_offsets:
            raise requests.ConnectionError(f"boom at {offset}")
        return FakeResponse(
            {"total_count": len(records), "results": records[offset:offset + limit]}
        )
    return handler


def cadent_record(asset_id, coords, **extra):
    record = {
        "geo_shape": {
            "type": "Feature",
            "geometry": {"type": "LineString", "coordinates": coords},
            "properties": {},
        },
        "type": "main",
        "material": "PE",
        "pressure": "LP",
    }
    if asset_id is not None:
        record["asset_id"] = asset_id
    record.update(extra)
    return record


def feature(feature_id, *parts):
    return PipelineFeature(feature_id=feature_id, parts=tuple(tuple(p) for p in parts))


@pytest.fixture
def zoom():
    return ZOOM


@pytest.fixture
def row_cells():
    """Three horizontally adjacent cells in North London at zoom 10."""
    return [HexCellId(ZOOM, q, 121) for q in (240, 241, 242)]


@pytest.fixture
def row_feature(row_cells):
    """A pipe running from the centre of the first row cell to the last."""
    return feature("pipe-row", (center_of(row_cells[0]), center_of(row_cells[-1])))


@pytest.fixture
def test_area():
    return AreaConfig(
        name="Test Area",
        slug="test_area",
        bboxes=[(51.54, -0.20, 51.58, 0.00)],
        zoom=ZOOM,
    )


@pytest.fixture
def output_dir(tmp_path, monkeypatch):
    out = tmp_path / "outputs"
    monkeypatch.setattr("infrahex.io.OUTPUT_DIR", out)
    return out


@pytest.fixture(autouse=True)
def no_api_key(monkeypatch):
    monkeypatch.delenv("CADENT_API_KEY", raising=False)
