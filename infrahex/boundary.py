"""
Area boundaries: ONS built-up areas and the cell boundary filter.

Sources are queried by bounding box, which over-selects around irregular
areas. ``BoundaryFilter`` trims an aggregated table back to the cells whose
hexagon actually intersects the area outline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Set

import requests
from shapely.geometry import MultiPolygon, mapping
from shapely.geometry.base import BaseGeometry
from shapely.prepared import prep
from shapely.strtree import STRtree

from infrahex.config import BUA_BASE_URL, HTTP_TIMEOUT_S
from infrahex.errors import ApiError, GeometryError
from infrahex.geometry import multipolygon_from_geojson, project_geometry
from infrahex.hexgrid import HexCellId, cell_polygon
from infrahex.sources import BBox

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Built-up areas
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BuiltUpArea:
    """One ONS 2024 built-up area; ``geometry`` is WGS84."""

    object_id: int
    code: str
    name: str
    name_welsh: Optional[str]
    area_hectares: Optional[float]
    geometry: MultiPolygon

    def bbox(self) -> BBox:
        min_lon, min_lat, max_lon, max_lat = self.geometry.bounds
        return BBox(min_lat, min_lon, max_lat, max_lon)

    def to_bng(self) -> BaseGeometry:
        return project_geometry(self.geometry)

    def to_geojson_feature(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {
            "object_id": self.object_id,
            "code": self.code,
            "name": self.name,
        }
        if self.name_welsh:
            properties["name_welsh"] = self.name_welsh
        if self.area_hectares is not None:
            properties["area_hectares"] = self.area_hectares
        return {
            "type": "Feature",
            "geometry": mapping(self.geometry),
            "properties": properties,
        }


def parse_bua_feature(feature: Mapping[str, Any]) -> BuiltUpArea:
    """
    Build a ``BuiltUpArea`` from one FeatureServer GeoJSON feature.

    Raises
    ------
    GeometryError
        Missing properties, missing ``OBJECTID`` or unusable geometry.
    """
    props = feature.get("properties")
    if not props:
        raise GeometryError("Feature has no properties")

    object_id = props.get("OBJECTID")
    if object_id is None:
        raise GeometryError("Missing OBJECTID")

    name_welsh = (props.get("BUA24NMW") or "").strip() or None
    area = props.get("areahectar")

    return BuiltUpArea(
        object_id=int(object_id),
        code=props.get("BUA24CD") or "",
        name=props.get("BUA24NM") or "",
        name_welsh=name_welsh,
        area_hectares=float(area) if area is not None else None,
        geometry=multipolygon_from_geojson(feature.get("geometry") or {}),
    )


class BuiltUpAreaClient:
    """Client for the ONS Built-Up Areas 2024 FeatureServer."""

    def __init__(
        self,
        base_url: str = BUA_BASE_URL,
        session: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_S,
    ) -> None:
        self.base_url = base_url
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch_by_object_id(self, object_id: int) -> BuiltUpArea:
        """
        Raises
        ------
        ApiError
            Request failure, or no area with that id.
        """
        params = {"where": f"OBJECTID={int(object_id)}", "outFields": "*", "f": "geojson"}
        try:
            response = self.session.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            collection = response.json()
        except requests.RequestException as exc:
            raise ApiError(f"Built-up area request failed: {exc}") from exc
        except ValueError as exc:
            raise ApiError(f"Built-up area service returned invalid JSON: {exc}") from exc

        features = collection.get("features") or []
        if not features:
            raise ApiError(f"No built-up area found with OBJECTID: {object_id}")

        area = parse_bua_feature(features[0])
        logger.info(
            "Loaded built-up area %s (%s) with %d polygon(s).",
            area.name,
            area.code,
            len(area.geometry.geoms),
        )
        return area


# ---------------------------------------------------------------------------
# Cell filter
# ---------------------------------------------------------------------------

class BoundaryFilter:
    """Keeps cells whose hexagon intersects a BNG boundary geometry."""

    def __init__(self, boundary: BaseGeometry) -> None:
        if boundary.is_empty:
            raise GeometryError("Boundary geometry is empty")
        self.boundary = boundary
        self._prepared = prep(boundary)

    def valid_cell_ids(self, cells: Iterable[HexCellId]) -> Set[HexCellId]:
        cells = list(cells)
        if not cells:
            return set()

        polygons = [cell_polygon(cell) for cell in cells]
        tree = STRtree(polygons)
        candidates = tree.query(self.boundary)
        keep = {
            cells[int(i)] for i in candidates if self._prepared.intersects(polygons[int(i)])
        }
        logger.debug("Boundary filter kept %d of %d cell(s).", len(keep), len(cells))
        return keep
