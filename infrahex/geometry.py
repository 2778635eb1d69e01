"""
GeoJSON parsing and WGS84 → British National Grid projection.

Remote sources deliver GeoJSON in WGS84 (lon, lat); the hex grid works in
BNG metres. Multi-part lines keep their parts separate so that no spurious
segment is drawn between the end of one part and the start of the next.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, List, Mapping, Sequence, Tuple, Union

from pyproj import Transformer
from shapely.geometry import LineString, MultiLineString, MultiPolygon, Polygon, shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform

from infrahex.config import BNG_CRS, WGS84_CRS
from infrahex.errors import GeometryError
from infrahex.hexgrid import Coordinate

logger = logging.getLogger(__name__)

Polyline = Tuple[Coordinate, ...]


@lru_cache(maxsize=None)
def _transformer(src: str, dst: str) -> Transformer:
    return Transformer.from_crs(src, dst, always_xy=True)


def to_bng(lon: Sequence[float], lat: Sequence[float]) -> Tuple[List[float], List[float]]:
    """Project WGS84 lon/lat arrays to BNG easting/northing."""
    xs, ys = _transformer(WGS84_CRS, BNG_CRS).transform(lon, lat)
    return list(xs), list(ys)


def project_geometry(geom: BaseGeometry, src: str = WGS84_CRS, dst: str = BNG_CRS) -> BaseGeometry:
    return transform(_transformer(src, dst).transform, geom)


# ---------------------------------------------------------------------------
# Lines
# ---------------------------------------------------------------------------

def _clean_coords(coords: Sequence[Sequence[float]]) -> Polyline:
    # Positions with fewer than two ordinates are dropped; extra ordinates (z)
    # are ignored.
    return tuple((float(c[0]), float(c[1])) for c in coords if len(c) >= 2)


def lines_from_geojson(geometry: Mapping[str, Any]) -> Tuple[Polyline, ...]:
    """
    Return the parts of a GeoJSON LineString / MultiLineString.

    Coordinates are returned unprojected.

    Raises
    ------
    GeometryError
        Missing geometry or any other geometry type.
    """
    if not geometry:
        raise GeometryError("Feature has no geometry")

    gtype = geometry.get("type")
    coords = geometry.get("coordinates") or []
    if gtype == "LineString":
        return (_clean_coords(coords),)
    if gtype == "MultiLineString":
        return tuple(_clean_coords(part) for part in coords)
    raise GeometryError(f"Expected LineString or MultiLineString, got {gtype!r}")


def lines_from_shapely(geom: BaseGeometry) -> Tuple[Polyline, ...]:
    if isinstance(geom, LineString):
        return (_clean_coords(geom.coords),)
    if isinstance(geom, MultiLineString):
        return tuple(_clean_coords(part.coords) for part in geom.geoms)
    raise GeometryError(f"Expected LineString or MultiLineString, got {geom.geom_type!r}")


def project_lines(parts: Sequence[Polyline]) -> Tuple[Polyline, ...]:
    """Project WGS84 (lon, lat) parts to BNG, keeping part boundaries."""
    projected = []
    for part in parts:
        if not part:
            projected.append(())
            continue
        lon, lat = zip(*part)
        xs, ys = to_bng(lon, lat)
        projected.append(tuple(zip(xs, ys)))
    return tuple(projected)


# ---------------------------------------------------------------------------
# Polygons
# ---------------------------------------------------------------------------

def multipolygon_from_geojson(geometry: Mapping[str, Any]) -> MultiPolygon:
    """
    Parse a GeoJSON Polygon or MultiPolygon into a shapely MultiPolygon.

    Raises
    ------
    GeometryError
        Missing geometry, empty rings, or any other geometry type.
    """
    if not geometry:
        raise GeometryError("Feature has no geometry")

    gtype = geometry.get("type")
    if gtype not in ("Polygon", "MultiPolygon"):
        raise GeometryError(f"Expected Polygon or MultiPolygon, got {gtype!r}")
    if not geometry.get("coordinates"):
        raise GeometryError(f"{gtype} has no rings")

    try:
        geom: Union[Polygon, MultiPolygon] = shape(geometry)
    except (ValueError, TypeError, IndexError) as exc:
        raise GeometryError(f"Malformed {gtype}: {exc}") from exc

    if isinstance(geom, Polygon):
        return MultiPolygon([geom])
    return geom
