"""
Hexagonal grid over the British National Grid plane.

Pointy-top hexagons on an axial (q, r) lattice anchored at BNG (0, 0). The
edge length at each zoom level comes from ``ZOOM_EDGE_LENGTHS``; every
function here is a pure conversion between BNG metres and cell ids.

Boundary tie-break
------------------
A point belongs to the cell with the nearest centre (the hex tessellation is
the Voronoi diagram of its centres). Candidates whose squared distances, in
edge-length² units, lie within ``TIE_EPSILON`` of the best are tied and the
lexicographically lowest ``(q, r)`` wins. Points on a shared edge or vertex
are therefore owned by exactly one cell, and the same rule applies wherever a
polyline touches a boundary.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Tuple

import geopandas as gpd
from shapely.geometry import Polygon

from infrahex.config import BNG_CRS, BNG_EXTENT, TIE_EPSILON, ZOOM_EDGE_LENGTHS, Extent
from infrahex.errors import InvalidPolyline, OutOfDomain

logger = logging.getLogger(__name__)

Coordinate = Tuple[float, float]

SQRT3: float = math.sqrt(3.0)

# Vertex offsets in edge-length units, counter-clockwise from the 30° vertex.
_VERTEX_OFFSETS: Tuple[Coordinate, ...] = (
    (SQRT3 / 2.0, 0.5),
    (0.0, 1.0),
    (-SQRT3 / 2.0, 0.5),
    (-SQRT3 / 2.0, -0.5),
    (0.0, -1.0),
    (SQRT3 / 2.0, -0.5),
)

# Axial deltas of the six neighbours, starting east and turning clockwise.
_NEIGHBOR_DELTAS: Tuple[Tuple[int, int], ...] = (
    (1, 0), (1, -1), (0, -1), (-1, 0), (-1, 1), (0, 1),
)

# Corners of the axial rhombus containing a fractional (q, r).
_RHOMBUS_CORNERS: Tuple[Tuple[int, int], ...] = ((0, 0), (1, 0), (0, 1), (1, 1))


# ---------------------------------------------------------------------------
# Cell identifier
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class HexCellId:
    """Cell identifier, ordered by (zoom, q, r)."""

    zoom: int
    q: int
    r: int

    @property
    def token(self) -> str:
        return f"{self.zoom}:{self.q}:{self.r}"

    def __str__(self) -> str:
        return self.token

    @classmethod
    def parse(cls, token: str) -> "HexCellId":
        """Inverse of ``token``."""
        try:
            zoom, q, r = (int(part) for part in token.split(":"))
        except ValueError as exc:
            raise ValueError(f"Malformed hex id: {token!r}") from exc
        edge_length(zoom)
        return cls(zoom, q, r)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def edge_length(zoom: int) -> float:
    """Hexagon edge length (= circumradius) in metres for *zoom*."""
    try:
        return ZOOM_EDGE_LENGTHS[zoom]
    except KeyError:
        raise ValueError(
            f"Unsupported zoom {zoom!r}; valid range is "
            f"{min(ZOOM_EDGE_LENGTHS)}..{max(ZOOM_EDGE_LENGTHS)}"
        ) from None


def apothem(zoom: int) -> float:
    """Centre-to-edge distance in metres; half the spacing between centres."""
    return edge_length(zoom) * SQRT3 / 2.0


def hex_area_m2(zoom: int) -> float:
    s = edge_length(zoom)
    return 1.5 * SQRT3 * s * s


# ---------------------------------------------------------------------------
# Point → cell
# ---------------------------------------------------------------------------

def check_coordinate(coordinate: Coordinate, extent: Extent = BNG_EXTENT) -> Coordinate:
    """Return *coordinate* as floats, or raise if non-finite / out of extent."""
    x, y = float(coordinate[0]), float(coordinate[1])
    if not (math.isfinite(x) and math.isfinite(y)):
        raise InvalidPolyline(f"Non-finite coordinate ({x!r}, {y!r})")
    if not extent.contains(x, y):
        raise OutOfDomain(x, y, extent)
    return x, y


def nearest_axial(xn: float, yn: float) -> Tuple[int, int]:
    """Nearest lattice centre to a point given in edge-length units."""
    rf = yn * 2.0 / 3.0
    qf = xn / SQRT3 - rf / 2.0
    q0 = math.floor(qf)
    r0 = math.floor(rf)

    scored = []
    for dq, dr in _RHOMBUS_CORNERS:
        q, r = q0 + dq, r0 + dr
        dx = xn - SQRT3 * (q + 0.5 * r)
        dy = yn - 1.5 * r
        scored.append((dx * dx + dy * dy, q, r))

    best = min(d2 for d2, _, _ in scored)
    return min((q, r) for d2, q, r in scored if d2 - best < TIE_EPSILON)


def cell_for(
    coordinate: Coordinate,
    zoom: int,
    extent: Extent = BNG_EXTENT,
) -> HexCellId:
    """
    Return the cell containing *coordinate* at *zoom*.

    Raises
    ------
    OutOfDomain
        The coordinate lies outside *extent*.
    InvalidPolyline
        The coordinate is NaN or infinite.
    """
    s = edge_length(zoom)
    x, y = check_coordinate(coordinate, extent)
    q, r = nearest_axial(x / s, y / s)
    return HexCellId(zoom, q, r)


# ---------------------------------------------------------------------------
# Cell → geometry
# ---------------------------------------------------------------------------

def center_of(cell: HexCellId) -> Coordinate:
    s = edge_length(cell.zoom)
    return (s * SQRT3 * (cell.q + 0.5 * cell.r), s * 1.5 * cell.r)


def boundary_of(cell: HexCellId) -> Tuple[Coordinate, ...]:
    """Six vertices, counter-clockwise, starting at the 30° vertex."""
    s = edge_length(cell.zoom)
    cx, cy = center_of(cell)
    return tuple((cx + s * ox, cy + s * oy) for ox, oy in _VERTEX_OFFSETS)


def cell_polygon(cell: HexCellId) -> Polygon:
    return Polygon(boundary_of(cell))


def neighbors_of(cell: HexCellId) -> FrozenSet[HexCellId]:
    return frozenset(
        HexCellId(cell.zoom, cell.q + dq, cell.r + dr) for dq, dr in _NEIGHBOR_DELTAS
    )


# ---------------------------------------------------------------------------
# Hex GeoDataFrame construction
# ---------------------------------------------------------------------------

def build_hex_geodataframe(cells: Iterable[HexCellId]) -> gpd.GeoDataFrame:
    """
    Build a GeoDataFrame with one row per cell, in EPSG:27700.

    Columns: ``hex_id``, ``zoom``, ``q``, ``r``, ``centroid_easting``,
    ``centroid_northing``, ``geometry``. Row order follows *cells*.
    """
    records = []
    for cell in cells:
        cx, cy = center_of(cell)
        records.append(
            {
                "hex_id": cell.token,
                "zoom": cell.zoom,
                "q": cell.q,
                "r": cell.r,
                "centroid_easting": cx,
                "centroid_northing": cy,
                "geometry": cell_polygon(cell),
            }
        )

    if not records:
        return gpd.GeoDataFrame(
            {
                "hex_id": [],
                "zoom": [],
                "q": [],
                "r": [],
                "centroid_easting": [],
                "centroid_northing": [],
            },
            geometry=gpd.GeoSeries([], crs=BNG_CRS),
        )

    gdf = gpd.GeoDataFrame(records, geometry="geometry", crs=BNG_CRS)
    logger.debug("Built hex GeoDataFrame with %d cells.", len(gdf))
    return gdf
