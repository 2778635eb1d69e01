"""
Polyline rasterization onto the hex grid.

The result for a polyline is exactly the set of cells that own at least one
of its points under the ``hexgrid.cell_for`` rule, so a vertex pass or a
stretch running along a shared edge resolves to the same cells ``cell_for``
would pick for those points.

Strategy
--------
Every hexagon edge lies on one of three families of parallel lines, with
unit normals at 0°, 60° and 120° and spacing equal to the apothem. For each
segment, all parameters ``t`` at which it crosses a line of any family are
computed with numpy. Between two consecutive crossings the segment stays
inside a single cell (or on a single shared edge), so sampling ``cell_for``
at every crossing and at every midpoint between crossings recovers the
exact cell set. The work per segment is linear in its length over the
apothem.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, FrozenSet, Sequence, Set

import numpy as np

from infrahex.config import BNG_EXTENT, Extent
from infrahex.errors import FeatureError, InfraHexError, InvalidPolyline
from infrahex.hexgrid import SQRT3, Coordinate, HexCellId, edge_length, nearest_axial
from infrahex.validate import validate_polyline

if TYPE_CHECKING:
    from infrahex.sources import PipelineFeature

logger = logging.getLogger(__name__)

# Edge-line families: rows are unit normals, scaled so that the lines sit at
# integer values (spacing = apothem = sqrt(3)/2 in edge-length units).
_FAMILY_AXES: np.ndarray = np.array(
    [
        [1.0, 0.0],
        [0.5, SQRT3 / 2.0],
        [-0.5, SQRT3 / 2.0],
    ]
) / (SQRT3 / 2.0)


# ---------------------------------------------------------------------------
# Segment traversal
# ---------------------------------------------------------------------------

def _crossing_params(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Sorted, unique ``t`` in (0, 1) where a→b crosses an edge line."""
    u_a = _FAMILY_AXES @ a
    u_b = _FAMILY_AXES @ b

    chunks = []
    for ua, ub in zip(u_a, u_b):
        if ua == ub:
            continue
        lo, hi = (ua, ub) if ua < ub else (ub, ua)
        ks = np.arange(math.ceil(lo), math.floor(hi) + 1, dtype=float)
        if ks.size:
            chunks.append((ks - ua) / (ub - ua))

    if not chunks:
        return np.empty(0)
    ts = np.unique(np.concatenate(chunks))
    return ts[(ts > 0.0) & (ts < 1.0)]


def _segment_cells(a: Coordinate, b: Coordinate, zoom: int) -> Set[HexCellId]:
    """Cells owning at least one point of the closed segment a→b."""
    s = edge_length(zoom)
    an = np.array([a[0] / s, a[1] / s])
    bn = np.array([b[0] / s, b[1] / s])

    start = HexCellId(zoom, *nearest_axial(an[0], an[1]))
    end = HexCellId(zoom, *nearest_axial(bn[0], bn[1]))
    # Hexagons are convex and the tie rule is shared along an edge, so a
    # segment with both ends owned by one cell never leaves it.
    if start == end:
        return {start}

    ts = _crossing_params(an, bn)
    bounds = np.concatenate(([0.0], ts, [1.0]))
    samples = np.concatenate((ts, (bounds[:-1] + bounds[1:]) / 2.0))

    points = an + samples[:, None] * (bn - an)
    cells = {start, end}
    for xn, yn in points:
        cells.add(HexCellId(zoom, *nearest_axial(float(xn), float(yn))))
    return cells


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def rasterize(
    polyline: Sequence[Coordinate],
    zoom: int,
    extent: Extent = BNG_EXTENT,
) -> FrozenSet[HexCellId]:
    """
    Return the distinct cells *polyline* touches at *zoom*.

    The whole polyline is validated before any cell is computed, so a
    rejected polyline never yields a partial result.

    Raises
    ------
    InvalidPolyline
        Fewer than two coordinates or non-finite values.
    OutOfDomain
        Any coordinate outside *extent*.
    """
    edge_length(zoom)
    coords = validate_polyline(polyline, extent)

    cells: Set[HexCellId] = set()
    for a, b in zip(coords, coords[1:]):
        cells |= _segment_cells(a, b, zoom)
    return frozenset(cells)


def rasterize_feature(
    feature: "PipelineFeature",
    zoom: int,
    extent: Extent = BNG_EXTENT,
) -> FrozenSet[HexCellId]:
    """
    Rasterize every part of a (multi-part) feature and union the cells.

    Raises
    ------
    FeatureError
        Wrapping the grid error, with the feature id and source metadata.
    """
    try:
        if not feature.parts:
            raise InvalidPolyline("Feature has no geometry parts")
        cells: Set[HexCellId] = set()
        for part in feature.parts:
            cells |= rasterize(part, zoom, extent)
    except InfraHexError as exc:
        raise FeatureError(feature.feature_id, exc, feature.source) from exc
    return frozenset(cells)
