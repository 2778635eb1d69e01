"""
Input and output validation.

``validate_polyline`` gates every polyline before rasterization.
``validate_table`` runs acceptance checks on a finalized aggregation table
and raises ``TableValidationError`` listing all failed checks if any fail.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Sequence, Tuple

from infrahex.config import BNG_EXTENT, Extent
from infrahex.errors import InfraHexError, InvalidPolyline
from infrahex.hexgrid import Coordinate, check_coordinate

if TYPE_CHECKING:
    from infrahex.aggregate import AggregationTable

logger = logging.getLogger(__name__)


class TableValidationError(InfraHexError):
    """Raised when one or more acceptance checks fail."""


def validate_polyline(
    polyline: Sequence[Coordinate],
    extent: Extent = BNG_EXTENT,
) -> Tuple[Coordinate, ...]:
    """
    Return *polyline* as a tuple of float pairs after validation.

    Raises
    ------
    InvalidPolyline
        Fewer than two coordinates, a coordinate that is not a pair, or a
        non-finite value.
    OutOfDomain
        Any coordinate outside *extent*.
    """
    if len(polyline) < 2:
        raise InvalidPolyline(
            f"Polyline needs at least 2 coordinates, got {len(polyline)}"
        )

    coords = []
    for i, coordinate in enumerate(polyline):
        try:
            coords.append(check_coordinate(coordinate, extent))
        except (TypeError, ValueError, IndexError) as exc:
            raise InvalidPolyline(
                f"Coordinate {i} is not a numeric (x, y) pair: {coordinate!r}"
            ) from exc
    return tuple(coords)


def validate_table(table: "AggregationTable") -> None:
    """
    Run acceptance checks against a finalized table.

    Checks
    ------
    T1  Every count is >= 1.
    T2  Every record is stored under its own cell id.
    T3  All cells share one zoom level.
    T4  Every boundary has six vertices.
    T5  ``records()`` is ordered by count descending, then id ascending.
    """
    failures: List[str] = []
    records = table.records()

    # T1: positive counts
    n_bad = sum(1 for rec in records if rec.count < 1)
    if n_bad:
        failures.append(f"T1: {n_bad} record(s) with count < 1.")

    # T2: keys match records
    mismatched = [cell for cell, rec in table.items() if rec.cell != cell]
    if mismatched:
        failures.append(f"T2: {len(mismatched)} record(s) stored under a foreign id.")

    # T3: single zoom
    zooms = {rec.cell.zoom for rec in records}
    if len(zooms) > 1:
        failures.append(f"T3: Mixed zoom levels in table: {sorted(zooms)}.")

    # T4: hexagon boundaries
    n_bad = sum(1 for rec in records if len(rec.boundary) != 6)
    if n_bad:
        failures.append(f"T4: {n_bad} boundary(ies) without exactly 6 vertices.")

    # T5: ordering
    keys = [(-rec.count, rec.cell) for rec in records]
    if keys != sorted(keys):
        failures.append("T5: Records are not ordered by count desc, id asc.")

    if failures:
        msg = f"Table validation failed ({len(failures)} issue(s)):\n" + "\n".join(
            f"  {f}" for f in failures
        )
        logger.error(msg)
        raise TableValidationError(msg)

    logger.info("All table checks passed (%d cells).", len(records))
