"""
Per-cell feature counts, and the per-pipe cell lists they were built from.

``Aggregator.ingest`` is safe to call from many worker threads. Counts are
split across lock-striped shards (a cell always hashes to the same shard),
so two ingests only contend when they touch cells in the same shard. A
separate condition guards the processed-id set, the finalized flag and the
number of ingests in flight; ``finalize`` flips the flag and then waits for
in-flight ingests to drain before reading the shards.

Counts are plain increments over sets of cells, so the finalized table does
not depend on ingestion order or thread interleaving.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import (
    TYPE_CHECKING,
    Dict,
    Hashable,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)

import geopandas as gpd
import pandas as pd
from shapely.geometry import MultiPolygon, Polygon
from shapely.ops import unary_union

from infrahex.config import AGGREGATOR_SHARDS, BNG_CRS, OUTPUT_COLUMNS, PIPE_COLUMNS
from infrahex.errors import AlreadyFinalized
from infrahex.hexgrid import (
    Coordinate,
    HexCellId,
    boundary_of,
    build_hex_geodataframe,
    cell_polygon,
    center_of,
)

if TYPE_CHECKING:
    from infrahex.sources import PipelineFeature

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CellRecord:
    cell: HexCellId
    count: int
    boundary: Tuple[Coordinate, ...]


class AggregationTable(Mapping[HexCellId, CellRecord]):
    """
    Read-only mapping ``HexCellId → CellRecord``.

    ``records()`` is ordered by count descending, then cell id ascending.
    """

    def __init__(self, counts: Mapping[HexCellId, int]) -> None:
        ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        self._records: Dict[HexCellId, CellRecord] = {
            cell: CellRecord(cell, count, boundary_of(cell)) for cell, count in ordered
        }

    def __getitem__(self, cell: HexCellId) -> CellRecord:
        return self._records[cell]

    def __iter__(self) -> Iterator[HexCellId]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"AggregationTable({len(self)} cells, {self.total_hits()} hits)"

    def records(self) -> List[CellRecord]:
        return list(self._records.values())

    def counts(self) -> Dict[HexCellId, int]:
        return {cell: rec.count for cell, rec in self._records.items()}

    def total_hits(self) -> int:
        return sum(rec.count for rec in self._records.values())

    def filter(self, cell_ids: Iterable[HexCellId]) -> "AggregationTable":
        """Return a new table restricted to *cell_ids*."""
        keep = set(cell_ids)
        return AggregationTable(
            {cell: rec.count for cell, rec in self._records.items() if cell in keep}
        )

    # ------------------------------------------------------------------
    # Columnar views
    # ------------------------------------------------------------------

    def to_dataframe(self) -> pd.DataFrame:
        """One row per cell, columns in ``OUTPUT_COLUMNS`` order, no geometry."""
        rows = []
        for rec in self._records.values():
            cx, cy = center_of(rec.cell)
            rows.append(
                {
                    "hex_id": rec.cell.token,
                    "zoom": rec.cell.zoom,
                    "q": rec.cell.q,
                    "r": rec.cell.r,
                    "pipe_count": rec.count,
                    "centroid_easting": cx,
                    "centroid_northing": cy,
                }
            )
        df = pd.DataFrame(rows, columns=OUTPUT_COLUMNS)
        return df.astype({"zoom": "int64", "q": "int64", "r": "int64", "pipe_count": "uint32"})

    def to_geodataframe(self) -> gpd.GeoDataFrame:
        """``to_dataframe`` plus hexagon polygons, in EPSG:27700."""
        gdf = build_hex_geodataframe(self._records)
        gdf["pipe_count"] = pd.Series(
            [rec.count for rec in self._records.values()], index=gdf.index, dtype="uint32"
        )
        return gdf[OUTPUT_COLUMNS + ["geometry"]]


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------

class _Shard:
    __slots__ = ("lock", "counts")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.counts: Dict[HexCellId, int] = {}


class Aggregator:
    """Accumulates distinct-feature counts per cell."""

    def __init__(self, n_shards: int = AGGREGATOR_SHARDS) -> None:
        if n_shards < 1:
            raise ValueError("n_shards must be >= 1")
        self._shards = [_Shard() for _ in range(n_shards)]
        self._state = threading.Condition()
        self._seen: Set[Hashable] = set()
        self._in_flight = 0
        self._table: Optional[AggregationTable] = None

    @property
    def finalized(self) -> bool:
        with self._state:
            return self._table is not None

    @property
    def n_ingested(self) -> int:
        with self._state:
            return len(self._seen)

    def ingest(self, polyline_id: Hashable, cells: Iterable[HexCellId]) -> bool:
        """
        Add 1 to every distinct cell in *cells*.

        Returns ``False`` without touching any count when *polyline_id* was
        already ingested.

        Raises
        ------
        AlreadyFinalized
            ``finalize`` has been called.
        """
        cell_set = frozenset(cells)

        with self._state:
            if self._table is not None:
                raise AlreadyFinalized(
                    f"Cannot ingest {polyline_id!r}: aggregator already finalized"
                )
            if polyline_id in self._seen:
                logger.debug("Skipping repeat ingest of %r.", polyline_id)
                return False
            self._seen.add(polyline_id)
            self._in_flight += 1

        try:
            n = len(self._shards)
            for cell in cell_set:
                shard = self._shards[hash(cell) % n]
                with shard.lock:
                    shard.counts[cell] = shard.counts.get(cell, 0) + 1
        finally:
            with self._state:
                self._in_flight -= 1
                self._state.notify_all()
        return True

    def finalize(self) -> AggregationTable:
        """
        Freeze the counts and return the table.

        Raises
        ------
        AlreadyFinalized
            On any call after the first; the existing table is untouched.
        """
        with self._state:
            if self._table is not None:
                raise AlreadyFinalized("Aggregator already finalized")
            # Mark finalized first so no new ingest can start while we wait.
            self._table = AggregationTable({})
            self._state.wait_for(lambda: self._in_flight == 0)

            merged: Dict[HexCellId, int] = {}
            for shard in self._shards:
                with shard.lock:
                    merged.update(shard.counts)
            self._table = AggregationTable(merged)

        logger.info(
            "Aggregator finalized: %d feature(s) → %d cell(s), %d hit(s).",
            len(self._seen),
            len(self._table),
            self._table.total_hits(),
        )
        return self._table


# ---------------------------------------------------------------------------
# Per-pipe cell lists
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipeRecord:
    feature_id: str
    cells: Tuple[HexCellId, ...]
    asset_id: Optional[str] = None
    pipe_type: Optional[str] = None
    material: Optional[str] = None
    pressure: Optional[str] = None

    @classmethod
    def from_feature(cls, feature: "PipelineFeature", cells: Iterable[HexCellId]) -> "PipeRecord":
        return cls(
            feature_id=feature.feature_id,
            cells=tuple(sorted(set(cells))),
            asset_id=feature.asset_id,
            pipe_type=feature.pipe_type,
            material=feature.material,
            pressure=feature.pressure,
        )


class PipeTable(Sequence[PipeRecord]):
    """
    The cells each ingested pipe touches, one record per pipe.

    Records are ordered by feature id, so the table does not depend on the
    order in which worker threads finished.
    """

    def __init__(self, records: Iterable[PipeRecord]) -> None:
        self._records: List[PipeRecord] = sorted(records, key=lambda rec: rec.feature_id)

    def __getitem__(self, index):
        return self._records[index]

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"PipeTable({len(self)} pipes)"

    def filter(self, cell_ids: Iterable[HexCellId]) -> "PipeTable":
        """Restrict every pipe to *cell_ids*; pipes left with no cell are dropped."""
        keep = set(cell_ids)
        trimmed = []
        for rec in self._records:
            cells = tuple(cell for cell in rec.cells if cell in keep)
            if cells:
                trimmed.append(replace(rec, cells=cells))
        return PipeTable(trimmed)

    def to_dataframe(self) -> pd.DataFrame:
        """One row per pipe, columns in ``PIPE_COLUMNS`` order; ``hex_ids`` is a list of tokens."""
        rows = [
            {
                "feature_id": rec.feature_id,
                "asset_id": rec.asset_id,
                "pipe_type": rec.pipe_type,
                "material": rec.material,
                "pressure": rec.pressure,
                "n_cells": len(rec.cells),
                "hex_ids": [cell.token for cell in rec.cells],
            }
            for rec in self._records
        ]
        df = pd.DataFrame(rows, columns=PIPE_COLUMNS)
        return df.astype({"n_cells": "uint32"})

    def to_geodataframe(self) -> gpd.GeoDataFrame:
        """``to_dataframe`` plus the union of each pipe's hexagons as a MultiPolygon (EPSG:27700)."""
        geoms = []
        for rec in self._records:
            merged = unary_union([cell_polygon(cell) for cell in rec.cells])
            if isinstance(merged, Polygon):
                merged = MultiPolygon([merged])
            geoms.append(merged)
        return gpd.GeoDataFrame(
            self.to_dataframe(), geometry=gpd.GeoSeries(geoms, crs=BNG_CRS)
        )
