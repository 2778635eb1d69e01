"""
Output writers: GeoParquet, Parquet, GeoJSON and summary statistics, for both
the per-cell counts and the per-pipe cell lists.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

from infrahex.aggregate import AggregationTable, PipeTable
from infrahex.config import OUTPUT_DIR, SUMMARY_TOP_N, WGS84_CRS, AreaConfig
from infrahex.hexgrid import edge_length, hex_area_m2

if TYPE_CHECKING:
    from infrahex.boundary import BuiltUpArea
    from infrahex.pipeline import RunResult

logger = logging.getLogger(__name__)


class _SafeEncoder(json.JSONEncoder):
    """Convert numpy scalars to plain JSON-serialisable types."""
    def default(self, obj):
        if hasattr(obj, "item"):   # numpy scalar (int64, float64, uint32, …)
            return obj.item()
        return super().default(obj)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _area_output_dir(area: AreaConfig, root: Optional[Path] = None) -> Path:
    d = (root or OUTPUT_DIR) / area.slug
    d.mkdir(parents=True, exist_ok=True)
    return d


# ---------------------------------------------------------------------------
# Parquet
# ---------------------------------------------------------------------------

def write_geoparquet(
    table: AggregationTable,
    area: AreaConfig,
    zoom: int,
    root: Optional[Path] = None,
) -> Path:
    """Write cell counts with hexagon polygons (EPSG:27700) to GeoParquet."""
    path = _area_output_dir(area, root) / f"hex_summary_z{zoom}.parquet"
    gdf = table.to_geodataframe()
    gdf.to_parquet(path, index=False)
    logger.info("[%s] GeoParquet written: %s (%d rows)", area.slug, path, len(gdf))
    return path


def write_parquet(
    table: AggregationTable,
    area: AreaConfig,
    zoom: int,
    root: Optional[Path] = None,
) -> Path:
    """Write cell counts to plain Parquet (no geometry column)."""
    path = _area_output_dir(area, root) / f"hex_summary_z{zoom}_nogeom.parquet"
    df = table.to_dataframe()
    df.to_parquet(path, index=False, engine="pyarrow")
    logger.info("[%s] Parquet written: %s (%d rows)", area.slug, path, len(df))
    return path


def write_pipes_geoparquet(
    pipes: PipeTable,
    area: AreaConfig,
    zoom: int,
    root: Optional[Path] = None,
) -> Path:
    """Write one row per pipe with its cell tokens and merged hexagons (EPSG:27700)."""
    path = _area_output_dir(area, root) / f"pipes_z{zoom}.parquet"
    gdf = pipes.to_geodataframe()
    gdf.to_parquet(path, index=False)
    logger.info("[%s] Pipe GeoParquet written: %s (%d rows)", area.slug, path, len(gdf))
    return path


def write_pipes_parquet(
    pipes: PipeTable,
    area: AreaConfig,
    zoom: int,
    root: Optional[Path] = None,
) -> Path:
    path = _area_output_dir(area, root) / f"pipes_z{zoom}_nogeom.parquet"
    df = pipes.to_dataframe()
    df.to_parquet(path, index=False, engine="pyarrow")
    logger.info("[%s] Pipe Parquet written: %s (%d rows)", area.slug, path, len(df))
    return path


# ---------------------------------------------------------------------------
# GeoJSON
# ---------------------------------------------------------------------------

def write_geojson(
    table: AggregationTable,
    area: AreaConfig,
    zoom: int,
    root: Optional[Path] = None,
) -> Path:
    """
    Write cell counts to GeoJSON.

    Hexagons are reprojected to WGS-84 so the file is in standard lon/lat
    coordinates, as RFC 7946 requires.
    """
    path = _area_output_dir(area, root) / f"hex_summary_z{zoom}.geojson"

    if len(table) == 0:
        logger.warning("[%s] Empty table; skipping GeoJSON.", area.slug)
        return path

    gdf = table.to_geodataframe().to_crs(WGS84_CRS)
    gdf.to_file(path, driver="GeoJSON")
    logger.info("[%s] GeoJSON written: %s (%d features)", area.slug, path, len(gdf))
    return path


def write_boundary_geojson(
    bua: BuiltUpArea,
    area: AreaConfig,
    filename: str = "boundary.geojson",
    root: Optional[Path] = None,
) -> Path:
    """Write the built-up-area outline the cells were trimmed to (WGS-84)."""
    path = _area_output_dir(area, root) / filename
    collection = {"type": "FeatureCollection", "features": [bua.to_geojson_feature()]}
    with open(path, "w") as f:
        json.dump(collection, f, cls=_SafeEncoder)
    logger.info("[%s] Boundary written: %s", area.slug, path)
    return path


# ---------------------------------------------------------------------------
# Summary statistics
# ---------------------------------------------------------------------------

def build_summary(result: "RunResult", area: AreaConfig) -> Dict[str, Any]:
    """Band-free summary: totals, count distribution, top cells, errors."""
    df = result.table.to_dataframe()

    desc: Dict[str, Any] = {}
    if len(df):
        desc = {k: round(float(v), 6) for k, v in df["pipe_count"].describe().items()}

    top = df.head(SUMMARY_TOP_N)[["hex_id", "pipe_count"]].to_dict(orient="records")
    error_kinds = Counter(type(e).__name__ for e in result.errors)

    return {
        "area": area.name,
        "slug": area.slug,
        "zoom": result.zoom,
        "edge_length_m": edge_length(result.zoom),
        "hex_area_m2": round(hex_area_m2(result.zoom), 3),
        "total_cells": int(len(df)),
        "total_hits": int(result.table.total_hits()),
        "features_fetched": result.n_fetched,
        "features_ingested": result.n_ingested,
        "duplicate_features": result.n_duplicates,
        "pipes_written": len(result.pipes),
        "errors": {"total": len(result.errors), "by_kind": dict(error_kinds)},
        "pipe_count_stats": desc,
        f"top{SUMMARY_TOP_N}_by_count": top,
        "elapsed_s": round(result.elapsed_s, 3),
    }


def write_summary(
    result: "RunResult",
    area: AreaConfig,
    filename: str = "summary.json",
    root: Optional[Path] = None,
) -> Path:
    """Write the JSON summary for one area run."""
    path = _area_output_dir(area, root) / filename
    summary = build_summary(result, area)

    with open(path, "w") as f:
        json.dump(summary, f, indent=2, cls=_SafeEncoder)

    logger.info("[%s] Summary written: %s", area.slug, path)
    if summary[f"top{SUMMARY_TOP_N}_by_count"]:
        best = summary[f"top{SUMMARY_TOP_N}_by_count"][0]
        logger.info("[%s] Top hex: %s with %d pipe(s)", area.slug, best["hex_id"], best["pipe_count"])
    return path
