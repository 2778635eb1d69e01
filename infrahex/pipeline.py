"""
Main pipeline orchestrator.

Ties together source fetch → rasterize → aggregate → boundary filter → output.
Called by the CLI (cli.py) and can also be imported directly.

Features are handed to a thread pool as soon as each bounding box has been
fetched; every task rasterizes one feature and ingests its cells. A feature
that fails is logged and recorded in ``RunResult.errors`` without stopping
the batch. The aggregator is finalized only after every submitted task has
completed.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from infrahex.aggregate import AggregationTable, Aggregator, PipeRecord, PipeTable
from infrahex.boundary import BoundaryFilter, BuiltUpArea, BuiltUpAreaClient
from infrahex.config import BNG_EXTENT, DEFAULT_WORKERS, AreaConfig, Extent
from infrahex.errors import FeatureError, InfraHexError
from infrahex.hexgrid import HexCellId, edge_length
from infrahex.io import (
    write_boundary_geojson,
    write_geojson,
    write_geoparquet,
    write_parquet,
    write_pipes_geoparquet,
    write_pipes_parquet,
    write_summary,
)
from infrahex.rasterize import rasterize_feature
from infrahex.sources import BBox, CadentClient, PipelineFeature, PipelineSource
from infrahex.validate import validate_table

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    table: AggregationTable
    zoom: int
    pipes: PipeTable = field(default_factory=lambda: PipeTable([]))
    n_fetched: int = 0
    n_ingested: int = 0
    n_duplicates: int = 0
    errors: List[InfraHexError] = field(default_factory=list)
    elapsed_s: float = 0.0

    @property
    def n_rejected(self) -> int:
        return sum(1 for e in self.errors if isinstance(e, FeatureError))


def _process(
    aggregator: Aggregator,
    feature: PipelineFeature,
    zoom: int,
    extent: Extent,
) -> Tuple[bool, FrozenSet[HexCellId]]:
    cells = rasterize_feature(feature, zoom, extent)
    return aggregator.ingest(feature.feature_id, cells), cells


def run(
    source: PipelineSource,
    bboxes: Iterable[Optional[BBox]],
    zoom: int,
    extent: Extent = BNG_EXTENT,
    workers: int = DEFAULT_WORKERS,
    boundary: Optional[BoundaryFilter] = None,
    label: str = "run",
) -> RunResult:
    """
    Aggregate every feature *source* yields for *bboxes* at *zoom*.

    Parameters
    ----------
    source:
        Anything with ``fetch(bbox) -> FetchResult``.
    bboxes:
        WGS84 boxes to fetch; ``None`` asks the source for everything.
    zoom:
        Grid zoom level, fixed for the whole run.
    extent:
        BNG envelope outside of which coordinates are rejected.
    workers:
        Rasterization threads.
    boundary:
        Optional filter applied to the finalized table and to each pipe's
        cell list.
    label:
        Prefix for log lines.

    Returns
    -------
    RunResult with the finalized (and filtered) table, the per-pipe cell
    lists of every ingested feature, and run statistics.
    """
    edge_length(zoom)
    started = time.perf_counter()
    aggregator = Aggregator()
    result = RunResult(table=AggregationTable({}), zoom=zoom)
    futures: Dict[Future, PipelineFeature] = {}
    pipes: List[PipeRecord] = []

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        for i, bbox in enumerate(bboxes):
            logger.info("[%s] Fetching tile %d from %s…", label, i + 1, source.name)
            fetched = source.fetch(bbox)
            result.n_fetched += len(fetched)
            result.errors.extend(fetched.errors)
            if not fetched.is_complete:
                logger.warning(
                    "[%s] Tile %d: %d fetch error(s).", label, i + 1, len(fetched.errors)
                )
            for feature in fetched:
                future = pool.submit(_process, aggregator, feature, zoom, extent)
                futures[future] = feature

        for future in as_completed(futures):
            try:
                ingested, cells = future.result()
            except FeatureError as exc:
                logger.warning("[%s] %s", label, exc)
                result.errors.append(exc)
                continue
            if ingested:
                result.n_ingested += 1
                pipes.append(PipeRecord.from_feature(futures[future], cells))
            else:
                result.n_duplicates += 1

    table = aggregator.finalize()
    pipe_table = PipeTable(pipes)

    if boundary is not None:
        before = len(table)
        valid = boundary.valid_cell_ids(table)
        table = table.filter(valid)
        pipe_table = pipe_table.filter(valid)
        logger.info(
            "[%s] Boundary filter: %d → %d cell(s), %d → %d pipe(s).",
            label, before, len(table), len(pipes), len(pipe_table),
        )

    result.table = table
    result.pipes = pipe_table
    result.elapsed_s = time.perf_counter() - started
    logger.info(
        "[%s] %d fetched, %d ingested, %d duplicate(s), %d error(s) → %d cell(s) in %.1fs",
        label,
        result.n_fetched,
        result.n_ingested,
        result.n_duplicates,
        len(result.errors),
        len(table),
        result.elapsed_s,
    )
    return result


def run_area(
    area: AreaConfig,
    source: Optional[PipelineSource] = None,
    zoom: Optional[int] = None,
    workers: int = DEFAULT_WORKERS,
    use_boundary: bool = True,
    emit_geojson: bool = True,
    include_geom: bool = True,
    force: bool = False,
    bua_client: Optional[BuiltUpAreaClient] = None,
) -> RunResult:
    """
    Execute the full pipeline for a single configured area.

    Parameters
    ----------
    area:
        AreaConfig describing the area to process.
    source:
        Feature source; defaults to the Cadent API.
    zoom:
        Grid zoom level; defaults to ``area.zoom``.
    workers:
        Rasterization threads.
    use_boundary:
        Trim cells to the area's built-up-area outline when it has one.
    emit_geojson:
        Whether to write GeoJSON output files in addition to Parquet.
    include_geom:
        Write GeoParquet with hexagon geometry; if False, write plain
        Parquet without a geometry column instead.
    force:
        If True, ignore cached downloads and re-fetch.

    Returns
    -------
    RunResult for the area.
    """
    zoom = area.zoom if zoom is None else zoom
    logger.info("=" * 60)
    logger.info("[%s] Starting pipeline (zoom %d, edge %.0f m)", area.name, zoom, edge_length(zoom))
    logger.info("=" * 60)

    # ------------------------------------------------------------------
    # Step 1: Boundary and bounding boxes
    # ------------------------------------------------------------------
    bboxes = [BBox.from_tuple(b) for b in area.bboxes]
    bua: Optional[BuiltUpArea] = None
    boundary: Optional[BoundaryFilter] = None
    if area.bua_object_id is not None and (use_boundary or not bboxes):
        logger.info("[%s] Step 1 — Loading built-up area %d…", area.slug, area.bua_object_id)
        bua = (bua_client or BuiltUpAreaClient()).fetch_by_object_id(area.bua_object_id)
        if not bboxes:
            bboxes = [bua.bbox()]
        if use_boundary:
            boundary = BoundaryFilter(bua.to_bng())
    if not bboxes:
        raise InfraHexError(f"[{area.slug}] Area has neither bounding boxes nor a boundary")
    logger.info("[%s] %d bounding box(es) to fetch.", area.slug, len(bboxes))

    # ------------------------------------------------------------------
    # Step 2: Fetch, rasterize, aggregate
    # ------------------------------------------------------------------
    logger.info("[%s] Step 2 — Fetching and rasterizing features…", area.slug)
    if source is None:
        source = CadentClient(force=force)
    result = run(
        source,
        bboxes,
        zoom=zoom,
        workers=workers,
        boundary=boundary,
        label=area.slug,
    )

    # ------------------------------------------------------------------
    # Step 3: Validate
    # ------------------------------------------------------------------
    logger.info("[%s] Step 3 — Validating table…", area.slug)
    validate_table(result.table)

    # ------------------------------------------------------------------
    # Step 4: Write outputs
    # ------------------------------------------------------------------
    logger.info("[%s] Step 4 — Writing outputs…", area.slug)
    if include_geom:
        write_geoparquet(result.table, area, zoom)
        write_pipes_geoparquet(result.pipes, area, zoom)
    else:
        write_parquet(result.table, area, zoom)
        write_pipes_parquet(result.pipes, area, zoom)
    write_summary(result, area)
    if emit_geojson:
        write_geojson(result.table, area, zoom)
        if bua is not None:
            write_boundary_geojson(bua, area)

    logger.info("[%s] Pipeline complete.", area.name)
    return result
