"""
Pipeline data sources.

Every source implements ``fetch(bbox) -> FetchResult``: the features found in
a WGS84 bounding box, already projected to BNG, plus any page or record
errors met on the way. The orchestrator depends only on that capability, so
a new infrastructure provider is a new class here and nothing else changes.

Cadent downloads are cached to disk as JSON (one file per bounding box) so
that subsequent runs skip the network round-trip.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
)

import geopandas as gpd
import pandas as pd
import requests

from infrahex.config import (
    BNG_CRS,
    CACHE_DIR,
    CADENT_API_KEY_ENV,
    CADENT_BASE_URL,
    HTTP_TIMEOUT_S,
    OPENDATASOFT_MAX_OFFSET,
    BBoxTuple,
)
from infrahex.errors import ApiError, ConfigError, FeatureError, GeometryError, InfraHexError
from infrahex.geometry import Polyline, lines_from_geojson, lines_from_shapely, project_lines, to_bng

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BBox:
    """WGS84 bounding box, the query space of the remote APIs."""

    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float

    def __post_init__(self) -> None:
        if not (self.min_lat < self.max_lat and self.min_lon < self.max_lon):
            raise ValueError(f"Degenerate bounding box: {self}")

    @classmethod
    def from_tuple(cls, values: BBoxTuple) -> "BBox":
        return cls(*values)

    @property
    def slug(self) -> str:
        parts = (self.min_lat, self.min_lon, self.max_lat, self.max_lon)
        return "_".join(f"{v:.4f}".replace("-", "m").replace(".", "p") for v in parts)

    def to_bng_bounds(self) -> Tuple[float, float, float, float]:
        """Envelope (min_x, min_y, max_x, max_y) of the projected corners."""
        lons = [self.min_lon, self.max_lon, self.max_lon, self.min_lon]
        lats = [self.min_lat, self.min_lat, self.max_lat, self.max_lat]
        xs, ys = to_bng(lons, lats)
        return min(xs), min(ys), max(xs), max(ys)


@dataclass(frozen=True)
class SourceInfo:
    """Where a feature came from; carried through for error reporting only."""

    name: str
    bbox: Optional[BBox] = None
    offset: Optional[int] = None


@dataclass(frozen=True)
class PipelineFeature:
    feature_id: str
    parts: Tuple[Polyline, ...]
    asset_id: Optional[str] = None
    pipe_type: Optional[str] = None
    material: Optional[str] = None
    pressure: Optional[str] = None
    source: Optional[SourceInfo] = field(default=None, compare=False)


@dataclass
class FetchResult:
    """Features fetched for one request, plus the errors met fetching them."""

    records: List[PipelineFeature] = field(default_factory=list)
    errors: List[InfraHexError] = field(default_factory=list)

    def __iter__(self) -> Iterator[PipelineFeature]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    @property
    def is_complete(self) -> bool:
        return not self.errors


class PipelineSource(Protocol):
    name: str

    def fetch(self, bbox: Optional[BBox]) -> FetchResult:
        ...


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

@dataclass
class PaginationConfig:
    page_size: int = 100
    batch_size: int = 100
    batch_delay: float = 0.1        # seconds between batches
    max_offset: Optional[int] = None
    max_workers: int = 16

    @classmethod
    def opendatasoft(cls) -> "PaginationConfig":
        """OpenDataSoft refuses offsets beyond 10 000."""
        return cls(max_offset=OPENDATASOFT_MAX_OFFSET)


def fetch_all_pages(
    total_count: int,
    config: PaginationConfig,
    fetch_page: Callable[[int, int], List[T]],
) -> Tuple[List[T], List[InfraHexError]]:
    """
    Fetch every page of a result set in concurrent batches.

    Pages within a batch run in parallel; batches run one after another with
    ``config.batch_delay`` between them (no delay after the last one). A page
    that fails contributes its error, and the other pages are kept.

    Parameters
    ----------
    total_count:
        Number of items the server reports.
    config:
        Page size, batch size, delay and optional offset cap.
    fetch_page:
        ``fetch_page(offset, limit)`` returning one page of items.

    Returns
    -------
    (records, errors) with records in offset order.
    """
    records: List[T] = []
    errors: List[InfraHexError] = []

    if total_count <= 0:
        return records, errors

    fetchable = total_count
    if config.max_offset is not None:
        fetchable = min(total_count, config.max_offset)
        if fetchable < total_count:
            logger.warning(
                "Result set has %d items; only the first %d are reachable.",
                total_count,
                fetchable,
            )

    offsets = list(range(0, fetchable, config.page_size))
    batches = [
        offsets[i:i + config.batch_size] for i in range(0, len(offsets), config.batch_size)
    ]

    workers = max(1, min(config.max_workers, config.batch_size))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        for batch_i, batch in enumerate(batches):
            futures = [pool.submit(fetch_page, offset, config.page_size) for offset in batch]
            for offset, future in zip(batch, futures):
                try:
                    records.extend(future.result())
                except InfraHexError as exc:
                    logger.warning("Page at offset %d failed: %s", offset, exc)
                    errors.append(exc)

            if batch_i + 1 < len(batches):
                time.sleep(config.batch_delay)

    logger.debug(
        "Fetched %d page(s): %d record(s), %d error(s).",
        len(offsets),
        len(records),
        len(errors),
    )
    return records, errors


# ---------------------------------------------------------------------------
# Cadent gas pipes (OpenDataSoft)
# ---------------------------------------------------------------------------

def _digest(payload: Any) -> str:
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha1(blob).hexdigest()[:16]


def feature_from_cadent_record(
    record: Mapping[str, Any],
    source: Optional[SourceInfo] = None,
) -> PipelineFeature:
    """
    Convert one OpenDataSoft record into a BNG ``PipelineFeature``.

    The feature id is the asset id when present, otherwise a digest of the
    geometry, so the same pipe fetched twice (overlapping tiles) keeps one id.

    Raises
    ------
    GeometryError
        ``geo_shape`` is missing or not a (multi) line string.
    """
    geo_shape = record.get("geo_shape") or {}
    geometry = geo_shape.get("geometry") if geo_shape.get("type") == "Feature" else geo_shape
    parts = project_lines(lines_from_geojson(geometry or {}))

    asset_id = record.get("asset_id")
    feature_id = asset_id if asset_id else f"geom:{_digest(geometry)}"
    return PipelineFeature(
        feature_id=str(feature_id),
        parts=parts,
        asset_id=asset_id,
        pipe_type=record.get("type"),
        material=record.get("material"),
        pressure=record.get("pressure"),
        source=source,
    )


class CadentClient:
    """Client for the Cadent gas pipe infrastructure dataset."""

    name = "cadent"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = CADENT_BASE_URL,
        session: Optional[requests.Session] = None,
        pagination: Optional[PaginationConfig] = None,
        timeout: float = HTTP_TIMEOUT_S,
        cache_dir: Optional[Path] = CACHE_DIR,
        force: bool = False,
    ) -> None:
        key = api_key or os.environ.get(CADENT_API_KEY_ENV)
        if not key:
            raise ConfigError(f"{CADENT_API_KEY_ENV} not set")

        self.base_url = base_url
        self.session = session or requests.Session()
        self.session.headers["Authorization"] = f"Apikey {key}"
        self.pagination = pagination or PaginationConfig.opendatasoft()
        self.timeout = timeout
        self.cache_dir = cache_dir
        self.force = force

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    @staticmethod
    def _bbox_query(bbox: BBox) -> str:
        return (
            f"in_bbox(geo_point_2d,{bbox.min_lat},{bbox.min_lon},"
            f"{bbox.max_lat},{bbox.max_lon})"
        )

    def _get_json(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            raise ApiError(f"Cadent request failed: {exc}") from exc
        except ValueError as exc:
            raise ApiError(f"Cadent returned invalid JSON: {exc}") from exc

        if not isinstance(data, dict) or "results" not in data:
            raise ApiError(f"Unexpected Cadent payload: {str(data)[:200]}")
        return data

    def _fetch_raw_page(self, bbox: BBox, limit: int, offset: int) -> List[Dict[str, Any]]:
        data = self._get_json(
            {"where": self._bbox_query(bbox), "limit": limit, "offset": offset}
        )
        return [dict(rec, _offset=offset + i) for i, rec in enumerate(data["results"])]

    def count(self, bbox: BBox) -> int:
        data = self._get_json({"where": self._bbox_query(bbox), "limit": 1})
        return int(data.get("total_count", 0))

    # ------------------------------------------------------------------
    # Record conversion
    # ------------------------------------------------------------------

    def _to_result(self, raw: Iterable[Mapping[str, Any]], bbox: BBox) -> FetchResult:
        result = FetchResult()
        for rec in raw:
            info = SourceInfo(self.name, bbox, rec.get("_offset"))
            try:
                result.records.append(feature_from_cadent_record(rec, info))
            except InfraHexError as exc:
                feature_id = rec.get("asset_id") or f"offset:{rec.get('_offset')}"
                logger.warning("[%s] Skipping record %s: %s", self.name, feature_id, exc)
                result.errors.append(FeatureError(str(feature_id), exc, info))
        return result

    # ------------------------------------------------------------------
    # Full fetch
    # ------------------------------------------------------------------

    def _cache_path(self, bbox: BBox) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        return Path(self.cache_dir) / f"{self.name}_{bbox.slug}.json"

    def _load_cache(self, cache_path: Path) -> Optional[List[Dict[str, Any]]]:
        """Cached raw records, or ``None`` when the file is unreadable."""
        try:
            with open(cache_path) as f:
                raw = json.load(f)
        except ValueError as exc:
            logger.warning("[%s] Ignoring corrupt cache %s: %s", self.name, cache_path, exc)
            return None
        if not isinstance(raw, list):
            logger.warning("[%s] Ignoring cache %s: not a record list", self.name, cache_path)
            return None
        return raw

    def _write_cache(self, cache_path: Path, raw: List[Dict[str, Any]]) -> None:
        # Write aside, then rename: the cache file is never partial.
        tmp_path = cache_path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(raw, f)
        tmp_path.replace(cache_path)
        logger.info("[%s] Cached %d record(s) to %s", self.name, len(raw), cache_path)

    def fetch(self, bbox: Optional[BBox]) -> FetchResult:
        """
        All records in *bbox*, paginated and cached.

        The raw records are cached only when every page succeeded, so a
        partial download is retried on the next run.
        """
        if bbox is None:
            raise ValueError("CadentClient.fetch requires a bounding box")

        cache_path = self._cache_path(bbox)
        if cache_path is not None and cache_path.exists() and not self.force:
            logger.info("[%s] Loading records from cache: %s", self.name, cache_path)
            cached = self._load_cache(cache_path)
            if cached is not None:
                return self._to_result(cached, bbox)

        try:
            total = self.count(bbox)
        except ApiError as exc:
            logger.error("[%s] Count request failed: %s", self.name, exc)
            return FetchResult(errors=[exc])

        logger.info("[%s] %d record(s) in bbox %s", self.name, total, bbox.slug)
        raw, page_errors = fetch_all_pages(
            total,
            self.pagination,
            lambda offset, limit: self._fetch_raw_page(bbox, limit, offset),
        )

        if cache_path is not None and not page_errors:
            self._write_cache(cache_path, raw)

        result = self._to_result(raw, bbox)
        result.errors[:0] = page_errors
        return result


# ---------------------------------------------------------------------------
# Local files and in-memory features
# ---------------------------------------------------------------------------

_ATTRIBUTE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "asset_id": ("asset_id",),
    "pipe_type": ("pipe_type", "type"),
    "material": ("material",),
    "pressure": ("pressure",),
}


def _first_present(row: Mapping[str, Any], columns: Tuple[str, ...]) -> Optional[str]:
    for col in columns:
        value = row.get(col)
        if value is not None and not pd.isna(value):
            return str(value)
    return None


class GeoFileSource:
    """Line features from any file geopandas can read, reprojected to BNG."""

    def __init__(
        self,
        path: Path,
        id_column: Optional[str] = None,
        layer: Optional[str] = None,
    ) -> None:
        self.path = Path(path)
        self.name = self.path.stem
        self.id_column = id_column
        self.layer = layer
        self._gdf: Optional[gpd.GeoDataFrame] = None

    def _load(self) -> gpd.GeoDataFrame:
        if self._gdf is None:
            logger.info("[%s] Reading %s", self.name, self.path)
            if self.path.suffix.lower() == ".parquet":
                gdf = gpd.read_parquet(self.path)
            else:
                gdf = gpd.read_file(self.path, layer=self.layer)
            if gdf.crs is None:
                logger.warning("[%s] No CRS on input; assuming %s.", self.name, BNG_CRS)
                gdf = gdf.set_crs(BNG_CRS)
            elif gdf.crs.to_epsg() != 27700:
                gdf = gdf.to_crs(BNG_CRS)
            self._gdf = gdf
        return self._gdf

    def fetch(self, bbox: Optional[BBox]) -> FetchResult:
        gdf = self._load()
        if bbox is not None:
            min_x, min_y, max_x, max_y = bbox.to_bng_bounds()
            gdf = gdf.cx[min_x:max_x, min_y:max_y]

        result = FetchResult()
        for idx, row in gdf.iterrows():
            feature_id = str(row[self.id_column]) if self.id_column else f"{self.name}:{idx}"
            info = SourceInfo(self.name, bbox, None)
            try:
                if row.geometry is None or row.geometry.is_empty:
                    raise GeometryError("Feature has no geometry")
                parts = lines_from_shapely(row.geometry)
            except InfraHexError as exc:
                logger.warning("[%s] Skipping feature %s: %s", self.name, feature_id, exc)
                result.errors.append(FeatureError(feature_id, exc, info))
                continue
            result.records.append(
                PipelineFeature(
                    feature_id=feature_id,
                    parts=parts,
                    source=info,
                    **{key: _first_present(row, cols) for key, cols in _ATTRIBUTE_COLUMNS.items()},
                )
            )
        logger.info("[%s] %d feature(s) selected.", self.name, len(result))
        return result


class InMemorySource:
    """Serves a fixed list of BNG features; bbox filtering is by vertex."""

    name = "memory"

    def __init__(self, features: Iterable[PipelineFeature]) -> None:
        self.features = list(features)

    def fetch(self, bbox: Optional[BBox]) -> FetchResult:
        if bbox is None:
            return FetchResult(records=list(self.features))

        min_x, min_y, max_x, max_y = bbox.to_bng_bounds()

        def _inside(feature: PipelineFeature) -> bool:
            return any(
                min_x <= x <= max_x and min_y <= y <= max_y
                for part in feature.parts
                for x, y in part
            )

        return FetchResult(records=[f for f in self.features if _inside(f)])
