"""
Configuration: constants, grid resolution table, extents, areas, paths.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

ROOT_DIR: Path = Path(__file__).resolve().parent.parent
CACHE_DIR: Path = ROOT_DIR / "cache"
OUTPUT_DIR: Path = ROOT_DIR / "outputs"

CACHE_DIR.mkdir(parents=True, exist_ok=True)
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

# ---------------------------------------------------------------------------
# Coordinate reference systems
# ---------------------------------------------------------------------------

BNG_CRS: str = "EPSG:27700"
WGS84_CRS: str = "EPSG:4326"

# ---------------------------------------------------------------------------
# Hex grid settings
# ---------------------------------------------------------------------------

# Edge length (metres) per zoom level. Powers of two so that dividing a BNG
# coordinate by the edge length is exact in binary floating point.
ZOOM_EDGE_LENGTHS: Dict[int, float] = {z: float(2 ** (20 - z)) for z in range(16)}

MIN_ZOOM: int = min(ZOOM_EDGE_LENGTHS)
MAX_ZOOM: int = max(ZOOM_EDGE_LENGTHS)
DEFAULT_ZOOM: int = 10

# Two candidate cells whose squared centre distances (in edge-length² units)
# differ by less than this are tied; the lower (q, r) wins.
TIE_EPSILON: float = 1e-9


@dataclass(frozen=True)
class Extent:
    """Axis-aligned rectangle in BNG metres. Bounds are inclusive."""

    min_x: float
    min_y: float
    max_x: float
    max_y: float

    def __post_init__(self) -> None:
        if not (self.min_x < self.max_x and self.min_y < self.max_y):
            raise ValueError(f"Degenerate extent: {self}")

    def contains(self, x: float, y: float) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y


# Envelope of the 100 km National Grid squares covering Great Britain.
BNG_EXTENT: Extent = Extent(0.0, 0.0, 700_000.0, 1_300_000.0)

# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

DEFAULT_WORKERS: int = 8

# Number of independently locked count shards in the aggregator.
AGGREGATOR_SHARDS: int = 64

# ---------------------------------------------------------------------------
# Remote sources
# ---------------------------------------------------------------------------

CADENT_BASE_URL: str = (
    "https://cadentgas.opendatasoft.com/api/explore/v2.1/catalog/datasets/"
    "gas-pipe-infrastructure-gpi_open/records"
)
CADENT_API_KEY_ENV: str = "CADENT_API_KEY"

BUA_BASE_URL: str = (
    "https://services1.arcgis.com/ESMARspQHYMw9BZ9/arcgis/rest/services/"
    "main_ONS_BUA_2024_EW/FeatureServer/0/query"
)

HTTP_TIMEOUT_S: float = 30.0

# OpenDataSoft refuses offsets beyond this.
OPENDATASOFT_MAX_OFFSET: int = 10_000

# ---------------------------------------------------------------------------
# Area definitions
# ---------------------------------------------------------------------------

# (min_lat, min_lon, max_lat, max_lon) in WGS84
BBoxTuple = Tuple[float, float, float, float]


@dataclass
class AreaConfig:
    name: str                       # human-readable display name
    slug: str                       # filesystem-safe identifier (underscores)
    bboxes: List[BBoxTuple] = field(default_factory=list)
    bua_object_id: Optional[int] = None   # ONS built-up area used as boundary
    zoom: int = DEFAULT_ZOOM


AREAS: Dict[str, AreaConfig] = {
    "north_london": AreaConfig(
        name="North London",
        slug="north_london",
        bboxes=[
            (51.54, -0.20, 51.58, 0.00),
            (51.58, -0.20, 51.62, 0.00),
            (51.62, -0.20, 51.66, 0.00),
        ],
        zoom=10,
    ),
    "manchester": AreaConfig(
        name="Manchester",
        slug="manchester",
        bua_object_id=1310,
        zoom=8,
    ),
}

ALL_AREA_SLUGS: List[str] = list(AREAS.keys())

# ---------------------------------------------------------------------------
# Output column schema (ordered)
# ---------------------------------------------------------------------------

OUTPUT_COLUMNS: List[str] = [
    "hex_id",
    "zoom",
    "q",
    "r",
    "pipe_count",
    "centroid_easting",
    "centroid_northing",
]

SUMMARY_TOP_N: int = 10

# One row per ingested pipe; ``hex_ids`` holds the cell tokens it touches.
PIPE_COLUMNS: List[str] = [
    "feature_id",
    "asset_id",
    "pipe_type",
    "material",
    "pressure",
    "n_cells",
    "hex_ids",
]
