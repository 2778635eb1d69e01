"""
CLI entrypoint for the infrahex pipeline.

Usage
-----
    python -m infrahex.cli --areas all --zoom 10
    python -m infrahex.cli --areas north-london --input pipes.gpkg --workers 4

or via the installed script:

    infrahex --areas manchester --zoom 8
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from infrahex.config import (
    ALL_AREA_SLUGS,
    AREAS,
    DEFAULT_WORKERS,
    MAX_ZOOM,
    MIN_ZOOM,
)
from infrahex.pipeline import run_area
from infrahex.sources import GeoFileSource, PipelineSource


# ---------------------------------------------------------------------------
# Argument parsing helpers
# ---------------------------------------------------------------------------

def _normalise_slug(raw: str) -> str:
    """Lower-case and replace hyphens with underscores."""
    return raw.strip().lower().replace("-", "_")


def _parse_areas(value: str) -> List[str]:
    """Parse the --areas argument into a list of canonical slugs."""
    if value.lower() == "all":
        return ALL_AREA_SLUGS
    slugs = [_normalise_slug(s) for s in value.split(",")]
    unknown = [s for s in slugs if s not in AREAS]
    if unknown:
        raise argparse.ArgumentTypeError(
            f"Unknown area slug(s): {unknown}. "
            f"Valid choices: {ALL_AREA_SLUGS}"
        )
    return slugs


def _parse_zoom(value: str) -> int:
    try:
        zoom = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"--zoom must be an integer: {exc}") from exc
    if not MIN_ZOOM <= zoom <= MAX_ZOOM:
        raise argparse.ArgumentTypeError(
            f"--zoom must be between {MIN_ZOOM} and {MAX_ZOOM} (got {zoom})"
        )
    return zoom


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="infrahex",
        description=(
            "Count distinct gas pipes per hexagonal cell on the "
            "British National Grid for one or more configured areas."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="\n".join([
            "Examples:",
            "  # run all areas with their configured zoom levels",
            "  python -m infrahex.cli --areas all",
            "",
            "  # one area at a finer zoom (hyphens or underscores both accepted)",
            "  python -m infrahex.cli --areas north-london --zoom 12",
            "",
            "  # read pipes from a local file instead of the Cadent API",
            "  python -m infrahex.cli --areas manchester --input pipes.parquet",
            "",
            "  # force re-download of cached API results",
            "  python -m infrahex.cli --areas north_london --refresh",
            "",
            "  # attribute tables only, without hexagon geometry",
            "  python -m infrahex.cli --areas north_london --no_geom --no_geojson",
        ]),
    )

    parser.add_argument(
        "--areas",
        default="all",
        metavar="AREA[,AREA,...]|all",
        help=(
            "Comma-separated area slugs or 'all'. "
            "Hyphens and underscores are both accepted. "
            f"Valid slugs: {', '.join(ALL_AREA_SLUGS)}. "
            "Default: all"
        ),
    )
    parser.add_argument(
        "--zoom",
        type=_parse_zoom,
        default=None,
        metavar="INT",
        help=(
            f"Grid zoom level {MIN_ZOOM}-{MAX_ZOOM}; edge length is 2^(20-zoom) m. "
            "Default: the area's configured zoom"
        ),
    )
    parser.add_argument(
        "--input",
        type=Path,
        default=None,
        metavar="PATH",
        help="Read pipe lines from a local vector file (GeoPackage, GeoJSON, Parquet, …).",
    )
    parser.add_argument(
        "--id_column",
        default=None,
        metavar="COLUMN",
        help="Column holding feature ids in --input (default: row index).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=DEFAULT_WORKERS,
        metavar="INT",
        help=f"Rasterization threads (default: {DEFAULT_WORKERS})",
    )
    parser.add_argument(
        "--no_boundary",
        action="store_true",
        help="Keep every cell, even outside the built-up-area outline.",
    )
    parser.add_argument(
        "--no_geojson",
        action="store_true",
        help="Skip GeoJSON output.",
    )
    parser.add_argument(
        "--no_geom",
        action="store_true",
        help="Write plain Parquet without geometry columns instead of GeoParquet.",
    )
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Re-download API data even if cache files exist.",
    )
    parser.add_argument(
        "--log_level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO)",
    )
    return parser


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("pyogrio").setLevel(logging.WARNING)

    try:
        area_slugs = _parse_areas(args.areas)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
        return

    if args.workers < 1:
        parser.error("--workers must be at least 1")

    logger = logging.getLogger(__name__)
    logger.info(
        "Pipeline starting | areas=%s | zoom=%s | input=%s | workers=%d | "
        "boundary=%s | refresh=%s",
        area_slugs,
        args.zoom if args.zoom is not None else "per-area",
        args.input or "cadent",
        args.workers,
        not args.no_boundary,
        args.refresh,
    )

    source: Optional[PipelineSource] = None
    if args.input is not None:
        source = GeoFileSource(args.input, id_column=args.id_column)

    failed = []
    for slug in area_slugs:
        area = AREAS[slug]
        try:
            run_area(
                area=area,
                source=source,
                zoom=args.zoom,
                workers=args.workers,
                use_boundary=not args.no_boundary,
                emit_geojson=not args.no_geojson,
                include_geom=not args.no_geom,
                force=args.refresh,
            )
        except Exception as exc:
            logger.error("[%s] Pipeline failed: %s", slug, exc, exc_info=True)
            failed.append(slug)

    if failed:
        logger.error("Pipeline completed with failures in: %s", failed)
        sys.exit(1)
    else:
        logger.info("Pipeline completed successfully for all areas.")


if __name__ == "__main__":
    main()
