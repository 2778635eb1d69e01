"""
End-to-end orchestration over in-memory sources.
"""

from dataclasses import replace

import geopandas as gpd
import pandas as pd
import pytest

from conftest import feature
from infrahex.aggregate import Aggregator
from infrahex.boundary import parse_bua_feature
from infrahex.config import PIPE_COLUMNS, AreaConfig
from infrahex.errors import FeatureError, InfraHexError, OutOfDomain
from infrahex.hexgrid import center_of
from infrahex.pipeline import run, run_area
from infrahex.rasterize import rasterize_feature
from infrahex.sources import FetchResult, InMemorySource

from test_boundary import bua_feature

ZOOM = 10


class FailingSource:
    name = "failing"

    def fetch(self, bbox):
        return FetchResult(errors=[InfraHexError("tile unavailable")])


class FakeBuaClient:
    def __init__(self):
        self.requested = []

    def fetch_by_object_id(self, object_id):
        self.requested.append(object_id)
        return parse_bua_feature(bua_feature(OBJECTID=object_id))


@pytest.fixture
def good_features(row_cells):
    a, b, c = (center_of(cell) for cell in row_cells)
    return [
        feature("pipe-1", (a, c)),
        feature("pipe-2", (b, c)),
        feature("pipe-3", (c, c)),
    ]


@pytest.fixture
def bad_feature(row_cells):
    return feature("pipe-bad", (center_of(row_cells[0]), (-5.0, 186_000.0)))


class TestRun:
    def test_counts(self, row_cells, good_features):
        result = run(InMemorySource(good_features), [None], zoom=ZOOM, workers=4)
        counts = result.table.counts()
        assert counts == {row_cells[0]: 1, row_cells[1]: 2, row_cells[2]: 3}
        assert result.n_fetched == 3
        assert result.n_ingested == 3
        assert result.errors == []

    def test_single_line_across_three_cells(self, row_cells, row_feature):
        result = run(InMemorySource([row_feature]), [None], zoom=ZOOM)
        records = result.table.records()
        assert len(records) == 3
        assert {rec.cell for rec in records} == set(row_cells)
        assert all(rec.count == 1 for rec in records)

    def test_pipes_list_cells_of_each_ingested_feature(self, row_cells, good_features, bad_feature):
        source = InMemorySource(good_features + [good_features[0], bad_feature])
        result = run(source, [None], zoom=ZOOM, workers=4)
        assert [rec.feature_id for rec in result.pipes] == ["pipe-1", "pipe-2", "pipe-3"]
        assert result.pipes[0].cells == tuple(row_cells)
        assert result.pipes[1].cells == tuple(row_cells[1:])
        assert result.pipes[2].cells == (row_cells[2],)

    def test_pipes_carry_attributes(self, good_features):
        tagged = replace(good_features[0], asset_id="A-1", pipe_type="main", material="PE", pressure="LP")
        result = run(InMemorySource([tagged]), [None], zoom=ZOOM)
        (rec,) = result.pipes
        assert (rec.asset_id, rec.pipe_type, rec.material, rec.pressure) == ("A-1", "main", "PE", "LP")

    def test_pipe_cells_add_up_to_table(self, good_features):
        result = run(InMemorySource(good_features), [None], zoom=ZOOM)
        assert sum(len(rec.cells) for rec in result.pipes) == result.table.total_hits()

    def test_bad_feature_skipped_without_affecting_others(self, good_features, bad_feature):
        clean = run(InMemorySource(good_features), [None], zoom=ZOOM)
        mixed = run(InMemorySource(good_features + [bad_feature]), [None], zoom=ZOOM)
        assert mixed.table.records() == clean.table.records()
        assert mixed.n_rejected == 1
        assert isinstance(mixed.errors[0], FeatureError)
        assert mixed.errors[0].feature_id == "pipe-bad"
        assert isinstance(mixed.errors[0].cause, OutOfDomain)

    def test_repeated_feature_counted_once(self, row_cells, good_features):
        source = InMemorySource(good_features + [good_features[0]])
        result = run(source, [None, None], zoom=ZOOM)
        assert result.n_fetched == 8
        assert result.n_ingested == 3
        assert result.n_duplicates == 5
        assert result.table[row_cells[2]].count == 3

    def test_matches_sequential_aggregation(self, good_features):
        agg = Aggregator()
        for f in good_features:
            agg.ingest(f.feature_id, rasterize_feature(f, ZOOM))
        expected = agg.finalize()

        for workers in (1, 2, 8):
            result = run(InMemorySource(good_features), [None], zoom=ZOOM, workers=workers)
            assert result.table.records() == expected.records()

    def test_fetch_errors_are_collected(self):
        result = run(FailingSource(), [None, None], zoom=ZOOM)
        assert len(result.table) == 0
        assert len(result.errors) == 2
        assert result.n_rejected == 0

    def test_unknown_zoom(self, good_features):
        with pytest.raises(ValueError):
            run(InMemorySource(good_features), [None], zoom=30)


class TestRunArea:
    def test_writes_outputs(self, test_area, good_features, bad_feature, output_dir):
        result = run_area(
            test_area,
            source=InMemorySource(good_features + [bad_feature]),
            emit_geojson=True,
        )
        area_dir = output_dir / "test_area"
        assert (area_dir / "hex_summary_z10.parquet").exists()
        assert (area_dir / "pipes_z10.parquet").exists()
        assert (area_dir / "hex_summary_z10.geojson").exists()
        assert (area_dir / "summary.json").exists()
        assert len(result.table) == 3
        assert len(result.errors) == 1
        pipes = gpd.read_parquet(area_dir / "pipes_z10.parquet")
        assert pipes["feature_id"].tolist() == ["pipe-1", "pipe-2", "pipe-3"]

    def test_zoom_override(self, test_area, good_features, output_dir):
        result = run_area(
            test_area, source=InMemorySource(good_features), zoom=8, emit_geojson=False
        )
        assert result.zoom == 8
        assert all(cell.zoom == 8 for cell in result.table)
        assert (output_dir / "test_area" / "hex_summary_z8.parquet").exists()
        assert not (output_dir / "test_area" / "hex_summary_z8.geojson").exists()

    def test_without_geometry(self, test_area, good_features, output_dir):
        run_area(
            test_area, source=InMemorySource(good_features), emit_geojson=False, include_geom=False
        )
        names = sorted(p.name for p in (output_dir / "test_area").iterdir())
        assert names == [
            "hex_summary_z10_nogeom.parquet",
            "pipes_z10_nogeom.parquet",
            "summary.json",
        ]
        assert list(pd.read_parquet(output_dir / "test_area" / "pipes_z10_nogeom.parquet").columns) == PIPE_COLUMNS

    def test_boundary_outline_written_with_geojson(self, row_cells, output_dir):
        area = AreaConfig(name="Boundary Area", slug="boundary_area", bua_object_id=42, zoom=ZOOM)
        source = InMemorySource([feature("short", (center_of(row_cells[0]), center_of(row_cells[1])))])
        run_area(area, source=source, bua_client=FakeBuaClient())
        assert (output_dir / "boundary_area" / "boundary.geojson").exists()
        assert (output_dir / "boundary_area" / "hex_summary_z10.geojson").exists()

    def test_boundary_trims_cells(self, row_cells, output_dir):
        area = AreaConfig(name="Boundary Area", slug="boundary_area", bua_object_id=42, zoom=ZOOM)
        # Runs east from inside the boundary to well beyond it (lon 0.0 is ~539 km E).
        long_pipe = feature("long", (center_of(row_cells[0]), (570_000.0, 185_856.0)))
        source = InMemorySource([long_pipe])

        bua = FakeBuaClient()
        trimmed = run_area(area, source=source, bua_client=bua, emit_geojson=False)
        untrimmed = run_area(
            area, source=source, bua_client=bua, use_boundary=False, emit_geojson=False
        )

        assert bua.requested == [42, 42]
        assert 0 < len(trimmed.table) < len(untrimmed.table)
        assert set(trimmed.table) <= set(untrimmed.table)
        assert max(center_of(cell)[0] for cell in trimmed.table) < 542_000
        (pipe,) = trimmed.pipes
        assert set(pipe.cells) == set(trimmed.table)
        assert len(pipe.cells) < len(untrimmed.pipes[0].cells)

    def test_area_without_bboxes_or_boundary(self, output_dir):
        area = AreaConfig(name="Nowhere", slug="nowhere")
        with pytest.raises(InfraHexError):
            run_area(area, source=InMemorySource([]))
