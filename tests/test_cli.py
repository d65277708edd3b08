"""
Tests for the densitymaps command-line interface.

Tests densitymaps/cli.py: argument parsing, density class syntax and the
build/hotspots/contours commands end to end on temporary files.

Run with: pytest tests/test_cli.py -v
"""

import json
import logging
import sys
from pathlib import Path

import pytest
from shapely.geometry import box

sys.path.insert(0, str(Path(__file__).parent.parent))

from densitymaps.cli import build_parser, main, parse_density_class, spec_from_args
from densitymaps.density.selectors import ClassFilter, ObjectSelector, ObjectType
from densitymaps.density.spec import Normalization
from densitymaps.io.export import read_density_map_hdf5, write_density_map_hdf5
from densitymaps.io.geojson import write_geojson
from densitymaps.objects.model import create_annotation


@pytest.fixture(autouse=True)
def restore_root_logger():
    """main() installs stdout handlers on the root logger; remove them afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def cells_file(cell_image, tmp_path):
    """GeoJSON file with the cell_image detections."""
    return write_geojson(cell_image.hierarchy.get_objects(), tmp_path / "cells.geojson")


@pytest.fixture
def map_file(two_peak_raster, tmp_path):
    """HDF5 file holding the two-peak raster."""
    return write_density_map_hdf5(two_peak_raster, tmp_path / "peaks.h5")


def read_features(path):
    with open(path) as f:
        return json.load(f)["features"]


class TestParseDensityClass:
    """Tests for NAME=FILTER density class arguments."""

    def test_named(self):
        """Test an explicit channel name."""
        name, selector = parse_density_class("Positive=+Tumor", ObjectSelector.from_string("cells"))
        assert name == "Positive"
        assert selector.object_type is ObjectType.CELLS
        assert selector.class_filter == ClassFilter.positive("Tumor")

    def test_unnamed(self):
        """Test that the name defaults to the filter description."""
        name, selector = parse_density_class("~Tumor", ObjectSelector())
        assert name == ClassFilter.base("Tumor").describe()
        assert selector.class_filter == ClassFilter.base("Tumor")


class TestParser:
    """Tests for argument parsing."""

    def test_command_required(self):
        """Test that a subcommand is required."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_spec_from_args(self):
        """Test spec construction from build arguments."""
        args = build_parser().parse_args([
            "build", "--objects", "cells.geojson", "--output", "map.h5",
            "--radius", "25", "--all", "cells:~Tumor",
            "--density", "Positive=+Tumor", "--density", "Negative=Tumor: Negative",
            "--normalization", "percent", "--area-roi-mode", "footprint",
        ])
        spec = spec_from_args(args, {})

        assert spec.radius == 25.0
        assert spec.normalization is Normalization.PERCENT
        assert spec.channel_names() == ["Positive", "Negative", "Counts"]
        assert spec.all_objects == ObjectSelector.from_string("cells:~Tumor")

    def test_spec_requires_radius(self):
        """Test that building without --radius is an error."""
        args = build_parser().parse_args(["build", "--objects", "o.geojson", "--output", "m.h5"])
        with pytest.raises(ValueError, match="--radius"):
            spec_from_args(args, {})


class TestBuildCommand:
    """Tests for 'densitymaps build'."""

    def test_build_and_export(self, cells_file, tmp_path):
        """Test building a percent map with HDF5, PNG and metadata output."""
        output = tmp_path / "out" / "map.h5"
        code = main([
            "build", "--objects", str(cells_file),
            "--width", "300", "--height", "200",
            "--pixel-width", "0.5", "--pixel-height", "0.5",
            "--radius", "10", "--pixel-size", "2",
            "--all", "cells", "--density", "Positive=+",
            "--normalization", "percent",
            "--output", str(output),
            "--render", str(tmp_path / "map.png"),
            "--metadata", str(tmp_path / "map.json"),
        ])

        assert code == 0
        density_map = read_density_map_hdf5(output)
        assert density_map.channel_names == ("Positive", "Counts")
        assert density_map.downsample == 4.0
        assert (density_map.width, density_map.height) == (75, 50)
        assert density_map.data[5, 5, 0] == pytest.approx(100.0)
        assert density_map.data[5, 70, 0] == 0.0
        assert density_map.data[5, 70, 1] > 0
        assert (tmp_path / "map.png").exists()
        assert json.loads((tmp_path / "map.json").read_text())["id"] == density_map.id

    def test_missing_radius(self, cells_file, tmp_path):
        """Test that a missing radius fails with exit code 1."""
        code = main(["build", "--objects", str(cells_file), "--width", "300", "--height", "200",
                     "--output", str(tmp_path / "map.h5")])
        assert code == 1
        assert not (tmp_path / "map.h5").exists()

    def test_missing_size(self, cells_file, tmp_path):
        """Test that a missing image size fails with exit code 1."""
        code = main(["build", "--objects", str(cells_file), "--radius", "10",
                     "--output", str(tmp_path / "map.h5")])
        assert code == 1

    def test_missing_objects_file(self, tmp_path):
        """Test that a missing objects file fails with exit code 1."""
        code = main(["build", "--objects", str(tmp_path / "nope.geojson"), "--radius", "10",
                     "--width", "10", "--height", "10", "--output", str(tmp_path / "map.h5")])
        assert code == 1

    def test_invalid_config(self, cells_file, tmp_path):
        """Test that an invalid config file fails with exit code 1."""
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"density": {"tile_size": 1}}))
        code = main(["build", "--objects", str(cells_file), "--radius", "10",
                     "--width", "300", "--height", "200", "--config", str(config),
                     "--output", str(tmp_path / "map.h5")])
        assert code == 1


class TestHotspotsCommand:
    """Tests for 'densitymaps hotspots'."""

    def test_from_map(self, map_file, tmp_path):
        """Test hotspots of an exported map."""
        output = tmp_path / "hotspots.geojson"
        code = main(["hotspots", "--map", str(map_file), "-n", "2",
                     "--hotspot-radius", "15", "--output", str(output)])

        assert code == 0
        features = read_features(output)
        assert len(features) == 2
        assert features[0]["properties"]["classification"]["name"] == "Density hotspot"
        assert features[0]["geometry"]["type"] == "Polygon"

    def test_parents(self, map_file, tmp_path):
        """Test hotspots restricted to annotations of one class."""
        objects = write_geojson([create_annotation(box(50, 50, 100, 100), "Region")],
                                tmp_path / "regions.geojson")
        output = tmp_path / "hotspots.geojson"
        code = main(["hotspots", "--map", str(map_file), "--objects", str(objects),
                     "--parents", "Region", "--output", str(output)])

        assert code == 0
        features = read_features(output)
        assert features[0]["geometry"]["coordinates"] == [70.5, 70.5]

    def test_unknown_channel(self, map_file, tmp_path):
        """Test that an unknown channel fails with exit code 1."""
        code = main(["hotspots", "--map", str(map_file), "--channel", "Nope",
                     "--output", str(tmp_path / "h.geojson")])
        assert code == 1


class TestContoursCommand:
    """Tests for 'densitymaps contours'."""

    def test_split(self, map_file, tmp_path):
        """Test one feature per region with --split."""
        output = tmp_path / "contours.geojson"
        code = main(["contours", "--map", str(map_file), "--threshold", "5",
                     "--split", "--output", str(output)])

        assert code == 0
        assert len(read_features(output)) == 2

    def test_min_count_needs_counts(self, map_file, tmp_path):
        """Test that --min-count on a map without counts fails."""
        code = main(["contours", "--map", str(map_file), "--threshold", "5",
                     "--min-count", "2", "--output", str(tmp_path / "c.geojson")])
        assert code == 1
