"""
Tests for hotspot detection.

Tests densitymaps/density/hotspots.py: greedy peak selection, exclusion
radius, candidate filters and parent regions.

Run with: pytest tests/test_hotspots.py -v
"""

import sys
from pathlib import Path

import numpy as np
import pytest
from shapely.geometry import Point, box

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import make_raster
from densitymaps.cancellation import CancellationToken
from densitymaps.density.hotspots import (
    HotspotFinder,
    find_hotspots,
    get_hotspot_class,
    remove_existing,
)
from densitymaps.errors import Cancelled
from densitymaps.objects.index import ObjectHierarchy
from densitymaps.objects.model import ImagePlane, PathClass, create_annotation


class TestHotspotClass:
    """Tests for hotspot classifications."""

    def test_name(self):
        """Test the '<channel> hotspot' naming."""
        assert get_hotspot_class("Positive").name == "Positive hotspot"

    def test_remove_existing(self):
        """Test that only annotations of exactly that class are removed."""
        cls = get_hotspot_class("Density")
        hierarchy = ObjectHierarchy([
            create_annotation(Point(1, 1), cls),
            create_annotation(Point(1, 1), "Other"),
        ])
        assert remove_existing(hierarchy, cls) == 1
        assert len(hierarchy) == 1


class TestFindHotspots:
    """Tests for find_hotspots on a two-peak map."""

    def test_highest_peak(self, two_peak_raster, empty_hierarchy):
        """Test that n=1 finds the highest peak at its pixel centre."""
        annotations = find_hotspots(empty_hierarchy, two_peak_raster, "Density", n=1)

        assert len(annotations) == 1
        assert annotations[0].geometry.equals(Point(20.5, 20.5))
        assert annotations[0].classification == PathClass.from_string("Density hotspot")
        assert annotations[0].is_annotation
        assert [o.id for o in empty_hierarchy.get_objects()] == [annotations[0].id]

    def test_exclusion_radius(self, two_peak_raster, empty_hierarchy):
        """Test that a second hotspot is not placed next to the first."""
        finder = HotspotFinder(n=2, radius=15.0)
        hotspots = finder.find(empty_hierarchy, two_peak_raster, 0)

        assert [(h.x, h.y, h.value) for h in hotspots] == [(20.5, 20.5, 10.0), (70.5, 70.5, 8.0)]
        assert hotspots[0].annotation.geometry.area == pytest.approx(np.pi * 15.0 ** 2, rel=0.01)

    def test_overlap_allowed(self, two_peak_raster, empty_hierarchy):
        """Test that allow_overlap accepts neighbouring pixels of the same peak."""
        finder = HotspotFinder(n=2, radius=15.0, allow_overlap=True)
        hotspots = finder.find(empty_hierarchy, two_peak_raster, 0)
        assert [h.value for h in hotspots] == [10.0, 9.0]

    def test_exclusion_separates_centres_not_circles(self, empty_hierarchy):
        """Test that accepted centres are more than one radius apart, so circles may overlap."""
        raster = make_raster(np.array([[10.0, 0.0, 0.0, 9.5, 9.0, 0.0, 0.0, 0.0]]))
        hotspots = HotspotFinder(n=2, radius=3.0).find(empty_hierarchy, raster, 0)

        assert [h.value for h in hotspots] == [10.0, 9.0]
        assert hotspots[1].x - hotspots[0].x == 4.0
        first, second = (h.annotation.geometry for h in hotspots)
        assert first.intersection(second).area > 0

    def test_peaks_only(self, two_peak_raster, empty_hierarchy):
        """Test that only local maxima are candidates."""
        finder = HotspotFinder(n=2, radius=0.0, peaks_only=True)
        hotspots = finder.find(empty_hierarchy, two_peak_raster, 0)
        assert [h.value for h in hotspots] == [10.0, 8.0]

    def test_min_density(self, two_peak_raster, empty_hierarchy, caplog):
        """Test that peaks below min_density are not accepted."""
        finder = HotspotFinder(n=2, radius=15.0, min_density=9.0)
        hotspots = finder.find(empty_hierarchy, two_peak_raster, 0)

        assert len(hotspots) == 1
        assert "Only found 1/2" in caplog.text

    def test_min_count_without_counts_channel(self, two_peak_raster, empty_hierarchy):
        """Test that min_count applies to the channel itself when there is no counts channel."""
        finder = HotspotFinder(n=20, radius=0.0, min_count=9.0)
        hotspots = finder.find(empty_hierarchy, two_peak_raster, 0)
        assert len(hotspots) == 9
        assert all(h.value >= 9.0 for h in hotspots)

    def test_min_count_uses_counts_channel(self, empty_hierarchy):
        """Test that candidate pixels need enough counted objects."""
        density = np.array([[5.0, 4.0, 3.0]])
        counts = np.array([[1.0, 4.0, 4.0]])
        raster = make_raster(np.stack([density, counts], axis=-1), channel_names=("Positive", "Counts"))

        hotspots = HotspotFinder(n=1, radius=0.0, min_count=2.0).find(empty_hierarchy, raster, "Positive")

        assert hotspots[0].value == 4.0

    def test_empty_map(self, empty_hierarchy, caplog):
        """Test that an all-zero map finds nothing and warns."""
        raster = make_raster(np.zeros((10, 10)))
        assert find_hotspots(empty_hierarchy, raster, 0, n=3) == []
        assert len(empty_hierarchy) == 0
        assert "No hotspots found" in caplog.text

    def test_tie_break_raster_order(self, empty_hierarchy):
        """Test that equal values are taken in raster scan order."""
        raster = make_raster(np.array([[0.0, 2.0], [2.0, 0.0]]))
        hotspots = HotspotFinder(n=1, radius=0.0).find(empty_hierarchy, raster, 0)
        assert (hotspots[0].x, hotspots[0].y) == (1.5, 0.5)

    def test_delete_existing(self, two_peak_raster, empty_hierarchy):
        """Test that earlier hotspots of the same class are replaced."""
        find_hotspots(empty_hierarchy, two_peak_raster, 0, n=2, radius=15.0)
        find_hotspots(empty_hierarchy, two_peak_raster, 0, n=2, radius=15.0)
        assert len(empty_hierarchy) == 2

        find_hotspots(empty_hierarchy, two_peak_raster, 0, n=1, delete_existing=False)
        assert len(empty_hierarchy) == 3

    def test_calibrated_radius(self, empty_hierarchy):
        """Test that the radius is converted from calibrated units to pixels."""
        raster = make_raster(np.pad([[1.0]], 10), pixel_size=0.5)
        hotspots = HotspotFinder(n=1, radius=2.0).find(empty_hierarchy, raster, 0)
        minx, _, maxx, _ = hotspots[0].annotation.geometry.bounds
        assert maxx - minx == pytest.approx(8.0, rel=0.01)

    def test_plane_copied(self, empty_hierarchy):
        """Test that hotspots are created on the map's plane."""
        raster = make_raster(np.array([[1.0]]), plane=ImagePlane(z=2))
        hotspots = HotspotFinder().find(empty_hierarchy, raster, 0)
        assert hotspots[0].annotation.plane == ImagePlane(z=2)

    def test_cancelled(self, two_peak_raster, empty_hierarchy):
        """Test that a cancelled search raises and adds nothing."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(Cancelled):
            find_hotspots(empty_hierarchy, two_peak_raster, 0, cancel_token=token)
        assert len(empty_hierarchy) == 0


class TestParents:
    """Tests for hotspots restricted to parent regions."""

    def test_within_parent(self, two_peak_raster, empty_hierarchy):
        """Test that only pixels inside the parent are candidates."""
        parent = create_annotation(box(50, 50, 100, 100), "Region")
        hotspots = HotspotFinder(n=1).find(empty_hierarchy, two_peak_raster, 0, parents=[parent])

        assert hotspots[0].value == 8.0
        assert hotspots[0].parent_id == parent.id

    def test_budget_shared(self, two_peak_raster, empty_hierarchy):
        """Test that n is a global budget across parents."""
        parents = [
            create_annotation(box(0, 0, 50, 50), "Region"),
            create_annotation(box(50, 50, 100, 100), "Region"),
        ]
        hotspots = HotspotFinder(n=1).find(empty_hierarchy, two_peak_raster, 0, parents=parents)
        assert len(hotspots) == 1
        assert hotspots[0].parent_id == parents[0].id

    def test_constrain_within_parent(self, two_peak_raster, empty_hierarchy):
        """Test that the hotspot circle must fit inside its parent."""
        parent = create_annotation(box(0, 0, 30, 30), "Region")
        finder = HotspotFinder(n=1, radius=5.0, constrain_within_parent=True)
        hotspots = finder.find(empty_hierarchy, two_peak_raster, 0, parents=[parent])

        assert hotspots[0].annotation.geometry.within(parent.geometry)

    def test_parent_too_small(self, two_peak_raster, empty_hierarchy, caplog):
        """Test that a parent smaller than the hotspot gives no candidates."""
        parent = create_annotation(box(0, 0, 20, 20), "Region")
        finder = HotspotFinder(n=1, radius=15.0, constrain_within_parent=True)
        assert finder.find(empty_hierarchy, two_peak_raster, 0, parents=[parent]) == []
        assert "too small" in caplog.text


class TestHotspotFinderConfig:
    """Tests for HotspotFinder construction."""

    def test_from_config(self):
        """Test config values and keyword overrides."""
        finder = HotspotFinder.from_config({"hotspots": {"n_hotspots": 4, "peaks_only": True}},
                                           radius=10.0)
        assert finder.n == 4
        assert finder.peaks_only
        assert finder.radius == 10.0
        assert finder.delete_existing

    def test_invalid(self):
        """Test that negative n or radius is rejected."""
        with pytest.raises(ValueError):
            HotspotFinder(n=-1)
        with pytest.raises(ValueError):
            HotspotFinder(radius=-1.0)
