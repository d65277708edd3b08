"""
Tests for density map specifications.

Tests densitymaps/density/spec.py: validation, channel layout, structural
equality and serialization, and the convenience builders.

Run with: pytest tests/test_spec.py -v
"""

import sys
from pathlib import Path

import pytest
from shapely.geometry import Point

sys.path.insert(0, str(Path(__file__).parent.parent))

from densitymaps.density.selectors import ClassFilter, ObjectSelector, ObjectType
from densitymaps.density.spec import (
    COUNTS_CHANNEL,
    AreaRoiMode,
    DensityClass,
    DensityMapSpec,
    KernelShape,
    Normalization,
    build_density_map_spec,
    density_spec,
    percentage_spec,
    point_annotation_spec,
    positive_percentage_spec,
    spec_from_config,
)
from densitymaps.errors import InvalidSpec
from densitymaps.objects.model import create_annotation, create_detection
from densitymaps.utils.config import get_section_defaults


class TestSpecValidation:
    """Tests for InvalidSpec on bad values."""

    @pytest.mark.parametrize("radius", [0.0, -1.0])
    def test_non_positive_radius(self, radius):
        """Test that radius <= 0 is rejected."""
        with pytest.raises(InvalidSpec):
            build_density_map_spec(radius)

    def test_non_positive_pixel_size(self):
        """Test that pixel size <= 0 is rejected."""
        with pytest.raises(InvalidSpec):
            build_density_map_spec(5.0, pixel_size=0.0)

    def test_negative_max_size(self):
        """Test that a negative max size is rejected."""
        with pytest.raises(InvalidSpec):
            build_density_map_spec(5.0, max_size=-10)

    def test_gaussian_weighted_requires_gaussian(self):
        """Test that GAUSSIAN_WEIGHTED with an explicit box kernel is inconsistent."""
        with pytest.raises(InvalidSpec):
            build_density_map_spec(5.0, kernel="box", normalization="gaussian_weighted")

    def test_gaussian_weighted_defaults_to_gaussian(self):
        """Test that GAUSSIAN_WEIGHTED picks the Gaussian kernel by default."""
        spec = build_density_map_spec(5.0, normalization="gaussian_weighted")
        assert spec.kernel is KernelShape.GAUSSIAN

    def test_unknown_selector(self):
        """Test that an unknown object type becomes InvalidSpec."""
        with pytest.raises(InvalidSpec):
            build_density_map_spec(5.0, all_objects="nuclei")

    def test_unknown_normalization(self):
        """Test that an unknown normalization becomes InvalidSpec."""
        with pytest.raises(InvalidSpec):
            build_density_map_spec(5.0, normalization="log")

    def test_duplicate_class_names(self):
        """Test that two classes cannot share a channel name."""
        classes = [
            DensityClass(name="A", selector=ObjectSelector.from_string("detections:A")),
            DensityClass(name="A", selector=ObjectSelector.from_string("detections:B")),
        ]
        with pytest.raises(InvalidSpec):
            build_density_map_spec(5.0, density_classes=classes)

    def test_counts_name_reserved(self):
        """Test that 'Counts' cannot be used as a class name."""
        with pytest.raises(InvalidSpec):
            build_density_map_spec(5.0, density_classes={COUNTS_CHANNEL: "detections:A"})

    def test_invalid_spec_is_value_error(self):
        """Test that InvalidSpec can be caught as ValueError."""
        with pytest.raises(ValueError):
            build_density_map_spec(-1.0)


class TestSpecChannels:
    """Tests for the output channel layout."""

    def test_raw_channels(self):
        """Test one channel per class and no counts channel for RAW."""
        spec = build_density_map_spec(5.0, density_classes={"A": "detections:A", "B": "detections:B"})
        assert spec.channel_names() == ["A", "B"]
        assert not spec.has_counts_channel
        assert spec.n_channels == 2

    def test_percent_adds_counts(self):
        """Test that PERCENT appends the counts channel."""
        spec = build_density_map_spec(5.0, density_classes={"A": "detections:A"}, normalization="percent")
        assert spec.channel_names() == ["A", COUNTS_CHANNEL]

    def test_no_classes(self):
        """Test that a spec without classes has only the counts channel."""
        assert build_density_map_spec(5.0).channel_names() == [COUNTS_CHANNEL]


class TestSpecPredicates:
    """Tests for resolved predicates."""

    def test_class_predicate_requires_all_objects(self):
        """Test that density objects are a subset of the counted objects."""
        spec = build_density_map_spec(
            5.0,
            density_classes={"Positive": "all:Positive"},
            all_objects="cells",
        )
        all_pred, (positive_pred,) = spec.resolve_predicates()

        cell = create_detection(Point(0, 0), "Positive", cell=True)
        detection = create_detection(Point(0, 0), "Positive")
        annotation = create_annotation(Point(0, 0), "Positive")

        assert all_pred(cell) and positive_pred(cell)
        assert not all_pred(detection) and not positive_pred(detection)
        assert not positive_pred(annotation)


class TestSpecEquality:
    """Specs are structurally comparable and serializable."""

    def test_equal_specs(self):
        """Test that identically built specs are equal and share a key."""
        a = build_density_map_spec(5.0, density_classes={"A": "detections:A"})
        b = build_density_map_spec(5.0, density_classes={"A": "detections:A"})
        assert a == b
        assert a.spec_key() == b.spec_key()
        assert hash(a) == hash(b)

    def test_different_specs(self):
        """Test that a different radius gives a different key."""
        a = build_density_map_spec(5.0)
        b = build_density_map_spec(6.0)
        assert a != b
        assert a.spec_key() != b.spec_key()

    def test_class_name_normalized(self):
        """Test that equivalent class spellings compare equal."""
        a = build_density_map_spec(5.0, density_classes={"T": "detections:Tumor:Positive"})
        b = build_density_map_spec(5.0, density_classes={"T": "detections:Tumor: Positive"})
        assert a == b

    def test_json_round_trip(self):
        """Test that a spec survives to_json/from_json unchanged."""
        spec = percentage_spec("Tumor: Positive", "Tumor", 25.0, pixel_size=2.0,
                               area_roi_mode="footprint")
        assert DensityMapSpec.from_json(spec.to_json()) == spec

    def test_from_json_invalid(self):
        """Test that bad JSON is reported as InvalidSpec."""
        with pytest.raises(InvalidSpec):
            DensityMapSpec.from_json('{"radius": -3}')

    def test_frozen(self):
        """Test that specs cannot be modified."""
        spec = build_density_map_spec(5.0)
        with pytest.raises(Exception):
            spec.radius = 10.0


class TestConvenienceBuilders:
    """Tests for density_spec, percentage_spec and friends."""

    def test_density_spec(self):
        """Test a single-class detection density."""
        spec = density_spec("Tumor", 10.0)
        assert spec.channel_names() == ["Tumor"]
        assert spec.density_classes[0].selector.class_filter == ClassFilter.exact("Tumor")

    def test_density_spec_unclassified(self):
        """Test density of unclassified detections."""
        spec = density_spec(None, 10.0)
        assert spec.channel_names() == ["Unclassified"]

    def test_density_spec_base_class(self):
        """Test base-class matching."""
        spec = density_spec("Tumor", 10.0, base_class=True)
        assert spec.density_classes[0].selector.class_filter == ClassFilter.base("Tumor")

    def test_percentage_spec(self):
        """Test a percentage of one class within a base class."""
        spec = percentage_spec("Tumor: Positive", "Tumor", 10.0)
        assert spec.normalization is Normalization.PERCENT
        assert spec.channel_names() == ["Tumor: Positive", COUNTS_CHANNEL]
        assert spec.all_objects.class_filter == ClassFilter.base("Tumor")

    def test_positive_percentage_spec(self):
        """Test positive percentage channel naming."""
        assert positive_percentage_spec(10.0).channel_names()[0] == "Positive"
        assert positive_percentage_spec(10.0, base_class="Tumor").channel_names()[0] == "Tumor: Positive"

    def test_point_annotation_spec(self):
        """Test point annotation density selects point annotations."""
        spec = point_annotation_spec("Immune", 10.0)
        assert spec.all_objects.object_type is ObjectType.POINT_ANNOTATIONS
        assert spec.density_classes[0].selector.object_type is ObjectType.POINT_ANNOTATIONS

    def test_spec_from_config(self):
        """Test that config defaults fill max size and ROI mode."""
        density = get_section_defaults("density")
        density.update(max_size=512, area_roi_mode="footprint")

        spec = spec_from_config(density, 10.0)

        assert spec.max_size == 512
        assert spec.area_roi_mode is AreaRoiMode.FOOTPRINT

    def test_describe(self):
        """Test the human readable description."""
        text = positive_percentage_spec(10.0).describe()
        assert "Positive" in text
        assert "radius=10" in text
