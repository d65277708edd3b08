"""
Pytest fixtures for densitymaps tests.

Provides shared fixtures for building object hierarchies, images, specs and
small hand-made density rasters.
"""

import sys
from pathlib import Path

import numpy as np
import pytest
from shapely.geometry import Point, box

sys.path.insert(0, str(Path(__file__).parent.parent))

from densitymaps.density.raster import DensityRaster
from densitymaps.density.spec import build_density_map_spec
from densitymaps.objects.image import ImageData
from densitymaps.objects.index import ObjectHierarchy
from densitymaps.objects.model import create_annotation, create_detection


@pytest.fixture
def positive_points():
    """
    Three 'Positive' point annotations at (10, 10), (10, 12) and (50, 50).

    Returns:
        list of ClassifiedObject
    """
    return [
        create_annotation(Point(10, 10), "Positive"),
        create_annotation(Point(10, 12), "Positive"),
        create_annotation(Point(50, 50), "Positive"),
    ]


@pytest.fixture
def negative_points():
    """'Negative' point annotations co-located with positive_points."""
    return [
        create_annotation(Point(10, 10), "Negative"),
        create_annotation(Point(10, 12), "Negative"),
        create_annotation(Point(50, 50), "Negative"),
    ]


@pytest.fixture
def point_image(positive_points):
    """
    256x256 uncalibrated image holding the positive point annotations.

    Returns:
        ImageData
    """
    return ImageData(
        width=256,
        height=256,
        hierarchy=ObjectHierarchy(positive_points),
        name="points",
    )


@pytest.fixture
def positive_raw_spec():
    """RAW box-kernel spec over point annotations, radius 5, pixel size 1."""
    return build_density_map_spec(
        5.0,
        density_classes={"Positive": "point_annotations:Positive"},
        all_objects="point_annotations",
        pixel_size=1.0,
    )


@pytest.fixture
def cell_image():
    """
    300x200 image with a grid of detections: 'Tumor: Positive' on the left
    half, 'Tumor: Negative' on the right, plus one 'Stroma' cell.

    Returns:
        ImageData
    """
    objects = []
    for x in range(10, 300, 20):
        for y in range(10, 200, 20):
            cls = "Tumor: Positive" if x < 150 else "Tumor: Negative"
            objects.append(create_detection(box(x - 3, y - 3, x + 3, y + 3), cls, cell=True))
    objects.append(create_detection(Point(150, 100).buffer(4), "Stroma", cell=True))
    return ImageData(
        width=300,
        height=200,
        pixel_width=0.5,
        pixel_height=0.5,
        hierarchy=ObjectHierarchy(objects),
        name="cells",
    )


def make_raster(values, channel_names=("Density",), downsample=1.0, pixel_size=1.0, **kwargs):
    """Wrap a (h, w) or (h, w, c) array as a DensityRaster."""
    data = np.asarray(values, dtype=np.float32)
    if data.ndim == 2:
        data = data[:, :, None]
    height, width = data.shape[:2]
    kwargs.setdefault("image_width", int(round(width * downsample)))
    kwargs.setdefault("image_height", int(round(height * downsample)))
    return DensityRaster(
        data=data,
        channel_names=tuple(channel_names),
        downsample=downsample,
        pixel_size=pixel_size,
        **kwargs,
    )


@pytest.fixture
def two_peak_raster():
    """
    100x100 single-channel raster with peaks of 10 at (20, 20) and 8 at (70, 70).

    Each peak is a small pyramid so neighbouring pixels are lower.

    Returns:
        DensityRaster
    """
    values = np.zeros((100, 100), dtype=np.float32)
    yy, xx = np.mgrid[:100, :100]
    for (cx, cy), peak in (((20, 20), 10.0), ((70, 70), 8.0)):
        d = np.maximum(np.abs(xx - cx), np.abs(yy - cy))
        values = np.maximum(values, np.clip(peak - d, 0, None))
    return make_raster(values)


@pytest.fixture
def empty_hierarchy():
    """An ObjectHierarchy with no objects."""
    return ObjectHierarchy()
