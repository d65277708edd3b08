"""
Threshold contours of density maps.

The traced geometry is the exact union of the raster pixels at or above the
threshold, in full-resolution image coordinates. It is built from horizontal
pixel runs, merged into rectangles where consecutive rows share a run, and
unioned with shapely. Optional Ramer-Douglas-Peucker simplification uses
OpenCV.

Usage:
    from densitymaps.density.contours import trace_contours

    annotations = trace_contours(hierarchy, density_map, "Positive", threshold=20.0)

    # Multi-band threshold: density >= 20 where at least 5 objects are counted
    annotations = trace_contours(hierarchy, density_map, "Positive", 20.0,
                                 extra_thresholds={"Counts": 5}, split=True)
"""

from typing import Dict, List, Mapping, Optional, Sequence, Union

import cv2
import numpy as np
import shapely
from shapely.geometry import MultiPolygon, Polygon, box
from shapely.geometry.base import BaseGeometry
from shapely.validation import make_valid

from densitymaps.cancellation import CancellationToken, check_cancelled
from densitymaps.density.hotspots import get_hotspot_class, remove_existing
from densitymaps.density.raster import DensityRaster
from densitymaps.objects.index import ObjectHierarchy
from densitymaps.objects.model import ClassifiedObject, create_annotation
from densitymaps.utils.logging import get_logger

logger = get_logger(__name__)

ChannelKey = Union[int, str]


def rdp_simplify(points: np.ndarray, epsilon: float) -> np.ndarray:
    """
    Apply Ramer-Douglas-Peucker simplification using OpenCV.

    Args:
        points: Array of shape (N, 2) with coordinates
        epsilon: Maximum distance threshold for point removal (same units as points)

    Returns:
        Simplified array of points, shape (M, 2) where M <= N
    """
    if len(points) < 3:
        return points

    points = np.array(points, dtype=np.float32).reshape(-1, 1, 2)
    simplified = cv2.approxPolyDP(points, epsilon, closed=True)
    return simplified.reshape(-1, 2)


def ensure_polygonal(geometry: Optional[BaseGeometry]) -> Optional[BaseGeometry]:
    """
    Valid Polygon or MultiPolygon made of the polygonal parts of ``geometry``.

    Handles:
    - Self-intersecting polygons
    - GeometryCollection results (lines and points are dropped)
    - Empty geometries (returns None)
    """
    if geometry is None or geometry.is_empty:
        return None

    if not geometry.is_valid:
        geometry = make_valid(geometry)

    if geometry.geom_type in ('Polygon', 'MultiPolygon'):
        return geometry

    polys = []
    for g in getattr(geometry, 'geoms', []):
        if g.geom_type == 'Polygon':
            polys.append(g)
        elif g.geom_type == 'MultiPolygon':
            polys.extend(g.geoms)
    if not polys:
        return None
    return polys[0] if len(polys) == 1 else MultiPolygon(polys)


def simplify_geometry(geometry: BaseGeometry, epsilon: float) -> Optional[BaseGeometry]:
    """RDP-simplify every ring of a polygonal geometry; rings that collapse are dropped."""
    if epsilon <= 0:
        return geometry

    def simplify_ring(coords) -> Optional[np.ndarray]:
        ring = rdp_simplify(np.asarray(coords)[:-1], epsilon)
        return ring if len(ring) >= 3 else None

    polys = []
    for poly in _polygons(geometry):
        shell = simplify_ring(poly.exterior.coords)
        if shell is None:
            continue
        holes = [h for h in (simplify_ring(r.coords) for r in poly.interiors) if h is not None]
        polys.append(Polygon(shell, holes))
    if not polys:
        return None
    return ensure_polygonal(shapely.union_all(polys))


def _polygons(geometry: Optional[BaseGeometry]) -> List[Polygon]:
    if geometry is None or geometry.is_empty:
        return []
    if isinstance(geometry, Polygon):
        return [geometry]
    return [g for g in getattr(geometry, 'geoms', []) if isinstance(g, Polygon)]


def threshold_mask(
    density_map: DensityRaster,
    channel: ChannelKey,
    threshold: float,
    extra_thresholds: Optional[Mapping[ChannelKey, float]] = None,
) -> np.ndarray:
    """
    Pixels where ``channel >= threshold`` (and every extra band >= its value).

    Returns:
        Boolean (height, width) array
    """
    mask = density_map.read_channel(channel) >= threshold
    for band, value in (extra_thresholds or {}).items():
        mask &= density_map.read_channel(band) >= value
    return mask


def mask_to_geometry(mask: np.ndarray, downsample: float) -> Optional[BaseGeometry]:
    """
    Exact union of the True pixels of a mask, scaled to image coordinates.

    Returns:
        Polygon or MultiPolygon, or None if the mask is empty
    """
    boxes = []
    # (x0, x1) run -> first row of the rectangle it belongs to
    open_runs: Dict[tuple, int] = {}
    height = mask.shape[0]

    for row in range(height + 1):
        runs = set()
        if row < height:
            padded = np.concatenate(([False], mask[row], [False])).astype(np.int8)
            edges = np.flatnonzero(np.diff(padded))
            runs = {(int(edges[i]), int(edges[i + 1])) for i in range(0, len(edges), 2)}
        for run in list(open_runs):
            if run not in runs:
                start = open_runs.pop(run)
                boxes.append(box(run[0] * downsample, start * downsample,
                                 run[1] * downsample, row * downsample))
        for run in runs:
            open_runs.setdefault(run, row)

    if not boxes:
        return None
    return ensure_polygonal(shapely.union_all(boxes))


def trace_geometry(
    density_map: DensityRaster,
    channel: ChannelKey,
    threshold: float,
    extra_thresholds: Optional[Mapping[ChannelKey, float]] = None,
) -> Optional[BaseGeometry]:
    """
    Geometry covering every pixel >= threshold, clipped to the image.

    Returns:
        Polygon or MultiPolygon in image coordinates, or None
    """
    mask = threshold_mask(density_map, channel, threshold, extra_thresholds)
    geometry = mask_to_geometry(mask, density_map.downsample)
    if geometry is None:
        return None
    image_box = box(0, 0, density_map.image_width, density_map.image_height)
    return ensure_polygonal(geometry.intersection(image_box))


def trace_contours(
    hierarchy: ObjectHierarchy,
    density_map: DensityRaster,
    channel: ChannelKey,
    threshold: float,
    parents: Optional[Sequence[ClassifiedObject]] = None,
    split: bool = False,
    delete_existing: bool = False,
    extra_thresholds: Optional[Mapping[ChannelKey, float]] = None,
    simplify_epsilon: float = 0.0,
    cancel_token: Optional[CancellationToken] = None,
) -> List[ClassifiedObject]:
    """
    Trace thresholded regions and add them to ``hierarchy`` as annotations.

    Args:
        hierarchy: Receives the new annotations
        density_map: Map to threshold
        channel: Channel name or index
        threshold: Pixels >= threshold are included
        parents: Regions to trace within; None or empty = whole image
        split: One annotation per connected polygon instead of one per parent
        delete_existing: Remove existing annotations of the same class first
        extra_thresholds: Further {band: minimum} conditions (e.g. counts)
        simplify_epsilon: RDP tolerance in image pixels (0 = exact)
        cancel_token: Checked between parents

    Returns:
        The annotations that were added
    """
    band = density_map.channel_index(channel)
    channel_name = density_map.channel_names[band]
    contour_class = get_hotspot_class(channel_name)

    geometry = trace_geometry(density_map, band, threshold, extra_thresholds)

    annotations = []
    if geometry is not None:
        for parent in (list(parents) if parents else [None]):
            check_cancelled(cancel_token)
            region = geometry if parent is None else ensure_polygonal(
                geometry.intersection(parent.geometry)
            )
            if region is not None and simplify_epsilon > 0:
                region = simplify_geometry(region, simplify_epsilon)
            if region is None:
                continue
            pieces = _polygons(region) if split else [region]
            annotations.extend(
                create_annotation(piece, contour_class, plane=density_map.plane)
                for piece in pieces
            )

    check_cancelled(cancel_token)

    if delete_existing:
        remove_existing(hierarchy, contour_class)

    if not annotations:
        logger.warning("No thresholded regions found in '%s' at %g", channel_name, threshold)
        return []

    hierarchy.add_objects(annotations)
    logger.info("Added %d '%s' contour annotations", len(annotations), contour_class)
    return annotations
