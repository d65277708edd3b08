"""
Hotspot detection on density maps.

Hotspots are found greedily: the highest remaining candidate pixel is
accepted, then (unless overlap is allowed) every candidate whose centre lies
within the hotspot radius of it is excluded, and the search repeats. The
budget ``n`` is shared by all parent regions. Ties are broken by raster scan
order. The result is not guaranteed to be the globally optimal placement.

Candidate pixels can be restricted further:
    - min_count: the counts channel (or the channel itself) must be >= min_count
    - peaks_only: only local maxima (3x3 neighbourhood)
    - constrain_within_parent: the whole hotspot circle must lie in its parent

Usage:
    from densitymaps.density.hotspots import find_hotspots

    hotspots = find_hotspots(hierarchy, density_map, "Positive", n=3, radius=50.0)
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import shapely
from scipy import ndimage
from shapely.geometry import Point, box

from densitymaps.cancellation import CancellationToken, check_cancelled
from densitymaps.density.raster import DensityRaster
from densitymaps.objects.index import ObjectHierarchy
from densitymaps.objects.model import ClassifiedObject, PathClass, create_annotation
from densitymaps.utils.config import get_section_defaults
from densitymaps.utils.logging import get_logger

logger = get_logger(__name__)

HOTSPOT_SUFFIX = "hotspot"


def get_hotspot_class(channel_name: str) -> PathClass:
    """Classification for hotspots and contours of a channel: '<channel-name> hotspot'."""
    return PathClass.from_string(f"{channel_name} {HOTSPOT_SUFFIX}")


@dataclass(frozen=True)
class Hotspot:
    """An accepted peak and the annotation created for it."""
    annotation: ClassifiedObject
    x: float
    y: float
    value: float
    parent_id: Optional[str] = None


def remove_existing(hierarchy: ObjectHierarchy, path_class: PathClass) -> int:
    """Remove annotations classified exactly as ``path_class``; returns the number removed."""
    existing = hierarchy.get_objects(
        lambda o: o.is_annotation and o.classification == path_class
    )
    if existing:
        hierarchy.remove_objects(existing)
        logger.info("Removed %d existing '%s' annotations", len(existing), path_class)
    return len(existing)


def _parent_mask(
    geometry,
    xs: np.ndarray,
    ys: np.ndarray,
) -> np.ndarray:
    """Pixels whose centres lie inside ``geometry``."""
    mask = np.zeros((len(ys), len(xs)), dtype=bool)
    if geometry is None or geometry.is_empty:
        return mask
    minx, miny, maxx, maxy = geometry.bounds
    c0, c1 = np.searchsorted(xs, minx, side="left"), np.searchsorted(xs, maxx, side="right")
    r0, r1 = np.searchsorted(ys, miny, side="left"), np.searchsorted(ys, maxy, side="right")
    if c0 >= c1 or r0 >= r1:
        return mask
    gx, gy = np.meshgrid(xs[c0:c1], ys[r0:r1])
    mask[r0:r1, c0:c1] = shapely.contains_xy(geometry, gx, gy)
    return mask


class HotspotFinder:
    """
    Finds hotspots and adds them to a hierarchy as annotations.

    Args:
        n: Maximum number of hotspots (shared by all parents)
        radius: Hotspot radius in calibrated units; 0 creates point annotations.
            None uses the density map's kernel radius
        min_density: Peaks below this value are not accepted
        allow_overlap: If False, peaks within ``radius`` of an accepted peak
            are excluded. Accepted centres are then more than ``radius``
            apart, not ``2 * radius``, so hotspot circles can still overlap
        delete_existing: Remove existing annotations of the hotspot class first
        min_count: Minimum counts-channel value for a candidate pixel
        peaks_only: Only accept local maxima
        constrain_within_parent: The hotspot circle must fit inside its parent
    """

    def __init__(
        self,
        n: int = 1,
        radius: Optional[float] = None,
        min_density: float = 0.0,
        allow_overlap: bool = False,
        delete_existing: bool = True,
        min_count: float = 0.0,
        peaks_only: bool = False,
        constrain_within_parent: bool = False,
    ):
        if n < 0:
            raise ValueError(f"Number of hotspots must be >= 0, got {n}")
        if radius is not None and radius < 0:
            raise ValueError(f"Hotspot radius must be >= 0, got {radius}")
        self.n = int(n)
        self.radius = radius
        self.min_density = float(min_density)
        self.allow_overlap = allow_overlap
        self.delete_existing = delete_existing
        self.min_count = float(min_count)
        self.peaks_only = peaks_only
        self.constrain_within_parent = constrain_within_parent

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "HotspotFinder":
        """Create a finder from the 'hotspots' section of a loaded config."""
        params = get_section_defaults("hotspots")
        if config is not None:
            params.update(config.get("hotspots", {}))
        params["n"] = params.pop("n_hotspots")
        params.update(kwargs)
        return cls(**params)

    # ------------------------------------------------------------------

    def _radius(self, density_map: DensityRaster) -> float:
        if self.radius is not None:
            return float(self.radius)
        if density_map.spec is not None:
            return float(density_map.spec.radius)
        return 0.0

    def _candidates(
        self,
        density_map: DensityRaster,
        values: np.ndarray,
        parents: Sequence[Optional[ClassifiedObject]],
        radius_px: float,
    ) -> np.ndarray:
        """Index of the parent owning each candidate pixel, -1 if not a candidate."""
        xs, ys = density_map.pixel_centers()
        owner = np.full(values.shape, -1, dtype=np.int64)

        for i, parent in enumerate(parents):
            if parent is None:
                region = box(0, 0, density_map.image_width, density_map.image_height)
            else:
                region = parent.geometry
            if self.constrain_within_parent and radius_px > 0:
                region = region.buffer(-radius_px)
                if region.is_empty:
                    logger.warning("Region %s is too small for hotspots of radius %.1f px",
                                   "image" if parent is None else parent.id, radius_px)
                    continue
            inside = _parent_mask(region, xs, ys)
            # First parent wins where parents overlap
            owner[inside & (owner < 0)] = i

        if self.min_count > 0:
            count_band = density_map.counts_band
            counts = density_map.read_channel(count_band) if count_band >= 0 else values
            owner[~(counts >= self.min_count)] = -1

        if self.peaks_only:
            local_max = ndimage.maximum_filter(values, size=3, mode="constant", cval=-np.inf)
            owner[values < local_max] = -1

        return owner

    def find(
        self,
        hierarchy: ObjectHierarchy,
        density_map: DensityRaster,
        channel: Union[int, str],
        parents: Optional[Sequence[ClassifiedObject]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[Hotspot]:
        """
        Find hotspots and add their annotations to ``hierarchy``.

        Args:
            hierarchy: Receives the new annotations
            density_map: Map to search
            channel: Channel name or index
            parents: Regions to search; None or empty = whole image
            cancel_token: Polled every iteration; nothing is added if cancelled

        Returns:
            Accepted hotspots, highest value first

        Raises:
            Cancelled: If ``cancel_token`` was cancelled
        """
        band = density_map.channel_index(channel)
        channel_name = density_map.channel_names[band]
        hotspot_class = get_hotspot_class(channel_name)

        native = density_map.pixel_size / density_map.downsample
        radius_px = self._radius(density_map) / native

        values = np.nan_to_num(density_map.read_channel(band).astype(np.float64), nan=0.0)
        parent_list: List[Optional[ClassifiedObject]] = list(parents) if parents else [None]
        owner = self._candidates(density_map, values, parent_list, radius_px)

        remaining = np.where(owner >= 0, values, -np.inf)
        xs, ys = density_map.pixel_centers()
        accepted: List[Tuple[int, int, float, int]] = []

        while len(accepted) < self.n:
            check_cancelled(cancel_token)
            flat_index = int(np.argmax(remaining))
            row, col = np.unravel_index(flat_index, remaining.shape)
            value = remaining[row, col]
            if not np.isfinite(value) or value <= 0 or value < self.min_density:
                break
            accepted.append((int(row), int(col), float(value), int(owner[row, col])))
            remaining[row, col] = -np.inf
            if not self.allow_overlap:
                d2 = (ys[:, None] - ys[row]) ** 2 + (xs[None, :] - xs[col]) ** 2
                remaining[d2 <= radius_px * radius_px] = -np.inf

        check_cancelled(cancel_token)

        if not accepted:
            logger.warning("No hotspots found in '%s' matching the search criteria", channel_name)
        elif len(accepted) < self.n:
            logger.warning("Only found %d/%d hotspots in '%s'", len(accepted), self.n, channel_name)

        if self.delete_existing:
            remove_existing(hierarchy, hotspot_class)

        hotspots = []
        for row, col, value, parent_index in accepted:
            x, y = density_map.pixel_to_image(col, row)
            center = Point(x, y)
            geometry = center.buffer(radius_px) if radius_px > 0 else center
            parent = parent_list[parent_index]
            annotation = create_annotation(geometry, hotspot_class, plane=density_map.plane)
            hotspots.append(Hotspot(
                annotation=annotation,
                x=x,
                y=y,
                value=value,
                parent_id=None if parent is None else parent.id,
            ))

        if hotspots:
            hierarchy.add_objects([h.annotation for h in hotspots])
            logger.info("Added %d '%s' annotations", len(hotspots), hotspot_class)
        return hotspots


def find_hotspots(
    hierarchy: ObjectHierarchy,
    density_map: DensityRaster,
    channel: Union[int, str],
    parents: Optional[Sequence[ClassifiedObject]] = None,
    n: int = 1,
    radius: Optional[float] = None,
    min_density: float = 0.0,
    allow_overlap: bool = False,
    delete_existing: bool = True,
    min_count: float = 0.0,
    peaks_only: bool = False,
    constrain_within_parent: bool = False,
    cancel_token: Optional[CancellationToken] = None,
) -> List[ClassifiedObject]:
    """
    Find up to ``n`` hotspots in one channel and add them to ``hierarchy``.

    See HotspotFinder for the parameters.

    Returns:
        The hotspot annotations that were added
    """
    finder = HotspotFinder(
        n=n,
        radius=radius,
        min_density=min_density,
        allow_overlap=allow_overlap,
        delete_existing=delete_existing,
        min_count=min_count,
        peaks_only=peaks_only,
        constrain_within_parent=constrain_within_parent,
    )
    hotspots = finder.find(hierarchy, density_map, channel, parents, cancel_token=cancel_token)
    return [h.annotation for h in hotspots]
