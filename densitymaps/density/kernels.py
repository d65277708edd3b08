"""
Kernel accumulation of object counts on a raster tile.

For each output pixel, objects are weighted by their distance ``d`` from the
pixel centre:

    box:      w = 1 if d <= r else 0
    gaussian: w = exp(-d^2 / (2 sigma^2)), sigma = r / 2,
              truncated at ``gaussian_truncate * sigma``

Distances are measured in full-resolution image pixels. Point ROIs use each
of their points; other ROIs use their centroid, or (FOOTPRINT mode) the
distance to the geometry itself, which is 0 inside it.

Weights are summed in float64 in the order objects are given (the index's
insertion order), so a pixel's value does not depend on how the raster is
tiled.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np
import shapely

from densitymaps.density.spec import AreaRoiMode, KernelShape
from densitymaps.objects.model import ClassifiedObject
from densitymaps.utils.logging import get_logger

logger = get_logger(__name__)

ObjectPredicate = Callable[[ClassifiedObject], bool]

DEFAULT_GAUSSIAN_TRUNCATE = 6.0


@dataclass(frozen=True)
class TileRegion:
    """
    A rectangle of output raster pixels.

    Attributes:
        x: First raster column
        y: First raster row
        width: Number of columns
        height: Number of rows
        downsample: Full-resolution image pixels per raster pixel
    """
    x: int
    y: int
    width: int
    height: int
    downsample: float = 1.0

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Tile size must be positive, got {self.width}x{self.height}")
        if self.downsample <= 0:
            raise ValueError(f"Downsample must be positive, got {self.downsample}")

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    def image_bounds(self) -> Tuple[float, float, float, float]:
        """(x, y, width, height) of the tile in full-resolution image pixels."""
        d = self.downsample
        return (self.x * d, self.y * d, self.width * d, self.height * d)

    def padded_bounds(self, padding: float) -> Tuple[float, float, float, float]:
        """Image bounds expanded by ``padding`` image pixels on every side."""
        x, y, w, h = self.image_bounds()
        return (x - padding, y - padding, w + 2 * padding, h + 2 * padding)

    def pixel_centers(self) -> Tuple[np.ndarray, np.ndarray]:
        """Image x coordinates of column centres and y coordinates of row centres."""
        d = self.downsample
        xs = (self.x + np.arange(self.width, dtype=np.float64) + 0.5) * d
        ys = (self.y + np.arange(self.height, dtype=np.float64) + 0.5) * d
        return xs, ys


class KernelAccumulator:
    """
    Accumulate kernel-weighted object counts for a tile.

    Args:
        radius_px: Kernel radius in full-resolution image pixels (> 0)
        kernel: KernelShape.BOX or KernelShape.GAUSSIAN
        area_roi_mode: Distance to area ROIs by centroid or footprint
        gaussian_truncate: Gaussian support in multiples of sigma
    """

    def __init__(
        self,
        radius_px: float,
        kernel: KernelShape = KernelShape.BOX,
        area_roi_mode: AreaRoiMode = AreaRoiMode.CENTROID,
        gaussian_truncate: float = DEFAULT_GAUSSIAN_TRUNCATE,
    ):
        if not radius_px > 0:
            raise ValueError(f"Kernel radius must be > 0, got {radius_px}")
        if gaussian_truncate <= 0:
            raise ValueError(f"gaussian_truncate must be > 0, got {gaussian_truncate}")
        self.radius_px = float(radius_px)
        self.kernel = KernelShape(kernel)
        self.area_roi_mode = AreaRoiMode(area_roi_mode)
        self.gaussian_truncate = float(gaussian_truncate)

    @property
    def sigma(self) -> float:
        return self.radius_px / 2.0

    @property
    def support(self) -> float:
        """Distance beyond which weights are exactly zero."""
        if self.kernel is KernelShape.BOX:
            return self.radius_px
        return self.gaussian_truncate * self.sigma

    def weights(self, d2: np.ndarray) -> np.ndarray:
        """Kernel weights for squared distances (float64)."""
        support = self.support
        inside = d2 <= support * support
        if self.kernel is KernelShape.BOX:
            return inside.astype(np.float64)
        w = np.exp(-d2 / (2.0 * self.sigma * self.sigma))
        return np.where(inside, w, 0.0)

    # ------------------------------------------------------------------

    def _window(
        self,
        xs: np.ndarray,
        ys: np.ndarray,
        bounds: Tuple[float, float, float, float],
    ) -> Optional[Tuple[slice, slice]]:
        """Pixel window whose centres may lie within support of ``bounds``."""
        minx, miny, maxx, maxy = bounds
        s = self.support
        c0 = int(np.searchsorted(xs, minx - s, side="left"))
        c1 = int(np.searchsorted(xs, maxx + s, side="right"))
        r0 = int(np.searchsorted(ys, miny - s, side="left"))
        r1 = int(np.searchsorted(ys, maxy + s, side="right"))
        if c0 >= c1 or r0 >= r1:
            return None
        return slice(r0, r1), slice(c0, c1)

    def _add_point(self, out: np.ndarray, xs: np.ndarray, ys: np.ndarray, px: float, py: float) -> None:
        window = self._window(xs, ys, (px, py, px, py))
        if window is None:
            return
        rows, cols = window
        dx2 = (xs[cols] - px) ** 2
        dy2 = (ys[rows] - py) ** 2
        out[rows, cols] += self.weights(dy2[:, None] + dx2[None, :])

    def _add_footprint(self, out: np.ndarray, xs: np.ndarray, ys: np.ndarray, obj: ClassifiedObject) -> None:
        window = self._window(xs, ys, obj.geometry.bounds)
        if window is None:
            return
        rows, cols = window
        gx, gy = np.meshgrid(xs[cols], ys[rows])
        d = shapely.distance(shapely.points(gx.ravel(), gy.ravel()), obj.geometry)
        d2 = np.asarray(d, dtype=np.float64).reshape(gx.shape) ** 2
        out[rows, cols] += self.weights(d2)

    def accumulate_channel(self, tile: TileRegion, objects: Iterable[ClassifiedObject]) -> np.ndarray:
        """
        Kernel-weighted count of ``objects`` at each pixel of ``tile``.

        Returns:
            float64 array of shape (tile.height, tile.width); zeros if there
            are no objects
        """
        out = np.zeros(tile.shape, dtype=np.float64)
        xs, ys = tile.pixel_centers()
        use_footprint = self.area_roi_mode is AreaRoiMode.FOOTPRINT
        for obj in objects:
            if use_footprint and not obj.is_point:
                self._add_footprint(out, xs, ys, obj)
                continue
            for px, py in obj.representative_points():
                self._add_point(out, xs, ys, px, py)
        return out

    def accumulate(
        self,
        tile: TileRegion,
        objects: Iterable[ClassifiedObject],
        all_predicate: ObjectPredicate,
        density_predicate: Optional[ObjectPredicate] = None,
    ) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """
        Counts of all selected objects and of the density subset.

        Density objects are those matching ``all_predicate`` and
        ``density_predicate``.

        Returns:
            (counts_all, counts_density); counts_density is None when no
            density predicate is given
        """
        selected: List[ClassifiedObject] = [o for o in objects if all_predicate(o)]
        counts_all = self.accumulate_channel(tile, selected)
        if density_predicate is None:
            return counts_all, None
        counts_density = self.accumulate_channel(
            tile, [o for o in selected if density_predicate(o)]
        )
        return counts_all, counts_density
