"""
Tiled density map building.

The output raster is split into non-overlapping tiles. For each tile the
object index is queried with the tile's extent padded by the kernel support
(matching representative points, or footprints in FOOTPRINT mode),
the kernel accumulator is run once per density class (and once for the
all-objects counts when needed), and the normalized values are written into
the tile's own slice of the output. Tiles share no mutable state, so they can
be computed by a thread pool; results do not depend on tile size or worker
count.

Error handling:
    - InvalidSpec is raised before any tile is computed
    - DataUnavailable (index closed) and Cancelled abort the build; no
      raster is returned
    - Any other error inside a tile is logged, the tile is left as zeros and
      counted in DensityRaster.failed_tiles

Usage:
    from densitymaps.density.builder import DensityMapBuilder

    builder = DensityMapBuilder(tile_size=256, num_workers=4)
    density_map = builder.build(image_data, spec)
"""

import math
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional

import numpy as np
from tqdm import tqdm

from densitymaps.cancellation import CancellationToken, check_cancelled
from densitymaps.density.kernels import DEFAULT_GAUSSIAN_TRUNCATE, KernelAccumulator, TileRegion
from densitymaps.density.raster import DensityRaster, new_density_map_id, raster_size
from densitymaps.density.spec import AreaRoiMode, DensityMapSpec, Normalization
from densitymaps.errors import Cancelled, DataUnavailable, InvalidSpec
from densitymaps.objects.image import ImageData
from densitymaps.objects.index import QUERY_BY_GEOMETRY, QUERY_BY_POINTS
from densitymaps.utils.config import get_section_defaults
from densitymaps.utils.logging import ProcessingTimer, get_logger

logger = get_logger(__name__)

# Resolution of the automatic pixel size: about 10 raster pixels per radius
PIXELS_PER_RADIUS = 10


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def resolve_pixel_size(image_data: ImageData, spec: DensityMapSpec) -> float:
    """
    Calibrated output pixel size for a spec.

    An explicit ``spec.pixel_size`` is used as is. Otherwise the pixel size
    is about a tenth of the radius, but never so small that the raster's
    longest side exceeds ``spec.max_size`` by more than rounding.
    """
    if spec.pixel_size is not None:
        return float(spec.pixel_size)

    native = image_data.averaged_pixel_size
    max_downsample = _round_half_up(max(1, max(image_data.width, image_data.height) // spec.max_size))
    min_pixel_size = max_downsample * native

    radius_px = spec.radius / native
    pixel_size = _round_half_up(radius_px / PIXELS_PER_RADIUS) * native
    return float(max(pixel_size, min_pixel_size))


def _normalize_tile(
    spec: DensityMapSpec,
    class_counts: List[np.ndarray],
    all_counts: Optional[np.ndarray],
) -> np.ndarray:
    """Stack accumulated counts into (h, w, c) output values."""
    channels = []
    if spec.normalization is Normalization.PERCENT:
        denominator = all_counts
        positive = denominator > 0
        safe = np.where(positive, denominator, 1.0)
        for counts in class_counts:
            percent = np.where(positive, 100.0 * counts / safe, 0.0)
            channels.append(np.clip(percent, 0.0, 100.0))
    else:
        channels.extend(class_counts)
    if spec.has_counts_channel:
        channels.append(all_counts)
    return np.stack(channels, axis=-1).astype(np.float32)


class DensityMapBuilder:
    """
    Builds DensityRasters from an image's object hierarchy.

    Args:
        tile_size: Output tile size in raster pixels
        num_workers: Threads computing tiles (1 = compute in the calling thread)
        gaussian_truncate: Gaussian kernel support in multiples of sigma
        show_progress: Show a tqdm progress bar over tiles
    """

    def __init__(
        self,
        tile_size: int = 512,
        num_workers: int = 1,
        gaussian_truncate: float = DEFAULT_GAUSSIAN_TRUNCATE,
        show_progress: bool = False,
    ):
        if tile_size <= 0:
            raise ValueError(f"tile_size must be positive, got {tile_size}")
        if num_workers < 1:
            raise ValueError(f"num_workers must be >= 1, got {num_workers}")
        self.tile_size = int(tile_size)
        self.num_workers = int(num_workers)
        self.gaussian_truncate = float(gaussian_truncate)
        self.show_progress = show_progress

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "DensityMapBuilder":
        """Create a builder from the 'density' section of a loaded config."""
        density = get_section_defaults("density")
        if config is not None:
            density.update(config.get("density", {}))
        params = {
            "tile_size": density["tile_size"],
            "num_workers": density["num_workers"],
            "gaussian_truncate": density["gaussian_truncate"],
        }
        params.update(kwargs)
        return cls(**params)

    # ------------------------------------------------------------------

    def plan_tiles(self, width: int, height: int, downsample: float) -> List[TileRegion]:
        """Non-overlapping tiles covering a raster of ``width`` x ``height``."""
        tiles = []
        for y in range(0, height, self.tile_size):
            for x in range(0, width, self.tile_size):
                tiles.append(TileRegion(
                    x=x,
                    y=y,
                    width=min(self.tile_size, width - x),
                    height=min(self.tile_size, height - y),
                    downsample=downsample,
                ))
        return tiles

    def _validate(self, image_data: ImageData, spec: DensityMapSpec) -> None:
        if not isinstance(spec, DensityMapSpec):
            raise InvalidSpec(f"Expected DensityMapSpec, got {type(spec).__name__}")
        if not spec.radius > 0:
            raise InvalidSpec(f"Density map radius must be > 0, got {spec.radius}")
        if spec.pixel_size is not None and not spec.pixel_size > 0:
            raise InvalidSpec(f"Pixel size must be > 0, got {spec.pixel_size}")
        image_data.check_available()

    def build(
        self,
        image_data: ImageData,
        spec: DensityMapSpec,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DensityRaster:
        """
        Build a density map for the whole image.

        Args:
            image_data: Image dimensions, calibration and objects
            spec: Density map specification
            cancel_token: Optional token polled before and after every tile query

        Returns:
            A new DensityRaster with a fresh id

        Raises:
            InvalidSpec: Spec cannot be built
            DataUnavailable: The object hierarchy was closed
            Cancelled: ``cancel_token`` was cancelled
        """
        self._validate(image_data, spec)
        check_cancelled(cancel_token)

        native = image_data.averaged_pixel_size
        pixel_size = resolve_pixel_size(image_data, spec)
        downsample = pixel_size / native
        width, height = raster_size(image_data.width, image_data.height, downsample)
        channel_names = spec.channel_names()

        accumulator = KernelAccumulator(
            radius_px=spec.radius / native,
            kernel=spec.kernel,
            area_roi_mode=spec.area_roi_mode,
            gaussian_truncate=self.gaussian_truncate,
        )
        all_predicate, class_predicates = spec.resolve_predicates()
        need_all_counts = spec.has_counts_channel

        output = np.zeros((height, width, len(channel_names)), dtype=np.float32)
        tiles = self.plan_tiles(width, height, downsample)
        hierarchy = image_data.hierarchy
        plane = image_data.plane
        padding = accumulator.support
        # Objects contribute from their centroid or points unless weighted by footprint
        query_by = (QUERY_BY_GEOMETRY if spec.area_roi_mode is AreaRoiMode.FOOTPRINT
                    else QUERY_BY_POINTS)

        def compute_tile(tile: TileRegion) -> None:
            check_cancelled(cancel_token)
            objects = hierarchy.query_objects(tile.padded_bounds(padding), plane, by=query_by)
            check_cancelled(cancel_token)

            selected = [o for o in objects if all_predicate(o)]
            class_counts = [
                accumulator.accumulate_channel(tile, [o for o in selected if predicate(o)])
                for predicate in class_predicates
            ]
            all_counts = accumulator.accumulate_channel(tile, selected) if need_all_counts else None
            values = _normalize_tile(spec, class_counts, all_counts)
            output[tile.y:tile.y + tile.height, tile.x:tile.x + tile.width, :] = values

        operation = f"density map ({width}x{height}, {len(tiles)} tiles)"
        logger.debug("Density map spec: %s", spec.describe())
        with ProcessingTimer(logger, operation, quiet=(Cancelled,)):
            failed = self._run_tiles(tiles, compute_tile, cancel_token)

        if failed:
            logger.error("%d of %d density map tiles failed and were left empty",
                         failed, len(tiles))

        output.flags.writeable = False
        return DensityRaster(
            data=output,
            channel_names=tuple(channel_names),
            downsample=downsample,
            pixel_size=pixel_size,
            image_width=image_data.width,
            image_height=image_data.height,
            spec=spec,
            plane=plane,
            failed_tiles=failed,
            id=new_density_map_id(),
        )

    def _run_tiles(self, tiles, compute_tile, cancel_token: Optional[CancellationToken]) -> int:
        """
        Compute every tile; returns the number of failed tiles.

        Cancelled and DataUnavailable propagate immediately.
        """
        failed = 0
        lock = threading.Lock()
        progress = tqdm(total=len(tiles), desc="Density map tiles", unit="tile",
                        disable=not self.show_progress)

        def run(tile: TileRegion) -> None:
            nonlocal failed
            try:
                compute_tile(tile)
            except (Cancelled, DataUnavailable):
                raise
            except Exception as e:
                logger.warning("Tile at (%d, %d) %dx%d failed, filling with zeros: %s",
                               tile.x, tile.y, tile.width, tile.height, e)
                with lock:
                    failed += 1
            finally:
                with lock:
                    progress.update(1)

        try:
            if self.num_workers <= 1 or len(tiles) <= 1:
                for tile in tiles:
                    run(tile)
                return failed

            with ThreadPoolExecutor(max_workers=self.num_workers) as executor:
                futures = [executor.submit(run, tile) for tile in tiles]
                done, pending = wait(futures, return_when=FIRST_EXCEPTION)
                for future in pending:
                    future.cancel()
                for future in done:
                    # Re-raises Cancelled / DataUnavailable from workers
                    future.result()
            return failed
        finally:
            progress.close()


def create_density_map(
    image_data: ImageData,
    spec: DensityMapSpec,
    cancel_token: Optional[CancellationToken] = None,
    **kwargs: Any,
) -> DensityRaster:
    """Build a density map with a one-off DensityMapBuilder(**kwargs)."""
    return DensityMapBuilder(**kwargs).build(image_data, spec, cancel_token=cancel_token)
