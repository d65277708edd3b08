"""
Built density maps.

A DensityRaster is immutable: its pixel array is flagged read-only, and every
accessor returns copies or read-only views, so one raster can be shared by
several renderers and threads. Each build gets a fresh id; caches key on the
id, never on the spec.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence, Tuple, Union

import numpy as np

from densitymaps.density.spec import COUNTS_CHANNEL, DensityMapSpec
from densitymaps.objects.model import DEFAULT_PLANE, ImagePlane

ID_PREFIX = "Density map: "


def new_density_map_id() -> str:
    return f"{ID_PREFIX}{uuid.uuid4()}"


@dataclass(frozen=True)
class RasterTile:
    """A base-resolution tile of a raster: raster pixel origin plus values (h, w, c)."""
    x: int
    y: int
    values: np.ndarray

    @property
    def width(self) -> int:
        return self.values.shape[1]

    @property
    def height(self) -> int:
        return self.values.shape[0]


@dataclass(frozen=True, eq=False)
class DensityRaster:
    """
    Multi-channel float32 density map.

    Attributes:
        data: Read-only array of shape (height, width, channels)
        channel_names: One name per channel; a trailing 'Counts' channel
            holds the all-object counts
        downsample: Full-resolution image pixels per raster pixel
        pixel_size: Calibrated size of a raster pixel
        image_width: Width of the source image in full-resolution pixels
        image_height: Height of the source image in full-resolution pixels
        spec: Specification the raster was built from (None for loaded maps)
        plane: Image plane the map was built for
        failed_tiles: Number of tiles that could not be computed (left as zeros)
        id: Unique per build
    """
    data: np.ndarray
    channel_names: Tuple[str, ...]
    downsample: float
    pixel_size: float
    image_width: int
    image_height: int
    spec: Optional[DensityMapSpec] = None
    plane: ImagePlane = DEFAULT_PLANE
    failed_tiles: int = 0
    id: str = field(default_factory=new_density_map_id)

    def __post_init__(self):
        data = np.asarray(self.data)
        if data.ndim != 3:
            raise ValueError(f"Density raster must be (height, width, channels), got {data.shape}")
        if data.shape[2] != len(self.channel_names):
            raise ValueError(
                f"Raster has {data.shape[2]} channels but {len(self.channel_names)} names"
            )
        if data.dtype != np.float32:
            data = data.astype(np.float32)
        elif data.flags.writeable:
            data = data.copy()
        data.flags.writeable = False
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "channel_names", tuple(self.channel_names))

    # ------------------------------------------------------------------

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def n_channels(self) -> int:
        return self.data.shape[2]

    @property
    def counts_band(self) -> int:
        """Index of the trailing counts channel, or -1."""
        if self.channel_names and self.channel_names[-1] == COUNTS_CHANNEL:
            return len(self.channel_names) - 1
        return -1

    @property
    def is_complete(self) -> bool:
        return self.failed_tiles == 0

    def channel_index(self, channel: Union[int, str]) -> int:
        """
        Resolve a channel name or index (negative indices count from the end).

        Raises:
            KeyError: Unknown channel name
            IndexError: Index out of range
        """
        if isinstance(channel, str):
            try:
                return self.channel_names.index(channel)
            except ValueError:
                available = ", ".join(self.channel_names)
                raise KeyError(f"Unknown channel '{channel}'. Available: {available}") from None
        index = int(channel)
        if index < 0:
            index += self.n_channels
        if not 0 <= index < self.n_channels:
            raise IndexError(f"Channel {channel} out of range for {self.n_channels} channels")
        return index

    def channel_name(self, channel: Union[int, str]) -> str:
        return self.channel_names[self.channel_index(channel)]

    # ------------------------------------------------------------------
    # Pixel access
    # ------------------------------------------------------------------

    def read_region(
        self,
        x: int,
        y: int,
        width: int,
        height: int,
        channels: Optional[Sequence[Union[int, str]]] = None,
    ) -> np.ndarray:
        """
        Copy of a region in raster pixel coordinates, clipped to the raster.

        Returns:
            float32 array (h, w, c); empty along y/x if the region is outside
        """
        x0, y0 = max(0, int(x)), max(0, int(y))
        x1 = min(self.width, int(x) + int(width))
        y1 = min(self.height, int(y) + int(height))
        x1, y1 = max(x0, x1), max(y0, y1)
        region = self.data[y0:y1, x0:x1]
        if channels is not None:
            region = region[:, :, [self.channel_index(c) for c in channels]]
        return np.array(region, dtype=np.float32, copy=True)

    def read_channel(self, channel: Union[int, str]) -> np.ndarray:
        """Read-only (h, w) view of one channel."""
        return self.data[:, :, self.channel_index(channel)]

    def tiles(self, tile_size: int = 512) -> Iterator[RasterTile]:
        """Visit the raster at base resolution, each pixel in exactly one tile."""
        if tile_size <= 0:
            raise ValueError(f"tile_size must be positive, got {tile_size}")
        for ty in range(0, self.height, tile_size):
            for tx in range(0, self.width, tile_size):
                values = self.data[ty:ty + tile_size, tx:tx + tile_size]
                yield RasterTile(x=tx, y=ty, values=values)

    def n_tiles(self, tile_size: int = 512) -> int:
        return (-(-self.height // tile_size)) * (-(-self.width // tile_size))

    # ------------------------------------------------------------------
    # Coordinates
    # ------------------------------------------------------------------

    def pixel_to_image(self, col: float, row: float) -> Tuple[float, float]:
        """Full-resolution image (x, y) of a raster pixel's centre."""
        return ((col + 0.5) * self.downsample, (row + 0.5) * self.downsample)

    def image_to_pixel(self, x: float, y: float) -> Tuple[int, int]:
        """Raster (col, row) containing an image coordinate."""
        return (int(np.floor(x / self.downsample)), int(np.floor(y / self.downsample)))

    def pixel_centers(self) -> Tuple[np.ndarray, np.ndarray]:
        """Image x of every column centre and image y of every row centre."""
        xs = (np.arange(self.width, dtype=np.float64) + 0.5) * self.downsample
        ys = (np.arange(self.height, dtype=np.float64) + 0.5) * self.downsample
        return xs, ys

    # ------------------------------------------------------------------

    def metadata(self) -> dict:
        """JSON-friendly description (no pixel data)."""
        return {
            "id": self.id,
            "channel_names": list(self.channel_names),
            "width": self.width,
            "height": self.height,
            "downsample": self.downsample,
            "pixel_size": self.pixel_size,
            "image_width": self.image_width,
            "image_height": self.image_height,
            "plane": {"z": self.plane.z, "t": self.plane.t},
            "failed_tiles": self.failed_tiles,
            "counts_band": self.counts_band,
            "spec": None if self.spec is None else self.spec.model_dump(mode="json"),
        }

    def __repr__(self) -> str:
        return (
            f"DensityRaster(id={self.id!r}, size={self.width}x{self.height}, "
            f"channels={list(self.channel_names)}, downsample={self.downsample:g})"
        )


def raster_size(image_width: int, image_height: int, downsample: float) -> Tuple[int, int]:
    """Raster (width, height) covering the whole image at ``downsample``."""
    width = max(1, int(np.ceil(image_width / downsample - 1e-9)))
    height = max(1, int(np.ceil(image_height / downsample - 1e-9)))
    return width, height
