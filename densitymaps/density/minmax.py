"""
Per-channel min/max scans of density maps.

Display ranges are derived from full-raster scans, which are expensive, so
results are cached. The cache is an explicit object owned by whoever renders
(a renderer or session), keyed by raster id, count band and minimum count.
Raster ids change on every build, so a cache never serves values computed
for a different map.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from densitymaps.cancellation import CancellationToken
from densitymaps.density.raster import DensityRaster
from densitymaps.errors import Cancelled
from densitymaps.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class MinMax:
    """Running min/max; empty (min > max) until a value is seen."""
    min_value: float = float("inf")
    max_value: float = float("-inf")

    @property
    def is_empty(self) -> bool:
        return self.min_value > self.max_value

    def update(self, values: np.ndarray) -> None:
        """Include ``values``, ignoring NaN."""
        values = np.asarray(values)
        values = values[~np.isnan(values)]
        if values.size == 0:
            return
        self.min_value = min(self.min_value, float(values.min()))
        self.max_value = max(self.max_value, float(values.max()))

    def as_tuple(self) -> Tuple[float, float]:
        return (self.min_value, self.max_value)


def compute_min_max(
    raster: DensityRaster,
    count_band: int = -1,
    min_count: float = 0.0,
    cancel_token: Optional[CancellationToken] = None,
    tile_size: int = 512,
) -> Optional[List[MinMax]]:
    """
    Min/max of every channel over pixels whose count exceeds ``min_count``.

    Args:
        raster: Density map to scan
        count_band: Channel used for masking; if < 0 each channel masks
            itself
        min_count: A pixel is included only if its count value is > min_count
        cancel_token: Polled between tiles
        tile_size: Scan tile size (does not change the result)

    Returns:
        One MinMax per channel, or None if cancelled
    """
    n_channels = raster.n_channels
    if count_band >= n_channels:
        raise IndexError(f"Count band {count_band} out of range for {n_channels} channels")

    results = [MinMax() for _ in range(n_channels)]
    for tile in raster.tiles(tile_size):
        if cancel_token is not None and cancel_token.cancelled:
            logger.debug("Min/max scan of %s cancelled", raster.id)
            return None
        values = tile.values
        if count_band >= 0:
            mask = values[:, :, count_band] > min_count
            for c in range(n_channels):
                results[c].update(values[:, :, c][mask])
        else:
            for c in range(n_channels):
                channel = values[:, :, c]
                results[c].update(channel[channel > min_count])
    return results


CacheKey = Tuple[str, int, float]


def _copy(values: List[MinMax]) -> List[MinMax]:
    return [MinMax(m.min_value, m.max_value) for m in values]


class MinMaxCache:
    """
    Thread-safe, bounded cache of min/max scans.

    Args:
        max_entries: Oldest entries are evicted beyond this size
    """

    def __init__(self, max_entries: int = 64):
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self.max_entries = max_entries
        self._cache: "OrderedDict[CacheKey, List[MinMax]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    @staticmethod
    def make_key(raster: DensityRaster, count_band: int, min_count: float) -> CacheKey:
        return (raster.id, int(count_band), float(min_count))

    def get_min_max(
        self,
        raster: DensityRaster,
        count_band: int = -1,
        min_count: float = 0.0,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[MinMax]:
        """
        Cached compute_min_max.

        Raises:
            Cancelled: If the scan was cancelled (nothing is cached)
        """
        key = self.make_key(raster, count_band, min_count)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                return _copy(cached)

        # Scan outside the lock; concurrent scans of the same key are harmless
        result = compute_min_max(raster, count_band, min_count, cancel_token=cancel_token)
        if result is None:
            raise Cancelled(f"Min/max scan of {raster.id} cancelled")

        with self._lock:
            self._cache[key] = result
            self._cache.move_to_end(key)
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)
        return _copy(result)

    def discard(self, raster_id: str) -> int:
        """Drop every entry for one raster; returns the number removed."""
        with self._lock:
            keys = [k for k in self._cache if k[0] == raster_id]
            for k in keys:
                del self._cache[k]
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
