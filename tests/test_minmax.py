"""
Tests for min/max scans and their cache.

Tests densitymaps/density/minmax.py.

Run with: pytest tests/test_minmax.py -v
"""

import sys
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import make_raster
from densitymaps.cancellation import CancellationToken
from densitymaps.density import minmax as minmax_module
from densitymaps.density.minmax import MinMax, MinMaxCache, compute_min_max
from densitymaps.errors import Cancelled


@pytest.fixture
def counted_raster():
    """
    4x4 raster with a density channel and a counts channel.

    Counts are 0 in the first row, so those density values (including the
    large 99) must be excluded from masked scans.
    """
    density = np.array([
        [99, 99, 99, 99],
        [1, 2, 3, 4],
        [5, 6, 7, 8],
        [0, 0, 0, 50],
    ], dtype=np.float32)
    counts = np.ones((4, 4), dtype=np.float32)
    counts[0, :] = 0
    return make_raster(np.stack([density, counts], axis=-1), channel_names=("Positive", "Counts"))


class TestMinMax:
    """Tests for the running MinMax value."""

    def test_empty(self):
        """Test that a new MinMax is empty."""
        assert MinMax().is_empty

    def test_update_ignores_nan(self):
        """Test that NaN values are skipped."""
        m = MinMax()
        m.update(np.array([np.nan, 3.0, -1.0]))
        assert m.as_tuple() == (-1.0, 3.0)


class TestComputeMinMax:
    """Tests for compute_min_max."""

    def test_count_band_mask(self, counted_raster):
        """Test that only pixels with count > min_count are scanned."""
        result = compute_min_max(counted_raster, count_band=1, min_count=0.0)
        assert result[0].as_tuple() == (0.0, 50.0)
        assert result[1].as_tuple() == (1.0, 1.0)

    def test_self_mask(self, counted_raster):
        """Test that without a count band each channel masks itself."""
        result = compute_min_max(counted_raster, count_band=-1, min_count=0.0)
        assert result[0].as_tuple() == (1.0, 99.0)

    def test_tile_size_independent(self, counted_raster):
        """Test that the scan tile size does not change the result."""
        a = compute_min_max(counted_raster, count_band=1, tile_size=1)
        b = compute_min_max(counted_raster, count_band=1, tile_size=512)
        assert [m.as_tuple() for m in a] == [m.as_tuple() for m in b]

    def test_cancelled(self, counted_raster):
        """Test that a cancelled scan returns None."""
        token = CancellationToken()
        token.cancel()
        assert compute_min_max(counted_raster, cancel_token=token) is None

    def test_bad_count_band(self, counted_raster):
        """Test that an out of range count band raises IndexError."""
        with pytest.raises(IndexError):
            compute_min_max(counted_raster, count_band=5)


class TestMinMaxCache:
    """Tests for MinMaxCache."""

    def test_cached(self, counted_raster):
        """Test that a second request does not rescan."""
        cache = MinMaxCache()
        with patch.object(minmax_module, "compute_min_max",
                          wraps=minmax_module.compute_min_max) as scan:
            first = cache.get_min_max(counted_raster, 1, 0.0)
            second = cache.get_min_max(counted_raster, 1, 0.0)

        assert scan.call_count == 1
        assert first[0].as_tuple() == second[0].as_tuple()

    def test_keyed_by_raster_id(self, counted_raster):
        """Test that a raster with the same values but a new id is rescanned."""
        cache = MinMaxCache()
        other = make_raster(np.zeros((4, 4, 2)), channel_names=("Positive", "Counts"))

        cache.get_min_max(counted_raster, 1, 0.0)
        result = cache.get_min_max(other, 1, 0.0)

        assert result[0].is_empty
        assert len(cache) == 2

    def test_returns_copies(self, counted_raster):
        """Test that callers cannot modify cached values."""
        cache = MinMaxCache()
        result = cache.get_min_max(counted_raster, 1, 0.0)
        result[0].max_value = -1

        assert cache.get_min_max(counted_raster, 1, 0.0)[0].max_value == 50.0

    def test_eviction(self):
        """Test that the oldest entries are evicted beyond max_entries."""
        cache = MinMaxCache(max_entries=2)
        rasters = [make_raster(np.ones((2, 2))) for _ in range(3)]
        for r in rasters:
            cache.get_min_max(r)
        assert len(cache) == 2

    def test_cancelled_not_cached(self, counted_raster):
        """Test that a cancelled scan raises Cancelled and caches nothing."""
        cache = MinMaxCache()
        token = CancellationToken()
        token.cancel()

        with pytest.raises(Cancelled):
            cache.get_min_max(counted_raster, 1, 0.0, cancel_token=token)
        assert len(cache) == 0

    def test_discard(self, counted_raster):
        """Test dropping entries of one raster."""
        cache = MinMaxCache()
        cache.get_min_max(counted_raster, 1, 0.0)
        cache.get_min_max(counted_raster, -1, 0.0)
        assert cache.discard(counted_raster.id) == 2
        assert len(cache) == 0
