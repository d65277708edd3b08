"""
Color rendering of density maps.

A channel is mapped through a 256-entry color ramp between a display
minimum and maximum. Alpha comes from a mask channel (the trailing counts
channel when there is one, otherwise the displayed channel):

    gamma <= 0: opaque where mask > min_count_mask, transparent elsewhere
    gamma > 0:  alpha = 255 * clamp((mask - lo) / (hi - lo), 0, 1) ** (1 / gamma)

Rendering never modifies the raster. Automatic display and alpha ranges come
from full-raster min/max scans, cached by a MinMaxCache owned by the renderer.

Usage:
    from densitymaps.display.render import ColorRenderer, DisplaySettings

    renderer = ColorRenderer()
    settings = DisplaySettings(channel="Positive", auto_display_range=True,
                               auto_alpha_range=True)
    rgba = renderer.render_raster(density_map, settings)
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Optional, Sequence, Tuple, Union

import matplotlib
import numpy as np
from matplotlib.colors import LinearSegmentedColormap, to_rgb

from densitymaps.cancellation import CancellationToken
from densitymaps.density.minmax import MinMaxCache
from densitymaps.density.raster import DensityRaster
from densitymaps.errors import RenderingFailure
from densitymaps.utils.logging import get_logger

logger = get_logger(__name__)

LUT_SIZE = 256
DEFAULT_DISPLAY_RANGE = (0.0, 1.0)
DEFAULT_MIN_ALPHA = 1e-6


@dataclass(frozen=True)
class ColorRamp:
    """Named (256, 3) uint8 RGB lookup table."""
    name: str
    lut: np.ndarray

    def __post_init__(self):
        lut = np.asarray(self.lut, dtype=np.uint8)
        if lut.shape != (LUT_SIZE, 3):
            raise ValueError(f"Color ramp must have shape ({LUT_SIZE}, 3), got {lut.shape}")
        lut = lut.copy()
        lut.flags.writeable = False
        object.__setattr__(self, "lut", lut)

    @classmethod
    def from_colors(cls, name: str, colors: Sequence[Union[str, Tuple[float, float, float]]]) -> "ColorRamp":
        """Linear ramp through matplotlib color specs (e.g. ['black', 'red', 'yellow'])."""
        if len(colors) < 2:
            raise ValueError("A color ramp needs at least two colors")
        cmap = LinearSegmentedColormap.from_list(name, [to_rgb(c) for c in colors], N=LUT_SIZE)
        return cls(name=name, lut=_cmap_to_lut(cmap))

    def map(self, t: np.ndarray) -> np.ndarray:
        """RGB for normalized values in [0, 1] (NaN maps to 0)."""
        t = np.nan_to_num(np.clip(t, 0.0, 1.0), nan=0.0)
        return self.lut[np.rint(t * (LUT_SIZE - 1)).astype(np.intp)]


def _cmap_to_lut(cmap) -> np.ndarray:
    rgba = cmap(np.linspace(0.0, 1.0, LUT_SIZE))
    return np.rint(rgba[:, :3] * 255).astype(np.uint8)


@lru_cache(maxsize=32)
def get_color_ramp(name: str) -> ColorRamp:
    """
    Color ramp from a matplotlib colormap name (e.g. 'viridis', 'magma').

    Raises:
        ValueError: Unknown colormap
    """
    try:
        cmap = matplotlib.colormaps[name]
    except KeyError:
        raise ValueError(f"Unknown color ramp '{name}'") from None
    return ColorRamp(name=name, lut=_cmap_to_lut(cmap))


def list_color_ramps() -> list:
    return sorted(matplotlib.colormaps)


@dataclass(frozen=True)
class DisplaySettings:
    """
    How one channel of a density map is displayed.

    Attributes:
        channel: Displayed channel (name or index)
        color_ramp: Matplotlib colormap name
        min_display: Value mapped to the start of the ramp
        max_display: Value mapped to the end of the ramp
        gamma: Alpha gamma; <= 0 gives a hard opaque/transparent mask
        min_count_mask: Mask values at or below this are transparent
        max_alpha: Mask value at which alpha reaches 255
        mask_channel: Channel driving alpha; None = counts channel if
            present, else the displayed channel
        auto_display_range: Use [0, channel max] as display range
        auto_alpha_range: Use [min_alpha, mask channel max] as alpha range
        min_alpha: Lower alpha bound used with auto_alpha_range
    """
    channel: Union[int, str] = 0
    color_ramp: str = "viridis"
    min_display: float = 0.0
    max_display: float = 1.0
    gamma: float = 1.0
    min_count_mask: float = 0.0
    max_alpha: float = 1.0
    mask_channel: Optional[Union[int, str]] = None
    auto_display_range: bool = False
    auto_alpha_range: bool = False
    min_alpha: float = DEFAULT_MIN_ALPHA

    @classmethod
    def from_config(cls, display_config: dict, **kwargs) -> "DisplaySettings":
        """Settings using color ramp, gamma and min alpha from a config's display section."""
        kwargs.setdefault("color_ramp", display_config.get("color_ramp", "viridis"))
        kwargs.setdefault("gamma", display_config.get("gamma", 1.0))
        kwargs.setdefault("min_alpha", display_config.get("min_alpha", DEFAULT_MIN_ALPHA))
        return cls(**kwargs)


def check_range(low: float, high: float, what: str = "display") -> Tuple[float, float]:
    """
    Validate a (low, high) range.

    Raises:
        RenderingFailure: If the range is degenerate or not finite
    """
    if not (np.isfinite(low) and np.isfinite(high)) or high <= low:
        raise RenderingFailure(f"Degenerate {what} range [{low}, {high}]")
    return float(low), float(high)


class ColorRenderer:
    """
    Renders density map channels to RGBA.

    Args:
        minmax_cache: Cache used for automatic ranges; a private one is
            created if not given
    """

    def __init__(self, minmax_cache: Optional[MinMaxCache] = None):
        self.minmax_cache = minmax_cache if minmax_cache is not None else MinMaxCache()

    @staticmethod
    def _bands(settings: DisplaySettings, n_channels: int,
               raster: Optional[DensityRaster]) -> Tuple[int, int]:
        if raster is not None:
            band = raster.channel_index(settings.channel)
            if settings.mask_channel is not None:
                mask_band = raster.channel_index(settings.mask_channel)
            elif raster.counts_band >= 0:
                mask_band = raster.counts_band
            else:
                mask_band = band
            return band, mask_band

        if isinstance(settings.channel, str) or isinstance(settings.mask_channel, str):
            raise ValueError("Channel names can only be resolved when a raster is given")
        band = settings.channel % n_channels
        mask_band = band if settings.mask_channel is None else settings.mask_channel % n_channels
        return band, mask_band

    def render(
        self,
        tile: np.ndarray,
        settings: DisplaySettings,
        raster: Optional[DensityRaster] = None,
    ) -> np.ndarray:
        """
        Render a tile of raster values.

        Args:
            tile: (h, w, c) values, e.g. from DensityRaster.read_region
            settings: Display settings (ranges are used as given)
            raster: Raster the tile came from, to resolve channel names and
                the counts channel

        Returns:
            uint8 array (h, w, 4)
        """
        values = np.asarray(tile)
        if values.ndim == 2:
            values = values[:, :, None]
        band, mask_band = self._bands(settings, values.shape[2], raster)

        try:
            low, high = check_range(settings.min_display, settings.max_display)
        except RenderingFailure as e:
            logger.warning("%s; using default range %s", e, DEFAULT_DISPLAY_RANGE)
            low, high = DEFAULT_DISPLAY_RANGE

        ramp = get_color_ramp(settings.color_ramp)
        channel = values[:, :, band].astype(np.float64)
        rgba = np.empty(channel.shape + (4,), dtype=np.uint8)
        rgba[:, :, :3] = ramp.map((channel - low) / (high - low))

        mask = np.nan_to_num(values[:, :, mask_band].astype(np.float64), nan=-np.inf)
        if settings.gamma <= 0:
            rgba[:, :, 3] = np.where(mask > settings.min_count_mask, 255, 0)
            return rgba

        lower = settings.min_count_mask
        try:
            lower, upper = check_range(lower, settings.max_alpha, "alpha")
        except RenderingFailure as e:
            upper = lower + 1.0
            logger.warning("%s; using [%g, %g]", e, lower, upper)
        scaled = np.clip((mask - lower) / (upper - lower), 0.0, 1.0)
        rgba[:, :, 3] = np.rint(255.0 * scaled ** (1.0 / settings.gamma)).astype(np.uint8)
        return rgba

    def resolve_settings(
        self,
        raster: DensityRaster,
        settings: DisplaySettings,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DisplaySettings:
        """
        Replace automatic ranges with values from the min/max cache.

        Raises:
            Cancelled: If the min/max scan was cancelled
        """
        if not (settings.auto_display_range or settings.auto_alpha_range):
            return settings

        band, mask_band = self._bands(settings, raster.n_channels, raster)
        minmax = self.minmax_cache.get_min_max(
            raster, count_band=raster.counts_band, min_count=0.0, cancel_token=cancel_token
        )
        updates = {}
        if settings.auto_display_range:
            channel_max = minmax[band].max_value
            if minmax[band].is_empty or channel_max <= 0:
                channel_max = 1.0
            updates.update(min_display=0.0, max_display=channel_max)
        if settings.auto_alpha_range:
            lower = settings.min_alpha
            mask_max = minmax[mask_band].max_value
            upper = lower if minmax[mask_band].is_empty else max(lower, mask_max)
            updates.update(min_count_mask=lower, max_alpha=upper)
        return replace(settings, **updates)

    def render_raster(
        self,
        raster: DensityRaster,
        settings: DisplaySettings,
        cancel_token: Optional[CancellationToken] = None,
    ) -> np.ndarray:
        """Render a whole raster, resolving automatic ranges first."""
        resolved = self.resolve_settings(raster, settings, cancel_token)
        return self.render(raster.data, resolved, raster)
