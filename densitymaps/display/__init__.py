"""Density map display: color ramps and RGBA rendering."""

from .render import (
    ColorRamp,
    ColorRenderer,
    DisplaySettings,
    get_color_ramp,
    list_color_ramps,
)

__all__ = [
    'ColorRamp',
    'ColorRenderer',
    'DisplaySettings',
    'get_color_ramp',
    'list_color_ramps',
]
