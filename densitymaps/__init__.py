"""
Density maps of classified objects in whole-slide images.

Builds multi-channel rasters that count (or weight, or express as a
percentage) nearby objects of selected classes, renders them with color
ramps, and turns them into hotspot and contour annotations.

Usage:
    from densitymaps.objects import ImageData, ObjectHierarchy
    from densitymaps.density import positive_percentage_spec, create_density_map
    from densitymaps.density import find_hotspots
    from densitymaps.session import DensityMapSession
    from densitymaps.utils import get_logger, setup_logging, load_config
"""

# Version
__version__ = "0.1.0"

# Submodules are imported explicitly:
#   from densitymaps.density import DensityMapBuilder
#   from densitymaps.utils.logging import get_logger

__all__ = [
    "objects",
    "density",
    "display",
    "io",
    "session",
    "utils",
    "cli",
]
