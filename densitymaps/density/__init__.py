"""
Density map engine.

Provides:
- Object selectors and the immutable DensityMapSpec
- Kernel accumulation and tiled building of DensityRasters
- Min/max scans with an explicit cache
- Hotspot finding and threshold contours
"""

from .selectors import (
    ObjectType,
    ClassMatch,
    ClassFilter,
    ObjectSelector,
)

from .spec import (
    COUNTS_CHANNEL,
    KernelShape,
    Normalization,
    AreaRoiMode,
    DensityClass,
    DensityMapSpec,
    build_density_map_spec,
    density_spec,
    percentage_spec,
    positive_percentage_spec,
    point_annotation_spec,
    spec_from_config,
)

from .kernels import (
    TileRegion,
    KernelAccumulator,
)

from .raster import (
    DensityRaster,
    RasterTile,
)

from .builder import (
    DensityMapBuilder,
    resolve_pixel_size,
    create_density_map,
)

from .minmax import (
    MinMax,
    MinMaxCache,
    compute_min_max,
)

from .hotspots import (
    Hotspot,
    HotspotFinder,
    find_hotspots,
    get_hotspot_class,
)

from .contours import (
    trace_contours,
    trace_geometry,
    threshold_mask,
)

__all__ = [
    # Selection
    'ObjectType',
    'ClassMatch',
    'ClassFilter',
    'ObjectSelector',
    # Spec
    'COUNTS_CHANNEL',
    'KernelShape',
    'Normalization',
    'AreaRoiMode',
    'DensityClass',
    'DensityMapSpec',
    'build_density_map_spec',
    'density_spec',
    'percentage_spec',
    'positive_percentage_spec',
    'point_annotation_spec',
    'spec_from_config',
    # Building
    'TileRegion',
    'KernelAccumulator',
    'DensityRaster',
    'RasterTile',
    'DensityMapBuilder',
    'resolve_pixel_size',
    'create_density_map',
    # Min/max
    'MinMax',
    'MinMaxCache',
    'compute_min_max',
    # Annotations
    'Hotspot',
    'HotspotFinder',
    'find_hotspots',
    'get_hotspot_class',
    'trace_contours',
    'trace_geometry',
    'threshold_mask',
]
