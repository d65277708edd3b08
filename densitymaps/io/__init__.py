"""Reading and writing density maps and classified objects."""

from .export import (
    write_density_map_hdf5,
    read_density_map_hdf5,
    write_rendered_image,
    write_metadata_json,
)

from .geojson import (
    feature_to_object,
    object_to_feature,
    load_objects,
    load_hierarchy,
    write_geojson,
)

__all__ = [
    'write_density_map_hdf5',
    'read_density_map_hdf5',
    'write_rendered_image',
    'write_metadata_json',
    'feature_to_object',
    'object_to_feature',
    'load_objects',
    'load_hierarchy',
    'write_geojson',
]
