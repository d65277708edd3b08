"""
Classified objects, their spatial index and image metadata.
"""

from .model import (
    PathClass,
    ImagePlane,
    ObjectKind,
    ClassifiedObject,
    DEFAULT_PLANE,
    create_annotation,
    create_detection,
)

from .index import (
    SpatialObjectIndex,
    ObjectHierarchy,
    HierarchyEvent,
    HierarchyEventKind,
    region_to_geometry,
)

from .image import ImageData

__all__ = [
    'PathClass',
    'ImagePlane',
    'ObjectKind',
    'ClassifiedObject',
    'DEFAULT_PLANE',
    'create_annotation',
    'create_detection',
    'SpatialObjectIndex',
    'ObjectHierarchy',
    'HierarchyEvent',
    'HierarchyEventKind',
    'region_to_geometry',
    'ImageData',
]
