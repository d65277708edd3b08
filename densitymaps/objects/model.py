"""
Classified objects consumed by density maps.

Objects are owned by a hierarchy (see ``densitymaps.objects.index``) and are
immutable from the density map's point of view. Geometries are shapely
geometries in full-resolution image pixel coordinates, [x, y] convention:

    - Origin: Top-left corner (0, 0)
    - X-axis: Horizontal, increases to the right (columns)
    - Y-axis: Vertical, increases downward (rows)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Tuple, Union

from shapely.geometry import MultiPoint, Point
from shapely.geometry.base import BaseGeometry


# Classification parts that mark an object as positive (intensity classes)
POSITIVE_PARTS = ("Positive", "1+", "2+", "3+")
NEGATIVE_PARTS = ("Negative",)

CLASS_SEPARATOR = ": "


@dataclass(frozen=True, order=True)
class PathClass:
    """
    A hierarchical classification such as ``"Tumor: Positive"``.

    Compared and hashed by its parts, so two instances parsed from the same
    string are interchangeable.
    """
    parts: Tuple[str, ...]

    def __post_init__(self):
        if not self.parts or any(not p for p in self.parts):
            raise ValueError(f"Invalid classification parts: {self.parts!r}")

    @classmethod
    def from_string(cls, name: Optional[str]) -> Optional["PathClass"]:
        """Parse ``"Base: Sub"``; returns None for None or blank strings."""
        if name is None:
            return None
        parts = tuple(p.strip() for p in name.split(":") if p.strip())
        if not parts:
            return None
        return cls(parts)

    @classmethod
    def coerce(cls, value: Union[None, str, "PathClass"]) -> Optional["PathClass"]:
        """Accept a PathClass, a string or None."""
        if value is None or isinstance(value, PathClass):
            return value
        return cls.from_string(str(value))

    @property
    def name(self) -> str:
        return CLASS_SEPARATOR.join(self.parts)

    @property
    def base_class(self) -> "PathClass":
        return PathClass(self.parts[:1])

    @property
    def parent(self) -> Optional["PathClass"]:
        if len(self.parts) == 1:
            return None
        return PathClass(self.parts[:-1])

    @property
    def is_positive(self) -> bool:
        return any(p in POSITIVE_PARTS for p in self.parts)

    @property
    def is_negative(self) -> bool:
        return any(p in NEGATIVE_PARTS for p in self.parts)

    def merge(self, other: "PathClass") -> "PathClass":
        """Derived class with ``other``'s parts appended (e.g. Tumor + Hotspot)."""
        return PathClass(self.parts + other.parts)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, order=True)
class ImagePlane:
    """Z-slice and timepoint of an object or region."""
    z: int = 0
    t: int = 0


DEFAULT_PLANE = ImagePlane()


class ObjectKind(str, Enum):
    """Object types in the hierarchy."""
    ANNOTATION = "annotation"
    DETECTION = "detection"
    CELL = "cell"
    TILE = "tile"

    @property
    def is_detection(self) -> bool:
        # Cells and tiles are specialised detections
        return self is not ObjectKind.ANNOTATION


@dataclass(frozen=True)
class ClassifiedObject:
    """
    A spatially located object with an optional classification.

    Attributes:
        geometry: Shapely geometry in full-resolution image pixels
        classification: Optional PathClass
        kind: Object type (annotation, detection, cell, tile)
        plane: Image plane the object lives on
        id: Unique identifier (uuid4 string by default)
        name: Optional display name
    """
    geometry: BaseGeometry
    classification: Optional[PathClass] = None
    kind: ObjectKind = ObjectKind.DETECTION
    plane: ImagePlane = DEFAULT_PLANE
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: Optional[str] = None

    def __post_init__(self):
        if self.geometry is None or self.geometry.is_empty:
            raise ValueError("ClassifiedObject requires a non-empty geometry")
        if isinstance(self.classification, str):
            object.__setattr__(self, "classification", PathClass.from_string(self.classification))

    @property
    def is_point(self) -> bool:
        return isinstance(self.geometry, (Point, MultiPoint))

    @property
    def is_detection(self) -> bool:
        return self.kind.is_detection

    @property
    def is_annotation(self) -> bool:
        return self.kind is ObjectKind.ANNOTATION

    @property
    def class_name(self) -> Optional[str]:
        return None if self.classification is None else self.classification.name

    def representative_points(self) -> List[Tuple[float, float]]:
        """
        Points used for centroid-distance density.

        Point ROIs contribute every point (a multi-point annotation counts
        once per point); everything else contributes its centroid.
        """
        if isinstance(self.geometry, Point):
            return [(self.geometry.x, self.geometry.y)]
        if isinstance(self.geometry, MultiPoint):
            return [(p.x, p.y) for p in self.geometry.geoms]
        c = self.geometry.centroid
        return [(c.x, c.y)]

    def with_classification(self, classification: Union[None, str, PathClass]) -> "ClassifiedObject":
        """Copy with a new classification (same id)."""
        return replace(self, classification=PathClass.coerce(classification))


def create_annotation(
    geometry: BaseGeometry,
    classification: Union[None, str, PathClass] = None,
    plane: ImagePlane = DEFAULT_PLANE,
    name: Optional[str] = None,
) -> ClassifiedObject:
    """Create an annotation object."""
    return ClassifiedObject(
        geometry=geometry,
        classification=PathClass.coerce(classification),
        kind=ObjectKind.ANNOTATION,
        plane=plane,
        name=name,
    )


def create_detection(
    geometry: BaseGeometry,
    classification: Union[None, str, PathClass] = None,
    plane: ImagePlane = DEFAULT_PLANE,
    cell: bool = False,
) -> ClassifiedObject:
    """Create a detection (or cell) object."""
    return ClassifiedObject(
        geometry=geometry,
        classification=PathClass.coerce(classification),
        kind=ObjectKind.CELL if cell else ObjectKind.DETECTION,
        plane=plane,
    )
