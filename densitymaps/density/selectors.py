"""
Object selection for density maps.

A selector is a closed combination of an object type and a class filter.
Each is resolved once, when a density map spec is built, into a plain
predicate over ClassifiedObject; tiling code never inspects selector types.

Usage:
    from densitymaps.density.selectors import ObjectSelector, ObjectType, ClassFilter

    tumor_cells = ObjectSelector(
        object_type=ObjectType.CELLS,
        class_filter=ClassFilter.exact("Tumor"),
    )
    is_tumor_cell = tumor_cells.resolve()

    # Same thing, from a command-line string
    tumor_cells = ObjectSelector.from_string("cells:Tumor")

String syntax for the class part (after the first ':'):
    (empty) or '*'   any classification, including unclassified
    '-'              unclassified objects only
    '+'              any positive classification (Positive, 1+, 2+, 3+)
    '+Tumor'         positive, with base class Tumor
    '~Tumor'         base class Tumor (Tumor, Tumor: Positive, ...)
    'Tumor: Positive' exactly this classification
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from densitymaps.objects.model import ClassifiedObject, ObjectKind, PathClass

ObjectPredicate = Callable[[ClassifiedObject], bool]


def _is_detection(obj: ClassifiedObject) -> bool:
    return obj.is_detection


def _is_cell(obj: ClassifiedObject) -> bool:
    return obj.kind is ObjectKind.CELL


def _is_point_annotation(obj: ClassifiedObject) -> bool:
    return obj.is_annotation and obj.is_point


def _is_annotation(obj: ClassifiedObject) -> bool:
    return obj.is_annotation


def _is_any(obj: ClassifiedObject) -> bool:
    return True


class ObjectType(str, Enum):
    """Which kind of objects a selector applies to."""
    DETECTIONS = "detections"
    CELLS = "cells"
    POINT_ANNOTATIONS = "point_annotations"
    ANNOTATIONS = "annotations"
    ALL = "all"

    @property
    def selector(self) -> ObjectPredicate:
        return _TYPE_SELECTORS[self]

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").capitalize()


_TYPE_SELECTORS = {
    ObjectType.DETECTIONS: _is_detection,
    ObjectType.CELLS: _is_cell,
    ObjectType.POINT_ANNOTATIONS: _is_point_annotation,
    ObjectType.ANNOTATIONS: _is_annotation,
    ObjectType.ALL: _is_any,
}


class ClassMatch(str, Enum):
    ANY = "any"
    ANY_POSITIVE = "any_positive"
    EXACT = "exact"
    BASE = "base"


class ClassFilter(BaseModel):
    """
    Classification filter.

    ``class_name`` is required for BASE, optional for EXACT (None matches
    unclassified objects) and for ANY_POSITIVE (restricts the base class),
    and must be None for ANY.
    """
    model_config = ConfigDict(frozen=True)

    mode: ClassMatch = ClassMatch.ANY
    class_name: Optional[str] = None

    @field_validator("class_name")
    @classmethod
    def _normalize_class_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        path_class = PathClass.from_string(v)
        if path_class is None:
            raise ValueError(f"Invalid class name: {v!r}")
        # Equal classes must serialize identically
        return path_class.name

    @model_validator(mode="after")
    def _check_mode(self) -> "ClassFilter":
        if self.mode is ClassMatch.BASE and self.class_name is None:
            raise ValueError("BASE class filter requires a class name")
        if self.mode is ClassMatch.ANY and self.class_name is not None:
            raise ValueError("ANY class filter does not take a class name")
        return self

    @classmethod
    def any(cls) -> "ClassFilter":
        return cls(mode=ClassMatch.ANY)

    @classmethod
    def positive(cls, base_class: Optional[str] = None) -> "ClassFilter":
        return cls(mode=ClassMatch.ANY_POSITIVE, class_name=base_class)

    @classmethod
    def exact(cls, class_name: Optional[str]) -> "ClassFilter":
        return cls(mode=ClassMatch.EXACT, class_name=class_name)

    @classmethod
    def base(cls, class_name: str) -> "ClassFilter":
        return cls(mode=ClassMatch.BASE, class_name=class_name)

    @property
    def path_class(self) -> Optional[PathClass]:
        return PathClass.from_string(self.class_name)

    def resolve(self) -> ObjectPredicate:
        """Build the classification predicate."""
        path_class = self.path_class

        if self.mode is ClassMatch.ANY:
            return _is_any

        if self.mode is ClassMatch.EXACT:
            return lambda obj: obj.classification == path_class

        if self.mode is ClassMatch.BASE:
            return lambda obj: (
                obj.classification is not None
                and obj.classification.base_class == path_class.base_class
            )

        # ANY_POSITIVE
        if path_class is None:
            return lambda obj: obj.classification is not None and obj.classification.is_positive
        return lambda obj: (
            obj.classification is not None
            and obj.classification.is_positive
            and obj.classification.base_class == path_class.base_class
        )

    def describe(self) -> str:
        if self.mode is ClassMatch.ANY:
            return "Any"
        if self.mode is ClassMatch.EXACT:
            return self.class_name or "Unclassified"
        if self.mode is ClassMatch.BASE:
            return f"{self.class_name} (base)"
        if self.class_name:
            return f"{self.class_name}: Positive"
        return "Positive"

    def to_string(self) -> str:
        if self.mode is ClassMatch.ANY:
            return "*"
        if self.mode is ClassMatch.EXACT:
            return self.class_name or "-"
        if self.mode is ClassMatch.BASE:
            return f"~{self.class_name}"
        return f"+{self.class_name or ''}"

    @classmethod
    def from_string(cls, text: Optional[str]) -> "ClassFilter":
        """Parse the class part of a selector string (see module docstring)."""
        text = (text or "").strip()
        if text in ("", "*"):
            return cls.any()
        if text == "-":
            return cls.exact(None)
        if text.startswith("+"):
            return cls.positive(text[1:].strip() or None)
        if text.startswith("~"):
            return cls.base(text[1:].strip())
        return cls.exact(text)


class ObjectSelector(BaseModel):
    """An object type plus a classification filter."""
    model_config = ConfigDict(frozen=True)

    object_type: ObjectType = ObjectType.DETECTIONS
    class_filter: ClassFilter = Field(default_factory=ClassFilter.any)

    def resolve(self) -> ObjectPredicate:
        """Combine the type selector and class filter into one predicate."""
        type_selector = self.object_type.selector
        class_predicate = self.class_filter.resolve()
        if class_predicate is _is_any:
            return type_selector
        if type_selector is _is_any:
            return class_predicate
        return lambda obj: type_selector(obj) and class_predicate(obj)

    def describe(self) -> str:
        return f"{self.object_type.label} ({self.class_filter.describe()})"

    def to_string(self) -> str:
        return f"{self.object_type.value}:{self.class_filter.to_string()}"

    @classmethod
    def from_string(cls, text: str) -> "ObjectSelector":
        """
        Parse ``"<type>[:<class>]"``, e.g. ``"cells:Tumor"`` or ``"detections:+"``.

        Raises:
            ValueError: If the object type is unknown
        """
        type_part, _, class_part = text.partition(":")
        type_name = type_part.strip().lower().replace("-", "_").replace(" ", "_")
        try:
            object_type = ObjectType(type_name)
        except ValueError:
            available = ", ".join(t.value for t in ObjectType)
            raise ValueError(
                f"Unknown object type '{type_part}'. Available: {available}"
            ) from None
        return cls(object_type=object_type, class_filter=ClassFilter.from_string(class_part))


def detections(class_filter: Optional[ClassFilter] = None) -> ObjectSelector:
    """Selector for all detections, optionally filtered by class."""
    return ObjectSelector(
        object_type=ObjectType.DETECTIONS,
        class_filter=class_filter or ClassFilter.any(),
    )


def point_annotations(class_filter: Optional[ClassFilter] = None) -> ObjectSelector:
    return ObjectSelector(
        object_type=ObjectType.POINT_ANNOTATIONS,
        class_filter=class_filter or ClassFilter.any(),
    )
