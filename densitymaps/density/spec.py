"""
Density map specification.

A ``DensityMapSpec`` is an immutable, structurally comparable description of
a density map: which objects are counted, how they are smoothed and how the
counts are normalized. Two specs that serialize identically describe the
same map, so ``spec_key()`` can be used by reuse and caching policies. It is
never used to identify a built raster; see DensityRaster.id.

Usage:
    from densitymaps.density.spec import build_density_map_spec, percentage_spec

    spec = build_density_map_spec(
        density_classes={"Positive": "detections:+"},
        radius=50.0,
        kernel="gaussian",
    )

    tumor_positive = percentage_spec("Tumor: Positive", "Tumor", radius=25.0)
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from densitymaps.density.selectors import (
    ClassFilter,
    ObjectPredicate,
    ObjectSelector,
    ObjectType,
)
from densitymaps.errors import InvalidSpec

# Name of the trailing all-objects channel
COUNTS_CHANNEL = "Counts"

DEFAULT_MAX_SIZE = 1024


class KernelShape(str, Enum):
    BOX = "box"
    GAUSSIAN = "gaussian"


class Normalization(str, Enum):
    """
    RAW: accumulated counts.
    PERCENT: 100 * density count / all-object count (0 where there are no
        objects), with the all-object counts appended as a trailing channel.
    GAUSSIAN_WEIGHTED: Gaussian-weighted counts, no division.
    """
    RAW = "raw"
    PERCENT = "percent"
    GAUSSIAN_WEIGHTED = "gaussian_weighted"


class AreaRoiMode(str, Enum):
    """Distance measure for area and line ROIs."""
    CENTROID = "centroid"
    FOOTPRINT = "footprint"


class DensityClass(BaseModel):
    """A named subset of the counted objects, producing one channel."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    selector: ObjectSelector

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Density class name must not be blank")
        if v == COUNTS_CHANNEL:
            raise ValueError(f"'{COUNTS_CHANNEL}' is reserved for the all-objects channel")
        return v


class DensityMapSpec(BaseModel):
    """
    Immutable density map configuration.

    Attributes:
        all_objects: Objects counted by the map (the PERCENT denominator)
        density_classes: One channel per class; each counts the subset of
            ``all_objects`` that also matches its selector
        radius: Kernel radius in calibrated units (> 0)
        kernel: Box (hard radius) or Gaussian (sigma = radius / 2)
        pixel_size: Output pixel size in calibrated units; None = automatic
        max_size: Upper bound on the longest side of an automatic raster
        normalization: RAW, PERCENT or GAUSSIAN_WEIGHTED
        area_roi_mode: Distance to area ROIs by centroid or by footprint
    """
    model_config = ConfigDict(frozen=True)

    all_objects: ObjectSelector = Field(default_factory=ObjectSelector)
    density_classes: Tuple[DensityClass, ...] = ()
    radius: float = Field(..., gt=0)
    kernel: KernelShape = KernelShape.BOX
    pixel_size: Optional[float] = Field(None, gt=0)
    max_size: int = Field(DEFAULT_MAX_SIZE, gt=0)
    normalization: Normalization = Normalization.RAW
    area_roi_mode: AreaRoiMode = AreaRoiMode.CENTROID

    @model_validator(mode="after")
    def _check_consistency(self) -> "DensityMapSpec":
        if (self.normalization is Normalization.GAUSSIAN_WEIGHTED
                and self.kernel is not KernelShape.GAUSSIAN):
            raise ValueError("GAUSSIAN_WEIGHTED normalization requires the Gaussian kernel")
        names = [dc.name for dc in self.density_classes]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate density class names: {', '.join(duplicates)}")
        return self

    # ------------------------------------------------------------------

    @property
    def has_counts_channel(self) -> bool:
        """True if the all-objects counts are stored as a trailing channel."""
        return self.normalization is Normalization.PERCENT or not self.density_classes

    def channel_names(self) -> List[str]:
        """Output channel names; a spec without density classes maps all objects."""
        names = [dc.name for dc in self.density_classes]
        if self.has_counts_channel:
            names.append(COUNTS_CHANNEL)
        return names

    @property
    def n_channels(self) -> int:
        return len(self.channel_names())

    def resolve_predicates(self) -> Tuple[ObjectPredicate, List[ObjectPredicate]]:
        """
        Resolve selectors into predicates.

        Returns:
            (all_objects predicate, per-class predicates); a class predicate
            only matches objects also selected by the all-objects predicate
        """
        all_predicate = self.all_objects.resolve()
        class_predicates = []
        for dc in self.density_classes:
            selected = dc.selector.resolve()
            class_predicates.append(
                lambda obj, selected=selected: all_predicate(obj) and selected(obj)
            )
        return all_predicate, class_predicates

    def spec_key(self) -> str:
        """Stable JSON key; equal specs give equal keys."""
        return json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))

    def to_json(self) -> str:
        return self.spec_key()

    @classmethod
    def from_json(cls, text: str) -> "DensityMapSpec":
        try:
            return cls.model_validate_json(text)
        except ValidationError as e:
            raise InvalidSpec(_format_validation_error(e)) from e

    def describe(self) -> str:
        classes = ", ".join(dc.name for dc in self.density_classes) or "all objects"
        return (
            f"{classes} in {self.all_objects.describe()}, "
            f"radius={self.radius:g}, kernel={self.kernel.value}, "
            f"normalization={self.normalization.value}"
        )


def _format_validation_error(error: ValidationError) -> str:
    messages = []
    for err in error.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "spec"
        messages.append(f"{loc}: {err.get('msg')}")
    return "Invalid density map spec: " + "; ".join(messages)


SelectorLike = Union[ObjectSelector, str]


def _as_selector(value: SelectorLike) -> ObjectSelector:
    if isinstance(value, ObjectSelector):
        return value
    return ObjectSelector.from_string(value)


def build_density_map_spec(
    radius: float,
    density_classes: Union[Mapping[str, SelectorLike], Sequence[DensityClass], None] = None,
    all_objects: SelectorLike = "detections",
    kernel: Union[KernelShape, str, None] = None,
    pixel_size: Optional[float] = None,
    max_size: int = DEFAULT_MAX_SIZE,
    normalization: Union[Normalization, str] = Normalization.RAW,
    area_roi_mode: Union[AreaRoiMode, str] = AreaRoiMode.CENTROID,
) -> DensityMapSpec:
    """
    Build a validated DensityMapSpec.

    Args:
        radius: Kernel radius in calibrated units
        density_classes: {channel name: selector} mapping, or DensityClass list.
            Selectors may be ObjectSelector instances or strings such as
            ``"detections:Tumor: Positive"``
        all_objects: Selector for the counted objects
        kernel: Kernel shape; defaults to Gaussian for GAUSSIAN_WEIGHTED,
            otherwise box
        pixel_size: Output pixel size (calibrated); None = automatic
        max_size: Longest side of an automatic raster
        normalization: Normalization mode
        area_roi_mode: 'centroid' or 'footprint'

    Returns:
        DensityMapSpec

    Raises:
        InvalidSpec: If any value is invalid or inconsistent
    """
    try:
        normalization = Normalization(normalization)
        if kernel is None:
            kernel = (KernelShape.GAUSSIAN if normalization is Normalization.GAUSSIAN_WEIGHTED
                      else KernelShape.BOX)
        if density_classes is None:
            classes: Tuple[DensityClass, ...] = ()
        elif isinstance(density_classes, Mapping):
            classes = tuple(
                DensityClass(name=name, selector=_as_selector(sel))
                for name, sel in density_classes.items()
            )
        else:
            classes = tuple(density_classes)
        return DensityMapSpec(
            all_objects=_as_selector(all_objects),
            density_classes=classes,
            radius=radius,
            kernel=KernelShape(kernel),
            pixel_size=pixel_size,
            max_size=max_size,
            normalization=normalization,
            area_roi_mode=AreaRoiMode(area_roi_mode),
        )
    except ValidationError as e:
        raise InvalidSpec(_format_validation_error(e)) from e
    except ValueError as e:
        # Unknown enum values and selector strings
        raise InvalidSpec(f"Invalid density map spec: {e}") from e


def density_spec(
    path_class: Optional[str],
    radius: float,
    base_class: bool = False,
    **kwargs: Any,
) -> DensityMapSpec:
    """
    Density of detections with one classification.

    Args:
        path_class: Classification to count (None = unclassified)
        radius: Kernel radius
        base_class: Match on base class (``Tumor`` also counts ``Tumor: Positive``)
        **kwargs: Passed to build_density_map_spec
    """
    if base_class and path_class is not None:
        class_filter = ClassFilter.base(path_class)
    else:
        class_filter = ClassFilter.exact(path_class)
    name = class_filter.class_name or "Unclassified"
    selector = ObjectSelector(object_type=ObjectType.DETECTIONS, class_filter=class_filter)
    return build_density_map_spec(radius, density_classes={name: selector}, **kwargs)


def percentage_spec(
    density_class: str,
    all_class: Optional[str],
    radius: float,
    **kwargs: Any,
) -> DensityMapSpec:
    """
    Percentage of detections of ``all_class`` (by base class) that are
    exactly ``density_class``. ``all_class=None`` uses all detections.
    """
    all_filter = ClassFilter.base(all_class) if all_class else ClassFilter.any()
    all_objects = ObjectSelector(object_type=ObjectType.DETECTIONS, class_filter=all_filter)
    density = ObjectSelector(
        object_type=ObjectType.DETECTIONS,
        class_filter=ClassFilter.exact(density_class),
    )
    kwargs.setdefault("normalization", Normalization.PERCENT)
    return build_density_map_spec(
        radius,
        density_classes={ClassFilter.exact(density_class).class_name: density},
        all_objects=all_objects,
        **kwargs,
    )


def positive_percentage_spec(
    radius: float,
    base_class: Optional[str] = None,
    **kwargs: Any,
) -> DensityMapSpec:
    """
    Percentage of positive detections (Positive, 1+, 2+, 3+).

    With ``base_class``, only detections of that base class are counted and
    the channel is named ``"<base>: Positive"``.
    """
    if base_class:
        all_filter = ClassFilter.base(base_class)
        name = f"{all_filter.class_name}: Positive"
    else:
        all_filter = ClassFilter.any()
        name = "Positive"
    all_objects = ObjectSelector(object_type=ObjectType.DETECTIONS, class_filter=all_filter)
    positive = ObjectSelector(
        object_type=ObjectType.DETECTIONS,
        class_filter=ClassFilter.positive(base_class),
    )
    kwargs.setdefault("normalization", Normalization.PERCENT)
    return build_density_map_spec(
        radius,
        density_classes={name: positive},
        all_objects=all_objects,
        **kwargs,
    )


def point_annotation_spec(
    path_class: Optional[str],
    radius: float,
    base_class: bool = False,
    **kwargs: Any,
) -> DensityMapSpec:
    """Density of point annotations with one classification."""
    if base_class and path_class is not None:
        class_filter = ClassFilter.base(path_class)
    else:
        class_filter = ClassFilter.exact(path_class)
    name = class_filter.class_name or "Unclassified"
    kwargs.setdefault("all_objects", ObjectSelector(object_type=ObjectType.POINT_ANNOTATIONS))
    selector = ObjectSelector(object_type=ObjectType.POINT_ANNOTATIONS, class_filter=class_filter)
    return build_density_map_spec(radius, density_classes={name: selector}, **kwargs)


def spec_from_config(
    density_config: Dict[str, Any],
    radius: float,
    **kwargs: Any,
) -> DensityMapSpec:
    """Build a spec using ``max_size`` and ``area_roi_mode`` from a config's density section."""
    kwargs.setdefault("max_size", density_config.get("max_size", DEFAULT_MAX_SIZE))
    kwargs.setdefault("area_roi_mode", density_config.get("area_roi_mode", AreaRoiMode.CENTROID))
    return build_density_map_spec(radius, **kwargs)
