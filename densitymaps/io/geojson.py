"""
QuPath-style GeoJSON import/export of classified objects.

Features carry the object type and classification in their properties:

    {"type": "Feature",
     "id": "...",
     "geometry": {...},
     "properties": {"objectType": "detection",
                    "classification": {"name": "Tumor: Positive"},
                    "name": "optional"}}

Accepted objectType values: annotation, detection, cell, tile (missing
defaults to detection). Files may be a FeatureCollection, a bare list of
features, or gzip-compressed (.gz).

Usage:
    from densitymaps.io.geojson import load_hierarchy, write_geojson

    hierarchy = load_hierarchy("cells.geojson")
    write_geojson(hotspot_annotations, "hotspots.geojson")
"""

import gzip
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from shapely.geometry import mapping, shape

from densitymaps.objects.index import ObjectHierarchy
from densitymaps.objects.model import ClassifiedObject, ImagePlane, ObjectKind, PathClass
from densitymaps.utils.json_utils import NumpyEncoder
from densitymaps.utils.logging import get_logger

logger = get_logger(__name__)

PathLike = Union[str, Path]


def _read_json(path: Path) -> Any:
    if path.suffix.lower() == ".gz":
        with gzip.open(path, "rt", encoding="utf-8") as f:
            return json.load(f)
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _features(document: Any) -> List[Dict[str, Any]]:
    if isinstance(document, dict):
        if document.get("type") == "FeatureCollection":
            return list(document.get("features", []))
        if document.get("type") == "Feature":
            return [document]
    if isinstance(document, list):
        return document
    raise ValueError(f"Unsupported GeoJSON root type: {type(document).__name__}")


def _classification(properties: Dict[str, Any]) -> Optional[PathClass]:
    value = properties.get("classification")
    if isinstance(value, dict):
        value = value.get("name")
    return PathClass.from_string(value) if isinstance(value, str) else None


def feature_to_object(feature: Dict[str, Any]) -> Optional[ClassifiedObject]:
    """
    Convert one GeoJSON feature to a ClassifiedObject.

    Returns:
        The object, or None if the feature has no usable geometry

    Raises:
        ValueError: Unknown objectType
    """
    geometry_dict = feature.get("geometry")
    if not geometry_dict:
        return None
    geometry = shape(geometry_dict)
    if geometry.is_empty:
        return None

    properties = feature.get("properties") or {}
    kind_name = str(properties.get("objectType", ObjectKind.DETECTION.value)).lower()
    try:
        kind = ObjectKind(kind_name)
    except ValueError:
        raise ValueError(f"Unknown objectType '{kind_name}'") from None

    kwargs: Dict[str, Any] = {}
    if feature.get("id") is not None:
        kwargs["id"] = str(feature["id"])
    plane = properties.get("plane")
    if isinstance(plane, dict):
        kwargs["plane"] = ImagePlane(z=int(plane.get("z", 0)), t=int(plane.get("t", 0)))

    return ClassifiedObject(
        geometry=geometry,
        classification=_classification(properties),
        kind=kind,
        name=properties.get("name"),
        **kwargs,
    )


def object_to_feature(obj: ClassifiedObject) -> Dict[str, Any]:
    """Convert a ClassifiedObject to a GeoJSON feature."""
    properties: Dict[str, Any] = {"objectType": obj.kind.value}
    if obj.classification is not None:
        properties["classification"] = {"name": obj.classification.name}
    if obj.name:
        properties["name"] = obj.name
    if obj.plane != ImagePlane():
        properties["plane"] = {"z": obj.plane.z, "t": obj.plane.t}
    return {
        "type": "Feature",
        "id": obj.id,
        "geometry": mapping(obj.geometry),
        "properties": properties,
    }


def load_objects(path: PathLike) -> List[ClassifiedObject]:
    """
    Read objects from a GeoJSON (or .geojson.gz) file.

    Features without geometry are skipped with a warning.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the document is not GeoJSON features
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"GeoJSON file not found: {path}")

    features = _features(_read_json(path))
    objects = []
    skipped = 0
    for feature in features:
        obj = feature_to_object(feature)
        if obj is None:
            skipped += 1
            continue
        objects.append(obj)

    if skipped:
        logger.warning("Skipped %d features without geometry in %s", skipped, path)
    logger.info("Loaded %d objects from %s", len(objects), path)
    return objects


def load_hierarchy(path: PathLike) -> ObjectHierarchy:
    """Read a GeoJSON file into a new ObjectHierarchy."""
    return ObjectHierarchy(load_objects(path))


def write_geojson(objects: Iterable[ClassifiedObject], path: PathLike) -> Path:
    """
    Write objects as a FeatureCollection (gzip-compressed if the path ends in .gz).

    Returns:
        Path that was written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    features = [object_to_feature(obj) for obj in objects]
    document = {"type": "FeatureCollection", "features": features}

    if path.suffix.lower() == ".gz":
        with gzip.open(path, "wt", encoding="utf-8") as f:
            json.dump(document, f, cls=NumpyEncoder)
    else:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(document, f, cls=NumpyEncoder)

    logger.info("Wrote %d features to %s", len(features), path)
    return path
