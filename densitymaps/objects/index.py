"""
Spatial index over classified objects.

``SpatialObjectIndex`` is the contract density map building needs: region
queries returning objects in a fixed (insertion) order so that accumulation
is reproducible. ``ObjectHierarchy`` is the in-memory implementation, backed
by a shapely STRtree that is rebuilt lazily after mutations.

Mutations are announced as ``HierarchyEvent`` messages on subscriber queues
rather than through callbacks, so that consumers (e.g. a session rebuilding
its density map) can debounce them on their own thread:

    q = hierarchy.subscribe()
    hierarchy.add_objects(objects)
    event = q.get()      # HierarchyEvent(kind=ADDED, ...)
    hierarchy.unsubscribe(q)
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import (
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
    runtime_checkable,
)

import numpy as np
from shapely import STRtree
from shapely.geometry import MultiPoint, box
from shapely.geometry.base import BaseGeometry

from densitymaps.errors import DataUnavailable
from densitymaps.objects.model import ClassifiedObject, ImagePlane, PathClass
from densitymaps.utils.logging import get_logger

logger = get_logger(__name__)

# A query region: shapely geometry, (x, y, width, height) or None for everything
Region = Union[BaseGeometry, Tuple[float, float, float, float], None]
ObjectPredicate = Callable[[ClassifiedObject], bool]

# query_objects modes: match on footprint, or on representative points
QUERY_BY_GEOMETRY = "geometry"
QUERY_BY_POINTS = "points"
QUERY_MODES = (QUERY_BY_GEOMETRY, QUERY_BY_POINTS)


def region_to_geometry(region: Region) -> Optional[BaseGeometry]:
    """Convert an (x, y, w, h) tuple to a shapely box; pass geometries through."""
    if region is None or isinstance(region, BaseGeometry):
        return region
    x, y, w, h = region
    if w < 0 or h < 0:
        raise ValueError(f"Region width and height must be >= 0, got ({w}, {h})")
    return box(x, y, x + w, y + h)


@runtime_checkable
class SpatialObjectIndex(Protocol):
    """Queryable collection of classified objects."""

    def query_objects(
        self,
        region: Region = None,
        plane: Optional[ImagePlane] = None,
        by: str = QUERY_BY_GEOMETRY,
    ) -> List[ClassifiedObject]:
        """Objects intersecting ``region`` on ``plane``, in insertion order."""
        ...

    def get_objects(self, predicate: Optional[ObjectPredicate] = None) -> List[ClassifiedObject]:
        """All objects (optionally filtered), in insertion order."""
        ...


class HierarchyEventKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    CLASSIFICATION_CHANGED = "classification_changed"
    CLEARED = "cleared"


@dataclass(frozen=True)
class HierarchyEvent:
    """A single hierarchy mutation, as seen by subscribers."""
    kind: HierarchyEventKind
    objects: Tuple[ClassifiedObject, ...]
    revision: int


class ObjectHierarchy:
    """
    In-memory object hierarchy with a spatial index.

    Thread-safe: queries and mutations may come from different threads
    (e.g. a background density map build while objects are being edited).
    Once closed, every query raises DataUnavailable.
    """

    def __init__(self, objects: Optional[Iterable[ClassifiedObject]] = None):
        self._lock = threading.RLock()
        # Insertion order is preserved by dict ordering
        self._objects: Dict[str, ClassifiedObject] = {}
        self._order: Dict[str, int] = {}
        self._next_order = 0
        # Lazily built trees keyed by query mode, over the _tree_objects snapshot
        self._trees: Dict[str, STRtree] = {}
        self._tree_objects: List[ClassifiedObject] = []
        self._subscribers: List[queue.Queue] = []
        self._revision = 0
        self._closed = False

        if objects:
            self._add(list(objects))

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def revision(self) -> int:
        """Incremented on every mutation."""
        return self._revision

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the index; later queries raise DataUnavailable."""
        with self._lock:
            self._closed = True
            self._objects.clear()
            self._order.clear()
            self._trees = {}
            self._tree_objects = []
        logger.debug("Object hierarchy closed")

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, obj: ClassifiedObject) -> bool:
        return obj.id in self._objects

    def _check_open(self) -> None:
        if self._closed:
            raise DataUnavailable("Object hierarchy has been closed")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, maxsize: int = 0) -> queue.Queue:
        """Return a new queue that receives a HierarchyEvent per mutation."""
        q: queue.Queue = queue.Queue(maxsize=maxsize)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def _publish(self, kind: HierarchyEventKind, objects: Sequence[ClassifiedObject]) -> None:
        # Called with the lock held
        self._revision += 1
        self._trees = {}
        event = HierarchyEvent(kind=kind, objects=tuple(objects), revision=self._revision)
        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except queue.Full:
                logger.warning("Hierarchy event queue full, dropping %s event", kind.value)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _add(self, objects: List[ClassifiedObject]) -> List[ClassifiedObject]:
        added = []
        for obj in objects:
            if obj.id in self._objects:
                continue
            self._objects[obj.id] = obj
            self._order[obj.id] = self._next_order
            self._next_order += 1
            added.append(obj)
        return added

    def add_objects(self, objects: Iterable[ClassifiedObject]) -> List[ClassifiedObject]:
        """
        Add objects; ones whose id is already present are ignored.

        Returns:
            The objects actually added
        """
        with self._lock:
            self._check_open()
            added = self._add(list(objects))
            if added:
                self._publish(HierarchyEventKind.ADDED, added)
        return added

    def add_object(self, obj: ClassifiedObject) -> bool:
        return bool(self.add_objects([obj]))

    def remove_objects(self, objects: Iterable[ClassifiedObject]) -> List[ClassifiedObject]:
        """Remove objects (matched by id). Returns the objects removed."""
        with self._lock:
            self._check_open()
            removed = []
            for obj in objects:
                current = self._objects.pop(obj.id, None)
                if current is not None:
                    del self._order[obj.id]
                    removed.append(current)
            if removed:
                self._publish(HierarchyEventKind.REMOVED, removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._check_open()
            removed = list(self._objects.values())
            self._objects.clear()
            self._order.clear()
            self._publish(HierarchyEventKind.CLEARED, removed)

    def set_classification(
        self,
        objects: Iterable[ClassifiedObject],
        classification: Union[None, str, PathClass],
    ) -> List[ClassifiedObject]:
        """
        Replace the classification of objects (ids and order are kept).

        Returns:
            The updated objects
        """
        path_class = PathClass.coerce(classification)
        with self._lock:
            self._check_open()
            updated = []
            for obj in objects:
                if obj.id not in self._objects:
                    continue
                new_obj = self._objects[obj.id].with_classification(path_class)
                self._objects[obj.id] = new_obj
                updated.append(new_obj)
            if updated:
                self._publish(HierarchyEventKind.CLASSIFICATION_CHANGED, updated)
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _ensure_tree(self, by: str) -> STRtree:
        if not self._trees:
            self._tree_objects = list(self._objects.values())
        tree = self._trees.get(by)
        if tree is None:
            if by == QUERY_BY_POINTS:
                geoms = [MultiPoint(obj.representative_points()) for obj in self._tree_objects]
            else:
                geoms = [obj.geometry for obj in self._tree_objects]
            tree = self._trees[by] = STRtree(geoms)
        return tree

    def query_objects(
        self,
        region: Region = None,
        plane: Optional[ImagePlane] = None,
        by: str = QUERY_BY_GEOMETRY,
    ) -> List[ClassifiedObject]:
        """
        Objects whose geometry (or representative points) intersects ``region``.

        Args:
            region: Shapely geometry, (x, y, width, height) or None for all
            plane: Only return objects on this plane (None = any plane)
            by: ``"geometry"`` matches on the object's footprint;
                ``"points"`` matches on ``representative_points()`` (the
                centroid of an area ROI)

        Returns:
            Matching objects in ascending insertion order

        Raises:
            ValueError: Unknown ``by``
            DataUnavailable: If the hierarchy has been closed
        """
        if by not in QUERY_MODES:
            raise ValueError(f"Unknown query mode {by!r}, expected one of {QUERY_MODES}")
        geom = region_to_geometry(region)
        with self._lock:
            self._check_open()
            if geom is None:
                result = list(self._objects.values())
            else:
                tree = self._ensure_tree(by)
                if not self._tree_objects:
                    return []
                hits = tree.query(geom, predicate="intersects")
                result = [self._tree_objects[i] for i in np.asarray(hits, dtype=int)]
                result.sort(key=lambda o: self._order[o.id])
        if plane is not None:
            result = [o for o in result if o.plane == plane]
        return result

    def get_objects(self, predicate: Optional[ObjectPredicate] = None) -> List[ClassifiedObject]:
        with self._lock:
            self._check_open()
            objects = list(self._objects.values())
        if predicate is None:
            return objects
        return [o for o in objects if predicate(o)]

    def get_annotations(self) -> List[ClassifiedObject]:
        return self.get_objects(lambda o: o.is_annotation)

    def get_detections(self) -> List[ClassifiedObject]:
        return self.get_objects(lambda o: o.is_detection)

    def get_object(self, object_id: str) -> Optional[ClassifiedObject]:
        with self._lock:
            self._check_open()
            return self._objects.get(object_id)
