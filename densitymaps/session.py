"""
Background density map sessions.

A DensityMapSession owns one image and builds density maps off the calling
thread. Builds run on a single worker; a new request cancels the one in
flight, so only the most recent request's raster ever becomes the current
map. Superseded or cancelled builds finish silently.

With watch_hierarchy(), changes to the image's objects trigger a rebuild of
the last requested spec once a burst of edits has been quiet for
``debounce_seconds``. Rebuilds always start from scratch.

Usage:
    from densitymaps.session import DensityMapSession

    with DensityMapSession(image_data, on_map_ready=show) as session:
        session.watch_hierarchy()
        future = session.request_build(spec)
        density_map = future.result()   # None if superseded or cancelled
"""

import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from densitymaps.cancellation import CancellationToken
from densitymaps.density.builder import DensityMapBuilder
from densitymaps.density.raster import DensityRaster
from densitymaps.density.spec import DensityMapSpec
from densitymaps.errors import Cancelled
from densitymaps.objects.image import ImageData
from densitymaps.utils.config import get_section_defaults
from densitymaps.utils.logging import get_logger

logger = get_logger(__name__)

__all__ = ['BuildNotification', 'CancellationToken', 'DensityMapSession']

_STOP = object()


@dataclass(frozen=True)
class BuildNotification:
    """Summary of tile failures in one completed build."""
    raster_id: str
    failed_tiles: int
    total_tiles: int

    @property
    def message(self) -> str:
        return (f"{self.failed_tiles} of {self.total_tiles} tiles could not be computed; "
                f"the density map is incomplete")


class DensityMapSession:
    """
    Latest-request-wins density map building for one image.

    Args:
        image_data: Image whose objects are mapped
        builder: Builder to use (default: DensityMapBuilder())
        debounce_seconds: Quiet period before a watched change triggers a rebuild
        on_map_ready: Called with each new current DensityRaster
        on_error: Called with the exception of a failed latest build
        on_notification: Called once per build that had failed tiles
    """

    def __init__(
        self,
        image_data: ImageData,
        builder: Optional[DensityMapBuilder] = None,
        debounce_seconds: float = 0.5,
        on_map_ready: Optional[Callable[[DensityRaster], Any]] = None,
        on_error: Optional[Callable[[BaseException], Any]] = None,
        on_notification: Optional[Callable[[BuildNotification], Any]] = None,
    ):
        if debounce_seconds < 0:
            raise ValueError(f"debounce_seconds must be >= 0, got {debounce_seconds}")
        self.image_data = image_data
        self.builder = builder or DensityMapBuilder()
        self.debounce_seconds = float(debounce_seconds)
        self.on_map_ready = on_map_ready
        self.on_error = on_error
        self.on_notification = on_notification

        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="densitymap")
        self._token: Optional[CancellationToken] = None
        self._generation = 0
        self._last_spec: Optional[DensityMapSpec] = None
        self._current_map: Optional[DensityRaster] = None
        self._last_notification: Optional[BuildNotification] = None
        self._closed = False

        self._events: Optional[queue.Queue] = None
        self._watcher: Optional[threading.Thread] = None
        self._stop_watching = threading.Event()

    @classmethod
    def from_config(
        cls,
        image_data: ImageData,
        config: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> "DensityMapSession":
        """Session whose builder and debounce come from a loaded config."""
        session = get_section_defaults("session")
        if config is not None:
            session.update(config.get("session", {}))
        kwargs.setdefault("builder", DensityMapBuilder.from_config(config))
        kwargs.setdefault("debounce_seconds", session["debounce_seconds"])
        return cls(image_data, **kwargs)

    # ------------------------------------------------------------------

    @property
    def current_map(self) -> Optional[DensityRaster]:
        """Raster of the most recent successful build, if any."""
        return self._current_map

    @property
    def last_spec(self) -> Optional[DensityMapSpec]:
        return self._last_spec

    @property
    def last_notification(self) -> Optional[BuildNotification]:
        return self._last_notification

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def watching(self) -> bool:
        return self._watcher is not None and self._watcher.is_alive()

    def request_build(self, spec: DensityMapSpec) -> Future:
        """
        Cancel any build in flight and schedule a build of ``spec``.

        Returns:
            Future resolving to the DensityRaster, or None if the build was
            superseded or cancelled. Other failures are raised from the
            future (and passed to on_error if still current).

        Raises:
            RuntimeError: If the session is closed
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Density map session is closed")
            if self._token is not None:
                self._token.cancel()
            token = CancellationToken()
            self._token = token
            self._generation += 1
            generation = self._generation
            self._last_spec = spec
            future = self._executor.submit(self._run_build, spec, token, generation)
        logger.debug("Requested density map build #%d: %s", generation, spec.describe())
        return future

    def cancel(self) -> None:
        """Cancel the build in flight (if any)."""
        with self._lock:
            if self._token is not None:
                self._token.cancel()

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation and not self._closed

    def _run_build(
        self,
        spec: DensityMapSpec,
        token: CancellationToken,
        generation: int,
    ) -> Optional[DensityRaster]:
        if token.cancelled:
            logger.debug("Build #%d superseded before it started", generation)
            return None
        try:
            raster = self.builder.build(self.image_data, spec, cancel_token=token)
        except Cancelled:
            logger.debug("Build #%d cancelled", generation)
            return None
        except Exception as e:
            if self._is_current(generation):
                logger.error("Density map build failed: %s", e)
                if self.on_error is not None:
                    self.on_error(e)
            raise

        with self._lock:
            if generation != self._generation or token.cancelled or self._closed:
                logger.debug("Discarding superseded build #%d", generation)
                return None
            self._current_map = raster
            notification = None
            if raster.failed_tiles:
                notification = BuildNotification(
                    raster_id=raster.id,
                    failed_tiles=raster.failed_tiles,
                    total_tiles=raster.n_tiles(self.builder.tile_size),
                )
                self._last_notification = notification

        if notification is not None:
            logger.warning(notification.message)
            if self.on_notification is not None:
                self.on_notification(notification)
        if self.on_map_ready is not None:
            self.on_map_ready(raster)
        return raster

    # ------------------------------------------------------------------
    # Hierarchy watching
    # ------------------------------------------------------------------

    def watch_hierarchy(self) -> None:
        """Rebuild the last requested spec after each quiet burst of object changes."""
        with self._lock:
            if self._closed:
                raise RuntimeError("Density map session is closed")
            if self.watching:
                return
            self._stop_watching.clear()
            self._events = self.image_data.hierarchy.subscribe()
            self._watcher = threading.Thread(
                target=self._watch_loop,
                args=(self._events,),
                name="densitymap-watcher",
                daemon=True,
            )
            self._watcher.start()
        logger.debug("Watching hierarchy of '%s' for changes", self.image_data.name)

    def stop_watching(self) -> None:
        watcher, events = self._watcher, self._events
        if watcher is None:
            return
        self._stop_watching.set()
        if events is not None:
            events.put(_STOP)
            self.image_data.hierarchy.unsubscribe(events)
        if watcher is not threading.current_thread():
            watcher.join()
        self._watcher = None
        self._events = None

    def _wait_for_quiet(self, events: queue.Queue) -> bool:
        """Drain events until none arrive for debounce_seconds; False if stopping."""
        deadline = time.monotonic() + self.debounce_seconds
        while not self._stop_watching.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return True
            try:
                event = events.get(timeout=remaining)
            except queue.Empty:
                return True
            if event is _STOP:
                return False
            deadline = time.monotonic() + self.debounce_seconds
        return False

    def _watch_loop(self, events: queue.Queue) -> None:
        while not self._stop_watching.is_set():
            event = events.get()
            if event is _STOP:
                break
            if not self._wait_for_quiet(events):
                break
            spec = self._last_spec
            if spec is None:
                continue
            logger.debug("Objects changed (revision %d), rebuilding density map",
                         self.image_data.hierarchy.revision)
            try:
                self.request_build(spec)
            except RuntimeError:
                break

    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop watching, cancel the build in flight and shut down the worker."""
        self.stop_watching()
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._token is not None:
                self._token.cancel()
        self._executor.shutdown(wait=True, cancel_futures=True)
        logger.debug("Density map session closed")

    def __enter__(self) -> "DensityMapSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

