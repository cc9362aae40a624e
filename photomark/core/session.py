"""
Editing Session
===============

UI-facing facade that ties one image, its annotation store and the dispatch
orchestrator together. A front end (desktop, web or the CLI) drives the
whole edit through this object:

- ``load_image()`` when the user opens a photo
- ``add_marker_at()`` on each committed tap, ``undo()``/``redo()``/``remove_marker()``
- ``submit()`` to send the photo and markers for editing
- ``cancel()`` if the user backs out

Loading a new image resets the markers and cancels whatever was still
running for the previous one.
"""

import logging
import threading
from typing import List, Optional

from photomark.core.annotation import AnnotationSnapshot, AnnotationStore, Marker
from photomark.core.config import PhotomarkConfig
from photomark.core.dispatch import DispatchOrchestrator, OperationHandle
from photomark.core.geometry import ImageSize, Point, Transform, ViewportPoint
from photomark.core.image_processing import ImageInfo, ImageSource, inspect_image
from photomark.core.request_builder import GenerationOptions


class EditingSession:
    """
    Holds the state of one interactive edit.

    Attributes:
        orchestrator: Shared dispatch orchestrator
        config: Application configuration
        image: The loaded image, ``None`` until ``load_image``
        image_info: Decoded format and size of ``image``
        store: Marker store for ``image``
        last_handle: Handle of the most recent submission
        pending: Submissions that have not finished yet
    """

    def __init__(self, orchestrator: DispatchOrchestrator, config: Optional[PhotomarkConfig] = None):
        self.logger = logging.getLogger(__name__)
        self.orchestrator = orchestrator
        self.config = config or orchestrator.config
        self.image: Optional[ImageSource] = None
        self.image_info: Optional[ImageInfo] = None
        self.store: Optional[AnnotationStore] = None
        self.last_handle: Optional[OperationHandle] = None
        self.pending: List[OperationHandle] = []
        self._pending_lock = threading.Lock()

    # ------------------------------------------------------------------------
    # Image lifecycle
    # ------------------------------------------------------------------------

    def load_image(self, source: ImageSource) -> ImageSize:
        """
        Make ``source`` the image being edited.

        Raises:
            UnsupportedFormatError: Pillow cannot decode the image
            ImageTooLargeError: Pixel count is over the decompression bomb limit
        """
        info = inspect_image(source.data)
        self.cancel()

        self.image = source
        self.image_info = info
        if self.store is None:
            self.store = AnnotationStore(info.size, self.config.annotation)
        else:
            self.store.reset(info.size)

        self.logger.info(f"Loaded {info.width}x{info.height} {info.mime_type} image")
        return info.size

    def _require_store(self) -> AnnotationStore:
        if self.store is None:
            raise RuntimeError("No image loaded")
        return self.store

    # ------------------------------------------------------------------------
    # Markers
    # ------------------------------------------------------------------------

    def add_marker_at(self, viewport_point: ViewportPoint, transform: Transform,
                      label: Optional[str] = None) -> Marker:
        return self._require_store().add_marker_at(viewport_point, transform, label)

    def add_marker(self, point: Point, label: Optional[str] = None) -> Marker:
        return self._require_store().add_marker(point, label)

    def remove_marker(self, marker_id: str) -> Marker:
        return self._require_store().remove_marker(marker_id)

    def undo(self) -> AnnotationSnapshot:
        return self._require_store().undo()

    def redo(self) -> AnnotationSnapshot:
        return self._require_store().redo()

    def clear_markers(self):
        self._require_store().clear()

    def snapshot(self) -> AnnotationSnapshot:
        return self._require_store().snapshot()

    # ------------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------------

    def submit(self, options: Optional[GenerationOptions] = None) -> OperationHandle:
        """Send the current image and markers for editing."""
        store = self._require_store()
        handle = self.orchestrator.submit(self.image, store.snapshot(), options)
        self.last_handle = handle
        with self._pending_lock:
            self.pending.append(handle)
        # Runs at once for handles that are already resolved
        handle.add_done_callback(self._forget)
        self.logger.debug(f"Submitted {len(store)} markers: {handle!r}")
        return handle

    def _forget(self, handle: OperationHandle):
        with self._pending_lock:
            if handle in self.pending:
                self.pending.remove(handle)

    def cancel(self) -> bool:
        """Detach from every submission that is still running. True if any was cancelled."""
        with self._pending_lock:
            handles = list(self.pending)
        cancelled = [h for h in handles if h.cancel()]
        if cancelled:
            self.logger.info(f"Cancelled {len(cancelled)} pending edit(s)")
        return bool(cancelled)
