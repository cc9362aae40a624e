"""
Annotation Store
================

Ordered, undoable collection of markers for one image.

The store keeps its markers as an immutable tuple, so every mutation swaps
in a new tuple and the previous one can be pushed onto the undo stack as-is.
Snapshots share that tuple; the snapshot object itself is cached until the
next mutation.

Features:
- Bounds and minimum-spacing validation on add (store untouched on failure)
- Bounded undo history, redo cleared by any new add/remove
- Ids are never reused within a store's lifetime, even across ``reset``

The store is single-writer. Snapshots are immutable and may be handed to
other threads.

Author: Photomark Project
"""

import logging
from collections import deque
from typing import Deque, Optional, Tuple

from photomark.core.annotation.markers import AnnotationSnapshot, Marker
from photomark.core.config import AnnotationConfig
from photomark.core.errors import (
    DuplicateTooCloseError,
    MarkerNotFoundError,
    NothingToRedoError,
    NothingToUndoError,
    OutOfBoundsError,
)
from photomark.core.geometry import (
    ImageSize,
    Point,
    Transform,
    ViewportPoint,
    distance,
    is_within_bounds,
    to_image_space,
)

logger = logging.getLogger(__name__)

MarkerTuple = Tuple[Marker, ...]


class AnnotationStore:
    """
    Markers placed on a single image, in canonical image coordinates.

    Args:
        image_size: Dimensions of the image being annotated
        config: Spacing, history and default label settings
    """

    def __init__(self, image_size: ImageSize, config: Optional[AnnotationConfig] = None):
        self.config = config or AnnotationConfig()
        self._image_size = image_size
        self._markers: MarkerTuple = ()
        self._undo: Deque[MarkerTuple] = deque(maxlen=self.config.max_history)
        self._redo: Deque[MarkerTuple] = deque()
        self._sequence = 0
        self._next_id = 1
        self._version = 0
        self._snapshot: Optional[AnnotationSnapshot] = None

    # ------------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------------

    @property
    def image_size(self) -> ImageSize:
        return self._image_size

    @property
    def markers(self) -> MarkerTuple:
        return self._markers

    @property
    def version(self) -> int:
        return self._version

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def __len__(self) -> int:
        return len(self._markers)

    def get(self, marker_id: str) -> Optional[Marker]:
        for marker in self._markers:
            if marker.id == marker_id:
                return marker
        return None

    # ------------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------------

    def add_marker(self, point: Point, label: Optional[str] = None) -> Marker:
        """
        Append a marker at ``point``.

        Raises:
            OutOfBoundsError: Point is outside the image
            DuplicateTooCloseError: Point is closer than the minimum spacing
                to an existing marker
        """
        if not is_within_bounds(point, self._image_size):
            raise OutOfBoundsError(
                f"Point ({point.x:.2f}, {point.y:.2f}) is outside the "
                f"{self._image_size.width}x{self._image_size.height} image"
            )

        spacing = self.config.min_marker_spacing
        for existing in self._markers:
            if distance(existing.position, point) < spacing:
                raise DuplicateTooCloseError(
                    f"Marker at ({point.x:.2f}, {point.y:.2f}) is within {spacing}px "
                    f"of marker {existing.id}"
                )

        self._sequence += 1
        marker = Marker(
            id=f"m{self._next_id}",
            position=point,
            created_at=self._sequence,
            label=label or self.config.default_label,
        )
        self._next_id += 1

        self._commit(self._markers + (marker,))
        logger.debug(f"Added marker {marker.id} at ({point.x:.2f}, {point.y:.2f})")
        return marker

    def add_marker_at(self, viewport_point: ViewportPoint, transform: Transform,
                      label: Optional[str] = None) -> Marker:
        """Convert a viewport tap to image space and add it."""
        point = to_image_space(viewport_point, transform, self._image_size)
        return self.add_marker(point, label)

    def remove_marker(self, marker_id: str) -> Marker:
        """
        Remove the marker with ``marker_id``.

        Raises:
            MarkerNotFoundError: No such marker
        """
        removed = self.get(marker_id)
        if removed is None:
            raise MarkerNotFoundError(f"Marker {marker_id!r} not found")

        self._commit(tuple(m for m in self._markers if m.id != marker_id))
        logger.debug(f"Removed marker {marker_id}")
        return removed

    def clear(self):
        """Remove every marker as a single undoable step."""
        if not self._markers:
            return
        count = len(self._markers)
        self._commit(())
        logger.debug(f"Cleared {count} markers")

    def undo(self) -> AnnotationSnapshot:
        """
        Restore the marker sequence before the last mutation.

        Raises:
            NothingToUndoError: Undo history is empty
        """
        if not self._undo:
            raise NothingToUndoError("Nothing to undo")
        self._redo.append(self._markers)
        self._replace(self._undo.pop())
        logger.debug(f"Undo -> {len(self._markers)} markers")
        return self.snapshot()

    def redo(self) -> AnnotationSnapshot:
        """
        Re-apply the last undone mutation.

        Raises:
            NothingToRedoError: Nothing has been undone since the last mutation
        """
        if not self._redo:
            raise NothingToRedoError("Nothing to redo")
        self._undo.append(self._markers)
        self._replace(self._redo.pop())
        logger.debug(f"Redo -> {len(self._markers)} markers")
        return self.snapshot()

    def reset(self, image_size: ImageSize):
        """Start over on a new image. Id and sequence counters keep running."""
        self._image_size = image_size
        self._undo.clear()
        self._redo.clear()
        self._replace(())
        logger.debug(f"Store reset for {image_size.width}x{image_size.height} image")

    # ------------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------------

    def snapshot(self) -> AnnotationSnapshot:
        if self._snapshot is None:
            self._snapshot = AnnotationSnapshot(
                markers=self._markers,
                version=self._version,
                image_size=self._image_size,
            )
        return self._snapshot

    def _commit(self, markers: MarkerTuple):
        # deque(maxlen) drops the oldest entry once history is full
        self._undo.append(self._markers)
        self._redo.clear()
        self._replace(markers)

    def _replace(self, markers: MarkerTuple):
        self._markers = markers
        self._version += 1
        self._snapshot = None
