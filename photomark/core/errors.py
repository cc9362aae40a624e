"""
Error Taxonomy
==============

Closed set of failure kinds shared by the annotation store, the request
builder and the dispatch pipeline, plus the exception hierarchy raised for
local (synchronous) validation failures.

Validation errors are raised to the caller and never enter the retry
machinery. Network failures are not raised at all: the response classifier
turns them into ``Failed`` outcomes carrying one of the network kinds below.

Author: Photomark Project
"""

from enum import Enum
from typing import Optional


# ============================================================================
# ERROR KINDS
# ============================================================================

class ErrorKind(Enum):
    """Every failure the core can report."""

    # Annotation store
    OUT_OF_BOUNDS = "out_of_bounds"
    DUPLICATE_TOO_CLOSE = "duplicate_too_close"
    NOT_FOUND = "not_found"
    NOTHING_TO_UNDO = "nothing_to_undo"
    NOTHING_TO_REDO = "nothing_to_redo"

    # Request builder
    EMPTY_MARKER_SET = "empty_marker_set"
    IMAGE_TOO_LARGE = "image_too_large"
    UNSUPPORTED_FORMAT = "unsupported_format"

    # Remote service
    INVALID_REQUEST = "invalid_request"
    UNAUTHENTICATED = "unauthenticated"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    TRANSPORT_ERROR = "transport_error"
    MALFORMED_RESPONSE = "malformed_response"
    BLOCKED = "blocked"

    @property
    def retryable(self) -> bool:
        """Only throttling, server faults and transport faults are retried."""
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset({
    ErrorKind.RATE_LIMITED,
    ErrorKind.SERVER_ERROR,
    ErrorKind.TRANSPORT_ERROR,
})


# ============================================================================
# EXCEPTIONS
# ============================================================================

class PhotomarkError(Exception):
    """Base exception for all Photomark errors that carry an ``ErrorKind``."""

    kind: Optional[ErrorKind] = None

    def __init__(self, message: str = "", kind: Optional[ErrorKind] = None):
        if kind is not None:
            self.kind = kind
        super().__init__(message or (self.kind.value if self.kind else ""))

    @property
    def retryable(self) -> bool:
        return bool(self.kind and self.kind.retryable)


class ConfigurationError(ValueError):
    """Raised when a configuration value is outside its documented range."""
    pass


class InvalidTransformError(ValueError):
    """Raised when a viewport transform is constructed with a bad scale."""
    pass


# ----------------------------------------------------------------------------
# Annotation store
# ----------------------------------------------------------------------------

class AnnotationError(PhotomarkError):
    """Base class for annotation store failures."""
    pass


class OutOfBoundsError(AnnotationError):
    """Raised when a point falls outside the canonical image bounds."""
    kind = ErrorKind.OUT_OF_BOUNDS


class DuplicateTooCloseError(AnnotationError):
    """Raised when a new marker lands within the minimum spacing of another."""
    kind = ErrorKind.DUPLICATE_TOO_CLOSE


class MarkerNotFoundError(AnnotationError):
    """Raised when removing a marker id that is not in the store."""
    kind = ErrorKind.NOT_FOUND


class NothingToUndoError(AnnotationError):
    kind = ErrorKind.NOTHING_TO_UNDO


class NothingToRedoError(AnnotationError):
    kind = ErrorKind.NOTHING_TO_REDO


# ----------------------------------------------------------------------------
# Request builder
# ----------------------------------------------------------------------------

class RequestValidationError(PhotomarkError):
    """Base class for request builder failures."""
    pass


class EmptyMarkerSetError(RequestValidationError):
    """Raised when a request is built from a snapshot with no markers."""
    kind = ErrorKind.EMPTY_MARKER_SET


class ImageTooLargeError(RequestValidationError):
    """Raised when the image exceeds the configured byte ceiling."""
    kind = ErrorKind.IMAGE_TOO_LARGE


class UnsupportedFormatError(RequestValidationError):
    """Raised when the image format is not in the allowed set."""
    kind = ErrorKind.UNSUPPORTED_FORMAT


class InvalidRequestError(RequestValidationError):
    """Raised when generation options are outside their declared ranges."""
    kind = ErrorKind.INVALID_REQUEST
