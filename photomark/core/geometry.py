"""
Geometry and Viewport Transforms
================================

Pure functions mapping between the on-screen viewport (affected by zoom and
pan) and the canonical image space (origin top-left, units are source image
pixels).

A ``Transform`` describes the viewport at one moment of an interaction:

    viewport = image * scale + translation
    image    = (viewport - translation) / scale

Markers are always stored in image space so that they stay attached to the
same pixels however the user zooms or pans.

Author: Photomark Project
"""

import math
from dataclasses import dataclass
from typing import Tuple

from photomark.core.errors import InvalidTransformError, OutOfBoundsError


@dataclass(frozen=True)
class Point:
    """A location in canonical image space."""
    x: float
    y: float

    def __iter__(self):
        """Allow tuple unpacking: x, y = point"""
        return iter((self.x, self.y))

    def to_dict(self):
        return {"x": self.x, "y": self.y}


@dataclass(frozen=True)
class ViewportPoint:
    """A location in on-screen viewport pixels."""
    x: float
    y: float

    def __iter__(self):
        return iter((self.x, self.y))


@dataclass(frozen=True)
class ImageSize:
    """Pixel dimensions of the source image."""
    width: int
    height: int

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Image dimensions must be positive, got {self.width}x{self.height}")


@dataclass(frozen=True)
class Transform:
    """
    Viewport to image mapping.

    Attributes:
        scale: Viewport pixels per image pixel, must be finite and > 0
        translation: Viewport position of the image origin
    """
    scale: float = 1.0
    translation: Tuple[float, float] = (0.0, 0.0)

    def __post_init__(self):
        if not isinstance(self.scale, (int, float)) or not math.isfinite(self.scale) or self.scale <= 0:
            raise InvalidTransformError(f"Transform scale must be a finite value > 0, got {self.scale!r}")
        tx, ty = self.translation
        if not (math.isfinite(tx) and math.isfinite(ty)):
            raise InvalidTransformError(f"Transform translation must be finite, got {self.translation!r}")
        object.__setattr__(self, "translation", (float(tx), float(ty)))

    @classmethod
    def fit(cls, image_size: ImageSize, viewport_width: float, viewport_height: float) -> "Transform":
        """Scale the whole image into the viewport and centre it."""
        if viewport_width <= 0 or viewport_height <= 0:
            raise InvalidTransformError("Viewport dimensions must be positive")
        scale = min(viewport_width / image_size.width, viewport_height / image_size.height)
        tx = (viewport_width - image_size.width * scale) / 2.0
        ty = (viewport_height - image_size.height * scale) / 2.0
        return cls(scale=scale, translation=(tx, ty))

    def zoomed(self, factor: float, focal: ViewportPoint) -> "Transform":
        """
        Zoom by ``factor`` keeping the image pixel under ``focal`` fixed on screen.
        """
        if not math.isfinite(factor) or factor <= 0:
            raise InvalidTransformError(f"Zoom factor must be > 0, got {factor!r}")
        new_scale = self.scale * factor
        tx, ty = self.translation
        new_tx = focal.x - (focal.x - tx) * factor
        new_ty = focal.y - (focal.y - ty) * factor
        return Transform(scale=new_scale, translation=(new_tx, new_ty))

    def panned(self, dx: float, dy: float) -> "Transform":
        tx, ty = self.translation
        return Transform(scale=self.scale, translation=(tx + dx, ty + dy))


def is_within_bounds(point: Point, image_size: ImageSize) -> bool:
    """Bounds are inclusive on both edges."""
    return 0.0 <= point.x <= image_size.width and 0.0 <= point.y <= image_size.height


def to_image_space(viewport_point: ViewportPoint, transform: Transform, image_size: ImageSize) -> Point:
    """
    Convert a viewport location into canonical image space.

    Raises:
        OutOfBoundsError: If the location lies outside the image. The result
            is never clamped; the caller decides what to do with the tap.
    """
    tx, ty = transform.translation
    point = Point(
        x=(viewport_point.x - tx) / transform.scale,
        y=(viewport_point.y - ty) / transform.scale,
    )
    if not is_within_bounds(point, image_size):
        raise OutOfBoundsError(
            f"Point ({point.x:.2f}, {point.y:.2f}) is outside the "
            f"{image_size.width}x{image_size.height} image"
        )
    return point


def to_viewport_space(point: Point, transform: Transform) -> ViewportPoint:
    """Convert an image-space location to the viewport."""
    tx, ty = transform.translation
    return ViewportPoint(
        x=point.x * transform.scale + tx,
        y=point.y * transform.scale + ty,
    )


def distance(a: Point, b: Point) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)
