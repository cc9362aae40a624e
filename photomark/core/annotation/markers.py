"""
Marker and snapshot value types.

Both are immutable. A ``Marker`` is replaced, never edited; an
``AnnotationSnapshot`` is the frozen view of the store handed to the request
builder and may be shared freely between threads.
"""

from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

from photomark.core.geometry import ImageSize, Point


@dataclass(frozen=True)
class Marker:
    """A user-placed marker in canonical image space."""

    id: str
    position: Point
    created_at: int
    label: str = "tree"

    def to_dict(self):
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "x": self.position.x,
            "y": self.position.y,
            "created_at": self.created_at,
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: dict):
        """Create from dictionary."""
        return cls(
            id=data["id"],
            position=Point(float(data["x"]), float(data["y"])),
            created_at=int(data["created_at"]),
            label=data.get("label", "tree"),
        )


@dataclass(frozen=True)
class AnnotationSnapshot:
    """
    Ordered markers plus the store version they were taken at.

    ``image_size`` is the size the markers were placed against; it is
    ``None`` only for an empty snapshot taken before any image was loaded.
    """

    markers: Tuple[Marker, ...] = ()
    version: int = 0
    image_size: Optional[ImageSize] = None

    def __len__(self) -> int:
        return len(self.markers)

    def __iter__(self) -> Iterator[Marker]:
        return iter(self.markers)

    @property
    def is_empty(self) -> bool:
        return not self.markers

    def positions(self) -> Tuple[Point, ...]:
        return tuple(m.position for m in self.markers)

    def to_dict(self):
        return {
            "version": self.version,
            "image_size": (
                {"width": self.image_size.width, "height": self.image_size.height}
                if self.image_size else None
            ),
            "markers": [m.to_dict() for m in self.markers],
        }

    @classmethod
    def from_dict(cls, data: dict):
        size = data.get("image_size")
        return cls(
            markers=tuple(Marker.from_dict(m) for m in data.get("markers", [])),
            version=int(data.get("version", 0)),
            image_size=ImageSize(size["width"], size["height"]) if size else None,
        )
