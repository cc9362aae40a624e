"""
Image Inspection and I/O
========================

This module handles the image side of an edit:
- Loading an image file into an ``ImageSource`` (bytes + declared MIME type)
- Decoding with Pillow to confirm the bytes really are the declared format
- Validating files before they are loaded
- Writing edited images returned by the generative endpoint

The request builder relies on ``inspect_image()`` for its format check; the
editing session uses it to learn the pixel size the markers live in.

Dependencies:
- PIL (Pillow): Image decoding and format detection

Author: Photomark Project
"""

# ============================================================================
# IMPORTS
# ============================================================================

import io
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from photomark.core.config import MAX_IMAGE_BYTES
from photomark.core.errors import ImageTooLargeError, UnsupportedFormatError
from photomark.core.geometry import ImageSize

logger = logging.getLogger(__name__)

# Pillow format name -> MIME type
PIL_FORMAT_TO_MIME = {
    "JPEG": "image/jpeg",
    "MPO": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}

MIME_TO_EXTENSION = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}

# ============================================================================
# DATA TYPES
# ============================================================================

@dataclass(frozen=True)
class ImageSource:
    """Raw image bytes plus the MIME type the caller claims they are."""
    data: bytes
    mime_type: str

    def __post_init__(self):
        object.__setattr__(self, "mime_type", (self.mime_type or "").strip().lower())

    def __repr__(self):
        return f"ImageSource(mime_type={self.mime_type!r}, size={len(self.data)} bytes)"

    @classmethod
    def from_path(cls, path: Path, mime_type: Optional[str] = None) -> "ImageSource":
        """
        Read an image file.

        The MIME type is taken from ``mime_type`` when given, otherwise guessed
        from the file extension.
        """
        path = Path(path)
        if mime_type is None:
            mime_type, _ = mimetypes.guess_type(path.name)
        data = path.read_bytes()
        logger.debug(f"Loaded {path.name} ({len(data)} bytes, {mime_type})")
        return cls(data=data, mime_type=mime_type or "application/octet-stream")


@dataclass(frozen=True)
class ImageInfo:
    """What Pillow found when decoding an image."""
    width: int
    height: int
    mime_type: str

    @property
    def size(self) -> ImageSize:
        return ImageSize(self.width, self.height)


# ============================================================================
# INSPECTION
# ============================================================================

def inspect_image(data: bytes) -> ImageInfo:
    """
    Decode image bytes and report their real format and dimensions.

    Raises:
        UnsupportedFormatError: Empty data, or Pillow cannot decode it
        ImageTooLargeError: Pixel count is over Pillow's decompression bomb limit
    """
    if not data:
        raise UnsupportedFormatError("Image data is empty")

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
        # verify() leaves the image unusable, reopen for size
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            fmt = img.format
    except Image.DecompressionBombError as e:
        raise ImageTooLargeError(f"Image has too many pixels: {e}") from e
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise UnsupportedFormatError(f"Cannot decode image: {e}") from e

    mime = PIL_FORMAT_TO_MIME.get(fmt or "", f"image/{(fmt or 'unknown').lower()}")
    return ImageInfo(width=width, height=height, mime_type=mime)


def validate_image(image_path: Path, max_bytes: int = MAX_IMAGE_BYTES) -> Tuple[bool, Optional[str]]:
    """
    Validate that an image file can be opened and processed.

    Args:
        image_path: Path to the image file
        max_bytes: Size ceiling in bytes

    Returns:
        Tuple of (is_valid, error_message)

    Example:
        >>> valid, error = validate_image(Path("garden.jpg"))
        >>> if valid:
        ...     print("Image is valid")
    """
    image_path = Path(image_path)
    if not image_path.exists():
        return False, "File does not exist"

    if not image_path.is_file():
        return False, "Path is not a file"

    size = image_path.stat().st_size
    if size == 0:
        return False, "File is empty"

    if size > max_bytes:
        return False, f"File exceeds {max_bytes // (1024 * 1024)}MB limit"

    try:
        inspect_image(image_path.read_bytes())
    except (UnsupportedFormatError, ImageTooLargeError) as e:
        return False, str(e)
    except PermissionError:
        return False, "Permission denied"

    return True, None


# ============================================================================
# OUTPUT
# ============================================================================

def output_path_for(source_path: Path, mime_type: str, suffix: str = "_edited") -> Path:
    """Default destination for an edited image next to its source."""
    source_path = Path(source_path)
    ext = MIME_TO_EXTENSION.get(mime_type, source_path.suffix or ".png")
    return source_path.with_name(f"{source_path.stem}{suffix}{ext}")


def write_image(data: bytes, path: Path) -> Path:
    """Write edited image bytes to ``path``, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    logger.info(f"Wrote edited image to {path} ({len(data)} bytes)")
    return path
