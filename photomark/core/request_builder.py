"""
Request Builder
===============

Turns an image, an annotation snapshot and generation options into a
validated, immutable ``GenerationRequest`` ready for dispatch.

Validation is fail-fast and always runs in the same order:

1. Format       -> UnsupportedFormatError
2. Size         -> ImageTooLargeError
3. Markers      -> EmptyMarkerSetError
4. Options      -> InvalidRequestError

Every request carries an ``idempotency_key``: a SHA-256 over the canonical
JSON of the image digest, its MIME type, the ordered marker positions and
labels, and the options. Marker ids and the store version are left out, so
two builds from identical content always collide and the orchestrator can
collapse them into one network exchange.

Author: Photomark Project
"""

import base64
import hashlib
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from photomark.core.annotation.markers import AnnotationSnapshot
from photomark.core.config import (
    DEFAULT_EDIT_INSTRUCTION,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_MODEL,
    DEFAULT_RESPONSE_MODALITIES,
    DEFAULT_SAFETY_THRESHOLD,
    DEFAULT_STRENGTH,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_K,
    DEFAULT_TOP_P,
    HARM_CATEGORIES,
    SAFETY_THRESHOLDS,
    STRENGTH_RANGE,
    TEMPERATURE_RANGE,
    ImageLimits,
)
from photomark.core.errors import (
    EmptyMarkerSetError,
    ImageTooLargeError,
    InvalidRequestError,
    UnsupportedFormatError,
)
from photomark.core.image_processing import ImageSource, inspect_image

logger = logging.getLogger(__name__)

RESPONSE_MODALITIES = ("TEXT", "IMAGE")


# ============================================================================
# OPTIONS
# ============================================================================

@dataclass(frozen=True)
class GenerationOptions:
    """
    User-tunable generation parameters.

    Attributes:
        prompt: Edit instruction sent ahead of the marker list
        model: Model id, ``None`` to use the configured default
        strength: How aggressively to edit the marked regions, 0-1
        creativity: Sampling temperature, 0-2
        top_k: Top-k sampling
        top_p: Nucleus sampling, (0, 1]
        max_output_tokens: Token ceiling for the text part of the reply
        safety_threshold: Harm-block threshold applied to every category
        response_modalities: Modalities requested from the model
    """
    prompt: str = DEFAULT_EDIT_INSTRUCTION
    model: Optional[str] = None
    strength: float = DEFAULT_STRENGTH
    creativity: float = DEFAULT_TEMPERATURE
    top_k: int = DEFAULT_TOP_K
    top_p: float = DEFAULT_TOP_P
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    safety_threshold: str = DEFAULT_SAFETY_THRESHOLD
    response_modalities: Tuple[str, ...] = DEFAULT_RESPONSE_MODALITIES

    def validate(self, max_prompt_length: int):
        """Raise InvalidRequestError if any option is out of range."""
        problems: List[str] = []

        if not self.prompt or not self.prompt.strip():
            problems.append("prompt must not be empty")
        elif len(self.prompt) > max_prompt_length:
            problems.append(f"prompt exceeds {max_prompt_length} characters")

        if self.model is not None and not self.model.strip():
            problems.append("model must not be blank")

        if not _in_range(self.strength, *STRENGTH_RANGE):
            problems.append(f"strength must be within {STRENGTH_RANGE}")
        if not _in_range(self.creativity, *TEMPERATURE_RANGE):
            problems.append(f"creativity must be within {TEMPERATURE_RANGE}")
        if not isinstance(self.top_k, int) or isinstance(self.top_k, bool) or self.top_k < 1:
            problems.append("top_k must be an integer >= 1")
        if not _is_number(self.top_p) or not 0 < self.top_p <= 1:
            problems.append("top_p must be within (0, 1]")
        if (not isinstance(self.max_output_tokens, int) or isinstance(self.max_output_tokens, bool)
                or self.max_output_tokens < 1):
            problems.append("max_output_tokens must be an integer >= 1")
        if self.safety_threshold not in SAFETY_THRESHOLDS:
            problems.append(f"safety_threshold must be one of {', '.join(SAFETY_THRESHOLDS)}")
        if not self.response_modalities or any(
            m not in RESPONSE_MODALITIES for m in self.response_modalities
        ):
            problems.append(f"response_modalities must be drawn from {RESPONSE_MODALITIES}")
        elif "IMAGE" not in self.response_modalities:
            problems.append("response_modalities must include IMAGE")

        if problems:
            raise InvalidRequestError("; ".join(problems))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "model": self.model,
            "strength": self.strength,
            "creativity": self.creativity,
            "top_k": self.top_k,
            "top_p": self.top_p,
            "max_output_tokens": self.max_output_tokens,
            "safety_threshold": self.safety_threshold,
            "response_modalities": list(self.response_modalities),
        }


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _in_range(value, low: float, high: float) -> bool:
    return _is_number(value) and low <= value <= high


# ============================================================================
# REQUEST
# ============================================================================

@dataclass(frozen=True)
class GenerationRequest:
    """A validated edit request. Immutable once built."""
    image_ref: str
    image: ImageSource
    markers: AnnotationSnapshot
    options: GenerationOptions
    model: str
    idempotency_key: str
    prompt_text: str = field(repr=False, default="")

    def to_payload(self) -> Dict[str, Any]:
        """Wire body for ``models/{model}:generateContent``."""
        return {
            "contents": [
                {
                    "parts": [
                        {"text": self.prompt_text},
                        {
                            "inlineData": {
                                "mimeType": self.image.mime_type,
                                "data": base64.b64encode(self.image.data).decode("ascii"),
                            }
                        },
                    ]
                }
            ],
            "generationConfig": {
                "temperature": self.options.creativity,
                "topK": self.options.top_k,
                "topP": self.options.top_p,
                "maxOutputTokens": self.options.max_output_tokens,
                "responseModalities": list(self.options.response_modalities),
            },
            "safetySettings": [
                {"category": category, "threshold": self.options.safety_threshold}
                for category in HARM_CATEGORIES
            ],
        }


# ============================================================================
# BUILDER
# ============================================================================

class RequestBuilder:
    """
    Validates inputs and assembles ``GenerationRequest`` objects.

    Args:
        limits: Size, format, marker-count and prompt-length limits
        default_model: Model used when the options do not name one
    """

    def __init__(self, limits: Optional[ImageLimits] = None, default_model: str = DEFAULT_MODEL):
        self.limits = limits or ImageLimits()
        self.default_model = default_model

    def build(self, image: ImageSource, snapshot: AnnotationSnapshot,
              options: Optional[GenerationOptions] = None) -> GenerationRequest:
        """
        Validate and build a request.

        Raises:
            UnsupportedFormatError, ImageTooLargeError, EmptyMarkerSetError,
            InvalidRequestError: In that order of precedence.
        """
        options = options or GenerationOptions()

        # 1. Format
        if image.mime_type not in self.limits.allowed_mime_types:
            raise UnsupportedFormatError(
                f"MIME type {image.mime_type!r} is not one of "
                f"{', '.join(self.limits.allowed_mime_types)}"
            )
        info = inspect_image(image.data)
        if info.mime_type != image.mime_type:
            raise UnsupportedFormatError(
                f"Image declared as {image.mime_type} but decodes as {info.mime_type}"
            )

        # 2. Size
        if len(image.data) > self.limits.max_image_bytes:
            raise ImageTooLargeError(
                f"Image is {len(image.data)} bytes, limit is {self.limits.max_image_bytes}"
            )

        # 3. Markers
        if snapshot.is_empty:
            raise EmptyMarkerSetError("At least one marker is required")

        # 4. Options and marker/image consistency
        if len(snapshot) > self.limits.max_markers:
            raise InvalidRequestError(
                f"{len(snapshot)} markers exceeds the limit of {self.limits.max_markers}"
            )
        if snapshot.image_size is not None and snapshot.image_size != info.size:
            raise InvalidRequestError(
                f"Markers were placed on a {snapshot.image_size.width}x{snapshot.image_size.height} "
                f"image but the image is {info.width}x{info.height}"
            )
        options.validate(self.limits.max_prompt_length)

        model = options.model or self.default_model
        image_ref = "sha256:" + hashlib.sha256(image.data).hexdigest()
        key = idempotency_key(image_ref, image.mime_type, snapshot, options, model)
        prompt_text = build_prompt(options, snapshot, info.width, info.height)

        logger.debug(
            f"Built request {key[:12]} ({len(snapshot)} markers, "
            f"{len(image.data)} bytes, model={model})"
        )
        return GenerationRequest(
            image_ref=image_ref,
            image=image,
            markers=snapshot,
            options=options,
            model=model,
            idempotency_key=key,
            prompt_text=prompt_text,
        )


# ============================================================================
# HELPERS
# ============================================================================

def idempotency_key(image_ref: str, mime_type: str, snapshot: AnnotationSnapshot,
                    options: GenerationOptions, model: str) -> str:
    """Deterministic content hash of a request."""
    canonical = {
        "image_ref": image_ref,
        "mime_type": mime_type,
        "markers": [
            {"x": m.position.x, "y": m.position.y, "label": m.label}
            for m in snapshot.markers
        ],
        "options": dict(options.to_dict(), model=model),
    }
    encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def build_prompt(options: GenerationOptions, snapshot: AnnotationSnapshot,
                 width: int, height: int) -> str:
    """
    Instruction text listing every marker in pixel and normalised coordinates.

    Example:
        Remove the marked trees ...
        Image size: 800x600 pixels.
        Marked objects (2):
        1. tree at pixel (120.0, 340.5), normalised (0.150, 0.568)
        ...
    """
    lines = [
        options.prompt.strip(),
        "",
        f"Image size: {width}x{height} pixels.",
        f"Edit strength: {options.strength:.2f} (0 = subtle, 1 = complete).",
        f"Marked objects ({len(snapshot)}):",
    ]
    for index, marker in enumerate(snapshot.markers, start=1):
        x, y = marker.position
        lines.append(
            f"{index}. {marker.label} at pixel ({x:.1f}, {y:.1f}), "
            f"normalised ({x / width:.3f}, {y / height:.3f})"
        )
    lines.append("Only edit the marked objects and keep the rest of the photo unchanged.")
    return "\n".join(lines)
