"""
Application Configuration and Constants
=======================================

This module contains the configuration values, constants, and defaults used
throughout Photomark. It serves as a single source of truth for:

- Generative endpoint location, model and per-endpoint timeouts
- Retry and backoff parameters
- Client-side rate limiting
- Marker placement rules
- Image size and format limits
- Default generation parameters

The constants are the documented defaults. Runtime code never reads them
directly; it receives a ``PhotomarkConfig`` built from them (optionally
overridden by ``photomark.utils.config_manager``) through its constructor.

Note:
    All constants use UPPER_SNAKE_CASE naming convention. Every value is
    a tunable default, not a hard requirement of the remote service.

Author: Photomark Project
"""

import math
from dataclasses import dataclass, field
from typing import Tuple

from photomark.core.errors import ConfigurationError

# ============================================================================
# GENERATIVE ENDPOINT
# ============================================================================
# Google AI Studio (Gemini API) REST endpoint. Authentication is via the
# ``x-goog-api-key`` header.

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# Image-in / image-out capable model used for marker-guided edits
DEFAULT_MODEL = "gemini-2.0-flash-preview-image-generation"

API_KEY_HEADER = "x-goog-api-key"

# Environment variables consulted for the API key, in order
API_KEY_ENV_VARS = ("PHOTOMARK_API_KEY", "GEMINI_API_KEY")

# Wall-clock ceiling for a single generateContent attempt (seconds)
GENERATION_TIMEOUT_SECONDS = 30.0

# Timeout for metadata calls such as model listing (seconds)
METADATA_TIMEOUT_SECONDS = 10.0

# ============================================================================
# RETRY AND BACKOFF
# ============================================================================
# delay = min(cap, base * 2 ** retry_index) * uniform(0.5, 1.5)

RETRY_BASE_DELAY_SECONDS = 1.0
RETRY_MAX_DELAY_SECONDS = 30.0

# Total attempts including the first one
MAX_ATTEMPTS = 5

RETRY_JITTER_RANGE = (0.5, 1.5)

# ============================================================================
# RATE LIMITING
# ============================================================================
# Token bucket: RATE_LIMIT_CAPACITY requests per RATE_LIMIT_WINDOW_SECONDS.
# Image generation is the most expensive operation the editor issues, so the
# default budget is small.

RATE_LIMIT_CAPACITY = 5
RATE_LIMIT_WINDOW_SECONDS = 60.0

# Worker threads available to run operations concurrently
MAX_CONCURRENT_OPERATIONS = 8

# ============================================================================
# CIRCUIT BREAKER
# ============================================================================
# After CIRCUIT_FAILURE_THRESHOLD consecutive operations exhaust their retry
# budget, new submissions fail fast for CIRCUIT_RESET_TIMEOUT_SECONDS. Then a
# single trial operation is let through.

CIRCUIT_FAILURE_THRESHOLD = 5
CIRCUIT_RESET_TIMEOUT_SECONDS = 120.0

# ============================================================================
# ANNOTATION
# ============================================================================

# Markers closer than this (canonical image pixels) are treated as an
# accidental double tap
MIN_MARKER_SPACING_PX = 12.0

# Maximum number of undo steps kept per store
MAX_UNDO_HISTORY = 100

DEFAULT_MARKER_LABEL = "tree"

# ============================================================================
# IMAGE LIMITS
# ============================================================================

MAX_IMAGE_BYTES = 20 * 1024 * 1024  # 20MB inline-data ceiling

ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp")

MAX_MARKERS_PER_REQUEST = 50

MAX_PROMPT_LENGTH = 20000

# ============================================================================
# GENERATION DEFAULTS
# ============================================================================

DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_K = 32
DEFAULT_TOP_P = 0.9
DEFAULT_MAX_OUTPUT_TOKENS = 2048
DEFAULT_STRENGTH = 0.8
DEFAULT_RESPONSE_MODALITIES = ("TEXT", "IMAGE")

DEFAULT_EDIT_INSTRUCTION = (
    "Remove the marked trees completely and reconstruct the background "
    "behind them so the result looks natural."
)

TEMPERATURE_RANGE = (0.0, 2.0)
STRENGTH_RANGE = (0.0, 1.0)

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

SAFETY_THRESHOLDS = (
    "BLOCK_NONE",
    "BLOCK_ONLY_HIGH",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_LOW_AND_ABOVE",
)

DEFAULT_SAFETY_THRESHOLD = "BLOCK_MEDIUM_AND_ABOVE"

# finishReason / blockReason values that mean the remote policy refused the
# content rather than failing to produce it
BLOCKING_FINISH_REASONS = (
    "SAFETY",
    "PROHIBITED_CONTENT",
    "BLOCKLIST",
    "SPII",
    "IMAGE_SAFETY",
    "RECITATION",
)


# ============================================================================
# CONFIGURATION DATACLASSES
# ============================================================================

def _require(condition: bool, message: str):
    if not condition:
        raise ConfigurationError(message)


def _positive(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value) and value > 0


@dataclass(frozen=True)
class ServiceConfig:
    """
    Remote endpoint settings.

    Attributes:
        base_url: API root, without trailing slash
        api_key: Gemini API key (never logged or persisted unmasked)
        model: Model identifier used for edits
        generation_timeout: Hard per-attempt ceiling in seconds
        metadata_timeout: Timeout for model listing in seconds
    """
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    model: str = DEFAULT_MODEL
    generation_timeout: float = GENERATION_TIMEOUT_SECONDS
    metadata_timeout: float = METADATA_TIMEOUT_SECONDS

    def __post_init__(self):
        _require(bool(self.base_url), "base_url must not be empty")
        _require(bool(self.model and self.model.strip()), "model must not be empty")
        _require(_positive(self.generation_timeout), "generation_timeout must be > 0")
        _require(_positive(self.metadata_timeout), "metadata_timeout must be > 0")
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))
        object.__setattr__(self, "api_key", (self.api_key or "").strip())


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter for retryable outcomes."""
    base_delay: float = RETRY_BASE_DELAY_SECONDS
    max_delay: float = RETRY_MAX_DELAY_SECONDS
    max_attempts: int = MAX_ATTEMPTS
    jitter: Tuple[float, float] = RETRY_JITTER_RANGE

    def __post_init__(self):
        _require(_positive(self.base_delay), "base_delay must be > 0")
        _require(_positive(self.max_delay), "max_delay must be > 0")
        _require(isinstance(self.max_attempts, int) and self.max_attempts >= 1,
                 "max_attempts must be an integer >= 1")
        low, high = self.jitter
        _require(0 < low <= high, "jitter must satisfy 0 < low <= high")

    def backoff_floor(self, retry_index: int) -> float:
        """Smallest delay the policy can produce before retry ``retry_index``."""
        return min(self.max_delay, self.base_delay * (2 ** retry_index)) * self.jitter[0]


@dataclass(frozen=True)
class RateLimitConfig:
    """Token bucket admission: ``capacity`` requests per ``window`` seconds."""
    capacity: int = RATE_LIMIT_CAPACITY
    window: float = RATE_LIMIT_WINDOW_SECONDS

    def __post_init__(self):
        _require(isinstance(self.capacity, int) and self.capacity >= 1,
                 "capacity must be an integer >= 1")
        _require(_positive(self.window), "window must be > 0")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Fail-fast guard in front of a service that keeps failing."""
    failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD
    reset_timeout: float = CIRCUIT_RESET_TIMEOUT_SECONDS

    def __post_init__(self):
        _require(isinstance(self.failure_threshold, int) and self.failure_threshold >= 1,
                 "failure_threshold must be an integer >= 1")
        _require(_positive(self.reset_timeout), "reset_timeout must be > 0")


@dataclass(frozen=True)
class AnnotationConfig:
    min_marker_spacing: float = MIN_MARKER_SPACING_PX
    max_history: int = MAX_UNDO_HISTORY
    default_label: str = DEFAULT_MARKER_LABEL

    def __post_init__(self):
        _require(isinstance(self.min_marker_spacing, (int, float))
                 and math.isfinite(self.min_marker_spacing)
                 and self.min_marker_spacing >= 0,
                 "min_marker_spacing must be >= 0")
        _require(isinstance(self.max_history, int) and self.max_history >= 1,
                 "max_history must be an integer >= 1")


@dataclass(frozen=True)
class ImageLimits:
    max_image_bytes: int = MAX_IMAGE_BYTES
    allowed_mime_types: Tuple[str, ...] = ALLOWED_MIME_TYPES
    max_markers: int = MAX_MARKERS_PER_REQUEST
    max_prompt_length: int = MAX_PROMPT_LENGTH

    def __post_init__(self):
        _require(isinstance(self.max_image_bytes, int) and self.max_image_bytes > 0,
                 "max_image_bytes must be a positive integer")
        _require(len(self.allowed_mime_types) > 0, "allowed_mime_types must not be empty")
        _require(self.max_markers >= 1, "max_markers must be >= 1")
        _require(self.max_prompt_length >= 1, "max_prompt_length must be >= 1")
        object.__setattr__(
            self, "allowed_mime_types",
            tuple(m.lower() for m in self.allowed_mime_types),
        )


@dataclass(frozen=True)
class PhotomarkConfig:
    """Aggregate configuration injected into the orchestrator and session."""
    service: ServiceConfig = field(default_factory=ServiceConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    annotation: AnnotationConfig = field(default_factory=AnnotationConfig)
    images: ImageLimits = field(default_factory=ImageLimits)
    max_concurrent_operations: int = MAX_CONCURRENT_OPERATIONS

    def __post_init__(self):
        _require(isinstance(self.max_concurrent_operations, int)
                 and self.max_concurrent_operations >= 1,
                 "max_concurrent_operations must be an integer >= 1")
