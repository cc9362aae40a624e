"""
Response Classifier
===================

Maps one HTTP exchange (or the transport fault that prevented it) onto a
``GenerationOutcome``:

- ``Success``  the model returned an edited image
- ``Blocked``  the remote safety policy refused the content (terminal)
- ``Failed``   anything else, tagged with an ``ErrorKind`` and a retry hint

Status mapping:
    2xx          parse body (Success / Blocked / MalformedResponse)
    400          InvalidRequest
    401          Unauthenticated
    403          PermissionDenied
    404          NotFound
    429          RateLimited (retryable, honours Retry-After)
    5xx          ServerError (retryable)
    other 4xx    InvalidRequest
    1xx / 3xx    InvalidRequest

Author: Photomark Project
"""

import base64
import binascii
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional, Union

from photomark.core.config import BLOCKING_FINISH_REASONS
from photomark.core.errors import ErrorKind

logger = logging.getLogger(__name__)


# ============================================================================
# OUTCOMES
# ============================================================================

@dataclass(frozen=True)
class Success:
    image: bytes = field(repr=False)
    mime_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Blocked:
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Failed:
    kind: ErrorKind
    retryable: bool
    message: str = ""
    retry_after: Optional[float] = None
    status_code: Optional[int] = None


GenerationOutcome = Union[Success, Blocked, Failed]


# ============================================================================
# CLASSIFICATION
# ============================================================================

_STATUS_KINDS = {
    400: ErrorKind.INVALID_REQUEST,
    401: ErrorKind.UNAUTHENTICATED,
    403: ErrorKind.PERMISSION_DENIED,
    404: ErrorKind.NOT_FOUND,
    429: ErrorKind.RATE_LIMITED,
}


def classify(status_code: Optional[int], body: Any,
             transport_error: Optional[BaseException] = None,
             headers: Optional[Mapping[str, str]] = None,
             now: Optional[datetime] = None) -> GenerationOutcome:
    """
    Classify a response.

    Args:
        status_code: HTTP status, ignored when ``transport_error`` is set
        body: Parsed JSON body (``None`` if the body was not JSON)
        transport_error: Fault that prevented a response from arriving
        headers: Response headers
        now: Reference time for HTTP-date ``Retry-After`` values

    Returns:
        A ``Success``, ``Blocked`` or ``Failed`` outcome. Never raises.
    """
    if transport_error is not None:
        return Failed(
            kind=ErrorKind.TRANSPORT_ERROR,
            retryable=True,
            message=str(transport_error) or type(transport_error).__name__,
        )

    if status_code is None:
        return Failed(ErrorKind.TRANSPORT_ERROR, True, message="No response received")

    if 200 <= status_code < 300:
        return _classify_body(body)

    message = extract_error_message(body) or f"HTTP {status_code}"

    if status_code == 429:
        return Failed(
            kind=ErrorKind.RATE_LIMITED,
            retryable=True,
            message=message,
            retry_after=parse_retry_after(_header(headers, "retry-after"), now),
            status_code=status_code,
        )

    if status_code >= 500:
        kind = ErrorKind.SERVER_ERROR
    else:
        kind = _STATUS_KINDS.get(status_code, ErrorKind.INVALID_REQUEST)

    return Failed(kind=kind, retryable=kind.retryable, message=message, status_code=status_code)


def _classify_body(body: Any) -> GenerationOutcome:
    if not isinstance(body, dict):
        return _malformed("Response body is not a JSON object")

    metadata: Dict[str, Any] = {}
    for key in ("usageMetadata", "modelVersion"):
        if key in body:
            metadata[key] = body[key]

    feedback = body.get("promptFeedback") or {}
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        if feedback.get("safetyRatings"):
            metadata["safetyRatings"] = feedback["safetyRatings"]
        return Blocked(reason=str(feedback["blockReason"]), metadata=metadata)

    candidates = body.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return _malformed("Response has no candidates")

    candidate = candidates[0]
    if not isinstance(candidate, dict):
        return _malformed("Candidate is not a JSON object")

    finish_reason = candidate.get("finishReason")
    if finish_reason:
        metadata["finishReason"] = finish_reason
    if candidate.get("safetyRatings"):
        metadata["safetyRatings"] = candidate["safetyRatings"]

    if finish_reason in BLOCKING_FINISH_REASONS:
        return Blocked(reason=finish_reason, metadata=metadata)

    content = candidate.get("content") or {}
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return _malformed("Candidate has no content parts")

    texts = []
    image_part = None
    for part in parts:
        if not isinstance(part, dict):
            continue
        if isinstance(part.get("text"), str):
            texts.append(part["text"])
        inline = part.get("inlineData") or part.get("inline_data")
        if image_part is None and isinstance(inline, dict):
            mime = inline.get("mimeType") or inline.get("mime_type") or ""
            if mime.startswith("image/") and inline.get("data"):
                image_part = (mime, inline["data"])

    if texts:
        metadata["text"] = "\n".join(texts)

    if image_part is None:
        return _malformed("Response contains no image part", metadata.get("text"))

    mime, data = image_part
    try:
        image = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        return _malformed(f"Image part is not valid base64: {e}")

    return Success(image=image, mime_type=mime, metadata=metadata)


def _malformed(message: str, detail: Optional[str] = None) -> Failed:
    if detail:
        message = f"{message}: {detail[:200]}"
    logger.debug(f"Malformed response: {message}")
    return Failed(kind=ErrorKind.MALFORMED_RESPONSE, retryable=False, message=message)


# ============================================================================
# HELPERS
# ============================================================================

def extract_error_message(body: Any) -> Optional[str]:
    """Pull ``error.message`` out of a Google error body."""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return None


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a ``Retry-After`` header.

    Accepts delta-seconds (``"12"``) or an HTTP date. Returns seconds from
    ``now``, never negative, or ``None`` if absent or unparseable.
    """
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(0.0, seconds) if math.isfinite(seconds) else None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None
