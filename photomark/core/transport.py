"""
Transport Interface
===================

Boundary between the dispatch orchestrator and the network. A transport
performs exactly one HTTP exchange per call and never retries, throttles or
interprets the response; that is the orchestrator's and the classifier's
job.

Implementations:
- ``photomark.integrations.google_ai_client.GoogleAIClient`` (requests)
- test doubles built on ``unittest.mock``

Author: Photomark Project
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from photomark.core.request_builder import GenerationRequest


class TransportError(Exception):
    """
    Raised by a transport when no HTTP response was received.

    Covers timeouts, connection resets, DNS failures and similar faults.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


@dataclass(frozen=True)
class TransportResponse:
    """
    One HTTP response.

    Attributes:
        status_code: HTTP status
        body: Parsed JSON body, or ``None`` if the body was not JSON
        headers: Response headers (lookups are case-insensitive)
        text: Raw body text, kept for error messages
    """
    status_code: int
    body: Optional[Any] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    text: str = ""

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class Transport(ABC):
    """A single-shot HTTP client for the generative endpoint."""

    @abstractmethod
    def generate(self, request: GenerationRequest, timeout: float) -> TransportResponse:
        """
        POST ``request`` to ``models/{model}:generateContent``.

        Raises:
            TransportError: If no response was received
        """

    @abstractmethod
    def list_models(self, timeout: float) -> List[Dict[str, Any]]:
        """
        Return the models that support ``generateContent``.

        Raises:
            TransportError: If no response was received
            PhotomarkError: If the service answered with an error status
        """

    def close(self):
        """Release pooled connections."""
