"""
Google AI Studio Client
========================

REST transport for the Google Gemini API (generativelanguage.googleapis.com).
Provides model listing and the single-shot ``generateContent`` exchange the
dispatch orchestrator drives.

An API key can be obtained at https://aistudio.google.com/app/apikey.
Authentication is via the ``x-goog-api-key`` HTTP header.

The client performs exactly one HTTP exchange per call. It does not retry,
throttle or interpret generation responses; network faults are raised as
``TransportError`` and every HTTP response is handed back unchanged.

Author: Photomark Project
"""

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from photomark.core.classifier import classify
from photomark.core.config import API_KEY_HEADER, DEFAULT_BASE_URL, ServiceConfig
from photomark.core.errors import PhotomarkError
from photomark.core.request_builder import GenerationRequest
from photomark.core.transport import Transport, TransportError, TransportResponse
from photomark.utils.logger import log_api_call, log_api_request, log_api_response

logger = logging.getLogger(__name__)

# Raw error text kept on a response for diagnostics
MAX_ERROR_TEXT = 2000


class GoogleAIClient(Transport):
    """Client for Google AI Studio (Gemini API)."""

    def __init__(self, api_key: str = "", base_url: str = DEFAULT_BASE_URL):
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
        })
        if self.api_key:
            self.session.headers[API_KEY_HEADER] = self.api_key

    @classmethod
    def from_config(cls, service: ServiceConfig) -> "GoogleAIClient":
        return cls(api_key=service.api_key, base_url=service.base_url)

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        """Return True when an API key has been configured."""
        return bool(self.api_key)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(self, request: GenerationRequest, timeout: float) -> TransportResponse:
        """POST one ``generateContent`` call and return the raw response."""
        url = f"{self.base_url}/models/{request.model}:generateContent"
        payload = request.to_payload()
        log_api_request(logger, "POST", url, headers=self.session.headers, data=payload)

        start = time.time()
        try:
            resp = self.session.post(url, json=payload, timeout=timeout)
        except requests.exceptions.RequestException as exc:
            logger.warning(f"Gemini request failed before a response arrived: {exc}")
            raise TransportError(f"Gemini request failed: {exc}", exc) from exc
        finally:
            # Free the large payload dict now the request has been sent
            del payload

        response = self._to_response(resp)
        log_api_response(logger, response.status_code, response.body, time.time() - start)
        return response

    @staticmethod
    def _to_response(resp) -> TransportResponse:
        try:
            body = resp.json()
        except ValueError:
            body = None

        text = ""
        if body is None or resp.status_code >= 400:
            text = (resp.text or "")[:MAX_ERROR_TEXT]

        headers = dict(resp.headers) if resp.headers is not None else {}
        status_code = resp.status_code
        resp.close()
        return TransportResponse(status_code=status_code, body=body, headers=headers, text=text)

    # ------------------------------------------------------------------
    # Model listing
    # ------------------------------------------------------------------

    @log_api_call(api_name="Gemini")
    def list_models(self, timeout: float = 10.0, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Fetch models that support ``generateContent``.

        Returns a list of dicts with keys ``id``, ``display_name``,
        ``provider`` and ``capability``.

        Raises:
            TransportError: No response was received
            PhotomarkError: The API answered with an error status
        """
        url = f"{self.base_url}/models"
        results: List[Dict[str, Any]] = []
        page_token: Optional[str] = None

        while True:
            params = {"pageSize": 100}
            if page_token:
                params["pageToken"] = page_token
            log_api_request(logger, "GET", url, params=params)

            try:
                resp = self.session.get(url, params=params, timeout=timeout)
            except requests.exceptions.RequestException as exc:
                raise TransportError(f"Gemini model listing failed: {exc}", exc) from exc

            response = self._to_response(resp)
            log_api_response(logger, response.status_code)
            if not 200 <= response.status_code < 300:
                outcome = classify(response.status_code, response.body, headers=response.headers)
                raise PhotomarkError(
                    f"Google AI API error ({response.status_code}): {outcome.message}",
                    kind=outcome.kind,
                )

            data = response.body if isinstance(response.body, dict) else {}
            for m in data.get("models", []):
                if "generateContent" not in m.get("supportedGenerationMethods", []):
                    continue
                model_name: str = m.get("name", "")
                # The API returns names like "models/gemini-2.0-flash"
                model_id = model_name[len("models/"):] if model_name.startswith("models/") else model_name
                results.append({
                    "id": model_id,
                    "display_name": m.get("displayName", model_id),
                    "provider": "Google",
                    "capability": "Image generation" if "image" in model_id.lower() else "Multi-modal",
                })
                if len(results) >= limit:
                    break

            page_token = data.get("nextPageToken")
            if not page_token or len(results) >= limit:
                break

        logger.info(f"Google AI: found {len(results)} models")
        return results

    # ------------------------------------------------------------------
    # Connection test
    # ------------------------------------------------------------------

    def test_connection(self, timeout: float = 10.0) -> bool:
        """Quick connectivity check: tries to list models."""
        try:
            return len(self.list_models(timeout=timeout, limit=1)) > 0
        except (TransportError, PhotomarkError) as exc:
            logger.warning(f"Google AI connection test failed: {exc}")
            return False

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def close(self):
        """Release the underlying HTTP session and connection pool."""
        self.session.close()
