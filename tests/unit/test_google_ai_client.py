import base64
import io
import unittest
from unittest.mock import MagicMock, patch

import requests
from PIL import Image

from photomark.core.annotation import AnnotationStore
from photomark.core.config import ServiceConfig
from photomark.core.errors import ErrorKind, PhotomarkError
from photomark.core.geometry import ImageSize, Point
from photomark.core.image_processing import ImageSource
from photomark.core.request_builder import RequestBuilder
from photomark.core.transport import TransportError
from photomark.integrations.google_ai_client import GoogleAIClient


def build_request():
    buf = io.BytesIO()
    Image.new("RGB", (40, 30), (0, 100, 0)).save(buf, format="PNG")
    store = AnnotationStore(ImageSize(40, 30))
    store.add_marker(Point(20, 15))
    return RequestBuilder().build(ImageSource(buf.getvalue(), "image/png"), store.snapshot())


def mock_response(status_code=200, json_data=None, headers=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.headers = headers or {}
    resp.text = text
    if json_data is None:
        resp.json.side_effect = ValueError("No JSON")
    else:
        resp.json.return_value = json_data
    return resp


class TestGoogleAIClient(unittest.TestCase):
    def setUp(self):
        self.client = GoogleAIClient(api_key=" AIzaTestKey1234567890abcdef ")

    def tearDown(self):
        self.client.close()

    def test_api_key_header(self):
        self.assertEqual(self.client.session.headers["x-goog-api-key"], "AIzaTestKey1234567890abcdef")
        self.assertTrue(self.client.is_available())
        self.assertFalse(GoogleAIClient().is_available())

    def test_from_config(self):
        client = GoogleAIClient.from_config(ServiceConfig(api_key="k", base_url="https://example.test/v1/"))
        self.assertEqual(client.base_url, "https://example.test/v1")
        client.close()

    @patch('photomark.integrations.google_ai_client.requests.Session.post')
    def test_generate_posts_payload(self, mock_post):
        image_b64 = base64.b64encode(b"edited").decode()
        mock_post.return_value = mock_response(200, {
            "candidates": [{"content": {"parts": [
                {"inlineData": {"mimeType": "image/png", "data": image_b64}}
            ]}}]
        })
        request = build_request()

        response = self.client.generate(request, timeout=12.0)

        self.assertEqual(response.status_code, 200)
        self.assertIn("candidates", response.body)
        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        self.assertEqual(
            args[0],
            "https://generativelanguage.googleapis.com/v1beta/models/"
            "gemini-2.0-flash-preview-image-generation:generateContent",
        )
        self.assertEqual(kwargs["timeout"], 12.0)
        self.assertEqual(kwargs["json"], request.to_payload())

    @patch('photomark.integrations.google_ai_client.requests.Session.post')
    def test_generate_returns_error_responses(self, mock_post):
        mock_post.return_value = mock_response(
            429, {"error": {"message": "Quota exceeded"}}, headers={"Retry-After": "3"}
        )
        response = self.client.generate(build_request(), timeout=5)
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.header("retry-after"), "3")

    @patch('photomark.integrations.google_ai_client.requests.Session.post')
    def test_generate_non_json_body(self, mock_post):
        mock_post.return_value = mock_response(502, None, text="<html>Bad Gateway</html>")
        response = self.client.generate(build_request(), timeout=5)
        self.assertIsNone(response.body)
        self.assertIn("Bad Gateway", response.text)

    @patch('photomark.integrations.google_ai_client.requests.Session.post')
    def test_generate_network_failure(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("reset by peer")
        with self.assertRaises(TransportError):
            self.client.generate(build_request(), timeout=5)

    @patch('photomark.integrations.google_ai_client.requests.Session.get')
    def test_list_models(self, mock_get):
        mock_get.return_value = mock_response(200, {
            "models": [
                {"name": "models/gemini-2.0-flash-preview-image-generation",
                 "displayName": "Gemini 2.0 Flash Image",
                 "supportedGenerationMethods": ["generateContent", "countTokens"]},
                {"name": "models/text-embedding-004",
                 "supportedGenerationMethods": ["embedContent"]},
                {"name": "models/gemini-2.5-flash",
                 "supportedGenerationMethods": ["generateContent"]},
            ]
        })

        models = self.client.list_models(timeout=3)

        self.assertEqual([m["id"] for m in models],
                         ["gemini-2.0-flash-preview-image-generation", "gemini-2.5-flash"])
        self.assertEqual(models[0]["capability"], "Image generation")
        self.assertEqual(models[0]["provider"], "Google")
        self.assertEqual(mock_get.call_args.kwargs["timeout"], 3)

    @patch('photomark.integrations.google_ai_client.requests.Session.get')
    def test_list_models_follows_pages(self, mock_get):
        mock_get.side_effect = [
            mock_response(200, {"models": [{"name": "models/a", "supportedGenerationMethods": ["generateContent"]}],
                                "nextPageToken": "p2"}),
            mock_response(200, {"models": [{"name": "models/b", "supportedGenerationMethods": ["generateContent"]}]}),
        ]
        models = self.client.list_models()
        self.assertEqual([m["id"] for m in models], ["a", "b"])
        self.assertEqual(mock_get.call_args.kwargs["params"]["pageToken"], "p2")

    @patch('photomark.integrations.google_ai_client.requests.Session.get')
    def test_list_models_error_status(self, mock_get):
        mock_get.return_value = mock_response(403, {"error": {"message": "Permission denied"}})
        with self.assertRaises(PhotomarkError) as ctx:
            self.client.list_models()
        self.assertEqual(ctx.exception.kind, ErrorKind.PERMISSION_DENIED)
        self.assertIn("Permission denied", str(ctx.exception))

    @patch('photomark.integrations.google_ai_client.requests.Session.get')
    def test_connection_check(self, mock_get):
        mock_get.side_effect = requests.exceptions.Timeout("slow")
        self.assertFalse(self.client.test_connection())


if __name__ == '__main__':
    unittest.main()
