"""
Unit tests for request validation, idempotency keys and payload shape.
"""

import base64
import io
import unittest
from unittest.mock import patch

from PIL import Image

from photomark.core.annotation import AnnotationStore
from photomark.core.config import HARM_CATEGORIES, ImageLimits
from photomark.core.errors import (
    EmptyMarkerSetError,
    ErrorKind,
    ImageTooLargeError,
    InvalidRequestError,
    UnsupportedFormatError,
)
from photomark.core.geometry import ImageSize, Point
from photomark.core.image_processing import ImageSource
from photomark.core.request_builder import GenerationOptions, RequestBuilder


def make_image(fmt="PNG", size=(200, 100)):
    buf = io.BytesIO()
    Image.new("RGB", size, (90, 160, 60)).save(buf, format=fmt)
    mime = {"PNG": "image/png", "JPEG": "image/jpeg", "GIF": "image/gif"}[fmt]
    return ImageSource(buf.getvalue(), mime)


def snapshot_with(*points, size=(200, 100)):
    store = AnnotationStore(ImageSize(*size))
    for p in points:
        store.add_marker(Point(*p))
    return store.snapshot()


class TestValidation(unittest.TestCase):

    def setUp(self):
        self.builder = RequestBuilder()
        self.image = make_image()
        self.snapshot = snapshot_with((20, 30), (150, 80))

    def test_builds_valid_request(self):
        request = self.builder.build(self.image, self.snapshot, GenerationOptions())
        self.assertTrue(request.image_ref.startswith("sha256:"))
        self.assertEqual(len(request.idempotency_key), 64)
        self.assertEqual(request.model, "gemini-2.0-flash-preview-image-generation")

    def test_disallowed_mime(self):
        with self.assertRaises(UnsupportedFormatError):
            self.builder.build(make_image("GIF"), self.snapshot)

    def test_declared_mime_must_match_content(self):
        png = make_image("PNG")
        lying = ImageSource(png.data, "image/jpeg")
        with self.assertRaises(UnsupportedFormatError):
            self.builder.build(lying, self.snapshot)

    def test_undecodable_bytes(self):
        with self.assertRaises(UnsupportedFormatError):
            self.builder.build(ImageSource(b"\x89PNG broken", "image/png"), self.snapshot)

    def test_empty_image_is_unsupported(self):
        with self.assertRaises(UnsupportedFormatError):
            self.builder.build(ImageSource(b"", "image/png"), self.snapshot)

    def test_size_ceiling_plus_one(self):
        builder = RequestBuilder(ImageLimits(max_image_bytes=len(self.image.data) - 1))
        with self.assertRaises(ImageTooLargeError) as ctx:
            builder.build(self.image, self.snapshot)
        self.assertEqual(ctx.exception.kind, ErrorKind.IMAGE_TOO_LARGE)

    def test_pixel_bomb_is_too_large(self):
        # 200x100 is more than twice the patched pixel limit
        with patch.object(Image, "MAX_IMAGE_PIXELS", 1000):
            with self.assertRaises(ImageTooLargeError):
                self.builder.build(self.image, self.snapshot)

    def test_size_at_ceiling_is_accepted(self):
        builder = RequestBuilder(ImageLimits(max_image_bytes=len(self.image.data)))
        builder.build(self.image, self.snapshot)

    def test_empty_marker_set(self):
        with self.assertRaises(EmptyMarkerSetError):
            self.builder.build(self.image, snapshot_with())

    def test_format_checked_before_markers(self):
        with self.assertRaises(UnsupportedFormatError):
            self.builder.build(ImageSource(b"", "image/png"), snapshot_with())

    def test_too_many_markers(self):
        builder = RequestBuilder(ImageLimits(max_markers=1))
        with self.assertRaises(InvalidRequestError):
            builder.build(self.image, self.snapshot)

    def test_markers_from_other_image_size(self):
        with self.assertRaises(InvalidRequestError):
            self.builder.build(self.image, snapshot_with((10, 10), size=(400, 400)))

    def test_option_ranges(self):
        bad_options = [
            GenerationOptions(prompt=""),
            GenerationOptions(prompt="   "),
            GenerationOptions(prompt="x" * 20001),
            GenerationOptions(strength=1.5),
            GenerationOptions(creativity=-0.1),
            GenerationOptions(creativity=2.5),
            GenerationOptions(top_k=0),
            GenerationOptions(top_p=0),
            GenerationOptions(max_output_tokens=0),
            GenerationOptions(safety_threshold="BLOCK_EVERYTHING"),
            GenerationOptions(response_modalities=("TEXT",)),
            GenerationOptions(model=" "),
        ]
        for options in bad_options:
            with self.subTest(options=options):
                with self.assertRaises(InvalidRequestError):
                    self.builder.build(self.image, self.snapshot, options)

    def test_prompt_at_limit_is_accepted(self):
        self.builder.build(self.image, self.snapshot, GenerationOptions(prompt="x" * 20000))


class TestIdempotencyKey(unittest.TestCase):

    def setUp(self):
        self.builder = RequestBuilder()
        self.image = make_image()

    def test_identical_inputs_identical_key(self):
        a = self.builder.build(self.image, snapshot_with((20, 30)), GenerationOptions())
        b = self.builder.build(make_image(), snapshot_with((20, 30)), GenerationOptions())
        self.assertEqual(a.idempotency_key, b.idempotency_key)

    def test_marker_ids_do_not_matter(self):
        store = AnnotationStore(ImageSize(200, 100))
        m = store.add_marker(Point(20, 30))
        store.remove_marker(m.id)
        store.add_marker(Point(20, 30))
        a = self.builder.build(self.image, store.snapshot())
        b = self.builder.build(self.image, snapshot_with((20, 30)))
        self.assertEqual(a.idempotency_key, b.idempotency_key)

    def test_moving_a_marker_changes_key(self):
        a = self.builder.build(self.image, snapshot_with((20, 30)))
        b = self.builder.build(self.image, snapshot_with((20, 31)))
        self.assertNotEqual(a.idempotency_key, b.idempotency_key)

    def test_marker_order_changes_key(self):
        a = self.builder.build(self.image, snapshot_with((20, 30), (100, 50)))
        b = self.builder.build(self.image, snapshot_with((100, 50), (20, 30)))
        self.assertNotEqual(a.idempotency_key, b.idempotency_key)

    def test_options_change_key(self):
        snapshot = snapshot_with((20, 30))
        a = self.builder.build(self.image, snapshot, GenerationOptions())
        b = self.builder.build(self.image, snapshot, GenerationOptions(creativity=0.2))
        self.assertNotEqual(a.idempotency_key, b.idempotency_key)

    def test_explicit_default_model_matches_implicit(self):
        snapshot = snapshot_with((20, 30))
        a = self.builder.build(self.image, snapshot, GenerationOptions())
        b = self.builder.build(
            self.image, snapshot,
            GenerationOptions(model="gemini-2.0-flash-preview-image-generation"),
        )
        self.assertNotEqual(a.options, b.options)
        self.assertEqual(a.model, b.model)
        self.assertEqual(a.idempotency_key, b.idempotency_key)


class TestPayload(unittest.TestCase):

    def test_wire_shape(self):
        image = make_image()
        request = RequestBuilder().build(
            image, snapshot_with((20, 30), (150, 80)),
            GenerationOptions(prompt="Remove the trees", creativity=0.4, top_k=16),
        )
        payload = request.to_payload()

        parts = payload["contents"][0]["parts"]
        self.assertIn("Remove the trees", parts[0]["text"])
        self.assertIn("pixel (20.0, 30.0)", parts[0]["text"])
        self.assertIn("normalised (0.100, 0.300)", parts[0]["text"])
        self.assertEqual(parts[1]["inlineData"]["mimeType"], "image/png")
        self.assertEqual(base64.b64decode(parts[1]["inlineData"]["data"]), image.data)

        config = payload["generationConfig"]
        self.assertEqual(config["temperature"], 0.4)
        self.assertEqual(config["topK"], 16)
        self.assertEqual(config["topP"], 0.9)
        self.assertEqual(config["maxOutputTokens"], 2048)
        self.assertEqual(config["responseModalities"], ["TEXT", "IMAGE"])

        categories = [s["category"] for s in payload["safetySettings"]]
        self.assertEqual(categories, list(HARM_CATEGORIES))
        self.assertTrue(all(s["threshold"] == "BLOCK_MEDIUM_AND_ABOVE" for s in payload["safetySettings"]))


if __name__ == "__main__":
    unittest.main()
