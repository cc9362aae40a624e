"""
Unit tests for the editing session facade.
"""

import io
import threading
import unittest
from unittest.mock import MagicMock, patch

from PIL import Image

from photomark.core.classifier import Failed
from photomark.core.config import PhotomarkConfig, ServiceConfig
from photomark.core.dispatch import DispatchOrchestrator, OperationHandle, OperationState
from photomark.core.errors import (
    ErrorKind,
    ImageTooLargeError,
    NothingToUndoError,
    OutOfBoundsError,
    UnsupportedFormatError,
)
from photomark.core.geometry import ImageSize, Point, Transform, ViewportPoint
from photomark.core.image_processing import ImageSource
from photomark.core.session import EditingSession
from photomark.core.transport import TransportResponse


def make_image(size=(300, 200), fmt="JPEG", mime="image/jpeg"):
    buf = io.BytesIO()
    Image.new("RGB", size, (50, 90, 50)).save(buf, format=fmt)
    return ImageSource(buf.getvalue(), mime)


class TestEditingSession(unittest.TestCase):

    def setUp(self):
        self.orchestrator = MagicMock()
        self.orchestrator.config = PhotomarkConfig()
        self.session = EditingSession(self.orchestrator)

    def test_requires_image(self):
        with self.assertRaises(RuntimeError):
            self.session.add_marker(Point(1, 1))

    def test_load_image_sets_store_size(self):
        size = self.session.load_image(make_image((300, 200)))
        self.assertEqual(size, ImageSize(300, 200))
        self.assertEqual(self.session.store.image_size, ImageSize(300, 200))

    def test_load_rejects_undecodable(self):
        with self.assertRaises(UnsupportedFormatError):
            self.session.load_image(ImageSource(b"nope", "image/png"))
        self.assertIsNone(self.session.store)

    def test_marker_editing(self):
        self.session.load_image(make_image())
        t = Transform(scale=2.0)
        m = self.session.add_marker_at(ViewportPoint(100, 100), t)
        self.assertEqual(m.position, Point(50, 50))
        with self.assertRaises(OutOfBoundsError):
            self.session.add_marker_at(ViewportPoint(1000, 100), t)

        other = self.session.add_marker(Point(200, 150))
        self.session.remove_marker(other.id)
        self.assertEqual(len(self.session.undo()), 2)
        self.assertEqual(len(self.session.redo()), 1)
        self.session.clear_markers()
        self.assertEqual(len(self.session.snapshot()), 0)

    def test_submit_passes_snapshot(self):
        image = make_image()
        self.session.load_image(image)
        self.session.add_marker(Point(10, 10))
        handle = self.session.submit()

        self.orchestrator.submit.assert_called_once()
        args = self.orchestrator.submit.call_args.args
        self.assertIs(args[0], image)
        self.assertEqual(len(args[1]), 1)
        self.assertIs(handle, self.session.last_handle)

    def test_loading_new_image_cancels_and_resets(self):
        self.session.load_image(make_image())
        self.session.add_marker(Point(10, 10))
        handle = self.session.submit()

        self.session.load_image(make_image((640, 480), "PNG", "image/png"))

        handle.cancel.assert_called_once()
        self.assertEqual(len(self.session.store), 0)
        self.assertEqual(self.session.store.image_size, ImageSize(640, 480))
        with self.assertRaises(NothingToUndoError):
            self.session.undo()

    def test_cancel_without_submission(self):
        self.assertFalse(self.session.cancel())

    def test_loading_new_image_cancels_every_submission(self):
        first, second = MagicMock(), MagicMock()
        self.orchestrator.submit.side_effect = [first, second]
        self.session.load_image(make_image())
        self.session.add_marker(Point(10, 10))
        self.session.submit()
        self.session.add_marker(Point(100, 100))
        self.session.submit()
        self.assertEqual(self.session.pending, [first, second])

        self.session.load_image(make_image((640, 480), "PNG", "image/png"))

        first.cancel.assert_called_once()
        second.cancel.assert_called_once()

    def test_finished_submissions_are_forgotten(self):
        handle = OperationHandle.resolved(Failed(ErrorKind.EMPTY_MARKER_SET, False))
        self.orchestrator.submit.return_value = handle
        self.session.load_image(make_image())
        self.session.submit()
        self.assertEqual(self.session.pending, [])
        self.assertFalse(self.session.cancel())

    def test_load_rejects_pixel_bomb(self):
        with patch.object(Image, "MAX_IMAGE_PIXELS", 1000):
            with self.assertRaises(ImageTooLargeError):
                self.session.load_image(make_image((300, 200)))
        self.assertIsNone(self.session.store)


class TestEditingSessionDispatch(unittest.TestCase):

    def test_new_image_cancels_older_exchanges(self):
        gate = threading.Event()
        transport = MagicMock()
        transport.generate.side_effect = lambda request, timeout: gate.wait(5) and TransportResponse(500, None)
        config = PhotomarkConfig(service=ServiceConfig(api_key="k"))
        orchestrator = DispatchOrchestrator(config, transport)
        self.addCleanup(orchestrator.shutdown, False)
        self.addCleanup(gate.set)
        session = EditingSession(orchestrator)

        session.load_image(make_image())
        session.add_marker(Point(10, 10))
        first = session.submit()
        session.add_marker(Point(100, 100))
        second = session.submit()
        self.assertNotEqual(first.idempotency_key, second.idempotency_key)

        session.load_image(make_image((640, 480), "PNG", "image/png"))

        self.assertEqual(first.state, OperationState.CANCELLED)
        self.assertEqual(second.state, OperationState.CANCELLED)
        self.assertEqual(orchestrator.active_operations(), [])
        self.assertEqual(session.pending, [])


if __name__ == "__main__":
    unittest.main()
