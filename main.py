"""
Photomark - Marker-Guided AI Photo Editing
==========================================

Command-line entry point. Marks objects on a photo and asks the Gemini
image model to edit them out, or lists the models available to the
configured API key.

Usage:
    python main.py edit garden.jpg --marker 120,340 --marker 410,95 --out garden_clean.png
    python main.py models

Exit codes:
    0  edited image written (or models listed)
    1  validation error, failed request or configuration problem
    2  the request was blocked by the safety policy

Author: Photomark Project
"""

import argparse
import logging
import sys
from concurrent.futures import TimeoutError as FuturesTimeoutError
from pathlib import Path
from typing import List, Optional

from photomark.core.classifier import Blocked, Success
from photomark.core.config import DEFAULT_EDIT_INSTRUCTION
from photomark.core.dispatch import DispatchOrchestrator
from photomark.core.errors import ConfigurationError, PhotomarkError
from photomark.core.geometry import Point
from photomark.core.image_processing import ImageSource, output_path_for, validate_image, write_image
from photomark.core.request_builder import GenerationOptions
from photomark.core.session import EditingSession
from photomark.core.transport import TransportError
from photomark.integrations.google_ai_client import GoogleAIClient
from photomark.utils.config_manager import load_config
from photomark.utils.logger import setup_logging, shutdown_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BLOCKED = 2


def parse_marker(value: str) -> Point:
    """Parse an ``X,Y`` image-pixel coordinate."""
    try:
        x, y = (float(part) for part in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected X,Y but got {value!r}")
    return Point(x, y)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="photomark",
        description="Mark objects on a photo and have a generative model edit them.",
    )
    parser.add_argument("--config", type=Path, default=None,
                        help="Configuration file (default: ~/.photomark_config.json)")
    parser.add_argument("--log-dir", type=Path, default=None,
                        help="Also write a debug log to this directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose console output")

    sub = parser.add_subparsers(dest="command", required=True)

    edit = sub.add_parser("edit", help="Edit the marked objects in an image")
    edit.add_argument("image", type=Path, help="JPEG, PNG or WebP image")
    edit.add_argument("--marker", "-m", dest="markers", action="append", type=parse_marker,
                      default=[], metavar="X,Y", help="Marker position in image pixels (repeatable)")
    edit.add_argument("--label", default=None, help="Label for every marker (default: tree)")
    edit.add_argument("--prompt", default=DEFAULT_EDIT_INSTRUCTION, help="Edit instruction")
    edit.add_argument("--out", type=Path, default=None, help="Output path for the edited image")
    edit.add_argument("--model", default=None, help="Model id (default from configuration)")
    edit.add_argument("--timeout", type=float, default=None,
                      help="Seconds to wait for the final outcome, retries included")

    sub.add_parser("models", help="List models that support generateContent")
    return parser


def run_edit(args, orchestrator: DispatchOrchestrator) -> int:
    valid, problem = validate_image(args.image, orchestrator.config.images.max_image_bytes)
    if not valid:
        print(f"error: {args.image}: {problem}", file=sys.stderr)
        return EXIT_FAILED

    session = EditingSession(orchestrator)
    session.load_image(ImageSource.from_path(args.image))
    for point in args.markers:
        session.add_marker(point, args.label)

    options = GenerationOptions(prompt=args.prompt, model=args.model)
    handle = session.submit(options)
    outcome = handle.result(timeout=args.timeout)

    if isinstance(outcome, Success):
        out = args.out or output_path_for(args.image, outcome.mime_type)
        write_image(outcome.image, out)
        print(f"Wrote {out}")
        if outcome.metadata.get("text"):
            print(outcome.metadata["text"])
        return EXIT_OK

    if isinstance(outcome, Blocked):
        print(f"Blocked by safety policy: {outcome.reason}", file=sys.stderr)
        return EXIT_BLOCKED

    status = f" (HTTP {outcome.status_code})" if outcome.status_code else ""
    print(f"Edit failed: {outcome.kind.value}{status}: {outcome.message}", file=sys.stderr)
    return EXIT_FAILED


def run_models(orchestrator: DispatchOrchestrator) -> int:
    for model in orchestrator.list_models():
        print(f"{model['id']:<50} {model['capability']}")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_dir, console_level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILED

    client = GoogleAIClient.from_config(config.service)
    if not client.is_available():
        print("error: no API key; set GEMINI_API_KEY or PHOTOMARK_API_KEY", file=sys.stderr)
        client.close()
        return EXIT_FAILED

    orchestrator = DispatchOrchestrator(config, client)
    logger.debug(f"Running '{args.command}' against {config.service.base_url}")
    try:
        if args.command == "edit":
            return run_edit(args, orchestrator)
        return run_models(orchestrator)
    except (PhotomarkError, TransportError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except FuturesTimeoutError:
        print(f"error: no outcome within {args.timeout}s", file=sys.stderr)
        return EXIT_FAILED
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_FAILED
    finally:
        orchestrator.shutdown(wait=False)
        client.close()
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())
