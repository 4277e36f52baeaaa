"""Command-line entry point: classify media and print one JSON document.

Usage:
    mediaclassify --model ./models/nsfw photo.jpg
    mediaclassify --model hf://owner/repo --turbo --frames 16 clip.mp4
    mediaclassify --model https://host/models/xyz/ --top-k 3 a.png b.png c.mp4
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import TYPE_CHECKING

from pydantic import ValidationError

from mediaclassify.config import LOG_FORMAT, Settings
from mediaclassify.errors import MediaClassifyError
from mediaclassify.media.acquisition import IoMode
from mediaclassify.pipeline.classifier import MediaClassifier
from mediaclassify.pipeline.requests import ClassifyOptions, MediaType, build_request

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger("mediaclassify")

_IO_ALIASES = {"ram": "memory", "memory": "memory", "disk": "disk"}


def _io_mode(value: str) -> str:
    try:
        return _IO_ALIASES[value.lower()]
    except KeyError:
        raise argparse.ArgumentTypeError(f"invalid io mode '{value}' (choose memory or disk)") from None


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mediaclassify",
        description="Classify images and videos with an ONNX image classifier",
    )
    parser.add_argument("inputs", nargs="+", help="URLs, local paths, data URIs or base64 payloads")
    parser.add_argument(
        "--model",
        required=True,
        help="Model source: directory, http(s) base URL or hf://owner/repo[/subfolder]",
    )
    parser.add_argument("--backend", choices=("cpu", "cuda", "openvino"), help="Execution backend")
    parser.add_argument("--io", type=_io_mode, help="Video I/O mode: memory (alias ram) or disk")
    parser.add_argument("--frames", type=_positive_int, help="Frames sampled per video")
    parser.add_argument("--top-k", type=_positive_int, help="Number of predictions to keep")
    parser.add_argument("--turbo", action="store_true", help="Extract and score video frames in parallel")
    parser.add_argument("--max-bytes", type=_positive_int, help="Per-input byte ceiling")
    parser.add_argument(
        "--media",
        choices=tuple(m.value for m in MediaType),
        default=MediaType.AUTO.value,
        help="Treat every input as image or video instead of guessing",
    )
    parser.add_argument("--batch-size", type=int, help="Images per inference call (0 = whole batch)")
    parser.add_argument("--no-center-crop", action="store_true", help="Stretch instead of crop when resizing")
    parser.add_argument("--save-dir", help="Save a downloaded model to this directory")
    parser.add_argument("--log-level", default="WARNING", choices=("DEBUG", "INFO", "WARNING", "ERROR"))
    return parser


def _build_settings(args: argparse.Namespace) -> Settings:
    overrides: dict[str, object] = {
        "device": args.backend,
        "io_mode": args.io,
        "max_bytes": args.max_bytes,
        "frames": args.frames,
        "save_to_dir": args.save_dir,
        "model_source": args.model,
    }
    return Settings(**{k: v for k, v in overrides.items() if v is not None})  # type: ignore[arg-type]


async def run(args: argparse.Namespace) -> dict[str, object]:
    """Load the model, classify the inputs and return the JSON-ready result."""
    settings = _build_settings(args)
    request = build_request(args.inputs, MediaType(args.media))
    options = ClassifyOptions.from_settings(
        settings,
        top_k=args.top_k,
        turbo=args.turbo or None,
        batch_size=args.batch_size,
        center_crop=False if args.no_center_crop else None,
        io_mode=IoMode(settings.io_mode),
    )
    async with await MediaClassifier.create(settings, source=args.model) as classifier:
        result = await classifier.classify(request, options)
    return result.to_json_dict()


def main(argv: Sequence[str] | None = None) -> None:
    """Parse arguments, run the classification and print JSON to stdout."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level, format=LOG_FORMAT, stream=sys.stderr)

    try:
        document = asyncio.run(run(args))
    except MediaClassifyError as exc:
        logger.debug("Classification failed", exc_info=True)
        print(f"Error: {exc.message}", file=sys.stderr)
        sys.exit(1)
    except ValidationError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)

    json.dump(document, sys.stdout, indent=2)
    sys.stdout.write("\n")


if __name__ == "__main__":
    main()
