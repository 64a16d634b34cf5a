"""Command-line moderation.

Usage:
    flagpost --text "your text"
    echo "your text" | flagpost --platform x
    flagpost --media-url https://example.com/a.jpg --media-type image
    flagpost --text "..." --context '{"account": {"createdAt": "2024-01-01T00:00:00Z"}}'

Prints the result as JSON. Exits 1 when the label is `block`, 0 otherwise and
2 on usage errors.
"""

from __future__ import annotations
import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from .config import PLATFORMS, ModeratorConfig
from .engine import ModerationEngine
from .schema import MEDIA_TYPES, ValidationError


def _load_context(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    if os.path.isfile(value):
        with open(value, "r", encoding="utf-8") as f:
            return json.load(f)
    return json.loads(value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flagpost", description="Score social-media content for moderation"
    )
    parser.add_argument("--text", help="Text to moderate (default: read from stdin)")
    parser.add_argument("--media-url", help="URL of an image or video to moderate")
    parser.add_argument(
        "--media-type",
        choices=MEDIA_TYPES,
        default="image",
        help="Type of the media at --media-url (default: image)",
    )
    parser.add_argument(
        "--platform",
        choices=sorted(PLATFORMS),
        default="generic",
        help="Platform whose thresholds apply (default: generic)",
    )
    parser.add_argument(
        "--context", help="Context as a JSON string or a path to a JSON file"
    )
    parser.add_argument(
        "--existing-hash",
        action="append",
        dest="existing_hashes",
        metavar="HASH",
        help="A known perceptual hash to match the media against (repeatable)",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Print provider status and timings"
    )
    parser.add_argument(
        "--explain", action="store_true", help="Attach a human-readable explanation"
    )
    return parser


def main(argv: Optional[List[str]] = None, engine: Optional[ModerationEngine] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    text = args.text
    if text is None and not sys.stdin.isatty():
        text = sys.stdin.read().strip()

    media = {"url": args.media_url, "type": args.media_type} if args.media_url else None
    if not text and media is None:
        parser.error("at least one of --text or --media-url must be provided")

    try:
        context = _load_context(args.context)
    except (OSError, ValueError) as e:
        parser.error(f"invalid --context: {e}")

    logging.basicConfig(
        level=logging.INFO if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    engine = engine or ModerationEngine(ModeratorConfig.from_env())
    try:
        result = engine.moderate(
            text=text or None,
            media=media,
            platform=args.platform,
            context=context,
            explain=args.explain,
            debug=True if args.debug else None,
            existing_hashes=args.existing_hashes,
        )
    except ValidationError as e:
        parser.error(str(e))

    if args.debug and result.debug:
        print("Provider Status:")
        for provider, state in result.debug.get("providers", {}).items():
            print(f"  {provider}: {state}")
        print("\nTimings:")
        for operation, ms in result.debug.get("timings", {}).items():
            print(f"  {operation}: {ms}ms")
        print("\n---")

    print(result.to_json(indent=2))
    return 1 if result.label == "block" else 0


if __name__ == "__main__":
    sys.exit(main())
