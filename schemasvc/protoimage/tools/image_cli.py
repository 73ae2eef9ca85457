"""
Image CLI tool for protoimage.

This tool reads an image and reports on or re-encodes it:
- ls: List the files in the image
- info: Show fingerprint, files and unresolved imports as JSON
- convert: Re-encode the image as binary or JSON

Usage:
    protoimage ls image.bin
    protoimage info image.json --path acme/user/v1/user.proto
    protoimage convert image.bin --to json -o image.json
    cat image.json | protoimage ls "-#format=json"
    cat image.bin.gz | protoimage convert "-#format=bin,compression=gzip" -o image.bin

Invariants:
    - Any ProtoImageError exits with code 1 and a single-line message on stderr
    - Output is deterministic for the same input

How to change safely:
    - Add new commands, don't modify existing output formats
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

import json_log_formatter

from ..bundle import Bundle
from ..codec import ImageEncoding, marshal_json, marshal_wire
from ..config import ReaderConfig
from ..errors import ProtoImageError
from ..fetch import STDIN_PATH
from ..reader import ImageReader

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def setup_logging(config: ReaderConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Reader configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.WARNING)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class ImageCLI:
    """CLI tool for image inspection and conversion.

    Example:
        >>> cli = ImageCLI()
        >>> cli.ls(bundle)
        ['acme/options/options.proto', 'acme/user/v1/user.proto']
    """

    def ls(self, bundle: Bundle) -> List[str]:
        """List file paths in image order."""
        return list(bundle.paths)

    def info(self, bundle: Bundle) -> str:
        """Summarize the image as JSON.

        Returns:
            JSON string with fingerprint, files and unresolved imports
        """
        output: Dict[str, Any] = {
            "fingerprint": bundle.fingerprint,
            "files": [
                {
                    "path": member.path,
                    "package": member.file.package,
                    "dependencies": list(member.dependencies),
                    "has_source_info": member.has_debug_info,
                    "is_import": member.is_import,
                }
                for member in bundle
            ],
            "unresolved_dependencies": {
                path: list(missing)
                for path, missing in bundle.unresolved_dependencies().items()
            },
        }
        return json.dumps(output, indent=2, sort_keys=True)

    def convert(self, bundle: Bundle, encoding: ImageEncoding) -> bytes:
        """Encode the image as a FileDescriptorSet."""
        file_set = bundle.to_proto()
        if encoding is ImageEncoding.JSON:
            return marshal_json(file_set, indent=2) + b"\n"
        return marshal_wire(file_set)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="protoimage",
        description="Read protobuf images (FileDescriptorSets) with custom options",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Override LOG_LEVEL",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_image_arguments(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "input",
            nargs="?",
            help="Image reference (path, '-' for stdin, #format=bin|json)",
        )
        sub.add_argument(
            "--path",
            action="append",
            default=[],
            help="Limit to this file path (repeatable)",
        )
        sub.add_argument(
            "--allow-missing",
            action="store_true",
            help="Ignore --path values that do not exist in the image",
        )
        sub.add_argument(
            "--exclude-source-info",
            action="store_true",
            help="Remove source code info",
        )

    ls_parser = subparsers.add_parser("ls", help="List files in the image")
    add_image_arguments(ls_parser)

    info_parser = subparsers.add_parser("info", help="Show image summary as JSON")
    add_image_arguments(info_parser)

    convert_parser = subparsers.add_parser("convert", help="Re-encode the image")
    add_image_arguments(convert_parser)
    convert_parser.add_argument(
        "--to",
        choices=[e.value for e in ImageEncoding],
        default=ImageEncoding.BINARY.value,
        help="Output encoding",
    )
    convert_parser.add_argument("--output", "-o", help="Output file (default: stdout)")

    return parser


def _parse_args(parser: argparse.ArgumentParser, argv: Optional[List[str]]) -> argparse.Namespace:
    """Parse arguments, accepting a stdin reference with options as input.

    argparse reads "-#format=json" as an unknown flag, so it comes back as
    a leftover argument and is taken as the input here.
    """
    args, extras = parser.parse_known_args(argv)
    if args.input is None and extras and extras[0].startswith(f"{STDIN_PATH}#"):
        args.input = extras.pop(0)
    if extras:
        parser.error(f"unrecognized arguments: {' '.join(extras)}")
    if args.input is None:
        parser.error("the following arguments are required: input")
    return args


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point for the image tool."""
    args = _parse_args(_build_parser(), argv)

    try:
        config = ReaderConfig.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)
    setup_logging(config)
    if args.log_level:
        logging.getLogger().setLevel(args.log_level)
    config.log_config()

    cli = ImageCLI()
    reader = ImageReader(config)

    try:
        bundle = reader.get_image(
            args.input,
            args.path,
            allow_missing=args.allow_missing,
            exclude_source_info=args.exclude_source_info,
        )
    except ProtoImageError as e:
        logger.debug("Reading image failed", extra={"code": e.code, "details": e.details})
        print(e.message, file=sys.stderr)
        sys.exit(1)

    if args.command == "ls":
        for path in cli.ls(bundle):
            print(path)

    elif args.command == "info":
        print(cli.info(bundle))

    elif args.command == "convert":
        data = cli.convert(bundle, ImageEncoding(args.to))
        if args.output:
            with open(args.output, "wb") as f:
                f.write(data)
            print(f"Image written to {args.output}", file=sys.stderr)
        else:
            sys.stdout.buffer.write(data)
            sys.stdout.buffer.flush()

    sys.exit(0)


if __name__ == "__main__":
    main()
