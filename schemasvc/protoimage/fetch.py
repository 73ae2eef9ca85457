"""
Image references and local fetching.

An image reference names where the encoded image comes from and how it is
encoded:

    image.bin                  binary
    image.json                 JSON
    image.bin.gz               gzip-compressed binary
    -                          stdin (default encoding)
    build/out#format=json      explicit encoding
    -#format=bin,compression=gzip

Invariants:
    - Every reference resolves to exactly one ImageEncoding before any read
    - Streams returned by a Fetcher must be closed by the caller
    - Closing a stdin-backed stream never closes the process's stdin
"""

from __future__ import annotations

import gzip
import io
import logging
import sys
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Dict, Optional, Protocol, Tuple, runtime_checkable

from .codec import ImageEncoding
from .errors import FetchError
from .paths import normalize_path

logger = logging.getLogger(__name__)

STDIN_PATH = "-"


class Compression(Enum):
    """Supported image compressions."""

    NONE = "none"
    GZIP = "gzip"


_ENCODINGS: Dict[str, ImageEncoding] = {e.value: e for e in ImageEncoding}
_COMPRESSIONS: Dict[str, Compression] = {c.value: c for c in Compression}
_OPTION_KEYS = ("format", "compression")


@dataclass(frozen=True)
class ImageRef:
    """A parsed image reference.

    Attributes:
        path: File path, or "-" for stdin
        encoding: How the image bytes are encoded
        compression: How the image bytes are compressed
    """

    path: str
    encoding: ImageEncoding
    compression: Compression = Compression.NONE

    @property
    def is_stdin(self) -> bool:
        return self.path == STDIN_PATH

    def path_for_external_path(self, external_path: str) -> str:
        """Translate a user-facing path into a member path.

        Raises:
            PathError: If the path is absolute or escapes its root
        """
        return normalize_path(external_path)


def _infer_from_path(path: str) -> Tuple[Optional[ImageEncoding], Compression]:
    compression = Compression.NONE
    if path.endswith(".gz"):
        compression = Compression.GZIP
        path = path[: -len(".gz")]
    for value, encoding in _ENCODINGS.items():
        if path.endswith(f".{value}"):
            return encoding, compression
    return None, compression


def _parse_options(reference: str, options: str) -> Dict[str, str]:
    parsed: Dict[str, str] = {}
    for pair in options.split(","):
        key, sep, value = pair.partition("=")
        if not sep or not key or not value:
            raise FetchError(f"invalid option {pair!r} in {reference!r}", reference=reference)
        if key not in _OPTION_KEYS:
            raise FetchError(
                f"unknown option {key!r} in {reference!r}. Valid options: {list(_OPTION_KEYS)}",
                reference=reference,
            )
        if key in parsed:
            raise FetchError(f"duplicate option {key!r} in {reference!r}", reference=reference)
        parsed[key] = value
    return parsed


def parse_image_ref(
    reference: str,
    default_encoding: ImageEncoding = ImageEncoding.BINARY,
) -> ImageRef:
    """Parse an image reference.

    Args:
        reference: Reference string, e.g. "image.json" or "-#format=json"
        default_encoding: Encoding for stdin when no format is given

    Returns:
        Parsed ImageRef

    Raises:
        FetchError: If the reference is empty, has invalid options, or the
            encoding cannot be determined
    """
    path, _, options = reference.partition("#")
    if not path:
        raise FetchError("image reference is empty", reference=reference)
    parsed = _parse_options(reference, options) if options else {}

    if path == STDIN_PATH:
        encoding: Optional[ImageEncoding] = default_encoding
        compression = Compression.NONE
    else:
        encoding, compression = _infer_from_path(path)

    if "format" in parsed:
        encoding = _ENCODINGS.get(parsed["format"])
        if encoding is None:
            raise FetchError(
                f"unknown format {parsed['format']!r}. Valid formats: {list(_ENCODINGS)}",
                reference=reference,
            )
    if "compression" in parsed:
        compression = _COMPRESSIONS.get(parsed["compression"])
        if compression is None:
            raise FetchError(
                f"unknown compression {parsed['compression']!r}. "
                f"Valid compressions: {list(_COMPRESSIONS)}",
                reference=reference,
            )
    if encoding is None:
        raise FetchError(
            f"could not determine image format of {path!r}; "
            f"use a .bin or .json extension or add #format=bin|json",
            reference=reference,
        )
    return ImageRef(path=path, encoding=encoding, compression=compression)


@runtime_checkable
class Fetcher(Protocol):
    """Opens the byte stream an ImageRef points to."""

    def open(self, ref: ImageRef) -> BinaryIO:
        """Open the image for reading. The caller closes the stream.

        Raises:
            FetchError: If the image cannot be opened
        """
        ...


class LocalFetcher:
    """Fetches images from the local filesystem or stdin.

    Example:
        >>> fetcher = LocalFetcher()
        >>> stream = fetcher.open(parse_image_ref("image.bin.gz"))
        >>> try:
        ...     data = stream.read()
        ... finally:
        ...     stream.close()
    """

    def __init__(self, stdin: Optional[BinaryIO] = None) -> None:
        """Initialize the fetcher.

        Args:
            stdin: Stream used for the "-" reference (defaults to sys.stdin.buffer)
        """
        self._stdin = stdin

    def open(self, ref: ImageRef) -> BinaryIO:
        try:
            if ref.is_stdin:
                stdin = self._stdin or sys.stdin.buffer
                # Buffer stdin so closing the returned stream leaves it open.
                stream: BinaryIO = io.BytesIO(stdin.read())
            else:
                stream = open(ref.path, "rb")
        except OSError as e:
            raise FetchError(f"could not open image {ref.path}: {e}", reference=ref.path) from e

        logger.debug(
            f"Opened image {ref.path}",
            extra={"encoding": ref.encoding.value, "compression": ref.compression.value},
        )
        if ref.compression is Compression.GZIP:
            return _GzipStream(stream)
        return stream


class _GzipStream(gzip.GzipFile):
    """GzipFile that also closes the underlying stream."""

    def __init__(self, raw: BinaryIO) -> None:
        self._source = raw
        super().__init__(fileobj=raw, mode="rb")

    def close(self) -> None:
        try:
            super().close()
        finally:
            self._source.close()
