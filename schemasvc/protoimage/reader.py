"""
Image reading entry points.

- get_bundle(): bytes + encoding -> Bundle (decode, build, filter)
- ImageReader: reference string -> Bundle (fetch, then get_bundle)

Invariants:
    - A call never shares state with another call; readers can be used
      from multiple threads
    - Fetched streams are always closed; a close failure is raised when
      nothing else failed and recorded on the primary error otherwise
    - Every ProtoImageError leaving ImageReader is prefixed with the
      configured input name

How to change safely:
    - Keep get_bundle() free of I/O so it stays testable on plain bytes
"""

from __future__ import annotations

import logging
import zlib
from typing import BinaryIO, Iterable, List, Optional, Union

from .bundle import Bundle
from .codec import ImageEncoding
from .config import ReaderConfig
from .decoder import decode_image
from .errors import FetchError, ProtoImageError
from .fetch import Fetcher, ImageRef, LocalFetcher, parse_image_ref
from .filter import PathTranslator, restrict_to
from .instrument import LoggingObserver, NullObserver, StageObserver, observe
from .paths import normalize_path

logger = logging.getLogger(__name__)

_READ_CHUNK_SIZE = 64 * 1024


def get_bundle(
    data: bytes,
    encoding: Union[ImageEncoding, str],
    filter_paths: Iterable[str] = (),
    allow_missing: bool = False,
    strip_debug_info: bool = False,
    *,
    translate_path: PathTranslator = normalize_path,
    observer: Optional[StageObserver] = None,
    ignore_unknown_json_fields: bool = False,
) -> Bundle:
    """Decode an image and optionally restrict it to some paths.

    Args:
        data: Encoded image
        encoding: ImageEncoding or its string value ("bin", "json")
        filter_paths: External paths to keep (empty keeps everything)
        allow_missing: Skip filter paths with no matching file
        strip_debug_info: Remove source code info from every file
        translate_path: Maps a filter path to a file path
        observer: Receives a span per stage
        ignore_unknown_json_fields: Passed to the JSON second pass

    Returns:
        New Bundle

    Raises:
        DecodeError: If the image cannot be decoded
        BundleError: If the image has duplicate or invalid file paths
        FilterError: If a filter path cannot be translated or found

    Example:
        >>> bundle = get_bundle(data, "bin", ["acme/user/v1/user.proto"])
        >>> bundle.paths
        ('acme/user/v1/user.proto',)
    """
    bundle = decode_image(
        data,
        encoding,
        observer=observer,
        strip_debug_info=strip_debug_info,
        ignore_unknown_json_fields=ignore_unknown_json_fields,
    )
    return restrict_to(
        bundle,
        filter_paths,
        translate=translate_path,
        allow_missing=allow_missing,
        observer=observer,
    )


class ImageReader:
    """Reads images named by reference strings.

    Attributes:
        config: Reader configuration
        fetcher: Opens the bytes behind an ImageRef
        observer: Receives a span per stage

    Example:
        >>> reader = ImageReader()
        >>> bundle = reader.get_image("image.bin", ["acme/user/v1/user.proto"])
    """

    def __init__(
        self,
        config: Optional[ReaderConfig] = None,
        fetcher: Optional[Fetcher] = None,
        observer: Optional[StageObserver] = None,
    ) -> None:
        self.config = config or ReaderConfig.from_env()
        self.fetcher = fetcher or LocalFetcher()
        if observer is None:
            observer = (
                LoggingObserver(logger)
                if self.config.observability.stage_timing
                else NullObserver()
            )
        self.observer = observer

    def get_image(
        self,
        value: str,
        external_paths: Iterable[str] = (),
        allow_missing: bool = False,
        exclude_source_info: bool = False,
    ) -> Bundle:
        """Fetch, decode and filter the image named by `value`.

        Args:
            value: Image reference (see fetch.parse_image_ref)
            external_paths: Paths to restrict the image to
            allow_missing: Skip paths with no matching file
            exclude_source_info: Remove source code info from every file

        Raises:
            ProtoImageError: Any failure, prefixed with the input name
        """
        with observe(self.observer, "get_image"):
            try:
                ref = parse_image_ref(value, self.config.default_encoding)
                data = self._read_image(ref)
                return get_bundle(
                    data,
                    ref.encoding,
                    external_paths,
                    allow_missing=allow_missing,
                    strip_debug_info=exclude_source_info,
                    translate_path=ref.path_for_external_path,
                    observer=self.observer,
                    ignore_unknown_json_fields=self.config.decode.ignore_unknown_json_fields,
                )
            except ProtoImageError as e:
                raise e.with_prefix(self.config.value_flag_name)

    def _read_image(self, ref: ImageRef) -> bytes:
        stream = self.fetcher.open(ref)
        try:
            data = self._read_all(stream, ref)
        except ProtoImageError as e:
            self._close(stream, ref, primary=e)
            raise
        self._close(stream, ref)
        return data

    def _read_all(self, stream: BinaryIO, ref: ImageRef) -> bytes:
        """Read until EOF; a read may return fewer bytes than asked for."""
        limit = self.config.decode.max_image_size_bytes
        chunks: List[bytes] = []
        size = 0
        while True:
            try:
                chunk = stream.read(_READ_CHUNK_SIZE)
            except (OSError, EOFError, zlib.error) as e:
                raise FetchError(
                    f"could not read image {ref.path}: {e}",
                    reference=ref.path,
                ) from e
            if not chunk:
                return b"".join(chunks)
            chunks.append(chunk)
            size += len(chunk)
            if limit > 0 and size > limit:
                raise FetchError(
                    f"image {ref.path} is larger than {limit} bytes",
                    reference=ref.path,
                )

    def _close(
        self,
        stream: BinaryIO,
        ref: ImageRef,
        primary: Optional[ProtoImageError] = None,
    ) -> None:
        try:
            stream.close()
        except OSError as e:
            if primary is None:
                raise FetchError(
                    f"could not close image {ref.path}: {e}",
                    reference=ref.path,
                ) from e
            logger.warning(f"Failed to close image {ref.path}: {e}")
            primary.add_close_error(e)
