"""
Two-pass image decoding.

Custom options defined inside an image cannot be interpreted until the
image's own declarations are known, so every image is decoded twice:

1. decode_tolerant(): static descriptor classes, no resolver. Binary keeps
   unknown extension bytes as unknown fields; JSON drops unknown keys.
2. build_resolver() over the pass-1 files.
3. decode_resolved(): the same bytes again, with message classes from the
   resolver's pool, so custom options become typed extension values. The
   bytes are read as buf's Image, so a file's buf_extension (bufExtension
   in JSON) is understood rather than rejected.

Invariants:
    - The encoding tag is checked before any byte is looked at
    - Both passes read the same bytes with the same encoding
    - Only pass-2 output reaches the Bundle
    - No state survives between calls; each call builds its own resolver
"""

from __future__ import annotations

import logging
from typing import List, Optional, Union

from google.protobuf import descriptor_pb2
from google.protobuf import message as protobuf_message

from .bundle import Bundle, new_bundle
from .codec import ImageEncoding, unmarshal_json, unmarshal_wire
from .errors import CodecError, DecodeError, DecodeStage, ResolutionError
from .instrument import StageObserver, observe
from .resolver import Resolver, build_resolver

logger = logging.getLogger(__name__)

_STAGE_FORMAT = {
    ImageEncoding.BINARY: "wire",
    ImageEncoding.JSON: "json",
}


def decode_tolerant(
    data: bytes,
    encoding: Union[ImageEncoding, str],
) -> List[descriptor_pb2.FileDescriptorProto]:
    """First pass: decode without a resolver.

    Args:
        data: Encoded FileDescriptorSet (or buf Image)
        encoding: ImageEncoding or its string value

    Returns:
        The image's files as static FileDescriptorProtos

    Raises:
        DecodeError: If the encoding is not supported
        CodecError: If the bytes cannot be decoded
    """
    encoding = ImageEncoding.parse(encoding)
    if encoding is ImageEncoding.BINARY:
        file_set = unmarshal_wire(data, descriptor_pb2.FileDescriptorSet)
    else:
        file_set = unmarshal_json(
            data,
            descriptor_pb2.FileDescriptorSet,
            ignore_unknown_fields=True,
        )
    return list(file_set.file)


def decode_resolved(
    data: bytes,
    encoding: Union[ImageEncoding, str],
    resolver: Resolver,
    ignore_unknown_fields: bool = False,
) -> List[protobuf_message.Message]:
    """Second pass: decode with message classes from `resolver`.

    Args:
        data: The same bytes given to decode_tolerant()
        encoding: ImageEncoding or its string value
        resolver: Resolver built from the first pass
        ignore_unknown_fields: JSON only; skip keys that still cannot be
            resolved instead of failing

    Returns:
        The image's files as resolver-bound messages: buf ImageFiles
        (FileDescriptorProto fields plus buf_extension) when the resolver
        provides buf's Image, FileDescriptorProtos otherwise

    Raises:
        DecodeError: If the encoding is not supported
        CodecError: If the bytes cannot be decoded
    """
    encoding = ImageEncoding.parse(encoding)
    set_class = resolver.message_class(resolver.image_message)
    if encoding is ImageEncoding.BINARY:
        file_set = unmarshal_wire(data, set_class)
    else:
        file_set = unmarshal_json(
            data,
            set_class,
            descriptor_pool=resolver.pool,
            ignore_unknown_fields=ignore_unknown_fields,
        )
    return list(file_set.file)


def decode_image(
    data: bytes,
    encoding: Union[ImageEncoding, str],
    *,
    observer: Optional[StageObserver] = None,
    strip_debug_info: bool = False,
    ignore_unknown_json_fields: bool = False,
) -> Bundle:
    """Decode an image with the two-pass bootstrap and build a Bundle.

    Args:
        data: Encoded image
        encoding: ImageEncoding or its string value
        observer: Receives a span per stage
        strip_debug_info: Remove source code info from the result
        ignore_unknown_json_fields: Passed to the JSON second pass

    Returns:
        New Bundle

    Raises:
        DecodeError: Tagged with the failing stage (unsupported_encoding,
            bootstrap, resolve, final)
        BundleError: If files share a path or a path is invalid

    Example:
        >>> bundle = decode_image(data, ImageEncoding.BINARY)
        >>> bundle.paths
        ('acme/options/options.proto', 'acme/user/v1/user.proto')
    """
    encoding = ImageEncoding.parse(encoding)
    stage_format = _STAGE_FORMAT[encoding]

    with observe(observer, f"first_{stage_format}_unmarshal"):
        try:
            first_files = decode_tolerant(data, encoding)
        except CodecError as e:
            raise DecodeError(
                f"could not unmarshal image: {e.message}",
                stage=DecodeStage.BOOTSTRAP,
            ) from e

    # Always permissive; closure is checked by verify_dependencies().
    with observe(observer, "new_resolver"):
        try:
            resolver = build_resolver(first_files)
        except ResolutionError as e:
            raise DecodeError(
                f"could not resolve image declarations: {e.message}",
                stage=DecodeStage.RESOLVE,
            ) from e

    with observe(observer, f"second_{stage_format}_unmarshal"):
        try:
            files = decode_resolved(
                data,
                encoding,
                resolver,
                ignore_unknown_fields=ignore_unknown_json_fields,
            )
        except CodecError as e:
            raise DecodeError(
                f"could not unmarshal image: {e.message}",
                stage=DecodeStage.FINAL,
            ) from e

    if resolver.unresolved:
        logger.debug(
            f"Decoded image with {len(resolver.unresolved)} unresolved files",
            extra={"unresolved": sorted(resolver.unresolved)},
        )

    with observe(observer, "build_bundle"):
        return new_bundle(files, strip_debug_info=strip_debug_info)
