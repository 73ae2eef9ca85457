"""
protoimage - read protobuf images that carry their own custom options.

An image is a FileDescriptorSet (or a buf Image, which is wire-compatible)
encoded as binary or JSON. Files in an image may use custom options whose
definitions live in other files of the same image, so decoding needs a
resolver that can only be built from the image itself.

Pipeline:
    bytes ──▶ pass 1 (no resolver) ──▶ build_resolver ──▶ pass 2 (resolver)
                                                              │
                                    restrict_to ◀── new_bundle ◀┘

Invariants:
    - One image per call, no state shared between calls
    - Bundles are immutable; filtering derives new Bundles
    - Unresolvable imports never fail a read (see bundle.verify_dependencies)

Example:
    >>> from schemasvc.protoimage import get_bundle
    >>> bundle = get_bundle(data, "bin", ["acme/user/v1/user.proto"])
"""

from ._version import __version__
from .bundle import Bundle, Member, new_bundle, verify_dependencies
from .codec import ImageEncoding
from .decoder import decode_image, decode_resolved, decode_tolerant
from .errors import (
    BundleError,
    BundleErrorKind,
    CodecError,
    DecodeError,
    DecodeStage,
    FetchError,
    FilterError,
    FilterErrorKind,
    PathError,
    ProtoImageError,
    ResolutionError,
    ResolutionErrorKind,
)
from .filter import MemberPathIndex, restrict_to, strip_debug_info
from .reader import ImageReader, get_bundle
from .resolver import Resolver, build_resolver

__all__ = [
    "__version__",
    # Entry points
    "get_bundle",
    "ImageReader",
    # Decoding
    "ImageEncoding",
    "decode_image",
    "decode_tolerant",
    "decode_resolved",
    "Resolver",
    "build_resolver",
    # Bundle
    "Bundle",
    "Member",
    "new_bundle",
    "verify_dependencies",
    "MemberPathIndex",
    "restrict_to",
    "strip_debug_info",
    # Errors
    "ProtoImageError",
    "CodecError",
    "DecodeError",
    "DecodeStage",
    "ResolutionError",
    "ResolutionErrorKind",
    "BundleError",
    "BundleErrorKind",
    "FilterError",
    "FilterErrorKind",
    "FetchError",
    "PathError",
]
