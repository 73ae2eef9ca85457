"""
Error types for protoimage.

This module defines all exception types raised while reading an image:
- ProtoImageError: Base exception
- CodecError: Wire/JSON primitive failed to decode bytes
- DecodeError: A decode stage failed (tagged with the stage)
- ResolutionError: Declarations are structurally malformed
- BundleError: Bundle construction invariant violated
- FilterError: Path restriction failed
- FetchError / PathError: External collaborator failures

Invariants:
    - All errors inherit from ProtoImageError
    - Stage/kind tags are mirrored into `details` for programmatic handling
    - The same input always fails the same way (nothing here is retryable)
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class DecodeStage(str, Enum):
    """Stage of the two-pass decode that produced a DecodeError."""

    UNSUPPORTED_ENCODING = "unsupported_encoding"
    BOOTSTRAP = "bootstrap"
    RESOLVE = "resolve"
    FINAL = "final"


class ResolutionErrorKind(str, Enum):
    """Structural problems found while building a resolver."""

    DUPLICATE_TYPE = "duplicate_type"
    DUPLICATE_FIELD_NUMBER = "duplicate_field_number"
    DUPLICATE_FIELD_NAME = "duplicate_field_name"
    INVALID_FIELD_NUMBER = "invalid_field_number"
    DUPLICATE_EXTENSION = "duplicate_extension"
    IMPORT_CYCLE = "import_cycle"


class BundleErrorKind(str, Enum):
    """Bundle construction failures."""

    DUPLICATE_IDENTIFIER = "duplicate_identifier"
    INVALID_IDENTIFIER = "invalid_identifier"
    MISSING_DEPENDENCY = "missing_dependency"


class FilterErrorKind(str, Enum):
    """Bundle filter failures."""

    PATH_TRANSLATION = "path_translation"
    NOT_FOUND = "not_found"


class ProtoImageError(Exception):
    """Base exception for all protoimage errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "PROTOIMAGE_ERROR"
        self.details = details or {}

    def with_prefix(self, prefix: str) -> ProtoImageError:
        """Prefix the message (e.g. with the input flag name) and return self."""
        self.message = f"{prefix}: {self.message}"
        self.args = (self.message,)
        return self

    def add_close_error(self, error: BaseException) -> None:
        """Record a release failure that happened while this error propagated."""
        close_errors: List[str] = self.details.setdefault("close_errors", [])
        close_errors.append(str(error))


class CodecError(ProtoImageError):
    """A decode primitive rejected the input bytes.

    Raised when:
    - Binary data is not a valid protobuf encoding
    - JSON data is not valid UTF-8 or not a valid protobuf JSON mapping
    """

    def __init__(self, message: str, encoding: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CODEC_ERROR",
            details={"encoding": encoding},
        )
        self.encoding = encoding


class DecodeError(ProtoImageError):
    """Decoding an image failed.

    The `stage` tells callers whether the bytes were bad (bootstrap/final),
    the declarations were malformed (resolve), or the encoding tag was not
    recognized (unsupported_encoding).
    """

    def __init__(self, message: str, stage: DecodeStage) -> None:
        super().__init__(
            message,
            code="DECODE_ERROR",
            details={"stage": stage.value},
        )
        self.stage = stage


class ResolutionError(ProtoImageError):
    """Declarations in the image are structurally malformed.

    Never raised for references that merely cannot be resolved.

    Attributes:
        kind: What kind of malformation was found
        name: The offending declaration (type, field or file name)
    """

    def __init__(
        self,
        message: str,
        kind: ResolutionErrorKind,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="RESOLUTION_ERROR",
            details={"kind": kind.value, "name": name},
        )
        self.kind = kind
        self.name = name


class BundleError(ProtoImageError):
    """A Bundle could not be constructed.

    Attributes:
        kind: Which invariant was violated
        identifier: The member path involved
    """

    def __init__(
        self,
        message: str,
        kind: BundleErrorKind,
        identifier: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="BUNDLE_ERROR",
            details={"kind": kind.value, "identifier": identifier},
        )
        self.kind = kind
        self.identifier = identifier


class FilterError(ProtoImageError):
    """Restricting a Bundle to a set of paths failed.

    Attributes:
        kind: path_translation or not_found
        path: The external path that failed
        identifier: The translated member path, if translation succeeded
    """

    def __init__(
        self,
        message: str,
        kind: FilterErrorKind,
        path: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="FILTER_ERROR",
            details={"kind": kind.value, "path": path, "identifier": identifier},
        )
        self.kind = kind
        self.path = path
        self.identifier = identifier


class FetchError(ProtoImageError):
    """The raw image bytes could not be obtained.

    Raised when:
    - The image reference cannot be parsed
    - The file cannot be opened, read or closed
    - The image exceeds the configured size limit
    """

    def __init__(self, message: str, reference: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="FETCH_ERROR",
            details={"reference": reference},
        )
        self.reference = reference


class PathError(ProtoImageError):
    """An external path cannot be translated into a member path."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="PATH_ERROR",
            details={"path": path},
        )
        self.path = path
