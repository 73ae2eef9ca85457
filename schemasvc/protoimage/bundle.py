"""
In-memory image representation.

A Bundle is the immutable result of reading an image: an ordered sequence
of Members, one per FileDescriptorProto, each identified by its file path.

Invariants:
    - No two Members share a path
    - Member paths are normalized relative paths
    - Member order is the input order and is preserved by every derivation
    - A Bundle owns copies of its file messages; derived Bundles (filtered,
      stripped) hold their own copies and never alias the source
    - Dependencies may dangle; closure is checked only by verify_dependencies()
    - Imports of the runtime's well-known files count as satisfied, matching
      the files the resolver supplies itself
    - Member.file is always a FileDescriptorProto; buf's per-file extension
      survives only as Member.is_import

How to change safely:
    - Never mutate `Member.file` in place; derive a new Member instead
    - Equality is defined on deterministic bytes so that bundles decoded
      with different descriptor pools compare equal when content matches
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from functools import cached_property
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

from google.protobuf import descriptor_pb2
from google.protobuf import message as protobuf_message
from google.protobuf import message_factory

from .codec import marshal_wire
from .errors import BundleError, BundleErrorKind
from .paths import is_normalized
from .resolver import (
    BUF_EXTENSION_FIELD,
    FILE_DESCRIPTOR_PROTO,
    FILE_DESCRIPTOR_SET,
    is_well_known_file,
)

logger = logging.getLogger(__name__)


def _copy_message(message: protobuf_message.Message) -> protobuf_message.Message:
    copy = type(message)()
    copy.CopyFrom(message)
    return copy


def _split_image_file(
    image_file: protobuf_message.Message,
) -> Tuple[protobuf_message.Message, bool]:
    """Turn a buf ImageFile into (FileDescriptorProto, is_import).

    The FileDescriptorProto class comes from the ImageFile's own pool, so
    interpreted custom options stay interpreted.
    """
    is_import = False
    if image_file.HasField(BUF_EXTENSION_FIELD):
        is_import = bool(getattr(getattr(image_file, BUF_EXTENSION_FIELD), "is_import", False))
    stripped = _copy_message(image_file)
    stripped.ClearField(BUF_EXTENSION_FIELD)
    pool = image_file.DESCRIPTOR.file.pool
    file_class = message_factory.GetMessageClass(
        pool.FindMessageTypeByName(FILE_DESCRIPTOR_PROTO)
    )
    return file_class.FromString(stripped.SerializeToString()), is_import


@dataclass(frozen=True, eq=False)
class Member:
    """One file of an image.

    Attributes:
        path: The file's declared name, e.g. "acme/user/v1/user.proto"
        file: The FileDescriptorProto (static or resolver-generated class)
        is_import: buf marked the file as an import rather than a target
            of the build that produced the image
    """

    path: str
    file: protobuf_message.Message
    is_import: bool = False

    @classmethod
    def from_file(cls, file: protobuf_message.Message) -> Member:
        """Create a Member owning a copy of `file`.

        `file` may be a FileDescriptorProto or a buf ImageFile; an ImageFile
        is converted and its import marker kept.
        """
        if BUF_EXTENSION_FIELD in file.DESCRIPTOR.fields_by_name:
            file_proto, is_import = _split_image_file(file)
            return cls(path=file_proto.name, file=file_proto, is_import=is_import)
        return cls(path=file.name, file=_copy_message(file))

    @property
    def dependencies(self) -> Tuple[str, ...]:
        """Paths of the files this member imports."""
        return tuple(self.file.dependency)

    @property
    def has_debug_info(self) -> bool:
        """Whether source code info (positions, comments) is present."""
        return self.file.HasField("source_code_info")

    def to_bytes(self) -> bytes:
        """Deterministic binary encoding of the file."""
        return marshal_wire(self.file)

    def copy(self) -> Member:
        """Return a Member with its own copy of the file."""
        return Member(path=self.path, file=_copy_message(self.file), is_import=self.is_import)

    def without_debug_info(self) -> Member:
        """Return a copy of this member with source code info removed."""
        file = _copy_message(self.file)
        file.ClearField("source_code_info")
        return Member(path=self.path, file=file, is_import=self.is_import)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Member):
            return NotImplemented
        return (
            self.path == other.path
            and self.is_import == other.is_import
            and self.to_bytes() == other.to_bytes()
        )

    def __hash__(self) -> int:
        return hash((self.path, self.is_import, self.to_bytes()))

    def __repr__(self) -> str:
        return f"Member(path={self.path!r})"


@dataclass(frozen=True)
class Bundle:
    """Immutable, ordered set of Members keyed by path.

    Attributes:
        members: Members in image order

    Example:
        >>> bundle = new_bundle(file_set.file)
        >>> bundle.paths
        ('acme/options/options.proto', 'acme/user/v1/user.proto')
        >>> bundle.get("acme/user/v1/user.proto").dependencies
        ('acme/options/options.proto',)
    """

    members: Tuple[Member, ...] = ()
    _by_path: Mapping[str, Member] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        """Index members by path and enforce path invariants."""
        members = tuple(self.members)
        by_path: Dict[str, Member] = {}
        for member in members:
            if not is_normalized(member.path):
                raise BundleError(
                    f"invalid file path {member.path!r}: must be a normalized relative path",
                    kind=BundleErrorKind.INVALID_IDENTIFIER,
                    identifier=member.path,
                )
            if member.path in by_path:
                raise BundleError(
                    f"duplicate file in image: {member.path}",
                    kind=BundleErrorKind.DUPLICATE_IDENTIFIER,
                    identifier=member.path,
                )
            by_path[member.path] = member
        object.__setattr__(self, "members", members)
        object.__setattr__(self, "_by_path", MappingProxyType(by_path))

    @property
    def paths(self) -> Tuple[str, ...]:
        """Member paths in image order."""
        return tuple(member.path for member in self.members)

    def get(self, path: str) -> Optional[Member]:
        """Get a member by path, or None."""
        return self._by_path.get(path)

    def __contains__(self, path: object) -> bool:
        return path in self._by_path

    def __iter__(self) -> Iterator[Member]:
        return iter(self.members)

    def __len__(self) -> int:
        return len(self.members)

    def to_proto(self) -> protobuf_message.Message:
        """Build a FileDescriptorSet holding copies of every member's file.

        The set uses the same descriptor pool as the members when possible,
        so interpreted custom options stay interpreted (e.g. for JSON output).
        """
        set_class = descriptor_pb2.FileDescriptorSet
        if self.members:
            pool = self.members[0].file.DESCRIPTOR.file.pool
            set_class = message_factory.GetMessageClass(
                pool.FindMessageTypeByName(FILE_DESCRIPTOR_SET)
            )
        file_set = set_class()
        for member in self.members:
            file_set.file.add().MergeFromString(member.to_bytes())
        return file_set

    @cached_property
    def fingerprint(self) -> str:
        """SHA-256 fingerprint of the deterministic binary encoding.

        Returns:
            Fingerprint string in format 'sha256:<hash>'
        """
        digest = hashlib.sha256()
        for member in self.members:
            data = member.to_bytes()
            digest.update(len(data).to_bytes(8, "big"))
            digest.update(data)
        return f"sha256:{digest.hexdigest()}"

    def unresolved_dependencies(self) -> Dict[str, Tuple[str, ...]]:
        """Map member path -> imports that are not members of this bundle.

        Imports of the runtime's well-known files (google/protobuf/any.proto,
        descriptor.proto, ...) are satisfied without being members.
        """
        missing: Dict[str, Tuple[str, ...]] = {}
        for member in self.members:
            absent = tuple(
                dep
                for dep in member.dependencies
                if dep not in self._by_path and not is_well_known_file(dep)
            )
            if absent:
                missing[member.path] = absent
        return missing


def new_bundle(
    files: Iterable[protobuf_message.Message],
    strip_debug_info: bool = False,
) -> Bundle:
    """Build a Bundle from fully-resolved file messages.

    Every file is copied; the caller's messages are never modified.

    Args:
        files: FileDescriptorProto messages in image order
        strip_debug_info: Remove source code info from the copies

    Returns:
        New Bundle

    Raises:
        BundleError: If two files share a path or a path is not normalized
    """
    members = []
    for file in files:
        member = Member.from_file(file)
        if strip_debug_info:
            member.file.ClearField("source_code_info")
        members.append(member)
    bundle = Bundle(tuple(members))
    logger.debug(f"Built bundle with {len(bundle)} files")
    return bundle


def verify_dependencies(bundle: Bundle) -> None:
    """Check that every import of every member is a member of the bundle.

    Imports of the runtime's well-known files are accepted without a member.

    Reading an image never requires this; callers that need a closed
    image run it explicitly after construction.

    Raises:
        BundleError: With kind missing_dependency for the first gap found
    """
    unresolved = bundle.unresolved_dependencies()
    if not unresolved:
        return
    path, missing = next(iter(unresolved.items()))
    raise BundleError(
        f"{path} imports {', '.join(missing)}, which is not in the image",
        kind=BundleErrorKind.MISSING_DEPENDENCY,
        identifier=path,
    )
