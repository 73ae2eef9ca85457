"""
Resolver construction for the second decode pass.

An image can carry custom options (extensions of google.protobuf.*Options)
whose definitions live inside the image itself. The Resolver is built from
a best-effort first decode and provides the descriptor pool and message
classes that let the second decode interpret those options.

Invariants:
    - A fresh DescriptorPool per Resolver; nothing is added to the default pool
    - google/protobuf/descriptor.proto is always present in the pool
    - Imports missing from the image are satisfied only from the runtime's
      well-known files (WELL_KNOWN_FILES), never from the default pool
    - buf's Image wrapper (buf/alpha/image/v1/image.proto) is added unless
      the image declares something in buf.alpha.image.v1 itself
    - Unresolvable references never fail the build (permissive policy);
      affected files are listed in `Resolver.unresolved`
    - ResolutionError is raised only for structurally malformed declarations

How to change safely:
    - Strict reference checking belongs in a separate verification pass
      (see bundle.verify_dependencies), not in this module
    - Keep the structural scan independent from pool building so the
      malformation checks behave the same on every protobuf backend
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Type

from google.protobuf import any_pb2
from google.protobuf import api_pb2
from google.protobuf import descriptor
from google.protobuf import descriptor_pb2
from google.protobuf import descriptor_pool
from google.protobuf import duration_pb2
from google.protobuf import empty_pb2
from google.protobuf import field_mask_pb2
from google.protobuf import message as protobuf_message
from google.protobuf import message_factory
from google.protobuf import source_context_pb2
from google.protobuf import struct_pb2
from google.protobuf import timestamp_pb2
from google.protobuf import type_pb2
from google.protobuf import wrappers_pb2

from .errors import ResolutionError, ResolutionErrorKind

logger = logging.getLogger(__name__)

DESCRIPTOR_FILE = "google/protobuf/descriptor.proto"
FILE_DESCRIPTOR_SET = "google.protobuf.FileDescriptorSet"
FILE_DESCRIPTOR_PROTO = "google.protobuf.FileDescriptorProto"

# buf's image wrapper: ImageFile is FileDescriptorProto plus buf_extension.
BUF_IMAGE_FILE = "buf/alpha/image/v1/image.proto"
BUF_IMAGE_PACKAGE = "buf.alpha.image.v1"
IMAGE = f"{BUF_IMAGE_PACKAGE}.Image"
IMAGE_FILE = f"{BUF_IMAGE_PACKAGE}.ImageFile"
BUF_EXTENSION_FIELD = "buf_extension"
BUF_EXTENSION_NUMBER = 8042

# 2^29 - 1
MAX_FIELD_NUMBER = 536870911

_FDP = descriptor_pb2.FieldDescriptorProto

# Files shipped with the protobuf runtime. These, and only these, may be
# used to satisfy an import the image itself does not carry.
_WELL_KNOWN: Mapping[str, descriptor.FileDescriptor] = MappingProxyType(
    {
        module.DESCRIPTOR.name: module.DESCRIPTOR
        for module in (
            any_pb2,
            api_pb2,
            descriptor_pb2,
            duration_pb2,
            empty_pb2,
            field_mask_pb2,
            source_context_pb2,
            struct_pb2,
            timestamp_pb2,
            type_pb2,
            wrappers_pb2,
        )
    }
)
WELL_KNOWN_FILES = frozenset(_WELL_KNOWN)


def is_well_known_file(name: str) -> bool:
    """Whether `name` is a well-known file the resolver can supply itself."""
    return name in _WELL_KNOWN


@dataclass(frozen=True)
class Declaration:
    """A message or enum declared somewhere in the image.

    Attributes:
        full_name: Fully-qualified name without a leading dot
        file_name: Name of the declaring file
        kind: "message" or "enum"
        proto: The DescriptorProto or EnumDescriptorProto
    """

    full_name: str
    file_name: str
    kind: str
    proto: protobuf_message.Message


class Resolver:
    """Read-only name/number lookup built from a first-pass decode.

    Attributes:
        pool: Descriptor pool containing every file that could be built
        file_names: Files present in the pool (including seeded well-known files)
        unresolved: File name -> reason, for files left out of the pool
        image_message: Full name of the top-level message the second pass
            decodes: buf.alpha.image.v1.Image, or FileDescriptorSet when the
            image's own declarations leave no room for it

    Example:
        >>> resolver = build_resolver(first_pass_files)
        >>> resolver.find_extension("google.protobuf.FieldOptions", 50001).name
        'sensitive'
        >>> image_class = resolver.message_class(resolver.image_message)
    """

    def __init__(
        self,
        pool: descriptor_pool.DescriptorPool,
        file_names: Sequence[str],
        unresolved: Mapping[str, str],
        declarations: Mapping[str, Declaration],
        fields: Mapping[Tuple[str, int], descriptor_pb2.FieldDescriptorProto],
        extensions: Mapping[Tuple[str, int], descriptor_pb2.FieldDescriptorProto],
        classes: Mapping[str, Type[protobuf_message.Message]],
        image_message: str = FILE_DESCRIPTOR_SET,
    ) -> None:
        self.pool = pool
        self.file_names: Tuple[str, ...] = tuple(file_names)
        self.unresolved: Mapping[str, str] = MappingProxyType(dict(unresolved))
        self.image_message = image_message
        self._declarations = MappingProxyType(dict(declarations))
        self._fields = MappingProxyType(dict(fields))
        self._extensions = MappingProxyType(dict(extensions))
        self._classes = MappingProxyType(dict(classes))

    def find_declaration(self, full_name: str) -> Optional[Declaration]:
        """Look up a message or enum by fully-qualified name."""
        return self._declarations.get(_strip_dot(full_name))

    def find_message(self, full_name: str) -> Optional[descriptor_pb2.DescriptorProto]:
        """Look up a message declaration by fully-qualified name."""
        declaration = self.find_declaration(full_name)
        if declaration is None or declaration.kind != "message":
            return None
        return declaration.proto

    def find_field(
        self, message_name: str, number: int
    ) -> Optional[descriptor_pb2.FieldDescriptorProto]:
        """Look up a field of an image-declared message by number."""
        return self._fields.get((_strip_dot(message_name), number))

    def find_extension(
        self, extendee: str, number: int
    ) -> Optional[descriptor_pb2.FieldDescriptorProto]:
        """Look up an extension declared in the image by extendee and number."""
        return self._extensions.get((_strip_dot(extendee), number))

    def extensions(self) -> Iterator[Tuple[str, int]]:
        """Iterate over (extendee, number) of every declared extension."""
        yield from self._extensions.keys()

    def message_class(self, full_name: str) -> Type[protobuf_message.Message]:
        """Message class bound to this resolver's pool.

        Raises:
            KeyError: If the message is not in the pool
        """
        full_name = _strip_dot(full_name)
        cls = self._classes.get(full_name)
        if cls is None:
            cls = message_factory.GetMessageClass(self.pool.FindMessageTypeByName(full_name))
        return cls


def _strip_dot(name: str) -> str:
    return name[1:] if name.startswith(".") else name


class _DeclarationScanner:
    """Collects declarations and rejects structurally malformed ones."""

    def __init__(self) -> None:
        self.declarations: Dict[str, Declaration] = {}
        self.fields: Dict[Tuple[str, int], descriptor_pb2.FieldDescriptorProto] = {}
        self.extensions: Dict[Tuple[str, int], descriptor_pb2.FieldDescriptorProto] = {}

    def scan_file(self, file: descriptor_pb2.FileDescriptorProto) -> None:
        prefix = f"{file.package}." if file.package else ""
        for message in file.message_type:
            self._scan_message(file.name, prefix, message)
        for enum in file.enum_type:
            self._declare(file.name, prefix + enum.name, "enum", enum)
        for extension in file.extension:
            self._scan_extension(file.name, extension)

    def _scan_message(
        self,
        file_name: str,
        prefix: str,
        message: descriptor_pb2.DescriptorProto,
    ) -> None:
        full_name = prefix + message.name
        self._declare(file_name, full_name, "message", message)

        names: Set[str] = set()
        for field in message.field:
            _check_number(full_name, field)
            key = (full_name, field.number)
            if key in self.fields:
                raise ResolutionError(
                    f"field number {field.number} used by both "
                    f"'{self.fields[key].name}' and '{field.name}' in {full_name}",
                    kind=ResolutionErrorKind.DUPLICATE_FIELD_NUMBER,
                    name=f"{full_name}.{field.name}",
                )
            if field.name in names:
                raise ResolutionError(
                    f"field name '{field.name}' declared twice in {full_name}",
                    kind=ResolutionErrorKind.DUPLICATE_FIELD_NAME,
                    name=f"{full_name}.{field.name}",
                )
            names.add(field.name)
            self.fields[key] = field

        nested_prefix = f"{full_name}."
        for nested in message.nested_type:
            self._scan_message(file_name, nested_prefix, nested)
        for enum in message.enum_type:
            self._declare(file_name, nested_prefix + enum.name, "enum", enum)
        for extension in message.extension:
            self._scan_extension(file_name, extension)

    def _scan_extension(
        self,
        file_name: str,
        extension: descriptor_pb2.FieldDescriptorProto,
    ) -> None:
        extendee = _strip_dot(extension.extendee)
        _check_number(extendee, extension)
        key = (extendee, extension.number)
        existing = self.extensions.get(key)
        if existing is not None:
            raise ResolutionError(
                f"extension number {extension.number} of {extendee} declared by both "
                f"'{existing.name}' and '{extension.name}' (in {file_name})",
                kind=ResolutionErrorKind.DUPLICATE_EXTENSION,
                name=extension.name,
            )
        self.extensions[key] = extension

    def _declare(
        self,
        file_name: str,
        full_name: str,
        kind: str,
        proto: protobuf_message.Message,
    ) -> None:
        existing = self.declarations.get(full_name)
        if existing is not None:
            raise ResolutionError(
                f"type {full_name} declared in both {existing.file_name} and {file_name}",
                kind=ResolutionErrorKind.DUPLICATE_TYPE,
                name=full_name,
            )
        self.declarations[full_name] = Declaration(full_name, file_name, kind, proto)


def _check_number(scope: str, field: descriptor_pb2.FieldDescriptorProto) -> None:
    if not 1 <= field.number <= MAX_FIELD_NUMBER:
        raise ResolutionError(
            f"field '{field.name}' of {scope} has invalid number {field.number}",
            kind=ResolutionErrorKind.INVALID_FIELD_NUMBER,
            name=f"{scope}.{field.name}",
        )


def _dependency_order(
    files_by_name: Mapping[str, descriptor_pb2.FileDescriptorProto],
) -> List[str]:
    """Order files so every in-image dependency precedes its importers.

    Input order is kept wherever the import graph allows it.

    Raises:
        ResolutionError: If the in-image import graph has a cycle
    """
    ordered: List[str] = []
    done: Set[str] = set()

    def in_image_dependencies(name: str) -> Iterator[str]:
        return (dep for dep in files_by_name[name].dependency if dep in files_by_name)

    # Depth-first with an explicit stack; import chains can be deeper than
    # the interpreter's recursion limit.
    for root in files_by_name:
        if root in done:
            continue
        visiting: List[str] = [root]
        on_path: Set[str] = {root}
        pending: List[Iterator[str]] = [in_image_dependencies(root)]
        while pending:
            dependency = next(pending[-1], None)
            if dependency is None:
                name = visiting.pop()
                pending.pop()
                on_path.discard(name)
                done.add(name)
                ordered.append(name)
                continue
            if dependency in done:
                continue
            if dependency in on_path:
                cycle = visiting[visiting.index(dependency):] + [dependency]
                raise ResolutionError(
                    f"import cycle: {' -> '.join(cycle)}",
                    kind=ResolutionErrorKind.IMPORT_CYCLE,
                    name=dependency,
                )
            visiting.append(dependency)
            on_path.add(dependency)
            pending.append(in_image_dependencies(dependency))
    return ordered


def _seed_well_known(
    pool: descriptor_pool.DescriptorPool,
    file_name: str,
    in_pool: Set[str],
) -> bool:
    """Copy a file the protobuf runtime ships (and its imports) into `pool`.

    Only the runtime's well-known files are eligible. Other files the host
    process happens to have loaded are never consulted.
    """
    if file_name in in_pool:
        return True
    file_descriptor = _WELL_KNOWN.get(file_name)
    if file_descriptor is None:
        return False
    for dependency in file_descriptor.dependencies:
        if not _seed_well_known(pool, dependency.name, in_pool):
            return False
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_descriptor.CopyToProto(file_proto)
    pool.AddSerializedFile(file_proto.SerializeToString())
    in_pool.add(file_name)
    logger.debug(f"Seeded resolver with well-known file {file_name}")
    return True


def _field(
    message: descriptor_pb2.DescriptorProto,
    name: str,
    number: int,
    field_type: int,
    json_name: str,
    type_name: str = "",
    repeated: bool = False,
) -> None:
    message.field.add(
        name=name,
        number=number,
        label=_FDP.LABEL_REPEATED if repeated else _FDP.LABEL_OPTIONAL,
        type=field_type,
        type_name=type_name,
        json_name=json_name,
    )


def _buf_image_file(pool: descriptor_pool.DescriptorPool) -> descriptor_pb2.FileDescriptorProto:
    """Declarations of buf's Image, ImageFile and ImageFileExtension.

    ImageFile copies FileDescriptorProto from `pool`, so it always matches
    the descriptor.proto the image is decoded against, and adds
    `buf_extension` (field 8042).
    """
    prefix = f".{BUF_IMAGE_PACKAGE}"
    file = descriptor_pb2.FileDescriptorProto(
        name=BUF_IMAGE_FILE,
        package=BUF_IMAGE_PACKAGE,
        syntax="proto2",
        dependency=[DESCRIPTOR_FILE],
    )

    image = file.message_type.add(name="Image")
    _field(image, "file", 1, _FDP.TYPE_MESSAGE, "file", f"{prefix}.ImageFile", repeated=True)

    image_file = file.message_type.add()
    pool.FindMessageTypeByName(FILE_DESCRIPTOR_PROTO).CopyToProto(image_file)
    image_file.name = "ImageFile"
    _field(
        image_file,
        BUF_EXTENSION_FIELD,
        BUF_EXTENSION_NUMBER,
        _FDP.TYPE_MESSAGE,
        "bufExtension",
        f"{prefix}.ImageFileExtension",
    )

    extension = file.message_type.add(name="ImageFileExtension")
    _field(extension, "is_import", 1, _FDP.TYPE_BOOL, "isImport")
    _field(extension, "module_info", 2, _FDP.TYPE_MESSAGE, "moduleInfo", f"{prefix}.ModuleInfo")
    _field(extension, "is_syntax_unspecified", 3, _FDP.TYPE_BOOL, "isSyntaxUnspecified")
    _field(extension, "unused_dependency", 4, _FDP.TYPE_INT32, "unusedDependency", repeated=True)

    module_info = file.message_type.add(name="ModuleInfo")
    _field(module_info, "name", 1, _FDP.TYPE_MESSAGE, "name", f"{prefix}.ModuleName")
    _field(module_info, "commit", 2, _FDP.TYPE_STRING, "commit")

    module_name = file.message_type.add(name="ModuleName")
    _field(module_name, "remote", 1, _FDP.TYPE_STRING, "remote")
    _field(module_name, "owner", 2, _FDP.TYPE_STRING, "owner")
    _field(module_name, "repository", 3, _FDP.TYPE_STRING, "repository")
    return file


def _add_buf_image(
    pool: descriptor_pool.DescriptorPool,
    files_by_name: Mapping[str, descriptor_pb2.FileDescriptorProto],
    declarations: Mapping[str, Declaration],
    in_pool: Set[str],
) -> str:
    """Make buf's Image available to the second pass if the image allows it.

    Returns:
        Full name of the message the second pass should decode
    """
    if BUF_IMAGE_FILE in files_by_name or any(
        name.startswith(f"{BUF_IMAGE_PACKAGE}.") for name in declarations
    ):
        # The image brings its own definitions (or conflicting ones).
        if BUF_IMAGE_FILE in in_pool and IMAGE in declarations:
            return IMAGE
        return FILE_DESCRIPTOR_SET
    try:
        pool.AddSerializedFile(_buf_image_file(pool).SerializeToString())
    except (TypeError, KeyError, ValueError) as e:
        logger.debug(f"Decoding without buf image wrapper: {e}")
        return FILE_DESCRIPTOR_SET
    in_pool.add(BUF_IMAGE_FILE)
    return IMAGE


def build_resolver(files: Sequence[descriptor_pb2.FileDescriptorProto]) -> Resolver:
    """Build a Resolver from first-pass file declarations.

    Args:
        files: FileDescriptorProtos from a tolerant decode, in image order

    Returns:
        Resolver whose pool holds every file that could be built

    Raises:
        ResolutionError: If the declarations are structurally malformed
            (duplicate types, duplicate/invalid field numbers, import cycles)

    Example:
        >>> files = decode_tolerant(data, ImageEncoding.BINARY)
        >>> resolver = build_resolver(files)
        >>> resolver.unresolved
        mappingproxy({})
    """
    files_by_name: Dict[str, descriptor_pb2.FileDescriptorProto] = {}
    for file in files:
        if file.name in files_by_name:
            # Member identity is enforced when the bundle is built.
            logger.debug(f"Resolver skipping repeated file {file.name}")
            continue
        files_by_name[file.name] = file

    scanner = _DeclarationScanner()
    for file in files_by_name.values():
        scanner.scan_file(file)

    pool = descriptor_pool.DescriptorPool()
    in_pool: Set[str] = set()
    unresolved: Dict[str, str] = {}

    for name in _dependency_order(files_by_name):
        file = files_by_name[name]
        reason = _unmet_dependency(file, files_by_name, pool, in_pool, unresolved)
        if reason is None:
            try:
                pool.AddSerializedFile(file.SerializeToString())
                in_pool.add(name)
                continue
            except (TypeError, KeyError, ValueError) as e:
                reason = f"could not build descriptor: {e}"
        unresolved[name] = reason
        logger.debug(f"Deferring unresolvable file {name}: {reason}")

    if DESCRIPTOR_FILE not in in_pool:
        _seed_well_known(pool, DESCRIPTOR_FILE, in_pool)
    image_message = _add_buf_image(pool, files_by_name, scanner.declarations, in_pool)

    file_names = sorted(in_pool)
    classes = message_factory.GetMessageClassesForFiles(file_names, pool)
    logger.debug(
        f"Built resolver with {len(in_pool)} files, "
        f"{len(scanner.extensions)} image extensions, {len(unresolved)} unresolved"
    )
    return Resolver(
        pool=pool,
        file_names=file_names,
        unresolved=unresolved,
        declarations=scanner.declarations,
        fields=scanner.fields,
        extensions=scanner.extensions,
        classes=classes,
        image_message=image_message,
    )


def _unmet_dependency(
    file: descriptor_pb2.FileDescriptorProto,
    files_by_name: Mapping[str, descriptor_pb2.FileDescriptorProto],
    pool: descriptor_pool.DescriptorPool,
    in_pool: Set[str],
    unresolved: Mapping[str, str],
) -> Optional[str]:
    """Reason `file` cannot be added to the pool yet, or None."""
    for dependency in file.dependency:
        if dependency in unresolved:
            return f"depends on unresolved file {dependency}"
        if dependency in files_by_name:
            continue
        if not _seed_well_known(pool, dependency, in_pool):
            return f"dependency {dependency} not found"
    return None
