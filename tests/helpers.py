"""
Fixture image builders for protoimage tests.

The fixture image has two files:
- acme/options/options.proto defines a custom field option
  `acme.options.sensitive` (extension 50001 of google.protobuf.FieldOptions)
- acme/user/v1/user.proto uses it once, on field User.ssn

buf writes the same files as an Image, where each file also carries
`buf_extension` (field 8042) marking whether it is an import.

The option value is merged into FieldOptions as raw bytes, so nothing is
ever registered in the default descriptor pool.
"""

import json
from typing import Any, Dict, Iterable, List

from google.protobuf import descriptor_pb2, json_format

SENSITIVE_NUMBER = 50001
SENSITIVE_NAME = "acme.options.sensitive"

OPTIONS_PATH = "acme/options/options.proto"
USER_PATH = "acme/user/v1/user.proto"
MONEY_PATH = "acme/common/v1/money.proto"

FDP = descriptor_pb2.FieldDescriptorProto


def encode_varint(value: int) -> bytes:
    """Encode an unsigned protobuf varint."""
    out = bytearray()
    while True:
        bits = value & 0x7F
        value >>= 7
        if value:
            out.append(bits | 0x80)
        else:
            out.append(bits)
            return bytes(out)


def sensitive_option_bytes(value: bool = True) -> bytes:
    """Wire encoding of `[acme.options.sensitive] = value`."""
    return encode_varint(SENSITIVE_NUMBER << 3) + encode_varint(int(value))


def make_options_file() -> descriptor_pb2.FileDescriptorProto:
    file = descriptor_pb2.FileDescriptorProto(
        name=OPTIONS_PATH,
        package="acme.options",
        syntax="proto3",
        dependency=["google/protobuf/descriptor.proto"],
    )
    file.extension.add(
        name="sensitive",
        number=SENSITIVE_NUMBER,
        label=FDP.LABEL_OPTIONAL,
        type=FDP.TYPE_BOOL,
        extendee=".google.protobuf.FieldOptions",
        json_name="sensitive",
    )
    return file


def make_user_file(with_source_info: bool = True) -> descriptor_pb2.FileDescriptorProto:
    file = descriptor_pb2.FileDescriptorProto(
        name=USER_PATH,
        package="acme.user.v1",
        syntax="proto3",
        dependency=[OPTIONS_PATH],
    )
    user = file.message_type.add(name="User")
    user.field.add(
        name="id", number=1, label=FDP.LABEL_OPTIONAL, type=FDP.TYPE_STRING, json_name="id"
    )
    ssn = user.field.add(
        name="ssn", number=2, label=FDP.LABEL_OPTIONAL, type=FDP.TYPE_STRING, json_name="ssn"
    )
    ssn.options.SetInParent()
    ssn.options.MergeFromString(sensitive_option_bytes())
    if with_source_info:
        location = file.source_code_info.location.add()
        location.path.extend([4, 0])
        location.span.extend([5, 0, 8, 1])
        location.leading_comments = " A registered user.\n"
    return file


def make_money_file() -> descriptor_pb2.FileDescriptorProto:
    file = descriptor_pb2.FileDescriptorProto(
        name=MONEY_PATH,
        package="acme.common.v1",
        syntax="proto3",
    )
    money = file.message_type.add(name="Money")
    money.field.add(
        name="currency_code",
        number=1,
        label=FDP.LABEL_OPTIONAL,
        type=FDP.TYPE_STRING,
        json_name="currencyCode",
    )
    money.field.add(
        name="units", number=2, label=FDP.LABEL_OPTIONAL, type=FDP.TYPE_INT64, json_name="units"
    )
    location = file.source_code_info.location.add()
    location.path.extend([4, 0])
    location.span.extend([3, 0, 6, 1])
    return file


def make_file(
    name: str,
    package: str = "",
    dependency: Iterable[str] = (),
) -> descriptor_pb2.FileDescriptorProto:
    """Minimal file with no declarations."""
    return descriptor_pb2.FileDescriptorProto(
        name=name, package=package, syntax="proto3", dependency=list(dependency)
    )


def encode_bin(files: Iterable[descriptor_pb2.FileDescriptorProto]) -> bytes:
    return descriptor_pb2.FileDescriptorSet(file=list(files)).SerializeToString()


def image_dict(files: Iterable[descriptor_pb2.FileDescriptorProto]) -> Dict[str, Any]:
    """JSON mapping of a FileDescriptorSet, with the custom option written out.

    json_format drops unknown fields, so the option on User.ssn is added by hand.
    """
    data = json_format.MessageToDict(descriptor_pb2.FileDescriptorSet(file=list(files)))
    for file_json in data["file"]:
        if file_json["name"] == USER_PATH:
            ssn = file_json["messageType"][0]["field"][1]
            ssn["options"] = {f"[{SENSITIVE_NAME}]": True}
    return data


def encode_json(data: Dict[str, Any]) -> bytes:
    return json.dumps(data).encode("utf-8")


def extension_values(options: Any) -> Dict[str, Any]:
    """Interpreted extension values on an options message, by full name."""
    return {fd.full_name: value for fd, value in options.ListFields() if fd.is_extension}


def ssn_options(files: List[Any]) -> Any:
    """FieldOptions of User.ssn in a list of decoded files."""
    user_file = next(f for f in files if f.name == USER_PATH)
    return user_file.message_type[0].field[1].options


BUF_EXTENSION_NUMBER = 8042


def buf_extension_bytes(is_import: bool) -> bytes:
    """Wire encoding of ImageFile.buf_extension = {is_import: ...}."""
    inner = encode_varint(1 << 3) + encode_varint(int(is_import))
    return encode_varint(BUF_EXTENSION_NUMBER << 3 | 2) + encode_varint(len(inner)) + inner


def as_buf_image_files(
    files: Iterable[descriptor_pb2.FileDescriptorProto],
    import_paths: Iterable[str] = (),
) -> List[descriptor_pb2.FileDescriptorProto]:
    """Copies of `files` carrying buf's per-file extension as unknown bytes."""
    import_paths = set(import_paths)
    marked = []
    for file in files:
        copy = descriptor_pb2.FileDescriptorProto()
        copy.CopyFrom(file)
        copy.MergeFromString(buf_extension_bytes(file.name in import_paths))
        marked.append(copy)
    return marked


def buf_image_dict(
    files: Iterable[descriptor_pb2.FileDescriptorProto],
    import_paths: Iterable[str] = (),
) -> Dict[str, Any]:
    """JSON mapping of a buf Image: image_dict() plus bufExtension on every file."""
    import_paths = set(import_paths)
    data = image_dict(files)
    for file_json in data["file"]:
        file_json["bufExtension"] = {
            "isImport": file_json["name"] in import_paths,
            "isSyntaxUnspecified": False,
        }
    return data
