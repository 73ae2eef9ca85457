"""
Encode/decode primitives for images.

These wrap the protobuf runtime's binary and JSON codecs. They know nothing
about the two-pass bootstrap; callers pick the message class (static or
resolver-generated) that decides how extensions are interpreted.

Invariants:
    - Exactly two encodings exist: binary ("bin") and JSON ("json")
    - Binary output is deterministic (map ordering is stable)
    - Library parse failures surface as CodecError, never as raw exceptions

How to change safely:
    - Adding an encoding means adding an ImageEncoding member and teaching
      both decoder passes about it
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Type, Union

from google.protobuf import json_format
from google.protobuf import message as protobuf_message
from google.protobuf.descriptor_pool import DescriptorPool

from .errors import CodecError, DecodeError, DecodeStage


class ImageEncoding(Enum):
    """Supported image encodings."""

    BINARY = "bin"
    JSON = "json"

    @classmethod
    def parse(cls, value: Union[ImageEncoding, str, Any]) -> ImageEncoding:
        """Convert an encoding tag to ImageEncoding.

        Args:
            value: An ImageEncoding or its string value ("bin", "json")

        Returns:
            Corresponding ImageEncoding

        Raises:
            DecodeError: With stage unsupported_encoding for any other value
        """
        if isinstance(value, cls):
            return value
        for encoding in cls:
            if encoding.value == value:
                return encoding
        valid = [e.value for e in cls]
        raise DecodeError(
            f"unknown image encoding: {value!r}. Valid encodings: {valid}",
            stage=DecodeStage.UNSUPPORTED_ENCODING,
        )


def unmarshal_wire(
    data: bytes,
    message_class: Type[protobuf_message.Message],
) -> protobuf_message.Message:
    """Decode protobuf binary data into a new message of `message_class`.

    Fields the class does not know about are kept as unknown fields.

    Raises:
        CodecError: If the bytes are not a valid encoding
    """
    message = message_class()
    try:
        message.ParseFromString(data)
    except protobuf_message.DecodeError as e:
        raise CodecError(f"could not unmarshal binary data: {e}", encoding="bin") from e
    return message


def unmarshal_json(
    data: bytes,
    message_class: Type[protobuf_message.Message],
    descriptor_pool: Optional[DescriptorPool] = None,
    ignore_unknown_fields: bool = False,
) -> protobuf_message.Message:
    """Decode protobuf JSON data into a new message of `message_class`.

    Extension keys ("[pkg.name]") are looked up through the message class,
    so a resolver-generated class interprets custom options.

    Raises:
        CodecError: If the data is not UTF-8 or not a valid JSON mapping
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CodecError(f"JSON data is not valid UTF-8: {e}", encoding="json") from e
    message = message_class()
    try:
        json_format.Parse(
            text,
            message,
            ignore_unknown_fields=ignore_unknown_fields,
            descriptor_pool=descriptor_pool,
        )
    except json_format.ParseError as e:
        raise CodecError(f"could not unmarshal JSON data: {e}", encoding="json") from e
    return message


def marshal_wire(message: protobuf_message.Message) -> bytes:
    """Encode a message to deterministic protobuf binary."""
    return message.SerializeToString(deterministic=True)


def marshal_json(message: protobuf_message.Message, indent: Optional[int] = None) -> bytes:
    """Encode a message to protobuf JSON (camelCase field names)."""
    text = json_format.MessageToJson(
        message,
        indent=indent,
        sort_keys=indent is not None,
    )
    return text.encode("utf-8")
