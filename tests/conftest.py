"""Shared fixtures for protoimage tests."""

from typing import List

import pytest
from google.protobuf import descriptor_pb2

from tests.helpers import (
    MONEY_PATH,
    OPTIONS_PATH,
    as_buf_image_files,
    buf_image_dict,
    encode_bin,
    encode_json,
    image_dict,
    make_file,
    make_money_file,
    make_options_file,
    make_user_file,
)


@pytest.fixture
def image_files() -> List[descriptor_pb2.FileDescriptorProto]:
    """Options file followed by the file that uses the option."""
    return [make_options_file(), make_user_file()]


@pytest.fixture
def image_bin(image_files) -> bytes:
    return encode_bin(image_files)


@pytest.fixture
def image_json(image_files) -> bytes:
    return encode_json(image_dict(image_files))


@pytest.fixture
def plain_files() -> List[descriptor_pb2.FileDescriptorProto]:
    """Files without any custom options."""
    return [make_money_file(), make_file("acme/empty.proto", "acme", [MONEY_PATH])]


@pytest.fixture
def plain_bin(plain_files) -> bytes:
    return encode_bin(plain_files)


@pytest.fixture
def plain_json(plain_files) -> bytes:
    return encode_json(image_dict(plain_files))


@pytest.fixture
def buf_image_bin(image_files) -> bytes:
    """The fixture image as buf writes it, with the options file an import."""
    return encode_bin(as_buf_image_files(image_files, [OPTIONS_PATH]))


@pytest.fixture
def buf_image_json(image_files) -> bytes:
    return encode_json(buf_image_dict(image_files, [OPTIONS_PATH]))
