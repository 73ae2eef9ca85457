"""
Integration tests for ImageReader.

These read real files from a temporary directory and drive the whole
pipeline: reference parsing, fetching, two-pass decoding and filtering.
"""

import gzip
import io
import logging

import pytest

from schemasvc.protoimage import ImageReader
from schemasvc.protoimage.codec import ImageEncoding
from schemasvc.protoimage.config import DecodeConfig, ObservabilityConfig, ReaderConfig
from schemasvc.protoimage.errors import (
    DecodeError,
    DecodeStage,
    FetchError,
    FilterError,
    ProtoImageError,
)
from schemasvc.protoimage.fetch import LocalFetcher
from tests.helpers import OPTIONS_PATH, SENSITIVE_NAME, USER_PATH, extension_values


class FakeStream:
    """Stream whose read and close can be made to fail.

    `max_read` caps the bytes returned per call, like a pipe or socket.
    """

    def __init__(self, data=b"", read_error=None, close_error=None, max_read=None):
        self._buffer = io.BytesIO(data)
        self._read_error = read_error
        self._close_error = close_error
        self._max_read = max_read
        self.close_calls = 0
        self.read_calls = 0

    def read(self, size=-1):
        self.read_calls += 1
        if self._read_error is not None:
            raise self._read_error
        if self._max_read is not None and (size < 0 or size > self._max_read):
            size = self._max_read
        return self._buffer.read(size)

    def close(self):
        self.close_calls += 1
        if self._close_error is not None:
            raise self._close_error


class FakeFetcher:
    """Fetcher that always returns the same stream."""

    def __init__(self, stream):
        self.stream = stream
        self.refs = []

    def open(self, ref):
        self.refs.append(ref)
        return self.stream


def ssn_of(bundle):
    return bundle.get(USER_PATH).file.message_type[0].field[1]


@pytest.fixture
def reader():
    return ImageReader(ReaderConfig())


class TestReadFiles:
    """Reading images from disk."""

    def test_binary_file(self, reader, tmp_path, image_bin):
        """A .bin file is decoded with custom options interpreted."""
        path = tmp_path / "image.bin"
        path.write_bytes(image_bin)

        bundle = reader.get_image(str(path))

        assert bundle.paths == (OPTIONS_PATH, USER_PATH)
        assert extension_values(ssn_of(bundle).options) == {SENSITIVE_NAME: True}

    def test_json_file(self, reader, tmp_path, image_json):
        """A .json file is decoded with custom options interpreted."""
        path = tmp_path / "image.json"
        path.write_bytes(image_json)

        bundle = reader.get_image(str(path), [USER_PATH])

        assert bundle.paths == (USER_PATH,)
        assert extension_values(ssn_of(bundle).options) == {SENSITIVE_NAME: True}

    def test_gzip_file(self, reader, tmp_path, image_bin):
        """A .bin.gz file is decompressed before decoding."""
        path = tmp_path / "image.bin.gz"
        path.write_bytes(gzip.compress(image_bin))

        bundle = reader.get_image(str(path), exclude_source_info=True)

        assert bundle.paths == (OPTIONS_PATH, USER_PATH)
        assert not bundle.get(USER_PATH).has_debug_info

    def test_explicit_format(self, reader, tmp_path, image_json):
        """#format overrides the file extension."""
        path = tmp_path / "image.data"
        path.write_bytes(image_json)

        bundle = reader.get_image(f"{path}#format=json")

        assert USER_PATH in bundle

    def test_stdin(self, image_json):
        """Stdin is read with the configured default encoding."""
        config = ReaderConfig(default_encoding=ImageEncoding.JSON)
        reader = ImageReader(config, fetcher=LocalFetcher(stdin=io.BytesIO(image_json)))

        bundle = reader.get_image("-")

        assert bundle.paths == (OPTIONS_PATH, USER_PATH)

    def test_same_file_twice(self, reader, tmp_path, image_bin):
        """Reads are independent of each other."""
        path = tmp_path / "image.bin"
        path.write_bytes(image_bin)

        assert reader.get_image(str(path)) == reader.get_image(str(path))


class TestErrors:
    """Errors are prefixed with the input name."""

    def test_missing_file(self, reader, tmp_path):
        """A missing file is a FetchError."""
        path = tmp_path / "missing.bin"

        with pytest.raises(FetchError) as exc_info:
            reader.get_image(str(path))

        assert exc_info.value.message.startswith("input: could not open image")

    def test_custom_flag_name(self, tmp_path):
        """The configured name is used as the prefix."""
        reader = ImageReader(ReaderConfig(value_flag_name="image"))

        with pytest.raises(FetchError, match="^image: "):
            reader.get_image(str(tmp_path / "missing.bin"))

    def test_bad_reference(self, reader):
        """Reference parsing errors are prefixed too."""
        with pytest.raises(FetchError, match="^input: could not determine image format"):
            reader.get_image("image.txt")

    def test_corrupt_image(self, reader, tmp_path):
        """Undecodable bytes fail at bootstrap."""
        path = tmp_path / "image.bin"
        path.write_bytes(b"\x0a\x05ab")

        with pytest.raises(DecodeError) as exc_info:
            reader.get_image(str(path))

        assert exc_info.value.stage is DecodeStage.BOOTSTRAP
        assert str(exc_info.value).startswith("input: ")

    def test_missing_path(self, reader, tmp_path, image_bin):
        """Filter errors name the missing path."""
        path = tmp_path / "image.bin"
        path.write_bytes(image_bin)

        with pytest.raises(FilterError, match="^input: acme/nope.proto: does not exist"):
            reader.get_image(str(path), ["acme/nope.proto"])

        bundle = reader.get_image(str(path), ["acme/nope.proto", USER_PATH], allow_missing=True)
        assert bundle.paths == (USER_PATH,)

    def test_size_limit(self, tmp_path, image_bin):
        """Images over the configured size are rejected."""
        path = tmp_path / "image.bin"
        path.write_bytes(image_bin)
        config = ReaderConfig(decode=DecodeConfig(max_image_size_bytes=len(image_bin) - 1))

        with pytest.raises(FetchError, match="is larger than"):
            ImageReader(config).get_image(str(path))

        exact = ReaderConfig(decode=DecodeConfig(max_image_size_bytes=len(image_bin)))
        assert len(ImageReader(exact).get_image(str(path))) == 2

    def test_unlimited_size(self, tmp_path, image_bin):
        """A limit of zero disables the size check."""
        path = tmp_path / "image.bin"
        path.write_bytes(image_bin)
        config = ReaderConfig(decode=DecodeConfig(max_image_size_bytes=0))

        assert len(ImageReader(config).get_image(str(path))) == 2


class TestStreamRelease:
    """Fetched streams are always closed."""

    def test_closed_after_success(self, image_bin):
        """The stream is closed once after a successful read."""
        stream = FakeStream(image_bin)

        ImageReader(ReaderConfig(), fetcher=FakeFetcher(stream)).get_image("image.bin")

        assert stream.close_calls == 1

    def test_short_reads(self, image_bin):
        """A stream returning a few bytes per read is read to the end."""
        stream = FakeStream(image_bin, max_read=7)

        bundle = ImageReader(ReaderConfig(), fetcher=FakeFetcher(stream)).get_image("image.bin")

        assert bundle.paths == (OPTIONS_PATH, USER_PATH)
        assert extension_values(ssn_of(bundle).options) == {SENSITIVE_NAME: True}
        assert stream.read_calls > len(image_bin) // 7

    def test_short_reads_over_limit(self, image_bin):
        """The size limit applies across reads."""
        stream = FakeStream(image_bin, max_read=7)
        config = ReaderConfig(decode=DecodeConfig(max_image_size_bytes=len(image_bin) - 1))

        with pytest.raises(FetchError, match="is larger than"):
            ImageReader(config, fetcher=FakeFetcher(stream)).get_image("image.bin")

        assert stream.close_calls == 1

    def test_closed_after_read_error(self):
        """The stream is closed when reading fails."""
        stream = FakeStream(read_error=OSError("device error"))
        reader = ImageReader(ReaderConfig(), fetcher=FakeFetcher(stream))

        with pytest.raises(FetchError, match="could not read image"):
            reader.get_image("image.bin")

        assert stream.close_calls == 1

    def test_close_error_alone_is_raised(self, image_bin):
        """A close failure after a good read is the error."""
        stream = FakeStream(image_bin, close_error=OSError("close failed"))
        reader = ImageReader(ReaderConfig(), fetcher=FakeFetcher(stream))

        with pytest.raises(FetchError, match="^input: could not close image image.bin"):
            reader.get_image("image.bin")

    def test_close_error_recorded_on_read_error(self):
        """Both the read and the close failure are reported."""
        stream = FakeStream(
            read_error=OSError("device error"),
            close_error=OSError("close failed"),
        )
        reader = ImageReader(ReaderConfig(), fetcher=FakeFetcher(stream))

        with pytest.raises(FetchError, match="could not read image") as exc_info:
            reader.get_image("image.bin")

        assert exc_info.value.details["close_errors"] == ["close failed"]
        assert isinstance(exc_info.value, ProtoImageError)


class TestStageTiming:
    """Stage durations are logged when enabled."""

    def test_stage_timing_logged(self, tmp_path, image_bin, caplog):
        """Every stage, including get_image, is logged at DEBUG."""
        path = tmp_path / "image.bin"
        path.write_bytes(image_bin)
        config = ReaderConfig(observability=ObservabilityConfig(stage_timing=True))
        caplog.set_level(logging.DEBUG, logger="schemasvc.protoimage")

        ImageReader(config).get_image(str(path), [USER_PATH])

        stages = [r.stage for r in caplog.records if hasattr(r, "duration_ms")]
        assert stages == [
            "first_wire_unmarshal",
            "new_resolver",
            "second_wire_unmarshal",
            "build_bundle",
            "restrict_paths",
            "get_image",
        ]

    def test_stage_timing_disabled(self, tmp_path, image_bin, caplog):
        """No stage records are logged by default."""
        path = tmp_path / "image.bin"
        path.write_bytes(image_bin)
        caplog.set_level(logging.DEBUG, logger="schemasvc.protoimage")

        ImageReader(ReaderConfig()).get_image(str(path))

        assert not [r for r in caplog.records if hasattr(r, "duration_ms")]
