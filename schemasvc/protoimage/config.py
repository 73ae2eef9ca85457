"""
Configuration management for protoimage.

Configuration is read from environment variables; command-line flags
override individual values in the CLI. This module provides typed
configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local use
    - Configuration objects are immutable once loaded

How to change safely:
    - Add new settings with defaults that keep current behavior
    - Document every new environment variable in the class docstring
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .codec import ImageEncoding

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecodeConfig:
    """Image decoding configuration.

    Attributes:
        ignore_unknown_json_fields: Skip JSON keys the second pass still cannot
            resolve (e.g. buf image extensions) instead of failing
        max_image_size_bytes: Reject images larger than this (0 = unlimited)
    """

    ignore_unknown_json_fields: bool = False
    max_image_size_bytes: int = 256 * 1024 * 1024  # 256MB

    @classmethod
    def from_env(cls) -> DecodeConfig:
        """Load configuration from environment variables."""
        return cls(
            ignore_unknown_json_fields=os.getenv(
                "PROTOIMAGE_IGNORE_UNKNOWN_JSON_FIELDS", "false"
            ).lower()
            == "true",
            max_image_size_bytes=int(
                os.getenv("PROTOIMAGE_MAX_IMAGE_BYTES", str(256 * 1024 * 1024))
            ),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
        stage_timing: Whether to log per-stage decode durations
    """

    log_level: str = "WARNING"
    log_format: str = "text"
    stage_timing: bool = False

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "WARNING"),
            log_format=os.getenv("LOG_FORMAT", "text"),
            stage_timing=os.getenv("PROTOIMAGE_STAGE_TIMING", "false").lower() == "true",
        )


@dataclass(frozen=True)
class ReaderConfig:
    """Complete image reader configuration.

    Attributes:
        value_flag_name: Name of the input argument, used to prefix errors
        default_encoding: Encoding assumed for stdin without #format
        decode: Decoding configuration
        observability: Logging configuration
    """

    value_flag_name: str = "input"
    default_encoding: ImageEncoding = ImageEncoding.BINARY
    decode: DecodeConfig = field(default_factory=DecodeConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ReaderConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        encoding_str = os.getenv("PROTOIMAGE_DEFAULT_ENCODING", "bin").lower()
        try:
            default_encoding = ImageEncoding(encoding_str)
        except ValueError:
            raise ValueError(
                f"Invalid PROTOIMAGE_DEFAULT_ENCODING '{encoding_str}'. Must be one of: bin, json"
            )

        config = cls(
            value_flag_name=os.getenv("PROTOIMAGE_VALUE_FLAG_NAME", "input"),
            default_encoding=default_encoding,
            decode=DecodeConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.value_flag_name:
            raise ValueError("PROTOIMAGE_VALUE_FLAG_NAME cannot be empty")
        if self.decode.max_image_size_bytes < 0:
            raise ValueError("PROTOIMAGE_MAX_IMAGE_BYTES must be >= 0")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Reader configuration loaded",
            extra={
                "value_flag_name": self.value_flag_name,
                "default_encoding": self.default_encoding.value,
                "ignore_unknown_json_fields": self.decode.ignore_unknown_json_fields,
                "max_image_size_bytes": self.decode.max_image_size_bytes,
                "log_level": self.observability.log_level,
                "stage_timing": self.observability.stage_timing,
            },
        )
