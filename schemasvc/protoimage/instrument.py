"""
Stage observer hooks.

Decode stages report their start/end through an observer passed into the
pipeline instead of a global timing facility, so the pipeline can be driven
without any logging configured.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class StageSpan(Protocol):
    """A started stage. `end()` is called once when the stage finishes."""

    def end(self) -> None:
        ...


@runtime_checkable
class StageObserver(Protocol):
    """Receives a span for every pipeline stage."""

    def start(self, stage: str) -> StageSpan:
        ...


class _NullSpan:
    def end(self) -> None:
        pass


class NullObserver:
    """Observer that records nothing."""

    def start(self, stage: str) -> StageSpan:
        return _NullSpan()


class _TimedSpan:
    def __init__(self, log: logging.Logger, stage: str) -> None:
        self._logger = log
        self._stage = stage
        self._started = time.perf_counter()

    def end(self) -> None:
        duration_ms = (time.perf_counter() - self._started) * 1000
        self._logger.debug(
            f"{self._stage} took {duration_ms:.2f}ms",
            extra={"stage": self._stage, "duration_ms": round(duration_ms, 3)},
        )


class LoggingObserver:
    """Logs the duration of every stage at DEBUG level.

    Example:
        >>> observer = LoggingObserver(logging.getLogger("protoimage"))
        >>> with observe(observer, "new_resolver"):
        ...     resolver = build_resolver(files)
    """

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._logger = log or logger

    def start(self, stage: str) -> StageSpan:
        return _TimedSpan(self._logger, stage)


@contextmanager
def observe(observer: Optional[StageObserver], stage: str) -> Iterator[None]:
    """Run the body inside a span for `stage` (no-op when observer is None)."""
    span = (observer or NullObserver()).start(stage)
    try:
        yield
    finally:
        span.end()
