"""The abstract byte sink and its finalization."""

from __future__ import annotations

import abc
import logging

logger = logging.getLogger(__name__)


class SinkError(RuntimeError):
    """Raised when a sink cannot be opened, written or flushed."""


class Sink(abc.ABC):
    """A destination that accepts bytes at given offsets."""

    @abc.abstractmethod
    def write(self, offset: int, data: bytes | bytearray | memoryview) -> None:
        """Write ``data`` at byte ``offset``; raise SinkError on failure."""

    @abc.abstractmethod
    def _flush(self) -> None:
        """Push buffered data to the destination; raise SinkError on failure."""

    def close(self) -> None:
        """Release resources held by the sink."""

    def __enter__(self) -> Sink:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def finalize_sink(sink: Sink | None) -> None:
    """Flush and close ``sink``.

    If flushing fails the error propagates and the sink is left open.
    """
    if sink is None:
        logger.info("Sink is null. Nothing to finalize.")
        return
    sink._flush()
    sink.close()