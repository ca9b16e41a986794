"""A sink writing to a local file at arbitrary offsets."""

from __future__ import annotations

import logging
import os
import threading

from .sink import Sink, SinkError

logger = logging.getLogger(__name__)

_MAX_RETRIES = 3
_OPEN_FLAGS = os.O_WRONLY | os.O_CREAT | getattr(os, "O_BINARY", 0)


class FileSink(Sink):
    """Write bytes to a file, creating it if needed, without truncating."""

    def __init__(self, filename: str | os.PathLike[str]) -> None:
        self._filename = os.fspath(filename)
        self._lock = threading.Lock()
        try:
            self._fd: int | None = os.open(self._filename, _OPEN_FLAGS, 0o644)
        except OSError as exc:
            raise SinkError(
                f"Failed to open file: '{self._filename}': {exc.strerror or exc}"
            ) from exc

    @property
    def filename(self) -> str:
        return self._filename

    def _require_open(self) -> int:
        if self._fd is None:
            raise SinkError(f"File '{self._filename}' is closed")
        return self._fd

    @staticmethod
    def _write_at(fd: int, buf: memoryview, offset: int) -> int:
        if hasattr(os, "pwrite"):
            return os.pwrite(fd, buf, offset)
        os.lseek(fd, offset, os.SEEK_SET)
        return os.write(fd, buf)

    def write(self, offset: int, data: bytes | bytearray | memoryview) -> None:
        view = memoryview(data).cast("B")
        if view.nbytes == 0:
            return

        with self._lock:
            fd = self._require_open()
            position = 0
            retries = 0
            while position < view.nbytes and retries < _MAX_RETRIES:
                try:
                    written = self._write_at(fd, view[position:], offset + position)
                except OSError as exc:
                    raise SinkError(
                        f"Failed to write to file: {exc.strerror or exc}"
                    ) from exc
                if written == 0:
                    retries += 1
                position += written

        if position < view.nbytes:
            raise SinkError(
                f"Failed to write to file '{self._filename}': "
                f"wrote {position} of {view.nbytes} bytes"
            )

    def _flush(self) -> None:
        with self._lock:
            fd = self._require_open()
            try:
                os.fsync(fd)
            except OSError as exc:
                logger.error("Failed to flush file: %s", exc)
                raise SinkError(f"Failed to flush file: {exc.strerror or exc}") from exc

    def close(self) -> None:
        """Close the file handle; further writes raise SinkError."""
        with self._lock:
            if self._fd is not None:
                os.close(self._fd)
                self._fd = None