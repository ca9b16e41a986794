"""Write several buffers to a file at an offset in one call."""

from __future__ import annotations

import os
import threading
from collections.abc import Iterable

from .sink import SinkError

_OPEN_FLAGS = os.O_WRONLY | os.O_CREAT | getattr(os, "O_BINARY", 0)


class VectorizedFileWriter:
    """Scatter-gather file writer."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = os.fspath(path)
        self._lock = threading.Lock()
        try:
            self._fd: int | None = os.open(self._path, _OPEN_FLAGS, 0o644)
        except OSError as exc:
            raise SinkError(f"Failed to open file: {self._path}") from exc

    def __enter__(self) -> VectorizedFileWriter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def write_vectors(
        self, buffers: Iterable[bytes | bytearray | memoryview], offset: int
    ) -> None:
        """Write ``buffers`` back to back starting at ``offset``."""
        views = [memoryview(buf).cast("B") for buf in buffers]
        total = sum(view.nbytes for view in views)

        with self._lock:
            if self._fd is None:
                raise SinkError(f"File '{self._path}' is closed")
            if total == 0:
                return
            try:
                if hasattr(os, "pwritev"):
                    written = os.pwritev(self._fd, views, offset)
                else:
                    os.lseek(self._fd, offset, os.SEEK_SET)
                    written = os.write(self._fd, b"".join(views))
            except OSError as exc:
                raise SinkError(f"Failed to write file: {exc.strerror or exc}") from exc

        if written != total:
            raise SinkError(
                f"Failed to write file '{self._path}': wrote {written} of {total} bytes"
            )

    def close(self) -> None:
        """Close the file; further writes raise SinkError."""
        with self._lock:
            if self._fd is not None:
                os.close(self._fd)
                self._fd = None