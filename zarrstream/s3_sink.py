"""A sink that uploads to an object in an S3-compatible store."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from .s3_connection import S3Connection, S3ConnectionPool, S3Error, S3Part
from .sink import Sink, SinkError

logger = logging.getLogger(__name__)

MAX_PART_SIZE = 5 << 20


@dataclass
class _MultipartUpload:
    upload_id: str
    parts: list[S3Part] = field(default_factory=list)


@contextmanager
def _borrowed(pool: S3ConnectionPool) -> Iterator[S3Connection]:
    conn = pool.get_connection()
    try:
        yield conn
    finally:
        pool.return_connection(conn)


class S3Sink(Sink):
    """Buffer writes and upload them as one object or as a multipart object.

    Data is held in a part-sized buffer. Whenever the buffer fills, it is
    uploaded as a part of a multipart upload; on finalization the remainder is
    either uploaded as a last part or, if nothing was uploaded yet, as a
    single object.
    """

    def __init__(
        self,
        bucket_name: str,
        object_key: str,
        connection_pool: S3ConnectionPool,
    ) -> None:
        if not bucket_name:
            raise ValueError("Bucket name must not be empty")
        if not object_key:
            raise ValueError("Object key must not be empty")
        if connection_pool is None:
            raise ValueError("Null pointer: connection_pool")

        self._bucket_name = bucket_name
        self._object_key = object_key
        self._pool = connection_pool

        self._buffer = bytearray(MAX_PART_SIZE)
        self._nbytes_buffered = 0
        self._nbytes_flushed = 0
        self._multipart: _MultipartUpload | None = None

    @property
    def object_key(self) -> str:
        return self._object_key

    def write(self, offset: int, data: bytes | bytearray | memoryview) -> None:
        view = memoryview(data).cast("B")
        if view.nbytes == 0:
            return

        if offset < self._nbytes_flushed:
            raise SinkError(
                f"Cannot write data at offset {offset}, "
                f"already flushed to {self._nbytes_flushed}"
            )
        gap = offset - self._nbytes_flushed
        if gap > MAX_PART_SIZE:
            raise SinkError(
                f"Cannot write data at offset {offset}: more than {MAX_PART_SIZE} "
                f"bytes past the flushed position {self._nbytes_flushed}"
            )
        self._nbytes_buffered = gap

        position = 0
        while position < view.nbytes:
            room = MAX_PART_SIZE - self._nbytes_buffered
            count = min(view.nbytes - position, room)
            if count:
                start = self._nbytes_buffered
                self._buffer[start : start + count] = view[position : position + count]
                self._nbytes_buffered += count
                position += count

            if self._nbytes_buffered == MAX_PART_SIZE:
                self._flush_part()

    def _flush(self) -> None:
        if self._multipart is not None:
            if self._nbytes_buffered > 0:
                self._flush_part()
            self._finalize_multipart_upload()
        elif self._nbytes_buffered > 0:
            self._put_object()

        self._nbytes_buffered = 0

    def _put_object(self) -> None:
        data = bytes(self._buffer[: self._nbytes_buffered])
        try:
            with _borrowed(self._pool) as conn:
                conn.put_object(self._bucket_name, self._object_key, data)
        except (S3Error, ValueError) as exc:
            logger.error("Failed to upload object %s: %s", self._object_key, exc)
            raise SinkError(f"Failed to upload object: {self._object_key}") from exc

        self._nbytes_flushed = self._nbytes_buffered
        self._nbytes_buffered = 0

    def _create_multipart_upload(self) -> _MultipartUpload:
        try:
            with _borrowed(self._pool) as conn:
                upload_id = conn.create_multipart_object(
                    self._bucket_name, self._object_key
                )
        except (S3Error, ValueError) as exc:
            raise SinkError(
                f"Failed to start multipart upload of object {self._object_key}"
            ) from exc
        self._multipart = _MultipartUpload(upload_id)
        return self._multipart

    def _flush_part(self) -> None:
        if self._nbytes_buffered == 0:
            return

        upload = self._multipart or self._create_multipart_upload()
        number = len(upload.parts) + 1
        size = self._nbytes_buffered
        data = bytes(self._buffer[:size])

        try:
            with _borrowed(self._pool) as conn:
                etag = conn.upload_multipart_object_part(
                    self._bucket_name,
                    self._object_key,
                    upload.upload_id,
                    data,
                    number,
                )
        except (S3Error, ValueError) as exc:
            logger.error(
                "Failed to upload part %d of object %s: %s",
                number,
                self._object_key,
                exc,
            )
            raise SinkError(
                f"Failed to upload part {number} of object {self._object_key}"
            ) from exc
        finally:
            self._nbytes_flushed += size
            self._nbytes_buffered = 0

        upload.parts.append(S3Part(number=number, etag=etag, size=size))

    def _finalize_multipart_upload(self) -> None:
        upload = self._multipart
        if upload is None:
            return
        try:
            with _borrowed(self._pool) as conn:
                conn.complete_multipart_object(
                    self._bucket_name,
                    self._object_key,
                    upload.upload_id,
                    upload.parts,
                )
        except (S3Error, ValueError) as exc:
            logger.error(
                "Failed to finalize multipart upload of object %s: %s",
                self._object_key,
                exc,
            )
            raise SinkError(
                f"Failed to finalize multipart upload of object {self._object_key}"
            ) from exc