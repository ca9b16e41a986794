"""Build the file and object-store sinks that make up a Zarr dataset."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from enum import IntEnum
from typing import Any, TypeVar

from .file_sink import FileSink
from .s3_connection import S3Connection, S3ConnectionPool
from .s3_sink import S3Sink
from .sink import Sink, SinkError
from .thread_pool import ThreadPool, ThreadPoolClosedError

logger = logging.getLogger(__name__)

_FILE_SCHEME = "file://"

D = TypeVar("D")
T = TypeVar("T")
PartsFun = Callable[[Any], int]


class ZarrVersion(IntEnum):
    """Versions of the Zarr storage format."""

    V2 = 2
    V3 = 3


def _strip_file_scheme(path: str) -> str:
    return path[len(_FILE_SCHEME):] if path.startswith(_FILE_SCHEME) else path


def _metadata_paths(version: ZarrVersion | int) -> list[str]:
    try:
        version = ZarrVersion(version)
    except ValueError:
        raise ValueError(f"Invalid Zarr version {int(version)}") from None
    if version is ZarrVersion.V2:
        return [".zattrs", ".zgroup"]
    return ["zarr.json"]


def _run_jobs(
    thread_pool: ThreadPool, tasks: Sequence[Callable[[], T]]
) -> tuple[list[T | None], list[BaseException | None]]:
    """Run ``tasks`` on the pool and wait for all of them.

    Returns the results and the exceptions, index for index.
    """
    results: list[T | None] = [None] * len(tasks)
    errors: list[BaseException | None] = [None] * len(tasks)
    done = [threading.Event() for _ in tasks]

    def wrap(index: int, task: Callable[[], T]) -> Callable[[], None]:
        def job() -> None:
            try:
                results[index] = task()
            except Exception as exc:
                errors[index] = exc
                raise
            finally:
                done[index].set()

        return job

    pushed = 0
    push_error: ThreadPoolClosedError | None = None
    for index, task in enumerate(tasks):
        try:
            thread_pool.push_job(wrap(index, task))
        except ThreadPoolClosedError as exc:
            push_error = exc
            break
        pushed += 1

    for event in done[:pushed]:
        event.wait()

    if push_error is not None:
        raise SinkError("Failed to push job to thread pool.") from push_error
    return results, errors


def construct_data_paths(
    base_path: str,
    dimensions: Sequence[D],
    parts_along_dimension: Callable[[D], int],
) -> list[str]:
    """Return the path of every data part of an array.

    ``dimensions`` run from slowest to fastest varying; the last one is the
    width. The first (append) dimension contributes no path component.
    Raises ValueError if a dimension has zero parts.
    """
    if not dimensions:
        raise ValueError("Dimensions must not be empty.")

    paths = [base_path]
    for dim in dimensions[1:-1]:
        n_parts = parts_along_dimension(dim)
        if not n_parts:
            raise ValueError("Number of parts along a dimension must be positive.")
        paths = [
            f"{path}/{k}" if path else str(k)
            for path in paths
            for k in range(n_parts)
        ]

    n_parts = parts_along_dimension(dimensions[-1])
    if not n_parts:
        raise ValueError("Number of parts along a dimension must be positive.")
    return [f"{path}/{j}" for path in paths for j in range(n_parts)]


def get_parent_paths(file_paths: Iterable[str]) -> list[str]:
    """Return the unique parent directories of ``file_paths``, sorted."""
    return sorted({os.path.dirname(path) for path in file_paths})


def make_dirs(dir_paths: Iterable[str], thread_pool: ThreadPool) -> None:
    """Create the directories in ``dir_paths`` in parallel.

    Raises SinkError if any directory cannot be created.
    """
    unique_paths = sorted(set(dir_paths))
    if not unique_paths:
        return
    if thread_pool is None:
        raise ValueError("Thread pool not provided.")

    def creator(path: str) -> Callable[[], None]:
        def create() -> None:
            if os.path.isdir(path):
                return
            try:
                os.makedirs(path, exist_ok=True)
            except OSError as exc:
                raise SinkError(
                    f"Failed to create directory '{path}': {exc.strerror or exc}"
                ) from exc

        return create

    _, errors = _run_jobs(thread_pool, [creator(path) for path in unique_paths])
    failures = [str(err) for err in errors if err is not None]
    if failures:
        raise SinkError("; ".join(failures))


def _make_file_sinks(
    file_paths: Sequence[str], thread_pool: ThreadPool
) -> list[FileSink]:
    if not file_paths:
        return []

    make_dirs(get_parent_paths(file_paths), thread_pool)

    failed = threading.Event()

    def opener(path: str) -> Callable[[], FileSink | None]:
        def open_sink() -> FileSink | None:
            if failed.is_set():
                return None
            try:
                return FileSink(path)
            except Exception as exc:
                failed.set()
                raise SinkError(f"Failed to create file '{path}': {exc}") from exc

        return open_sink

    sinks, errors = _run_jobs(thread_pool, [opener(path) for path in file_paths])
    first_error = next((err for err in errors if err is not None), None)
    if first_error is not None or any(sink is None for sink in sinks):
        for sink in sinks:
            if sink is not None:
                sink.close()
        message = str(first_error) if first_error else "Failed to create file sinks"
        raise SinkError(message) from first_error
    return [sink for sink in sinks if sink is not None]


def make_file_sink(file_path: str) -> FileSink:
    """Open a file sink at ``file_path``, creating its parent directory."""
    file_path = _strip_file_scheme(file_path)
    if not file_path:
        raise ValueError("File path must not be empty.")

    parent = os.path.dirname(file_path)
    if parent and not os.path.isdir(parent):
        try:
            os.makedirs(parent, exist_ok=True)
        except OSError as exc:
            logger.error("Failed to create directory '%s': %s", parent, exc)
            raise SinkError(
                f"Failed to create directory '{parent}': {exc.strerror or exc}"
            ) from exc

    return FileSink(file_path)


def make_data_file_sinks(
    base_path: str,
    dimensions: Sequence[D],
    parts_along_dimension: Callable[[D], int],
    thread_pool: ThreadPool,
) -> list[FileSink]:
    """Open one file sink for every data part under ``base_path``."""
    base_path = _strip_file_scheme(base_path)
    if not base_path:
        raise ValueError("Base path must not be empty.")

    try:
        paths = construct_data_paths(base_path, dimensions, parts_along_dimension)
    except Exception as exc:
        logger.error("Failed to create dataset paths: %s", exc)
        raise SinkError(f"Failed to create dataset paths: {exc}") from exc

    return _make_file_sinks(paths, thread_pool)


def make_metadata_file_sinks(
    version: ZarrVersion | int, base_path: str, thread_pool: ThreadPool
) -> dict[str, FileSink]:
    """Open the group metadata files of a dataset, keyed by relative path."""
    base_path = _strip_file_scheme(base_path)
    if not base_path:
        raise ValueError("Base path must not be empty.")

    keys = _metadata_paths(version)
    sinks = _make_file_sinks([f"{base_path}/{key}" for key in keys], thread_pool)
    return dict(zip(keys, sinks))


@contextmanager
def _borrowed(pool: S3ConnectionPool) -> Iterator[S3Connection]:
    conn = pool.get_connection()
    try:
        yield conn
    finally:
        pool.return_connection(conn)


def _bucket_exists(bucket_name: str, connection_pool: S3ConnectionPool) -> bool:
    if not bucket_name:
        raise ValueError("Bucket name must not be empty.")
    if connection_pool is None:
        raise ValueError("S3 connection pool not provided.")
    with _borrowed(connection_pool) as conn:
        return conn.bucket_exists(bucket_name)


def make_s3_sink(
    bucket_name: str, object_key: str, connection_pool: S3ConnectionPool
) -> S3Sink:
    """Create a sink for one object; raise SinkError if the bucket is missing."""
    if not object_key:
        raise ValueError("Object key must not be empty.")
    if not _bucket_exists(bucket_name, connection_pool):
        logger.error("Bucket '%s' does not exist.", bucket_name)
        raise SinkError(f"Bucket '{bucket_name}' does not exist.")
    return S3Sink(bucket_name, object_key, connection_pool)


def _check_s3_target(bucket_name: str, connection_pool: S3ConnectionPool) -> None:
    if not bucket_name:
        raise ValueError("Bucket name not provided.")
    if connection_pool is None:
        raise ValueError("S3 connection pool not provided.")


def make_data_s3_sinks(
    bucket_name: str,
    base_path: str,
    dimensions: Sequence[D],
    parts_along_dimension: Callable[[D], int],
    connection_pool: S3ConnectionPool,
) -> list[S3Sink]:
    """Create one object sink for every data part under ``base_path``."""
    if not base_path:
        raise ValueError("Base path must not be empty.")
    if not bucket_name:
        raise ValueError("Bucket name must not be empty.")

    keys = construct_data_paths(base_path, dimensions, parts_along_dimension)
    if not keys:
        return []
    _check_s3_target(bucket_name, connection_pool)
    return [S3Sink(bucket_name, key, connection_pool) for key in keys]


def make_metadata_s3_sinks(
    version: ZarrVersion | int,
    bucket_name: str,
    base_path: str,
    connection_pool: S3ConnectionPool,
) -> dict[str, S3Sink]:
    """Create the group metadata object sinks, keyed by relative path."""
    if not bucket_name:
        raise ValueError("Bucket name must not be empty.")
    if not base_path:
        raise ValueError("Base path must not be empty.")
    if not _bucket_exists(bucket_name, connection_pool):
        logger.error("Bucket '%s' does not exist.", bucket_name)
        raise SinkError(f"Bucket '{bucket_name}' does not exist.")

    keys = _metadata_paths(version)
    _check_s3_target(bucket_name, connection_pool)
    return {
        key: S3Sink(bucket_name, f"{base_path}/{key}", connection_pool)
        for key in keys
    }