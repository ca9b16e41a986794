# zarrstream

Storage building blocks for writing Zarr datasets while they are being
acquired. Chunk data and group metadata go to the local filesystem or to an
S3-compatible object store.

## Installation

```
pip install zarrstream
```

To run the test suite as well:

```
pip install "zarrstream[test]"
pytest
```

## What is inside

- `zarrstream.thread_pool.ThreadPool` runs jobs on a fixed number of worker
  threads (at least one, at most the number of CPUs). A job is a callable
  taking no arguments; it fails by raising an exception or by returning
  `False`, and the pool then calls its error handler with a message.
  `push_job` raises `ThreadPoolClosedError` once the pool has stopped
  accepting jobs. `await_stop` lets queued jobs finish and joins the workers.
  Used as a context manager, the pool drops jobs that have not started and
  then stops.
- `zarrstream.blosc` holds `CompressionCodec`, `BloscCompressionParams` (a
  codec name plus `clevel` and `shuffle`, each 0–255) and
  `blosc_codec_to_string`, which maps a codec to its Blosc name (`"lz4"`,
  `"zstd"`).
- `zarrstream.sink.Sink` is the interface every sink implements: `write(offset,
  data)` and `close()`; a sink is also a context manager. `finalize_sink`
  flushes a sink and closes it. Failures raise `SinkError`.
- `zarrstream.file_sink.FileSink` writes bytes into a file at any offset. It
  creates the file if needed and never truncates it. Finalizing it syncs the
  file to disk.
- `zarrstream.vectorized_writer.VectorizedFileWriter` writes several buffers
  back to back, starting at a given offset, in one call.
- `zarrstream.s3_connection` provides `S3Settings`, `S3Part`, `S3Connection`
  and `S3ConnectionPool`. A connection checks buckets and objects, puts and
  deletes objects, and runs multipart uploads; request failures raise
  `S3Error`. Requests are signed with the credentials in `AWS_ACCESS_KEY_ID`,
  `AWS_SECRET_ACCESS_KEY` and, if set, `AWS_SESSION_TOKEN`; without an access
  key they are sent unsigned. The pool keeps only connections that pass a
  check at start-up and raises `S3Error` if none does.
- `zarrstream.s3_sink.S3Sink` buffers writes for one object. A small object
  is sent with a single put when it is finalized; once 5 MiB has been
  buffered, the data goes up as a multipart upload in 5 MiB parts. Writes may
  not go back before data that has already been uploaded.
- `zarrstream.sinks` builds the sinks for a whole dataset:
  - `construct_data_paths(base_path, dimensions, parts_along_dimension)`
  - `make_data_file_sinks` and `make_data_s3_sinks`, which return a list
  - `make_metadata_file_sinks` and `make_metadata_s3_sinks`, which return a
    dict keyed by `.zattrs` and `.zgroup` (Zarr v2) or `zarr.json` (Zarr v3)
  - `make_file_sink` and `make_s3_sink` for a single sink
  - the helpers `get_parent_paths` and `make_dirs`, and the `ZarrVersion`
    enumeration.

  File paths may start with `file://`; the prefix is removed.

## Examples

Data paths for a dataset whose dimensions each split into two parts. The
first (append) dimension adds no path component:

```python
from zarrstream.sinks import construct_data_paths

construct_data_paths("", ["t", "y", "x"], lambda dim: 2)
# ['0/0', '0/1', '1/0', '1/1']
```

Writing to a file:

```python
from zarrstream.file_sink import FileSink
from zarrstream.sink import finalize_sink

sink = FileSink("/tmp/example.bin")
sink.write(0, b"hello")
sink.write(5, b", world")
finalize_sink(sink)
```

Creating the data files of a dataset in parallel:

```python
from zarrstream.sinks import make_data_file_sinks
from zarrstream.thread_pool import ThreadPool

with ThreadPool(4, lambda err: print("job failed:", err)) as pool:
    sinks = make_data_file_sinks("/tmp/dataset/0", ["z", "y", "x"], lambda d: 3, pool)
for sink in sinks:
    sink.close()
```

Writing to an object store:

```python
from zarrstream.s3_connection import S3ConnectionPool, S3Settings
from zarrstream.s3_sink import S3Sink
from zarrstream.sink import finalize_sink

settings = S3Settings(endpoint="http://localhost:9000", bucket_name="my-bucket")
with S3ConnectionPool(4, settings) as connections:
    sink = S3Sink("my-bucket", "data/0/0", connections)
    sink.write(0, b"Hello, Acquire!")
    finalize_sink(sink)
```

## What this package does not do

It provides only the storage layer. It does not take in frames, split them
into chunks or shards, compress data (`BloscCompressionParams` only describes
settings), or write Zarr array or OME metadata documents; the metadata sinks
it creates are empty until a caller writes to them. It has no command-line
tool.