"""Thread pool, file and S3 sinks, and sink factories for storing Zarr datasets."""

__version__ = "0.1.0"