[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "zarrstream"
version = "0.1.0"
description = "Storage back ends for streaming Zarr datasets: a thread pool, file and S3 sinks, and sink factories."
requires-python = ">=3.10"
dependencies = [
    "requests",
]
keywords = ["zarr", "streaming", "s3", "sink", "chunked storage"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Processing",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["zarrstream"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"
