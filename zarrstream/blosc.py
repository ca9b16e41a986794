"""Blosc compression settings."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

# Largest number of bytes Blosc may add to a compressed buffer.
BLOSC_MAX_OVERHEAD = 16


class CompressionCodec(IntEnum):
    """Compression codecs understood by the stream."""

    NONE = 0
    BLOSC_LZ4 = 1
    BLOSC_ZSTD = 2


def blosc_codec_to_string(codec: CompressionCodec) -> str:
    """Return the Blosc name of ``codec``."""
    names = {
        CompressionCodec.BLOSC_ZSTD: "zstd",
        CompressionCodec.BLOSC_LZ4: "lz4",
    }
    return names.get(codec, "unrecognized codec")


def _check_byte(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an integer, got {value!r}")
    if not 0 <= value <= 255:
        raise ValueError(f"{name} must be between 0 and 255, got {value}")


@dataclass
class BloscCompressionParams:
    """Parameters passed to the Blosc compressor."""

    codec_id: str = ""
    clevel: int = 1
    shuffle: int = 1

    def __post_init__(self) -> None:
        if not isinstance(self.codec_id, str):
            raise TypeError(f"codec_id must be a string, got {self.codec_id!r}")
        _check_byte("clevel", self.clevel)
        _check_byte("shuffle", self.shuffle)