"""Writing RGB888 frames as uncompressed 24-bit BMP files."""

from __future__ import annotations

import logging
import struct
import sys

import numpy as np

from ..formats import PixelFormat, StreamInfo

log = logging.getLogger(__name__)

_FILE_HEADER = struct.Struct("<2sIHHI")
_IMAGE_HEADER = struct.Struct("<IiiHHIIIIII")
HEADER_SIZE = _FILE_HEADER.size + _IMAGE_HEADER.size
PELS_PER_METRE = 100000


def _rows(data, info: StreamInfo, row_bytes: int) -> np.ndarray:
    if info.stride < row_bytes:
        raise ValueError("stride smaller than a row of pixels")
    buf = np.frombuffer(bytes(data), dtype=np.uint8)
    if info.height == 0 or row_bytes == 0:
        return np.zeros((info.height, row_bytes), dtype=np.uint8)
    need = info.stride * (info.height - 1) + row_bytes
    if buf.size < need:
        raise ValueError("buffer too small for image")
    return np.lib.stride_tricks.as_strided(
        buf, shape=(info.height, row_bytes), strides=(info.stride, 1))


def encode_bmp(data, info: StreamInfo) -> bytes:
    """Return a complete BMP file holding the image, top row first."""
    if info.pixel_format is not PixelFormat.RGB888:
        raise ValueError("pixel format for bmp should be RGB")
    line = info.width * 3
    pitch = (line + 3) & ~3
    rows = _rows(data, info, line)
    padded = np.zeros((info.height, pitch), dtype=np.uint8)
    padded[:, :line] = rows

    filesize = HEADER_SIZE + info.height * pitch
    file_header = _FILE_HEADER.pack(b"BM", filesize, 0, 0, HEADER_SIZE)
    # A negative height stores the rows top-down, the order the camera gives them.
    image_header = _IMAGE_HEADER.pack(
        _IMAGE_HEADER.size, info.width, -info.height, 1, 24, 0, 0,
        PELS_PER_METRE, PELS_PER_METRE, 0, 0)
    return file_header + image_header + padded.tobytes()


def bmp_save(data, info: StreamInfo, filename: str) -> None:
    """Write the image as BMP to a file, or to standard output for ``-``."""
    encoded = encode_bmp(data, info)
    if filename == "-":
        sys.stdout.buffer.write(encoded)
        sys.stdout.buffer.flush()
    else:
        with open(filename, "wb") as fp:
            fp.write(encoded)
    log.debug("Wrote %d bytes to BMP file", len(encoded))