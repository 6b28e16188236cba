"""Writing BGR888 frames (R, G, B in memory) as PNG files."""

from __future__ import annotations

import io
import logging
import sys

import numpy as np
from PIL import Image

from ..formats import PixelFormat, StreamInfo

log = logging.getLogger(__name__)

COMPRESSION_LEVEL = 1


def _rows(data, info: StreamInfo, row_bytes: int) -> np.ndarray:
    if info.stride < row_bytes:
        raise ValueError("stride smaller than a row of pixels")
    buf = np.frombuffer(bytes(data), dtype=np.uint8)
    need = info.stride * (info.height - 1) + row_bytes
    if buf.size < need:
        raise ValueError("buffer too small for image")
    return np.lib.stride_tricks.as_strided(
        buf, shape=(info.height, row_bytes), strides=(info.stride, 1))


def encode_png(data, info: StreamInfo) -> bytes:
    """Return the image compressed as an 8-bit RGB PNG."""
    if info.pixel_format is not PixelFormat.BGR888:
        raise ValueError("pixel format for png should be BGR")
    if info.width == 0 or info.height == 0:
        raise ValueError("image must not be empty")
    rows = np.ascontiguousarray(_rows(data, info, info.width * 3))
    image = Image.frombytes("RGB", (info.width, info.height), rows.tobytes())
    out = io.BytesIO()
    # Fast compression gets most of the size reduction at a fraction of the time.
    image.save(out, format="PNG", compress_level=COMPRESSION_LEVEL)
    return out.getvalue()


def png_save(data, info: StreamInfo, filename: str) -> None:
    """Write the image as PNG to a file, or to standard output for ``-``."""
    encoded = encode_png(data, info)
    if filename == "-":
        sys.stdout.buffer.write(encoded)
        sys.stdout.buffer.flush()
    else:
        with open(filename, "wb") as fp:
            fp.write(encoded)
    log.debug("Wrote PNG file of %d bytes", len(encoded))