"""Conversion of NV21 frames into packed RGB variants."""

from __future__ import annotations

import enum
from typing import Union

import numpy as np

BytesLike = Union[bytes, bytearray, memoryview, np.ndarray]


class PixelOrder(enum.Enum):
    """Output channel layouts."""

    RGB = "rgb"
    BGR = "bgr"
    RGBA = "rgba"
    BGRA = "bgra"

    @property
    def bytes_per_pixel(self) -> int:
        return 4 if self in (PixelOrder.RGBA, PixelOrder.BGRA) else 3

    @property
    def reversed(self) -> bool:
        return self in (PixelOrder.BGR, PixelOrder.BGRA)


def _as_array(data: BytesLike) -> np.ndarray:
    return np.frombuffer(bytes(data), dtype=np.uint8) if not isinstance(data, np.ndarray) \
        else data.astype(np.uint8, copy=False).ravel()


def _channel(base: np.ndarray, luma: np.ndarray) -> np.ndarray:
    return (np.clip(base + luma, 0, 0xFFFF) >> 8).astype(np.uint8)


def decode_nv21(y: BytesLike, uv: BytesLike, width: int, height: int,
                order: PixelOrder = PixelOrder.RGB, alpha: int = 0xFF) -> bytes:
    """Decode a luma plane and an interleaved chroma plane, eight columns at a time.

    Width and height must be even and at least 2. Columns beyond the last
    full block of eight are left zero.
    """
    if width & 1 or width < 2 or height & 1 or height < 2:
        raise ValueError("width and height must be even and at least 2")
    if not 0 <= alpha <= 0xFF:
        raise ValueError("alpha must fit in a byte")
    y_arr = _as_array(y).astype(np.int32)
    uv_arr = _as_array(uv).astype(np.int32)

    bpp = order.bytes_per_pixel
    stride = width * bpp
    block = (width >> 3) * 8
    pairs = height >> 1
    if y_arr.size < width * height:
        raise ValueError("luma plane too small")
    if uv_arr.size < pairs * block:
        raise ValueError("chroma plane too small")

    out = np.zeros(stride * height, dtype=np.uint8)
    if block == 0:
        return out.tobytes()

    for j in range(pairs):
        y_start = j * (block + width)
        uv_start = j * block
        dst = j * (block * bpp + stride)

        chroma = uv_arr[uv_start:uv_start + block] - 128
        c0 = np.repeat(chroma[0::2], 2)
        c1 = np.repeat(chroma[1::2], 2)
        t_r = 128 + 409 * c1
        t_g = 128 - 208 * c1 - 100 * c0
        t_b = 128 + 516 * c0

        for row_offset, dst_offset in ((0, 0), (width, stride)):
            row = y_arr[y_start + row_offset:y_start + row_offset + block]
            luma = np.maximum(row - 16, 0) * 298
            r, g, b = _channel(t_r, luma), _channel(t_g, luma), _channel(t_b, luma)
            first, last = (b, r) if order.reversed else (r, b)
            channels = [first, g, last]
            if bpp == 4:
                channels.append(np.full(block, alpha, dtype=np.uint8))
            start = dst + dst_offset
            out[start:start + block * bpp] = np.stack(channels, axis=1).ravel()
    return out.tobytes()


def _split(nv21: BytesLike, width: int, height: int):
    arr = _as_array(nv21)
    return arr[:width * height], arr[width * height:]


def nv21_to_rgb(nv21: BytesLike, width: int, height: int) -> bytes:
    """Decode a contiguous NV21 frame to packed RGB."""
    y, uv = _split(nv21, width, height)
    return decode_nv21(y, uv, width, height, PixelOrder.RGB)


def nv21_to_bgr(nv21: BytesLike, width: int, height: int) -> bytes:
    """Decode a contiguous NV21 frame to packed BGR."""
    y, uv = _split(nv21, width, height)
    return decode_nv21(y, uv, width, height, PixelOrder.BGR)


def nv21_to_rgba(nv21: BytesLike, width: int, height: int, alpha: int = 0xFF) -> bytes:
    """Decode a contiguous NV21 frame to packed RGBA with a constant alpha."""
    y, uv = _split(nv21, width, height)
    return decode_nv21(y, uv, width, height, PixelOrder.RGBA, alpha)


def nv21_to_bgra(nv21: BytesLike, width: int, height: int, alpha: int = 0xFF) -> bytes:
    """Decode a contiguous NV21 frame to packed BGRA with a constant alpha."""
    y, uv = _split(nv21, width, height)
    return decode_nv21(y, uv, width, height, PixelOrder.BGRA, alpha)