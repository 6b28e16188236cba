"""Saving uncompressed YUV420 and RGB frames."""

from __future__ import annotations

import sys

import numpy as np

from ..formats import PixelFormat, StreamInfo


def _plane(buf: np.ndarray, offset: int, rows: int, stride: int, width: int) -> np.ndarray:
    if stride < width:
        raise ValueError("stride smaller than a row of pixels")
    if rows == 0 or width == 0:
        return np.zeros((rows, width), dtype=np.uint8)
    if buf.size < offset + stride * (rows - 1) + width:
        raise ValueError("buffer too small for image")
    return np.lib.stride_tricks.as_strided(
        buf[offset:], shape=(rows, width), strides=(stride, 1))


def _check_even(info: StreamInfo) -> None:
    if info.width & 1 or info.height & 1:
        raise ValueError("both width and height must be even")


def yuv420_planar(data, info: StreamInfo) -> bytes:
    """Planar YUV420 with the stride padding removed."""
    _check_even(info)
    buf = np.frombuffer(bytes(data), dtype=np.uint8)
    w, h, stride = info.width, info.height, info.stride
    y = _plane(buf, 0, h, stride, w)
    u_start = stride * h
    w2, h2, stride2 = w // 2, h // 2, stride // 2
    u = _plane(buf, u_start, h2, stride2, w2)
    v = _plane(buf, u_start + stride2 * h2, h2, stride2, w2)
    return y.tobytes() + u.tobytes() + v.tobytes()


def yuyv_to_yuv420(data, info: StreamInfo) -> bytes:
    """Planar YUV420 from packed YUYV, taking chroma from every other row."""
    _check_even(info)
    buf = np.frombuffer(bytes(data), dtype=np.uint8)
    w, h, stride = info.width, info.height, info.stride
    packed = _plane(buf, 0, h, stride, 2 * w)
    y = packed[:, 0::2]
    chroma = packed[0::2, :]
    u = chroma[:, 1::4]
    v = chroma[:, 3::4]
    return y.tobytes() + u.tobytes() + v.tobytes()


def rgb_rows(data, info: StreamInfo) -> bytes:
    """Packed three-byte pixels with the stride padding removed."""
    buf = np.frombuffer(bytes(data), dtype=np.uint8)
    return _plane(buf, 0, info.height, info.stride, 3 * info.width).tobytes()


def _encode(data, info: StreamInfo, encoding: str) -> bytes:
    fmt = info.pixel_format
    if fmt is PixelFormat.YUYV or fmt is PixelFormat.YUV420:
        if encoding != "yuv420":
            raise ValueError(f"output format {encoding} not supported")
        if fmt is PixelFormat.YUYV:
            return yuyv_to_yuv420(data, info)
        return yuv420_planar(data, info)
    if fmt is PixelFormat.BGR888 or fmt is PixelFormat.RGB888:
        if encoding != "rgb":
            raise ValueError("encoding should be set to rgb")
        return rgb_rows(data, info)
    raise ValueError("unrecognised YUV/RGB save format")


def yuv_save(data, info: StreamInfo, filename: str, encoding: str) -> None:
    """Write the frame uncompressed to a file, or to standard output for ``-``."""
    encoded = _encode(data, info, encoding)
    if filename == "-":
        sys.stdout.buffer.write(encoded)
        sys.stdout.buffer.flush()
    else:
        with open(filename, "wb") as fp:
            fp.write(encoded)