"""Writing raw Bayer frames as DNG files with a small greyscale preview."""

from __future__ import annotations

import logging
import math
import struct
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Tuple

import numpy as np

from ..formats import PixelFormat, StreamInfo

log = logging.getLogger(__name__)

MAKE_STRING = "Raspberry Pi"
SOFTWARE_STRING = "rpicam-still"

# Compression parameters used by every compressed raw stream.
COMPRESS_OFFSET = 2048
COMPRESS_MODE = 1

TIFF_RGGB = (0, 1, 1, 2)
TIFF_GRBG = (1, 0, 2, 1)
TIFF_BGGR = (2, 1, 1, 0)
TIFF_GBRG = (1, 2, 0, 1)


@dataclass(frozen=True)
class BayerFormat:
    """Layout of a raw Bayer stream."""

    name: str
    bits: int
    order: Tuple[int, int, int, int]
    packed: bool
    compressed: bool


BAYER_FORMATS: Dict[PixelFormat, BayerFormat] = {
    PixelFormat.SRGGB10_CSI2P: BayerFormat("RGGB-10", 10, TIFF_RGGB, True, False),
    PixelFormat.SGRBG10_CSI2P: BayerFormat("GRBG-10", 10, TIFF_GRBG, True, False),
    PixelFormat.SBGGR10_CSI2P: BayerFormat("BGGR-10", 10, TIFF_BGGR, True, False),
    PixelFormat.SGBRG10_CSI2P: BayerFormat("GBRG-10", 10, TIFF_GBRG, True, False),

    PixelFormat.SRGGB10: BayerFormat("RGGB-10", 10, TIFF_RGGB, False, False),
    PixelFormat.SGRBG10: BayerFormat("GRBG-10", 10, TIFF_GRBG, False, False),
    PixelFormat.SBGGR10: BayerFormat("BGGR-10", 10, TIFF_BGGR, False, False),
    PixelFormat.SGBRG10: BayerFormat("GBRG-10", 10, TIFF_GBRG, False, False),

    PixelFormat.SRGGB12_CSI2P: BayerFormat("RGGB-12", 12, TIFF_RGGB, True, False),
    PixelFormat.SGRBG12_CSI2P: BayerFormat("GRBG-12", 12, TIFF_GRBG, True, False),
    PixelFormat.SBGGR12_CSI2P: BayerFormat("BGGR-12", 12, TIFF_BGGR, True, False),
    PixelFormat.SGBRG12_CSI2P: BayerFormat("GBRG-12", 12, TIFF_GBRG, True, False),

    PixelFormat.SRGGB12: BayerFormat("RGGB-12", 12, TIFF_RGGB, False, False),
    PixelFormat.SGRBG12: BayerFormat("GRBG-12", 12, TIFF_GRBG, False, False),
    PixelFormat.SBGGR12: BayerFormat("BGGR-12", 12, TIFF_BGGR, False, False),
    PixelFormat.SGBRG12: BayerFormat("GBRG-12", 12, TIFF_GBRG, False, False),

    PixelFormat.SRGGB16: BayerFormat("RGGB-16", 16, TIFF_RGGB, False, False),
    PixelFormat.SGRBG16: BayerFormat("GRBG-16", 16, TIFF_GRBG, False, False),
    PixelFormat.SBGGR16: BayerFormat("BGGR-16", 16, TIFF_BGGR, False, False),
    PixelFormat.SGBRG16: BayerFormat("GBRG-16", 16, TIFF_GBRG, False, False),

    PixelFormat.R10_CSI2P: BayerFormat("BGGR-10", 10, TIFF_BGGR, True, False),
    PixelFormat.R10: BayerFormat("BGGR-10", 10, TIFF_BGGR, False, False),
    PixelFormat.R12: BayerFormat("BGGR-12", 12, TIFF_BGGR, False, False),

    PixelFormat.RGGB_PISP_COMP1: BayerFormat("RGGB-16-PISP", 16, TIFF_RGGB, False, True),
    PixelFormat.GRBG_PISP_COMP1: BayerFormat("GRBG-16-PISP", 16, TIFF_GRBG, False, True),
    PixelFormat.GBRG_PISP_COMP1: BayerFormat("GBRG-16-PISP", 16, TIFF_GBRG, False, True),
    PixelFormat.BGGR_PISP_COMP1: BayerFormat("BGGR-16-PISP", 16, TIFF_BGGR, False, True),
}


def _rows(data, info: StreamInfo, row_bytes: int) -> np.ndarray:
    """The first ``row_bytes`` bytes of every row, as a contiguous 2-D array."""
    if info.stride < row_bytes:
        raise ValueError("stride smaller than a row of pixels")
    buf = np.frombuffer(bytes(data), dtype=np.uint8)
    if info.height == 0 or row_bytes == 0:
        return np.zeros((info.height, row_bytes), dtype=np.uint8)
    if buf.size < info.stride * (info.height - 1) + row_bytes:
        raise ValueError("buffer too small for image")
    view = np.lib.stride_tricks.as_strided(
        buf, shape=(info.height, row_bytes), strides=(info.stride, 1))
    return np.ascontiguousarray(view)


def unpack_10bit(data, info: StreamInfo) -> np.ndarray:
    """Unpack CSI-2 packed 10-bit samples (4 pixels in 5 bytes) to uint16."""
    groups = (info.width + 3) // 4
    rows = _rows(data, info, 5 * groups).reshape(info.height, groups, 5).astype(np.uint16)
    low = rows[:, :, 4:5]
    shifts = np.array([0, 2, 4, 6], dtype=np.uint16)
    pixels = (rows[:, :, :4] << 2) | ((low >> shifts) & 3)
    return pixels.reshape(info.height, 4 * groups)[:, :info.width].astype(np.uint16)


def unpack_12bit(data, info: StreamInfo) -> np.ndarray:
    """Unpack CSI-2 packed 12-bit samples (2 pixels in 3 bytes) to uint16."""
    groups = (info.width + 1) // 2
    rows = _rows(data, info, 3 * groups).reshape(info.height, groups, 3).astype(np.uint16)
    low = rows[:, :, 2]
    first = (rows[:, :, 0] << 4) | (low & 15)
    second = (rows[:, :, 1] << 4) | ((low >> 4) & 15)
    pixels = np.stack([first, second], axis=-1)
    return pixels.reshape(info.height, 2 * groups)[:, :info.width].astype(np.uint16)


def unpack_16bit(data, info: StreamInfo) -> np.ndarray:
    """Copy 16-bit samples, stored in native byte order, out of a strided buffer."""
    rows = _rows(data, info, 2 * info.width)
    return rows.view(np.dtype("=u2")).reshape(info.height, info.width).copy()


def postprocess(value):
    """Add the compression offset to decompressed samples, saturating at 0xFFFF."""
    result = np.minimum(np.asarray(value, dtype=np.int64) + COMPRESS_OFFSET, 0xFFFF)
    if result.ndim == 0:
        return int(result)
    return result.astype(np.uint16)


def dequantize(q, qmode):
    """Expand quantised values according to the quantisation mode (0 to 3)."""
    q_arr = np.asarray(q, dtype=np.int64)
    mode = np.asarray(qmode, dtype=np.int64)
    result = np.select(
        [mode == 0, mode == 1, mode == 2],
        [np.where(q_arr < 320, 16 * q_arr, 32 * (q_arr - 160)), 64 * q_arr, 128 * q_arr],
        np.where(q_arr < 94, 256 * q_arr, np.minimum(0xFFFF, 512 * (q_arr - 47))),
    ) & 0xFFFF
    if result.ndim == 0:
        return int(result)
    return result


def _sub_block(words: np.ndarray) -> np.ndarray:
    """Decode 32-bit words into four samples each (last axis of the result)."""
    w = words.astype(np.int64)
    qmode = w & 3

    field0 = (w >> 2) & 511
    field1 = (w >> 11) & 127
    field2 = (w >> 18) & 127
    field3 = (w >> 25) & 127
    split = (qmode == 2) & (field0 >= 384)
    high = field1 >= 64
    q1 = np.where(split, field0, np.where(high, field0, field0 + 64 - field1))
    q2 = np.where(split, field1 + 384, np.where(high, field0 + field1 - 64, field0))
    p1 = np.maximum(0, q1 - 64)
    p2 = np.maximum(0, q2 - 64)
    p1 = np.where(qmode == 2, np.minimum(384, p1), p1)
    p2 = np.where(qmode == 2, np.minimum(384, p2), p2)
    q0 = p1 + field2
    q3 = p2 + field3

    pack0 = (w >> 2) & 32767
    pack1 = (w >> 17) & 32767
    packed = qmode == 3
    q0 = np.where(packed, (pack0 & 15) + 16 * ((pack0 >> 8) // 11), q0)
    q1 = np.where(packed, (pack0 >> 4) % 176, q1)
    q2 = np.where(packed, (pack1 & 15) + 16 * ((pack1 >> 8) // 11), q2)
    q3 = np.where(packed, (pack1 >> 4) % 176, q3)

    return np.stack([dequantize(q, qmode) for q in (q0, q1, q2, q3)], axis=-1)


def uncompress(data, info: StreamInfo) -> np.ndarray:
    """Decompress a PiSP-compressed frame; rows are padded to a multiple of 8 pixels."""
    blocks = (info.width + 7) // 8
    rows = _rows(data, info, 8 * blocks)
    words = rows.view(np.dtype("<u4")).reshape(info.height, blocks, 2)
    # The first word fills the even samples of each 8-pixel block, the second the odd ones.
    samples = np.stack([_sub_block(words[:, :, 0]), _sub_block(words[:, :, 1])], axis=-1)
    return postprocess(samples.reshape(info.height, 8 * blocks))


class Matrix:
    """A 3x3 matrix stored row by row."""

    __slots__ = ("m",)

    def __init__(self, *values: float) -> None:
        if len(values) == 9:
            self.m = tuple(float(v) for v in values)
        elif len(values) == 3:
            d0, d1, d2 = values
            self.m = (float(d0), 0.0, 0.0, 0.0, float(d1), 0.0, 0.0, 0.0, float(d2))
        elif not values:
            self.m = (0.0,) * 9
        else:
            raise ValueError("a matrix needs 9 values, or 3 for a diagonal")

    def transpose(self) -> "Matrix":
        m = self.m
        return Matrix(m[0], m[3], m[6], m[1], m[4], m[7], m[2], m[5], m[8])

    def cofactor(self) -> "Matrix":
        m = self.m
        return Matrix(m[4] * m[8] - m[5] * m[7], -(m[3] * m[8] - m[5] * m[6]), m[3] * m[7] - m[4] * m[6],
                      -(m[1] * m[8] - m[2] * m[7]), m[0] * m[8] - m[2] * m[6], -(m[0] * m[7] - m[1] * m[6]),
                      m[1] * m[5] - m[2] * m[4], -(m[0] * m[5] - m[2] * m[3]), m[0] * m[4] - m[1] * m[3])

    def adjugate(self) -> "Matrix":
        return self.cofactor().transpose()

    def determinant(self) -> float:
        m = self.m
        return (m[0] * (m[4] * m[8] - m[5] * m[7])
                - m[1] * (m[3] * m[8] - m[5] * m[6])
                + m[2] * (m[3] * m[7] - m[4] * m[6]))

    def inverse(self) -> "Matrix":
        det = self.determinant()
        if det == 0:
            raise ValueError("matrix is singular")
        return self.adjugate() * (1.0 / det)

    def __mul__(self, other):
        if isinstance(other, Matrix):
            a, b = self.m, other.m
            return Matrix(*(a[i * 3] * b[j] + a[i * 3 + 1] * b[3 + j] + a[i * 3 + 2] * b[6 + j]
                            for i in range(3) for j in range(3)))
        if isinstance(other, (int, float)):
            return Matrix(*(v * other for v in self.m))
        return NotImplemented

    def __rmul__(self, other):
        if isinstance(other, (int, float)):
            return self * other
        return NotImplemented

    def __eq__(self, other) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.m == other.m

    def __repr__(self) -> str:
        return f"Matrix{self.m!r}"


RGB2XYZ = Matrix(0.4124564, 0.3575761, 0.1804375,
                 0.2126729, 0.7151522, 0.0721750,
                 0.0193339, 0.1191920, 0.9503041)

DEFAULT_CCM = Matrix(1.90255, -0.77478, -0.12777,
                     -0.31338, 1.88197, -0.56858,
                     -0.06001, -0.61785, 1.67786)

# TIFF field types.
_BYTE, _ASCII, _SHORT, _LONG, _RATIONAL, _SRATIONAL = 1, 2, 3, 4, 5, 10

_Entry = Tuple[int, int, int, bytes]


def _short(tag: int, *values: int) -> _Entry:
    return tag, _SHORT, len(values), struct.pack(f"<{len(values)}H", *values)


def _long(tag: int, *values: int) -> _Entry:
    return tag, _LONG, len(values), struct.pack(f"<{len(values)}I", *values)


def _byte(tag: int, *values: int) -> _Entry:
    return tag, _BYTE, len(values), bytes(values)


def _ascii(tag: int, text: str) -> _Entry:
    raw = text.encode("utf-8") + b"\0"
    return tag, _ASCII, len(raw), raw


def _to_rational(value: float, signed: bool) -> Tuple[int, int]:
    limit = 2 ** 31 - 1 if signed else 2 ** 32 - 1
    value = float(value)
    if not math.isfinite(value):
        raise ValueError("cannot store a non-finite value as a rational")
    if not signed and value < 0:
        value = 0.0
    if value == 0:
        return 0, 1
    den = max(1, min(1_000_000, int(limit // abs(value)) if abs(value) >= 1 else 1_000_000))
    num = max(-limit, min(limit, round(value * den)))
    common = math.gcd(num, den) or 1
    return num // common, den // common


def _rational(tag: int, values: Sequence[float], signed: bool = False) -> _Entry:
    pairs = [_to_rational(v, signed) for v in values]
    code = "i" if signed else "I"
    flat = [part for pair in pairs for part in pair]
    return (tag, _SRATIONAL if signed else _RATIONAL, len(pairs),
            struct.pack(f"<{len(flat)}{code}", *flat))


def _raw_rational(tag: int, num: int, den: int) -> _Entry:
    return tag, _RATIONAL, 1, struct.pack("<II", num, den)


def _ifd(offset: int, entries: List[_Entry]) -> bytes:
    """Serialise a directory placed at ``offset``, with its out-of-line values after it."""
    entries = sorted(entries, key=lambda e: e[0])
    data_pos = offset + 2 + 12 * len(entries) + 4
    head = bytearray(struct.pack("<H", len(entries)))
    extra = bytearray()
    for tag, typ, count, payload in entries:
        if len(payload) <= 4:
            value = payload.ljust(4, b"\0")
        else:
            value = struct.pack("<I", data_pos + len(extra))
            extra += payload
            if len(payload) & 1:
                extra += b"\0"
        head += struct.pack("<HHI", tag, typ, count) + value
    head += struct.pack("<I", 0)
    return bytes(head + extra)


def _pad_even(out: bytearray) -> None:
    if len(out) & 1:
        out += b"\0"


def _black_levels(bayer: BayerFormat, metadata: Mapping[str, Any]) -> List[float]:
    scale = (1 << bayer.bits) / 65536.0
    levels = [4096 * scale] * 4
    measured = metadata.get("SensorBlackLevels")
    if measured is None:
        log.warning("WARNING: no black level found, using default")
        return levels
    # Measured levels come as R, Gr, Gb, B; re-order them for the Bayer order.
    for i in range(4):
        j = bayer.order[i]
        j = 0 if j == 0 else (3 if j == 2 else 1 + bool(bayer.order[i ^ 1]))
        levels[j] = measured[i] * scale
    return levels


def _thumbnail(buf: np.ndarray, info: StreamInfo, bits: int) -> np.ndarray:
    th, tw = info.height >> 4, info.width >> 4
    rows = np.arange(th) * 16
    cols = np.arange(tw) * 16
    r, c = np.meshgrid(rows, cols, indexing="ij")
    b = buf.astype(np.uint64)
    grey = b[r, c] + b[r, c + 1] + b[r + 1, c] + b[r + 1, c + 1]
    grey = ((grey << np.uint64(14)) & np.uint64(0xFFFFFFFF)) >> np.uint64(bits)
    # A square root makes do as gamma correction for the preview.
    value = np.sqrt(grey.astype(np.float64)).astype(np.uint64) & np.uint64(0xFF)
    return np.repeat(value.astype(np.uint8)[:, :, None], 3, axis=2)


def dng_save(data, info: StreamInfo, metadata: Mapping[str, Any], filename: str,
             cam_model: str) -> None:
    """Write a raw Bayer frame as a DNG file with a preview and EXIF data."""
    bayer = BAYER_FORMATS.get(info.pixel_format)
    if bayer is None:
        raise ValueError("unsupported Bayer format")
    if info.width <= 0 or info.height <= 0:
        raise ValueError("image must not be empty")
    log.info("Bayer format is %s", bayer.name)

    if bayer.compressed:
        buf = uncompress(data, info)
    elif bayer.packed and bayer.bits == 10:
        buf = unpack_10bit(data, info)
    elif bayer.packed:
        buf = unpack_12bit(data, info)
    else:
        buf = unpack_16bit(data, info)

    black_levels = _black_levels(bayer, metadata)

    exposure = metadata.get("ExposureTime")
    if exposure is None:
        exposure = 10000
        log.warning("WARNING: default to exposure time of %sus", exposure)
    exp_time = float(exposure) / 1e6

    gain = metadata.get("AnalogueGain")
    if gain is None:
        iso = 100
        log.warning("WARNING: default to ISO value of %d", iso)
    else:
        iso = int(gain * 100.0) & 0xFFFF

    neutral = [1.0, 1.0, 1.0]
    wb_gains = Matrix(1, 1, 1)
    colour_gains = metadata.get("ColourGains")
    if colour_gains is not None:
        neutral[0] = 1.0 / colour_gains[0]
        neutral[2] = 1.0 / colour_gains[1]
        wb_gains = Matrix(colour_gains[0], 1, colour_gains[1])

    ccm_values = metadata.get("ColourCorrectionMatrix")
    if ccm_values is not None:
        ccm = Matrix(*ccm_values)
    else:
        ccm = DEFAULT_CCM
        log.warning("WARNING: no CCM metadata found")

    cam_xyz = (RGB2XYZ * ccm * wb_gains).inverse()
    log.debug("Black levels %s, exposure time %sus, ISO %d", black_levels, exp_time * 1e6, iso)
    log.debug("Neutral %s", neutral)
    log.debug("Cam_XYZ: %s", cam_xyz.m)

    thumb = _thumbnail(buf, info, bayer.bits)
    raw = np.ascontiguousarray(buf[:, :info.width]).astype("<u2")

    out = bytearray(b"II*\x00" + bytes(4))
    thumb_off = len(out)
    thumb_bytes = thumb.tobytes()
    out += thumb_bytes
    _pad_even(out)
    raw_off = len(out)
    raw_bytes = raw.tobytes()
    out += raw_bytes
    _pad_even(out)

    sub_off = len(out)
    out += _ifd(sub_off, [
        _long(254, 0),
        _long(256, info.width),
        _long(257, info.height),
        _short(258, 16),
        _short(259, 1),
        _short(262, 32803),
        _long(273, raw_off),
        _short(277, 1),
        _long(278, info.height),
        _long(279, len(raw_bytes)),
        _short(284, 1),
        _short(33421, 2, 2),
        _byte(33422, *bayer.order),
        _short(50713, 2, 2),
        _rational(50714, black_levels),
        _long(50717, (1 << bayer.bits) - 1),
    ])

    exif_entries = [
        _rational(33434, [exp_time]),
        _short(34855, iso),
        _ascii(36867, time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())),
    ]
    lens_position = metadata.get("LensPosition")
    if lens_position is not None:
        if lens_position > 0.0:
            exif_entries.append(_rational(37382, [1.0 / lens_position]))
        else:
            exif_entries.append(_raw_rational(37382, 0xFFFFFFFF, 1))
    exif_off = len(out)
    out += _ifd(exif_off, exif_entries)

    ifd0_off = len(out)
    out += _ifd(ifd0_off, [
        _long(254, 1),
        _long(256, info.width >> 4),
        _long(257, info.height >> 4),
        _short(258, 8, 8, 8),
        _short(259, 1),
        _short(262, 2),
        _ascii(271, MAKE_STRING),
        _ascii(272, cam_model),
        _long(273, thumb_off),
        _short(274, 1),
        _short(277, 3),
        _long(278, info.height >> 4),
        _long(279, len(thumb_bytes)),
        _short(284, 1),
        _ascii(305, SOFTWARE_STRING),
        _long(330, sub_off),
        _long(34665, exif_off),
        _byte(50706, 1, 1, 0, 0),
        _byte(50707, 1, 0, 0, 0),
        _ascii(50708, f"{MAKE_STRING} {cam_model}"),
        _rational(50721, cam_xyz.m, signed=True),
        _rational(50728, neutral),
        _short(50778, 21),
    ])
    out[4:8] = struct.pack("<I", ifd0_off)

    try:
        with open(filename, "wb") as fp:
            fp.write(out)
    except OSError as exc:
        raise RuntimeError(f"could not open file {filename}") from exc