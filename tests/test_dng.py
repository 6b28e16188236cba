import math
import struct

import numpy as np
import pytest

from cinecapture.formats import PixelFormat, StreamInfo
from cinecapture.image.dng import (
    COMPRESS_OFFSET,
    Matrix,
    dequantize,
    dng_save,
    postprocess,
    uncompress,
    unpack_10bit,
    unpack_12bit,
    unpack_16bit,
)

_SIZES = {1: 1, 2: 1, 3: 2, 4: 4, 5: 8, 10: 8}


def _parse_ifd(blob, offset):
    (count,) = struct.unpack_from("<H", blob, offset)
    entries = {}
    for k in range(count):
        tag, typ, n = struct.unpack_from("<HHI", blob, offset + 2 + 12 * k)
        size = _SIZES[typ] * n
        field_pos = offset + 2 + 12 * k + 8
        if size <= 4:
            raw = blob[field_pos:field_pos + size]
        else:
            (ptr,) = struct.unpack_from("<I", blob, field_pos)
            raw = blob[ptr:ptr + size]
        entries[tag] = (typ, n, raw)
    return entries


def _values(entry):
    typ, n, raw = entry
    if typ == 1:
        return tuple(raw)
    if typ == 2:
        return raw.rstrip(b"\0").decode()
    if typ == 3:
        return struct.unpack(f"<{n}H", raw)
    if typ == 4:
        return struct.unpack(f"<{n}I", raw)
    if typ in (5, 10):
        code = "I" if typ == 5 else "i"
        flat = struct.unpack(f"<{2 * n}{code}", raw)
        return tuple(zip(flat[0::2], flat[1::2]))
    raise AssertionError(typ)


def _pack10(pixels, stride):
    rows = []
    for row in pixels:
        out = bytearray()
        padded = list(row) + [0] * (-len(row) % 4)
        for g in range(0, len(padded), 4):
            group = padded[g:g + 4]
            out += bytes(p >> 2 for p in group)
            out.append(sum((p & 3) << (2 * i) for i, p in enumerate(group)))
        rows.append(bytes(out).ljust(stride, b"\0"))
    return b"".join(rows)


def _pack12(pixels, stride):
    rows = []
    for row in pixels:
        out = bytearray()
        padded = list(row) + [0] * (len(row) % 2)
        for g in range(0, len(padded), 2):
            a, b = padded[g:g + 2]
            out += bytes([a >> 4, b >> 4, (a & 15) | ((b & 15) << 4)])
        rows.append(bytes(out).ljust(stride, b"\0"))
    return b"".join(rows)


@pytest.mark.parametrize("width", [8, 6, 5])
def test_unpack_10bit_round_trip(width):
    rng = np.random.default_rng(1)
    pixels = rng.integers(0, 1024, size=(3, width))
    stride = 16
    info = StreamInfo(width, 3, stride, PixelFormat.SRGGB10_CSI2P)
    result = unpack_10bit(_pack10(pixels.tolist(), stride), info)
    assert result.dtype == np.uint16
    np.testing.assert_array_equal(result, pixels)


@pytest.mark.parametrize("width", [4, 5])
def test_unpack_12bit_round_trip(width):
    rng = np.random.default_rng(2)
    pixels = rng.integers(0, 4096, size=(2, width))
    stride = 12
    info = StreamInfo(width, 2, stride, PixelFormat.SRGGB12_CSI2P)
    result = unpack_12bit(_pack12(pixels.tolist(), stride), info)
    np.testing.assert_array_equal(result, pixels)


def test_unpack_16bit_skips_stride_padding():
    pixels = np.arange(12, dtype=np.uint16).reshape(3, 4) * 1000
    padded = np.zeros((3, 6), dtype=np.uint16)
    padded[:, :4] = pixels
    info = StreamInfo(4, 3, 12, PixelFormat.SRGGB16)
    np.testing.assert_array_equal(unpack_16bit(padded.tobytes(), info), pixels)


def test_unpack_rejects_short_buffer():
    info = StreamInfo(8, 4, 16, PixelFormat.SRGGB16)
    with pytest.raises(ValueError):
        unpack_16bit(bytes(20), info)


def test_postprocess_adds_offset_and_saturates():
    assert postprocess(0) == 2048
    assert postprocess(0xFFFF) == 0xFFFF


def test_dequantize_zero_and_clip():
    for mode in range(4):
        assert dequantize(0, mode) == 0
    assert dequantize(200, 3) == 0xFFFF


@pytest.mark.parametrize("mode", [0, 1, 2, 3])
def test_dequantize_is_monotonic(mode):
    values = dequantize(np.arange(0, 500), mode)
    assert np.all(np.diff(values) >= 0)


def test_uncompress_shape_and_range():
    rng = np.random.default_rng(3)
    row = rng.integers(0, 256, size=16, dtype=np.uint8)
    data = np.tile(row, (3, 1)).tobytes()
    info = StreamInfo(10, 3, 16, PixelFormat.RGGB_PISP_COMP1)
    out = uncompress(data, info)
    assert out.shape == (3, 16)
    assert int(out.min()) >= COMPRESS_OFFSET
    np.testing.assert_array_equal(out[0], out[1])
    np.testing.assert_array_equal(out[1], out[2])


def test_matrix_identity_inverse_and_products():
    identity = Matrix(1, 1, 1)
    assert identity.inverse() == identity
    m = Matrix(2, 1, 0, 1, 3, 1, 0, 1, 4)
    product = m * m.inverse()
    for got, want in zip(product.m, identity.m):
        assert got == pytest.approx(want, abs=1e-12)
    assert m.transpose().transpose() == m


def test_matrix_determinant_and_adjugate():
    assert Matrix(2, 3, 4).determinant() == 24
    m = Matrix(1, 2, 3, 0, 1, 4, 5, 6, 0)
    scaled = m.inverse() * m.determinant()
    for got, want in zip(scaled.m, m.adjugate().m):
        assert got == pytest.approx(want)


def test_matrix_errors():
    with pytest.raises(ValueError):
        Matrix(1, 2)
    with pytest.raises(ValueError):
        Matrix(1, 2, 3, 2, 4, 6, 0, 0, 1).inverse()


@pytest.mark.parametrize(
    "pixel_format, packer, bits, stride",
    [
        (PixelFormat.SBGGR12, None, 12, 32),
        (PixelFormat.SBGGR12_CSI2P, _pack12, 12, 24),
        (PixelFormat.R10_CSI2P, _pack10, 10, 20),
    ],
)
def test_dng_bayer_order_and_white_level(tmp_path, pixel_format, packer, bits, stride):
    rng = np.random.default_rng(5)
    pixels = rng.integers(0, 1 << bits, size=(16, 16))
    if packer is None:
        data = pixels.astype("<u2").tobytes()
    else:
        data = packer(pixels.tolist(), stride)
    info = StreamInfo(16, 16, stride, pixel_format)
    path = tmp_path / "bayer.dng"
    dng_save(data, info, {}, str(path), "imx000")
    blob = path.read_bytes()
    (ifd0_off,) = struct.unpack_from("<I", blob, 4)
    ifd0 = _parse_ifd(blob, ifd0_off)
    sub = _parse_ifd(blob, _values(ifd0[330])[0])
    assert _values(sub[33422]) == (2, 1, 1, 0)
    assert _values(sub[50717]) == ((1 << bits) - 1,)
    offset = _values(sub[273])[0]
    length = _values(sub[279])[0]
    raw = np.frombuffer(blob[offset:offset + length], dtype="<u2").reshape(16, 16)
    np.testing.assert_array_equal(raw, pixels)


def _save(tmp_path, pixels, metadata=None):
    h, w = pixels.shape
    info = StreamInfo(w, h, 2 * w, PixelFormat.SRGGB16)
    path = tmp_path / "out.dng"
    dng_save(pixels.astype(np.uint16).tobytes(), info, metadata or {}, str(path), "imx000")
    return path.read_bytes()


def test_dng_structure(tmp_path):
    rng = np.random.default_rng(4)
    pixels = rng.integers(0, 65536, size=(32, 32)).astype(np.uint16)
    blob = _save(tmp_path, pixels)
    assert blob[:4] == b"II*\x00"
    (ifd0_off,) = struct.unpack_from("<I", blob, 4)
    ifd0 = _parse_ifd(blob, ifd0_off)
    assert _values(ifd0[254]) == (1,)
    assert _values(ifd0[256]) == (2,)
    assert _values(ifd0[271]) == "Raspberry Pi"
    assert _values(ifd0[50708]) == "Raspberry Pi imx000"
    assert _values(ifd0[50706]) == (1, 1, 0, 0)

    sub = _parse_ifd(blob, _values(ifd0[330])[0])
    assert _values(sub[256]) == (32,)
    assert _values(sub[258]) == (16,)
    assert _values(sub[33422]) == (0, 1, 1, 2)
    assert _values(sub[50717]) == (0xFFFF,)
    offset = _values(sub[273])[0]
    length = _values(sub[279])[0]
    raw = np.frombuffer(blob[offset:offset + length], dtype="<u2").reshape(32, 32)
    np.testing.assert_array_equal(raw, pixels)


def test_dng_exif_values(tmp_path):
    blob = _save(tmp_path, np.zeros((16, 16)), {"AnalogueGain": 2.0})
    (ifd0_off,) = struct.unpack_from("<I", blob, 4)
    ifd0 = _parse_ifd(blob, ifd0_off)
    exif = _parse_ifd(blob, _values(ifd0[34665])[0])
    assert _values(exif[34855]) == (200,)
    ((num, den),) = _values(exif[33434])
    assert num / den == pytest.approx(10000 / 1e6)


def test_dng_thumbnail_brightness(tmp_path):
    for fill, expected in ((0, 0), (0xFFFF, 255)):
        blob = _save(tmp_path, np.full((32, 32), fill))
        (ifd0_off,) = struct.unpack_from("<I", blob, 4)
        ifd0 = _parse_ifd(blob, ifd0_off)
        offset = _values(ifd0[273])[0]
        length = _values(ifd0[279])[0]
        assert length == 2 * 2 * 3
        assert set(blob[offset:offset + length]) == {expected}


def test_dng_neutral_from_colour_gains(tmp_path):
    blob = _save(tmp_path, np.zeros((16, 16)), {"ColourGains": (2.0, 4.0)})
    (ifd0_off,) = struct.unpack_from("<I", blob, 4)
    neutral = _values(_parse_ifd(blob, ifd0_off)[50728])
    assert [n / d for n, d in neutral] == pytest.approx([1 / 2.0, 1.0, 1 / 4.0])


def test_dng_infinite_subject_distance(tmp_path):
    blob = _save(tmp_path, np.zeros((16, 16)), {"LensPosition": 0.0})
    (ifd0_off,) = struct.unpack_from("<I", blob, 4)
    exif = _parse_ifd(blob, _values(_parse_ifd(blob, ifd0_off)[34665])[0])
    assert _values(exif[37382]) == ((0xFFFFFFFF, 1),)


def test_dng_rejects_non_bayer(tmp_path):
    info = StreamInfo(16, 16, 16, PixelFormat.YUV420)
    with pytest.raises(ValueError):
        dng_save(bytes(16 * 24), info, {}, str(tmp_path / "x.dng"), "cam")
    assert not math.isnan(0.0) and not (tmp_path / "x.dng").exists()