import io

import numpy as np
import pytest
from PIL import Image

from cinecapture.encoder.encoder import EncoderOptions
from cinecapture.encoder.mjpeg_encoder import MjpegEncoder, encode_yuv420_jpeg
from cinecapture.formats import PixelFormat, StreamInfo

W, H = 32, 16
INFO = StreamInfo(W, H, W, PixelFormat.YUV420)


def _frame(y_value, u_value=128, v_value=128, info=INFO):
    luma = bytes([y_value]) * (info.stride * info.height)
    chroma = (info.stride // 2) * (info.height // 2)
    return luma + bytes([u_value]) * chroma + bytes([v_value]) * chroma


def _decode(jpeg):
    return np.asarray(Image.open(io.BytesIO(jpeg)).convert("RGB"))


def test_jpeg_markers_and_size():
    jpeg = encode_yuv420_jpeg(_frame(128), INFO, 90)
    assert jpeg[:2] == b"\xff\xd8"
    assert jpeg[-2:] == b"\xff\xd9"
    assert Image.open(io.BytesIO(jpeg)).size == (W, H)


def test_neutral_grey_decodes_grey():
    jpeg = encode_yuv420_jpeg(_frame(128), INFO, 95)
    pixels = _decode(jpeg)
    assert pixels.shape == (H, W, 3)
    assert int(np.abs(pixels.astype(int) - 128).max()) <= 3


def test_brighter_luma_decodes_brighter():
    dark = _decode(encode_yuv420_jpeg(_frame(60), INFO, 95)).mean()
    bright = _decode(encode_yuv420_jpeg(_frame(200), INFO, 95)).mean()
    assert bright > dark


def test_stride_padding_is_ignored():
    padded = StreamInfo(W, H, W + 16, PixelFormat.YUV420)
    a = _decode(encode_yuv420_jpeg(_frame(100, info=padded), padded, 95))
    b = _decode(encode_yuv420_jpeg(_frame(100), INFO, 95))
    assert np.array_equal(a, b)


def test_wrong_format_rejected():
    info = StreamInfo(W, H, W * 3, PixelFormat.RGB888)
    with pytest.raises(ValueError):
        encode_yuv420_jpeg(bytes(W * H * 3), info, 90)


def test_short_buffer_rejected():
    with pytest.raises(ValueError, match="too small"):
        encode_yuv420_jpeg(bytes(10), INFO, 90)


def test_bad_quality_rejected():
    with pytest.raises(ValueError):
        encode_yuv420_jpeg(_frame(128), INFO, 0)


def test_encoder_delivers_in_input_order():
    received = []
    done = []
    enc = MjpegEncoder(EncoderOptions(codec="mjpeg", quality=80))
    enc.input_done_callback = lambda: done.append(1)
    enc.output_ready_callback = lambda d, ts, key: received.append((d, ts, key))
    values = [20, 60, 100, 140, 180, 220, 40, 90]
    for i, value in enumerate(values):
        enc.encode_buffer(_frame(value), INFO, i * 1000)
    enc.close()
    assert [ts for _, ts, _ in received] == [i * 1000 for i in range(len(values))]
    assert all(key for _, _, key in received)
    assert len(done) == len(values)
    for (jpeg, _, _), value in zip(received, values):
        assert jpeg == encode_yuv420_jpeg(_frame(value), INFO, 80)


def test_encoder_rejects_bad_frame_synchronously():
    enc = MjpegEncoder(EncoderOptions(codec="mjpeg"))
    try:
        with pytest.raises(ValueError):
            enc.encode_buffer(bytes(4), INFO, 0)
    finally:
        enc.close()


def test_callback_error_raised_on_close():
    enc = MjpegEncoder(EncoderOptions(codec="mjpeg"))

    def boom(d, ts, key):
        raise RuntimeError("sink failed")

    enc.output_ready_callback = boom
    enc.encode_buffer(_frame(128), INFO, 0)
    with pytest.raises(RuntimeError, match="sink failed"):
        enc.close()


def test_encode_after_close_raises():
    enc = MjpegEncoder(EncoderOptions(codec="mjpeg"))
    enc.close()
    with pytest.raises(RuntimeError, match="closed"):
        enc.encode_buffer(_frame(128), INFO, 0)