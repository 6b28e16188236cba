import numpy as np
import pytest

from cinecapture.yuv2rgb import (
    PixelOrder,
    decode_nv21,
    nv21_to_bgr,
    nv21_to_bgra,
    nv21_to_rgb,
    nv21_to_rgba,
)

W, H = 16, 4


def frame(y_value, u_value=128, v_value=128):
    y = bytes([y_value]) * (W * H)
    uv = bytes([u_value, v_value]) * (W * H // 4)
    return y + uv


def pixels(data, bpp):
    return np.frombuffer(data, dtype=np.uint8).reshape(-1, bpp)


def test_output_size():
    assert len(nv21_to_rgb(frame(100), W, H)) == W * H * 3
    assert len(nv21_to_rgba(frame(100), W, H)) == W * H * 4


def test_neutral_chroma_gives_grey():
    px = pixels(nv21_to_rgb(frame(120), W, H), 3)
    assert (px[:, 0] == px[:, 1]).all()
    assert (px[:, 1] == px[:, 2]).all()


def test_black_and_white_levels():
    assert set(nv21_to_rgb(frame(16), W, H)) == {0}
    assert set(nv21_to_rgb(frame(255), W, H)) == {255}


def test_brightness_is_monotonic():
    dark = pixels(nv21_to_rgb(frame(60), W, H), 3)
    bright = pixels(nv21_to_rgb(frame(180), W, H), 3)
    assert (bright.astype(int) > dark.astype(int)).all()


def test_bgr_is_rgb_reversed():
    data = frame(100, 90, 200)
    rgb = pixels(nv21_to_rgb(data, W, H), 3)
    bgr = pixels(nv21_to_bgr(data, W, H), 3)
    assert (rgb[:, ::-1] == bgr).all()


def test_rgba_alpha_and_colour_match_rgb():
    data = frame(100, 90, 200)
    rgb = pixels(nv21_to_rgb(data, W, H), 3)
    rgba = pixels(nv21_to_rgba(data, W, H, 77), 4)
    assert (rgba[:, 3] == 77).all()
    assert (rgba[:, :3] == rgb).all()


def test_bgra_alpha_and_colour_match_bgr():
    data = frame(100, 90, 200)
    bgr = pixels(nv21_to_bgr(data, W, H), 3)
    bgra = pixels(nv21_to_bgra(data, W, H, 5), 4)
    assert (bgra[:, 3] == 5).all()
    assert (bgra[:, :3] == bgr).all()


def test_chroma_channels_move_red_and_blue():
    neutral = pixels(nv21_to_rgb(frame(120), W, H), 3).astype(int)
    high_second = pixels(nv21_to_rgb(frame(120, 128, 200), W, H), 3).astype(int)
    high_first = pixels(nv21_to_rgb(frame(120, 200, 128), W, H), 3).astype(int)
    assert (high_second[:, 0] > neutral[:, 0]).all()
    assert (high_first[:, 2] > neutral[:, 2]).all()


def test_decode_with_separate_planes_matches_contiguous():
    data = frame(140, 100, 160)
    split = decode_nv21(data[:W * H], data[W * H:], W, H, PixelOrder.RGB)
    assert split == nv21_to_rgb(data, W, H)


@pytest.mark.parametrize("width,height", [(15, 4), (16, 3), (0, 4), (16, 0)])
def test_bad_dimensions_rejected(width, height):
    with pytest.raises(ValueError):
        nv21_to_rgb(bytes(64 * 64), width, height)


def test_short_input_rejected():
    with pytest.raises(ValueError):
        nv21_to_rgb(bytes(10), W, H)