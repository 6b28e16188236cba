import pytest

from cinecapture.encoder.encoder import Encoder, EncoderOptions
from cinecapture.formats import PixelFormat, StreamInfo

INFO = StreamInfo(4, 2, 4, PixelFormat.YUV420)


class _EchoEncoder(Encoder):
    def __init__(self, options):
        super().__init__(options)
        self.closed_calls = 0

    def encode_buffer(self, data, info, timestamp_us):
        self._check_open()
        self._deliver(bytes(data), timestamp_us, True)

    def close(self):
        self.closed_calls += 1
        super().close()


def test_base_class_cannot_be_instantiated():
    with pytest.raises(TypeError):
        Encoder(EncoderOptions())


def test_callbacks_called_in_order():
    events = []
    enc = _EchoEncoder(EncoderOptions())
    enc.input_done_callback = lambda: events.append("done")
    enc.output_ready_callback = lambda d, ts, key: events.append((d, ts, key))
    enc.encode_buffer(b"abc", INFO, 42)
    assert events == ["done", (b"abc", 42, True)]


def test_missing_callbacks_are_skipped():
    received = []
    enc = _EchoEncoder(EncoderOptions())
    enc.output_ready_callback = lambda d, ts, key: received.append(d)
    enc.encode_buffer(b"xy", INFO, 1)
    assert received == [b"xy"]


def test_context_manager_closes():
    with _EchoEncoder(EncoderOptions()) as enc:
        assert enc.closed_calls == 0
    assert enc.closed_calls == 1


def test_encode_after_close_raises():
    enc = _EchoEncoder(EncoderOptions())
    enc.close()
    with pytest.raises(RuntimeError, match="closed"):
        enc.encode_buffer(b"a", INFO, 0)


def test_options_carry_values():
    opts = EncoderOptions(codec="mjpeg", quality=50)
    enc = _EchoEncoder(opts)
    assert enc.options.codec == "mjpeg"
    assert enc.options.quality == 50