"""Base class for video encoders and the options they read."""

from __future__ import annotations

import abc
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from ..formats import StreamInfo

InputDoneCallback = Callable[[], None]
OutputReadyCallback = Callable[[bytes, int, bool], None]

DEFAULT_QUALITY = 93


@dataclass
class EncoderOptions:
    """Options an encoder is created from."""

    codec: str = "h264"
    quality: int = DEFAULT_QUALITY
    width: int = 0
    height: int = 0
    framerate: Optional[float] = None


class Encoder(abc.ABC):
    """Accepts frames and hands encoded buffers to ``output_ready_callback``.

    ``input_done_callback`` is called once the encoder has finished with an
    input frame, so that the application can reuse it; it is always called
    before the matching ``output_ready_callback``.
    """

    def __init__(self, options: EncoderOptions) -> None:
        self.options = options
        self.input_done_callback: Optional[InputDoneCallback] = None
        self.output_ready_callback: Optional[OutputReadyCallback] = None
        self._error: Optional[BaseException] = None
        self._error_lock = threading.Lock()
        self._closed = False

    @abc.abstractmethod
    def encode_buffer(self, data, info: StreamInfo, timestamp_us: int) -> None:
        """Queue one frame for encoding."""

    def close(self) -> None:
        """Stop the encoder, re-raising the first failure seen by a worker."""
        self._closed = True
        if self._error is not None:
            error, self._error = self._error, None
            raise error

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("encoder is closed")

    def _deliver(self, data: bytes, timestamp_us: int, keyframe: bool) -> None:
        if self.input_done_callback is not None:
            self.input_done_callback()
        if self.output_ready_callback is not None:
            self.output_ready_callback(data, timestamp_us, keyframe)

    def _record_error(self, exc: BaseException) -> None:
        with self._error_lock:
            if self._error is None:
                self._error = exc

    def __enter__(self) -> "Encoder":
        return self

    def __exit__(self, *args) -> None:
        self.close()