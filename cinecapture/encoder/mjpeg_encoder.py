"""Motion-JPEG encoder that compresses frames on several worker threads."""

from __future__ import annotations

import io
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
from PIL import Image

from ..formats import PixelFormat, StreamInfo
from .encoder import Encoder, EncoderOptions

log = logging.getLogger(__name__)

NUM_ENC_THREADS = 4
_WAIT = 0.2


def _check_yuv420(data, info: StreamInfo) -> None:
    if info.pixel_format is not PixelFormat.YUV420:
        raise ValueError("MJPEG encoding needs YUV420 input")
    if info.width < 2 or info.height < 2:
        raise ValueError("image must be at least 2x2 pixels")
    if info.stride < info.width:
        raise ValueError("stride smaller than width")
    if len(data) < info.plane_size():
        raise ValueError("buffer too small for image")


def _upsample(plane: np.ndarray, height: int, width: int) -> np.ndarray:
    full = plane.repeat(2, axis=0).repeat(2, axis=1)[:height, :width]
    pad_rows = height - full.shape[0]
    pad_cols = width - full.shape[1]
    if pad_rows or pad_cols:
        full = np.pad(full, ((0, pad_rows), (0, pad_cols)), mode="edge")
    return np.ascontiguousarray(full)


def encode_yuv420_jpeg(data, info: StreamInfo, quality: int) -> bytes:
    """Compress one planar YUV420 frame to a baseline JPEG."""
    if not 1 <= quality <= 100:
        raise ValueError("quality must lie between 1 and 100")
    raw = bytes(data)
    _check_yuv420(raw, info)
    buf = np.frombuffer(raw, dtype=np.uint8)
    width, height, stride = info.width, info.height, info.stride
    stride2 = stride // 2
    chroma_rows = height // 2
    chroma_cols = min((width + 1) // 2, stride2)

    y = buf[:stride * height].reshape(height, stride)[:, :width]
    u_start = stride * height
    v_start = u_start + stride2 * chroma_rows
    u = buf[u_start:v_start].reshape(chroma_rows, stride2)[:, :chroma_cols]
    v = buf[v_start:v_start + stride2 * chroma_rows].reshape(chroma_rows, stride2)[:, :chroma_cols]

    planes = [np.ascontiguousarray(y), _upsample(u, height, width), _upsample(v, height, width)]
    image = Image.merge("YCbCr", [Image.fromarray(p) for p in planes])
    out = io.BytesIO()
    image.save(out, format="JPEG", quality=quality, subsampling=2)
    return out.getvalue()


@dataclass(frozen=True)
class _EncodeItem:
    data: bytes
    info: StreamInfo
    timestamp_us: int
    index: int


class MjpegEncoder(Encoder):
    """Encodes frames to JPEG in parallel and delivers them in input order."""

    def __init__(self, options: EncoderOptions) -> None:
        super().__init__(options)
        self._index = 0
        self._index_lock = threading.Lock()
        self._encode_queue: "queue.Queue[_EncodeItem]" = queue.Queue()
        self._abort_encode = threading.Event()
        self._abort_output = threading.Event()
        self._output_cond = threading.Condition()
        self._pending: Dict[int, Tuple[Optional[bytes], int]] = {}

        self._output_thread = threading.Thread(target=self._run_output,
                                               name="mjpeg-output", daemon=True)
        self._output_thread.start()
        self._encode_threads = [
            threading.Thread(target=self._run_encode, args=(num,),
                             name=f"mjpeg-encode-{num}", daemon=True)
            for num in range(NUM_ENC_THREADS)
        ]
        for thread in self._encode_threads:
            thread.start()
        log.debug("Opened MjpegEncoder")

    def encode_buffer(self, data, info: StreamInfo, timestamp_us: int) -> None:
        """Queue a YUV420 frame for compression."""
        self._check_open()
        raw = bytes(data)
        _check_yuv420(raw, info)
        with self._index_lock:
            index = self._index
            self._index += 1
            self._encode_queue.put(_EncodeItem(raw, info, int(timestamp_us), index))

    def _run_encode(self, num: int) -> None:
        frames = 0
        encode_time = 0.0
        while True:
            try:
                item = self._encode_queue.get(timeout=_WAIT)
            except queue.Empty:
                if self._abort_encode.is_set():
                    if frames:
                        log.debug("Encode %d frames, average time %.3fms",
                                  frames, encode_time * 1000 / frames)
                    return
                continue
            start = time.perf_counter()
            try:
                jpeg: Optional[bytes] = encode_yuv420_jpeg(item.data, item.info,
                                                           self.options.quality)
            except Exception as exc:  # surfaced again by close()
                self._record_error(exc)
                jpeg = None
            encode_time += time.perf_counter() - start
            frames += 1
            with self._output_cond:
                self._pending[item.index] = (jpeg, item.timestamp_us)
                self._output_cond.notify_all()

    def _run_output(self) -> None:
        index = 0
        while True:
            with self._output_cond:
                while True:
                    if index in self._pending:
                        jpeg, timestamp_us = self._pending.pop(index)
                        break
                    if self._abort_output.is_set() and not self._pending:
                        return
                    self._output_cond.wait(_WAIT)
            index += 1
            if jpeg is None:
                continue
            try:
                self._deliver(jpeg, timestamp_us, True)
            except Exception as exc:  # surfaced again by close()
                self._record_error(exc)

    def close(self) -> None:
        """Finish every queued frame, deliver it, then stop the threads."""
        if not self._closed:
            self._abort_encode.set()
            for thread in self._encode_threads:
                thread.join()
            self._abort_output.set()
            with self._output_cond:
                self._output_cond.notify_all()
            self._output_thread.join()
            log.debug("MjpegEncoder closed")
        super().close()