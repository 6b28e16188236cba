# cinecapture

Building blocks for a camera capture pipeline, written in pure Python on top
of numpy and Pillow.

## What is in the package

- **Stream descriptions** (`cinecapture.formats`). `PixelFormat` lists the
  YUV, RGB and Bayer layouts. `StreamInfo` holds the width, height, stride and
  pixel format of a buffer. `StreamInfo.plane_size()` gives the buffer size
  the image needs.
- **Frame statistics** (`cinecapture.cinepi.frameinfo`).
  - `CinePIFrameInfo.from_controls` reads `ColourTemperature`,
    `SensorTimestamp`, `RawHistogram` and `RawHistogramExt` from a mapping of
    controls.
  - `FrameLevels.from_stats` turns the nine histogram statistics into
    low/high clipping percentages per channel. It also gives a traffic-light
    bitmask: 0x01, 0x02 and 0x04 for low clipping, 0x10, 0x20 and 0x40 for
    high clipping.
  - `FrameLevels.histo_string()` formats the percentages as text.
- **Control records** (`cinecapture.cinepi.shared_context`).
  - `CinePiMetadata` and `CinePiInfo` hold the per-frame camera metadata and
    buffer information.
  - `CinePiCommand` holds pending control changes, with `None` meaning "no
    change". `set_fields()` returns the commands that carry a value, and
    `clear()` drops them all.
- **NV21 conversion** (`cinecapture.yuv2rgb`).
  - `nv21_to_rgb`, `nv21_to_bgr`, `nv21_to_rgba` and `nv21_to_bgra` convert
    a contiguous frame to packed pixels, returned as `bytes`.
  - `decode_nv21` takes separate luma and chroma planes and a `PixelOrder`.
  - Width and height must be even. Columns past the last full block of eight
    are left zero.
- **Still image writers** (`cinecapture.image`). Each writer writes to a file,
  or to standard output when the filename is `-`.
  - `bmp`: `encode_bmp` / `bmp_save` write 24-bit BMP from RGB888.
  - `png`: `encode_png` / `png_save` write PNG from BGR888.
  - `yuv`: `yuv_save` writes planar YUV420 from YUV420 or YUYV input (encoding
    `"yuv420"`). It writes packed RGB from RGB888 or BGR888 input (encoding
    `"rgb"`). The helpers `yuv420_planar`, `yuyv_to_yuv420` and `rgb_rows`
    return the bytes.
  - `jpeg`: `jpeg_save` writes a JPEG with an EXIF block and an optional
    thumbnail, configured by `JpegOptions`.
    - Metadata keys used are `ExposureTime`, `AnalogueGain`, `DigitalGain`
      and `LensPosition`.
    - Extra tags go in `JpegOptions.exif` as `"IFD.Tag=value[,value...]"`,
      parsed by `ExifData.read_tag`.
    - `yuv_to_jpeg` compresses a YUYV or YUV420 frame, scaled to a given size.
  - `dng`: `dng_save` writes a DNG with an 8-bit greyscale preview, the raw
    Bayer image and EXIF data.
    - Supported input is packed 10/12-bit, 16-bit and PiSP-compressed Bayer
      formats.
    - Metadata keys used are `SensorBlackLevels`, `ExposureTime`,
      `AnalogueGain`, `ColourGains`, `ColourCorrectionMatrix` and
      `LensPosition`.
    - `unpack_10bit`, `unpack_12bit`, `unpack_16bit`, `uncompress` and the
      3x3 `Matrix` class are available on their own.
- **Encoders** (`cinecapture.encoder`).
  - `Encoder` is the abstract base class.
  - `MjpegEncoder` compresses YUV420 frames on four worker threads. It
    delivers the JPEGs in input order through `output_ready_callback(data,
    timestamp_us, keyframe)`, after calling `input_done_callback()`.
  - `close()`, or leaving the `with` block, finishes all queued frames. It
    re-raises the first error a worker met.
  - `encode_yuv420_jpeg` compresses a single frame.
- **Ring buffer** (`cinecapture.output.circular_buffer`). `CircularBuffer` is
  a fixed-size byte ring with `write`, `read`, `skip`, `pad`, `available` and
  `is_empty`. It keeps one byte free so that a full ring can be told apart
  from an empty one.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Examples

Convert an NV21 frame to RGB:

```python
import numpy as np
from cinecapture.yuv2rgb import nv21_to_rgb

width, height = 16, 8
nv21 = np.full(width * height * 3 // 2, 128, dtype=np.uint8)
rgb = nv21_to_rgb(nv21, width, height)   # bytes, width * height * 3 long
```

Save an RGB frame as a BMP file:

```python
from cinecapture.formats import PixelFormat, StreamInfo
from cinecapture.image.bmp import bmp_save

info = StreamInfo(width=4, height=2, stride=12, pixel_format=PixelFormat.RGB888)
bmp_save(bytes(24), info, "frame.bmp")
```

Encode frames to Motion-JPEG:

```python
from cinecapture.encoder.encoder import EncoderOptions
from cinecapture.encoder.mjpeg_encoder import MjpegEncoder
from cinecapture.formats import PixelFormat, StreamInfo

info = StreamInfo(width=16, height=16, stride=16, pixel_format=PixelFormat.YUV420)
frames = []
with MjpegEncoder(EncoderOptions(quality=90)) as encoder:
    encoder.output_ready_callback = lambda data, ts, keyframe: frames.append(data)
    encoder.encode_buffer(bytes(info.plane_size()), info, 0)
# frames now holds one JPEG
```

## What the package does not do

The package has no command-line program, and it does not talk to a camera.
It has no encoder other than Motion-JPEG, and no function that picks an
encoder from options. It has no ready-made stream outputs: nothing writes
encoded buffers to files, sockets or timestamp and metadata files.
`CircularBuffer` is only the byte ring such an output would be built on.
Frames and metadata have to be supplied by the caller as bytes and mappings.