"""Writing YUV frames as JPEG files with EXIF data and an embedded thumbnail."""

from __future__ import annotations

import enum
import io
import logging
import re
import struct
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image

from ..formats import PixelFormat, StreamInfo

log = logging.getLogger(__name__)

MAKE_STRING = "Raspberry Pi"
SOFTWARE_STRING = "rpicam-apps"
EXIF_HEADER = b"\xff\xd8\xff\xe1"
MAX_THUMBNAIL_SIZE = 60000

IFD_NAMES = ("EXIF", "IFD0", "IFD1", "EINT", "GPS")

_TAG_EXIF_POINTER = 0x8769
_TAG_GPS_POINTER = 0x8825
_TAG_INTEROP_POINTER = 0xA005
_TAG_JPEG_OFFSET = 0x0201
_TAG_JPEG_LENGTH = 0x0202

# Serialisation order of the directories and which directory points at which.
_ORDER = ("IFD0", "EXIF", "GPS", "EINT", "IFD1")
_POINTERS = {
    "EXIF": ("IFD0", _TAG_EXIF_POINTER),
    "GPS": ("IFD0", _TAG_GPS_POINTER),
    "EINT": ("EXIF", _TAG_INTEROP_POINTER),
}


@dataclass
class JpegOptions:
    """Options for the still JPEG writer."""

    quality: int = 93
    restart: int = 0
    thumb_width: int = 320
    thumb_height: int = 240
    thumb_quality: int = 70
    exif: List[str] = field(default_factory=list)


class ExifFormat(enum.IntEnum):
    """EXIF value formats, numbered as in the TIFF specification."""

    BYTE = 1
    ASCII = 2
    SHORT = 3
    LONG = 4
    RATIONAL = 5
    SBYTE = 6
    UNDEFINED = 7
    SSHORT = 8
    SLONG = 9
    SRATIONAL = 10
    FLOAT = 11
    DOUBLE = 12

    @property
    def size(self) -> int:
        return _FORMAT_SIZES[self]


_FORMAT_SIZES = {
    ExifFormat.BYTE: 1, ExifFormat.ASCII: 1, ExifFormat.SHORT: 2, ExifFormat.LONG: 4,
    ExifFormat.RATIONAL: 8, ExifFormat.SBYTE: 1, ExifFormat.UNDEFINED: 1,
    ExifFormat.SSHORT: 2, ExifFormat.SLONG: 4, ExifFormat.SRATIONAL: 8,
    ExifFormat.FLOAT: 4, ExifFormat.DOUBLE: 8,
}

_STRUCT_CODES = {
    ExifFormat.BYTE: "B", ExifFormat.SHORT: "H", ExifFormat.LONG: "I",
    ExifFormat.RATIONAL: "II", ExifFormat.SBYTE: "b", ExifFormat.SSHORT: "h",
    ExifFormat.SLONG: "i", ExifFormat.SRATIONAL: "ii", ExifFormat.FLOAT: "f",
    ExifFormat.DOUBLE: "d",
}

_RATIONALS = (ExifFormat.RATIONAL, ExifFormat.SRATIONAL)

# name -> (tag id, default format or None when unknown, components; 0 means variable)
_TAGS: Dict[str, Tuple[int, Optional[ExifFormat], int]] = {
    "InteroperabilityIndex": (0x0001, ExifFormat.ASCII, 0),
    "GPSLatitudeRef": (0x0001, ExifFormat.ASCII, 0),
    "GPSLatitude": (0x0002, ExifFormat.RATIONAL, 3),
    "GPSLongitudeRef": (0x0003, ExifFormat.ASCII, 0),
    "GPSLongitude": (0x0004, ExifFormat.RATIONAL, 3),
    "GPSAltitude": (0x0006, ExifFormat.RATIONAL, 1),
    "ImageWidth": (0x0100, ExifFormat.SHORT, 1),
    "ImageLength": (0x0101, ExifFormat.SHORT, 1),
    "BitsPerSample": (0x0102, ExifFormat.SHORT, 3),
    "Compression": (0x0103, ExifFormat.SHORT, 1),
    "PhotometricInterpretation": (0x0106, ExifFormat.SHORT, 1),
    "ImageDescription": (0x010E, ExifFormat.ASCII, 0),
    "Make": (0x010F, ExifFormat.ASCII, 0),
    "Model": (0x0110, ExifFormat.ASCII, 0),
    "Orientation": (0x0112, ExifFormat.SHORT, 1),
    "SamplesPerPixel": (0x0115, ExifFormat.SHORT, 1),
    "XResolution": (0x011A, ExifFormat.RATIONAL, 1),
    "YResolution": (0x011B, ExifFormat.RATIONAL, 1),
    "PlanarConfiguration": (0x011C, ExifFormat.SHORT, 1),
    "ResolutionUnit": (0x0128, ExifFormat.SHORT, 1),
    "Software": (0x0131, ExifFormat.ASCII, 0),
    "DateTime": (0x0132, ExifFormat.ASCII, 0),
    "Artist": (0x013B, ExifFormat.ASCII, 0),
    "WhitePoint": (0x013E, ExifFormat.RATIONAL, 2),
    "PrimaryChromaticities": (0x013F, ExifFormat.RATIONAL, 6),
    "JPEGInterchangeFormat": (_TAG_JPEG_OFFSET, ExifFormat.LONG, 1),
    "JPEGInterchangeFormatLength": (_TAG_JPEG_LENGTH, ExifFormat.LONG, 1),
    "YCbCrCoefficients": (0x0211, ExifFormat.UNDEFINED, 0),
    "YCbCrPositioning": (0x0213, ExifFormat.SHORT, 1),
    "ReferenceBlackWhite": (0x0214, ExifFormat.RATIONAL, 6),
    "Copyright": (0x8298, ExifFormat.ASCII, 0),
    "ExposureTime": (0x829A, ExifFormat.RATIONAL, 1),
    "FNumber": (0x829D, ExifFormat.RATIONAL, 1),
    "ExposureProgram": (0x8822, ExifFormat.SHORT, 1),
    "SpectralSensitivity": (0x8824, None, 0),
    "ISOSpeedRatings": (0x8827, ExifFormat.SHORT, 0),
    "ExifVersion": (0x9000, ExifFormat.UNDEFINED, 4),
    "DateTimeOriginal": (0x9003, ExifFormat.ASCII, 0),
    "DateTimeDigitized": (0x9004, ExifFormat.ASCII, 0),
    "ShutterSpeedValue": (0x9201, ExifFormat.SRATIONAL, 1),
    "ApertureValue": (0x9202, ExifFormat.RATIONAL, 1),
    "BrightnessValue": (0x9203, ExifFormat.SRATIONAL, 1),
    "ExposureBiasValue": (0x9204, ExifFormat.SRATIONAL, 1),
    "MaxApertureValue": (0x9205, ExifFormat.RATIONAL, 1),
    "SubjectDistance": (0x9206, ExifFormat.RATIONAL, 1),
    "MeteringMode": (0x9207, ExifFormat.SHORT, 1),
    "LightSource": (0x9208, ExifFormat.SHORT, 1),
    "Flash": (0x9209, ExifFormat.SHORT, 1),
    "FocalLength": (0x920A, ExifFormat.RATIONAL, 1),
    "SubjectArea": (0x9214, None, 0),
    "MakerNote": (0x927C, ExifFormat.UNDEFINED, 0),
    "UserComment": (0x9286, ExifFormat.UNDEFINED, 0),
    "ColorSpace": (0xA001, ExifFormat.SHORT, 1),
    "PixelXDimension": (0xA002, ExifFormat.LONG, 1),
    "PixelYDimension": (0xA003, ExifFormat.LONG, 1),
    "ExposureMode": (0xA402, ExifFormat.SHORT, 1),
    "WhiteBalance": (0xA403, ExifFormat.SHORT, 1),
    "DigitalZoomRatio": (0xA404, ExifFormat.RATIONAL, 1),
    "FocalLengthIn35mmFilm": (0xA405, ExifFormat.SHORT, 1),
    "SceneCaptureType": (0xA406, ExifFormat.SHORT, 1),
    "ImageUniqueID": (0xA420, ExifFormat.ASCII, 0),
    "LensMake": (0xA433, ExifFormat.ASCII, 0),
    "LensModel": (0xA434, ExifFormat.ASCII, 0),
}

_TAG_DEFAULTS = {tag: (fmt, comps) for tag, fmt, comps in _TAGS.values()}

# Tags whose format is undefined but which are known to hold something better.
_EXCEPTIONS = {0x0211: (ExifFormat.RATIONAL, 3)}

_TAG_SPEC = re.compile(r"([^.]{1,4})\.([^=]{1,127})=")
_INT = re.compile(r"\s*([+-]?\d+)")
_RATIONAL = re.compile(r"\s*([+-]?\d+)/\s*([+-]?\d+)")


def _wrap_unsigned(value: int, bits: int) -> int:
    return value % (1 << bits)


def _wrap_signed(value: int, bits: int) -> int:
    half = 1 << (bits - 1)
    return (value + half) % (1 << bits) - half


def _read_int(text: str, what: str) -> Tuple[int, int]:
    match = _INT.match(text)
    if not match:
        raise ValueError(f"failed to read EXIF {what}")
    return int(match.group(1)), match.end()


def _read_rational(text: str, what: str) -> Tuple[Tuple[int, int], int]:
    match = _RATIONAL.match(text)
    if not match:
        raise ValueError(f"failed to read EXIF {what}")
    return (int(match.group(1)), int(match.group(2))), match.end()


def _read_value(fmt: ExifFormat, text: str) -> Tuple[Any, int]:
    if fmt is ExifFormat.SHORT:
        value, n = _read_int(text, "unsigned short")
        return _wrap_unsigned(value, 16), n
    if fmt is ExifFormat.SSHORT:
        value, n = _read_int(text, "signed short")
        return _wrap_signed(value, 16), n
    if fmt is ExifFormat.LONG:
        value, n = _read_int(text, "unsigned long")
        return _wrap_unsigned(value, 32), n
    if fmt is ExifFormat.SLONG:
        value, n = _read_int(text, "signed long")
        return _wrap_signed(value, 32), n
    if fmt is ExifFormat.RATIONAL:
        (num, den), n = _read_rational(text, "unsigned rational")
        return (_wrap_unsigned(num, 32), _wrap_unsigned(den, 32)), n
    if fmt is ExifFormat.SRATIONAL:
        (num, den), n = _read_rational(text, "signed rational")
        return (_wrap_signed(num, 32), _wrap_signed(den, 32)), n
    raise ValueError(f"cannot read EXIF values of format {fmt.name}")


@dataclass
class _Entry:
    format: Optional[ExifFormat]
    components: int
    values: Union[List[Any], bytes]


def _payload(entry: _Entry) -> bytes:
    fmt = entry.format
    if fmt is ExifFormat.ASCII or fmt is ExifFormat.UNDEFINED:
        return bytes(entry.values)
    values = list(entry.values)
    if fmt in _RATIONALS:
        flat = [part for pair in values for part in pair]
    else:
        flat = values
    return struct.pack("<" + _STRUCT_CODES[fmt] * len(values), *flat)


def _padded(n: int) -> int:
    return n + (n & 1)


class ExifData:
    """A set of EXIF directories that serialises to an APP1 payload."""

    def __init__(self) -> None:
        self._ifds: Dict[str, Dict[int, _Entry]] = {name: {} for name in IFD_NAMES}

    @staticmethod
    def _directory_name(ifd: str) -> str:
        if ifd not in IFD_NAMES:
            raise ValueError(f"bad IFD name {ifd}")
        return ifd

    @staticmethod
    def _tag_id(tag: Union[int, str]) -> int:
        if isinstance(tag, str):
            if tag not in _TAGS:
                raise ValueError(f"no EXIF tag {tag}")
            return _TAGS[tag][0]
        return int(tag)

    def set_value(self, ifd: str, tag: Union[int, str], fmt: ExifFormat, values) -> None:
        """Store values of the given format under a tag, replacing any earlier ones."""
        name = self._directory_name(ifd)
        fmt = ExifFormat(fmt)
        if fmt is ExifFormat.ASCII:
            self.set_string(name, tag, values)
            return
        tag_id = self._tag_id(tag)
        if fmt is ExifFormat.UNDEFINED:
            raw = bytes(values)
            entry = _Entry(fmt, len(raw), raw)
        else:
            if fmt in _RATIONALS:
                if isinstance(values, tuple) and len(values) == 2 and \
                        all(isinstance(v, int) for v in values):
                    values = [values]
                items = [tuple(pair) for pair in values]
            else:
                items = list(values) if isinstance(values, (list, tuple)) else [values]
            entry = _Entry(fmt, len(items), items)
        try:
            _payload(entry)
        except (struct.error, TypeError, ValueError) as exc:
            raise ValueError(f"bad value for EXIF tag {tag}: {exc}") from exc
        self._ifds[name][tag_id] = entry

    def set_string(self, ifd: str, tag: Union[int, str], text: str) -> None:
        """Store a text value under a tag."""
        name = self._directory_name(ifd)
        raw = text.encode("utf-8")
        self._ifds[name][self._tag_id(tag)] = _Entry(ExifFormat.ASCII, len(raw), raw)

    def read_tag(self, text: str) -> None:
        """Parse ``IFD.Tag=value[,value...]`` and store the result."""
        match = _TAG_SPEC.match(text)
        if not match:
            raise ValueError("failed to read EXIF IFD and tag")
        ifd_name, tag_name = match.group(1), match.group(2)
        if ifd_name not in IFD_NAMES:
            raise ValueError(f"bad IFD name {ifd_name}")
        consumed = match.end()
        if tag_name not in _TAGS:
            log.warning("WARNING: no EXIF tag %s found - ignoring", tag_name)
            return
        tag_id = _TAGS[tag_name][0]

        directory = self._ifds[ifd_name]
        entry = directory.get(tag_id)
        if entry is None:
            fmt, comps = _TAG_DEFAULTS[tag_id] if _TAGS[tag_name][0] == tag_id else (None, 0)
            fmt, comps = _TAGS[tag_name][1], _TAGS[tag_name][2]
            entry = _Entry(fmt, comps, [])
        if entry.format is None:
            log.warning("WARNING: format for EXIF tag %s unknown - ignoring", tag_name)
            return
        if entry.format is ExifFormat.UNDEFINED:
            if tag_id in _EXCEPTIONS:
                entry.format, entry.components = _EXCEPTIONS[tag_id]
                entry.values = []
            else:
                log.warning("WARNING: format for tag %s undefined - treating as ASCII", tag_name)
                entry.format = ExifFormat.ASCII

        rest = text[consumed:]
        if entry.format is ExifFormat.ASCII:
            raw = rest.encode("utf-8")
            directory[tag_id] = _Entry(ExifFormat.ASCII, len(raw), raw)
            return

        values = entry.values
        if not values or entry.components == 0:
            if entry.components == 0:
                entry.components = rest.count(",") + 1
            zero = (0, 0) if entry.format in _RATIONALS else 0
            values = [zero] * entry.components
        values = list(values)
        for i in range(entry.components):
            if consumed >= len(text):
                raise ValueError(f"too few parameters for EXIF tag {tag_name}")
            value, n = _read_value(entry.format, text[consumed:])
            values[i] = value
            consumed += n + 1  # allow a comma
        entry.values = values
        directory[tag_id] = entry

    def to_bytes(self) -> bytes:
        """Serialise as ``Exif\\0\\0`` followed by a little-endian TIFF structure."""
        has = {name: bool(self._ifds[name]) for name in IFD_NAMES}
        has["IFD0"] = True
        has["EXIF"] = has["EXIF"] or has["EINT"]
        present = [name for name in _ORDER if has[name]]

        entries: Dict[str, List[Tuple[int, int, int, bytes]]] = {}
        for name in present:
            items = []
            for tag_id, entry in self._ifds[name].items():
                payload = _payload(entry)
                count = len(payload) if entry.format in (ExifFormat.ASCII, ExifFormat.UNDEFINED) \
                    else entry.components
                items.append((tag_id, int(entry.format), count, payload))
            entries[name] = items

        pointer_tags = {name: [(tag, child) for child, (parent, tag) in _POINTERS.items()
                               if parent == name and child in present]
                        for name in present}

        def block_size(name: str) -> int:
            n = len(entries[name]) + len(pointer_tags[name])
            extra = sum(_padded(len(p)) for _, _, _, p in entries[name] if len(p) > 4)
            return 2 + 12 * n + 4 + extra

        offsets: Dict[str, int] = {}
        pos = 8
        for name in present:
            offsets[name] = pos
            pos += block_size(name)

        body = bytearray()
        for name in present:
            items = list(entries[name])
            items += [(tag, int(ExifFormat.LONG), 1, struct.pack("<I", offsets[child]))
                      for tag, child in pointer_tags[name]]
            items.sort(key=lambda item: item[0])
            data_pos = offsets[name] + 2 + 12 * len(items) + 4
            head = bytearray(struct.pack("<H", len(items)))
            extra = bytearray()
            for tag_id, fmt_code, count, payload in items:
                if len(payload) <= 4:
                    value = payload.ljust(4, b"\0")
                else:
                    value = struct.pack("<I", data_pos + len(extra))
                    extra += payload
                    if len(payload) & 1:
                        extra += b"\0"
                head += struct.pack("<HHI", tag_id, fmt_code, count) + value
            next_ifd = offsets["IFD1"] if name == "IFD0" and "IFD1" in offsets else 0
            head += struct.pack("<I", next_ifd)
            body += head + extra
        return b"Exif\x00\x00" + b"II*\x00" + struct.pack("<I", 8) + bytes(body)


def _sample_indices(info: StreamInfo, output_width: int, output_height: int):
    cols = (np.arange(output_width, dtype=np.int64) * info.width) // output_width
    rows = (np.arange(output_height, dtype=np.int64) * info.height) // output_height
    stride = info.stride
    if info.pixel_format is PixelFormat.YUYV:
        off = cols * 2
        align = off & ~3
        base = (rows * stride)[:, None]
        return base + off, base + align + 1, base + align + 3
    if info.pixel_format is PixelFormat.YUV420:
        stride2 = stride // 2
        u_start = stride * info.height
        v_start = u_start + stride2 * (info.height // 2)
        y_idx = (rows * stride)[:, None] + cols
        uv_rows = ((np.arange(output_height, dtype=np.int64) // 2) * info.height) // output_height
        uv_base = (uv_rows * stride2)[:, None] + cols // 2
        return y_idx, u_start + uv_base, v_start + uv_base
    raise ValueError("unsupported YUV format in JPEG encode")


def yuv_to_jpeg(data, info: StreamInfo, output_width: int, output_height: int,
                quality: int, restart: int = 0) -> bytes:
    """Compress a YUYV or YUV420 frame, scaled to the output size, to JPEG."""
    if output_width <= 0 or output_height <= 0:
        raise ValueError("output size must be positive")
    if info.width <= 0 or info.height <= 0:
        raise ValueError("image must not be empty")
    indices = _sample_indices(info, output_width, output_height)
    buf = np.frombuffer(bytes(data), dtype=np.uint8)
    if max(int(idx.max()) for idx in indices) >= buf.size:
        raise ValueError("buffer too small for image")
    planes = [Image.fromarray(np.ascontiguousarray(buf[idx])) for idx in indices]
    image = Image.merge("YCbCr", planes)
    extra = {"restart_marker_blocks": restart} if restart > 0 else {}
    out = io.BytesIO()
    image.save(out, format="JPEG", quality=max(1, min(100, quality)),
               subsampling=2, **extra)
    return out.getvalue()


def create_exif_data(data, info: StreamInfo, metadata: Mapping[str, Any],
                     cam_model: str, options: JpegOptions) -> Tuple[bytes, bytes]:
    """Build the EXIF payload and the thumbnail that follows it.

    Returns ``(exif, thumbnail)``; the thumbnail is empty when
    ``options.thumb_quality`` is zero.
    """
    exif = ExifData()
    exif.set_string("EXIF", "Make", MAKE_STRING)
    exif.set_string("EXIF", "Model", cam_model)
    exif.set_string("EXIF", "Software", SOFTWARE_STRING)
    time_string = time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())
    exif.set_string("EXIF", "DateTime", time_string)
    exif.set_string("EXIF", "DateTimeOriginal", time_string)
    exif.set_string("EXIF", "DateTimeDigitized", time_string)

    exposure_time = metadata.get("ExposureTime")
    if exposure_time is not None:
        log.debug("Exposure time: %s", exposure_time)
        exif.set_value("EXIF", "ExposureTime", ExifFormat.RATIONAL,
                       [(_wrap_unsigned(int(exposure_time), 32), 1000000)])
    analogue_gain = metadata.get("AnalogueGain")
    if analogue_gain is not None:
        digital_gain = metadata.get("DigitalGain")
        gain = analogue_gain * (digital_gain if digital_gain is not None else 1.0)
        log.debug("Ag %s Dg %s Total %s", analogue_gain, digital_gain, gain)
        exif.set_value("EXIF", "ISOSpeedRatings", ExifFormat.SHORT,
                       [_wrap_unsigned(int(100 * gain), 16)])
    lens_position = metadata.get("LensPosition")
    if lens_position is not None:
        exif.set_value("EXIF", "SubjectDistance", ExifFormat.RATIONAL,
                       [(1000, _wrap_unsigned(int(1000.0 * lens_position), 32))])

    for item in options.exif:
        log.debug("Processing EXIF item: %s", item)
        exif.read_tag(item)

    thumb = b""
    if options.thumb_quality:
        log.debug("Thumbnail dimensions are %d x %d", options.thumb_width, options.thumb_height)
        exif.set_value("IFD1", "ImageWidth", ExifFormat.SHORT, [options.thumb_width])
        exif.set_value("IFD1", "ImageLength", ExifFormat.SHORT, [options.thumb_height])
        exif.set_value("IFD1", "Compression", ExifFormat.SHORT, [6])
        exif.set_value("IFD1", _TAG_JPEG_OFFSET, ExifFormat.LONG, [0])
        exif.set_value("IFD1", _TAG_JPEG_LENGTH, ExifFormat.LONG, [0])
        # The payload has to be built once to learn where the thumbnail will start.
        exif_len = len(exif.to_bytes())

        q = options.thumb_quality
        while q > 0:
            thumb = yuv_to_jpeg(data, info, options.thumb_width, options.thumb_height, q, 0)
            if len(thumb) < MAX_THUMBNAIL_SIZE:
                break
            thumb = b""
            q -= 5
        log.debug("Thumbnail size %d", len(thumb))
        if q <= 0:
            raise RuntimeError("failed to make acceptable thumbnail")

        # Offsets count from the TIFF header, which follows the six-byte "Exif" marker.
        exif.set_value("IFD1", _TAG_JPEG_OFFSET, ExifFormat.LONG, [exif_len - 6])
        exif.set_value("IFD1", _TAG_JPEG_LENGTH, ExifFormat.LONG, [len(thumb)])

    return exif.to_bytes(), thumb


def _assemble(exif: bytes, thumb: bytes, jpeg: bytes) -> bytes:
    if jpeg[:2] != b"\xff\xd8":
        raise ValueError("encoder did not produce a JPEG")
    pos = 2
    if jpeg[2:4] == b"\xff\xe0":
        pos = 4 + int.from_bytes(jpeg[4:6], "big")
    length = len(exif) + len(thumb) + 2
    if length > 0xFFFF:
        raise ValueError("EXIF data too large")
    return EXIF_HEADER + length.to_bytes(2, "big") + exif + thumb + jpeg[pos:]


def jpeg_save(data, info: StreamInfo, metadata: Mapping[str, Any], filename: str,
              cam_model: str, options: JpegOptions) -> None:
    """Write the frame as JPEG with EXIF data, to a file or to standard output for ``-``."""
    if info.width & 1 or info.height & 1:
        raise ValueError("both width and height must be even")
    exif, thumb = create_exif_data(data, info, metadata, cam_model, options)
    jpeg = yuv_to_jpeg(data, info, info.width, info.height, options.quality, options.restart)
    log.debug("JPEG size is %d", len(jpeg))
    log.debug("EXIF data len %d", len(exif))
    encoded = _assemble(exif, thumb, jpeg)
    if filename == "-":
        sys.stdout.buffer.write(encoded)
        sys.stdout.buffer.flush()
    else:
        try:
            with open(filename, "wb") as fp:
                fp.write(encoded)
        except OSError as exc:
            raise RuntimeError(f"failed to open file {filename}") from exc