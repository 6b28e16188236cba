"""Records exchanged between the recorder and its controllers."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple


def _check_length(name: str, value: Any, length: int) -> Any:
    if value is None:
        return None
    value = tuple(value)
    if len(value) != length:
        raise ValueError(f"{name} needs {length} values")
    return value


@dataclass
class CinePiMetadata:
    """Camera metadata published for each frame."""

    ae_constraint_mode: int = 0
    ae_enable: bool = False
    ae_exposure_mode: int = 0
    ae_flicker_detected: int = 0
    ae_flicker_mode: int = 0
    ae_flicker_period: int = 0
    ae_locked: bool = False
    ae_metering_mode: int = 0
    analogue_gain: float = 0.0
    awb_enable: bool = False
    awb_locked: bool = False
    awb_mode: int = 0
    brightness: float = 0.0
    color_gains: Tuple[float, float] = (0.0, 0.0)
    color_temperature: int = 0
    contrast: float = 0.0
    digital_gain: float = 0.0
    exposure_time: int = 0
    exposure_value: float = 0.0
    frame_duration: int = 0
    frame_duration_limits: Tuple[int, int] = (0, 0)
    gamma: float = 0.0
    lens_position: float = 0.0
    lux: int = 0
    saturation: float = 0.0
    sharpness: float = 0.0

    def __post_init__(self) -> None:
        self.color_gains = _check_length("color_gains", self.color_gains, 2)
        self.frame_duration_limits = _check_length(
            "frame_duration_limits", self.frame_duration_limits, 2)


@dataclass
class CinePiInfo:
    """Buffer and recording information published for each frame."""

    is_recording: bool = False
    ts: int = 0
    fd_raw: int = -1
    fd_isp: int = -1
    fd_lores: int = -1
    raw_length: int = 0
    isp_length: int = 0
    lores_length: int = 0
    procid: int = 0
    frame: int = 0
    sequence: int = 0
    framerate: float = 0.0
    width: int = 0
    height: int = 0
    compression: int = 0
    thumbnail: int = 0
    thumbnail_size: int = 0
    raw_crop: Tuple[int, int, int, int] = (0, 0, 0, 0)

    def __post_init__(self) -> None:
        self.raw_crop = _check_length("raw_crop", self.raw_crop, 4)


@dataclass
class CinePiCommand:
    """Pending control changes; a field left as None means no change."""

    ae_constraint_mode: Optional[int] = None
    ae_enable: Optional[bool] = None
    ae_exposure_mode: Optional[int] = None
    ae_flicker_mode: Optional[int] = None
    ae_flicker_period: Optional[int] = None
    ae_metering_mode: Optional[int] = None
    analogue_gain: Optional[float] = None
    awb_enable: Optional[bool] = None
    awb_mode: Optional[int] = None
    brightness: Optional[float] = None
    color_gains: Optional[Tuple[float, float]] = None
    color_temperature: Optional[int] = None
    contrast: Optional[float] = None
    exposure_time: Optional[int] = None
    exposure_value: Optional[float] = None
    frame_duration_limits: Optional[Tuple[int, int]] = None
    gamma: Optional[float] = None
    saturation: Optional[float] = None
    sharpness: Optional[float] = None
    set_recording: Optional[bool] = None
    reinitialize: Optional[bool] = None
    width: Optional[int] = None
    height: Optional[int] = None
    compression: Optional[int] = None
    thumbnail: Optional[int] = None
    thumbnail_size: Optional[int] = None
    raw_crop: Optional[Tuple[int, int, int, int]] = None

    def __post_init__(self) -> None:
        self.color_gains = _check_length("color_gains", self.color_gains, 2)
        self.frame_duration_limits = _check_length(
            "frame_duration_limits", self.frame_duration_limits, 2)
        self.raw_crop = _check_length("raw_crop", self.raw_crop, 4)

    def set_fields(self) -> Dict[str, Any]:
        """The commands that carry a value, in declaration order."""
        return {f.name: getattr(self, f.name) for f in fields(self)
                if getattr(self, f.name) is not None}

    def clear(self) -> None:
        """Drop every pending command."""
        for f in fields(self):
            setattr(self, f.name, None)