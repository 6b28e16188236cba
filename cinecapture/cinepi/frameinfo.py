"""Per-frame information gathered from camera controls."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

DEFAULT_THRESHOLD_LOW = 2.0
DEFAULT_THRESHOLD_HIGH = 25.0

_LOW_BITS = (0x01, 0x02, 0x04)
_HIGH_BITS = (0x10, 0x20, 0x40)


def _percent(num: float, den: float) -> float:
    if den == 0:
        if num == 0:
            return math.nan
        return math.copysign(math.inf, num)
    return num / den * 100.0


@dataclass(frozen=True)
class FrameLevels:
    """Clipping levels per channel and the traffic-light bits derived from them."""

    r_low: float
    g_low: float
    b_low: float
    r_high: float
    g_high: float
    b_high: float
    traffic_light: int = 0
    threshold_low: float = DEFAULT_THRESHOLD_LOW
    threshold_high: float = DEFAULT_THRESHOLD_HIGH

    @classmethod
    def from_stats(
        cls,
        stats: Sequence[int],
        threshold_low: float = DEFAULT_THRESHOLD_LOW,
        threshold_high: float = DEFAULT_THRESHOLD_HIGH,
    ) -> "FrameLevels":
        """Build levels from the nine raw histogram statistics."""
        if len(stats) < 9:
            raise ValueError("histogram statistics need nine values")
        totals = stats[0:3]
        lows = [_percent(stats[3 + i], totals[i]) for i in range(3)]
        highs = [_percent(stats[6 + i], totals[i]) for i in range(3)]
        light = 0
        for bit, value in zip(_LOW_BITS, lows):
            if value > threshold_low:
                light |= bit
        for bit, value in zip(_HIGH_BITS, highs):
            if value > threshold_high:
                light |= bit
        return cls(*lows, *highs, traffic_light=light,
                   threshold_low=threshold_low, threshold_high=threshold_high)

    def histo_string(self) -> str:
        """Human-readable summary: low percentages, then high percentages."""
        low = ", ".join(f"{v:g}%" for v in (self.r_low, self.g_low, self.b_low))
        high = ", ".join(f"{v:g}%" for v in (self.r_high, self.g_high, self.b_high))
        return f"{low} : {high}"


@dataclass
class CinePIFrameInfo:
    """Colour temperature, timestamp and histogram data of one frame."""

    colour_temp: int = 0
    timestamp: int = 0
    histogram: tuple = field(default_factory=tuple)
    histogram_stats: tuple = field(default_factory=tuple)
    levels: Optional[FrameLevels] = None

    @classmethod
    def from_controls(cls, controls: Mapping[str, Any]) -> "CinePIFrameInfo":
        """Read the frame information out of a control mapping."""
        info = cls()
        colour_temp = controls.get("ColourTemperature")
        if colour_temp is not None:
            info.colour_temp = int(colour_temp)
        ts = controls.get("SensorTimestamp")
        if ts is not None:
            info.timestamp = int(ts)
        histogram = controls.get("RawHistogram")
        if histogram is not None:
            info.histogram = tuple(int(v) for v in histogram)
        stats = controls.get("RawHistogramExt")
        if stats is not None:
            info.histogram_stats = tuple(int(v) for v in stats[:9])
            info.levels = FrameLevels.from_stats(info.histogram_stats)
        return info