"""Pixel formats and stream descriptions shared by the image writers."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class PixelFormat(enum.Enum):
    """Pixel layouts a camera stream can deliver."""

    YUV420 = "YUV420"
    YUYV = "YUYV"
    RGB888 = "RGB888"
    BGR888 = "BGR888"

    SRGGB10_CSI2P = "SRGGB10_CSI2P"
    SGRBG10_CSI2P = "SGRBG10_CSI2P"
    SBGGR10_CSI2P = "SBGGR10_CSI2P"
    SGBRG10_CSI2P = "SGBRG10_CSI2P"
    SRGGB10 = "SRGGB10"
    SGRBG10 = "SGRBG10"
    SBGGR10 = "SBGGR10"
    SGBRG10 = "SGBRG10"

    SRGGB12_CSI2P = "SRGGB12_CSI2P"
    SGRBG12_CSI2P = "SGRBG12_CSI2P"
    SBGGR12_CSI2P = "SBGGR12_CSI2P"
    SGBRG12_CSI2P = "SGBRG12_CSI2P"
    SRGGB12 = "SRGGB12"
    SGRBG12 = "SGRBG12"
    SBGGR12 = "SBGGR12"
    SGBRG12 = "SGBRG12"

    SRGGB16 = "SRGGB16"
    SGRBG16 = "SGRBG16"
    SBGGR16 = "SBGGR16"
    SGBRG16 = "SGBRG16"

    R10_CSI2P = "R10_CSI2P"
    R10 = "R10"
    R12 = "R12"

    RGGB_PISP_COMP1 = "RGGB_PISP_COMP1"
    GRBG_PISP_COMP1 = "GRBG_PISP_COMP1"
    GBRG_PISP_COMP1 = "GBRG_PISP_COMP1"
    BGGR_PISP_COMP1 = "BGGR_PISP_COMP1"


@dataclass(frozen=True)
class StreamInfo:
    """Geometry and format of one image buffer."""

    width: int
    height: int
    stride: int
    pixel_format: PixelFormat
    colour_space: Optional[str] = None

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0 or self.stride < 0:
            raise ValueError("width, height and stride must not be negative")

    def plane_size(self) -> int:
        """Number of bytes the whole image occupies in its buffer."""
        luma = self.stride * self.height
        if self.pixel_format is PixelFormat.YUV420:
            return luma + 2 * (self.stride // 2) * (self.height // 2)
        return luma