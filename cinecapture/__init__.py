"""Camera capture building blocks: frame statistics, NV21 conversion, image writers, an MJPEG encoder and a ring buffer."""

__version__ = "0.1.0"