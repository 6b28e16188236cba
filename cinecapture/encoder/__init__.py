"""Encoder base class and the threaded Motion-JPEG encoder."""