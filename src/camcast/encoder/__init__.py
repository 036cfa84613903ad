"""
Encoder Module
==============

Frame-to-bitstream encoders.

Components:
    - Encoder: Protocol every backend follows
    - BaseEncoder: Start/stop bookkeeping and the submit path
    - RawEncoder: Raw pixel bytes
    - MJPEGEncoder: One JPEG per frame
"""

from camcast.encoder.engine import (
    BaseEncoder,
    Encoder,
    EncoderError,
    OutputReadyCallback,
    RawEncoder,
)
from camcast.encoder.mjpeg import MJPEGEncoder


__all__ = [
    "Encoder",
    "EncoderError",
    "OutputReadyCallback",
    "BaseEncoder",
    "RawEncoder",
    "MJPEGEncoder",
]
