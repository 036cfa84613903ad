"""
MJPEG Encoder
=============

Motion-JPEG bitstream: each frame becomes one complete JPEG image, so
every chunk is a keyframe and a client can join at any chunk boundary.

This is the ONLY place in the codebase that compresses video frames.
"""

import logging

import cv2
import numpy as np

from camcast.encoder.engine import BaseEncoder, EncoderError


logger = logging.getLogger(__name__)


class MJPEGEncoder(BaseEncoder):
    """
    JPEG-per-frame encoder built on cv2.imencode.

    Attributes:
        quality: JPEG quality (1-100)
    """

    name = "mjpeg"

    def __init__(self, quality: int = 80) -> None:
        """
        Initialize MJPEG encoder.

        Args:
            quality: JPEG quality, 1-100
        """
        super().__init__()
        if not 1 <= quality <= 100:
            raise ValueError("quality must be between 1 and 100")
        self.quality = quality
        self._params = [cv2.IMWRITE_JPEG_QUALITY, quality]

    def _encode_buffer(self, buffer: np.ndarray) -> bytes:
        ok, encoded = cv2.imencode(".jpg", buffer, self._params)
        if not ok:
            raise EncoderError("cv2.imencode returned failure")
        return encoded.tobytes()
