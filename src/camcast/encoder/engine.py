"""
Encoder Abstraction
===================

Turns accepted frames into bitstream chunks.

The main loop submits a frame with `encode(handle, stream)`; the encoder
holds its own reference to the handle while it reads the pixels and
hands the resulting chunk to the output-ready callback. Encoding happens
on the caller's thread, so the callback (the broadcast server) runs on
the main loop as well.

Backends:
    - RawEncoder: raw pixel bytes, one chunk per frame
    - MJPEGEncoder: one JPEG per frame (see encoder.mjpeg)
"""

import logging
from typing import Callable, Optional, Protocol

import numpy as np

from camcast.capture.handle import FrameHandle


logger = logging.getLogger(__name__)


# (chunk, timestamp_us, keyframe)
OutputReadyCallback = Callable[[bytes, int, bool], None]


class EncoderError(Exception):
    """Raised when the encoder cannot start, stop or encode a frame."""
    pass


class Encoder(Protocol):
    """Protocol for encoder backends."""

    def set_output_ready_callback(self, callback: Optional[OutputReadyCallback]) -> None:
        ...

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def encode(self, handle: FrameHandle, stream: str) -> None:
        ...


class BaseEncoder:
    """
    Shared start/stop bookkeeping and the submit path.

    Subclasses implement `_encode_buffer(buffer) -> bytes`.

    Attributes:
        frames_encoded: Frames turned into chunks since construction
        bytes_out: Total bytes handed to the callback
    """

    name = "base"

    def __init__(self) -> None:
        self._callback: Optional[OutputReadyCallback] = None
        self._running = False
        self.frames_encoded = 0
        self.bytes_out = 0

    @property
    def running(self) -> bool:
        return self._running

    def set_output_ready_callback(self, callback: Optional[OutputReadyCallback]) -> None:
        self._callback = callback

    def start(self) -> None:
        if self._callback is None:
            raise EncoderError("No output-ready callback registered")
        self._running = True
        logger.info(f"Encoder '{self.name}' started")

    def stop(self) -> None:
        if self._running:
            self._running = False
            logger.info(
                f"Encoder '{self.name}' stopped "
                f"({self.frames_encoded} frames, {self.bytes_out} bytes)"
            )

    def encode(self, handle: FrameHandle, stream: str) -> None:
        """
        Encode one frame and emit the chunk.

        Args:
            handle: Frame to encode. The caller keeps its own reference.
            stream: Which stream buffer to encode

        Raises:
            EncoderError: If not started or the frame cannot be encoded
        """
        if not self._running:
            raise EncoderError(f"Encoder '{self.name}' is not running")

        handle.share()
        try:
            frame = handle.frame
            chunk = self._encode_buffer(frame.buffer(stream))
        except EncoderError:
            raise
        except Exception as e:
            raise EncoderError(f"Failed to encode frame {handle.sequence}: {e}") from e
        finally:
            handle.release()

        timestamp_us = frame.metadata.get("sensor_timestamp", 0) // 1000
        self.frames_encoded += 1
        self.bytes_out += len(chunk)
        self._callback(chunk, timestamp_us, True)

    def _encode_buffer(self, buffer: np.ndarray) -> bytes:
        raise NotImplementedError


class RawEncoder(BaseEncoder):
    """Pass-through encoder: emits the buffer's bytes unchanged."""

    name = "raw"

    def _encode_buffer(self, buffer: np.ndarray) -> bytes:
        return np.ascontiguousarray(buffer).tobytes()
