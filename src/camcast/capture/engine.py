"""
Capture Engines
===============

Camera acquisition backends that feed the FrameRelay.

Every backend follows the same lifecycle, driven by the main loop:

    open() -> configure(flags) -> start() -> ... -> stop() -> close()

While started, a producer thread fills a free BufferArena slot for each
exposure, wraps it in a FrameHandle and posts it to the relay. The main
loop drains the relay through `wait_for_events()`.

Backends:
    - SyntheticCaptureEngine: deterministic moving test pattern, no device
    - OpenCVCaptureEngine: cv2.VideoCapture on a local camera device

Design Rules:
    - Frames are dropped at the source when every slot is in flight
    - stop() clears the relay so a restarted pipeline never sees stale frames
    - Late releases after stop() are absorbed by the arena
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import IntFlag
from typing import Dict, List, Optional, Protocol, Tuple

import cv2
import numpy as np

from camcast.capture.frame import Frame
from camcast.capture.handle import BufferArena, FrameHandle
from camcast.capture.relay import FrameRelay


logger = logging.getLogger(__name__)


VIDEO_STREAM = "video"
RAW_STREAM = "raw"

COLOUR_SPACE_JPEG = "jpeg"           # full range, 0-255
COLOUR_SPACE_VIDEO = "smpte170m"     # video range, 16-235


def to_video_range(buffer: np.ndarray) -> None:
    """Compress full-range 8-bit samples into the 16-235 video range, in place."""
    buffer[:] = cv2.convertScaleAbs(buffer, alpha=219.0 / 255.0, beta=16.0)


class CaptureError(Exception):
    """Raised when the capture device cannot be opened, started or stopped."""
    pass


class CaptureFlags(IntFlag):
    """Hints for stream configuration."""

    NONE = 0
    RAW = 1                 # add a single-channel raw stream
    JPEG_COLOURSPACE = 2    # full-range samples (default is 16-235 video range)


@dataclass(frozen=True)
class StreamInfo:
    """Geometry of one configured stream."""

    name: str
    width: int
    height: int
    channels: int

    @property
    def stride(self) -> int:
        return self.width * self.channels


class CaptureEngine(Protocol):
    """
    Protocol for capture backends.

    The main loop only ever talks to a capture engine through these
    methods; buffer management stays inside the engine.
    """

    def open(self) -> None:
        ...

    def configure(self, flags: CaptureFlags = CaptureFlags.NONE) -> None:
        ...

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def close(self) -> None:
        ...

    def wait_for_events(self, timeout: Optional[float] = None) -> List[FrameHandle]:
        """Block until completed frames are available and return them all."""
        ...

    def wake(self) -> None:
        """Unblock a pending wait_for_events()."""
        ...

    def stream_info(self, stream: str) -> StreamInfo:
        ...


class ThreadedCaptureEngine:
    """
    Shared lifecycle for backends that produce frames on a thread.

    Subclasses implement `_open_device()`, `_close_device()` and
    `_fill(buffers, sequence)`.

    Attributes:
        width: Frame width in pixels
        height: Frame height in pixels
        framerate: Target frames per second
        buffer_count: Number of arena slots
        relay: FrameRelay completed frames are posted to
        dropped_count: Exposures skipped because every slot was in flight
    """

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        framerate: float = 30.0,
        buffer_count: int = 4,
    ) -> None:
        if framerate <= 0:
            raise ValueError("framerate must be > 0")

        self.width = width
        self.height = height
        self.framerate = framerate
        self.buffer_count = buffer_count
        self.relay = FrameRelay()

        self._arena: Optional[BufferArena] = None
        self._flags = CaptureFlags.NONE
        self._opened = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lifecycle_lock = threading.Lock()

        self._sequence = 0
        self._last_sensor_ts = 0
        self.dropped_count = 0
        self.captured_count = 0

    @property
    def started(self) -> bool:
        return self._thread is not None

    @property
    def arena(self) -> Optional[BufferArena]:
        return self._arena

    @property
    def colour_space(self) -> str:
        if self._flags & CaptureFlags.JPEG_COLOURSPACE:
            return COLOUR_SPACE_JPEG
        return COLOUR_SPACE_VIDEO

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def open(self) -> None:
        """Acquire the device."""
        if self._opened:
            return
        self._open_device()
        self._opened = True
        logger.info(f"{type(self).__name__} opened")

    def configure(self, flags: CaptureFlags = CaptureFlags.NONE) -> None:
        """
        Negotiate streams and allocate the buffer pool.

        Args:
            flags: CaptureFlags hints
        """
        if not self._opened:
            raise CaptureError("configure() called before open()")
        if self.started:
            raise CaptureError("cannot configure while started")

        shapes: Dict[str, Tuple[int, ...]] = {
            VIDEO_STREAM: (self.height, self.width, 3),
        }
        if flags & CaptureFlags.RAW:
            shapes[RAW_STREAM] = (self.height, self.width)

        self._flags = flags
        self._arena = BufferArena(shapes, slot_count=self.buffer_count)
        logger.info(
            f"Capture configured: {self.width}x{self.height}@{self.framerate:g}fps, "
            f"streams={sorted(shapes)}, buffers={self.buffer_count}, "
            f"colour_space={self.colour_space}"
        )

    def start(self) -> None:
        """Start producing frames."""
        with self._lifecycle_lock:
            if self._arena is None:
                raise CaptureError("start() called before configure()")
            if self.started:
                return

            self._arena.start()
            self._last_sensor_ts = 0
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run,
                name=f"capture-{type(self).__name__}",
                daemon=True,
            )
            self._thread.start()
        logger.info("Capture started")

    def stop(self) -> None:
        """
        Stop producing frames and drop anything still queued.

        Handles still held by consumers stay valid; releasing them later
        is a no-op.
        """
        with self._lifecycle_lock:
            if not self.started:
                return

            self._stop_event.set()
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                logger.error("Capture thread did not exit within 5s")
            self._thread = None

            self._arena.stop()
            cleared = self.relay.clear()
        logger.info(f"Capture stopped (cleared {cleared} pending frames)")

    def close(self) -> None:
        """Stop if needed and release the device."""
        self.stop()
        if self._opened:
            self._close_device()
            self._opened = False
            logger.info(f"{type(self).__name__} closed")

    def wait_for_events(self, timeout: Optional[float] = None) -> List[FrameHandle]:
        return self.relay.wait(timeout=timeout)

    def wake(self) -> None:
        self.relay.wake()

    def stream_info(self, stream: str) -> StreamInfo:
        """Get the geometry of a configured stream."""
        if self._arena is None or stream not in self._arena.stream_shapes:
            raise CaptureError(f"Stream '{stream}' is not configured")
        shape = self._arena.stream_shapes[stream]
        channels = shape[2] if len(shape) == 3 else 1
        return StreamInfo(name=stream, width=shape[1], height=shape[0], channels=channels)

    def metrics(self) -> dict:
        """Get capture metrics for observability."""
        return {
            "started": self.started,
            "captured": self.captured_count,
            "dropped": self.dropped_count,
            "relay": self.relay.metrics(),
            "arena": self._arena.metrics() if self._arena else None,
        }

    # -------------------------------------------------------------------------
    # Producer thread
    # -------------------------------------------------------------------------

    def _run(self) -> None:
        interval = 1.0 / self.framerate
        next_due = time.monotonic()

        while not self._stop_event.is_set():
            if self._paced:
                delay = next_due - time.monotonic()
                if delay > 0 and self._stop_event.wait(delay):
                    break
                next_due = max(next_due + interval, time.monotonic())

            slot = self._arena.acquire()
            if slot is None:
                self.dropped_count += 1
                logger.debug("No free capture buffer, dropping exposure")
                if not self._paced:
                    self._stop_event.wait(interval)
                continue

            try:
                buffers = self._arena.buffers(slot)
                metadata = self._fill(buffers, self._sequence)
                if metadata is not None:
                    metadata["colour_space"] = self._apply_colour_space(buffers)
            except Exception as e:
                logger.error(f"Capture error: {e}")
                metadata = None

            self._complete(slot, metadata)
            if metadata is None:
                self._stop_event.wait(interval)

    def _apply_colour_space(self, buffers: Dict[str, np.ndarray]) -> str:
        """
        Bring freshly filled buffers into the configured colour space.

        Backends fill full-range samples. Without JPEG_COLOURSPACE they are
        compressed into the 16-235 video range.
        """
        if self.colour_space == COLOUR_SPACE_VIDEO:
            for buffer in buffers.values():
                to_video_range(buffer)
        return self.colour_space

    def _complete(self, slot: int, metadata: Optional[dict]) -> None:
        generation = self._arena.generation
        sensor_ts = time.monotonic_ns()

        if self._last_sensor_ts == 0 or self._last_sensor_ts == sensor_ts:
            framerate = 0.0
        else:
            framerate = 1e9 / (sensor_ts - self._last_sensor_ts)
        self._last_sensor_ts = sensor_ts

        frame = Frame(
            sequence=self._sequence,
            buffers=self._arena.buffers(slot),
            timestamp=time.time(),
            framerate=framerate,
            metadata={"sensor_timestamp": sensor_ts, **(metadata or {})},
            slot=slot,
            generation=generation,
        )

        if metadata is None:
            # Failed exposure: hand the slot straight back.
            self._arena.recycle(frame)
            return

        self._sequence += 1
        self.captured_count += 1
        self.relay.post(FrameHandle(frame, self._arena.recycle))

    # -------------------------------------------------------------------------
    # Backend hooks
    # -------------------------------------------------------------------------

    # Whether _run() paces itself to `framerate` (False when the device blocks)
    _paced = True

    def _open_device(self) -> None:
        pass

    def _close_device(self) -> None:
        pass

    def _fill(self, buffers: Dict[str, np.ndarray], sequence: int) -> Optional[dict]:
        """Fill one slot. Return capture metadata, or None if the exposure failed."""
        raise NotImplementedError


class SyntheticCaptureEngine(ThreadedCaptureEngine):
    """
    Deterministic test-pattern camera.

    Produces a horizontal colour gradient that scrolls a few pixels per
    frame with the sequence number stamped in the corner. Needs no
    hardware, which makes it the default backend for development and
    tests.
    """

    def __init__(self, *args, scroll_px: int = 4, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.scroll_px = scroll_px
        self._pattern: Optional[np.ndarray] = None

    def _open_device(self) -> None:
        x = np.linspace(0, 255, self.width, dtype=np.float32)
        y = np.linspace(0, 255, self.height, dtype=np.float32)[:, None]
        pattern = np.empty((self.height, self.width, 3), dtype=np.uint8)
        pattern[..., 0] = x[None, :]
        pattern[..., 1] = y
        pattern[..., 2] = 255 - x[None, :]
        self._pattern = pattern

    def _fill(self, buffers: Dict[str, np.ndarray], sequence: int) -> Optional[dict]:
        video = buffers[VIDEO_STREAM]
        shift = (sequence * self.scroll_px) % self.width
        video[:] = np.roll(self._pattern, shift, axis=1)
        cv2.putText(
            video, f"#{sequence}", (10, 30),
            cv2.FONT_HERSHEY_SIMPLEX, 0.8, (255, 255, 255), 2,
        )
        if RAW_STREAM in buffers:
            buffers[RAW_STREAM][:] = cv2.cvtColor(video, cv2.COLOR_BGR2GRAY)
        return {"exposure_time_us": int(1e6 / self.framerate), "pattern_shift": shift}


class OpenCVCaptureEngine(ThreadedCaptureEngine):
    """
    Camera capture through cv2.VideoCapture.

    The device read blocks at the camera's own rate, so the producer
    thread does not pace itself. Frames of a different size than
    configured are resized into the slot.
    """

    _paced = False

    def __init__(self, *args, device: int = 0, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.device = device
        self._capture: Optional[cv2.VideoCapture] = None

    def _open_device(self) -> None:
        capture = cv2.VideoCapture(self.device)
        if not capture.isOpened():
            capture.release()
            raise CaptureError(f"Unable to open camera device {self.device}")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        capture.set(cv2.CAP_PROP_FPS, self.framerate)
        self._capture = capture

    def _close_device(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None

    def _fill(self, buffers: Dict[str, np.ndarray], sequence: int) -> Optional[dict]:
        ok, image = self._capture.read()
        if not ok or image is None:
            logger.warning(f"Camera device {self.device} returned no frame")
            return None

        video = buffers[VIDEO_STREAM]
        if image.shape != video.shape:
            image = cv2.resize(image, (self.width, self.height))
        video[:] = image
        if RAW_STREAM in buffers:
            buffers[RAW_STREAM][:] = cv2.cvtColor(video, cv2.COLOR_BGR2GRAY)
        return {"device": self.device}
