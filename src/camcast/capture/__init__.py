"""
Capture Module
==============

Frame acquisition and the hand-off of completed frames to the main loop.

Components:
    - Frame: Immutable record of one completed capture
    - FrameHandle / BufferArena: Reference-counted buffer recycling
    - FrameRelay: Thread-safe ordered hand-off with batch reads
    - CaptureEngine: Protocol for capture backends
    - SyntheticCaptureEngine / OpenCVCaptureEngine: Concrete backends

Example:
    from camcast.capture import SyntheticCaptureEngine

    engine = SyntheticCaptureEngine(width=640, height=480, framerate=30)
    engine.open()
    engine.configure()
    engine.start()

    for handle in engine.wait_for_events(timeout=1.0):
        print(handle.frame)
        handle.release()
"""

from camcast.capture.frame import Frame
from camcast.capture.handle import BufferArena, FrameHandle, HandleReleasedError
from camcast.capture.relay import FrameRelay
from camcast.capture.engine import (
    RAW_STREAM,
    VIDEO_STREAM,
    CaptureEngine,
    CaptureError,
    CaptureFlags,
    OpenCVCaptureEngine,
    StreamInfo,
    SyntheticCaptureEngine,
    ThreadedCaptureEngine,
)


__all__ = [
    "Frame",
    "FrameHandle",
    "BufferArena",
    "HandleReleasedError",
    "FrameRelay",
    "CaptureEngine",
    "CaptureError",
    "CaptureFlags",
    "StreamInfo",
    "ThreadedCaptureEngine",
    "SyntheticCaptureEngine",
    "OpenCVCaptureEngine",
    "VIDEO_STREAM",
    "RAW_STREAM",
]
