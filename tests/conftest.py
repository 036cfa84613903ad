"""
Test Configuration
==================

Pytest fixtures and test configuration for camcast.

The appliance tests drive the main loop one iteration at a time with a
FakeCaptureEngine (frames are posted on demand) and a SequenceEncoder
(one short, recognisable chunk per frame).
"""

import os
import socket
import time
from typing import Dict, List, Optional

import numpy as np
import pytest

# Keep the HTTP app off well-known ports when it is imported by tests.
os.environ.setdefault("CAMCAST_SERVER_ADDRESS", "tcp://127.0.0.1:0")
os.environ.setdefault("CAMCAST_CAPTURE_BACKEND", "synthetic")

from camcast.capture import (
    VIDEO_STREAM,
    BufferArena,
    CaptureError,
    CaptureFlags,
    Frame,
    FrameHandle,
    FrameRelay,
    StreamInfo,
)
from camcast.encoder import BaseEncoder


class FakeCaptureEngine:
    """Capture engine that posts frames only when told to."""

    def __init__(self, width: int = 8, height: int = 8, buffer_count: int = 16) -> None:
        self.width = width
        self.height = height
        self.buffer_count = buffer_count
        self.relay = FrameRelay()
        self.arena: Optional[BufferArena] = None
        self.opened = False
        self.started = False
        self.closed = False
        self.wake_count = 0
        self._sequence = 0

    def open(self) -> None:
        self.opened = True

    def configure(self, flags: CaptureFlags = CaptureFlags.NONE) -> None:
        if not self.opened:
            raise CaptureError("configure() called before open()")
        self.arena = BufferArena(
            {VIDEO_STREAM: (self.height, self.width, 3)},
            slot_count=self.buffer_count,
        )

    def start(self) -> None:
        self.arena.start()
        self.started = True

    def stop(self) -> None:
        if self.started:
            self.started = False
            self.arena.stop()
            self.relay.clear()

    def close(self) -> None:
        self.stop()
        self.closed = True

    def wait_for_events(self, timeout: Optional[float] = None) -> List[FrameHandle]:
        return self.relay.wait(timeout=timeout)

    def wake(self) -> None:
        self.wake_count += 1
        self.relay.wake()

    def stream_info(self, stream: str) -> StreamInfo:
        return StreamInfo(name=stream, width=self.width, height=self.height, channels=3)

    def emit(self, count: int = 1) -> List[int]:
        """Post `count` frames; each buffer is filled with its sequence number."""
        posted = []
        for _ in range(count):
            slot = self.arena.acquire()
            assert slot is not None, "fake capture ran out of buffers"
            buffers: Dict[str, np.ndarray] = self.arena.buffers(slot)
            buffers[VIDEO_STREAM][:] = self._sequence % 256
            frame = Frame(
                sequence=self._sequence,
                buffers=buffers,
                timestamp=time.time(),
                metadata={"sensor_timestamp": 1_000_000 * (self._sequence + 1)},
                slot=slot,
                generation=self.arena.generation,
            )
            self.relay.post(FrameHandle(frame, self.arena.recycle))
            posted.append(self._sequence)
            self._sequence += 1
        return posted


class SequenceEncoder(BaseEncoder):
    """Emits b"<NNN>" per frame, NNN being the value the frame is filled with."""

    name = "sequence"

    def _encode_buffer(self, buffer: np.ndarray) -> bytes:
        return b"<%03d>" % int(buffer.flat[0])


def expected_chunks(sequences: List[int]) -> bytes:
    return b"".join(b"<%03d>" % (s % 256) for s in sequences)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def recv_exactly(sock: socket.socket, size: int, timeout: float = 5.0) -> bytes:
    """Read exactly `size` bytes or fail."""
    sock.settimeout(timeout)
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def recv_until_closed(sock: socket.socket, timeout: float = 5.0) -> bytes:
    """Read until the peer closes the connection."""
    sock.settimeout(timeout)
    data = b""
    while True:
        chunk = sock.recv(65536)
        if not chunk:
            return data
        data += chunk


@pytest.fixture
def fake_capture():
    """Opened, configured and started FakeCaptureEngine."""
    engine = FakeCaptureEngine()
    engine.open()
    engine.configure()
    engine.start()
    yield engine
    engine.close()


@pytest.fixture
def sequence_encoder():
    return SequenceEncoder()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def loopback_server():
    """BroadcastServer on an ephemeral loopback port, stopped after the test."""
    from camcast.output import BroadcastServer

    server = BroadcastServer("tcp://127.0.0.1:0", write_timeout=1.0)
    yield server
    server.stop()


@pytest.fixture
def appliance(fake_capture, sequence_encoder, loopback_server, fake_clock):
    """StreamingAppliance wired to fakes, driven with run_once()."""
    from camcast.streaming import StreamingAppliance

    return StreamingAppliance(
        capture=fake_capture,
        encoder=sequence_encoder,
        server=loopback_server,
        wait_timeout_sec=30.0,
        clock=fake_clock,
    )


@pytest.fixture
def make_frame():
    """Build a standalone FrameHandle backed by a started arena."""
    arena = BufferArena({VIDEO_STREAM: (4, 4, 3)}, slot_count=4)
    arena.start()

    def _make(sequence: int = 0, recycle=None) -> FrameHandle:
        slot = arena.acquire()
        frame = Frame(
            sequence=sequence,
            buffers=arena.buffers(slot),
            timestamp=time.time(),
            slot=slot,
            generation=arena.generation,
        )
        return FrameHandle(frame, recycle or arena.recycle)

    _make.arena = arena
    return _make
