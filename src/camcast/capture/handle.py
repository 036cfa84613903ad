"""
Recyclable Frame Handles
========================

Reference-counted ownership of capture buffers.

The capture engine fills buffers out of a BufferArena: a fixed pool of
slots, each slot holding one buffer per configured stream. When a capture
completes the engine wraps the Frame in a FrameHandle with a count of one
and posts it to the FrameRelay. Every additional holder (encoder
submission, still capture) calls `share()`, every holder calls `release()`
when done. The 1 -> 0 transition hands the slot back to the arena exactly
once.

Design Rules:
    - A slot is never owned by two in-flight frames
    - The last release is the only trigger for recycling
    - Recycling after the arena stopped is a no-op, not an error
    - A handle from a previous start generation is never requeued

Example:
    arena = BufferArena({"video": (480, 640, 3)}, slot_count=4)
    arena.start()

    slot = arena.acquire()
    frame = Frame(sequence=0, buffers=arena.buffers(slot), timestamp=now,
                  slot=slot, generation=arena.generation)
    handle = FrameHandle(frame, arena.recycle)

    encoder_ref = handle.share()
    handle.release()        # still held by the encoder
    encoder_ref.release()   # slot goes back to the arena
"""

import logging
import threading
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

import numpy as np

from camcast.capture.frame import Frame


logger = logging.getLogger(__name__)


class HandleReleasedError(RuntimeError):
    """Raised when a handle is released more times than it was shared."""
    pass


class FrameHandle:
    """
    Shared ownership wrapper over one Frame.

    The count starts at one (the capture engine's reference, which it
    passes on through the relay). Thread-safe: holders on different
    threads may share and release concurrently.

    Attributes:
        frame: The wrapped frame
        refcount: Current number of holders
        recycled: Whether the recycle hook already ran
    """

    __slots__ = ("_frame", "_recycle", "_count", "_lock")

    def __init__(self, frame: Frame, recycle: Callable[[Frame], None]) -> None:
        self._frame = frame
        self._recycle = recycle
        self._count = 1
        self._lock = threading.Lock()

    @property
    def frame(self) -> Frame:
        return self._frame

    @property
    def sequence(self) -> int:
        return self._frame.sequence

    @property
    def refcount(self) -> int:
        with self._lock:
            return self._count

    @property
    def recycled(self) -> bool:
        with self._lock:
            return self._count == 0

    def share(self) -> "FrameHandle":
        """
        Register another holder.

        Returns:
            This handle, so the new holder can keep it and release it later.

        Raises:
            HandleReleasedError: If the frame was already recycled
        """
        with self._lock:
            if self._count == 0:
                raise HandleReleasedError(
                    f"Cannot share frame {self._frame.sequence}: already recycled"
                )
            self._count += 1
        return self

    def release(self) -> None:
        """
        Drop one holder. Recycles the frame on the last release.

        Raises:
            HandleReleasedError: If released more times than shared
        """
        with self._lock:
            if self._count == 0:
                raise HandleReleasedError(
                    f"Frame {self._frame.sequence} released more times than shared"
                )
            self._count -= 1
            last = self._count == 0

        # Hook runs outside our lock: it takes the arena lock.
        if last:
            self._recycle(self._frame)

    def __enter__(self) -> "FrameHandle":
        return self

    def __exit__(self, *args) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"FrameHandle({self._frame!r}, refcount={self.refcount})"


class BufferArena:
    """
    Pool of reusable buffer slots, one buffer per stream per slot.

    Slots are handed out by `acquire()` and come back through `recycle()`,
    which is the recycle hook given to every FrameHandle. The arena also
    tracks whether capture is running: `stop()` bumps the generation so
    handles still in flight from before the stop are ignored when they
    are finally released.

    Attributes:
        stream_shapes: Stream name -> buffer shape
        slot_count: Number of slots in the pool
        generation: Incremented on every start and stop
    """

    def __init__(
        self,
        stream_shapes: Dict[str, Tuple[int, ...]],
        slot_count: int = 4,
        dtype: type = np.uint8,
    ) -> None:
        """
        Allocate the pool.

        Args:
            stream_shapes: Shape of the buffer for each stream
            slot_count: Number of slots. Must be >= 1.
            dtype: Buffer element type
        """
        if slot_count < 1:
            raise ValueError("slot_count must be >= 1")
        if not stream_shapes:
            raise ValueError("at least one stream is required")

        self.stream_shapes = dict(stream_shapes)
        self.slot_count = slot_count
        self.dtype = dtype

        self._slots = [self._allocate() for _ in range(slot_count)]
        self._free: Deque[int] = deque()
        self._in_flight: set = set()
        self._stranded: set = set()
        self._lock = threading.Lock()
        self._started = False
        self._generation = 0

        self._recycled_count = 0
        self._ignored_count = 0

    @property
    def started(self) -> bool:
        with self._lock:
            return self._started

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def free_count(self) -> int:
        with self._lock:
            return len(self._free)

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def _allocate(self) -> Dict[str, np.ndarray]:
        return {
            name: np.zeros(shape, dtype=self.dtype)
            for name, shape in self.stream_shapes.items()
        }

    def start(self) -> int:
        """
        Mark every slot free and begin handing them out.

        Slots still held by handles from before the last `stop()` get
        fresh buffers, so a late reader never sees them overwritten.

        Returns:
            The new generation number.
        """
        with self._lock:
            for slot in self._stranded:
                self._slots[slot] = self._allocate()
            self._stranded.clear()
            self._generation += 1
            self._free = deque(range(self.slot_count))
            self._in_flight.clear()
            self._started = True
            return self._generation

    def stop(self) -> None:
        """
        Stop handing out slots. Late releases become no-ops.
        """
        with self._lock:
            self._started = False
            self._generation += 1
            self._stranded.update(self._in_flight)
            self._free.clear()
            self._in_flight.clear()

    def acquire(self) -> Optional[int]:
        """
        Take a free slot.

        Returns:
            Slot index, or None if stopped or every slot is in flight.
        """
        with self._lock:
            if not self._started or not self._free:
                return None
            slot = self._free.popleft()
            self._in_flight.add(slot)
            return slot

    def buffers(self, slot: int) -> Dict[str, np.ndarray]:
        """Get the per-stream buffers of a slot."""
        return self._slots[slot]

    def recycle(self, frame: Frame) -> None:
        """
        Return a frame's slot to the free pool.

        No-op if the arena was stopped, or if the frame belongs to an
        earlier generation.
        """
        with self._lock:
            if not self._started or frame.generation != self._generation:
                self._ignored_count += 1
                logger.debug(
                    f"Ignoring recycle of frame {frame.sequence} "
                    f"(started={self._started}, generation={frame.generation}/"
                    f"{self._generation})"
                )
                return
            if frame.slot not in self._in_flight:
                self._ignored_count += 1
                logger.warning(
                    f"Slot {frame.slot} of frame {frame.sequence} is not in flight"
                )
                return
            self._in_flight.discard(frame.slot)
            self._free.append(frame.slot)
            self._recycled_count += 1

    def metrics(self) -> dict:
        """Get arena metrics for observability."""
        with self._lock:
            return {
                "slot_count": self.slot_count,
                "free": len(self._free),
                "in_flight": len(self._in_flight),
                "recycled": self._recycled_count,
                "ignored": self._ignored_count,
                "generation": self._generation,
            }
