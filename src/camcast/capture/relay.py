"""
Frame Relay
===========

Thread-safe hand-off of completed frames to the main loop.

The capture engine posts a FrameHandle from its producer thread every
time a capture completes. The main loop is the only consumer: it blocks
in `wait()` and gets back the whole backlog at once so a burst of frames
is drained without re-blocking.

Design Rules:
    - Unbounded; order of posting is order of removal
    - Nothing is dropped except by `clear()`
    - `wake()` unblocks the consumer without posting (stop requests)
    - Every access goes through one lock + condition
"""

import logging
import threading
from collections import deque
from typing import Deque, List, Optional

from camcast.capture.handle import FrameHandle


logger = logging.getLogger(__name__)


class FrameRelay:
    """
    Ordered queue of completed frames with a blocking batch read.

    Any number of producers may `post()`; exactly one consumer calls
    `wait()`.

    Example:
        relay = FrameRelay()

        # Producer (capture thread)
        relay.post(handle)

        # Consumer (main loop)
        for handle in relay.wait(timeout=0.125):
            process(handle)
            handle.release()
    """

    def __init__(self) -> None:
        self._queue: Deque[FrameHandle] = deque()
        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._woken = False

        self._total_posted = 0
        self._cleared_count = 0

    @property
    def size(self) -> int:
        """Current number of pending frames."""
        with self._lock:
            return len(self._queue)

    @property
    def total_posted(self) -> int:
        with self._lock:
            return self._total_posted

    @property
    def cleared_count(self) -> int:
        with self._lock:
            return self._cleared_count

    def post(self, handle: FrameHandle) -> None:
        """
        Append a frame at the tail and wake the consumer.

        Args:
            handle: Handle whose reference passes to the relay
        """
        with self._cond:
            self._queue.append(handle)
            self._total_posted += 1
            self._cond.notify()

    def wait(self, timeout: Optional[float] = None) -> List[FrameHandle]:
        """
        Block until frames are pending, then take the full backlog.

        Args:
            timeout: Maximum seconds to wait. None = wait until a frame
                arrives or `wake()` is called.

        Returns:
            Pending frames in posting order. Empty on timeout or wake.
            The caller owns one reference to each returned handle.
        """
        with self._cond:
            if not self._queue and not self._woken:
                self._cond.wait_for(
                    lambda: bool(self._queue) or self._woken,
                    timeout=timeout,
                )
            self._woken = False
            backlog = list(self._queue)
            self._queue.clear()
            return backlog

    def wake(self) -> None:
        """Unblock a waiting consumer without posting a frame."""
        with self._cond:
            self._woken = True
            self._cond.notify_all()

    def clear(self) -> int:
        """
        Discard all pending frames.

        The relay's reference to each discarded handle is released, so
        their slots go back to the arena (or are ignored if capture is
        already stopped).

        Returns:
            Number of frames discarded.
        """
        with self._cond:
            discarded = list(self._queue)
            self._queue.clear()
            self._cleared_count += len(discarded)

        for handle in discarded:
            handle.release()

        if discarded:
            logger.debug(f"Cleared {len(discarded)} pending frames")
        return len(discarded)

    def metrics(self) -> dict:
        """
        Get relay metrics for observability.

        Returns:
            Dict with size, total_posted, cleared_count
        """
        with self._lock:
            return {
                "size": len(self._queue),
                "total_posted": self._total_posted,
                "cleared_count": self._cleared_count,
            }
