"""
Frame Data Model
=================

Internal representation of one completed capture.

A Frame identifies the buffers the capture engine filled for one exposure.
The buffers themselves live in the engine's BufferArena; the Frame only
points at them. Consumers never hold a Frame directly, they hold a
FrameHandle which returns the buffers to the arena when released.

Design Rules:
    - Immutable (frozen) so a shared handle cannot be mutated by a holder
    - Does NOT copy pixel data
    - `slot` and `generation` tie the frame back to its arena slot
"""

from dataclasses import dataclass, field
from typing import Any, Dict

import numpy as np


@dataclass(frozen=True, slots=True)
class Frame:
    """
    One completed capture.

    Attributes:
        sequence: Monotonically increasing capture counter
        buffers: Stream name -> pixel array mapped from the arena slot
        timestamp: UNIX timestamp when the capture completed
        framerate: Instantaneous framerate derived from sensor timestamps
            (0.0 for the first frame or a repeated timestamp)
        metadata: Capture metadata (sensor timestamp, exposure, ...)
        slot: Arena slot index the buffers belong to
        generation: Arena start generation the slot was handed out in
    """

    sequence: int
    buffers: Dict[str, np.ndarray]
    timestamp: float
    framerate: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)
    slot: int = -1
    generation: int = 0

    def buffer(self, stream: str) -> np.ndarray:
        """Get the mapped buffer for a stream."""
        try:
            return self.buffers[stream]
        except KeyError:
            raise KeyError(
                f"Frame {self.sequence} has no buffer for stream '{stream}'"
            ) from None

    def __repr__(self) -> str:
        """Compact repr that doesn't dump the pixel data."""
        return (
            f"Frame(sequence={self.sequence}, "
            f"streams={sorted(self.buffers)}, "
            f"framerate={self.framerate:.1f}, "
            f"slot={self.slot})"
        )
