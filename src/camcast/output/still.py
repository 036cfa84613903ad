"""
Still Image Writer
==================

Persists a single frame to an image file.

Writing happens on a dedicated worker thread so a slow disk never stalls
the main loop. The writer takes its own reference to the frame handle and
releases it once the file is written, which keeps the buffer out of the
capture pool for exactly as long as it is being read.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import cv2

from camcast.capture.handle import FrameHandle


logger = logging.getLogger(__name__)


class StillFormat(str, Enum):
    """Supported still image formats."""

    JPG = "jpg"
    PNG = "png"


class StillWriter:
    """
    Single-frame image writer.

    The output path may contain `%d`, replaced by the frame sequence
    number (e.g. `stills/capture-%d.jpg`).

    Attributes:
        output: Output path or pattern
        fmt: Image format
        quality: JPEG quality (ignored for PNG)
        written_count: Files written so far
    """

    def __init__(
        self,
        output: Union[str, Path] = "still.jpg",
        fmt: Union[str, StillFormat] = StillFormat.JPG,
        quality: int = 90,
    ) -> None:
        self.output = str(output)
        self.fmt = StillFormat(fmt)
        self.quality = quality
        self.written_count = 0
        self.failed_count = 0
        self._executor: Optional[ThreadPoolExecutor] = None

    def capture_still(self, handle: FrameHandle, stream: str) -> Future:
        """
        Write one frame to disk in the background.

        Args:
            handle: Frame to write. The caller keeps its own reference.
            stream: Which stream buffer to write

        Returns:
            Future resolving to the written Path.
        """
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="still-writer")

        handle.share()
        try:
            return self._executor.submit(self._write, handle, stream)
        except RuntimeError:
            handle.release()
            raise

    def close(self, wait: bool = True) -> None:
        """Finish pending writes and stop the worker."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def _path_for(self, sequence: int) -> Path:
        if "%d" in self.output:
            return Path(self.output.replace("%d", str(sequence)))
        return Path(self.output)

    def _write(self, handle: FrameHandle, stream: str) -> Path:
        try:
            frame = handle.frame
            path = self._path_for(frame.sequence)
            path.parent.mkdir(parents=True, exist_ok=True)

            if self.fmt == StillFormat.JPG:
                params = [cv2.IMWRITE_JPEG_QUALITY, self.quality]
                ok, encoded = cv2.imencode(".jpg", frame.buffer(stream), params)
            else:
                ok, encoded = cv2.imencode(".png", frame.buffer(stream))
            if not ok:
                raise IOError(f"Failed to encode still for frame {frame.sequence}")

            path.write_bytes(encoded.tobytes())
        except Exception as e:
            self.failed_count += 1
            logger.error(f"Still capture failed: {e}")
            raise
        finally:
            handle.release()

        self.written_count += 1
        logger.info(f"Still image written: {path} (frame {frame.sequence})")
        return path
