"""Single-slot, latest-wins frame hand-off."""

import threading
from typing import Optional

from .models import RawFrame


class FrameBuffer:
    """Holds at most one frame between the capture stream and the scheduler.

    ``publish`` overwrites any frame that has not been taken yet; the stream
    delivers faster than the scheduler samples, so only the newest frame at
    tick time matters. Memory use is constant regardless of stream rate.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._frame: Optional[RawFrame] = None

    def publish(self, frame: RawFrame) -> None:
        """Store ``frame``, discarding any unconsumed predecessor."""
        with self._lock:
            self._frame = frame

    def take(self) -> Optional[RawFrame]:
        """Remove and return the current frame, or None if the slot is empty."""
        with self._lock:
            frame, self._frame = self._frame, None
            return frame

    def clear(self) -> None:
        with self._lock:
            self._frame = None
