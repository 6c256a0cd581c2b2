"""Screen capture stream and permission probe built on MSS.

The stream grabs the primary monitor on a background thread at a capped
frame rate and hands each frame to a callback as a PIL image together with
its capture instant. It never does any processing itself: the scheduler's
callback only stores the frame in a FrameBuffer.

Repeated grab failures are treated as terminal and reported through the
error callback, after which the stream thread exits.

Dependencies:
    - mss: Multi-platform screenshot library
    - PIL (Pillow): Conversion of raw grabs into images

Example:
    >>> stream = MssCaptureStream(max_frame_rate=5)
    >>> stream.open(on_frame=lambda img, ts: print(ts), on_error=print)
    >>> stream.close()
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

import mss
from mss.exception import ScreenShotError
from PIL import Image

from .errors import StreamFaulted, StreamSetupFailure

logger = logging.getLogger(__name__)

FrameCallback = Callable[[Image.Image, datetime], None]
ErrorCallback = Callable[[Exception], None]


class MssCaptureStream:
    """Continuous capture of one monitor.

    Attributes:
        max_frame_rate (float): Upper bound on frames delivered per second
        monitor_index (int): MSS monitor index; 1 is the primary monitor
        max_consecutive_failures (int): Grab failures in a row before the
            stream gives up and reports a fault
    """

    def __init__(self, max_frame_rate: float = 5.0, monitor_index: int = 1,
                 max_consecutive_failures: int = 5):
        self.max_frame_rate = max(0.1, max_frame_rate)
        self.monitor_index = monitor_index
        self.max_consecutive_failures = max_consecutive_failures
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def open(self, on_frame: FrameCallback, on_error: ErrorCallback) -> None:
        """Verify the display is reachable and start delivering frames.

        Raises:
            StreamSetupFailure: If the stream is already open or no monitor
                can be reached
        """
        if self._thread is not None and self._thread.is_alive():
            raise StreamSetupFailure("Capture stream is already open")

        try:
            with mss.mss() as sct:
                if len(sct.monitors) < 2:
                    raise StreamSetupFailure("No monitors detected")
        except (ScreenShotError, OSError) as e:
            raise StreamSetupFailure(f"Cannot connect to display server: {e}") from e

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, args=(on_frame, on_error), name="capture-stream", daemon=True
        )
        self._thread.start()
        logger.info(f"Capture stream opened at up to {self.max_frame_rate:g} fps")

    def close(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        # close() is also reached from the error callback on the stream thread itself.
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2)
        logger.info("Capture stream closed")

    def _run(self, on_frame: FrameCallback, on_error: ErrorCallback):
        period = 1.0 / self.max_frame_rate
        failures = 0
        try:
            # MSS handles are per-thread on X11, so the grabbing handle lives here.
            with mss.mss() as sct:
                monitors = sct.monitors
                index = min(max(self.monitor_index, 1), len(monitors) - 1)
                monitor = monitors[index]
                while not self._stop.is_set():
                    started = time.monotonic()
                    try:
                        shot = sct.grab(monitor)
                        image = Image.frombytes("RGB", shot.size, shot.rgb)
                    except ScreenShotError as e:
                        failures += 1
                        logger.warning(f"Frame grab failed ({failures}/{self.max_consecutive_failures}): {e}")
                        if failures >= self.max_consecutive_failures:
                            on_error(StreamFaulted(f"Screen grab failed {failures} times in a row: {e}"))
                            return
                    else:
                        failures = 0
                        on_frame(image, datetime.now())
                    self._stop.wait(max(0.0, period - (time.monotonic() - started)))
        except Exception as e:
            if not self._stop.is_set():
                on_error(StreamFaulted(f"Capture stream terminated: {e}"))


class DisplayPermission:
    """Reports whether the screen can be captured on this system."""

    def is_authorized(self) -> bool:
        """True if a display connection succeeds and lists at least one monitor."""
        try:
            with mss.mss() as sct:
                return len(sct.monitors) >= 2
        except (ScreenShotError, OSError) as e:
            logger.debug(f"Screen capture not available: {e}")
            return False
