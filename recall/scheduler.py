"""Capture Scheduler Module.

Owns the capture lifecycle and the periodic sampling timer. The capture
stream delivers frames on its own thread straight into a FrameBuffer; on
every timer tick the scheduler takes the newest frame and runs it through
the pipeline:

    FrameBuffer.take -> foreground app -> exclusion gate -> OCR
        -> screenshot file -> CaptureEvent

The exclusion gate runs before any OCR or disk work. OCR and screenshot
failures degrade the event (no text, no image) instead of dropping it.

Lifecycle:
    IDLE -> STARTING -> RUNNING -> STOPPING -> IDLE
    STARTING/RUNNING -> FAULTED -> IDLE    (terminal stream error)

Every transition, interval change and persistence failure is published to
subscribers as a StatusEvent.

Example:
    >>> scheduler = CaptureScheduler(stream, permission, foreground,
    ...                              extractor, store, config.rule_set)
    >>> scheduler.subscribe(lambda status: print(status.state))
    >>> scheduler.start()
    >>> scheduler.set_interval(30)
    >>> scheduler.stop()
"""

import logging
import threading
import time
from functools import partial
from typing import Callable, List, Optional

from .buffer import FrameBuffer
from .errors import PermissionDenied, PersistenceError, StreamFaulted, StreamSetupFailure
from .exclusion import decide
from .models import (
    DEFAULT_INTERVAL_SECONDS,
    MAX_INTERVAL_SECONDS,
    MIN_INTERVAL_SECONDS,
    CaptureEvent,
    CaptureState,
    Decision,
    ExclusionRuleSet,
    ForegroundApp,
    RawFrame,
    StatusEvent,
    clamp_interval,
)

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Calls ``callback`` every ``interval`` seconds on a daemon thread.

    Ticks are scheduled at a fixed rate from ``start()``. A tick that overruns
    its period skips the ticks it missed rather than firing them back to back.
    """

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "capture-timer"):
        self.interval = interval
        self._callback = callback
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self):
        self._thread.start()

    def cancel(self):
        """Disarm the task. A tick already executing runs to completion."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _run(self):
        next_tick = time.monotonic() + self.interval
        while not self._cancelled.wait(max(0.0, next_tick - time.monotonic())):
            try:
                self._callback()
            except Exception as e:
                logger.error(f"Periodic task callback failed: {e}")
            next_tick += self.interval
            now = time.monotonic()
            while next_tick <= now:
                next_tick += self.interval


class CaptureScheduler:
    """Coordinates the capture stream, the sampling timer and the tick pipeline.

    Collaborators:
        stream: ``open(on_frame, on_error)`` / ``close()``. Frames arrive as
            ``on_frame(image, captured_at)``; terminal failures as
            ``on_error(exception)``.
        permission: ``is_authorized() -> bool``, checked on every ``start()``.
        foreground: ``current_foreground() -> ForegroundApp``, queried once
            per tick before the exclusion decision.
        extractor: ``extract(image) -> Optional[str]``.
        store: EventStore (``save_screenshot`` and ``save``).
        rules_provider: returns the current ExclusionRuleSet, called once per
            decision so rule edits apply without a restart.

    Attributes:
        buffer (FrameBuffer): Latest-wins slot fed by the stream
    """

    def __init__(
        self,
        stream,
        permission,
        foreground,
        extractor,
        store,
        rules_provider: Callable[[], ExclusionRuleSet],
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        buffer: Optional[FrameBuffer] = None,
        timer_factory: Callable[[float, Callable[[], None]], PeriodicTask] = PeriodicTask,
    ):
        self.stream = stream
        self.permission = permission
        self.foreground = foreground
        self.extractor = extractor
        self.store = store
        self.rules_provider = rules_provider
        self.buffer = buffer or FrameBuffer()
        self._timer_factory = timer_factory

        self._interval = clamp_interval(interval_seconds)
        self._state = CaptureState.IDLE
        self._timer: Optional[PeriodicTask] = None
        self._timer_generation = 0

        # Lifecycle transitions are serialized by _state_lock. _tick_lock is
        # held for the whole pipeline run; shutdown waits on it so an
        # in-flight tick is persisted before the scheduler reports IDLE.
        self._state_lock = threading.RLock()
        self._tick_lock = threading.RLock()
        self._listeners: List[Callable[[StatusEvent], None]] = []
        self._listeners_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def is_capturing(self) -> bool:
        return self._state is CaptureState.RUNNING

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def subscribe(self, callback: Callable[[StatusEvent], None]) -> Callable[[], None]:
        """Register a status listener. Returns a function that unsubscribes it."""
        with self._listeners_lock:
            self._listeners.append(callback)

        def unsubscribe():
            with self._listeners_lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, error: Optional[Exception] = None):
        status = StatusEvent(state=self._state, interval_seconds=self._interval, error=error)
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Status listener error: {e}")

    def _set_state(self, state: CaptureState, error: Optional[Exception] = None):
        if state is not self._state:
            logger.info(f"Capture state {self._state.value} -> {state.value}")
        self._state = state
        self._emit(error)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Open the capture stream and arm the sampling timer.

        Idempotent: calling it while not IDLE does nothing.

        Returns:
            bool: True if capture is running afterwards. False if stream setup
                failed; the failure is published as a StatusEvent and every
                partially acquired resource has been released.

        Raises:
            PermissionDenied: If screen capture is not authorized
        """
        with self._state_lock:
            if self._state is not CaptureState.IDLE:
                logger.debug(f"start() ignored in state {self._state.value}")
                return self._state is CaptureState.RUNNING

            if not self.permission.is_authorized():
                logger.warning("Screen capture permission not granted")
                raise PermissionDenied("Screen capture is not authorized")

            self._set_state(CaptureState.STARTING)
            try:
                self.stream.open(on_frame=self._on_frame, on_error=self._on_stream_error)
                if self._state is not CaptureState.STARTING:
                    # The stream faulted while opening and cleanup already ran.
                    return False
                self._arm_timer()
            except Exception as e:
                failure = e if isinstance(e, StreamSetupFailure) else StreamSetupFailure(str(e))
                logger.error(f"Capture stream setup failed: {e}")
                self._release_resources()
                self._set_state(CaptureState.IDLE, error=failure)
                return False

            self._set_state(CaptureState.RUNNING)
            logger.info(f"Capture started, sampling every {self._interval:g}s")
            return True

    def stop(self):
        """Disarm the timer, close the stream and drop any buffered frame.

        No-op unless RUNNING. A tick that is already executing finishes (and
        its event is saved) before this returns.
        """
        with self._state_lock:
            if self._state is not CaptureState.RUNNING:
                logger.debug(f"stop() ignored in state {self._state.value}")
                return
            self._set_state(CaptureState.STOPPING)
            self._release_resources()
            self._set_state(CaptureState.IDLE)
            logger.info("Capture stopped")

    def set_interval(self, seconds: float) -> float:
        """Change the sampling period, clamped to [1, 300] seconds.

        While RUNNING the timer is swapped for one with the new period; the old
        timer is disarmed before the new one starts, so the two never fire
        side by side. Otherwise the value is kept for the next ``start()``.

        Returns:
            float: The interval actually applied
        """
        interval = clamp_interval(seconds)
        with self._state_lock:
            self._interval = interval
            if self._state is CaptureState.RUNNING:
                self._arm_timer()
                logger.info(f"Capture interval updated to {interval:g}s and timer reset")
            self._emit()
        return interval

    def increase_frequency(self) -> float:
        """Halve the interval (sample more often), bounded below by 1s."""
        return self.set_interval(max(MIN_INTERVAL_SECONDS, self._interval / 2.0))

    def decrease_frequency(self) -> float:
        """Double the interval (sample less often), bounded above by 300s."""
        return self.set_interval(min(MAX_INTERVAL_SECONDS, self._interval * 2.0))

    def _arm_timer(self):
        self._disarm_timer()
        self._timer_generation += 1
        timer = self._timer_factory(self._interval, partial(self._on_timer, self._timer_generation))
        self._timer = timer
        timer.start()

    def _disarm_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._timer_generation += 1

    def _release_resources(self):
        self._disarm_timer()
        try:
            self.stream.close()
        except Exception as e:
            logger.error(f"Error closing capture stream: {e}")
        self.buffer.clear()
        # Wait for an in-flight tick to finish writing.
        with self._tick_lock:
            pass
        self.buffer.clear()

    # ------------------------------------------------------------------
    # Stream callbacks (run on the stream's thread)
    # ------------------------------------------------------------------

    def _on_frame(self, image, captured_at):
        self.buffer.publish(RawFrame(image=image, captured_at=captured_at))

    def _on_stream_error(self, error: Exception):
        with self._state_lock:
            if self._state not in (CaptureState.STARTING, CaptureState.RUNNING):
                logger.debug(f"Ignoring stream error in state {self._state.value}: {error}")
                return
            fault = error if isinstance(error, StreamFaulted) else StreamFaulted(str(error))
            logger.error(f"Capture stream stopped with error: {error}")
            self._set_state(CaptureState.FAULTED, error=fault)
            self._release_resources()
            self._set_state(CaptureState.IDLE, error=fault)

    # ------------------------------------------------------------------
    # Tick pipeline
    # ------------------------------------------------------------------

    def _on_timer(self, generation: int):
        with self._tick_lock:
            if generation != self._timer_generation:
                return
            self.tick()

    def tick(self) -> Optional[CaptureEvent]:
        """Run one sampling tick.

        Returns:
            Optional[CaptureEvent]: The persisted event, or None when there was
                no fresh frame, the frame was excluded, the scheduler is not
                running, or the event could not be saved.
        """
        with self._tick_lock:
            if self._state is not CaptureState.RUNNING:
                return None
            return self._process_frame()

    def _process_frame(self) -> Optional[CaptureEvent]:
        frame = self.buffer.take()
        if frame is None:
            logger.debug("No new frame since last tick")
            return None

        app = self._current_foreground()
        rules = self._current_rules()
        if rules is None or decide(app.name, app.bundle_id, app.window_title, rules) is Decision.EXCLUDE:
            logger.info(f"Frame dropped by exclusion rules for {app.name or app.bundle_id or 'unknown app'}")
            return None

        ocr_text = self._extract_text(frame)
        screenshot_path = self.store.save_screenshot(frame.image, frame.captured_at)

        event = CaptureEvent.create(
            timestamp=frame.captured_at,
            ocr_text=ocr_text,
            screenshot_path=screenshot_path,
            application_name=app.name,
            bundle_identifier=app.bundle_id,
        )
        try:
            self.store.save(event)
        except PersistenceError as e:
            logger.error(f"Capture event not persisted: {e}")
            self._discard_screenshot(screenshot_path)
            self._emit(error=e)
            return None
        return event

    def _discard_screenshot(self, screenshot_path: Optional[str]):
        """Remove a screenshot whose event was never saved."""
        file_path = self.store.resolve_screenshot_path(screenshot_path)
        if file_path is None:
            return
        try:
            file_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove orphaned screenshot {file_path}: {e}")

    def _current_foreground(self) -> ForegroundApp:
        try:
            return ForegroundApp(*self.foreground.current_foreground())
        except Exception as e:
            logger.warning(f"Failed to get foreground application: {e}")
            return ForegroundApp()

    def _current_rules(self) -> Optional[ExclusionRuleSet]:
        try:
            return self.rules_provider()
        except Exception as e:
            # Without rules the gate cannot vouch for the frame.
            logger.error(f"Failed to load exclusion rules, dropping frame: {e}")
            return None

    def _extract_text(self, frame: RawFrame) -> Optional[str]:
        try:
            return self.extractor.extract(frame.image)
        except Exception as e:
            logger.warning(f"OCR failed, saving event without text: {e}")
            return None
