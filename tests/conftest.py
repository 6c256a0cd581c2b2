"""Shared fixtures and fake collaborators for the capture pipeline tests."""

from datetime import datetime, timedelta

import pytest
from PIL import Image

from recall.models import ExclusionRuleSet, ForegroundApp
from recall.scheduler import CaptureScheduler
from recall.storage import EventStore

BASE_TIME = datetime(2025, 5, 20, 9, 0, 0)


def at(seconds: float) -> datetime:
    """Capture instant ``seconds`` after BASE_TIME."""
    return BASE_TIME + timedelta(seconds=seconds)


def make_image(color="white", size=(8, 8)):
    return Image.new("RGB", size, color)


class FakeStream:
    """Capture stream that delivers frames only when told to."""

    def __init__(self, open_error=None):
        self.open_error = open_error
        self.on_frame = None
        self.on_error = None
        self.open_calls = 0
        self.close_calls = 0

    def open(self, on_frame, on_error):
        self.open_calls += 1
        if self.open_error is not None:
            raise self.open_error
        self.on_frame = on_frame
        self.on_error = on_error

    def close(self):
        self.close_calls += 1

    def deliver(self, image, captured_at):
        self.on_frame(image, captured_at)

    def fail(self, error):
        self.on_error(error)


class FakePermission:
    def __init__(self, authorized=True):
        self.authorized = authorized
        self.calls = 0

    def is_authorized(self):
        self.calls += 1
        return self.authorized


class FakeForeground:
    def __init__(self, app=None):
        self.app = app or ForegroundApp("Editor", "editor", "notes.txt - Editor")

    def current_foreground(self):
        return self.app


class FakeExtractor:
    """OCR stand-in returning fixed text, or raising ``error`` if set."""

    def __init__(self, text="recognized text", error=None):
        self.text = text
        self.error = error
        self.calls = 0

    def extract(self, image):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.text


class FakeTimer:
    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.callback()


class TimerFactory:
    """Records every timer the scheduler arms."""

    def __init__(self):
        self.timers = []

    def __call__(self, interval, callback):
        timer = FakeTimer(interval, callback)
        self.timers.append(timer)
        return timer

    @property
    def armed(self):
        return [t for t in self.timers if t.started and not t.cancelled]


@pytest.fixture
def store(tmp_path):
    return EventStore(str(tmp_path / "data"))


@pytest.fixture
def rules():
    return ExclusionRuleSet.from_lists(
        bundle_ids=["com.example.vault"],
        title_keywords=["secret"],
        ignore_incognito=True,
    )


@pytest.fixture
def pipeline(store, rules):
    """A scheduler wired to fakes, plus handles to every fake."""
    stream = FakeStream()
    permission = FakePermission()
    foreground = FakeForeground()
    extractor = FakeExtractor()
    timers = TimerFactory()
    statuses = []
    scheduler = CaptureScheduler(
        stream=stream,
        permission=permission,
        foreground=foreground,
        extractor=extractor,
        store=store,
        rules_provider=lambda: rules,
        interval_seconds=10,
        timer_factory=timers,
    )
    scheduler.subscribe(statuses.append)

    class Pipeline:
        pass

    p = Pipeline()
    p.scheduler = scheduler
    p.stream = stream
    p.permission = permission
    p.foreground = foreground
    p.extractor = extractor
    p.timers = timers
    p.statuses = statuses
    p.store = store
    return p
