import threading
import time

import pytest
import yaml

from recall.config import ConfigManager
from recall.errors import PermissionDenied, PersistenceError, StreamFaulted, StreamSetupFailure
from recall.models import CaptureState, ForegroundApp, RawFrame
from recall.scheduler import CaptureScheduler, PeriodicTask

from conftest import (
    FakeExtractor,
    FakeForeground,
    FakePermission,
    FakeStream,
    TimerFactory,
    at,
    make_image,
)


def states(statuses):
    return [s.state for s in statuses]


def test_start_runs_and_arms_timer(pipeline):
    assert pipeline.scheduler.start() is True

    assert pipeline.scheduler.state is CaptureState.RUNNING
    assert pipeline.scheduler.is_capturing
    assert states(pipeline.statuses) == [CaptureState.STARTING, CaptureState.RUNNING]
    assert len(pipeline.timers.armed) == 1
    assert pipeline.timers.armed[0].interval == 10


def test_start_without_permission_raises(pipeline):
    pipeline.permission.authorized = False

    with pytest.raises(PermissionDenied):
        pipeline.scheduler.start()

    assert pipeline.scheduler.state is CaptureState.IDLE
    assert pipeline.stream.open_calls == 0
    assert pipeline.timers.timers == []


def test_permission_checked_on_every_start(pipeline):
    pipeline.scheduler.start()
    pipeline.scheduler.stop()
    pipeline.permission.authorized = False

    with pytest.raises(PermissionDenied):
        pipeline.scheduler.start()
    assert pipeline.permission.calls == 2


def test_start_is_idempotent(pipeline):
    pipeline.scheduler.start()
    assert pipeline.scheduler.start() is True
    assert pipeline.stream.open_calls == 1
    assert len(pipeline.timers.timers) == 1


def test_stream_setup_failure_returns_to_idle(store, rules):
    stream = FakeStream(open_error=StreamSetupFailure("no display"))
    timers = TimerFactory()
    statuses = []
    scheduler = CaptureScheduler(
        stream, FakePermission(), None, FakeExtractor(), store, lambda: rules,
        timer_factory=timers,
    )
    scheduler.subscribe(statuses.append)

    assert scheduler.start() is False
    assert scheduler.state is CaptureState.IDLE
    assert states(statuses) == [CaptureState.STARTING, CaptureState.IDLE]
    assert isinstance(statuses[-1].error, StreamSetupFailure)
    assert stream.close_calls == 1
    assert timers.timers == []


def test_unexpected_setup_error_is_reported_as_setup_failure(store, rules):
    stream = FakeStream(open_error=RuntimeError("boom"))
    statuses = []
    scheduler = CaptureScheduler(
        stream, FakePermission(), None, FakeExtractor(), store, lambda: rules,
        timer_factory=TimerFactory(),
    )
    scheduler.subscribe(statuses.append)

    assert scheduler.start() is False
    assert isinstance(statuses[-1].error, StreamSetupFailure)


def test_stop_releases_everything(pipeline):
    pipeline.scheduler.start()
    pipeline.stream.deliver(make_image(), at(1))

    pipeline.scheduler.stop()

    assert pipeline.scheduler.state is CaptureState.IDLE
    assert pipeline.timers.armed == []
    assert pipeline.stream.close_calls == 1
    assert pipeline.scheduler.buffer.take() is None
    assert states(pipeline.statuses)[-2:] == [CaptureState.STOPPING, CaptureState.IDLE]


def test_stop_is_idempotent(pipeline):
    pipeline.scheduler.stop()
    assert pipeline.statuses == []

    pipeline.scheduler.start()
    pipeline.scheduler.stop()
    emitted = len(pipeline.statuses)
    pipeline.scheduler.stop()

    assert len(pipeline.statuses) == emitted
    assert pipeline.stream.close_calls == 1


def test_restart_after_stop(pipeline):
    pipeline.scheduler.start()
    pipeline.scheduler.stop()
    assert pipeline.scheduler.start() is True
    assert pipeline.stream.open_calls == 2


def test_timer_tick_persists_event(pipeline):
    pipeline.scheduler.start()
    pipeline.stream.deliver(make_image(), at(10))

    pipeline.timers.armed[0].fire()

    events = pipeline.store.fetch_recent()
    assert len(events) == 1
    saved = events[0]
    assert saved.timestamp == at(10)
    assert saved.ocr_text == "recognized text"
    assert saved.application_name == "Editor"
    assert saved.bundle_identifier == "editor"
    assert pipeline.store.resolve_screenshot_path(saved.screenshot_path).is_file()


def test_tick_without_new_frame_does_nothing(pipeline):
    pipeline.scheduler.start()
    pipeline.stream.deliver(make_image(), at(1))
    assert pipeline.scheduler.tick() is not None
    assert pipeline.scheduler.tick() is None
    assert pipeline.store.count() == 1


def test_only_latest_frame_is_processed(pipeline):
    pipeline.scheduler.start()
    for seconds in (1, 2, 3):
        pipeline.stream.deliver(make_image(), at(seconds))

    event = pipeline.scheduler.tick()
    assert event.timestamp == at(3)
    assert pipeline.extractor.calls == 1


def test_tick_when_not_running_is_noop(pipeline):
    pipeline.scheduler.buffer.publish(RawFrame(make_image(), at(1)))
    assert pipeline.scheduler.tick() is None
    assert pipeline.store.count() == 0


def test_excluded_frame_skips_ocr_and_storage(pipeline):
    pipeline.foreground.app = ForegroundApp("Vault", "com.example.vault", "Vault")
    pipeline.scheduler.start()
    pipeline.stream.deliver(make_image(), at(1))

    assert pipeline.scheduler.tick() is None
    assert pipeline.extractor.calls == 0
    assert pipeline.store.count() == 0
    assert list(pipeline.store.screenshots_dir.iterdir()) == []


def test_sampling_with_excluded_window_in_between(pipeline):
    """Ticks at 10s, 20s and 30s with the middle one excluded yield two events."""
    scheduler = pipeline.scheduler
    scheduler.start()
    timer = pipeline.timers.armed[0]
    allowed = ForegroundApp("Editor", "editor", "notes.txt")
    secret = ForegroundApp("Browser", "browser", "Top Secret Plans")

    for seconds, app in ((10, allowed), (20, secret), (30, allowed)):
        pipeline.foreground.app = app
        pipeline.stream.deliver(make_image(), at(seconds))
        timer.fire()

    events = pipeline.store.fetch_recent()
    assert [e.timestamp for e in events] == [at(30), at(10)]
    assert pipeline.extractor.calls == 2


def test_ocr_failure_still_saves_event(pipeline):
    pipeline.extractor.error = RuntimeError("engine crashed")
    pipeline.scheduler.start()
    pipeline.stream.deliver(make_image(), at(1))

    event = pipeline.scheduler.tick()

    assert event is not None
    assert event.ocr_text is None
    assert pipeline.store.resolve_screenshot_path(event.screenshot_path).is_file()


def test_empty_ocr_result_stored_as_none(pipeline):
    pipeline.extractor.text = ""
    pipeline.scheduler.start()
    pipeline.stream.deliver(make_image(), at(1))

    assert pipeline.scheduler.tick().ocr_text is None


class UnwritableImage:
    def save(self, fp, format=None):
        raise OSError("read-only file system")


def test_screenshot_failure_still_saves_event(pipeline):
    pipeline.scheduler.start()
    pipeline.stream.deliver(UnwritableImage(), at(1))

    event = pipeline.scheduler.tick()

    assert event.screenshot_path is None
    assert event.ocr_text == "recognized text"
    assert pipeline.store.count() == 1


def test_foreground_failure_records_unknown_app(pipeline):
    class BrokenForeground:
        def current_foreground(self):
            raise OSError("xdotool missing")

    pipeline.scheduler.foreground = BrokenForeground()
    pipeline.scheduler.start()
    pipeline.stream.deliver(make_image(), at(1))

    event = pipeline.scheduler.tick()
    assert event.application_name is None
    assert event.bundle_identifier is None


def test_rules_failure_drops_frame(pipeline):
    def broken_rules():
        raise ValueError("bad config")

    pipeline.scheduler.rules_provider = broken_rules
    pipeline.scheduler.start()
    pipeline.stream.deliver(make_image(), at(1))

    assert pipeline.scheduler.tick() is None
    assert pipeline.extractor.calls == 0
    assert pipeline.store.count() == 0


def test_persistence_failure_is_reported_and_capture_continues(pipeline, monkeypatch):
    real_save = pipeline.store.save
    failures = [PersistenceError("database is locked")]

    def flaky_save(event):
        if failures:
            raise failures.pop()
        real_save(event)

    monkeypatch.setattr(pipeline.store, "save", flaky_save)
    pipeline.scheduler.start()

    pipeline.stream.deliver(make_image(), at(1))
    assert pipeline.scheduler.tick() is None
    assert isinstance(pipeline.statuses[-1].error, PersistenceError)
    assert pipeline.scheduler.state is CaptureState.RUNNING
    assert list(pipeline.store.screenshots_dir.glob("*.png")) == []

    pipeline.stream.deliver(make_image(), at(2))
    assert pipeline.scheduler.tick() is not None
    assert pipeline.store.count() == 1


def test_set_interval_swaps_timer_while_running(pipeline):
    pipeline.scheduler.start()
    old_timer = pipeline.timers.armed[0]

    assert pipeline.scheduler.set_interval(30) == 30

    assert old_timer.cancelled
    assert pipeline.timers.armed == [pipeline.timers.timers[-1]]
    assert pipeline.timers.armed[0].interval == 30
    assert pipeline.statuses[-1].interval_seconds == 30


def test_stale_timer_does_not_tick(pipeline):
    pipeline.scheduler.start()
    old_timer = pipeline.timers.armed[0]
    pipeline.scheduler.set_interval(30)
    pipeline.stream.deliver(make_image(), at(1))

    old_timer.fire()
    assert pipeline.store.count() == 0

    pipeline.timers.armed[0].fire()
    assert pipeline.store.count() == 1


def test_set_interval_while_idle_applies_on_next_start(pipeline):
    pipeline.scheduler.set_interval(45)
    assert pipeline.timers.timers == []

    pipeline.scheduler.start()
    assert pipeline.timers.armed[0].interval == 45


@pytest.mark.parametrize("requested, applied", [(0, 1), (-5, 1), (0.5, 1), (301, 300), (10_000, 300), (42, 42)])
def test_set_interval_is_clamped(pipeline, requested, applied):
    assert pipeline.scheduler.set_interval(requested) == applied
    assert pipeline.scheduler.interval_seconds == applied


def test_frequency_adjustments(pipeline):
    scheduler = pipeline.scheduler
    assert scheduler.increase_frequency() == 5
    assert scheduler.decrease_frequency() == 10
    assert scheduler.decrease_frequency() == 20

    scheduler.set_interval(1)
    assert scheduler.increase_frequency() == 1
    scheduler.set_interval(200)
    assert scheduler.decrease_frequency() == 300


def test_stream_fault_goes_idle_through_faulted(pipeline):
    pipeline.scheduler.start()
    pipeline.stream.deliver(make_image(), at(1))

    pipeline.stream.fail(RuntimeError("display disconnected"))

    assert pipeline.scheduler.state is CaptureState.IDLE
    assert states(pipeline.statuses)[-2:] == [CaptureState.FAULTED, CaptureState.IDLE]
    assert isinstance(pipeline.statuses[-1].error, StreamFaulted)
    assert pipeline.timers.armed == []
    assert pipeline.stream.close_calls == 1
    assert pipeline.scheduler.buffer.take() is None


def test_stream_error_after_stop_is_ignored(pipeline):
    pipeline.scheduler.start()
    pipeline.scheduler.stop()
    emitted = len(pipeline.statuses)

    pipeline.stream.fail(RuntimeError("late error"))
    assert len(pipeline.statuses) == emitted


def test_unsubscribe(pipeline):
    seen = []
    unsubscribe = pipeline.scheduler.subscribe(seen.append)
    unsubscribe()
    pipeline.scheduler.start()
    assert seen == []


def test_failing_listener_does_not_break_lifecycle(pipeline):
    def bad_listener(status):
        raise RuntimeError("listener bug")

    pipeline.scheduler.subscribe(bad_listener)
    assert pipeline.scheduler.start() is True


def test_stop_waits_for_in_flight_tick(pipeline):
    entered = threading.Event()
    release = threading.Event()

    class SlowExtractor:
        def extract(self, image):
            entered.set()
            release.wait(5)
            return "slow text"

    pipeline.scheduler.extractor = SlowExtractor()
    pipeline.scheduler.start()
    pipeline.stream.deliver(make_image(), at(1))

    ticker = threading.Thread(target=pipeline.scheduler.tick)
    ticker.start()
    assert entered.wait(5)

    stopper = threading.Thread(target=pipeline.scheduler.stop)
    stopper.start()
    stopper.join(0.2)
    assert stopper.is_alive()

    release.set()
    ticker.join(5)
    stopper.join(5)

    assert pipeline.scheduler.state is CaptureState.IDLE
    assert [e.ocr_text for e in pipeline.store.fetch_recent()] == ["slow text"]


def test_periodic_task_fires_until_cancelled():
    calls = []
    fired = threading.Event()

    def callback():
        calls.append(time.monotonic())
        if len(calls) >= 3:
            fired.set()

    task = PeriodicTask(0.01, callback)
    task.start()
    assert fired.wait(2)
    task.cancel()
    assert task.cancelled

    time.sleep(0.05)
    count = len(calls)
    time.sleep(0.05)
    assert len(calls) == count


def test_periodic_task_survives_callback_errors():
    calls = []
    fired = threading.Event()

    def callback():
        calls.append(1)
        if len(calls) >= 2:
            fired.set()
        raise RuntimeError("tick failed")

    task = PeriodicTask(0.01, callback)
    task.start()
    assert fired.wait(2)
    task.cancel()


def test_rule_edits_apply_to_next_tick(store, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump({"privacy": {"excluded_bundle_ids": ["keepassxc"]}}))
    config_manager = ConfigManager(config_path)
    stream = FakeStream()
    timers = TimerFactory()
    scheduler = CaptureScheduler(
        stream, FakePermission(), FakeForeground(ForegroundApp("Vault", "vault", "Vault")),
        FakeExtractor(), store, config_manager.rule_set, timer_factory=timers,
    )
    scheduler.start()

    stream.deliver(make_image(), at(10))
    timers.armed[0].fire()
    assert store.count() == 1

    config_path.write_text(yaml.dump({"privacy": {"excluded_bundle_ids": ["keepassxc", "vault"]}}))
    stream.deliver(make_image(), at(20))
    timers.armed[0].fire()

    assert store.count() == 1
