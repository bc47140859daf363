import pytest

from posefusion.control.scheduler import AdaptiveScheduler, SchedulerSettings


def _feed_window(sched: AdaptiveScheduler, start: float, fps: float, count: int) -> list[bool]:
    return [sched.record_frame(start + i / fps) for i in range(count)]


def test_low_fps_window_reduces_scale_once():
    sched = AdaptiveScheduler()
    changes = _feed_window(sched, 0.0, 15.0, 16)
    assert changes.count(True) == 1
    assert sched.state.fps == pytest.approx(15.0)
    assert sched.scale == pytest.approx(0.9)


def test_high_fps_window_increases_scale_when_below_max():
    sched = AdaptiveScheduler(SchedulerSettings(initial_scale=0.7))
    changes = _feed_window(sched, 0.0, 50.0, 51)
    assert changes.count(True) == 1
    assert sched.scale == pytest.approx(0.8)


def test_fps_between_thresholds_keeps_scale():
    sched = AdaptiveScheduler(SchedulerSettings(initial_scale=0.8))
    changes = _feed_window(sched, 0.0, 25.0, 26)
    assert not any(changes)
    assert sched.scale == pytest.approx(0.8)


def test_scale_stays_within_bounds():
    sched = AdaptiveScheduler()
    t = 0.0
    for _ in range(20):
        _feed_window(sched, t, 5.0, 6)
        t += 1.0 + 1e-9
        assert 0.5 <= sched.scale <= 1.0
    assert sched.scale == pytest.approx(0.5)

    for _ in range(20):
        _feed_window(sched, t, 100.0, 101)
        t += 1.0 + 1e-9
        assert 0.5 <= sched.scale <= 1.0
    assert sched.scale == pytest.approx(1.0)


def test_processing_size_follows_scale():
    sched = AdaptiveScheduler(SchedulerSettings(initial_scale=0.5))
    assert sched.processing_size(640, 480) == (320, 240)


def test_backlog_over_cap_enters_recovery_and_slows_loop():
    sched = AdaptiveScheduler()
    for i in range(3):
        sched.record_miss(float(i))
        assert not sched.in_recovery
    sched.record_miss(3.0)
    assert sched.in_recovery
    assert sched.next_delay() == pytest.approx(2.0 * sched.settings.frame_interval_s)


def test_recovery_clears_after_enough_hits():
    sched = AdaptiveScheduler()
    for i in range(4):
        sched.record_miss(0.0)
    assert sched.in_recovery
    for _ in range(5):
        sched.record_hit(0.1)
    assert not sched.in_recovery
    assert sched.next_delay() == pytest.approx(sched.settings.frame_interval_s)


def test_recovery_clears_after_duration():
    sched = AdaptiveScheduler()
    for _ in range(4):
        sched.record_miss(0.0)
    sched.record_frame(0.5)
    assert sched.in_recovery
    sched.record_frame(1.0)
    assert not sched.in_recovery


def test_scale_frozen_during_recovery():
    sched = AdaptiveScheduler()
    for _ in range(4):
        sched.record_miss(0.0)
    sched.state.recovery_started = 100.0
    changes = _feed_window(sched, 0.0, 10.0, 11)
    assert not any(changes)
    assert sched.scale == pytest.approx(1.0)


def test_settings_validation():
    with pytest.raises(ValueError, match="low_fps"):
        AdaptiveScheduler(SchedulerSettings(low_fps=40.0, high_fps=30.0))
    with pytest.raises(ValueError, match="scale bounds"):
        AdaptiveScheduler(SchedulerSettings(min_scale=0.0))
