import pytest

from trip_tracker.accuracy_selector import (AccuracySelector, downgrade,
                                            most_conservative)
from trip_tracker.config import SelectorConfig
from trip_tracker.models import AcquisitionMode

HIGH = AcquisitionMode.HIGH_ACCURACY
BALANCED = AcquisitionMode.BALANCED
LOW = AcquisitionMode.LOW_POWER
PASSIVE = AcquisitionMode.PASSIVE

MINUTE_MS = 60_000


@pytest.fixture
def selector():
    return AccuracySelector()


@pytest.mark.parametrize("battery, expected", [
    (100, HIGH), (60, HIGH), (59.9, BALANCED), (30, BALANCED),
    (29, LOW), (15, LOW), (14.9, PASSIVE), (0, PASSIVE),
])
def test_battery_rule(selector, battery, expected):
    assert selector.from_battery(battery) is expected


@pytest.mark.parametrize("speed_kmh, expected", [
    (0, HIGH), (4.9, HIGH), (5, BALANCED), (29.9, BALANCED), (30, LOW), (120, LOW),
])
def test_speed_rule(selector, speed_kmh, expected):
    assert selector.from_speed(speed_kmh) is expected


@pytest.mark.parametrize("duration_ms, expected", [
    (0, HIGH), (119_999, HIGH), (120_000, BALANCED), (3_600_000, BALANCED), (3_600_001, LOW),
])
def test_trip_phase_rule(selector, duration_ms, expected):
    assert selector.from_trip_duration(duration_ms) is expected


def test_most_conservative_candidate_wins(selector):
    assert selector.select_mode(100, 0, 0) is HIGH
    assert selector.select_mode(100, 50, 0) is LOW
    assert selector.select_mode(45, 0, 0) is BALANCED
    assert selector.select_mode(100, 10, 2 * 3_600_000) is LOW


def test_scenario_low_battery_on_highway(selector):
    # Candidates PASSIVE, LOW_POWER, BALANCED
    assert selector.candidates(10, 50, 10 * MINUTE_MS) == [PASSIVE, LOW, BALANCED]
    assert selector.select_mode(10, 50, 10 * MINUTE_MS) is PASSIVE


@pytest.mark.parametrize("speed_kmh", [0, 10, 45, 130])
@pytest.mark.parametrize("duration_ms", [0, 30 * MINUTE_MS, 90 * MINUTE_MS])
def test_monotonic_in_battery(selector, speed_kmh, duration_ms):
    previous = None
    for battery in range(100, -1, -1):
        mode = selector.select_mode(battery, speed_kmh, duration_ms)
        if previous is not None:
            assert mode.priority <= previous.priority
        previous = mode


def test_mode_ordering_is_data():
    assert [m.priority for m in (HIGH, BALANCED, LOW, PASSIVE)] == [100, 75, 50, 25]
    assert [m.battery_impact for m in (HIGH, BALANCED, LOW, PASSIVE)] == [5.0, 3.0, 1.5, 0.5]
    assert most_conservative([BALANCED, HIGH, LOW]) is LOW


def test_downgrade_steps_one_level():
    assert downgrade(HIGH) is BALANCED
    assert downgrade(BALANCED) is LOW
    assert downgrade(LOW) is PASSIVE
    assert downgrade(PASSIVE) is PASSIVE


def test_settings_scale_from_base(selector):
    expected = {HIGH: 1, BALANCED: 2, LOW: 4, PASSIVE: 8}
    for mode, multiplier in expected.items():
        settings = selector.settings_for(mode)
        assert settings.mode is mode
        assert settings.interval_ms == 5000 * multiplier
        assert settings.min_distance_m == 10.0 * multiplier


def test_custom_thresholds():
    selector = AccuracySelector(SelectorConfig(battery_balanced_below=80.0, base_interval_ms=1000))
    assert selector.from_battery(70) is BALANCED
    assert selector.settings_for(LOW).interval_ms == 4000
