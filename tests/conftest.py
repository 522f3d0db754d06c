"""
Shared fakes for the tracker tests.

No test touches termux-* binaries or real sensors: positions, battery and
motion samples come from the in-process fakes below, and time comes from a
ManualClock so the quality filter's staleness window is deterministic.
"""

import threading
import time

import pytest

from trip_tracker.models import PositionFix
from trip_tracker.sources.base import (BatterySource, BatteryStatus,
                                       MotionSensorSource, PositionSource,
                                       Subscription)


BASE_TIME_MS = 1_700_000_000_000


class ManualClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start_ms=BASE_TIME_MS):
        self.value = start_ms
        self.lock = threading.Lock()

    def __call__(self):
        with self.lock:
            return self.value

    def set(self, value_ms):
        with self.lock:
            self.value = value_ms

    def advance(self, delta_ms):
        with self.lock:
            self.value += delta_ms


class FakePositionSource(PositionSource):
    """
    Delivers fixes synchronously on the calling thread via emit().

    subscribe_errors is a list of exceptions raised by the next subscribe()
    calls, in order; check_error is raised from check_available().
    """

    def __init__(self):
        self.subscriptions = []       # ModeSettings of every subscribe() call
        self.live = 0
        self.max_live = 0
        self.closed = 0
        self.subscribe_errors = []
        self.check_error = None
        self.last_known = None
        self._on_fix = None
        self._on_error = None
        self.lock = threading.Lock()

    def check_available(self):
        if self.check_error is not None:
            raise self.check_error

    def subscribe(self, settings, on_fix, on_error):
        if self.subscribe_errors:
            raise self.subscribe_errors.pop(0)
        with self.lock:
            self.subscriptions.append(settings)
            self.live += 1
            self.max_live = max(self.max_live, self.live)
            self._on_fix = on_fix
            self._on_error = on_error

        def teardown():
            with self.lock:
                self.live -= 1
                self.closed += 1
                self._on_fix = None
                self._on_error = None

        return Subscription(teardown, description=f"fake {settings.mode.name}")

    @property
    def current_mode(self):
        return self.subscriptions[-1].mode if self.subscriptions else None

    def emit(self, fix):
        with self.lock:
            on_fix = self._on_fix
        if on_fix is not None:
            on_fix(fix)
        return on_fix is not None

    def fail(self, error):
        with self.lock:
            on_error = self._on_error
        if on_error is not None:
            on_error(error)
        return on_error is not None

    def get_last_known(self):
        return self.last_known


class FakeBattery(BatterySource):

    def __init__(self, percentage=100.0, power_save=False):
        self.percentage = percentage
        self.power_save = power_save

    def read(self):
        return BatteryStatus(percentage=self.percentage, power_save=self.power_save)


class FakeMotionSensors(MotionSensorSource):

    def __init__(self, error=None):
        self.error = error
        self.on_sample = None
        self.closed = False

    def subscribe(self, on_sample):
        if self.error is not None:
            raise self.error
        self.on_sample = on_sample

        def teardown():
            self.closed = True
            self.on_sample = None

        return Subscription(teardown, description='fake sensors')

    def push(self, channel, x, y, z):
        if self.on_sample is not None:
            self.on_sample(channel, x, y, z)


def wait_until(predicate, timeout=2.0, interval=0.01):
    """Poll predicate until true; False on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def fix_at(lat, lon, timestamp, speed=None, accuracy=5.0, **kwargs):
    return PositionFix(latitude=lat, longitude=lon, timestamp=timestamp,
                       speed=speed, accuracy=accuracy, **kwargs)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def source():
    return FakePositionSource()


@pytest.fixture
def battery():
    return FakeBattery()


@pytest.fixture
def sensors():
    return FakeMotionSensors()


@pytest.fixture
def make_fix():
    return fix_at


@pytest.fixture
def wait():
    return wait_until
