"""
Abstract collaborator interfaces consumed by the tracking core.

All sources hand back an explicit Subscription handle. Closing it tears down
the upstream registration before close() returns, so a stopped session never
leaves a live platform listener behind.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
import threading
from typing import Optional

logger = logging.getLogger(__name__)

ACCELERATION = 'linear_acceleration'
ROTATION = 'rotation_rate'


class Subscription:
    """
    Cancellable handle for an upstream registration.

    teardown runs exactly once, synchronously, on the first close().
    """

    def __init__(self, teardown, description=''):
        self._teardown = teardown
        self._lock = threading.Lock()
        self._closed = False
        self.description = description

    @property
    def closed(self):
        return self._closed

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._teardown()

    cancel = close

    def __repr__(self):
        state = 'closed' if self._closed else 'open'
        return f"<Subscription {self.description} ({state})>"


class PositionSource(ABC):
    """
    Platform position provider.

    subscribe() delivers raw fixes through on_fix(PositionFix) and failures
    through on_error(exception). Errors must be typed: ProviderUnavailable for
    transient outages, SecurityRevoked when permission disappears.
    """

    def check_available(self):
        """Raise PermissionDenied or LocationUnavailable if a session cannot start."""

    @abstractmethod
    def subscribe(self, settings, on_fix, on_error):
        """
        Start delivering fixes for the given ModeSettings.

        Returns:
            Subscription: closing it stops delivery
        """
        pass

    def get_last_known(self):
        """Most recent fix the platform has cached, or None."""
        return None


class MotionSensorSource(ABC):
    """Two-channel motion sensor stream (linear acceleration + rotation rate)."""

    @abstractmethod
    def subscribe(self, on_sample):
        """
        Start streaming samples as on_sample(channel, x, y, z).

        channel is ACCELERATION or ROTATION.

        Returns:
            Subscription
        """
        pass


@dataclass(frozen=True)
class BatteryStatus:
    percentage: float
    power_save: bool = False
    charging: bool = False
    temperature: Optional[float] = None


class BatterySource(ABC):

    # True when read() waits on a subprocess or other slow I/O
    blocking = False

    @abstractmethod
    def read(self):
        """
        Returns:
            BatteryStatus, or None when the level can't be read
        """
        pass


class StaticBatterySource(BatterySource):
    """Fixed battery level; for replays and desktops without a battery."""

    def __init__(self, percentage=100.0, power_save=False):
        self.status = BatteryStatus(percentage=percentage, power_save=power_save)

    def read(self):
        return self.status


class BatteryMonitor(BatterySource):
    """
    Refreshes a slow battery source on its own thread.

    read() only returns the cached status, so callers on the acquisition
    worker never wait on the underlying source.
    """

    def __init__(self, source, interval_s=60.0):
        self.source = source
        self.interval_s = interval_s
        self.status = None
        self.refreshes = 0
        self.stop_event = threading.Event()
        self._thread = None

    def start(self):
        if self._thread is not None:
            return
        self.stop_event.clear()
        self.refresh()
        self._thread = threading.Thread(target=self._run, daemon=True, name='battery-monitor')
        self._thread.start()

    def refresh(self):
        status = self.source.read()
        self.refreshes += 1
        if status is not None:
            self.status = status
        return status

    def _run(self):
        while not self.stop_event.wait(self.interval_s):
            try:
                self.refresh()
            except Exception:
                logger.exception("Battery refresh failed")

    def stop(self):
        self.stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2)

    def read(self):
        return self.status
