"""
Rolling motion-sensor window for role classification.

Keeps the last N (x, y, z) samples per channel. Variance is the mean of the
per-axis population variances; stability = 1 / (1 + variance).
"""

import threading
from collections import deque

import numpy as np

from .models import SignalSummary
from .sources.base import ACCELERATION, ROTATION


def window_variance(samples):
    """Average per-axis variance of a sequence of (x, y, z) samples. 0.0 with < 2 samples."""
    if len(samples) < 2:
        return 0.0
    data = np.asarray(samples, dtype=float)
    return float(np.var(data, axis=0).mean())


def stability(variance):
    return float(np.clip(1.0 / (1.0 + variance), 0.0, 1.0))


class SignalWindow:
    """
    Ring buffers for the linear-acceleration and rotation-rate channels.

    Only the sensor ingest path writes; summary() takes a copy under the lock
    so readers never hold it while computing.
    """

    def __init__(self, size=50):
        self.size = size
        self.accel = deque(maxlen=size)
        self.gyro = deque(maxlen=size)
        self.lock = threading.Lock()

    def add_sample(self, channel, x, y, z):
        if channel == ACCELERATION:
            self.add_acceleration(x, y, z)
        elif channel == ROTATION:
            self.add_rotation(x, y, z)
        else:
            raise ValueError(f"Unknown sensor channel: {channel}")

    def add_acceleration(self, x, y, z):
        with self.lock:
            self.accel.append((x, y, z))

    def add_rotation(self, x, y, z):
        with self.lock:
            self.gyro.append((x, y, z))

    def clear(self):
        with self.lock:
            self.accel.clear()
            self.gyro.clear()

    def __len__(self):
        with self.lock:
            return min(len(self.accel), len(self.gyro))

    def summary(self):
        with self.lock:
            accel = list(self.accel)
            gyro = list(self.gyro)

        accel_variance = window_variance(accel)
        gyro_variance = window_variance(gyro)
        return SignalSummary(
            accel_variance=accel_variance,
            accel_stability=stability(accel_variance),
            gyro_variance=gyro_variance,
            gyro_stability=stability(gyro_variance),
            accel_samples=len(accel),
            gyro_samples=len(gyro),
        )
