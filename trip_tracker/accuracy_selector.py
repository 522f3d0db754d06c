"""
Adaptive acquisition mode selection.

Three independent rules each propose a mode; the most conservative proposal
(lowest priority) wins, so battery preservation always takes precedence:

    battery:  <15% PASSIVE, <30% LOW_POWER, <60% BALANCED, else HIGH_ACCURACY
    speed:    <5 km/h HIGH_ACCURACY, <30 km/h BALANCED, else LOW_POWER
    duration: <2 min HIGH_ACCURACY, >1 h LOW_POWER, else BALANCED
"""

from __future__ import annotations

from typing import Iterable, Optional

from .config import SelectorConfig
from .models import AcquisitionMode, ModeSettings

# Most precise first
MODES_BY_PRIORITY = sorted(AcquisitionMode, key=lambda m: m.priority, reverse=True)


def most_conservative(candidates: Iterable[AcquisitionMode]) -> AcquisitionMode:
    """Pick the candidate with the lowest priority rank."""
    return min(candidates, key=lambda m: m.priority)


def downgrade(mode: AcquisitionMode) -> AcquisitionMode:
    """Next less precise mode; PASSIVE stays PASSIVE."""
    index = MODES_BY_PRIORITY.index(mode)
    return MODES_BY_PRIORITY[min(index + 1, len(MODES_BY_PRIORITY) - 1)]


class AccuracySelector:

    def __init__(self, config: Optional[SelectorConfig] = None):
        self.config = config or SelectorConfig()

    def from_battery(self, battery_percent):
        cfg = self.config
        if battery_percent < cfg.battery_passive_below:
            return AcquisitionMode.PASSIVE
        if battery_percent < cfg.battery_low_power_below:
            return AcquisitionMode.LOW_POWER
        if battery_percent < cfg.battery_balanced_below:
            return AcquisitionMode.BALANCED
        return AcquisitionMode.HIGH_ACCURACY

    def from_speed(self, speed_kmh):
        cfg = self.config
        if speed_kmh < cfg.speed_high_accuracy_below_kmh:
            return AcquisitionMode.HIGH_ACCURACY   # stopped / traffic
        if speed_kmh < cfg.speed_balanced_below_kmh:
            return AcquisitionMode.BALANCED        # city
        return AcquisitionMode.LOW_POWER           # highway

    def from_trip_duration(self, duration_ms):
        cfg = self.config
        if duration_ms < cfg.trip_start_window_ms:
            return AcquisitionMode.HIGH_ACCURACY
        if duration_ms > cfg.long_trip_after_ms:
            return AcquisitionMode.LOW_POWER
        return AcquisitionMode.BALANCED

    def candidates(self, battery_percent, speed_kmh, trip_duration_ms):
        return [
            self.from_battery(battery_percent),
            self.from_speed(speed_kmh),
            self.from_trip_duration(trip_duration_ms),
        ]

    def select_mode(self, battery_percent, speed_kmh, trip_duration_ms) -> AcquisitionMode:
        return most_conservative(self.candidates(battery_percent, speed_kmh, trip_duration_ms))

    def settings_for(self, mode: AcquisitionMode) -> ModeSettings:
        """Update interval and minimum distance for mode, scaled from the base values."""
        cfg = self.config
        multiplier = {
            AcquisitionMode.HIGH_ACCURACY: cfg.high_accuracy_multiplier,
            AcquisitionMode.BALANCED: cfg.balanced_multiplier,
            AcquisitionMode.LOW_POWER: cfg.low_power_multiplier,
            AcquisitionMode.PASSIVE: cfg.passive_multiplier,
        }[mode]
        return ModeSettings(
            mode=mode,
            interval_ms=cfg.base_interval_ms * multiplier,
            min_distance_m=cfg.base_min_distance_m * multiplier,
        )
