"""
Tracker configuration.

Each component takes its own frozen config; TrackerConfig bundles them so a
single JSON file can tune a whole session:

    {
        "filter": {"max_accuracy_m": 35.0},
        "selector": {"base_interval_ms": 2000},
        "classifier": {"driver_threshold": 0.75},
        "session": {"storage_dir": "trips"}
    }

The classifier and filter constants are field-tuned heuristics, so all of them
are exposed here rather than baked into the algorithms. The acquisition
interval lives only in the selector section; the filter's time floor is
derived from it.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import orjson


@dataclass(frozen=True)
class FilterConfig:
    max_accuracy_m: float = 50.0
    min_distance_m: float = 10.0
    max_future_ms: int = 60_000
    max_age_ms: int = 3_600_000
    accuracy_improvement_m: float = 20.0
    accuracy_degradation_factor: float = 1.5
    max_plausible_speed_kmh: float = 300.0
    speed_tolerance_kmh: float = 50.0
    history_size: int = 10


@dataclass(frozen=True)
class SelectorConfig:
    battery_passive_below: float = 15.0
    battery_low_power_below: float = 30.0
    battery_balanced_below: float = 60.0
    speed_high_accuracy_below_kmh: float = 5.0
    speed_balanced_below_kmh: float = 30.0
    trip_start_window_ms: int = 120_000
    long_trip_after_ms: int = 3_600_000
    base_interval_ms: int = 5000
    base_min_distance_m: float = 10.0
    # HIGH_ACCURACY, BALANCED, LOW_POWER, PASSIVE
    high_accuracy_multiplier: int = 1
    balanced_multiplier: int = 2
    low_power_multiplier: int = 4
    passive_multiplier: int = 8


@dataclass(frozen=True)
class ClassifierConfig:
    window_size: int = 50                  # ~2.5 s at 20 Hz
    min_window_samples: int = 10           # per channel, below this the verdict is UNKNOWN
    interval_s: float = 5.0
    high_stability_threshold: float = 0.8
    screen_minutes_divisor: float = 10.0
    touch_divisor: float = 100.0
    app_launch_divisor: float = 20.0
    accel_variance_divisor: float = 10.0
    gyro_variance_divisor: float = 50.0
    screen_weight: float = 0.5
    touch_weight: float = 0.3
    app_launch_weight: float = 0.2
    high_usage_divisor: float = 50.0
    driver_threshold: float = 0.7
    passenger_threshold: float = 0.6
    score_margin: float = 0.2
    decided_confidence_min: float = 0.5
    decided_confidence_max: float = 0.9
    unknown_confidence_min: float = 0.3
    unknown_confidence_max: float = 0.6
    # reasoning flags
    stable_phone_threshold: float = 0.7
    high_screen_minutes: float = 5.0
    high_touch_count: int = 50
    low_activity_count: int = 5


@dataclass(frozen=True)
class SessionConfig:
    queue_size: int = 100
    snapshot_interval_s: float = 10.0
    drain_timeout_s: float = 2.0
    storage_dir: Optional[str] = None
    sensor_delay_ms: int = 50
    battery_refresh_s: float = 60.0      # for sources whose read() blocks


@dataclass(frozen=True)
class TrackerConfig:
    filter: FilterConfig = field(default_factory=FilterConfig)
    selector: SelectorConfig = field(default_factory=SelectorConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    session: SessionConfig = field(default_factory=SessionConfig)


_SECTIONS = {
    'filter': FilterConfig,
    'selector': SelectorConfig,
    'classifier': ClassifierConfig,
    'session': SessionConfig,
}


def _build_section(cls, values):
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {', '.join(sorted(unknown))}")
    return cls(**values)


def config_from_dict(data: dict) -> TrackerConfig:
    unknown = set(data) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown config sections: {', '.join(sorted(unknown))}")

    sections = {
        name: _build_section(cls, data.get(name) or {})
        for name, cls in _SECTIONS.items()
    }
    return TrackerConfig(**sections)


def load_config(path=None) -> TrackerConfig:
    """Load a TrackerConfig from a JSON file; defaults when path is None."""
    if path is None:
        return TrackerConfig()
    return config_from_dict(orjson.loads(Path(path).read_bytes()))


def replace_section(config: TrackerConfig, section: str, **changes) -> TrackerConfig:
    """Return a copy of config with fields of one section overridden."""
    current = getattr(config, section)
    return dataclasses.replace(config, **{section: dataclasses.replace(current, **changes)})
