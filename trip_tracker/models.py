"""
Core value types for the trip tracking pipeline.

Fixes, snapshots, trip records and verdicts are frozen dataclasses: once a
component hands one to another it can be shared across threads without copying.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


def now_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PositionFix:
    """Single GPS/network position report from the platform source."""
    latitude: float                  # degrees, WGS84
    longitude: float                 # degrees, WGS84
    timestamp: int                   # epoch ms
    speed: Optional[float] = None    # m/s, None if not reported
    accuracy: Optional[float] = None # horizontal radius in meters, None if not reported
    altitude: Optional[float] = None
    bearing: Optional[float] = None
    provider: str = 'gps'

    @property
    def has_accuracy(self) -> bool:
        return self.accuracy is not None and math.isfinite(self.accuracy)

    @property
    def has_speed(self) -> bool:
        return self.speed is not None and math.isfinite(self.speed)

    def is_moving(self, threshold_mps=0.5) -> bool:
        # ~1 mph filters out GPS drift
        return self.has_speed and self.speed > threshold_mps

    def quality_score(self) -> int:
        """
        Confidence score 0-100: half from reported accuracy, half from speed plausibility.
        """
        return self.accuracy_score() + self.speed_score()

    def accuracy_score(self) -> int:
        if not self.has_accuracy:
            return 0
        if self.accuracy <= 10:
            return 50
        if self.accuracy <= 25:
            return 40
        if self.accuracy <= 50:
            return 30
        if self.accuracy <= 100:
            return 20
        return 0

    def speed_score(self) -> int:
        speed = self.speed if self.has_speed else 0.0
        if speed < 0:
            return 0
        if speed <= 200:
            return 50
        return 25

    def to_dict(self) -> dict:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'timestamp': self.timestamp,
            'speed': self.speed,
            'accuracy': self.accuracy,
            'altitude': self.altitude,
            'bearing': self.bearing,
            'provider': self.provider,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PositionFix':
        return cls(
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            timestamp=int(data['timestamp']),
            speed=data.get('speed'),
            accuracy=data.get('accuracy'),
            altitude=data.get('altitude'),
            bearing=data.get('bearing'),
            provider=data.get('provider') or 'gps',
        )


class AcquisitionMode(Enum):
    """
    Accuracy/power trade-off for the position source.

    value = (priority, battery_impact). Higher priority = more precise and more
    expensive. Ordering is plain data; see accuracy_selector.most_conservative().
    """
    HIGH_ACCURACY = (100, 5.0)   # GPS only
    BALANCED = (75, 3.0)         # GPS + network
    LOW_POWER = (50, 1.5)        # network primarily
    PASSIVE = (25, 0.5)          # piggyback on other apps' fixes

    @property
    def priority(self) -> int:
        return self.value[0]

    @property
    def battery_impact(self) -> float:
        return self.value[1]

    @property
    def label(self) -> str:
        return {
            AcquisitionMode.HIGH_ACCURACY: 'High accuracy',
            AcquisitionMode.BALANCED: 'Balanced',
            AcquisitionMode.LOW_POWER: 'Battery saving',
            AcquisitionMode.PASSIVE: 'Passive',
        }[self]


@dataclass(frozen=True)
class ModeSettings:
    """Concrete subscription parameters derived from an AcquisitionMode."""
    mode: AcquisitionMode
    interval_ms: int
    min_distance_m: float


@dataclass(frozen=True)
class AcceptedFix:
    """A fix that passed the quality filter, as emitted downstream."""
    fix: PositionFix
    mode: AcquisitionMode
    quality_score: int
    accuracy_score: int
    speed_score: int

    @classmethod
    def wrap(cls, fix: PositionFix, mode: AcquisitionMode) -> 'AcceptedFix':
        accuracy_score = fix.accuracy_score()
        speed_score = fix.speed_score()
        return cls(fix, mode, accuracy_score + speed_score, accuracy_score, speed_score)


class TripStatus(Enum):
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'


@dataclass(frozen=True)
class TripSnapshot:
    duration_ms: int
    distance_m: float
    avg_speed: float     # m/s over positive speed samples
    max_speed: float     # m/s
    fix_count: int


@dataclass(frozen=True)
class TripRecord:
    """Finalized trip. Never mutated after TripAccumulator.finalize()."""
    id: str
    start_time: int
    end_time: int
    distance_m: float
    avg_speed: float
    max_speed: float
    fix_count: int
    status: TripStatus = TripStatus.COMPLETED
    fixes: Tuple[PositionFix, ...] = ()

    @property
    def duration_ms(self) -> int:
        return self.end_time - self.start_time

    @property
    def is_active(self) -> bool:
        return self.status == TripStatus.ACTIVE

    @property
    def is_completed(self) -> bool:
        return self.status == TripStatus.COMPLETED

    @property
    def has_fixes(self) -> bool:
        return len(self.fixes) > 0

    @property
    def start_fix(self) -> Optional[PositionFix]:
        return self.fixes[0] if self.fixes else None

    @property
    def end_fix(self) -> Optional[PositionFix]:
        return self.fixes[-1] if self.fixes else None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'distance': self.distance_m,
            'average_speed': self.avg_speed,
            'max_speed': self.max_speed,
            'fix_count': self.fix_count,
            'status': self.status.value,
            'fixes': [f.to_dict() for f in self.fixes],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'TripRecord':
        return cls(
            id=data['id'],
            start_time=int(data['start_time']),
            end_time=int(data['end_time']),
            distance_m=float(data['distance']),
            avg_speed=float(data['average_speed']),
            max_speed=float(data['max_speed']),
            fix_count=int(data['fix_count']),
            status=TripStatus(data.get('status', 'COMPLETED')),
            fixes=tuple(PositionFix.from_dict(f) for f in data.get('fixes', [])),
        )


def new_trip_id() -> str:
    return str(uuid.uuid4())


class UserRole(Enum):
    DRIVER = 'DRIVER'
    PASSENGER = 'PASSENGER'
    UNKNOWN = 'UNKNOWN'

    @property
    def is_driving(self) -> bool:
        return self is UserRole.DRIVER

    @property
    def is_passenger(self) -> bool:
        return self is UserRole.PASSENGER

    @property
    def is_uncertain(self) -> bool:
        return self is UserRole.UNKNOWN


@dataclass(frozen=True)
class UsageSnapshot:
    """Externally maintained phone usage counters, captured at classification time."""
    screen_on_minutes: float = 0.0
    touch_count: int = 0
    app_launches: int = 0


@dataclass(frozen=True)
class SignalSummary:
    """Scalars derived from a SignalWindow at one instant."""
    accel_variance: float = 0.0
    accel_stability: float = 1.0
    gyro_variance: float = 0.0
    gyro_stability: float = 1.0
    accel_samples: int = 0
    gyro_samples: int = 0


@dataclass(frozen=True)
class RoleScores:
    driver: float
    passenger: float


@dataclass(frozen=True)
class RoleVerdict:
    role: UserRole
    confidence: float
    reasoning: str
    scores: Optional[RoleScores] = None
    timestamp: int = field(default_factory=now_ms)


class SessionEventKind(Enum):
    STARTED = 'started'
    STOPPED = 'stopped'
    ERROR = 'error'
    MODE_CHANGED = 'mode_changed'


@dataclass(frozen=True)
class SessionEvent:
    kind: SessionEventKind
    timestamp: int
    mode: Optional[AcquisitionMode] = None
    error: Optional[BaseException] = None
    trip_id: Optional[str] = None
