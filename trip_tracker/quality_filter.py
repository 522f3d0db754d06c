"""
Position fix quality filter.

Rejects noisy, duplicate and implausible fixes before they reach the trip
accumulator. Checks run in order and the first failure short-circuits:

1. Validity     - accuracy reported and <= ceiling, speed >= 0, coordinates in
                  range, timestamp neither too far in the future nor stale
2. Distance     - moved at least min_distance_m since the last accepted fix
3. Time         - at least half the base acquisition interval elapsed
4. Accuracy     - big improvement (>= 20 m) or no worse than 1.5x previous
5. Speed        - implied speed plausible and consistent with reported speed

Checks 2-5 only apply once a fix has been accepted in this session.

Usage:
    qf = QualityFilter(FilterConfig(), base_interval_ms=selector_config.base_interval_ms)
    state = FilterState(history_size=10)
    decision = qf.evaluate(fix, state)
    if decision.accepted:
        qf.commit(fix, state)
"""

from __future__ import annotations

import logging
import math
from collections import Counter, deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .config import FilterConfig, SelectorConfig
from .errors import InvalidFix
from .geo import fix_distance, mps_to_kmh
from .models import PositionFix, now_ms

logger = logging.getLogger(__name__)


class RejectReason(Enum):
    NO_ACCURACY = 'no_accuracy'
    LOW_ACCURACY = 'low_accuracy'
    NEGATIVE_SPEED = 'negative_speed'
    BAD_COORDINATES = 'bad_coordinates'
    FUTURE_TIMESTAMP = 'future_timestamp'
    STALE_TIMESTAMP = 'stale_timestamp'
    TOO_CLOSE = 'too_close'
    TOO_SOON = 'too_soon'
    ACCURACY_DEGRADED = 'accuracy_degraded'
    IMPLAUSIBLE_SPEED = 'implausible_speed'
    SPEED_MISMATCH = 'speed_mismatch'


@dataclass(frozen=True)
class FilterDecision:
    accepted: bool
    reason: Optional[RejectReason] = None
    detail: str = ''

    def __bool__(self):
        return self.accepted


ACCEPT = FilterDecision(True)


def _reject(reason, detail=''):
    return FilterDecision(False, reason, detail)


class FilterState:
    """
    Per-session filter memory. Owned and mutated only by the acquisition loop.
    """

    def __init__(self, history_size=10):
        self.last_accepted: Optional[PositionFix] = None
        self.history = deque(maxlen=history_size)
        self.last_rejection: Optional[InvalidFix] = None

        # Statistics
        self.processed = 0
        self.accepted = 0
        self.rejections = Counter()

    @property
    def rejected(self):
        return sum(self.rejections.values())

    @property
    def acceptance_rate(self):
        return self.accepted / self.processed if self.processed else 0.0

    @property
    def filter_rate(self):
        return self.rejected / self.processed if self.processed else 0.0

    def clear(self):
        """Forget accepted fixes; statistics survive until the next reset()."""
        self.last_accepted = None
        self.history.clear()

    def reset(self):
        self.clear()
        self.last_rejection = None
        self.processed = 0
        self.accepted = 0
        self.rejections.clear()

    def get_stats(self):
        return {
            'processed': self.processed,
            'accepted': self.accepted,
            'rejected': self.rejected,
            'acceptance_rate': self.acceptance_rate,
            'filter_rate': self.filter_rate,
            'rejections': {reason.value: count for reason, count in self.rejections.items()},
            'last_accepted': self.last_accepted,
            'last_rejection': self.last_rejection,
        }


class QualityFilter:
    """Stateless rule set; all session memory lives in the FilterState passed in."""

    def __init__(self, config: Optional[FilterConfig] = None, clock: Callable[[], int] = now_ms,
                 base_interval_ms: Optional[int] = None):
        self.config = config or FilterConfig()
        self.clock = clock
        # Base acquisition interval (SelectorConfig.base_interval_ms)
        self.base_interval_ms = base_interval_ms or SelectorConfig().base_interval_ms

    @property
    def min_interval_ms(self) -> float:
        return self.base_interval_ms / 2

    def new_state(self) -> FilterState:
        return FilterState(history_size=self.config.history_size)

    def evaluate(self, fix: PositionFix, state: FilterState) -> FilterDecision:
        """Decide whether fix should be accepted. Does not mutate state."""
        decision = self._check_validity(fix)
        if not decision:
            return decision

        last = state.last_accepted
        if last is None:
            return ACCEPT

        distance = fix_distance(last, fix)
        elapsed_ms = fix.timestamp - last.timestamp

        for check in (
            self._check_distance(distance),
            self._check_time(elapsed_ms),
            self._check_accuracy_trend(fix, last),
            self._check_speed_consistency(fix, distance, elapsed_ms),
        ):
            if not check:
                return check

        return ACCEPT

    def commit(self, fix: PositionFix, state: FilterState):
        """Record an accepted fix in state."""
        state.last_accepted = fix
        state.history.append(fix)

    def record(self, decision: FilterDecision, state: FilterState):
        """Update statistics counters for one evaluated fix."""
        state.processed += 1
        if decision.accepted:
            state.accepted += 1
        else:
            state.rejections[decision.reason] += 1

    def offer(self, fix: PositionFix, state: FilterState) -> FilterDecision:
        """evaluate + commit + record in one step."""
        decision = self.evaluate(fix, state)
        self.record(decision, state)
        if decision.accepted:
            self.commit(fix, state)
        else:
            state.last_rejection = InvalidFix(decision.reason, fix, decision.detail)
            logger.debug("Rejected fix at %s: %s", fix.timestamp, state.last_rejection)
        return decision

    # --- individual checks ------------------------------------------------

    def _check_validity(self, fix):
        cfg = self.config

        if not fix.has_accuracy:
            return _reject(RejectReason.NO_ACCURACY)
        if fix.accuracy > cfg.max_accuracy_m:
            return _reject(RejectReason.LOW_ACCURACY, f"{fix.accuracy:.1f}m > {cfg.max_accuracy_m}m")

        if fix.speed is not None and (math.isnan(fix.speed) or fix.speed < 0):
            return _reject(RejectReason.NEGATIVE_SPEED, f"speed={fix.speed}")

        if not (math.isfinite(fix.latitude) and math.isfinite(fix.longitude)):
            return _reject(RejectReason.BAD_COORDINATES)
        if abs(fix.latitude) > 90 or abs(fix.longitude) > 180:
            return _reject(RejectReason.BAD_COORDINATES, f"({fix.latitude}, {fix.longitude})")

        now = self.clock()
        if fix.timestamp > now + cfg.max_future_ms:
            return _reject(RejectReason.FUTURE_TIMESTAMP, f"{fix.timestamp - now}ms ahead")
        if fix.timestamp < now - cfg.max_age_ms:
            return _reject(RejectReason.STALE_TIMESTAMP, f"{now - fix.timestamp}ms old")

        return ACCEPT

    def _check_distance(self, distance):
        if distance < self.config.min_distance_m:
            return _reject(RejectReason.TOO_CLOSE, f"{distance:.1f}m")
        return ACCEPT

    def _check_time(self, elapsed_ms):
        if elapsed_ms <= 0 or elapsed_ms < self.min_interval_ms:
            return _reject(RejectReason.TOO_SOON, f"{elapsed_ms}ms")
        return ACCEPT

    def _check_accuracy_trend(self, fix, last):
        improvement = last.accuracy - fix.accuracy
        if improvement >= self.config.accuracy_improvement_m:
            return ACCEPT
        if fix.accuracy <= last.accuracy * self.config.accuracy_degradation_factor:
            return ACCEPT
        return _reject(RejectReason.ACCURACY_DEGRADED, f"{last.accuracy:.1f}m -> {fix.accuracy:.1f}m")

    def _check_speed_consistency(self, fix, distance, elapsed_ms):
        # elapsed_ms > 0 here: the time floor already passed
        implied_kmh = (distance / 1000.0) / (elapsed_ms / 3_600_000.0)

        if implied_kmh > self.config.max_plausible_speed_kmh:
            return _reject(RejectReason.IMPLAUSIBLE_SPEED, f"{implied_kmh:.0f} km/h")

        # Unreported speed can't be cross-checked
        if not fix.has_speed:
            return ACCEPT

        difference = abs(implied_kmh - mps_to_kmh(fix.speed))
        if difference > self.config.speed_tolerance_kmh:
            return _reject(RejectReason.SPEED_MISMATCH,
                           f"implied {implied_kmh:.0f} km/h vs reported {mps_to_kmh(fix.speed):.0f} km/h")
        return ACCEPT
