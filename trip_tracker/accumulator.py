"""
Trip accumulator: folds accepted fixes into running trip statistics.

Distance is accumulated incrementally (haversine from the previous accepted
fix), never recomputed from the full history. Average speed is the mean of
positive speed samples only; zero/unknown speeds still count as fixes.
"""

import logging
import threading
from statistics import mean

from .errors import TripFinalizedError
from .geo import fix_distance
from .models import TripRecord, TripSnapshot, TripStatus, new_trip_id, now_ms

logger = logging.getLogger(__name__)


class TripAccumulator:

    def __init__(self, trip_id=None, start_time=None, clock=now_ms):
        self.clock = clock
        self.trip_id = trip_id or new_trip_id()
        self.start_time = self.clock() if start_time is None else start_time

        self.distance = 0.0          # meters
        self.speed_samples = []      # positive speeds only (m/s)
        self.max_speed = 0.0
        self.fix_count = 0
        self.fixes = []
        self.last_fix = None

        self._record = None
        # Snapshots are read from other threads
        self.lock = threading.Lock()

    @property
    def finalized(self):
        return self._record is not None

    def on_fix(self, fix):
        """Fold one accepted fix into the trip. Accepts a PositionFix or AcceptedFix."""
        fix = getattr(fix, 'fix', fix)
        with self.lock:
            if self._record is not None:
                raise TripFinalizedError(f"trip {self.trip_id} is already finalized")

            if self.last_fix is not None:
                self.distance += fix_distance(self.last_fix, fix)

            if fix.has_speed and fix.speed > 0:
                self.speed_samples.append(fix.speed)
                if fix.speed > self.max_speed:
                    self.max_speed = fix.speed

            self.fix_count += 1
            self.fixes.append(fix)
            self.last_fix = fix

    def _avg_speed(self):
        return mean(self.speed_samples) if self.speed_samples else 0.0

    def snapshot(self):
        with self.lock:
            if self._record is not None:
                record = self._record
                return TripSnapshot(record.duration_ms, record.distance_m, record.avg_speed,
                                    record.max_speed, record.fix_count)
            return TripSnapshot(
                duration_ms=max(0, self.clock() - self.start_time),
                distance_m=self.distance,
                avg_speed=self._avg_speed(),
                max_speed=self.max_speed,
                fix_count=self.fix_count,
            )

    def finalize(self, end_time=None, status=TripStatus.COMPLETED):
        """
        Freeze the trip into a TripRecord. Later calls return the same record.
        """
        with self.lock:
            if self._record is not None:
                return self._record

            end = self.clock() if end_time is None else end_time
            self._record = TripRecord(
                id=self.trip_id,
                start_time=self.start_time,
                end_time=max(end, self.start_time),
                distance_m=self.distance,
                avg_speed=self._avg_speed(),
                max_speed=self.max_speed,
                fix_count=self.fix_count,
                status=status,
                fixes=tuple(self.fixes),
            )
            logger.info("Trip %s finalized: %.0fm, %d fixes, %s",
                        self.trip_id, self.distance, self.fix_count, status.value)
            return self._record
