"""
Replay recorded fixes through the live pipeline.

Accepts either a list of PositionFix objects or a recorded session file:
motion tracker session dumps (gps_samples, .json or .json.gz) and trip
records written by JsonTripStore (fixes). Timing is deterministic; pair the
source with a ReplayClock so the quality filter judges staleness against
recorded time instead of wall time.
"""

from __future__ import annotations

import gzip
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

import orjson

from ..models import PositionFix
from .base import PositionSource, Subscription

logger = logging.getLogger(__name__)


class ReplayClock:
    """Clock override that tracks the timestamp of the last replayed fix (epoch ms)."""

    def __init__(self, start_ms=0):
        self._value = int(start_ms)
        self._lock = threading.Lock()

    def set(self, value_ms):
        with self._lock:
            self._value = int(value_ms)

    def advance(self, delta_ms):
        with self._lock:
            self._value += int(delta_ms)

    def now(self):
        with self._lock:
            return self._value

    __call__ = now


def _parse_timestamp(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        # Seconds (motion tracker) vs milliseconds (trip store)
        return int(value * 1000) if value < 1e11 else int(value)
    dt = datetime.fromisoformat(str(value).rstrip('Z'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def fix_from_sample(sample: dict) -> Optional[PositionFix]:
    """Convert one recorded sample dict into a PositionFix."""
    gps = sample.get('gps') if isinstance(sample.get('gps'), dict) else sample
    if gps.get('latitude') is None or gps.get('longitude') is None:
        return None

    timestamp = _parse_timestamp(gps.get('timestamp', sample.get('timestamp')))
    if timestamp is None:
        return None

    return PositionFix(
        latitude=float(gps['latitude']),
        longitude=float(gps['longitude']),
        timestamp=timestamp,
        speed=gps.get('speed'),
        accuracy=gps.get('accuracy'),
        altitude=gps.get('altitude'),
        bearing=gps.get('bearing'),
        provider=gps.get('provider') or 'replay',
    )


def load_fixes(path) -> List[PositionFix]:
    path = Path(path)
    opener = gzip.open if path.suffix == '.gz' else open
    with opener(path, 'rb') as handle:
        data = orjson.loads(handle.read())

    if isinstance(data, list):
        samples = data
    else:
        samples = data.get('gps_samples') or data.get('fixes') or []

    fixes = [fix for fix in (fix_from_sample(s) for s in samples) if fix is not None]
    fixes.sort(key=lambda f: f.timestamp)
    logger.info("Loaded %d fixes from %s", len(fixes), path)
    return fixes


class ReplayPositionSource(PositionSource):
    """
    Feeds recorded fixes to subscribers on a background thread.

    A resubscription resumes where the previous subscription stopped, the same
    way a platform provider keeps producing after a mode change.

    Args:
        fixes: recorded fixes in delivery order
        clock: optional ReplayClock set to each fix's timestamp before delivery
        pace_s: wall-clock delay between fixes (0 = as fast as possible)
    """

    def __init__(self, fixes: Iterable[PositionFix], clock: Optional[ReplayClock] = None, pace_s=0.0):
        self.fixes = list(fixes)
        self.clock = clock
        self.pace_s = pace_s
        self.cursor = 0
        self.finished = threading.Event()
        self.subscriptions = []
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path, clock=None, pace_s=0.0):
        return cls(load_fixes(path), clock=clock, pace_s=pace_s)

    def _next_fix(self):
        with self._lock:
            if self.cursor >= len(self.fixes):
                return None
            fix = self.fixes[self.cursor]
            self.cursor += 1
            return fix

    def subscribe(self, settings, on_fix, on_error):
        stop_event = threading.Event()

        def run():
            while not stop_event.is_set():
                fix = self._next_fix()
                if fix is None:
                    self.finished.set()
                    return
                if self.clock is not None:
                    self.clock.set(fix.timestamp)
                on_fix(fix)
                if self.pace_s:
                    stop_event.wait(self.pace_s)

        thread = threading.Thread(target=run, daemon=True, name='replay-source')
        self.subscriptions.append(settings)
        thread.start()

        def teardown():
            stop_event.set()
            if thread is not threading.current_thread():
                thread.join(timeout=2)

        return Subscription(teardown, description=f"replay {settings.mode.name}")

    def get_last_known(self):
        with self._lock:
            return self.fixes[self.cursor - 1] if self.cursor else None
