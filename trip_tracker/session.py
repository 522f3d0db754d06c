"""
TrackingSession - one trip, end to end.

Wires the acquisition loop, trip accumulator, signal window and role
classifier together and owns their lifecycle:

    session = TrackingSession(position_source, battery=battery, store=store)
    session.start()
    ...
    record = session.stop()      # finalized TripRecord, already persisted

Single-writer discipline: the acquisition worker is the only writer of the
filter state and (through on_fix) the accumulator; the sensor ingest thread is
the only writer of the signal window. Everything else reads snapshots.
"""

import dataclasses
import logging
import threading

from .accumulator import TripAccumulator
from .accuracy_selector import AccuracySelector
from .acquisition import AcquisitionLoop, LoopState
from .config import TrackerConfig
from .errors import InvalidStateTransition, TripFinalizedError
from .models import SessionEventKind, TripStatus, now_ms
from .quality_filter import QualityFilter
from .role_classifier import ClassificationLoop, RoleClassifier
from .signal_window import SignalWindow

logger = logging.getLogger(__name__)


class _SnapshotTicker(threading.Thread):
    """Publishes trip snapshots on a fixed interval."""

    def __init__(self, accumulator, interval_s, publish):
        super().__init__(daemon=True, name='trip-snapshots')
        self.accumulator = accumulator
        self.interval_s = interval_s
        self.publish = publish
        self.stop_event = threading.Event()

    def run(self):
        while not self.stop_event.wait(self.interval_s):
            try:
                self.publish(self.accumulator.snapshot())
            except Exception:
                logger.exception("Snapshot publish failed")

    def stop(self):
        self.stop_event.set()
        if self.is_alive() and self is not threading.current_thread():
            self.join(timeout=2)


class TrackingSession:

    def __init__(self, position_source, battery=None, motion_sensors=None, store=None,
                 config=None, usage_provider=None, clock=now_ms):
        self.config = config or TrackerConfig()
        self.clock = clock
        self.motion_sensors = motion_sensors
        self.store = store
        self.usage_provider = usage_provider

        self.quality_filter = QualityFilter(self.config.filter, clock=clock,
                                            base_interval_ms=self.config.selector.base_interval_ms)
        self.selector = AccuracySelector(self.config.selector)
        self.loop = AcquisitionLoop(position_source, battery=battery,
                                    quality_filter=self.quality_filter,
                                    selector=self.selector,
                                    config=self.config.session, clock=clock)
        self.loop.add_fix_listener(self._on_accepted_fix)
        self.loop.add_event_listener(self._on_loop_event)

        self.window = SignalWindow(size=self.config.classifier.window_size)
        self.classifier = RoleClassifier(self.config.classifier)

        self.accumulator = None
        self.record = None
        self.handle = None
        self.last_fix = None
        self.classification = None
        self._snapshots = None
        self._sensor_subscription = None
        self._running = False
        self._finish_lock = threading.Lock()

        self.fix_listeners = []
        self.snapshot_listeners = []
        self.verdict_listeners = []
        self.event_listeners = []

    # --- public API -------------------------------------------------------------

    @property
    def active(self):
        return self._running and self.loop.state is LoopState.ACTIVE

    @property
    def trip_id(self):
        return self.accumulator.trip_id if self.accumulator else None

    def start(self, trip_id=None):
        """
        Start a new trip.

        Raises:
            PermissionDenied, LocationUnavailable: acquisition could not start
            InvalidStateTransition: a trip is already running
        """
        if self._running:
            raise InvalidStateTransition("a trip is already being tracked")

        start_time = self.clock()
        self.accumulator = TripAccumulator(trip_id=trip_id, start_time=start_time, clock=self.clock)
        self.record = None
        self.window.clear()
        self.last_fix = None

        try:
            self.handle = self.loop.start(session_start_ms=start_time)
        except Exception:
            self.accumulator = None
            raise
        self._running = True

        self._start_sensors()
        self.classification = ClassificationLoop(self.window, self.classifier,
                                                 usage_provider=self.usage_provider,
                                                 on_verdict=self._on_verdict)
        self.classification.start()
        self._snapshots = _SnapshotTicker(self.accumulator, self.config.session.snapshot_interval_s,
                                          self._publish_snapshot)
        self._snapshots.start()

        logger.info("Trip %s started", self.trip_id)
        return self

    def stop(self):
        """Stop tracking and return the finalized (and persisted) TripRecord."""
        if self.accumulator is None:
            return self.record
        if self.handle is not None:
            self.handle.close()
        return self._finish(TripStatus.COMPLETED)

    def snapshot(self):
        if self.accumulator is None:
            return None
        return self.accumulator.snapshot()

    @property
    def verdict(self):
        """Latest role verdict (None before the first classification cycle)."""
        return self.classification.latest if self.classification else None

    def get_status(self):
        status = self.loop.get_status()
        status['trip_id'] = self.trip_id
        status['snapshot'] = self.snapshot()
        status['verdict'] = self.verdict
        return status

    # --- internals --------------------------------------------------------------

    def _start_sensors(self):
        if self.motion_sensors is None:
            return
        try:
            self._sensor_subscription = self.motion_sensors.subscribe(self.window.add_sample)
        except OSError as e:
            # Classification degrades to UNKNOWN; tracking continues
            logger.warning("Motion sensors unavailable: %s", e)
            self._sensor_subscription = None

    def _finish(self, status):
        with self._finish_lock:
            if self.accumulator is None or self.accumulator.finalized:
                return self.record
            self._running = False

            if self._sensor_subscription is not None:
                self._sensor_subscription.close()
                self._sensor_subscription = None
            if self.classification is not None:
                self.classification.stop()
            if self._snapshots is not None:
                self._snapshots.stop()

            self.record = self.accumulator.finalize(status=status)
            if self.store is not None:
                self.store.save(self.record)
            self.window.clear()

        logger.info("Trip %s %s", self.record.id, status.value.lower())
        return self.record

    def _on_accepted_fix(self, accepted):
        try:
            self.accumulator.on_fix(accepted.fix)
        except TripFinalizedError:
            logger.debug("Fix arrived after trip %s was finalized", self.trip_id)
            return
        self.last_fix = accepted
        for listener in list(self.fix_listeners):
            listener(accepted)

    def _on_loop_event(self, event):
        event = dataclasses.replace(event, trip_id=self.trip_id)
        for listener in list(self.event_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Session event listener %r failed", listener)

        if event.kind is SessionEventKind.ERROR and self._running:
            logger.error("Trip %s ended by error: %s", self.trip_id, event.error)
            self._finish(TripStatus.FAILED)
            self.loop.stop()

    def _on_verdict(self, verdict):
        for listener in list(self.verdict_listeners):
            listener(verdict)

    def _publish_snapshot(self, snapshot):
        for listener in list(self.snapshot_listeners):
            listener(snapshot)
