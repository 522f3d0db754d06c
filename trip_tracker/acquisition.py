r"""
Acquisition loop: owns the single live position subscription for a session.

State machine:

    IDLE -> STARTING -> ACTIVE -> STOPPING -> IDLE
                \          \
                 +----------+--> ERROR

Raw fixes arrive on the source's thread and are queued; one worker thread
drains the queue, runs the quality filter, emits accepted fixes to listeners
and re-evaluates the acquisition mode. A mode change closes the current
subscription before opening the next, so there is never more than one live
registration.

Provider outages (ProviderUnavailable) step the mode down one notch and cap
it there for the rest of the session. SecurityRevoked is fatal: the
subscription is closed, filter state cleared and the loop moves to ERROR.

Battery sources whose read() blocks are wrapped in a BatteryMonitor, so
mode selection on the worker only reads a cached level.
"""

import logging
import threading
from enum import Enum
from queue import Empty, Full, Queue

from .accuracy_selector import AccuracySelector, downgrade, most_conservative
from .config import SessionConfig
from .errors import (InvalidStateTransition, LocationUnavailable,
                     PermissionDenied, ProviderUnavailable, SecurityRevoked)
from .geo import mps_to_kmh
from .models import (AcceptedFix, AcquisitionMode, SessionEvent,
                     SessionEventKind, now_ms)
from .quality_filter import QualityFilter
from .sources.base import BatteryMonitor

logger = logging.getLogger(__name__)

_FIX = 'fix'
_ERROR = 'error'


class LoopState(Enum):
    IDLE = 'idle'
    STARTING = 'starting'
    ACTIVE = 'active'
    STOPPING = 'stopping'
    ERROR = 'error'


class AcquisitionHandle:
    """
    Returned by AcquisitionLoop.start(). close() stops the loop and returns
    only after the platform subscription has been unregistered.
    """

    def __init__(self, loop):
        self._loop = loop

    @property
    def state(self):
        return self._loop.state

    @property
    def mode(self):
        return self._loop.mode

    @property
    def active(self):
        return self._loop.state is LoopState.ACTIVE

    def close(self):
        self._loop.stop()

    cancel = close


class AcquisitionLoop:

    def __init__(self, source, battery=None, quality_filter=None, selector=None,
                 config=None, clock=now_ms):
        self.source = source
        self.selector = selector or AccuracySelector()
        self.filter = quality_filter or QualityFilter(
            clock=clock, base_interval_ms=self.selector.config.base_interval_ms)
        self.config = config or SessionConfig()
        if getattr(battery, 'blocking', False):
            battery = BatteryMonitor(battery, interval_s=self.config.battery_refresh_s)
        self.battery = battery
        self.clock = clock

        # Written only by the worker thread (and reset while it is not running)
        self.filter_state = self.filter.new_state()

        self.state = LoopState.IDLE
        self.mode = None
        self.mode_ceiling = None
        self.session_start_ms = None
        self.error = None

        self._state_lock = threading.RLock()
        self._subscription_lock = threading.Lock()
        self._subscription = None
        self._queue = Queue(maxsize=self.config.queue_size)
        self._stop_event = threading.Event()
        self._worker = None

        self.fix_listeners = []
        self.event_listeners = []

        # Statistics
        self.dropped_fixes = 0
        self.resubscriptions = 0
        self.transient_errors = 0

    # --- listeners ----------------------------------------------------------

    def add_fix_listener(self, listener):
        """listener(AcceptedFix) is called on the worker thread for every accepted fix."""
        self.fix_listeners.append(listener)

    def add_event_listener(self, listener):
        """listener(SessionEvent) receives started / stopped / error / mode_changed."""
        self.event_listeners.append(listener)

    def _emit_event(self, kind, error=None):
        event = SessionEvent(kind=kind, timestamp=self.clock(), mode=self.mode, error=error)
        for listener in list(self.event_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Session event listener %r failed", listener)

    def _emit_fix(self, accepted):
        for listener in list(self.fix_listeners):
            try:
                listener(accepted)
            except Exception:
                logger.exception("Fix listener %r failed", listener)

    # --- lifecycle ------------------------------------------------------------

    def _set_state(self, state):
        logger.debug("Acquisition %s -> %s", self.state.value, state.value)
        self.state = state

    def start(self, mode=None, session_start_ms=None):
        """
        Begin acquisition.

        Args:
            mode: initial AcquisitionMode; selected from battery/trip phase if None
            session_start_ms: trip start used for the trip-phase rule (default now)

        Returns:
            AcquisitionHandle

        Raises:
            PermissionDenied, LocationUnavailable: the platform refused; state is ERROR
        """
        with self._state_lock:
            if self.state not in (LoopState.IDLE, LoopState.ERROR):
                raise InvalidStateTransition(f"cannot start while {self.state.value}")
            self._join_worker()

            self._set_state(LoopState.STARTING)
            self.error = None
            self.filter_state.reset()
            self.mode_ceiling = None
            self.session_start_ms = self.clock() if session_start_ms is None else session_start_ms
            self._stop_event.clear()
            self._queue = Queue(maxsize=self.config.queue_size)
            self._start_battery()

            try:
                self.source.check_available()
                initial = mode or self.select_mode(speed_kmh=0.0)
                with self._subscription_lock:
                    self._subscribe(initial)
            except ProviderUnavailable as e:
                error = LocationUnavailable(str(e))
                self._fail_start(error)
                raise error from e
            except (PermissionDenied, LocationUnavailable, SecurityRevoked) as e:
                self._fail_start(e)
                raise

            self._set_state(LoopState.ACTIVE)
            self._worker = threading.Thread(target=self._run, daemon=True, name='acquisition-loop')
            self._worker.start()

        logger.info("Acquisition started in %s mode", self.mode.name)
        self._emit_event(SessionEventKind.STARTED)
        return AcquisitionHandle(self)

    def _fail_start(self, error):
        logger.error("Acquisition failed to start: %s", error)
        self._stop_battery()
        self.error = error
        self.mode = None
        self._set_state(LoopState.ERROR)
        self._emit_event(SessionEventKind.ERROR, error=error)

    def stop(self):
        """
        Unregister the platform subscription, drain in-flight fixes, clear filter state.
        Safe to call repeatedly; a loop that already failed just returns to IDLE.
        """
        with self._state_lock:
            if self.state is LoopState.IDLE:
                return
            if self.state is LoopState.ERROR:
                self._join_worker()
                self._set_state(LoopState.IDLE)
                return
            if self.state is not LoopState.ACTIVE:
                raise InvalidStateTransition(f"cannot stop while {self.state.value}")
            self._set_state(LoopState.STOPPING)

        with self._subscription_lock:
            self._close_subscription()

        self._stop_event.set()
        self._join_worker()
        self._stop_battery()

        with self._state_lock:
            self.filter_state.clear()
            self._set_state(LoopState.IDLE)
        logger.info("Acquisition stopped (%d resubscriptions, %d dropped fixes)",
                    self.resubscriptions, self.dropped_fixes)
        self._emit_event(SessionEventKind.STOPPED)
        self.mode = None

    def _join_worker(self):
        worker = self._worker
        if worker is None or worker is threading.current_thread():
            return
        worker.join(timeout=self.config.drain_timeout_s)
        if worker.is_alive():
            logger.warning("Acquisition worker did not drain within %.1fs", self.config.drain_timeout_s)
        else:
            self._worker = None

    def _terminate(self, error):
        """Fatal session error: unregister, clear filter state, move to ERROR."""
        with self._state_lock:
            if self.state in (LoopState.IDLE, LoopState.ERROR):
                return
            logger.error("Acquisition terminated: %s", error)
            self.error = error
            with self._subscription_lock:
                self._close_subscription()
            self._stop_event.set()
            self.filter_state.clear()
            self._set_state(LoopState.ERROR)
            self._stop_battery()
        self._emit_event(SessionEventKind.ERROR, error=error)

    def _start_battery(self):
        if isinstance(self.battery, BatteryMonitor):
            self.battery.start()

    def _stop_battery(self):
        if isinstance(self.battery, BatteryMonitor):
            self.battery.stop()

    # --- subscription management ----------------------------------------------

    def _subscribe(self, mode):
        """Open a subscription for mode. Caller holds _subscription_lock."""
        settings = self.selector.settings_for(mode)
        self._subscription = self.source.subscribe(settings, self._on_raw_fix, self._on_source_error)
        self.mode = mode
        logger.info("Subscribed: %s, every %dms, min %.0fm",
                    mode.name, settings.interval_ms, settings.min_distance_m)

    def _close_subscription(self):
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.close()

    def _resubscribe(self, new_mode):
        """Swap the live subscription for one in new_mode (stop, then restart)."""
        with self._subscription_lock:
            if self.state is not LoopState.ACTIVE or new_mode == self.mode:
                return
            old_mode = self.mode
            self._close_subscription()
            try:
                self._subscribe(new_mode)
            except (ProviderUnavailable, SecurityRevoked, PermissionDenied, LocationUnavailable) as e:
                failure = e
            else:
                failure = None
                self.resubscriptions += 1

        if failure is not None:
            # One attempt per mode change; no retry loop
            self._terminate(failure)
            return

        logger.info("Acquisition mode %s -> %s", old_mode.name, new_mode.name)
        self._emit_event(SessionEventKind.MODE_CHANGED)

    @property
    def has_subscription(self):
        return self._subscription is not None

    # --- source callbacks (source thread) -------------------------------------

    def _on_raw_fix(self, fix):
        if self._stop_event.is_set():
            return
        try:
            self._queue.put_nowait((_FIX, fix))
        except Full:
            self.dropped_fixes += 1
            logger.warning("Fix queue full, dropping fix at %s", fix.timestamp)

    def _on_source_error(self, error):
        if self._stop_event.is_set():
            return
        try:
            self._queue.put((_ERROR, error), timeout=1.0)
        except Full:
            logger.error("Fix queue full, could not deliver source error: %s", error)

    # --- worker ---------------------------------------------------------------

    def _run(self):
        while True:
            try:
                kind, payload = self._queue.get(timeout=0.1)
            except Empty:
                if self._stop_event.is_set():
                    break
                continue

            if self.state is LoopState.ERROR:
                break

            try:
                if kind == _FIX:
                    self.process_fix(payload)
                else:
                    self.handle_source_error(payload)
            except Exception as e:
                logger.exception("Acquisition worker error")
                self._terminate(e)
                break

    def process_fix(self, fix):
        """
        Run one raw fix through the quality filter.

        Returns:
            AcceptedFix if accepted, None if filtered (rejections are routine)
        """
        decision = self.filter.offer(fix, self.filter_state)
        if not decision.accepted:
            return None

        accepted = AcceptedFix.wrap(fix, self.mode or AcquisitionMode.BALANCED)
        self._emit_fix(accepted)

        if self.state is LoopState.ACTIVE:
            speed_kmh = mps_to_kmh(fix.speed) if fix.has_speed else 0.0
            new_mode = self.select_mode(speed_kmh)
            if new_mode != self.mode:
                self._resubscribe(new_mode)

        return accepted

    def handle_source_error(self, error):
        if isinstance(error, (SecurityRevoked, PermissionDenied, PermissionError)):
            if not isinstance(error, SecurityRevoked):
                error = SecurityRevoked(str(error))
            self._terminate(error)
            return

        if self.state is not LoopState.ACTIVE:
            return

        self.transient_errors += 1
        lower = downgrade(self.mode)
        self.mode_ceiling = lower
        if lower == self.mode:
            logger.warning("Provider unavailable in %s mode, nothing lower to fall back to: %s",
                           self.mode.name, error)
            return
        logger.warning("Provider unavailable (%s), downgrading %s -> %s",
                       error, self.mode.name, lower.name)
        self._resubscribe(lower)

    # --- mode selection ---------------------------------------------------------

    def select_mode(self, speed_kmh):
        """Current best mode given battery, speed and trip phase, capped after outages."""
        status = self.battery.read() if self.battery is not None else None
        battery_percent = status.percentage if status is not None else 100.0
        duration_ms = max(0, self.clock() - (self.session_start_ms or self.clock()))

        candidates = self.selector.candidates(battery_percent, speed_kmh, duration_ms)
        if status is not None and status.power_save:
            candidates.append(AcquisitionMode.LOW_POWER)
        if self.mode_ceiling is not None:
            candidates.append(self.mode_ceiling)
        return most_conservative(candidates)

    # --- queries ----------------------------------------------------------------

    def get_last_known(self):
        return self.source.get_last_known()

    def get_status(self):
        stats = self.filter_state.get_stats()
        return {
            'state': self.state.value,
            'mode': self.mode.name if self.mode else None,
            'mode_ceiling': self.mode_ceiling.name if self.mode_ceiling else None,
            'subscribed': self.has_subscription,
            'queue_depth': self._queue.qsize(),
            'dropped_fixes': self.dropped_fixes,
            'resubscriptions': self.resubscriptions,
            'transient_errors': self.transient_errors,
            'fixes_processed': stats['processed'],
            'fixes_accepted': stats['accepted'],
            'rejections': stats['rejections'],
            'last_rejection': str(stats['last_rejection']) if stats['last_rejection'] is not None else None,
            'error': str(self.error) if self.error else None,
        }
