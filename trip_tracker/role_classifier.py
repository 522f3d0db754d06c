"""
Heuristic driver/passenger classification.

Drivers tend to have a stable (mounted) phone and low screen usage; passengers
handle the phone and use it more. Two composite scores in [0, 1]:

    driver    = mean(stability score, low-usage score)
    passenger = mean(movement score, high-usage score)

A role is decided only when its score clears its threshold AND beats the other
score by the configured margin; otherwise the verdict is UNKNOWN with a
deliberately lower confidence band.

classify() is a pure function of (SignalSummary, UsageSnapshot). The
ClassificationLoop re-runs it on a fixed cadence over the live SignalWindow.
"""

import logging
import threading

import numpy as np

from .config import ClassifierConfig
from .errors import ClassificationFailure
from .models import RoleScores, RoleVerdict, UsageSnapshot, UserRole

logger = logging.getLogger(__name__)


def _clamp(value, low, high):
    return float(np.clip(value, low, high))


class RoleClassifier:

    def __init__(self, config=None):
        self.config = config or ClassifierConfig()

    # --- component scores -------------------------------------------------

    def stability_score(self, summary):
        """Mounted phones barely move; channels above the high-stability threshold count as fully stable."""
        threshold = self.config.high_stability_threshold
        accel = 1.0 if summary.accel_stability > threshold else summary.accel_stability
        gyro = 1.0 if summary.gyro_stability > threshold else summary.gyro_stability
        return (accel + gyro) / 2

    def low_usage_score(self, usage):
        cfg = self.config
        average_usage = (usage.screen_on_minutes / cfg.screen_minutes_divisor +
                         usage.touch_count / cfg.touch_divisor +
                         usage.app_launches / cfg.app_launch_divisor) / 3
        return _clamp(1.0 - average_usage, 0.0, 1.0)

    def movement_score(self, summary):
        cfg = self.config
        accel = summary.accel_variance / cfg.accel_variance_divisor
        gyro = summary.gyro_variance / cfg.gyro_variance_divisor
        return _clamp((accel + gyro) / 2, 0.0, 1.0)

    def high_usage_score(self, usage):
        cfg = self.config
        weighted = (usage.screen_on_minutes * cfg.screen_weight +
                    usage.touch_count * cfg.touch_weight +
                    usage.app_launches * cfg.app_launch_weight)
        return _clamp(weighted / cfg.high_usage_divisor, 0.0, 1.0)

    def score(self, summary, usage):
        driver = (self.stability_score(summary) + self.low_usage_score(usage)) / 2
        passenger = (self.movement_score(summary) + self.high_usage_score(usage)) / 2
        return RoleScores(driver=driver, passenger=passenger)

    # --- decision -------------------------------------------------------------

    def decide(self, scores):
        """Map composite scores to (role, confidence)."""
        cfg = self.config
        driver, passenger = scores.driver, scores.passenger

        if driver >= cfg.driver_threshold and driver - passenger >= cfg.score_margin:
            return UserRole.DRIVER, _clamp(driver, cfg.decided_confidence_min, cfg.decided_confidence_max)

        if passenger >= cfg.passenger_threshold and passenger - driver >= cfg.score_margin:
            return UserRole.PASSENGER, _clamp(passenger, cfg.decided_confidence_min, cfg.decided_confidence_max)

        return UserRole.UNKNOWN, _clamp(max(driver, passenger),
                                        cfg.unknown_confidence_min, cfg.unknown_confidence_max)

    def classify(self, summary, usage=None):
        """
        Classify one window. Never raises: failures become an UNKNOWN verdict
        whose reasoning says what went wrong.
        """
        usage = usage or UsageSnapshot()
        try:
            self._check_window(summary)
            scores = self.score(summary, usage)
            role, confidence = self.decide(scores)
        except ClassificationFailure as e:
            logger.debug("Classification skipped: %s", e)
            return self._failed_verdict(str(e))
        except (TypeError, ValueError, ZeroDivisionError, FloatingPointError) as e:
            logger.warning("Classification failed: %s", e)
            return self._failed_verdict(f"classification error: {e}")

        return RoleVerdict(
            role=role,
            confidence=confidence,
            reasoning=self.reasoning(role, summary, usage),
            scores=scores,
        )

    def _check_window(self, summary):
        minimum = self.config.min_window_samples
        if summary.accel_samples < minimum or summary.gyro_samples < minimum:
            raise ClassificationFailure(
                f"insufficient sensor data ({summary.accel_samples} accel, "
                f"{summary.gyro_samples} gyro samples; need {minimum})")

    def _failed_verdict(self, message):
        return RoleVerdict(
            role=UserRole.UNKNOWN,
            confidence=self.config.unknown_confidence_min,
            reasoning=f"Unable to determine role: {message}",
        )

    # --- usage flags + reasoning ------------------------------------------------

    def is_phone_stable(self, summary):
        threshold = self.config.stable_phone_threshold
        return summary.accel_stability > threshold and summary.gyro_stability > threshold

    def is_high_screen_usage(self, usage):
        return (usage.screen_on_minutes > self.config.high_screen_minutes or
                usage.touch_count > self.config.high_touch_count)

    def is_low_activity(self, usage):
        limit = self.config.low_activity_count
        return usage.touch_count < limit and usage.app_launches < limit

    def reasoning(self, role, summary, usage):
        reasons = []
        if role is UserRole.DRIVER:
            if self.is_phone_stable(summary):
                reasons.append("Phone position appears stable (typical for mounted phones)")
            if self.is_low_activity(usage):
                reasons.append("Low screen and app usage")
            if summary.gyro_stability > self.config.stable_phone_threshold:
                reasons.append("Minimal phone rotation detected")
            return "Detected as driver: " + ", ".join(reasons)

        if role is UserRole.PASSENGER:
            if not self.is_phone_stable(summary):
                reasons.append("Phone position appears unstable (typical for handheld use)")
            if self.is_high_screen_usage(usage):
                reasons.append("High screen and app usage detected")
            if usage.touch_count > 20:
                reasons.append(f"{usage.touch_count} touch interactions recorded")
            return "Detected as passenger: " + ", ".join(reasons)

        return ("Unable to determine role: Mixed signals detected. "
                f"Phone stability: {summary.accel_stability:.1f}, "
                f"Screen usage: {usage.screen_on_minutes:.0f}m, "
                f"Touch events: {usage.touch_count}")


class UsageCounters:
    """
    Thread-safe phone usage counters fed by the host app (touch/launch/screen hooks).
    The classifier never reads these directly; it gets a snapshot() per cycle.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.screen_on_seconds = 0.0
        self.touch_count = 0
        self.app_launches = 0

    def record_touch(self, count=1):
        with self.lock:
            self.touch_count += count

    def record_app_launch(self, count=1):
        with self.lock:
            self.app_launches += count

    def add_screen_on(self, seconds):
        with self.lock:
            self.screen_on_seconds += seconds

    def reset(self):
        with self.lock:
            self.screen_on_seconds = 0.0
            self.touch_count = 0
            self.app_launches = 0

    def snapshot(self):
        with self.lock:
            return UsageSnapshot(
                screen_on_minutes=self.screen_on_seconds / 60.0,
                touch_count=self.touch_count,
                app_launches=self.app_launches,
            )


class ClassificationLoop(threading.Thread):
    """
    Re-classifies the current SignalWindow every interval_s seconds.

    Only the latest verdict is kept. usage_provider() is called at each cycle
    to snapshot the externally maintained usage counters.
    """

    def __init__(self, window, classifier=None, usage_provider=None, interval_s=None, on_verdict=None):
        super().__init__(daemon=True, name='role-classifier')
        self.window = window
        self.classifier = classifier or RoleClassifier()
        self.usage_provider = usage_provider or UsageSnapshot
        self.interval_s = interval_s if interval_s is not None else self.classifier.config.interval_s
        self.on_verdict = on_verdict
        self.stop_event = threading.Event()
        self.cycles = 0
        self._latest = None
        self._lock = threading.Lock()

    @property
    def latest(self):
        with self._lock:
            return self._latest

    def run_once(self):
        verdict = self.classifier.classify(self.window.summary(), self.usage_provider())
        with self._lock:
            self._latest = verdict
        self.cycles += 1
        logger.debug("Role %s (confidence %.2f)", verdict.role.value, verdict.confidence)
        if self.on_verdict is not None:
            self.on_verdict(verdict)
        return verdict

    def run(self):
        while not self.stop_event.wait(self.interval_s):
            try:
                self.run_once()
            except Exception:
                logger.exception("Classification cycle failed")

    def stop(self):
        self.stop_event.set()
        if self.is_alive() and self is not threading.current_thread():
            self.join(timeout=2)
