"""
Termux:API backed sources for running the tracker on an Android phone.

- TermuxPositionSource polls termux-location on a background thread with a
  non-blocking Popen so a stalled LocationAPI call never wedges the loop.
- TermuxMotionSensors keeps one termux-sensor process streaming both IMU
  channels and parses its multi-line JSON output.
- TermuxBatterySource reads termux-battery-status.
"""

import logging
import shutil
import subprocess
import threading
import time

import orjson

from ..errors import (LocationUnavailable, PermissionDenied,
                      ProviderUnavailable, SecurityRevoked)
from ..models import AcquisitionMode, PositionFix, now_ms
from .base import (ACCELERATION, ROTATION, BatterySource, BatteryStatus,
                   MotionSensorSource, PositionSource, Subscription)

logger = logging.getLogger(__name__)

PROVIDERS = {
    AcquisitionMode.HIGH_ACCURACY: 'gps',
    AcquisitionMode.BALANCED: 'gps',
    AcquisitionMode.LOW_POWER: 'network',
    AcquisitionMode.PASSIVE: 'passive',
}


def _is_permission_error(text):
    text = (text or '').lower()
    return 'permission' in text or 'securityexception' in text


def parse_location(stdout, provider):
    """Parse termux-location JSON output into a PositionFix (None if no position)."""
    data = orjson.loads(stdout)
    if not isinstance(data, dict) or data.get('latitude') is None:
        return None
    return PositionFix(
        latitude=float(data['latitude']),
        longitude=float(data['longitude']),
        timestamp=now_ms(),
        speed=data.get('speed'),
        accuracy=data.get('accuracy'),
        altitude=data.get('altitude'),
        bearing=data.get('bearing'),
        provider=data.get('provider') or provider,
    )


class _LocationPoller(threading.Thread):
    """Non-blocking termux-location poller for one subscription."""

    def __init__(self, settings, on_fix, on_error, command='termux-location',
                 max_request_duration=5.0, starvation_threshold=30.0):
        super().__init__(daemon=True, name=f"location-{settings.mode.name.lower()}")
        self.settings = settings
        self.on_fix = on_fix
        self.on_error = on_error
        self.command = command
        self.provider = PROVIDERS[settings.mode]
        self.poll_interval = settings.interval_ms / 1000.0
        self.max_request_duration = max_request_duration
        self.starvation_threshold = starvation_threshold
        self.stop_event = threading.Event()

        self.current_process = None
        self.request_start_time = None
        self.last_success_time = time.time()
        self.starvation_reported = False

        # Statistics
        self.requests_sent = 0
        self.requests_completed = 0
        self.requests_timeout = 0

    def start_request(self):
        if self.current_process is not None:
            return False
        try:
            self.current_process = subprocess.Popen(
                [self.command, '-p', self.provider, '-r', 'once'],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            logger.warning("Failed to start %s request: %s", self.provider, e)
            return False
        self.request_start_time = time.time()
        self.requests_sent += 1
        return True

    def check_request(self):
        """Poll the running request. Returns a PositionFix when one completed."""
        # stop() may clear current_process from another thread at any point
        process = self.current_process
        if process is None:
            return None

        returncode = process.poll()
        if returncode is None:
            if time.time() - self.request_start_time > self.max_request_duration:
                logger.debug("Location request exceeded %.1fs, killing", self.max_request_duration)
                self._kill_current()
                self.requests_timeout += 1
            return None

        stdout, stderr = process.communicate()
        if self.current_process is process:
            self.current_process = None
        if self.stop_event.is_set():
            return None

        if _is_permission_error(stderr):
            raise SecurityRevoked(stderr.strip())
        if returncode != 0:
            logger.debug("termux-location exited %s: %s", returncode, stderr.strip())
            return None

        if not stdout.strip():
            return None

        try:
            fix = parse_location(stdout, self.provider)
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.debug("Unparseable location output: %s", e)
            return None

        if fix is not None:
            self.last_success_time = time.time()
            self.starvation_reported = False
            self.requests_completed += 1
        return fix

    def _kill_current(self):
        process = self.current_process
        self.current_process = None
        if process is None:
            return
        try:
            process.kill()
            process.wait(timeout=1)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("Could not reap location request: %s", e)

    def _check_starvation(self):
        if self.stop_event.is_set():
            return
        starved_for = time.time() - self.last_success_time
        if starved_for > self.starvation_threshold and not self.starvation_reported:
            self.starvation_reported = True
            self.on_error(ProviderUnavailable(
                f"no {self.provider} fix for {starved_for:.0f}s"))

    def run(self):
        next_poll_time = time.time()
        try:
            while not self.stop_event.is_set():
                current_time = time.time()

                fix = self.check_request()
                if fix is not None and not self.stop_event.is_set():
                    self.on_fix(fix)

                if current_time >= next_poll_time:
                    if self.start_request():
                        next_poll_time = current_time + self.poll_interval
                    else:
                        next_poll_time = current_time + 0.5

                self._check_starvation()
                self.stop_event.wait(0.1)
        except SecurityRevoked as e:
            if not self.stop_event.is_set():
                self.on_error(e)
        except Exception as e:
            if self.stop_event.is_set():
                logger.debug("Location poller error during teardown: %s", e)
            else:
                logger.exception("Location poller crashed")
                self.on_error(ProviderUnavailable(str(e)))
        finally:
            self._kill_current()

    def stop(self):
        self.stop_event.set()
        self._kill_current()
        if self is not threading.current_thread():
            self.join(timeout=2)


class TermuxPositionSource(PositionSource):

    def __init__(self, command='termux-location', max_request_duration=5.0,
                 starvation_threshold=30.0):
        self.command = command
        self.max_request_duration = max_request_duration
        self.starvation_threshold = starvation_threshold

    def check_available(self):
        if shutil.which(self.command) is None:
            raise LocationUnavailable(f"{self.command} not found (is Termux:API installed?)")

        try:
            result = subprocess.run([self.command, '-p', 'network', '-r', 'last'],
                                    capture_output=True, text=True, timeout=10)
        except subprocess.TimeoutExpired:
            # No cached fix yet; provider may still work
            return
        except OSError as e:
            raise LocationUnavailable(str(e)) from e

        if _is_permission_error(result.stderr) or _is_permission_error(result.stdout):
            raise PermissionDenied("location permission not granted to Termux:API")

    def subscribe(self, settings, on_fix, on_error):
        poller = _LocationPoller(settings, on_fix, on_error, command=self.command,
                                 max_request_duration=self.max_request_duration,
                                 starvation_threshold=self.starvation_threshold)
        poller.start()
        logger.info("termux-location polling %s every %.1fs",
                    poller.provider, poller.poll_interval)
        return Subscription(poller.stop, description=f"termux-location {poller.provider}")

    def get_last_known(self):
        try:
            result = subprocess.run([self.command, '-p', 'passive', '-r', 'last'],
                                    capture_output=True, text=True, timeout=5)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("Last known location unavailable: %s", e)
            return None

        if result.returncode != 0 or not result.stdout.strip():
            return None
        try:
            return parse_location(result.stdout, 'passive')
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError):
            return None


class TermuxMotionSensors(MotionSensorSource):
    """
    Single long-lived termux-sensor process streaming acceleration + gyroscope.

    Starting termux-sensor per sample costs ~1.5 s of init each time, so the
    process stays up and its JSON objects are read continuously.
    """

    def __init__(self, sensors='linear_acceleration,gyroscope', delay_ms=50, command='termux-sensor'):
        self.sensors = sensors
        self.delay_ms = delay_ms
        self.command = command

    def subscribe(self, on_sample):
        process = subprocess.Popen(
            [self.command, '-s', self.sensors, '-d', str(self.delay_ms)],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            bufsize=1,
            close_fds=True,
        )
        stop_event = threading.Event()
        reader = threading.Thread(target=self._read_loop, args=(process, stop_event, on_sample),
                                  daemon=True, name='motion-sensors')
        reader.start()
        logger.info("termux-sensor started (%s, PID %s)", self.sensors, process.pid)

        def teardown():
            stop_event.set()
            try:
                process.terminate()
                process.wait(timeout=1)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait(timeout=1)
            finally:
                if process.stdout:
                    process.stdout.close()
            if reader is not threading.current_thread():
                reader.join(timeout=2)

        return Subscription(teardown, description='termux-sensor')

    @staticmethod
    def channel_for(sensor_key):
        key = sensor_key.lower()
        if 'gyro' in key or 'rotation rate' in key:
            return ROTATION
        if 'accel' in key:
            return ACCELERATION
        return None

    def _read_loop(self, process, stop_event, on_sample):
        json_buffer = ''
        brace_depth = 0
        try:
            for line in process.stdout:
                if stop_event.is_set():
                    break
                if not line:
                    continue

                json_buffer += line
                brace_depth += line.count('{') - line.count('}')

                # A complete object once the braces balance again
                if brace_depth != 0 or '{' not in json_buffer:
                    continue
                try:
                    data = orjson.loads(json_buffer)
                except orjson.JSONDecodeError:
                    data = {}
                json_buffer = ''
                brace_depth = 0

                for sensor_key, sensor_data in data.items():
                    if not isinstance(sensor_data, dict):
                        continue
                    values = sensor_data.get('values') or []
                    channel = self.channel_for(sensor_key)
                    if channel and len(values) >= 3:
                        on_sample(channel, float(values[0]), float(values[1]), float(values[2]))
        except ValueError:
            # stdout closed under us during teardown
            pass
        except Exception:
            logger.exception("Motion sensor reader crashed")


class TermuxBatterySource(BatterySource):

    blocking = True

    def __init__(self, command='termux-battery-status'):
        self.command = command

    def read(self):
        try:
            result = subprocess.run([self.command], capture_output=True, text=True, timeout=2)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("Battery status unavailable: %s", e)
            return None

        if result.returncode != 0 or not result.stdout:
            return None
        try:
            data = orjson.loads(result.stdout)
        except orjson.JSONDecodeError:
            return None
        if data.get('percentage') is None:
            return None

        return BatteryStatus(
            percentage=float(data['percentage']),
            power_save=False,
            charging=data.get('status') == 'CHARGING',
            temperature=data.get('temperature'),
        )
