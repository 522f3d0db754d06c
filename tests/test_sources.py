import io
import subprocess
import threading
from types import SimpleNamespace
from unittest import mock

import pytest

from trip_tracker.accuracy_selector import AccuracySelector
from trip_tracker.errors import (LocationUnavailable, PermissionDenied,
                                 ProviderUnavailable, SecurityRevoked)
from trip_tracker.models import AcquisitionMode
from trip_tracker.sources import (ACCELERATION, ROTATION, BatteryMonitor,
                                  BatterySource, BatteryStatus, StaticBatterySource,
                                  Subscription, get_battery_source,
                                  get_position_source)
from trip_tracker.sources import system, termux
from trip_tracker.sources.termux import (TermuxBatterySource,
                                         TermuxMotionSensors,
                                         TermuxPositionSource, _LocationPoller,
                                         parse_location)

from conftest import wait_until

LOCATION_JSON = '''{
  "latitude": 40.7128,
  "longitude": -74.006,
  "altitude": 12.0,
  "accuracy": 6.5,
  "vertical_accuracy": 3.0,
  "bearing": 90.0,
  "speed": 4.2,
  "elapsedMs": 12,
  "provider": "gps"
}'''

SENSOR_STREAM = '''{
  "LSM6DSO Linear Acceleration": {
    "values": [
      0.12,
      -0.05,
      0.31
    ]
  },
  "LSM6DSO Gyroscope": {
    "values": [
      0.01,
      0.02,
      -0.03
    ]
  }
}
{
  "Ambient Light": {
    "values": [
      120.0
    ]
  }
}
'''


def completed(stdout='', stderr='', returncode=0):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class FinishedProcess:

    def __init__(self, stdout='', stderr='', returncode=0):
        self.returncode = returncode
        self.output = (stdout, stderr)

    def poll(self):
        return self.returncode

    def communicate(self):
        return self.output


class StoppedDuringPoll(FinishedProcess):
    """Finished request whose subscription is closed between poll() and communicate()."""

    def __init__(self, poller, **kwargs):
        super().__init__(**kwargs)
        self.poller = poller

    def poll(self):
        self.poller.stop_event.set()
        self.poller.current_process = None
        return self.returncode


def make_poller(mode=AcquisitionMode.HIGH_ACCURACY, on_error=None):
    settings = AccuracySelector().settings_for(mode)
    return _LocationPoller(settings, on_fix=lambda fix: None, on_error=on_error or (lambda e: None))


class TestSubscription:

    def test_teardown_runs_once(self):
        calls = []
        subscription = Subscription(lambda: calls.append(1), description='test')
        subscription.close()
        subscription.cancel()
        assert calls == [1]
        assert subscription.closed
        assert 'closed' in repr(subscription)


class TestTermuxLocation:

    def test_parse_location(self):
        fix = parse_location(LOCATION_JSON, 'gps')
        assert fix.latitude == 40.7128
        assert fix.accuracy == 6.5
        assert fix.speed == 4.2
        assert fix.provider == 'gps'
        assert fix.timestamp > 0

    def test_parse_location_without_position(self):
        assert parse_location('{}', 'gps') is None

    def test_providers_per_mode(self):
        assert make_poller(AcquisitionMode.BALANCED).provider == 'gps'
        assert make_poller(AcquisitionMode.LOW_POWER).provider == 'network'
        passive = make_poller(AcquisitionMode.PASSIVE)
        assert passive.provider == 'passive'
        assert passive.poll_interval == 40.0

    def test_completed_request_yields_fix(self):
        poller = make_poller()
        poller.current_process = FinishedProcess(stdout=LOCATION_JSON)
        fix = poller.check_request()
        assert fix.longitude == -74.006
        assert poller.requests_completed == 1
        assert poller.current_process is None

    def test_failed_request_yields_nothing(self):
        poller = make_poller()
        poller.current_process = FinishedProcess(stderr='provider disabled', returncode=1)
        assert poller.check_request() is None

    def test_permission_error_raises_revoked(self):
        poller = make_poller()
        poller.current_process = FinishedProcess(
            stderr='java.lang.SecurityException: Permission Denial', returncode=1)
        with pytest.raises(SecurityRevoked):
            poller.check_request()

    def test_starvation_reported_once(self):
        errors = []
        poller = make_poller(on_error=errors.append)
        poller.last_success_time -= 60
        poller._check_starvation()
        poller._check_starvation()
        assert len(errors) == 1
        assert isinstance(errors[0], ProviderUnavailable)

    def test_stop_during_poll_reports_nothing(self):
        errors = []
        poller = make_poller(on_error=errors.append)
        poller.current_process = StoppedDuringPoll(poller, stdout=LOCATION_JSON)
        assert poller.check_request() is None
        assert errors == []

    def test_errors_during_teardown_not_reported(self):
        errors = []
        poller = make_poller(on_error=errors.append)

        def closed_under_us():
            poller.stop_event.set()
            raise ValueError("I/O operation on closed file")

        poller.check_request = closed_under_us
        poller.run()
        assert errors == []

    def test_crash_while_running_is_reported(self):
        errors = []
        poller = make_poller(on_error=errors.append)
        poller.check_request = mock.Mock(side_effect=RuntimeError("boom"))
        poller.run()
        assert len(errors) == 1
        assert isinstance(errors[0], ProviderUnavailable)

    def test_missing_binary_is_unavailable(self):
        with mock.patch.object(termux.shutil, 'which', return_value=None):
            with pytest.raises(LocationUnavailable):
                TermuxPositionSource().check_available()

    def test_permission_check(self):
        with mock.patch.object(termux.shutil, 'which', return_value='/bin/termux-location'), \
                mock.patch.object(termux.subprocess, 'run',
                                  return_value=completed(stderr='Permission denied')):
            with pytest.raises(PermissionDenied):
                TermuxPositionSource().check_available()

    def test_availability_check_timeout_is_not_fatal(self):
        timeout = subprocess.TimeoutExpired(cmd='termux-location', timeout=10)
        with mock.patch.object(termux.shutil, 'which', return_value='/bin/termux-location'), \
                mock.patch.object(termux.subprocess, 'run', side_effect=timeout):
            TermuxPositionSource().check_available()

    def test_last_known(self):
        with mock.patch.object(termux.subprocess, 'run', return_value=completed(stdout=LOCATION_JSON)):
            fix = TermuxPositionSource().get_last_known()
        assert fix.latitude == 40.7128

    def test_last_known_unavailable(self):
        with mock.patch.object(termux.subprocess, 'run', side_effect=FileNotFoundError()):
            assert TermuxPositionSource().get_last_known() is None


class TestTermuxSensors:

    def test_channel_mapping(self):
        assert TermuxMotionSensors.channel_for('LSM6DSO Linear Acceleration') == ACCELERATION
        assert TermuxMotionSensors.channel_for('gyroscope') == ROTATION
        assert TermuxMotionSensors.channel_for('Ambient Light') is None

    def test_reads_multiline_json_stream(self):
        samples = []
        process = SimpleNamespace(stdout=io.StringIO(SENSOR_STREAM))
        TermuxMotionSensors()._read_loop(process, threading.Event(),
                                         lambda *sample: samples.append(sample))
        assert samples == [
            (ACCELERATION, 0.12, -0.05, 0.31),
            (ROTATION, 0.01, 0.02, -0.03),
        ]


class TestBattery:

    def test_termux_battery(self):
        output = '{"health": "GOOD", "percentage": 42, "plugged": "UNPLUGGED", "status": "DISCHARGING", "temperature": 31.5}'
        with mock.patch.object(termux.subprocess, 'run', return_value=completed(stdout=output)):
            status = TermuxBatterySource().read()
        assert status.percentage == 42.0
        assert not status.charging
        assert status.temperature == 31.5

    def test_termux_battery_unavailable(self):
        with mock.patch.object(termux.subprocess, 'run', side_effect=FileNotFoundError()):
            assert TermuxBatterySource().read() is None

    def test_psutil_battery(self):
        reading = SimpleNamespace(percent=22.0, power_plugged=False, secsleft=3600)
        with mock.patch.object(system.psutil, 'sensors_battery', return_value=reading):
            status = system.PsutilBatterySource(power_save_below=25).read()
        assert status.percentage == 22.0
        assert status.power_save

    def test_psutil_without_battery(self):
        with mock.patch.object(system.psutil, 'sensors_battery', return_value=None):
            assert system.PsutilBatterySource().read() is None

    def test_static_battery(self):
        assert StaticBatterySource(55.0).read().percentage == 55.0

    def test_only_termux_battery_blocks(self):
        assert TermuxBatterySource.blocking
        assert not system.PsutilBatterySource.blocking
        assert not StaticBatterySource.blocking


class TestBatteryMonitor:

    def test_read_returns_cached_status(self):
        source = mock.Mock(spec=BatterySource)
        source.read.side_effect = [BatteryStatus(percentage=50.0), None]
        monitor = BatteryMonitor(source, interval_s=60.0)
        monitor.start()
        try:
            assert monitor.read().percentage == 50.0
            assert monitor.read().percentage == 50.0
            assert source.read.call_count == 1

            # A failed refresh keeps the last good reading
            assert monitor.refresh() is None
            assert monitor.read().percentage == 50.0
            assert monitor.refreshes == 2
        finally:
            monitor.stop()
        assert monitor.stop_event.is_set()

    def test_refreshes_on_interval(self):
        source = StaticBatterySource(70.0)
        monitor = BatteryMonitor(source, interval_s=0.01)
        monitor.start()
        try:
            assert wait_until(lambda: monitor.refreshes >= 3)
        finally:
            monitor.stop()


def test_factories():
    assert isinstance(get_battery_source('static'), StaticBatterySource)
    assert isinstance(get_position_source('termux'), TermuxPositionSource)
    with pytest.raises(ValueError):
        get_position_source('bluetooth')
    with pytest.raises(ValueError):
        get_battery_source('solar')
