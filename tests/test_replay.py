import gzip
import threading

import orjson
import pytest

from trip_tracker.config import SessionConfig, TrackerConfig
from trip_tracker.models import AcquisitionMode, ModeSettings, TripRecord, TripStatus
from trip_tracker.session import TrackingSession
from trip_tracker.sources import get_position_source
from trip_tracker.sources.replay import (ReplayClock, ReplayPositionSource,
                                         fix_from_sample, load_fixes)
from trip_tracker.storage import InMemoryTripStore, JsonTripStore

from conftest import BASE_TIME_MS, fix_at, wait_until

T0 = BASE_TIME_MS
SETTINGS = ModeSettings(AcquisitionMode.HIGH_ACCURACY, 5000, 10.0)


def motion_tracker_session(count=5):
    """Session dump in the motion tracker's gps_samples layout (timestamps in seconds)."""
    return {
        'start_time': '2023-11-14T22:13:20',
        'gps_samples': [
            {
                'timestamp': T0 / 1000 + 10 * i,
                'gps': {
                    'latitude': 40.0 + 0.001 * i,
                    'longitude': -73.0,
                    'accuracy': 5.0,
                    'speed': 1.0,
                    'altitude': 10.0,
                },
            }
            for i in range(count)
        ],
        'accel_samples': [],
    }


def test_fix_from_nested_sample():
    fix = fix_from_sample(motion_tracker_session()['gps_samples'][1])
    assert fix.timestamp == T0 + 10_000
    assert fix.latitude == pytest.approx(40.001)
    assert fix.provider == 'replay'


def test_fix_from_flat_sample_with_iso_time():
    fix = fix_from_sample({'latitude': 1.0, 'longitude': 2.0, 'accuracy': 4.0,
                           'timestamp': '2023-11-14T22:13:20Z'})
    assert fix.timestamp == T0


def test_samples_without_position_are_skipped():
    assert fix_from_sample({'timestamp': 1.0, 'gps': None}) is None
    assert fix_from_sample({'latitude': 1.0, 'longitude': 2.0}) is None


def test_load_gzipped_session(tmp_path):
    path = tmp_path / 'motion_track_v2_20231114.json.gz'
    with gzip.open(path, 'wb') as f:
        f.write(orjson.dumps(motion_tracker_session(count=3)))
    fixes = load_fixes(path)
    assert [f.timestamp for f in fixes] == [T0, T0 + 10_000, T0 + 20_000]


def test_load_stored_trip(tmp_path):
    fixes = (fix_at(40.0, -73.0, T0 + 5000), fix_at(40.001, -73.0, T0))
    record = TripRecord('t', T0, T0 + 5000, 111.0, 1.0, 1.0, 2, fixes=fixes)
    path = JsonTripStore(tmp_path).save(record)
    loaded = load_fixes(path)
    assert [f.timestamp for f in loaded] == [T0, T0 + 5000]


def test_load_plain_list(tmp_path):
    path = tmp_path / 'fixes.json'
    path.write_bytes(orjson.dumps([f.to_dict() for f in (fix_at(1.0, 2.0, T0),)]))
    assert load_fixes(path)[0].latitude == 1.0


def test_replay_clock():
    clock = ReplayClock(1000)
    clock.advance(500)
    assert clock() == 1500
    clock.set(T0)
    assert clock.now() == T0


def test_source_delivers_in_order_and_drives_clock():
    fixes = [fix_at(40.0 + 0.001 * i, -73.0, T0 + 1000 * i) for i in range(4)]
    clock = ReplayClock()
    source = ReplayPositionSource(fixes, clock=clock)
    received = []
    subscription = source.subscribe(SETTINGS, received.append, lambda e: None)
    assert source.finished.wait(2.0)
    subscription.close()

    assert received == fixes
    assert clock() == T0 + 3000
    assert source.get_last_known() is fixes[-1]
    assert source.subscriptions == [SETTINGS]


def test_resubscription_resumes_without_duplicates():
    fixes = [fix_at(40.0, -73.0, T0 + 1000 * i) for i in range(6)]
    source = ReplayPositionSource(fixes, pace_s=0.02)
    received = []
    lock = threading.Lock()

    def collect(fix):
        with lock:
            received.append(fix)

    first = source.subscribe(SETTINGS, collect, lambda e: None)
    assert wait_until(lambda: len(received) >= 2)
    first.close()

    second = source.subscribe(SETTINGS, collect, lambda e: None)
    assert source.finished.wait(2.0)
    second.close()
    assert received == fixes


def test_factory_requires_path(tmp_path):
    path = tmp_path / 'session.json'
    path.write_bytes(orjson.dumps(motion_tracker_session(count=2)))
    source = get_position_source('replay', path=path)
    assert len(source.fixes) == 2


def test_replayed_session_end_to_end(tmp_path):
    path = tmp_path / 'session.json.gz'
    with gzip.open(path, 'wb') as f:
        f.write(orjson.dumps(motion_tracker_session(count=5)))

    clock = ReplayClock(T0)
    source = ReplayPositionSource.from_file(path, clock=clock)
    store = InMemoryTripStore()
    session = TrackingSession(source, store=store, clock=clock,
                              config=TrackerConfig(session=SessionConfig(drain_timeout_s=2.0)))
    session.start()
    assert source.finished.wait(2.0)
    assert wait_until(lambda: session.snapshot().fix_count == 5)
    record = session.stop()

    assert record.status is TripStatus.COMPLETED
    assert record.fix_count == 5
    assert record.distance_m == pytest.approx(4 * 111.19, abs=2.0)
    assert record.duration_ms == 40_000
    assert record.avg_speed == pytest.approx(1.0)
    assert store.get(record.id) is record
