"""
Trip tracker command line.

    trip-tracker track                          # live, Termux:API on the phone
    trip-tracker track --source replay --replay-file motion_track_v2_*.json.gz
    trip-tracker list
    trip-tracker show <trip-id>
    trip-tracker export-gpx <trip-id> --output trip.gpx
    trip-tracker delete <trip-id>
"""

import argparse
import logging
import signal
import sys
import threading
import time
from pathlib import Path

from . import __version__
from .config import load_config, replace_section
from .errors import LocationUnavailable, PermissionDenied, TripNotFound
from .geo import format_distance, format_duration, format_speed, mps_to_kmh
from .models import SessionEventKind
from .role_classifier import UsageCounters
from .session import TrackingSession
from .sources import get_battery_source, get_position_source
from .sources.replay import ReplayClock
from .storage import JsonTripStore, export_gpx

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_DIR = Path.home() / 'gps_tracks' / 'trips'


def configure_logging(verbose=False, quiet=False):
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')


def build_parser():
    parser = argparse.ArgumentParser(prog='trip-tracker', description=__doc__,
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', type=Path, help="JSON config file (filter/selector/classifier/session)")
    parser.add_argument('--storage-dir', type=Path,
                        help=f"Trip storage directory (default: {DEFAULT_STORAGE_DIR})")
    parser.add_argument('-v', '--verbose', action='store_true', help="Debug logging")
    parser.add_argument('-q', '--quiet', action='store_true', help="Warnings and errors only")

    sub = parser.add_subparsers(dest='command', required=True)

    track = sub.add_parser('track', help="Track a trip until Ctrl+C, --duration or end of replay")
    track.add_argument('--source', choices=['termux', 'replay'], default='termux')
    track.add_argument('--replay-file', type=Path, help="Recorded session for --source replay")
    track.add_argument('--pace', type=float, default=0.01,
                       help="Seconds between replayed fixes (default: 0.01)")
    track.add_argument('--battery', choices=['termux', 'psutil', 'static'],
                       help="Battery source (default: termux live, static for replay)")
    track.add_argument('--duration', type=float, help="Stop after this many minutes")
    track.add_argument('--no-sensors', action='store_true',
                       help="Skip motion sensors (role verdict stays UNKNOWN)")
    track.add_argument('--imperial', action='store_true', help="Show mi and mph")

    sub.add_parser('list', help="List stored trips, newest first")

    show = sub.add_parser('show', help="Show one stored trip")
    show.add_argument('trip_id')

    delete = sub.add_parser('delete', help="Delete a stored trip")
    delete.add_argument('trip_id')

    gpx = sub.add_parser('export-gpx', help="Export a stored trip as GPX")
    gpx.add_argument('trip_id')
    gpx.add_argument('--output', type=Path, help="Output path (default: <trip-id>.gpx)")

    return parser


def _storage_dir(args, config):
    if args.storage_dir:
        return args.storage_dir
    if config.session.storage_dir:
        return Path(config.session.storage_dir)
    return DEFAULT_STORAGE_DIR


def _build_session(args, config, store):
    clock = None
    motion_sensors = None

    if args.source == 'replay':
        if args.replay_file is None:
            raise SystemExit("--replay-file is required with --source replay")
        clock = ReplayClock()
        positions = get_position_source('replay', path=args.replay_file, clock=clock, pace_s=args.pace)
        if not positions.fixes:
            raise SystemExit(f"No fixes found in {args.replay_file}")
        clock.set(positions.fixes[0].timestamp)
        battery = get_battery_source(args.battery or 'static')
    else:
        positions = get_position_source('termux')
        battery = get_battery_source(args.battery or 'termux')
        if not args.no_sensors:
            from .sources.termux import TermuxMotionSensors
            motion_sensors = TermuxMotionSensors(delay_ms=config.session.sensor_delay_ms)

    usage = UsageCounters()
    kwargs = {'clock': clock} if clock is not None else {}
    session = TrackingSession(positions, battery=battery, motion_sensors=motion_sensors,
                              store=store, config=config, usage_provider=usage.snapshot, **kwargs)
    return session, positions


def cmd_track(args, config, store):
    session, positions = _build_session(args, config, store)
    stop_event = threading.Event()

    def handle_signal(signum, frame):
        print(f"\n\n⚠ Received {signal.Signals(signum).name}, stopping trip...")
        stop_event.set()

    previous_handlers = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        return _run_trip(args, config, store, session, positions, stop_event)
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)


def _run_trip(args, config, store, session, positions, stop_event):

    def on_event(event):
        if event.kind is SessionEventKind.MODE_CHANGED:
            print(f"↻ Acquisition mode: {event.mode.label}")
        elif event.kind is SessionEventKind.ERROR:
            print(f"⚠ Tracking error: {event.error}")
            stop_event.set()

    session.event_listeners.append(on_event)

    print("\n" + "=" * 60)
    print("TRIP TRACKER")
    print("=" * 60)
    print(f"  Source:   {args.source}")
    if args.duration:
        print(f"  Duration: {args.duration} minutes")
    else:
        print("  Duration: until stopped (Ctrl+C)")
    print(f"  Storage:  {store.directory}")

    try:
        session.start()
    except PermissionDenied as e:
        print(f"✗ Location permission denied: {e}")
        return 2
    except LocationUnavailable as e:
        print(f"✗ Location unavailable: {e}")
        return 2

    print(f"✓ Trip {session.trip_id} started in {session.loop.mode.label} mode\n")
    print(f"{'Time':<8} | {'Distance':<10} | {'Avg speed':<12} | {'Fixes':<6} | {'State':<7} | {'Mode':<14} | Role")

    deadline = time.monotonic() + args.duration * 60 if args.duration else None
    interval = 1.0 if args.source == 'replay' else config.session.snapshot_interval_s
    finished = getattr(positions, 'finished', None)

    while not stop_event.wait(interval):
        if not session.active:
            break
        _print_status(session, args.imperial)
        if deadline is not None and time.monotonic() >= deadline:
            break
        if finished is not None and finished.is_set():
            break

    record = session.stop()
    _print_summary(record, session, args.imperial)
    return 0 if record is not None and record.is_completed else 1


def _print_status(session, imperial):
    snapshot = session.snapshot()
    if snapshot is None:
        return
    mode = session.loop.mode.label if session.loop.mode else '-'
    verdict = session.verdict
    role = f"{verdict.role.value} ({verdict.confidence:.2f})" if verdict else '-'
    last = session.last_fix
    state = '-' if last is None else 'moving' if last.fix.is_moving() else 'stopped'
    print(f"{format_duration(snapshot.duration_ms):<8} | "
          f"{format_distance(snapshot.distance_m, imperial):<10} | "
          f"{format_speed(snapshot.avg_speed, imperial):<12} | "
          f"{snapshot.fix_count:<6} | {state:<7} | {mode:<14} | {role}")


def _print_summary(record, session, imperial):
    if record is None:
        return
    status = session.get_status()
    print("\n" + "=" * 60)
    print(f"TRIP {record.status.value}")
    print("=" * 60)
    _print_record(record, imperial)
    print(f"Fixes processed:  {status['fixes_processed']} ({status['fixes_accepted']} accepted)")
    if status['rejections']:
        for reason, count in sorted(status['rejections'].items()):
            print(f"  rejected {reason}: {count}")
        if status['last_rejection']:
            print(f"  last rejection: {status['last_rejection']}")
    verdict = session.verdict
    if verdict is not None:
        print(f"Role:             {verdict.role.value} ({verdict.confidence:.2f})")
        print(f"  {verdict.reasoning}")


def _print_record(record, imperial=False):
    print(f"Trip:             {record.id}")
    print(f"Status:           {record.status.value}")
    print(f"Duration:         {format_duration(record.duration_ms)}")
    print(f"Distance:         {format_distance(record.distance_m, imperial)}")
    print(f"Average speed:    {format_speed(record.avg_speed, imperial)}")
    print(f"Max speed:        {format_speed(record.max_speed, imperial)}")
    print(f"Fixes:            {record.fix_count}")


def cmd_list(args, config, store):
    records = store.list()
    if not records:
        print("No trips stored")
        return 0
    print(f"{'Trip':<36} | {'Status':<9} | {'Duration':<8} | {'Distance':<10} | Max km/h")
    for record in records:
        print(f"{record.id:<36} | {record.status.value:<9} | "
              f"{format_duration(record.duration_ms):<8} | "
              f"{format_distance(record.distance_m):<10} | {mps_to_kmh(record.max_speed):.1f}")
    return 0


def cmd_show(args, config, store):
    _print_record(store.get(args.trip_id))
    return 0


def cmd_delete(args, config, store):
    store.delete(args.trip_id)
    print(f"✓ Deleted trip {args.trip_id}")
    return 0


def cmd_export_gpx(args, config, store):
    record = store.get(args.trip_id)
    output = args.output or Path(f"{record.id}.gpx")
    export_gpx(record, output)
    print(f"✓ Exported {record.fix_count} fixes to {output}")
    return 0


COMMANDS = {
    'track': cmd_track,
    'list': cmd_list,
    'show': cmd_show,
    'delete': cmd_delete,
    'export-gpx': cmd_export_gpx,
}


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    config = load_config(args.config)
    storage_dir = _storage_dir(args, config)
    config = replace_section(config, 'session', storage_dir=str(storage_dir))
    store = JsonTripStore(storage_dir)

    try:
        return COMMANDS[args.command](args, config, store)
    except TripNotFound as e:
        print(f"✗ Trip not found: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
