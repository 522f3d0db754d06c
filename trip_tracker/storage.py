"""
Trip persistence.

The tracking core only needs an opaque sink/source for finalized trips:
save, get, list, delete. Two implementations:

- InMemoryTripStore: process-local dict, for tests and replays
- JsonTripStore: one gzip-compressed JSON file per trip, written atomically
  (temp file + rename) so a crash mid-save never leaves a truncated trip
"""

import gzip
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

import orjson

from .errors import TripNotFound
from .models import TripRecord

logger = logging.getLogger(__name__)


class TripStore(ABC):

    @abstractmethod
    def save(self, record):
        pass

    @abstractmethod
    def get(self, trip_id):
        """Return the TripRecord; raise TripNotFound if absent."""
        pass

    @abstractmethod
    def list(self):
        """All trips, newest first."""
        pass

    @abstractmethod
    def delete(self, trip_id):
        pass

    def delete_all(self):
        for record in self.list():
            self.delete(record.id)

    def count(self):
        return len(self.list())


class InMemoryTripStore(TripStore):

    def __init__(self):
        self.trips = {}
        self.lock = threading.Lock()

    def save(self, record):
        with self.lock:
            self.trips[record.id] = record

    def get(self, trip_id):
        with self.lock:
            try:
                return self.trips[trip_id]
            except KeyError:
                raise TripNotFound(trip_id) from None

    def list(self):
        with self.lock:
            return sorted(self.trips.values(), key=lambda r: r.start_time, reverse=True)

    def delete(self, trip_id):
        with self.lock:
            if self.trips.pop(trip_id, None) is None:
                raise TripNotFound(trip_id)

    def count(self):
        with self.lock:
            return len(self.trips)


class JsonTripStore(TripStore):

    SUFFIX = '.json.gz'

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, trip_id):
        if not trip_id or os.sep in trip_id or trip_id.startswith('.'):
            raise TripNotFound(trip_id)
        return self.directory / f"{trip_id}{self.SUFFIX}"

    def save(self, record):
        path = self._path(record.id)
        temp_path = path.with_name(path.name + '.tmp')

        with gzip.open(temp_path, 'wb') as f:
            f.write(orjson.dumps(record.to_dict()))
        os.replace(temp_path, path)
        logger.info("Saved trip %s to %s", record.id, path)
        return path

    def _read(self, path):
        with gzip.open(path, 'rb') as f:
            return TripRecord.from_dict(orjson.loads(f.read()))

    def get(self, trip_id):
        path = self._path(trip_id)
        if not path.exists():
            raise TripNotFound(trip_id)
        return self._read(path)

    def list(self):
        records = []
        for path in self.directory.glob(f"*{self.SUFFIX}"):
            try:
                records.append(self._read(path))
            except (OSError, orjson.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning("Skipping unreadable trip file %s: %s", path, e)
        return sorted(records, key=lambda r: r.start_time, reverse=True)

    def delete(self, trip_id):
        path = self._path(trip_id)
        try:
            path.unlink()
        except FileNotFoundError:
            raise TripNotFound(trip_id) from None

    def count(self):
        return sum(1 for _ in self.directory.glob(f"*{self.SUFFIX}"))


def _iso(ms):
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def export_gpx(record, path):
    """Write a trip's fixes as a GPX 1.1 track."""
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<gpx version="1.1" creator="trip-tracker" xmlns="http://www.topografix.com/GPX/1/1">',
        '  <metadata>',
        f'    <name>Trip {record.id}</name>',
        f'    <time>{_iso(record.start_time)}</time>',
        '  </metadata>',
        '  <trk>',
        f'    <name>Trip {record.id}</name>',
        '    <trkseg>',
    ]
    for fix in record.fixes:
        lines.append(f'      <trkpt lat="{fix.latitude}" lon="{fix.longitude}">')
        if fix.altitude is not None:
            lines.append(f'        <ele>{fix.altitude}</ele>')
        lines.append(f'        <time>{_iso(fix.timestamp)}</time>')
        lines.append('      </trkpt>')
    lines += ['    </trkseg>', '  </trk>', '</gpx>', '']

    path = Path(path)
    path.write_text('\n'.join(lines), encoding='utf-8')
    return path
