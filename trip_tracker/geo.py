"""
Shared geodesic and unit helpers.

Every distance in the tracker (quality filter, trip accumulator, GPX export)
goes through haversine_distance() so the numbers agree with each other.
"""

import math

EARTH_RADIUS_M = 6371000.0

MPS_TO_KMH = 3.6
MPS_TO_MPH = 2.23694
METERS_TO_MILES = 0.000621371
METERS_TO_KILOMETERS = 0.001


def haversine_distance(lat1, lon1, lat2, lon2):
    """
    Calculate distance between two GPS coordinates in meters.

    Args:
        lat1, lon1: First coordinate (latitude, longitude in degrees)
        lat2, lon2: Second coordinate (latitude, longitude in degrees)

    Returns:
        float: Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (math.sin(delta_phi/2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda/2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1-a))

    return EARTH_RADIUS_M * c


def fix_distance(a, b):
    """Haversine distance between two PositionFix-like objects (meters)."""
    return haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)


def mps_to_kmh(speed_mps):
    return speed_mps * MPS_TO_KMH


def kmh_to_mps(speed_kmh):
    return speed_kmh / MPS_TO_KMH


def mps_to_mph(speed_mps):
    return speed_mps * MPS_TO_MPH


def format_distance(meters, imperial=False):
    """Format distance for display, e.g. '5.2 mi' or '8.4 km'."""
    if imperial:
        return f"{meters * METERS_TO_MILES:.1f} mi"
    return f"{meters * METERS_TO_KILOMETERS:.1f} km"


def format_speed(speed_mps, imperial=False):
    """Format speed for display, e.g. '65 mph' or '105 km/h'."""
    if imperial:
        return f"{int(mps_to_mph(speed_mps))} mph"
    return f"{int(mps_to_kmh(speed_mps))} km/h"


def format_duration(duration_ms):
    """Format a duration in milliseconds as '1h 23m', '5m 12s' or '42s'."""
    seconds = int(duration_ms // 1000)
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60

    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
