"""
Pluggable platform collaborators.

Example usage:
    positions = get_position_source('termux')
    positions = get_position_source('replay', path='session.json.gz', clock=clock)
    battery = get_battery_source('psutil')
"""

from .base import (ACCELERATION, ROTATION, BatteryMonitor, BatterySource,
                   BatteryStatus, MotionSensorSource, PositionSource, StaticBatterySource,
                   Subscription)


def get_position_source(source_type='termux', **kwargs):
    """
    Factory function to get a position source by name.

    Args:
        source_type (str): 'termux' (live phone) or 'replay' (recorded file, needs path=)
        **kwargs: passed to the source constructor

    Raises:
        ValueError: If source_type is not recognized
    """
    if source_type == 'termux':
        from .termux import TermuxPositionSource
        return TermuxPositionSource(**kwargs)
    elif source_type == 'replay':
        from .replay import ReplayPositionSource
        path = kwargs.pop('path')
        return ReplayPositionSource.from_file(path, **kwargs)
    else:
        raise ValueError(f"Unknown position source: {source_type}. Use 'termux' or 'replay'")


def get_battery_source(source_type='termux', **kwargs):
    """
    Factory function to get a battery source by name.

    Args:
        source_type (str): 'termux', 'psutil' or 'static'
    """
    if source_type == 'termux':
        from .termux import TermuxBatterySource
        return TermuxBatterySource(**kwargs)
    elif source_type == 'psutil':
        from .system import PsutilBatterySource
        return PsutilBatterySource(**kwargs)
    elif source_type == 'static':
        return StaticBatterySource(**kwargs)
    else:
        raise ValueError(f"Unknown battery source: {source_type}. Use 'termux', 'psutil' or 'static'")


__all__ = [
    'ACCELERATION', 'ROTATION', 'BatteryMonitor', 'BatterySource', 'BatteryStatus',
    'MotionSensorSource', 'PositionSource', 'StaticBatterySource',
    'Subscription', 'get_battery_source', 'get_position_source',
]
