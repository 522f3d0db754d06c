"""
Battery source backed by psutil, for laptops and non-Termux Linux devices.
"""

import logging

import psutil

from .base import BatterySource, BatteryStatus

logger = logging.getLogger(__name__)


class PsutilBatterySource(BatterySource):

    def __init__(self, power_save_below=None):
        # psutil has no power-save flag; optionally infer one from the level
        self.power_save_below = power_save_below

    def read(self):
        try:
            battery = psutil.sensors_battery()
        except (AttributeError, NotImplementedError, OSError) as e:
            logger.debug("psutil battery read failed: %s", e)
            return None

        if battery is None:
            return None

        power_save = (self.power_save_below is not None and
                      not battery.power_plugged and
                      battery.percent < self.power_save_below)
        return BatteryStatus(
            percentage=float(battery.percent),
            power_save=power_save,
            charging=bool(battery.power_plugged),
        )
