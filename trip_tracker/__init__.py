"""
Adaptive trip tracking: quality-filtered position acquisition that trades
accuracy for battery as conditions change, trip statistics, and a heuristic
driver/passenger classifier.
"""

__version__ = '0.1.0'

from .accumulator import TripAccumulator
from .accuracy_selector import AccuracySelector
from .acquisition import AcquisitionHandle, AcquisitionLoop, LoopState
from .config import TrackerConfig, load_config
from .models import (AcceptedFix, AcquisitionMode, PositionFix, RoleVerdict,
                     TripRecord, TripSnapshot, TripStatus, UserRole)
from .quality_filter import FilterDecision, QualityFilter, RejectReason
from .role_classifier import ClassificationLoop, RoleClassifier, UsageCounters
from .session import TrackingSession
from .signal_window import SignalWindow

__all__ = [
    'AcceptedFix', 'AccuracySelector', 'AcquisitionHandle', 'AcquisitionLoop',
    'AcquisitionMode', 'ClassificationLoop', 'FilterDecision', 'LoopState',
    'PositionFix', 'QualityFilter', 'RejectReason', 'RoleClassifier',
    'RoleVerdict', 'SignalWindow', 'TrackerConfig', 'TrackingSession',
    'TripAccumulator', 'TripRecord', 'TripSnapshot', 'TripStatus',
    'UsageCounters', 'UserRole', 'load_config',
]
