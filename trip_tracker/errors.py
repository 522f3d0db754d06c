"""
Exception taxonomy for the tracking pipeline.

Fix-level rejections never surface as exceptions; only session-level failures
reach the caller, once, at the session boundary.
"""


class TripTrackerError(Exception):
    """Base class for all tracker errors."""


class PermissionDenied(TripTrackerError):
    """Location permission missing when a session starts."""


class LocationUnavailable(TripTrackerError):
    """No location provider enabled when a session starts."""


class ProviderUnavailable(TripTrackerError):
    """Provider temporarily unavailable. Recovered by downgrading the acquisition mode."""


class SecurityRevoked(TripTrackerError):
    """Permission revoked mid-session. Fatal: the session terminates."""


class InvalidFix(TripTrackerError):
    """A fix failed a quality check. Routine noise, carried as a rejection reason only."""

    def __init__(self, reason, fix=None, detail=''):
        message = getattr(reason, 'value', reason)
        super().__init__(f"{message} ({detail})" if detail else message)
        self.reason = reason
        self.fix = fix
        self.detail = detail


class ClassificationFailure(TripTrackerError):
    """Role classification could not run. Converted to an UNKNOWN verdict."""


class InvalidStateTransition(TripTrackerError):
    """Lifecycle method called in a state that does not allow it."""


class TripFinalizedError(TripTrackerError):
    """A finalized trip accumulator received another fix."""


class TripNotFound(TripTrackerError, KeyError):
    """No stored trip with the requested id."""
