"""
Exceptions raised by the family alerts core
"""


class FamilyAlertsError(Exception):
    """Base class for every error raised by this package."""


class StoreError(FamilyAlertsError):
    """A storage collaborator failed for a reason other than 'not found'."""


class TransientStoreError(StoreError):
    """A storage fault that is worth retrying (unavailable, deadline, aborted)."""


class DuplicateNotificationError(FamilyAlertsError):
    """A conditional insert found the record already written by another evaluator."""


class GeofenceValidationError(FamilyAlertsError):
    """Geofence data rejected before it reaches the registry."""

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.field = field


class GeofencePermissionError(FamilyAlertsError):
    """Editor is not allowed to change geofences of that group."""


class SosResetError(FamilyAlertsError):
    """The SOS trigger could not be rearmed."""
