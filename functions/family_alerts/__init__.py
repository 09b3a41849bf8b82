"""
Family alerts for Firebase Functions

This package provides the shared alerting core used by both the Cloud
Functions triggers and the foreground client loop:
- Distance and geofence membership
- Transition detection (geofence entry/exit, low battery, SOS)
- Cooldown gate anchored in the notifications collection
- FCM fan-out to the rest of the family
"""

from .models import (
    Coordinate,
    LocationSample,
    StatusSample,
    Geofence,
    Subject,
    NotificationKind,
    CandidateEvent,
    NotificationEvent,
    DispatchResult,
    GateDecision,
    PushOutcome,
)
from .utils import haversine_m, is_inside
from .triggers import detect_geofence_transitions, detect_low_battery, consume_sos
from .cooldown import CooldownGate
from .sender import NotificationDispatcher, FcmPushSender, build_message, build_push_payload
from .engine import AlertEngine
from .geofences import GeofenceEditor, validate_geofence_input
from .pipeline import IngestionCoordinator, SubjectTracker, GeofenceCache, HistoryTrail, start_client_runtime

__all__ = [
    # Models
    'Coordinate',
    'LocationSample',
    'StatusSample',
    'Geofence',
    'Subject',
    'NotificationKind',
    'CandidateEvent',
    'NotificationEvent',
    'DispatchResult',
    'GateDecision',
    'PushOutcome',

    # Core
    'haversine_m',
    'is_inside',
    'detect_geofence_transitions',
    'detect_low_battery',
    'consume_sos',
    'CooldownGate',
    'NotificationDispatcher',
    'FcmPushSender',
    'build_message',
    'build_push_payload',
    'AlertEngine',

    # Adapters
    'GeofenceEditor',
    'validate_geofence_input',
    'IngestionCoordinator',
    'SubjectTracker',
    'GeofenceCache',
    'HistoryTrail',
    'start_client_runtime',
]
