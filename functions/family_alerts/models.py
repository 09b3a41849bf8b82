"""
Family alerts data models
"""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from firebase_functions import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

UTC = datetime.timezone.utc


class NotificationKind(str, Enum):
    """Closed set of notification types stored in the 'type' field."""
    SOS = "sos"
    LOW_BATTERY = "low_battery"
    GEOFENCE_ENTRY = "geofence_entry"
    GEOFENCE_EXIT = "geofence_exit"
    INFO = "info"

    @property
    def is_geofence(self) -> bool:
        return self in (NotificationKind.GEOFENCE_ENTRY, NotificationKind.GEOFENCE_EXIT)


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def describe(self) -> str:
        return f"{self.latitude:.4f}, {self.longitude:.4f}"


@dataclass(frozen=True)
class LocationSample:
    """One reported device position. captured_at is None when the producer sent no timestamp."""
    latitude: float
    longitude: float
    captured_at: Optional[datetime.datetime] = None

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


@dataclass(frozen=True)
class StatusSample:
    battery_percent: Optional[float]
    captured_at: Optional[datetime.datetime] = None


@dataclass(frozen=True)
class Geofence:
    id: str
    group_id: str
    name: str
    center: Coordinate
    radius_m: float


@dataclass
class Subject:
    """A tracked family member as read from users/{uid}."""
    id: str
    name: str = "A family member"
    group_id: Optional[str] = None
    role: Optional[str] = None
    push_token: Optional[str] = None
    location_sharing: bool = True
    battery_alerts: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class CandidateEvent:
    """Detector output waiting for the cooldown gate."""
    subject_id: str
    kind: NotificationKind
    fence_id: Optional[str] = None
    fence_name: Optional[str] = None
    location: Optional[Coordinate] = None
    battery_percent: Optional[float] = None
    detail: Optional[str] = None


@dataclass
class NotificationEvent:
    """
    Durable per-recipient notification record.

    It is both the entry shown in a recipient's notification list and the
    ledger the cooldown gate reads back.
    """
    group_id: str
    kind: NotificationKind
    title: str
    message: str
    subject_id: str
    recipient_id: str
    occurred_at: datetime.datetime
    related_geofence_id: Optional[str] = None
    related_location: Optional[Coordinate] = None
    acknowledged: bool = False
    id: Optional[str] = None


class GateDecision(str, Enum):
    ALLOWED = "allowed"
    BLOCKED = "blocked"


class PushOutcome(str, Enum):
    DELIVERED = "delivered"
    INVALID_TOKEN = "invalid_token"
    FAILED = "failed"


@dataclass
class DispatchResult:
    """Outcome of fanning one event out to a group."""
    kind: NotificationKind
    subject_id: str
    recipients: List[str] = field(default_factory=list)
    recorded: List[str] = field(default_factory=list)
    deduplicated: List[str] = field(default_factory=list)
    delivered: List[str] = field(default_factory=list)
    failed_writes: List[str] = field(default_factory=list)
    blocked: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        # Push failures never make a dispatch unsuccessful, only lost records do.
        return not self.failed_writes and self.error is None


# ---------------------------------------------------------------------------
# Boundary validation for raw Firestore / RTDB documents
# ---------------------------------------------------------------------------

class CoordinateDocument(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False, from_attributes=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)


def _attributes_to_dict(value: Any) -> Any:
    # Firestore hands GeoPoint objects, the client SDKs plain maps.
    if value is not None and not isinstance(value, dict) and hasattr(value, "latitude"):
        return {"latitude": getattr(value, "latitude", None), "longitude": getattr(value, "longitude", None)}
    return value


class LocationDocument(CoordinateDocument):
    timestamp: Optional[float] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _drop_placeholder_timestamp(cls, value):
        # Unresolved server timestamps arrive as {".sv": "timestamp"}
        return value if isinstance(value, (int, float)) and not isinstance(value, bool) else None


class GeofenceDocument(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    name: Optional[str] = None
    familyId: str
    center: CoordinateDocument
    radius: float = Field(gt=0)

    @field_validator("center", mode="before")
    @classmethod
    def _center_from_geopoint(cls, value):
        return _attributes_to_dict(value)


def millis_to_datetime(value: Optional[float]) -> Optional[datetime.datetime]:
    if value is None:
        return None
    return datetime.datetime.fromtimestamp(value / 1000.0, tz=UTC)


def parse_location(raw: Any, subject_id: str = "?") -> Optional[LocationSample]:
    """Validate an RTDB currentLocation value; returns None (and warns) when unusable."""
    if raw is None:
        return None
    try:
        doc = LocationDocument.model_validate(_attributes_to_dict(raw))
    except ValidationError as e:
        logger.warn(f"Skipping malformed location for {subject_id}: {e.error_count()} error(s)")
        return None
    return LocationSample(doc.latitude, doc.longitude, millis_to_datetime(doc.timestamp))


def parse_coordinate(raw: Any) -> Optional[Coordinate]:
    if raw is None:
        return None
    try:
        doc = CoordinateDocument.model_validate(_attributes_to_dict(raw))
    except ValidationError:
        return None
    return Coordinate(doc.latitude, doc.longitude)


def parse_battery(raw: Any, subject_id: str = "?") -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not 0 <= raw <= 100:
        logger.warn(f"Skipping malformed battery level for {subject_id}: {raw!r}")
        return None
    return raw


def parse_geofence(fence_id: str, data: Dict[str, Any], min_radius: float = 50.0,
                   max_radius: float = 5000.0) -> Optional[Geofence]:
    """Turn a geofences/{id} document into a Geofence, skipping malformed ones."""
    try:
        doc = GeofenceDocument.model_validate(data or {})
    except ValidationError as e:
        logger.warn(f"Skipping invalid geofence {fence_id}: missing or bad center/radius ({e.error_count()} error(s))")
        return None

    if not min_radius <= doc.radius <= max_radius:
        logger.warn(f"Skipping geofence {fence_id}: radius {doc.radius}m outside {min_radius}-{max_radius}m")
        return None

    return Geofence(
        id=fence_id,
        group_id=doc.familyId,
        name=doc.name or "Unnamed Geofence",
        center=Coordinate(doc.center.latitude, doc.center.longitude),
        radius_m=float(doc.radius),
    )


def parse_subject(uid: str, data: Optional[Dict[str, Any]]) -> Optional[Subject]:
    if data is None:
        return None
    settings = data.get("settings") or {}
    return Subject(
        id=uid,
        name=data.get("name") or "A family member",
        group_id=data.get("familyId") or None,
        role=data.get("role"),
        push_token=data.get("fcmToken") or None,
        location_sharing=settings.get("shareLocation", True) is not False,
        battery_alerts=settings.get("batteryAlerts", True) is not False,
    )
