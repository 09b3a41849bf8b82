"""
Firebase-backed collaborators: user/geofence registries, notification log,
live status store and location history.

firebase_admin clients are synchronous; every call is pushed to the default
executor so one subject's slow round trip never stalls the event loop.
"""

import asyncio
import datetime
import functools
from typing import Any, Callable, Dict, List, Optional

from firebase_admin import db as rtdb
from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import firestore
from firebase_functions import logger
from google.api_core import exceptions as api_exceptions
from google.cloud.firestore_v1.base_query import FieldFilter

from .errors import DuplicateNotificationError, StoreError, TransientStoreError
from .models import (UTC, Geofence, LocationSample, NotificationEvent, NotificationKind, Subject,
                     StatusSample, parse_battery, parse_coordinate, parse_geofence, parse_location,
                     parse_subject)

USERS = "users"
GEOFENCES = "geofences"
NOTIFICATIONS = "notifications"
LOCATION_HISTORY = "locationHistory"
LIVE_DATA = "liveData"

_TRANSIENT = (
    api_exceptions.ServiceUnavailable,
    api_exceptions.DeadlineExceeded,
    api_exceptions.InternalServerError,
    api_exceptions.Aborted,
    api_exceptions.TooManyRequests,
    firebase_exceptions.UnavailableError,
    firebase_exceptions.DeadlineExceededError,
    firebase_exceptions.InternalError,
    firebase_exceptions.AbortedError,
)


def _translate(e: Exception, what: str) -> StoreError:
    if isinstance(e, _TRANSIENT):
        return TransientStoreError(f"{what}: {e}")
    return StoreError(f"{what}: {e}")


async def _call(what: str, func: Callable, *args, **kwargs):
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
    except StoreError:
        raise
    except (api_exceptions.GoogleAPICallError, firebase_exceptions.FirebaseError) as e:
        raise _translate(e, what) from e


class Subscription:
    """Handle returned by every watch/subscribe call."""

    def __init__(self, close_fn: Callable[[], Any], description: str = ""):
        self._close_fn = close_fn
        self.description = description
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._close_fn()
        except Exception as e:
            logger.warn(f"Error closing subscription {self.description}: {e}")


def _client(db=None):
    return db or firestore.client()


# ---------------------------------------------------------------------------
# users/{uid}
# ---------------------------------------------------------------------------

class FirestoreSubjectRegistry:

    def __init__(self, db=None):
        self._db = _client(db)

    async def get_subject(self, subject_id: str) -> Optional[Subject]:
        snap = await _call(f"get user {subject_id}", self._db.collection(USERS).document(subject_id).get)
        return parse_subject(snap.id, snap.to_dict()) if snap.exists else None

    def _members_query(self, group_id: str):
        return self._db.collection(USERS).where(filter=FieldFilter("familyId", "==", group_id))

    async def list_group_members(self, group_id: str) -> List[Subject]:
        docs = await _call(f"list family {group_id}", self._members_query(group_id).get)
        return [parse_subject(doc.id, doc.to_dict()) for doc in docs]

    def watch_group_members(self, group_id: str, callback: Callable[[List[Subject]], None]) -> Subscription:
        """Calls back (on a listener thread) with the full member list on every change."""
        def on_snapshot(docs, changes, read_time):
            callback([parse_subject(doc.id, doc.to_dict()) for doc in docs])

        watch = self._members_query(group_id).on_snapshot(on_snapshot)
        return Subscription(watch.unsubscribe, f"members of {group_id}")

    async def clear_push_token(self, subject_id: str, token: Optional[str] = None) -> bool:
        """Remove fcmToken, but only if it is still the token that failed."""
        ref = self._db.collection(USERS).document(subject_id)
        snap = await _call(f"get user {subject_id}", ref.get)
        if not snap.exists:
            return False
        current = (snap.to_dict() or {}).get("fcmToken")
        if not current or (token is not None and current != token):
            return False
        try:
            await _call(f"clear token of {subject_id}", ref.update, {"fcmToken": firestore.DELETE_FIELD},
                        option=self._db.write_option(last_update_time=snap.update_time))
        except StoreError as e:
            # Precondition failure means the token was replaced meanwhile
            logger.info(f"Token of {subject_id} changed before cleanup: {e}")
            return False
        logger.info(f"Removed invalid token for user {subject_id}")
        return True


# ---------------------------------------------------------------------------
# geofences/{id}
# ---------------------------------------------------------------------------

class FirestoreGeofenceRegistry:

    def __init__(self, db=None, min_radius: float = 50.0, max_radius: float = 5000.0):
        self._db = _client(db)
        self._min_radius = min_radius
        self._max_radius = max_radius

    def _parse(self, doc) -> Optional[Geofence]:
        return parse_geofence(doc.id, doc.to_dict(), self._min_radius, self._max_radius)

    def _group_query(self, group_id: str):
        return self._db.collection(GEOFENCES).where(filter=FieldFilter("familyId", "==", group_id))

    async def list_geofences(self, group_id: str) -> List[Geofence]:
        docs = await _call(f"list geofences of {group_id}", self._group_query(group_id).get)
        return [fence for fence in (self._parse(doc) for doc in docs) if fence is not None]

    def watch_geofences(self, group_id: str, callback: Callable[[List[Geofence]], None]) -> Subscription:
        def on_snapshot(docs, changes, read_time):
            callback([fence for fence in (self._parse(doc) for doc in docs) if fence is not None])

        watch = self._group_query(group_id).on_snapshot(on_snapshot)
        return Subscription(watch.unsubscribe, f"geofences of {group_id}")

    async def get_raw(self, fence_id: str) -> Optional[Dict[str, Any]]:
        snap = await _call(f"get geofence {fence_id}", self._db.collection(GEOFENCES).document(fence_id).get)
        return snap.to_dict() if snap.exists else None

    async def save(self, fence: Geofence, editor_id: str, create: bool) -> str:
        data = {
            "name": fence.name,
            "familyId": fence.group_id,
            "center": firestore.GeoPoint(fence.center.latitude, fence.center.longitude),
            "radius": fence.radius_m,
            "updatedAt": firestore.SERVER_TIMESTAMP,
        }
        collection = self._db.collection(GEOFENCES)
        if create:
            data["createdBy"] = editor_id
            data["createdAt"] = firestore.SERVER_TIMESTAMP
            ref = collection.document(fence.id) if fence.id else collection.document()
            await _call(f"create geofence {ref.id}", ref.create, data)
            return ref.id

        await _call(f"update geofence {fence.id}", collection.document(fence.id).update, data)
        return fence.id

    async def delete(self, fence_id: str) -> None:
        await _call(f"delete geofence {fence_id}", self._db.collection(GEOFENCES).document(fence_id).delete)


# ---------------------------------------------------------------------------
# notifications/{id}
# ---------------------------------------------------------------------------

def event_to_document(event: NotificationEvent) -> Dict[str, Any]:
    data = {
        "type": event.kind.value,
        "title": event.title,
        "message": event.message,
        "familyId": event.group_id,
        "triggeringUid": event.subject_id,
        "recipientUid": event.recipient_id,
        "timestamp": event.occurred_at,
        "read": event.acknowledged,
    }
    if event.related_geofence_id:
        data["relatedGeofenceId"] = event.related_geofence_id
    if event.related_location:
        data["relatedLocation"] = firestore.GeoPoint(event.related_location.latitude,
                                                     event.related_location.longitude)
    return data


def event_from_document(doc_id: str, data: Dict[str, Any]) -> Optional[NotificationEvent]:
    try:
        kind = NotificationKind(data.get("type"))
    except ValueError:
        logger.warn(f"Notification {doc_id} has unknown type {data.get('type')!r}")
        return None

    occurred_at = data.get("timestamp")
    if isinstance(occurred_at, datetime.datetime) and occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=UTC)
    elif not isinstance(occurred_at, datetime.datetime):
        occurred_at = None

    return NotificationEvent(
        id=doc_id,
        group_id=data.get("familyId"),
        kind=kind,
        title=data.get("title", ""),
        message=data.get("message", ""),
        subject_id=data.get("triggeringUid"),
        recipient_id=data.get("recipientUid"),
        occurred_at=occurred_at,
        related_geofence_id=data.get("relatedGeofenceId"),
        related_location=parse_coordinate(data.get("relatedLocation")),
        acknowledged=bool(data.get("read", False)),
    )


class FirestoreNotificationLog:
    """The notifications collection, used both as inbox and as dedup ledger."""

    def __init__(self, db=None):
        self._db = _client(db)

    async def query_latest(self, subject_id: str, kind: NotificationKind,
                           fence_id: Optional[str] = None) -> Optional[NotificationEvent]:
        query = (self._db.collection(NOTIFICATIONS)
                 .where(filter=FieldFilter("triggeringUid", "==", subject_id))
                 .where(filter=FieldFilter("type", "==", kind.value)))
        if fence_id is not None:
            query = query.where(filter=FieldFilter("relatedGeofenceId", "==", fence_id))
        query = query.order_by("timestamp", direction=firestore.Query.DESCENDING).limit(1)

        try:
            docs = await _call(f"latest {kind.value} for {subject_id}", query.get)
        except StoreError as e:
            if isinstance(e.__cause__, api_exceptions.NotFound):
                return None
            raise

        for doc in docs:
            return event_from_document(doc.id, doc.to_dict())
        return None

    async def append(self, event: NotificationEvent, dedup_key: Optional[str] = None) -> str:
        """Write one record; with a dedup_key the write is a create-if-absent."""
        collection = self._db.collection(NOTIFICATIONS)
        data = event_to_document(event)
        if dedup_key is None:
            _, ref = await _call(f"append {event.kind.value} for {event.recipient_id}", collection.add, data)
            return ref.id

        ref = collection.document(dedup_key)
        try:
            await _call(f"create {dedup_key}", ref.create, data)
        except StoreError as e:
            if isinstance(e.__cause__, api_exceptions.Conflict):
                raise DuplicateNotificationError(dedup_key) from e
            raise
        return ref.id

    def _recipient_query(self, recipient_id: str, limit: int):
        return (self._db.collection(NOTIFICATIONS)
                .where(filter=FieldFilter("recipientUid", "==", recipient_id))
                .order_by("timestamp", direction=firestore.Query.DESCENDING)
                .limit(limit))

    async def list_for_recipient(self, recipient_id: str, limit: int = 50) -> List[NotificationEvent]:
        docs = await _call(f"list notifications of {recipient_id}", self._recipient_query(recipient_id, limit).get)
        events = (event_from_document(doc.id, doc.to_dict()) for doc in docs)
        return [e for e in events if e is not None]

    def watch_for_recipient(self, recipient_id: str, callback: Callable[[List[NotificationEvent]], None],
                            limit: int = 50) -> Subscription:
        def on_snapshot(docs, changes, read_time):
            events = (event_from_document(doc.id, doc.to_dict()) for doc in docs)
            callback([e for e in events if e is not None])

        watch = self._recipient_query(recipient_id, limit).on_snapshot(on_snapshot)
        return Subscription(watch.unsubscribe, f"notifications of {recipient_id}")

    async def mark_read(self, notification_id: str, recipient_id: Optional[str] = None) -> bool:
        """Flip read false -> true. Returns False if the record is missing or not the caller's."""
        ref = self._db.collection(NOTIFICATIONS).document(notification_id)
        snap = await _call(f"get notification {notification_id}", ref.get)
        if not snap.exists:
            return False
        data = snap.to_dict() or {}
        if recipient_id is not None and data.get("recipientUid") != recipient_id:
            return False
        if not data.get("read"):
            await _call(f"mark {notification_id} read", ref.update, {"read": True})
        return True


# ---------------------------------------------------------------------------
# locationHistory
# ---------------------------------------------------------------------------

class FirestoreLocationHistory:

    def __init__(self, db=None):
        self._db = _client(db)

    async def append(self, subject_id: str, sample: LocationSample) -> str:
        data = {
            "userId": subject_id,
            "location": firestore.GeoPoint(sample.latitude, sample.longitude),
            "timestamp": firestore.SERVER_TIMESTAMP,
        }
        _, ref = await _call(f"history for {subject_id}", self._db.collection(LOCATION_HISTORY).add, data)
        return ref.id


# ---------------------------------------------------------------------------
# Realtime Database /liveData/{uid}
# ---------------------------------------------------------------------------

class RealtimeLiveStore:
    """Live location / battery / SOS values written by each member's device."""

    def __init__(self, app=None):
        self._app = app

    def _ref(self, subject_id: str, key: str):
        return rtdb.reference(f"/{LIVE_DATA}/{subject_id}/{key}", app=self._app)

    async def get_location(self, subject_id: str) -> Optional[LocationSample]:
        raw = await _call(f"location of {subject_id}", self._ref(subject_id, "currentLocation").get)
        return parse_location(raw, subject_id)

    async def get_battery(self, subject_id: str) -> Optional[float]:
        raw = await _call(f"battery of {subject_id}", self._ref(subject_id, "batteryLevel").get)
        return parse_battery(raw, subject_id)

    async def set_location(self, subject_id: str, sample: LocationSample) -> None:
        value = {"latitude": sample.latitude, "longitude": sample.longitude, "timestamp": {".sv": "timestamp"}}
        await _call(f"write location of {subject_id}", self._ref(subject_id, "currentLocation").set, value)

    async def set_sos(self, subject_id: str, active: bool) -> None:
        await _call(f"write sosActive of {subject_id}", self._ref(subject_id, "sosActive").set, bool(active))

    async def consume_sos(self, subject_id: str) -> bool:
        """Atomically flip sosActive true -> false; True when this call did the flip."""
        flipped = {"value": False}

        def update(current):
            # May run several times under contention; only the last run counts
            flipped["value"] = current is True
            return False if current is True else current

        await _call(f"reset sosActive of {subject_id}", self._ref(subject_id, "sosActive").transaction, update)
        return flipped["value"]

    def _listen(self, subject_id: str, key: str, handler: Callable[[Any], None]) -> Subscription:
        ref = self._ref(subject_id, key)

        def on_event(event):
            try:
                # Partial updates arrive with a child path; re-read the whole value then
                value = event.data if event.path == "/" else ref.get()
                handler(value)
            except Exception as e:
                logger.error(f"Listener for {subject_id}/{key} failed: {e}")

        registration = ref.listen(on_event)
        return Subscription(registration.close, f"{subject_id}/{key}")

    def subscribe_location(self, subject_id: str, callback: Callable[[LocationSample], None]) -> Subscription:
        def handle(value):
            sample = parse_location(value, subject_id)
            if sample is not None:
                callback(sample)

        return self._listen(subject_id, "currentLocation", handle)

    def subscribe_status(self, subject_id: str, callback: Callable[[StatusSample], None]) -> Subscription:
        def handle(value):
            level = parse_battery(value, subject_id)
            if level is not None:
                callback(StatusSample(level, datetime.datetime.now(UTC)))

        return self._listen(subject_id, "batteryLevel", handle)

    def subscribe_sos(self, subject_id: str, callback: Callable[[bool], None]) -> Subscription:
        def handle(value):
            if value is True:
                callback(True)

        return self._listen(subject_id, "sosActive", handle)
