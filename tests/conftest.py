"""
In-memory stand-ins for the Firestore / RTDB / FCM collaborators.
"""

import asyncio
import datetime

import pytest

from config.loader import AlertSettings
from family_alerts.engine import AlertEngine
from family_alerts.errors import DuplicateNotificationError, StoreError
from family_alerts.models import Coordinate, Geofence, PushOutcome, Subject

T0 = datetime.datetime(2026, 3, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)


class FakeClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds=0, minutes=0):
        self.now = self.now + datetime.timedelta(seconds=seconds, minutes=minutes)


class FakeSubscription:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakeRegistry:
    def __init__(self, subjects=()):
        self.subjects = {s.id: s for s in subjects}
        self.cleared_tokens = []
        self.member_watchers = {}
        self.fail_members = None
        self.fail_get = None

    async def get_subject(self, subject_id):
        if self.fail_get:
            raise self.fail_get
        return self.subjects.get(subject_id)

    async def list_group_members(self, group_id):
        if self.fail_members:
            raise self.fail_members
        return [s for s in self.subjects.values() if s.group_id == group_id]

    async def clear_push_token(self, subject_id, token=None):
        self.cleared_tokens.append((subject_id, token))
        self.subjects[subject_id].push_token = None
        return True

    def watch_group_members(self, group_id, callback):
        self.member_watchers[group_id] = callback
        return FakeSubscription()


class FakeGeofences:
    def __init__(self, fences=()):
        self.fences = list(fences)
        self.raw = {}
        self.saved = []
        self.deleted = []
        self.calls = 0

    async def list_geofences(self, group_id):
        self.calls += 1
        return [f for f in self.fences if f.group_id == group_id]

    def watch_geofences(self, group_id, callback):
        callback([f for f in self.fences if f.group_id == group_id])
        return FakeSubscription()

    async def get_raw(self, fence_id):
        return self.raw.get(fence_id)

    async def save(self, fence, editor_id, create):
        fence_id = fence.id or f"fence-{len(self.saved) + 1}"
        self.saved.append((fence_id, fence, editor_id, create))
        return fence_id

    async def delete(self, fence_id):
        self.deleted.append(fence_id)


class FakeLog:
    def __init__(self):
        self.events = []
        self.keys = set()
        self.append_errors = []
        self.query_error = None
        self.append_calls = 0

    async def query_latest(self, subject_id, kind, fence_id=None):
        if self.query_error:
            raise self.query_error
        matches = [
            e for e in self.events
            if e.subject_id == subject_id and e.kind == kind
            and (fence_id is None or e.related_geofence_id == fence_id)
        ]
        return max(matches, key=lambda e: e.occurred_at) if matches else None

    async def append(self, event, dedup_key=None):
        self.append_calls += 1
        if self.append_errors:
            raise self.append_errors.pop(0)
        if dedup_key is not None:
            if dedup_key in self.keys:
                raise DuplicateNotificationError(dedup_key)
            self.keys.add(dedup_key)
        event.id = dedup_key or f"n{len(self.events) + 1}"
        self.events.append(event)
        return event.id


class FakePush:
    def __init__(self):
        self.sent = []
        self.outcomes = {}
        self.delay = 0

    async def send(self, address, payload):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append((address, payload))
        return self.outcomes.get(address, PushOutcome.DELIVERED)


class FakeLiveStore:
    def __init__(self):
        self.locations = {}
        self.batteries = {}
        self.sos = {}
        self.written_locations = []
        self.consume_errors = []
        self.listeners = {}

    async def get_location(self, subject_id):
        return self.locations.get(subject_id)

    async def get_battery(self, subject_id):
        return self.batteries.get(subject_id)

    async def set_location(self, subject_id, sample):
        self.written_locations.append((subject_id, sample))
        self.locations[subject_id] = sample

    async def set_sos(self, subject_id, active):
        self.sos[subject_id] = active

    async def consume_sos(self, subject_id):
        if self.consume_errors:
            raise self.consume_errors.pop(0)
        if self.sos.get(subject_id) is True:
            self.sos[subject_id] = False
            return True
        return False

    def _subscribe(self, subject_id, key, callback):
        sub = FakeSubscription()
        self.listeners[(subject_id, key)] = (callback, sub)
        return sub

    def subscribe_location(self, subject_id, callback):
        return self._subscribe(subject_id, "location", callback)

    def subscribe_status(self, subject_id, callback):
        return self._subscribe(subject_id, "status", callback)

    def subscribe_sos(self, subject_id, callback):
        return self._subscribe(subject_id, "sos", callback)


def make_subject(uid, name, group_id="fam1", token=None, role=None, **flags):
    return Subject(id=uid, name=name, group_id=group_id, role=role, push_token=token, **flags)


HOME = Geofence(id="home", group_id="fam1", name="Home", center=Coordinate(37.0, -122.0), radius_m=200)
SCHOOL = Geofence(id="school", group_id="fam1", name="School", center=Coordinate(37.05, -122.0), radius_m=300)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return AlertSettings()


@pytest.fixture
def registry():
    return FakeRegistry([
        make_subject("alice", "Alice", token="tok-alice", role="admin"),
        make_subject("bob", "Bob", token="tok-bob"),
        make_subject("carol", "Carol", group_id="fam2", token="tok-carol"),
    ])


@pytest.fixture
def geofences():
    return FakeGeofences([HOME, SCHOOL])


@pytest.fixture
def log():
    return FakeLog()


@pytest.fixture
def push():
    return FakePush()


@pytest.fixture
def live_store():
    return FakeLiveStore()


@pytest.fixture
def engine(registry, geofences, log, push, live_store, settings, clock):
    return AlertEngine(registry, geofences, log, push, live_store=live_store, settings=settings, clock=clock)


@pytest.fixture
def store_fault():
    return StoreError("firestore unavailable")
