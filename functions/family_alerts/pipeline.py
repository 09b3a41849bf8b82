"""
Client-side ingestion: one actor per tracked family member.

Each SubjectTracker owns its live-data subscriptions, its last-sample cache
and a serial work queue, so samples of one member are evaluated strictly in
order while different members proceed independently. IngestionCoordinator
starts and stops trackers as family membership or sharing settings change.
"""

import asyncio
import threading
from typing import Dict, Iterable, List, Optional

from firebase_functions import logger

from config.loader import AlertSettings, get_alert_settings
from .engine import AlertEngine
from .models import DispatchResult, Geofence, LocationSample, StatusSample, Subject
from .sender import FcmPushSender
from .store import (FirestoreGeofenceRegistry, FirestoreLocationHistory, FirestoreNotificationLog,
                    FirestoreSubjectRegistry, RealtimeLiveStore)
from .utils import haversine_m

SOS_SIGNAL = "sos"


class GeofenceCache:
    """Geofences of one family kept fresh by a snapshot listener."""

    def __init__(self, registry, group_id: str):
        self._registry = registry
        self.group_id = group_id
        self._fences: Optional[List[Geofence]] = None
        self._lock = threading.Lock()
        self._subscription = None

    def start(self) -> None:
        self._subscription = self._registry.watch_geofences(self.group_id, self._replace)

    def _replace(self, fences: Iterable[Geofence]) -> None:
        with self._lock:
            self._fences = list(fences)
        logger.debug(f"Geofence cache for {self.group_id} now holds {len(self._fences)} fence(s)")

    async def list_geofences(self, group_id: str) -> List[Geofence]:
        with self._lock:
            fences = self._fences if group_id == self.group_id else None
        if fences is None:
            # Not loaded yet, or another family: go to the registry
            return await self._registry.list_geofences(group_id)
        return list(fences)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None


class HistoryTrail:
    """Sparse location trail: only writes once the member moved far enough."""

    def __init__(self, history, min_distance_m: float = 50.0):
        self._history = history
        self._min_distance_m = min_distance_m
        self._last_written: Dict[str, LocationSample] = {}

    async def record(self, subject_id: str, sample: LocationSample) -> bool:
        last = self._last_written.get(subject_id)
        if last is not None:
            moved = haversine_m(last, sample)
            if moved < self._min_distance_m:
                logger.debug(f"Skipping history write for {subject_id}: moved only {moved:.1f}m")
                return False

        try:
            await self._history.append(subject_id, sample)
        except Exception as e:
            logger.error(f"Failed to write location history for {subject_id}: {e}")
            return False

        # Only a successful write moves the reference point
        self._last_written[subject_id] = sample
        return True


class SubjectTracker:

    def __init__(self, subject: Subject, engine: AlertEngine, live_store=None, watch_sos: bool = False):
        self.subject = subject
        self._engine = engine
        self._live_store = live_store
        self._watch_sos = watch_sos
        self._queue: asyncio.Queue = asyncio.Queue()
        self._last_location: Optional[LocationSample] = None
        self._last_battery: Optional[StatusSample] = None
        self._subscriptions = []
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def last_location(self) -> Optional[LocationSample]:
        return self._last_location

    @property
    def last_battery(self) -> Optional[float]:
        return self._last_battery.battery_percent if self._last_battery else None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._task = self._loop.create_task(self._run(), name=f"tracker-{self.subject.id}")

        if self._live_store is not None:
            sid = self.subject.id
            self._subscriptions.append(self._live_store.subscribe_location(sid, self._from_listener))
            self._subscriptions.append(self._live_store.subscribe_status(sid, self._from_listener))
            if self._watch_sos:
                self._subscriptions.append(
                    self._live_store.subscribe_sos(sid, lambda _active: self._from_listener(SOS_SIGNAL)))
        logger.info(f"Tracking {self.subject.id} ({self.subject.name})")

    def _from_listener(self, item) -> None:
        # Listener threads hand items to the loop that owns the queue
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug(f"Dropping update for {self.subject.id}: tracker loop is gone")
            return
        loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def submit(self, item) -> None:
        self._queue.put_nowait(item)

    async def drain(self) -> None:
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._handle(item)
            except Exception as e:
                logger.error(f"Evaluation for {self.subject.id} failed: {e}")
            finally:
                self._queue.task_done()

    async def _handle(self, item) -> List[DispatchResult]:
        if isinstance(item, LocationSample):
            return await self._handle_location(item)
        if isinstance(item, StatusSample):
            return await self._handle_status(item)
        if item == SOS_SIGNAL:
            result = await self._engine.process_sos_trigger(self.subject.id)
            return [result] if result is not None else []
        logger.warn(f"Ignoring unknown update for {self.subject.id}: {item!r}")
        return []

    @staticmethod
    def _is_stale(previous, current) -> bool:
        return (previous is not None and previous.captured_at is not None
                and current.captured_at is not None and current.captured_at < previous.captured_at)

    async def _handle_location(self, sample: LocationSample) -> List[DispatchResult]:
        previous = self._last_location
        if self._is_stale(previous, sample):
            logger.debug(f"Dropping out-of-order location for {self.subject.id}")
            return []

        candidates = await self._engine.location_candidates(self.subject, previous, sample)
        # Cache moves only after detection succeeded
        self._last_location = sample
        return await self._engine.handle_candidates(self.subject, candidates)

    async def _handle_status(self, sample: StatusSample) -> List[DispatchResult]:
        previous = self._last_battery
        if self._is_stale(previous, sample):
            logger.debug(f"Dropping out-of-order battery level for {self.subject.id}")
            return []

        candidates = self._engine.battery_candidates(
            self.subject, previous.battery_percent if previous else None, sample.battery_percent)
        self._last_battery = sample
        return await self._engine.handle_candidates(self.subject, candidates)

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self._last_location = None
        self._last_battery = None
        logger.info(f"Stopped tracking {self.subject.id}")


class IngestionCoordinator:
    """Supervises SubjectTrackers for the members of one family."""

    def __init__(self, engine: AlertEngine, live_store=None, history: Optional[HistoryTrail] = None,
                 watch_sos: bool = False, geofence_cache: Optional[GeofenceCache] = None):
        self._geofence_cache = geofence_cache
        self._engine = engine
        self._live_store = live_store
        self._history = history
        self._watch_sos = watch_sos
        self._trackers: Dict[str, SubjectTracker] = {}
        self._lock = asyncio.Lock()
        self._group_subscription = None

    @property
    def tracked_ids(self) -> List[str]:
        return sorted(self._trackers)

    def tracker(self, subject_id: str) -> Optional[SubjectTracker]:
        return self._trackers.get(subject_id)

    async def sync_members(self, members: Iterable[Subject]) -> None:
        """Converge the running trackers onto the members that share their location."""
        async with self._lock:
            desired = {m.id: m for m in members if m.group_id and m.location_sharing}

            for subject_id in [sid for sid in self._trackers if sid not in desired]:
                tracker = self._trackers.pop(subject_id)
                await tracker.stop()

            for subject_id, subject in desired.items():
                tracker = self._trackers.get(subject_id)
                if tracker is not None:
                    tracker.subject = subject
                    continue
                tracker = SubjectTracker(subject, self._engine, self._live_store, self._watch_sos)
                tracker.start()
                self._trackers[subject_id] = tracker

    def watch_group(self, group_id: str) -> None:
        loop = asyncio.get_running_loop()

        def on_members(members):
            future = asyncio.run_coroutine_threadsafe(self.sync_members(members), loop)
            future.add_done_callback(_log_sync_failure)

        self._group_subscription = self._engine.registry.watch_group_members(group_id, on_members)

    def submit_location(self, subject_id: str, sample: LocationSample) -> bool:
        tracker = self._trackers.get(subject_id)
        if tracker is None:
            logger.debug(f"Ignoring location for untracked member {subject_id}")
            return False
        tracker.submit(sample)
        return True

    def submit_status(self, subject_id: str, sample: StatusSample) -> bool:
        tracker = self._trackers.get(subject_id)
        if tracker is None:
            logger.debug(f"Ignoring status for untracked member {subject_id}")
            return False
        tracker.submit(sample)
        return True

    async def publish_own_location(self, subject_id: str, sample: LocationSample) -> None:
        """Write this device's sample to the live store and the sparse history trail."""
        if self._live_store is not None:
            await self._live_store.set_location(subject_id, sample)
        if self._history is not None:
            await self._history.record(subject_id, sample)

    async def press_sos(self, subject_id: str) -> Optional[DispatchResult]:
        """
        Raise the SOS flag and try to consume it right away.

        Returns None when another runtime consumed the flag first and so
        owns the dispatch.
        """
        await self._live_store.set_sos(subject_id, True)
        return await self._engine.process_sos_trigger(subject_id)

    async def drain(self) -> None:
        await asyncio.gather(*(t.drain() for t in list(self._trackers.values())))

    async def close(self) -> None:
        if self._group_subscription is not None:
            self._group_subscription.close()
            self._group_subscription = None
        if self._geofence_cache is not None:
            self._geofence_cache.close()
        async with self._lock:
            trackers = list(self._trackers.values())
            self._trackers.clear()
            await asyncio.gather(*(t.stop() for t in trackers))


def _log_sync_failure(future) -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.error(f"Member sync failed: {future.exception()}")


async def start_client_runtime(subject_id: str, settings: Optional[AlertSettings] = None,
                               db=None) -> Optional[IngestionCoordinator]:
    """
    Wire the Firebase-backed collaborators for the foreground app of one member.

    Returns None when the member is not in a family yet.
    """
    settings = settings or get_alert_settings()
    registry = FirestoreSubjectRegistry(db)
    subject = await registry.get_subject(subject_id)
    if subject is None or not subject.group_id:
        logger.info(f"{subject_id} has no family yet; client runtime not started")
        return None

    geofences = GeofenceCache(FirestoreGeofenceRegistry(db, settings.min_radius_m, settings.max_radius_m),
                              subject.group_id)
    geofences.start()
    live_store = RealtimeLiveStore()
    engine = AlertEngine(registry, geofences, FirestoreNotificationLog(db), FcmPushSender(),
                         live_store=live_store, settings=settings)
    coordinator = IngestionCoordinator(
        engine, live_store,
        history=HistoryTrail(FirestoreLocationHistory(db), settings.min_history_distance_m),
        geofence_cache=geofences,
    )
    coordinator.watch_group(subject.group_id)
    return coordinator
