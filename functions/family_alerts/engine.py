"""
Shared detection -> cooldown -> dispatch orchestration.

The Cloud Functions triggers in main.py and the client ingestion pipeline
both drive an AlertEngine; they differ only in where the previous sample
comes from.
"""

from typing import List, Optional, Tuple

from firebase_functions import logger

from config.loader import AlertSettings
from .cooldown import CooldownGate, utc_now
from .errors import SosResetError
from .models import (CandidateEvent, DispatchResult, GateDecision, LocationSample, NotificationKind,
                     Subject)
from .sender import NotificationDispatcher
from .triggers import consume_sos, detect_geofence_transitions, detect_low_battery


class AlertEngine:

    def __init__(self, registry, geofences, log, push, live_store=None,
                 settings: Optional[AlertSettings] = None, clock=utc_now):
        self.settings = settings or AlertSettings()
        self.registry = registry
        self.geofences = geofences
        self.live_store = live_store
        self.gate = CooldownGate(log, self.settings, clock)
        self.dispatcher = NotificationDispatcher(registry, log, push, self.gate, clock,
                                                 push_timeout=self.settings.push_timeout_seconds)

    async def load_subject(self, subject_id: str) -> Optional[Subject]:
        """Subject with a family, or None when it can't or shouldn't be evaluated."""
        try:
            subject = await self.registry.get_subject(subject_id)
        except Exception as e:
            logger.error(f"Could not load user {subject_id}: {e}")
            return None

        if subject is None or not subject.group_id:
            logger.info(f"User {subject_id} not found or no familyId; skipping evaluation.")
            return None
        return subject

    # -- detection ---------------------------------------------------------

    async def location_candidates(self, subject: Subject, previous: Optional[LocationSample],
                                  current: Optional[LocationSample]) -> List[CandidateEvent]:
        if not subject.location_sharing:
            logger.debug(f"Location sharing disabled for {subject.id}; no geofence evaluation")
            return []
        if previous is None or current is None:
            # First observation for this runtime: membership is unknown until two samples exist
            return []

        fences = await self.geofences.list_geofences(subject.group_id)
        if not fences:
            return []

        transitions = detect_geofence_transitions(previous, current, fences)
        for t in transitions:
            logger.info(f"User {subject.id} {'entered' if t.kind is NotificationKind.GEOFENCE_ENTRY else 'exited'} "
                        f"fence {t.fence.id} ({t.fence.name})")

        return [
            CandidateEvent(
                subject_id=subject.id,
                kind=t.kind,
                fence_id=t.fence.id,
                fence_name=t.fence.name,
                location=current.coordinate,
            )
            for t in transitions
        ]

    def battery_candidates(self, subject: Subject, previous: Optional[float],
                           current: Optional[float]) -> List[CandidateEvent]:
        if not subject.battery_alerts:
            logger.debug(f"Battery alerts disabled for {subject.id}")
            return []
        if not detect_low_battery(previous, current, self.settings.low_battery_threshold):
            return []

        logger.info(f"Low battery detected for {subject.id} ({current}%)")
        return [CandidateEvent(subject_id=subject.id, kind=NotificationKind.LOW_BATTERY, battery_percent=current)]

    # -- gate + dispatch ---------------------------------------------------

    async def handle_candidates(self, subject: Subject, candidates: List[CandidateEvent]) -> List[DispatchResult]:
        """Gate and dispatch candidates one after another, in detection order."""
        results = []
        for candidate in candidates:
            decision = await self.gate.check(candidate)
            if decision is GateDecision.BLOCKED:
                results.append(DispatchResult(kind=candidate.kind, subject_id=subject.id, blocked=True))
                continue
            results.append(await self.dispatcher.dispatch(subject, candidate))
        return results

    # -- entry points ------------------------------------------------------

    async def process_location(self, subject_id: str, previous: Optional[LocationSample],
                               current: Optional[LocationSample]) -> List[DispatchResult]:
        subject = await self.load_subject(subject_id)
        if subject is None:
            return []
        candidates = await self.location_candidates(subject, previous, current)
        return await self.handle_candidates(subject, candidates)

    async def process_battery(self, subject_id: str, previous: Optional[float],
                              current: Optional[float]) -> List[DispatchResult]:
        subject = await self.load_subject(subject_id)
        if subject is None:
            return []
        return await self.handle_candidates(subject, self.battery_candidates(subject, previous, current))

    async def raise_sos(self, subject_id: str, location=None, battery: Optional[float] = None,
                        subject: Optional[Subject] = None) -> DispatchResult:
        """Dispatch an SOS immediately. Missing location/battery context is read from the live store."""
        subject = subject or await self.load_subject(subject_id)
        if subject is None:
            return DispatchResult(kind=NotificationKind.SOS, subject_id=subject_id,
                                  error="subject has no family")

        if self.live_store is not None:
            try:
                if location is None:
                    sample = await self.live_store.get_location(subject_id)
                    location = sample.coordinate if sample else None
                if battery is None:
                    battery = await self.live_store.get_battery(subject_id)
            except Exception as e:
                logger.warn(f"SOS context lookup failed for {subject_id}: {e}")

        if location is None:
            logger.info(f"SOS location data missing or invalid for {subject_id}")

        candidate = CandidateEvent(subject_id=subject.id, kind=NotificationKind.SOS,
                                   location=location, battery_percent=battery)
        results = await self.handle_candidates(subject, [candidate])
        return results[0]

    async def process_sos_trigger(self, subject_id: str) -> Optional[DispatchResult]:
        """
        Consume a raised sosActive flag and dispatch if this runtime won the reset.

        Returns None when the flag was already cleared by another runtime.
        """
        subject = await self.load_subject(subject_id)
        if subject is None:
            # Leave the flag armed so a runtime that can load the subject still owns the press
            logger.error(f"SOS for {subject_id} left armed: subject could not be loaded")
            return DispatchResult(kind=NotificationKind.SOS, subject_id=subject_id,
                                  error="subject could not be loaded")

        try:
            consumed = await consume_sos(self.live_store, subject_id)
        except SosResetError as e:
            # Emergency wins over dedup: dispatch even though the trigger stays armed
            logger.error(f"{e}; dispatching SOS without rearm")
            consumed = True

        if not consumed:
            logger.info(f"SOS for {subject_id} already consumed elsewhere")
            return None

        logger.info(f"SOS detected for {subject_id}")
        return await self.raise_sos(subject_id, subject=subject)

    async def evaluate(self, subject_id: str,
                       location: Optional[Tuple[Optional[LocationSample], Optional[LocationSample]]] = None,
                       battery: Optional[Tuple[Optional[float], Optional[float]]] = None,
                       sos: bool = False) -> List[DispatchResult]:
        """
        Re-entry point for trigger frameworks keyed on 'location or battery changed'.

        location and battery are (previous, current) pairs; sos asks to
        consume the subject's SOS trigger.
        """
        subject = await self.load_subject(subject_id)
        if subject is None:
            return []

        results = []
        if sos:
            sos_result = await self.process_sos_trigger(subject_id)
            if sos_result is not None:
                results.append(sos_result)
        if battery is not None:
            results.extend(await self.handle_candidates(subject, self.battery_candidates(subject, *battery)))
        if location is not None:
            candidates = await self.location_candidates(subject, *location)
            results.extend(await self.handle_candidates(subject, candidates))
        return results
