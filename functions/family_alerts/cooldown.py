"""
Cooldown / deduplication gate backed by the durable notification log
"""

import datetime
import math
from typing import Callable, Optional

from firebase_functions import logger

from .models import UTC, CandidateEvent, GateDecision


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(UTC)


class CooldownGate:
    """
    Decides whether a candidate event may be dispatched.

    State lives only in the notification log, so every runtime that shares
    the log applies the same windows. The read-then-write is not atomic; see
    dedup_key for the conditional-insert key used to close that window.
    """

    def __init__(self, log, settings, clock: Callable[[], datetime.datetime] = utc_now):
        self._log = log
        self._settings = settings
        self._clock = clock

    async def check(self, candidate: CandidateEvent) -> GateDecision:
        cooldown = self._settings.cooldown_for(candidate.kind)
        if cooldown <= 0:
            return GateDecision.ALLOWED

        fence_id = candidate.fence_id if candidate.kind.is_geofence else None
        try:
            latest = await self._log.query_latest(candidate.subject_id, candidate.kind, fence_id)
        except Exception as e:
            # Fail closed: a storage outage must not turn into a notification storm
            logger.error(f"Cooldown lookup failed for {candidate.subject_id} "
                         f"({candidate.kind.value}, fence={fence_id}); blocking dispatch: {e}")
            return GateDecision.BLOCKED

        if latest is None:
            return GateDecision.ALLOWED

        now = self._clock()
        last = latest.occurred_at or now
        if last.tzinfo is None:
            last = last.replace(tzinfo=UTC)

        elapsed = (now - last).total_seconds()
        if elapsed < cooldown:
            logger.info(f"Cooldown active for {candidate.subject_id} ({candidate.kind.value}, fence={fence_id}): "
                        f"{elapsed:.0f}s of {cooldown:.0f}s elapsed. Skipping.")
            return GateDecision.BLOCKED

        return GateDecision.ALLOWED

    def dedup_key(self, candidate: CandidateEvent, recipient_id: str,
                  occurred_at: datetime.datetime) -> Optional[str]:
        """Deterministic document id for one recipient within one cooldown bucket, or None."""
        if not self._settings.strict_dedup:
            return None
        cooldown = self._settings.cooldown_for(candidate.kind)
        if cooldown <= 0:
            return None
        bucket = math.floor(occurred_at.timestamp() / cooldown)
        fence_part = candidate.fence_id if candidate.kind.is_geofence and candidate.fence_id else "none"
        return f"{candidate.kind.value}_{candidate.subject_id}_{fence_part}_{recipient_id}_{bucket}"
