"""
Transition detection: geofence entry/exit, low battery crossings and SOS consumption
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from firebase_functions import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential, wait_random

from .errors import SosResetError, StoreError
from .models import Geofence, LocationSample, NotificationKind
from .utils import is_inside

SOS_RESET_ATTEMPTS = 3


@dataclass(frozen=True)
class FenceTransition:
    fence: Geofence
    kind: NotificationKind

    @property
    def fence_id(self) -> str:
        return self.fence.id


def detect_geofence_transitions(previous: Optional[LocationSample], current: LocationSample,
                                fences: Iterable[Geofence]) -> List[FenceTransition]:
    """
    Compare two consecutive samples against every fence of the group.

    Without a previous sample nothing is emitted: membership before the
    first observation is unknown, and a transition is never invented from a
    gap. Fences are evaluated in the order given.
    """
    transitions = []
    if previous is None or current is None:
        return transitions

    for fence in fences:
        was_inside = is_inside(previous, fence)
        now_inside = is_inside(current, fence)

        if not was_inside and now_inside:
            transitions.append(FenceTransition(fence, NotificationKind.GEOFENCE_ENTRY))
        elif was_inside and not now_inside:
            transitions.append(FenceTransition(fence, NotificationKind.GEOFENCE_EXIT))

    return transitions


def detect_low_battery(previous_percent: Optional[float], current_percent: Optional[float],
                       threshold: float = 20) -> bool:
    """Edge-triggered: fires only when the level crosses down to or below the threshold."""
    if current_percent is None or current_percent > threshold:
        return False
    return previous_percent is None or previous_percent > threshold


async def consume_sos(live_store, subject_id: str, attempts: int = SOS_RESET_ATTEMPTS) -> bool:
    """
    Rearm the SOS trigger of a subject.

    Returns True when this caller flipped the trigger from true to false and
    therefore owns the dispatch, False when it was already clear. Raises
    SosResetError once every attempt has failed.
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=0.2, max=2) + wait_random(0, 0.2),
            retry=retry_if_exception_type(StoreError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"Retrying SOS reset for {subject_id} (attempt {attempt.retry_state.attempt_number})")
                return await live_store.consume_sos(subject_id)
    except StoreError as e:
        raise SosResetError(f"Could not reset SOS trigger for {subject_id}: {e}") from e
