"""
Notification templating, FCM delivery and family fan-out
"""

import asyncio
from typing import Any, Dict, Optional, Tuple

from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging
from firebase_functions import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential, wait_random

from .cooldown import utc_now
from .errors import DuplicateNotificationError, TransientStoreError
from .models import (CandidateEvent, DispatchResult, NotificationEvent, NotificationKind, PushOutcome,
                     Subject)

NOTIFICATION_ICONS = {
    NotificationKind.SOS: "exclamationmark.triangle.fill",
    NotificationKind.LOW_BATTERY: "battery.25",
    NotificationKind.GEOFENCE_ENTRY: "figure.walk.arrival",
    NotificationKind.GEOFENCE_EXIT: "figure.walk.departure",
    NotificationKind.INFO: "info.circle.fill",
}


def icon_for(kind: NotificationKind) -> str:
    return NOTIFICATION_ICONS[kind]


def _format_percent(value: float) -> str:
    return f"{value:.0f}%"


def build_message(subject_name: str, candidate: CandidateEvent) -> Tuple[str, str]:
    """Return (title, message) for a candidate event."""
    name = subject_name or "A family member"
    kind = candidate.kind

    if kind is NotificationKind.SOS:
        where = f"near {candidate.location.describe()}" if candidate.location else "at their last known location"
        message = f"{name} needs help {where}!"
        if candidate.battery_percent is not None:
            message += f" Battery: {_format_percent(candidate.battery_percent)}."
        return f"🆘 SOS: {name}", message

    if kind is NotificationKind.LOW_BATTERY:
        level = _format_percent(candidate.battery_percent) if candidate.battery_percent is not None else "low"
        return f"Low Battery: {name}", f"{name}'s phone battery is low ({level})."

    if kind is NotificationKind.GEOFENCE_ENTRY:
        fence = candidate.fence_name or "Unnamed Geofence"
        return fence, f"{name} arrived at {fence}."

    if kind is NotificationKind.GEOFENCE_EXIT:
        fence = candidate.fence_name or "Unnamed Geofence"
        return fence, f"{name} left {fence}."

    if kind is NotificationKind.INFO:
        return f"Update from {name}", candidate.detail or f"{name} shared an update."

    raise ValueError(f"Unhandled notification kind: {kind!r}")


def collapse_tag(candidate: CandidateEvent) -> str:
    parts = [candidate.kind.value, candidate.subject_id]
    if candidate.kind.is_geofence and candidate.fence_id:
        parts.append(candidate.fence_id)
    return "_".join(parts)


def build_push_payload(event: NotificationEvent, tag: Optional[str] = None) -> Dict[str, Any]:
    """FCM payload; every value in 'data' is a string as FCM requires."""
    location = event.related_location
    data = {
        'type': event.kind.value,
        'title': event.title,
        'message': event.message,
        'familyId': event.group_id,
        'triggeringUid': event.subject_id,
        'relatedGeofenceId': event.related_geofence_id or '',
        'relatedLocation': f"{location.latitude},{location.longitude}" if location else '',
        'icon': icon_for(event.kind),
    }
    return {
        'title': event.title,
        'body': event.message,
        'tag': tag or event.kind.value,
        'data': data,
    }


def is_token_rejection(error: Exception) -> bool:
    """True when an INVALID_ARGUMENT from FCM blames the registration token, not the payload."""
    return "registration token" in str(error).lower()


class FcmPushSender:
    """Push delivery through Firebase Cloud Messaging."""

    def _build_message(self, address: str, payload: Dict[str, Any]) -> messaging.Message:
        return messaging.Message(
            notification=messaging.Notification(
                title=payload['title'],
                body=payload['body'],
            ),
            data=payload['data'],
            token=address,
            android=messaging.AndroidConfig(
                priority='high',
                notification=messaging.AndroidNotification(
                    channel_id='family_alerts_channel',
                    tag=payload['tag'],
                    default_sound=True,
                )
            ),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(
                        alert=messaging.ApsAlert(
                            title=payload['title'],
                            body=payload['body']
                        ),
                        sound='default',
                        thread_id=payload['tag'],
                    )
                )
            )
        )

    async def send(self, address: str, payload: Dict[str, Any]) -> PushOutcome:
        message = self._build_message(address, payload)
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, messaging.send, message)
            logger.info(f"Successfully sent notification: {response}")
            return PushOutcome.DELIVERED
        except (messaging.UnregisteredError, messaging.SenderIdMismatchError) as e:
            logger.warn(f"Push token {address[:20]}... rejected: {e}")
            return PushOutcome.INVALID_TOKEN
        except firebase_exceptions.InvalidArgumentError as e:
            if is_token_rejection(e):
                logger.warn(f"Push token {address[:20]}... rejected: {e}")
                return PushOutcome.INVALID_TOKEN
            # Payload problem: the token itself may be fine
            logger.error(f"FCM rejected the message for token {address[:20]}...: {e}")
            return PushOutcome.FAILED
        except Exception as e:
            logger.error(f"Failed to send notification to token {address[:20]}...: {e}")
            return PushOutcome.FAILED


@retry(
    wait=wait_exponential(multiplier=0.5, max=2) + wait_random(0, 0.2),
    stop=stop_after_attempt(2),
    retry=retry_if_exception_type(TransientStoreError),
    reraise=True,
)
async def append_with_retry(log, event: NotificationEvent, dedup_key: Optional[str] = None) -> str:
    """Append one record, retried once on a transient storage fault."""
    return await log.append(event, dedup_key=dedup_key)


class NotificationDispatcher:
    """
    Fans an allowed event out to every other member of the subject's group.

    Records are written before push is attempted; a missing or broken push
    address never prevents the record from being stored.
    """

    def __init__(self, registry, log, push, gate, clock=utc_now, push_timeout: float = 10.0):
        self._registry = registry
        self._log = log
        self._push = push
        self._gate = gate
        self._clock = clock
        self._push_timeout = push_timeout

    async def dispatch(self, subject: Subject, candidate: CandidateEvent) -> DispatchResult:
        result = DispatchResult(kind=candidate.kind, subject_id=subject.id)

        if not subject.group_id:
            logger.info(f"{subject.id} has no familyId; nothing to dispatch")
            return result

        try:
            members = await self._registry.list_group_members(subject.group_id)
        except Exception as e:
            logger.error(f"Could not list members of family {subject.group_id}: {e}")
            result.error = str(e)
            return result

        recipients = [m for m in members if m.id != subject.id]
        result.recipients = [r.id for r in recipients]
        if not recipients:
            logger.info(f"No other family members to notify for {subject.id}")
            return result

        title, message = build_message(subject.name, candidate)
        occurred_at = self._clock()
        tag = collapse_tag(candidate)

        await asyncio.gather(*(
            self._deliver(subject, recipient, candidate, title, message, occurred_at, tag, result)
            for recipient in recipients
        ))

        logger.info(f"Dispatch of {candidate.kind.value} for {subject.id} complete: "
                    f"{len(result.recorded)} recorded, {len(result.deduplicated)} already recorded, "
                    f"{len(result.delivered)} pushed, {len(result.failed_writes)} failed writes")
        return result

    async def _deliver(self, subject: Subject, recipient: Subject, candidate: CandidateEvent,
                       title: str, message: str, occurred_at, tag: str, result: DispatchResult) -> None:
        event = NotificationEvent(
            group_id=subject.group_id,
            kind=candidate.kind,
            title=title,
            message=message,
            subject_id=subject.id,
            recipient_id=recipient.id,
            occurred_at=occurred_at,
            related_geofence_id=candidate.fence_id if candidate.kind.is_geofence else None,
            related_location=candidate.location,
        )
        dedup_key = self._gate.dedup_key(candidate, recipient.id, occurred_at)

        try:
            event.id = await append_with_retry(self._log, event, dedup_key)
            result.recorded.append(recipient.id)
        except DuplicateNotificationError:
            # A concurrent evaluator already recorded and pushed this one
            logger.info(f"{candidate.kind.value} for {recipient.id} already recorded ({dedup_key}); skipping push")
            result.deduplicated.append(recipient.id)
            return
        except Exception as e:
            logger.error(f"Failed to store {candidate.kind.value} notification for {recipient.id}: {e}")
            result.failed_writes.append(recipient.id)

        if not recipient.push_token:
            logger.info(f"No FCM token for user {recipient.id}. Skipping push.")
            return

        try:
            outcome = await asyncio.wait_for(
                self._push.send(recipient.push_token, build_push_payload(event, tag)),
                timeout=self._push_timeout,
            )
        except asyncio.TimeoutError:
            logger.warn(f"Push to {recipient.id} timed out after {self._push_timeout}s; record kept")
            outcome = PushOutcome.FAILED
        except Exception as e:
            logger.error(f"Push to {recipient.id} failed: {e}")
            outcome = PushOutcome.FAILED

        if outcome is PushOutcome.DELIVERED:
            result.delivered.append(recipient.id)
        elif outcome is PushOutcome.INVALID_TOKEN:
            logger.info(f"Detected invalid token for {recipient.id}. Removing token.")
            try:
                await self._registry.clear_push_token(recipient.id, recipient.push_token)
            except Exception as cleanup_error:
                logger.warn(f"Failed to remove invalid token for {recipient.id}: {cleanup_error}")
