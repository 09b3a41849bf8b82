# the following few lines are just to remind me of what commands I need to deploy
# functions/venv/Scripts/activate
# pip install -r functions/requirements.txt

# firebase deploy --only functions

# firebase deploy --only functions:check_low_battery,functions:on_sos_activated,functions:check_geofences
# firebase deploy --only functions:evaluate_subject
# firebase deploy --only functions:save_geofence,functions:delete_geofence,functions:mark_notification_read


import asyncio
from typing import Optional

from firebase_admin import initialize_app
from firebase_functions import db_fn, https_fn, logger
from flask import Request

# Own imports
from config.loader import get_alert_settings, get_region
from family_alerts.engine import AlertEngine
from family_alerts.errors import GeofencePermissionError, GeofenceValidationError, StoreError
from family_alerts.geofences import GeofenceEditor
from family_alerts.models import parse_battery, parse_location
from family_alerts.sender import FcmPushSender
from family_alerts.store import (FirestoreGeofenceRegistry, FirestoreNotificationLog, FirestoreSubjectRegistry,
                                 RealtimeLiveStore)
from utils import add_cors_headers, get_caller_uid, json_response, parse_evaluate_request

initialize_app()

REGION = get_region()
LIVE_DATA_PATH = "/liveData/{userId}"

_engine: Optional[AlertEngine] = None
_editor: Optional[GeofenceEditor] = None
_notification_log: Optional[FirestoreNotificationLog] = None


def get_engine() -> AlertEngine:
    """Build the server-side engine once per function instance."""
    global _engine
    if _engine is None:
        settings = get_alert_settings()
        _engine = AlertEngine(
            registry=FirestoreSubjectRegistry(),
            geofences=FirestoreGeofenceRegistry(min_radius=settings.min_radius_m, max_radius=settings.max_radius_m),
            log=get_notification_log(),
            push=FcmPushSender(),
            live_store=RealtimeLiveStore(),
            settings=settings,
        )
    return _engine


def get_editor() -> GeofenceEditor:
    global _editor
    if _editor is None:
        settings = get_alert_settings()
        _editor = GeofenceEditor(
            FirestoreSubjectRegistry(),
            FirestoreGeofenceRegistry(min_radius=settings.min_radius_m, max_radius=settings.max_radius_m),
            settings.min_radius_m,
            settings.max_radius_m,
        )
    return _editor


def get_notification_log() -> FirestoreNotificationLog:
    global _notification_log
    if _notification_log is None:
        _notification_log = FirestoreNotificationLog()
    return _notification_log


# =================== REALTIME DATABASE TRIGGERS ===================

@db_fn.on_value_updated(reference=LIVE_DATA_PATH + "/batteryLevel", region=REGION)
def check_low_battery(event: db_fn.Event[db_fn.Change]) -> None:
    """Low-battery crossing for one member, edge-triggered on the before/after pair."""
    user_id = event.params["userId"]
    previous = parse_battery(event.data.before, user_id)
    current = parse_battery(event.data.after, user_id)
    logger.info(f"Battery update for {user_id}: {previous} -> {current}")

    results = asyncio.run(get_engine().process_battery(user_id, previous, current))
    logger.info(f"Finished processing low battery for {user_id}: {len(results)} event(s)")


@db_fn.on_value_written(reference=LIVE_DATA_PATH + "/sosActive", region=REGION)
def on_sos_activated(event: db_fn.Event[db_fn.Change]) -> None:
    """SOS press: consume the flag and alert the family if this invocation won the reset."""
    if event.data.after is not True:
        return

    user_id = event.params["userId"]
    logger.info(f"SOS flag raised for {user_id}")
    result = asyncio.run(get_engine().process_sos_trigger(user_id))
    if result is None:
        return
    logger.info(f"Finished processing SOS for {user_id}: recorded={len(result.recorded)} ok={result.ok}")


@db_fn.on_value_updated(reference=LIVE_DATA_PATH + "/currentLocation", region=REGION)
def check_geofences(event: db_fn.Event[db_fn.Change]) -> None:
    """Geofence entry/exit from the before/after pair of one location write."""
    user_id = event.params["userId"]
    previous = parse_location(event.data.before, user_id)
    current = parse_location(event.data.after, user_id)

    if current is None:
        logger.info(f"Skipping geofence check for {user_id}: invalid/incomplete location data.")
        return

    results = asyncio.run(get_engine().process_location(user_id, previous, current))
    logger.info(f"Finished processing geofences for location update of {user_id}: {len(results)} event(s)")


# =================== HTTPS FUNCTIONS ===================

@https_fn.on_request(region=REGION)
def evaluate_subject(request: Request):
    """
    Re-entry point for trigger frameworks keyed on 'location or battery changed'.

    Body: {"userId", "previousLocation"?, "currentLocation"?, "previousBattery"?,
           "currentBattery"?, "sos"?}

    Only the member's own device may report its samples, so the ID token's
    uid must match userId.
    """
    if request.method == 'OPTIONS':
        return add_cors_headers({}), 204

    caller = get_caller_uid(request)
    if not caller:
        return json_response({"error": "Unauthorized"}, 401)

    user_id, kwargs = parse_evaluate_request(request)
    if not user_id:
        return json_response({"error": "Missing required field: userId"}, 400)
    if user_id != caller:
        logger.warn(f"{caller} tried to evaluate samples of {user_id}")
        return json_response({"error": "Forbidden"}, 403)

    try:
        results = asyncio.run(get_engine().evaluate(user_id, **kwargs))
    except Exception as e:
        logger.error(f"Error in evaluate_subject: {str(e)}")
        return json_response({"error": str(e)}, 500)

    return json_response({
        "events": [
            {
                "type": r.kind.value,
                "blocked": r.blocked,
                "recipients": r.recipients,
                "recorded": r.recorded,
                "delivered": r.delivered,
                "ok": r.ok,
            }
            for r in results
        ]
    })


@https_fn.on_request(region=REGION)
def save_geofence(request: Request):
    """Create (no 'id') or update a geofence. Admins only; validation errors come back as 400."""
    if request.method == 'OPTIONS':
        return add_cors_headers({}), 204

    caller = get_caller_uid(request)
    if not caller:
        return json_response({"error": "Unauthorized"}, 401)

    data = request.get_json(silent=True) or {}
    try:
        fence_id = asyncio.run(get_editor().save_geofence(caller, data, data.get("id")))
    except GeofenceValidationError as e:
        return json_response({"error": str(e), "field": e.field}, 400)
    except GeofencePermissionError as e:
        return json_response({"error": str(e)}, 403)
    except StoreError as e:
        logger.error(f"Error in save_geofence: {str(e)}")
        return json_response({"error": "Could not save geofence"}, 500)

    return json_response({"id": fence_id})


@https_fn.on_request(region=REGION)
def delete_geofence(request: Request):
    if request.method == 'OPTIONS':
        return add_cors_headers({}), 204

    caller = get_caller_uid(request)
    if not caller:
        return json_response({"error": "Unauthorized"}, 401)

    fence_id = (request.get_json(silent=True) or {}).get("id") or request.args.get("id")
    if not fence_id:
        return json_response({"error": "Missing required field: id"}, 400)

    try:
        asyncio.run(get_editor().delete_geofence(caller, fence_id))
    except GeofenceValidationError as e:
        return json_response({"error": str(e), "field": e.field}, 404)
    except GeofencePermissionError as e:
        return json_response({"error": str(e)}, 403)
    except StoreError as e:
        logger.error(f"Error in delete_geofence: {str(e)}")
        return json_response({"error": "Could not delete geofence"}, 500)

    return json_response({"deleted": fence_id})


@https_fn.on_request(region=REGION)
def mark_notification_read(request: Request):
    """Acknowledge one of the caller's notifications."""
    if request.method == 'OPTIONS':
        return add_cors_headers({}), 204

    caller = get_caller_uid(request)
    if not caller:
        return json_response({"error": "Unauthorized"}, 401)

    notification_id = (request.get_json(silent=True) or {}).get("id")
    if not notification_id:
        return json_response({"error": "Missing required field: id"}, 400)

    try:
        found = asyncio.run(get_notification_log().mark_read(notification_id, recipient_id=caller))
    except StoreError as e:
        logger.error(f"Error in mark_notification_read: {str(e)}")
        return json_response({"error": str(e)}, 500)

    if not found:
        return json_response({"error": "Notification not found"}, 404)
    return json_response({"read": notification_id})
