# utils/request_utils.py

from typing import Any, Dict, Optional, Tuple

from firebase_admin import auth
from firebase_functions import logger
from flask import Request, jsonify

from family_alerts.models import LocationSample, parse_battery, parse_location


def add_cors_headers(response):
    """Add CORS headers to the response.

    Args:
        response: Either a Flask response object or a dictionary

    Returns:
        A Flask response object with CORS headers
    """
    # If response is a dict, convert it to a Flask response
    if isinstance(response, dict):
        response = jsonify(response)

    response.headers.set('Access-Control-Allow-Origin', '*')
    response.headers.set('Access-Control-Allow-Methods', 'GET, POST, DELETE, OPTIONS')
    response.headers.set('Access-Control-Allow-Headers', 'Content-Type, Authorization')
    return response


def json_response(body: Dict[str, Any], status: int = 200):
    return add_cors_headers(jsonify(body)), status


def get_caller_uid(request: Request) -> Optional[str]:
    """Verify the Firebase ID token in the Authorization header and return its uid."""
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    try:
        decoded = auth.verify_id_token(header[len("Bearer "):])
    except Exception as e:
        logger.warn(f"Rejected ID token: {e}")
        return None
    return decoded.get("uid")


def parse_evaluate_request(request: Request) -> Tuple[Optional[str], Dict[str, Any]]:
    """
    Parse an evaluate_subject request body.

    Returns:
        tuple: (user_id, kwargs for AlertEngine.evaluate). user_id is None
        when the body is unusable.
    """
    data = request.get_json(silent=True) or {}
    user_id = data.get("userId")
    if not user_id or not isinstance(user_id, str):
        return None, {}

    kwargs: Dict[str, Any] = {"sos": data.get("sos") is True}

    if "currentLocation" in data:
        previous: Optional[LocationSample] = parse_location(data.get("previousLocation"), user_id)
        current = parse_location(data.get("currentLocation"), user_id)
        if current is not None:
            kwargs["location"] = (previous, current)

    if "currentBattery" in data:
        current_battery = parse_battery(data.get("currentBattery"), user_id)
        if current_battery is not None:
            kwargs["battery"] = (parse_battery(data.get("previousBattery"), user_id), current_battery)

    return user_id, kwargs
