"""
Admin-side geofence editing with validation at the write boundary
"""

import math
from typing import Any, Dict, Optional

from firebase_functions import logger

from .errors import GeofencePermissionError, GeofenceValidationError
from .models import Coordinate, Geofence, parse_coordinate

MAX_NAME_LENGTH = 50


def validate_geofence_input(data: Dict[str, Any], group_id: str, min_radius: float = 50.0,
                            max_radius: float = 5000.0, fence_id: Optional[str] = None) -> Geofence:
    """Build a Geofence from editor input or raise GeofenceValidationError naming the bad field."""
    name = (data.get("name") or "").strip()
    if not name:
        raise GeofenceValidationError("Geofence name is required.", field="name")
    if len(name) > MAX_NAME_LENGTH:
        raise GeofenceValidationError(f"Geofence name must be at most {MAX_NAME_LENGTH} characters.", field="name")

    center = parse_coordinate(data.get("center"))
    if center is None:
        raise GeofenceValidationError("Geofence center must be a valid latitude/longitude.", field="center")

    radius = data.get("radius")
    if isinstance(radius, bool) or not isinstance(radius, (int, float)) or not math.isfinite(radius):
        raise GeofenceValidationError("Geofence radius must be a number.", field="radius")
    radius = round(radius)
    if not min_radius <= radius <= max_radius:
        raise GeofenceValidationError(
            f"Radius must be between {min_radius:.0f}m and {max_radius:.0f}m.", field="radius")

    return Geofence(
        id=fence_id or "",
        group_id=group_id,
        name=name,
        center=Coordinate(center.latitude, center.longitude),
        radius_m=float(radius),
    )


class GeofenceEditor:
    """Create, edit and delete a family's geofences on behalf of an admin."""

    def __init__(self, subjects, geofences, min_radius: float = 50.0, max_radius: float = 5000.0):
        self._subjects = subjects
        self._geofences = geofences
        self._min_radius = min_radius
        self._max_radius = max_radius

    async def _require_admin(self, editor_id: str, group_id: Optional[str] = None):
        editor = await self._subjects.get_subject(editor_id)
        if editor is None or not editor.group_id:
            raise GeofencePermissionError(f"User {editor_id} is not in a family.")
        if not editor.is_admin:
            raise GeofencePermissionError("Only family admins can change geofences.")
        if group_id is not None and group_id != editor.group_id:
            raise GeofencePermissionError("Geofence belongs to another family.")
        return editor

    async def save_geofence(self, editor_id: str, data: Dict[str, Any], fence_id: Optional[str] = None) -> str:
        """Validate and write a geofence; returns its id."""
        editor = await self._require_admin(editor_id)

        if fence_id:
            existing = await self._geofences.get_raw(fence_id)
            if existing is None:
                raise GeofenceValidationError(f"Geofence {fence_id} does not exist.", field="id")
            await self._require_admin(editor_id, existing.get("familyId"))

        fence = validate_geofence_input(data, editor.group_id, self._min_radius, self._max_radius, fence_id)
        saved_id = await self._geofences.save(fence, editor_id, create=not fence_id)
        logger.info(f"Geofence {saved_id} ({fence.name}, {fence.radius_m:.0f}m) saved by {editor_id}")
        return saved_id

    async def delete_geofence(self, editor_id: str, fence_id: str) -> None:
        existing = await self._geofences.get_raw(fence_id)
        if existing is None:
            raise GeofenceValidationError(f"Geofence {fence_id} does not exist.", field="id")
        await self._require_admin(editor_id, existing.get("familyId"))
        await self._geofences.delete(fence_id)
        logger.info(f"Geofence {fence_id} deleted by {editor_id}")
