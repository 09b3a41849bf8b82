"""
Geometry helpers: great-circle distance and geofence membership
"""

import math

from .models import Geofence

EARTH_RADIUS_M = 6371000.0


def haversine_m(a, b) -> float:
    """
    Great-circle distance in metres between two points on a spherical earth.

    Accepts anything with latitude/longitude attributes (Coordinate,
    LocationSample, GeoPoint). NaN inputs propagate as NaN.
    """
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    # Clamp so rounding noise can't push sqrt(1 - h) negative
    if h > 1.0:
        h = 1.0
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def is_inside(point, fence: Geofence) -> bool:
    """Boundary-inclusive membership test. Fence is assumed validated."""
    return haversine_m(point, fence.center) <= fence.radius_m
