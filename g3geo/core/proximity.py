"""
g3geo Proximity Validation

Great-circle distance and radius checks used by the region cache, the
coordinator's route sampling and the QR proof-of-presence gate.

All call sites share one Earth radius so that distances are reproducible
across components and in tests.
"""

from __future__ import annotations

import math
from typing import Any

from ..models import GeoLocation


EARTH_RADIUS_METERS = 6_371_000.0


def distance_meters(a: Any, b: Any) -> float:
    """
    Calculate the great-circle distance between two points.

    Uses the Haversine formula. Both arguments only need `latitude` and
    `longitude` attributes, so GeoLocation, BusinessLocation and cached
    entries' locations are all accepted.

    Returns:
        Distance in meters
    """
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    delta_phi = math.radians(b.latitude - a.latitude)
    delta_lambda = math.radians(b.longitude - a.longitude)

    h = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return EARTH_RADIUS_METERS * c


def within_radius(point: Any, center: Any, radius_meters: float) -> bool:
    """True when `point` lies within `radius_meters` of `center` (inclusive)."""
    return distance_meters(point, center) <= radius_meters


def midpoint(start: GeoLocation, end: GeoLocation) -> GeoLocation:
    """Coordinate midpoint of a short segment (not the geodesic midpoint)."""
    return GeoLocation(
        latitude=(start.latitude + end.latitude) / 2,
        longitude=(start.longitude + end.longitude) / 2,
        timestamp=max(start.timestamp, end.timestamp),
    )
