"""Geographic helpers used by geofence conditions."""

from __future__ import annotations

import math
from typing import Sequence

from pydantic import BaseModel, ConfigDict

EARTH_RADIUS_KM = 6371.0


class LatLng(BaseModel):
    """A point in decimal degrees."""

    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres between two points."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def point_in_polygon(lat: float, lng: float, polygon: Sequence[LatLng]) -> bool:
    """Ray-casting test treating longitude as x and latitude as y.

    Polygons with fewer than three vertices contain nothing.
    """
    if len(polygon) < 3:
        return False

    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        xi, yi = polygon[i].lng, polygon[i].lat
        xj, yj = polygon[j].lng, polygon[j].lat
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < x_cross:
                inside = not inside
        j = i
    return inside
