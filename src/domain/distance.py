"""
Great-circle distance helpers.

Road distance and duration come from the routing service; these are only
used for the straight-line "km away" shown next to the ETA and for moving
the ambulance simulator.  Complexity: O(1) per call.
"""

import math

EARTH_RADIUS_KM = 6_371.0


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def planar_step(
    lat: float, lng: float, target_lat: float, target_lng: float, step: float
) -> tuple[float, float]:
    """
    Move ``step`` degrees from (lat, lng) straight towards the target,
    snapping onto it once it is closer than one step.
    """
    dlat = target_lat - lat
    dlng = target_lng - lng
    gap = math.hypot(dlat, dlng)
    if gap <= step:
        return target_lat, target_lng
    ratio = step / gap
    return lat + dlat * ratio, lng + dlng * ratio
