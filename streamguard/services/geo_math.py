"""Distance and speed calculations over (latitude, longitude) pairs."""
import math
from typing import Optional, Tuple

EARTH_RADIUS_KM = 6371.0

Coordinate = Tuple[float, float]


def haversine_distance_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two (lat, lon) points in kilometers."""
    lat1, lon1 = a
    lat2, lon2 = b
    if lat1 == lat2 and lon1 == lon2:
        return 0.0

    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    # Rounding can push h marginally outside [0, 1] for antipodal points
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def travel_speed_kmh(distance_km: float, time_diff_minutes: float) -> Optional[float]:
    """Implied speed for covering distance_km in time_diff_minutes.

    Returns None when the time delta is zero or negative, so callers never
    see an infinite or negative speed.
    """
    if time_diff_minutes is None or time_diff_minutes <= 0:
        return None
    return distance_km / (time_diff_minutes / 60)


def is_valid_coordinate(latitude: Optional[float], longitude: Optional[float]) -> bool:
    """Whether a coordinate pair is usable for distance comparisons.

    Lookups report (0, 0) for addresses they only know the registry of, so
    that point is treated as missing data rather than a location in the
    Gulf of Guinea.
    """
    if latitude is None or longitude is None:
        return False
    try:
        lat, lon = float(latitude), float(longitude)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return False
    return not (lat == 0.0 and lon == 0.0)
