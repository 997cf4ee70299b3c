"""
shared/utils/geo.py
Great-circle distance and "lat,lng" parsing helpers.
"""

import math
from typing import Optional, Tuple

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Distance in kilometres between two WGS84 points."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def parse_lat_lng(value: str) -> Tuple[float, float]:
    """
    Parse the legacy "lat,lng" string form.
    Raises ValueError on anything that is not two comma-separated numbers in range.
    """
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != 2:
        raise ValueError("Location must be formatted as 'lat,lng'")
    lat, lng = float(parts[0]), float(parts[1])
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValueError("Location coordinates out of range")
    return lat, lng


def format_lat_lng(lat: Optional[float], lng: Optional[float]) -> Optional[str]:
    if lat is None or lng is None:
        return None
    return f"{lat:.6f},{lng:.6f}"
