"""
services/booking/pricing.py
Fare and arrival-time estimates for bookings.
"""

from datetime import datetime, timedelta
from typing import Optional

from config.settings import settings
from shared.models.models import BookingPriority
from shared.utils.geo import haversine_km

PRIORITY_MULTIPLIERS = {
    BookingPriority.LOW: 1.0,
    BookingPriority.MEDIUM: 1.2,
    BookingPriority.HIGH: 1.5,
    BookingPriority.CRITICAL: 2.0,
}

MIN_ETA_MINUTES = 5


def resolve_distance_km(
    route_distance_km: Optional[float],
    pickup_lat: Optional[float] = None,
    pickup_lng: Optional[float] = None,
    destination_lat: Optional[float] = None,
    destination_lng: Optional[float] = None,
) -> float:
    """Recorded route distance, else straight-line distance, else the configured fallback."""
    if route_distance_km is not None:
        return float(route_distance_km)
    if None not in (pickup_lat, pickup_lng, destination_lat, destination_lng):
        return haversine_km(pickup_lat, pickup_lng, destination_lat, destination_lng)
    return settings.DEFAULT_ROUTE_DISTANCE_KM


def calculate_fare(distance_km: float, priority: BookingPriority) -> dict:
    """
    totalFare = (baseFare + distance_km x perKm) x priority multiplier.
    Returned keys match the Booking fare columns.
    """
    multiplier = PRIORITY_MULTIPLIERS[BookingPriority(priority)]
    base_fare = round(settings.BASE_FARE, 2)
    distance_fare = round(max(distance_km, 0.0) * settings.FARE_PER_KM, 2)
    return {
        "base_fare": base_fare,
        "distance_fare": distance_fare,
        "priority_multiplier": multiplier,
        "total_fare": round((base_fare + distance_fare) * multiplier, 2),
    }


def estimate_arrival(
    now: datetime,
    driver_lat: Optional[float] = None,
    driver_lng: Optional[float] = None,
    pickup_lat: Optional[float] = None,
    pickup_lng: Optional[float] = None,
) -> datetime:
    """Drive time at the average speed when both points are known, else a fixed offset."""
    if None in (driver_lat, driver_lng, pickup_lat, pickup_lng):
        return now + timedelta(minutes=settings.DEFAULT_ETA_MINUTES)
    distance = haversine_km(driver_lat, driver_lng, pickup_lat, pickup_lng)
    minutes = max(MIN_ETA_MINUTES, distance / settings.AVERAGE_SPEED_KMH * 60)
    return now + timedelta(minutes=minutes)
