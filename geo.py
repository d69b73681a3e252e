"""
Great-circle geometry and travel-time helpers.
"""
import math
from typing import Optional

# Earth's mean radius in kilometers
EARTH_RADIUS_KM = 6371.0

# Nominal road speeds in km/h
VEHICLE_SPEEDS_KMH = {
    "motorcycle": 30.0,
    "car": 50.0,
}
DEFAULT_SPEED_KMH = 40.0

def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Distance in kilometers between two points on the Earth's surface.

    a = sin²(Δφ/2) + cos(φ1) * cos(φ2) * sin²(Δλ/2)
    d = 2R * atan2(√a, √(1−a))

    Examples:
        >>> haversine_distance(9.0, 7.0, 9.0, 7.0)
        0.0
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    # Rounding can push a marginally past 1 for antipodal points
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c

def speed_for(vehicle_type: Optional[str]) -> float:
    return VEHICLE_SPEEDS_KMH.get(vehicle_type or "", DEFAULT_SPEED_KMH)

def travel_minutes(distance_km: float, speed_kmh: float) -> float:
    return distance_km / speed_kmh * 60
