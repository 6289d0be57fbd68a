"""Great-circle distance and provider unit conversions."""

import math

EARTH_RADIUS_KM = 6371.0
EARTH_RADIUS_M = 6371000.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(a))

    return EARTH_RADIUS_KM * c


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_km(lat1, lon1, lat2, lon2) * 1000.0


def m_to_km(meters: float) -> float:
    return meters / 1000.0


def km_to_m(km: float) -> float:
    return km * 1000.0


def mh_to_kmh(meters_per_hour: float) -> float:
    """Provider speeds are meters/hour."""
    return meters_per_hour / 1000.0


def has_coordinates(lat, lon) -> bool:
    """False for missing values and for the (0, 0) placeholder the provider sends.

    A single zero is a real position on the equator or the prime meridian.
    """
    if lat is None or lon is None:
        return False
    return not (float(lat) == 0.0 and float(lon) == 0.0)
