"""
Shared utilities for Playpark data sources
Distance calculations and metre/degree conversions
"""

import math

EARTH_RADIUS_M = 6371000
EARTH_CIRCUMFERENCE_M = 40075000
METERS_PER_DEGREE_LAT = 111320


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points in meters using the Haversine formula.

    Args:
        lat1, lon1: First point coordinates
        lat2, lon2: Second point coordinates

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = math.sin(delta_phi/2)**2 + math.cos(phi1) * \
        math.cos(phi2) * math.sin(delta_lambda/2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1-a))

    return EARTH_RADIUS_M * c


def meters_to_lat_degrees(meters: float) -> float:
    """Equirectangular approximation: degrees of latitude spanned by `meters`."""
    return meters / METERS_PER_DEGREE_LAT


def meters_to_lon_degrees(meters: float, lat: float) -> float:
    """Degrees of longitude spanned by `meters` at latitude `lat`."""
    return meters / (METERS_PER_DEGREE_LAT * math.cos(math.radians(lat)))


def lat_span_meters(south: float, north: float) -> float:
    """North-south extent of a latitude band in meters (inverse of meters_to_lat_degrees)."""
    return (north - south) * METERS_PER_DEGREE_LAT
