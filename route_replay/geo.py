"""Geospatial utilities (no external dependencies)."""

from __future__ import annotations

import math

from route_replay.models import GeoPoint

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_LAT_DEGREE = 111_320.0
# Readings this close to the equator or prime meridian are treated as corrupted (0,0 fixes).
CORRUPTED_COORD_EPS = 0.001


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute Haversine distance in meters between two lat/lon points.

    Args:
        lat1: Latitude 1 in degrees.
        lon1: Longitude 1 in degrees.
        lat2: Latitude 2 in degrees.
        lon2: Longitude 2 in degrees.

    Returns:
        Distance in meters.
    """

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def distance_m(a: GeoPoint, b: GeoPoint) -> float:
    """Haversine distance between two points in meters."""

    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def speed_kmh(a: GeoPoint, b: GeoPoint) -> float:
    """Average speed from a to b in km/h. Zero when no time elapsed."""

    dt_ms = b.timestamp_ms - a.timestamp_ms
    if dt_ms <= 0:
        return 0.0
    return distance_m(a, b) / (dt_ms / 1000.0) * 3.6


def bearing_deg(a: GeoPoint, b: GeoPoint) -> float:
    """Initial bearing from a to b in degrees, clockwise from north in [0, 360)."""

    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)
    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def is_plausible_coordinate(lat: float, lon: float) -> bool:
    """Check range validity and reject near-zero readings."""

    if math.isnan(lat) or math.isnan(lon):
        return False
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return False
    return abs(lat) > CORRUPTED_COORD_EPS and abs(lon) > CORRUPTED_COORD_EPS


def meters_to_lat_deg(meters: float) -> float:
    return meters / METERS_PER_LAT_DEGREE


def meters_to_lng_deg(meters: float, at_lat: float) -> float:
    """Degrees of longitude spanning ``meters`` at the given latitude."""

    cos_lat = max(math.cos(math.radians(at_lat)), 1e-6)
    return meters / (METERS_PER_LAT_DEGREE * cos_lat)
