from __future__ import annotations
import math
from typing import NamedTuple

EARTH_RADIUS_M = 6_371_000.0


class InvalidCoordinates(ValueError):
    pass


class Coordinates(NamedTuple):
    lat: float
    lng: float


def check_coordinates(lat: float, lng: float) -> Coordinates:
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        raise InvalidCoordinates(f"not a coordinate pair: {lat!r}, {lng!r}")
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise InvalidCoordinates("coordinates must be finite numbers")
    if not -90.0 <= lat <= 90.0:
        raise InvalidCoordinates(f"latitude out of range: {lat}")
    if not -180.0 <= lng <= 180.0:
        raise InvalidCoordinates(f"longitude out of range: {lng}")
    return Coordinates(lat, lng)


def distance_meters(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Great-circle (haversine) distance between two (lat, lng) points."""
    lat1, lng1 = check_coordinates(*a)
    lat2, lng2 = check_coordinates(*b)
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lng2 - lng1)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    # rounding can push h a hair past 1 for antipodal points
    h = min(1.0, h)
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(h))


def is_within_radius(distance: float, radius: float) -> bool:
    return distance <= radius
