"""
Geodesic helpers shared by quoting, dispatch and live tracking.
"""
from __future__ import annotations

import math
from typing import List, Optional, Tuple

from shapely.geometry import LineString, Point

EARTH_RADIUS_M = 6371000.0
POLYLINE_FACTOR = 1e-5


def distance_meters(a_lat: float, a_lng: float, b_lat: float, b_lng: float) -> float:
    """
    Great-circle (Haversine) distance between two coordinates in metres.
    """
    lat1 = math.radians(a_lat)
    lat2 = math.radians(b_lat)
    d_lat = math.radians(b_lat - a_lat)
    d_lng = math.radians(b_lng - a_lng)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def bearing_degrees(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Initial compass bearing from point 1 to point 2, in [0, 360).

    Callers are expected to skip this for near-zero displacements and keep
    their previous heading instead.
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_lambda = math.radians(lng2 - lng1)

    x = math.sin(d_lambda) * math.cos(phi2)
    y = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(
        d_lambda
    )
    bearing = math.degrees(math.atan2(x, y))
    # The modulo can round up to exactly 360.0 for tiny negative angles.
    return (bearing + 360) % 360 % 360


def decode_polyline(encoded: Optional[str]) -> List[Tuple[float, float]]:
    """
    Decode a Google encoded polyline (5 decimal precision) into (lat, lng) pairs.
    """
    coordinates: List[Tuple[float, float]] = []
    if not encoded:
        return coordinates

    index = 0
    lat = 0
    lng = 0
    while index < len(encoded):
        lat_change, index = _decode_value(encoded, index)
        lng_change, index = _decode_value(encoded, index)
        lat += lat_change
        lng += lng_change
        coordinates.append((lat * POLYLINE_FACTOR, lng * POLYLINE_FACTOR))

    return coordinates


def _decode_value(encoded: str, index: int) -> Tuple[int, int]:
    result = 0
    shift = 0

    while True:
        if index >= len(encoded):
            raise ValueError("Invalid polyline: buffer exhausted.")
        b = ord(encoded[index]) - 63
        index += 1
        result |= (b & 0x1F) << shift
        shift += 5
        if b < 0x20:
            break

    delta = ~(result >> 1) if (result & 1) else (result >> 1)
    return delta, index


def route_progress(points: List[Tuple[float, float]], lat: float, lng: float) -> Optional[float]:
    """
    Fraction of the route already covered by a position, projected onto the path.

    Returns None when the route has fewer than two points.
    """
    if len(points) < 2:
        return None
    # Shapely works in (x, y) = (lng, lat).
    line = LineString([(point_lng, point_lat) for point_lat, point_lng in points])
    if line.length == 0:
        return None
    return round(line.project(Point(lng, lat), normalized=True), 3)
