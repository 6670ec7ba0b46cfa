# app/services/geometry.py
"""
Geodesic helpers used by the geofence evaluator.

Coordinates are {"latitude": float, "longitude": float} dicts, distances are
meters.
"""
import math
from typing import Dict, List, Tuple

EARTH_RADIUS_M = 6371008.8

Point = Dict[str, float]


def haversine(a: Point, b: Point) -> float:
    """Great-circle distance between two points in meters."""
    lat1, lat2 = math.radians(a["latitude"]), math.radians(b["latitude"])
    d_lat = lat2 - lat1
    d_lon = math.radians(b["longitude"] - a["longitude"])
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def inside_circle(point: Point, center: Point, radius: float) -> bool:
    return haversine(point, center) <= radius


def inside_polygon(point: Point, polygon: List[Point]) -> bool:
    """Ray casting on lat/lon; the ring is closed implicitly."""
    if len(polygon) < 3:
        return False
    x, y = point["longitude"], point["latitude"]
    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        xi, yi = polygon[i]["longitude"], polygon[i]["latitude"]
        xj, yj = polygon[j]["longitude"], polygon[j]["latitude"]
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside


def _to_local(point: Point, origin: Point) -> Tuple[float, float]:
    """Equirectangular projection around origin, in meters."""
    lat0 = math.radians(origin["latitude"])
    x = math.radians(point["longitude"] - origin["longitude"]) * math.cos(lat0) * EARTH_RADIUS_M
    y = math.radians(point["latitude"] - origin["latitude"]) * EARTH_RADIUS_M
    return x, y


def _from_local(x: float, y: float, origin: Point) -> Point:
    lat0 = math.radians(origin["latitude"])
    return {
        "latitude": origin["latitude"] + math.degrees(y / EARTH_RADIUS_M),
        "longitude": origin["longitude"] + math.degrees(x / (EARTH_RADIUS_M * math.cos(lat0))),
    }


def closest_point_on_path(point: Point, path: List[Point]) -> Point:
    """Closest point of a polyline to the given point."""
    if len(path) == 1:
        return path[0]

    best, best_distance = path[0], float("inf")
    for start, end in zip(path, path[1:]):
        ax, ay = _to_local(start, point)
        bx, by = _to_local(end, point)
        dx, dy = bx - ax, by - ay
        length_sq = dx * dx + dy * dy
        t = 0.0 if length_sq == 0 else max(0.0, min(1.0, -(ax * dx + ay * dy) / length_sq))
        cx, cy = ax + t * dx, ay + t * dy
        distance = math.hypot(cx, cy)
        if distance < best_distance:
            best, best_distance = _from_local(cx, cy, point), distance
    return best


def distance_to_path(point: Point, path: List[Point]) -> float:
    """Geodesic distance from a point to the nearest point of a polyline."""
    if not path:
        return float("inf")
    return haversine(point, closest_point_on_path(point, path))
