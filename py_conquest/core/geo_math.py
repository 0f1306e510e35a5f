"""
Geodesic primitives for the territory engine.

This module implements:
- Great-circle (haversine) distance
- Spherical-excess polygon area
- Even-odd point-in-polygon test
- Convex hull construction
- Axis-aligned bounding boxes and overlap tests

All functions are pure. Coordinates are ``(longitude, latitude)`` pairs in
degrees, rings are lists of such pairs.
"""

import math
from typing import List, NamedTuple, Sequence

import numpy as np
from scipy.spatial import ConvexHull, QhullError

from .models import Coordinates

EARTH_RADIUS_M = 6371000.0  # Mean Earth radius in meters
KM_PER_DEGREE = 111.0  # Approximate length of one degree of latitude


class Bounds(NamedTuple):
    """Axis-aligned bounding box in degrees."""
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float


def distance(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Great-circle distance between two coordinate pairs.

    Args:
        a: First (lon, lat) pair
        b: Second (lon, lat) pair

    Returns:
        Distance in meters
    """
    lon1, lat1 = math.radians(a[0]), math.radians(a[1])
    lon2, lat2 = math.radians(b[0]), math.radians(b[1])

    d_lat = lat2 - lat1
    d_lon = lon2 - lon1

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_M * c


def path_length(path: Sequence[Sequence[float]]) -> float:
    """Total length of a path in meters."""
    return sum(distance(path[i], path[i + 1]) for i in range(len(path) - 1))


def open_ring(ring: Sequence[Sequence[float]]) -> List[Coordinates]:
    """Drop the closing vertex of a ring if it repeats the first one."""
    points = [(float(p[0]), float(p[1])) for p in ring]
    if len(points) > 1 and points[0] == points[-1]:
        points = points[:-1]
    return points


def close_ring(ring: Sequence[Sequence[float]]) -> List[Coordinates]:
    """Return the ring with its first vertex repeated at the end."""
    points = open_ring(ring)
    if points:
        points.append(points[0])
    return points


def polygon_area(closed_path: Sequence[Sequence[float]]) -> float:
    """
    Area of a polygon on the sphere using spherical excess.

    Each edge contributes the excess of the spherical triangle it forms with
    the pole; summing the per-edge terms gives the polygon's excess, which
    multiplied by R² is its area.

    Args:
        closed_path: Ring of (lon, lat) pairs, closed or open

    Returns:
        Area in square meters (always non-negative)
    """
    points = open_ring(closed_path)
    if len(points) < 3:
        return 0.0

    excess = 0.0
    n = len(points)
    for i in range(n):
        lon1, lat1 = points[i]
        lon2, lat2 = points[(i + 1) % n]
        d_lon = math.radians(lon2 - lon1)
        t1 = math.tan(math.radians(lat1) / 2)
        t2 = math.tan(math.radians(lat2) / 2)
        excess += 2 * math.atan2(math.tan(d_lon / 2) * (t1 + t2), 1 + t1 * t2)

    return abs(excess) * EARTH_RADIUS_M ** 2


def point_in_polygon(point: Sequence[float], ring: Sequence[Sequence[float]]) -> bool:
    """
    Even-odd ray casting test.

    Works for non-convex rings. Points exactly on an edge may fall on
    either side.
    """
    points = open_ring(ring)
    if len(points) < 3:
        return False

    x, y = float(point[0]), float(point[1])
    inside = False
    j = len(points) - 1
    for i in range(len(points)):
        xi, yi = points[i]
        xj, yj = points[j]
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside


def convex_hull(points: Sequence[Sequence[float]]) -> List[Coordinates]:
    """
    Convex hull of a point set.

    The hull is returned as an open ring in counter-clockwise order starting
    at the lexicographically smallest (lon, lat) vertex, so hulling a hull's
    own vertices gives back the same ring.

    Args:
        points: Input (lon, lat) pairs

    Returns:
        Hull vertices, or an empty list for fewer than 3 distinct points or
        collinear input
    """
    if len(points) == 0:
        return []

    unique = np.unique(np.asarray(points, dtype=float)[:, :2], axis=0)
    if len(unique) < 3:
        return []

    try:
        hull = ConvexHull(unique)
    except QhullError:
        # Collinear or otherwise degenerate input
        return []

    # For 2-D input scipy already lists vertices counter-clockwise
    vertices = [(float(unique[i][0]), float(unique[i][1])) for i in hull.vertices]
    start = vertices.index(min(vertices))
    return vertices[start:] + vertices[:start]


def bounds(ring: Sequence[Sequence[float]]) -> Bounds:
    """Bounding box of a ring or point list."""
    if len(ring) == 0:
        raise ValueError("Cannot compute bounds of an empty ring")
    arr = np.asarray(ring, dtype=float)[:, :2]
    min_lon, min_lat = arr.min(axis=0)
    max_lon, max_lat = arr.max(axis=0)
    return Bounds(float(min_lon), float(min_lat), float(max_lon), float(max_lat))


def bounds_overlap(a: Bounds, b: Bounds) -> bool:
    """Axis-aligned overlap test; touching boxes count as overlapping."""
    return (
        a.min_lon <= b.max_lon
        and a.max_lon >= b.min_lon
        and a.min_lat <= b.max_lat
        and a.max_lat >= b.min_lat
    )


def radius_bounds(center: Sequence[float], radius_km: float) -> Bounds:
    """
    Bounding box around ``center`` that contains a circle of ``radius_km``.

    Longitude degrees shrink with cos(latitude), so the longitude half-width
    is widened accordingly.
    """
    lon, lat = float(center[0]), float(center[1])
    lat_delta = radius_km / KM_PER_DEGREE
    cos_lat = max(math.cos(math.radians(lat)), 1e-12)
    lon_delta = radius_km / (KM_PER_DEGREE * cos_lat)
    return Bounds(lon - lon_delta, lat - lat_delta, lon + lon_delta, lat + lat_delta)
