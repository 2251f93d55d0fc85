"""Geospatial helpers."""
from __future__ import annotations

import math
from typing import List, Tuple

from .config import METERS_PER_DEG_LAT
from .models import Point

# 3x3 neighbourhood minus the centre, row by row from the south-west.
NEIGHBOR_OFFSETS: Tuple[Tuple[int, int], ...] = tuple(
    (dy, dx) for dy in (-1, 0, 1) for dx in (-1, 0, 1) if not (dy == 0 and dx == 0)
)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r * c


def lon_scale(lat: float) -> float:
    cos_lat = math.cos(math.radians(lat))
    if abs(cos_lat) < 1e-3:
        cos_lat = 1e-3
    return cos_lat


def meters_to_lat_deg(meters: float) -> float:
    return meters / METERS_PER_DEG_LAT


def meters_to_lon_deg(meters: float, lat: float) -> float:
    return meters_to_lat_deg(meters) / lon_scale(lat)


def planar_distance_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Flat-earth distance in degrees of latitude, longitude scaled at lat1."""
    d_lat = lat2 - lat1
    d_lon = (lon2 - lon1) * math.cos(math.radians(lat1))
    return math.sqrt(d_lat * d_lat + d_lon * d_lon)


def grid_key(lat: float, lon: float, precision: int = 3) -> Tuple[float, float]:
    return (float(f"{lat:.{precision}f}"), float(f"{lon:.{precision}f}"))


def grid_step(radius_m: float, lat: float, overlap_factor: float = 0.8) -> Tuple[float, float]:
    """Grid spacing (lat, lon degrees) for circles of radius_m.

    Spacing is overlap_factor of the diameter so neighbouring circles overlap.
    """
    step_lat = meters_to_lat_deg(overlap_factor * 2 * radius_m)
    step_lon = step_lat / lon_scale(lat)
    return step_lat, step_lon


def ring_points(
    ring: int,
    center_lat: float,
    center_lon: float,
    step_lat: float,
    step_lon: float,
) -> List[Point]:
    """Ordered perimeter of the (2n+1)x(2n+1) grid around the centre.

    Top edge left to right, right edge downwards, bottom edge right to left,
    left edge upwards. Ring 0 is the centre alone; ring n has 8n points.
    """
    if ring < 0:
        raise ValueError("ring must be >= 0")
    if ring == 0:
        return [Point(center_lat, center_lon)]

    n = ring
    cells: List[Tuple[int, int]] = []
    for dx in range(-n, n + 1):
        cells.append((n, dx))
    for dy in range(n - 1, -n - 1, -1):
        cells.append((dy, n))
    for dx in range(n - 1, -n - 1, -1):
        cells.append((-n, dx))
    for dy in range(-n + 1, n):
        cells.append((dy, -n))

    return [Point(center_lat + dy * step_lat, center_lon + dx * step_lon) for dy, dx in cells]


def quadrant_centers(center: Point, half_radius_m: float) -> List[Point]:
    """NW, NE, SW, SE sub-centres offset by half_radius_m on both axes."""
    d_lat = meters_to_lat_deg(half_radius_m)
    d_lon = meters_to_lon_deg(half_radius_m, center.lat)
    return [
        Point(center.lat + d_lat, center.lon - d_lon),
        Point(center.lat + d_lat, center.lon + d_lon),
        Point(center.lat - d_lat, center.lon - d_lon),
        Point(center.lat - d_lat, center.lon + d_lon),
    ]


def neighbor_points(center: Point, radius_m: float, overlap_factor: float = 0.8) -> List[Point]:
    """The 8 grid neighbours of center at the spacing implied by radius_m."""
    step_lat, step_lon = grid_step(radius_m, center.lat, overlap_factor)
    return [
        Point(center.lat + dy * step_lat, center.lon + dx * step_lon) for dy, dx in NEIGHBOR_OFFSETS
    ]
