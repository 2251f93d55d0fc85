"""In-memory radius hints keyed by quantized grid cell."""
from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from .config import DiscoveryConfig
from .geo import grid_key, planar_distance_deg
from .models import Point

logger = logging.getLogger(__name__)

GridCellKey = Tuple[float, float]


class RadiusHintCache:
    """Last-known-good search radius per grid cell.

    Shared by ad-hoc searches, subdivision and scanning, so every access goes
    through one lock. No eviction: the working set is one metro area.
    """

    def __init__(self, config: Optional[DiscoveryConfig] = None) -> None:
        self.config = config or DiscoveryConfig()
        self._hints: Dict[GridCellKey, int] = {}
        # Point each hint was recorded at; fuzzy distance is measured to it.
        self._origins: Dict[GridCellKey, Point] = {}
        self._lock = threading.Lock()

    def key_for(self, point: Point) -> GridCellKey:
        return grid_key(point.lat, point.lon, self.config.grid_key_precision)

    def get(self, point: Point) -> Optional[int]:
        key = self.key_for(point)
        with self._lock:
            return self._hints.get(key)

    def fuzzy_get(self, point: Point, max_distance_deg: Optional[float] = None) -> Optional[int]:
        """Exact hit, else the radius of the nearest recorded point within range."""
        if max_distance_deg is None:
            max_distance_deg = self.config.fuzzy_match_max_deg
        key = self.key_for(point)
        with self._lock:
            exact = self._hints.get(key)
            if exact is not None:
                return exact
            entries = [(self._origins[k], r) for k, r in self._hints.items()]

        nearest: Optional[int] = None
        nearest_dist = float("inf")
        for origin, radius in entries:
            dist = planar_distance_deg(point.lat, point.lon, origin.lat, origin.lon)
            if dist <= max_distance_deg and dist < nearest_dist:
                nearest = radius
                nearest_dist = dist
        if nearest is not None:
            logger.debug(
                "Radius fuzzy hit for %s: %.2f mi away -> %sm",
                key,
                nearest_dist / self.config.fuzzy_match_max_deg,
                nearest,
            )
        return nearest

    def lookup(self, point: Point) -> Optional[int]:
        return self.fuzzy_get(point)

    def put(self, point: Point, radius_m: int) -> int:
        radius = self.config.clamp_radius(radius_m)
        key = self.key_for(point)
        with self._lock:
            self._hints[key] = radius
            self._origins[key] = point
        return radius

    def load(self, entries: Iterable[Tuple[float, float, int]]) -> int:
        count = 0
        for lat, lon, radius in entries:
            self.put(Point(lat, lon), radius)
            count += 1
        return count

    def items(self) -> List[Tuple[float, float, int]]:
        with self._lock:
            return [(lat, lon, radius) for (lat, lon), radius in self._hints.items()]

    def clear(self) -> None:
        with self._lock:
            self._hints.clear()
            self._origins.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._hints)
