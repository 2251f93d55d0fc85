"""Value types shared by the search, subdivision and scan layers."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Point:
    lat: float
    lon: float

    def as_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lon": self.lon}


@dataclass(frozen=True)
class Poi:
    poi_id: str
    name: str
    lat: float
    lon: float
    category: str
    address: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    opening_hours: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "poi_id": self.poi_id,
            "name": self.name,
            "lat": self.lat,
            "lon": self.lon,
            "category": self.category,
            "address": self.address,
            "phone": self.phone,
            "website": self.website,
            "opening_hours": self.opening_hours,
        }


@dataclass(frozen=True)
class SearchOutcome:
    """Result of one query.

    raw_count counts elements the remote side matched before client-side
    filtering; radius_used_m is the radius the remote side actually executed.
    capped/new_count/known_count are filled in by PoiSearchService.
    """

    pois: List[Poi]
    raw_count: int
    radius_used_m: int
    cache_hit: bool = False
    capped: bool = False
    new_count: int = 0
    known_count: int = 0


@dataclass(frozen=True)
class CapEvent:
    center: Point
    radius_used_m: int
    raw_count: int
    parsed_count: int
    tag_filter: Tuple[str, ...] = ()


class TaskState(str, Enum):
    PENDING = "pending"
    QUERIED = "queried"
    DONE = "done"
    RECURSE = "recurse"
    FLOOR = "floor"


@dataclass
class SubdivisionTask:
    center: Point
    radius_m: int
    tag_filter: Tuple[str, ...]
    depth: int = 0
    state: TaskState = TaskState.PENDING
    capped_children: List[Point] = field(default_factory=list)
