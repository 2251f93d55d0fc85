"""Truncation detection for capped query responses."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .config import CAP_LIMIT
from .models import CapEvent, Point, SearchOutcome


def is_capped(raw_count: int, limit: int = CAP_LIMIT) -> bool:
    return raw_count >= limit


@dataclass(frozen=True)
class CapDetector:
    """A response that reaches the remote element cap cannot be treated as complete."""

    limit: int = CAP_LIMIT

    def is_capped(self, raw_count: int) -> bool:
        return is_capped(raw_count, self.limit)

    def event_for(self, center: Point, outcome: SearchOutcome, tag_filter: Sequence[str]) -> CapEvent:
        return CapEvent(
            center=center,
            radius_used_m=outcome.radius_used_m,
            raw_count=outcome.raw_count,
            parsed_count=len(outcome.pois),
            tag_filter=tuple(tag_filter),
        )
