"""Client-side search layer every caller goes through.

Resolves the radius from the hint cache, runs the query, feeds the settled
radius back into the cache and the proxy, and publishes CapEvents for
truncated ad-hoc results.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable, List, Optional, Sequence

from .cache import PoiStore
from .cap import CapDetector
from .config import DiscoveryConfig
from .gateway import QueryGateway, normalize_tags
from .models import CapEvent, Point, Poi, SearchOutcome
from .radius_cache import RadiusHintCache

logger = logging.getLogger(__name__)

CapListener = Callable[[CapEvent], None]


class PoiSearchService:
    def __init__(
        self,
        gateway: QueryGateway,
        radius_cache: RadiusHintCache,
        store: Optional[PoiStore] = None,
        config: Optional[DiscoveryConfig] = None,
    ) -> None:
        self.gateway = gateway
        self.radius_cache = radius_cache
        self.store = store
        self.config = config or radius_cache.config
        self.cap_detector = CapDetector(self.config.cap_limit)
        self._cap_listeners: List[CapListener] = []
        self._listeners_lock = threading.Lock()

    def add_cap_listener(self, listener: CapListener) -> None:
        with self._listeners_lock:
            self._cap_listeners.append(listener)

    def remove_cap_listener(self, listener: CapListener) -> None:
        with self._listeners_lock:
            if listener in self._cap_listeners:
                self._cap_listeners.remove(listener)

    def resolve_radius(self, center: Point) -> Optional[int]:
        return self.radius_cache.lookup(center)

    def search(
        self,
        center: Point,
        tags: Optional[Sequence[str]] = None,
        radius_m: Optional[int] = None,
        emit_caps: bool = True,
    ) -> SearchOutcome:
        """Run one query.

        radius_m overrides the cached hint. With emit_caps=False a truncated
        result is still flagged as capped but no CapEvent is published; the
        subdivision and scan layers handle truncation themselves.
        """
        tag_filter = normalize_tags(tags)
        radius = radius_m if radius_m is not None else self.resolve_radius(center)
        try:
            outcome = self.gateway.search(center, radius, tag_filter)
        except Exception:
            self.gateway.feedback(center, 0, False, error=True)
            raise

        self.radius_cache.put(center, outcome.radius_used_m)
        capped = self.cap_detector.is_capped(outcome.raw_count)

        new_count, known_count = 0, len(outcome.pois)
        if self.store is not None:
            new_count, known_count = self.store.record_pois(outcome.pois)

        recommended = self.gateway.feedback(center, len(outcome.pois), capped)
        if recommended is not None:
            self.radius_cache.put(center, recommended)

        outcome = replace(outcome, capped=capped, new_count=new_count, known_count=known_count)
        logger.debug(
            "Search %.5f,%.5f radius=%sm -> %s POIs (raw %s, %s new)%s",
            center.lat,
            center.lon,
            outcome.radius_used_m,
            len(outcome.pois),
            outcome.raw_count,
            new_count,
            " [cache]" if outcome.cache_hit else "",
        )

        if capped:
            logger.warning(
                "Result capped at %.5f,%.5f (raw=%s, parsed=%s, radius=%sm)",
                center.lat,
                center.lon,
                outcome.raw_count,
                len(outcome.pois),
                outcome.radius_used_m,
            )
            if emit_caps:
                self._publish(self.cap_detector.event_for(center, outcome, tag_filter))
        return outcome

    def _publish(self, event: CapEvent) -> None:
        with self._listeners_lock:
            listeners = list(self._cap_listeners)
        for listener in listeners:
            listener(event)

    def search_cache_only(
        self,
        center: Point,
        tags: Optional[Sequence[str]] = None,
        radius_m: Optional[int] = None,
    ) -> Optional[SearchOutcome]:
        """Whatever the proxy already has cached for this cell; None when it has nothing."""
        radius = radius_m if radius_m is not None else self.resolve_radius(center)
        if radius is None:
            radius = self.config.default_radius_m
        outcome = self.gateway.search_cache_only(center, radius, normalize_tags(tags))
        if outcome is None:
            return None
        new_count, known_count = 0, len(outcome.pois)
        if self.store is not None:
            new_count, known_count = self.store.record_pois(outcome.pois)
        return replace(
            outcome,
            capped=self.cap_detector.is_capped(outcome.raw_count),
            new_count=new_count,
            known_count=known_count,
        )

    def pois_in_bbox(self, south: float, west: float, north: float, east: float) -> List[Poi]:
        if self.store is None:
            return []
        return self.store.pois_in_bbox(south, west, north, east)
