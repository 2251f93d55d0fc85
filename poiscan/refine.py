"""Recursive local refinement shared by cap subdivision and density fill.

Both algorithms split a cell into child points, query each child in turn and
recurse into a child whose result signals that it is still too coarse. They
differ only in the child layout, the trigger and the radius carried down,
which is what RefineStrategy captures.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .config import DiscoveryConfig
from .geo import neighbor_points, quadrant_centers
from .models import Point, SearchOutcome
from .pacing import Pacer

logger = logging.getLogger(__name__)

QueryFn = Callable[[Point, Optional[int]], SearchOutcome]


@dataclass(frozen=True)
class RefineStrategy:
    name: str
    floor_m: int
    # Radius each child is sized for, given the parent radius.
    child_radius: Callable[[int], int]
    layout: Callable[[Point, int], List[Point]]
    # Radius override sent with a child query; None lets the cache/gateway decide.
    query_radius: Callable[[int], Optional[int]]
    should_recurse: Callable[[SearchOutcome, int], bool]
    next_radius: Callable[[SearchOutcome, int], int]
    pace_seconds: float
    # Pace before the first child too (the parent query has just run).
    pace_first: bool = False


def quadrant_strategy(config: DiscoveryConfig) -> RefineStrategy:
    """Halve a capped cell into NW/NE/SW/SE quadrants, recursing while they stay capped."""

    def is_capped(outcome: SearchOutcome, radius: int) -> bool:
        return outcome.raw_count >= config.cap_limit

    return RefineStrategy(
        name="subdivision",
        floor_m=config.min_subdivision_radius_m,
        child_radius=lambda radius: radius // 2,
        layout=quadrant_centers,
        query_radius=lambda radius: radius,
        should_recurse=is_capped,
        next_radius=lambda outcome, radius: radius,
        pace_seconds=config.subdivision_pace_seconds,
        pace_first=False,
    )


def density_strategy(config: DiscoveryConfig) -> RefineStrategy:
    """Fill the 8 neighbours of a cell at the finer spacing its settled radius implies."""

    def settled_smaller(outcome: SearchOutcome, radius: int) -> bool:
        return outcome.radius_used_m < radius

    return RefineStrategy(
        name="density",
        floor_m=config.density_floor_m,
        child_radius=lambda radius: radius,
        layout=lambda center, radius: neighbor_points(center, radius, config.grid_overlap_factor),
        query_radius=lambda radius: None,
        should_recurse=settled_smaller,
        next_radius=lambda outcome, radius: outcome.radius_used_m,
        pace_seconds=config.scan_pace_seconds,
        pace_first=True,
    )


class RefineListener:
    """Hooks fired while refining. Subclass and override what you need."""

    def on_split(self, center: Point, radius_m: int, child_radius_m: int, depth: int) -> None:
        pass

    def on_floor(self, center: Point, radius_m: int, depth: int) -> None:
        pass

    def on_query(self, point: Point, radius_m: int, index: int, total: int, depth: int) -> None:
        pass

    def on_result(self, point: Point, outcome: SearchOutcome, depth: int, recurse: bool) -> None:
        pass

    def on_failure(self, point: Point, exc: Exception, depth: int) -> None:
        pass

    def on_wait(self, remaining_seconds: int) -> None:
        pass

    def on_node_done(self, center: Point, radius_m: int, depth: int) -> None:
        pass


@dataclass
class RefineReport:
    queries: int = 0
    failures: int = 0
    splits: int = 0
    floor_hits: int = 0
    max_depth: int = 0
    cancelled: bool = False

    def merge(self, other: "RefineReport") -> None:
        self.queries += other.queries
        self.failures += other.failures
        self.splits += other.splits
        self.floor_hits += other.floor_hits
        self.max_depth = max(self.max_depth, other.max_depth)
        self.cancelled = self.cancelled or other.cancelled


class Refiner:
    def __init__(
        self,
        strategy: RefineStrategy,
        query: QueryFn,
        pacer: Pacer,
        listener: Optional[RefineListener] = None,
    ) -> None:
        self.strategy = strategy
        self.query = query
        self.pacer = pacer
        self.listener = listener or RefineListener()

    def refine(self, center: Point, radius_m: int, depth: int = 0) -> RefineReport:
        report = RefineReport()
        self._refine(center, int(radius_m), depth, report, first_query=not self.strategy.pace_first)
        return report

    def _refine(self, center: Point, radius_m: int, depth: int, report: RefineReport, first_query: bool) -> bool:
        """Returns whether the next query may go out without pacing (nothing queried yet)."""
        try:
            return self._refine_node(center, radius_m, depth, report, first_query)
        finally:
            self.listener.on_node_done(center, radius_m, depth)

    def _refine_node(self, center: Point, radius_m: int, depth: int, report: RefineReport, first_query: bool) -> bool:
        strategy = self.strategy
        child_radius = strategy.child_radius(radius_m)
        if child_radius < strategy.floor_m:
            report.floor_hits += 1
            logger.info(
                "%s floor reached at %.5f,%.5f (radius %sm -> %sm < %sm), accepting loss",
                strategy.name,
                center.lat,
                center.lon,
                radius_m,
                child_radius,
                strategy.floor_m,
            )
            self.listener.on_floor(center, radius_m, depth)
            return first_query

        report.splits += 1
        report.max_depth = max(report.max_depth, depth + 1)
        self.listener.on_split(center, radius_m, child_radius, depth)
        children = strategy.layout(center, child_radius)

        for idx, child in enumerate(children, start=1):
            if self.pacer.cancelled:
                report.cancelled = True
                return first_query
            if not first_query:
                if not self.pacer.wait(strategy.pace_seconds, on_tick=self.listener.on_wait):
                    report.cancelled = True
                    return first_query
            first_query = False

            self.listener.on_query(child, child_radius, idx, len(children), depth + 1)
            report.queries += 1
            try:
                outcome = self.query(child, strategy.query_radius(child_radius))
            except Exception as exc:
                report.failures += 1
                logger.warning("%s query %s/%s at %.5f,%.5f failed: %s", strategy.name, idx, len(children), child.lat, child.lon, exc)
                self.listener.on_failure(child, exc, depth + 1)
                continue

            recurse = strategy.should_recurse(outcome, child_radius)
            self.listener.on_result(child, outcome, depth + 1, recurse)
            if recurse:
                first_query = self._refine(
                    child,
                    strategy.next_radius(outcome, child_radius),
                    depth + 1,
                    report,
                    first_query,
                )
                if report.cancelled:
                    return first_query
        return first_query
