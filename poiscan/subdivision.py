"""Background resolution of capped (truncated) search results.

CapEvents land in a bounded mailbox with a single consumer. Each event is
resolved by recursive quadrant subdivision, one query at a time.
"""
from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from .config import DiscoveryConfig
from .models import CapEvent, Point, SearchOutcome, SubdivisionTask, TaskState
from .pacing import Clock, Pacer
from .refine import RefineListener, RefineReport, Refiner, quadrant_strategy
from .service import PoiSearchService

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 1024


class _TaskTracker(RefineListener):
    """Mirrors the refinement walk as SubdivisionTask records."""

    def __init__(self, root: SubdivisionTask) -> None:
        self.root = root
        self.tasks: List[SubdivisionTask] = [root]
        self._stack: List[SubdivisionTask] = [root]

    def on_floor(self, center: Point, radius_m: int, depth: int) -> None:
        self._stack[-1].state = TaskState.FLOOR

    def on_result(self, point: Point, outcome: SearchOutcome, depth: int, recurse: bool) -> None:
        parent = self._stack[-1]
        if parent.state == TaskState.PENDING:
            parent.state = TaskState.QUERIED
        if not recurse:
            return
        logger.info(
            "Quadrant %.5f,%.5f still capped (raw=%s) at depth %s, subdividing",
            point.lat,
            point.lon,
            outcome.raw_count,
            depth,
        )
        parent.capped_children.append(point)
        child = SubdivisionTask(
            center=point,
            radius_m=parent.radius_m // 2,
            tag_filter=parent.tag_filter,
            depth=depth,
        )
        self.tasks.append(child)
        self._stack.append(child)

    def on_failure(self, point: Point, exc: Exception, depth: int) -> None:
        parent = self._stack[-1]
        if parent.state == TaskState.PENDING:
            parent.state = TaskState.QUERIED

    def on_node_done(self, center: Point, radius_m: int, depth: int) -> None:
        task = self._stack.pop()
        if task.state == TaskState.FLOOR:
            return
        task.state = TaskState.RECURSE if task.capped_children else TaskState.DONE


class SubdivisionEngine:
    def __init__(
        self,
        service: PoiSearchService,
        config: Optional[DiscoveryConfig] = None,
        clock: Optional[Clock] = None,
        query_lane: Optional[threading.Lock] = None,
        history_limit: int = HISTORY_LIMIT,
    ) -> None:
        self.service = service
        self.config = config or service.config
        self.cancel_event = threading.Event()
        self.pacer = Pacer(clock, self.cancel_event)
        self.query_lane = query_lane or threading.Lock()
        self.strategy = quadrant_strategy(self.config)
        self._queue: "queue.Queue[CapEvent]" = queue.Queue(maxsize=max(1, self.config.cap_queue_size))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._stats_lock = threading.Lock()
        self._totals = RefineReport()
        self.events_processed = 0
        self.events_dropped = 0
        self.history: Deque[SubdivisionTask] = deque(maxlen=max(1, history_limit))
        self._last_query_at: Optional[float] = None

    def attach(self, service: Optional[PoiSearchService] = None) -> None:
        """Subscribe to CapEvents published by the search service."""
        (service or self.service).add_cap_listener(self.submit)

    def detach(self, service: Optional[PoiSearchService] = None) -> None:
        (service or self.service).remove_cap_listener(self.submit)

    def submit(self, event: CapEvent) -> bool:
        if self.cancel_event.is_set():
            logger.info("Subdivision cancelled, ignoring cap event at %.5f,%.5f", event.center.lat, event.center.lon)
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._stats_lock:
                self.events_dropped += 1
            logger.warning(
                "Subdivision queue full (%s), dropping cap event at %.5f,%.5f",
                self._queue.maxsize,
                event.center.lat,
                event.center.lon,
            )
            return False
        logger.debug("Queued cap event at %.5f,%.5f (pending=%s)", event.center.lat, event.center.lon, self._queue.qsize())
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="subdivision-worker", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.is_set() and not self.cancel_event.is_set():
            try:
                event = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self.process(event)
            except Exception:
                logger.exception("Subdivision of %.5f,%.5f failed", event.center.lat, event.center.lon)
            finally:
                self._queue.task_done()

    def drain(self) -> List[SubdivisionTask]:
        """Resolve everything queued. Runs inline unless the worker thread owns the queue."""
        if self.is_running():
            self._queue.join()
            return list(self.history)
        roots: List[SubdivisionTask] = []
        while not self.cancel_event.is_set():
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            try:
                roots.append(self.process(event))
            finally:
                self._queue.task_done()
        return roots

    def process(self, event: CapEvent) -> SubdivisionTask:
        """Subdivide one capped cell depth-first. Returns the root task."""
        root = SubdivisionTask(
            center=event.center,
            radius_m=event.radius_used_m,
            tag_filter=tuple(event.tag_filter),
            depth=0,
        )
        tracker = _TaskTracker(root)
        tags = list(root.tag_filter)

        def query(point: Point, radius_m: Optional[int]) -> SearchOutcome:
            with self.query_lane:
                try:
                    return self.service.search(point, tags, radius_m=radius_m, emit_caps=False)
                finally:
                    self._last_query_at = self.pacer.clock.monotonic()

        logger.info(
            "Subdividing capped cell %.5f,%.5f radius=%sm (raw=%s, parsed=%s)",
            event.center.lat,
            event.center.lon,
            event.radius_used_m,
            event.raw_count,
            event.parsed_count,
        )
        if not self._pace_from_last_query():
            logger.info("Subdivision cancelled before %.5f,%.5f", event.center.lat, event.center.lon)
            return root
        report = Refiner(self.strategy, query, self.pacer, tracker).refine(root.center, root.radius_m)
        with self._stats_lock:
            self._totals.merge(report)
            self.events_processed += 1
            self.history.extend(tracker.tasks)
        logger.info(
            "Subdivision done at %.5f,%.5f: %s queries, %s failed, %s splits, %s floor hits, depth %s%s",
            event.center.lat,
            event.center.lon,
            report.queries,
            report.failures,
            report.splits,
            report.floor_hits,
            report.max_depth,
            " (cancelled)" if report.cancelled else "",
        )
        return root

    def _pace_from_last_query(self) -> bool:
        """Wait out what is left of the pace interval since the previous event's last query."""
        if self._last_query_at is None:
            return True
        elapsed = self.pacer.clock.monotonic() - self._last_query_at
        return self.pacer.wait(self.config.subdivision_pace_seconds - elapsed)

    def cancel(self) -> int:
        """Drop queued events and stop after the in-flight step. Returns the number dropped."""
        self.cancel_event.set()
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.info("Subdivision cancelled, dropped %s queued events", dropped)
        return dropped

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self.join(timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "events_processed": self.events_processed,
                "events_dropped": self.events_dropped,
                "pending": self._queue.qsize(),
                "queries": self._totals.queries,
                "failures": self._totals.failures,
                "subdivisions": self._totals.splits,
                "floor_hits": self._totals.floor_hits,
                "max_depth": self._totals.max_depth,
                "cancelled": self.cancel_event.is_set(),
            }
