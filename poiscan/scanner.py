"""Full-area coverage scan: probe, calibrate, then spiral outward ring by ring."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .config import DiscoveryConfig
from .gateway import normalize_tags
from .geo import grid_step, ring_points
from .models import Point, SearchOutcome
from .pacing import Clock, Pacer
from .refine import RefineListener, Refiner, density_strategy
from .service import PoiSearchService

logger = logging.getLogger(__name__)


class CalibrationError(RuntimeError):
    pass


class ScanAlreadyRunningError(RuntimeError):
    pass


class ScanPhase(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    CALIBRATED = "calibrated"
    SCANNING = "scanning"
    REFINING = "refining"
    STOPPED = "stopped"


class StopReason(str, Enum):
    COMPLETED = "completed"
    TOO_MANY_FAILURES = "too_many_failures"
    CANCELLED = "cancelled"
    CALIBRATION_FAILED = "calibration_failed"


@dataclass
class ScanSession:
    """Live counters for one scan. Written only by the scanning thread."""

    center: Point
    tags: Tuple[str, ...] = ()
    phase: ScanPhase = ScanPhase.IDLE
    grid_radius_m: int = 0
    step_lat: float = 0.0
    step_lon: float = 0.0
    ring: int = 0
    max_rings: int = 0
    cells: int = 0
    pois: int = 0
    new_pois: int = 0
    known_pois: int = 0
    searches: int = 0
    fails: int = 0
    consecutive_failures: int = 0
    subdivisions: int = 0
    floor_hits: int = 0
    capped_cells: int = 0
    current_radius_m: int = 0
    depth: int = 0
    status: str = ""
    countdown: int = 0
    stop_reason: Optional[StopReason] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def record(self, outcome: SearchOutcome) -> None:
        self.searches += 1
        self.pois += len(outcome.pois)
        self.new_pois += outcome.new_count
        self.known_pois += outcome.known_count
        self.current_radius_m = outcome.radius_used_m
        if outcome.capped:
            self.capped_cells += 1

    def snapshot(self) -> Dict[str, Any]:
        data = asdict(self)
        data["center"] = self.center.as_dict()
        data["tags"] = list(self.tags)
        data["phase"] = self.phase.value
        data["stop_reason"] = self.stop_reason.value if self.stop_reason else None
        return data


@dataclass(frozen=True)
class ScanSummary:
    center: Point
    stop_reason: StopReason
    grid_radius_m: int
    rings_completed: int
    cells: int
    pois: int
    new_pois: int
    known_pois: int
    searches: int
    fails: int
    subdivisions: int
    floor_hits: int
    capped_cells: int
    duration_seconds: float

    @classmethod
    def from_session(cls, session: ScanSession) -> "ScanSummary":
        finished = session.finished_at or time.time()
        completed_rings = session.ring if session.stop_reason == StopReason.COMPLETED else max(0, session.ring - 1)
        return cls(
            center=session.center,
            stop_reason=session.stop_reason or StopReason.COMPLETED,
            grid_radius_m=session.grid_radius_m,
            rings_completed=completed_rings,
            cells=session.cells,
            pois=session.pois,
            new_pois=session.new_pois,
            known_pois=session.known_pois,
            searches=session.searches,
            fails=session.fails,
            subdivisions=session.subdivisions,
            floor_hits=session.floor_hits,
            capped_cells=session.capped_cells,
            duration_seconds=round(finished - session.started_at, 1),
        )

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["center"] = self.center.as_dict()
        data["stop_reason"] = self.stop_reason.value
        return data


ProgressListener = Callable[[Dict[str, Any]], None]


class _DensityNarrator(RefineListener):
    def __init__(self, scanner: "CoverageScanner", session: ScanSession) -> None:
        self.scanner = scanner
        self.session = session

    def on_split(self, center: Point, radius_m: int, child_radius_m: int, depth: int) -> None:
        self.scanner._update(subdivisions=self.session.subdivisions + 1)
        logger.info(
            "Density fill depth=%s: %sm settled, 8 fill points around %.5f,%.5f",
            depth,
            radius_m,
            center.lat,
            center.lon,
        )

    def on_floor(self, center: Point, radius_m: int, depth: int) -> None:
        self.scanner._update(floor_hits=self.session.floor_hits + 1)

    def on_query(self, point: Point, radius_m: int, index: int, total: int, depth: int) -> None:
        self.scanner._update(
            depth=depth,
            current_radius_m=radius_m,
            countdown=0,
            status=f"Fill {index}/{total} at {radius_m}m (depth {depth})",
        )

    def on_result(self, point: Point, outcome: SearchOutcome, depth: int, recurse: bool) -> None:
        new_str = f"{outcome.new_count} new" if outcome.new_count else "all known"
        status = f"Fill: {len(outcome.pois)} POIs ({new_str}) at {outcome.radius_used_m}m"
        if recurse:
            status = f"Deeper: settled at {outcome.radius_used_m}m, subdividing again"
        self.scanner._update(status=status)

    def on_failure(self, point: Point, exc: Exception, depth: int) -> None:
        self.scanner._failed(self.session)
        self.scanner._update(status=f"Fill failed at depth {depth}")

    def on_wait(self, remaining_seconds: int) -> None:
        self.scanner._update(countdown=remaining_seconds)


class CoverageScanner:
    def __init__(
        self,
        service: PoiSearchService,
        config: Optional[DiscoveryConfig] = None,
        clock: Optional[Clock] = None,
        query_lane: Optional[threading.Lock] = None,
        subdivide: bool = True,
    ) -> None:
        self.service = service
        self.config = config or service.config
        self.cancel_event = threading.Event()
        self.pacer = Pacer(clock, self.cancel_event)
        self.query_lane = query_lane or threading.Lock()
        self.subdivide = subdivide
        self._lock = threading.Lock()
        self._session: Optional[ScanSession] = None
        self._thread: Optional[threading.Thread] = None
        self._listeners: List[ProgressListener] = []
        self.last_summary: Optional[ScanSummary] = None
        self.last_error: Optional[BaseException] = None

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def is_running(self) -> bool:
        with self._lock:
            return self._session is not None

    def snapshot(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            if self._session is None:
                return None
            return self._session.snapshot()

    def cancel(self) -> None:
        self.cancel_event.set()

    def start(self, center: Point, tags: Optional[Sequence[str]] = None, max_rings: Optional[int] = None) -> threading.Thread:
        session = self._claim(center, tags, max_rings)
        self._thread = threading.Thread(
            target=self._run_background,
            args=(session,),
            name="coverage-scan",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run_background(self, session: ScanSession) -> None:
        try:
            self._execute(session)
        except CalibrationError as exc:
            self.last_error = exc
            logger.error("%s", exc)

    def _update(self, **changes: Any) -> None:
        with self._lock:
            session = self._session
            if session is None:
                return
            for key, value in changes.items():
                setattr(session, key, value)
            snap = session.snapshot()
        for listener in self._listeners:
            listener(snap)

    def _query(self, session: ScanSession, point: Point, radius_m: Optional[int]) -> SearchOutcome:
        with self.query_lane:
            outcome = self.service.search(point, session.tags, radius_m=radius_m, emit_caps=False)
        with self._lock:
            session.record(outcome)
        return outcome

    def _failed(self, session: ScanSession) -> None:
        with self._lock:
            session.searches += 1
            session.fails += 1

    def _pace(self, seconds: float) -> bool:
        return self.pacer.wait(seconds, on_tick=lambda remaining: self._update(countdown=remaining))

    def run(
        self,
        center: Point,
        tags: Optional[Sequence[str]] = None,
        max_rings: Optional[int] = None,
    ) -> ScanSummary:
        """Run one scan to completion on the calling thread.

        Raises CalibrationError if the probe never succeeds. Every other
        per-point failure is counted and skipped; five in a row stop the scan.
        """
        return self._execute(self._claim(center, tags, max_rings))

    def _claim(
        self,
        center: Point,
        tags: Optional[Sequence[str]],
        max_rings: Optional[int],
    ) -> ScanSession:
        session = ScanSession(
            center=center,
            tags=normalize_tags(tags),
            max_rings=max_rings if max_rings is not None else self.config.max_rings,
        )
        with self._lock:
            if self._session is not None:
                raise ScanAlreadyRunningError("A scan is already running")
            self._session = session
        self.cancel_event.clear()
        self.last_error = None
        return session

    def _execute(self, session: ScanSession) -> ScanSummary:
        center = session.center
        logger.info(
            "Scan starting at %.5f,%.5f (%s rings, tags=%s)",
            center.lat,
            center.lon,
            session.max_rings,
            ",".join(session.tags) or "default",
        )
        try:
            if not self._probe(session):
                if session.stop_reason == StopReason.CALIBRATION_FAILED:
                    raise CalibrationError(
                        f"Probe failed after {self.config.probe_max_attempts} attempts, cannot calibrate grid"
                    )
                return self._finish(session)
            session.stop_reason = self._spiral(session)
            return self._finish(session)
        except CalibrationError:
            self._finish(session)
            raise
        finally:
            with self._lock:
                self._session = None

    def _probe(self, session: ScanSession) -> bool:
        center = session.center
        self._update(phase=ScanPhase.PROBING, status="Probing center to calibrate grid")
        attempts = max(1, self.config.probe_max_attempts)
        outcome: Optional[SearchOutcome] = None
        for attempt in range(1, attempts + 1):
            if self.pacer.cancelled:
                session.stop_reason = StopReason.CANCELLED
                return False
            try:
                outcome = self._query(session, center, None)
                break
            except Exception as exc:
                self._failed(session)
                logger.warning("Probe attempt %s/%s failed: %s", attempt, attempts, exc)
                if attempt >= attempts:
                    break
                self._update(status=f"Probe attempt {attempt} failed, retrying")
                if not self._pace(self.config.probe_retry_seconds):
                    session.stop_reason = StopReason.CANCELLED
                    return False

        if outcome is None:
            session.stop_reason = StopReason.CALIBRATION_FAILED
            self._update(status="Probe failed, cannot calibrate grid")
            return False

        grid_radius = outcome.radius_used_m
        step_lat, step_lon = grid_step(grid_radius, center.lat, self.config.grid_overlap_factor)
        with self._lock:
            session.cells += 1
        logger.info(
            "Grid calibrated: radius=%sm step_lat=%.5f step_lon=%.5f (%s POIs, %s new)",
            grid_radius,
            step_lat,
            step_lon,
            len(outcome.pois),
            outcome.new_count,
        )
        self._update(
            phase=ScanPhase.CALIBRATED,
            grid_radius_m=grid_radius,
            current_radius_m=grid_radius,
            step_lat=step_lat,
            step_lon=step_lon,
            status=f"Grid calibrated at {grid_radius}m, {len(outcome.pois)} POIs ({outcome.new_count} new)",
        )
        return True

    def _spiral(self, session: ScanSession) -> StopReason:
        refiner = Refiner(
            density_strategy(self.config),
            lambda point, radius: self._query(session, point, radius),
            self.pacer,
            _DensityNarrator(self, session),
        )
        for ring in range(1, session.max_rings + 1):
            points = ring_points(ring, session.center.lat, session.center.lon, session.step_lat, session.step_lon)
            self._update(phase=ScanPhase.SCANNING, ring=ring)
            for idx, point in enumerate(points, start=1):
                if not self._pace(self.config.scan_pace_seconds):
                    return StopReason.CANCELLED
                self._update(
                    depth=0,
                    countdown=0,
                    current_radius_m=session.grid_radius_m,
                    status=f"Searching cell {idx}/{len(points)} of ring {ring}",
                )
                try:
                    outcome = self._query(session, point, None)
                except Exception as exc:
                    self._failed(session)
                    with self._lock:
                        session.consecutive_failures += 1
                        failures = session.consecutive_failures
                    logger.warning(
                        "Ring %s cell %s/%s failed (%s consecutive): %s", ring, idx, len(points), failures, exc
                    )
                    self._update(status=f"Search failed ({failures} in a row)")
                    if failures >= self.config.max_consecutive_failures:
                        logger.warning("Scan stopped after %s consecutive failures", failures)
                        return StopReason.TOO_MANY_FAILURES
                    continue

                new_str = f"{outcome.new_count} new" if outcome.new_count else "all known"
                self._update(
                    cells=session.cells + 1,
                    consecutive_failures=0,
                    status=f"Found {len(outcome.pois)} POIs ({new_str}) at {outcome.radius_used_m}m",
                )

                if self.subdivide and outcome.radius_used_m < session.grid_radius_m:
                    self._update(
                        phase=ScanPhase.REFINING,
                        status=f"Dense area: {session.grid_radius_m}m -> {outcome.radius_used_m}m, filling 8 gaps",
                    )
                    report = refiner.refine(point, outcome.radius_used_m)
                    if report.cancelled:
                        return StopReason.CANCELLED
                    self._update(
                        phase=ScanPhase.SCANNING,
                        depth=0,
                        current_radius_m=session.grid_radius_m,
                        status="Density fill done, back to main grid",
                    )
            logger.info(
                "Ring %s done: %s cells, %s POIs (%s new), %s failed",
                ring,
                session.cells,
                session.pois,
                session.new_pois,
                session.fails,
            )
        return StopReason.COMPLETED

    def _finish(self, session: ScanSession) -> ScanSummary:
        if session.stop_reason is None:
            session.stop_reason = StopReason.COMPLETED
        session.finished_at = time.time()
        self._update(phase=ScanPhase.STOPPED, countdown=0, status=f"Scan {session.stop_reason.value}")
        summary = ScanSummary.from_session(session)
        self.last_summary = summary
        logger.info(
            "Scan %s: %s cells, %s POIs (%s new, %s known), %s searches, %s failed, %s subdivisions",
            summary.stop_reason.value,
            summary.cells,
            summary.pois,
            summary.new_pois,
            summary.known_pois,
            summary.searches,
            summary.fails,
            summary.subdivisions,
        )
        return summary
