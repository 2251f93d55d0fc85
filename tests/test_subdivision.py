import math
from typing import Callable, List, Optional

import pytest

from poiscan.config import DiscoveryConfig
from poiscan.models import CapEvent, Point, Poi, SearchOutcome, TaskState
from poiscan.radius_cache import RadiusHintCache
from poiscan.service import PoiSearchService
from poiscan.subdivision import SubdivisionEngine


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


class ScriptedGateway:
    """Answers each query with raw_count from `raw_for(center, radius_m, call_no)`."""

    def __init__(self, clock: FakeClock, raw_for: Callable[[Point, Optional[int], int], object]):
        self.clock = clock
        self.raw_for = raw_for
        self.calls: List[tuple] = []

    def search(self, center, radius_m, tag_filter):
        self.calls.append((self.clock.now, center, radius_m, tuple(tag_filter)))
        raw = self.raw_for(center, radius_m, len(self.calls))
        if isinstance(raw, Exception):
            raise raw
        pois = [Poi(poi_id=f"node/{len(self.calls)}", name="x", lat=center.lat, lon=center.lon, category="cafe")]
        return SearchOutcome(pois=pois, raw_count=raw, radius_used_m=radius_m or 3000)

    def feedback(self, center, result_count, was_truncated, error=False):
        return None

    def search_cache_only(self, center, radius_m, tag_filter):
        return None


CENTER = Point(42.36, -71.06)


def _engine(raw_for, config: Optional[DiscoveryConfig] = None):
    cfg = config or DiscoveryConfig()
    clock = FakeClock()
    gateway = ScriptedGateway(clock, raw_for)
    service = PoiSearchService(gateway, RadiusHintCache(cfg), config=cfg)
    engine = SubdivisionEngine(service, cfg, clock=clock)
    engine.attach()
    return engine, service, gateway, clock


def test_truncation_resolves_with_four_half_radius_queries():
    engine, service, gateway, clock = _engine(lambda c, r, n: 200 if n == 1 else 40)

    outcome = service.search(CENTER, ["amenity"], radius_m=3000)
    assert outcome.capped
    assert engine.pending() == 1

    roots = engine.drain()

    quadrant_calls = gateway.calls[1:]
    assert len(quadrant_calls) == 4
    assert all(call[2] == 1500 for call in quadrant_calls)
    assert all(call[3] == ("amenity",) for call in quadrant_calls)
    d_lat = 1500 / 111320.0
    d_lon = d_lat / math.cos(math.radians(CENTER.lat))
    for _, center, _, _ in quadrant_calls:
        assert abs(center.lat - CENTER.lat) == pytest.approx(d_lat)
        assert abs(center.lon - CENTER.lon) == pytest.approx(d_lon)

    assert engine.pending() == 0
    assert len(roots) == 1
    assert roots[0].state == TaskState.DONE
    assert roots[0].capped_children == []
    stats = engine.stats()
    assert stats["subdivisions"] == 1
    assert stats["queries"] == 4
    assert stats["max_depth"] == 1


def test_quadrant_queries_are_paced_five_seconds_apart():
    engine, service, gateway, clock = _engine(lambda c, r, n: 200 if n == 1 else 0)

    service.search(CENTER, radius_m=3000)
    engine.drain()

    times = [call[0] for call in gateway.calls[1:]]
    assert times == [0.0, 5.0, 10.0, 15.0]
    assert clock.now == 15.0


def test_recursion_is_depth_first_and_bounded_by_floor():
    engine, service, gateway, clock = _engine(lambda c, r, n: 200)

    service.search(CENTER, radius_m=3000)
    roots = engine.drain()

    radii = [call[2] for call in gateway.calls[1:]]
    # Depth first: the first quadrant is resolved down to the floor before its sibling.
    assert radii[:4] == [1500, 750, 375, 375]
    assert set(radii) == {1500, 750, 375}
    assert len(radii) == 4 + 16 + 64

    stats = engine.stats()
    assert stats["max_depth"] <= math.ceil(math.log2(3000 / 250))
    assert stats["floor_hits"] == 64
    assert roots[0].state == TaskState.RECURSE
    assert len(roots[0].capped_children) == 4
    depths = {task.depth for task in engine.history}
    assert depths == {0, 1, 2, 3}
    assert all(task.state == TaskState.FLOOR for task in engine.history if task.depth == 3)


def test_cell_below_floor_is_accepted_loss():
    engine, service, gateway, clock = _engine(lambda c, r, n: 200)

    engine.process(CapEvent(center=CENTER, radius_used_m=400, raw_count=200, parsed_count=150))

    assert gateway.calls == []
    assert engine.history[0].state == TaskState.FLOOR
    assert engine.stats()["floor_hits"] == 1


def test_quadrant_failure_is_skipped():
    def raw_for(center, radius, n):
        if n == 1:
            return 200
        if n == 3:
            return RuntimeError("proxy timeout")
        return 10

    engine, service, gateway, clock = _engine(raw_for)

    service.search(CENTER, radius_m=3000)
    engine.drain()

    assert len(gateway.calls) == 5
    stats = engine.stats()
    assert stats["failures"] == 1
    assert stats["queries"] == 4


def test_events_processed_fifo():
    engine, service, gateway, clock = _engine(lambda c, r, n: 10)
    first = Point(1.0, 1.0)
    second = Point(2.0, 2.0)

    engine.submit(CapEvent(center=first, radius_used_m=2000, raw_count=200, parsed_count=200))
    engine.submit(CapEvent(center=second, radius_used_m=2000, raw_count=200, parsed_count=200))
    roots = engine.drain()

    assert [root.center for root in roots] == [first, second]
    assert all(abs(call[1].lat - 1.0) < 0.1 for call in gateway.calls[:4])
    assert all(abs(call[1].lat - 2.0) < 0.1 for call in gateway.calls[4:])


def test_full_queue_drops_event():
    engine, service, gateway, clock = _engine(lambda c, r, n: 10, DiscoveryConfig(cap_queue_size=1))
    event = CapEvent(center=CENTER, radius_used_m=2000, raw_count=200, parsed_count=200)

    assert engine.submit(event) is True
    assert engine.submit(event) is False
    assert engine.stats()["events_dropped"] == 1


def test_cancel_drains_queue_and_rejects_new_events():
    engine, service, gateway, clock = _engine(lambda c, r, n: 10)
    event = CapEvent(center=CENTER, radius_used_m=2000, raw_count=200, parsed_count=200)
    engine.submit(event)
    engine.submit(event)

    assert engine.cancel() == 2
    assert engine.pending() == 0
    assert engine.submit(event) is False
    assert engine.drain() == []
    assert gateway.calls == []


def test_cancel_stops_in_flight_task_after_current_query():
    engine, service, gateway, clock = _engine(lambda c, r, n: 10)

    def raw_for(center, radius, n):
        if n == 2:
            engine.cancel()
        return 10

    gateway.raw_for = raw_for
    root = engine.process(CapEvent(center=CENTER, radius_used_m=2000, raw_count=200, parsed_count=200))

    assert len(gateway.calls) == 2
    assert engine.stats()["cancelled"] is True
    assert root.state == TaskState.DONE


def test_background_worker_processes_events():
    engine, service, gateway, clock = _engine(lambda c, r, n: 200 if n == 1 else 5)
    engine.start()
    try:
        service.search(CENTER, radius_m=3000)
        engine.drain()
    finally:
        engine.stop(timeout=5)

    assert engine.stats()["events_processed"] == 1
    assert len(gateway.calls) == 5


def test_pacing_carries_across_queued_events():
    engine, service, gateway, clock = _engine(lambda c, r, n: 10)
    event = CapEvent(center=CENTER, radius_used_m=2000, raw_count=200, parsed_count=200)

    engine.submit(event)
    engine.submit(CapEvent(center=Point(42.4, -71.1), radius_used_m=2000, raw_count=200, parsed_count=200))
    engine.drain()

    times = [call[0] for call in gateway.calls]
    assert times == [0.0, 5.0, 10.0, 15.0, 20.0, 25.0, 30.0, 35.0]


def test_next_event_only_waits_remaining_pace():
    engine, service, gateway, clock = _engine(lambda c, r, n: 10)
    event = CapEvent(center=CENTER, radius_used_m=2000, raw_count=200, parsed_count=200)

    engine.process(event)
    clock.now += 3.0
    engine.process(event)

    times = [call[0] for call in gateway.calls]
    assert times[4] == 20.0
    assert times[4] - times[3] == 5.0


def test_history_keeps_only_recent_tasks():
    cfg = DiscoveryConfig()
    clock = FakeClock()
    gateway = ScriptedGateway(clock, lambda c, r, n: 10)
    service = PoiSearchService(gateway, RadiusHintCache(cfg), config=cfg)
    engine = SubdivisionEngine(service, cfg, clock=clock, history_limit=3)

    centers = [Point(40.0 + i, -70.0) for i in range(5)]
    for center in centers:
        engine.process(CapEvent(center=center, radius_used_m=2000, raw_count=200, parsed_count=200))

    assert [task.center for task in engine.history] == centers[2:]
    assert engine.stats()["events_processed"] == 5


def test_detach_stops_receiving_cap_events():
    engine, service, gateway, clock = _engine(lambda c, r, n: 200)

    engine.detach()
    outcome = service.search(CENTER, radius_m=3000)

    assert outcome.capped
    assert engine.pending() == 0
