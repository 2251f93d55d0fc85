import threading

from poiscan.config import DiscoveryConfig
from poiscan.models import Point
from poiscan.radius_cache import RadiusHintCache


def test_exact_hit_by_grid_cell():
    cache = RadiusHintCache()
    cache.put(Point(42.36012, -71.05988), 1200)

    assert cache.get(Point(42.3604, -71.0596)) == 1200
    assert cache.get(Point(42.37, -71.06)) is None


def test_fuzzy_returns_nearest_within_range():
    cache = RadiusHintCache()
    cache.put(Point(42.360, -71.060), 1000)
    cache.put(Point(42.368, -71.060), 2000)

    # Both entries are in range; the nearer one wins.
    assert cache.fuzzy_get(Point(42.3635, -71.060)) == 1000
    assert cache.fuzzy_get(Point(42.3655, -71.060)) == 2000


def test_fuzzy_prefers_exact_hit():
    cache = RadiusHintCache()
    cache.put(Point(42.360, -71.060), 1000)
    cache.put(Point(42.361, -71.060), 4000)

    assert cache.fuzzy_get(Point(42.361, -71.060)) == 4000


def test_fuzzy_misses_beyond_max_distance():
    cache = RadiusHintCache()
    cache.put(Point(42.360, -71.060), 1000)

    assert cache.fuzzy_get(Point(42.360 + 0.02, -71.060)) is None
    assert cache.fuzzy_get(Point(42.360, -71.060), max_distance_deg=0.0) == 1000


def test_fuzzy_distance_is_measured_to_recorded_point():
    cache = RadiusHintCache()
    cache.put(Point(42.3604, -71.060), 1000)

    # The grid key rounds to 42.360; distance still counts from 42.3604.
    assert cache.fuzzy_get(Point(42.3604 + 0.0144, -71.060)) == 1000
    assert cache.fuzzy_get(Point(42.3604 + 0.0146, -71.060)) is None


def test_fuzzy_on_empty_cache_is_none():
    assert RadiusHintCache().fuzzy_get(Point(0.0, 0.0)) is None


def test_put_overwrites_and_clamps():
    cfg = DiscoveryConfig()
    cache = RadiusHintCache(cfg)
    point = Point(42.36, -71.06)

    assert cache.put(point, 100) == cfg.min_radius_m
    assert cache.put(point, 99999) == cfg.max_radius_m
    cache.put(point, 2500)
    assert cache.get(point) == 2500
    assert len(cache) == 1


def test_load_and_items_round_trip():
    cache = RadiusHintCache()
    loaded = cache.load([(42.36, -71.06, 800), (42.40, -71.10, 1600)])

    assert loaded == 2
    assert sorted(cache.items()) == [(42.36, -71.06, 800), (42.4, -71.1, 1600)]
    cache.clear()
    assert len(cache) == 0


def test_concurrent_writers_do_not_lose_cells():
    cache = RadiusHintCache()

    def writer(offset):
        for i in range(200):
            cache.put(Point(40.0 + offset * 0.5 + i * 0.001, -70.0), 1000 + i)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(cache) == 800
