"""CLI entrypoint."""
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import requests
from dotenv import load_dotenv as _load_dotenv

from poiscan import config
from poiscan.http import HttpClient
from poiscan.models import Point
from poiscan.pipeline import build_components, run_bbox, run_cache_only, run_scan, run_search
from poiscan.scanner import CalibrationError


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    _load_dotenv(dotenv_path=env_path, override=False)


def _parse_tags(raw: Optional[str]) -> Optional[List[str]]:
    if raw is None:
        return None
    tags = [t.strip() for t in raw.split(",") if t.strip()]
    return tags or None


def _parse_bbox(raw: str) -> Tuple[float, float, float, float]:
    parts = [p.strip() for p in raw.split(",")]
    if len(parts) != 4:
        raise ValueError("--bbox expects S,W,N,E")
    south, west, north, east = (float(p) for p in parts)
    return south, west, north, east


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Discover points of interest through a caching Overpass proxy")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--preflight", action="store_true", help="Show config and check the proxy is reachable")
    group.add_argument("--search", action="store_true", help="One search at the center, then resolve capped cells")
    group.add_argument("--cache-only", action="store_true", help="Return only what the proxy already has cached")
    group.add_argument("--bbox", type=str, default=None, help="List stored POIs inside S,W,N,E")
    group.add_argument("--scan", action="store_true", help="Full coverage scan outward from the center")
    parser.add_argument("--center-lat", type=float, default=None)
    parser.add_argument("--center-lon", type=float, default=None)
    parser.add_argument("--radius-m", type=int, default=None, help="Radius override for --search")
    parser.add_argument("--tags", type=str, default=None, help="Comma-separated tags, e.g. amenity,shop=bakery")
    parser.add_argument("--rings", type=int, default=None, help="Rings to scan (default from config)")
    parser.add_argument("--store-path", type=str, default=None)
    parser.add_argument("--proxy-url", type=str, default=None)
    parser.add_argument("--out", type=str, default=None)
    parser.add_argument("--config", type=str, default=None, help="Path to scan_config.json")
    parser.add_argument("--no-subdivide", action="store_true", help="Skip cap subdivision and density fill")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def run_preflight(proxy_url: str) -> int:
    ok = True
    print("Config:")
    print(json.dumps(config.get_config(), indent=2))

    client = HttpClient(proxy_url, timeout=10, retry_max=1, user_agent=config.USER_AGENT)
    try:
        resp = client.request("GET", config.RADIUS_HINT_PATH, params={"lat": 0.0, "lon": 0.0})
        radius = resp.json().get("radius")
        print(f"Proxy {proxy_url}: OK (radius hint {radius}m)")
    except (requests.RequestException, ValueError) as exc:
        print(f"Proxy {proxy_url}: FAIL ({exc})")
        ok = False

    print("Preflight: PASS" if ok else "Preflight: FAIL")
    return 0 if ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config.load_scan_config(args.config)
    except (OSError, ValueError) as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 1

    proxy_url = args.proxy_url or os.environ.get("POI_PROXY_URL") or config.PROXY_BASE_URL
    if args.preflight:
        return run_preflight(proxy_url)

    if not (args.search or args.cache_only or args.bbox or args.scan):
        print("Choose one of --preflight, --search, --cache-only, --bbox, --scan", file=sys.stderr)
        return 1

    center: Optional[Point] = None
    if args.search or args.cache_only or args.scan:
        if args.center_lat is None or args.center_lon is None:
            print("--center-lat and --center-lon are required", file=sys.stderr)
            return 1
        center = Point(args.center_lat, args.center_lon)

    output_dir = args.out or config.OUTPUT_DIR
    tags = _parse_tags(args.tags)
    components = build_components(
        store_path=args.store_path or config.STORE_DB_PATH,
        proxy_url=proxy_url,
        subdivide=not args.no_subdivide,
    )

    def on_sigint(_signum, _frame) -> None:
        print("Cancelling after the current query...", file=sys.stderr)
        components.scanner.cancel()
        components.engine.cancel()

    previous_handler = signal.signal(signal.SIGINT, on_sigint)
    try:
        if args.bbox:
            result = run_bbox(components, *_parse_bbox(args.bbox), output_dir=output_dir)
            print(f"{len(result.pois)} stored POIs in bbox. Results written to {output_dir}/bbox_pois.csv")
        elif args.cache_only:
            result = run_cache_only(components, center, tags, output_dir=output_dir)
            print(f"{len(result.pois)} cached POIs. Results written to {output_dir}/cache_only_pois.csv")
        elif args.search:
            result = run_search(components, center, tags, radius_m=args.radius_m, output_dir=output_dir)
            print(
                f"Done. {result.summary['pois']} POIs at {result.summary['radius_used_m']}m "
                f"({result.summary['pois_in_area']} in area). Results written to {output_dir}/search_pois.csv"
            )
        else:
            result = run_scan(components, center, tags, max_rings=args.rings, output_dir=output_dir)
            print(
                f"Scan {result.summary['stop_reason']}: {result.summary['cells']} cells, "
                f"{result.summary['pois']} POIs ({result.summary['new_pois']} new). "
                f"Summary written to {output_dir}/scan_summary.txt"
            )
    except CalibrationError as exc:
        print(f"Scan aborted: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        components.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
