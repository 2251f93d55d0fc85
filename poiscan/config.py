"""Project configuration.

Loads user-defined scan parameters from scan_config.json when available,
falling back to sensible defaults. Keep proxy request shapes centralized here.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

_REPO_ROOT = Path(__file__).resolve().parent.parent

# --- Proxy endpoints ---

PROXY_BASE_URL = os.environ.get("POI_PROXY_URL", "http://127.0.0.1:3000")
OVERPASS_PATH = "/overpass"
RADIUS_HINT_PATH = "/radius-hint"
CACHE_ONLY_HEADER = "X-Cache-Only"
CACHE_STATUS_HEADER = "X-Cache"
OVERPASS_TIMEOUT_SECONDS = 25

# --- Tag filters ---

DEFAULT_TAG_FILTERS: List[str] = ["amenity", "shop", "tourism", "historic", "leisure", "office"]
CATEGORY_TAG_PRIORITY: Tuple[str, ...] = ("amenity", "shop", "tourism", "leisure", "historic", "office")

# --- Radius hints ---

DEFAULT_RADIUS_M = 3000
MIN_RADIUS_M = 250
MAX_RADIUS_M = 15000
GRID_KEY_PRECISION = 3
FUZZY_MATCH_MAX_DEG = 0.01449  # ~1 mile of latitude
METERS_PER_DEG_LAT = 111320.0

# --- Truncation and subdivision ---

CAP_LIMIT = 200
MIN_SUBDIVISION_RADIUS_M = 250
SUBDIVISION_PACE_SECONDS = 5.0
CAP_QUEUE_SIZE = 64

# --- Coverage scan ---

GRID_OVERLAP_FACTOR = 0.8
MAX_RINGS = 15
SCAN_PACE_SECONDS = 30.0
PROBE_MAX_ATTEMPTS = 3
PROBE_RETRY_SECONDS = 30.0
MAX_CONSECUTIVE_FAILURES = 5

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 30
HTTP_RETRY_MAX = 3
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 8.0
USER_AGENT = "poiscan/0.1"

# --- Store and outputs ---

STORE_DB_PATH = "poiscan.db"
OUTPUT_DIR = "out"
PROGRESS_LOG_EVERY = 10
PROGRESS_WRITE_INTERVAL_SECONDS = 5.0

# Keys accepted in scan_config.json, mapped to the globals they override.
_OVERRIDABLE: Dict[str, Tuple[str, type]] = {
    "proxy_base_url": ("PROXY_BASE_URL", str),
    "cap_limit": ("CAP_LIMIT", int),
    "default_radius_m": ("DEFAULT_RADIUS_M", int),
    "min_radius_m": ("MIN_RADIUS_M", int),
    "max_radius_m": ("MAX_RADIUS_M", int),
    "min_subdivision_radius_m": ("MIN_SUBDIVISION_RADIUS_M", int),
    "grid_key_precision": ("GRID_KEY_PRECISION", int),
    "fuzzy_match_max_deg": ("FUZZY_MATCH_MAX_DEG", float),
    "grid_overlap_factor": ("GRID_OVERLAP_FACTOR", float),
    "max_rings": ("MAX_RINGS", int),
    "scan_pace_seconds": ("SCAN_PACE_SECONDS", float),
    "subdivision_pace_seconds": ("SUBDIVISION_PACE_SECONDS", float),
    "probe_max_attempts": ("PROBE_MAX_ATTEMPTS", int),
    "probe_retry_seconds": ("PROBE_RETRY_SECONDS", float),
    "max_consecutive_failures": ("MAX_CONSECUTIVE_FAILURES", int),
    "cap_queue_size": ("CAP_QUEUE_SIZE", int),
    "store_db_path": ("STORE_DB_PATH", str),
    "output_dir": ("OUTPUT_DIR", str),
}


@dataclass(frozen=True)
class DiscoveryConfig:
    cap_limit: int = CAP_LIMIT
    default_radius_m: int = DEFAULT_RADIUS_M
    min_radius_m: int = MIN_RADIUS_M
    max_radius_m: int = MAX_RADIUS_M
    min_subdivision_radius_m: int = MIN_SUBDIVISION_RADIUS_M
    grid_key_precision: int = GRID_KEY_PRECISION
    fuzzy_match_max_deg: float = FUZZY_MATCH_MAX_DEG
    grid_overlap_factor: float = GRID_OVERLAP_FACTOR
    max_rings: int = MAX_RINGS
    scan_pace_seconds: float = SCAN_PACE_SECONDS
    subdivision_pace_seconds: float = SUBDIVISION_PACE_SECONDS
    probe_max_attempts: int = PROBE_MAX_ATTEMPTS
    probe_retry_seconds: float = PROBE_RETRY_SECONDS
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES
    cap_queue_size: int = CAP_QUEUE_SIZE
    default_tag_filters: Tuple[str, ...] = field(default_factory=lambda: tuple(DEFAULT_TAG_FILTERS))

    @property
    def density_floor_m(self) -> int:
        return self.min_radius_m * 2

    def clamp_radius(self, radius_m: int) -> int:
        return max(self.min_radius_m, min(self.max_radius_m, int(radius_m)))


def current_config() -> DiscoveryConfig:
    """Snapshot the module globals (after any load_scan_config) into a DiscoveryConfig."""
    return DiscoveryConfig(
        cap_limit=CAP_LIMIT,
        default_radius_m=DEFAULT_RADIUS_M,
        min_radius_m=MIN_RADIUS_M,
        max_radius_m=MAX_RADIUS_M,
        min_subdivision_radius_m=MIN_SUBDIVISION_RADIUS_M,
        grid_key_precision=GRID_KEY_PRECISION,
        fuzzy_match_max_deg=FUZZY_MATCH_MAX_DEG,
        grid_overlap_factor=GRID_OVERLAP_FACTOR,
        max_rings=MAX_RINGS,
        scan_pace_seconds=SCAN_PACE_SECONDS,
        subdivision_pace_seconds=SUBDIVISION_PACE_SECONDS,
        probe_max_attempts=PROBE_MAX_ATTEMPTS,
        probe_retry_seconds=PROBE_RETRY_SECONDS,
        max_consecutive_failures=MAX_CONSECUTIVE_FAILURES,
        cap_queue_size=CAP_QUEUE_SIZE,
        default_tag_filters=tuple(DEFAULT_TAG_FILTERS),
    )


def load_scan_config(path: Optional[str] = None) -> bool:
    """Load scan configuration from a JSON file.

    Updates module-level globals with values from the config file.
    Returns True if config was loaded, False if file not found.
    """
    if path is None:
        path = str(_REPO_ROOT / "scan_config.json")

    config_path = Path(path)
    if not config_path.exists():
        return False

    with open(config_path, "r", encoding="utf-8") as f:
        data: Dict[str, Any] = json.load(f)

    globals_ref = globals()

    for key, (global_name, cast) in _OVERRIDABLE.items():
        value = data.get(key)
        if value is not None:
            globals_ref[global_name] = cast(value)

    tags = data.get("default_tag_filters")
    if tags:
        globals_ref["DEFAULT_TAG_FILTERS"] = [str(t).strip() for t in tags if str(t).strip()]

    return True


def get_config() -> Dict[str, Any]:
    """Current configuration as a dictionary, for logging and preflight output."""
    return {
        "proxy_base_url": PROXY_BASE_URL,
        "store_db_path": STORE_DB_PATH,
        "output_dir": OUTPUT_DIR,
        "default_tag_filters": list(DEFAULT_TAG_FILTERS),
        "radius": {
            "default_m": DEFAULT_RADIUS_M,
            "min_m": MIN_RADIUS_M,
            "max_m": MAX_RADIUS_M,
            "fuzzy_match_max_deg": FUZZY_MATCH_MAX_DEG,
        },
        "subdivision": {
            "cap_limit": CAP_LIMIT,
            "min_radius_m": MIN_SUBDIVISION_RADIUS_M,
            "pace_seconds": SUBDIVISION_PACE_SECONDS,
        },
        "scan": {
            "max_rings": MAX_RINGS,
            "grid_overlap_factor": GRID_OVERLAP_FACTOR,
            "pace_seconds": SCAN_PACE_SECONDS,
            "probe_max_attempts": PROBE_MAX_ATTEMPTS,
            "probe_retry_seconds": PROBE_RETRY_SECONDS,
            "max_consecutive_failures": MAX_CONSECUTIVE_FAILURES,
        },
    }
