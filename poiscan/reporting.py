"""Output reporting helpers."""
from __future__ import annotations

import csv
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, TextIO


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _fsync_dir(path: str) -> None:
    try:
        dir_fd = os.open(path, os.O_DIRECTORY)
    except (OSError, AttributeError):
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


@contextmanager
def atomic_writer(
    path: str,
    mode: str = "w",
    encoding: str = "utf-8",
    newline: Optional[str] = None,
) -> Iterator[TextIO]:
    dir_path = os.path.dirname(path) or "."
    base = os.path.basename(path)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{base}.", suffix=".tmp", dir=dir_path)
    try:
        with os.fdopen(fd, mode, encoding=encoding, newline=newline) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(dir_path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: str, text: str) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        f.write(text)


POI_FIELDNAMES = [
    "poi_id",
    "name",
    "category",
    "lat",
    "lon",
    "distance_km_to_center",
    "address",
    "phone",
    "website",
    "opening_hours",
]


def write_pois_csv(path: str, rows: Iterable[Dict[str, Any]]) -> None:
    rows = list(rows)
    if not rows:
        with atomic_writer(path, mode="w", encoding="utf-8", newline="") as f:
            f.write("")
        return

    with atomic_writer(path, mode="w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=POI_FIELDNAMES, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def write_pois_json(path: str, rows: Iterable[Dict[str, Any]]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump(list(rows), f, ensure_ascii=False, indent=2)


def write_json_object(path: str, payload: Dict[str, Any]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)


def write_summary(path: str, summary_lines: List[str]) -> None:
    atomic_write_text(path, "\n".join(summary_lines))


def render_scan_summary(summary: Dict[str, Any]) -> List[str]:
    center = summary.get("center") or {}
    lines = []
    lines.append(
        "Scan center: {lat:.5f},{lon:.5f}".format(lat=center.get("lat", 0.0), lon=center.get("lon", 0.0))
    )
    lines.append(f"Stopped: {summary.get('stop_reason', 'unknown')}")
    lines.append(f"Grid radius: {summary.get('grid_radius_m', 0)}m")
    lines.append(f"Rings completed: {summary.get('rings_completed', 0)}")
    lines.append(f"Cells: {summary.get('cells', 0)}")
    lines.append(
        "POIs: {pois} ({new} new, {known} known)".format(
            pois=summary.get("pois", 0),
            new=summary.get("new_pois", 0),
            known=summary.get("known_pois", 0),
        )
    )
    lines.append(f"Searches: {summary.get('searches', 0)} ({summary.get('fails', 0)} failed)")
    lines.append(
        "Density subdivisions: {subdivisions} (floor reached {floor_hits}x), capped cells: {capped}".format(
            subdivisions=summary.get("subdivisions", 0),
            floor_hits=summary.get("floor_hits", 0),
            capped=summary.get("capped_cells", 0),
        )
    )
    requests_stats = summary.get("requests")
    if requests_stats:
        lines.append(
            "Request stats: network={network}, cache_hits={hits}, feedback_failures={fb}".format(
                network=requests_stats.get("network_searches", 0),
                hits=requests_stats.get("cache_hits", 0),
                fb=requests_stats.get("feedback_failures", 0),
            )
        )
    lines.append(f"Duration: {summary.get('duration_seconds', 0)}s")
    return lines


def render_search_summary(summary: Dict[str, Any]) -> List[str]:
    lines = []
    lines.append(f"POIs returned: {summary.get('pois', 0)} (raw {summary.get('raw_count', 0)})")
    lines.append(f"Radius used: {summary.get('radius_used_m', 0)}m")
    lines.append(f"Capped: {summary.get('capped', False)}")
    lines.append(f"New / known: {summary.get('new_count', 0)} / {summary.get('known_count', 0)}")
    subdivision = summary.get("subdivision") or {}
    if subdivision:
        lines.append(
            "Subdivision: {queries} queries, {failures} failed, {splits} splits, floor {floor}x".format(
                queries=subdivision.get("queries", 0),
                failures=subdivision.get("failures", 0),
                splits=subdivision.get("subdivisions", 0),
                floor=subdivision.get("floor_hits", 0),
            )
        )
    lines.append(f"POIs in area after refinement: {summary.get('pois_in_area', 0)}")
    return lines


class ProgressReporter:
    """Logs scan snapshots every N updates and mirrors the latest one to progress.json."""

    def __init__(
        self,
        output_path: Optional[str],
        log_every: int = 10,
        write_interval_seconds: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.output_path = output_path
        self.log_every = max(1, int(log_every)) if log_every else 0
        self.write_interval_seconds = float(write_interval_seconds)
        self.logger = logger or logging.getLogger(__name__)
        self.updates = 0
        self.latest: Optional[Dict[str, Any]] = None
        self._last_write = 0.0

    def on_snapshot(self, snapshot: Dict[str, Any]) -> None:
        self.updates += 1
        self.latest = snapshot
        stopped = snapshot.get("phase") == "stopped"
        if stopped or (self.log_every and self.updates % self.log_every == 0):
            self.logger.info(
                "Progress: ring=%s cells=%s pois=%s (new %s) searches=%s fails=%s subdivs=%s | %s",
                snapshot.get("ring"),
                snapshot.get("cells"),
                snapshot.get("pois"),
                snapshot.get("new_pois"),
                snapshot.get("searches"),
                snapshot.get("fails"),
                snapshot.get("subdivisions"),
                snapshot.get("status") or "",
            )
        self._write_if_due(force=stopped)

    def flush(self) -> None:
        self._write_if_due(force=True)

    def _write_if_due(self, force: bool = False) -> None:
        if not self.output_path or self.latest is None:
            return
        now = time.monotonic()
        if not force and (now - self._last_write) < self.write_interval_seconds:
            return
        payload = dict(self.latest)
        payload["timestamp"] = utc_now_iso()
        with atomic_writer(self.output_path, mode="w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        self._last_write = now
