"""SQLite store for discovered POIs and persisted radius hints."""
from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from .models import Poi


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _row_to_poi(row: sqlite3.Row) -> Poi:
    return Poi(
        poi_id=row["poi_id"],
        name=row["name"],
        lat=row["lat"],
        lon=row["lon"],
        category=row["category"],
        address=row["address"],
        phone=row["phone"],
        website=row["website"],
        opening_hours=row["opening_hours"],
    )


class PoiStore:
    """Shared between the CLI thread, the subdivision worker and the scan thread."""

    def __init__(self, db_path: str, commit_every: int = 50) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._pending_writes = 0
        self._commit_every = max(1, int(commit_every))
        self._configure_conn()
        self._init_db()

    def _configure_conn(self) -> None:
        cur = self.conn.cursor()
        try:
            cur.execute("PRAGMA journal_mode=WAL")
            cur.fetchone()
        except sqlite3.DatabaseError:
            pass
        try:
            cur.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.DatabaseError:
            pass

    def _init_db(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS pois (
                poi_id TEXT PRIMARY KEY,
                name TEXT,
                lat REAL,
                lon REAL,
                category TEXT,
                address TEXT,
                phone TEXT,
                website TEXT,
                opening_hours TEXT,
                first_seen_at TEXT,
                last_seen_at TEXT
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_pois_lat_lon ON pois (lat, lon)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS radius_hints (
                lat REAL,
                lon REAL,
                radius_m INTEGER,
                updated_at TEXT,
                PRIMARY KEY (lat, lon)
            )
            """
        )
        self.conn.commit()

    def _mark_dirty(self, count: int = 1) -> None:
        self._pending_writes += count
        if self._pending_writes >= self._commit_every:
            self.commit()

    def commit(self) -> None:
        with self._lock:
            if self._pending_writes:
                self.conn.commit()
                self._pending_writes = 0

    def close(self) -> None:
        with self._lock:
            self.commit()
            self.conn.close()

    def record_pois(self, pois: Iterable[Poi]) -> Tuple[int, int]:
        """Upsert POIs. Returns (new, known) counts relative to what was stored before."""
        new = 0
        known = 0
        now = utc_now_iso()
        with self._lock:
            cur = self.conn.cursor()
            for poi in pois:
                cur.execute("SELECT 1 FROM pois WHERE poi_id = ?", (poi.poi_id,))
                if cur.fetchone():
                    known += 1
                else:
                    new += 1
                cur.execute(
                    """
                    INSERT INTO pois (
                        poi_id, name, lat, lon, category, address, phone, website,
                        opening_hours, first_seen_at, last_seen_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(poi_id) DO UPDATE SET
                        name = excluded.name,
                        lat = excluded.lat,
                        lon = excluded.lon,
                        category = excluded.category,
                        address = excluded.address,
                        phone = excluded.phone,
                        website = excluded.website,
                        opening_hours = excluded.opening_hours,
                        last_seen_at = excluded.last_seen_at
                    """,
                    (
                        poi.poi_id,
                        poi.name,
                        poi.lat,
                        poi.lon,
                        poi.category,
                        poi.address,
                        poi.phone,
                        poi.website,
                        poi.opening_hours,
                        now,
                        now,
                    ),
                )
            self._mark_dirty(new + known)
        return new, known

    def count_pois(self) -> int:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT COUNT(*) AS n FROM pois")
            return int(cur.fetchone()["n"])

    def get_all_pois(self) -> List[Poi]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT * FROM pois ORDER BY poi_id")
            return [_row_to_poi(row) for row in cur.fetchall()]

    def pois_in_bbox(self, south: float, west: float, north: float, east: float) -> List[Poi]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                SELECT * FROM pois
                WHERE lat BETWEEN ? AND ? AND lon BETWEEN ? AND ?
                ORDER BY poi_id
                """,
                (south, north, west, east),
            )
            return [_row_to_poi(row) for row in cur.fetchall()]

    def save_radius_hints(self, entries: Sequence[Tuple[float, float, int]]) -> int:
        now = utc_now_iso()
        with self._lock:
            cur = self.conn.cursor()
            cur.executemany(
                "INSERT OR REPLACE INTO radius_hints (lat, lon, radius_m, updated_at) VALUES (?, ?, ?, ?)",
                [(lat, lon, int(radius), now) for lat, lon, radius in entries],
            )
            self._mark_dirty(len(entries))
            self.commit()
        return len(entries)

    def load_radius_hints(self) -> List[Tuple[float, float, int]]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT lat, lon, radius_m FROM radius_hints")
            return [(row["lat"], row["lon"], int(row["radius_m"])) for row in cur.fetchall()]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT COUNT(*) AS n FROM radius_hints")
            hints = int(cur.fetchone()["n"])
        return {"db_path": self.db_path, "pois": self.count_pois(), "radius_hints": hints}
