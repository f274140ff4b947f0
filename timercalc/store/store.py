"""Time-series database helpers (SQLite-backed Store)."""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from timercalc.store.model import (
    POINT_TYPES,
    BoundaryType,
    Sample,
    SeriesHandle,
    UpdateOption,
    apply_boundary,
)
from timercalc.util.time import from_epoch, to_epoch, utc_now_str


class Store:
    def __init__(self, path: str, database: str = "default"):
        self.path = path
        self.database = database or "default"
        self._lock = threading.RLock()
        # The scheduler thread and the caller share one connection under _lock.
        self.con = sqlite3.connect(path, timeout=30.0, check_same_thread=False)
        try:
            self.con.execute("PRAGMA journal_mode=WAL")
        except sqlite3.OperationalError:
            pass
        self.con.execute("PRAGMA busy_timeout=5000")
        self._init()

    def _init(self) -> None:
        cur = self.con.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS series (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                database TEXT NOT NULL,
                name TEXT NOT NULL,
                point_type TEXT NOT NULL DEFAULT 'float32',
                compressing INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                UNIQUE (database, name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                series_id INTEGER NOT NULL,
                ts REAL NOT NULL,
                value REAL,
                is_good INTEGER NOT NULL DEFAULT 1
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_samples_series_ts ON samples(series_id, ts)")
        self.con.commit()

    def close(self) -> None:
        with self._lock:
            self.con.close()

    # -----------------
    # Series catalogue
    # -----------------

    def find_series(self, name: str) -> Optional[SeriesHandle]:
        with self._lock:
            cur = self.con.cursor()
            cur.execute(
                "SELECT id, name FROM series WHERE database = ? AND name = ?",
                (self.database, str(name)),
            )
            row = cur.fetchone()
        if not row:
            return None
        return SeriesHandle(id=int(row[0]), name=str(row[1]), database=self.database)

    def create_series(self, name: str) -> SeriesHandle:
        """Create a series with the store defaults (float32, compressing on)."""
        with self._lock:
            cur = self.con.cursor()
            try:
                cur.execute(
                    "INSERT INTO series(database, name, created_at) VALUES (?, ?, ?)",
                    (self.database, str(name), utc_now_str()),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Series '{name}' already exists in database '{self.database}'") from exc
            self.con.commit()
            lastrow = cur.lastrowid
        if lastrow is None:
            raise RuntimeError("Failed to retrieve lastrowid after inserting series")
        return SeriesHandle(id=int(lastrow), name=str(name), database=self.database)

    def save_attributes(
        self,
        handle: SeriesHandle,
        *,
        point_type: Optional[str] = None,
        compressing: Optional[bool] = None,
    ) -> Dict[str, str]:
        """Persist storage attributes; returns ``{attribute: error}`` for anything rejected."""
        errors: Dict[str, str] = {}
        updates: List[Tuple[str, object]] = []
        if point_type is not None:
            if point_type not in POINT_TYPES:
                errors["point_type"] = f"unknown point type '{point_type}'"
            else:
                updates.append(("point_type", point_type))
        if compressing is not None:
            updates.append(("compressing", 1 if compressing else 0))
        if errors:
            return errors
        with self._lock:
            cur = self.con.cursor()
            for column, value in updates:
                cur.execute(f"UPDATE series SET {column} = ? WHERE id = ?", (value, int(handle.id)))
                if cur.rowcount == 0:
                    errors[column] = f"series id {handle.id} not found"
            self.con.commit()
        return errors

    def series_attributes(self, handle: SeriesHandle) -> Dict[str, object]:
        with self._lock:
            cur = self.con.cursor()
            cur.execute("SELECT point_type, compressing FROM series WHERE id = ?", (int(handle.id),))
            row = cur.fetchone()
        if not row:
            return {}
        return {"point_type": str(row[0]), "compressing": bool(row[1])}

    # -----------------
    # Reads
    # -----------------

    @staticmethod
    def _sample(row) -> Sample:
        value = float(row[2]) if row[2] is not None else float("nan")
        return Sample(timestamp=from_epoch(row[1]), value=value, is_good=bool(row[3]), row_id=int(row[0]))

    def read_recent(
        self,
        handle: SeriesHandle,
        before: datetime,
        count: int,
        boundary: str = BoundaryType.INSIDE,
    ) -> List[Sample]:
        """Return up to ``count`` samples at or before ``before``, most recent first."""
        before_s = to_epoch(before)
        with self._lock:
            cur = self.con.cursor()
            cur.execute(
                """
                SELECT id, ts, value, is_good FROM samples
                WHERE series_id = ? AND ts <= ?
                ORDER BY ts DESC, id DESC
                LIMIT ?
                """,
                (int(handle.id), before_s, max(int(count), 0)),
            )
            rows = [self._sample(row) for row in cur.fetchall()]
            after = None
            if boundary == BoundaryType.INTERPOLATED:
                cur.execute(
                    """
                    SELECT id, ts, value, is_good FROM samples
                    WHERE series_id = ? AND ts > ?
                    ORDER BY ts ASC, id ASC
                    LIMIT 1
                    """,
                    (int(handle.id), before_s),
                )
                row = cur.fetchone()
                after = self._sample(row) if row else None
        return apply_boundary(rows, after, before, count, boundary)

    def read_latest(self, handle: SeriesHandle) -> Optional[Sample]:
        with self._lock:
            cur = self.con.cursor()
            cur.execute(
                """
                SELECT id, ts, value, is_good FROM samples
                WHERE series_id = ?
                ORDER BY ts DESC, id DESC
                LIMIT 1
                """,
                (int(handle.id),),
            )
            row = cur.fetchone()
        return self._sample(row) if row else None

    def read_range(
        self,
        handles: Iterable[SeriesHandle],
        start: datetime,
        end: Optional[datetime] = None,
    ) -> Tuple[Dict[int, List[Sample]], int]:
        """Bulk read of ``[start, end]`` per series plus the current row watermark.

        With no ``end`` every sample from ``start`` on is returned, including
        ones stamped later than the caller's clock.
        """
        clause = "ts >= ?" if end is None else "ts >= ? AND ts <= ?"
        bounds = (to_epoch(start),) if end is None else (to_epoch(start), to_epoch(end))
        result: Dict[int, List[Sample]] = {}
        with self._lock:
            cur = self.con.cursor()
            for handle in handles:
                cur.execute(
                    f"""
                    SELECT id, ts, value, is_good FROM samples
                    WHERE series_id = ? AND {clause}
                    ORDER BY ts DESC, id DESC
                    """,
                    (int(handle.id), *bounds),
                )
                result[handle.id] = [self._sample(row) for row in cur.fetchall()]
            watermark = self._max_row_id(cur)
        return result, watermark

    def read_updates(
        self,
        handles: Iterable[SeriesHandle],
        after_row_id: int,
    ) -> Tuple[Dict[int, List[Sample]], int]:
        """Samples written since ``after_row_id`` for each series, plus the new watermark."""
        ids = [int(h.id) for h in handles]
        result: Dict[int, List[Sample]] = {series_id: [] for series_id in ids}
        if not ids:
            return result, int(after_row_id)
        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            cur = self.con.cursor()
            watermark = self._max_row_id(cur)
            cur.execute(
                f"""
                SELECT id, ts, value, is_good, series_id FROM samples
                WHERE id > ? AND id <= ? AND series_id IN ({placeholders})
                ORDER BY id ASC
                """,
                (int(after_row_id), watermark, *ids),
            )
            for row in cur.fetchall():
                result[int(row[4])].append(self._sample(row))
        return result, watermark

    @staticmethod
    def _max_row_id(cur: sqlite3.Cursor) -> int:
        cur.execute("SELECT COALESCE(MAX(id), 0) FROM samples")
        return int(cur.fetchone()[0])

    # -----------------
    # Writes
    # -----------------

    def write_value(
        self,
        handle: SeriesHandle,
        value: float,
        timestamp: datetime,
        mode: str = UpdateOption.INSERT,
        *,
        is_good: bool = True,
    ) -> int:
        """Write one sample and return its row id."""
        if mode not in UpdateOption.ALL:
            raise ValueError(f"Unknown update option '{mode}'")
        ts = to_epoch(timestamp)
        with self._lock:
            cur = self.con.cursor()
            if mode == UpdateOption.REPLACE:
                cur.execute(
                    "DELETE FROM samples WHERE series_id = ? AND ts = ?",
                    (int(handle.id), ts),
                )
            cur.execute(
                "INSERT INTO samples(series_id, ts, value, is_good) VALUES (?, ?, ?, ?)",
                (int(handle.id), ts, float(value), 1 if is_good else 0),
            )
            self.con.commit()
            lastrow = cur.lastrowid
        if lastrow is None:
            raise RuntimeError("Failed to retrieve lastrowid after inserting sample")
        return int(lastrow)

    def count_samples(self, handle: SeriesHandle) -> int:
        with self._lock:
            cur = self.con.cursor()
            cur.execute("SELECT COUNT(*) FROM samples WHERE series_id = ?", (int(handle.id),))
            return int(cur.fetchone()[0])
