"""Read-through snapshot cache in front of the time-series store."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from timercalc.store.model import BoundaryType, Sample, SeriesHandle, UpdateOption, apply_boundary
from timercalc.store.store import Store
from timercalc.util.logging import get_logger

logger = get_logger(__name__)


class SnapshotCache:
    """Per-series windows of recent samples, refreshed wholesale once per tick.

    Entries are tuples of samples ordered most-recent-first. ``refresh`` builds a
    complete new entry map and swaps it in under the lock, so readers never see
    a partially refreshed view. Reads for unregistered series fall through to the
    store.
    """

    def __init__(self, store: Store, handles: Iterable[SeriesHandle], retention_seconds: float) -> None:
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        self.store = store
        self.retention = timedelta(seconds=float(retention_seconds))
        self._handles: Dict[int, SeriesHandle] = {h.id: h for h in handles}
        self._entries: Dict[int, Tuple[Sample, ...]] = {}
        self._watermark: Optional[int] = None
        self._lock = threading.Lock()
        self._closed = False
        self.refresh_count = 0

    @property
    def handles(self) -> List[SeriesHandle]:
        return list(self._handles.values())

    def is_registered(self, handle: SeriesHandle) -> bool:
        return handle.id in self._handles

    def refresh(self, now: datetime) -> None:
        """Fetch updates for every registered series and drop samples older than the retention span."""

        if self._closed:
            raise RuntimeError("SnapshotCache is closed")
        cutoff = now - self.retention
        if self._watermark is None:
            fetched, watermark = self.store.read_range(self._handles.values(), cutoff)
            entries = {series_id: tuple(samples) for series_id, samples in fetched.items()}
        else:
            updates, watermark = self.store.read_updates(self._handles.values(), self._watermark)
            with self._lock:
                current = dict(self._entries)
            entries = {}
            for series_id in self._handles:
                entries[series_id] = _merge(current.get(series_id, ()), updates.get(series_id, []), cutoff)
        with self._lock:
            self._entries = entries
            self._watermark = watermark
            self.refresh_count += 1
        logger.debug(
            "Snapshot cache refreshed: %d series, %d samples",
            len(entries),
            sum(len(v) for v in entries.values()),
        )

    def read_recent(
        self,
        handle: SeriesHandle,
        before: datetime,
        count: int,
        boundary: str = BoundaryType.INSIDE,
    ) -> List[Sample]:
        if not self.is_registered(handle):
            return self.store.read_recent(handle, before, count, boundary)
        with self._lock:
            entry = self._entries.get(handle.id, ())
        at_or_before = [s for s in entry if s.timestamp <= before]
        later = [s for s in entry if s.timestamp > before]
        after = later[-1] if later else None
        return apply_boundary(at_or_before, after, before, count, boundary)

    def read_latest(self, handle: SeriesHandle) -> Optional[Sample]:
        if not self.is_registered(handle):
            return self.store.read_latest(handle)
        with self._lock:
            entry = self._entries.get(handle.id, ())
        return entry[0] if entry else None

    def write_value(
        self,
        handle: SeriesHandle,
        value: float,
        timestamp: datetime,
        mode: str = UpdateOption.INSERT,
        *,
        is_good: bool = True,
    ) -> int:
        """Write through to the store; the written sample is visible to later reads of a registered series."""

        row_id = self.store.write_value(handle, value, timestamp, mode, is_good=is_good)
        if self.is_registered(handle):
            sample = Sample(timestamp=timestamp, value=float(value), is_good=is_good, row_id=row_id)
            with self._lock:
                entry = self._entries.get(handle.id, ())
                self._entries = {**self._entries, handle.id: _insert_sorted(entry, sample)}
        return row_id

    def close(self) -> None:
        with self._lock:
            self._entries = {}
            self._handles = {}
            self._closed = True


def _order_key(sample: Sample) -> Tuple[datetime, int]:
    # Same order as the store: ts DESC, row id DESC.
    return sample.timestamp, sample.row_id or 0


def _insert_sorted(entry: Tuple[Sample, ...], sample: Sample) -> Tuple[Sample, ...]:
    merged = list(entry) + [sample]
    merged.sort(key=_order_key, reverse=True)
    return tuple(merged)


def _merge(entry: Tuple[Sample, ...], updates: List[Sample], cutoff: datetime) -> Tuple[Sample, ...]:
    seen = {s.row_id for s in entry if s.row_id is not None}
    merged = [s for s in entry if s.timestamp >= cutoff]
    merged.extend(s for s in updates if s.row_id not in seen and s.timestamp >= cutoff)
    merged.sort(key=_order_key, reverse=True)
    return tuple(merged)
