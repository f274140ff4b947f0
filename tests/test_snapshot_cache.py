from datetime import datetime, timedelta, timezone

import pytest

from timercalc.cache.snapshot import SnapshotCache
from timercalc.store.model import BoundaryType
from timercalc.store.store import Store

_T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def _store_with_series(tmp_path):
    store = Store(str(tmp_path / "cache.db"))
    cached = store.create_series("cached")
    direct = store.create_series("direct")
    return store, cached, direct


def test_requires_positive_retention(tmp_path) -> None:
    store, cached, _ = _store_with_series(tmp_path)
    with pytest.raises(ValueError):
        SnapshotCache(store, [cached], 0)


def test_registered_reads_come_from_snapshot(tmp_path) -> None:
    store, cached, _ = _store_with_series(tmp_path)
    store.write_value(cached, 1.0, _T0)
    cache = SnapshotCache(store, [cached], 3600)
    cache.refresh(_T0 + timedelta(seconds=1))
    store.write_value(cached, 2.0, _T0 + timedelta(seconds=1))
    # Not visible until the next refresh.
    assert [s.value for s in cache.read_recent(cached, _T0 + timedelta(seconds=1), 10)] == [1.0]
    cache.refresh(_T0 + timedelta(seconds=2))
    assert [s.value for s in cache.read_recent(cached, _T0 + timedelta(seconds=2), 10)] == [2.0, 1.0]
    assert cache.refresh_count == 2


def test_unregistered_reads_fall_through_to_store(tmp_path) -> None:
    store, cached, direct = _store_with_series(tmp_path)
    cache = SnapshotCache(store, [cached], 3600)
    cache.refresh(_T0)
    store.write_value(direct, 7.0, _T0)
    assert [s.value for s in cache.read_recent(direct, _T0, 5)] == [7.0]
    latest = cache.read_latest(direct)
    assert latest is not None and latest.value == 7.0


def test_refresh_drops_samples_older_than_retention(tmp_path) -> None:
    store, cached, _ = _store_with_series(tmp_path)
    store.write_value(cached, 1.0, _T0)
    cache = SnapshotCache(store, [cached], 60)
    cache.refresh(_T0 + timedelta(seconds=30))
    assert len(cache.read_recent(cached, _T0 + timedelta(seconds=30), 10)) == 1
    store.write_value(cached, 2.0, _T0 + timedelta(seconds=90))
    cache.refresh(_T0 + timedelta(seconds=100))
    assert [s.value for s in cache.read_recent(cached, _T0 + timedelta(seconds=100), 10)] == [2.0]


def test_write_through_is_visible_immediately_and_not_duplicated(tmp_path) -> None:
    store, cached, _ = _store_with_series(tmp_path)
    cache = SnapshotCache(store, [cached], 3600)
    cache.refresh(_T0)
    cache.write_value(cached, 5.0, _T0 + timedelta(seconds=1))
    latest = cache.read_latest(cached)
    assert latest is not None and latest.value == 5.0
    cache.refresh(_T0 + timedelta(seconds=2))
    assert len(cache.read_recent(cached, _T0 + timedelta(seconds=2), 10)) == 1
    assert store.count_samples(cached) == 1


def test_interpolated_read_from_snapshot(tmp_path) -> None:
    store, cached, _ = _store_with_series(tmp_path)
    store.write_value(cached, 0.0, _T0)
    store.write_value(cached, 10.0, _T0 + timedelta(seconds=10))
    cache = SnapshotCache(store, [cached], 3600)
    cache.refresh(_T0 + timedelta(seconds=10))
    window = cache.read_recent(cached, _T0 + timedelta(seconds=4), 2, BoundaryType.INTERPOLATED)
    assert [s.value for s in window] == [pytest.approx(4.0), 0.0]


def test_closed_cache_refuses_refresh(tmp_path) -> None:
    store, cached, _ = _store_with_series(tmp_path)
    cache = SnapshotCache(store, [cached], 3600)
    cache.close()
    with pytest.raises(RuntimeError):
        cache.refresh(_T0)


def test_samples_stamped_after_first_refresh_are_kept(tmp_path) -> None:
    store, cached, _ = _store_with_series(tmp_path)
    store.write_value(cached, 1.0, _T0)
    store.write_value(cached, 2.0, _T0 + timedelta(seconds=5))
    cache = SnapshotCache(store, [cached], 3600)
    cache.refresh(_T0 + timedelta(seconds=1))
    assert [s.value for s in cache.read_recent(cached, _T0 + timedelta(seconds=1), 10)] == [1.0]
    cache.refresh(_T0 + timedelta(seconds=10))
    later = _T0 + timedelta(seconds=10)
    expected = [s.value for s in store.read_recent(cached, later, 10)]
    assert expected == [2.0, 1.0]
    assert [s.value for s in cache.read_recent(cached, later, 10)] == expected


def test_equal_timestamps_order_newest_write_first(tmp_path) -> None:
    store, cached, _ = _store_with_series(tmp_path)
    store.write_value(cached, 1.0, _T0)
    cache = SnapshotCache(store, [cached], 3600)
    cache.refresh(_T0)
    cache.write_value(cached, 2.0, _T0)
    expected = [s.value for s in store.read_recent(cached, _T0, 2)]
    assert expected == [2.0, 1.0]
    assert [s.value for s in cache.read_recent(cached, _T0, 2)] == expected
    latest = cache.read_latest(cached)
    assert latest is not None and latest.value == 2.0
