import json
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from timercalc.calc.calculations import CalculationOutcome, IdealGasCalculation
from timercalc.calc.ideal_gas import GAS_CONSTANT
from timercalc.io.settings import SettingsError, parse_settings
from timercalc.schedule.scheduler import Scheduler, SchedulerState, main_loop
from timercalc.store.model import BoundaryType
from timercalc.store.store import Store
from timercalc.util.run_logger import RunLogger
from timercalc.util.time import utc_now

TEMPERATURE = 273.0
PRESSURE = 2280.0
VOLUME = 500.0
EXPECTED_MOLES = PRESSURE * VOLUME / (GAS_CONSTANT * TEMPERATURE)
INTERVAL_MS = 300


def _element_store(tmp_path, elements=("Tank01",), written_at=None) -> Store:
    store = Store(str(tmp_path / "calc.db"))
    ts = written_at or utc_now() - timedelta(seconds=1)
    for element in elements:
        for attr, value in (("Temperature", TEMPERATURE), ("Pressure", PRESSURE), ("Volume", VOLUME)):
            handle = store.create_series(f"{element}.{attr}")
            store.write_value(handle, value, ts)
    return store


def _ideal_gas_settings(**overrides):
    raw = {"timer_interval_ms": INTERVAL_MS, "calculation": "ideal_gas", "contexts": ["Tank01"]}
    raw.update(overrides)
    return parse_settings(raw)


def _good_values(store: Store, name: str):
    handle = store.find_series(name)
    assert handle is not None
    window = store.read_recent(handle, utc_now() + timedelta(seconds=5), 100, BoundaryType.INSIDE)
    return [s for s in window if s.is_good]


def _run_for(scheduler: Scheduler, ticks: int, interval_ms: int = INTERVAL_MS, lead_s: float = 0.0) -> bool:
    scheduler.start()
    time.sleep(lead_s + (ticks - 1) * interval_ms / 1000.0 + interval_ms / 2000.0)
    scheduler.cancel()
    outcome = scheduler.wait(10.0)
    assert outcome is not None
    return outcome


def _assert_spacing(samples, interval_ms: int) -> None:
    # samples are most-recent-first
    stamps = [s.timestamp for s in reversed(samples)]
    for i in range(1, len(stamps)):
        delta = (stamps[i] - stamps[i - 1]).total_seconds()
        assert abs(delta - interval_ms / 1000.0) < 1.0


@pytest.mark.parametrize("cache_seconds", [0, 3600])
def test_ideal_gas_writes_expected_moles_each_tick(tmp_path, cache_seconds) -> None:
    store = _element_store(tmp_path)
    settings = _ideal_gas_settings(cache_time_span_seconds=cache_seconds)
    scheduler = Scheduler(settings, store)
    assert _run_for(scheduler, ticks=3) is True
    assert scheduler.state == SchedulerState.STOPPED

    moles = _good_values(store, "Tank01.Moles")
    assert 3 <= len(moles) < 3 + 15
    for sample in moles:
        assert sample.value == pytest.approx(EXPECTED_MOLES)
    _assert_spacing(moles, INTERVAL_MS)

    rates = _good_values(store, "Tank01.MolarFlowRate")
    assert len(rates) == len(moles) - 1
    for sample in rates:
        assert sample.value == pytest.approx(0.0, abs=1e-9)


def test_constant_zero_input_produces_zero_outputs(tmp_path) -> None:
    store = Store(str(tmp_path / "zero.db"))
    handle = store.create_series("Zero.In")
    start = utc_now() - timedelta(seconds=10)
    for i in range(10):
        store.write_value(handle, 0.0, start + timedelta(seconds=i))
    settings = parse_settings(
        {
            "timer_interval_ms": INTERVAL_MS,
            "calculation_contexts": [{"input_tag": "Zero.In", "output_tag": "Zero.Out"}],
        }
    )
    scheduler = Scheduler(settings, store)
    assert _run_for(scheduler, ticks=4) is True
    outputs = _good_values(store, "Zero.Out")
    assert 4 <= len(outputs) < 4 + 15
    assert all(s.value == 0.0 for s in outputs)
    _assert_spacing(outputs, INTERVAL_MS)


def test_first_tick_aligns_to_offset(tmp_path) -> None:
    real = utc_now()
    target = real.replace(second=14, microsecond=400_000)
    shift = target - real

    def clock() -> datetime:
        return utc_now() + shift

    store = _element_store(tmp_path, written_at=target - timedelta(seconds=1))
    settings = _ideal_gas_settings(define_offset_seconds=True, offset_seconds=15, timer_interval_ms=500)
    scheduler = Scheduler(settings, store, clock=clock)
    assert _run_for(scheduler, ticks=2, interval_ms=500, lead_s=0.6) is True

    moles = _good_values(store, "Tank01.Moles")
    assert moles
    first = moles[-1].timestamp
    boundary = target.replace(second=15, microsecond=0)
    assert abs((first - boundary).total_seconds()) < 1.0


def test_unresolvable_context_is_skipped_while_others_run(tmp_path) -> None:
    store = _element_store(tmp_path, elements=("Tank01",))
    settings = _ideal_gas_settings(contexts=["Tank01", "Ghost"])
    scheduler = Scheduler(settings, store)
    assert _run_for(scheduler, ticks=2) is True
    assert scheduler.configuration is not None
    assert [ctx.name for ctx in scheduler.configuration.contexts] == ["Tank01"]
    assert len(scheduler.configuration.errors) == 1
    assert len(_good_values(store, "Tank01.Moles")) >= 2
    assert store.find_series("Ghost.Moles") is None


def test_rate_uses_previous_stored_value(tmp_path) -> None:
    t0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
    store = _element_store(tmp_path, written_at=t0 - timedelta(seconds=1))
    scheduler = Scheduler(_ideal_gas_settings(), store)
    scheduler.initialize()

    first = scheduler.perform_all_calculations(t0)
    assert "Tank01.MolarFlowRate" not in first[0].written
    assert any("No previous value" in reason for reason in first[0].skipped)

    pressure = store.find_series("Tank01.Pressure")
    store.write_value(pressure, PRESSURE * 2, t0 + timedelta(seconds=5))
    # One new sample among one old: the trimmed mean settles on their average.
    second = scheduler.perform_all_calculations(t0 + timedelta(seconds=10))
    n1 = first[0].written["Tank01.Moles"]
    n2 = second[0].written["Tank01.Moles"]
    assert n2 == pytest.approx(PRESSURE * 1.5 * VOLUME / (GAS_CONSTANT * TEMPERATURE))
    assert second[0].written["Tank01.MolarFlowRate"] == pytest.approx((n2 - n1) / 10.0)


def test_bad_previous_value_skips_rate(tmp_path) -> None:
    t0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
    store = _element_store(tmp_path, written_at=t0 - timedelta(seconds=1))
    scheduler = Scheduler(_ideal_gas_settings(), store)
    scheduler.initialize()
    moles = store.find_series("Tank01.Moles")
    store.write_value(moles, 0.0, t0 - timedelta(seconds=1), is_good=False)
    outcome = scheduler.perform_all_calculations(t0)[0]
    assert "Tank01.Moles" in outcome.written
    assert "Tank01.MolarFlowRate" not in outcome.written
    assert any("bad" in reason for reason in outcome.skipped)


class _ExplodingForOne(IdealGasCalculation):
    def perform(self, trigger_time, context, source) -> CalculationOutcome:
        if context.name == "Tank01":
            raise RuntimeError("boom")
        return super().perform(trigger_time, context, source)


def test_failure_in_one_context_does_not_stop_the_tick(tmp_path) -> None:
    store = _element_store(tmp_path, elements=("Tank01", "Tank02"))
    settings = _ideal_gas_settings(contexts=["Tank01", "Tank02"])
    scheduler = Scheduler(settings, store, calculation=_ExplodingForOne())
    scheduler.initialize()
    outcomes = scheduler.perform_all_calculations(utc_now())
    assert [o.context for o in outcomes] == ["Tank02"]
    assert scheduler.failed_calculations == 1


def test_cancel_during_alignment_stops_cleanly(tmp_path) -> None:
    fixed = datetime(2024, 5, 1, 12, 0, 16, tzinfo=timezone.utc)
    store = _element_store(tmp_path)
    settings = _ideal_gas_settings(define_offset_seconds=True, offset_seconds=15)
    scheduler = Scheduler(settings, store, clock=lambda: fixed)
    scheduler.start()
    time.sleep(0.2)
    assert scheduler.state == SchedulerState.ALIGNING
    scheduler.cancel()
    assert scheduler.wait(5.0) is True
    assert scheduler.tick_count == 0
    assert scheduler.state == SchedulerState.STOPPED


class _SlowFirstTick(IdealGasCalculation):
    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def perform(self, trigger_time, context, source) -> CalculationOutcome:
        self.calls += 1
        if self.calls == 1:
            time.sleep(0.35)
        return super().perform(trigger_time, context, source)


def test_overrunning_tick_skips_missed_firings(tmp_path) -> None:
    store = _element_store(tmp_path)
    settings = _ideal_gas_settings(timer_interval_ms=100)
    scheduler = Scheduler(settings, store, calculation=_SlowFirstTick())
    scheduler.start()
    time.sleep(0.6)
    scheduler.cancel()
    assert scheduler.wait(5.0) is True
    assert scheduler.skipped_firings >= 1


class _FailingRangeStore(Store):
    def read_range(self, handles, start, end=None):
        raise RuntimeError("store offline")


def test_unrecoverable_tick_error_reports_failure(tmp_path) -> None:
    store = _FailingRangeStore(str(tmp_path / "fail.db"))
    for attr in ("Temperature", "Pressure", "Volume"):
        store.create_series(f"Tank01.{attr}")
    settings = _ideal_gas_settings(cache_time_span_seconds=60)
    scheduler = Scheduler(settings, store)
    assert scheduler.run() is False
    assert isinstance(scheduler.error, RuntimeError)
    assert scheduler.state == SchedulerState.STOPPED
    assert scheduler.cache is not None


def test_run_journal_records_ticks(tmp_path) -> None:
    store = _element_store(tmp_path)
    journal = RunLogger(tmp_path / "journal.log")
    scheduler = Scheduler(_ideal_gas_settings(), store, run_logger=journal)
    assert _run_for(scheduler, ticks=2) is True
    events = [json.loads(line)["event"] for line in (tmp_path / "journal.log").read_text().splitlines()]
    assert events[0] == "run_start"
    assert "tick" in events
    assert "value_written" in events
    assert events[-1] == "run_end"


def test_main_loop_runs_until_cancel_event(tmp_path) -> None:
    store = _element_store(tmp_path)
    store.close()
    db_path = tmp_path / "calc.db"
    config = tmp_path / "appsettings.json"
    config.write_text(
        json.dumps({"server": str(db_path), "timer_interval_ms": 200, "contexts": ["Tank01"]}),
        encoding="utf-8",
    )
    cancel = threading.Event()
    result = {}
    worker = threading.Thread(target=lambda: result.setdefault("ok", main_loop(cancel, str(config))))
    worker.start()
    time.sleep(0.5)
    cancel.set()
    worker.join(10.0)
    assert result["ok"] is True
    check = Store(str(db_path))
    assert len(_good_values(check, "Tank01.Moles")) >= 2


def test_main_loop_raises_on_bad_settings(tmp_path) -> None:
    with pytest.raises(SettingsError):
        main_loop(threading.Event(), str(tmp_path / "missing.json"))
