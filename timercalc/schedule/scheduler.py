"""Periodic calculation scheduler: alignment, fixed-interval ticks, and cancellation."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from timercalc.cache.snapshot import SnapshotCache
from timercalc.calc.calculations import CalculationOutcome
from timercalc.context.model import ResolvedConfiguration
from timercalc.context.resolver import resolve_contexts
from timercalc.io.settings import AppSettings, load_settings
from timercalc.store.model import SeriesHandle
from timercalc.store.store import Store
from timercalc.util.logging import get_logger, log_exception
from timercalc.util.run_logger import RunLogger
from timercalc.util.time import ms_until_offset, utc_now

logger = get_logger(__name__)


class SchedulerState:
    INITIALIZING = "initializing"
    ALIGNING = "aligning"
    RUNNING = "running"
    CANCELING = "canceling"
    STOPPED = "stopped"


class Scheduler:
    """Own the trigger loop, resolved contexts, and snapshot cache for one run.

    Ticks never overlap: each firing runs to completion on the scheduler thread
    before the next deadline is considered. Deadlines stay on the fixed grid
    ``first + k * interval``; firings whose deadline passed by more than a whole
    interval while a tick was running are skipped rather than queued.
    """

    def __init__(
        self,
        settings: AppSettings,
        store: Store,
        *,
        calculation=None,
        clock: Callable[[], datetime] = utc_now,
        run_logger: Optional[RunLogger] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.calculation = calculation or settings.build_calculation()
        self.run_logger = run_logger
        self._clock = clock
        self._cancel = cancel_event or threading.Event()
        self._state = SchedulerState.INITIALIZING
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._error: Optional[BaseException] = None
        self._result: Optional[bool] = None
        self.configuration: Optional[ResolvedConfiguration] = None
        self.cache: Optional[SnapshotCache] = None
        self.tick_count = 0
        self.skipped_firings = 0
        self.failed_calculations = 0
        self.last_outcomes: List[CalculationOutcome] = []

    # -----------------
    # Public interface
    # -----------------

    @property
    def state(self) -> str:
        with self._state_lock:
            return self._state

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def start(self) -> threading.Thread:
        if self._thread is not None:
            raise RuntimeError("Scheduler already started")
        self._thread = threading.Thread(target=self.run, name="timercalc-scheduler", daemon=True)
        self._thread.start()
        return self._thread

    def cancel(self) -> None:
        logger.info("Cancellation requested")
        self._cancel.set()

    def wait(self, timeout: Optional[float] = None) -> Optional[bool]:
        """Join the scheduler thread; returns the run outcome, or None if still running."""
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                return None
        return self._result

    def run(self) -> bool:
        """Run the state machine until canceled; True when no unrecoverable error occurred."""
        try:
            self._set_state(SchedulerState.INITIALIZING)
            self.initialize()
            if self._align():
                self._set_state(SchedulerState.RUNNING)
                self._run_ticks()
        except Exception as exc:
            log_exception(logger, f"Scheduler stopped by unrecoverable error: {exc}", error_type="scheduler")
            self._error = exc
        finally:
            self._teardown()
        self._result = self._error is None
        if self.run_logger:
            self.run_logger.log("run_end", ok=self._result, ticks=self.tick_count, skipped_firings=self.skipped_firings)
        logger.info("Quitting (%s)", "canceled cleanly" if self._result else "failed")
        return self._result

    def initialize(self) -> ResolvedConfiguration:
        """Resolve contexts and build the snapshot cache when retention is configured."""
        settings = self.settings
        resolution = resolve_contexts(self.store, settings.configured_contexts())
        if self.run_logger:
            self.run_logger.log(
                "run_start",
                calculation=self.calculation.name,
                resolved=[ctx.name for ctx in resolution.resolved],
                interval_ms=settings.timer_interval_ms,
            )
            for message in resolution.errors:
                self.run_logger.log("context_excluded", error=message)
        self.configuration = ResolvedConfiguration(
            contexts=tuple(resolution.resolved),
            timer_interval_ms=settings.timer_interval_ms,
            offset_seconds=settings.offset,
            cache_time_span_seconds=settings.cache_time_span_seconds,
            errors=tuple(resolution.errors),
        )
        logger.info(
            "Resolved %d of %d contexts",
            len(resolution.resolved),
            len(resolution.resolved) + len(resolution.errors),
        )
        if settings.cache_time_span_seconds > 0 and resolution.resolved:
            handles: Dict[int, SeriesHandle] = {}
            for ctx in resolution.resolved:
                for handle in self.calculation.cached_handles(ctx, settings.inputs or None):
                    handles[handle.id] = handle
            self.cache = SnapshotCache(self.store, handles.values(), settings.cache_time_span_seconds)
            logger.info("Snapshot cache holds %d series for %ds", len(handles), settings.cache_time_span_seconds)
        return self.configuration

    def perform_all_calculations(self, trigger_time: datetime) -> List[CalculationOutcome]:
        """One tick: refresh the cache, then run the calculation for every resolved context."""
        if self.configuration is None:
            raise RuntimeError("Scheduler.initialize() must run before calculations")
        started = time.monotonic()
        self.tick_count += 1
        if self.run_logger:
            self.run_logger.start_tick(self.tick_count, trigger_time=trigger_time.isoformat())
        if self.cache is not None:
            self.cache.refresh(trigger_time)
        source = self.cache if self.cache is not None else self.store
        outcomes: List[CalculationOutcome] = []
        for context in self.configuration.contexts:
            try:
                outcome = self.calculation.perform(trigger_time, context, source)
            except Exception as exc:
                self.failed_calculations += 1
                log_exception(
                    logger,
                    f"Calculation failed for {context.name}: {exc}",
                    error_type="calculation",
                    context=context.name,
                    tick=self.tick_count,
                )
                if self.run_logger:
                    self.run_logger.log("calc_failed", context=context.name, error=str(exc))
                continue
            outcomes.append(outcome)
            if self.run_logger:
                for series, value in outcome.written.items():
                    self.run_logger.log("value_written", context=context.name, series=series, value=value)
                for reason in outcome.skipped:
                    self.run_logger.log("calc_skipped", context=context.name, reason=reason)
        logger.debug(
            "Tick finished: %d context(s)",
            len(outcomes),
            extra={"tick": self.tick_count, "duration_ms": round((time.monotonic() - started) * 1000.0, 1)},
        )
        self.last_outcomes = outcomes
        return outcomes

    # -----------------
    # Internals
    # -----------------

    def _set_state(self, state: str) -> None:
        with self._state_lock:
            previous, self._state = self._state, state
        if previous != state:
            logger.debug("Scheduler state %s -> %s", previous, state)

    def _align(self) -> bool:
        """Block until the configured second-of-minute; False if canceled first."""
        offset = self.settings.offset
        if offset is None:
            return not self._cancel.is_set()
        self._set_state(SchedulerState.ALIGNING)
        delay_ms = ms_until_offset(self._clock(), offset)
        logger.info("Pausing until the defined offset of %d seconds (%d ms)...", offset, delay_ms)
        return not self._cancel.wait(delay_ms / 1000.0)

    def _run_ticks(self) -> None:
        interval = timedelta(milliseconds=self.settings.timer_interval_ms)
        interval_s = interval.total_seconds()
        first = self._clock()
        # First pass runs immediately rather than one interval after start.
        self.perform_all_calculations(first)
        next_fire = first + interval
        while True:
            delay = (next_fire - self._clock()).total_seconds()
            if delay <= -interval_s:
                missed = int(-delay // interval_s)
                next_fire += interval * missed
                self.skipped_firings += missed
                logger.warning("Tick overran; skipping %d missed firing(s)", missed)
                delay = (next_fire - self._clock()).total_seconds()
            if self._cancel.wait(max(delay, 0.0)):
                logger.info("Task canceled successfully")
                break
            self.perform_all_calculations(self._clock())
            next_fire += interval

    def _teardown(self) -> None:
        self._set_state(SchedulerState.CANCELING)
        if self.cache is not None:
            logger.debug("Releasing snapshot cache")
            self.cache.close()
        self._set_state(SchedulerState.STOPPED)


def main_loop(
    cancel_event: threading.Event,
    settings_path: Optional[str] = None,
    *,
    store_path: Optional[str] = None,
    interval_ms: Optional[int] = None,
    run_logger: Optional[RunLogger] = None,
) -> bool:
    """Load settings, open the store, and run one scheduler until ``cancel_event`` is set.

    Settings errors raise SettingsError before anything is scheduled.
    """

    settings = load_settings(settings_path).with_overrides(server=store_path, timer_interval_ms=interval_ms)
    store = Store(settings.store_path, settings.database_name)
    try:
        scheduler = Scheduler(settings, store, run_logger=run_logger, cancel_event=cancel_event)
        return scheduler.run()
    finally:
        store.close()
