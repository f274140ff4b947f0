"""Per-context calculation pipelines run on every tick.

Both pipelines read through a ``source`` exposing ``read_recent``, ``read_latest``
and ``write_value``: the snapshot cache when one is configured, else the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from timercalc.calc.ideal_gas import moles, rate_of_change
from timercalc.calc.trimmed_mean import DEFAULT_NUM_STD_DEVS, trimmed_mean
from timercalc.context.model import (
    MOLAR_FLOW_RATE,
    MOLES,
    PRESSURE,
    TEMPERATURE,
    VOLUME,
    ResolvedContext,
)
from timercalc.store.model import BoundaryType, SeriesHandle, UpdateOption
from timercalc.util.logging import context_logger, get_logger

logger = get_logger(__name__)

DEFAULT_NUM_VALUES = 100


@dataclass
class CalculationOutcome:
    context: str
    trigger_time: datetime
    written: Dict[str, float] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    def skip(self, reason: str, series: Optional[str] = None) -> None:
        self.skipped.append(reason)
        context_logger(logger, self.context).info("%s: %s", self.context, reason, extra={"series": series})


class TrimmedMeanCalculation:
    """Trimmed mean of the last ``num_values`` input samples written to the output series."""

    name = "trimmed_mean"

    def __init__(
        self,
        *,
        num_values: int = DEFAULT_NUM_VALUES,
        num_std_devs: float = DEFAULT_NUM_STD_DEVS,
        boundary: str = BoundaryType.INTERPOLATED,
    ) -> None:
        self.num_values = int(num_values)
        self.num_std_devs = float(num_std_devs)
        self.boundary = boundary

    def cached_handles(self, context: ResolvedContext, attributes: Optional[Sequence[str]] = None) -> List[SeriesHandle]:
        return [context.inputs["input"]]

    def perform(self, trigger_time: datetime, context: ResolvedContext, source) -> CalculationOutcome:
        outcome = CalculationOutcome(context=context.name, trigger_time=trigger_time)
        output = context.outputs["output"]
        window = source.read_recent(context.inputs["input"], trigger_time, self.num_values, self.boundary)
        result = trimmed_mean(window, self.num_std_devs)
        if not result.ok or result.mean is None:
            outcome.skip(
                f"All values were eliminated from the set. No output will be written to {output.name} for {trigger_time.isoformat()}.",
                output.name,
            )
            return outcome
        source.write_value(output, result.mean, trigger_time, UpdateOption.INSERT)
        outcome.written[output.name] = result.mean
        return outcome


class IdealGasCalculation:
    """Moles from trimmed-mean temperature and pressure plus the latest volume, then molar flow rate.

    The Moles value is written before the rate is computed, and the rate reads
    the two most recent Moles samples back through ``source``.
    """

    name = "ideal_gas"

    def __init__(
        self,
        *,
        num_values: int = DEFAULT_NUM_VALUES,
        num_std_devs: float = DEFAULT_NUM_STD_DEVS,
        boundary: str = BoundaryType.INSIDE,
    ) -> None:
        self.num_values = int(num_values)
        self.num_std_devs = float(num_std_devs)
        self.boundary = boundary

    def cached_handles(self, context: ResolvedContext, attributes: Optional[Sequence[str]] = None) -> List[SeriesHandle]:
        names: Iterable[str] = attributes or (TEMPERATURE, PRESSURE, MOLES)
        return [context.handle(attr) for attr in names if attr in context.inputs or attr in context.outputs]

    def _trimmed(self, source, handle: SeriesHandle, trigger_time: datetime) -> Optional[float]:
        window = source.read_recent(handle, trigger_time, self.num_values, self.boundary)
        result = trimmed_mean(window, self.num_std_devs)
        return result.mean if result.ok else None

    def perform(self, trigger_time: datetime, context: ResolvedContext, source) -> CalculationOutcome:
        outcome = CalculationOutcome(context=context.name, trigger_time=trigger_time)
        moles_handle = context.outputs[MOLES]

        temperature = self._trimmed(source, context.inputs[TEMPERATURE], trigger_time)
        pressure = self._trimmed(source, context.inputs[PRESSURE], trigger_time)
        volume_sample = source.read_latest(context.inputs[VOLUME])
        if temperature is None or pressure is None:
            outcome.skip(
                f"All values were eliminated from the set. No output will be written to {moles_handle.name} for {trigger_time.isoformat()}.",
                moles_handle.name,
            )
            return outcome
        if volume_sample is None or not volume_sample.is_good:
            outcome.skip(f"No good volume value. No output will be written to {moles_handle.name}.", moles_handle.name)
            return outcome
        if temperature <= 0.0:
            outcome.skip(f"Non-positive temperature {temperature}. No output will be written to {moles_handle.name}.", moles_handle.name)
            return outcome

        current = moles(pressure, volume_sample.value, temperature)
        source.write_value(moles_handle, current, trigger_time, UpdateOption.INSERT)
        outcome.written[moles_handle.name] = current

        self._molar_flow_rate(trigger_time, context, source, outcome)
        return outcome

    def _molar_flow_rate(self, trigger_time: datetime, context: ResolvedContext, source, outcome: CalculationOutcome) -> None:
        rate_handle = context.outputs[MOLAR_FLOW_RATE]
        recent = source.read_recent(context.outputs[MOLES], trigger_time, 2, BoundaryType.INSIDE)
        if len(recent) < 2:
            outcome.skip(f"No previous value. No output will be written to {rate_handle.name}.", rate_handle.name)
            return
        current, previous = recent[0], recent[1]
        if not previous.is_good:
            outcome.skip(f"Previous value is bad. No output will be written to {rate_handle.name}.", rate_handle.name)
            return
        rate = rate_of_change(current.value, current.timestamp, previous.value, previous.timestamp)
        if rate is None:
            outcome.skip(f"Previous value is not older than {trigger_time.isoformat()}. No output will be written to {rate_handle.name}.", rate_handle.name)
            return
        source.write_value(rate_handle, rate, trigger_time, UpdateOption.INSERT)
        outcome.written[rate_handle.name] = rate


CALCULATIONS = {
    TrimmedMeanCalculation.name: TrimmedMeanCalculation,
    IdealGasCalculation.name: IdealGasCalculation,
}
