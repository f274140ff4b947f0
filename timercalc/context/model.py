"""Configured and resolved calculation contexts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

from timercalc.store.model import SeriesHandle

TEMPERATURE = "Temperature"
PRESSURE = "Pressure"
VOLUME = "Volume"
MOLES = "Moles"
MOLAR_FLOW_RATE = "MolarFlowRate"

ELEMENT_INPUTS = (TEMPERATURE, PRESSURE, VOLUME)
ELEMENT_OUTPUTS = (MOLES, MOLAR_FLOW_RATE)


def attribute_series_name(element: str, attribute: str) -> str:
    return f"{element}.{attribute}"


@dataclass(frozen=True)
class TagPairContext:
    """Single-input context: one input series averaged into one output series."""

    input_tag: str
    output_tag: str

    @property
    def name(self) -> str:
        return self.input_tag


@dataclass(frozen=True)
class ElementContext:
    """Multi-attribute context: an element whose attributes live in ``<element>.<attribute>`` series."""

    element: str

    @property
    def name(self) -> str:
        return self.element


ConfiguredContext = Union[TagPairContext, ElementContext]


@dataclass(frozen=True)
class ResolvedContext:
    """A context whose every referenced series resolved to a live handle."""

    name: str
    inputs: Dict[str, SeriesHandle]
    outputs: Dict[str, SeriesHandle]

    def handle(self, key: str) -> SeriesHandle:
        if key in self.inputs:
            return self.inputs[key]
        return self.outputs[key]


@dataclass(frozen=True)
class ResolvedConfiguration:
    contexts: Tuple[ResolvedContext, ...]
    timer_interval_ms: int
    offset_seconds: Optional[int] = None
    cache_time_span_seconds: int = 0
    errors: Tuple[str, ...] = field(default_factory=tuple)
