"""Context resolution: map configured names onto live series handles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple, Union

from timercalc.context.model import (
    ELEMENT_INPUTS,
    ELEMENT_OUTPUTS,
    ConfiguredContext,
    ElementContext,
    ResolvedContext,
    TagPairContext,
    attribute_series_name,
)
from timercalc.store.model import SeriesHandle
from timercalc.store.store import Store
from timercalc.util.logging import get_logger

logger = get_logger(__name__)

OUTPUT_POINT_TYPE = "float64"


@dataclass(frozen=True)
class Found:
    handle: SeriesHandle


@dataclass(frozen=True)
class Created:
    handle: SeriesHandle


@dataclass(frozen=True)
class Failed:
    reason: str


Resolution = Union[Found, Created, Failed]


@dataclass
class ResolutionResult:
    resolved: List[ResolvedContext]
    errors: List[str]


def find_series(store: Store, name: str) -> Resolution:
    handle = store.find_series(name)
    if handle is None:
        return Failed(f"series '{name}' not found")
    return Found(handle)


def find_or_create(
    store: Store,
    name: str,
    *,
    point_type: str = OUTPUT_POINT_TYPE,
    compressing: bool = False,
) -> Resolution:
    """Return the named series, creating it with explicit storage attributes if absent.

    A newly created series whose attributes fail to save is reported as Failed.
    """

    handle = store.find_series(name)
    if handle is not None:
        return Found(handle)
    try:
        handle = store.create_series(name)
    except (ValueError, RuntimeError) as exc:
        return Failed(f"could not create series '{name}': {exc}")
    errors = store.save_attributes(handle, point_type=point_type, compressing=compressing)
    if errors:
        details = "; ".join(f"{key}: {value}" for key, value in sorted(errors.items()))
        return Failed(f"error saving configuration of new series '{name}': {details}")
    logger.info("Created output series %s (%s, compressing=%s)", name, point_type, compressing)
    return Created(handle)


def _resolve_all(
    store: Store,
    inputs: Dict[str, str],
    outputs: Dict[str, str],
) -> Union[Tuple[Dict[str, SeriesHandle], Dict[str, SeriesHandle]], Failed]:
    resolved_inputs: Dict[str, SeriesHandle] = {}
    resolved_outputs: Dict[str, SeriesHandle] = {}
    for key, series_name in inputs.items():
        result = find_series(store, series_name)
        if isinstance(result, Failed):
            return result
        resolved_inputs[key] = result.handle
    for key, series_name in outputs.items():
        result = find_or_create(store, series_name)
        if isinstance(result, Failed):
            return result
        resolved_outputs[key] = result.handle
    return resolved_inputs, resolved_outputs


def _series_names(context: ConfiguredContext) -> Tuple[Dict[str, str], Dict[str, str]]:
    if isinstance(context, TagPairContext):
        return {"input": context.input_tag}, {"output": context.output_tag}
    if isinstance(context, ElementContext):
        return (
            {attr: attribute_series_name(context.element, attr) for attr in ELEMENT_INPUTS},
            {attr: attribute_series_name(context.element, attr) for attr in ELEMENT_OUTPUTS},
        )
    raise TypeError(f"Unsupported context type {type(context).__name__}")


def resolve_contexts(store: Store, configured: Iterable[ConfiguredContext]) -> ResolutionResult:
    """Resolve every configured context; a context with any failing series is excluded."""

    result = ResolutionResult(resolved=[], errors=[])
    for context in configured:
        inputs, outputs = _series_names(context)
        outcome = _resolve_all(store, inputs, outputs)
        if isinstance(outcome, Failed):
            message = f"Context {context.name} will be skipped due to error: {outcome.reason}"
            logger.warning(message, extra={"context": context.name})
            result.errors.append(message)
            continue
        resolved_inputs, resolved_outputs = outcome
        result.resolved.append(ResolvedContext(name=context.name, inputs=resolved_inputs, outputs=resolved_outputs))
    return result
