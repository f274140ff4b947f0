"""Application settings document (JSON) and its validation."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from timercalc.calc.calculations import CALCULATIONS, DEFAULT_NUM_VALUES
from timercalc.calc.trimmed_mean import DEFAULT_NUM_STD_DEVS
from timercalc.context.model import ConfiguredContext, ElementContext, TagPairContext

DEFAULT_SETTINGS_PATH = "appsettings.json"
DEFAULT_STORE_PATH = "timercalc.db"


class SettingsError(ValueError):
    """The settings document is missing, malformed, or out of range."""


@dataclass(frozen=True)
class AppSettings:
    timer_interval_ms: int
    server: str = ""
    database: str = ""
    calculation: str = "trimmed_mean"
    calculation_contexts: Tuple[TagPairContext, ...] = field(default_factory=tuple)
    contexts: Tuple[str, ...] = field(default_factory=tuple)
    inputs: Tuple[str, ...] = field(default_factory=tuple)
    define_offset_seconds: bool = False
    offset_seconds: int = 0
    cache_time_span_seconds: int = 0
    num_values: int = DEFAULT_NUM_VALUES
    num_std_devs: float = DEFAULT_NUM_STD_DEVS

    @property
    def store_path(self) -> str:
        return self.server.strip() or DEFAULT_STORE_PATH

    @property
    def database_name(self) -> str:
        return self.database.strip() or "default"

    @property
    def offset(self) -> Optional[int]:
        return self.offset_seconds if self.define_offset_seconds else None

    def configured_contexts(self) -> List[ConfiguredContext]:
        if self.calculation == "ideal_gas":
            return [ElementContext(element=name) for name in self.contexts]
        return list(self.calculation_contexts)

    def build_calculation(self):
        return CALCULATIONS[self.calculation](num_values=self.num_values, num_std_devs=self.num_std_devs)

    def with_overrides(self, **changes: Any) -> "AppSettings":
        cleaned = {k: v for k, v in changes.items() if v is not None}
        return _validate(replace(self, **cleaned)) if cleaned else self


def _require(raw: Dict[str, Any], key: str, kind, default: Any) -> Any:
    value = raw.get(key, default)
    if kind is float and isinstance(value, int) and not isinstance(value, bool):
        value = float(value)
    if kind is int and isinstance(value, bool):
        raise SettingsError(f"'{key}' must be an integer")
    if not isinstance(value, kind):
        raise SettingsError(f"'{key}' must be of type {kind.__name__}, got {type(value).__name__}")
    return value


def _string_list(raw: Dict[str, Any], key: str) -> Tuple[str, ...]:
    value = raw.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) and item.strip() for item in value):
        raise SettingsError(f"'{key}' must be a list of non-empty strings")
    return tuple(item.strip() for item in value)


def _tag_pairs(raw: Dict[str, Any]) -> Tuple[TagPairContext, ...]:
    value = raw.get("calculation_contexts", [])
    if not isinstance(value, list):
        raise SettingsError("'calculation_contexts' must be a list")
    pairs = []
    for idx, item in enumerate(value):
        if not isinstance(item, dict):
            raise SettingsError(f"calculation_contexts[{idx}] must be an object")
        input_tag = item.get("input_tag")
        output_tag = item.get("output_tag")
        if not isinstance(input_tag, str) or not input_tag.strip():
            raise SettingsError(f"calculation_contexts[{idx}].input_tag is required")
        if not isinstance(output_tag, str) or not output_tag.strip():
            raise SettingsError(f"calculation_contexts[{idx}].output_tag is required")
        pairs.append(TagPairContext(input_tag=input_tag.strip(), output_tag=output_tag.strip()))
    return tuple(pairs)


def _validate(settings: AppSettings) -> AppSettings:
    if settings.calculation not in CALCULATIONS:
        raise SettingsError(
            f"Unknown calculation '{settings.calculation}' (expected one of {', '.join(sorted(CALCULATIONS))})"
        )
    if settings.timer_interval_ms <= 0:
        raise SettingsError("'timer_interval_ms' must be positive")
    if not 0 <= settings.offset_seconds <= 59:
        raise SettingsError("'offset_seconds' must be between 0 and 59")
    if settings.cache_time_span_seconds < 0:
        raise SettingsError("'cache_time_span_seconds' must not be negative")
    if settings.num_values <= 0:
        raise SettingsError("'num_values' must be positive")
    if settings.num_std_devs <= 0:
        raise SettingsError("'num_std_devs' must be positive")
    if settings.calculation == "ideal_gas" and not settings.contexts:
        raise SettingsError("'contexts' must list at least one element for the ideal_gas calculation")
    if settings.calculation == "trimmed_mean" and not settings.calculation_contexts:
        raise SettingsError("'calculation_contexts' must list at least one input/output pair")
    return settings


def parse_settings(raw: Any) -> AppSettings:
    """Build validated settings from a decoded JSON document."""

    if not isinstance(raw, dict):
        raise SettingsError("Settings document must be a JSON object")
    if "timer_interval_ms" not in raw:
        raise SettingsError("'timer_interval_ms' is required")
    calculation = raw.get("calculation")
    if calculation is None:
        calculation = "ideal_gas" if raw.get("contexts") and not raw.get("calculation_contexts") else "trimmed_mean"
    settings = AppSettings(
        timer_interval_ms=_require(raw, "timer_interval_ms", int, None),
        server=_require(raw, "server", str, ""),
        database=_require(raw, "database", str, ""),
        calculation=str(calculation),
        calculation_contexts=_tag_pairs(raw),
        contexts=_string_list(raw, "contexts"),
        inputs=_string_list(raw, "inputs"),
        define_offset_seconds=_require(raw, "define_offset_seconds", bool, False),
        offset_seconds=_require(raw, "offset_seconds", int, 0),
        cache_time_span_seconds=_require(raw, "cache_time_span_seconds", int, 0),
        num_values=_require(raw, "num_values", int, DEFAULT_NUM_VALUES),
        num_std_devs=_require(raw, "num_std_devs", float, DEFAULT_NUM_STD_DEVS),
    )
    return _validate(settings)


def settings_path(path: Optional[str] = None) -> Path:
    return Path(path or os.environ.get("TIMERCALC_SETTINGS", DEFAULT_SETTINGS_PATH)).expanduser()


def load_settings(path: Optional[str] = None) -> AppSettings:
    """Read and validate the settings file; every failure surfaces as SettingsError."""

    resolved = settings_path(path)
    try:
        text = resolved.read_text(encoding="utf-8")
    except OSError as exc:
        raise SettingsError(f"Cannot read settings file {resolved}: {exc}") from exc
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SettingsError(f"Invalid JSON in {resolved}: {exc}") from exc
    return parse_settings(raw)
