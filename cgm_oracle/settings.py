"""Tunable constants for history matching and the local history cache."""
from __future__ import annotations

import math
from dataclasses import dataclass, fields, replace
from typing import Any, Final, Mapping

MINUTE_MS: Final[int] = 60 * 1000
HOUR_MS: Final[int] = 60 * MINUTE_MS
DAY_MS: Final[int] = 24 * HOUR_MS
MINUTES_PER_DAY: Final[int] = 24 * 60

RECENT_WINDOW_HOURS: Final[int] = 3

DISCLAIMER_TEXT: Final[str] = (
    "Informational only. Not medical advice. "
    "Always follow your clinician’s guidance and your therapy settings."
)


@dataclass(frozen=True)
class MatchingSettings:
    """Thresholds used by the matching engine.

    Every value can be overridden through :meth:`from_mapping`, which mirrors the
    way pattern thresholds are resolved from a plain settings mapping.
    """

    chart_past_minutes: int = 120
    chart_future_minutes: int = 240
    slope_window_minutes: int = 15
    slope_sample_count: int = 5
    slope_sample_count_min: int = 2
    slope_sample_count_max: int = 16
    max_interpolation_gap_minutes: float = 10.0

    time_window_minutes: float = 90.0
    glucose_tolerance_fixed: float = 15.0
    glucose_tolerance_percent: float = 0.1
    trend_threshold: float = 1.0
    slope_tolerance: float = 2.0

    action_window_minutes: int = 30
    iob_tolerance_units: float = 1.0
    cob_tolerance_grams: float = 20.0
    load_max_distance_minutes: float = 10.0
    load_point_step_minutes: int = 5

    min_future_points: int = 10
    target_low: float = 70.0
    target_high: float = 140.0
    ideal_target: float = 110.0
    outcome_minute: int = 120
    max_strategies: int = 3

    timezone: str = "UTC"

    def __post_init__(self) -> None:
        if self.chart_past_minutes < 0 or self.chart_future_minutes <= 0:
            raise ValueError("chart window must cover a non-negative past and a positive future")
        if self.slope_window_minutes <= 0:
            raise ValueError("slope_window_minutes must be positive")
        if not 2 <= self.slope_sample_count_min <= self.slope_sample_count_max:
            raise ValueError("slope sample bounds must satisfy 2 <= min <= max")
        if self.max_interpolation_gap_minutes <= 0:
            raise ValueError("max_interpolation_gap_minutes must be positive")
        if self.target_low > self.target_high:
            raise ValueError("target_low must not exceed target_high")
        if self.max_strategies < 1:
            raise ValueError("max_strategies must be at least 1")
        if self.load_point_step_minutes <= 0:
            raise ValueError("load_point_step_minutes must be positive")

    @classmethod
    def from_mapping(cls, overrides: Mapping[str, Any] | None = None) -> "MatchingSettings":
        """Build settings from a mapping, ignoring keys that are not settings."""

        if not overrides:
            return cls()
        known = {f.name: f for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in overrides.items():
            field_def = known.get(key)
            if field_def is None or value is None:
                continue
            default = field_def.default
            values[key] = type(default)(value)
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "MatchingSettings":
        return replace(self, **overrides)

    def clamp_sample_count(self, sample_count: int | None) -> int:
        count = self.slope_sample_count if sample_count is None else int(sample_count)
        return max(self.slope_sample_count_min, min(self.slope_sample_count_max, count))

    @property
    def max_gap_ms(self) -> float:
        return self.max_interpolation_gap_minutes * MINUTE_MS

    @property
    def load_max_distance_ms(self) -> float:
        return self.load_max_distance_minutes * MINUTE_MS


@dataclass(frozen=True)
class CacheSettings:
    """Retention, chunking and storage layout of the local history cache."""

    retention_days: float = 90.0
    chunk_days: int = 14
    overlap_minutes: int = 5
    schema_version: int = 2
    entries_key: str = "oracle.entries.v2"
    treatments_key: str = "oracle.treatments.v1"
    device_status_key: str = "oracle.deviceStatus.v1"
    meta_key: str = "oracle.meta.v2"

    def retention_ms(self, days: float | None = None) -> int:
        """Retention window in milliseconds; ``days`` may be fractional."""

        value = self.retention_days if days is None else float(days)
        if not math.isfinite(value) or value <= 0:
            raise ValueError(f"retention_days must be a positive number, got {days!r}")
        return int(value * DAY_MS)

    @property
    def chunk_ms(self) -> int:
        return max(1, self.chunk_days) * DAY_MS

    @property
    def overlap_ms(self) -> int:
        return self.overlap_minutes * MINUTE_MS


__all__ = [
    "CacheSettings",
    "DAY_MS",
    "DISCLAIMER_TEXT",
    "HOUR_MS",
    "MINUTES_PER_DAY",
    "MINUTE_MS",
    "MatchingSettings",
    "RECENT_WINDOW_HOURS",
]
