"""Shared time-series helpers: sanitizing, interpolation, slopes and load lookup."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from .models import BgEntry, DeviceStatusSnapshot, LoadSnapshot, Treatment, TrendKind
from .settings import MINUTE_MS, MINUTES_PER_DAY, MatchingSettings

_EMPTY_INT = np.empty(0, dtype=np.int64)
_EMPTY_FLOAT = np.empty(0, dtype=np.float64)


@dataclass(frozen=True)
class GlucoseSeries:
    """Sorted, deduplicated glucose samples as parallel arrays."""

    timestamps: np.ndarray
    values: np.ndarray

    def __len__(self) -> int:
        return int(self.timestamps.size)

    @property
    def empty(self) -> bool:
        return self.timestamps.size == 0

    def interpolate_many(self, times: Sequence[float] | np.ndarray, max_gap_ms: float) -> np.ndarray:
        """Resolve values at ``times``; unresolved positions are NaN.

        A value is linear between the two samples bracketing the time, and only
        when both lie within ``max_gap_ms`` of it. An exact timestamp hit returns
        that sample. At either end of the series the single neighbour is held
        when it lies within the gap.
        """

        query = np.asarray(times, dtype=np.float64)
        out = np.full(query.shape, np.nan)
        n = self.timestamps.size
        if n == 0 or query.size == 0:
            return out

        stamps = self.timestamps.astype(np.float64)
        idx = np.searchsorted(stamps, query, side="left")
        has_prev = idx > 0
        has_next = idx < n
        prev_idx = np.clip(idx - 1, 0, n - 1)
        next_idx = np.clip(idx, 0, n - 1)
        prev_ts = stamps[prev_idx]
        next_ts = stamps[next_idx]

        exact = has_next & (next_ts == query)
        prev_ok = has_prev & (query - prev_ts <= max_gap_ms)
        next_ok = has_next & (next_ts - query <= max_gap_ms)

        span = next_ts - prev_ts
        safe_span = np.where(span > 0, span, 1.0)
        fraction = (query - prev_ts) / safe_span
        prev_val = self.values[prev_idx]
        next_val = self.values[next_idx]
        interpolated = prev_val + fraction * (next_val - prev_val)

        bracketed = prev_ok & next_ok & (span > 0) & ~exact
        out[bracketed] = interpolated[bracketed]
        tail = prev_ok & ~has_next
        out[tail] = prev_val[tail]
        head = next_ok & ~has_prev & ~exact
        out[head] = next_val[head]
        # An exact hit resolves even when the previous sample is beyond the max gap.
        out[exact] = next_val[exact]
        return out

    def interpolate_at(self, ts: float, max_gap_ms: float) -> Optional[float]:
        value = float(self.interpolate_many([ts], max_gap_ms)[0])
        return None if math.isnan(value) else value

    def window(self, start_ms: float, end_ms: float) -> "GlucoseSeries":
        """Return the samples with ``start_ms <= ts <= end_ms``."""

        lo = int(np.searchsorted(self.timestamps, start_ms, side="left"))
        hi = int(np.searchsorted(self.timestamps, end_ms, side="right"))
        return GlucoseSeries(self.timestamps[lo:hi], self.values[lo:hi])


@dataclass(frozen=True)
class TreatmentSeries:
    timestamps: np.ndarray
    records: tuple[Treatment, ...]

    def between(self, start_ms: int, end_ms: int) -> tuple[Treatment, ...]:
        lo = int(np.searchsorted(self.timestamps, start_ms, side="left"))
        hi = int(np.searchsorted(self.timestamps, end_ms, side="right"))
        return self.records[lo:hi]


@dataclass(frozen=True)
class LoadSeries:
    timestamps: np.ndarray
    records: tuple[DeviceStatusSnapshot, ...]

    def __len__(self) -> int:
        return int(self.timestamps.size)


def _is_sorted(stamps: np.ndarray) -> bool:
    return stamps.size < 2 or bool(np.all(stamps[1:] >= stamps[:-1]))


def prepare_glucose(entries: Iterable[BgEntry] | None) -> GlucoseSeries:
    """Drop non-finite readings, sort by time when needed and dedupe (last wins)."""

    items = list(entries or ())
    if not items:
        return GlucoseSeries(_EMPTY_INT, _EMPTY_FLOAT)

    frame = pd.DataFrame(
        {
            "timestamp": pd.to_numeric([getattr(e, "timestamp_ms", None) for e in items], errors="coerce"),
            "glucose_mg_dL": pd.to_numeric([getattr(e, "glucose_mg_dl", None) for e in items], errors="coerce"),
        },
        dtype="float64",
    )
    finite = np.isfinite(frame["timestamp"].to_numpy()) & np.isfinite(frame["glucose_mg_dL"].to_numpy())
    frame = frame.loc[finite].copy()
    if frame.empty:
        return GlucoseSeries(_EMPTY_INT, _EMPTY_FLOAT)

    frame["timestamp"] = frame["timestamp"].astype(np.int64)
    if not frame["timestamp"].is_monotonic_increasing:
        frame = frame.sort_values("timestamp", kind="mergesort")
    frame = frame.drop_duplicates(subset="timestamp", keep="last")
    return GlucoseSeries(
        frame["timestamp"].to_numpy(dtype=np.int64),
        frame["glucose_mg_dL"].to_numpy(dtype=np.float64),
    )


def _prepare_records(records: Iterable, valid) -> tuple[np.ndarray, tuple]:
    kept = [record for record in (records or ()) if valid(record)]
    stamps = np.fromiter((record.timestamp_ms for record in kept), dtype=np.int64, count=len(kept))
    if not _is_sorted(stamps):
        order = np.argsort(stamps, kind="mergesort")
        stamps = stamps[order]
        kept = [kept[i] for i in order]
    return stamps, tuple(kept)


def _finite_or_absent(value: object) -> bool:
    return value is None or (isinstance(value, (int, float)) and math.isfinite(value))


def _valid_timestamp(record: object) -> bool:
    ts = getattr(record, "timestamp_ms", None)
    return isinstance(ts, (int, float)) and not isinstance(ts, bool) and math.isfinite(ts)


def prepare_treatments(treatments: Iterable[Treatment] | None) -> TreatmentSeries:
    def valid(record: Treatment) -> bool:
        return (
            _valid_timestamp(record)
            and _finite_or_absent(record.insulin_units)
            and _finite_or_absent(record.carbs_grams)
        )

    stamps, records = _prepare_records(treatments, valid)
    return TreatmentSeries(stamps, records)


def prepare_device_status(snapshots: Iterable[DeviceStatusSnapshot] | None) -> LoadSeries:
    def valid(record: DeviceStatusSnapshot) -> bool:
        return _valid_timestamp(record) and all(
            _finite_or_absent(value) for value in (record.iob, record.iob_bolus, record.iob_basal, record.cob)
        )

    stamps, records = _prepare_records(snapshots, valid)
    return LoadSeries(stamps, records)


def slope_at(
    series: GlucoseSeries,
    anchor_ms: float,
    settings: MatchingSettings,
    sample_count: int | None = None,
) -> Optional[float]:
    """Least-squares slope (mg/dL per minute) over the window ending at the anchor.

    ``sample_count`` evenly spaced times across the slope window (both ends
    included) are interpolated; fewer than two resolved samples or a degenerate
    time spread yields ``None``.
    """

    count = settings.clamp_sample_count(sample_count)
    window_min = float(settings.slope_window_minutes)
    offsets = np.linspace(-window_min, 0.0, count)
    values = series.interpolate_many(anchor_ms + offsets * MINUTE_MS, settings.max_gap_ms)
    resolved = ~np.isnan(values)
    if int(resolved.sum()) < 2:
        return None

    x = offsets[resolved]
    y = values[resolved]
    dx = x - x.mean()
    variance = float(np.mean(dx * dx))
    if variance < 1e-9:
        return None
    covariance = float(np.mean(dx * (y - y.mean())))
    return covariance / variance


def trend_bucket(slope: float, threshold: float = 1.0) -> TrendKind:
    """Bucket a slope; values on the threshold count as stable."""

    if slope > threshold:
        return TrendKind.RISING
    if slope < -threshold:
        return TrendKind.FALLING
    return TrendKind.STABLE


def circular_minute_diff(a, b):
    """Minute-of-day distance wrapping at midnight; works on scalars and arrays."""

    diff = np.abs(np.asarray(a) - np.asarray(b))
    result = np.minimum(diff, MINUTES_PER_DAY - diff)
    return result.item() if result.ndim == 0 else result


def minutes_of_day(timestamps_ms: np.ndarray | Sequence[int], timezone: str = "UTC") -> np.ndarray:
    """Local minute-of-day (0..1439) for each epoch-millisecond timestamp."""

    stamps = np.asarray(timestamps_ms, dtype=np.int64)
    if stamps.size == 0:
        return np.empty(0, dtype=np.int64)
    local = pd.to_datetime(stamps, unit="ms", utc=True).tz_convert(timezone)
    return (local.hour * 60 + local.minute).to_numpy(dtype=np.int64)


def median(values: Sequence[float]) -> float:
    ordered = sorted(values)
    if not ordered:
        raise ValueError("median of empty sequence")
    mid = len(ordered) // 2
    if len(ordered) % 2 == 1:
        return float(ordered[mid])
    return (ordered[mid - 1] + ordered[mid]) / 2.0


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def nearest_load_indices(loads: LoadSeries, times: Sequence[float] | np.ndarray, max_distance_ms: float) -> np.ndarray:
    """Index of the nearest snapshot for each time, or -1 when none is close enough.

    Equidistant neighbours resolve to the earlier snapshot.
    """

    query = np.asarray(times, dtype=np.float64)
    out = np.full(query.shape, -1, dtype=np.int64)
    n = len(loads)
    if n == 0 or query.size == 0:
        return out

    stamps = loads.timestamps.astype(np.float64)
    idx = np.searchsorted(stamps, query, side="left")
    prev_idx = np.clip(idx - 1, 0, n - 1)
    next_idx = np.clip(idx, 0, n - 1)
    prev_dist = np.where(idx > 0, np.abs(query - stamps[prev_idx]), np.inf)
    next_dist = np.where(idx < n, np.abs(stamps[next_idx] - query), np.inf)
    use_prev = prev_dist <= next_dist
    best = np.where(use_prev, prev_idx, next_idx)
    close = np.where(use_prev, prev_dist, next_dist) <= max_distance_ms
    out[close] = best[close]
    return out


def find_load_at(loads: LoadSeries, ts: float, max_distance_ms: float) -> LoadSnapshot:
    """Nearest device-status snapshot within ``max_distance_ms``; no interpolation."""

    idx = int(nearest_load_indices(loads, [ts], max_distance_ms)[0])
    if idx < 0:
        return LoadSnapshot()
    best = loads.records[idx]
    return LoadSnapshot(
        iob=best.iob,
        cob=best.cob,
        iob_bolus=best.iob_bolus,
        iob_basal=best.iob_basal,
    )


def time_in_range(
    minutes: Sequence[int],
    values: Sequence[float],
    start_minute: int,
    end_minute: int,
    low: float,
    high: float,
) -> Optional[float]:
    """Fraction of points in ``[start_minute, end_minute]`` with ``low <= v <= high``."""

    minute_arr = np.asarray(minutes)
    value_arr = np.asarray(values, dtype=np.float64)
    mask = (minute_arr >= start_minute) & (minute_arr <= end_minute)
    window = value_arr[mask]
    if window.size == 0:
        return None
    in_range = (window >= low) & (window <= high)
    return float(in_range.sum()) / float(window.size)
