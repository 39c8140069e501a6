"""Pick candidate anchors ("events") from the recent glucose window."""
from __future__ import annotations

from typing import Optional, Sequence

from .models import BgEntry, DeviceStatusSnapshot, InvestigateEvent
from .series import GlucoseSeries, find_load_at, prepare_device_status, prepare_glucose, slope_at, trend_bucket
from .settings import HOUR_MS, MINUTE_MS, RECENT_WINDOW_HOURS, MatchingSettings

RECENT_EVENTS_MAX = 10
RECENT_EVENTS_MIN_SPACING_MINUTES = 20

BEST_EFFORT_LOOKBACK_MINUTES = 30
BEST_EFFORT_MIN_GAP_MINUTES = 5


def recent_window(history: Sequence[BgEntry], anchor_ms: int, hours: int = RECENT_WINDOW_HOURS) -> list[BgEntry]:
    """Slice ``[anchor - hours, anchor]`` out of cached history."""

    start_ms = anchor_ms - hours * HOUR_MS
    return [entry for entry in history if start_ms <= entry.timestamp_ms <= anchor_ms]


def best_effort_slope(series: GlucoseSeries, index: int) -> Optional[float]:
    """Two-point slope to the nearest earlier sample 5..30 minutes back."""

    current_ts = int(series.timestamps[index])
    earliest = current_ts - BEST_EFFORT_LOOKBACK_MINUTES * MINUTE_MS
    for j in range(index - 1, -1, -1):
        prev_ts = int(series.timestamps[j])
        if prev_ts < earliest:
            break
        minutes = (current_ts - prev_ts) / MINUTE_MS
        if minutes < BEST_EFFORT_MIN_GAP_MINUTES:
            continue
        return float(series.values[index] - series.values[j]) / minutes
    return None


def build_recent_events(
    recent: Sequence[BgEntry],
    device_status: Sequence[DeviceStatusSnapshot] | None = None,
    *,
    max_events: int = RECENT_EVENTS_MAX,
    min_spacing_minutes: float = RECENT_EVENTS_MIN_SPACING_MINUTES,
    slope_sample_count: int | None = None,
    settings: MatchingSettings | None = None,
) -> list[InvestigateEvent]:
    """Return spaced-out anchors, newest first, each with slope, trend and load.

    Anchors whose least-squares slope cannot be resolved are skipped. When no
    anchor resolves at all (sparse or gappy data) a short two-point slope is
    used instead so the picker does not come back empty.
    """

    settings = settings or MatchingSettings()
    series = prepare_glucose(recent)
    if series.empty:
        return []
    loads = prepare_device_status(device_status)

    events = _collect(
        series,
        loads,
        lambda i: slope_at(series, int(series.timestamps[i]), settings, slope_sample_count),
        max_events,
        min_spacing_minutes,
        settings,
    )
    if events:
        return events
    return _collect(
        series,
        loads,
        lambda i: best_effort_slope(series, i),
        max_events,
        min_spacing_minutes,
        settings,
    )


def _collect(series, loads, slope_fn, max_events, min_spacing_minutes, settings) -> list[InvestigateEvent]:
    spacing_ms = min_spacing_minutes * MINUTE_MS
    events: list[InvestigateEvent] = []
    for i in range(len(series) - 1, -1, -1):
        ts = int(series.timestamps[i])
        slope = slope_fn(i)
        if slope is None:
            continue
        if events and abs(events[-1].timestamp_ms - ts) < spacing_ms:
            continue
        load = find_load_at(loads, ts, settings.load_max_distance_ms)
        events.append(
            InvestigateEvent(
                timestamp_ms=ts,
                glucose_mg_dl=float(series.values[i]),
                slope=slope,
                kind=trend_bucket(slope, settings.trend_threshold),
                iob=load.iob,
                cob=load.cob,
            )
        )
        if len(events) >= max_events:
            break
    return events


def select_event(events: Sequence[InvestigateEvent], timestamp_ms: int | None = None) -> Optional[InvestigateEvent]:
    """Event at ``timestamp_ms`` if present, else the newest one."""

    if not events:
        return None
    if timestamp_ms is not None:
        for event in events:
            if event.timestamp_ms == timestamp_ms:
                return event
    return events[0]


__all__ = [
    "best_effort_slope",
    "build_recent_events",
    "recent_window",
    "select_event",
]
