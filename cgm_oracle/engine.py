"""Historical-event matching engine.

Given an anchor glucose sample and the cached history, the engine scans every
earlier sample for episodes with a similar time of day, glucose level, trend and
(optionally) insulin/carb load, resamples a fixed window around each match and
summarizes what was done and what followed.
"""
from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

import numpy as np

from .models import (
    ActionSummary,
    BgEntry,
    DeviceStatusSnapshot,
    Insights,
    LoadPoint,
    LoadSnapshot,
    MarkerKind,
    MatchTrace,
    SeriesPoint,
    Treatment,
    TreatmentMarker,
)
from .series import (
    GlucoseSeries,
    LoadSeries,
    TreatmentSeries,
    circular_minute_diff,
    find_load_at,
    median,
    nearest_load_indices,
    minutes_of_day,
    prepare_device_status,
    prepare_glucose,
    prepare_treatments,
    round_half_up,
    slope_at,
    time_in_range,
    trend_bucket,
)
from .settings import DISCLAIMER_TEXT, MINUTE_MS, MatchingSettings
from .strategies import build_strategies

logger = logging.getLogger(__name__)


class MatchingEngine:
    """Finds historically similar episodes and summarizes their outcomes."""

    def __init__(self, settings: MatchingSettings | None = None) -> None:
        self._settings = settings or MatchingSettings()
        chart = np.arange(
            -self._settings.chart_past_minutes,
            self._settings.chart_future_minutes + 1,
            dtype=np.int64,
        )
        self._chart_minutes = chart

    @property
    def settings(self) -> MatchingSettings:
        return self._settings

    def slope_at(
        self,
        series: Sequence[BgEntry] | GlucoseSeries,
        anchor_ms: int,
        sample_count: int | None = None,
    ) -> Optional[float]:
        prepared = series if isinstance(series, GlucoseSeries) else prepare_glucose(series)
        return slope_at(prepared, anchor_ms, self._settings, sample_count)

    def compute_insights(
        self,
        anchor: BgEntry,
        recent_series: Sequence[BgEntry] | None,
        history: Sequence[BgEntry] | None,
        treatments: Sequence[Treatment] | None = None,
        device_status: Sequence[DeviceStatusSnapshot] | None = None,
        *,
        include_load: bool = True,
        slope_sample_count: int | None = None,
    ) -> Insights:
        """Run a single matching query; pure and deterministic."""

        settings = self._settings
        recent = prepare_glucose(recent_series)
        past = prepare_glucose(history)
        treatment_series = prepare_treatments(treatments)
        loads = prepare_device_status(device_status)

        now_ms = int(anchor.timestamp_ms)
        now_value = float(anchor.glucose_mg_dl)

        slope_source = recent if not recent.empty else past
        current_slope = slope_at(slope_source, now_ms, settings, slope_sample_count)
        # An unresolvable slope is matched as flat.
        matching_slope = current_slope if current_slope is not None else 0.0
        current_kind = trend_bucket(matching_slope, settings.trend_threshold)
        anchor_load = find_load_at(loads, now_ms, settings.load_max_distance_ms)

        matches: list[MatchTrace] = []
        if math.isfinite(now_value):
            matches = self._scan_history(
                now_ms,
                now_value,
                matching_slope,
                anchor_load,
                past,
                treatment_series,
                loads,
                include_load=include_load,
                slope_sample_count=slope_sample_count,
            )
        matches.sort(key=lambda trace: trace.anchor_ms, reverse=True)

        current_series = self._current_series(slope_source, now_ms, now_value)
        median_series = self._median_series(matches)
        strategies = build_strategies(matches, settings)

        logger.debug(
            f"Matched {len(matches)} of {len(past)} history points for anchor {now_ms} "
            f"(slope={current_slope}, kind={current_kind.value})"
        )

        return Insights(
            match_count=len(matches),
            matches=tuple(matches),
            current_series=tuple(current_series),
            median_series=tuple(median_series),
            strategies=tuple(strategies),
            disclaimer_text=DISCLAIMER_TEXT,
            current_slope=current_slope,
            current_kind=current_kind,
            anchor_iob=anchor_load.iob,
            anchor_cob=anchor_load.cob,
            used_load_in_matching=include_load,
        )

    def _scan_history(
        self,
        now_ms: int,
        now_value: float,
        current_slope: float,
        anchor_load: LoadSnapshot,
        past: GlucoseSeries,
        treatments: TreatmentSeries,
        loads: LoadSeries,
        *,
        include_load: bool,
        slope_sample_count: int | None,
    ) -> list[MatchTrace]:
        settings = self._settings
        if past.empty:
            return []

        current_kind = trend_bucket(current_slope, settings.trend_threshold)
        future_ms = settings.chart_future_minutes * MINUTE_MS
        last_ts = int(past.timestamps[-1])

        # Time-of-day and glucose proximity are cheap per-point predicates.
        candidates = past.timestamps < now_ms
        now_minute = int(minutes_of_day([now_ms], settings.timezone)[0])
        diff = circular_minute_diff(minutes_of_day(past.timestamps, settings.timezone), now_minute)
        candidates &= diff <= settings.time_window_minutes
        tolerance = max(settings.glucose_tolerance_fixed, now_value * settings.glucose_tolerance_percent)
        candidates &= np.abs(past.values - now_value) <= tolerance

        matches: list[MatchTrace] = []
        for idx in np.flatnonzero(candidates):
            t0 = int(past.timestamps[idx])
            value = float(past.values[idx])

            past_slope = slope_at(past, t0, settings, slope_sample_count)
            if past_slope is None:
                continue
            if trend_bucket(past_slope, settings.trend_threshold) is not current_kind:
                continue
            if abs(current_slope - past_slope) > settings.slope_tolerance:
                continue

            if last_ts < t0 + future_ms:
                continue

            match_load = find_load_at(loads, t0, settings.load_max_distance_ms)
            if include_load and not _loads_similar(anchor_load, match_load, settings):
                continue

            resampled = past.interpolate_many(
                t0 + self._chart_minutes * MINUTE_MS,
                settings.max_gap_ms,
            )
            resolved = ~np.isnan(resampled)
            future_points = int((resolved & (self._chart_minutes > 0)).sum())
            if future_points < settings.min_future_points:
                continue

            matches.append(
                self._build_trace(
                    t0,
                    value,
                    past_slope,
                    self._chart_minutes[resolved],
                    resampled[resolved],
                    match_load,
                    treatments,
                    loads,
                )
            )
        return matches

    def _build_trace(
        self,
        t0: int,
        value: float,
        slope: float,
        minutes: np.ndarray,
        values: np.ndarray,
        load: LoadSnapshot,
        treatments: TreatmentSeries,
        loads: LoadSeries,
    ) -> MatchTrace:
        settings = self._settings
        points = tuple(SeriesPoint(m, v) for m, v in zip(minutes.tolist(), values.tolist()))
        tir = time_in_range(
            minutes,
            values,
            0,
            settings.outcome_minute,
            settings.target_low,
            settings.target_high,
        )

        window = settings.action_window_minutes
        relevant = treatments.between(t0, t0 + window * MINUTE_MS)
        insulin = 0.0
        carbs = 0.0
        bolus_count = 0
        carbs_count = 0
        markers: list[TreatmentMarker] = []
        for treatment in relevant:
            offset = round_half_up((treatment.timestamp_ms - t0) / MINUTE_MS)
            if offset < 0 or offset > window:
                continue
            if treatment.insulin_units is not None and treatment.insulin_units > 0:
                insulin += treatment.insulin_units
                bolus_count += 1
                markers.append(TreatmentMarker(offset, MarkerKind.INSULIN))
            if treatment.carbs_grams is not None and treatment.carbs_grams > 0:
                carbs += treatment.carbs_grams
                carbs_count += 1
                markers.append(TreatmentMarker(offset, MarkerKind.CARBS))

        return MatchTrace(
            anchor_ms=t0,
            anchor_glucose=value,
            slope=slope,
            points=points,
            iob=load.iob,
            cob=load.cob,
            actions=ActionSummary(
                insulin=round(insulin, 2),
                carbs=round(carbs, 2),
                bolus_count=bolus_count,
                carbs_count=carbs_count,
            ),
            tir_2h=tir,
            markers=tuple(markers),
            treatments_30m=relevant,
            load_points=self._load_points(t0, loads),
        )

    def _load_points(self, t0: int, loads: LoadSeries) -> tuple[LoadPoint, ...]:
        settings = self._settings
        if len(loads) == 0:
            return ()
        offsets = np.arange(
            -settings.chart_past_minutes,
            settings.chart_future_minutes + 1,
            settings.load_point_step_minutes,
            dtype=np.int64,
        )
        indices = nearest_load_indices(loads, t0 + offsets * MINUTE_MS, settings.load_max_distance_ms)
        points: list[LoadPoint] = []
        for minute, idx in zip(offsets.tolist(), indices.tolist()):
            if idx < 0:
                continue
            record = loads.records[idx]
            if record.iob is None and record.iob_bolus is None and record.iob_basal is None and record.cob is None:
                continue
            points.append(LoadPoint(minute, record.iob, record.iob_bolus, record.iob_basal, record.cob))
        return tuple(points)

    def _current_series(self, source: GlucoseSeries, now_ms: int, now_value: float) -> list[SeriesPoint]:
        past_minutes = self._settings.chart_past_minutes
        # Rounding can pull samples up to half a minute outside the window in.
        window = source.window(now_ms - (past_minutes + 1) * MINUTE_MS, now_ms + MINUTE_MS)
        by_minute: dict[int, float] = {}
        for ts, value in zip(window.timestamps, window.values):
            offset = round_half_up((int(ts) - now_ms) / MINUTE_MS)
            if offset < -past_minutes or offset > 0:
                continue
            by_minute[offset] = float(value)
        by_minute[0] = now_value
        return [SeriesPoint(minute, by_minute[minute]) for minute in sorted(by_minute)]

    def _median_series(self, matches: Sequence[MatchTrace]) -> list[SeriesPoint]:
        future = self._settings.chart_future_minutes
        if not matches:
            return []
        grid = np.full((len(matches), future + 1), np.nan)
        for row, trace in enumerate(matches):
            if not trace.points:
                continue
            arr = np.asarray(trace.points, dtype=np.float64)
            minutes = arr[:, 0].astype(np.int64)
            keep = (minutes >= 0) & (minutes <= future)
            grid[row, minutes[keep]] = arr[keep, 1]

        series: list[SeriesPoint] = []
        for minute in range(future + 1):
            column = grid[:, minute]
            column = column[~np.isnan(column)]
            if column.size == 0:
                continue
            series.append(SeriesPoint(minute, median(column.tolist())))
        return series


def _loads_similar(anchor: LoadSnapshot, match: LoadSnapshot, settings: MatchingSettings) -> bool:
    """Missing values on either side skip that sub-check."""

    if anchor.iob is not None and match.iob is not None:
        if abs(anchor.iob - match.iob) > settings.iob_tolerance_units:
            return False
    if anchor.cob is not None and match.cob is not None:
        if abs(anchor.cob - match.cob) > settings.cob_tolerance_grams:
            return False
    return True


def compute_insights(
    anchor: BgEntry,
    recent_series: Sequence[BgEntry] | None,
    history: Sequence[BgEntry] | None,
    treatments: Sequence[Treatment] | None = None,
    device_status: Sequence[DeviceStatusSnapshot] | None = None,
    *,
    include_load: bool = True,
    slope_sample_count: int | None = None,
    settings: MatchingSettings | None = None,
) -> Insights:
    """Functional entry point around :class:`MatchingEngine`."""

    return MatchingEngine(settings).compute_insights(
        anchor,
        recent_series,
        history,
        treatments,
        device_status,
        include_load=include_load,
        slope_sample_count=slope_sample_count,
    )


__all__ = ["MatchingEngine", "compute_insights"]
