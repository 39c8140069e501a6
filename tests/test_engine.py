from pathlib import Path
import sys

import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from cgm_oracle.engine import MatchingEngine, compute_insights
from cgm_oracle.models import (
    BgEntry,
    DeviceStatusSnapshot,
    MarkerKind,
    MatchTrace,
    SeriesPoint,
    Treatment,
    TrendKind,
)
from cgm_oracle.settings import DAY_MS, DISCLAIMER_TEXT, HOUR_MS, MINUTE_MS, MatchingSettings

BASE_MS = int(pd.Timestamp("2024-03-01", tz="UTC").value // 1_000_000)
ANCHOR_MS = BASE_MS + 3 * DAY_MS + 12 * HOUR_MS

# 10:30..13:30 at a 5-minute cadence falls inside the +-90 minute window of noon.
MATCHES_PER_DAY = 37


def _day(day, level, start_hour=9, end_hour=18):
    start = BASE_MS + day * DAY_MS + start_hour * HOUR_MS
    end = BASE_MS + day * DAY_MS + end_hour * HOUR_MS
    return [BgEntry(ts, float(level)) for ts in range(start, end + 1, 5 * MINUTE_MS)]


def _history(levels=(120, 120, 120), **kwargs):
    entries = []
    for day, level in enumerate(levels):
        entries.extend(_day(day, level, **kwargs))
    return entries


def _recent(level=120):
    return [BgEntry(ts, float(level)) for ts in range(ANCHOR_MS - 3 * HOUR_MS, ANCHOR_MS + 1, 5 * MINUTE_MS)]


def _statuses(day, iob=None, start_hour=9, end_hour=18, cob=None):
    start = BASE_MS + day * DAY_MS + start_hour * HOUR_MS
    end = BASE_MS + day * DAY_MS + end_hour * HOUR_MS
    return [DeviceStatusSnapshot(ts, iob=iob, cob=cob) for ts in range(start, end + 1, 5 * MINUTE_MS)]


def test_matches_similar_episodes_newest_first():
    insights = compute_insights(BgEntry(ANCHOR_MS, 120.0), _recent(), _history())

    assert insights.match_count == 3 * MATCHES_PER_DAY
    assert insights.current_kind is TrendKind.STABLE
    assert insights.current_slope == pytest.approx(0.0)
    anchors = [match.anchor_ms for match in insights.matches]
    assert anchors == sorted(anchors, reverse=True)
    assert all(ts < ANCHOR_MS for ts in anchors)
    assert insights.disclaimer_text == DISCLAIMER_TEXT


def test_match_traces_are_resampled_to_the_chart_window():
    insights = compute_insights(BgEntry(ANCHOR_MS, 120.0), _recent(), _history())

    for match in insights.matches:
        minutes = [point.minute_offset for point in match.points]
        assert minutes == sorted(minutes)
        assert min(minutes) >= -120 and max(minutes) <= 240
        assert match.tir_2h == 1.0
        assert match.actions.insulin == 0.0 and match.actions.carbs == 0.0


def test_compute_insights_is_deterministic():
    engine = MatchingEngine()
    history = _history(levels=(110, 118, 126))
    first = engine.compute_insights(BgEntry(ANCHOR_MS, 118.0), _recent(118), history)
    second = engine.compute_insights(BgEntry(ANCHOR_MS, 118.0), _recent(118), history)

    assert first.to_dict() == second.to_dict()


def test_empty_history_yields_empty_insights():
    insights = compute_insights(BgEntry(ANCHOR_MS, 120.0), [], [])

    assert insights.match_count == 0
    assert list(insights.matches) == []
    assert list(insights.strategies) == []
    assert list(insights.median_series) == []
    assert insights.current_slope is None
    assert insights.current_kind is TrendKind.STABLE
    assert list(insights.current_series) == [SeriesPoint(0, 120.0)]


def test_history_outside_time_of_day_window_never_matches():
    history = _history(start_hour=15, end_hour=22)

    insights = compute_insights(BgEntry(ANCHOR_MS, 120.0), _recent(), history)

    assert insights.match_count == 0


def test_timezone_shifts_the_time_of_day_window():
    history = _history(start_hour=15, end_hour=22)
    # 17:00 UTC is noon in New York (EST); a 12:00 UTC anchor is 07:00 there.
    anchor = BgEntry(BASE_MS + 3 * DAY_MS + 17 * HOUR_MS, 120.0)
    settings = MatchingSettings(timezone="America/New_York")

    local = compute_insights(anchor, [], history, settings=settings)
    utc = compute_insights(anchor, [], history)

    assert local.match_count == utc.match_count > 0


def test_glucose_outside_tolerance_never_matches():
    insights = compute_insights(BgEntry(ANCHOR_MS, 120.0), _recent(), _history(levels=(160, 160, 160)))

    assert insights.match_count == 0


def test_median_series_of_three_levels_is_the_middle_level():
    insights = compute_insights(BgEntry(ANCHOR_MS, 110.0), _recent(110), _history(levels=(100, 110, 120)))

    assert insights.match_count == 3 * MATCHES_PER_DAY
    assert [point.minute_offset for point in insights.median_series] == list(range(0, 241))
    assert all(point.glucose_mg_dl == 110.0 for point in insights.median_series)


def test_median_series_skips_minutes_without_data():
    engine = MatchingEngine()
    traces = [
        MatchTrace(anchor_ms=1, anchor_glucose=100.0, slope=0.0, points=(SeriesPoint(0, 100.0), SeriesPoint(5, 100.0))),
        MatchTrace(anchor_ms=2, anchor_glucose=110.0, slope=0.0, points=(SeriesPoint(0, 110.0),)),
        MatchTrace(anchor_ms=3, anchor_glucose=120.0, slope=0.0, points=(SeriesPoint(0, 120.0), SeriesPoint(5, 130.0))),
    ]

    median = engine._median_series(traces)

    assert median == [SeriesPoint(0, 110.0), SeriesPoint(5, 115.0)]


def test_load_filter_excludes_dissimilar_iob():
    history = _history()
    statuses = _statuses(0, iob=3.2) + _statuses(1, iob=5.0)
    statuses.append(DeviceStatusSnapshot(ANCHOR_MS, iob=3.0))

    with_load = compute_insights(BgEntry(ANCHOR_MS, 120.0), _recent(), history, device_status=statuses)
    without_load = compute_insights(
        BgEntry(ANCHOR_MS, 120.0), _recent(), history, device_status=statuses, include_load=False
    )

    assert with_load.anchor_iob == 3.0
    assert with_load.used_load_in_matching is True
    assert with_load.match_count == 2 * MATCHES_PER_DAY
    assert without_load.used_load_in_matching is False
    assert without_load.match_count == 3 * MATCHES_PER_DAY

    day_one = (BASE_MS + DAY_MS, BASE_MS + 2 * DAY_MS)
    assert not any(day_one[0] <= m.anchor_ms < day_one[1] for m in with_load.matches)


def test_load_points_and_match_load_are_attached():
    statuses = _statuses(0, iob=3.2)
    insights = compute_insights(
        BgEntry(ANCHOR_MS, 120.0), _recent(), _history(), device_status=statuses, include_load=False
    )

    day_zero = [m for m in insights.matches if m.anchor_ms < BASE_MS + DAY_MS]
    assert day_zero
    for match in day_zero:
        assert match.iob == 3.2
        assert match.load_points
        assert all(point.minute_offset % 5 == 0 for point in match.load_points)


def test_actions_and_markers_within_first_thirty_minutes():
    noon = BASE_MS + 12 * HOUR_MS
    treatments = [
        Treatment(noon, insulin_units=1.5),
        Treatment(noon + 10 * MINUTE_MS, carbs_grams=20.0),
        Treatment(noon + 45 * MINUTE_MS, insulin_units=4.0),
    ]

    insights = compute_insights(BgEntry(ANCHOR_MS, 120.0), _recent(), _history(), treatments)

    trace = next(m for m in insights.matches if m.anchor_ms == noon)
    assert trace.actions.insulin == 1.5
    assert trace.actions.carbs == 20.0
    assert trace.actions.bolus_count == 1
    assert trace.actions.carbs_count == 1
    assert [(marker.minute_offset, marker.kind) for marker in trace.markers] == [
        (0, MarkerKind.INSULIN),
        (10, MarkerKind.CARBS),
    ]
    assert len(trace.treatments_30m) == 2

    keys = [card.key for card in insights.strategies]
    assert len(insights.strategies) <= 3
    assert "none" in keys
    assert sum(card.is_best for card in insights.strategies) == 1


def test_current_series_covers_the_past_two_hours():
    insights = compute_insights(BgEntry(ANCHOR_MS, 125.0), _recent(), _history())

    minutes = [point.minute_offset for point in insights.current_series]
    assert minutes == list(range(-120, 1, 5))
    assert insights.current_series[-1] == SeriesPoint(0, 125.0)


def test_future_must_be_covered_by_history():
    # History that ends at 13:00 cannot show four hours after any candidate.
    history = _history(end_hour=13)

    insights = compute_insights(BgEntry(ANCHOR_MS, 120.0), _recent(), history)

    last_ts = history[-1].timestamp_ms
    assert all(m.anchor_ms + 240 * MINUTE_MS <= last_ts for m in insights.matches)
    assert insights.match_count > 0


def test_rising_anchor_only_matches_rising_history():
    rising_recent = [
        BgEntry(ts, 120.0 + 2.0 * (ts - ANCHOR_MS) / MINUTE_MS)
        for ts in range(ANCHOR_MS - HOUR_MS, ANCHOR_MS + 1, 5 * MINUTE_MS)
    ]

    insights = compute_insights(BgEntry(ANCHOR_MS, 120.0), rising_recent, _history())

    assert insights.current_kind is TrendKind.RISING
    assert insights.current_slope == pytest.approx(2.0)
    assert insights.match_count == 0


def _ramp_day(day, slope):
    """Flat 120 +- 15*slope with a linear ramp through 120 between 11:45 and 12:15."""
    noon = BASE_MS + day * DAY_MS + 12 * HOUR_MS
    entries = []
    for ts in range(noon - 3 * HOUR_MS, noon + 6 * HOUR_MS + 1, 5 * MINUTE_MS):
        minutes = max(-15, min(15, (ts - noon) // MINUTE_MS))
        entries.append(BgEntry(ts, 120.0 + slope * minutes))
    return entries


def _rising_recent(rate):
    return [
        BgEntry(ts, 120.0 + rate * (ts - ANCHOR_MS) / MINUTE_MS)
        for ts in range(ANCHOR_MS - HOUR_MS, ANCHOR_MS + 1, 5 * MINUTE_MS)
    ]


def test_rising_slopes_must_be_within_tolerance():
    recent = _rising_recent(1.5)
    steep = [entry for day in range(3) for entry in _ramp_day(day, 4.0)]
    moderate = [entry for day in range(3) for entry in _ramp_day(day, 3.0)]

    too_steep = compute_insights(BgEntry(ANCHOR_MS, 120.0), recent, steep)
    close_enough = compute_insights(BgEntry(ANCHOR_MS, 120.0), recent, moderate)

    assert too_steep.current_kind is TrendKind.RISING
    assert too_steep.current_slope == pytest.approx(1.5)
    assert too_steep.match_count == 0
    # 11:55, 12:00 and 12:05 are within glucose tolerance on each day.
    assert close_enough.match_count == 9
    assert all(abs(match.slope - 1.5) <= 2.0 for match in close_enough.matches)


def _sparse_future_day(day, future_step_minutes):
    noon = BASE_MS + day * DAY_MS + 12 * HOUR_MS
    high = [BgEntry(ts, 160.0) for ts in range(noon - 3 * HOUR_MS, noon - 20 * MINUTE_MS + 1, 5 * MINUTE_MS)]
    lead_in = [BgEntry(ts, 120.0) for ts in range(noon - 15 * MINUTE_MS, noon + 1, 5 * MINUTE_MS)]
    step = future_step_minutes * MINUTE_MS
    after = [BgEntry(ts, 120.0) for ts in range(noon + step, noon + 6 * HOUR_MS + 1, step)]
    return high + lead_in + after


def test_sparse_future_is_rejected_even_when_history_reaches_far_enough():
    sparse = [entry for day in range(3) for entry in _sparse_future_day(day, 60)]
    dense = [entry for day in range(3) for entry in _sparse_future_day(day, 5)]

    rejected = compute_insights(BgEntry(ANCHOR_MS, 120.0), _recent(), sparse)
    accepted = compute_insights(BgEntry(ANCHOR_MS, 120.0), _recent(), dense)

    noons = {BASE_MS + day * DAY_MS + 12 * HOUR_MS for day in range(3)}
    assert all(noon + 240 * MINUTE_MS <= sparse[-1].timestamp_ms for noon in noons)
    assert rejected.match_count == 0
    assert noons <= {match.anchor_ms for match in accepted.matches}


def test_load_filter_uses_cob_tolerance():
    statuses = _statuses(0, cob=25.0) + _statuses(1, cob=40.0)
    statuses.append(DeviceStatusSnapshot(ANCHOR_MS, cob=10.0))

    insights = compute_insights(BgEntry(ANCHOR_MS, 120.0), _recent(), _history(), device_status=statuses)

    assert insights.anchor_cob == 10.0
    assert insights.match_count == 2 * MATCHES_PER_DAY
    day_one = (BASE_MS + DAY_MS, BASE_MS + 2 * DAY_MS)
    assert not any(day_one[0] <= m.anchor_ms < day_one[1] for m in insights.matches)


def test_load_missing_on_either_side_is_not_compared():
    statuses = [s for day in range(3) for s in _statuses(day, cob=10.0)]
    statuses.append(DeviceStatusSnapshot(ANCHOR_MS, iob=3.0))

    insights = compute_insights(BgEntry(ANCHOR_MS, 120.0), _recent(), _history(), device_status=statuses)

    assert insights.anchor_iob == 3.0
    assert insights.anchor_cob is None
    assert insights.match_count == 3 * MATCHES_PER_DAY
    assert all(match.iob is None and match.cob == 10.0 for match in insights.matches)


def test_unsorted_and_non_finite_history_is_sanitized():
    history = _history(levels=(110, 118, 126))
    messy = list(reversed(history)) + [
        BgEntry(BASE_MS + 12 * HOUR_MS + MINUTE_MS, float("nan")),
        BgEntry(BASE_MS + DAY_MS + 11 * HOUR_MS + MINUTE_MS, float("inf")),
    ]
    recent = _recent(118)

    clean = compute_insights(BgEntry(ANCHOR_MS, 118.0), recent, history)
    sanitized = compute_insights(BgEntry(ANCHOR_MS, 118.0), list(reversed(recent)), messy)

    assert sanitized.match_count == clean.match_count > 0
    assert sanitized.to_dict() == clean.to_dict()
