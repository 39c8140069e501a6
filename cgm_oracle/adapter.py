"""Turn match traces into absolute-time payloads for detail views."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import pandas as pd

from .models import MatchTrace, SeriesPoint, Treatment, TrendKind
from .series import round_half_up
from .settings import MINUTE_MS, MatchingSettings


@dataclass(frozen=True)
class CarbItem:
    id: str
    carbs: float
    timestamp_ms: int
    name: str = "Carbs"


@dataclass(frozen=True)
class InsulinItem:
    amount: float
    timestamp: str
    type: str = "bolus"


@dataclass(frozen=True)
class MatchDetailsPayload:
    match_anchor_ms: int
    glucose_samples: pd.DataFrame
    carb_items: Sequence[CarbItem] = field(default_factory=tuple)
    insulin_items: Sequence[InsulinItem] = field(default_factory=tuple)
    window_start_ms: int = 0
    window_end_ms: int = 0


def series_to_frame(anchor_ms: int, points: Sequence[SeriesPoint]) -> pd.DataFrame:
    """Absolute-time readings frame (``timestamp``, ``glucose_mg_dL``) for a trace."""

    rows = []
    for point in points:
        ts = anchor_ms + point.minute_offset * MINUTE_MS
        if not math.isfinite(point.glucose_mg_dl):
            continue
        rows.append({"timestamp_ms": ts, "glucose_mg_dL": round_half_up(point.glucose_mg_dl)})
    frame = pd.DataFrame(rows, columns=["timestamp_ms", "glucose_mg_dL"])
    frame["timestamp"] = pd.to_datetime(frame["timestamp_ms"].astype("int64"), unit="ms", utc=True)
    return frame


def _stable_id(prefix: str, treatment: Treatment) -> str:
    insulin = treatment.insulin_units or 0
    carbs = treatment.carbs_grams or 0
    kind = "insulin" if insulin > 0 else "carbs" if carbs > 0 else "other"
    return f"{prefix}-{kind}-{treatment.timestamp_ms}-{insulin}-{carbs}"


def _positive(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def treatments_to_items(
    treatments: Sequence[Treatment], id_prefix: str
) -> tuple[tuple[CarbItem, ...], tuple[InsulinItem, ...]]:
    carb_items: list[CarbItem] = []
    insulin_items: list[InsulinItem] = []
    for treatment in treatments:
        if _positive(treatment.carbs_grams):
            carb_items.append(
                CarbItem(
                    id=_stable_id(id_prefix, treatment),
                    carbs=float(treatment.carbs_grams),
                    timestamp_ms=treatment.timestamp_ms,
                )
            )
        if _positive(treatment.insulin_units):
            stamp = pd.Timestamp(treatment.timestamp_ms, unit="ms", tz="UTC")
            insulin_items.append(
                InsulinItem(
                    amount=float(treatment.insulin_units),
                    timestamp=stamp.isoformat().replace("+00:00", "Z"),
                )
            )
    return tuple(carb_items), tuple(insulin_items)


def match_details_payload(match: MatchTrace, settings: MatchingSettings | None = None) -> MatchDetailsPayload:
    settings = settings or MatchingSettings()
    carb_items, insulin_items = treatments_to_items(match.treatments_30m, str(match.anchor_ms))
    return MatchDetailsPayload(
        match_anchor_ms=match.anchor_ms,
        glucose_samples=series_to_frame(match.anchor_ms, match.points),
        carb_items=carb_items,
        insulin_items=insulin_items,
        window_start_ms=match.anchor_ms - settings.chart_past_minutes * MINUTE_MS,
        window_end_ms=match.anchor_ms + settings.chart_future_minutes * MINUTE_MS,
    )


def summarize_match(points: Sequence[SeriesPoint]) -> dict[str, Optional[float]]:
    """Lowest value over the first two hours and highest over four."""

    in_2h = [p.glucose_mg_dl for p in points if 0 <= p.minute_offset <= 120]
    in_4h = [p.glucose_mg_dl for p in points if 0 <= p.minute_offset <= 240]
    return {
        "min2h": min(in_2h) if in_2h else None,
        "max4h": max(in_4h) if in_4h else None,
    }


def format_percent(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return "—"
    return f"{round_half_up(value * 100)}%"


def format_kind(kind: TrendKind | str) -> str:
    raw = kind.value if isinstance(kind, TrendKind) else kind
    return raw.capitalize() if raw in {k.value for k in TrendKind} else raw


__all__ = [
    "CarbItem",
    "InsulinItem",
    "MatchDetailsPayload",
    "format_kind",
    "format_percent",
    "match_details_payload",
    "series_to_frame",
    "summarize_match",
    "treatments_to_items",
]
