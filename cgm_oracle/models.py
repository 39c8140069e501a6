"""Core data models for historical-event matching."""
from __future__ import annotations

import math
from bisect import bisect_left
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, NamedTuple, Optional, Sequence


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _timestamp(value: Any) -> Optional[int]:
    number = _finite_number(value)
    return int(number) if number is not None else None


def _drop_none(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


class TrendKind(str, Enum):
    """Coarse direction bucket for a local slope."""

    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


class MarkerKind(str, Enum):
    INSULIN = "insulin"
    CARBS = "carbs"


@dataclass(frozen=True)
class BgEntry:
    """One CGM reading."""

    timestamp_ms: int
    glucose_mg_dl: float

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.timestamp_ms, "sgv": self.glucose_mg_dl}

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["BgEntry"]:
        if not isinstance(payload, Mapping):
            return None
        ts = _timestamp(payload.get("date"))
        sgv = _finite_number(payload.get("sgv"))
        if ts is None or sgv is None:
            return None
        return cls(timestamp_ms=ts, glucose_mg_dl=sgv)


@dataclass(frozen=True)
class Treatment:
    """An insulin and/or carbohydrate event."""

    timestamp_ms: int
    insulin_units: Optional[float] = None
    carbs_grams: Optional[float] = None
    event_type: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "ts": self.timestamp_ms,
                "eventType": self.event_type,
                "insulin": self.insulin_units,
                "carbs": self.carbs_grams,
            }
        )

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["Treatment"]:
        if not isinstance(payload, Mapping):
            return None
        ts = _timestamp(payload.get("ts"))
        if ts is None:
            return None
        event_type = payload.get("eventType")
        return cls(
            timestamp_ms=ts,
            insulin_units=_finite_number(payload.get("insulin")),
            carbs_grams=_finite_number(payload.get("carbs")),
            event_type=event_type if isinstance(event_type, str) else None,
        )


@dataclass(frozen=True)
class DeviceStatusSnapshot:
    """Point-in-time pump/loop load (IOB/COB)."""

    timestamp_ms: int
    iob: Optional[float] = None
    iob_bolus: Optional[float] = None
    iob_basal: Optional[float] = None
    cob: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "ts": self.timestamp_ms,
                "iob": self.iob,
                "iobBolus": self.iob_bolus,
                "iobBasal": self.iob_basal,
                "cob": self.cob,
            }
        )

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["DeviceStatusSnapshot"]:
        if not isinstance(payload, Mapping):
            return None
        ts = _timestamp(payload.get("ts"))
        if ts is None:
            return None
        return cls(
            timestamp_ms=ts,
            iob=_finite_number(payload.get("iob")),
            iob_bolus=_finite_number(payload.get("iobBolus")),
            iob_basal=_finite_number(payload.get("iobBasal")),
            cob=_finite_number(payload.get("cob")),
        )


@dataclass(frozen=True)
class CacheMeta:
    """Watermark for incremental sync."""

    version: int
    last_synced_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "lastSyncedMs": self.last_synced_ms}

    @classmethod
    def from_dict(cls, payload: Any, *, expected_version: int) -> Optional["CacheMeta"]:
        if not isinstance(payload, Mapping):
            return None
        if payload.get("version") != expected_version:
            return None
        last_synced = _timestamp(payload.get("lastSyncedMs"))
        if last_synced is None:
            return None
        return cls(version=expected_version, last_synced_ms=last_synced)


class SeriesPoint(NamedTuple):
    """Resampled glucose value relative to an anchor (minute 0)."""

    minute_offset: int
    glucose_mg_dl: float

    def to_dict(self) -> dict[str, Any]:
        return {"tMin": self.minute_offset, "sgv": self.glucose_mg_dl}


@dataclass(frozen=True)
class LoadSnapshot:
    """Best-effort IOB/COB resolved at a timestamp."""

    iob: Optional[float] = None
    cob: Optional[float] = None
    iob_bolus: Optional[float] = None
    iob_basal: Optional[float] = None


@dataclass(frozen=True)
class LoadPoint:
    minute_offset: int
    iob: Optional[float] = None
    iob_bolus: Optional[float] = None
    iob_basal: Optional[float] = None
    cob: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tMin": self.minute_offset,
            "iob": self.iob,
            "iobBolus": self.iob_bolus,
            "iobBasal": self.iob_basal,
            "cob": self.cob,
        }


@dataclass(frozen=True)
class ActionSummary:
    """Totals of treatments observed shortly after an anchor."""

    insulin: float = 0.0
    carbs: float = 0.0
    bolus_count: int = 0
    carbs_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "insulin": self.insulin,
            "carbs": self.carbs,
            "boluses": self.bolus_count,
            "carbsCount": self.carbs_count,
        }


@dataclass(frozen=True)
class TreatmentMarker:
    minute_offset: int
    kind: MarkerKind

    def to_dict(self) -> dict[str, Any]:
        return {"tMin": self.minute_offset, "kind": self.kind.value}


@dataclass(frozen=True)
class MatchTrace:
    """One historical episode similar to the investigated anchor."""

    anchor_ms: int
    anchor_glucose: float
    slope: float
    points: Sequence[SeriesPoint] = field(default_factory=tuple)
    iob: Optional[float] = None
    cob: Optional[float] = None
    actions: ActionSummary = field(default_factory=ActionSummary)
    tir_2h: Optional[float] = None
    markers: Sequence[TreatmentMarker] = field(default_factory=tuple)
    treatments_30m: Sequence[Treatment] = field(default_factory=tuple)
    load_points: Sequence[LoadPoint] = field(default_factory=tuple)

    def glucose_at(self, minute_offset: int) -> Optional[float]:
        """Value at an exact minute; ``points`` are sorted by minute."""

        idx = bisect_left(self.points, (minute_offset,))
        if idx < len(self.points) and self.points[idx].minute_offset == minute_offset:
            return self.points[idx].glucose_mg_dl
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "anchorTs": self.anchor_ms,
            "anchorSgv": self.anchor_glucose,
            "slope": self.slope,
            "points": [point.to_dict() for point in self.points],
            "iob": self.iob,
            "cob": self.cob,
            "actions30m": self.actions.to_dict(),
            "tir2h": self.tir_2h,
            "actionMarkers": [marker.to_dict() for marker in self.markers],
            "treatments30m": [treatment.to_dict() for treatment in self.treatments_30m],
            "loadPoints": [point.to_dict() for point in self.load_points],
        }


@dataclass(frozen=True)
class StrategyCard:
    """Cluster of matches that share a categorized 30-minute action profile."""

    key: str
    title: str
    action_summary: str
    count: int
    avg_glucose_2h: Optional[float]
    success_rate: Optional[float]
    is_best: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "title": self.title,
            "actionSummary": self.action_summary,
            "count": self.count,
            "avgBg2h": self.avg_glucose_2h,
            "successRate": self.success_rate,
            "isBest": self.is_best,
        }


@dataclass(frozen=True)
class InvestigateEvent:
    """Candidate anchor picked from the recent window."""

    timestamp_ms: int
    glucose_mg_dl: float
    slope: float
    kind: TrendKind
    iob: Optional[float] = None
    cob: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.timestamp_ms,
            "sgv": self.glucose_mg_dl,
            "slope": self.slope,
            "kind": self.kind.value,
            "iob": self.iob,
            "cob": self.cob,
        }


@dataclass(frozen=True)
class Insights:
    """Result bundle of a single matching query."""

    match_count: int
    matches: Sequence[MatchTrace]
    current_series: Sequence[SeriesPoint]
    median_series: Sequence[SeriesPoint]
    strategies: Sequence[StrategyCard]
    disclaimer_text: str
    current_slope: Optional[float] = None
    current_kind: TrendKind = TrendKind.STABLE
    anchor_iob: Optional[float] = None
    anchor_cob: Optional[float] = None
    used_load_in_matching: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "matchCount": self.match_count,
            "matches": [match.to_dict() for match in self.matches],
            "currentSlope": self.current_slope,
            "currentKind": self.current_kind.value,
            "anchorIob": self.anchor_iob,
            "anchorCob": self.anchor_cob,
            "usedLoadInMatching": self.used_load_in_matching,
            "currentSeries": [point.to_dict() for point in self.current_series],
            "medianSeries": [point.to_dict() for point in self.median_series],
            "strategies": [card.to_dict() for card in self.strategies],
            "disclaimerText": self.disclaimer_text,
        }


@dataclass(frozen=True)
class CachedHistory:
    """Three parallel record streams plus their sync watermark."""

    entries: Sequence[BgEntry] = field(default_factory=tuple)
    treatments: Sequence[Treatment] = field(default_factory=tuple)
    device_status: Sequence[DeviceStatusSnapshot] = field(default_factory=tuple)
    meta: Optional[CacheMeta] = None


@dataclass(frozen=True)
class SyncResult:
    """Merged cache contents returned by a sync."""

    entries: Sequence[BgEntry]
    treatments: Sequence[Treatment]
    device_status: Sequence[DeviceStatusSnapshot]
    meta: CacheMeta
    did_full_sync: bool


@dataclass(frozen=True)
class SyncProgress:
    """Progress report emitted between chunk fetches."""

    stage: str
    chunk_index: int
    chunk_count: int
    work_done: int
    work_total: int
    percent: float
    range_start_ms: int
    range_end_ms: int
    message: str
