"""Historical-event matching over a rolling CGM history cache."""

from .cache import RemoteSource, TimeSeriesCache, merge_records
from .engine import MatchingEngine, compute_insights
from .events import build_recent_events, recent_window, select_event
from .exceptions import CacheSyncAborted, NightscoutError, OracleError
from .models import (
    ActionSummary,
    BgEntry,
    CachedHistory,
    CacheMeta,
    DeviceStatusSnapshot,
    Insights,
    InvestigateEvent,
    LoadPoint,
    MarkerKind,
    MatchTrace,
    SeriesPoint,
    StrategyCard,
    SyncProgress,
    SyncResult,
    Treatment,
    TreatmentMarker,
    TrendKind,
)
from .settings import DISCLAIMER_TEXT, CacheSettings, MatchingSettings
from .storage import InMemoryStore, JsonFileStore, KeyValueStore

__all__ = [
    "ActionSummary",
    "BgEntry",
    "CacheMeta",
    "CacheSettings",
    "CacheSyncAborted",
    "CachedHistory",
    "DISCLAIMER_TEXT",
    "DeviceStatusSnapshot",
    "InMemoryStore",
    "Insights",
    "InvestigateEvent",
    "JsonFileStore",
    "KeyValueStore",
    "LoadPoint",
    "MarkerKind",
    "MatchTrace",
    "MatchingEngine",
    "MatchingSettings",
    "NightscoutError",
    "OracleError",
    "RemoteSource",
    "SeriesPoint",
    "StrategyCard",
    "SyncProgress",
    "SyncResult",
    "TimeSeriesCache",
    "Treatment",
    "TreatmentMarker",
    "TrendKind",
    "build_recent_events",
    "compute_insights",
    "merge_records",
    "recent_window",
    "select_event",
]
