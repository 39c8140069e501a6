"""Rolling local cache of glucose, treatment and device-status history."""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence, TypeVar

from .exceptions import CacheSyncAborted
from .models import (
    BgEntry,
    CachedHistory,
    CacheMeta,
    DeviceStatusSnapshot,
    SyncProgress,
    SyncResult,
    Treatment,
)
from .settings import CacheSettings
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

_STAGE_LABELS = {
    "bg": "BG",
    "treatments": "Treatments",
    "deviceStatus": "Device status",
}

RecordT = TypeVar("RecordT", BgEntry, Treatment, DeviceStatusSnapshot)


class RemoteSource(Protocol):
    """Remote history provider; returns records within a timestamp range, any order."""

    async def fetch_glucose_samples(self, start_ms: int, end_ms: int) -> Sequence[BgEntry]:
        ...

    async def fetch_treatments(self, start_ms: int, end_ms: int) -> Sequence[Treatment]:
        ...

    async def fetch_device_status(self, start_ms: int, end_ms: int) -> Sequence[DeviceStatusSnapshot]:
        ...


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _parse_list(raw: Optional[str], key: str) -> list[Any]:
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring unreadable cache payload for {key}")
        return []
    if not isinstance(payload, list):
        logger.warning(f"Ignoring non-list cache payload for {key}")
        return []
    return payload


def merge_records(
    cached: Iterable[RecordT],
    fetched: Iterable[RecordT],
    start_ms: int,
    end_ms: int,
) -> list[RecordT]:
    """Dedupe by timestamp (later wins), sort ascending and keep ``[start_ms, end_ms]``."""

    by_ts: dict[int, RecordT] = {}
    for record in (*cached, *fetched):
        by_ts[record.timestamp_ms] = record
    return [by_ts[ts] for ts in sorted(by_ts) if start_ms <= ts <= end_ms]


def _format_range(start_ms: int, end_ms: int) -> str:
    start = datetime.fromtimestamp(start_ms / 1000, tz=timezone.utc).date().isoformat()
    end = datetime.fromtimestamp(end_ms / 1000, tz=timezone.utc).date().isoformat()
    return f"{start} -> {end}"


class TimeSeriesCache:
    """Locally durable, deduplicated, time-bounded mirror of three remote streams."""

    def __init__(
        self,
        source: RemoteSource,
        store: KeyValueStore,
        settings: CacheSettings | None = None,
    ) -> None:
        self._source = source
        self._store = store
        self._settings = settings or CacheSettings()
        self._inflight: asyncio.Task[SyncResult] | None = None

    @property
    def settings(self) -> CacheSettings:
        return self._settings

    @property
    def is_syncing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def load(self) -> CachedHistory:
        """Read persisted streams; anything unreadable is treated as absent."""

        settings = self._settings
        try:
            raw_entries = await _maybe_await(self._store.get(settings.entries_key))
            raw_treatments = await _maybe_await(self._store.get(settings.treatments_key))
            raw_device_status = await _maybe_await(self._store.get(settings.device_status_key))
            raw_meta = await _maybe_await(self._store.get(settings.meta_key))
        except Exception as exc:
            logger.warning(f"Failed reading history cache; treating it as empty: {exc}")
            return CachedHistory()

        entries = [e for e in map(BgEntry.from_dict, _parse_list(raw_entries, settings.entries_key)) if e]
        treatments = [
            t for t in map(Treatment.from_dict, _parse_list(raw_treatments, settings.treatments_key)) if t
        ]
        device_status = [
            s
            for s in map(DeviceStatusSnapshot.from_dict, _parse_list(raw_device_status, settings.device_status_key))
            if s
        ]

        meta: CacheMeta | None = None
        if raw_meta:
            try:
                meta = CacheMeta.from_dict(json.loads(raw_meta), expected_version=settings.schema_version)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring unreadable cache payload for {settings.meta_key}")
            if meta is None:
                logger.info("Cached meta missing or from another schema version; treating cache as empty")

        return CachedHistory(
            entries=tuple(entries),
            treatments=tuple(treatments),
            device_status=tuple(device_status),
            meta=meta,
        )

    async def sync(
        self,
        now_ms: int,
        retention_days: float | None = None,
        *,
        on_progress: Callable[[SyncProgress], None] | None = None,
        should_abort: Callable[[], bool] | None = None,
    ) -> SyncResult:
        """Fetch new remote records, merge them with the cache and persist.

        Concurrent calls share the in-flight sync and receive its result.
        """

        retention_ms = self._settings.retention_ms(retention_days)

        if self._inflight is not None and not self._inflight.done():
            logger.info("Cache sync already in progress; awaiting the in-flight result")
            return await asyncio.shield(self._inflight)

        task = asyncio.ensure_future(self._sync(now_ms, retention_ms, on_progress, should_abort))
        self._inflight = task
        try:
            return await task
        finally:
            if self._inflight is task:
                self._inflight = None

    async def _sync(
        self,
        now_ms: int,
        retention_ms: int,
        on_progress: Callable[[SyncProgress], None] | None,
        should_abort: Callable[[], bool] | None,
    ) -> SyncResult:
        settings = self._settings
        start_ms = now_ms - retention_ms

        cached = await self.load()
        last_synced = cached.meta.last_synced_ms if cached.meta is not None else None
        did_full_sync = last_synced is None or not cached.entries

        if did_full_sync:
            fetch_start = start_ms
        else:
            fetch_start = max(start_ms, last_synced - settings.overlap_ms)
        fetch_end = now_ms

        chunk_ms = settings.chunk_ms
        chunk_count = max(1, math.ceil(max(0, fetch_end - fetch_start) / chunk_ms))
        work_total = chunk_count * 3 + 1
        work_done = 0

        logger.info(
            f"Syncing history cache ({'full' if did_full_sync else 'incremental'}): "
            f"{fetch_start}..{fetch_end} in {chunk_count} chunk(s)"
        )

        def report(stage: str, chunk_index: int, range_start: int, range_end: int) -> None:
            if on_progress is None:
                return
            if stage == "saving":
                message = "Saving history cache..."
            else:
                message = (
                    f"Fetching {_STAGE_LABELS[stage]} ({chunk_index + 1}/{chunk_count}) "
                    f"- {_format_range(range_start, range_end)}"
                )
            on_progress(
                SyncProgress(
                    stage=stage,
                    chunk_index=chunk_index,
                    chunk_count=chunk_count,
                    work_done=work_done,
                    work_total=work_total,
                    percent=max(0.0, min(1.0, work_done / work_total)),
                    range_start_ms=range_start,
                    range_end_ms=range_end,
                    message=message,
                )
            )

        def check_abort() -> None:
            if should_abort is not None and should_abort():
                raise CacheSyncAborted("History cache sync aborted")

        fetched_entries: list[BgEntry] = []
        fetched_treatments: list[Treatment] = []
        fetched_device_status: list[DeviceStatusSnapshot] = []

        for chunk_index in range(chunk_count):
            range_start = fetch_start + chunk_index * chunk_ms
            range_end = min(fetch_end, range_start + chunk_ms)

            check_abort()
            report("bg", chunk_index, range_start, range_end)
            entries = await self._source.fetch_glucose_samples(range_start, range_end)
            fetched_entries.extend(e for e in entries if math.isfinite(e.glucose_mg_dl))
            work_done += 1

            check_abort()
            report("treatments", chunk_index, range_start, range_end)
            fetched_treatments.extend(await self._source.fetch_treatments(range_start, range_end))
            work_done += 1

            check_abort()
            report("deviceStatus", chunk_index, range_start, range_end)
            fetched_device_status.extend(await self._source.fetch_device_status(range_start, range_end))
            work_done += 1

        merged_entries = merge_records(cached.entries, fetched_entries, start_ms, now_ms)
        merged_treatments = merge_records(cached.treatments, fetched_treatments, start_ms, now_ms)
        merged_device_status = merge_records(cached.device_status, fetched_device_status, start_ms, now_ms)
        meta = CacheMeta(version=settings.schema_version, last_synced_ms=now_ms)

        report("saving", chunk_count - 1, fetch_start, fetch_end)
        work_done += 1
        await self._save(merged_entries, merged_treatments, merged_device_status, meta)

        logger.info(
            f"History cache synced: {len(merged_entries)} entries, {len(merged_treatments)} treatments, "
            f"{len(merged_device_status)} device-status snapshots"
        )
        return SyncResult(
            entries=tuple(merged_entries),
            treatments=tuple(merged_treatments),
            device_status=tuple(merged_device_status),
            meta=meta,
            did_full_sync=did_full_sync,
        )

    async def _save(
        self,
        entries: Sequence[BgEntry],
        treatments: Sequence[Treatment],
        device_status: Sequence[DeviceStatusSnapshot],
        meta: CacheMeta,
    ) -> None:
        settings = self._settings
        try:
            await _maybe_await(
                self._store.set(settings.entries_key, json.dumps([e.to_dict() for e in entries]))
            )
            await _maybe_await(
                self._store.set(settings.treatments_key, json.dumps([t.to_dict() for t in treatments]))
            )
            await _maybe_await(
                self._store.set(settings.device_status_key, json.dumps([s.to_dict() for s in device_status]))
            )
            await _maybe_await(self._store.set(settings.meta_key, json.dumps(meta.to_dict())))
        except Exception as exc:
            logger.warning(f"Failed writing history cache: {exc}")


__all__ = ["RemoteSource", "TimeSeriesCache", "merge_records"]
