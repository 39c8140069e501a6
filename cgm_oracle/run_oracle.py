"""Command-line utility for matching a glucose sample against cached history.

The tool reads a history cache laid out by :class:`~cgm_oracle.storage.JsonFileStore`
(one ``<key>.json`` file per stream) from ``--cache-dir``. With ``--sync`` the
cache is first refreshed from Nightscout using the ``NIGHTSCOUT_URL`` and
``NIGHTSCOUT_API_SECRET`` environment variables.

The anchor is the newest cached glucose sample unless ``--anchor-ms`` names an
exact sample timestamp. Results are written as JSON to stdout or to ``--output``
if provided.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Sequence

from .cache import TimeSeriesCache
from .engine import MatchingEngine
from .events import build_recent_events, recent_window
from .models import BgEntry, CachedHistory, SyncProgress
from .settings import CacheSettings, MatchingSettings
from .storage import JsonFileStore

logger = logging.getLogger(__name__)


class _NoRemote:
    """Placeholder source for read-only runs; never called."""

    async def fetch_glucose_samples(self, start_ms: int, end_ms: int) -> list:
        raise RuntimeError("remote fetch requested without --sync")

    fetch_treatments = fetch_glucose_samples
    fetch_device_status = fetch_glucose_samples


def _pick_anchor(entries: Sequence[BgEntry], anchor_ms: int | None) -> BgEntry:
    if not entries:
        raise SystemExit("History cache has no glucose entries; run with --sync first.")
    if anchor_ms is None:
        return max(entries, key=lambda entry: entry.timestamp_ms)
    for entry in entries:
        if entry.timestamp_ms == anchor_ms:
            return entry
    raise SystemExit(f"No cached glucose sample at {anchor_ms}")


def _log_progress(progress: SyncProgress) -> None:
    logger.info(f"[{progress.percent:.0%}] {progress.message}")


async def _load_history(args: argparse.Namespace) -> CachedHistory:
    store = JsonFileStore(args.cache_dir)
    settings = CacheSettings()
    if not args.sync:
        return await TimeSeriesCache(_NoRemote(), store, settings).load()

    from api_clients.nightscout_client import NightscoutClient

    cache = TimeSeriesCache(NightscoutClient(), store, settings)
    result = await cache.sync(
        int(time.time() * 1000),
        args.retention_days,
        on_progress=_log_progress,
    )
    return CachedHistory(
        entries=result.entries,
        treatments=result.treatments,
        device_status=result.device_status,
        meta=result.meta,
    )


def run(
    history: CachedHistory,
    *,
    anchor_ms: int | None = None,
    include_load: bool = True,
    slope_sample_count: int | None = None,
    settings: MatchingSettings | None = None,
) -> dict[str, Any]:
    """Pick the anchor, derive the recent window and run one matching query."""

    settings = settings or MatchingSettings()
    anchor = _pick_anchor(history.entries, anchor_ms)
    recent = recent_window(history.entries, anchor.timestamp_ms)
    events = build_recent_events(
        recent,
        history.device_status,
        slope_sample_count=slope_sample_count,
        settings=settings,
    )
    insights = MatchingEngine(settings).compute_insights(
        anchor,
        recent,
        history.entries,
        history.treatments,
        history.device_status,
        include_load=include_load,
        slope_sample_count=slope_sample_count,
    )
    return {
        "anchor": anchor.to_dict(),
        "events": [event.to_dict() for event in events],
        "insights": insights.to_dict(),
    }


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Match a glucose sample against cached history")
    parser.add_argument("--cache-dir", type=Path, required=True, help="Directory holding the history cache")
    parser.add_argument("--sync", action="store_true", help="Refresh the cache from Nightscout first")
    parser.add_argument("--retention-days", type=float, default=None, help="History retention for --sync")
    parser.add_argument("--anchor-ms", type=int, default=None, help="Timestamp of the sample to investigate")
    parser.add_argument("--slope-samples", type=int, default=None, help="Least-squares slope sample count")
    parser.add_argument("--no-load", action="store_true", help="Ignore IOB/COB when matching")
    parser.add_argument("--timezone", default=None, help="Timezone used for time-of-day matching")
    parser.add_argument("--output", type=Path, help="Optional output JSON file")
    parser.add_argument("--indent", type=int, default=None, help="Pretty-print JSON with the given indent")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:  # pragma: no cover - CLI entry point
    logging.basicConfig(level=logging.INFO)
    args = parse_args(argv)
    history = asyncio.run(_load_history(args))
    settings = MatchingSettings.from_mapping({"timezone": args.timezone})
    results = run(
        history,
        anchor_ms=args.anchor_ms,
        include_load=not args.no_load,
        slope_sample_count=args.slope_samples,
        settings=settings,
    )

    output_text = json.dumps(results, indent=args.indent)
    if args.output:
        args.output.write_text(output_text)
    else:
        print(output_text)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
