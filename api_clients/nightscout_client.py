"""
Nightscout API client providing the remote history streams for the oracle cache.
"""
import hashlib
import logging
import math
import os
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import pandas as pd
from pydantic import ValidationError

from cgm_oracle.exceptions import NightscoutError
from cgm_oracle.models import BgEntry, DeviceStatusSnapshot, Treatment
from models.nightscout_models import (
    NightscoutDeviceStatus,
    NightscoutEntry,
    NightscoutTreatment,
)

NIGHTSCOUT_ENTRIES_ENDPOINT = "/api/v1/entries.json"
NIGHTSCOUT_TREATMENTS_ENDPOINT = "/api/v1/treatments.json"
NIGHTSCOUT_DEVICE_STATUS_ENDPOINT = "/api/v1/devicestatus.json"

# 90 days at a 5-minute cadence is ~26k readings; keep some slack.
DEFAULT_MAX_COUNT = 100000

logger = logging.getLogger(__name__)


def _iso(ms: int) -> str:
    stamp = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_iso_ms(value: Any) -> Optional[int]:
    if not isinstance(value, str) or not value:
        return None
    parsed = pd.to_datetime(value, utc=True, errors="coerce")
    if pd.isna(parsed):
        return None
    return int(parsed.value // 1_000_000)


def _finite(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return value


def _non_negative(value: Optional[float]) -> Optional[float]:
    value = _finite(value)
    return None if value is None else max(0.0, value)


def _first(*values: Optional[float]) -> Optional[float]:
    for value in values:
        if value is not None:
            return value
    return None


class NightscoutClient:
    """
    Async client for a Nightscout site, implementing the oracle ``RemoteSource``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_secret: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float | httpx.Timeout = httpx.Timeout(30.0, connect=10.0),
        max_count: int = DEFAULT_MAX_COUNT,
    ):
        self.base_url = (base_url or os.getenv("NIGHTSCOUT_URL") or "").rstrip("/")
        if not self.base_url:
            raise ValueError("Nightscout base URL not set; pass base_url or set NIGHTSCOUT_URL")
        secret = api_secret if api_secret is not None else os.getenv("NIGHTSCOUT_API_SECRET")
        self.headers = {"accept": "application/json"}
        if secret:
            # Nightscout expects the SHA-1 digest of the secret.
            self.headers["API-SECRET"] = hashlib.sha1(secret.encode("utf-8")).hexdigest()
        self._client = client
        self._timeout = timeout
        self.max_count = max_count

    async def _get_list(self, endpoint: str, params: dict[str, Any]) -> list[Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, headers=self.headers)
            else:
                async with httpx.AsyncClient(follow_redirects=True, timeout=self._timeout) as client:
                    response = await client.get(url, params=params, headers=self.headers)
            logger.info(f"Request {url} completed with status: {response.status_code}")
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error(f"Timeout error calling Nightscout GET {url}: {e}")
            raise
        except httpx.RequestError as e:
            logger.error(f"Request error calling Nightscout GET {url}: {e}")
            raise
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error calling Nightscout GET {url}: {e}")
            logger.error(f"Response text: {e.response.text}")
            raise

        try:
            data = response.json() if response.text else []
        except ValueError as e:
            raise NightscoutError(f"Invalid JSON from {endpoint}: {e}") from e
        if not isinstance(data, list):
            raise NightscoutError(f"Unexpected non-list response from {endpoint}: {data!r}")
        return data

    async def fetch_glucose_samples(self, start_ms: int, end_ms: int) -> list[BgEntry]:
        params = {
            "find[date][$gte]": int(start_ms),
            "find[date][$lte]": int(end_ms),
            "count": self.max_count,
        }
        payload = await self._get_list(NIGHTSCOUT_ENTRIES_ENDPOINT, params)
        entries = [entry for entry in (convert_entry(item) for item in payload) if entry is not None]
        logger.info(f"Fetched {len(entries)} glucose entries from Nightscout")
        return entries

    async def fetch_treatments(self, start_ms: int, end_ms: int) -> list[Treatment]:
        params = {
            "find[created_at][$gte]": _iso(start_ms),
            "find[created_at][$lte]": _iso(end_ms),
            "count": self.max_count,
        }
        payload = await self._get_list(NIGHTSCOUT_TREATMENTS_ENDPOINT, params)
        treatments = [t for t in (convert_treatment(item) for item in payload) if t is not None]
        logger.info(f"Fetched {len(treatments)} treatments from Nightscout")
        return treatments

    async def fetch_device_status(self, start_ms: int, end_ms: int) -> list[DeviceStatusSnapshot]:
        params = {
            "find[created_at][$gte]": _iso(start_ms),
            "find[created_at][$lte]": _iso(end_ms),
            "count": self.max_count,
        }
        payload = await self._get_list(NIGHTSCOUT_DEVICE_STATUS_ENDPOINT, params)
        snapshots = [s for s in (convert_device_status(item) for item in payload) if s is not None]
        logger.info(f"Fetched {len(snapshots)} device-status snapshots from Nightscout")
        return snapshots


def convert_entry(item: Any) -> Optional[BgEntry]:
    try:
        entry = NightscoutEntry.model_validate(item)
    except ValidationError as e:
        logger.warning(f"Failed to parse glucose entry: {e}")
        return None
    ts = _finite(entry.date)
    timestamp_ms = int(ts) if ts is not None else _parse_iso_ms(entry.dateString)
    sgv = _finite(entry.sgv)
    if timestamp_ms is None or sgv is None:
        return None
    return BgEntry(timestamp_ms=timestamp_ms, glucose_mg_dl=sgv)


def treatment_timestamp_ms(treatment: NightscoutTreatment) -> Optional[int]:
    mills = _finite(treatment.mills)
    if mills is not None:
        return int(mills)
    created = _parse_iso_ms(treatment.created_at)
    if created is not None:
        return created
    return _parse_iso_ms(treatment.timestamp)


def convert_treatment(item: Any) -> Optional[Treatment]:
    try:
        treatment = NightscoutTreatment.model_validate(item)
    except ValidationError as e:
        logger.warning(f"Failed to parse treatment entry: {e}")
        return None
    ts = treatment_timestamp_ms(treatment)
    if ts is None:
        return None
    return Treatment(
        timestamp_ms=ts,
        insulin_units=_first(_non_negative(treatment.insulin), _non_negative(treatment.amount)),
        carbs_grams=_non_negative(treatment.carbs),
        event_type=treatment.eventType,
    )


def device_status_timestamp_ms(status: NightscoutDeviceStatus) -> Optional[int]:
    """Prefer the loop computation timestamps, then upload time."""

    loop = status.loop
    if loop is not None:
        for candidate in (
            loop.iob.timestamp if loop.iob else None,
            loop.cob.timestamp if loop.cob else None,
            loop.timestamp,
        ):
            parsed = _parse_iso_ms(candidate)
            if parsed is not None:
                return parsed
    mills = _finite(status.mills)
    if mills is not None:
        return int(mills)
    return _parse_iso_ms(status.created_at)


def extract_load(status: NightscoutDeviceStatus) -> dict[str, Optional[float]]:
    """IOB/COB from Loop, OpenAPS or top-level fields, negatives clamped to zero."""

    loop = status.loop
    openaps = status.openaps
    loop_iob = loop.iob if loop else None
    loop_cob = loop.cob if loop else None
    aps_iob = openaps.iob if openaps else None

    iob = _first(
        _non_negative(loop_iob.iob) if loop_iob else None,
        _non_negative(aps_iob.iob) if aps_iob else None,
        _non_negative(status.iob),
    )
    iob_bolus = _first(
        _non_negative(loop_iob.bolusIob) if loop_iob else None,
        _non_negative(aps_iob.bolusiob) if aps_iob else None,
    )
    iob_basal = _first(
        _non_negative(loop_iob.basalIob) if loop_iob else None,
        _non_negative(aps_iob.basaliob) if aps_iob else None,
    )
    cob = _first(
        _non_negative(loop_cob.cob) if loop_cob else None,
        _non_negative(openaps.meal.cob) if openaps and openaps.meal else None,
        _non_negative(openaps.cob.cob) if openaps and openaps.cob else None,
        _non_negative(status.cob),
    )

    if iob is not None and (iob_bolus is None or iob_basal is None):
        # Only total IOB is known; do not invent a bolus/basal split.
        return {"iob": iob, "iob_bolus": None, "iob_basal": None, "cob": cob}

    split_total = (iob_bolus or 0.0) + (iob_basal or 0.0)
    if iob is None and split_total > 0:
        iob = split_total
    return {"iob": iob, "iob_bolus": iob_bolus, "iob_basal": iob_basal, "cob": cob}


def convert_device_status(item: Any) -> Optional[DeviceStatusSnapshot]:
    try:
        status = NightscoutDeviceStatus.model_validate(item)
    except ValidationError as e:
        logger.warning(f"Failed to parse device status entry: {e}")
        return None
    ts = device_status_timestamp_ms(status)
    if ts is None:
        return None
    load = extract_load(status)
    if all(value is None for value in load.values()):
        return None
    return DeviceStatusSnapshot(
        timestamp_ms=ts,
        iob=load["iob"],
        iob_bolus=load["iob_bolus"],
        iob_basal=load["iob_basal"],
        cob=load["cob"],
    )
