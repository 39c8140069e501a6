from pathlib import Path
import hashlib
import sys

import httpx
import pytest
import respx

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from api_clients.nightscout_client import (
    NIGHTSCOUT_DEVICE_STATUS_ENDPOINT,
    NIGHTSCOUT_ENTRIES_ENDPOINT,
    NIGHTSCOUT_TREATMENTS_ENDPOINT,
    NightscoutClient,
    convert_device_status,
    convert_entry,
    convert_treatment,
)
from cgm_oracle.exceptions import NightscoutError
from cgm_oracle.models import BgEntry, DeviceStatusSnapshot, Treatment

BASE_URL = "https://ns.example.com"
HOST = "ns.example.com"
START_MS = 1_709_251_200_000  # 2024-03-01T00:00:00Z
END_MS = START_MS + 3_600_000


@pytest.mark.asyncio
@respx.mock
async def test_fetch_glucose_samples_converts_entries():
    route = respx.get(host=HOST, path=NIGHTSCOUT_ENTRIES_ENDPOINT).mock(
        return_value=httpx.Response(
            200,
            json=[
                {"date": START_MS, "sgv": 120, "direction": "Flat"},
                {"date": START_MS + 300_000, "sgv": "not a number"},
                {"date": START_MS + 600_000},
                {"dateString": "2024-03-01T00:15:00.000Z", "sgv": 130},
            ],
        )
    )

    client = NightscoutClient(BASE_URL, "secret")
    entries = await client.fetch_glucose_samples(START_MS, END_MS)

    assert route.called
    assert entries == [
        BgEntry(START_MS, 120.0),
        BgEntry(START_MS + 900_000, 130.0),
    ]
    request = route.calls.last.request
    assert request.url.params["find[date][$gte]"] == str(START_MS)
    assert request.url.params["find[date][$lte]"] == str(END_MS)
    assert request.headers["API-SECRET"] == hashlib.sha1(b"secret").hexdigest()


@pytest.mark.asyncio
@respx.mock
async def test_fetch_treatments_filters_by_created_at():
    route = respx.get(host=HOST, path=NIGHTSCOUT_TREATMENTS_ENDPOINT).mock(
        return_value=httpx.Response(
            200,
            json=[
                {"created_at": "2024-03-01T00:10:00Z", "eventType": "Meal Bolus", "insulin": 2.5, "carbs": 30},
                {"eventType": "Note"},
            ],
        )
    )

    client = NightscoutClient(BASE_URL, "")
    treatments = await client.fetch_treatments(START_MS, END_MS)

    assert treatments == [
        Treatment(START_MS + 600_000, insulin_units=2.5, carbs_grams=30.0, event_type="Meal Bolus"),
    ]
    params = route.calls.last.request.url.params
    assert params["find[created_at][$gte]"] == "2024-03-01T00:00:00.000Z"
    assert params["find[created_at][$lte]"] == "2024-03-01T01:00:00.000Z"
    assert "API-SECRET" not in route.calls.last.request.headers


@pytest.mark.asyncio
@respx.mock
async def test_fetch_device_status_skips_snapshots_without_load():
    respx.get(host=HOST, path=NIGHTSCOUT_DEVICE_STATUS_ENDPOINT).mock(
        return_value=httpx.Response(
            200,
            json=[
                {"created_at": "2024-03-01T00:05:00Z", "loop": {"iob": {"iob": 1.4, "timestamp": "2024-03-01T00:04:00Z"}}},
                {"created_at": "2024-03-01T00:10:00Z", "uploader": {"battery": 80}},
            ],
        )
    )

    client = NightscoutClient(BASE_URL)
    snapshots = await client.fetch_device_status(START_MS, END_MS)

    assert snapshots == [DeviceStatusSnapshot(START_MS + 240_000, iob=1.4)]


@pytest.mark.asyncio
@respx.mock
async def test_http_errors_are_raised():
    route = respx.get(host=HOST, path=NIGHTSCOUT_ENTRIES_ENDPOINT).mock(
        return_value=httpx.Response(500, text="boom")
    )

    with pytest.raises(httpx.HTTPStatusError):
        await NightscoutClient(BASE_URL).fetch_glucose_samples(START_MS, END_MS)

    assert route.called


@pytest.mark.asyncio
@respx.mock
async def test_non_list_payload_raises_nightscout_error():
    respx.get(host=HOST, path=NIGHTSCOUT_TREATMENTS_ENDPOINT).mock(
        return_value=httpx.Response(200, json={"status": "unauthorized"})
    )

    with pytest.raises(NightscoutError):
        await NightscoutClient(BASE_URL).fetch_treatments(START_MS, END_MS)


@pytest.mark.asyncio
@respx.mock
async def test_invalid_json_raises_nightscout_error():
    respx.get(host=HOST, path=NIGHTSCOUT_DEVICE_STATUS_ENDPOINT).mock(
        return_value=httpx.Response(200, text="<html>login</html>")
    )

    with pytest.raises(NightscoutError):
        await NightscoutClient(BASE_URL).fetch_device_status(START_MS, END_MS)


@pytest.mark.asyncio
@respx.mock
async def test_shared_async_client_is_used():
    route = respx.get(host=HOST, path=NIGHTSCOUT_ENTRIES_ENDPOINT).mock(
        return_value=httpx.Response(200, json=[])
    )

    async with httpx.AsyncClient() as http:
        client = NightscoutClient(BASE_URL, client=http)
        assert await client.fetch_glucose_samples(START_MS, END_MS) == []

    assert route.called


def test_base_url_is_read_from_environment(monkeypatch):
    monkeypatch.setenv("NIGHTSCOUT_URL", "https://env.example.com/")
    monkeypatch.setenv("NIGHTSCOUT_API_SECRET", "hunter2")

    client = NightscoutClient()

    assert client.base_url == "https://env.example.com"
    assert client.headers["API-SECRET"] == hashlib.sha1(b"hunter2").hexdigest()


def test_missing_base_url_raises(monkeypatch):
    monkeypatch.delenv("NIGHTSCOUT_URL", raising=False)

    with pytest.raises(ValueError):
        NightscoutClient()


def test_convert_entry_rejects_incomplete_items():
    assert convert_entry({"sgv": 100}) is None
    assert convert_entry("garbage") is None
    assert convert_entry({"date": 1, "sgv": 99.5}) == BgEntry(1, 99.5)


def test_convert_treatment_timestamp_and_amount_fallbacks():
    from_mills = convert_treatment(
        {"mills": 5000, "created_at": "2024-03-01T00:00:00Z", "amount": 1.2, "carbs": -4}
    )
    from_timestamp = convert_treatment({"timestamp": "2024-03-01T00:01:00Z", "insulin": -0.5})

    assert from_mills == Treatment(5000, insulin_units=1.2, carbs_grams=0.0)
    assert from_timestamp.timestamp_ms == START_MS + 60_000
    assert from_timestamp.insulin_units == 0.0
    assert convert_treatment({"eventType": "Note"}) is None


def test_convert_device_status_loop_total_only_has_no_split():
    snapshot = convert_device_status(
        {
            "mills": START_MS,
            "loop": {"iob": {"iob": 2.0, "bolusIob": 1.5}, "cob": {"cob": 12, "timestamp": "2024-03-01T00:02:00Z"}},
        }
    )

    assert snapshot == DeviceStatusSnapshot(START_MS + 120_000, iob=2.0, cob=12.0)


def test_convert_device_status_openaps_split():
    snapshot = convert_device_status(
        {
            "created_at": "2024-03-01T00:00:00Z",
            "openaps": {"iob": {"iob": 1.0, "bolusiob": 0.7, "basaliob": 0.3}, "meal": {"cob": 25}},
        }
    )

    assert snapshot == DeviceStatusSnapshot(START_MS, iob=1.0, iob_bolus=0.7, iob_basal=0.3, cob=25.0)


def test_convert_device_status_split_only_sums_total():
    snapshot = convert_device_status(
        {"mills": START_MS, "loop": {"iob": {"bolusIob": 1.0, "basalIob": 0.5}}}
    )

    assert snapshot.iob == 1.5
    assert (snapshot.iob_bolus, snapshot.iob_basal) == (1.0, 0.5)


def test_convert_device_status_top_level_fields_and_clamping():
    snapshot = convert_device_status({"mills": START_MS, "iob": -0.4, "cob": 8})

    assert snapshot == DeviceStatusSnapshot(START_MS, iob=0.0, cob=8.0)
