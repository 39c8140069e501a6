"""API clients and helpers for external services."""

from .nightscout_client import (
    NightscoutClient,
    convert_device_status,
    convert_entry,
    convert_treatment,
    device_status_timestamp_ms,
    extract_load,
)

__all__ = [
    "NightscoutClient",
    "convert_device_status",
    "convert_entry",
    "convert_treatment",
    "device_status_timestamp_ms",
    "extract_load",
]
