"""Exceptions raised by the oracle library."""
from __future__ import annotations


class OracleError(Exception):
    """Base class for library errors."""


class CacheSyncAborted(OracleError):
    """Raised when the caller asks an in-flight sync to stop."""


class NightscoutError(OracleError):
    """The Nightscout server returned a payload of an unexpected shape."""
