"""Key/value stores backing the local history cache."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Dict, Optional, Protocol, Union


class KeyValueStore(Protocol):
    """Durable string store; methods may be plain or awaitable."""

    def get(self, key: str) -> Union[Optional[str], Awaitable[Optional[str]]]:
        ...

    def set(self, key: str, value: str) -> Union[None, Awaitable[None]]:
        ...


@dataclass
class InMemoryStore:
    """Simple in-memory store keyed by string."""

    _store: Dict[str, str] = field(default_factory=dict)

    def get(self, key: str) -> Optional[str]:
        return self._store.get(key)

    def set(self, key: str, value: str) -> None:
        self._store[key] = value


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class JsonFileStore:
    """Stores each key as ``<root>/<key>.json``."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        return self._root / f"{_UNSAFE_CHARS.sub('_', key)}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(path)


__all__ = ["InMemoryStore", "JsonFileStore", "KeyValueStore"]
