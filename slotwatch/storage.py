"""
Durable key -> value state.

Хранилище состояния: один JSON-документ на диске, запись целиком через
временный файл. Писать в него должен только оркестратор.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping, Protocol

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set_many(self, values: Mapping[str, Any]) -> None: ...


class MemoryStore:
    """In-process store, used by tests and dry runs."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})
        self.writes = 0

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set_many(self, values: Mapping[str, Any]) -> None:
        self._data.update(values)
        self.writes += 1


class JsonFileStore:
    """Whole-document JSON store with atomic replace-on-write."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to load state from %s: %s", self.path, e)
            return
        if isinstance(data, dict):
            self._data = data
            logger.info("Loaded state keys %s from %s", sorted(data), self.path)
        else:
            logger.warning("Ignoring state file %s: not a JSON object", self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set_many(self, values: Mapping[str, Any]) -> None:
        merged = {**self._data, **values}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(merged, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)
        self._data = merged


__all__ = ["KeyValueStore", "MemoryStore", "JsonFileStore"]
