"""Durable key-value storage for wallet state."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class Storage:
    """Port for persisting wallet snapshots keyed by wallet identity."""

    def load(self, key: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def save(self, key: str, data: dict[str, Any]) -> None:
        raise NotImplementedError


class MemoryStorage(Storage):
    """Non-durable storage, for tests and throwaway wallets."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def load(self, key: str) -> dict[str, Any] | None:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def save(self, key: str, data: dict[str, Any]) -> None:
        # Round-trip through JSON so callers cannot alias stored state
        self._data[key] = json.dumps(data)


class JsonFileStorage(Storage):
    """One JSON file per wallet identity under ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        return self.directory / f"wallet_{key}.json"

    def load(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, "r") as f:
            return json.load(f)

    def save(self, key: str, data: dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".wallet_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Saved wallet state to %s", path)
