"""
Persistence Layer

Key/blob store for the ledger, history and constants. Loading a missing or
corrupt key yields the default; a failed save is logged and the caller
continues.

Keys in use: "positions", "closed-trades", "trade-history", "trading-config".
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Union

logger = logging.getLogger("yield_trader.persistence")


class JsonFileStore:
    """One JSON file per key under a data directory."""

    def __init__(self, data_dir: Union[str, Path] = "data"):
        self.data_dir = Path(data_dir)

    def _path(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def load(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load %s: %s (using default)", path, e)
            return default

    def save(self, key: str, value: Any) -> bool:
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2, default=str)
            os.replace(tmp_path, path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error("Failed to save %s: %s", path, e)
            return False


class InMemoryStore:
    """
    In-memory store for development/testing.

    Provides same interface as JsonFileStore but keeps deep copies in a dict.
    """

    def __init__(self):
        self._data: Dict[str, Any] = {}

    def load(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def save(self, key: str, value: Any) -> bool:
        self._data[key] = copy.deepcopy(value)
        return True
