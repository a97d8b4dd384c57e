"""
Client-side key-value stores for non-authoritative cache hints.

Nothing read from here is trusted: callers wrap every call and treat a failure
as "no cached value".
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from ..domain.repositories import HintStore

logger = logging.getLogger(__name__)


class MemoryHintStore(HintStore):
    """Dictionary-backed hint store."""

    def __init__(self):
        self._values: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def remove(self, key: str) -> None:
        self._values.pop(key, None)


class JsonFileHintStore(HintStore):
    """Hints persisted as one JSON object on disk.

    The file is rewritten on every ``set``/``remove``; OS errors (full disk,
    read-only volume) propagate to the caller.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f)
        os.replace(tmp_path, self.path)

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)
