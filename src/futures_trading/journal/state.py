"""JSON state files that survive restarts."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any


class StateFile:
    """A single JSON document, rewritten atomically on every save."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any] | None:
        """Return the stored document, or ``None`` if nothing was saved yet."""
        with self._lock:
            if not self._path.exists():
                return None
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"state_file_not_object: {self._path}")
        return raw

    def save(self, payload: dict[str, Any]) -> None:
        serialized = json.dumps(payload, ensure_ascii=True, indent=2)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with self._lock:
            tmp_path.write_text(serialized, encoding="utf-8")
            os.replace(tmp_path, self._path)
