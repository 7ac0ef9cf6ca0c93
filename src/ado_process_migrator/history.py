"""Persisted record of past runs, newest first."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .orchestrator import RunResult

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 50


class RunHistoryStore:
    """JSON file holding the most recent run records.

    The file contains a list of history records (see RunResult.to_history_record),
    newest first, capped at max_entries. An unreadable or corrupt file is
    treated as empty history and overwritten on the next add().
    """

    path: Path
    max_entries: int
    _lock: threading.Lock

    def __init__(self, path: str | Path, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries < 1:
            msg = f"max_entries must be positive, got {max_entries}"
            raise ValueError(msg)
        self.path = Path(path)
        self.max_entries = max_entries
        self._lock = threading.Lock()

    def entries(self) -> list[dict[str, Any]]:
        with self._lock:
            return self._load()

    def add(self, result: RunResult) -> None:
        with self._lock:
            records = [result.to_history_record(), *self._load()][: self.max_entries]
            self._save(records)
        logger.debug(f"Recorded run {result.id} ({result.status}) in {self.path}")

    def clear(self) -> None:
        with self._lock:
            self._save([])

    def _load(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable run history {self.path}: {e}")
            return []
        if not isinstance(data, list):
            logger.warning(f"Ignoring run history {self.path}: expected a list")
            return []
        return [record for record in data if isinstance(record, dict)]

    def _save(self, records: list[dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(records, indent=2), encoding="utf-8")
