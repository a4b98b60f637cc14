from __future__ import annotations

from collections import deque
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Deque, Dict, Iterator, List, Optional
from urllib.parse import quote

from app.schemas import StoredReading
from settings import get_settings

DEFAULT_CACHE_SIZE = 500


class ReadingLog:
    """Append-only, per-device reading history.

    With a ``root_path`` every device gets ``<root>/<quoted device_id>.jsonl``; lines are only
    ever appended, so the file order is the ingestion order. Only the newest ``cache_size``
    readings per device are held in memory; older ones are read back from the file on demand.
    Without a ``root_path`` the in-memory window is all there is.
    """

    def __init__(
        self,
        name: str,
        root_path: Optional[Path] = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self.name = name
        self.cache_size = max(cache_size, 1)
        self._history: Dict[str, Deque[StoredReading]] = {}
        self.root_path = root_path
        self._lock = Lock()
        if root_path:
            root_path.mkdir(parents=True, exist_ok=True)

    def append(self, reading: StoredReading) -> None:
        line = reading.model_dump_json()
        with self._lock:
            history = self._cached_history(reading.device_id)
            if self.root_path:
                path = self._device_path(reading.device_id)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            history.append(reading.model_copy())

    def list_readings(self, device_id: str, limit: Optional[int] = None) -> list[StoredReading]:
        """Return the device's readings, newest last; ``limit`` keeps the most recent ones."""
        if limit is not None and limit <= 0:
            return []
        with self._lock:
            history = self._cached_history(device_id)
            window_full = len(history) >= self.cache_size
            if self.root_path and window_full and (limit is None or limit > len(history)):
                items: List[StoredReading] = list(self._read_device(device_id))
            else:
                items = list(history)

        if limit is not None:
            items = items[-limit:]
        return [item.model_copy() for item in items]

    def _cached_history(self, device_id: str) -> Deque[StoredReading]:
        history = self._history.get(device_id)
        if history is None:
            recent = self._read_device(device_id) if self.root_path else ()
            history = deque(recent, maxlen=self.cache_size)
            self._history[device_id] = history
        return history

    def _device_path(self, device_id: str) -> Path:
        assert self.root_path is not None
        # Percent-encoding is one-to-one, so distinct ids never share a file.
        return self.root_path / f"{quote(device_id, safe='')}.jsonl"

    def _read_device(self, device_id: str) -> Iterator[StoredReading]:
        path = self._device_path(device_id)
        if not path.exists():
            return
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                if line.strip():
                    yield StoredReading.model_validate_json(line)


@lru_cache
def build_default_reading_log(root_path: Optional[str] = None) -> ReadingLog:
    settings = get_settings()
    root = settings.reading_log_root if root_path is None else root_path
    return ReadingLog(
        name="pest_readings",
        root_path=Path(root) if root else None,
        cache_size=settings.reading_log_cache_size,
    )
