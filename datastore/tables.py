from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, Generic, Optional, Type, TypeVar

from pydantic import BaseModel

from app.schemas import AlertState, FarmLocation
from settings import get_settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class JsonTable(Generic[ModelT]):
    """Keyed table of pydantic records, optionally mirrored to a JSON file."""

    model: Type[ModelT]
    key_field: str

    def __init__(self, name: str, persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self._items: Dict[str, ModelT] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def put_item(self, item: ModelT) -> None:
        with self._lock:
            self._commit(self._key(item), item)

    def get_item(self, key: str) -> Optional[ModelT]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            return item.model_copy(deep=True)

    def scan(self) -> list[ModelT]:
        """Return deep copies of all stored records."""

        with self._lock:
            return [item.model_copy(deep=True) for item in self._items.values()]

    def _key(self, item: ModelT) -> str:
        return getattr(item, self.key_field)

    def _commit(self, key: str, item: ModelT) -> None:
        """Store ``item`` under ``key``; the previous record is restored if the file write fails.

        Callers hold ``_lock``.
        """
        previous = self._items.get(key)
        self._items[key] = item.model_copy(deep=True)
        try:
            self._persist()
        except Exception:
            if previous is None:
                self._items.pop(key, None)
            else:
                self._items[key] = previous
            raise

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {key: item.model_dump(mode="json") for key, item in self._items.items()}
        self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            logger.warning(
                "Ignoring unreadable table file %s", self.persistence_path, extra={"operation": self.name}
            )
            data = {}

        for key, payload in data.items():
            self._items[key] = self.model.model_validate(payload)


class AlertStateTable(JsonTable[AlertState]):
    """One alert record per farm; upserts replace the whole record."""

    model = AlertState
    key_field = "farm_id"

    def __init__(
        self,
        name: str,
        persistence_path: Optional[Path] = None,
        reject_stale: bool = False,
    ) -> None:
        super().__init__(name=name, persistence_path=persistence_path)
        self.reject_stale = reject_stale

    def upsert(self, state: AlertState) -> bool:
        """Atomically replace the farm's record.

        Arrival order wins unless ``reject_stale`` is set, in which case a state older than
        the stored one is refused. Returns whether the record was written.
        """
        with self._lock:
            current = self._items.get(state.farm_id)
            if (
                self.reject_stale
                and current is not None
                and state.last_updated < current.last_updated
            ):
                return False
            self._commit(state.farm_id, state)
            return True


class FarmLocationTable(JsonTable[FarmLocation]):
    """Last-writer-wins coordinates per farm."""

    model = FarmLocation
    key_field = "farm_id"

    def update_location(self, location: FarmLocation) -> None:
        self.put_item(location)


@lru_cache
def build_default_alert_table(path: Optional[str] = None) -> AlertStateTable:
    settings = get_settings()
    table_path = settings.alert_state_path if path is None else path
    persistence = Path(table_path) if table_path else None
    return AlertStateTable(
        name="ipm_alerts",
        persistence_path=persistence,
        reject_stale=settings.reject_stale,
    )


@lru_cache
def build_default_location_table(path: Optional[str] = None) -> FarmLocationTable:
    settings = get_settings()
    table_path = settings.farm_location_path if path is None else path
    persistence = Path(table_path) if table_path else None
    return FarmLocationTable(name="farm_locations", persistence_path=persistence)
