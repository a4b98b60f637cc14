"""Read-mostly device to farm lookup."""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, Mapping, Optional

from settings import get_settings

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Maps ``device_id`` to the owning ``farm_id``.

    Device provisioning happens elsewhere; this process only reads the registry file.
    ``register`` exists for seeding and tests.
    """

    def __init__(
        self,
        devices: Optional[Mapping[str, str]] = None,
        persistence_path: Optional[Path] = None,
    ) -> None:
        self.persistence_path = persistence_path
        self._devices: Dict[str, str] = {}
        self._lock = Lock()
        if persistence_path:
            self._devices = self._read_file() or {}
        if devices:
            self._devices.update(devices)

    def lookup(self, device_id: str) -> Optional[str]:
        with self._lock:
            return self._devices.get(device_id)

    def register(self, device_id: str, farm_id: str) -> None:
        with self._lock:
            self._devices[device_id] = farm_id

    def reload(self) -> bool:
        """Re-read the registry file so devices provisioned after start are seen.

        The previous mapping stays in place until the new one is fully read, and is kept
        when the file cannot be read. Returns whether a new mapping was applied.
        """
        entries = self._read_file()
        if entries is None:
            return False
        with self._lock:
            self._devices = entries
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def _read_file(self) -> Optional[Dict[str, str]]:
        if not self.persistence_path or not self.persistence_path.exists():
            return None

        try:
            data = json.loads(self.persistence_path.read_text() or "{}")
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable device registry %s", self.persistence_path)
            return None
        if not isinstance(data, dict):
            logger.warning("Device registry %s is not a JSON object", self.persistence_path)
            return None

        entries = {
            str(device_id): str(farm_id)
            for device_id, farm_id in data.items()
            if farm_id is not None
        }
        logger.info("Loaded %d device registrations", len(entries))
        return entries


@lru_cache
def build_default_registry(path: Optional[str] = None) -> DeviceRegistry:
    settings = get_settings()
    registry_path = settings.device_registry_path if path is None else path
    return DeviceRegistry(persistence_path=Path(registry_path) if registry_path else None)
