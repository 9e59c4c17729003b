import json
import logging
import os
import time
from typing import Dict, List, Optional

LOG = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when the state file cannot be read or written."""


def record_key(source: str, item_id: str) -> str:
    return f"{source}+{item_id}"


def favorite_key(source: str, channel_id: str, tvg_id: Optional[str] = None) -> str:
    return f"{source}+{tvg_id or channel_id}"


class JsonStateStore:
    """Small JSON document split into named sections, written atomically."""

    def __init__(self, path: str):
        self.path = path
        self._data: Optional[Dict[str, Dict]] = None

    def _load(self) -> Dict[str, Dict]:
        if self._data is not None:
            return self._data
        data: Dict[str, Dict] = {}
        if os.path.exists(self.path):
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    data = {k: v for k, v in loaded.items() if isinstance(v, dict)}
            except (OSError, ValueError) as e:
                raise StorageError(f"Failed to read {self.path}: {e}") from e
        self._data = data
        return data

    def _save(self) -> None:
        data = self._load()
        try:
            dir_path = os.path.dirname(self.path)
            if dir_path:
                os.makedirs(dir_path, exist_ok=True)
            tmp_path = self.path + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}") from e

    def get(self, section: str, key: str) -> Optional[Dict]:
        value = self._load().get(section, {}).get(key)
        return dict(value) if isinstance(value, dict) else value

    def put(self, section: str, key: str, value) -> None:
        self._load().setdefault(section, {})[key] = value
        self._save()

    def delete(self, section: str, key: str) -> None:
        bucket = self._load().get(section, {})
        if key in bucket:
            del bucket[key]
            self._save()

    def section(self, section: str) -> Dict:
        return dict(self._load().get(section, {}))


class PlayRecordStore:
    """Resume records: ``{index, play_time, total_time, intro_end_time?, outro_start_time?, ...}``."""

    SECTION = "play_records"

    def __init__(self, store: JsonStateStore):
        self.store = store

    def get(self, source: str, item_id: str) -> Optional[Dict]:
        return self.store.get(self.SECTION, record_key(source, item_id))

    def save(self, source: str, item_id: str, record: Dict) -> None:
        payload = {k: v for k, v in record.items() if v is not None}
        payload["save_time"] = int(time.time())
        self.store.put(self.SECTION, record_key(source, item_id), payload)
        LOG.debug("Saved play record %s: index=%s play_time=%s",
                  record_key(source, item_id), payload.get("index"), payload.get("play_time"))

    def remove(self, source: str, item_id: str) -> None:
        self.store.delete(self.SECTION, record_key(source, item_id))


class PlayerSettingsStore:
    SECTION = "player_settings"

    def __init__(self, store: JsonStateStore):
        self.store = store

    def get(self, source: str, item_id: str) -> Optional[Dict]:
        return self.store.get(self.SECTION, record_key(source, item_id))

    def save(self, source: str, item_id: str, settings: Dict) -> None:
        key = record_key(source, item_id)
        merged = self.store.get(self.SECTION, key) or {}
        for k, v in settings.items():
            if v is None:
                merged.pop(k, None)
            else:
                merged[k] = v
        self.store.put(self.SECTION, key, merged)


class FavoritesStore:
    SECTION = "favorites"

    def __init__(self, store: JsonStateStore):
        self.store = store

    def is_favorite(self, key: str) -> bool:
        return bool(self.store.get(self.SECTION, key))

    def set_favorite(self, key: str, value: bool) -> None:
        if value:
            self.store.put(self.SECTION, key, {"added": int(time.time())})
        else:
            self.store.delete(self.SECTION, key)

    def toggle(self, key: str) -> bool:
        new_value = not self.is_favorite(key)
        self.set_favorite(key, new_value)
        return new_value

    def keys(self) -> List[str]:
        return sorted(self.store.section(self.SECTION))
