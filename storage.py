"""
Flat-file JSON stores, one file per logical data category.

Every mutation reads the whole file, changes it in memory and writes the
whole file back. Each store instance holds a lock around that cycle; two
processes writing the same file still race and the later write wins.
"""
from __future__ import annotations

import json
import logging
import os
import re
import threading
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from records import (
    DoseEntry,
    PlantEntry,
    PlantLink,
    PlantParameters,
    SensorEntry,
    StemHistoryEntry,
    ValidationError,
)

log = logging.getLogger("backend.storage")

T = TypeVar("T")

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def safe_name(value: Optional[str], what: str) -> str:
    """Reject names that cannot be used as a single path component."""
    if not value or not _NAME_RE.match(value):
        raise ValidationError(f"invalid {what} '{value}'")
    return value


class JsonFile:
    """One JSON document on disk."""

    def __init__(self, path: str):
        self.path = path

    def read(self, default: Any) -> Any:
        if not os.path.exists(self.path):
            return default
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError):
            log.exception("[STORE] failed to load %s", self.path)
            return default

    def write(self, data: Any) -> None:
        try:
            parent = os.path.dirname(self.path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError:
            log.exception("[STORE] failed to save %s", self.path)
            raise


class RecordLog(Generic[T]):
    """A JSON array of records kept sorted by timestamp.

    ``key`` names the identity of a record: appending a record whose key is
    already present replaces the old one. ``max_entries`` keeps only the
    newest entries after each append.
    """

    def __init__(self, path: str, parse: Callable[[Dict[str, Any]], T],
                 key: Optional[Callable[[T], Any]] = None,
                 max_entries: Optional[int] = None, sort: bool = True):
        self.file = JsonFile(path)
        self.parse = parse
        self.key = key
        self.max_entries = max_entries
        self.sort = sort
        self._lock = threading.Lock()

    @property
    def path(self) -> str:
        return self.file.path

    def _load(self) -> List[T]:
        raw = self.file.read([])
        if not isinstance(raw, list):
            log.warning("[STORE] %s does not hold a list, ignoring it", self.path)
            return []
        out: List[T] = []
        for item in raw:
            try:
                out.append(self.parse(item))
            except (TypeError, ValueError) as e:
                log.warning("[STORE] skipping unreadable entry in %s: %s", self.path, e)
        return out

    def _save(self, records: List[T]) -> None:
        self.file.write([r.to_dict() for r in records])

    def list(self) -> List[T]:
        with self._lock:
            return self._load()

    def append(self, record: T) -> T:
        with self._lock:
            records = self._load()
            if self.key is not None:
                k = self.key(record)
                records = [r for r in records if self.key(r) != k]
            records.append(record)
            if self.sort:
                records.sort(key=lambda r: r.sort_key())
            if self.max_entries is not None:
                records = records[-self.max_entries:]
            self._save(records)
        log.info("[STORE] %s now holds %d entries", os.path.basename(self.path), len(records))
        return record

    def remove_where(self, predicate: Callable[[T], bool]) -> int:
        with self._lock:
            records = self._load()
            kept = [r for r in records if not predicate(r)]
            removed = len(records) - len(kept)
            if removed:
                self._save(kept)
        return removed

    def remove(self, key: Any) -> bool:
        if self.key is None:
            raise TypeError("store has no record key")
        return self.remove_where(lambda r: self.key(r) == key) > 0

    def clear(self) -> None:
        with self._lock:
            self._save([])
        log.info("[STORE] cleared %s", os.path.basename(self.path))


class DocumentStore:
    """A single JSON object replaced wholesale on every save."""

    def __init__(self, path: str):
        self.file = JsonFile(path)
        self._lock = threading.Lock()

    def load(self) -> PlantParameters:
        with self._lock:
            raw = self.file.read({})
        if not isinstance(raw, dict):
            return PlantParameters()
        try:
            return PlantParameters.from_dict(raw)
        except ValidationError as e:
            log.warning("[STORE] ignoring invalid parameters in %s: %s", self.file.path, e)
            return PlantParameters()

    def save(self, params: PlantParameters) -> PlantParameters:
        with self._lock:
            self.file.write(params.to_dict())
        return params


# ----------------- store factories -----------------
def _stored_sensor(item: Dict[str, Any]) -> SensorEntry:
    return SensorEntry.from_dict(item)


def _stored_plant(item: Dict[str, Any]) -> PlantEntry:
    return PlantEntry.from_dict(item)


def _stored_stem(item: Dict[str, Any]) -> StemHistoryEntry:
    return StemHistoryEntry.from_dict(item)


def _stored_link(item: Dict[str, Any]) -> PlantLink:
    return PlantLink(**item)


def dose_log(data_dir: str, plant: Optional[str] = None) -> RecordLog[DoseEntry]:
    name = "nutrient-entries.json" if not plant else f"{plant}-plant-nutrient-entries.json"
    return RecordLog(os.path.join(data_dir, name), DoseEntry.from_stored, key=lambda e: e.key)


def sensor_log(data_dir: str, category: str) -> RecordLog[SensorEntry]:
    return RecordLog(os.path.join(data_dir, f"{category}-entries.json"), _stored_sensor, max_entries=1000)


def plant_log(data_dir: str, plant: str) -> RecordLog[PlantEntry]:
    return RecordLog(os.path.join(data_dir, f"{plant}-plant-entries.json"), _stored_plant, max_entries=5000)


def stem_history(data_dir: str, plant: str, stem_id: str) -> RecordLog[StemHistoryEntry]:
    path = os.path.join(data_dir, f"{plant}-plant-stem-{stem_id}-history.json")
    return RecordLog(path, _stored_stem, max_entries=1000, sort=False)


def link_log(data_dir: str, page: str) -> RecordLog[PlantLink]:
    path = os.path.join(data_dir, "plant-links", page, "links.json")
    return RecordLog(path, _stored_link, sort=False)


def parameters(data_dir: str, plant: str) -> DocumentStore:
    return DocumentStore(os.path.join(data_dir, f"{plant}-plant-parameters.json"))


class Stores:
    """Caches one store object per file so each file has a single lock."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self._cache: Dict[Tuple[str, ...], Any] = {}
        self._lock = threading.Lock()

    def _get(self, key: Tuple[str, ...], factory: Callable[[], Any]) -> Any:
        with self._lock:
            store = self._cache.get(key)
            if store is None:
                store = factory()
                self._cache[key] = store
            return store

    def doses(self, plant: Optional[str] = None) -> RecordLog[DoseEntry]:
        return self._get(("doses", plant or ""), lambda: dose_log(self.data_dir, plant))

    def sensors(self, category: str) -> RecordLog[SensorEntry]:
        return self._get(("sensors", category), lambda: sensor_log(self.data_dir, category))

    def plant_entries(self, plant: str) -> RecordLog[PlantEntry]:
        return self._get(("plant", plant), lambda: plant_log(self.data_dir, plant))

    def stem_history(self, plant: str, stem_id: str) -> RecordLog[StemHistoryEntry]:
        stem_id = safe_name(stem_id, "stemId")
        return self._get(("stem", plant, stem_id), lambda: stem_history(self.data_dir, plant, stem_id))

    def links(self, page: str) -> RecordLog[PlantLink]:
        page = safe_name(page, "page")
        return self._get(("links", page), lambda: link_log(self.data_dir, page))

    def parameters(self, plant: str) -> DocumentStore:
        return self._get(("params", plant), lambda: parameters(self.data_dir, plant))
