"""
Record types for every persisted category.

Each record parses untrusted JSON/form input with ``from_dict`` (raising
ValidationError) and produces its stored JSON shape with ``to_dict``.
"""
from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from nutrients import FORMULATIONS, NutrientFormulation, calculate_concentrations


class ValidationError(ValueError):
    """Input that cannot become a record."""


# ----------------- field helpers -----------------
def _number(data: Mapping[str, Any], name: str, default: Optional[float] = None,
            minimum: Optional[float] = None) -> Optional[float]:
    value = data.get(name)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError(f"'{name}' must be a number")
    try:
        num = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{name}' must be a number") from None
    if not math.isfinite(num):
        raise ValidationError(f"'{name}' must be a finite number")
    if minimum is not None and num < minimum:
        raise ValidationError(f"'{name}' must be >= {minimum:g}")
    return num


def _text(data: Mapping[str, Any], name: str) -> Optional[str]:
    value = data.get(name)
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    if not value or not isinstance(value, str):
        raise ValidationError("Timestamp is required")
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"invalid timestamp '{value}'") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _required_timestamp(data: Mapping[str, Any]) -> str:
    raw = data.get("timestamp")
    parse_timestamp(raw)
    return raw.strip()


def _compact(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


# ----------------- nutrient doses -----------------
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}(:\d{2})?$")

DOSE_FIELDS = ("masterblend", "calciumNitrate", "magnesiumSulfate", "phDown", "phUp")


def parse_doses(data: Mapping[str, Any]) -> Dict[str, float]:
    """Validated product amounts (g or ml); absent amounts are 0."""
    if not isinstance(data, Mapping):
        raise ValidationError("request body must be a JSON object")
    return {name: _number(data, name, 0.0, minimum=0) for name in DOSE_FIELDS}


def parse_volume(data: Mapping[str, Any]) -> float:
    return _number(data, "totalVolume", 1.0)


def _date_time(data: Mapping[str, Any]) -> Tuple[str, str]:
    date = _text(data, "date")
    time_ = _text(data, "time")
    if not date or not time_:
        raise ValidationError("Date and time are required")
    if not _DATE_RE.match(date) or not _TIME_RE.match(time_):
        raise ValidationError("Date must be YYYY-MM-DD and time HH:MM")
    try:
        datetime.fromisoformat(f"{date}T{time_}")
    except ValueError:
        raise ValidationError(f"invalid date/time '{date} {time_}'") from None
    return date, time_


@dataclass
class DoseEntry:
    date: str
    time: str
    masterblend: float = 0.0        # g
    calciumNitrate: float = 0.0     # g
    magnesiumSulfate: float = 0.0   # g
    phDown: float = 0.0             # ml
    phUp: float = 0.0               # ml
    totalVolume: float = 1.0        # L
    calculatedElements: Dict[str, float] = field(default_factory=dict)
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any],
                  table: Optional[Tuple[NutrientFormulation, ...]] = None) -> "DoseEntry":
        """Build an entry and compute its concentrations; any client-side values are discarded."""
        doses = parse_doses(data)
        date, time_ = _date_time(data)

        entry = cls(
            date=date,
            time=time_,
            totalVolume=parse_volume(data),
            notes=_text(data, "notes"),
            **doses,
        )
        entry.calculatedElements = calculate_concentrations(entry.doses(), entry.totalVolume, table)
        return entry

    @classmethod
    def from_stored(cls, data: Mapping[str, Any]) -> "DoseEntry":
        """Rebuild a persisted entry without recomputing its concentrations."""
        if not isinstance(data, Mapping):
            raise ValidationError("entry must be a JSON object")
        _date_time(data)
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})

    def doses(self) -> Dict[str, float]:
        return {f.key: getattr(self, f.key, 0.0) for f in FORMULATIONS}

    @property
    def key(self) -> Tuple[str, str]:
        return (self.date, self.time)

    @property
    def timestamp(self) -> str:
        return datetime.fromisoformat(f"{self.date}T{self.time}").isoformat()

    def sort_key(self) -> float:
        return datetime.fromisoformat(f"{self.date}T{self.time}").replace(tzinfo=timezone.utc).timestamp()

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "date": self.date,
            "time": self.time,
            "timestamp": self.timestamp,
            "masterblend": self.masterblend,
            "calciumNitrate": self.calciumNitrate,
            "magnesiumSulfate": self.magnesiumSulfate,
            "phDown": self.phDown,
            "phUp": self.phUp,
            "totalVolume": self.totalVolume,
            "calculatedElements": dict(self.calculatedElements),
            "notes": self.notes,
        })


# ----------------- timestamped logs -----------------
class _TimestampedRecord:
    """Shared parsing for records made of a timestamp plus optional numbers."""

    _text_fields: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]):
        if not isinstance(data, Mapping):
            raise ValidationError("entry must be a JSON object")
        values: Dict[str, Any] = {"timestamp": _required_timestamp(data)}
        for f in fields(cls):
            if f.name == "timestamp":
                continue
            if f.name in cls._text_fields:
                values[f.name] = _text(data, f.name)
            else:
                values[f.name] = _number(data, f.name)
        return cls(**values)

    def sort_key(self) -> float:
        return parse_timestamp(self.timestamp).timestamp()

    def to_dict(self) -> Dict[str, Any]:
        return _compact({f.name: getattr(self, f.name) for f in fields(self)})


@dataclass
class SensorEntry(_TimestampedRecord):
    """Environmental or hydroponic reading as saved from the dashboard."""
    timestamp: str
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    light: Optional[float] = None
    ph: Optional[float] = None
    ec: Optional[float] = None
    waterTemp: Optional[float] = None
    waterQuality: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        # nulls are kept so the dashboard charts see a gap
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class PlantEntry(_TimestampedRecord):
    timestamp: str
    stemId: Optional[str] = None
    stemHeight: Optional[float] = None
    stemDiameter: Optional[float] = None
    leafCount: Optional[float] = None
    budCount: Optional[float] = None
    flowerCount: Optional[float] = None
    nodeCount: Optional[float] = None
    airTemperature: Optional[float] = None
    airHumidity: Optional[float] = None
    lightIntensity: Optional[float] = None
    co2Level: Optional[float] = None
    pH: Optional[float] = None
    ec: Optional[float] = None
    waterTemperature: Optional[float] = None
    tds: Optional[float] = None
    pumpCycles: Optional[float] = None
    flowRate: Optional[float] = None
    notes: Optional[str] = None

    _text_fields = ("stemId", "notes")


@dataclass
class StemHistoryEntry:
    timestamp: str
    height: float = 0.0
    maturedFlowers: float = 0.0
    openBuds: float = 0.0
    unopenedBuds: float = 0.0
    leaves: float = 0.0
    diseases: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StemHistoryEntry":
        if not isinstance(data, Mapping):
            raise ValidationError("entry must be a JSON object")
        diseases = data.get("diseases")
        return cls(
            timestamp=_required_timestamp(data),
            height=_number(data, "height", 0.0),
            maturedFlowers=_number(data, "maturedFlowers", 0.0),
            openBuds=_number(data, "openBuds", 0.0),
            unopenedBuds=_number(data, "unopenedBuds", 0.0),
            leaves=_number(data, "leaves", 0.0),
            diseases="" if diseases is None else str(diseases),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# ----------------- plant parameters -----------------
PLANT_HEALTH = ("excellent", "good", "attention", "critical")
_STEM_KEY_RE = re.compile(r"^stem([A-Z])_(\w+)$")


@dataclass
class StemSnapshot:
    height: Optional[float] = None
    maturedFlowers: Optional[float] = None
    openBuds: Optional[float] = None
    unopenedBuds: Optional[float] = None
    leaves: Optional[float] = None
    diseases: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None


_STEM_TEXT = ("diseases", "date", "time")
_STEM_FIELDS = tuple(f.name for f in fields(StemSnapshot))


@dataclass
class PlantParameters:
    stems: Dict[str, StemSnapshot] = field(default_factory=dict)
    totalMaturedFlowers: Optional[float] = None
    totalOpenBuds: Optional[float] = None
    totalUnopenedBuds: Optional[float] = None
    overallPlantHealth: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlantParameters":
        if not isinstance(data, Mapping):
            raise ValidationError("parameters must be a JSON object")
        params = cls(
            totalMaturedFlowers=_number(data, "totalMaturedFlowers"),
            totalOpenBuds=_number(data, "totalOpenBuds"),
            totalUnopenedBuds=_number(data, "totalUnopenedBuds"),
            overallPlantHealth=_text(data, "overallPlantHealth"),
        )
        if params.overallPlantHealth is not None and params.overallPlantHealth not in PLANT_HEALTH:
            raise ValidationError("overallPlantHealth must be one of " + ", ".join(PLANT_HEALTH))

        for key in data:
            if key in ("totalMaturedFlowers", "totalOpenBuds", "totalUnopenedBuds", "overallPlantHealth"):
                continue
            m = _STEM_KEY_RE.match(key)
            if not m or m.group(2) not in _STEM_FIELDS:
                raise ValidationError(f"unknown parameter '{key}'")
            stem, attr = m.group(1), m.group(2)
            snapshot = params.stems.setdefault(stem, StemSnapshot())
            if attr in _STEM_TEXT:
                value = data.get(key)
                setattr(snapshot, attr, "" if value is None else str(value))
            else:
                setattr(snapshot, attr, _number(data, key))
        return params

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for stem in sorted(self.stems):
            snapshot = self.stems[stem]
            for name in _STEM_FIELDS:
                value = getattr(snapshot, name)
                if value is not None:
                    out[f"stem{stem}_{name}"] = value
        out.update(_compact({
            "totalMaturedFlowers": self.totalMaturedFlowers,
            "totalOpenBuds": self.totalOpenBuds,
            "totalUnopenedBuds": self.totalUnopenedBuds,
            "overallPlantHealth": self.overallPlantHealth,
        }))
        return out


# ----------------- links -----------------
LINK_CATEGORIES = ("tutorial", "research", "documentation", "tools", "suppliers", "guides", "other")


@dataclass
class PlantLink:
    id: str
    stemId: str
    title: str
    url: str
    uploadDate: str
    category: str = "other"
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    location: Optional[str] = None

    @classmethod
    def from_form(cls, data: Mapping[str, Any], now: Optional[float] = None) -> "PlantLink":
        title = _text(data, "title")
        if not title:
            raise ValidationError("Title is required")
        url = _text(data, "url")
        if not url:
            raise ValidationError("URL is required")
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            raise ValidationError("Invalid URL format")

        category = _text(data, "category") or "other"
        if category not in LINK_CATEGORIES:
            raise ValidationError("category must be one of " + ", ".join(LINK_CATEGORIES))

        raw_tags = data.get("tags")
        if isinstance(raw_tags, (list, tuple)):
            tags = [str(t).strip() for t in raw_tags if str(t).strip()]
        elif raw_tags:
            tags = [t.strip() for t in str(raw_tags).split(",") if t.strip()]
        else:
            tags = []

        now = time.time() if now is None else now
        stem_id = _text(data, "stemId") or "SYSTEM"
        return cls(
            id=f"{stem_id}_{int(now * 1000)}",
            stemId=stem_id,
            title=title,
            url=url,
            uploadDate=datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
            category=category,
            description=_text(data, "description"),
            tags=tags or None,
            location=_text(data, "location"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _compact({f.name: getattr(self, f.name) for f in fields(self)})
