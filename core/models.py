from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

UTC = timezone.utc


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string, epoch seconds or datetime into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        txt = value.strip()
        if not txt:
            return None
        try:
            parsed = datetime.fromisoformat(txt.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        return None
    return number


class Quality(str, Enum):
    """Coverage/freshness classification of a regional composite."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    STALE = "stale"
    OFFLINE = "offline"


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float
    name: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "Coordinates":
        if not isinstance(raw, Mapping):
            raise ValueError("coordinates must be an object")
        lat = _as_number(raw.get("lat"))
        lng = _as_number(raw.get("lng", raw.get("lon")))
        if lat is None or lng is None:
            raise ValueError("coordinates need numeric lat/lng")
        if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lng <= 180.0):
            raise ValueError(f"coordinates out of range: {lat}, {lng}")
        return cls(lat=lat, lng=lng, name=str(raw.get("name") or ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"lat": self.lat, "lng": self.lng, "name": self.name}


@dataclass(frozen=True)
class Station:
    """Weather station metadata. Immutable once loaded."""
    station_id: str
    coordinates: Coordinates
    data_types: Tuple[str, ...]
    priority_level: str = "medium"
    priority_score: float = 0.0
    reliability_score: float = 0.8

    def supports(self, metric: Optional[str]) -> bool:
        return metric is None or metric == "all" or metric in self.data_types

    @classmethod
    def from_dict(cls, raw: Any, default_reliability: float = 0.8) -> "Station":
        """
        Build a validated Station from a reference-data record.

        Raises:
            ValueError: the record is malformed and must be quarantined.
        """
        if not isinstance(raw, Mapping):
            raise ValueError("station record must be an object")

        station_id = raw.get("station_id") or raw.get("id")
        if not isinstance(station_id, str) or not station_id.strip():
            raise ValueError("station record without station_id")
        station_id = station_id.strip()

        coordinates = Coordinates.from_dict(raw.get("coordinates"))

        data_types = raw.get("data_types")
        if not isinstance(data_types, (list, tuple)) or not data_types:
            raise ValueError(f"{station_id}: data_types must be a non-empty list")
        if not all(isinstance(t, str) and t for t in data_types):
            raise ValueError(f"{station_id}: data_types must be strings")

        reliability = raw.get("reliability_score")
        if reliability is None:
            reliability = default_reliability
        reliability = _as_number(reliability)
        if reliability is None or not (0.0 <= reliability <= 1.0):
            raise ValueError(f"{station_id}: reliability_score must be within [0, 1]")

        score = raw.get("priority_score")
        score = 0.0 if score is None else _as_number(score)
        if score is None:
            raise ValueError(f"{station_id}: priority_score must be numeric")

        return cls(
            station_id=station_id,
            coordinates=coordinates,
            data_types=tuple(dict.fromkeys(data_types)),
            priority_level=str(raw.get("priority_level") or "medium"),
            priority_score=score,
            reliability_score=reliability,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "station_id": self.station_id,
            "coordinates": self.coordinates.to_dict(),
            "data_types": list(self.data_types),
            "priority_level": self.priority_level,
            "priority_score": round(self.priority_score, 2),
            "reliability_score": self.reliability_score,
        }


@dataclass(frozen=True)
class Reading:
    """Single station reading for one metric."""
    station_id: str
    metric: str
    value: float
    timestamp: datetime


@dataclass(frozen=True)
class Dataset:
    """One fetched snapshot of readings across metrics."""
    timestamp: datetime
    source: str
    readings: Tuple[Reading, ...]
    rejected: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "Dataset":
        """
        Parse the inbound dataset shape:
        {timestamp, source, data: {metric: {readings: [{station, value}, ...]}}}

        Malformed readings are dropped and counted in ``rejected``.
        """
        if not isinstance(payload, Mapping):
            raise ValueError("dataset payload must be an object")
        timestamp = parse_timestamp(payload.get("timestamp"))
        if timestamp is None:
            raise ValueError("dataset payload without a valid timestamp")

        readings: List[Reading] = []
        rejected = 0
        data = payload.get("data")
        if isinstance(data, Mapping):
            for metric, block in data.items():
                rows = block.get("readings") if isinstance(block, Mapping) else None
                if not isinstance(rows, list):
                    continue
                for row in rows:
                    if not isinstance(row, Mapping):
                        rejected += 1
                        continue
                    station = row.get("station") or row.get("station_id")
                    value = _as_number(row.get("value"))
                    if not isinstance(station, str) or not station or value is None:
                        rejected += 1
                        continue
                    readings.append(Reading(station, str(metric), value, timestamp))

        return cls(
            timestamp=timestamp,
            source=str(payload.get("source") or "unknown"),
            readings=tuple(readings),
            rejected=rejected,
        )

    def for_metric(self, metric: str) -> List[Reading]:
        return [r for r in self.readings if r.metric == metric]

    @property
    def station_ids(self) -> List[str]:
        return sorted({r.station_id for r in self.readings})


@dataclass(frozen=True)
class Region:
    region_id: str
    display_name: str
    member_station_ids: Tuple[str, ...]
    priority: int = 0


@dataclass(frozen=True)
class RegionalComposite:
    """Synthesized per-region readings. ``None`` values mean no data."""
    region_id: str
    values: Mapping[str, Optional[float]]
    quality: Quality
    age_minutes: int
    source_timestamp: datetime
    reporting_stations: int = 0
    expected_stations: int = 0

    @property
    def coverage(self) -> float:
        if self.expected_stations <= 0:
            return 0.0
        return self.reporting_stations / self.expected_stations


@dataclass
class CacheEntry:
    key: str
    payload: Any
    timestamp: float  # epoch seconds
    ttl: float        # seconds

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.timestamp)

    def is_fresh(self, now: float) -> bool:
        return self.age_seconds(now) < self.ttl

    def to_dict(self) -> Dict[str, Any]:
        return {"payload": self.payload, "timestamp": self.timestamp, "ttl": self.ttl}

    @classmethod
    def from_dict(cls, key: str, raw: Mapping[str, Any]) -> "CacheEntry":
        return cls(
            key=key,
            payload=raw["payload"],
            timestamp=float(raw["timestamp"]),
            ttl=float(raw["ttl"]),
        )


@dataclass(frozen=True)
class NetworkProfile:
    """Client network conditions, sampled at fetch time."""
    effective_type: str = "4g"
    downlink: float = 0.0
    rtt: float = 0.0
    save_data: bool = False

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], default: Optional["NetworkProfile"] = None) -> "NetworkProfile":
        """Build a profile from HTTP Client Hints (ECT, Downlink, RTT, Save-Data)."""
        base = default or cls()
        lowered = {str(k).lower(): str(v) for k, v in headers.items()}

        def _float(name: str, fallback: float) -> float:
            try:
                return float(lowered[name])
            except (KeyError, ValueError):
                return fallback

        return cls(
            effective_type=lowered.get("ect", base.effective_type).strip().lower() or base.effective_type,
            downlink=_float("downlink", base.downlink),
            rtt=_float("rtt", base.rtt),
            save_data=lowered.get("save-data", "on" if base.save_data else "").strip().lower() == "on",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "effective_type": self.effective_type,
            "downlink": self.downlink,
            "rtt": self.rtt,
            "save_data": self.save_data,
        }


@dataclass
class CacheClearReport:
    success: bool = True
    cleared_count: int = 0
    cleared_namespaces: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "cleared_count": self.cleared_count,
            "cleared_namespaces": list(self.cleared_namespaces),
            "errors": list(self.errors),
        }
