"""
SG Weather Pipeline - Station Registry & Proximity Resolver

Holds NEA station metadata and answers "which stations should represent this
place or metric":
  1. Load the comprehensive stations database (file or URL).
  2. Fall back to the legacy stations list, then to a built-in station set.
  3. Score every station (proximity to key locations, metric count, reliability).
  4. Rank / filter stations by metric, priority and distance.
  5. Track which stations report each ingest cycle and raise monitoring alerts.
"""

from __future__ import annotations

import json
import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

import httpx

from config import (
    KEY_LOCATIONS,
    STATIONS_DATABASE_PATH,
    STATIONS_LEGACY_PATH,
    RegistryConfig,
)
from core.errors import LoadError
from core.models import Coordinates, Station

logger = logging.getLogger("station_registry")

EARTH_RADIUS_KM = 6371.0
PRIORITY_LEVELS_ELIGIBLE = ("critical", "high")

# Last-resort station set when neither reference source can be read.
_BUILTIN_STATIONS: List[Dict[str, Any]] = [
    {
        "station_id": "S60",
        "coordinates": {"lat": 1.2494, "lng": 103.8303, "name": "Sentosa Island"},
        "data_types": ["temperature", "humidity", "rainfall"],
        "priority_level": "high",
        "priority_score": 75,
    },
    {
        "station_id": "S24",
        "coordinates": {"lat": 1.3677, "lng": 103.7069, "name": "Choa Chu Kang"},
        "data_types": ["temperature", "humidity", "rainfall"],
        "priority_level": "high",
        "priority_score": 70,
    },
    {
        "station_id": "S107",
        "coordinates": {"lat": 1.3048, "lng": 103.9318, "name": "East Coast Parkway"},
        "data_types": ["temperature", "humidity", "rainfall"],
        "priority_level": "medium",
        "priority_score": 65,
    },
    {
        "station_id": "S104",
        "coordinates": {"lat": 1.3496, "lng": 103.7063, "name": "Jurong West"},
        "data_types": ["temperature", "humidity", "rainfall"],
        "priority_level": "medium",
        "priority_score": 60,
    },
    {
        "station_id": "S117",
        "coordinates": {"lat": 1.3138, "lng": 103.8420, "name": "Newton Road"},
        "data_types": ["rainfall"],
        "priority_level": "high",
        "priority_score": 80,
    },
    {
        "station_id": "S50",
        "coordinates": {"lat": 1.3162, "lng": 103.7649, "name": "Clementi Road"},
        "data_types": ["rainfall"],
        "priority_level": "high",
        "priority_score": 75,
    },
]

PointLike = Union[Coordinates, Tuple[float, float], Mapping[str, float]]


def calculate_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle (haversine) distance in km."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _as_point(point: PointLike) -> Tuple[float, float]:
    """(lat, lng) from Coordinates, a {lat, lng|lon} mapping or a pair."""
    if isinstance(point, Coordinates):
        return point.lat, point.lng
    if isinstance(point, Mapping):
        lat = point.get("lat")
        lng = point.get("lng", point.get("lon"))
    else:
        try:
            lat, lng = point
        except (TypeError, ValueError) as e:
            raise ValueError(f"point must be a (lat, lng) pair: {point!r}") from e
    try:
        return float(lat), float(lng)
    except (TypeError, ValueError) as e:
        raise ValueError(f"point needs numeric lat and lng: {point!r}") from e


@dataclass
class StationsDatabase:
    """Loaded reference data plus provenance."""
    stations: Dict[str, Station]
    source: str
    loaded_at: datetime
    quarantined: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_stations(self) -> int:
        return len(self.stations)


@dataclass
class StationHealth:
    """Observed reporting record of one station across ingest cycles."""
    station_id: str
    known: bool = True
    status: str = "unknown"  # active | inactive | unknown
    last_seen: Optional[datetime] = None
    data_types: List[str] = field(default_factory=list)
    reading_count: int = 0
    cycles: int = 0
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    # metric -> [reported cycles, tracked cycles]
    history: Dict[str, List[int]] = field(default_factory=dict)

    def record(self, reported: Set[str], tracked: Set[str], observed_at: datetime) -> None:
        self.cycles += 1
        for metric in tracked | reported:
            counts = self.history.setdefault(metric, [0, 0])
            counts[1] += 1
            if metric in reported:
                counts[0] += 1
        if reported:
            self.status = "active"
            self.last_seen = observed_at
            self.reading_count += len(reported)
            self.consecutive_successes += 1
            self.consecutive_failures = 0
            for metric in sorted(reported):
                if metric not in self.data_types:
                    self.data_types.append(metric)
        else:
            self.status = "inactive"
            self.consecutive_failures += 1
            self.consecutive_successes = 0

    @property
    def observed_reliability(self) -> Optional[float]:
        """Mean per-metric share of cycles in which the station reported."""
        ratios = [ok / total for ok, total in self.history.values() if total]
        if not ratios:
            return None
        return math.fsum(ratios) / len(ratios)

    def to_dict(self) -> Dict[str, Any]:
        reliability = self.observed_reliability
        return {
            "station_id": self.station_id,
            "known": self.known,
            "status": self.status,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "data_types": list(self.data_types),
            "reading_count": self.reading_count,
            "cycles": self.cycles,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "observed_reliability": None if reliability is None else round(reliability, 3),
        }


class StationRegistry:
    """
    Station metadata store and ranking engine.

    The comprehensive database is the primary tier; the legacy stations list is
    consulted explicitly by ``lookup_station`` for ids the primary tier lacks.
    """

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        key_locations: Optional[Mapping[str, Coordinates]] = None,
        database_source: Optional[str] = None,
        legacy_source: Optional[str] = None,
    ):
        self.config = config or RegistryConfig()
        self.key_locations: Dict[str, Coordinates] = dict(
            KEY_LOCATIONS if key_locations is None else key_locations
        )
        self.database_source = database_source or STATIONS_DATABASE_PATH
        self.legacy_source = legacy_source or STATIONS_LEGACY_PATH

        self._lock = threading.Lock()
        self._health_lock = threading.Lock()
        self._database: Optional[StationsDatabase] = None
        self._legacy: Dict[str, Station] = {}
        self._health: Dict[str, StationHealth] = {}
        self._unknown: Set[str] = set()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    @classmethod
    def from_stations(
        cls,
        stations: Iterable[Union[Station, Mapping[str, Any]]],
        config: Optional[RegistryConfig] = None,
        key_locations: Optional[Mapping[str, Coordinates]] = None,
        source: str = "inline",
    ) -> "StationRegistry":
        """Build a registry directly from station records (no I/O)."""
        registry = cls(config=config, key_locations=key_locations)
        records = [s.to_dict() if isinstance(s, Station) else s for s in stations]
        registry._database = registry._build_database(records, source=source, metadata={})
        return registry

    @property
    def database(self) -> StationsDatabase:
        if self._database is None:
            return self.load_stations_database()
        return self._database

    def load_stations_database(self, source: Optional[str] = None, force: bool = False) -> StationsDatabase:
        """
        Load station reference data. Idempotent: an already loaded database is
        returned as-is unless ``force`` is set.

        Never raises: malformed or unreachable sources degrade to the legacy
        list and finally to the built-in station set.
        """
        with self._lock:
            if self._database is not None and not force:
                return self._database

            primary = source or self.database_source
            try:
                records, metadata = self._read_records(primary)
                database = self._build_database(records, source=str(primary), metadata=metadata)
            except LoadError as e:
                logger.warning(f"Comprehensive stations database unavailable ({e}); trying legacy list")
                try:
                    records, metadata = self._read_records(self.legacy_source)
                    database = self._build_database(records, source="legacy", metadata=metadata)
                except LoadError as e2:
                    logger.warning(f"Legacy stations list unavailable ({e2}); using built-in stations")
                    database = self._build_database(_BUILTIN_STATIONS, source="builtin", metadata={})

            self._database = database
            self._load_legacy_table()

            logger.info(
                f"Stations database loaded: {database.total_stations} stations "
                f"(source={database.source}, quarantined={database.quarantined})"
            )
            for metric, count in sorted(self._metric_counts(database).items()):
                logger.debug(f"  - {metric}: {count} stations")
            return database

    def _load_legacy_table(self) -> None:
        if self._legacy:
            return
        try:
            records, _ = self._read_records(self.legacy_source)
        except LoadError as e:
            logger.debug(f"Legacy stations table not loaded: {e}")
            return
        for raw in records:
            try:
                station = Station.from_dict(raw, default_reliability=self.config.default_reliability)
            except ValueError:
                continue
            self._legacy[station.station_id] = self._score(station)

    def _read_records(self, source: Optional[str]) -> Tuple[List[Any], Dict[str, Any]]:
        """Read station records from a path or http(s) URL."""
        if not source:
            raise LoadError("no source configured")
        try:
            if str(source).startswith(("http://", "https://")):
                response = httpx.get(str(source), timeout=self.config.http_timeout_seconds)
                response.raise_for_status()
                payload = response.json()
            else:
                payload = json.loads(Path(source).read_text(encoding="utf-8"))
        except (OSError, ValueError, httpx.HTTPError) as e:
            raise LoadError(f"{source}: {e}") from e

        if isinstance(payload, list):
            return payload, {}
        if isinstance(payload, dict) and isinstance(payload.get("stations"), list):
            metadata = payload.get("metadata")
            return payload["stations"], metadata if isinstance(metadata, dict) else {}
        raise LoadError(f"{source}: expected a list of stations or an object with 'stations'")

    def _build_database(self, records: Sequence[Any], source: str, metadata: Dict[str, Any]) -> StationsDatabase:
        stations: Dict[str, Station] = {}
        quarantined = 0
        for raw in records:
            try:
                station = Station.from_dict(raw, default_reliability=self.config.default_reliability)
            except ValueError as e:
                quarantined += 1
                logger.warning(f"Quarantined station record from {source}: {e}")
                continue
            if station.station_id in stations:
                quarantined += 1
                logger.warning(f"Duplicate station {station.station_id} in {source}; keeping first")
                continue
            stations[station.station_id] = self._score(station)

        if not stations:
            raise LoadError(f"{source}: no valid station records")

        return StationsDatabase(
            stations=stations,
            source=source,
            loaded_at=datetime.now(timezone.utc),
            quarantined=quarantined,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    def nearest_key_location(self, station: Station) -> Tuple[Optional[str], float]:
        """Return (key, distance_km) of the closest key location."""
        best_key: Optional[str] = None
        best_distance = math.inf
        for key in sorted(self.key_locations):
            loc = self.key_locations[key]
            d = calculate_distance(station.coordinates.lat, station.coordinates.lng, loc.lat, loc.lng)
            if d < best_distance:
                best_key, best_distance = key, d
        return best_key, best_distance

    def compute_priority_score(self, station: Station) -> float:
        """Weighted composite of proximity, supported metrics and reliability."""
        w = self.config.weights
        _, distance = self.nearest_key_location(station)
        proximity = 0.0 if math.isinf(distance) else max(0.0, w.proximity_horizon_km - distance)
        score = (
            proximity * w.proximity
            + len(station.data_types) * w.data_types
            + station.reliability_score * w.reliability
        )
        return round(score, 6)

    def priority_level_for(self, score: float) -> str:
        for level, threshold in self.config.level_thresholds:
            if score >= threshold:
                return level
        return "low"

    def _score(self, station: Station) -> Station:
        if self.config.trust_reference_scores and station.priority_score:
            return station
        score = self.compute_priority_score(station)
        return Station(
            station_id=station.station_id,
            coordinates=station.coordinates,
            data_types=station.data_types,
            priority_level=self.priority_level_for(score),
            priority_score=score,
            reliability_score=station.reliability_score,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def all_stations(self) -> List[Station]:
        return [self.database.stations[k] for k in sorted(self.database.stations)]

    def get_station(self, station_id: str) -> Optional[Station]:
        return self.database.stations.get(station_id)

    def lookup_station(self, station_id: str) -> Optional[Station]:
        """Comprehensive registry first, then the legacy table. No placeholders."""
        station = self.get_station(station_id)
        if station is not None:
            return station
        return self._legacy.get(station_id)

    def get_stations_by_proximity(
        self,
        point: PointLike,
        radius_km: float = 10.0,
        metric: Optional[str] = None,
    ) -> List[Station]:
        """Stations within ``radius_km`` of ``point``, nearest first."""
        return [s for s, _ in self.get_stations_with_distance(point, radius_km, metric)]

    def get_stations_with_distance(
        self,
        point: PointLike,
        radius_km: float = 10.0,
        metric: Optional[str] = None,
    ) -> List[Tuple[Station, float]]:
        lat, lng = _as_point(point)
        hits: List[Tuple[Station, float]] = []
        for station in self.all_stations():
            if metric and not station.supports(metric):
                continue
            d = calculate_distance(lat, lng, station.coordinates.lat, station.coordinates.lng)
            if d <= radius_km:
                hits.append((station, d))
        hits.sort(key=lambda item: (item[1], item[0].station_id))
        return hits

    def get_optimal_stations(
        self,
        metric: Optional[str] = None,
        max_stations: Optional[int] = None,
        priority_only: bool = False,
    ) -> List[Station]:
        """
        Best stations for a metric: priority_score desc, then reliability desc,
        then station_id asc.
        """
        limit = self.config.max_stations_per_metric if max_stations is None else max(0, int(max_stations))
        candidates = [s for s in self.all_stations() if s.supports(metric)]

        if priority_only:
            eligible = [s for s in candidates if s.priority_level in PRIORITY_LEVELS_ELIGIBLE]
            if eligible:
                candidates = eligible
            else:
                logger.info(f"No critical/high stations for {metric or 'all'}; using all candidates")

        ranked = sorted(
            candidates,
            key=lambda s: (-s.priority_score, -s.reliability_score, s.station_id),
        )
        return ranked[:limit]

    # ------------------------------------------------------------------
    # Monitoring / health
    # ------------------------------------------------------------------
    def record_cycle(
        self,
        reported: Mapping[str, Iterable[str]],
        metrics: Iterable[str],
        expected: Iterable[str] = (),
        observed_at: Optional[datetime] = None,
    ) -> List[str]:
        """
        Record one ingest cycle.

        ``reported`` maps station id -> metrics it delivered. Known stations that
        are expected, or were seen before, and delivered nothing are marked
        inactive. Returns reporting ids unknown to both registry tiers.
        """
        observed_at = observed_at or datetime.now(timezone.utc)
        cycle_metrics = set(metrics)
        unknown: List[str] = []
        with self._health_lock:
            candidates = set(expected) | set(self._health) | set(reported)
            for station_id in sorted(candidates):
                delivered = set(reported.get(station_id, ()))
                station = self.lookup_station(station_id)
                if station is None:
                    if not delivered:
                        continue
                    unknown.append(station_id)
                    if station_id not in self._unknown:
                        self._unknown.add(station_id)
                        logger.warning(f"Station {station_id} is reporting but is not in any station table")
                tracked = set(station.data_types) & cycle_metrics if station else set()
                if not tracked and not delivered:
                    continue
                health = self._health.get(station_id)
                if health is None:
                    health = self._health[station_id] = StationHealth(station_id, known=station is not None)
                was_active = health.status == "active"
                health.record(delivered, tracked, observed_at)
                if was_active and health.status == "inactive":
                    logger.info(f"Station {station_id} stopped reporting")
        return unknown

    def get_station_status(self, station_id: str) -> Optional[Dict[str, Any]]:
        health = self._health.get(station_id)
        return health.to_dict() if health else None

    def check_alerts(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """low_reliability, consecutive_failures and stale_data alerts per station."""
        now = now or datetime.now(timezone.utc)
        cfg = self.config
        alerts: List[Dict[str, Any]] = []
        with self._health_lock:
            snapshot = sorted(self._health.items())
        for station_id, health in snapshot:
            reliability = health.observed_reliability
            if (
                reliability is not None
                and health.cycles >= cfg.alert_min_cycles
                and reliability < cfg.alert_min_reliability
            ):
                alerts.append({
                    "type": "low_reliability",
                    "station_id": station_id,
                    "severity": "warning",
                    "message": f"Station {station_id} reliability dropped to {reliability * 100:.1f}%",
                    "reliability": round(reliability, 3),
                })
            if health.consecutive_failures >= cfg.alert_consecutive_failures:
                alerts.append({
                    "type": "consecutive_failures",
                    "station_id": station_id,
                    "severity": "error",
                    "message": f"Station {station_id} has {health.consecutive_failures} consecutive failures",
                    "consecutive_failures": health.consecutive_failures,
                })
            if health.last_seen is not None:
                age_minutes = (now - health.last_seen).total_seconds() / 60
                if age_minutes > cfg.alert_max_data_age_minutes:
                    alerts.append({
                        "type": "stale_data",
                        "station_id": station_id,
                        "severity": "warning",
                        "message": f"Station {station_id} data is {age_minutes:.0f} minutes old",
                        "data_age_minutes": round(age_minutes),
                    })
        return alerts

    def _metric_counts(self, database: StationsDatabase) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for station in database.stations.values():
            for metric in station.data_types:
                counts[metric] = counts.get(metric, 0) + 1
        return counts

    def get_health_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        db = self._database
        tracked = [h for h in self._health.values() if h.known]
        observed = [h.observed_reliability for h in tracked if h.observed_reliability is not None]
        return {
            "database_loaded": db is not None,
            "database_source": db.source if db else None,
            "last_update": db.loaded_at.isoformat() if db else None,
            "total_stations": db.total_stations if db else 0,
            "quarantined": db.quarantined if db else 0,
            "legacy_stations": len(self._legacy),
            "active_stations": sum(1 for h in tracked if h.status == "active"),
            "inactive_stations": sorted(h.station_id for h in tracked if h.status == "inactive"),
            "unknown_stations": sorted(self._unknown),
            "average_reliability": round(math.fsum(observed) / len(observed), 3) if observed else None,
            "alerts": self.check_alerts(now),
            "metrics": self._metric_counts(db) if db else {},
        }
