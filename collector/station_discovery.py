"""
SG Weather Pipeline - NEA Station Discovery
Rebuilds the comprehensive stations database from what the live NEA API reports.

Flow:
  1. Query every discovery endpoint; collect station ids and the metrics each one reports.
  2. Resolve coordinates from NEA station metadata, then from the station registry.
  3. Score each station with the registry's priority formula.
  4. Write {metadata, statistics, stations, ...} atomically.

Stations whose coordinates cannot be resolved are skipped and logged, never guessed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx

from config import NEA_API_BASE_URL, NEA_DISCOVERY_ENDPOINTS, NEA_USER_AGENT, STATIONS_DATABASE_PATH
from core.errors import FetchError
from core.models import Coordinates, Station
from core.registry import StationRegistry

logger = logging.getLogger("station_discovery")

DATABASE_VERSION = "1.0.0"
DISCOVERY_TIMEOUT_SECONDS = 15.0


@dataclass
class DiscoveredStation:
    station_id: str
    data_types: List[str] = field(default_factory=list)
    readings_count: int = 0
    location: Optional[Coordinates] = None  # as published in the NEA station metadata
    latest: Dict[str, float] = field(default_factory=dict)


def _metadata_location(raw: Any) -> Optional[Coordinates]:
    if not isinstance(raw, dict):
        return None
    location = raw.get("location") or {}
    try:
        return Coordinates.from_dict({
            "lat": location.get("latitude"),
            "lng": location.get("longitude"),
            "name": raw.get("name") or "",
        })
    except (ValueError, AttributeError):
        return None


def merge_endpoint_payload(found: Dict[str, DiscoveredStation], metric: str, payload: Any) -> int:
    """Fold one NEA response into ``found``; returns the number of readings seen."""
    if not isinstance(payload, dict):
        return 0
    locations = {}
    for raw in (payload.get("metadata") or {}).get("stations") or []:
        station_id = raw.get("id") if isinstance(raw, dict) else None
        loc = _metadata_location(raw)
        if isinstance(station_id, str) and loc is not None:
            locations[station_id] = loc

    items = payload.get("items")
    if not isinstance(items, list) or not items or not isinstance(items[0], dict):
        return 0
    count = 0
    for row in items[0].get("readings") or []:
        station_id = row.get("station_id") if isinstance(row, dict) else None
        if not isinstance(station_id, str) or not station_id:
            continue
        station = found.setdefault(station_id, DiscoveredStation(station_id))
        if metric not in station.data_types:
            station.data_types.append(metric)
        station.readings_count += 1
        value = row.get("value")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            station.latest[metric] = float(value)
        if station.location is None and station_id in locations:
            station.location = locations[station_id]
        count += 1
    return count


async def discover_stations(
    client: httpx.AsyncClient,
    endpoints: Optional[Dict[str, str]] = None,
) -> Dict[str, DiscoveredStation]:
    """Query every endpoint concurrently; a failed endpoint is logged and skipped."""
    endpoints = endpoints or NEA_DISCOVERY_ENDPOINTS

    async def _get(path: str) -> Any:
        response = await client.get(path)
        response.raise_for_status()
        return response.json()

    metrics = list(endpoints)
    results = await asyncio.gather(*(_get(endpoints[m]) for m in metrics), return_exceptions=True)

    found: Dict[str, DiscoveredStation] = {}
    for metric, result in zip(metrics, results):
        if isinstance(result, BaseException):
            logger.warning(f"Discovery of {metric} stations failed: {result!r}")
            continue
        count = merge_endpoint_payload(found, metric, result)
        logger.info(f"Found {count} {metric} stations")
    logger.info(f"Discovery complete: {len(found)} unique stations")
    return found


def build_stations_database(
    discovered: Dict[str, DiscoveredStation],
    registry: StationRegistry,
    endpoints: Optional[Dict[str, str]] = None,
    generated_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Resolve coordinates, score and lay out the comprehensive database document."""
    generated_at = (generated_at or datetime.now(timezone.utc)).isoformat()
    endpoints = endpoints or NEA_DISCOVERY_ENDPOINTS

    records: List[Dict[str, Any]] = []
    skipped: List[str] = []
    for station_id in sorted(discovered):
        found = discovered[station_id]
        known = registry.lookup_station(station_id)
        if found.location is not None:
            coordinates, source = found.location, "nea_metadata"
            if not coordinates.name and known is not None:
                coordinates = Coordinates(coordinates.lat, coordinates.lng, known.coordinates.name)
        elif known is not None:
            coordinates, source = known.coordinates, "known_database"
        else:
            skipped.append(station_id)
            continue

        station = Station(
            station_id=station_id,
            coordinates=coordinates,
            data_types=tuple(found.data_types),
            reliability_score=known.reliability_score if known else registry.config.default_reliability,
        )
        score = registry.compute_priority_score(station)
        nearest, distance = registry.nearest_key_location(station)
        record = replace(station, priority_level=registry.priority_level_for(score), priority_score=score).to_dict()
        record["coordinates"]["source"] = source
        record["nearest_key_location"] = nearest
        record["nearest_key_distance_km"] = round(distance, 2)
        record["readings_count"] = found.readings_count
        record["latest"] = dict(found.latest)
        records.append(record)

    if skipped:
        logger.warning(f"Skipped {len(skipped)} stations without known coordinates: {', '.join(skipped)}")

    records.sort(key=lambda r: (-r["priority_score"], r["station_id"]))

    data_types: Dict[str, int] = {}
    priority_levels: Dict[str, int] = {}
    coordinate_sources: Dict[str, int] = {}
    for record in records:
        for metric in record["data_types"]:
            data_types[metric] = data_types.get(metric, 0) + 1
        level = record["priority_level"]
        priority_levels[level] = priority_levels.get(level, 0) + 1
        source = record["coordinates"]["source"]
        coordinate_sources[source] = coordinate_sources.get(source, 0) + 1

    return {
        "metadata": {
            "version": DATABASE_VERSION,
            "generated_at": generated_at,
            "generated_by": "sg-weather station discovery",
            "description": "NEA Singapore weather stations with coordinates and priority scores",
            "total_stations": len(records),
            "api_sources": list(endpoints),
        },
        "statistics": {
            "total_stations": len(records),
            "data_types": data_types,
            "priority_levels": priority_levels,
            "coordinate_sources": coordinate_sources,
            "skipped_stations": skipped,
            "generated_at": generated_at,
            "key_locations": {k: loc.to_dict() for k, loc in sorted(registry.key_locations.items())},
        },
        "stations": records,
        "station_types": {
            metric: [r["station_id"] for r in records if metric in r["data_types"]]
            for metric in endpoints
        },
        "priority_groups": {
            level: [r["station_id"] for r in records if r["priority_level"] == level]
            for level in ("critical", "high", "medium", "low")
        },
    }


def write_stations_database(database: Dict[str, Any], path: Union[str, Path]) -> Path:
    """Write atomically: the old file stays intact until the new one is complete."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(database, indent=2, ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)
    logger.info(f"Stations database written to {path} ({database['metadata']['total_stations']} stations)")
    return path


async def run_discovery(
    path: Union[str, Path] = STATIONS_DATABASE_PATH,
    registry: Optional[StationRegistry] = None,
    base_url: str = NEA_API_BASE_URL,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: float = DISCOVERY_TIMEOUT_SECONDS,
) -> Dict[str, Any]:
    """
    Discover stations and rewrite the database at ``path``.

    Raises:
        FetchError: no endpoint reported any station; the existing file is kept.
    """
    if registry is None:
        registry = StationRegistry()
        registry.load_stations_database()

    async with httpx.AsyncClient(
        base_url=base_url,
        timeout=timeout,
        headers={"Accept": "application/json", "User-Agent": NEA_USER_AGENT},
        follow_redirects=True,
        transport=transport,
    ) as client:
        discovered = await discover_stations(client)

    if not discovered:
        raise FetchError("No stations reported by any NEA endpoint")

    database = build_stations_database(discovered, registry)
    write_stations_database(database, path)
    return database
