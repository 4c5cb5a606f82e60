"""
SG Weather Pipeline - Regional Synthesizer

Turns one raw dataset into one composite per region:
  1. Parse and validate readings (malformed rows are dropped).
  2. Average member-station readings per metric (None when there are none).
  3. Classify coverage/freshness into healthy / degraded / stale / offline.

Missing data stays None. There are no fallback temperatures.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from config import (
    COMPOSITE_METRICS,
    CONSISTENCY_THRESHOLD_C,
    FEELS_LIKE_OFFSET_C,
    QUALITY_DEGRADED_AGE_MINUTES,
    QUALITY_MIN_COVERAGE,
    QUALITY_STALE_AGE_MINUTES,
)
from core.models import Dataset, Quality, Region, RegionalComposite

logger = logging.getLogger("regional_synthesizer")

DatasetLike = Union[Dataset, Mapping[str, Any]]


def _as_dataset(dataset: DatasetLike) -> Dataset:
    if isinstance(dataset, Dataset):
        return dataset
    return Dataset.from_payload(dataset)


def _mean(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    # fsum is exactly rounded, so the result does not depend on arrival order
    return math.fsum(values) / len(values)


def compute_regional(metric: str, dataset: DatasetLike, region: Region) -> Optional[float]:
    """Mean of ``metric`` over the region's member stations, or None if none reported."""
    members = set(region.member_station_ids)
    values = [r.value for r in _as_dataset(dataset).for_metric(metric) if r.station_id in members]
    return _mean(values)


def classify_quality(reporting: int, expected: int, age_minutes: float) -> Quality:
    """
    offline: no eligible readings
    stale: age >= 30
    degraded: coverage < 0.8 or age in [15, 30)
    healthy: coverage >= 0.8 and age < 15
    """
    if reporting <= 0:
        return Quality.OFFLINE
    if age_minutes >= QUALITY_STALE_AGE_MINUTES:
        return Quality.STALE
    coverage = reporting / expected if expected > 0 else 0.0
    if coverage < QUALITY_MIN_COVERAGE or age_minutes >= QUALITY_DEGRADED_AGE_MINUTES:
        return Quality.DEGRADED
    return Quality.HEALTHY


def feels_like(temperature: Optional[float]) -> Optional[float]:
    """Fixed +2.0 C offset. A display placeholder, not a heat index."""
    if temperature is None:
        return None
    return round(temperature + FEELS_LIKE_OFFSET_C, 1)


class RegionalSynthesizer:
    """
    Owns the current set of regional composites.

    Pass one instance to whoever needs composites; every ``ingest`` rebuilds all
    of them from scratch, and an older dataset never replaces a newer one.
    """

    def __init__(
        self,
        regions: Iterable[Region],
        registry=None,
        metrics: Sequence[str] = COMPOSITE_METRICS,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.regions: Dict[str, Region] = {r.region_id: r for r in regions}
        self.registry = registry
        self.metrics = tuple(metrics)
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._composites: Dict[str, RegionalComposite] = {}
        self._dataset: Optional[Dataset] = None

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------
    def expected_members(self, region: Region) -> List[str]:
        """Members the registry knows to report any synthesized metric."""
        members = list(dict.fromkeys(region.member_station_ids))
        if self.registry is None:
            return members
        known = []
        for station_id in members:
            station = self.registry.lookup_station(station_id)
            if station is not None and any(station.supports(m) for m in self.metrics):
                known.append(station_id)
        return known or members

    def build_composite(self, region: Region, dataset: Dataset, now: datetime) -> RegionalComposite:
        members = set(region.member_station_ids)
        values: Dict[str, Optional[float]] = {}
        reporting = set()
        for metric in self.metrics:
            eligible = [r for r in dataset.for_metric(metric) if r.station_id in members]
            values[metric] = _mean([r.value for r in eligible])
            reporting.update(r.station_id for r in eligible)

        age_minutes = max(0, math.floor((now - dataset.timestamp).total_seconds() / 60))
        expected = len(self.expected_members(region))
        quality = classify_quality(len(reporting), expected, age_minutes)
        return RegionalComposite(
            region_id=region.region_id,
            values=MappingProxyType(values),
            quality=quality,
            age_minutes=age_minutes,
            source_timestamp=dataset.timestamp,
            reporting_stations=len(reporting),
            expected_stations=expected,
        )

    def rebuild(self, dataset: DatasetLike, now: Optional[datetime] = None) -> Dict[str, RegionalComposite]:
        """Total recomputation of every region; does not touch stored state."""
        parsed = _as_dataset(dataset)
        now = now or self._now()
        return {
            region_id: self.build_composite(region, parsed, now)
            for region_id, region in self.regions.items()
        }

    def ingest(self, dataset: DatasetLike) -> bool:
        """
        Replace all composites with ones built from ``dataset``.
        Returns False (and changes nothing) when the dataset is older than the
        one currently shown.
        """
        parsed = _as_dataset(dataset)
        if self._dataset is not None and parsed.timestamp < self._dataset.timestamp:
            logger.info(
                f"Ignoring dataset from {parsed.timestamp.isoformat()} "
                f"(current {self._dataset.timestamp.isoformat()})"
            )
            return False

        is_newer = self._dataset is None or parsed.timestamp > self._dataset.timestamp
        composites = self.rebuild(parsed)
        # swap in one assignment so readers never see a half-built set
        self._composites = composites
        self._dataset = parsed

        if self.registry is not None and is_newer:
            self._record_station_cycle(parsed)

        offline = [k for k, c in composites.items() if c.quality is Quality.OFFLINE]
        logger.info(
            f"Rebuilt {len(composites)} regional composites from {len(parsed.readings)} readings "
            f"({parsed.rejected} rejected, offline: {offline or 'none'})"
        )
        return True

    def _record_station_cycle(self, dataset: Dataset) -> None:
        reported: Dict[str, Set[str]] = {}
        for reading in dataset.readings:
            reported.setdefault(reading.station_id, set()).add(reading.metric)
        expected = {
            station_id
            for region in self.regions.values()
            for station_id in self.expected_members(region)
        }
        unknown = self.registry.record_cycle(
            reported,
            metrics={r.metric for r in dataset.readings},
            expected=expected,
            observed_at=dataset.timestamp,
        )
        if unknown:
            logger.debug(f"Readings from unregistered stations: {', '.join(unknown)}")

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    @property
    def composites(self) -> Mapping[str, RegionalComposite]:
        return MappingProxyType(self._composites)

    @property
    def dataset(self) -> Optional[Dataset]:
        return self._dataset

    def get(self, region_id: str) -> Optional[RegionalComposite]:
        return self._composites.get(region_id)

    def refresh_ages(self) -> None:
        """Recompute age/quality of the current dataset against the clock."""
        if self._dataset is not None:
            self._composites = self.rebuild(self._dataset)

    def to_outbound(self, composite: RegionalComposite) -> Dict[str, Any]:
        region = self.regions.get(composite.region_id)
        temperature = composite.values.get("temperature")
        return {
            "region": composite.region_id,
            "display_name": region.display_name if region else composite.region_id,
            "temperature": temperature,
            "humidity": composite.values.get("humidity"),
            "rainfall": composite.values.get("rainfall"),
            "feels_like": feels_like(temperature),
            "quality": composite.quality.value,
            "age_minutes": composite.age_minutes,
            "last_update": composite.source_timestamp.isoformat(),
            "coverage": round(composite.coverage, 2),
        }

    def outbound(self) -> List[Dict[str, Any]]:
        ordered = sorted(
            self._composites.values(),
            key=lambda c: (self.regions[c.region_id].priority, c.region_id),
        )
        return [self.to_outbound(c) for c in ordered]

    def island_summary(self) -> Optional[Dict[str, Any]]:
        """Singapore-wide means over every reporting station."""
        if self._dataset is None:
            return None
        summary: Dict[str, Any] = {}
        for metric in self.metrics:
            summary[metric] = _mean([r.value for r in self._dataset.for_metric(metric)])
        summary["station_count"] = len(self._dataset.station_ids)
        summary["source"] = self._dataset.source
        summary["last_update"] = self._dataset.timestamp.isoformat()
        return summary

    def consistency_report(self, threshold_c: float = CONSISTENCY_THRESHOLD_C) -> Dict[str, Any]:
        """Regions whose temperature deviates from the island mean by more than ``threshold_c``."""
        summary = self.island_summary() or {}
        overall = summary.get("temperature")
        issues = []
        regional = {}
        for region_id, composite in sorted(self._composites.items()):
            temp = composite.values.get("temperature")
            regional[region_id] = temp
            if temp is None or overall is None:
                continue
            diff = abs(temp - overall)
            if diff > threshold_c:
                issues.append({"region": region_id, "temperature": temp, "deviation": round(diff, 2)})
        return {
            "is_consistent": not issues,
            "overall_temperature": overall,
            "regional_temperatures": regional,
            "issues": issues,
        }
