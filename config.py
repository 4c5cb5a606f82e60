"""
SG Weather Pipeline - Configuration
Central configuration for stations, regions, refresh scheduling and caches.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

from core.models import Coordinates, Region

# ============================================================================
# PATHS
# ============================================================================

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR / "data"

STATIONS_DATABASE_PATH = os.environ.get(
    "SGW_STATIONS_DB", str(DATA_DIR / "stations" / "nea-stations-complete.json")
)
STATIONS_LEGACY_PATH = str(DATA_DIR / "stations" / "stations-list.json")
CACHE_DIR = Path(os.environ.get("SGW_CACHE_DIR", str(DATA_DIR / "cache")))

# ============================================================================
# API ENDPOINTS
# ============================================================================

# NEA real-time environment API (data.gov.sg)
NEA_API_BASE_URL = os.environ.get("NEA_API_BASE_URL", "https://api.data.gov.sg/v1/environment")

NEA_ENDPOINTS: Dict[str, str] = {
    "temperature": "/air-temperature",
    "humidity": "/relative-humidity",
    "rainfall": "/rainfall",
    "wind_speed": "/wind-speed",
}

# Station discovery also walks the endpoints that are not synthesized
NEA_DISCOVERY_ENDPOINTS: Dict[str, str] = {
    **NEA_ENDPOINTS,
    "wind_direction": "/wind-direction",
}

NEA_USER_AGENT = "SG-Weather-Pipeline/1.0"

# Metrics synthesized into regional composites
COMPOSITE_METRICS: Tuple[str, ...] = ("temperature", "humidity", "rainfall")

# ============================================================================
# KEY LOCATIONS (proximity anchors for station priority)
# ============================================================================

KEY_LOCATIONS: Dict[str, Coordinates] = {
    "hwa_chong": Coordinates(lat=1.3437, lng=103.7640, name="Hwa Chong International School"),
    "bukit_timah": Coordinates(lat=1.3520, lng=103.7767, name="Bukit Timah Nature Reserve"),
    "newton": Coordinates(lat=1.3138, lng=103.8420, name="Newton"),
    "clementi": Coordinates(lat=1.3162, lng=103.7649, name="Clementi"),
}

# Map default center (Bukit Timah)
DEFAULT_CENTER = Coordinates(lat=1.3520, lng=103.7767, name="Bukit Timah Nature Reserve")

# ============================================================================
# STATION PRIORITY
# ============================================================================


@dataclass(frozen=True)
class PriorityWeights:
    """Weights of the station priority composite."""
    proximity: float = 10.0       # points per km inside the horizon
    proximity_horizon_km: float = 10.0
    data_types: float = 5.0       # points per supported metric
    reliability: float = 20.0     # points per unit reliability


@dataclass(frozen=True)
class RegistryConfig:
    """Station registry settings."""
    weights: PriorityWeights = field(default_factory=PriorityWeights)
    # Score thresholds, highest first
    level_thresholds: Tuple[Tuple[str, float], ...] = (
        ("critical", 80.0),
        ("high", 60.0),
        ("medium", 40.0),
    )
    default_reliability: float = 0.8
    max_stations_per_metric: int = 8
    trust_reference_scores: bool = False
    http_timeout_seconds: float = 10.0
    # Monitoring alerts
    alert_min_reliability: float = 0.8
    alert_consecutive_failures: int = 3
    alert_max_data_age_minutes: float = 60.0
    # Cycles seen before low observed reliability is alerted on
    alert_min_cycles: int = 3


# ============================================================================
# REGIONS (canonical region -> station membership)
# ============================================================================

REGIONS: Dict[str, Region] = {
    "hwa-chong": Region(
        region_id="hwa-chong",
        display_name="Hwa Chong",
        member_station_ids=("S109", "S116", "S118", "S121"),
        priority=1,
    ),
    "central": Region(
        region_id="central",
        display_name="Central",
        member_station_ids=("S111", "S115", "S117", "S106"),
        priority=2,
    ),
    "east": Region(
        region_id="east",
        display_name="East",
        member_station_ids=("S07", "S43", "S107"),
        priority=3,
    ),
    "west": Region(
        region_id="west",
        display_name="West",
        member_station_ids=("S24", "S50", "S104", "S108", "S122"),
        priority=3,
    ),
    "north": Region(
        region_id="north",
        display_name="North",
        member_station_ids=("S123", "S44"),
        priority=4,
    ),
    "south": Region(
        region_id="south",
        display_name="South",
        member_station_ids=("S60",),
        priority=4,
    ),
}

# Fixed offset used for "feels like"; a placeholder, not a heat index.
FEELS_LIKE_OFFSET_C = 2.0

# Regional temperature deviation from the island mean worth reporting
CONSISTENCY_THRESHOLD_C = 2.0

# ============================================================================
# QUALITY THRESHOLDS
# ============================================================================

QUALITY_MIN_COVERAGE = 0.8
QUALITY_DEGRADED_AGE_MINUTES = 15
QUALITY_STALE_AGE_MINUTES = 30

# ============================================================================
# SCHEDULER CONFIGURATION
# ============================================================================


@dataclass(frozen=True)
class SchedulerConfig:
    """Refresh scheduling, timeouts and cache fallback."""
    base_interval_seconds: float = float(os.environ.get("SGW_REFRESH_INTERVAL_SECONDS", 30 * 60))
    force_cooldown_seconds: float = float(os.environ.get("SGW_FORCE_COOLDOWN_SECONDS", 30))
    # effective_type -> seconds; anything unlisted uses "default"
    timeouts: Dict[str, float] = field(default_factory=lambda: {
        "slow-2g": 15.0,
        "2g": 15.0,
        "3g": 10.0,
        "default": 8.0,
    })
    save_data_multiplier: float = 2.0
    slow_network_multiplier: float = 1.5
    slow_network_types: Tuple[str, ...] = ("2g", "slow-2g")
    cache_ttl_seconds: float = 5 * 60
    max_stale_minutes: float = 60.0
    cache_namespaces: Tuple[str, ...] = ("memory", "disk")


# Network profile defaults when the caller provides none
DEFAULT_NETWORK_TYPE = os.environ.get("SGW_NETWORK_TYPE", "4g")
DEFAULT_SAVE_DATA = os.environ.get("SGW_SAVE_DATA", "").lower() in ("1", "true", "yes", "on")


def get_regions() -> List[Region]:
    """Return regions ordered by display priority."""
    return sorted(REGIONS.values(), key=lambda r: (r.priority, r.region_id))
