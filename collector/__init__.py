"""
SG Weather Pipeline - Collector Module
Live station readings and station discovery from the NEA real-time API.
"""

from .nea_fetcher import NEAFetcher, fetch_endpoint, fetch_weather_dataset
from .station_discovery import build_stations_database, discover_stations, run_discovery, write_stations_database

__all__ = [
    "NEAFetcher",
    "fetch_endpoint",
    "fetch_weather_dataset",
    "build_stations_database",
    "discover_stations",
    "run_discovery",
    "write_stations_database",
]
