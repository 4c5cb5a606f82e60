"""
SG Weather Pipeline - NEA Real-Time Fetcher
Fetches station readings from the data.gov.sg environment API.

All endpoints are queried concurrently. A failed endpoint only drops its own
metric; the fetch as a whole fails when no temperature readings arrive.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config import NEA_API_BASE_URL, NEA_ENDPOINTS, NEA_USER_AGENT
from core.errors import FetchError
from core.models import parse_timestamp

logger = logging.getLogger("nea_fetcher")

NEA_REQUEST_TIMEOUT_SECONDS = 10.0


def _parse_endpoint_payload(payload: Any) -> Tuple[List[Dict[str, Any]], Optional[datetime]]:
    """Extract [{station, value}] and the item timestamp from one NEA response."""
    if not isinstance(payload, dict):
        return [], None
    items = payload.get("items")
    if not isinstance(items, list) or not items or not isinstance(items[0], dict):
        return [], None
    item = items[0]
    readings = []
    for row in item.get("readings") or []:
        if not isinstance(row, dict):
            continue
        station = row.get("station_id")
        value = row.get("value")
        if not isinstance(station, str) or isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        readings.append({"station": station, "value": float(value)})
    return readings, parse_timestamp(item.get("timestamp"))


async def fetch_endpoint(client: httpx.AsyncClient, metric: str) -> Dict[str, Any]:
    """GET one NEA endpoint and return its JSON body."""
    path = NEA_ENDPOINTS.get(metric)
    if path is None:
        raise ValueError(f"Unknown NEA endpoint: {metric}")
    response = await client.get(path)
    response.raise_for_status()
    return response.json()


async def fetch_weather_dataset(
    client: Optional[httpx.AsyncClient] = None,
    metrics: Optional[List[str]] = None,
    timeout: float = NEA_REQUEST_TIMEOUT_SECONDS,
) -> Dict[str, Any]:
    """
    Fetch every configured metric and return the inbound dataset shape:
    {timestamp, source, data: {metric: {readings: [...]}}, ...}

    Raises:
        FetchError: no temperature readings could be fetched.
    """
    metrics = metrics or list(NEA_ENDPOINTS)
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(
            base_url=NEA_API_BASE_URL,
            timeout=timeout,
            headers={"Accept": "application/json", "User-Agent": NEA_USER_AGENT},
            follow_redirects=True,
        )

    t0 = time.monotonic()
    try:
        results = await asyncio.gather(
            *(fetch_endpoint(client, metric) for metric in metrics),
            return_exceptions=True,
        )
    finally:
        if owns_client:
            await client.aclose()

    data: Dict[str, Dict[str, Any]] = {}
    timestamps: Dict[str, datetime] = {}
    failed: List[str] = []
    for metric, result in zip(metrics, results):
        if isinstance(result, BaseException):
            logger.warning(f"NEA {metric} fetch failed: {result!r}")
            failed.append(metric)
            continue
        readings, ts = _parse_endpoint_payload(result)
        data[metric] = {"readings": readings}
        if ts is not None:
            timestamps[metric] = ts
        logger.debug(f"NEA {metric}: {len(readings)} stations")

    if not data.get("temperature", {}).get("readings"):
        raise FetchError("No temperature data available from NEA API")

    content_ts = timestamps.get("temperature") or max(timestamps.values(), default=None)
    if content_ts is None:
        content_ts = datetime.now(timezone.utc)

    station_ids = sorted({r["station"] for block in data.values() for r in block["readings"]})
    elapsed_ms = round((time.monotonic() - t0) * 1000, 1)
    logger.info(
        f"NEA dataset fetched: {len(station_ids)} stations, "
        f"{len(metrics) - len(failed)}/{len(metrics)} endpoints in {elapsed_ms}ms"
    )

    return {
        "timestamp": content_ts.isoformat(),
        "source": f"NEA Singapore (real-time, {len(station_ids)} stations)",
        "data": data,
        "stations_used": station_ids,
        "failed_endpoints": failed,
        "collection_time_ms": elapsed_ms,
    }


class NEAFetcher:
    """Fetcher callable used by the scheduler: ``await fetcher(resource, timeout)``."""

    RESOURCES = ("weather",)

    def __init__(self, base_url: str = NEA_API_BASE_URL, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.transport = transport

    async def __call__(self, resource: str, timeout: float) -> Dict[str, Any]:
        if resource not in self.RESOURCES:
            raise FetchError(f"Unsupported resource: {resource}")
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Accept": "application/json", "User-Agent": NEA_USER_AGENT},
            follow_redirects=True,
            transport=self.transport,
        ) as client:
            return await fetch_weather_dataset(client=client, timeout=timeout)
