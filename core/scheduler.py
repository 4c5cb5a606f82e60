"""
SG Weather Pipeline - Adaptive Fetch Scheduler

Owns the fetch/refresh lifecycle:

    IDLE -> FETCHING -> SUCCESS -> IDLE
                     -> FAILURE -> FALLBACK_CACHE -> IDLE

- Refresh interval and request timeout follow the sampled network profile.
- Forced refreshes bypass the cache but are rate limited; inside the cooldown
  they silently become regular refreshes.
- At most one fetch per (resource, force) is in flight; concurrent callers
  share it.
- On failure the last cached payload is served if it is younger than
  ``max_stale_minutes``; otherwise the result is "unavailable". Nothing is
  ever invented.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Deque, Dict, Mapping, Optional, Sequence, Tuple

from config import DEFAULT_NETWORK_TYPE, DEFAULT_SAVE_DATA, SchedulerConfig
from core.cache import CacheStore, MemoryNamespace
from core.errors import DataUnavailableError, FetchTimeout
from core.models import CacheClearReport, NetworkProfile

logger = logging.getLogger("fetch_scheduler")

Fetcher = Callable[[str, float], Awaitable[Any]]
Clock = Callable[[], float]


class FetchState(str, Enum):
    IDLE = "IDLE"
    FETCHING = "FETCHING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    FALLBACK_CACHE = "FALLBACK_CACHE"


@dataclass
class FetchResult:
    """Outcome of one refresh cycle."""
    resource: str
    status: str  # fresh | cached | stale | unavailable | discarded
    payload: Any = None
    stale: bool = False
    age_minutes: Optional[int] = None
    forced: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.payload is not None

    def to_dict(self, include_payload: bool = False) -> Dict[str, Any]:
        out = {
            "resource": self.resource,
            "status": self.status,
            "stale": self.stale,
            "age_minutes": self.age_minutes,
            "forced": self.forced,
            "error": self.error,
        }
        if include_payload:
            out["payload"] = self.payload
        return out


@dataclass
class SchedulerMetrics:
    network_type: Optional[str] = None
    cache_clears: int = 0
    forced_refreshes: int = 0
    last_data_update_time: Optional[str] = None
    cycles: int = 0
    failures: int = 0
    stale_served: int = 0


class ScheduledTask:
    """
    Repeats ``job`` forever, sleeping ``interval()`` seconds between runs.
    The interval is re-evaluated every time, so network changes take effect on
    the next tick. ``cancel`` stops the timer immediately.
    """

    def __init__(
        self,
        job: Callable[[], Awaitable[Any]],
        interval: Callable[[], float],
        name: str = "scheduled_task",
        run_immediately: bool = False,
    ):
        self.job = job
        self.interval = interval
        self.name = name
        self.run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.active:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        first = True
        while True:
            if not (first and self.run_immediately):
                await asyncio.sleep(self.interval())
            first = False
            try:
                await self.job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{self.name} job failed: {e}")


def _default_network_profile() -> NetworkProfile:
    return NetworkProfile(effective_type=DEFAULT_NETWORK_TYPE, save_data=DEFAULT_SAVE_DATA)


class AdaptiveFetchScheduler:
    """Drives fetches for one consumer and feeds results to its synthesizer."""

    def __init__(
        self,
        fetcher: Fetcher,
        synthesizer=None,
        cache: Optional[CacheStore] = None,
        config: Optional[SchedulerConfig] = None,
        network_sampler: Optional[Callable[[], NetworkProfile]] = None,
        clock: Clock = time.time,
        resources: Sequence[str] = ("weather",),
    ):
        self.fetcher = fetcher
        self.synthesizer = synthesizer
        self.config = config or SchedulerConfig()
        self.clock = clock
        self.cache = cache or CacheStore([MemoryNamespace("memory")], clock=clock)
        self.network_sampler = network_sampler or _default_network_profile
        self.resources = tuple(resources)

        self._state = FetchState.IDLE
        self.transitions: Deque[FetchState] = deque(maxlen=64)
        self._metrics = SchedulerMetrics()
        self._in_flight: Dict[Tuple[str, bool], asyncio.Task] = {}
        self._last_forced: Optional[float] = None
        self._profile_override: Optional[NetworkProfile] = None
        self._timer: Optional[ScheduledTask] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Network adaptation
    # ------------------------------------------------------------------
    def set_network_profile(self, profile: Optional[NetworkProfile]) -> None:
        """Pin the profile reported by the client (None returns to the sampler)."""
        self._profile_override = profile

    def sample_network(self) -> NetworkProfile:
        if self._profile_override is not None:
            return self._profile_override
        try:
            return self.network_sampler()
        except Exception as e:
            logger.warning(f"Network sampling failed, assuming defaults: {e}")
            return NetworkProfile()

    def refresh_interval(self, profile: Optional[NetworkProfile] = None) -> float:
        """Base interval, x2 with save_data, else x1.5 on 2g/slow-2g."""
        profile = profile or self.sample_network()
        base = self.config.base_interval_seconds
        if profile.save_data:
            return base * self.config.save_data_multiplier
        if profile.effective_type in self.config.slow_network_types:
            return base * self.config.slow_network_multiplier
        return base

    def timeout_for(self, profile: Optional[NetworkProfile] = None) -> float:
        profile = profile or self.sample_network()
        timeouts = self.config.timeouts
        return timeouts.get(profile.effective_type, timeouts["default"])

    # ------------------------------------------------------------------
    # State / metrics
    # ------------------------------------------------------------------
    @property
    def state(self) -> FetchState:
        return self._state

    def _set_state(self, state: FetchState) -> None:
        self._state = state
        self.transitions.append(state)
        logger.debug(f"state -> {state.value}")

    @property
    def metrics(self) -> Mapping[str, Any]:
        return MappingProxyType(asdict(self._metrics))

    @property
    def closed(self) -> bool:
        return self._closed

    @staticmethod
    def cache_key(resource: str) -> str:
        return f"{resource}:latest"

    # ------------------------------------------------------------------
    # Refresh entry points
    # ------------------------------------------------------------------
    async def refresh(
        self,
        resource: str = "weather",
        force: bool = False,
        clear_cache: bool = False,
    ) -> FetchResult:
        """
        Run (or join) a refresh cycle for ``resource``.

        ``force`` bypasses the cache. Within ``force_cooldown_seconds`` of the
        previous forced cycle a forced call degrades to a regular refresh, no
        matter which entry point it came through.
        """
        if self._closed:
            return FetchResult(resource, "discarded", forced=force, error="scheduler closed")

        if force:
            force = self._claim_forced_slot(resource, clear_cache)

        key = (resource, force)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._run_cycle(resource, force))
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug(f"Joining in-flight {resource} fetch (force={force})")
        return await asyncio.shield(task)

    def _forget(self, key: Tuple[str, bool], task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    def _claim_forced_slot(self, resource: str, clear_cache: bool) -> bool:
        """True if a forced cycle may start now; records it and clears caches if asked."""
        now = self.clock()
        cooldown = self.config.force_cooldown_seconds
        if self._last_forced is not None and now - self._last_forced < cooldown:
            wait_s = cooldown - (now - self._last_forced)
            logger.info(f"Force refresh rate limited ({wait_s:.0f}s left), using regular refresh")
            return False

        self._last_forced = now
        if clear_cache:
            self.clear_caches()
        logger.info(f"Force refresh of {resource}")
        return True

    async def force_refresh(self, resource: str = "weather", clear_cache: bool = False) -> FetchResult:
        return await self.refresh(resource, force=True, clear_cache=clear_cache)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    async def _run_cycle(self, resource: str, force: bool) -> FetchResult:
        profile = self.sample_network()
        key = self.cache_key(resource)
        self._set_state(FetchState.FETCHING)

        if not force:
            entry = self.cache.get_entry(key)
            if entry is not None:
                age_minutes = math.floor(entry.age_seconds(self.clock()) / 60)
                logger.info(f"Serving cached {resource} ({age_minutes}m old)")
                result = FetchResult(resource, "cached", payload=entry.payload, age_minutes=age_minutes)
                self._ingest(result.payload)
                self._set_state(FetchState.SUCCESS)
                self._finish_cycle(profile, result, fresh_data=False)
                return result

        timeout = self.timeout_for(profile)
        error: Optional[BaseException] = None
        payload: Any = None
        try:
            payload = await asyncio.wait_for(self.fetcher(resource, timeout), timeout)
        except asyncio.TimeoutError:
            error = FetchTimeout(resource, timeout)
        except Exception as e:
            error = e

        if self._closed:
            logger.info(f"Discarding {resource} result: scheduler closed")
            self._set_state(FetchState.IDLE)
            return FetchResult(resource, "discarded", forced=force, error="scheduler closed")

        if error is None and payload is None:
            error = DataUnavailableError(f"{resource} fetch returned no data")
        if error is None:
            try:
                self._ingest(payload, strict=True)
            except ValueError as e:
                error = e

        if error is None:
            self._set_state(FetchState.SUCCESS)
            self.cache.put(key, payload, ttl=self.config.cache_ttl_seconds)
            result = FetchResult(resource, "fresh", payload=payload, age_minutes=0, forced=force)
            self._finish_cycle(profile, result, fresh_data=True)
            return result

        self._set_state(FetchState.FAILURE)
        logger.warning(f"{resource} fetch failed on {profile.effective_type}: {error}")
        result = self._fallback(resource, key, force, error)
        self._finish_cycle(profile, result, fresh_data=False)
        return result

    def _fallback(self, resource: str, key: str, force: bool, error: BaseException) -> FetchResult:
        self._set_state(FetchState.FALLBACK_CACHE)
        entry = self.cache.get_entry(key, include_expired=True)
        if entry is not None:
            age_s = entry.age_seconds(self.clock())
            if age_s < self.config.max_stale_minutes * 60:
                age_minutes = math.floor(age_s / 60)
                logger.info(f"Using cached {resource} ({age_minutes}m old) after failed fetch")
                self._ingest(entry.payload)
                return FetchResult(
                    resource,
                    "stale",
                    payload=entry.payload,
                    stale=True,
                    age_minutes=age_minutes,
                    forced=force,
                    error=str(error),
                )
            logger.warning(f"Cached {resource} too old ({age_s / 60:.0f}m), not serving it")

        unavailable = DataUnavailableError(f"{resource} data unavailable: {error}")
        return FetchResult(resource, "unavailable", forced=force, error=str(unavailable))

    def _ingest(self, payload: Any, strict: bool = False) -> None:
        if self.synthesizer is None:
            return
        try:
            self.synthesizer.ingest(payload)
        except ValueError as e:
            if strict:
                raise
            logger.warning(f"Cached payload rejected by synthesizer: {e}")

    def _finish_cycle(self, profile: NetworkProfile, result: FetchResult, fresh_data: bool) -> None:
        m = self._metrics
        m.network_type = profile.effective_type
        m.cycles += 1
        if result.forced:
            m.forced_refreshes += 1
        if fresh_data:
            m.last_data_update_time = datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat()
        if result.status in ("stale", "unavailable"):
            m.failures += 1
        if result.status == "stale":
            m.stale_served += 1
        self._set_state(FetchState.IDLE)

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------
    def clear_caches(self, namespaces: Optional[Sequence[str]] = None) -> CacheClearReport:
        targets = list(namespaces) if namespaces is not None else [
            n for n in self.config.cache_namespaces if n in self.cache.namespace_names
        ]
        report = self.cache.clear(targets)
        self._metrics.cache_clears += 1
        logger.info(
            f"Cache clear: {report.cleared_count} entries from {report.cleared_namespaces} "
            f"({len(report.errors)} errors)"
        )
        return report

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def _background_cycle(self) -> None:
        for resource in self.resources:
            await self.refresh(resource)

    def current_interval(self) -> float:
        return self.refresh_interval(self.sample_network())

    def start(self, run_immediately: bool = True) -> None:
        """Start the interval loop. Must be called from a running event loop."""
        if self._closed:
            raise RuntimeError("scheduler is closed")
        if self._timer is not None and self._timer.active:
            return
        self._timer = ScheduledTask(
            self._background_cycle,
            self.current_interval,
            name="background_refresh",
            run_immediately=run_immediately,
        )
        self._timer.start()
        logger.info(f"Background refresh every {self.current_interval() / 60:.1f} min")

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.active

    def close(self) -> None:
        """Cancel timers now; in-flight fetches finish but their results are dropped."""
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        logger.info("Scheduler closed")
