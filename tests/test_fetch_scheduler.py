import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config import SchedulerConfig
from core.cache import CacheStore, MemoryNamespace
from core.errors import CacheError, FetchError
from core.models import NetworkProfile, Region
from core.scheduler import AdaptiveFetchScheduler, FetchState
from synthesizer import RegionalSynthesizer

T0 = 1_750_000_000.0
CENTRAL = Region("central", "Central", ("A", "B"))


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeFetcher:
    def __init__(self, payload=None, error=None, gate=None, delay=0.0):
        self.payload = payload
        self.error = error
        self.gate = gate
        self.delay = delay
        self.calls = []

    async def __call__(self, resource, timeout):
        self.calls.append((resource, timeout))
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.payload


def _payload(minutes_ago=0, temperature=29.0):
    ts = datetime.fromtimestamp(T0, tz=timezone.utc) - timedelta(minutes=minutes_ago)
    return {
        "timestamp": ts.isoformat(),
        "source": "test",
        "data": {"temperature": {"readings": [{"station": "A", "value": temperature}]}},
    }


def _scheduler(fetcher, clock=None, profile=None, config=None, synthesizer=None):
    clock = clock or FakeClock()
    cache = CacheStore([MemoryNamespace("memory")], clock=clock)
    return AdaptiveFetchScheduler(
        fetcher,
        synthesizer=synthesizer,
        cache=cache,
        config=config or SchedulerConfig(base_interval_seconds=1800, force_cooldown_seconds=30),
        network_sampler=lambda: profile or NetworkProfile(effective_type="4g"),
        clock=clock,
    )


def test_slow_network_gets_longer_timeout_and_interval():
    sched = _scheduler(FakeFetcher(), profile=NetworkProfile(effective_type="2g"))
    assert sched.timeout_for() == 15.0
    assert sched.refresh_interval() == 1800 * 1.5

    assert sched.timeout_for(NetworkProfile(effective_type="slow-2g")) == 15.0
    assert sched.timeout_for(NetworkProfile(effective_type="3g")) == 10.0
    assert sched.timeout_for(NetworkProfile(effective_type="4g")) == 8.0
    assert sched.refresh_interval(NetworkProfile(effective_type="4g")) == 1800


def test_save_data_takes_precedence_over_slow_network():
    sched = _scheduler(FakeFetcher())
    assert sched.refresh_interval(NetworkProfile(effective_type="2g", save_data=True)) == 3600
    assert sched.refresh_interval(NetworkProfile(effective_type="4g", save_data=True)) == 3600


def test_fetch_uses_timeout_of_sampled_network():
    fetcher = FakeFetcher(payload=_payload())
    sched = _scheduler(fetcher, profile=NetworkProfile(effective_type="3g"))
    result = asyncio.run(sched.refresh())
    assert result.status == "fresh"
    assert fetcher.calls == [("weather", 10.0)]
    assert sched.metrics["network_type"] == "3g"


def test_client_profile_override():
    sched = _scheduler(FakeFetcher())
    sched.set_network_profile(NetworkProfile.from_headers({"ECT": "2g", "Save-Data": "on"}))
    assert sched.sample_network().effective_type == "2g"
    assert sched.refresh_interval() == 3600
    sched.set_network_profile(None)
    assert sched.sample_network().effective_type == "4g"


def test_forced_refresh_within_cooldown_fetches_once():
    clock = FakeClock()
    fetcher = FakeFetcher(payload=_payload())
    sched = _scheduler(fetcher, clock=clock)

    async def scenario():
        first = await sched.force_refresh()
        clock.advance(5)
        second = await sched.force_refresh()
        return first, second

    first, second = asyncio.run(scenario())
    assert len(fetcher.calls) == 1
    assert first.status == "fresh" and first.forced
    assert second.status == "cached" and not second.forced
    assert sched.metrics["forced_refreshes"] == 1


def test_forced_refresh_after_cooldown_bypasses_cache():
    clock = FakeClock()
    fetcher = FakeFetcher(payload=_payload())
    sched = _scheduler(fetcher, clock=clock)

    async def scenario():
        await sched.force_refresh()
        clock.advance(31)
        return await sched.force_refresh()

    result = asyncio.run(scenario())
    assert len(fetcher.calls) == 2
    assert result.status == "fresh" and result.forced
    assert sched.metrics["forced_refreshes"] == 2


def test_forced_flag_on_refresh_shares_the_cooldown():
    clock = FakeClock()
    fetcher = FakeFetcher(payload=_payload())
    sched = _scheduler(fetcher, clock=clock)

    async def scenario():
        first = await sched.refresh(force=True)
        clock.advance(5)
        second = await sched.refresh(force=True)
        clock.advance(5)
        third = await sched.force_refresh()
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert len(fetcher.calls) == 1
    assert first.forced
    assert not second.forced and second.status == "cached"
    assert not third.forced and third.status == "cached"
    assert sched.metrics["forced_refreshes"] == 1


def test_forced_clear_cache_only_when_slot_is_granted():
    clock = FakeClock()
    sched = _scheduler(FakeFetcher(payload=_payload()), clock=clock)

    async def scenario():
        await sched.refresh(force=True, clear_cache=True)
        clock.advance(5)
        await sched.refresh(force=True, clear_cache=True)

    asyncio.run(scenario())
    assert sched.metrics["cache_clears"] == 1
    assert sched.cache.get(sched.cache_key("weather")) is not None


def test_concurrent_refreshes_share_one_fetch():
    async def scenario():
        gate = asyncio.Event()
        fetcher = FakeFetcher(payload=_payload(), gate=gate)
        sched = _scheduler(fetcher)
        tasks = [asyncio.create_task(sched.refresh()) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks)
        return fetcher, sched, results

    fetcher, sched, results = asyncio.run(scenario())
    assert len(fetcher.calls) == 1
    assert [r.status for r in results] == ["fresh"] * 3
    assert sched.metrics["cycles"] == 1


def test_failed_fetch_serves_45_minute_old_cache_as_stale():
    clock = FakeClock()
    sched = _scheduler(FakeFetcher(error=FetchError("boom")), clock=clock)
    cached = _payload(minutes_ago=45)
    sched.cache.put(sched.cache_key("weather"), cached, ttl=300, timestamp=clock.now - 45 * 60)

    result = asyncio.run(sched.refresh())
    assert result.status == "stale"
    assert result.stale is True
    assert result.age_minutes == 45
    assert result.payload == cached
    assert list(sched.transitions) == [
        FetchState.FETCHING,
        FetchState.FAILURE,
        FetchState.FALLBACK_CACHE,
        FetchState.IDLE,
    ]
    assert sched.metrics["stale_served"] == 1


def test_failed_fetch_with_75_minute_old_cache_is_unavailable():
    clock = FakeClock()
    sched = _scheduler(FakeFetcher(error=FetchError("boom")), clock=clock)
    sched.cache.put(sched.cache_key("weather"), _payload(minutes_ago=75), ttl=300, timestamp=clock.now - 75 * 60)

    result = asyncio.run(sched.refresh())
    assert result.status == "unavailable"
    assert result.payload is None
    assert not result.ok
    assert "unavailable" in result.error
    assert sched.state is FetchState.IDLE


def test_timeout_goes_through_fallback():
    config = SchedulerConfig(timeouts={"default": 0.01})
    sched = _scheduler(FakeFetcher(payload=_payload(), delay=1.0), config=config)
    result = asyncio.run(sched.refresh())
    assert result.status == "unavailable"
    assert "timed out" in result.error
    assert FetchState.FALLBACK_CACHE in sched.transitions


def test_successful_refresh_feeds_synthesizer():
    synth = RegionalSynthesizer([CENTRAL], now=lambda: datetime.fromtimestamp(T0, tz=timezone.utc))
    sched = _scheduler(FakeFetcher(payload=_payload(temperature=30.5)), synthesizer=synth)
    result = asyncio.run(sched.refresh())
    assert result.status == "fresh"
    assert synth.get("central").values["temperature"] == 30.5
    assert sched.metrics["last_data_update_time"] == datetime.fromtimestamp(T0, tz=timezone.utc).isoformat()
    assert sched.cache.get(sched.cache_key("weather")) == result.payload


def test_malformed_payload_counts_as_failure():
    synth = RegionalSynthesizer([CENTRAL])
    sched = _scheduler(FakeFetcher(payload={"data": {}}), synthesizer=synth)
    result = asyncio.run(sched.refresh())
    assert result.status == "unavailable"
    assert synth.dataset is None
    assert sched.cache.get(sched.cache_key("weather")) is None


def test_late_older_response_does_not_overwrite_newer_composites():
    clock = FakeClock()
    synth = RegionalSynthesizer([CENTRAL], now=lambda: datetime.fromtimestamp(clock.now, tz=timezone.utc))
    fetcher = FakeFetcher(payload=_payload(minutes_ago=0, temperature=31.0))
    sched = _scheduler(fetcher, clock=clock, synthesizer=synth)

    async def scenario():
        await sched.force_refresh()
        fetcher.payload = _payload(minutes_ago=10, temperature=25.0)
        clock.advance(60)
        return await sched.force_refresh()

    asyncio.run(scenario())
    assert synth.get("central").values["temperature"] == 31.0


def test_close_discards_in_flight_result():
    async def scenario():
        gate = asyncio.Event()
        synth = RegionalSynthesizer([CENTRAL])
        sched = _scheduler(FakeFetcher(payload=_payload(), gate=gate), synthesizer=synth)
        task = asyncio.create_task(sched.refresh())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        sched.close()
        gate.set()
        return sched, synth, await task

    sched, synth, result = asyncio.run(scenario())
    assert result.status == "discarded"
    assert synth.dataset is None
    assert sched.cache.get(sched.cache_key("weather")) is None
    assert sched.metrics["cycles"] == 0
    assert sched.state is FetchState.IDLE


def test_refresh_after_close_is_discarded():
    sched = _scheduler(FakeFetcher(payload=_payload()))
    sched.close()
    result = asyncio.run(sched.refresh())
    assert result.status == "discarded"
    with pytest.raises(RuntimeError):
        sched.start()


def test_start_and_close_cancel_the_timer():
    async def scenario():
        sched = _scheduler(FakeFetcher(payload=_payload()))
        sched.start(run_immediately=False)
        running = sched.running
        sched.close()
        return running, sched.running

    assert asyncio.run(scenario()) == (True, False)


def test_background_cycle_runs_immediately():
    async def scenario():
        fetcher = FakeFetcher(payload=_payload())
        sched = _scheduler(fetcher)
        sched.start(run_immediately=True)
        for _ in range(5):
            await asyncio.sleep(0)
        sched.close()
        return fetcher

    fetcher = asyncio.run(scenario())
    assert fetcher.calls == [("weather", 8.0)]


def test_metrics_are_read_only():
    sched = _scheduler(FakeFetcher())
    with pytest.raises(TypeError):
        sched.metrics["cache_clears"] = 10
    assert sched.metrics["cache_clears"] == 0


class BrokenNamespace(MemoryNamespace):
    def clear(self):
        raise CacheError(self.name, "clear", "disk on fire")


def test_clear_caches_reports_partial_failure():
    clock = FakeClock()
    cache = CacheStore([MemoryNamespace("memory"), BrokenNamespace("disk")], clock=clock)
    sched = AdaptiveFetchScheduler(FakeFetcher(), cache=cache, clock=clock)
    cache.put("weather:latest", _payload(), ttl=300)

    report = sched.clear_caches()
    assert report.success is False
    assert report.cleared_count == 1
    assert report.cleared_namespaces == ["memory"]
    assert len(report.errors) == 1 and "disk" in report.errors[0]
    assert len(cache.namespace("memory")) == 0
    assert len(cache.namespace("disk")) == 1
    assert sched.metrics["cache_clears"] == 1
