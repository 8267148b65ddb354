"""Tests del lease y del poller activo.

Ejecutar:
    pytest tests/test_poller.py -v
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import RedisError, WatchError

from weather_ingest.coordination import InMemoryLeaseStore, LeaseInfo, PollerLease, RedisLeaseStore
from weather_ingest.domain.errors import StorePersistError
from weather_ingest.pipeline import ActivePoller


class FakeClock:
    """Reloj manual (segundos)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _coordinator():
    coordinator = MagicMock()
    coordinator.fetch_missed = AsyncMock(return_value=[])
    coordinator.retry_pending = AsyncMock(return_value=0)
    return coordinator


# =============================================================================
# LEASE
# =============================================================================

class TestInMemoryLease:
    """Claim-with-TTL, renovación y staleness."""

    @pytest.mark.asyncio
    async def test_first_claim_wins(self):
        clock = FakeClock()
        store = InMemoryLeaseStore(clock=clock)

        assert await store.claim("k", "a", ttl=45) is True
        assert await store.claim("k", "b", ttl=45) is False
        assert (await store.read("k")).holder == "a"

    @pytest.mark.asyncio
    async def test_holder_renews(self):
        clock = FakeClock()
        store = InMemoryLeaseStore(clock=clock)
        await store.claim("k", "a", ttl=45)
        clock.advance(40)

        assert await store.claim("k", "a", ttl=45) is True
        assert (await store.read("k")).claimed_at == clock.now

    @pytest.mark.asyncio
    async def test_stale_lease_is_taken_over(self):
        clock = FakeClock()
        store = InMemoryLeaseStore(clock=clock)
        await store.claim("k", "a", ttl=45)
        clock.advance(46)

        assert await store.claim("k", "b", ttl=45) is True

    @pytest.mark.asyncio
    async def test_release_only_by_holder(self):
        store = InMemoryLeaseStore(clock=FakeClock())
        await store.claim("k", "a", ttl=45)

        await store.release("k", "b")
        assert await store.read("k") is not None

        await store.release("k", "a")
        assert await store.read("k") is None

    def test_lease_info_json(self):
        info = LeaseInfo(holder="a", claimed_at=12.5)
        assert LeaseInfo.from_json(info.to_json()) == info
        assert LeaseInfo.from_json(b"garbage") is None


class TestRedisLease:
    """Compare-and-swap con WATCH/MULTI (cliente mockeado)."""

    def _client(self, current=None, execute_error=None):
        pipe = MagicMock()
        pipe.watch = AsyncMock()
        pipe.unwatch = AsyncMock()
        pipe.get = AsyncMock(return_value=current)
        pipe.execute = AsyncMock(side_effect=execute_error)
        client = MagicMock()
        client.pipeline.return_value.__aenter__ = AsyncMock(return_value=pipe)
        client.pipeline.return_value.__aexit__ = AsyncMock(return_value=False)
        return client, pipe

    @pytest.mark.asyncio
    async def test_claims_free_key(self):
        client, pipe = self._client()
        store = RedisLeaseStore(client, clock=lambda: 100.0)

        assert await store.claim("k", "a", ttl=45) is True
        pipe.set.assert_called_once()
        assert pipe.set.call_args.kwargs["px"] == 90000

    @pytest.mark.asyncio
    async def test_fresh_foreign_lease_is_respected(self):
        current = LeaseInfo(holder="b", claimed_at=90.0).to_json()
        client, pipe = self._client(current=current)
        store = RedisLeaseStore(client, clock=lambda: 100.0)

        assert await store.claim("k", "a", ttl=45) is False
        pipe.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_lost_race_returns_false(self):
        client, _ = self._client(execute_error=WatchError("changed"))
        store = RedisLeaseStore(client, clock=lambda: 100.0)

        assert await store.claim("k", "a", ttl=45) is False

    @pytest.mark.asyncio
    async def test_redis_down_returns_false(self):
        client, _ = self._client(execute_error=RedisError("down"))
        store = RedisLeaseStore(client, clock=lambda: 100.0)

        assert await store.claim("k", "a", ttl=45) is False


# =============================================================================
# POLLER
# =============================================================================

class TestActivePoller:
    """Un solo poller activo; todos reintentan lo suyo."""

    @pytest.mark.asyncio
    async def test_holder_fetches_missed(self):
        coordinator = _coordinator()
        lease = PollerLease(InMemoryLeaseStore(), "a", ttl_seconds=45)
        poller = ActivePoller(coordinator, lease, poll_interval=30, clock=FakeClock())

        await poller.tick()

        assert poller.is_active
        coordinator.fetch_missed.assert_awaited_once()
        coordinator.retry_pending.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_non_holder_only_retries_pending(self):
        store = InMemoryLeaseStore()
        await store.claim("weather:active_poller", "other", ttl=45)
        coordinator = _coordinator()
        poller = ActivePoller(
            coordinator, PollerLease(store, "a", ttl_seconds=45), poll_interval=30, clock=FakeClock()
        )

        await poller.tick()

        assert not poller.is_active
        coordinator.fetch_missed.assert_not_awaited()
        coordinator.retry_pending.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_polls_once_per_interval(self):
        clock = FakeClock()
        coordinator = _coordinator()
        poller = ActivePoller(
            coordinator,
            PollerLease(InMemoryLeaseStore(), "a", ttl_seconds=45),
            poll_interval=30,
            check_interval=5,
            clock=clock,
        )

        await poller.tick()
        clock.advance(5)
        await poller.tick()
        assert coordinator.fetch_missed.await_count == 1

        clock.advance(25)
        await poller.tick()
        assert coordinator.fetch_missed.await_count == 2

    @pytest.mark.asyncio
    async def test_trigger_forces_poll(self):
        clock = FakeClock()
        coordinator = _coordinator()
        poller = ActivePoller(
            coordinator, PollerLease(InMemoryLeaseStore(), "a", ttl_seconds=45), clock=clock
        )
        await poller.tick()

        poller.trigger()
        await poller.tick()

        assert coordinator.fetch_missed.await_count == 2

    @pytest.mark.asyncio
    async def test_trigger_during_tick_is_not_lost(self):
        coordinator = _coordinator()
        poller = ActivePoller(
            coordinator, PollerLease(InMemoryLeaseStore(), "a", ttl_seconds=45), check_interval=3600
        )
        calls = []
        second_poll = asyncio.Event()

        async def fetch():
            calls.append(1)
            if len(calls) == 1:
                poller.trigger()
            else:
                second_poll.set()
            return []

        coordinator.fetch_missed = AsyncMock(side_effect=fetch)
        poller.start()
        try:
            await asyncio.wait_for(second_poll.wait(), timeout=1)
        finally:
            await poller.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_failover_when_holder_dies(self):
        lease_clock = FakeClock()
        store = InMemoryLeaseStore(clock=lease_clock)
        a = ActivePoller(_coordinator(), PollerLease(store, "a", ttl_seconds=45), clock=FakeClock())
        b_coordinator = _coordinator()
        b = ActivePoller(b_coordinator, PollerLease(store, "b", ttl_seconds=45), clock=FakeClock())

        await a.tick()
        await b.tick()
        assert a.is_active and not b.is_active

        # "a" deja de renovar
        lease_clock.advance(46)
        await b.tick()

        assert b.is_active
        assert (await store.read("weather:active_poller")).holder == "b"

    @pytest.mark.asyncio
    async def test_store_error_does_not_stop_poller(self):
        coordinator = _coordinator()
        coordinator.fetch_missed.side_effect = StorePersistError("db down")
        poller = ActivePoller(
            coordinator, PollerLease(InMemoryLeaseStore(), "a", ttl_seconds=45), clock=FakeClock()
        )

        assert await poller.tick() == 0
        assert poller.stats["errors"] == 1

    @pytest.mark.asyncio
    async def test_start_and_stop_release_lease(self):
        store = InMemoryLeaseStore()
        poller = ActivePoller(
            _coordinator(), PollerLease(store, "a", ttl_seconds=45), check_interval=0.01
        )

        poller.start()
        for _ in range(50):
            if poller.is_active:
                break
            await asyncio.sleep(0.01)
        await poller.stop()

        assert await store.read("weather:active_poller") is None
