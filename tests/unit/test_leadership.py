"""
Unit tests for leader election and fenced enqueues.
"""

from datetime import timedelta

import pytest

from jobqueue.db.store import QueueStore
from jobqueue.errors import LeadershipLost
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.producer import Producer
from jobqueue.scheduler.leader import LeaderElector, LeaderFence

TTL = timedelta(seconds=15)


class TestLeadershipStore:
    """Tests for the leadership lease operations on the store."""

    async def test_first_acquire_wins(self, store: QueueStore, clock):
        lease = await store.acquire_leadership("scheduler", "node-a", TTL)

        assert lease.holder == "node-a"
        assert lease.fencing_token == 1
        assert lease.expires_at == clock() + TTL

    async def test_contender_rejected_while_held(self, store: QueueStore):
        """Only one holder while the lease is unexpired."""
        await store.acquire_leadership("scheduler", "node-a", TTL)

        assert await store.acquire_leadership("scheduler", "node-b", TTL) is None

    async def test_renew_keeps_token(self, store: QueueStore, clock):
        await store.acquire_leadership("scheduler", "node-a", TTL)
        clock.advance(10)

        lease = await store.acquire_leadership("scheduler", "node-a", TTL)

        assert lease.fencing_token == 1
        assert lease.expires_at == clock() + TTL

    async def test_takeover_after_expiry_bumps_token(self, store: QueueStore, clock):
        """An expired lease can be taken over and the fencing token grows."""
        await store.acquire_leadership("scheduler", "node-a", TTL)
        clock.advance(16)

        lease = await store.acquire_leadership("scheduler", "node-b", TTL)

        assert lease.holder == "node-b"
        assert lease.fencing_token == 2

    async def test_release_allows_immediate_takeover(self, store: QueueStore):
        await store.acquire_leadership("scheduler", "node-a", TTL)

        assert await store.release_leadership("scheduler", "node-a") is True
        assert await store.release_leadership("scheduler", "node-b") is False

        lease = await store.acquire_leadership("scheduler", "node-b", TTL)
        assert lease.holder == "node-b"
        assert lease.fencing_token == 2

    async def test_leases_are_independent_by_name(self, store: QueueStore):
        await store.acquire_leadership("scheduler", "node-a", TTL)

        lease = await store.acquire_leadership("billing", "node-b", TTL)

        assert lease.holder == "node-b"
        assert (await store.get_leadership("scheduler")).holder == "node-a"


class TestLeaderElector:
    """Tests for LeaderElector."""

    def make_elector(self, store: QueueStore, metrics: MetricsCollector, identity: str) -> LeaderElector:
        return LeaderElector(store, identity=identity, ttl=15, metrics=metrics)

    async def test_single_leader(self, store: QueueStore, metrics: MetricsCollector):
        a = self.make_elector(store, metrics, "node-a")
        b = self.make_elector(store, metrics, "node-b")

        assert await a.acquire_or_renew() is True
        assert await b.acquire_or_renew() is False
        assert a.is_leader
        assert not b.is_leader
        assert metrics.registry.get_sample_value("scheduler_is_leader", {"identity": "node-a"}) == 1.0
        assert metrics.registry.get_sample_value("scheduler_is_leader", {"identity": "node-b"}) == 0.0

    async def test_leadership_lapses_locally(self, store: QueueStore, metrics: MetricsCollector, clock):
        """Leadership is not assumed past the lease expiry."""
        elector = self.make_elector(store, metrics, "node-a")
        await elector.acquire_or_renew()

        clock.advance(16)

        assert not elector.is_leader
        with pytest.raises(LeadershipLost):
            elector.fence()

    async def test_failover(self, store: QueueStore, metrics: MetricsCollector, clock):
        a = self.make_elector(store, metrics, "node-a")
        b = self.make_elector(store, metrics, "node-b")
        await a.acquire_or_renew()

        clock.advance(16)

        assert await b.acquire_or_renew() is True
        assert b.token == 2
        assert await a.acquire_or_renew() is False

    async def test_release(self, store: QueueStore, metrics: MetricsCollector):
        a = self.make_elector(store, metrics, "node-a")
        b = self.make_elector(store, metrics, "node-b")
        await a.acquire_or_renew()

        await a.release()

        assert not a.is_leader
        assert await b.acquire_or_renew() is True


class TestFencedEnqueue:
    """Tests for enqueues guarded by a leadership fence."""

    async def test_fenced_enqueue_while_leader(
        self,
        store: QueueStore,
        producer: Producer,
        metrics: MetricsCollector,
    ):
        elector = LeaderElector(store, identity="node-a", metrics=metrics)
        await elector.acquire_or_renew()

        result = await producer.enqueue({"handler": "echo"}, fence=elector.fence())

        assert result.created is True

    async def test_stale_fence_rejected(
        self,
        store: QueueStore,
        producer: Producer,
        metrics: MetricsCollector,
        clock,
    ):
        """A deposed leader cannot enqueue with its old fence."""
        a = LeaderElector(store, identity="node-a", metrics=metrics)
        b = LeaderElector(store, identity="node-b", metrics=metrics)
        await a.acquire_or_renew()
        stale = a.fence()

        clock.advance(16)
        await b.acquire_or_renew()

        with pytest.raises(LeadershipLost):
            await producer.enqueue({"handler": "echo"}, fence=stale)

        jobs, total = await store.list_jobs()
        assert total == 0

    async def test_fence_for_unknown_lease_rejected(self, producer: Producer):
        fence = LeaderFence(lease_name="scheduler", holder="node-a", token=1)

        with pytest.raises(LeadershipLost):
            await producer.enqueue({"handler": "echo"}, fence=fence)
