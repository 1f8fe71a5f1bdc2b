"""L1 Unit Tests: consolidation / synthesis triggers."""

from datetime import datetime

import pytest

from tests.fixtures.seeds import axis, seed_chunk, seed_episode
from tiermem.scheduler.jobs import JOB_CONSOLIDATE, JOB_RECONCILE, JOB_SYNTHESIZE
from tiermem.scheduler.queue import TaskQueue
from tiermem.scheduler.triggers import PeriodicTriggers, TriggerPolicy


@pytest.fixture
def queue(storage, fake_clock):
    return TaskQueue(storage, clock=fake_clock)


@pytest.fixture
def policy(storage, queue, fake_clock):
    return TriggerPolicy(
        storage,
        queue,
        backlog_threshold=5,
        burst_count=3,
        burst_window=600,
        thought_burst_updates=2,
        thought_burst_window=86400,
        clock=fake_clock,
    )


def names(queue):
    return [j.name for j in queue.list_jobs()]


class TestTriggerPolicy:
    def test_orphan_burst_requests_consolidation(self, policy, queue):
        assert policy.on_orphaned("u1") is None
        assert policy.on_orphaned("u1") is None
        assert policy.on_orphaned("u1") is not None
        assert names(queue) == [JOB_CONSOLIDATE]
        assert queue.list_jobs()[0].payload == {"user_id": "u1"}

    def test_slow_orphans_do_not_burst(self, policy, queue, fake_clock):
        for _ in range(3):
            policy.on_orphaned("u1")
            fake_clock.advance(301)
        assert names(queue) == []

    def test_backlog_size_requests_consolidation(self, policy, queue, storage, fake_clock):
        for i in range(5):
            seed_chunk(storage, "u1", axis(i % 4), orphaned=True)
        assert policy.on_orphaned("u1") is not None
        assert names(queue) == [JOB_CONSOLIDATE]

    def test_requests_coalesce_per_user(self, policy, queue):
        first = policy.boost("u1")
        assert policy.boost("u1") == first
        assert policy.boost("u2") != first

    def test_episode_update_burst_requests_synthesis(self, policy, queue):
        assert policy.on_episode_updated("u1") is None
        assert policy.on_episode_updated("u1") is not None
        assert names(queue) == [JOB_SYNTHESIZE]


class TestPeriodicTriggers:
    def test_nothing_due_at_start(self, storage, queue, policy, fake_clock):
        periodic = PeriodicTriggers(storage, queue, policy, clock=fake_clock)
        assert periodic.tick() == []

    def test_due_timers_enqueue(self, storage, queue, policy, fake_clock):
        seed_chunk(storage, "u1", axis(0), orphaned=True)
        seed_episode(storage, "u2", axis(1), updated_at=datetime.fromtimestamp(fake_clock.now))
        periodic = PeriodicTriggers(
            storage,
            queue,
            policy,
            consolidation_interval=10,
            thought_interval=20,
            reconcile_interval=5,
            clock=fake_clock,
        )
        fake_clock.advance(5)
        periodic.tick()
        assert names(queue) == [JOB_RECONCILE]

        fake_clock.advance(5)
        periodic.tick()
        jobs = queue.list_jobs(name=JOB_CONSOLIDATE)
        assert [j.payload["user_id"] for j in jobs] == ["u1"]

        fake_clock.advance(10)
        periodic.tick()
        jobs = queue.list_jobs(name=JOB_SYNTHESIZE)
        assert [j.payload["user_id"] for j in jobs] == ["u2"]
