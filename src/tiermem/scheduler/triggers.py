"""
Triggers

Event-driven (TriggerPolicy):
- consolidation when the orphan backlog is large or orphans arrive in a burst
- thought synthesis after a burst of episode updates

Time-driven (PeriodicTriggers):
- consolidation for every user with a backlog
- daily thought synthesis for users whose episodes changed
- reconciliation sweep

All triggers only enqueue jobs; job keys coalesce duplicates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from ..memory.cache import WindowCounter
from ..memory.storage import MemoryStorage
from .jobs import (
    JOB_CONSOLIDATE,
    JOB_RECONCILE,
    JOB_SYNTHESIZE,
    consolidate_key,
    synthesize_key,
)
from .queue import TaskQueue

logger = logging.getLogger(__name__)


class TriggerPolicy:
    """Turns pipeline events into consolidation / synthesis jobs"""

    def __init__(
        self,
        storage: MemoryStorage,
        queue: TaskQueue,
        *,
        backlog_threshold: int = 200,
        burst_count: int = 3,
        burst_window: float = 600.0,
        thought_burst_updates: int = 10,
        thought_burst_window: float = 86400.0,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.queue = queue
        self.backlog_threshold = backlog_threshold
        self.burst_count = burst_count
        self.thought_burst_updates = thought_burst_updates
        self.orphan_counter = WindowCounter(burst_window, clock=clock)
        self.update_counter = WindowCounter(thought_burst_window, clock=clock)

    def request_consolidation(self, user_id: str, reason: str) -> str:
        logger.info(f"[Triggers] Consolidation for {user_id} ({reason})")
        return self.queue.enqueue(
            JOB_CONSOLIDATE, {"user_id": user_id}, job_key=consolidate_key(user_id)
        )

    def request_synthesis(self, user_id: str, reason: str) -> str:
        logger.info(f"[Triggers] Thought synthesis for {user_id} ({reason})")
        return self.queue.enqueue(
            JOB_SYNTHESIZE, {"user_id": user_id}, job_key=synthesize_key(user_id)
        )

    def on_orphaned(self, user_id: str) -> str | None:
        recent = self.orphan_counter.hit(user_id)
        if recent >= self.burst_count:
            self.orphan_counter.reset(user_id)
            return self.request_consolidation(user_id, f"{recent} orphans in window")
        backlog = self.storage.count_orphans(user_id)
        if backlog >= self.backlog_threshold:
            return self.request_consolidation(user_id, f"backlog={backlog}")
        return None

    def on_episode_updated(self, user_id: str) -> str | None:
        updates = self.update_counter.hit(user_id)
        if updates >= self.thought_burst_updates:
            self.update_counter.reset(user_id)
            return self.request_synthesis(user_id, f"{updates} episode updates")
        return None

    def boost(self, user_id: str) -> str:
        return self.request_consolidation(user_id, "boost")


class PeriodicTriggers:
    """Timers that enqueue periodic jobs; tick() is driven by run()"""

    def __init__(
        self,
        storage: MemoryStorage,
        queue: TaskQueue,
        policy: TriggerPolicy,
        *,
        consolidation_interval: float = 3600.0,
        thought_interval: float = 86400.0,
        reconcile_interval: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.queue = queue
        self.policy = policy
        self.intervals = {
            JOB_CONSOLIDATE: consolidation_interval,
            JOB_SYNTHESIZE: thought_interval,
            JOB_RECONCILE: reconcile_interval,
        }
        self._clock = clock
        start = clock()
        self._next_due = {name: start + interval for name, interval in self.intervals.items()}

    def tick(self) -> list[str]:
        """Enqueue whatever is due. Returns the enqueued job ids."""
        now = self._clock()
        job_ids: list[str] = []
        for name, due in self._next_due.items():
            if now < due:
                continue
            self._next_due[name] = now + self.intervals[name]
            if name == JOB_CONSOLIDATE:
                for user_id in self.storage.users_with_orphans():
                    job_ids.append(self.policy.request_consolidation(user_id, "periodic"))
            elif name == JOB_SYNTHESIZE:
                since = datetime.fromtimestamp(now) - timedelta(seconds=self.intervals[name])
                for user_id in self.storage.users_with_episodes(since=since):
                    job_ids.append(self.policy.request_synthesis(user_id, "daily"))
            else:
                job_ids.append(self.queue.enqueue(JOB_RECONCILE, {}, job_key="reconcile"))
        return job_ids

    async def run(self, stop_event: asyncio.Event, poll_interval: float = 5.0) -> None:
        logger.info(f"[Triggers] Periodic triggers started {self.intervals}")
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"[Triggers] tick failed: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("[Triggers] Periodic triggers stopped")
