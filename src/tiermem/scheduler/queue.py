"""
Task queue

Durable at-least-once job queue on top of the SQLite store:
- enqueue(name, payload, delay, attempts, backoff, job_key)
- workers claim due jobs atomically, so several processes can share a database
- failures are retried with bounded exponential backoff, then moved to ``dead``
- jobs stuck in ``running`` past their lock are requeued by requeue_stale()

Handlers must be idempotent: a job may run more than once.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..core.errors import ProviderError

if TYPE_CHECKING:
    from ..memory.storage import MemoryStorage

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict], Awaitable[Any]]
DeadHook = Callable[[dict, str], Awaitable[None]]

JOBS_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id           TEXT PRIMARY KEY,
    name         TEXT NOT NULL,
    payload      TEXT NOT NULL DEFAULT '{}',
    status       TEXT NOT NULL DEFAULT 'queued',
    attempts     INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    backoff      REAL NOT NULL DEFAULT 5,
    run_at       REAL NOT NULL,
    locked_until REAL,
    job_key      TEXT,
    last_error   TEXT,
    created_at   REAL NOT NULL,
    updated_at   REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_due ON jobs(status, run_at);
CREATE INDEX IF NOT EXISTS idx_jobs_key ON jobs(job_key, status);
"""


class JobStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    DEAD = "dead"


@dataclass
class JobRecord:
    id: str
    name: str
    payload: dict = field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    backoff: float = 5.0
    run_at: float = 0.0
    locked_until: float | None = None
    job_key: str | None = None
    last_error: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def from_row(cls, row: Any) -> JobRecord:
        data = dict(row)
        data["payload"] = json.loads(data.get("payload") or "{}")
        data["status"] = JobStatus(data["status"])
        return cls(**data)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "run_at": self.run_at,
            "job_key": self.job_key,
            "last_error": self.last_error,
        }


@dataclass
class _Registration:
    handler: JobHandler
    on_dead: DeadHook | None = None


class TaskQueue:
    """SQLite-backed job queue with asyncio workers"""

    def __init__(
        self,
        storage: MemoryStorage,
        *,
        default_attempts: int = 3,
        default_backoff: float = 5.0,
        max_backoff: float = 300.0,
        job_timeout: float = 120.0,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.default_attempts = default_attempts
        self.default_backoff = default_backoff
        self.max_backoff = max_backoff
        self.job_timeout = job_timeout
        self._clock = clock
        self._handlers: dict[str, _Registration] = {}
        self.storage.executescript(JOBS_SCHEMA)

    # ==========================================================================
    # Producer side
    # ==========================================================================

    def register(self, name: str, handler: JobHandler, *, on_dead: DeadHook | None = None) -> None:
        self._handlers[name] = _Registration(handler, on_dead)

    @property
    def registered(self) -> list[str]:
        return sorted(self._handlers)

    def enqueue(
        self,
        name: str,
        payload: dict | None = None,
        *,
        delay: float = 0.0,
        attempts: int | None = None,
        backoff: float | None = None,
        job_key: str | None = None,
    ) -> str:
        """
        Add a job.

        Args:
            name: handler name
            payload: JSON-serializable arguments
            delay: seconds before the job becomes due
            attempts: max attempts (default from queue settings)
            backoff: base backoff in seconds (doubles per attempt)
            job_key: coalescing key; while a queued job with the same key
                exists, its id is returned instead of adding a new job

        Returns:
            job id
        """
        now = self._clock()
        with self.storage.transaction() as conn:
            if job_key:
                row = conn.execute(
                    "SELECT id FROM jobs WHERE job_key = ? AND status = ? LIMIT 1",
                    (job_key, JobStatus.QUEUED.value),
                ).fetchone()
                if row:
                    logger.debug(f"[Queue] {name} coalesced into {row['id']} (key={job_key})")
                    return row["id"]
            job_id = uuid.uuid4().hex
            conn.execute(
                "INSERT INTO jobs (id, name, payload, status, attempts, max_attempts, backoff, "
                "run_at, job_key, created_at, updated_at) VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)",
                (
                    job_id,
                    name,
                    json.dumps(payload or {}, ensure_ascii=False),
                    JobStatus.QUEUED.value,
                    attempts or self.default_attempts,
                    self.default_backoff if backoff is None else backoff,
                    now + max(0.0, delay),
                    job_key,
                    now,
                    now,
                ),
            )
        logger.debug(f"[Queue] Enqueued {name} ({job_id})")
        return job_id

    # ==========================================================================
    # Consumer side
    # ==========================================================================

    def claim_next(self) -> JobRecord | None:
        """Atomically move the oldest due job with a registered handler to ``running``."""
        if not self._handlers:
            return None
        now = self._clock()
        names = list(self._handlers)
        marks = ",".join("?" * len(names))
        with self.storage.transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM jobs WHERE status = ? AND run_at <= ? AND name IN ({marks}) "
                "ORDER BY run_at LIMIT 1",
                (JobStatus.QUEUED.value, now, *names),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE jobs SET status = ?, attempts = attempts + 1, locked_until = ?, "
                "updated_at = ? WHERE id = ?",
                (JobStatus.RUNNING.value, now + self.job_timeout, now, row["id"]),
            )
        job = JobRecord.from_row(row)
        job.status = JobStatus.RUNNING
        job.attempts += 1
        return job

    def _backoff_for(self, job: JobRecord) -> float:
        return min(self.max_backoff, job.backoff * (2 ** max(0, job.attempts - 1)))

    async def run_job(self, job: JobRecord) -> bool:
        """Run one claimed job. Returns True on success."""
        reg = self._handlers[job.name]
        try:
            await asyncio.wait_for(reg.handler(job.payload), timeout=self.job_timeout)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            retryable = not (isinstance(e, ProviderError) and not e.retryable)
            if retryable and job.attempts < job.max_attempts:
                delay = self._backoff_for(job)
                self._update(job.id, JobStatus.QUEUED, error=error, run_at=self._clock() + delay)
                logger.warning(
                    f"[Queue] {job.name} ({job.id}) attempt {job.attempts}/{job.max_attempts} "
                    f"failed, retry in {delay:.1f}s: {error}"
                )
            else:
                self._update(job.id, JobStatus.DEAD, error=error)
                logger.error(f"[Queue] {job.name} ({job.id}) is dead after {job.attempts} attempts: {error}")
                if reg.on_dead is not None:
                    try:
                        await reg.on_dead(job.payload, error)
                    except Exception as hook_err:
                        logger.error(f"[Queue] dead hook for {job.name} failed: {hook_err}")
            return False

        self._update(job.id, JobStatus.COMPLETED)
        return True

    def _update(
        self, job_id: str, status: JobStatus, error: str | None = None, run_at: float | None = None
    ) -> None:
        now = self._clock()
        self.storage.execute(
            "UPDATE jobs SET status = ?, last_error = COALESCE(?, last_error), "
            "run_at = COALESCE(?, run_at), locked_until = NULL, updated_at = ? WHERE id = ?",
            (status.value, error, run_at, now, job_id),
        )

    async def run_pending(self, max_jobs: int | None = None) -> int:
        """Run due jobs one at a time until none is left. Returns the number run."""
        ran = 0
        while max_jobs is None or ran < max_jobs:
            job = self.claim_next()
            if job is None:
                break
            await self.run_job(job)
            ran += 1
        return ran

    async def run_worker(
        self,
        stop_event: asyncio.Event,
        concurrency: int = 4,
        poll_interval: float = 1.0,
    ) -> None:
        """Claim and run jobs until ``stop_event`` is set."""
        semaphore = asyncio.Semaphore(concurrency)
        running: set[asyncio.Task] = set()
        logger.info(f"[Queue] Worker started (concurrency={concurrency}, handlers={self.registered})")

        async def _run(job: JobRecord) -> None:
            try:
                await self.run_job(job)
            finally:
                semaphore.release()

        while not stop_event.is_set():
            await semaphore.acquire()
            job = self.claim_next()
            if job is None:
                semaphore.release()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue
            task = asyncio.create_task(_run(job))
            running.add(task)
            task.add_done_callback(running.discard)

        if running:
            await asyncio.gather(*running, return_exceptions=True)
        logger.info("[Queue] Worker stopped")

    # ==========================================================================
    # Maintenance / inspection
    # ==========================================================================

    def requeue_stale(self) -> int:
        """Return jobs whose worker vanished (lock expired) to the queue."""
        now = self._clock()
        cur = self.storage.execute(
            "UPDATE jobs SET status = ?, locked_until = NULL, updated_at = ? "
            "WHERE status = ? AND locked_until IS NOT NULL AND locked_until < ?",
            (JobStatus.QUEUED.value, now, JobStatus.RUNNING.value, now),
        )
        if cur.rowcount:
            logger.warning(f"[Queue] Requeued {cur.rowcount} stale running jobs")
        return cur.rowcount

    def get_job(self, job_id: str) -> JobRecord | None:
        row = self.storage.fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return JobRecord.from_row(row) if row else None

    def list_jobs(
        self, status: JobStatus | None = None, name: str | None = None, limit: int = 100
    ) -> list[JobRecord]:
        sql = "SELECT * FROM jobs WHERE 1 = 1"
        params: list = []
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if name:
            sql += " AND name = ?"
            params.append(name)
        sql += " ORDER BY created_at LIMIT ?"
        params.append(limit)
        return [JobRecord.from_row(r) for r in self.storage.fetchall(sql, params)]

    def counts(self) -> dict[str, int]:
        rows = self.storage.fetchall("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status")
        return {r["status"]: int(r["n"]) for r in rows}
