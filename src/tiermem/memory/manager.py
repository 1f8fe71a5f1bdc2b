"""
Memory manager - the coordinator

Wires the tiers together and exposes the two caller-facing operations:
- ingest(): accept a raw event, return an acknowledgement, never raise
- retrieve(): ranked memories across chunks, episodes and thoughts

Everything else runs as queue jobs:
- event.ingest      -> IngestionAgent.process_event
- chunk.attach      -> EpisodeAttachmentAgent.attach
- episode.summarize -> EpisodeUpdater.resummarize
- user.consolidate  -> ConsolidationAgent.consolidate
- user.synthesize   -> ThoughtSynthesisAgent.synthesize
- index.reconcile   -> reconcile()

Sub-components:
- storage: MemoryStorage (SQLite)
- index: VectorIndex (ChromaDB by default)
- provider: Provider (OpenAI-compatible HTTP by default)
- queue: TaskQueue
- triggers / periodic: consolidation and synthesis triggers
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..config import Settings
from ..core.errors import IndexUnavailable
from ..llm.providers import Provider, create_provider
from ..scheduler.jobs import (
    JOB_ATTACH,
    JOB_CONSOLIDATE,
    JOB_INGEST,
    JOB_RECONCILE,
    JOB_SUMMARIZE,
    JOB_SYNTHESIZE,
)
from ..scheduler.queue import TaskQueue
from ..scheduler.triggers import PeriodicTriggers, TriggerPolicy
from .attachment import AttachmentResult, EpisodeAttachmentAgent
from .cache import TTLCache
from .chunker import Chunker, TokenCounter, tiktoken_counter
from .consolidation import ConsolidationAgent, ConsolidationReport
from .episodes import EpisodeUpdater
from .importance import ImportanceEvaluator
from .ingestion import IngestionAgent, IngestionResult, ReconcileReport
from .locks import KeyedLocks, LeaseManager
from .narrative import NarrativeWriter
from .retrieval import RetrievalCoordinator, format_memory_context
from .storage import MemoryStorage
from .thoughts import SynthesisReport, ThoughtSynthesisAgent
from .types import ContentType, RawEvent, RetrievedMemory, Tier
from .vector_store import ChromaVectorIndex, VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class IngestAck:
    """What the conversational caller gets back from ingest()"""

    event_id: str
    job_id: str | None = None
    accepted: bool = True


class MemoryManager:
    """Tiered memory coordinator"""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        storage: MemoryStorage | None = None,
        index: VectorIndex | None = None,
        provider: Provider | None = None,
        token_counter: TokenCounter | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or Settings()
        s = self.settings
        dims = s.class_dimensions()
        self._clock = clock

        def now() -> datetime:
            return datetime.fromtimestamp(clock())

        self._now = now

        self.storage = storage or MemoryStorage(s.db_full_path)
        self.index = index or ChromaVectorIndex(s.chroma_full_path)
        self.provider = provider or create_provider(s)
        self._schema_ready = False
        self.ensure_schema()

        self.queue = TaskQueue(
            self.storage,
            default_attempts=s.job_max_attempts,
            default_backoff=s.job_backoff_seconds,
            max_backoff=s.job_max_backoff_seconds,
            job_timeout=s.job_timeout_seconds,
            clock=clock,
        )
        self.triggers = TriggerPolicy(
            self.storage,
            self.queue,
            backlog_threshold=s.orphan_backlog_threshold,
            burst_count=s.orphan_burst_count,
            burst_window=s.orphan_burst_window_seconds,
            thought_burst_updates=s.thought_burst_updates,
            clock=clock,
        )
        self.periodic = PeriodicTriggers(
            self.storage,
            self.queue,
            self.triggers,
            consolidation_interval=s.consolidation_interval_seconds,
            thought_interval=s.thought_interval_seconds,
            reconcile_interval=s.reconcile_interval_seconds,
            clock=clock,
        )

        self.token_counter = token_counter or tiktoken_counter(s.tokenizer_encoding)
        self.chunker = Chunker(s.min_chunk_tokens, s.max_chunk_tokens, self.token_counter)
        self.evaluator = ImportanceEvaluator(
            self.provider, TTLCache(s.importance_cache_ttl, clock=clock)
        )
        self.writer = NarrativeWriter(self.provider)
        self.leases = LeaseManager(self.storage, clock=clock)

        self.ingestion = IngestionAgent(
            self.storage,
            self.index,
            self.provider,
            self.evaluator,
            self.chunker,
            self.queue,
            importance_threshold=s.importance_threshold,
            default_importance=s.default_importance,
            importance_fallback=s.importance_fallback,
            dimension=dims[Tier.CHUNK.value],
        )
        self.episodes = EpisodeUpdater(
            self.storage,
            self.index,
            self.queue,
            self.writer,
            KeyedLocks(),
            max_chunks_per_episode=s.max_chunks_per_episode,
            on_updated=self.triggers.on_episode_updated,
            clock=now,
        )
        self.attachment = EpisodeAttachmentAgent(
            self.storage,
            self.episodes,
            attach_threshold=s.attach_threshold,
            window_days=s.episode_window_days,
            max_candidates=s.max_candidate_episodes,
            on_orphaned=self.triggers.on_orphaned,
            clock=now,
        )
        self.consolidation = ConsolidationAgent(
            self.storage,
            self.episodes,
            self.leases,
            cluster_radius=s.cluster_radius,
            min_cluster_size=s.min_cluster_size,
            max_chunks_per_episode=s.max_chunks_per_episode,
            merge_threshold=s.attach_threshold,
            max_candidates=s.max_candidate_episodes,
            lease_seconds=s.consolidation_lease_seconds,
        )
        self.thoughts = ThoughtSynthesisAgent(
            self.storage,
            self.index,
            self.provider,
            self.writer,
            self.leases,
            min_shared_tags=s.thought_min_shared_tags,
            min_episode_similarity=s.thought_min_episode_similarity,
            max_episodes=s.thought_max_episodes,
            min_confidence=s.thought_min_confidence,
            duplicate_threshold=s.thought_duplicate_threshold,
            lease_seconds=s.consolidation_lease_seconds,
            dimension=dims[Tier.THOUGHT.value],
        )
        self.retrieval = RetrievalCoordinator(
            self.storage,
            self.index,
            self.provider,
            limit=s.retrieval_limit,
            certainty=s.retrieval_certainty,
            min_importance=s.retrieval_min_importance,
            stage_timeout=s.retrieval_stage_timeout_seconds,
        )

        self._register_jobs()

    # ==========================================================================
    # Setup
    # ==========================================================================

    def ensure_schema(self) -> bool:
        """Declare the three vector classes; retried later if the index is down."""
        if self._schema_ready:
            return True
        missing = []
        for name, dim in self.settings.class_dimensions().items():
            try:
                self.index.declare_class(name, dim)
            except IndexUnavailable as e:
                logger.warning(f"[Manager] Vector index unavailable, {name} not declared: {e}")
                missing.append(name)
        if missing:
            return False
        self._schema_ready = True
        return True

    def _register_jobs(self) -> None:
        q = self.queue
        q.register(JOB_INGEST, self._job_ingest, on_dead=self._job_ingest_dead)
        q.register(JOB_ATTACH, self._job_attach)
        q.register(JOB_SUMMARIZE, self._job_summarize)
        q.register(JOB_CONSOLIDATE, self._job_consolidate)
        q.register(JOB_SYNTHESIZE, self._job_synthesize)
        q.register(JOB_RECONCILE, self._job_reconcile)

    # ==========================================================================
    # Caller-facing API
    # ==========================================================================

    async def ingest(
        self,
        user_id: str,
        content: str,
        *,
        session_id: str = "",
        content_type: ContentType | str = ContentType.USER_CHAT,
        force_important: bool = False,
    ) -> IngestAck:
        """
        Accept a raw event for asynchronous processing.

        Never raises; failures are logged and reported through ``accepted``.
        """
        event = RawEvent(
            user_id=user_id,
            content=content or "",
            session_id=session_id,
            content_type=ContentType.parse(content_type),
            force_important=force_important,
            created_at=self._now(),
        )
        if not event.content.strip():
            logger.debug(f"[Manager] Empty event from {user_id} ignored")
            return IngestAck(event.id, accepted=False)
        try:
            self.storage.save_raw_event(event)
            job_id = self.queue.enqueue(JOB_INGEST, {"event_id": event.id})
        except Exception as e:
            logger.error(f"[Manager] Failed to accept event {event.id}: {e}", exc_info=True)
            return IngestAck(event.id, accepted=False)
        return IngestAck(event.id, job_id)

    async def ingest_now(self, event: RawEvent) -> IngestionResult:
        """Run ingestion inline (CLI and tests); attachment still goes through the queue."""
        self.ensure_schema()
        return await self.ingestion.process_event(event)

    async def retrieve(
        self,
        query: str,
        user_id: str,
        *,
        limit: int | None = None,
        certainty: float | None = None,
        min_importance: float | None = None,
    ) -> list[RetrievedMemory]:
        if not self.ensure_schema():
            return []
        return await self.retrieval.retrieve(
            query, user_id, limit=limit, certainty=certainty, min_importance=min_importance
        )

    async def retrieve_context(self, query: str, user_id: str, max_tokens: int | None = None) -> str:
        """Retrieve and render memories as a prompt block."""
        items = await self.retrieve(query, user_id)
        return format_memory_context(
            items, max_tokens or self.settings.retrieval_context_tokens, self.token_counter
        )

    def boost(self, user_id: str) -> str:
        """Ask for an immediate consolidation run."""
        return self.triggers.boost(user_id)

    # ==========================================================================
    # Direct operations (also used by the job handlers)
    # ==========================================================================

    # index writes inside these fall back to reconcile while the schema is missing

    async def attach(self, chunk_id: str) -> AttachmentResult:
        self.ensure_schema()
        return await self.attachment.attach(chunk_id)

    async def resummarize(self, episode_id: str) -> None:
        self.ensure_schema()
        await self.episodes.resummarize(episode_id)

    async def consolidate(self, user_id: str) -> ConsolidationReport:
        self.ensure_schema()
        return await self.consolidation.consolidate(user_id)

    async def synthesize(self, user_id: str) -> SynthesisReport:
        self.ensure_schema()
        return await self.thoughts.synthesize(user_id)

    async def reconcile(self) -> ReconcileReport:
        """Reconciliation sweep: index replay, stale jobs, idle episodes."""
        if not self.ensure_schema():
            return ReconcileReport()
        report = await self.ingestion.reconcile_pending_index(self.settings.reconcile_batch_size)
        report.stale_jobs = self.queue.requeue_stale()
        idle_before = self._now() - timedelta(days=self.settings.episode_close_after_days)
        report.closed_episodes = self.storage.close_idle_episodes(idle_before)
        if report.closed_episodes:
            logger.info(f"[Manager] Closed {report.closed_episodes} idle episodes")
        return report

    # ==========================================================================
    # Job handlers
    # ==========================================================================

    async def _job_ingest(self, payload: dict) -> None:
        event = self.storage.get_raw_event(payload["event_id"])
        if event is None:
            logger.warning(f"[Manager] Ingest job for unknown event {payload['event_id']}")
            return
        self.ensure_schema()
        await self.ingestion.process_event(event)

    async def _job_ingest_dead(self, payload: dict, error: str) -> None:
        await self.ingestion.fail_event(payload["event_id"], error)

    async def _job_attach(self, payload: dict) -> None:
        await self.attach(payload["chunk_id"])

    async def _job_summarize(self, payload: dict) -> None:
        await self.resummarize(payload["episode_id"])

    async def _job_consolidate(self, payload: dict) -> None:
        await self.consolidate(payload["user_id"])

    async def _job_synthesize(self, payload: dict) -> None:
        await self.synthesize(payload["user_id"])

    async def _job_reconcile(self, payload: dict) -> None:
        await self.reconcile()

    # ==========================================================================
    # Workers
    # ==========================================================================

    async def run_pending(self, max_jobs: int | None = None) -> int:
        """Drain due jobs in this task (CLI / tests)."""
        return await self.queue.run_pending(max_jobs)

    async def run_worker(self, stop_event: asyncio.Event) -> None:
        """Queue workers plus periodic triggers until ``stop_event`` is set."""
        s = self.settings
        await asyncio.gather(
            self.queue.run_worker(stop_event, s.worker_concurrency, s.worker_poll_seconds),
            self.periodic.run(stop_event),
        )

    def get_stats(self) -> dict:
        stats = self.storage.get_stats()
        stats["jobs"] = self.queue.counts()
        return stats

    async def close(self) -> None:
        await self.provider.close()
        self.storage.close()
