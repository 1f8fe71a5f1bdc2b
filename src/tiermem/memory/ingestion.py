"""
Ingestion agent

RawEvent -> importance gate -> chunks -> one batched embedding call ->
relational rows -> vector index -> attachment jobs.

Chunk rows are written ``pending`` before embedding, so a re-delivered job
resumes with the same chunks instead of duplicating them. Index outages leave
chunks in ``pending_index`` for reconcile_pending_index().
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from ..core.errors import IndexUnavailable, ValidationError
from ..llm.providers.base import Provider
from ..scheduler.jobs import JOB_ATTACH, attach_key
from ..scheduler.queue import TaskQueue
from .chunker import Chunker
from .importance import ImportanceEvaluator, heuristic_score
from .storage import MemoryStorage
from .types import Chunk, ChunkStatus, RawEvent, Tier
from .vector_store import VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    event_id: str
    status: str  # ingested | below_threshold | empty | failed
    importance: float | None = None
    chunk_ids: list[str] = field(default_factory=list)
    processed: int = 0
    pending_index: int = 0
    errored: int = 0


@dataclass
class ReconcileReport:
    chunks: int = 0
    episodes: int = 0
    thoughts: int = 0
    stale_jobs: int = 0
    closed_episodes: int = 0

    def to_dict(self) -> dict:
        return {
            "chunks": self.chunks,
            "episodes": self.episodes,
            "thoughts": self.thoughts,
            "stale_jobs": self.stale_jobs,
            "closed_episodes": self.closed_episodes,
        }


def fold_blank_fragments(fragments: list[str]) -> list[str]:
    """Attach whitespace-only fragments to a neighbour so the join still equals the input."""
    out: list[str] = []
    carry = ""
    for fragment in fragments:
        if not fragment.strip():
            if out:
                out[-1] += fragment
            else:
                carry += fragment
            continue
        out.append(carry + fragment)
        carry = ""
    return out


class IngestionAgent:
    """Turns raw events into indexed chunks"""

    def __init__(
        self,
        storage: MemoryStorage,
        index: VectorIndex,
        provider: Provider,
        evaluator: ImportanceEvaluator,
        chunker: Chunker,
        queue: TaskQueue,
        *,
        importance_threshold: float = 0.2,
        default_importance: float = 0.5,
        importance_fallback: str = "default",
        dimension: int = 768,
    ):
        self.storage = storage
        self.index = index
        self.provider = provider
        self.evaluator = evaluator
        self.chunker = chunker
        self.queue = queue
        self.importance_threshold = importance_threshold
        self.default_importance = default_importance
        self.importance_fallback = importance_fallback
        self.dimension = dimension

    # ==========================================================================
    # Main path
    # ==========================================================================

    async def _score(self, event: RawEvent) -> float:
        score = await self.evaluator.evaluate(
            event.content,
            event.content_type,
            force_important=event.force_important,
            user_id=event.user_id,
            session_id=event.session_id,
        )
        if score is not None:
            return score
        if self.importance_fallback == "heuristic":
            score = heuristic_score(event.content, event.content_type)
        else:
            score = self.default_importance
        logger.info(f"[Ingestion] Importance unknown for {event.id}, using {score:.2f}")
        return score

    def _make_chunks(self, event: RawEvent, importance: float) -> list[Chunk]:
        fragments = fold_blank_fragments(self.chunker.split(event.content))
        return [
            Chunk(
                raw_event_id=event.id,
                user_id=event.user_id,
                session_id=event.session_id,
                text=fragment,
                index=i,
                token_count=self.chunker.count_tokens(fragment),
                importance=importance,
            )
            for i, fragment in enumerate(fragments)
        ]

    async def process_event(self, event: RawEvent) -> IngestionResult:
        """
        Ingest one event.

        Returns:
            IngestionResult describing what happened to each chunk

        Raises:
            ProviderError: the embedding call failed as a whole (the queue retries)
        """
        if not event.content or not event.content.strip():
            logger.info(f"[Ingestion] {ValidationError('empty content')} ({event.id}), skipped")
            return IngestionResult(event.id, "empty", importance=0.0)

        self.storage.save_raw_event(event)
        chunks = self.storage.get_chunks_for_event(event.id)
        if chunks:
            importance = chunks[0].importance
            logger.debug(f"[Ingestion] Resuming {event.id} with {len(chunks)} existing chunks")
        else:
            importance = await self._score(event)
            if importance < self.importance_threshold:
                logger.debug(f"[Ingestion] {event.id} below threshold ({importance:.2f})")
                return IngestionResult(event.id, "below_threshold", importance=importance)
            chunks = self._make_chunks(event, importance)
            if not chunks:
                return IngestionResult(event.id, "empty", importance=importance)
            self.storage.insert_chunks(chunks)

        result = IngestionResult(
            event.id, "ingested", importance=importance, chunk_ids=[c.id for c in chunks]
        )
        to_embed = [c for c in chunks if c.status == ChunkStatus.PENDING]
        if not to_embed:
            return result

        vectors = await self.provider.embed([c.text for c in to_embed])

        embedded: list[Chunk] = []
        failed: list[Chunk] = []
        for i, chunk in enumerate(to_embed):
            vector = vectors[i] if i < len(vectors) else None
            if vector is None or len(vector) != self.dimension:
                failed.append(chunk)
                continue
            chunk.embedding = vector
            self.storage.set_chunk_embedding(chunk.id, vector)
            embedded.append(chunk)

        if failed:
            result.errored = self.storage.transition_chunks(
                [c.id for c in failed], ChunkStatus.ERROR, from_statuses=[ChunkStatus.PENDING]
            )
            logger.warning(
                f"[Ingestion] {len(failed)}/{len(to_embed)} chunks of {event.id} got no usable embedding"
            )
        if not embedded:
            return result

        try:
            await asyncio.to_thread(
                self.index.upsert_many,
                Tier.CHUNK.value,
                [(c.id, c.embedding, c.index_properties()) for c in embedded],
            )
        except IndexUnavailable as e:
            result.pending_index = self.storage.transition_chunks(
                [c.id for c in embedded],
                ChunkStatus.PENDING_INDEX,
                from_statuses=[ChunkStatus.PENDING],
            )
            logger.warning(f"[Ingestion] Index unavailable, {result.pending_index} chunks pending_index: {e}")
            return result

        result.processed = self.storage.transition_chunks(
            [c.id for c in embedded], ChunkStatus.PROCESSED, from_statuses=[ChunkStatus.PENDING]
        )
        for chunk in embedded:
            self.queue.enqueue(JOB_ATTACH, {"chunk_id": chunk.id}, job_key=attach_key(chunk.id))
        logger.info(
            f"[Ingestion] {event.id}: {result.processed} processed, {result.errored} error "
            f"(importance={importance:.2f})"
        )
        return result

    async def fail_event(self, event_id: str, error: str) -> int:
        """Mark the still-pending chunks of an event ``error`` (retries exhausted)."""
        chunk_ids = [
            c.id for c in self.storage.get_chunks_for_event(event_id)
            if c.status == ChunkStatus.PENDING
        ]
        moved = self.storage.transition_chunks(
            chunk_ids, ChunkStatus.ERROR, from_statuses=[ChunkStatus.PENDING]
        )
        if moved:
            logger.error(f"[Ingestion] {moved} chunks of {event_id} marked error: {error}")
        return moved

    # ==========================================================================
    # Reconciliation sweep
    # ==========================================================================

    async def reconcile_pending_index(self, limit: int = 100) -> ReconcileReport:
        """Replay index writes that failed earlier.

        Chunks in ``pending_index`` are upserted from their stored embedding,
        moved to ``processed`` and handed to attachment. Episodes and thoughts
        with ``indexed = 0`` are re-upserted as well. Stops quietly while the
        index is still unreachable.
        """
        report = ReconcileReport()

        chunks = [
            c for c in self.storage.find_chunks_by_status(ChunkStatus.PENDING_INDEX, limit)
            if c.embedding
        ]
        if chunks:
            try:
                await asyncio.to_thread(
                    self.index.upsert_many,
                    Tier.CHUNK.value,
                    [(c.id, c.embedding, c.index_properties()) for c in chunks],
                )
            except IndexUnavailable as e:
                logger.warning(f"[Reconcile] Index still unavailable: {e}")
                return report
            report.chunks = self.storage.transition_chunks(
                [c.id for c in chunks],
                ChunkStatus.PROCESSED,
                from_statuses=[ChunkStatus.PENDING_INDEX],
            )
            for chunk in chunks:
                self.queue.enqueue(JOB_ATTACH, {"chunk_id": chunk.id}, job_key=attach_key(chunk.id))

        for episode in self.storage.episodes_needing_index(limit):
            try:
                await asyncio.to_thread(
                    self.index.upsert,
                    Tier.EPISODE.value,
                    episode.id,
                    episode.centroid,
                    episode.index_properties(self.storage.episode_chunk_ids(episode.id)),
                )
            except IndexUnavailable as e:
                logger.warning(f"[Reconcile] Episode upsert failed: {e}")
                return report
            self.storage.set_episode_indexed(episode.id, True)
            report.episodes += 1

        for thought in self.storage.thoughts_needing_index(limit):
            try:
                await asyncio.to_thread(
                    self.index.upsert,
                    Tier.THOUGHT.value,
                    thought.id,
                    thought.embedding,
                    thought.index_properties(),
                )
            except IndexUnavailable as e:
                logger.warning(f"[Reconcile] Thought upsert failed: {e}")
                return report
            self.storage.set_thought_indexed(thought.id, True)
            report.thoughts += 1

        if report.chunks or report.episodes or report.thoughts:
            logger.info(f"[Reconcile] Re-indexed {report.to_dict()}")
        return report
