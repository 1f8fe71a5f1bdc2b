"""
Episode updates shared by attachment and consolidation

- add_chunks: link chunks and recompute the centroid inside the per-episode
  critical section, then refresh the index and schedule a narrative refresh
- create: write a new episode with its first links in one transaction
- resummarize: regenerate title/narrative/tags from the member chunks
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from ..core.errors import IndexUnavailable, ParseError
from ..scheduler.jobs import JOB_SUMMARIZE, summarize_key
from ..scheduler.queue import TaskQueue
from .locks import KeyedLocks
from .narrative import NarrativeWriter
from .storage import MemoryStorage
from .types import ChunkEpisodeLink, Episode, Tier
from .vector_store import VectorIndex

logger = logging.getLogger(__name__)


class EpisodeUpdater:
    """Every write to an episode goes through here."""

    def __init__(
        self,
        storage: MemoryStorage,
        index: VectorIndex,
        queue: TaskQueue,
        writer: NarrativeWriter,
        locks: KeyedLocks | None = None,
        *,
        max_chunks_per_episode: int = 30,
        on_updated: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.storage = storage
        self.index = index
        self.queue = queue
        self.writer = writer
        self.locks = locks or KeyedLocks()
        self.max_chunks_per_episode = max_chunks_per_episode
        self.on_updated = on_updated
        self._clock = clock

    async def _index_episode(self, episode: Episode) -> None:
        try:
            await asyncio.to_thread(
                self.index.upsert,
                Tier.EPISODE.value,
                episode.id,
                episode.centroid,
                episode.index_properties(self.storage.episode_chunk_ids(episode.id)),
            )
        except IndexUnavailable as e:
            logger.warning(f"[Episodes] Index unavailable for {episode.id}, left for reconcile: {e}")
            return
        self.storage.set_episode_indexed(episode.id, True)
        episode.indexed = True

    def _notify(self, user_id: str) -> None:
        if self.on_updated is not None:
            self.on_updated(user_id)

    async def add_chunks(self, episode_id: str, links: list[ChunkEpisodeLink]) -> int:
        """
        Link chunks to an episode.

        Returns:
            number of newly linked chunks (0 when all links already existed)
        """
        async with self.locks.hold(episode_id):
            added, _ = self.storage.attach_chunks(episode_id, links, now=self._clock())
            if not added:
                return 0
            episode = self.storage.get_episode(episode_id)
            if episode is None:
                return added
            await self._index_episode(episode)

        self.queue.enqueue(
            JOB_SUMMARIZE, {"episode_id": episode_id}, job_key=summarize_key(episode_id)
        )
        self._notify(episode.user_id)
        logger.debug(f"[Episodes] {episode_id} +{added} chunks")
        return added

    async def create(self, episode: Episode, links: list[ChunkEpisodeLink]) -> Episode:
        """Persist a new episode and its first links atomically, then index it."""
        self.storage.create_episode(episode, links)
        await self._index_episode(episode)
        self._notify(episode.user_id)
        logger.info(f"[Episodes] Created {episode.id} '{episode.title}' ({len(links)} chunks)")
        return episode

    async def resummarize(self, episode_id: str) -> bool:
        """
        Refresh title, narrative and tags from the member chunks.

        Returns False when the episode is gone or the completion was unusable
        (the previous narrative is kept).

        Raises:
            ProviderError: so the queue can retry
        """
        episode = self.storage.get_episode(episode_id)
        if episode is None:
            return False
        chunks = self.storage.episode_chunks(episode_id, limit=self.max_chunks_per_episode)
        if not chunks:
            return False
        try:
            result = await self.writer.write_episode(chunks)
        except ParseError as e:
            logger.warning(f"[Episodes] Unparseable narrative for {episode_id}, keeping old one: {e}")
            return False

        async with self.locks.hold(episode_id):
            self.storage.update_episode_narrative(
                episode_id, result.title, result.narrative, result.tags
            )
            refreshed = self.storage.get_episode(episode_id)
            if refreshed is not None:
                await self._index_episode(refreshed)
        logger.info(f"[Episodes] Re-summarized {episode_id}: '{result.title}'")
        return True
