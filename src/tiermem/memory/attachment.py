"""
Episode attachment agent

Attaches a freshly processed chunk to every open episode of the same user
whose centroid is close enough. Chunks matching nothing join the user's
orphan backlog, which feeds consolidation.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .episodes import EpisodeUpdater
from .storage import MemoryStorage
from .types import ChunkEpisodeLink, ChunkStatus
from .vectors import cosine_similarity

logger = logging.getLogger(__name__)

# tolerance for a similarity computed to exactly the threshold
_EPS = 1e-9


@dataclass
class AttachmentResult:
    chunk_id: str
    episode_ids: list[str] = field(default_factory=list)
    orphaned: bool = False
    skipped: str = ""


class EpisodeAttachmentAgent:
    """Chunk -> episode(s) or orphan backlog"""

    def __init__(
        self,
        storage: MemoryStorage,
        episodes: EpisodeUpdater,
        *,
        attach_threshold: float = 0.82,
        window_days: float = 7.0,
        max_candidates: int = 50,
        on_orphaned: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.storage = storage
        self.episodes = episodes
        self.attach_threshold = attach_threshold
        self.window_days = window_days
        self.max_candidates = max_candidates
        self.on_orphaned = on_orphaned
        self._clock = clock

    async def attach(self, chunk_id: str) -> AttachmentResult:
        """
        Attach one chunk.

        Idempotent: links that already exist are not re-applied and an already
        orphaned chunk is not counted twice.
        """
        result = AttachmentResult(chunk_id)
        chunk = self.storage.get_chunk(chunk_id)
        if chunk is None:
            result.skipped = "missing"
            return result
        if chunk.status != ChunkStatus.PROCESSED or not chunk.embedding:
            result.skipped = f"status={chunk.status.value}"
            return result

        since = self._clock() - timedelta(days=self.window_days)
        candidates = self.storage.list_open_episodes(
            chunk.user_id, since=since, limit=self.max_candidates
        )

        matches: list[tuple[str, float]] = []
        for episode in candidates:
            similarity = cosine_similarity(chunk.embedding, episode.centroid)
            if similarity >= self.attach_threshold - _EPS:
                matches.append((episode.id, similarity))

        if matches:
            for episode_id, similarity in matches:
                link = ChunkEpisodeLink(chunk.id, episode_id, similarity=similarity)
                await self.episodes.add_chunks(episode_id, [link])
                result.episode_ids.append(episode_id)
            if chunk.is_orphaned:
                self.storage.clear_orphaned([chunk.id])
            logger.info(
                f"[Attachment] {chunk.id} -> {len(matches)} episode(s) "
                f"(best={max(s for _, s in matches):.3f})"
            )
            return result

        result.orphaned = True
        if self.storage.mark_orphaned(chunk.id, at=self._clock()):
            logger.debug(f"[Attachment] {chunk.id} orphaned ({len(candidates)} candidates)")
            if self.on_orphaned is not None:
                self.on_orphaned(chunk.user_id)
        return result
