"""
Consolidation agent

Periodically turns a user's orphan backlog into episodes:
1. cluster orphaned chunk vectors (DBSCAN, cosine distance)
2. merge each cluster into the closest open episode when it is within the
   attachment threshold, otherwise create a new episode with a generated
   title and narrative
3. remove consumed chunks from the backlog; sparse ones stay orphaned

Only one run per user at a time (lease); overlapping triggers are skipped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ..scheduler.jobs import consolidate_key
from .clustering import Cluster, cluster_vectors
from .episodes import EpisodeUpdater
from .locks import LeaseManager
from .storage import MemoryStorage
from .types import Chunk, ChunkEpisodeLink, Episode
from .vectors import cosine_similarity

logger = logging.getLogger(__name__)


@dataclass
class ConsolidationReport:
    user_id: str
    status: str = "completed"  # completed | skipped | idle
    orphans: int = 0
    clusters: int = 0
    created: int = 0
    merged: int = 0
    consumed: int = 0

    @property
    def remaining(self) -> int:
        return self.orphans - self.consumed

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "status": self.status,
            "orphans": self.orphans,
            "clusters": self.clusters,
            "created": self.created,
            "merged": self.merged,
            "consumed": self.consumed,
            "remaining": self.remaining,
        }


class ConsolidationAgent:
    """Orphan backlog -> episodes"""

    def __init__(
        self,
        storage: MemoryStorage,
        episodes: EpisodeUpdater,
        leases: LeaseManager,
        *,
        cluster_radius: float = 0.3,
        min_cluster_size: int = 2,
        max_chunks_per_episode: int = 30,
        merge_threshold: float = 0.82,
        max_candidates: int = 50,
        lease_seconds: float = 300.0,
        max_orphans: int = 1000,
    ):
        self.storage = storage
        self.episodes = episodes
        self.leases = leases
        self.cluster_radius = cluster_radius
        self.min_cluster_size = min_cluster_size
        self.max_chunks_per_episode = max_chunks_per_episode
        self.merge_threshold = merge_threshold
        self.max_candidates = max_candidates
        self.lease_seconds = lease_seconds
        self.max_orphans = max_orphans

    async def consolidate(self, user_id: str) -> ConsolidationReport:
        report = ConsolidationReport(user_id)
        async with self.leases.lease(consolidate_key(user_id), self.lease_seconds) as held:
            if not held:
                report.status = "skipped"
                logger.info(f"[Consolidation] {user_id} already running, skipped")
                return report
            await self._run(user_id, report)
        logger.info(f"[Consolidation] {report.to_dict()}")
        return report

    async def _run(self, user_id: str, report: ConsolidationReport) -> None:
        orphans = self.storage.list_orphans(user_id, limit=self.max_orphans)
        report.orphans = len(orphans)
        if len(orphans) < self.min_cluster_size:
            report.status = "idle"
            return

        by_id = {c.id: c for c in orphans}
        clusters = await asyncio.to_thread(
            cluster_vectors,
            [c.id for c in orphans],
            [c.embedding for c in orphans],
            self.cluster_radius,
            self.min_cluster_size,
            self.max_chunks_per_episode,
        )
        report.clusters = len(clusters)
        if not clusters:
            report.status = "idle"
            return

        open_episodes = self.storage.list_open_episodes(user_id, limit=self.max_candidates)
        for cluster in clusters:
            members = [by_id[i] for i in cluster.member_ids]
            target, similarity = self._closest_episode(cluster, open_episodes)
            if target is not None and similarity >= self.merge_threshold:
                links = self._links(members, target.id, target.centroid)
                await self.episodes.add_chunks(target.id, links)
                # later clusters compare against the post-merge centroid
                refreshed = self.storage.get_episode(target.id)
                if refreshed is not None:
                    open_episodes[open_episodes.index(target)] = refreshed
                report.merged += 1
                logger.debug(f"[Consolidation] Merged {len(members)} chunks into {target.id} ({similarity:.3f})")
            else:
                episode = await self._create_episode(user_id, cluster, members)
                open_episodes.insert(0, episode)
                report.created += 1
            report.consumed += self.storage.clear_orphaned(cluster.member_ids)

    @staticmethod
    def _closest_episode(
        cluster: Cluster, episodes: list[Episode]
    ) -> tuple[Episode | None, float]:
        best: Episode | None = None
        best_sim = -1.0
        for episode in episodes:
            sim = cosine_similarity(cluster.centroid, episode.centroid)
            if sim > best_sim:
                best, best_sim = episode, sim
        return best, best_sim

    @staticmethod
    def _links(chunks: list[Chunk], episode_id: str, centroid: list[float]) -> list[ChunkEpisodeLink]:
        return [
            ChunkEpisodeLink(c.id, episode_id, similarity=cosine_similarity(c.embedding, centroid))
            for c in chunks
        ]

    async def _create_episode(
        self, user_id: str, cluster: Cluster, members: list[Chunk]
    ) -> Episode:
        narrative = await self.episodes.writer.write_episode_or_fallback(members)
        episode = Episode(
            user_id=user_id,
            title=narrative.title,
            narrative=narrative.narrative,
            tags=narrative.tags,
            centroid=cluster.centroid,
        )
        return await self.episodes.create(
            episode, self._links(members, episode.id, cluster.centroid)
        )
