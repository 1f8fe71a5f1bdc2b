"""
Thought synthesis agent

Finds groups of related episodes and asks the model for the pattern that
connects them. Groups come from two signals:
- shared tags (at least ``min_shared_tags`` in common)
- close centroids (similarity >= ``min_episode_similarity``)

A group already covered by one existing thought is skipped, and a new
thought that is nearly identical to an existing one extends that thought's
episode links instead of creating a duplicate.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from ..core.errors import IndexUnavailable, ParseError
from ..llm.providers.base import Provider
from ..scheduler.jobs import synthesize_key
from .locks import LeaseManager
from .narrative import NarrativeWriter
from .storage import MemoryStorage
from .types import Episode, EpisodeThoughtLink, Thought, Tier
from .vector_store import VectorIndex
from .vectors import cosine_similarity

logger = logging.getLogger(__name__)

MAX_GROUP_SIZE = 10


@dataclass
class EpisodeGroup:
    episode_ids: list[str]
    shared_tags: list[str] = field(default_factory=list)


@dataclass
class SynthesisReport:
    user_id: str
    status: str = "completed"  # completed | skipped | idle
    groups: int = 0
    created: int = 0
    extended: int = 0
    skipped: int = 0

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "status": self.status,
            "groups": self.groups,
            "created": self.created,
            "extended": self.extended,
            "skipped": self.skipped,
        }


def group_by_tags(episodes: list[Episode], min_shared: int) -> list[EpisodeGroup]:
    """Every pair sharing >= min_shared tags defines a group of all episodes with those tags."""
    groups: dict[frozenset[str], EpisodeGroup] = {}
    tag_sets = [(ep, {t.lower() for t in ep.tags}) for ep in episodes]
    for i, (_, tags_a) in enumerate(tag_sets):
        for _, tags_b in tag_sets[i + 1 :]:
            shared = tags_a & tags_b
            if len(shared) < min_shared:
                continue
            members = [ep.id for ep, tags in tag_sets if shared <= tags][:MAX_GROUP_SIZE]
            key = frozenset(members)
            if len(members) >= 2 and key not in groups:
                groups[key] = EpisodeGroup(members, sorted(shared))
    return list(groups.values())


def group_by_similarity(episodes: list[Episode], min_similarity: float) -> list[EpisodeGroup]:
    """Greedy grouping around each not-yet-grouped episode's centroid."""
    groups: list[EpisodeGroup] = []
    assigned: set[str] = set()
    for seed in episodes:
        if seed.id in assigned or not seed.centroid:
            continue
        members = [seed.id]
        for other in episodes:
            if other.id == seed.id or other.id in assigned or not other.centroid:
                continue
            if cosine_similarity(seed.centroid, other.centroid) >= min_similarity:
                members.append(other.id)
            if len(members) >= MAX_GROUP_SIZE:
                break
        if len(members) >= 2:
            assigned.update(members)
            groups.append(EpisodeGroup(members))
    return groups


class ThoughtSynthesisAgent:
    """Episodes -> thoughts"""

    def __init__(
        self,
        storage: MemoryStorage,
        index: VectorIndex,
        provider: Provider,
        writer: NarrativeWriter,
        leases: LeaseManager,
        *,
        min_shared_tags: int = 2,
        min_episode_similarity: float = 0.65,
        max_episodes: int = 50,
        min_confidence: float = 0.5,
        duplicate_threshold: float = 0.92,
        lease_seconds: float = 300.0,
        dimension: int = 768,
    ):
        self.storage = storage
        self.index = index
        self.provider = provider
        self.writer = writer
        self.leases = leases
        self.min_shared_tags = min_shared_tags
        self.min_episode_similarity = min_episode_similarity
        self.max_episodes = max_episodes
        self.min_confidence = min_confidence
        self.duplicate_threshold = duplicate_threshold
        self.lease_seconds = lease_seconds
        self.dimension = dimension

    def candidate_groups(self, episodes: list[Episode]) -> list[EpisodeGroup]:
        groups = group_by_tags(episodes, self.min_shared_tags)
        seen = {frozenset(g.episode_ids) for g in groups}
        for group in group_by_similarity(episodes, self.min_episode_similarity):
            key = frozenset(group.episode_ids)
            if key not in seen:
                seen.add(key)
                groups.append(group)
        return groups

    async def synthesize(self, user_id: str) -> SynthesisReport:
        report = SynthesisReport(user_id)
        async with self.leases.lease(synthesize_key(user_id), self.lease_seconds) as held:
            if not held:
                report.status = "skipped"
                return report
            await self._run(user_id, report)
        logger.info(f"[Thoughts] {report.to_dict()}")
        return report

    async def _run(self, user_id: str, report: SynthesisReport) -> None:
        episodes = self.storage.list_recent_episodes(user_id, limit=self.max_episodes)
        if len(episodes) < 2:
            report.status = "idle"
            return
        by_id = {ep.id: ep for ep in episodes}
        groups = self.candidate_groups(episodes)
        report.groups = len(groups)

        thoughts = self.storage.list_thoughts(user_id)
        covered = {t.id: self.storage.thought_episode_ids(t.id) for t in thoughts}

        for group in groups:
            members = set(group.episode_ids)
            if any(members <= eps for eps in covered.values()):
                report.skipped += 1
                continue
            outcome = await self._synthesize_group(
                user_id, [by_id[i] for i in group.episode_ids], group.shared_tags, thoughts, covered
            )
            if outcome == "created":
                report.created += 1
            elif outcome == "extended":
                report.extended += 1
            else:
                report.skipped += 1

    async def _synthesize_group(
        self,
        user_id: str,
        episodes: list[Episode],
        shared_tags: list[str],
        thoughts: list[Thought],
        covered: dict[str, set[str]],
    ) -> str:
        try:
            draft = await self.writer.write_thought(episodes, shared_tags)
        except ParseError as e:
            logger.warning(f"[Thoughts] Unparseable thought, group skipped: {e}")
            return "skipped"
        if draft.confidence < self.min_confidence:
            logger.debug(f"[Thoughts] '{draft.name}' below confidence ({draft.confidence:.2f})")
            return "skipped"

        text = f"{draft.name}: {draft.description}"
        vectors = await self.provider.embed([text])
        if not vectors or len(vectors[0]) != self.dimension:
            logger.warning(f"[Thoughts] No usable embedding for '{draft.name}', skipped")
            return "skipped"
        vector = vectors[0]

        links = [
            EpisodeThoughtLink(ep.id, "", weight=max(0.0, cosine_similarity(vector, ep.centroid)))
            for ep in episodes
        ]

        duplicate, similarity = None, 0.0
        for existing in thoughts:
            sim = cosine_similarity(vector, existing.embedding)
            if sim >= self.duplicate_threshold and sim > similarity:
                duplicate, similarity = existing, sim
        if duplicate is not None:
            for lk in links:
                lk.thought_id = duplicate.id
            self.storage.extend_thought(duplicate.id, links, confidence=draft.confidence)
            covered[duplicate.id] |= {ep.id for ep in episodes}
            logger.info(f"[Thoughts] Extended '{duplicate.name}' ({similarity:.3f}) with {len(episodes)} episodes")
            return "extended"

        thought = Thought(
            user_id=user_id,
            name=draft.name,
            description=draft.description,
            embedding=vector,
            confidence=draft.confidence,
        )
        for lk in links:
            lk.thought_id = thought.id
        self.storage.create_thought(thought, links)
        try:
            await asyncio.to_thread(
                self.index.upsert,
                Tier.THOUGHT.value,
                thought.id,
                thought.embedding,
                thought.index_properties(),
            )
            self.storage.set_thought_indexed(thought.id, True)
        except IndexUnavailable as e:
            logger.warning(f"[Thoughts] Index unavailable for {thought.id}, left for reconcile: {e}")
        thoughts.append(thought)
        covered[thought.id] = {ep.id for ep in episodes}
        logger.info(f"[Thoughts] Created '{thought.name}' over {len(episodes)} episodes")
        return "created"
