"""
Retrieval coordinator

One query embedding, three tier searches, one ranked list:
- EpisodeEmbedding (user filter, certainty cutoff)
- ThoughtEmbedding (user filter, certainty cutoff)
- ChunkEmbedding (user filter, importance floor, certainty cutoff)

Stages run in sequence with their own timeout; a failed stage is logged and
skipped. An episode in the results hides its member chunks. Results are
sorted by similarity and cut to the limit.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field

from ..core.errors import ProviderError
from ..llm.providers.base import Provider
from .chunker import TokenCounter
from .storage import MemoryStorage
from .types import RetrievedMemory, Tier
from .vector_store import VectorHit, VectorIndex

logger = logging.getLogger(__name__)

TIER_LABELS = {Tier.EPISODE: "Episode", Tier.THOUGHT: "Thought", Tier.CHUNK: "Memory"}


@dataclass
class StageResult:
    tier: Tier
    hits: list[VectorHit] = field(default_factory=list)
    failed: bool = False


class RetrievalCoordinator:
    """Three-tier semantic retrieval"""

    def __init__(
        self,
        storage: MemoryStorage,
        index: VectorIndex,
        provider: Provider,
        *,
        limit: int = 6,
        certainty: float = 0.75,
        min_importance: float = 0.2,
        stage_timeout: float = 5.0,
    ):
        self.storage = storage
        self.index = index
        self.provider = provider
        self.limit = limit
        self.certainty = certainty
        self.min_importance = min_importance
        self.stage_timeout = stage_timeout

    async def retrieve(
        self,
        query: str,
        user_id: str,
        *,
        limit: int | None = None,
        certainty: float | None = None,
        min_importance: float | None = None,
    ) -> list[RetrievedMemory]:
        """
        Ranked memories for ``query``; an empty list is a valid answer.

        Never raises: provider and index failures degrade to fewer results.
        """
        limit = self.limit if limit is None else limit
        certainty = self.certainty if certainty is None else certainty
        min_importance = self.min_importance if min_importance is None else min_importance
        if limit <= 0 or not query or not query.strip():
            return []

        try:
            vectors = await self.provider.embed([query])
        except ProviderError as e:
            logger.warning(f"[Retrieval] Query embedding failed, returning nothing: {e}")
            return []
        if not vectors:
            logger.warning("[Retrieval] Provider returned no query embedding")
            return []
        query_vector = vectors[0]

        user_filter = {"user_id": user_id}
        episodes = await self._stage(Tier.EPISODE, query_vector, certainty, user_filter, limit)
        thoughts = await self._stage(Tier.THOUGHT, query_vector, certainty, user_filter, limit)
        chunks = await self._stage(
            Tier.CHUNK,
            query_vector,
            certainty,
            {"user_id": user_id, "importance": {"$gte": min_importance}},
            limit,
        )

        results = self._merge(episodes, thoughts, chunks)
        results.sort(key=lambda r: r.score, reverse=True)
        results = results[:limit]
        logger.info(
            f"[Retrieval] user={user_id} episodes={len(episodes.hits)} thoughts={len(thoughts.hits)} "
            f"chunks={len(chunks.hits)} -> {len(results)}"
        )
        return results

    async def _stage(
        self,
        tier: Tier,
        vector: list[float],
        certainty: float,
        filters: dict,
        limit: int,
    ) -> StageResult:
        try:
            hits = await asyncio.wait_for(
                asyncio.to_thread(
                    self.index.nearest_neighbors, tier.value, vector, certainty, filters, limit
                ),
                timeout=self.stage_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[Retrieval] {tier.value} stage timed out after {self.stage_timeout}s")
            return StageResult(tier, failed=True)
        except Exception as e:
            logger.warning(f"[Retrieval] {tier.value} stage failed, skipped: {e}")
            return StageResult(tier, failed=True)
        return StageResult(tier, [h for h in hits if h.similarity >= certainty])

    def _episode_members(self, hit: VectorHit) -> set[str]:
        """Member chunk ids from the link table, else from the indexed properties."""
        try:
            return set(self.storage.episode_chunk_ids(hit.id))
        except sqlite3.Error as e:
            logger.warning(f"[Retrieval] Cannot load members of {hit.id}, using index copy: {e}")
        stored = str(hit.properties.get("chunk_ids") or "")
        return {cid for cid in stored.split(",") if cid}

    def _merge(self, *stages: StageResult) -> list[RetrievedMemory]:
        """Dedup across tiers; earlier stages win, episodes hide their chunks."""
        suppressed: set[str] = set()
        seen: set[str] = set()
        merged: list[RetrievedMemory] = []
        for stage in stages:
            for hit in stage.hits:
                if hit.id in seen or (stage.tier == Tier.CHUNK and hit.id in suppressed):
                    continue
                seen.add(hit.id)
                if stage.tier == Tier.EPISODE:
                    suppressed |= self._episode_members(hit)
                merged.append(self._to_memory(stage.tier, hit))
        return merged

    @staticmethod
    def _to_memory(tier: Tier, hit: VectorHit) -> RetrievedMemory:
        props = dict(hit.properties)
        props.pop("chunk_ids", None)
        return RetrievedMemory(
            tier=tier,
            id=hit.id,
            content=str(props.pop("text", "")),
            title=str(props.pop("title", "")),
            score=max(0.0, min(1.0, hit.similarity)),
            metadata=props,
        )


def format_memory_context(
    items: list[RetrievedMemory],
    max_tokens: int = 800,
    token_counter: TokenCounter | None = None,
) -> str:
    """Render ranked memories as a prompt block within a token budget."""
    if not items:
        return ""
    count = token_counter or (lambda s: int(len(s) / 2.5))

    lines = ["## Relevant memories"]
    used = count(lines[0])
    for item in items:
        label = TIER_LABELS[item.tier]
        if item.title:
            line = f"- [{label}] {item.title}: {item.content}"
        else:
            line = f"- [{label}] {item.content}"
        cost = count(line)
        if used + cost > max_tokens:
            break
        lines.append(line)
        used += cost
    return "\n".join(lines) if len(lines) > 1 else ""
