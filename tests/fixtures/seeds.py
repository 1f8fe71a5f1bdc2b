"""Shared builders: vectors, clocks and pre-seeded records."""

from __future__ import annotations

import math
from datetime import datetime

from tiermem.memory.storage import MemoryStorage
from tiermem.memory.types import (
    Chunk,
    ChunkEpisodeLink,
    ChunkStatus,
    Episode,
    RawEvent,
)

DIM = 4


def axis(i: int, dim: int = DIM) -> list[float]:
    v = [0.0] * dim
    v[i] = 1.0
    return v


def blend(base: list[float], similarity: float, orth: list[float]) -> list[float]:
    """Unit vector with cosine ``similarity`` to ``base`` (both unit, orthogonal)."""
    rest = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return [similarity * b + rest * o for b, o in zip(base, orth)]


def whitespace_counter(text: str) -> int:
    return len(text.split())


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now)


def seed_chunk(
    storage: MemoryStorage,
    user_id: str,
    vector: list[float] | None,
    text: str = "seeded chunk",
    *,
    importance: float = 0.8,
    status: ChunkStatus = ChunkStatus.PROCESSED,
    orphaned: bool = False,
) -> Chunk:
    event = RawEvent(user_id=user_id, content=text)
    storage.save_raw_event(event)
    chunk = Chunk(
        raw_event_id=event.id,
        user_id=user_id,
        text=text,
        importance=importance,
        status=status,
        embedding=list(vector) if vector else None,
    )
    storage.insert_chunks([chunk])
    if orphaned:
        storage.mark_orphaned(chunk.id)
    return chunk


def seed_episode(
    storage: MemoryStorage,
    user_id: str,
    centroid: list[float],
    *,
    title: str = "Seeded episode",
    narrative: str = "Something that happened.",
    tags: list[str] | None = None,
    updated_at: datetime | None = None,
) -> tuple[Episode, Chunk]:
    """An open episode whose single member chunk sits exactly on the centroid."""
    chunk = seed_chunk(storage, user_id, centroid, text=f"{title} chunk")
    episode = Episode(
        user_id=user_id,
        title=title,
        narrative=narrative,
        centroid=list(centroid),
        tags=list(tags or []),
    )
    if updated_at is not None:
        episode.updated_at = updated_at
    storage.create_episode(episode, [ChunkEpisodeLink(chunk.id, episode.id, similarity=1.0)])
    return episode, chunk
