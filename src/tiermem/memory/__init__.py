"""
tiermem memory system

Architecture:
- MemoryStorage: SQLite source of truth (events, chunks, episodes, thoughts, links)
- VectorIndex: one ChromaDB collection per tier
- IngestionAgent: importance gate + chunking + batched embedding
- EpisodeAttachmentAgent: chunk -> open episodes, or orphan backlog
- ConsolidationAgent: orphan clusters -> new or merged episodes
- ThoughtSynthesisAgent: related episodes -> thoughts
- RetrievalCoordinator: three-tier search with cross-tier dedup
- MemoryManager: wiring and queue job handlers

Memory tiers:
- Chunk: scored, embedded fragment of a raw event
- Episode: titled narrative with a centroid
- Thought: pattern linking two or more episodes
"""

from .manager import IngestAck, MemoryManager
from .retrieval import RetrievalCoordinator, format_memory_context
from .storage import MemoryStorage
from .types import (
    Chunk,
    ChunkEpisodeLink,
    ChunkStatus,
    ContentType,
    Episode,
    EpisodeStatus,
    EpisodeThoughtLink,
    RawEvent,
    RetrievedMemory,
    Thought,
    Tier,
)
from .vector_store import ChromaVectorIndex, VectorHit, VectorIndex

__all__ = [
    "MemoryManager",
    "IngestAck",
    "MemoryStorage",
    "RetrievalCoordinator",
    "format_memory_context",
    # Vector index
    "VectorIndex",
    "VectorHit",
    "ChromaVectorIndex",
    # Types
    "RawEvent",
    "Chunk",
    "ChunkStatus",
    "ContentType",
    "Episode",
    "EpisodeStatus",
    "Thought",
    "ChunkEpisodeLink",
    "EpisodeThoughtLink",
    "RetrievedMemory",
    "Tier",
]
