"""
Memory record types

Three tiers built from one raw stream:
- Chunk: a scored, embedded fragment of a RawEvent
- Episode: a titled narrative over semantically related chunks (has a centroid)
- Thought: a generalization linking two or more episodes

Link records (ChunkEpisodeLink, EpisodeThoughtLink) are plain relational rows.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ContentType(Enum):
    """Raw event source type (selects the importance guidance)"""

    USER_CHAT = "user_chat"
    AI_RESPONSE = "ai_response"
    UPLOADED_FILE_EVENT = "uploaded_file_event"
    UPLOADED_DOCUMENT_CONTENT = "uploaded_document_content"
    IMAGE_ANALYSIS = "image_analysis"
    DEFAULT = "default"

    @classmethod
    def parse(cls, value: str | ContentType | None) -> ContentType:
        if isinstance(value, ContentType):
            return value
        try:
            return cls(value or "default")
        except ValueError:
            return cls.DEFAULT


class ChunkStatus(Enum):
    """Chunk lifecycle: pending -> processed | pending_index | error"""

    PENDING = "pending"
    PROCESSED = "processed"
    PENDING_INDEX = "pending_index"
    ERROR = "error"


class EpisodeStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


class Tier(Enum):
    """Retrieval tier; the value is the vector class name"""

    CHUNK = "ChunkEmbedding"
    EPISODE = "EpisodeEmbedding"
    THOUGHT = "ThoughtEmbedding"


def _new_id() -> str:
    return str(uuid.uuid4())


def clamp_score(value: float) -> float:
    """Clamp a score into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


def _parse_dt(value: str | datetime | None) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value) if value else datetime.now()


# ---------------------------------------------------------------------------
# RawEvent
# ---------------------------------------------------------------------------


@dataclass
class RawEvent:
    """Immutable conversational event, the source of chunks"""

    user_id: str
    content: str
    session_id: str = ""
    content_type: ContentType = ContentType.USER_CHAT
    force_important: bool = False
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "content": self.content,
            "content_type": self.content_type.value,
            "force_important": self.force_important,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> RawEvent:
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            session_id=data.get("session_id") or "",
            content=data.get("content") or "",
            content_type=ContentType.parse(data.get("content_type")),
            force_important=bool(data.get("force_important", False)),
            created_at=_parse_dt(data.get("created_at")),
        )


# ---------------------------------------------------------------------------
# Chunk
# ---------------------------------------------------------------------------


@dataclass
class Chunk:
    """Fragment of a RawEvent. ``orphaned_at`` marks membership of the orphan backlog."""

    raw_event_id: str
    user_id: str
    text: str
    index: int = 0
    session_id: str = ""
    token_count: int = 0
    importance: float = 0.0
    status: ChunkStatus = ChunkStatus.PENDING
    embedding: list[float] | None = None
    orphaned_at: datetime | None = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        self.importance = clamp_score(self.importance)

    @property
    def is_orphaned(self) -> bool:
        return self.orphaned_at is not None

    def index_properties(self) -> dict:
        """Properties stored alongside the vector (used as query filters)."""
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "raw_event_id": self.raw_event_id,
            "importance": self.importance,
            "text": self.text,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "raw_event_id": self.raw_event_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "text": self.text,
            "index": self.index,
            "token_count": self.token_count,
            "importance": self.importance,
            "status": self.status.value,
            "orphaned_at": self.orphaned_at.isoformat() if self.orphaned_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Chunk:
        orphaned = data.get("orphaned_at")
        return cls(
            id=data["id"],
            raw_event_id=data["raw_event_id"],
            user_id=data["user_id"],
            session_id=data.get("session_id") or "",
            text=data.get("text") or "",
            index=int(data.get("index", 0)),
            token_count=int(data.get("token_count", 0)),
            importance=float(data.get("importance", 0.0)),
            status=ChunkStatus(data.get("status", "pending")),
            embedding=data.get("embedding"),
            orphaned_at=_parse_dt(orphaned) if orphaned else None,
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )


# ---------------------------------------------------------------------------
# Episode
# ---------------------------------------------------------------------------


@dataclass
class Episode:
    """Narrative summary over related chunks, located by its centroid"""

    user_id: str
    title: str = ""
    narrative: str = ""
    centroid: list[float] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    status: EpisodeStatus = EpisodeStatus.OPEN
    indexed: bool = False
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def index_properties(self, chunk_ids: list[str] | None = None) -> dict:
        """Index properties; member ids ride along as a comma-joined string."""
        props = {
            "user_id": self.user_id,
            "title": self.title,
            "text": self.narrative,
        }
        if chunk_ids:
            props["chunk_ids"] = ",".join(chunk_ids)
        return props

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "narrative": self.narrative,
            "tags": list(self.tags),
            "status": self.status.value,
            "indexed": self.indexed,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Episode:
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            title=data.get("title") or "",
            narrative=data.get("narrative") or "",
            centroid=data.get("centroid") or [],
            tags=list(data.get("tags") or []),
            status=EpisodeStatus(data.get("status", "open")),
            indexed=bool(data.get("indexed", False)),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )


# ---------------------------------------------------------------------------
# Thought
# ---------------------------------------------------------------------------


@dataclass
class Thought:
    """Generalization over two or more episodes"""

    user_id: str
    name: str
    description: str = ""
    embedding: list[float] = field(default_factory=list)
    confidence: float = 0.5
    indexed: bool = False
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        self.confidence = clamp_score(self.confidence)

    @property
    def text(self) -> str:
        """Text that is embedded and shown at retrieval time."""
        return f"{self.name}: {self.description}" if self.description else self.name

    def index_properties(self) -> dict:
        return {
            "user_id": self.user_id,
            "title": self.name,
            "text": self.description,
            "confidence": self.confidence,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "confidence": self.confidence,
            "indexed": self.indexed,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Thought:
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            name=data.get("name") or "",
            description=data.get("description") or "",
            embedding=data.get("embedding") or [],
            confidence=float(data.get("confidence", 0.5)),
            indexed=bool(data.get("indexed", False)),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )


# ---------------------------------------------------------------------------
# Links
# ---------------------------------------------------------------------------


@dataclass
class ChunkEpisodeLink:
    chunk_id: str
    episode_id: str
    similarity: float = 0.0
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        self.similarity = clamp_score(self.similarity)


@dataclass
class EpisodeThoughtLink:
    episode_id: str
    thought_id: str
    weight: float = 0.5
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        self.weight = clamp_score(self.weight)


# ---------------------------------------------------------------------------
# Retrieval result
# ---------------------------------------------------------------------------


@dataclass
class RetrievedMemory:
    """One ranked item returned by the retrieval coordinator"""

    tier: Tier
    id: str
    content: str
    score: float
    title: str = ""
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "tier": self.tier.name.lower(),
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "score": self.score,
            "metadata": dict(self.metadata),
        }
