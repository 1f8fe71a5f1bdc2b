"""
Relational store - SQLite

Source of truth for raw events, chunks, episodes, thoughts and their links.
Vectors are kept here as float64 blobs so the index can be rebuilt and the
reconciliation sweep can replay index writes.

Concurrency:
- one connection shared across threads, serialized by an RLock
- writes that must be atomic across processes use ``transaction()``
  (BEGIN IMMEDIATE takes the database write lock up front)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from .types import (
    Chunk,
    ChunkEpisodeLink,
    ChunkStatus,
    Episode,
    EpisodeStatus,
    EpisodeThoughtLink,
    RawEvent,
    Thought,
    clamp_score,
)
from .vectors import bytes_to_floats, floats_to_bytes, mean_vector

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS raw_events (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    session_id      TEXT NOT NULL DEFAULT '',
    content         TEXT NOT NULL,
    content_type    TEXT NOT NULL DEFAULT 'user_chat',
    force_important INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    id           TEXT PRIMARY KEY,
    raw_event_id TEXT NOT NULL REFERENCES raw_events(id) ON DELETE CASCADE,
    user_id      TEXT NOT NULL,
    session_id   TEXT NOT NULL DEFAULT '',
    text         TEXT NOT NULL,
    idx          INTEGER NOT NULL DEFAULT 0,
    token_count  INTEGER NOT NULL DEFAULT 0,
    importance   REAL NOT NULL DEFAULT 0,
    status       TEXT NOT NULL DEFAULT 'pending',
    embedding    BLOB,
    orphaned_at  TEXT,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chunks_event ON chunks(raw_event_id);
CREATE INDEX IF NOT EXISTS idx_chunks_status ON chunks(status);
CREATE INDEX IF NOT EXISTS idx_chunks_orphans ON chunks(user_id, orphaned_at);

CREATE TABLE IF NOT EXISTS episodes (
    id         TEXT PRIMARY KEY,
    user_id    TEXT NOT NULL,
    title      TEXT NOT NULL DEFAULT '',
    narrative  TEXT NOT NULL DEFAULT '',
    centroid   BLOB NOT NULL,
    tags       TEXT NOT NULL DEFAULT '[]',
    status     TEXT NOT NULL DEFAULT 'open',
    indexed    INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_episodes_user ON episodes(user_id, status, updated_at);

CREATE TABLE IF NOT EXISTS thoughts (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    name        TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    embedding   BLOB NOT NULL,
    confidence  REAL NOT NULL DEFAULT 0.5,
    indexed     INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_thoughts_user ON thoughts(user_id);

CREATE TABLE IF NOT EXISTS chunk_episode (
    chunk_id   TEXT NOT NULL REFERENCES chunks(id) ON DELETE CASCADE,
    episode_id TEXT NOT NULL REFERENCES episodes(id) ON DELETE CASCADE,
    similarity REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    PRIMARY KEY (chunk_id, episode_id)
);
CREATE INDEX IF NOT EXISTS idx_chunk_episode_episode ON chunk_episode(episode_id);

CREATE TABLE IF NOT EXISTS episode_thought (
    episode_id TEXT NOT NULL REFERENCES episodes(id) ON DELETE CASCADE,
    thought_id TEXT NOT NULL REFERENCES thoughts(id) ON DELETE CASCADE,
    weight     REAL NOT NULL DEFAULT 0.5,
    created_at TEXT NOT NULL,
    PRIMARY KEY (episode_id, thought_id)
);
CREATE INDEX IF NOT EXISTS idx_episode_thought_thought ON episode_thought(thought_id);

CREATE TABLE IF NOT EXISTS leases (
    name       TEXT PRIMARY KEY,
    owner      TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""


def _ts(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


class MemoryStorage:
    """SQLite relational store"""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._connect()

    # ==========================================================================
    # Connection
    # ==========================================================================

    def _connect(self) -> None:
        conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, isolation_level=None, timeout=30
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.executescript(SCHEMA)
        self._conn = conn
        logger.info(f"[Storage] Opened {self.db_path}")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("storage is closed")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception."""
        with self._lock:
            conn = self.conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def execute(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, tuple(params))

    def executescript(self, script: str) -> None:
        with self._lock:
            self.conn.executescript(script)

    def fetchall(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchall()

    def fetchone(self, sql: str, params: Iterable = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchone()

    # ==========================================================================
    # Raw events
    # ==========================================================================

    def save_raw_event(self, event: RawEvent) -> None:
        self.execute(
            "INSERT OR IGNORE INTO raw_events "
            "(id, user_id, session_id, content, content_type, force_important, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                event.id,
                event.user_id,
                event.session_id,
                event.content,
                event.content_type.value,
                int(event.force_important),
                _ts(event.created_at),
            ),
        )

    def get_raw_event(self, event_id: str) -> RawEvent | None:
        row = self.fetchone("SELECT * FROM raw_events WHERE id = ?", (event_id,))
        return RawEvent.from_dict(dict(row)) if row else None

    # ==========================================================================
    # Chunks
    # ==========================================================================

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> Chunk:
        data = dict(row)
        data["index"] = data.pop("idx")
        data["embedding"] = bytes_to_floats(data["embedding"]) or None
        return Chunk.from_dict(data)

    def insert_chunks(self, chunks: list[Chunk]) -> None:
        with self.transaction() as conn:
            conn.executemany(
                "INSERT INTO chunks (id, raw_event_id, user_id, session_id, text, idx, "
                "token_count, importance, status, embedding, orphaned_at, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        c.id,
                        c.raw_event_id,
                        c.user_id,
                        c.session_id,
                        c.text,
                        c.index,
                        c.token_count,
                        c.importance,
                        c.status.value,
                        floats_to_bytes(c.embedding) if c.embedding else None,
                        _ts(c.orphaned_at) if c.orphaned_at else None,
                        _ts(c.created_at),
                        _ts(c.updated_at),
                    )
                    for c in chunks
                ],
            )

    def get_chunk(self, chunk_id: str) -> Chunk | None:
        row = self.fetchone("SELECT * FROM chunks WHERE id = ?", (chunk_id,))
        return self._row_to_chunk(row) if row else None

    def get_chunks(self, chunk_ids: list[str]) -> list[Chunk]:
        if not chunk_ids:
            return []
        marks = ",".join("?" * len(chunk_ids))
        rows = self.fetchall(f"SELECT * FROM chunks WHERE id IN ({marks})", chunk_ids)
        by_id = {r["id"]: self._row_to_chunk(r) for r in rows}
        return [by_id[i] for i in chunk_ids if i in by_id]

    def get_chunks_for_event(self, raw_event_id: str) -> list[Chunk]:
        rows = self.fetchall(
            "SELECT * FROM chunks WHERE raw_event_id = ? ORDER BY idx", (raw_event_id,)
        )
        return [self._row_to_chunk(r) for r in rows]

    def find_chunks_by_status(
        self, status: ChunkStatus, limit: int = 100, user_id: str | None = None
    ) -> list[Chunk]:
        sql = "SELECT * FROM chunks WHERE status = ?"
        params: list = [status.value]
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " ORDER BY created_at LIMIT ?"
        params.append(limit)
        return [self._row_to_chunk(r) for r in self.fetchall(sql, params)]

    def set_chunk_embedding(self, chunk_id: str, embedding: list[float]) -> None:
        self.execute(
            "UPDATE chunks SET embedding = ?, updated_at = ? WHERE id = ?",
            (floats_to_bytes(embedding), _ts(datetime.now()), chunk_id),
        )

    def transition_chunks(
        self,
        chunk_ids: list[str],
        to_status: ChunkStatus,
        from_statuses: Iterable[ChunkStatus] | None = None,
    ) -> int:
        """Atomic status transition. Returns the number of rows moved."""
        if not chunk_ids:
            return 0
        marks = ",".join("?" * len(chunk_ids))
        sql = f"UPDATE chunks SET status = ?, updated_at = ? WHERE id IN ({marks})"
        params: list = [to_status.value, _ts(datetime.now()), *chunk_ids]
        if from_statuses is not None:
            allowed = [s.value for s in from_statuses]
            sql += f" AND status IN ({','.join('?' * len(allowed))})"
            params.extend(allowed)
        with self.transaction() as conn:
            return conn.execute(sql, params).rowcount

    # ---------- orphan backlog ----------

    def mark_orphaned(self, chunk_id: str, at: datetime | None = None) -> bool:
        cur = self.execute(
            "UPDATE chunks SET orphaned_at = ? WHERE id = ? AND orphaned_at IS NULL",
            (_ts(at or datetime.now()), chunk_id),
        )
        return cur.rowcount > 0

    def clear_orphaned(self, chunk_ids: list[str]) -> int:
        if not chunk_ids:
            return 0
        marks = ",".join("?" * len(chunk_ids))
        cur = self.execute(
            f"UPDATE chunks SET orphaned_at = NULL WHERE id IN ({marks})", chunk_ids
        )
        return cur.rowcount

    def list_orphans(self, user_id: str, limit: int = 1000) -> list[Chunk]:
        rows = self.fetchall(
            "SELECT * FROM chunks WHERE user_id = ? AND orphaned_at IS NOT NULL "
            "AND embedding IS NOT NULL ORDER BY orphaned_at LIMIT ?",
            (user_id, limit),
        )
        return [self._row_to_chunk(r) for r in rows]

    def count_orphans(self, user_id: str) -> int:
        row = self.fetchone(
            "SELECT COUNT(*) AS n FROM chunks WHERE user_id = ? AND orphaned_at IS NOT NULL",
            (user_id,),
        )
        return int(row["n"]) if row else 0

    def users_with_orphans(self) -> list[str]:
        rows = self.fetchall(
            "SELECT DISTINCT user_id FROM chunks WHERE orphaned_at IS NOT NULL ORDER BY user_id"
        )
        return [r["user_id"] for r in rows]

    # ==========================================================================
    # Episodes
    # ==========================================================================

    @staticmethod
    def _row_to_episode(row: sqlite3.Row) -> Episode:
        data = dict(row)
        data["centroid"] = bytes_to_floats(data["centroid"])
        data["tags"] = json.loads(data.get("tags") or "[]")
        return Episode.from_dict(data)

    def create_episode(self, episode: Episode, links: list[ChunkEpisodeLink]) -> None:
        """Insert an episode together with its first chunk links (one transaction)."""
        if not links:
            raise ValueError("an episode needs at least one linked chunk")
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO episodes (id, user_id, title, narrative, centroid, tags, status, "
                "indexed, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    episode.id,
                    episode.user_id,
                    episode.title,
                    episode.narrative,
                    floats_to_bytes(episode.centroid),
                    json.dumps(episode.tags, ensure_ascii=False),
                    episode.status.value,
                    int(episode.indexed),
                    _ts(episode.created_at),
                    _ts(episode.updated_at),
                ),
            )
            conn.executemany(
                "INSERT OR IGNORE INTO chunk_episode (chunk_id, episode_id, similarity, created_at) "
                "VALUES (?, ?, ?, ?)",
                [
                    (lk.chunk_id, episode.id, lk.similarity, _ts(lk.created_at))
                    for lk in links
                ],
            )

    def get_episode(self, episode_id: str) -> Episode | None:
        row = self.fetchone("SELECT * FROM episodes WHERE id = ?", (episode_id,))
        return self._row_to_episode(row) if row else None

    def get_episodes(self, episode_ids: list[str]) -> list[Episode]:
        if not episode_ids:
            return []
        marks = ",".join("?" * len(episode_ids))
        rows = self.fetchall(f"SELECT * FROM episodes WHERE id IN ({marks})", episode_ids)
        by_id = {r["id"]: self._row_to_episode(r) for r in rows}
        return [by_id[i] for i in episode_ids if i in by_id]

    def list_open_episodes(
        self, user_id: str, since: datetime | None = None, limit: int = 50
    ) -> list[Episode]:
        """Open episodes of a user, most recently updated first."""
        sql = "SELECT * FROM episodes WHERE user_id = ? AND status = 'open'"
        params: list = [user_id]
        if since is not None:
            sql += " AND updated_at >= ?"
            params.append(_ts(since))
        sql += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_episode(r) for r in self.fetchall(sql, params)]

    def list_recent_episodes(self, user_id: str, limit: int = 50) -> list[Episode]:
        rows = self.fetchall(
            "SELECT * FROM episodes WHERE user_id = ? ORDER BY updated_at DESC LIMIT ?",
            (user_id, limit),
        )
        return [self._row_to_episode(r) for r in rows]

    def update_episode_narrative(
        self, episode_id: str, title: str, narrative: str, tags: list[str]
    ) -> None:
        self.execute(
            "UPDATE episodes SET title = ?, narrative = ?, tags = ?, indexed = 0 WHERE id = ?",
            (title, narrative, json.dumps(tags, ensure_ascii=False), episode_id),
        )

    def users_with_episodes(self, since: datetime | None = None) -> list[str]:
        sql = "SELECT DISTINCT user_id FROM episodes"
        params: list = []
        if since is not None:
            sql += " WHERE updated_at >= ?"
            params.append(_ts(since))
        return [r["user_id"] for r in self.fetchall(sql + " ORDER BY user_id", params)]

    def set_episode_indexed(self, episode_id: str, indexed: bool) -> None:
        self.execute("UPDATE episodes SET indexed = ? WHERE id = ?", (int(indexed), episode_id))

    def episodes_needing_index(self, limit: int = 100) -> list[Episode]:
        rows = self.fetchall(
            "SELECT * FROM episodes WHERE indexed = 0 ORDER BY updated_at LIMIT ?", (limit,)
        )
        return [self._row_to_episode(r) for r in rows]

    def close_idle_episodes(self, idle_before: datetime) -> int:
        cur = self.execute(
            "UPDATE episodes SET status = ? WHERE status = ? AND updated_at < ?",
            (EpisodeStatus.CLOSED.value, EpisodeStatus.OPEN.value, _ts(idle_before)),
        )
        return cur.rowcount

    # ---------- chunk <-> episode ----------

    def attach_chunks(
        self,
        episode_id: str,
        links: list[ChunkEpisodeLink],
        now: datetime | None = None,
    ) -> tuple[int, list[float] | None]:
        """Link chunks to an episode and recompute its centroid atomically.

        The centroid is the mean of every member chunk vector, read and written
        inside one write transaction. Links that already exist are ignored; when
        nothing new was linked the centroid is left untouched.

        Returns:
            (number of new links, new centroid or None)
        """
        now = now or datetime.now()
        with self.transaction() as conn:
            added = 0
            for lk in links:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO chunk_episode "
                    "(chunk_id, episode_id, similarity, created_at) VALUES (?, ?, ?, ?)",
                    (lk.chunk_id, episode_id, lk.similarity, _ts(lk.created_at)),
                )
                added += cur.rowcount
            if added == 0:
                return 0, None

            rows = conn.execute(
                "SELECT c.embedding FROM chunk_episode ce JOIN chunks c ON c.id = ce.chunk_id "
                "WHERE ce.episode_id = ? AND c.embedding IS NOT NULL",
                (episode_id,),
            ).fetchall()
            centroid = mean_vector([bytes_to_floats(r["embedding"]) for r in rows])
            conn.execute(
                "UPDATE episodes SET centroid = ?, updated_at = ?, indexed = 0 WHERE id = ?",
                (floats_to_bytes(centroid), _ts(now), episode_id),
            )
            return added, centroid

    def episode_chunk_ids(self, episode_id: str) -> list[str]:
        rows = self.fetchall(
            "SELECT chunk_id FROM chunk_episode WHERE episode_id = ? ORDER BY created_at",
            (episode_id,),
        )
        return [r["chunk_id"] for r in rows]

    def episode_chunks(self, episode_id: str, limit: int = 30) -> list[Chunk]:
        rows = self.fetchall(
            "SELECT c.* FROM chunk_episode ce JOIN chunks c ON c.id = ce.chunk_id "
            "WHERE ce.episode_id = ? ORDER BY c.created_at, c.idx LIMIT ?",
            (episode_id, limit),
        )
        return [self._row_to_chunk(r) for r in rows]

    def chunk_episode_ids(self, chunk_id: str) -> list[str]:
        rows = self.fetchall(
            "SELECT episode_id FROM chunk_episode WHERE chunk_id = ?", (chunk_id,)
        )
        return [r["episode_id"] for r in rows]

    # ==========================================================================
    # Thoughts
    # ==========================================================================

    @staticmethod
    def _row_to_thought(row: sqlite3.Row) -> Thought:
        data = dict(row)
        data["embedding"] = bytes_to_floats(data["embedding"])
        return Thought.from_dict(data)

    def create_thought(self, thought: Thought, links: list[EpisodeThoughtLink]) -> None:
        """Insert a thought with its episode links (one transaction, two links minimum)."""
        if len({lk.episode_id for lk in links}) < 2:
            raise ValueError("a thought needs at least two linked episodes")
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO thoughts (id, user_id, name, description, embedding, confidence, "
                "indexed, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    thought.id,
                    thought.user_id,
                    thought.name,
                    thought.description,
                    floats_to_bytes(thought.embedding),
                    thought.confidence,
                    int(thought.indexed),
                    _ts(thought.created_at),
                    _ts(thought.updated_at),
                ),
            )
            self._insert_thought_links(conn, thought.id, links)

    @staticmethod
    def _insert_thought_links(
        conn: sqlite3.Connection, thought_id: str, links: list[EpisodeThoughtLink]
    ) -> int:
        added = 0
        for lk in links:
            cur = conn.execute(
                "INSERT OR IGNORE INTO episode_thought (episode_id, thought_id, weight, created_at) "
                "VALUES (?, ?, ?, ?)",
                (lk.episode_id, thought_id, lk.weight, _ts(lk.created_at)),
            )
            added += cur.rowcount
        return added

    def extend_thought(
        self, thought_id: str, links: list[EpisodeThoughtLink], confidence: float | None = None
    ) -> int:
        """Add episode links to an existing thought. Returns the number of new links."""
        with self.transaction() as conn:
            added = self._insert_thought_links(conn, thought_id, links)
            if confidence is not None:
                conn.execute(
                    "UPDATE thoughts SET confidence = MAX(confidence, ?) WHERE id = ?",
                    (clamp_score(confidence), thought_id),
                )
            conn.execute(
                "UPDATE thoughts SET updated_at = ? WHERE id = ?",
                (_ts(datetime.now()), thought_id),
            )
            return added

    def get_thought(self, thought_id: str) -> Thought | None:
        row = self.fetchone("SELECT * FROM thoughts WHERE id = ?", (thought_id,))
        return self._row_to_thought(row) if row else None

    def list_thoughts(self, user_id: str) -> list[Thought]:
        rows = self.fetchall(
            "SELECT * FROM thoughts WHERE user_id = ? ORDER BY created_at", (user_id,)
        )
        return [self._row_to_thought(r) for r in rows]

    def thought_episode_ids(self, thought_id: str) -> set[str]:
        rows = self.fetchall(
            "SELECT episode_id FROM episode_thought WHERE thought_id = ?", (thought_id,)
        )
        return {r["episode_id"] for r in rows}

    def set_thought_indexed(self, thought_id: str, indexed: bool) -> None:
        self.execute("UPDATE thoughts SET indexed = ? WHERE id = ?", (int(indexed), thought_id))

    def thoughts_needing_index(self, limit: int = 100) -> list[Thought]:
        rows = self.fetchall(
            "SELECT * FROM thoughts WHERE indexed = 0 ORDER BY updated_at LIMIT ?", (limit,)
        )
        return [self._row_to_thought(r) for r in rows]

    # ==========================================================================
    # Leases (single-flight across workers)
    # ==========================================================================

    def acquire_lease(self, name: str, owner: str, ttl: float, now: float) -> bool:
        """Take the named lease if it is free, expired or already ours."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT owner, expires_at FROM leases WHERE name = ?", (name,)
            ).fetchone()
            if row and row["owner"] != owner and row["expires_at"] > now:
                return False
            conn.execute(
                "INSERT INTO leases (name, owner, expires_at) VALUES (?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET owner = excluded.owner, "
                "expires_at = excluded.expires_at",
                (name, owner, now + ttl),
            )
            return True

    def release_lease(self, name: str, owner: str) -> None:
        self.execute("DELETE FROM leases WHERE name = ? AND owner = ?", (name, owner))

    # ==========================================================================
    # Stats
    # ==========================================================================

    def get_stats(self) -> dict:
        stats: dict = {}
        for table in ("raw_events", "chunks", "episodes", "thoughts"):
            row = self.fetchone(f"SELECT COUNT(*) AS n FROM {table}")
            stats[table] = int(row["n"]) if row else 0
        rows = self.fetchall("SELECT status, COUNT(*) AS n FROM chunks GROUP BY status")
        stats["chunks_by_status"] = {r["status"]: int(r["n"]) for r in rows}
        row = self.fetchone("SELECT COUNT(*) AS n FROM chunks WHERE orphaned_at IS NOT NULL")
        stats["orphans"] = int(row["n"]) if row else 0
        return stats
