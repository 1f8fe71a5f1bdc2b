"""
Vector index - ChromaDB

One collection per vector class (ChunkEmbedding, EpisodeEmbedding,
ThoughtEmbedding), cosine space. Each class has a dimension fixed when it is
declared; writes and queries with any other length are rejected with
ValidationError instead of being padded. A class whose declaration failed
because the index was unreachable reports IndexUnavailable until it is
declared, so callers park their writes for reconciliation.

Filters use a small Chroma-style language shared with the in-memory test
double: ``{"user_id": "u1", "importance": {"$gte": 0.6}}``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ..core.errors import IndexUnavailable, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class VectorHit:
    """One nearest-neighbour result; ``similarity`` = 1 - cosine distance"""

    id: str
    similarity: float
    properties: dict = field(default_factory=dict)


@runtime_checkable
class VectorIndex(Protocol):
    """Vector index interface"""

    def declare_class(self, name: str, dimension: int) -> None: ...

    def dimension_of(self, name: str) -> int: ...

    def upsert(self, cls: str, id: str, vector: list[float], properties: dict) -> None: ...

    def upsert_many(self, cls: str, items: list[tuple[str, list[float], dict]]) -> None: ...

    def nearest_neighbors(
        self,
        cls: str,
        vector: list[float],
        certainty: float = 0.0,
        filters: dict | None = None,
        limit: int = 10,
    ) -> list[VectorHit]: ...

    def delete(self, cls: str, id: str) -> None: ...


def check_dimension(cls: str, expected: int, vector: list[float]) -> None:
    if len(vector) != expected:
        raise ValidationError(
            f"{cls} expects {expected}-dimensional vectors, got {len(vector)}"
        )


def build_where(filters: dict | None) -> dict | None:
    """Translate a flat filter dict into a Chroma ``where`` clause."""
    if not filters:
        return None
    clauses = []
    for key, cond in filters.items():
        if isinstance(cond, dict):
            clauses.append({key: cond})
        else:
            clauses.append({key: {"$eq": cond}})
    return clauses[0] if len(clauses) == 1 else {"$and": clauses}


def _clean_metadata(properties: dict) -> dict:
    """Chroma metadata only takes str/int/float/bool values."""
    clean: dict[str, Any] = {}
    for k, v in properties.items():
        if v is None:
            continue
        if isinstance(v, (str, int, float, bool)):
            clean[k] = v
        else:
            clean[k] = str(v)
    return clean


class ChromaVectorIndex:
    """VectorIndex backed by ChromaDB collections"""

    def __init__(self, path: str | Path | None = None, client: Any = None):
        self.path = Path(path) if path else None
        self._client = client
        self._collections: dict[str, Any] = {}
        self._dimensions: dict[str, int] = {}
        self._unreachable: set[str] = set()
        self._lock = threading.RLock()

    def _get_client(self) -> Any:
        if self._client is None:
            import chromadb
            from chromadb.config import Settings as ChromaSettings

            try:
                if self.path is None:
                    self._client = chromadb.EphemeralClient(
                        settings=ChromaSettings(anonymized_telemetry=False)
                    )
                else:
                    self.path.mkdir(parents=True, exist_ok=True)
                    self._client = chromadb.PersistentClient(
                        path=str(self.path),
                        settings=ChromaSettings(anonymized_telemetry=False),
                    )
            except Exception as e:
                raise IndexUnavailable(f"cannot open ChromaDB: {e}") from e
        return self._client

    def declare_class(self, name: str, dimension: int) -> None:
        """Create (or reopen) the collection for a class with a fixed dimension."""
        with self._lock:
            try:
                collection = self._open_collection(name, dimension)
            except IndexUnavailable:
                self._unreachable.add(name)
                raise
            self._unreachable.discard(name)

            stored = (collection.metadata or {}).get("dimension")
            if stored is not None and int(stored) != dimension:
                raise ValidationError(
                    f"{name} was declared with dimension {stored}, configured {dimension}"
                )
            self._collections[name] = collection
            self._dimensions[name] = dimension
            logger.info(f"[VectorIndex] Declared {name} (dim={dimension})")

    def _open_collection(self, name: str, dimension: int) -> Any:
        client = self._get_client()
        try:
            collection = client.get_collection(name=name)
        except Exception:
            # missing collection; some chromadb versions rewrite metadata on get_or_create
            collection = None
        if collection is not None:
            return collection
        try:
            return client.create_collection(
                name=name,
                metadata={"hnsw:space": "cosine", "dimension": dimension},
            )
        except Exception as e:
            raise IndexUnavailable(f"cannot declare {name}: {e}") from e

    def _undeclared(self, name: str) -> Exception:
        if name in self._unreachable:
            return IndexUnavailable(f"vector class {name} not declared, index was unreachable")
        return ValidationError(f"vector class {name} is not declared")

    def dimension_of(self, name: str) -> int:
        if name not in self._dimensions:
            raise self._undeclared(name)
        return self._dimensions[name]

    def _collection(self, name: str) -> Any:
        collection = self._collections.get(name)
        if collection is None:
            raise self._undeclared(name)
        return collection

    def upsert(self, cls: str, id: str, vector: list[float], properties: dict) -> None:
        self.upsert_many(cls, [(id, vector, properties)])

    def upsert_many(self, cls: str, items: list[tuple[str, list[float], dict]]) -> None:
        if not items:
            return
        collection = self._collection(cls)
        dim = self._dimensions[cls]
        for _, vector, _ in items:
            check_dimension(cls, dim, vector)
        try:
            collection.upsert(
                ids=[i for i, _, _ in items],
                embeddings=[list(v) for _, v, _ in items],
                metadatas=[_clean_metadata(p) for _, _, p in items],
            )
        except Exception as e:
            raise IndexUnavailable(f"upsert into {cls} failed: {e}") from e

    def nearest_neighbors(
        self,
        cls: str,
        vector: list[float],
        certainty: float = 0.0,
        filters: dict | None = None,
        limit: int = 10,
    ) -> list[VectorHit]:
        collection = self._collection(cls)
        check_dimension(cls, self._dimensions[cls], vector)
        try:
            count = collection.count()
            if count == 0:
                return []
            results = collection.query(
                query_embeddings=[list(vector)],
                n_results=min(limit, count),
                where=build_where(filters),
            )
        except Exception as e:
            raise IndexUnavailable(f"query on {cls} failed: {e}") from e

        hits: list[VectorHit] = []
        if results and results.get("ids"):
            ids = results["ids"][0]
            distances = results["distances"][0] if results.get("distances") else [0.0] * len(ids)
            metadatas = results["metadatas"][0] if results.get("metadatas") else [{}] * len(ids)
            for hit_id, distance, meta in zip(ids, distances, metadatas):
                similarity = 1.0 - float(distance)
                if similarity >= certainty:
                    hits.append(VectorHit(hit_id, similarity, dict(meta or {})))
        return hits

    def delete(self, cls: str, id: str) -> None:
        try:
            self._collection(cls).delete(ids=[id])
        except ValidationError:
            raise
        except Exception as e:
            raise IndexUnavailable(f"delete from {cls} failed: {e}") from e
