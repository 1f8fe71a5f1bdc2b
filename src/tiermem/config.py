"""
tiermem configuration module
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings (environment variables prefixed with TIERMEM_)"""

    # === Paths ===
    project_root: Path = Field(
        default_factory=lambda: Path.cwd(),
        description="Project root directory (defaults to the working directory)",
    )
    database_path: str = Field(default="data/tiermem.db", description="SQLite database path")
    chroma_path: str = Field(default="data/chroma", description="ChromaDB persistence directory")

    # === Provider ===
    provider_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI-compatible API base URL (embeddings + chat completions)",
    )
    provider_api_key: str = Field(default="", description="Provider API key")
    completion_model: str = Field(default="gpt-4o-mini", description="Completion model")
    embedding_model: str = Field(default="text-embedding-3-small", description="Embedding model")
    provider_timeout_seconds: float = Field(default=30.0, description="Per-request timeout")
    completion_max_tokens: int = Field(default=400, description="Max tokens per completion")

    # === Vector dimensions (fixed per class at schema declaration) ===
    embedding_dimension: int = Field(default=768, description="Provider embedding dimension")
    chunk_dimension: int | None = Field(default=None, description="ChunkEmbedding dimension")
    episode_dimension: int | None = Field(default=None, description="EpisodeEmbedding dimension")
    thought_dimension: int | None = Field(default=None, description="ThoughtEmbedding dimension")

    # === Importance ===
    importance_threshold: float = Field(default=0.2, description="Minimum score to keep an event")
    default_importance: float = Field(
        default=0.5, description="Score applied when the evaluator returns unknown"
    )
    importance_fallback: str = Field(
        default="default", description='Unknown-score policy: "default" or "heuristic"'
    )
    importance_cache_ttl: float = Field(default=300.0, description="Score cache TTL (seconds)")

    # === Chunking (model tokens) ===
    min_chunk_tokens: int = Field(default=25, description="Minimum chunk size in tokens")
    max_chunk_tokens: int = Field(default=500, description="Maximum chunk size in tokens")
    tokenizer_encoding: str = Field(default="cl100k_base", description="tiktoken encoding")

    # === Attachment ===
    attach_threshold: float = Field(default=0.82, description="Chunk-to-episode similarity")
    episode_window_days: float = Field(default=7.0, description="Candidate episode recency")
    max_candidate_episodes: int = Field(default=50, description="Candidate episode cap")
    episode_close_after_days: float = Field(
        default=30.0, description="Close open episodes idle for this long"
    )

    # === Consolidation ===
    cluster_radius: float = Field(default=0.3, description="DBSCAN cosine-distance radius")
    min_cluster_size: int = Field(default=2, description="Minimum chunks per cluster")
    max_chunks_per_episode: int = Field(default=30, description="Cluster size cap")
    orphan_backlog_threshold: int = Field(default=200, description="Backlog size trigger")
    orphan_burst_count: int = Field(default=3, description="Orphans within window trigger")
    orphan_burst_window_seconds: float = Field(default=600.0, description="Burst window")
    consolidation_interval_seconds: float = Field(default=3600.0, description="Periodic timer")
    consolidation_lease_seconds: float = Field(default=300.0, description="Single-flight lease")

    # === Thought synthesis ===
    thought_interval_seconds: float = Field(default=86400.0, description="Daily trigger")
    thought_burst_updates: int = Field(default=10, description="Episode updates in 24h trigger")
    thought_max_episodes: int = Field(default=50, description="Episodes scanned per run")
    thought_min_shared_tags: int = Field(default=2, description="Shared tags to group episodes")
    thought_min_episode_similarity: float = Field(
        default=0.65, description="Centroid similarity to group episodes"
    )
    thought_min_confidence: float = Field(default=0.5, description="Minimum thought confidence")
    thought_duplicate_threshold: float = Field(
        default=0.92, description="Similarity above which an existing thought is extended"
    )

    # === Retrieval ===
    retrieval_limit: int = Field(default=6, description="Maximum results")
    retrieval_certainty: float = Field(default=0.75, description="Minimum similarity")
    retrieval_min_importance: float = Field(default=0.2, description="Chunk importance floor")
    retrieval_stage_timeout_seconds: float = Field(default=5.0, description="Per-tier timeout")
    retrieval_context_tokens: int = Field(default=800, description="Prompt context budget")

    # === Task queue ===
    job_max_attempts: int = Field(default=3, description="Attempts before a job is dead")
    job_backoff_seconds: float = Field(default=5.0, description="Base exponential backoff")
    job_max_backoff_seconds: float = Field(default=300.0, description="Backoff cap")
    job_timeout_seconds: float = Field(default=120.0, description="Handler timeout / lock expiry")
    worker_concurrency: int = Field(default=4, description="Concurrent jobs per worker")
    worker_poll_seconds: float = Field(default=1.0, description="Idle poll interval")
    reconcile_interval_seconds: float = Field(default=300.0, description="Reconciliation sweep")
    reconcile_batch_size: int = Field(default=100, description="Records per sweep")

    # === Logging ===
    log_level: str = Field(default="INFO", description="Log level")

    model_config = {
        "env_prefix": "TIERMEM_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def db_full_path(self) -> Path:
        """Absolute database path"""
        return self.project_root / self.database_path

    @property
    def chroma_full_path(self) -> Path:
        """Absolute ChromaDB directory"""
        return self.project_root / self.chroma_path

    def class_dimensions(self) -> dict[str, int]:
        """Declared dimension per vector class."""
        base = self.embedding_dimension
        return {
            "ChunkEmbedding": self.chunk_dimension or base,
            "EpisodeEmbedding": self.episode_dimension or base,
            "ThoughtEmbedding": self.thought_dimension or base,
        }


# Global settings instance
settings = Settings()
