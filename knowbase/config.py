"""Configuration models for the knowbase engine."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding provider and its cache."""

    provider: str = "openai"  # 'openai', 'jina'
    model: str = "text-embedding-3-small"
    api_key: Optional[str] = None  # Uses env var if None
    batch_size: int = 64
    cache_ttl_seconds: int = 24 * 3600
    cache_maxsize: int = 10000
    cache_prefix: str = "kb:embedding:"


@dataclass
class RerankerConfig:
    """Configuration for the optional second-pass reranker."""

    provider: str = "none"  # 'none', 'jina', 'llm'
    model: Optional[str] = None
    api_key: Optional[str] = None


@dataclass
class EngineConfig:
    """Configuration for the knowbase engine."""

    # Storage paths (derived from data_dir when not set)
    data_dir: str = "knowbase_data"
    db_path: Optional[str] = None
    blob_dir: Optional[str] = None
    index_dir: Optional[str] = None
    bucket: str = "knowledge-bases"

    # Redis backs the work queue and embedding cache when set
    redis_url: Optional[str] = None

    # USearch HNSW parameters (tuned for quality/speed balance)
    metric: str = "cos"  # 'cos', 'ip', 'l2sq'
    dtype: str = "f16"   # 'f32', 'f16', 'bf16', 'i8' - f16 gives 2x memory savings
    connectivity: int = 32      # M parameter - higher = better recall, more memory
    expansion_add: int = 128    # efConstruction - higher = better index quality
    expansion_search: int = 64  # ef - higher = better search recall

    # Chunking defaults for new knowledge bases
    chunk_size: int = 512       # tokens
    chunk_overlap: int = 50     # overlap tokens
    chunk_strategy: str = "recursive"  # 'recursive', 'token'
    tokenizer: str = "cl100k_base"     # tiktoken encoding, or 'word'

    # Retrieval defaults for new knowledge bases
    threshold: float = 0.5
    top_k: int = 5
    enable_hybrid_search: bool = True
    rrf_k: int = 60

    # Worker pool
    worker_count: int = 2
    poll_timeout: float = 1.0
    max_retries: int = 3
    settle_delay: float = 0.5
    notifier_buffer: int = 64

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    reranker: RerankerConfig = field(default_factory=RerankerConfig)

    def __post_init__(self):
        root = Path(self.data_dir)
        if self.db_path is None:
            self.db_path = str(root / "knowbase.db")
        if self.blob_dir is None:
            self.blob_dir = str(root / "blobs")
        if self.index_dir is None:
            self.index_dir = str(root / "vectors")

    @classmethod
    def from_env(cls, prefix: str = "KNOWBASE_", data_dir: Optional[str] = None) -> "EngineConfig":
        """Build a config from ``KNOWBASE_*`` environment variables.

        An explicit ``data_dir`` wins over the environment.
        """

        def env(name: str, default=None):
            return os.environ.get(prefix + name, default)

        embedding = EmbeddingConfig(
            provider=env("EMBEDDING_PROVIDER", "openai"),
            model=env("EMBEDDING_MODEL", "text-embedding-3-small"),
            api_key=env("EMBEDDING_API_KEY"),
            batch_size=int(env("EMBEDDING_BATCH_SIZE", 64)),
            cache_ttl_seconds=int(env("EMBEDDING_CACHE_TTL", 24 * 3600)),
        )
        reranker = RerankerConfig(
            provider=env("RERANKER_PROVIDER", "none"),
            model=env("RERANKER_MODEL"),
            api_key=env("RERANKER_API_KEY"),
        )
        return cls(
            data_dir=data_dir or env("DATA_DIR", "knowbase_data"),
            db_path=env("DB_PATH"),
            blob_dir=env("BLOB_DIR"),
            index_dir=env("INDEX_DIR"),
            redis_url=env("REDIS_URL"),
            dtype=env("INDEX_DTYPE", "f16"),
            tokenizer=env("TOKENIZER", "cl100k_base"),
            worker_count=int(env("WORKERS", 2)),
            max_retries=int(env("MAX_RETRIES", 3)),
            embedding=embedding,
            reranker=reranker,
        )
