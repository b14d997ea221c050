"""
Knowbase - Document Ingestion and Hybrid Retrieval over Knowledge Bases

Turns uploaded files into searchable knowledge bases:
- Content-addressed blob storage with reference-counted deduplication
- Recursive and token-window chunking (tiktoken token counts)
- Embedding generation with a Redis or in-memory cache
- USearch HNSW collections per knowledge base
- SQLite FTS5 keyword search fused with vector search through RRF
- Optional reranking (Jina, SiliconFlow, Voyage or an LLM)
- Background workers with retries and live progress events
- REST API (FastAPI) and CLI

References:
- USearch: https://github.com/unum-cloud/usearch
- RRF: https://plg.uwaterloo.ca/~gvcormac/cormacksigir09-rrf.pdf
"""

from .config import EmbeddingConfig, EngineConfig, RerankerConfig
from .errors import (
    IngestionError,
    InvalidTransitionError,
    KnowbaseError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from .models import (
    BatchResult,
    Chunk,
    Document,
    DocumentStatus,
    EmbeddingModel,
    KnowledgeBase,
    SearchResult,
    UploadFile,
)
from .chunking import chunk_text
from .embeddings import (
    BaseEmbeddingProvider,
    CachedEmbedder,
    ModelRegistry,
    create_embedding_provider,
)
from .fusion import reciprocal_rank_fusion
from .index import USearchVectorStore, VectorStore
from .storage import MetadataStore
from .search import SearchEngine
from .reranker import BaseReranker, LLMReranker, create_reranker
from .engine import KnowledgeEngine, create_engine

__version__ = "1.0.0"
__all__ = [
    # Core
    "EngineConfig",
    "EmbeddingConfig",
    "RerankerConfig",
    "KnowledgeEngine",
    "create_engine",
    # Models
    "KnowledgeBase",
    "Document",
    "DocumentStatus",
    "Chunk",
    "EmbeddingModel",
    "SearchResult",
    "UploadFile",
    "BatchResult",
    # Errors
    "KnowbaseError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "UpstreamError",
    "IngestionError",
    # Components
    "chunk_text",
    "BaseEmbeddingProvider",
    "CachedEmbedder",
    "ModelRegistry",
    "create_embedding_provider",
    "reciprocal_rank_fusion",
    "VectorStore",
    "USearchVectorStore",
    "MetadataStore",
    "SearchEngine",
    # Re-ranking
    "BaseReranker",
    "LLMReranker",
    "create_reranker",
]
