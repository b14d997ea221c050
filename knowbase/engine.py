"""Main knowbase engine: wires storage, indexes, pipeline and workers together."""

import logging
import threading
from typing import Any, Dict, Optional

from .blobs import BlobStorage, ContentAddressableStore, LocalBlobStorage
from .chunking import BaseTokenizer, get_tokenizer
from .config import EngineConfig
from .embeddings import (
    BaseEmbeddingProvider,
    CachedEmbedder,
    EmbeddingCache,
    InMemoryEmbeddingCache,
    ModelRegistry,
    RedisEmbeddingCache,
    create_embedding_provider,
)
from .extraction import TextExtractor
from .index import USearchVectorStore, VectorStore
from .notifier import ProgressNotifier
from .pipeline import DocumentLocks, IngestionPipeline
from .reranker import BaseReranker, create_reranker
from .search import SearchEngine
from .service import DocumentService, KnowledgeBaseService
from .storage import MetadataStore
from .task_queue import InMemoryTaskQueue, RedisTaskQueue, TaskQueue
from .worker import WorkerPool

logger = logging.getLogger(__name__)


class KnowledgeEngine:
    """
    Document ingestion and hybrid retrieval over knowledge bases.

    Components not passed in are built from the config: SQLite metadata,
    local blob storage, USearch collections, and Redis for the queue and
    embedding cache when ``redis_url`` is set (in-memory otherwise).
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        provider: Optional[BaseEmbeddingProvider] = None,
        embedding_cache: Optional[EmbeddingCache] = None,
        registry: Optional[ModelRegistry] = None,
        reranker: Optional[BaseReranker] = None,
        queue: Optional[TaskQueue] = None,
        blob_storage: Optional[BlobStorage] = None,
        vector_store: Optional[VectorStore] = None,
        tokenizer: Optional[BaseTokenizer] = None,
    ):
        self.config = config = config or EngineConfig()
        self._lock = threading.RLock()
        self._closed = False

        self.store = MetadataStore(config.db_path)
        self.blobs = ContentAddressableStore(
            self.store, blob_storage or LocalBlobStorage(config.blob_dir), config.bucket
        )
        self.vector_store = vector_store or USearchVectorStore(
            config.index_dir,
            metric=config.metric,
            dtype=config.dtype,
            connectivity=config.connectivity,
            expansion_add=config.expansion_add,
            expansion_search=config.expansion_search,
        )

        self.registry = registry or ModelRegistry()
        if provider is None:
            provider = create_embedding_provider(
                config.embedding.provider,
                config.embedding.model,
                api_key=config.embedding.api_key,
                batch_size=config.embedding.batch_size,
            )
        if embedding_cache is None:
            if config.redis_url:
                embedding_cache = RedisEmbeddingCache(url=config.redis_url)
            else:
                embedding_cache = InMemoryEmbeddingCache(maxsize=config.embedding.cache_maxsize)
        self.embedder = CachedEmbedder(
            provider,
            embedding_cache,
            ttl_seconds=config.embedding.cache_ttl_seconds,
            prefix=config.embedding.cache_prefix,
        )

        self.reranker = reranker or create_reranker(
            config.reranker.provider, config.reranker.model, config.reranker.api_key
        )
        self.tokenizer = tokenizer or get_tokenizer(config.tokenizer)

        self.search_engine = SearchEngine(
            self.store,
            self.vector_store,
            self.embedder,
            self.registry,
            reranker=self.reranker,
            rrf_k=config.rrf_k,
        )
        self.pipeline = IngestionPipeline(
            self.store,
            self.blobs,
            self.vector_store,
            self.embedder,
            self.registry,
            extractor=TextExtractor(),
            tokenizer=self.tokenizer,
            locks=DocumentLocks(),
        )

        if queue is None:
            queue = RedisTaskQueue(url=config.redis_url) if config.redis_url else InMemoryTaskQueue()
        self.queue = queue
        self.notifier = ProgressNotifier(buffer_size=config.notifier_buffer)
        self.worker_pool = WorkerPool(
            queue,
            self.pipeline,
            self.store,
            self.notifier,
            worker_count=config.worker_count,
            poll_timeout=config.poll_timeout,
            max_retries=config.max_retries,
            settle_delay=config.settle_delay,
        )

        self.knowledge_bases = KnowledgeBaseService(
            self.store, self.vector_store, self.registry, self.pipeline, config,
            embedder=self.embedder,
        )
        self.documents = DocumentService(
            self.store, self.blobs, self.pipeline, self.search_engine, self.worker_pool
        )
        logger.info(f"Knowledge engine ready (data in {config.data_dir})")

    def start_workers(self) -> None:
        self.worker_pool.start()

    def stop_workers(self, timeout: Optional[float] = None) -> None:
        self.worker_pool.stop(timeout)

    def get_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        with self._lock:
            stats: Dict[str, Any] = dict(self.store.get_stats())
            stats.update({
                "queue_size": self.worker_pool.queue_size(),
                "processing": self.worker_pool.processing_count(),
                "workers_running": self.worker_pool.running,
                "embedding_model": self.config.embedding.model,
                "embedding_cache": self.embedder.cache.stats() if self.embedder.cache else {},
                "db_path": self.config.db_path,
                "index_dir": self.config.index_dir,
            })
            return stats

    def close(self) -> None:
        """Stop workers, persist indexes and close all connections."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.worker_pool.stop()
            self.notifier.close()
            self.vector_store.close()
            self.queue.close()
            self.store.close()

    def __enter__(self) -> "KnowledgeEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def create_engine(
    data_dir: Optional[str] = None,
    *,
    config: Optional[EngineConfig] = None,
    **components: Any,
) -> KnowledgeEngine:
    """
    Create a KnowledgeEngine with sensible defaults.

    Example:
        >>> engine = create_engine("./kb_data")
        >>> kb = engine.knowledge_bases.create_knowledge_base("alice", "Handbook")
        >>> engine.documents.upload_document(kb.id, "alice", "guide.md", data)
        >>> engine.start_workers()
    """
    if config is None:
        config = EngineConfig.from_env(data_dir=data_dir)
    return KnowledgeEngine(config, **components)
