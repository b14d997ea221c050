"""Search engine implementation (vector, keyword, hybrid)."""

import logging
import time
from dataclasses import replace
from typing import List, Optional

from .embeddings import CachedEmbedder, ModelRegistry
from .fusion import DEFAULT_RRF_K, RankedItem, reciprocal_rank_fusion
from .index import VectorStore
from .models import KnowledgeBase, SearchResult, validate_top_k
from .reranker import BaseReranker, NoOpReranker
from .storage import MetadataStore

logger = logging.getLogger(__name__)


class SearchEngine:
    """Handles vector, keyword, and hybrid search over one knowledge base at a time."""

    def __init__(
        self,
        metadata_store: MetadataStore,
        vector_store: VectorStore,
        embedder: CachedEmbedder,
        registry: ModelRegistry,
        reranker: Optional[BaseReranker] = None,
        rrf_k: int = DEFAULT_RRF_K,
    ):
        self.metadata_store = metadata_store
        self.vector_store = vector_store
        self.embedder = embedder
        self.registry = registry
        self.reranker = reranker or NoOpReranker()
        self.rrf_k = rrf_k

    def _embed_query(self, kb: KnowledgeBase, query: str) -> List[float]:
        model = self.registry.resolve_embedding_model(kb.embedding_model)
        return self.embedder.embed([query], model=model.name)[0]

    def vector_search(
        self,
        kb: KnowledgeBase,
        query: str,
        k: int,
        threshold: Optional[float] = None,
    ) -> List[SearchResult]:
        """Similarity search, dropping results under the KB threshold."""
        vector = self._embed_query(kb, query)
        min_score = kb.threshold if threshold is None else threshold
        results = self.vector_store.search_with_threshold(kb.vector_collection, vector, k, min_score)
        for result in results:
            result.metadata["vector_score"] = result.score
        return results

    def keyword_search(self, kb: KnowledgeBase, query: str, k: int) -> List[SearchResult]:
        """BM25 search over chunk text."""
        chunks = self.metadata_store.keyword_search(kb.id, query, top_k=k)
        return [
            SearchResult(
                chunk_id=chunk.id,
                document_id=chunk.document_id,
                content=chunk.content,
                score=chunk.metadata["bm25_score"],
                metadata={"position": chunk.position, "bm25_score": chunk.metadata["bm25_score"]},
            )
            for chunk in chunks
        ]

    def hybrid_search(self, kb: KnowledgeBase, query: str, k: int) -> List[SearchResult]:
        """Hybrid search using Reciprocal Rank Fusion (RRF)."""
        # Get results from both methods
        vector_results = self.vector_search(kb, query, k=k * 2)
        keyword_results = self.keyword_search(kb, query, k=k * 2)

        vector_scores = {r.chunk_id: r.score for r in vector_results}
        bm25_scores = {r.chunk_id: r.score for r in keyword_results}

        fused = reciprocal_rank_fusion(
            [
                [RankedItem(r.chunk_id, r.score, r) for r in vector_results],
                [RankedItem(r.chunk_id, r.score, r) for r in keyword_results],
            ],
            k=self.rrf_k,
        )

        results = []
        for item in fused[:k]:
            result: SearchResult = item.payload
            metadata = dict(result.metadata)
            metadata["rrf_rank"] = item.rank
            if item.id in vector_scores:
                metadata["vector_score"] = vector_scores[item.id]
            if item.id in bm25_scores:
                metadata["bm25_score"] = bm25_scores[item.id]
            results.append(replace(result, score=item.rrf_score, metadata=metadata))
        return results

    def search(self, kb: KnowledgeBase, query: str, top_k: Optional[int] = None) -> List[SearchResult]:
        """
        Search a knowledge base with its retrieval settings.

        Args:
            kb: Knowledge base to search
            query: Search query
            top_k: Number of results (defaults to the knowledge base's top_k)

        Returns:
            Results enriched with ``file_name`` and ``file_type``
        """
        if top_k is None:
            top_k = kb.top_k
        validate_top_k(top_k)
        if not query or not query.strip():
            return []

        start = time.perf_counter()
        if kb.enable_hybrid_search:
            mode = "hybrid"
            results = self.hybrid_search(kb, query, top_k)
        else:
            mode = "vector"
            results = self.vector_search(kb, query, top_k)

        if kb.enable_rerank and results:
            results = self.reranker.rerank(query, results)

        self._enrich(results)
        elapsed_ms = (time.perf_counter() - start) * 1000

        if results:
            scores = [r.score for r in results]
            logger.info(
                f"Search ({mode}) in kb {kb.id} returned {len(results)} results in "
                f"{elapsed_ms:.1f}ms (max={max(scores):.4f}, min={min(scores):.4f})"
            )
        else:
            logger.info(f"Search ({mode}) in kb {kb.id} returned no results in {elapsed_ms:.1f}ms")
        return results

    def _enrich(self, results: List[SearchResult]) -> None:
        documents = self.metadata_store.get_documents([r.document_id for r in results])
        for result in results:
            doc = documents.get(result.document_id)
            if doc is not None:
                result.metadata["file_name"] = doc.file_name
                result.metadata["file_type"] = doc.file_type
