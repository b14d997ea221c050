"""Application services: knowledge base and document operations for a caller."""

import logging
from typing import List, Optional, Sequence

from .blobs import ContentAddressableStore, compensate
from .config import EngineConfig
from .embeddings import CachedEmbedder, ModelRegistry
from .errors import KnowbaseError, NotFoundError, UpstreamError, ValidationError
from .extraction import content_type_for, infer_file_type
from .index import VectorStore
from .models import (
    SYSTEM_OWNER_ID,
    BatchResult,
    Document,
    FailedItem,
    KnowledgeBase,
    SearchResult,
    UploadFile,
    validate_retrieval,
)
from .pipeline import IngestionPipeline
from .search import SearchEngine
from .storage import MetadataStore
from .worker import WorkerPool

logger = logging.getLogger(__name__)


def get_visible_knowledge_base(store: MetadataStore, kb_id: str, owner_id: str) -> KnowledgeBase:
    """Load a knowledge base the caller may use. Unknown and foreign ids look the same."""
    kb = store.get_knowledge_base(kb_id)
    if kb is None or not kb.is_visible_to(owner_id):
        raise NotFoundError("knowledge base", kb_id)
    return kb


def get_owned_knowledge_base(store: MetadataStore, kb_id: str, owner_id: str) -> KnowledgeBase:
    """Load a knowledge base the caller may modify."""
    kb = store.get_knowledge_base(kb_id)
    if kb is None or kb.owner_id != owner_id:
        raise NotFoundError("knowledge base", kb_id)
    return kb


class KnowledgeBaseService:
    """Create, configure and delete knowledge bases."""

    def __init__(
        self,
        store: MetadataStore,
        vector_store: VectorStore,
        registry: ModelRegistry,
        pipeline: IngestionPipeline,
        config: Optional[EngineConfig] = None,
        embedder: Optional[CachedEmbedder] = None,
    ):
        self.store = store
        self.vector_store = vector_store
        self.registry = registry
        self.pipeline = pipeline
        self.config = config or EngineConfig()
        self.embedder = embedder

    def create_knowledge_base(
        self,
        owner_id: str,
        name: str,
        embedding_model: Optional[str] = None,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        chunk_strategy: Optional[str] = None,
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
        enable_hybrid_search: Optional[bool] = None,
        enable_rerank: bool = False,
    ) -> KnowledgeBase:
        """
        Create a knowledge base; unset options take the engine defaults.

        The embedding model must be one the engine's provider can embed with,
        and the chunk size is capped at the model's context length.
        """
        if not owner_id:
            raise ValidationError("owner_id is required")
        model_name = embedding_model or self.config.embedding.model
        try:
            model = self.registry.resolve_embedding_model(model_name)
        except NotFoundError:
            raise ValidationError(f"Unknown embedding model: {model_name}") from None
        if self.embedder is not None:
            provider = self.embedder.provider
            if provider.dimension(model.name) != model.dimension:
                raise ValidationError(
                    f"Embedding model {model.name} is not served by the {provider.name} provider"
                )

        size = chunk_size if chunk_size is not None else self.config.chunk_size
        if size > model.max_context:
            logger.info(f"Capping chunk size {size} to {model.name} context of {model.max_context}")
            size = model.max_context

        kb = KnowledgeBase(
            owner_id=owner_id,
            name=(name or "").strip(),
            embedding_model=model.name,
            chunk_size=size,
            chunk_overlap=chunk_overlap if chunk_overlap is not None else self.config.chunk_overlap,
            chunk_strategy=chunk_strategy or self.config.chunk_strategy,
            threshold=threshold if threshold is not None else self.config.threshold,
            top_k=top_k if top_k is not None else self.config.top_k,
            enable_hybrid_search=(
                enable_hybrid_search if enable_hybrid_search is not None
                else self.config.enable_hybrid_search
            ),
            enable_rerank=enable_rerank,
        )
        kb.validate()
        self.store.create_knowledge_base(kb)
        logger.info(f"Created knowledge base {kb.id} ({kb.name}) for {owner_id}")
        return kb

    def get_knowledge_base(self, kb_id: str, owner_id: str) -> KnowledgeBase:
        return get_visible_knowledge_base(self.store, kb_id, owner_id)

    def list_knowledge_bases(self, owner_id: str) -> List[KnowledgeBase]:
        """The caller's knowledge bases followed by the shared system ones."""
        kbs = self.store.list_knowledge_bases(owner_id)
        if owner_id != SYSTEM_OWNER_ID:
            kbs.extend(self.store.list_knowledge_bases(SYSTEM_OWNER_ID))
        return kbs

    def rename_knowledge_base(self, kb_id: str, owner_id: str, name: str) -> KnowledgeBase:
        kb = get_owned_knowledge_base(self.store, kb_id, owner_id)
        kb.name = (name or "").strip()
        kb.validate()
        self.store.update_knowledge_base(kb)
        logger.info(f"Renamed knowledge base {kb.id} to {kb.name}")
        return kb

    def update_retrieval_config(
        self,
        kb_id: str,
        owner_id: str,
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
        enable_hybrid_search: Optional[bool] = None,
        enable_rerank: Optional[bool] = None,
    ) -> KnowledgeBase:
        kb = get_owned_knowledge_base(self.store, kb_id, owner_id)
        new_threshold = kb.threshold if threshold is None else threshold
        new_top_k = kb.top_k if top_k is None else top_k
        validate_retrieval(new_threshold, new_top_k)

        kb.threshold = new_threshold
        kb.top_k = new_top_k
        if enable_hybrid_search is not None:
            kb.enable_hybrid_search = enable_hybrid_search
        if enable_rerank is not None:
            kb.enable_rerank = enable_rerank
        self.store.update_knowledge_base(kb)
        return kb

    def delete_knowledge_base(self, kb_id: str, owner_id: str) -> None:
        """Delete a knowledge base with all its documents and its vector collection."""
        kb = get_owned_knowledge_base(self.store, kb_id, owner_id)
        documents = self.store.list_documents(kb.id)
        self.pipeline.delete_many([d.id for d in documents])
        try:
            self.vector_store.drop_collection(kb.vector_collection)
        except Exception as exc:
            raise UpstreamError("drop vector collection", exc) from exc
        self.store.delete_knowledge_base(kb.id)
        logger.info(f"Deleted knowledge base {kb.id} with {len(documents)} documents")


class DocumentService:
    """Document operations: upload, processing, deletion and search."""

    def __init__(
        self,
        store: MetadataStore,
        blobs: ContentAddressableStore,
        pipeline: IngestionPipeline,
        search_engine: SearchEngine,
        worker_pool: Optional[WorkerPool] = None,
    ):
        self.store = store
        self.blobs = blobs
        self.pipeline = pipeline
        self.search_engine = search_engine
        self.worker_pool = worker_pool

    def _get_visible_document(self, document_id: str, owner_id: Optional[str]) -> Document:
        doc = self.store.get_document(document_id)
        if doc is None:
            raise NotFoundError("document", document_id)
        if owner_id is not None:
            kb = self.store.get_knowledge_base(doc.knowledge_base_id)
            if kb is None or not kb.is_visible_to(owner_id):
                raise NotFoundError("document", document_id)
        return doc

    # ============ Upload ============

    def upload_document(
        self,
        kb_id: str,
        owner_id: str,
        file_name: str,
        data: bytes,
        file_type: Optional[str] = None,
        enqueue: bool = True,
    ) -> Document:
        """
        Store a file and create its pending document.

        Identical content uploaded earlier (to any knowledge base) is not
        stored again; the existing blob gains a reference instead.
        """
        kb = get_visible_knowledge_base(self.store, kb_id, owner_id)
        if not file_name or not file_name.strip():
            raise ValidationError("File name is required")
        kind = infer_file_type(file_name, file_type)
        if not data:
            raise ValidationError(f"File is empty: {file_name}")

        stored = self.blobs.store(data, content_type_for(kind))
        doc = Document(
            knowledge_base_id=kb.id,
            file_name=file_name,
            file_type=kind,
            file_size=len(data),
            content_hash=stored.content_hash,
            bucket=stored.bucket,
            object_key=stored.object_key,
            metadata={"source_type": "file"},
        )
        try:
            self.store.create_document(doc)
        except Exception as exc:
            compensate("release blob", self.blobs.release, stored.content_hash)
            raise UpstreamError("create document", exc) from exc

        logger.info(
            f"Uploaded {file_name} to kb {kb.id} as document {doc.id}"
            f"{'' if stored.is_new else ' (deduplicated)'}"
        )
        if enqueue and self.worker_pool is not None:
            self.worker_pool.enqueue_document(doc.id)
        return doc

    def batch_upload_documents(
        self,
        kb_id: str,
        owner_id: str,
        files: Sequence[UploadFile],
        enqueue: bool = True,
    ) -> BatchResult:
        result = BatchResult(total=len(files))
        try:
            get_visible_knowledge_base(self.store, kb_id, owner_id)
        except NotFoundError as exc:
            result.failed = [FailedItem(f.file_name, str(exc)) for f in files]
            return result

        for upload in files:
            try:
                doc = self.upload_document(
                    kb_id, owner_id, upload.file_name, upload.data, upload.file_type, enqueue=enqueue
                )
            except KnowbaseError as exc:
                result.failed.append(FailedItem(upload.file_name, str(exc)))
            else:
                result.succeeded.append(doc)
        logger.info(
            f"Batch upload to kb {kb_id}: {result.success_count} succeeded, {result.failed_count} failed"
        )
        return result

    # ============ Processing ============

    def process_document(self, document_id: str, owner_id: Optional[str] = None) -> Document:
        """Run the ingestion pipeline on a pending document in the calling thread."""
        self._get_visible_document(document_id, owner_id)
        return self.pipeline.process(document_id)

    def reprocess_document(self, document_id: str, owner_id: str, inline: bool = True) -> Document:
        """
        Discard a document's chunks and vectors and ingest it again.

        With ``inline`` the document is processed before returning;
        otherwise it is reset to pending and queued for the workers.
        """
        self._get_visible_document(document_id, owner_id)
        with self.pipeline.locks.hold(document_id):
            doc = self.pipeline.reset(document_id)
            if inline:
                return self.pipeline.process(document_id)
        self.enqueue_document(document_id)
        return doc

    def enqueue_document(self, document_id: str) -> None:
        if self.worker_pool is None:
            raise ValidationError("No worker pool configured")
        self.worker_pool.enqueue_document(document_id)

    def get_queue_size(self) -> int:
        return self.worker_pool.queue_size() if self.worker_pool is not None else 0

    def get_processing_count(self) -> int:
        return self.worker_pool.processing_count() if self.worker_pool is not None else 0

    # ============ Deletion ============

    def delete_document(self, document_id: str, owner_id: str) -> None:
        self._get_visible_document(document_id, owner_id)
        self.pipeline.delete(document_id)

    def batch_delete_documents(self, document_ids: Sequence[str], owner_id: str) -> BatchResult:
        ids = list(dict.fromkeys(document_ids))
        result = BatchResult(total=len(ids))
        docs = self.store.get_documents(ids)

        deletable = []
        visible_kbs = {}
        for document_id in ids:
            doc = docs.get(document_id)
            if doc is not None and doc.knowledge_base_id not in visible_kbs:
                kb = self.store.get_knowledge_base(doc.knowledge_base_id)
                visible_kbs[doc.knowledge_base_id] = kb is not None and kb.is_visible_to(owner_id)
            if doc is None or not visible_kbs[doc.knowledge_base_id]:
                result.failed.append(FailedItem(document_id, str(NotFoundError("document", document_id))))
                continue
            deletable.append(document_id)

        if deletable:
            try:
                self.pipeline.delete_many(deletable)
            except KnowbaseError as exc:
                result.failed.extend(FailedItem(d, str(exc)) for d in deletable)
            else:
                result.succeeded.extend(deletable)
        return result

    # ============ Queries ============

    def get_document(self, document_id: str, owner_id: str) -> Document:
        return self._get_visible_document(document_id, owner_id)

    def list_documents(self, kb_id: str, owner_id: str) -> List[Document]:
        kb = get_visible_knowledge_base(self.store, kb_id, owner_id)
        return self.store.list_documents(kb.id)

    def search_documents(
        self,
        kb_id: str,
        owner_id: str,
        query: str,
        top_k: Optional[int] = None,
    ) -> List[SearchResult]:
        kb = get_visible_knowledge_base(self.store, kb_id, owner_id)
        return self.search_engine.search(kb, query, top_k)
