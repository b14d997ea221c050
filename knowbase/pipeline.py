"""Document ingestion: the processing state machine and its cascades."""

import logging
import threading
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .blobs import ContentAddressableStore, compensate
from .chunking import BaseTokenizer, chunk_text
from .embeddings import CachedEmbedder, ModelRegistry
from .errors import IngestionError, InvalidTransitionError, NotFoundError, UpstreamError
from .extraction import TextExtractor
from .index import VectorStore
from .models import Chunk, Document, DocumentStatus, KnowledgeBase
from .storage import MetadataStore

logger = logging.getLogger(__name__)


class DocumentLocks:
    """
    Per-document reentrant locks, so one document is never worked on twice at once.

    A document's lock exists only while some thread holds or waits for it.
    """

    def __init__(self):
        # document id -> [lock, holders and waiters]
        self._locks: Dict[str, List[Any]] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, document_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(document_id)
            if entry is None:
                entry = self._locks[document_id] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[document_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def _step(step: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run one pipeline step, converting any failure into an IngestionError."""
    try:
        return fn(*args, **kwargs)
    except IngestionError:
        raise
    except Exception as exc:
        cause = exc.cause if isinstance(exc, UpstreamError) and exc.cause is not None else exc
        raise IngestionError(step, cause) from exc


class IngestionPipeline:
    """
    Moves documents through ``pending -> processing -> completed | failed``.

    Processing fetches the blob, extracts and chunks the text, embeds the
    chunks, writes the vectors and then the chunk rows, and finally bumps
    the knowledge base's document count and marks the document completed.
    A failing step is recorded on the document as
    ``failed to <step>: <cause>`` and re-raised as an IngestionError.
    """

    def __init__(
        self,
        store: MetadataStore,
        blobs: ContentAddressableStore,
        vector_store: VectorStore,
        embedder: CachedEmbedder,
        registry: ModelRegistry,
        extractor: Optional[TextExtractor] = None,
        tokenizer: Optional[BaseTokenizer] = None,
        locks: Optional[DocumentLocks] = None,
    ):
        self.store = store
        self.blobs = blobs
        self.vector_store = vector_store
        self.embedder = embedder
        self.registry = registry
        self.extractor = extractor or TextExtractor()
        self.tokenizer = tokenizer
        self.locks = locks or DocumentLocks()

    def _get_document(self, document_id: str) -> Document:
        doc = self.store.get_document(document_id)
        if doc is None:
            raise NotFoundError("document", document_id)
        return doc

    def _get_knowledge_base(self, kb_id: str) -> KnowledgeBase:
        kb = self.store.get_knowledge_base(kb_id)
        if kb is None:
            raise NotFoundError("knowledge base", kb_id)
        return kb

    def _transition(self, doc: Document, target: DocumentStatus, error_message: str = "") -> None:
        if not doc.status.can_transition_to(target):
            raise InvalidTransitionError(doc.id, doc.status.value, target.value)
        self.store.update_status(doc.id, target, error_message)
        doc.status = target
        doc.error_message = error_message

    def _purge(self, kb: KnowledgeBase, document_id: str) -> None:
        """Remove a document's vectors and chunk rows."""
        self.vector_store.delete_by_document(kb.vector_collection, document_id)
        self.store.delete_chunks_by_document(document_id)

    # ============ Processing ============

    def process(self, document_id: str) -> Document:
        """
        Process a pending document to completion.

        Raises:
            NotFoundError: the document does not exist
            InvalidTransitionError: the document is not pending
            IngestionError: a step failed; the document is now failed
        """
        with self.locks.hold(document_id):
            doc = self._get_document(document_id)
            self._transition(doc, DocumentStatus.PROCESSING)
            logger.info(f"Processing document {doc.id} ({doc.file_name})")
            try:
                return self._run(doc)
            except IngestionError as exc:
                logger.warning(f"Document {doc.id} failed: {exc}")
                self._record_failure(doc, str(exc))
                raise

    def _record_failure(self, doc: Document, message: str) -> None:
        ok, _ = compensate(
            "record document failure",
            self.store.update_status, doc.id, DocumentStatus.FAILED, message,
        )
        if ok:
            doc.status = DocumentStatus.FAILED
            doc.error_message = message

    def _run(self, doc: Document) -> Document:
        kb = _step("load knowledge base", self._get_knowledge_base, doc.knowledge_base_id)
        model = _step("resolve embedding model", self.registry.resolve_embedding_model, kb.embedding_model)
        if model.dimension <= 0:
            raise IngestionError(
                "resolve embedding model",
                message="failed to resolve embedding model: embedding dimensions not configured",
            )

        # Leftovers of an earlier failed attempt
        _step("clear previous chunks", self._purge, kb, doc.id)

        data = _step("get file", self.blobs.fetch, doc.bucket, doc.object_key)
        text = _step("extract text", self.extractor.extract, data, doc.file_type)
        pieces = _step(
            "chunk text", chunk_text, text,
            chunk_size=kb.chunk_size,
            chunk_overlap=kb.chunk_overlap,
            strategy=kb.chunk_strategy,
            tokenizer=self.tokenizer,
        )
        if not pieces:
            raise IngestionError("extract text", message="failed to extract text: no content extracted")

        vectors = _step("generate embeddings", self.embedder.embed, [p.content for p in pieces], model.name)
        _step("create collection", self.vector_store.create_collection, kb.vector_collection, model.dimension)

        chunks = [
            Chunk(
                document_id=doc.id,
                knowledge_base_id=kb.id,
                position=piece.index,
                content=piece.content,
                token_count=piece.token_count,
                embedding=vector,
                metadata={"start": piece.start, "end": piece.end},
            )
            for piece, vector in zip(pieces, vectors)
        ]

        # Vectors first: a failed row insert is cleaned up by the next attempt
        _step("insert vectors", self.vector_store.insert_vectors, kb.vector_collection, chunks)
        _step("save chunks", self.store.batch_create_chunks, chunks)

        _step("increment document count", self.store.increment_document_count, kb.id, 1)
        doc.status = DocumentStatus.COMPLETED
        doc.error_message = ""
        doc.chunk_count = len(chunks)
        doc.token_count = sum(c.token_count for c in chunks)
        try:
            self.store.update_document(doc)
        except Exception as exc:
            compensate("roll back document count", self.store.increment_document_count, kb.id, -1)
            raise IngestionError("update document", exc) from exc

        logger.info(
            f"Document {doc.id} completed: {doc.chunk_count} chunks, {doc.token_count} tokens"
        )
        return doc

    # ============ Resets ============

    def reset(self, document_id: str) -> Document:
        """Clear a document's derived data and put it back to pending."""
        with self.locks.hold(document_id):
            doc = self._get_document(document_id)
            if doc.status == DocumentStatus.PROCESSING:
                raise InvalidTransitionError(doc.id, doc.status.value, DocumentStatus.PENDING.value)
            kb = self._get_knowledge_base(doc.knowledge_base_id)

            try:
                self._purge(kb, doc.id)
            except Exception as exc:
                raise UpstreamError("clear previous chunks", exc) from exc

            if doc.status == DocumentStatus.COMPLETED:
                self.store.increment_document_count(kb.id, -1)

            doc.status = DocumentStatus.PENDING
            doc.error_message = ""
            doc.chunk_count = 0
            doc.token_count = 0
            doc.retry_count = 0
            self.store.update_document(doc)
            logger.info(f"Reset document {doc.id} to pending")
            return doc

    def mark_for_retry(self, document_id: str) -> Document:
        """Move a failed document back to pending, keeping its last error."""
        with self.locks.hold(document_id):
            doc = self._get_document(document_id)
            if doc.status != DocumentStatus.FAILED:
                raise InvalidTransitionError(doc.id, doc.status.value, DocumentStatus.PENDING.value)
            self._transition(doc, DocumentStatus.PENDING, doc.error_message)
            return doc

    # ============ Deletion ============

    def delete(self, document_id: str) -> Document:
        """Delete a document with its chunks and vectors, and release its blob."""
        return self.delete_many([document_id])[0]

    def delete_many(self, document_ids: Sequence[str]) -> List[Document]:
        """
        Delete documents in bulk.

        Vectors are removed per document, chunk and document rows in one
        statement each, then blob references are released and knowledge
        base counters adjusted once per knowledge base. Missing ids raise
        NotFoundError before anything is deleted.
        """
        ids = list(dict.fromkeys(document_ids))
        if not ids:
            return []

        with ExitStack() as stack:
            for document_id in sorted(ids):
                stack.enter_context(self.locks.hold(document_id))

            docs = self.store.get_documents(ids)
            for document_id in ids:
                if document_id not in docs:
                    raise NotFoundError("document", document_id)
            ordered = [docs[i] for i in ids]

            collections: Dict[str, str] = {}
            for doc in ordered:
                kb = self.store.get_knowledge_base(doc.knowledge_base_id)
                if kb is not None:
                    collections[doc.id] = kb.vector_collection

            for doc in ordered:
                collection = collections.get(doc.id)
                if collection is None:
                    continue
                try:
                    self.vector_store.delete_by_document(collection, doc.id)
                except Exception as exc:
                    raise UpstreamError("delete vectors", exc) from exc

            self.store.delete_chunks_by_documents(ids)
            self.store.delete_documents(ids)

            completed = defaultdict(int)
            for doc in ordered:
                compensate("release blob", self.blobs.release, doc.content_hash)
                if doc.status == DocumentStatus.COMPLETED:
                    completed[doc.knowledge_base_id] += 1
            for kb_id, count in completed.items():
                compensate("decrement document count", self.store.increment_document_count, kb_id, -count)

        logger.info(f"Deleted {len(ordered)} documents")
        return ordered
