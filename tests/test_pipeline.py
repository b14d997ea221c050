"""Tests for the ingestion state machine."""

import threading

import pytest

from knowbase.errors import IngestionError, InvalidTransitionError, NotFoundError
from knowbase.models import DocumentStatus
from knowbase.pipeline import DocumentLocks

GUIDE = (
    "Employees receive 25 days of paid vacation per year. "
    "Unused vacation days can be carried over until March.\n\n"
    "Sick leave is separate from vacation and requires a doctor's note "
    "after three consecutive days of absence."
)


class TestProcess:
    def test_completes_document(self, engine, kb, upload):
        doc = upload("guide.md", GUIDE)
        assert doc.status == DocumentStatus.PENDING

        done = engine.pipeline.process(doc.id)

        assert done.status == DocumentStatus.COMPLETED
        assert done.chunk_count > 0
        stored = engine.store.get_document(doc.id)
        assert stored.status == DocumentStatus.COMPLETED
        assert stored.chunk_count == done.chunk_count
        assert stored.error_message == ""

        chunks = engine.store.get_chunks_by_document(doc.id)
        assert len(chunks) == done.chunk_count
        assert stored.token_count == sum(c.token_count for c in chunks)
        assert engine.vector_store.count(kb.vector_collection) == done.chunk_count
        assert engine.store.get_knowledge_base(kb.id).document_count == 1

    def test_chunks_record_their_source_span(self, engine, kb, upload):
        doc = upload("guide.md", GUIDE)
        engine.pipeline.process(doc.id)
        for chunk in engine.store.get_chunks_by_document(doc.id):
            assert GUIDE[chunk.metadata["start"]:chunk.metadata["end"]] == chunk.content

    def test_only_pending_documents_are_processed(self, engine, kb, upload):
        doc = upload("guide.md", GUIDE)
        engine.pipeline.process(doc.id)
        with pytest.raises(InvalidTransitionError):
            engine.pipeline.process(doc.id)

    def test_missing_document(self, engine):
        with pytest.raises(NotFoundError):
            engine.pipeline.process("00000000-0000-0000-0000-000000000000")

    def test_embedding_failure_marks_document_failed(self, engine, kb, upload, provider):
        doc = upload("guide.md", GUIDE)
        provider.fail_times = 1

        with pytest.raises(IngestionError) as exc_info:
            engine.pipeline.process(doc.id)

        assert exc_info.value.step == "generate embeddings"
        stored = engine.store.get_document(doc.id)
        assert stored.status == DocumentStatus.FAILED
        assert stored.error_message.startswith("failed to generate embeddings:")
        assert engine.store.count_chunks(doc.id) == 0
        assert engine.store.get_knowledge_base(kb.id).document_count == 0

    def test_blank_file_fails_with_no_content(self, engine, kb, upload):
        doc = upload("blank.txt", "   \n\n   ")
        with pytest.raises(IngestionError):
            engine.pipeline.process(doc.id)
        stored = engine.store.get_document(doc.id)
        assert stored.status == DocumentStatus.FAILED
        assert "no content extracted" in stored.error_message

    def test_vector_failure_leaves_no_chunk_rows(self, engine, kb, upload, monkeypatch):
        doc = upload("guide.md", GUIDE)

        def broken(collection, chunks):
            raise RuntimeError("index unavailable")

        monkeypatch.setattr(engine.vector_store, "insert_vectors", broken)
        with pytest.raises(IngestionError) as exc_info:
            engine.pipeline.process(doc.id)

        assert str(exc_info.value) == "failed to insert vectors: index unavailable"
        assert engine.store.count_chunks(doc.id) == 0

    def test_retry_after_failure_clears_leftovers(self, engine, kb, upload, monkeypatch):
        doc = upload("guide.md", GUIDE)

        def broken(chunks):
            raise RuntimeError("disk I/O error")

        # Vectors are written, then chunk rows fail
        monkeypatch.setattr(engine.store, "batch_create_chunks", broken)
        with pytest.raises(IngestionError):
            engine.pipeline.process(doc.id)
        leftover = engine.vector_store.count(kb.vector_collection)
        assert leftover > 0

        monkeypatch.undo()
        engine.pipeline.mark_for_retry(doc.id)
        done = engine.pipeline.process(doc.id)

        assert done.status == DocumentStatus.COMPLETED
        assert engine.vector_store.count(kb.vector_collection) == done.chunk_count


class TestReset:
    def test_reset_completed_document(self, engine, kb, upload):
        doc = upload("guide.md", GUIDE)
        engine.pipeline.process(doc.id)

        reset = engine.pipeline.reset(doc.id)

        assert reset.status == DocumentStatus.PENDING
        assert reset.chunk_count == 0
        assert engine.store.count_chunks(doc.id) == 0
        assert engine.vector_store.count(kb.vector_collection) == 0
        assert engine.store.get_knowledge_base(kb.id).document_count == 0

    def test_reset_processing_document_is_rejected(self, engine, kb, upload):
        doc = upload("guide.md", GUIDE)
        engine.store.update_status(doc.id, DocumentStatus.PROCESSING)
        with pytest.raises(InvalidTransitionError):
            engine.pipeline.reset(doc.id)

    def test_mark_for_retry_keeps_error(self, engine, kb, upload, provider):
        doc = upload("guide.md", GUIDE)
        provider.fail_times = 1
        with pytest.raises(IngestionError):
            engine.pipeline.process(doc.id)

        retried = engine.pipeline.mark_for_retry(doc.id)
        assert retried.status == DocumentStatus.PENDING
        assert retried.error_message.startswith("failed to generate embeddings")

    def test_mark_for_retry_requires_failed(self, engine, kb, upload):
        doc = upload("guide.md", GUIDE)
        with pytest.raises(InvalidTransitionError):
            engine.pipeline.mark_for_retry(doc.id)

    def test_mark_for_retry_rejects_completed(self, engine, kb, upload):
        doc = upload("guide.md", GUIDE)
        engine.pipeline.process(doc.id)

        with pytest.raises(InvalidTransitionError):
            engine.pipeline.mark_for_retry(doc.id)

        assert engine.store.get_document(doc.id).status == DocumentStatus.COMPLETED
        assert engine.store.get_knowledge_base(kb.id).document_count == 1
        with pytest.raises(InvalidTransitionError):
            engine.pipeline.process(doc.id)
        assert engine.store.get_knowledge_base(kb.id).document_count == 1


class TestDelete:
    def test_delete_removes_everything(self, engine, kb, upload):
        doc = upload("guide.md", GUIDE)
        engine.pipeline.process(doc.id)

        engine.pipeline.delete(doc.id)

        assert engine.store.get_document(doc.id) is None
        assert engine.store.count_chunks(doc.id) == 0
        assert engine.vector_store.count(kb.vector_collection) == 0
        assert engine.store.get_knowledge_base(kb.id).document_count == 0
        assert engine.store.get_file_storage(doc.content_hash) is None

    def test_delete_many_checks_all_ids_first(self, engine, kb, upload):
        doc = upload("guide.md", GUIDE)
        with pytest.raises(NotFoundError):
            engine.pipeline.delete_many([doc.id, "missing"])
        assert engine.store.get_document(doc.id) is not None

    def test_pending_delete_keeps_count(self, engine, kb, upload):
        done = upload("a.md", GUIDE)
        engine.pipeline.process(done.id)
        pending = upload("b.md", "Another short note.")

        engine.pipeline.delete(pending.id)
        assert engine.store.get_knowledge_base(kb.id).document_count == 1


class TestDocumentLocks:
    def test_entries_released_after_use(self, engine, kb, upload):
        doc = upload("guide.md", GUIDE)
        engine.pipeline.process(doc.id)
        engine.pipeline.reset(doc.id)
        assert len(engine.pipeline.locks) == 0

    def test_reentrant(self):
        locks = DocumentLocks()
        with locks.hold("a"):
            with locks.hold("a"):
                assert len(locks) == 1
            assert len(locks) == 1
        assert len(locks) == 0

    def test_waiter_keeps_entry_alive(self):
        locks = DocumentLocks()
        entered = threading.Event()
        order = []

        def waiter():
            entered.set()
            with locks.hold("a"):
                order.append("waiter")

        with locks.hold("a"):
            thread = threading.Thread(target=waiter)
            thread.start()
            entered.wait(1)
            order.append("holder")
        thread.join(1)

        assert order == ["holder", "waiter"]
        assert len(locks) == 0
