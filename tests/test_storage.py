"""Tests for the SQLite metadata store and FTS5 keyword search."""

import pytest

from knowbase.models import Chunk, Document, DocumentStatus, KnowledgeBase, new_id
from knowbase.storage import MetadataStore, build_match_query


@pytest.fixture
def store(tmp_path):
    db = MetadataStore(str(tmp_path / "kb.db"))
    yield db
    db.close()


def add_chunks(store, kb_id, document_id, texts):
    chunks = [
        Chunk(document_id=document_id, knowledge_base_id=kb_id, position=i,
              content=text, token_count=len(text.split()))
        for i, text in enumerate(texts)
    ]
    store.batch_create_chunks(chunks)
    return chunks


def make_document(kb_id, **kwargs):
    return Document(
        knowledge_base_id=kb_id,
        file_name=kwargs.pop("file_name", "a.txt"),
        file_type="txt",
        file_size=3,
        content_hash="h" * 64,
        bucket="b",
        object_key="files/hh/" + "h" * 64,
        **kwargs,
    )


class TestBuildMatchQuery:
    def test_terms_are_quoted_and_or_ed(self):
        assert build_match_query("vacation policy") == '"vacation" OR "policy"'

    def test_fts_syntax_is_neutralized(self):
        assert build_match_query('policy AND (NEAR "x') == '"policy" OR "AND" OR "NEAR" OR "x"'

    def test_no_terms(self):
        assert build_match_query("") is None
        assert build_match_query("?! --") is None


class TestKeywordSearch:
    def test_ranks_by_bm25(self, store):
        doc = new_id()
        add_chunks(store, "kb1", doc, [
            "Expense reports are due monthly.",
            "The vacation policy grants 25 days of vacation.",
            "Remote work policy for engineers.",
        ])
        results = store.keyword_search("kb1", "vacation policy", top_k=10)

        assert [c.position for c in results][:2] == [1, 2]
        assert results[0].metadata["bm25_score"] > results[1].metadata["bm25_score"] > 0

    def test_scoped_to_knowledge_base(self, store):
        add_chunks(store, "kb1", new_id(), ["shared keyword here"])
        add_chunks(store, "kb2", new_id(), ["shared keyword there"])
        results = store.keyword_search("kb2", "keyword", top_k=10)
        assert [c.knowledge_base_id for c in results] == ["kb2"]

    def test_top_k(self, store):
        add_chunks(store, "kb1", new_id(), [f"apple number {i}" for i in range(5)])
        assert len(store.keyword_search("kb1", "apple", top_k=3)) == 3

    def test_punctuation_only_query(self, store):
        add_chunks(store, "kb1", new_id(), ["anything"])
        assert store.keyword_search("kb1", "\"(*", top_k=5) == []

    def test_index_follows_updates_and_deletes(self, store):
        doc = new_id()
        chunks = add_chunks(store, "kb1", doc, ["original wording", "other text"])

        store.update_chunk_content(chunks[0].id, "replacement wording")
        assert store.keyword_search("kb1", "original", 5) == []
        assert [c.id for c in store.keyword_search("kb1", "replacement", 5)] == [chunks[0].id]

        store.delete_chunks_by_document(doc)
        assert store.keyword_search("kb1", "wording", 5) == []

    def test_upsert_reindexes(self, store):
        doc = new_id()
        add_chunks(store, "kb1", doc, ["first version"])
        add_chunks(store, "kb1", doc, ["second version"])
        assert store.count_chunks(doc) == 1
        assert store.keyword_search("kb1", "first", 5) == []
        assert len(store.keyword_search("kb1", "second", 5)) == 1


class TestRecords:
    def test_knowledge_base_round_trip(self, store):
        kb = KnowledgeBase(owner_id="alice", name="Docs", embedding_model="m", enable_hybrid_search=True)
        store.create_knowledge_base(kb)
        loaded = store.get_knowledge_base(kb.id)
        assert loaded.name == "Docs"
        assert loaded.enable_hybrid_search is True
        assert loaded.vector_collection == kb.vector_collection
        assert [k.id for k in store.list_knowledge_bases("alice")] == [kb.id]
        assert store.list_knowledge_bases("bob") == []

    def test_document_count_never_negative(self, store):
        kb = store.create_knowledge_base(KnowledgeBase(owner_id="a", name="n", embedding_model="m"))
        store.increment_document_count(kb.id, 2)
        store.increment_document_count(kb.id, -5)
        assert store.get_knowledge_base(kb.id).document_count == 0

    def test_document_status_and_metadata(self, store):
        doc = store.create_document(make_document("kb1", metadata={"source_type": "file"}))
        store.update_status(doc.id, DocumentStatus.FAILED, "failed to get file: boom")
        store.set_retry_count(doc.id, 2)

        loaded = store.get_document(doc.id)
        assert loaded.status == DocumentStatus.FAILED
        assert loaded.error_message == "failed to get file: boom"
        assert loaded.retry_count == 2
        assert loaded.metadata == {"source_type": "file"}
        assert [d.id for d in store.list_documents_by_status(DocumentStatus.FAILED)] == [doc.id]

    def test_bulk_document_operations(self, store):
        docs = [store.create_document(make_document("kb1", file_name=f"{i}.txt")) for i in range(3)]
        ids = [d.id for d in docs]
        assert set(store.get_documents(ids + ["missing"])) == set(ids)
        assert store.delete_documents(ids[:2]) == 2
        assert [d.id for d in store.list_documents("kb1")] == ids[2:]

    def test_stats(self, store):
        store.create_document(make_document("kb1"))
        stats = store.get_stats()
        assert stats["documents"] == 1
        assert stats["documents_pending"] == 1
        assert stats["chunks"] == 0
