"""End-to-end search tests: vector, hybrid and reranked."""

import pytest

from knowbase.errors import NotFoundError, ValidationError
from knowbase.models import SYSTEM_OWNER_ID
from knowbase.reranker import BaseReranker

VACATION = "Vacation policy: employees get 25 days of paid vacation per year."
EXPENSES = "Expense reports must be submitted within 30 days with receipts attached."
SECURITY = "Laptops must use full disk encryption and a screen lock."


class ReverseReranker(BaseReranker):
    name = "reverse"

    def score(self, query, documents):
        return {i: float(i) for i in range(len(documents))}


@pytest.fixture
def corpus(engine, kb, upload):
    docs = {}
    for name, text in (("vacation.md", VACATION), ("expenses.md", EXPENSES), ("security.txt", SECURITY)):
        doc = upload(name, text)
        engine.pipeline.process(doc.id)
        docs[name] = doc
    return docs


class TestHybridSearch:
    def test_best_document_first_with_enrichment(self, engine, kb, corpus):
        results = engine.documents.search_documents(kb.id, "alice", "vacation policy", top_k=3)

        assert 1 <= len(results) <= 3
        top = results[0]
        assert top.document_id == corpus["vacation.md"].id
        assert top.metadata["file_name"] == "vacation.md"
        assert top.metadata["file_type"] == "md"
        assert top.metadata["rrf_rank"] == 1
        assert top.metadata["bm25_score"] > 0
        assert "vector_score" in top.metadata
        # Ranked by both retrievers
        assert top.score > 1 / 61

    def test_scores_are_rrf_and_descending(self, engine, kb, corpus):
        results = engine.documents.search_documents(kb.id, "alice", "days", top_k=5)
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert all(0 < s <= 2 / 61 for s in scores)
        assert [r.metadata["rrf_rank"] for r in results] == list(range(1, len(results) + 1))

    def test_keyword_hits_survive_vector_threshold(self, engine, kb, corpus):
        engine.knowledge_bases.update_retrieval_config(kb.id, "alice", threshold=1.0)
        results = engine.documents.search_documents(kb.id, "alice", "encryption", top_k=3)
        assert [r.document_id for r in results] == [corpus["security.txt"].id]
        assert "vector_score" not in results[0].metadata

    def test_top_k_default_and_limit(self, engine, kb, corpus):
        engine.knowledge_bases.update_retrieval_config(kb.id, "alice", top_k=1)
        assert len(engine.documents.search_documents(kb.id, "alice", "days")) == 1
        with pytest.raises(ValidationError):
            engine.documents.search_documents(kb.id, "alice", "days", top_k=21)
        with pytest.raises(ValidationError):
            engine.documents.search_documents(kb.id, "alice", "days", top_k=0)

    def test_blank_query(self, engine, kb, corpus):
        assert engine.documents.search_documents(kb.id, "alice", "   ") == []


class TestVectorSearch:
    def test_threshold_applies(self, engine, kb, corpus):
        engine.knowledge_bases.update_retrieval_config(kb.id, "alice", enable_hybrid_search=False)
        results = engine.documents.search_documents(kb.id, "alice", "vacation policy", top_k=3)
        assert results[0].document_id == corpus["vacation.md"].id
        assert "rrf_rank" not in results[0].metadata
        assert results[0].metadata["vector_score"] == results[0].score

        engine.knowledge_bases.update_retrieval_config(kb.id, "alice", threshold=0.99)
        assert engine.documents.search_documents(kb.id, "alice", "vacation policy") == []

    def test_exact_text_scores_near_one(self, engine, kb, corpus):
        engine.knowledge_bases.update_retrieval_config(kb.id, "alice", enable_hybrid_search=False)
        results = engine.documents.search_documents(kb.id, "alice", EXPENSES, top_k=1)
        assert results[0].score == pytest.approx(1.0, abs=1e-3)


class TestRerank:
    def test_reranker_reorders_results(self, engine, kb, corpus):
        engine.search_engine.reranker = ReverseReranker()
        plain = engine.documents.search_documents(kb.id, "alice", "days", top_k=3)

        engine.knowledge_bases.update_retrieval_config(kb.id, "alice", enable_rerank=True)
        reranked = engine.documents.search_documents(kb.id, "alice", "days", top_k=3)

        assert [r.chunk_id for r in reranked] == [r.chunk_id for r in reversed(plain)]
        assert all(r.metadata["reranked"] for r in reranked)
        assert reranked[-1].metadata["original_score"] == plain[0].score


class TestVisibility:
    def test_other_owner_cannot_search(self, engine, kb, corpus):
        with pytest.raises(NotFoundError):
            engine.documents.search_documents(kb.id, "bob", "vacation")

    def test_system_knowledge_base_is_shared(self, engine):
        shared = engine.knowledge_bases.create_knowledge_base(SYSTEM_OWNER_ID, "Public")
        doc = engine.documents.upload_document(
            shared.id, "bob", "faq.txt", b"The office opens at nine.", enqueue=False
        )
        engine.documents.process_document(doc.id, "bob")
        results = engine.documents.search_documents(shared.id, "carol", "office")
        assert results[0].metadata["file_name"] == "faq.txt"


def handbook_sections(count=10, words=80):
    """Paragraphs of 84 word tokens each, with terms unique to their section."""
    return "\n\n".join(
        f"Section {i}: " + " ".join(f"w{i}x{j}" for j in range(words)) + "."
        for i in range(count)
    )


class TestHybridScenario:
    def test_ten_chunk_document(self, engine):
        kb = engine.knowledge_bases.create_knowledge_base(
            "alice", "Manual", chunk_size=100, chunk_overlap=20,
            enable_hybrid_search=True, threshold=0.5, top_k=5,
        )
        doc = engine.documents.upload_document(
            kb.id, "alice", "manual.md", handbook_sections().encode("utf-8"), enqueue=False
        )
        doc = engine.documents.process_document(doc.id, "alice")
        assert doc.chunk_count == 10

        results = engine.documents.search_documents(kb.id, "alice", "Section w7x40")

        assert len(results) == 5
        assert "w7x40" in results[0].content
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert all(0 < s <= 2 / 61 for s in scores)
        assert results[0].score >= 1 / 61
        assert [r.metadata["rrf_rank"] for r in results] == [1, 2, 3, 4, 5]
        for result in results:
            assert result.metadata["file_name"] == "manual.md"
            assert result.metadata.get("vector_score", 1.0) >= 0.5
