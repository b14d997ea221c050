"""Tests for the data models and status state machine."""

import uuid

import pytest

from knowbase.errors import ValidationError
from knowbase.models import (
    BatchResult,
    Capability,
    Chunk,
    Document,
    DocumentStatus,
    EmbeddingModel,
    FailedItem,
    KnowledgeBase,
    chunk_id_for,
)


class TestDocumentStatus:
    @pytest.mark.parametrize("current, target", [
        (DocumentStatus.PENDING, DocumentStatus.PROCESSING),
        (DocumentStatus.PROCESSING, DocumentStatus.COMPLETED),
        (DocumentStatus.PROCESSING, DocumentStatus.FAILED),
        (DocumentStatus.COMPLETED, DocumentStatus.PENDING),
        (DocumentStatus.FAILED, DocumentStatus.PENDING),
    ])
    def test_allowed(self, current, target):
        assert current.can_transition_to(target)

    @pytest.mark.parametrize("current, target", [
        (DocumentStatus.PENDING, DocumentStatus.COMPLETED),
        (DocumentStatus.PENDING, DocumentStatus.FAILED),
        (DocumentStatus.PROCESSING, DocumentStatus.PENDING),
        (DocumentStatus.COMPLETED, DocumentStatus.PROCESSING),
        (DocumentStatus.FAILED, DocumentStatus.COMPLETED),
    ])
    def test_forbidden(self, current, target):
        assert not current.can_transition_to(target)


class TestKnowledgeBase:
    def test_vector_collection_from_id(self):
        kb = KnowledgeBase(owner_id="alice", name="Docs", embedding_model="m")
        assert kb.vector_collection == "kb_" + kb.id.replace("-", "")
        assert "-" not in kb.vector_collection

    def test_visibility(self):
        own = KnowledgeBase(owner_id="alice", name="Docs", embedding_model="m")
        shared = KnowledgeBase(owner_id="system", name="Docs", embedding_model="m")
        assert own.is_visible_to("alice")
        assert not own.is_visible_to("bob")
        assert shared.is_visible_to("bob")

    @pytest.mark.parametrize("changes", [
        {"name": " "},
        {"chunk_size": 0},
        {"chunk_overlap": -1},
        {"chunk_overlap": 512},
        {"chunk_strategy": "sentences"},
        {"threshold": -0.1},
        {"top_k": 21},
    ])
    def test_validate(self, changes):
        kb = KnowledgeBase(**{"owner_id": "alice", "name": "Docs", "embedding_model": "m", **changes})
        with pytest.raises(ValidationError):
            kb.validate()

    def test_to_dict_serializes_dates(self):
        data = KnowledgeBase(owner_id="alice", name="Docs", embedding_model="m").to_dict()
        assert isinstance(data["created_at"], str)
        assert data["name"] == "Docs"


class TestChunkIds:
    def test_stable_per_position(self):
        document_id = str(uuid.uuid4())
        assert chunk_id_for(document_id, 0) == chunk_id_for(document_id, 0)
        assert chunk_id_for(document_id, 0) != chunk_id_for(document_id, 1)

    def test_chunk_gets_id(self):
        document_id = str(uuid.uuid4())
        chunk = Chunk(document_id=document_id, knowledge_base_id="kb", position=3, content="x", token_count=1)
        assert chunk.id == chunk_id_for(document_id, 3)


class TestBatchResult:
    def test_to_dict(self):
        doc = Document(
            knowledge_base_id="kb", file_name="a.txt", file_type="txt", file_size=1,
            content_hash="h", bucket="b", object_key="k",
        )
        result = BatchResult(total=2, succeeded=[doc], failed=[FailedItem("b.exe", "unsupported")])

        data = result.to_dict()

        assert data["total_count"] == 2
        assert data["success_count"] == 1
        assert data["failed_count"] == 1
        assert data["succeeded"][0]["status"] == "pending"
        assert data["failed"] == [{"key": "b.exe", "error": "unsupported"}]


class TestCapability:
    def test_parse(self):
        caps = Capability.parse(["embedding", "function-calling"])
        model = EmbeddingModel("m", 8, capabilities=caps)
        assert model.supports(Capability.EMBEDDING)
        assert model.supports(Capability.FUNCTION_CALLING)
        assert not model.supports(Capability.CHAT)

    def test_unknown(self):
        with pytest.raises(ValidationError):
            Capability.parse(["telepathy"])
