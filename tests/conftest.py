"""Shared fixtures: an engine on real SQLite/USearch stores with a local embedding model."""

import hashlib
import math
import re
from typing import List

import pytest

from knowbase.chunking import WordTokenizer
from knowbase.config import EmbeddingConfig, EngineConfig
from knowbase.embeddings import BaseEmbeddingProvider, InMemoryEmbeddingCache, ModelRegistry
from knowbase.engine import KnowledgeEngine
from knowbase.models import EmbeddingModel
from knowbase.task_queue import InMemoryTaskQueue

HASH_MODEL = "hash-embed"
HASH_DIMENSION = 64

_WORD = re.compile(r"\w+")


class HashEmbeddingProvider(BaseEmbeddingProvider):
    """Normalized bag-of-words vectors over hashed buckets.

    Texts sharing words get similar vectors, and the same text always gets
    the same vector. ``fail_times`` makes the next calls raise.
    """

    name = "hash"
    MODEL_DIMENSIONS = {HASH_MODEL: HASH_DIMENSION}

    def __init__(self, dimension: int = HASH_DIMENSION, batch_size: int = 64):
        super().__init__(HASH_MODEL, batch_size)
        self.size = dimension
        self.calls: List[List[str]] = []
        self.fail_times = 0

    def dimension(self, model=None):
        return self.size

    def vector(self, text: str) -> List[float]:
        vec = [0.0] * self.size
        for word in _WORD.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.size
            vec[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        if norm == 0:
            vec[0] = 1.0
            return vec
        return [v / norm for v in vec]

    def _embed_batch(self, texts: List[str], model: str) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("embedding service unavailable")
        return [self.vector(t) for t in texts]


@pytest.fixture
def provider():
    return HashEmbeddingProvider()


@pytest.fixture
def registry():
    registry = ModelRegistry()
    registry.register(EmbeddingModel(HASH_MODEL, HASH_DIMENSION, "test", 8191))
    return registry


@pytest.fixture
def config(tmp_path):
    return EngineConfig(
        data_dir=str(tmp_path / "data"),
        dtype="f32",
        tokenizer="word",
        threshold=0.0,
        worker_count=1,
        poll_timeout=0.05,
        settle_delay=0.0,
        embedding=EmbeddingConfig(provider="hash", model=HASH_MODEL),
    )


@pytest.fixture
def engine(config, provider, registry):
    engine = KnowledgeEngine(
        config,
        provider=provider,
        registry=registry,
        embedding_cache=InMemoryEmbeddingCache(),
        queue=InMemoryTaskQueue(),
        tokenizer=WordTokenizer(),
    )
    yield engine
    engine.close()


@pytest.fixture
def kb(engine):
    return engine.knowledge_bases.create_knowledge_base(
        "alice", "Handbook", chunk_size=50, chunk_overlap=5
    )


@pytest.fixture
def upload(engine, kb):
    """Upload text as a document of ``kb`` without queueing it."""

    def _upload(file_name: str, text: str, owner: str = "alice", kb_id: str = None):
        return engine.documents.upload_document(
            kb_id or kb.id, owner, file_name, text.encode("utf-8"), enqueue=False
        )

    return _upload
