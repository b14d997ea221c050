"""Tests for the embedding gateway, caches and model registry."""

import json

import pytest

from knowbase.embeddings import (
    CachedEmbedder,
    EmbeddingCache,
    InMemoryEmbeddingCache,
    ModelRegistry,
    RedisEmbeddingCache,
    create_embedding_provider,
)
from knowbase.errors import NotFoundError, UpstreamError, ValidationError
from knowbase.models import Capability, EmbeddingModel

from conftest import HASH_MODEL, HashEmbeddingProvider


class BrokenCache(EmbeddingCache):
    def get_many(self, keys):
        raise ConnectionError("cache down")

    def set_many(self, items, ttl_seconds):
        raise ConnectionError("cache down")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeRedis:
    """Just enough of redis-py for the embedding cache."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def mget(self, keys):
        return [self.data.get(k) for k in keys]

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def setex(self, key, ttl, value):
        self.ops.append((key, ttl, value))

    def execute(self):
        for key, ttl, value in self.ops:
            self.redis.data[key] = value
            self.redis.ttls[key] = ttl


class TestCachedEmbedder:
    def test_only_misses_reach_the_provider(self):
        provider = HashEmbeddingProvider()
        embedder = CachedEmbedder(provider, InMemoryEmbeddingCache())

        first = embedder.embed(["alpha", "beta"])
        second = embedder.embed(["beta", "gamma", "alpha"])

        assert provider.calls == [["alpha", "beta"], ["gamma"]]
        assert second[0] == first[1]
        assert second[2] == first[0]
        assert second[1] == provider.vector("gamma")

    def test_results_follow_input_order(self):
        provider = HashEmbeddingProvider()
        embedder = CachedEmbedder(provider, InMemoryEmbeddingCache())
        embedder.embed(["b"])
        texts = ["a", "b", "c", "b"]
        assert embedder.embed(texts) == [provider.vector(t) for t in texts]

    def test_keys_include_model(self):
        embedder = CachedEmbedder(HashEmbeddingProvider(), InMemoryEmbeddingCache(), prefix="p:")
        key = embedder.cache_key("m1", "hello")
        assert key.startswith("p:m1:")
        assert key != embedder.cache_key("m2", "hello")

    def test_cache_failures_are_misses(self):
        provider = HashEmbeddingProvider()
        embedder = CachedEmbedder(provider, BrokenCache())
        assert embedder.embed(["x", "y"]) == [provider.vector("x"), provider.vector("y")]
        assert provider.calls == [["x", "y"]]

    def test_provider_failure_is_upstream_error(self):
        provider = HashEmbeddingProvider()
        provider.fail_times = 1
        embedder = CachedEmbedder(provider, InMemoryEmbeddingCache())
        with pytest.raises(UpstreamError) as exc_info:
            embedder.embed(["x"])
        assert exc_info.value.step == "generate embeddings"
        assert "embedding service unavailable" in str(exc_info.value)

    def test_failed_calls_are_not_cached(self):
        provider = HashEmbeddingProvider()
        provider.fail_times = 1
        embedder = CachedEmbedder(provider, InMemoryEmbeddingCache())
        with pytest.raises(UpstreamError):
            embedder.embed(["x"])
        assert embedder.embed(["x"]) == [provider.vector("x")]

    def test_empty_input(self):
        provider = HashEmbeddingProvider()
        assert CachedEmbedder(provider).embed([]) == []
        assert provider.calls == []

    def test_redis_cache_round_trip(self):
        redis = FakeRedis()
        provider = HashEmbeddingProvider()
        embedder = CachedEmbedder(provider, RedisEmbeddingCache(client=redis), ttl_seconds=60)

        embedder.embed(["hello"])
        embedder.embed(["hello"])

        assert len(provider.calls) == 1
        key = embedder.cache_key(HASH_MODEL, "hello")
        assert redis.ttls[key] == 60
        assert json.loads(redis.data[key]) == provider.vector("hello")


class TestProviderBatching:
    def test_sub_batches(self):
        provider = HashEmbeddingProvider(batch_size=2)
        vectors = provider.embed(["a", "b", "c", "d", "e"])
        assert len(vectors) == 5
        assert [len(c) for c in provider.calls] == [2, 2, 1]

    def test_count_mismatch(self):
        class ShortProvider(HashEmbeddingProvider):
            def _embed_batch(self, texts, model):
                return super()._embed_batch(texts, model)[:-1]

        with pytest.raises(UpstreamError):
            ShortProvider().embed(["a", "b"])

    def test_unknown_provider(self):
        with pytest.raises(ValidationError):
            create_embedding_provider("nope")


class TestInMemoryEmbeddingCache:
    def test_entries_expire(self):
        clock = FakeClock()
        cache = InMemoryEmbeddingCache(clock=clock)
        cache.set_many([("k", [1.0])], ttl_seconds=10)
        assert cache.get_many(["k"]) == [[1.0]]
        clock.now += 11
        assert cache.get_many(["k"]) == [None]

    def test_lru_eviction(self):
        cache = InMemoryEmbeddingCache(maxsize=2)
        cache.set_many([("a", [1.0]), ("b", [2.0])], ttl_seconds=60)
        cache.get_many(["a"])
        cache.set_many([("c", [3.0])], ttl_seconds=60)
        assert cache.get_many(["a", "b", "c"]) == [[1.0], None, [3.0]]

    def test_stats(self):
        cache = InMemoryEmbeddingCache()
        cache.set_many([("a", [1.0])], ttl_seconds=60)
        cache.get_many(["a", "missing"])
        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        cache.clear()
        assert cache.stats()["size"] == 0


class TestModelRegistry:
    def test_known_models(self):
        registry = ModelRegistry()
        model = registry.resolve_embedding_model("text-embedding-3-small")
        assert model.dimension == 1536
        assert "jina-embeddings-v3" in registry

    def test_unknown_model(self):
        with pytest.raises(NotFoundError):
            ModelRegistry().get("no-such-model")

    def test_model_without_embedding_capability(self):
        registry = ModelRegistry()
        with pytest.raises(ValidationError):
            registry.resolve_embedding_model("gpt-4o-mini")

    def test_register(self):
        registry = ModelRegistry([])
        registry.register(EmbeddingModel("custom", 8, "test", 100))
        assert registry.names() == ["custom"]

    def test_capability_flags(self):
        caps = Capability.parse(["embedding", "function-calling"])
        assert Capability.EMBEDDING in caps
        assert Capability.FUNCTION_CALLING in caps
        assert Capability.CHAT not in caps
        with pytest.raises(ValidationError):
            Capability.parse(["teleportation"])
