"""Embedding generation with caching and multiple provider support."""

import hashlib
import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import requests
from openai import OpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from .errors import NotFoundError, UpstreamError, ValidationError
from .models import Capability, EmbeddingModel

logger = logging.getLogger(__name__)

Vector = List[float]


# ============ Providers ============

class BaseEmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    name = "base"
    MODEL_DIMENSIONS: Dict[str, int] = {}

    def __init__(self, model: str, batch_size: int = 64):
        if batch_size <= 0:
            raise ValidationError(f"batch_size must be positive, got {batch_size}")
        self.model = model
        self.batch_size = batch_size

    @abstractmethod
    def _embed_batch(self, texts: List[str], model: str) -> List[Vector]:
        """Generate embeddings for one request-sized batch (provider-specific)."""

    def dimension(self, model: Optional[str] = None) -> Optional[int]:
        return self.MODEL_DIMENSIONS.get(model or self.model)

    def embed(self, texts: Union[str, Sequence[str]], model: Optional[str] = None) -> List[Vector]:
        """
        Generate embeddings, one vector per input text, in input order.

        Args:
            texts: Single text or list of texts
            model: Model name (defaults to the provider's model)

        Returns:
            List of embedding vectors
        """
        if isinstance(texts, str):
            texts = [texts]
        texts = list(texts)
        if not texts:
            return []

        model = model or self.model
        vectors: List[Vector] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            result = self._embed_batch(batch, model)
            if len(result) != len(batch):
                raise UpstreamError(
                    "generate embeddings",
                    message=f"provider returned {len(result)} vectors for {len(batch)} texts",
                )
            vectors.extend(result)
        return vectors


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    """OpenAI embedding provider with retries."""

    name = "openai"
    MODEL_DIMENSIONS = {
        "text-embedding-3-large": 3072,
        "text-embedding-3-small": 1536,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        batch_size: int = 64,
        base_url: Optional[str] = None,
    ):
        super().__init__(model, batch_size)
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError(
                "OpenAI API key required. Set OPENAI_API_KEY environment variable "
                "or pass api_key parameter."
            )
        self.client = OpenAI(api_key=self.api_key, base_url=base_url)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _embed_batch(self, texts: List[str], model: str) -> List[Vector]:
        """Generate embeddings via OpenAI API."""
        response = self.client.embeddings.create(model=model, input=texts)
        # Sort by index to ensure correct order
        embeddings = sorted(response.data, key=lambda x: x.index)
        return [emb.embedding for emb in embeddings]


class JinaEmbeddingProvider(BaseEmbeddingProvider):
    """
    Jina AI embedding provider (API-based).

    Requires: JINA_API_KEY environment variable

    Example:
        >>> embedder = JinaEmbeddingProvider("jina-embeddings-v3")
        >>> embeddings = embedder.embed(["Hello world"])
    """

    name = "jina"
    API_URL = "https://api.jina.ai/v1/embeddings"

    MODEL_DIMENSIONS = {
        "jina-embeddings-v3": 1024,
        "jina-embeddings-v2-base-en": 768,
        "jina-embeddings-v2-small-en": 512,
        "jina-embeddings-v4": 2048,
    }

    def __init__(
        self,
        model: str = "jina-embeddings-v3",
        api_key: Optional[str] = None,
        batch_size: int = 64,
        task: Optional[str] = None,
        timeout: float = 30.0,
    ):
        """
        Initialize Jina embedding provider.

        Args:
            model: Jina model name
            api_key: API key (or set JINA_API_KEY env var)
            batch_size: Texts per request
            task: Optional task type for optimization:
                  'retrieval.query', 'retrieval.passage', 'text-matching'
            timeout: HTTP timeout in seconds
        """
        super().__init__(model, batch_size)
        self.api_key = api_key or os.environ.get("JINA_API_KEY")
        if not self.api_key:
            raise ValueError(
                "Jina API key required. Set JINA_API_KEY environment variable "
                "or pass api_key parameter."
            )
        self.task = task
        self.timeout = timeout

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _embed_batch(self, texts: List[str], model: str) -> List[Vector]:
        """Generate embeddings via Jina AI API."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        payload = {"model": model, "input": texts}
        if self.task:
            payload["task"] = self.task

        response = requests.post(self.API_URL, headers=headers, json=payload, timeout=self.timeout)
        response.raise_for_status()

        data = sorted(response.json()["data"], key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in data]


def create_embedding_provider(
    provider: str = "openai",
    model: Optional[str] = None,
    **kwargs
) -> BaseEmbeddingProvider:
    """
    Factory function to create embedding providers.

    Args:
        provider: Provider name ('openai', 'jina')
        model: Model name (uses provider default if not specified)
        **kwargs: Additional provider-specific arguments

    Example:
        >>> embedder = create_embedding_provider("openai", "text-embedding-3-small")
        >>> embedder = create_embedding_provider("jina", "jina-embeddings-v3")
    """
    provider = provider.lower()

    if provider in ("openai", "openai-embedding"):
        return OpenAIEmbeddingProvider(model or "text-embedding-3-small", **kwargs)

    elif provider in ("jina", "jina-ai"):
        return JinaEmbeddingProvider(model or "jina-embeddings-v3", **kwargs)

    else:
        raise ValidationError(
            f"Unknown embedding provider: {provider}. Supported: 'openai', 'jina'"
        )


# ============ Caches ============

class EmbeddingCache(ABC):
    """Key/value store for embedding vectors."""

    @abstractmethod
    def get_many(self, keys: Sequence[str]) -> List[Optional[Vector]]:
        """Vectors for ``keys`` in order; None for misses."""

    @abstractmethod
    def set_many(self, items: Iterable[Tuple[str, Vector]], ttl_seconds: int) -> None:
        pass

    def stats(self) -> Dict[str, float]:
        return {}


class InMemoryEmbeddingCache(EmbeddingCache):
    """LRU cache with per-entry expiry, for tests and single-process deployments."""

    def __init__(self, maxsize: int = 10000, clock: Callable[[], float] = time.monotonic):
        self._cache: "OrderedDict[str, Tuple[float, Vector]]" = OrderedDict()
        self._maxsize = maxsize
        self._clock = clock
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get_many(self, keys: Sequence[str]) -> List[Optional[Vector]]:
        now = self._clock()
        results: List[Optional[Vector]] = []
        with self._lock:
            for key in keys:
                entry = self._cache.get(key)
                if entry is not None and entry[0] <= now:
                    del self._cache[key]
                    entry = None
                if entry is None:
                    self._misses += 1
                    results.append(None)
                    continue
                self._hits += 1
                # Move to end (most recently used)
                self._cache.move_to_end(key)
                results.append(entry[1])
        return results

    def set_many(self, items: Iterable[Tuple[str, Vector]], ttl_seconds: int) -> None:
        expires_at = self._clock() + ttl_seconds
        with self._lock:
            for key, vector in items:
                self._cache[key] = (expires_at, vector)
                self._cache.move_to_end(key)
                # Evict oldest if at capacity
                while len(self._cache) > self._maxsize:
                    self._cache.popitem(last=False)

    def stats(self) -> Dict[str, float]:
        """Return cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0,
                "size": len(self._cache),
                "maxsize": self._maxsize,
            }

    def clear(self) -> None:
        """Clear the cache."""
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0


class RedisEmbeddingCache(EmbeddingCache):
    """Embeddings cached in Redis as JSON, expiring with ``SETEX``."""

    def __init__(self, client=None, url: Optional[str] = None):
        if client is None:
            from redis import Redis

            client = Redis.from_url(url or "redis://localhost:6379/0", decode_responses=True)
        self.client = client
        logger.info("Initialized Redis embedding cache")

    def get_many(self, keys: Sequence[str]) -> List[Optional[Vector]]:
        if not keys:
            return []
        raw = self.client.mget(list(keys))
        return [json.loads(value) if value else None for value in raw]

    def set_many(self, items: Iterable[Tuple[str, Vector]], ttl_seconds: int) -> None:
        pipe = self.client.pipeline()
        for key, vector in items:
            pipe.setex(key, ttl_seconds, json.dumps(vector))
        pipe.execute()


class CachedEmbedder:
    """
    Embedding gateway: serves repeated texts from the cache.

    Keys are ``prefix + model + ":" + sha256(text)``. Only the misses are
    sent to the provider, as one call, and written back with the TTL.
    Cache failures are logged and treated as misses; provider failures
    fail the whole call.
    """

    def __init__(
        self,
        provider: BaseEmbeddingProvider,
        cache: Optional[EmbeddingCache] = None,
        ttl_seconds: int = 24 * 3600,
        prefix: str = "kb:embedding:",
    ):
        self.provider = provider
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    @property
    def model(self) -> str:
        return self.provider.model

    def cache_key(self, model: str, text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"{self.prefix}{model}:{digest}"

    def embed(self, texts: Union[str, Sequence[str]], model: Optional[str] = None) -> List[Vector]:
        if isinstance(texts, str):
            texts = [texts]
        texts = list(texts)
        if not texts:
            return []
        model = model or self.provider.model

        if self.cache is None:
            return self._call_provider(texts, model)

        keys = [self.cache_key(model, text) for text in texts]
        try:
            cached = self.cache.get_many(keys)
        except Exception as exc:
            logger.warning(f"Embedding cache read failed, treating as misses: {exc}")
            cached = [None] * len(texts)

        results: List[Optional[Vector]] = list(cached)
        missing = [i for i, vector in enumerate(results) if vector is None]

        if missing:
            vectors = self._call_provider([texts[i] for i in missing], model)
            for i, vector in zip(missing, vectors):
                results[i] = vector
            try:
                self.cache.set_many(((keys[i], results[i]) for i in missing), self.ttl_seconds)
            except Exception as exc:
                logger.warning(f"Embedding cache write failed: {exc}")

        logger.debug(
            f"Embedded {len(texts)} texts with {model}: "
            f"{len(texts) - len(missing)} cached, {len(missing)} computed"
        )
        return results  # type: ignore

    def _call_provider(self, texts: List[str], model: str) -> List[Vector]:
        try:
            return self.provider.embed(texts, model=model)
        except UpstreamError:
            raise
        except Exception as exc:
            raise UpstreamError("generate embeddings", exc) from exc


# ============ Model registry ============

KNOWN_MODELS = (
    EmbeddingModel("text-embedding-3-small", 1536, "openai", 8191),
    EmbeddingModel("text-embedding-3-large", 3072, "openai", 8191),
    EmbeddingModel("text-embedding-ada-002", 1536, "openai", 8191),
    EmbeddingModel("jina-embeddings-v3", 1024, "jina", 8192),
    EmbeddingModel("jina-embeddings-v2-base-en", 768, "jina", 8192),
    EmbeddingModel("jina-embeddings-v2-small-en", 512, "jina", 8192),
    EmbeddingModel("BAAI/bge-small-en-v1.5", 384, "bge", 512),
    EmbeddingModel("BAAI/bge-base-en-v1.5", 768, "bge", 512),
    EmbeddingModel("BAAI/bge-large-en-v1.5", 1024, "bge", 512),
    EmbeddingModel("BAAI/bge-m3", 1024, "bge", 8192),
    EmbeddingModel("jina-reranker-v2-base-multilingual", 0, "jina", 1024, Capability.RERANK),
    EmbeddingModel(
        "gpt-4o-mini", 0, "openai", 128000,
        Capability.CHAT | Capability.VISION | Capability.FUNCTION_CALLING,
    ),
)


class ModelRegistry:
    """Known models by name."""

    def __init__(self, models: Iterable[EmbeddingModel] = KNOWN_MODELS):
        self._models: Dict[str, EmbeddingModel] = {}
        self._lock = threading.Lock()
        for model in models:
            self.register(model)

    def register(self, model: EmbeddingModel) -> None:
        with self._lock:
            self._models[model.name] = model

    def get(self, name: str) -> EmbeddingModel:
        with self._lock:
            model = self._models.get(name)
        if model is None:
            raise NotFoundError("model", name)
        return model

    def resolve_embedding_model(self, name: str) -> EmbeddingModel:
        """Get a model that can produce embeddings."""
        model = self.get(name)
        if not model.supports(Capability.EMBEDDING):
            raise ValidationError(f"Model {name} does not support embeddings")
        return model

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._models)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._models
